from django.conf import settings
from django.http import HttpResponse, JsonResponse

from common.security_headers import SecurityHeadersMiddleware  # noqa: F401


class InstructorOTPRequiredMiddleware:
    """Answer 403 otp_required to unverified instructors on /api/instructor/*.

    Only active when INSTRUCTOR_2FA_REQUIRED is on. The 2FA setup routes stay
    open so an instructor can enroll a device; anonymous and student callers
    fall through to the views, which answer 401/403 themselves.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    @staticmethod
    def _needs_otp(request) -> bool:
        path = request.path or ""
        if not path.startswith("/api/instructor/") or path.startswith("/api/instructor/2fa/"):
            return False
        user = getattr(request, "user", None)
        if not (user and user.is_authenticated and user.is_staff):
            return False
        is_verified = getattr(user, "is_verified", None)
        return not (is_verified() if callable(is_verified) else bool(is_verified))

    def __call__(self, request):
        if getattr(settings, "INSTRUCTOR_2FA_REQUIRED", False) and self._needs_otp(request):
            return JsonResponse({"error": "otp_required", "setup_url": "/api/instructor/2fa/setup"}, status=403)
        return self.get_response(request)


class SiteModeMiddleware:
    """Gate routes when an operator switches STRATUM_SITE_MODE away from normal.

    read-only: reads keep working, writes answer 503 except sign-in/out,
    2FA enrollment, service-to-service events and the admin.
    maintenance: everything but /healthz, the admin and static files answers 503.
    """

    _SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
    _WRITE_ALLOWLIST = (
        "/admin/",
        "/internal/events/",
        "/api/auth/login",
        "/api/auth/logout",
        "/api/instructor/2fa/",
    )
    _MAINTENANCE_ALLOWLIST = ("/admin/", "/static/")
    _DEFAULT_MESSAGES = {
        "read-only": "Stratum is in read-only mode. Course edits, enrollments and uploads are temporarily disabled.",
        "maintenance": "Stratum is in maintenance mode. Please try again shortly.",
    }

    def __init__(self, get_response):
        self.get_response = get_response

    def _is_blocked(self, mode: str, request) -> bool:
        path = request.path or ""
        if mode == "read-only":
            if (request.method or "GET").upper() in self._SAFE_METHODS:
                return False
            return not path.startswith(self._WRITE_ALLOWLIST)
        if mode == "maintenance":
            return path != "/healthz" and not path.startswith(self._MAINTENANCE_ALLOWLIST)
        return False

    def _blocked_response(self, request, mode: str):
        message = (getattr(settings, "SITE_MODE_MESSAGE", "") or "").strip() or self._DEFAULT_MESSAGES[mode]
        wants_json = (request.path or "").startswith("/api/") or any(
            "application/json" in (request.headers.get(name, "") or "").lower()
            for name in ("Accept", "Content-Type")
        )
        if wants_json:
            response = JsonResponse({"error": "site_mode_restricted", "site_mode": mode, "message": message}, status=503)
        else:
            response = HttpResponse(message, status=503, content_type="text/plain; charset=utf-8")
        response["Retry-After"] = "120"
        response["Cache-Control"] = "no-store"
        return response

    def __call__(self, request):
        mode = (getattr(settings, "SITE_MODE", "normal") or "normal").strip().lower()
        if self._is_blocked(mode, request):
            return self._blocked_response(request, mode)
        return self.get_response(request)
