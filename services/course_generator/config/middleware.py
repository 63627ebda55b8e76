from django.conf import settings
from django.http import JsonResponse

from common.security_headers import SecurityHeadersMiddleware  # noqa: F401


class SiteModeMiddleware:
    """Pause course generation while the platform is in maintenance.

    Generation creates nothing on its own, so read-only mode lets it through;
    saving the outline still goes through Stratum's own write gate.
    """

    _ALWAYS_ALLOWED_PREFIXES = ("/api/healthz", "/admin/", "/static/")
    _GATED_PREFIX = "/api/generate-course"

    def __init__(self, get_response):
        self.get_response = get_response

    @staticmethod
    def _site_mode() -> str:
        mode = (getattr(settings, "SITE_MODE", "normal") or "normal").strip().lower()
        return mode if mode else "normal"

    @staticmethod
    def _mode_message() -> str:
        override = (getattr(settings, "SITE_MODE_MESSAGE", "") or "").strip()
        return override or "Course generation is temporarily unavailable during maintenance."

    def __call__(self, request):
        if self._site_mode() != "maintenance":
            return self.get_response(request)

        path = (request.path or "").strip()
        if any(path.startswith(prefix) for prefix in self._ALWAYS_ALLOWED_PREFIXES):
            return self.get_response(request)
        if not path.startswith(self._GATED_PREFIX):
            return self.get_response(request)

        response = JsonResponse(
            {
                "error": "site_mode_restricted",
                "site_mode": "maintenance",
                "message": self._mode_message(),
            },
            status=503,
        )
        response["Retry-After"] = "120"
        response["Cache-Control"] = "no-store"
        return response
