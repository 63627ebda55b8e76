"""Security response headers shared by the Stratum and course generator services."""

from django.conf import settings


class SecurityHeadersMiddleware:
    """Attach optional security headers configured via settings."""

    _HEADER_SETTINGS = (
        ("Content-Security-Policy", ("CSP_POLICY",)),
        ("Content-Security-Policy-Report-Only", ("CSP_REPORT_ONLY_POLICY",)),
        ("Permissions-Policy", ("PERMISSIONS_POLICY",)),
        ("Referrer-Policy", ("SECURITY_REFERRER_POLICY", "SECURE_REFERRER_POLICY")),
        ("X-Frame-Options", ("X_FRAME_OPTIONS",)),
    )

    def __init__(self, get_response):
        self.get_response = get_response

    @staticmethod
    def _setting_value(names) -> str:
        for name in names:
            value = (getattr(settings, name, "") or "").strip()
            if value:
                return value
        return ""

    def __call__(self, request):
        response = self.get_response(request)
        for header, names in self._HEADER_SETTINGS:
            value = self._setting_value(names)
            if value and header not in response:
                response[header] = value
        return response


__all__ = ["SecurityHeadersMiddleware"]
