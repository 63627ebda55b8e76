"""Session auth endpoints under /api/auth/* plus instructor 2FA enrollment."""

import base64
import re
from io import BytesIO

import qrcode
from django.conf import settings
from django.contrib.auth import authenticate
from django.contrib.auth import login as auth_login
from django.contrib.auth import logout as auth_logout
from django.http import JsonResponse
from django.middleware.csrf import get_token
from django.views.decorators.csrf import ensure_csrf_cookie
from django.views.decorators.http import require_GET, require_POST
from django_otp import login as otp_login
from django_otp.plugins.otp_totp.models import TOTPDevice
from qrcode.image.svg import SvgPathImage

from ..services.accounts import register_user
from ..services.people import user_summary
from .helpers import audit, instructor_required, json_errors, parse_json, rate_limited


def _instructor_2fa_device_name() -> str:
    configured = (getattr(settings, "INSTRUCTOR_2FA_DEVICE_NAME", "instructor-primary") or "").strip()
    return configured or "instructor-primary"


def _totp_secret_base32(device: TOTPDevice) -> str:
    return base64.b32encode(device.bin_key).decode("ascii").rstrip("=")


def _format_base32_for_display(secret: str) -> str:
    groups = [secret[idx : idx + 4] for idx in range(0, len(secret), 4)]
    return " ".join(groups)


def _totp_qr_svg(config_url: str) -> str:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(config_url)
    qr.make(fit=True)
    img = qr.make_image(image_factory=SvgPathImage)
    stream = BytesIO()
    img.save(stream)
    return stream.getvalue().decode("utf-8")


def _is_verified(user) -> bool:
    is_verified_attr = getattr(user, "is_verified", None)
    return bool(is_verified_attr() if callable(is_verified_attr) else is_verified_attr)


def _session_payload(user) -> dict:
    payload = {"user": user_summary(user)}
    if user.is_staff:
        payload["otp_required"] = bool(getattr(settings, "INSTRUCTOR_2FA_REQUIRED", False))
        payload["otp_verified"] = _is_verified(user)
    return payload


@require_GET
@ensure_csrf_cookie
def auth_csrf(request):
    return JsonResponse({"csrfToken": get_token(request)})


def _register(request, *, instructor: bool):
    payload = parse_json(request)
    user = register_user(
        email=payload.get("email"),
        password=payload.get("password"),
        name=payload.get("name") or payload.get("display_name") or "",
        instructor=instructor,
    )
    auth_login(request, user, backend="django.contrib.auth.backends.ModelBackend")
    return JsonResponse(_session_payload(user), status=201)


@require_POST
@json_errors
def auth_register_student(request):
    return _register(request, instructor=False)


@require_POST
@json_errors
def auth_register_instructor(request):
    if not getattr(settings, "STRATUM_ALLOW_INSTRUCTOR_SIGNUP", True):
        return JsonResponse({"error": "instructor_signup_disabled"}, status=403)
    return _register(request, instructor=True)


@require_POST
@json_errors
def auth_login_view(request):
    limit = int(getattr(settings, "STRATUM_LOGIN_RATE_LIMIT_PER_MINUTE", 30))
    if rate_limited(request, scope="login", limit=limit):
        return JsonResponse({"error": "rate_limited"}, status=429)

    payload = parse_json(request)
    email = str(payload.get("email") or "").strip().lower()
    password = str(payload.get("password") or "")
    if not email or not password:
        return JsonResponse({"error": "missing_fields"}, status=400)

    user = authenticate(request, username=email, password=password)
    if user is None:
        return JsonResponse({"error": "invalid_credentials"}, status=401)
    auth_login(request, user)
    return JsonResponse(_session_payload(user))


@require_POST
def auth_logout_view(request):
    auth_logout(request)
    request.session.flush()
    return JsonResponse({"ok": True})


@require_GET
def auth_me(request):
    if not request.user.is_authenticated:
        return JsonResponse({"error": "unauthorized"}, status=401)
    return JsonResponse(_session_payload(request.user))


def _instructor_device(user) -> TOTPDevice:
    device_name = _instructor_2fa_device_name()
    device = TOTPDevice.objects.filter(user=user, name=device_name).first()
    if device is None:
        device = TOTPDevice.objects.create(user=user, name=device_name, confirmed=False)
    return device


@require_POST
@instructor_required
def instructor_2fa_setup(request):
    device = _instructor_device(request.user)
    if device.confirmed:
        return JsonResponse({"already_configured": True, "otp_verified": _is_verified(request.user)})

    config_url = getattr(device, "config_url", "")
    return JsonResponse(
        {
            "already_configured": False,
            "otpauth_url": config_url,
            "qr_svg": _totp_qr_svg(config_url) if config_url else "",
            "manual_secret": _format_base32_for_display(_totp_secret_base32(device)),
            "digits": int(device.digits or 6),
        }
    )


@require_POST
@instructor_required
def instructor_2fa_confirm(request):
    """Confirm a pending device, or verify the session against a confirmed one."""
    payload = parse_json(request)
    user = request.user
    device = TOTPDevice.objects.filter(user=user, name=_instructor_2fa_device_name()).first()
    if device is None:
        return JsonResponse({"error": "otp_setup_required"}, status=409)

    otp_token = re.sub(r"\s+", "", str(payload.get("otp_token") or payload.get("token") or ""))
    digits = int(device.digits or 6)
    if not otp_token.isdigit() or len(otp_token) != digits:
        return JsonResponse({"error": "invalid_token_format", "digits": digits}, status=400)
    if not device.verify_token(otp_token):
        return JsonResponse({"error": "invalid_token"}, status=400)

    newly_confirmed = not device.confirmed
    if newly_confirmed:
        device.confirmed = True
        device.save(update_fields=["confirmed"])
        audit(
            request,
            action="instructor_2fa.enroll",
            target_type="User",
            target_id=user.id,
            summary=f"Completed instructor 2FA enrollment for {user.get_username()}",
            metadata={"device_name": device.name},
        )
    otp_login(request, device)
    return JsonResponse({"ok": True, "confirmed": True, "newly_confirmed": newly_confirmed})


__all__ = [
    "auth_csrf",
    "auth_register_student",
    "auth_register_instructor",
    "auth_login_view",
    "auth_logout_view",
    "auth_me",
    "instructor_2fa_setup",
    "instructor_2fa_confirm",
]
