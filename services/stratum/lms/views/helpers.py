"""Shared plumbing for the JSON API views: body parsing, role gates, error mapping."""

from __future__ import annotations

import json
from functools import wraps

from django.conf import settings
from django.http import JsonResponse

from common.request_safety import client_ip_from_request, fixed_window_allow

from ..errors import StratumError, ValidationFailed
from ..services.audit import log_audit_event


def parse_json(request) -> dict:
    if not request.body:
        return {}
    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationFailed("bad_json") from exc
    if not isinstance(payload, dict):
        raise ValidationFailed("bad_json")
    return payload


def error_response(exc: StratumError) -> JsonResponse:
    body = {"error": exc.code}
    messages = getattr(exc, "messages", None)
    if messages:
        body["details"] = messages
    return JsonResponse(body, status=exc.status)


def json_errors(view):
    """Translate StratumError raised by services into JSON error responses."""

    @wraps(view)
    def wrapped(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except StratumError as exc:
            return error_response(exc)

    return wrapped


def _role_gate(view, *, staff: bool):
    guarded = json_errors(view)

    @wraps(view)
    def wrapped(request, *args, **kwargs):
        user = request.user
        if not user.is_authenticated:
            return JsonResponse({"error": "unauthorized"}, status=401)
        if bool(user.is_staff) != staff:
            return JsonResponse({"error": "instructor_required" if staff else "student_required"}, status=403)
        return guarded(request, *args, **kwargs)

    return wrapped


def instructor_required(view):
    return _role_gate(view, staff=True)


def student_required(view):
    return _role_gate(view, staff=False)


def login_required_json(view):
    guarded = json_errors(view)

    @wraps(view)
    def wrapped(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"error": "unauthorized"}, status=401)
        return guarded(request, *args, **kwargs)

    return wrapped


def client_ip(request) -> str:
    ip = client_ip_from_request(
        request,
        trust_proxy_headers=getattr(settings, "REQUEST_SAFETY_TRUST_PROXY_HEADERS", False),
        xff_index=getattr(settings, "REQUEST_SAFETY_XFF_INDEX", 0),
    )
    return "" if ip == "unknown" else ip


def rate_limited(request, *, scope: str, limit: int) -> bool:
    """True when the caller's IP exhausted `limit` requests this minute."""
    request_id = (request.META.get("HTTP_X_REQUEST_ID", "") or "").strip()
    ip = client_ip(request) or "unknown"
    return not fixed_window_allow(
        f"{scope}:ip:{ip}:m",
        limit=int(limit),
        window_seconds=60,
        request_id=request_id,
    )


def audit(request, *, action: str, summary: str = "", course=None, target_type: str = "", target_id="", metadata=None):
    log_audit_event(
        request,
        action=action,
        summary=summary,
        course=course,
        target_type=target_type,
        target_id=str(target_id or ""),
        metadata=metadata or {},
    )
