"""Service-to-service endpoints. Not routed for browsers."""

from __future__ import annotations

import ipaddress
import json
import logging
import secrets

from django.conf import settings
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from ..models import ActivityEvent, Course
from ..services.activity import emit_activity_event

logger = logging.getLogger(__name__)


def healthz(request):
    return HttpResponse("ok", content_type="text/plain")


def _presented_token(request) -> str:
    """Token from `X-Stratum-Internal-Token`, else from `Authorization: Bearer`."""
    token = (request.headers.get("X-Stratum-Internal-Token", "") or "").strip()
    if token:
        return token
    scheme, _, value = (request.headers.get("Authorization", "") or "").strip().partition(" ")
    return value.strip() if scheme.lower() == "bearer" else ""


def _clean_ip(raw) -> str:
    value = str(raw or "").strip()
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return ""
    return value


def _course_or_none(raw) -> Course | None:
    try:
        course_id = int(raw or 0)
    except (TypeError, ValueError):
        return None
    return Course.objects.filter(id=course_id).first() if course_id > 0 else None


@csrf_exempt
@require_POST
def internal_course_generated_event(request):
    """Record one course generation reported by the course generator.

    Body: {"course_id": int|null, "ip_address": str|null, "details": {...}}
    """
    expected = str(getattr(settings, "STRATUM_INTERNAL_EVENTS_TOKEN", "") or "").strip()
    if not expected:
        return JsonResponse({"error": "internal_event_token_not_configured"}, status=503)
    presented = _presented_token(request)
    if not presented or not secrets.compare_digest(presented, expected):
        logger.warning("internal_course_event_rejected reason=bad_token")
        return JsonResponse({"error": "forbidden"}, status=403)

    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        payload = None
    if not isinstance(payload, dict):
        return JsonResponse({"error": "bad_json"}, status=400)
    details = payload.get("details") or {}
    if not isinstance(details, dict):
        return JsonResponse({"error": "invalid_details"}, status=400)

    written = emit_activity_event(
        event_type=ActivityEvent.EVENT_COURSE_GENERATED,
        course=_course_or_none(payload.get("course_id")),
        student=None,
        source="course_generator",
        details=details,
        ip_address=_clean_ip(payload.get("ip_address")),
    )
    if not written:
        return JsonResponse({"error": "event_write_failed"}, status=500)
    return JsonResponse({"ok": True})


__all__ = [
    "healthz",
    "internal_course_generated_event",
]
