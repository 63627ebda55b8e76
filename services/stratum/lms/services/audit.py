"""Best-effort audit logging helpers for instructor actions."""

from __future__ import annotations

import logging
from typing import Any

from django.conf import settings

from common.request_safety import client_ip_from_request

from ..models import AuditEvent, Course

logger = logging.getLogger(__name__)


def _client_ip(request) -> str:
    ip = client_ip_from_request(
        request,
        trust_proxy_headers=getattr(settings, "REQUEST_SAFETY_TRUST_PROXY_HEADERS", False),
        xff_index=getattr(settings, "REQUEST_SAFETY_XFF_INDEX", 0),
    )
    return "" if ip == "unknown" else ip


def log_audit_event(
    request,
    *,
    action: str,
    target_type: str = "",
    target_id: str = "",
    summary: str = "",
    course: Course | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Record an instructor action without impacting request success path."""
    user = getattr(request, "user", None)
    actor = user if (user is not None and user.is_authenticated and user.is_staff) else None
    try:
        AuditEvent.objects.create(
            actor_user=actor,
            action=(action or "").strip()[:80] or "unknown",
            target_type=(target_type or "").strip()[:80],
            target_id=(target_id or "").strip()[:64],
            summary=(summary or "").strip()[:255],
            course=course,
            metadata=metadata or {},
            ip_address=_client_ip(request) or None,
        )
    except Exception:
        logger.exception("audit_event_write_failed action=%s", action)
