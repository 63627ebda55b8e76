"""Append-only activity stream writes.

Rows carry metadata only (ids, sizes, backend names), never lesson or
help-request text. Writes are best-effort: a failure is logged and reported
through the return value, never raised into the caller's request.
"""

from __future__ import annotations

import logging

from ..models import ActivityEvent, Course

logger = logging.getLogger(__name__)


def emit_activity_event(
    *,
    event_type: str,
    course: Course | None,
    student,
    source: str = "stratum",
    details: dict | None = None,
    ip_address: str = "",
) -> bool:
    try:
        ActivityEvent.objects.create(
            course=course,
            student=student,
            event_type=event_type,
            source=source,
            details=details or {},
            ip_address=(ip_address or None),
        )
    except Exception:
        logger.exception("activity_event_write_failed type=%s source=%s", event_type, source)
        return False
    return True
