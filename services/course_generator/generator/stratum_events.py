"""Best-effort forwarding of course-generation events to Stratum."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from functools import lru_cache

from django.conf import settings

logger = logging.getLogger(__name__)


def _forwarding_config() -> tuple[str, str, int]:
    """Return `(url, token, timeout_seconds)` from settings."""
    url = str(getattr(settings, "STRATUM_INTERNAL_EVENTS_URL", "") or "").strip()
    token = str(getattr(settings, "STRATUM_INTERNAL_EVENTS_TOKEN", "") or "").strip()
    timeout = int(getattr(settings, "STRATUM_INTERNAL_EVENTS_TIMEOUT_SECONDS", 3) or 0)
    return url, token, (timeout if timeout > 0 else 3)


@lru_cache(maxsize=4)
def _log_missing_config_once(url_present: bool, token_present: bool) -> None:
    logger.warning(
        "course_generated_event_forward_disabled url_present=%s token_present=%s",
        "1" if url_present else "0",
        "1" if token_present else "0",
    )


def emit_course_generated_event(*, ip_address: str, details: dict) -> bool:
    """POST metadata about one generation to Stratum. Never raises.

    Returns True when Stratum accepted the event. The outline text itself is
    never forwarded, only sizes, backend and model names.
    """
    url, token, timeout = _forwarding_config()
    if not url or not token:
        _log_missing_config_once(bool(url), bool(token))
        return False

    payload = {
        "ip_address": ip_address or None,
        "details": details or {},
    }
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={
            "Content-Type": "application/json",
            "X-Stratum-Internal-Token": token,
        },
    )

    request_id = str((details or {}).get("request_id") or "").strip() or "unknown"
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status = getattr(resp, "status", None) or resp.getcode()
    except urllib.error.HTTPError as exc:
        logger.warning("course_generated_event_forward_failed request_id=%s status=%s", request_id, exc.code)
        return False
    except Exception as exc:
        logger.warning(
            "course_generated_event_forward_failed request_id=%s error=%s",
            request_id,
            exc.__class__.__name__,
        )
        return False

    if not (200 <= int(status) < 300):
        logger.warning("course_generated_event_forward_failed request_id=%s status=%s", request_id, status)
        return False
    return True


__all__ = ["emit_course_generated_event"]
