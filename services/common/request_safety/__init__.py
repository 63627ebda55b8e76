"""Request safety shared by the Stratum API and the course generator.

- `client_ip_from_request(...)`: caller IP, reading X-Forwarded-For only when
  the deployment says a trusted proxy sets it.
- `fixed_window_allow(...)`: cache-backed per-minute style limiter.
- `build_user_actor_key(...)` / `build_instructor_actor_key(...)`: per-account
  limiter keys.

Settings read by callers:
- `REQUEST_SAFETY_TRUST_PROXY_HEADERS` (default: false)
- `REQUEST_SAFETY_XFF_INDEX` (default: 0, the client-most hop; negative counts
  from the proxy end)

Limits themselves stay with each service (`STRATUM_*_RATE_LIMIT_PER_MINUTE`,
`GENERATOR_RATE_LIMIT_*`).
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Callable, Mapping

from django.core.cache import cache as default_cache

logger = logging.getLogger(__name__)

_CACHE_FAILED = object()


def _guarded(op: str, key: str, request_id: str, call: Callable[[], object]):
    """Run one cache call; on any backend error log it and return `_CACHE_FAILED`."""
    try:
        return call()
    except Exception as exc:
        logger.warning(
            "request_safety_cache_warning request_id=%s op=%s key=%s error=%s",
            (request_id or "").strip() or "unknown",
            op,
            key,
            exc.__class__.__name__,
        )
        return _CACHE_FAILED


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def parse_client_ip(
    meta: Mapping[str, str],
    *,
    trust_proxy_headers: bool = False,
    xff_index: int = 0,
    xff_header: str = "HTTP_X_FORWARDED_FOR",
) -> str:
    """Return the caller IP from a WSGI META mapping, or "unknown"."""
    if trust_proxy_headers:
        hops = [hop.strip() for hop in (meta.get(xff_header) or "").split(",")]
        hops = [hop for hop in hops if hop and _is_ip(hop)]
        if hops:
            # Out-of-range indexes clamp to the nearest end of the chain.
            position = xff_index if xff_index >= 0 else len(hops) + xff_index
            return hops[min(max(position, 0), len(hops) - 1)]

    remote = (meta.get("REMOTE_ADDR") or "").strip()
    return remote if remote and _is_ip(remote) else "unknown"


def client_ip_from_request(request, **kwargs) -> str:
    """`parse_client_ip` over `request.META`; accepts the same keyword options."""
    return parse_client_ip(getattr(request, "META", None) or {}, **kwargs)


def fixed_window_allow(
    key: str,
    *,
    limit: int,
    window_seconds: int,
    cache_backend=None,
    request_id: str = "",
) -> bool:
    """Count one hit against `key`; False once more than `limit` hits land in the window.

    The window starts at the first hit and is not extended by later ones.
    Cache failures never block the caller.
    """
    if limit <= 0:
        return True
    store = cache_backend or default_cache
    window = max(int(window_seconds), 1)

    created = _guarded("add", key, request_id, lambda: store.add(key, 1, timeout=window))
    if created is _CACHE_FAILED or created:
        return True

    count = _guarded("incr", key, request_id, lambda: store.incr(key))
    if count is _CACHE_FAILED:
        return True
    return int(count) <= limit


def build_user_actor_key(
    request,
    *,
    instructor_prefix: str = "instructor",
    student_prefix: str = "student",
) -> str:
    """Return `instructor:<id>` / `student:<id>` for active signed-in users, else ""."""
    user = getattr(request, "user", None)
    if not (user and getattr(user, "is_authenticated", False) and getattr(user, "is_active", True)):
        return ""
    if not getattr(user, "id", None):
        return ""
    prefix = instructor_prefix if getattr(user, "is_staff", False) else student_prefix
    return f"{prefix}:{user.id}"


def build_instructor_actor_key(request, *, prefix: str = "instructor") -> str:
    key = build_user_actor_key(request, instructor_prefix=prefix)
    return key if key.startswith(f"{prefix}:") else ""


__all__ = [
    "build_instructor_actor_key",
    "build_user_actor_key",
    "client_ip_from_request",
    "fixed_window_allow",
    "parse_client_ip",
]
