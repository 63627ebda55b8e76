import json
import logging
import os
import time
import urllib.error
import urllib.request
import uuid

from django.conf import settings
from django.core.cache import cache
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from common.course_outline import build_course_prompts, parse_outline
from common.request_safety import (
    build_instructor_actor_key,
    client_ip_from_request,
    fixed_window_allow,
)

from .stratum_events import emit_course_generated_event

EMPTY_OUTLINE_TEXT = "No outline generated."
MAX_FIELD_CHARS = {"title": 200, "description": 4000, "category": 100}
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _backend_name() -> str:
    return (os.getenv("GENERATOR_LLM_BACKEND", "anthropic") or "anthropic").strip().lower()


def _request_id(request) -> str:
    header_value = (request.META.get("HTTP_X_REQUEST_ID", "") or "").strip()
    if header_value:
        return header_value[:80]
    return uuid.uuid4().hex


def _json_response(payload: dict, *, request_id: str, status: int = 200) -> JsonResponse:
    body = dict(payload or {})
    body.setdefault("request_id", request_id)
    resp = JsonResponse(body, status=status)
    resp["X-Request-ID"] = request_id
    return resp


def _log_generation_event(level: str, event: str, *, request_id: str, **fields):
    row = {"event": event, "request_id": request_id, **fields}
    line = json.dumps(row, sort_keys=True, default=str)
    if level == "warning":
        logger.warning(line)
    elif level == "error":
        logger.error(line)
    else:
        logger.info(line)


def _backend_circuit_key(backend: str) -> str:
    return f"generator:circuit_open:{backend}"


def _backend_failure_counter_key(backend: str) -> str:
    return f"generator:circuit_failures:{backend}"


def _backend_circuit_is_open(backend: str) -> bool:
    return bool(cache.get(_backend_circuit_key(backend)))


def _record_backend_failure(backend: str) -> None:
    threshold = max(_env_int("GENERATOR_CIRCUIT_BREAKER_FAILURES", 5), 1)
    ttl = max(_env_int("GENERATOR_CIRCUIT_BREAKER_TTL_SECONDS", 30), 1)
    key = _backend_failure_counter_key(backend)
    # add() only writes when the key is missing, so concurrent first failures count once each.
    if cache.add(key, 1, timeout=ttl):
        count = 1
    else:
        try:
            count = int(cache.incr(key))
        except ValueError:
            cache.set(key, 1, timeout=ttl)
            count = 1
    if count >= threshold:
        cache.set(_backend_circuit_key(backend), 1, timeout=ttl)
        logger.warning("generator_circuit_opened backend=%s failures=%s ttl=%s", backend, count, ttl)


def _reset_backend_failure_state(backend: str) -> None:
    cache.delete_many([_backend_failure_counter_key(backend), _backend_circuit_key(backend)])


def _anthropic_generate(model: str, system_prompt: str, user_prompt: str) -> tuple[str, str]:
    try:
        import anthropic
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("anthropic_not_installed") from exc

    client = anthropic.Anthropic(api_key=os.environ.get("ANTHROPIC_API_KEY"))
    response = client.messages.create(
        model=model,
        max_tokens=max(_env_int("ANTHROPIC_MAX_TOKENS", 2500), 1),
        temperature=_env_float("ANTHROPIC_TEMPERATURE", 0.7),
        system=system_prompt,
        messages=[{"role": "user", "content": user_prompt}],
    )
    text = "".join(
        getattr(block, "text", "") or ""
        for block in (getattr(response, "content", None) or [])
        if getattr(block, "type", "text") == "text"
    )
    return text, (getattr(response, "model", "") or model)


def _openai_generate(model: str, system_prompt: str, user_prompt: str) -> tuple[str, str]:
    try:
        from openai import OpenAI
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("openai_not_installed") from exc

    client = OpenAI(api_key=os.environ.get("OPENAI_API_KEY"))
    create_kwargs = {
        "model": model,
        "instructions": system_prompt,
        "input": user_prompt,
    }
    max_output_tokens = _env_int("OPENAI_MAX_OUTPUT_TOKENS", 0)
    if max_output_tokens > 0:
        create_kwargs["max_output_tokens"] = max_output_tokens
    response = client.responses.create(**create_kwargs)
    return (getattr(response, "output_text", "") or ""), model


def _ollama_generate(base_url: str, model: str, system_prompt: str, user_prompt: str) -> tuple[str, str]:
    url = base_url.rstrip("/") + "/api/chat"
    options = {"temperature": _env_float("OLLAMA_TEMPERATURE", 0.7)}
    num_predict = _env_int("OLLAMA_NUM_PREDICT", 0)
    if num_predict > 0:
        options["num_predict"] = num_predict
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "stream": False,
        "options": options,
    }
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )

    # Whole-course outlines take much longer than a chat turn on local models.
    timeout = max(_env_int("OLLAMA_TIMEOUT_SECONDS", 120), 1)
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        parsed = json.loads(resp.read().decode("utf-8"))

    if not isinstance(parsed, dict):
        return "", model
    msg = parsed.get("message") or {}
    return (msg.get("content") or parsed.get("response") or ""), (parsed.get("model") or model)


def _mock_generate(title: str, category: str) -> tuple[str, str]:
    text = (os.getenv("GENERATOR_MOCK_OUTLINE_TEXT", "") or "").strip()
    if not text:
        text = (
            f"# {title}\n"
            f"**Category:** {category}\n"
            "## Course Overview\n"
            f"A short practice course about {title}.\n\n"
            "## Lesson 1: Getting Started\n"
            "What the course covers and how to work through it.\n\n"
            "## Lesson 2: Core Ideas\n"
            "The main concepts, one worked example at a time.\n"
        )
    return text, "mock-outline-v1"


def _is_retryable_backend_error(exc: Exception) -> bool:
    if isinstance(exc, RuntimeError) and str(exc) in {
        "anthropic_not_installed",
        "openai_not_installed",
        "unknown_backend",
    }:
        return False
    if isinstance(exc, (urllib.error.URLError, TimeoutError, ValueError)):
        return True
    return exc.__class__.__name__ in {
        "APIConnectionError",
        "APITimeoutError",
        "RateLimitError",
        "InternalServerError",
        "OverloadedError",
    }


def _invoke_backend(backend: str, fields: dict) -> tuple[str, str]:
    system_prompt, user_prompt = build_course_prompts(fields["title"], fields["description"], fields["category"])
    if backend == "anthropic":
        model = os.getenv("ANTHROPIC_MODEL", "claude-3-opus-20240229")
        return _anthropic_generate(model, system_prompt, user_prompt)
    if backend == "openai":
        model = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
        return _openai_generate(model, system_prompt, user_prompt)
    if backend == "ollama":
        model = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
        base_url = os.getenv("OLLAMA_BASE_URL", "http://ollama:11434")
        return _ollama_generate(base_url, model, system_prompt, user_prompt)
    if backend == "mock":
        return _mock_generate(fields["title"], fields["category"])
    raise RuntimeError("unknown_backend")


def _call_backend_with_retries(backend: str, fields: dict) -> tuple[str, str, int]:
    max_attempts = max(_env_int("GENERATOR_BACKEND_MAX_ATTEMPTS", 2), 1)
    base_backoff = max(_env_float("GENERATOR_BACKOFF_SECONDS", 0.4), 0.0)

    for attempt in range(1, max_attempts + 1):
        try:
            text, model_used = _invoke_backend(backend, fields)
            return text, model_used, attempt
        except Exception as exc:
            if attempt >= max_attempts or not _is_retryable_backend_error(exc):
                raise
            sleep_seconds = base_backoff * (2 ** (attempt - 1))
            if sleep_seconds > 0:
                time.sleep(sleep_seconds)

    raise RuntimeError("backend_error")


def _clean_fields(payload: dict) -> dict:
    fields = {}
    for name, limit in MAX_FIELD_CHARS.items():
        value = payload.get(name)
        fields[name] = (value if isinstance(value, str) else "").strip()[:limit]
    fields["category"] = fields["category"] or "General"
    return fields


@require_GET
def healthz(request):
    backend = _backend_name()
    return JsonResponse({"ok": True, "backend": backend, "circuit_open": _backend_circuit_is_open(backend)})


@require_POST
def generate_course(request):
    """POST /api/generate-course

    Input JSON:
      {"title": "...", "description": "...", "category": "..."}

    Output JSON:
      {"outline": "<markdown>", "parsedOutline": {"overview", "lessons"},
       "model": "...", "backend": "...", "attempts": 1, "request_id": "..."}

    Nothing is saved here. The dashboard turns `parsedOutline` into a course
    through Stratum's own create endpoint.
    """
    started_at = time.monotonic()
    request_id = _request_id(request)
    actor = build_instructor_actor_key(request)
    client_ip = client_ip_from_request(
        request,
        trust_proxy_headers=getattr(settings, "REQUEST_SAFETY_TRUST_PROXY_HEADERS", False),
        xff_index=getattr(settings, "REQUEST_SAFETY_XFF_INDEX", 0),
    )
    if not actor:
        _log_generation_event("warning", "unauthorized", request_id=request_id, ip=client_ip)
        return _json_response({"error": "unauthorized"}, status=401, request_id=request_id)

    actor_limit = _env_int("GENERATOR_RATE_LIMIT_PER_MINUTE", 6)
    ip_limit = _env_int("GENERATOR_RATE_LIMIT_PER_IP_PER_MINUTE", 20)
    if not fixed_window_allow(
        f"rl:generator:actor:{actor}:m",
        limit=actor_limit,
        window_seconds=60,
        cache_backend=cache,
        request_id=request_id,
    ):
        _log_generation_event("warning", "rate_limited_actor", request_id=request_id, actor=actor, ip=client_ip)
        return _json_response({"error": "rate_limited"}, status=429, request_id=request_id)
    if not fixed_window_allow(
        f"rl:generator:ip:{client_ip}:m",
        limit=ip_limit,
        window_seconds=60,
        cache_backend=cache,
        request_id=request_id,
    ):
        _log_generation_event("warning", "rate_limited_ip", request_id=request_id, actor=actor, ip=client_ip)
        return _json_response({"error": "rate_limited"}, status=429, request_id=request_id)

    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        payload = None
    if not isinstance(payload, dict):
        _log_generation_event("warning", "bad_json", request_id=request_id, actor=actor)
        return _json_response({"error": "bad_json"}, status=400, request_id=request_id)

    fields = _clean_fields(payload)
    if not fields["title"] or not fields["description"]:
        missing = [name for name in ("title", "description") if not fields[name]]
        return _json_response({"error": "missing_fields", "fields": missing}, status=400, request_id=request_id)

    backend = _backend_name()
    if _backend_circuit_is_open(backend):
        _log_generation_event("warning", "backend_circuit_open", request_id=request_id, backend=backend)
        return _json_response({"error": "backend_unavailable"}, status=503, request_id=request_id)

    try:
        text, model_used, attempts_used = _call_backend_with_retries(backend, fields)
    except RuntimeError as exc:
        code = str(exc)
        if code in {"anthropic_not_installed", "openai_not_installed", "unknown_backend"}:
            _log_generation_event("error", code, request_id=request_id, backend=backend)
            return _json_response({"error": code}, status=500, request_id=request_id)
        _record_backend_failure(backend)
        _log_generation_event(
            "error",
            "backend_runtime_error",
            request_id=request_id,
            backend=backend,
            error_type=exc.__class__.__name__,
        )
        return _json_response({"error": "backend_error"}, status=502, request_id=request_id)
    except urllib.error.URLError:
        _record_backend_failure(backend)
        _log_generation_event("error", "backend_transport_error", request_id=request_id, backend=backend)
        return _json_response({"error": "backend_error"}, status=502, request_id=request_id)
    except ValueError:
        _record_backend_failure(backend)
        _log_generation_event("error", "backend_parse_error", request_id=request_id, backend=backend)
        return _json_response({"error": "backend_error"}, status=502, request_id=request_id)
    except Exception as exc:
        _record_backend_failure(backend)
        _log_generation_event(
            "error",
            "backend_error",
            request_id=request_id,
            backend=backend,
            error_type=exc.__class__.__name__,
        )
        return _json_response({"error": "backend_error"}, status=502, request_id=request_id)

    _reset_backend_failure_state(backend)
    outline = (text or "").strip() or EMPTY_OUTLINE_TEXT
    parsed = parse_outline(outline)
    total_ms = int((time.monotonic() - started_at) * 1000)
    _log_generation_event(
        "info",
        "success",
        request_id=request_id,
        actor=actor,
        backend=backend,
        model=model_used,
        attempts=attempts_used,
        outline_chars=len(outline),
        lessons=len(parsed["lessons"]),
        total_ms=total_ms,
    )
    emit_course_generated_event(
        ip_address=client_ip,
        details={
            "request_id": request_id,
            "instructor_id": request.user.id,
            "backend": backend,
            "model": model_used,
            "attempts": attempts_used,
            "category": fields["category"],
            "lessons": len(parsed["lessons"]),
            "outline_chars": len(outline),
        },
    )
    return _json_response(
        {
            "outline": outline,
            "parsedOutline": parsed,
            "model": model_used,
            "backend": backend,
            "attempts": attempts_used,
            "total_ms": total_ms,
        },
        request_id=request_id,
    )
