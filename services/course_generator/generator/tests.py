import json
import urllib.error
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import TestCase, override_settings

from . import stratum_events, views

OUTLINE_TEXT = (
    "# Intro to Python\n"
    "**Category:** Programming\n"
    "## Course Overview\n"
    "Learn the basics.\n\n"
    "## Lesson 1: Variables\n"
    "Names point at values.\n\n"
    "## Lesson 2: Loops\n"
    "Repeat work with for and while.\n"
)


class GenerateCourseTests(TestCase):
    def setUp(self):
        cache.clear()
        self.instructor = get_user_model().objects.create_user(
            username="ada@example.org",
            email="ada@example.org",
            password="pw12345",
            is_staff=True,
        )

    def _post(self, payload, **extra):
        body = payload if isinstance(payload, str) else json.dumps(payload)
        return self.client.post("/api/generate-course", data=body, content_type="application/json", **extra)

    def _course_request(self):
        return {"title": "Intro to Python", "description": "Start coding from zero.", "category": "Programming"}

    def test_healthz_reports_backend(self):
        with patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "mock"}, clear=False):
            resp = self.client.get("/api/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": True, "backend": "mock", "circuit_open": False})

    def test_requires_signed_in_instructor(self):
        resp = self._post(self._course_request())
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json().get("error"), "unauthorized")
        self.assertTrue(resp["X-Request-ID"])

    def test_rejects_student_session(self):
        student = get_user_model().objects.create_user(username="bo@example.org", password="pw12345")
        self.client.force_login(student)

        resp = self._post(self._course_request())
        self.assertEqual(resp.status_code, 401)

    def test_get_is_not_allowed(self):
        self.client.force_login(self.instructor)
        resp = self.client.get("/api/generate-course")
        self.assertEqual(resp.status_code, 405)

    def test_bad_json_returns_400(self):
        self.client.force_login(self.instructor)
        for body in ("{not json", "[1, 2]"):
            resp = self._post(body)
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.json().get("error"), "bad_json")

    def test_missing_fields_returns_400(self):
        self.client.force_login(self.instructor)
        resp = self._post({"title": "  ", "category": "Art"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json().get("error"), "missing_fields")
        self.assertEqual(resp.json().get("fields"), ["title", "description"])

    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "mock"}, clear=False)
    def test_mock_backend_returns_outline_and_parsed_lessons(self):
        self.client.force_login(self.instructor)
        resp = self._post(self._course_request(), HTTP_X_REQUEST_ID="req-abc")

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["backend"], "mock")
        self.assertEqual(body["model"], "mock-outline-v1")
        self.assertEqual(body["attempts"], 1)
        self.assertEqual(body["request_id"], "req-abc")
        self.assertEqual(resp["X-Request-ID"], "req-abc")
        self.assertTrue(body["outline"].startswith("# Intro to Python"))
        titles = [lesson["title"] for lesson in body["parsedOutline"]["lessons"]]
        self.assertEqual(titles, ["Lesson 1: Getting Started", "Lesson 2: Core Ideas"])

    @patch("generator.views._anthropic_generate", return_value=(OUTLINE_TEXT, "claude-test"))
    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "anthropic"}, clear=False)
    def test_anthropic_backend_receives_course_prompts(self, generate_mock):
        self.client.force_login(self.instructor)
        resp = self._post(self._course_request())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["model"], "claude-test")
        self.assertEqual(resp.json()["parsedOutline"]["overview"], "Learn the basics.")
        _model, system_prompt, user_prompt = generate_mock.call_args.args
        self.assertIn("expert course creator", system_prompt)
        self.assertIn('titled "Intro to Python"', user_prompt)
        self.assertIn('category: "Programming"', user_prompt)

    @patch("generator.views._anthropic_generate", return_value=("   ", "claude-test"))
    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "anthropic"}, clear=False)
    def test_empty_reply_becomes_placeholder_outline(self, _generate_mock):
        self.client.force_login(self.instructor)
        resp = self._post(self._course_request())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["outline"], "No outline generated.")
        lessons = resp.json()["parsedOutline"]["lessons"]
        self.assertEqual(lessons[0]["title"], "Lesson 1: Introduction")

    @patch("generator.views._anthropic_generate", return_value=(OUTLINE_TEXT, "claude-test"))
    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": ""}, clear=False)
    def test_anthropic_is_default_backend(self, generate_mock):
        self.client.force_login(self.instructor)
        resp = self._post(self._course_request())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["backend"], "anthropic")
        self.assertEqual(generate_mock.call_count, 1)

    @patch("generator.views.time.sleep", return_value=None)
    @patch.dict(
        "os.environ",
        {
            "GENERATOR_LLM_BACKEND": "mock",
            "GENERATOR_BACKEND_MAX_ATTEMPTS": "2",
            "GENERATOR_BACKOFF_SECONDS": "0",
        },
        clear=False,
    )
    def test_retries_backend_then_succeeds(self, _sleep_mock):
        self.client.force_login(self.instructor)
        with patch(
            "generator.views._mock_generate",
            side_effect=[urllib.error.URLError("temp"), (OUTLINE_TEXT, "mock-outline-v1")],
        ) as generate_mock:
            resp = self._post(self._course_request())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json().get("attempts"), 2)
        self.assertEqual(generate_mock.call_count, 2)

    @patch("generator.views.time.sleep", return_value=None)
    @patch.dict(
        "os.environ",
        {
            "GENERATOR_LLM_BACKEND": "mock",
            "GENERATOR_BACKEND_MAX_ATTEMPTS": "2",
            "GENERATOR_BACKOFF_SECONDS": "0",
        },
        clear=False,
    )
    def test_returns_502_after_retry_exhausted(self, _sleep_mock):
        self.client.force_login(self.instructor)
        with patch(
            "generator.views._mock_generate",
            side_effect=urllib.error.URLError("still down"),
        ) as generate_mock:
            resp = self._post(self._course_request())

        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json().get("error"), "backend_error")
        self.assertEqual(generate_mock.call_count, 2)

    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "mock"}, clear=False)
    def test_non_retryable_error_is_not_retried(self):
        self.client.force_login(self.instructor)
        with patch("generator.views._mock_generate", side_effect=KeyError("boom")) as generate_mock:
            resp = self._post(self._course_request())

        self.assertEqual(resp.status_code, 502)
        self.assertEqual(generate_mock.call_count, 1)

    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "mock"}, clear=False)
    def test_returns_503_when_backend_circuit_open(self):
        self.client.force_login(self.instructor)
        cache.set("generator:circuit_open:mock", 1, timeout=30)
        with patch("generator.views._mock_generate") as generate_mock:
            resp = self._post(self._course_request())

        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json().get("error"), "backend_unavailable")
        self.assertEqual(generate_mock.call_count, 0)

    @patch.dict(
        "os.environ",
        {
            "GENERATOR_LLM_BACKEND": "mock",
            "GENERATOR_BACKEND_MAX_ATTEMPTS": "1",
            "GENERATOR_CIRCUIT_BREAKER_FAILURES": "2",
            "GENERATOR_RATE_LIMIT_PER_MINUTE": "50",
        },
        clear=False,
    )
    def test_consecutive_failures_open_the_circuit(self):
        self.client.force_login(self.instructor)
        with patch("generator.views._mock_generate", side_effect=ValueError("bad body")):
            first = self._post(self._course_request())
            second = self._post(self._course_request())
            third = self._post(self._course_request())

        self.assertEqual([first.status_code, second.status_code, third.status_code], [502, 502, 503])

    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "mock"}, clear=False)
    def test_success_resets_failure_counter(self):
        self.client.force_login(self.instructor)
        cache.set("generator:circuit_failures:mock", 3, timeout=30)
        resp = self._post(self._course_request())
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(cache.get("generator:circuit_failures:mock"))

    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "carrier-pigeon"}, clear=False)
    def test_unknown_backend_returns_500(self):
        self.client.force_login(self.instructor)
        resp = self._post(self._course_request())
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json().get("error"), "unknown_backend")

    @patch.dict(
        "os.environ",
        {
            "GENERATOR_LLM_BACKEND": "mock",
            "GENERATOR_RATE_LIMIT_PER_MINUTE": "1",
            "GENERATOR_RATE_LIMIT_PER_IP_PER_MINUTE": "10",
        },
        clear=False,
    )
    def test_rate_limits_per_instructor(self):
        self.client.force_login(self.instructor)
        first = self._post(self._course_request())
        second = self._post(self._course_request())
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 429)
        self.assertEqual(second.json().get("error"), "rate_limited")

    @patch.dict(
        "os.environ",
        {
            "GENERATOR_LLM_BACKEND": "mock",
            "GENERATOR_RATE_LIMIT_PER_MINUTE": "10",
            "GENERATOR_RATE_LIMIT_PER_IP_PER_MINUTE": "1",
        },
        clear=False,
    )
    def test_rate_limits_per_ip(self):
        other = get_user_model().objects.create_user(username="grace@example.org", password="pw12345", is_staff=True)
        self.client.force_login(self.instructor)
        first = self._post(self._course_request())
        self.client.force_login(other)
        second = self._post(self._course_request())
        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 429)

    @patch("generator.views.emit_course_generated_event")
    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "mock"}, clear=False)
    def test_success_forwards_metadata_only_event(self, event_mock):
        self.client.force_login(self.instructor)
        resp = self._post(self._course_request())

        self.assertEqual(resp.status_code, 200)
        event_mock.assert_called_once()
        details = event_mock.call_args.kwargs["details"]
        self.assertEqual(details["instructor_id"], self.instructor.id)
        self.assertEqual(details["backend"], "mock")
        self.assertEqual(details["lessons"], 2)
        self.assertNotIn("outline", details)

    @patch("generator.views.emit_course_generated_event")
    @patch.dict("os.environ", {"GENERATOR_LLM_BACKEND": "mock"}, clear=False)
    def test_failed_generation_does_not_forward_event(self, event_mock):
        self.client.force_login(self.instructor)
        with patch("generator.views._mock_generate", side_effect=KeyError("boom")):
            self._post(self._course_request())
        self.assertFalse(event_mock.called)


class BackendAdapterTests(TestCase):
    @patch.dict("os.environ", {"ANTHROPIC_API_KEY": "sk-test"}, clear=False)
    def test_anthropic_generate_joins_text_blocks(self):
        response = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="# Title\n"),
                SimpleNamespace(type="tool_use", text=""),
                SimpleNamespace(type="text", text="## Lesson 1: One"),
            ],
            model="claude-3-opus-20240229",
        )
        client = MagicMock()
        client.messages.create.return_value = response
        with patch("anthropic.Anthropic", return_value=client) as client_cls:
            text, model = views._anthropic_generate("claude-3-opus-20240229", "sys", "user")

        self.assertEqual(text, "# Title\n## Lesson 1: One")
        self.assertEqual(model, "claude-3-opus-20240229")
        client_cls.assert_called_once_with(api_key="sk-test")
        kwargs = client.messages.create.call_args.kwargs
        self.assertEqual(kwargs["system"], "sys")
        self.assertEqual(kwargs["max_tokens"], 2500)
        self.assertEqual(kwargs["temperature"], 0.7)
        self.assertEqual(kwargs["messages"], [{"role": "user", "content": "user"}])

    def test_ollama_generate_posts_chat_request(self):
        body = json.dumps({"model": "llama3.1:8b", "message": {"content": "# Outline"}}).encode("utf-8")
        with patch("generator.views.urllib.request.urlopen") as urlopen_mock:
            urlopen_mock.return_value.__enter__.return_value.read.return_value = body
            text, model = views._ollama_generate("http://ollama:11434/", "llama3.1:8b", "sys", "user")

        self.assertEqual((text, model), ("# Outline", "llama3.1:8b"))
        req = urlopen_mock.call_args.args[0]
        self.assertEqual(req.full_url, "http://ollama:11434/api/chat")
        sent = json.loads(req.data.decode("utf-8"))
        self.assertFalse(sent["stream"])
        self.assertEqual(sent["messages"][0], {"role": "system", "content": "sys"})

    def test_retryable_error_classification(self):
        self.assertTrue(views._is_retryable_backend_error(urllib.error.URLError("down")))
        self.assertTrue(views._is_retryable_backend_error(TimeoutError()))
        self.assertFalse(views._is_retryable_backend_error(RuntimeError("unknown_backend")))
        self.assertFalse(views._is_retryable_backend_error(KeyError("x")))
        rate_limited = type("RateLimitError", (Exception,), {})
        self.assertTrue(views._is_retryable_backend_error(rate_limited()))


class StratumEventForwardingTests(TestCase):
    @override_settings(
        STRATUM_INTERNAL_EVENTS_URL="http://stratum_web:8000/internal/events/course-generated",
        STRATUM_INTERNAL_EVENTS_TOKEN="token-123",
        STRATUM_INTERNAL_EVENTS_TIMEOUT_SECONDS=3,
    )
    def test_emit_posts_to_internal_endpoint(self):
        with patch("generator.stratum_events.urllib.request.urlopen") as urlopen_mock:
            urlopen_mock.return_value.__enter__.return_value = SimpleNamespace(status=200)
            delivered = stratum_events.emit_course_generated_event(
                ip_address="127.0.0.1",
                details={"request_id": "req-1"},
            )

        self.assertTrue(delivered)
        req = urlopen_mock.call_args.args[0]
        self.assertEqual(req.full_url, "http://stratum_web:8000/internal/events/course-generated")
        self.assertEqual(req.get_method(), "POST")
        self.assertEqual(req.headers.get("Content-type"), "application/json")
        self.assertEqual(req.headers.get("X-stratum-internal-token"), "token-123")
        self.assertEqual(urlopen_mock.call_args.kwargs.get("timeout"), 3)
        sent = json.loads(req.data.decode("utf-8"))
        self.assertEqual(sent, {"ip_address": "127.0.0.1", "details": {"request_id": "req-1"}})

    @override_settings(STRATUM_INTERNAL_EVENTS_URL="", STRATUM_INTERNAL_EVENTS_TOKEN="")
    def test_emit_skips_when_config_missing(self):
        with patch("generator.stratum_events.urllib.request.urlopen") as urlopen_mock:
            delivered = stratum_events.emit_course_generated_event(
                ip_address="127.0.0.1",
                details={"request_id": "req-1"},
            )
        self.assertFalse(delivered)
        self.assertFalse(urlopen_mock.called)

    @override_settings(
        STRATUM_INTERNAL_EVENTS_URL="http://stratum_web:8000/internal/events/course-generated",
        STRATUM_INTERNAL_EVENTS_TOKEN="token-123",
    )
    def test_emit_swallows_http_errors(self):
        with patch(
            "generator.stratum_events.urllib.request.urlopen",
            side_effect=urllib.error.HTTPError(
                url="http://stratum_web:8000/internal/events/course-generated",
                code=403,
                msg="forbidden",
                hdrs=None,
                fp=None,
            ),
        ) as urlopen_mock:
            delivered = stratum_events.emit_course_generated_event(
                ip_address="127.0.0.1",
                details={"request_id": "req-1"},
            )
        self.assertTrue(urlopen_mock.called)
        self.assertFalse(delivered)


class GeneratorSiteModeTests(TestCase):
    def setUp(self):
        cache.clear()

    @override_settings(SITE_MODE="maintenance")
    def test_maintenance_blocks_generation(self):
        resp = self.client.post("/api/generate-course", data="{}", content_type="application/json")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json().get("error"), "site_mode_restricted")
        self.assertEqual(resp["Retry-After"], "120")

    @override_settings(SITE_MODE="maintenance")
    def test_maintenance_keeps_healthz_available(self):
        resp = self.client.get("/api/healthz")
        self.assertEqual(resp.status_code, 200)

    @override_settings(SITE_MODE="read-only")
    def test_read_only_lets_generation_through_to_auth(self):
        resp = self.client.post("/api/generate-course", data="{}", content_type="application/json")
        self.assertEqual(resp.status_code, 401)


class GeneratorAdminAccessTests(TestCase):
    def test_admin_requires_superuser(self):
        user = get_user_model().objects.create_user(
            username="staffer",
            password="pw12345",
            is_staff=True,
            is_superuser=False,
        )
        self.client.force_login(user)

        resp = self.client.get("/admin/", follow=False)
        self.assertEqual(resp.status_code, 302)
        self.assertIn("/admin/login/", resp["Location"])

    def test_admin_requires_2fa_for_superuser(self):
        user = get_user_model().objects.create_superuser(
            username="admin",
            password="pw12345",
            email="admin@example.org",
        )
        self.client.force_login(user)

        resp = self.client.get("/admin/", follow=False)
        self.assertEqual(resp.status_code, 302)

    @override_settings(ADMIN_2FA_REQUIRED=False)
    def test_admin_allows_superuser_when_2fa_disabled(self):
        user = get_user_model().objects.create_superuser(
            username="admin2",
            password="pw12345",
            email="admin2@example.org",
        )
        self.client.force_login(user)

        resp = self.client.get("/admin/")
        self.assertEqual(resp.status_code, 200)


class GeneratorSecurityHeaderTests(TestCase):
    @override_settings(CSP_REPORT_ONLY_POLICY="default-src 'self'")
    def test_healthz_sets_csp_report_only_header_when_configured(self):
        resp = self.client.get("/api/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp["Content-Security-Policy-Report-Only"], "default-src 'self'")
