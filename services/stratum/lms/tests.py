import json
import tempfile
from datetime import timedelta
from io import StringIO
from pathlib import Path

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import Client, TestCase, override_settings
from django.utils import timezone
from django_otp.oath import totp
from django_otp.plugins.otp_totp.models import TOTPDevice

from .models import (
    ActivityEvent,
    AuditEvent,
    Course,
    CourseMedia,
    Enrollment,
    HelpRequest,
    LessonCompletion,
    Notification,
    StudentTask,
    Task,
)

PASSWORD = "correct-horse-battery-9"


def _force_login_staff_verified(client: Client, user) -> None:
    """Authenticate and mark OTP as verified for instructor API tests."""
    client.force_login(user)
    device, _ = TOTPDevice.objects.get_or_create(
        user=user,
        name="instructor-primary",
        defaults={"confirmed": True},
    )
    if not device.confirmed:
        device.confirmed = True
        device.save(update_fields=["confirmed"])
    session = client.session
    session["otp_device_id"] = device.persistent_id
    session.save()


def _make_instructor(username="prof@example.org", **extra):
    return get_user_model().objects.create_user(
        username=username,
        email=username,
        password=PASSWORD,
        is_staff=True,
        **extra,
    )


def _make_student(username="ada@example.org", **extra):
    return get_user_model().objects.create_user(
        username=username,
        email=username,
        password=PASSWORD,
        **extra,
    )


def _make_course(instructor, **extra):
    fields = {
        "title": "Botany",
        "access_code": "BOT234",
        "status": Course.STATUS_PUBLISHED,
        "structure": {
            "overview": "Plants **grow**.",
            "lessons": [
                {"id": "l1", "title": "Seeds", "content": "Seeds *sleep*."},
                {"id": "l2", "title": "Roots", "content": "Roots drink."},
            ],
        },
    }
    fields.update(extra)
    return Course.objects.create(instructor=instructor, **fields)


class _ApiTestCase(TestCase):
    def setUp(self):
        cache.clear()

    def post_json(self, url, payload=None, **extra):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json", **extra)

    def patch_json(self, url, payload):
        return self.client.patch(url, data=json.dumps(payload), content_type="application/json")


class AuthApiTests(_ApiTestCase):
    def test_register_student_logs_in_and_me_reports_role(self):
        resp = self.post_json(
            "/api/auth/register/student",
            {"email": " Ada@Example.org ", "password": PASSWORD, "name": "Ada Lovelace"},
        )
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body["user"]["email"], "ada@example.org")
        self.assertEqual(body["user"]["role"], "student")
        self.assertEqual(body["user"]["name"], "Ada Lovelace")
        self.assertNotIn("otp_required", body)

        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["user"]["email"], "ada@example.org")

    def test_register_instructor_is_staff(self):
        resp = self.post_json("/api/auth/register/instructor", {"email": "prof@example.org", "password": PASSWORD})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["user"]["role"], "instructor")
        self.assertFalse(resp.json()["otp_verified"])
        self.assertTrue(get_user_model().objects.get(username="prof@example.org").is_staff)

    @override_settings(STRATUM_ALLOW_INSTRUCTOR_SIGNUP=False)
    def test_instructor_signup_can_be_disabled(self):
        resp = self.post_json("/api/auth/register/instructor", {"email": "prof@example.org", "password": PASSWORD})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"], "instructor_signup_disabled")
        self.assertFalse(get_user_model().objects.filter(username="prof@example.org").exists())

    def test_register_rejects_duplicate_and_weak_passwords(self):
        _make_student()
        dup = self.post_json("/api/auth/register/student", {"email": "ADA@example.org", "password": PASSWORD})
        self.assertEqual(dup.status_code, 409)
        self.assertEqual(dup.json()["error"], "email_taken")

        weak = self.post_json("/api/auth/register/student", {"email": "bob@example.org", "password": "123"})
        self.assertEqual(weak.status_code, 400)
        self.assertEqual(weak.json()["error"], "weak_password")
        self.assertTrue(weak.json()["details"])

        bad = self.client.post("/api/auth/register/student", data="{nope", content_type="application/json")
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["error"], "bad_json")

    def test_login_logout_flow(self):
        _make_student()
        bad = self.post_json("/api/auth/login", {"email": "ada@example.org", "password": "wrong-password-1"})
        self.assertEqual(bad.status_code, 401)
        self.assertEqual(bad.json()["error"], "invalid_credentials")

        missing = self.post_json("/api/auth/login", {"email": "ada@example.org"})
        self.assertEqual(missing.status_code, 400)

        ok = self.post_json("/api/auth/login", {"email": "ADA@example.org", "password": PASSWORD})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(self.client.get("/api/auth/me").status_code, 200)

        out = self.post_json("/api/auth/logout")
        self.assertEqual(out.json(), {"ok": True})
        self.assertEqual(self.client.get("/api/auth/me").status_code, 401)

    @override_settings(STRATUM_LOGIN_RATE_LIMIT_PER_MINUTE=2)
    def test_login_is_rate_limited_per_ip(self):
        for _ in range(2):
            resp = self.post_json("/api/auth/login", {"email": "x@example.org", "password": "nope-nope-1"})
            self.assertEqual(resp.status_code, 401)
        blocked = self.post_json("/api/auth/login", {"email": "x@example.org", "password": "nope-nope-1"})
        self.assertEqual(blocked.status_code, 429)
        self.assertEqual(blocked.json()["error"], "rate_limited")

    def test_csrf_endpoint_returns_token(self):
        resp = self.client.get("/api/auth/csrf")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["csrfToken"])


class InstructorCourseApiTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor()
        self.other = _make_instructor("other@example.org")
        self.student = _make_student()
        self.client.force_login(self.instructor)

    def test_create_list_update_delete_course(self):
        created = self.post_json(
            "/api/instructor/courses",
            {
                "title": "  Intro to Botany ",
                "category": "Science",
                "structure": {"overview": "Hi", "lessons": [{"title": "Seeds", "content": "..."}]},
            },
        )
        self.assertEqual(created.status_code, 201)
        course = created.json()["course"]
        self.assertEqual(course["title"], "Intro to Botany")
        self.assertEqual(course["status"], "draft")
        self.assertRegex(course["access_code"], r"^[A-Z0-9]{6}$")
        lesson_id = course["structure"]["lessons"][0]["id"]
        self.assertTrue(lesson_id)
        self.assertTrue(AuditEvent.objects.filter(action="course.create", actor_user=self.instructor).exists())

        listing = self.client.get("/api/instructor/courses")
        self.assertEqual([row["id"] for row in listing.json()["courses"]], [course["id"]])
        self.assertNotIn("structure", listing.json()["courses"][0])

        updated = self.patch_json(
            f"/api/instructor/courses/{course['id']}",
            {"status": "published", "structure": {"lessons": [{"id": lesson_id, "title": "Seeds v2"}]}},
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(sorted(updated.json()["changed"]), ["status", "structure"])
        self.assertEqual(updated.json()["course"]["structure"]["lessons"][0]["id"], lesson_id)

        deleted = self.client.delete(f"/api/instructor/courses/{course['id']}")
        self.assertEqual(deleted.json(), {"ok": True, "deleted": course["id"]})
        self.assertFalse(Course.objects.filter(id=course["id"]).exists())

    def test_create_course_requires_title(self):
        resp = self.post_json("/api/instructor/courses", {"description": "no title"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "missing_title")

    def test_invalid_status_is_rejected(self):
        course = _make_course(self.instructor)
        resp = self.patch_json(f"/api/instructor/courses/{course.id}", {"status": "hidden"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "invalid_status")

    def test_courses_are_scoped_to_owner(self):
        course = _make_course(self.other)
        resp = self.client.get(f"/api/instructor/courses/{course.id}")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "course_not_found")
        self.assertEqual(self.client.get("/api/instructor/courses").json()["courses"], [])

    def test_superuser_sees_all_courses(self):
        admin = get_user_model().objects.create_superuser(username="root", password=PASSWORD, email="root@example.org")
        course = _make_course(self.other)
        self.client.force_login(admin)
        resp = self.client.get(f"/api/instructor/courses/{course.id}")
        self.assertEqual(resp.status_code, 200)

    def test_role_gates(self):
        self.client.logout()
        self.assertEqual(self.client.get("/api/instructor/courses").status_code, 401)
        self.client.force_login(self.student)
        resp = self.client.get("/api/instructor/courses")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"], "instructor_required")

        self.client.force_login(self.instructor)
        resp = self.client.get("/api/student/courses")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"], "student_required")

    def test_regenerate_course_code(self):
        course = _make_course(self.instructor)
        resp = self.post_json(f"/api/instructor/courses/{course.id}/access-code")
        self.assertEqual(resp.status_code, 200)
        course.refresh_from_db()
        self.assertEqual(resp.json()["access_code"], course.access_code)
        self.assertNotEqual(course.access_code, "BOT234")

    def test_structure_change_refreshes_enrollment_progress(self):
        course = _make_course(self.instructor)
        enrollment = Enrollment.objects.create(course=course, student=self.student)
        LessonCompletion.objects.create(student=self.student, course=course, lesson_id="l1")

        resp = self.patch_json(
            f"/api/instructor/courses/{course.id}",
            {"structure": {"lessons": [{"id": "l1", "title": "Seeds"}]}},
        )
        self.assertEqual(resp.status_code, 200)
        enrollment.refresh_from_db()
        self.assertEqual(enrollment.progress, 100)
        self.assertEqual(enrollment.total_lessons, 1)


class EnrollmentApiTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor()
        self.student = _make_student(first_name="Ada", last_name="Lovelace")
        self.course = _make_course(self.instructor)

    def test_invite_then_student_claims_with_invite_code(self):
        self.client.force_login(self.instructor)
        invited = self.post_json(f"/api/instructor/courses/{self.course.id}/enrollments", {"email": "ada@example.org"})
        self.assertEqual(invited.status_code, 201)
        invite = invited.json()["enrollment"]
        self.assertEqual(invite["status"], "invited")
        self.assertEqual(invite["method"], "instructor")
        self.assertNotEqual(invite["access_code"], self.course.access_code)

        again = self.post_json(f"/api/instructor/courses/{self.course.id}/enrollments", {"email": "ada@example.org"})
        self.assertEqual(again.status_code, 409)

        self.client.force_login(self.student)
        resp = self.post_json("/api/student/enroll", {"access_code": invite["access_code"].lower()})
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["enrollment"]["id"], invite["id"])
        self.assertEqual(body["enrollment"]["status"], "active")
        self.assertNotIn("access_code", body["enrollment"])
        self.assertEqual(body["course"]["id"], self.course.id)

    def test_student_joins_with_course_code_and_repeat_is_conflict(self):
        self.client.force_login(self.student)
        first = self.post_json("/api/student/enroll", {"code": "bot234"})
        self.assertEqual(first.status_code, 201)
        second = self.post_json("/api/student/enroll", {"access_code": "BOT234"})
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["error"], "already_enrolled")

        unknown = self.post_json("/api/student/enroll", {"access_code": "ZZZZZZ"})
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(unknown.json()["error"], "invalid_code")

        courses = self.client.get("/api/student/courses").json()["courses"]
        self.assertEqual(len(courses), 1)
        self.assertEqual(courses[0]["course"]["title"], "Botany")
        self.assertEqual(courses[0]["course"]["lesson_count"], 2)

    @override_settings(STRATUM_ENROLL_RATE_LIMIT_PER_MINUTE=1)
    def test_enroll_is_rate_limited(self):
        self.client.force_login(self.student)
        self.post_json("/api/student/enroll", {"access_code": "ZZZZZZ"})
        resp = self.post_json("/api/student/enroll", {"access_code": "BOT234"})
        self.assertEqual(resp.status_code, 429)
        self.assertFalse(Enrollment.objects.filter(student=self.student).exists())

    def test_instructor_lists_rotates_and_removes_enrollments(self):
        enrollment = Enrollment.objects.create(course=self.course, student=self.student)
        self.client.force_login(self.instructor)
        listing = self.client.get(f"/api/instructor/courses/{self.course.id}/enrollments")
        self.assertEqual(listing.json()["enrollments"][0]["student_name"], "Ada Lovelace")

        rotated = self.post_json(f"/api/instructor/courses/{self.course.id}/enrollments/{enrollment.id}/access-code")
        self.assertEqual(rotated.status_code, 200)
        self.assertRegex(rotated.json()["access_code"], r"^[A-Z0-9]{6}$")

        removed = self.client.delete(f"/api/instructor/courses/{self.course.id}/enrollments/{enrollment.id}")
        self.assertEqual(removed.status_code, 200)
        self.assertFalse(Enrollment.objects.filter(id=enrollment.id).exists())
        self.assertTrue(AuditEvent.objects.filter(action="enrollment.remove").exists())


class StudentCourseApiTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor(first_name="Grace", last_name="Hopper")
        self.student = _make_student()
        self.course = _make_course(self.instructor)
        Enrollment.objects.create(course=self.course, student=self.student, total_lessons=2)
        self.client.force_login(self.student)

    def test_course_detail_renders_markdown(self):
        resp = self.client.get(f"/api/student/courses/{self.course.id}")
        self.assertEqual(resp.status_code, 200)
        course = resp.json()["course"]
        self.assertEqual(course["instructor_name"], "Grace Hopper")
        self.assertIn("<strong>grow</strong>", course["overview_html"])
        self.assertIn("<em>sleep</em>", course["lessons"][0]["content_html"])
        self.assertFalse(course["lessons"][0]["completed"])
        self.assertFalse(resp.json()["progress"]["completed_lesson_ids"])

    def test_course_detail_requires_enrollment(self):
        other = _make_course(self.instructor, title="Other", access_code="OTH234")
        resp = self.client.get(f"/api/student/courses/{other.id}")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "not_enrolled")

    def test_complete_lesson_is_idempotent(self):
        url = f"/api/student/courses/{self.course.id}/lessons/l1/complete"
        first = self.post_json(url)
        self.assertEqual(first.status_code, 201)
        self.assertTrue(first.json()["created"])
        self.assertEqual(first.json()["progress"]["progress"], 50)

        second = self.post_json(url)
        self.assertEqual(second.status_code, 200)
        self.assertFalse(second.json()["created"])
        self.assertEqual(second.json()["completed_at"], first.json()["completed_at"])
        self.assertEqual(LessonCompletion.objects.filter(student=self.student).count(), 1)

        missing = self.post_json(f"/api/student/courses/{self.course.id}/lessons/nope/complete")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"], "lesson_not_found")

        overall = self.client.get("/api/student/progress").json()["enrollments"]
        self.assertEqual(overall[0]["completed_lessons"], 1)
        self.assertEqual(overall[0]["progress"], 50)


class TaskApiTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor()
        self.student = _make_student()
        self.course = _make_course(self.instructor)
        Enrollment.objects.create(course=self.course, student=self.student)

    def test_personal_tasks(self):
        self.client.force_login(self.instructor)
        created = self.post_json("/api/instructor/tasks", {"title": "Grade quizzes", "due_date": "2026-10-20"})
        self.assertEqual(created.status_code, 201)
        task_id = created.json()["task"]["id"]

        toggled = self.post_json(f"/api/instructor/tasks/{task_id}/toggle")
        self.assertTrue(toggled.json()["task"]["completed"])
        completed = self.client.get("/api/instructor/tasks?filter=completed").json()["tasks"]
        self.assertEqual([row["id"] for row in completed], [task_id])

        bad_filter = self.client.get("/api/instructor/tasks?filter=later")
        self.assertEqual(bad_filter.status_code, 400)
        self.assertEqual(bad_filter.json()["error"], "invalid_filter")

        self.assertEqual(self.client.delete(f"/api/instructor/tasks/{task_id}").status_code, 200)
        self.assertFalse(Task.objects.filter(id=task_id).exists())

    def test_course_task_assignment_and_student_completion(self):
        self.client.force_login(self.instructor)
        assigned = self.post_json(
            f"/api/instructor/courses/{self.course.id}/tasks",
            {"title": "Read chapter 1", "due_date": "2026-10-20", "due_time": "17:00"},
        )
        self.assertEqual(assigned.status_code, 201)
        self.assertEqual(assigned.json()["task"]["assigned_count"], 1)
        toggle = self.post_json(f"/api/instructor/tasks/{assigned.json()['task']['id']}/toggle")
        self.assertEqual(toggle.status_code, 409)

        self.client.force_login(self.student)
        tasks = self.client.get("/api/student/tasks").json()["tasks"]
        self.assertEqual(len(tasks), 1)
        resp = self.patch_json(f"/api/student/tasks/{tasks[0]['id']}", {"completed": True})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["task"]["completed"])
        missing = self.patch_json(f"/api/student/tasks/{tasks[0]['id']}", {})
        self.assertEqual(missing.status_code, 400)
        for value in ("false", 0, None):
            invalid = self.patch_json(f"/api/student/tasks/{tasks[0]['id']}", {"completed": value})
            self.assertEqual(invalid.status_code, 400)
            self.assertEqual(invalid.json()["error"], "invalid_completed")
        self.assertTrue(StudentTask.objects.get(id=tasks[0]["id"]).completed)

        self.client.force_login(self.instructor)
        listing = self.client.get(f"/api/instructor/courses/{self.course.id}/tasks").json()
        self.assertEqual(listing["stats"]["completed_tasks"], 1)
        self.assertEqual(listing["tasks"][0]["completed_count"], 1)
        self.assertEqual(listing["tasks"][0]["completion_rate"], 100)

    def test_assign_with_empty_selection_fans_out_to_all_students(self):
        other = _make_student("bob@example.org")
        Enrollment.objects.create(course=self.course, student=other)
        self.client.force_login(self.instructor)
        resp = self.post_json(
            f"/api/instructor/courses/{self.course.id}/tasks",
            {"title": "Lab", "student_ids": []},
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["task"]["assigned_count"], 2)
        self.assertEqual(StudentTask.objects.filter(task_id=resp.json()["task"]["id"]).count(), 2)

    def test_assign_without_students_is_rejected(self):
        empty = _make_course(self.instructor, title="Empty", access_code="EMP234")
        self.client.force_login(self.instructor)
        resp = self.post_json(f"/api/instructor/courses/{empty.id}/tasks", {"title": "Nobody"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "no_enrolled_students")
        self.assertFalse(Task.objects.filter(course=empty).exists())

    def test_student_cannot_update_someone_elses_task(self):
        other = _make_student("bob@example.org")
        Enrollment.objects.create(course=self.course, student=other)
        self.client.force_login(self.instructor)
        self.post_json(f"/api/instructor/courses/{self.course.id}/tasks", {"title": "Lab"})
        bobs = StudentTask.objects.get(student=other)

        self.client.force_login(self.student)
        resp = self.patch_json(f"/api/student/tasks/{bobs.id}", {"completed": True})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"], "not_task_owner")

    def test_stats_endpoints(self):
        self.client.force_login(self.instructor)
        days = self.client.get("/api/instructor/stats/task-completion?date=2026-10-14").json()["days"]
        self.assertEqual(days[0]["iso_date"], "2026-10-12")
        self.assertEqual(len(days), 7)
        bad = self.client.get("/api/instructor/stats/task-completion?date=soon")
        self.assertEqual(bad.status_code, 400)

        engagement = self.client.get("/api/instructor/stats/engagement").json()
        self.assertEqual(len(engagement["lesson_completions"]), 7)
        self.assertEqual(engagement["most_active_students"], [])


class HelpRequestAndNotificationApiTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor()
        self.student = _make_student()
        self.course = _make_course(self.instructor)
        self.enrollment = Enrollment.objects.create(course=self.course, student=self.student)

    def test_help_request_round_trip(self):
        self.client.force_login(self.student)
        created = self.post_json(
            "/api/student/help-requests",
            {"course_id": self.course.id, "subject": "Seeds", "message": "Why do seeds sleep?"},
        )
        self.assertEqual(created.status_code, 201)
        help_id = created.json()["help_request"]["id"]

        self.client.force_login(self.instructor)
        feed = self.client.get("/api/notifications").json()
        ids = [row["id"] for row in feed["notifications"]]
        self.assertIn(f"help-{help_id}", ids)
        self.assertIn(f"enrollment-{self.enrollment.id}", ids)
        self.assertEqual(feed["unread_count"], 2)

        pending = self.client.get("/api/instructor/help-requests?status=pending").json()["help_requests"]
        self.assertEqual(pending[0]["student"]["email"], "ada@example.org")
        responded = self.post_json(
            f"/api/instructor/help-requests/{help_id}/respond",
            {"response": "They wait for water."},
        )
        self.assertEqual(responded.status_code, 200)
        self.assertEqual(responded.json()["help_request"]["status"], "answered")
        empty = self.post_json(f"/api/instructor/help-requests/{help_id}/respond", {"response": " "})
        self.assertEqual(empty.status_code, 400)

        self.client.force_login(self.student)
        student_feed = self.client.get("/api/notifications").json()
        self.assertEqual(student_feed["unread_count"], 1)
        note = student_feed["notifications"][0]
        self.assertEqual(note["type"], "help_response")
        read = self.post_json(f"/api/notifications/{note['id']}/read")
        self.assertEqual(read.json(), {"id": note["id"], "read": True})
        self.assertEqual(self.client.get("/api/notifications/unread-count").json()["unread_count"], 0)

        resolved = self.post_json(f"/api/student/help-requests/{help_id}/resolve")
        self.assertEqual(resolved.json()["help_request"]["status"], "resolved")
        self.assertEqual(HelpRequest.objects.get(id=help_id).status, HelpRequest.STATUS_RESOLVED)

    def test_help_request_rejects_non_numeric_course_id(self):
        self.client.force_login(self.student)
        resp = self.post_json("/api/student/help-requests", {"course_id": "abc", "message": "hi"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "invalid_course")
        self.assertFalse(HelpRequest.objects.exists())

    def test_virtual_notification_read_and_read_all(self):
        Notification.objects.create(recipient=self.instructor, type="task_assigned", title="Stored")
        self.client.force_login(self.instructor)
        self.assertEqual(self.client.get("/api/notifications/unread-count").json()["unread_count"], 2)

        read = self.post_json(f"/api/notifications/enrollment-{self.enrollment.id}/read")
        self.assertEqual(read.status_code, 200)
        self.assertEqual(self.client.get("/api/notifications/unread-count").json()["unread_count"], 1)

        missing = self.post_json("/api/notifications/help-999999/read")
        self.assertEqual(missing.status_code, 404)

        all_read = self.post_json("/api/notifications/read-all")
        self.assertEqual(all_read.json(), {"ok": True, "updated": 1})
        self.assertEqual(self.client.get("/api/notifications/unread-count").json()["unread_count"], 0)

    def test_notifications_require_login(self):
        self.assertEqual(self.client.get("/api/notifications").status_code, 401)


class InstructorOTPTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor()

    def test_setup_then_confirm_marks_session_verified(self):
        self.client.force_login(self.instructor)
        setup = self.post_json("/api/instructor/2fa/setup")
        self.assertEqual(setup.status_code, 200)
        body = setup.json()
        self.assertFalse(body["already_configured"])
        self.assertTrue(body["otpauth_url"].startswith("otpauth://totp/"))
        self.assertIn("<svg", body["qr_svg"])

        bad = self.post_json("/api/instructor/2fa/confirm", {"otp_token": "12"})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["error"], "invalid_token_format")

        device = TOTPDevice.objects.get(user=self.instructor, name="instructor-primary")
        otp_value = totp(
            device.bin_key,
            step=device.step,
            t0=device.t0,
            digits=device.digits,
            drift=device.drift,
        )
        resp = self.post_json("/api/instructor/2fa/confirm", {"otp_token": f"{otp_value:0{int(device.digits)}d}"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["newly_confirmed"])
        device.refresh_from_db()
        self.assertTrue(device.confirmed)
        self.assertTrue(
            AuditEvent.objects.filter(action="instructor_2fa.enroll", target_id=str(self.instructor.id)).exists()
        )
        self.assertTrue(self.client.get("/api/auth/me").json()["otp_verified"])

    def test_confirm_without_setup_is_conflict(self):
        self.client.force_login(self.instructor)
        resp = self.post_json("/api/instructor/2fa/confirm", {"otp_token": "123456"})
        self.assertEqual(resp.status_code, 409)

    @override_settings(INSTRUCTOR_2FA_REQUIRED=True)
    def test_unverified_instructor_is_blocked_when_required(self):
        self.client.force_login(self.instructor)
        resp = self.client.get("/api/instructor/courses")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["error"], "otp_required")
        self.assertEqual(self.post_json("/api/instructor/2fa/setup").status_code, 200)

    @override_settings(INSTRUCTOR_2FA_REQUIRED=True)
    def test_verified_instructor_passes_when_required(self):
        _force_login_staff_verified(self.client, self.instructor)
        resp = self.client.get("/api/instructor/courses")
        self.assertEqual(resp.status_code, 200)


class CourseMediaApiTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor()
        self.student = _make_student()
        self.outsider = _make_student("eve@example.org")
        self.course = _make_course(self.instructor)
        Enrollment.objects.create(course=self.course, student=self.student)

    def test_upload_and_permission_checked_download(self):
        with tempfile.TemporaryDirectory() as media_root, override_settings(MEDIA_ROOT=media_root):
            self.client.force_login(self.instructor)
            resp = self.client.post(
                f"/api/instructor/courses/{self.course.id}/media",
                {"file": SimpleUploadedFile("Leaf Diagram.png", b"\x89PNG fake", content_type="image/png")},
            )
            self.assertEqual(resp.status_code, 201)
            media = resp.json()["media"]
            self.assertEqual(media["media_type"], "image")
            self.assertEqual(media["url"], f"/api/media/{media['id']}/download")
            stored = CourseMedia.objects.get(id=media["id"])
            self.assertTrue(stored.file.name.startswith(f"courses/{self.course.id}/images/"))
            self.assertTrue(Path(stored.file.path).exists())

            self.client.force_login(self.student)
            download = self.client.get(media["url"])
            self.assertEqual(download.status_code, 200)
            self.assertEqual(b"".join(download.streaming_content), b"\x89PNG fake")
            self.assertEqual(download["X-Content-Type-Options"], "nosniff")
            self.assertEqual(download["Cache-Control"], "private, no-store")
            download.close()

            self.client.force_login(self.outsider)
            self.assertEqual(self.client.get(media["url"]).status_code, 403)
            self.client.logout()
            self.assertEqual(self.client.get(media["url"]).status_code, 401)

    def test_upload_rejects_disallowed_types(self):
        with tempfile.TemporaryDirectory() as media_root, override_settings(MEDIA_ROOT=media_root):
            self.client.force_login(self.instructor)
            resp = self.client.post(
                f"/api/instructor/courses/{self.course.id}/media",
                {"file": SimpleUploadedFile("run.exe", b"MZ", content_type="application/octet-stream")},
            )
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.json()["error"], "invalid_media_type")

            missing = self.client.post(f"/api/instructor/courses/{self.course.id}/media", {})
            self.assertEqual(missing.json()["error"], "missing_file")

    @override_settings(STRATUM_MEDIA_MAX_MB=1)
    def test_upload_rejects_oversized_files(self):
        with tempfile.TemporaryDirectory() as media_root, override_settings(MEDIA_ROOT=media_root):
            self.client.force_login(self.instructor)
            resp = self.client.post(
                f"/api/instructor/courses/{self.course.id}/media",
                {"file": SimpleUploadedFile("notes.pdf", b"x" * (1024 * 1024 + 1), content_type="application/pdf")},
            )
            self.assertEqual(resp.status_code, 413)
            self.assertFalse(CourseMedia.objects.exists())

    def test_unknown_media_is_404(self):
        self.client.force_login(self.student)
        self.assertEqual(self.client.get("/api/media/999999/download").status_code, 404)


class InternalCourseGeneratedEventTests(TestCase):
    def setUp(self):
        self.url = "/internal/events/course-generated"

    @override_settings(STRATUM_INTERNAL_EVENTS_TOKEN="")
    def test_returns_503_without_configured_token(self):
        resp = self.client.post(
            self.url,
            data=json.dumps({"details": {}}),
            content_type="application/json",
            HTTP_X_STRATUM_INTERNAL_TOKEN="anything",
        )
        self.assertEqual(resp.status_code, 503)

    @override_settings(STRATUM_INTERNAL_EVENTS_TOKEN="expected-token")
    def test_rejects_invalid_token(self):
        resp = self.client.post(
            self.url,
            data=json.dumps({"details": {}}),
            content_type="application/json",
            HTTP_X_STRATUM_INTERNAL_TOKEN="wrong-token",
        )
        self.assertEqual(resp.status_code, 403)

    @override_settings(STRATUM_INTERNAL_EVENTS_TOKEN="expected-token")
    def test_appends_activity_event(self):
        payload = {
            "ip_address": "127.0.0.1",
            "details": {"request_id": "req-123", "backend": "mock", "title": "Botany"},
        }
        resp = self.client.post(
            self.url,
            data=json.dumps(payload),
            content_type="application/json",
            HTTP_AUTHORIZATION="Bearer expected-token",
        )
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json().get("ok"))
        event = ActivityEvent.objects.filter(event_type=ActivityEvent.EVENT_COURSE_GENERATED).first()
        self.assertIsNotNone(event)
        self.assertIsNone(event.course_id)
        self.assertEqual(event.source, "course_generator")
        self.assertEqual(event.details.get("request_id"), "req-123")

    @override_settings(STRATUM_INTERNAL_EVENTS_TOKEN="expected-token")
    def test_rejects_non_object_details(self):
        resp = self.client.post(
            self.url,
            data=json.dumps({"details": ["x"]}),
            content_type="application/json",
            HTTP_X_STRATUM_INTERNAL_TOKEN="expected-token",
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "invalid_details")


class StratumSecurityHeaderTests(TestCase):
    @override_settings(
        CSP_POLICY="default-src 'self'",
        CSP_REPORT_ONLY_POLICY="default-src 'self'; report-uri /__csp-report__",
        PERMISSIONS_POLICY="camera=(), microphone=()",
        SECURITY_REFERRER_POLICY="strict-origin-when-cross-origin",
        X_FRAME_OPTIONS="DENY",
    )
    def test_healthz_sets_security_headers(self):
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b"ok")
        self.assertEqual(resp["Content-Security-Policy"], "default-src 'self'")
        self.assertEqual(resp["Content-Security-Policy-Report-Only"], "default-src 'self'; report-uri /__csp-report__")
        self.assertEqual(resp["Permissions-Policy"], "camera=(), microphone=()")
        self.assertEqual(resp["Referrer-Policy"], "strict-origin-when-cross-origin")
        self.assertEqual(resp["X-Frame-Options"], "DENY")


class StratumSiteModeTests(_ApiTestCase):
    def setUp(self):
        super().setUp()
        self.instructor = _make_instructor()
        self.client.force_login(self.instructor)

    @override_settings(SITE_MODE="read-only")
    def test_read_only_blocks_writes_but_allows_reads(self):
        resp = self.post_json("/api/instructor/courses", {"title": "Blocked"})
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["error"], "site_mode_restricted")
        self.assertEqual(resp["Cache-Control"], "no-store")
        self.assertEqual(resp["Retry-After"], "120")
        self.assertFalse(Course.objects.exists())
        self.assertEqual(self.client.get("/api/instructor/courses").status_code, 200)

    @override_settings(SITE_MODE="maintenance")
    def test_maintenance_blocks_api_but_not_healthz(self):
        resp = self.client.get("/api/instructor/courses")
        self.assertEqual(resp.status_code, 503)
        self.assertIn("maintenance mode", resp.json()["message"])
        self.assertEqual(self.client.get("/healthz").status_code, 200)


class Admin2FATests(TestCase):
    def setUp(self):
        self.superuser = get_user_model().objects.create_superuser(
            username="admin",
            password=PASSWORD,
            email="admin@example.org",
        )

    def test_admin_requires_2fa_for_superuser(self):
        self.client.force_login(self.superuser)
        resp = self.client.get("/admin/", follow=False)
        self.assertEqual(resp.status_code, 302)
        self.assertIn("/admin/login/", resp["Location"])

    @override_settings(ADMIN_2FA_REQUIRED=False)
    def test_admin_allows_superuser_when_2fa_disabled(self):
        self.client.force_login(self.superuser)
        resp = self.client.get("/admin/")
        self.assertEqual(resp.status_code, 200)

    @override_settings(ADMIN_2FA_REQUIRED=False)
    def test_admin_rejects_instructors(self):
        self.client.force_login(_make_instructor())
        resp = self.client.get("/admin/", follow=False)
        self.assertEqual(resp.status_code, 302)


class CreateInstructorCommandTests(TestCase):
    def test_create_instructor_defaults_to_staff_non_superuser(self):
        out = StringIO()
        call_command(
            "create_instructor",
            username="prof@example.org",
            password=PASSWORD,
            first_name="Grace",
            stdout=out,
        )
        user = get_user_model().objects.get(username="prof@example.org")
        self.assertTrue(user.is_staff)
        self.assertFalse(user.is_superuser)
        self.assertTrue(user.is_active)
        self.assertEqual(user.email, "prof@example.org")
        self.assertEqual(user.first_name, "Grace")
        self.assertIn("Created instructor", out.getvalue())

    def test_existing_user_without_update_errors(self):
        _make_instructor()
        with self.assertRaises(CommandError):
            call_command("create_instructor", username="prof@example.org", password="newpass")

    def test_update_changes_password_and_status(self):
        user = _make_student("prof@example.org")
        out = StringIO()
        call_command(
            "create_instructor",
            username="prof@example.org",
            password="new-horse-battery-7",
            update=True,
            inactive=True,
            stdout=out,
        )
        user.refresh_from_db()
        self.assertTrue(user.is_staff)
        self.assertFalse(user.is_active)
        self.assertTrue(user.check_password("new-horse-battery-7"))
        self.assertIn("Updated instructor", out.getvalue())


class BootstrapAdminOTPCommandTests(TestCase):
    def test_creates_totp_device_for_superuser(self):
        get_user_model().objects.create_superuser(username="admin", password=PASSWORD, email="admin@example.org")
        out = StringIO()
        call_command("bootstrap_admin_otp", username="admin", stdout=out)
        self.assertTrue(TOTPDevice.objects.filter(user__username="admin", name="admin-primary").exists())
        self.assertIn("Created TOTP device", out.getvalue())

    def test_rejects_instructor_without_flag(self):
        _make_instructor()
        with self.assertRaises(CommandError):
            call_command("bootstrap_admin_otp", username="prof@example.org")

    def test_instructor_flag_allows_staff(self):
        _make_instructor()
        out = StringIO()
        call_command(
            "bootstrap_admin_otp",
            username="prof@example.org",
            instructor=True,
            device_name="instructor-primary",
            stdout=out,
        )
        self.assertTrue(TOTPDevice.objects.filter(user__username="prof@example.org", name="instructor-primary").exists())

    @override_settings(INSTRUCTOR_2FA_DEVICE_NAME="prof-phone")
    def test_instructor_device_name_defaults_to_setting_and_rotates(self):
        _make_instructor()
        call_command("bootstrap_admin_otp", username="prof@example.org", instructor=True, stdout=StringIO())
        first_key = TOTPDevice.objects.get(user__username="prof@example.org", name="prof-phone").key

        with self.assertRaises(CommandError):
            call_command("bootstrap_admin_otp", username="prof@example.org", instructor=True, stdout=StringIO())
        call_command("bootstrap_admin_otp", username="prof@example.org", instructor=True, rotate=True, stdout=StringIO())

        devices = TOTPDevice.objects.filter(user__username="prof@example.org")
        self.assertEqual(devices.count(), 1)
        self.assertNotEqual(devices.get().key, first_key)


class ActivityRetentionCommandTests(TestCase):
    def setUp(self):
        self.student = _make_student()
        self.course = _make_course(_make_instructor())
        old = ActivityEvent.objects.create(course=self.course, student=self.student, event_type="enrollment")
        ActivityEvent.objects.filter(id=old.id).update(created_at=timezone.now() - timedelta(days=120))
        ActivityEvent.objects.create(course=self.course, student=self.student, event_type="lesson_completion")

    def test_dry_run_keeps_rows(self):
        out = StringIO()
        call_command("prune_activity_events", older_than_days=90, dry_run=True, stdout=out)
        self.assertIn("Would delete events: 1", out.getvalue())
        self.assertEqual(ActivityEvent.objects.count(), 2)

    def test_prune_deletes_only_old_rows(self):
        call_command("prune_activity_events", older_than_days=90, stdout=StringIO())
        self.assertEqual(list(ActivityEvent.objects.values_list("event_type", flat=True)), ["lesson_completion"])

    def test_requires_positive_days(self):
        with self.assertRaises(CommandError):
            call_command("prune_activity_events", older_than_days=0)


class NotifyOverdueTasksCommandTests(TestCase):
    def test_command_notifies_each_overdue_task_once(self):
        instructor = _make_instructor()
        student = _make_student()
        course = _make_course(instructor)
        task = Task.objects.create(instructor=instructor, course=course, type=Task.TYPE_COURSE, title="Essay")
        StudentTask.objects.create(
            task=task,
            student=student,
            course=course,
            title="Essay",
            due_date=timezone.now() - timedelta(days=1),
        )

        out = StringIO()
        call_command("notify_overdue_tasks", dry_run=True, stdout=out)
        self.assertIn("Would notify overdue tasks: 1", out.getvalue())
        self.assertFalse(Notification.objects.exists())

        out = StringIO()
        call_command("notify_overdue_tasks", stdout=out)
        self.assertIn("Notified overdue tasks: 1", out.getvalue())
        call_command("notify_overdue_tasks", stdout=StringIO())
        self.assertEqual(Notification.objects.filter(recipient=student, type="overdue_task").count(), 1)


class ImportCourseCommandTests(TestCase):
    def setUp(self):
        self.instructor = _make_instructor()

    def test_imports_yaml_manifest_with_lesson_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "lessons").mkdir()
            (root / "lessons" / "02.md").write_text("Loops repeat work.", encoding="utf-8")
            (root / "course.yaml").write_text(
                "title: Intro to Python\n"
                "category: Programming\n"
                "overview: Learn Python.\n"
                "lessons:\n"
                "  - title: 'Lesson 1: Variables'\n"
                "    content: Variables hold values.\n"
                "  - title: 'Lesson 2: Loops'\n"
                "    file: lessons/02.md\n",
                encoding="utf-8",
            )
            out = StringIO()
            call_command(
                "import_course",
                str(root / "course.yaml"),
                instructor="prof@example.org",
                status="published",
                stdout=out,
            )

        course = Course.objects.get(title="Intro to Python")
        self.assertEqual(course.instructor, self.instructor)
        self.assertEqual(course.status, Course.STATUS_PUBLISHED)
        self.assertEqual(course.category, "Programming")
        self.assertEqual([lesson["content"] for lesson in course.lessons()], ["Variables hold values.", "Loops repeat work."])
        self.assertIn("Imported course", out.getvalue())

    def test_imports_generated_outline_markdown(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "outline.md"
            path.write_text(
                "# Botany Basics\n**Category:** Science\n## Course Overview\nPlants.\n## Lesson 1: Seeds\nSeeds sleep.\n",
                encoding="utf-8",
            )
            call_command("import_course", str(path), instructor="prof@example.org", stdout=StringIO())

        course = Course.objects.get(title="Botany Basics")
        self.assertEqual(course.category, "Science")
        self.assertEqual(course.structure["overview"], "Plants.")
        self.assertEqual(course.lessons()[0]["title"], "Lesson 1: Seeds")

    def test_rejects_lesson_file_outside_manifest_dir(self):
        with tempfile.TemporaryDirectory() as tmp:
            manifest = Path(tmp) / "course.yaml"
            manifest.write_text("title: Sneaky\nlessons:\n  - title: x\n    file: ../../etc/passwd\n", encoding="utf-8")
            with self.assertRaises(CommandError):
                call_command("import_course", str(manifest), instructor="prof@example.org")
        self.assertFalse(Course.objects.filter(title="Sneaky").exists())

    def test_rejects_non_instructor(self):
        _make_student()
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "outline.md"
            path.write_text("# T\n## Lesson 1: A\nB\n", encoding="utf-8")
            with self.assertRaises(CommandError):
                call_command("import_course", str(path), instructor="ada@example.org")
