from datetime import date, datetime, time, timedelta
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from common.course_outline import (
    DEFAULT_LESSON_TITLE,
    build_course_prompts,
    parse_outline,
)
from django.core.cache import cache

from common.request_safety import fixed_window_allow, parse_client_ip

from .errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from .models import (
    ActivityEvent,
    Course,
    Enrollment,
    HelpRequest,
    LessonCompletion,
    Notification,
    NotificationRead,
    StudentTask,
)
from .services.access_codes import (
    ACCESS_CODE_ALPHABET,
    allocate_unique_code,
    generate_access_code,
    normalize_access_code,
    validate_access_code_format,
)
from .services.courses import normalize_structure
from .services.engagement import (
    course_lessons_completed,
    day_label,
    lesson_completion_by_day,
    most_active_students,
    student_lessons_completed,
)
from .services.enrollment import enroll_student, enroll_with_access_code
from .services.help_requests import create_help_request, respond_to_help_request
from .services.lesson_content import render_lesson_html
from .services.notifications import (
    create_overdue_task_notifications,
    instructor_notifications,
    instructor_unread_count,
    mark_all_read,
    mark_notification_read,
)
from .services.people import UNKNOWN_STUDENT
from .services.progress import is_lesson_completed, mark_lesson_completed, percent
from .services.task_stats import student_names, task_completion_by_day
from .services.tasks import (
    assign_course_task,
    course_task_stats,
    create_personal_task,
    list_tasks,
    resolve_due_date,
    student_task,
    student_tasks,
    toggle_task_completion,
    update_student_task_completion,
)
from .services.upload_policy import check_media_upload, infer_media_type

SAMPLE_OUTLINE = """# Intro to Botany
**Category:** Science
## Course Overview
Plants are everywhere.
This course explains how they grow.

## Lesson 1: Seeds
Seeds hold an embryo.

Water wakes them up.
## lesson 2: Roots
Roots anchor the plant.
"""


class AccessCodeServiceTests(SimpleTestCase):
    def test_generate_access_code_uses_unambiguous_alphabet(self):
        code = generate_access_code()
        self.assertEqual(len(code), 6)
        self.assertTrue(all(ch in ACCESS_CODE_ALPHABET for ch in code))
        self.assertEqual(len(generate_access_code(8)), 8)

    def test_normalize_and_validate_access_code(self):
        self.assertEqual(normalize_access_code("  k7q f3m "), "K7QF3M")
        self.assertTrue(validate_access_code_format("K7QF3M"))
        self.assertTrue(validate_access_code_format("ABCD2345"))
        self.assertFalse(validate_access_code_format("ABC12"))
        self.assertFalse(validate_access_code_format("ABCDEFGHJ"))
        self.assertFalse(validate_access_code_format("abc123"))

    def test_allocate_unique_code_skips_taken_codes(self):
        taken = []

        def exists(code):
            taken.append(code)
            return len(taken) < 3

        code = allocate_unique_code(exists)
        self.assertEqual(code, taken[-1])
        self.assertEqual(len(taken), 3)

    def test_allocate_unique_code_raises_after_attempts(self):
        with self.assertRaises(RuntimeError):
            allocate_unique_code(lambda code: True, attempts=3)


class _FailingCache:
    def add(self, key, value, timeout=None):
        raise RuntimeError("cache down")

    def incr(self, key):
        raise RuntimeError("cache down")


class RequestSafetyRateLimitResilienceTests(SimpleTestCase):
    def test_fixed_window_allow_fails_open_when_cache_backend_errors(self):
        allowed = fixed_window_allow(
            "rl:test:key",
            limit=1,
            window_seconds=60,
            cache_backend=_FailingCache(),
            request_id="req-cache-down",
        )
        self.assertTrue(allowed)

    def test_fixed_window_allow_allows_limit_hits_then_blocks(self):
        cache.clear()
        results = [
            fixed_window_allow("rl:test:window", limit=2, window_seconds=60, cache_backend=cache)
            for _ in range(3)
        ]
        self.assertEqual(results, [True, True, False])

    def test_parse_client_ip_ignores_forwarded_header_unless_trusted(self):
        meta = {"REMOTE_ADDR": "10.0.0.5", "HTTP_X_FORWARDED_FOR": "203.0.113.9, 10.0.0.1"}
        self.assertEqual(parse_client_ip(meta), "10.0.0.5")
        self.assertEqual(parse_client_ip(meta, trust_proxy_headers=True), "203.0.113.9")
        self.assertEqual(parse_client_ip(meta, trust_proxy_headers=True, xff_index=-1), "10.0.0.1")
        self.assertEqual(parse_client_ip({"REMOTE_ADDR": "not-an-ip"}), "unknown")


class CourseOutlineTests(SimpleTestCase):
    def test_parse_outline_splits_overview_and_lessons(self):
        parsed = parse_outline(SAMPLE_OUTLINE)
        self.assertEqual(parsed["overview"], "Plants are everywhere.\nThis course explains how they grow.")
        self.assertEqual([lesson["title"] for lesson in parsed["lessons"]], ["Lesson 1: Seeds", "lesson 2: Roots"])
        self.assertEqual(parsed["lessons"][0]["content"], "Seeds hold an embryo.\nWater wakes them up.")
        self.assertEqual(parsed["lessons"][1]["content"], "Roots anchor the plant.")

    def test_parse_outline_without_lessons_adds_default_lesson(self):
        parsed = parse_outline("# Title\nJust some prose.")
        self.assertEqual(parsed["overview"], "Just some prose.")
        self.assertEqual(len(parsed["lessons"]), 1)
        self.assertEqual(parsed["lessons"][0]["title"], DEFAULT_LESSON_TITLE)

    def test_parse_outline_falls_back_when_scanner_fails(self):
        with patch("common.course_outline._scan", side_effect=ValueError("boom")):
            parsed = parse_outline("raw text")
        self.assertEqual(parsed["overview"], "raw text")
        self.assertEqual(parsed["lessons"][0]["title"], DEFAULT_LESSON_TITLE)

    def test_build_course_prompts_defaults_category(self):
        system_prompt, user_prompt = build_course_prompts("Botany", "Plants 101", "")
        self.assertIn("expert course creator", system_prompt)
        self.assertIn('titled "Botany"', user_prompt)
        self.assertIn('category: "General"', user_prompt)
        self.assertIn("**Category:** General", user_prompt)


class LessonContentServiceTests(SimpleTestCase):
    def test_render_strips_script_and_keeps_formatting(self):
        html = render_lesson_html("**Bold** and *it*<script>alert(1)</script>\n\n## Heading")
        self.assertIn("<strong>Bold</strong>", html)
        self.assertIn("<em>it</em>", html)
        self.assertIn("<h2>Heading</h2>", html)
        self.assertNotIn("<script", html)

    def test_render_links_open_in_new_tab(self):
        html = render_lesson_html("[docs](https://example.org/docs)")
        self.assertIn('href="https://example.org/docs"', html)
        self.assertIn('target="_blank"', html)
        self.assertIn('rel="noopener"', html)

    def test_render_blocks_images_by_default(self):
        html = render_lesson_html("![diagram](https://cdn.example.org/d.png)")
        self.assertNotIn("<img", html)

    @override_settings(
        STRATUM_MARKDOWN_ALLOW_IMAGES=True,
        STRATUM_MARKDOWN_ALLOWED_IMAGE_HOSTS=["cdn.example.org"],
    )
    def test_render_allows_images_for_allowed_host_only(self):
        allowed = render_lesson_html("![diagram](https://cdn.example.org/d.png)")
        blocked = render_lesson_html("![diagram](https://evil.example.org/d.png)")
        self.assertIn('src="https://cdn.example.org/d.png"', allowed)
        self.assertNotIn("evil.example.org", blocked)

    def test_render_empty_text_returns_empty_string(self):
        self.assertEqual(render_lesson_html("   "), "")


class UploadPolicyServiceTests(SimpleTestCase):
    def test_infer_media_type_from_extension(self):
        self.assertEqual(infer_media_type("Diagram.PNG"), "image")
        self.assertEqual(infer_media_type("clip.mp4"), "video")
        self.assertEqual(infer_media_type("notes.pdf"), "document")
        self.assertEqual(infer_media_type("logo.svg"), "")

    def test_check_media_upload_reports_first_problem(self):
        self.assertEqual(check_media_upload(media_type="image", filename="a.png", size_bytes=10, max_mb=1), "")
        self.assertEqual(
            check_media_upload(media_type="audio", filename="a.mp3", size_bytes=10, max_mb=1),
            "invalid_media_type",
        )
        self.assertEqual(
            check_media_upload(media_type="image", filename="a.pdf", size_bytes=10, max_mb=1),
            "extension_not_allowed",
        )
        self.assertEqual(check_media_upload(media_type="image", filename="a.png", size_bytes=0, max_mb=1), "empty_file")
        self.assertEqual(
            check_media_upload(media_type="image", filename="a.png", size_bytes=2 * 1024 * 1024, max_mb=1),
            "file_too_large",
        )


class StructureAndMathHelperTests(SimpleTestCase):
    def test_normalize_structure_keeps_ids_and_fills_gaps(self):
        structure = normalize_structure(
            '{"overview": "Hi", "lessons": [{"id": "a1", "title": "One"}, {"id": "a1"}, {"content": "x"}, "junk"]}'
        )
        ids = [lesson["id"] for lesson in structure["lessons"]]
        self.assertEqual(structure["overview"], "Hi")
        self.assertEqual(len(ids), 3)
        self.assertEqual(ids[0], "a1")
        self.assertEqual(len(set(ids)), 3)
        self.assertEqual(structure["lessons"][1]["title"], "Lesson 2")

    def test_normalize_structure_rejects_bad_input(self):
        with self.assertRaises(ValidationFailed):
            normalize_structure("{not json")
        with self.assertRaises(ValidationFailed):
            normalize_structure({"lessons": "nope"})
        self.assertEqual(normalize_structure(None), {"overview": "", "lessons": []})

    def test_percent_rounds_half_up(self):
        self.assertEqual(percent(1, 3), 33)
        self.assertEqual(percent(2, 3), 67)
        self.assertEqual(percent(1, 8), 13)
        self.assertEqual(percent(3, 0), 0)

    def test_day_label_has_no_zero_padding(self):
        self.assertEqual(day_label(date(2026, 10, 8)), "Oct 8")

    def test_resolve_due_date_defaults_to_end_of_day(self):
        due = timezone.localtime(resolve_due_date("2026-10-20"))
        self.assertEqual((due.date(), due.time()), (date(2026, 10, 20), time(23, 59, 59)))

        due = timezone.localtime(resolve_due_date("2026-10-20", "09:30"))
        self.assertEqual(due.time(), time(9, 30))

        due = timezone.localtime(resolve_due_date(None, default_tomorrow=True))
        self.assertEqual(due.date(), timezone.localdate() + timedelta(days=1))
        self.assertIsNone(resolve_due_date(""))

    def test_resolve_due_date_rejects_garbage(self):
        with self.assertRaises(ValidationFailed):
            resolve_due_date("next tuesday")
        with self.assertRaises(ValidationFailed):
            resolve_due_date("2026-10-20", "25:99")


class _CourseFixtureMixin:
    def _make_fixture(self):
        User = get_user_model()
        self.instructor = User.objects.create_user(
            username="prof@example.org",
            email="prof@example.org",
            password="pw12345",
            first_name="Grace",
            last_name="Hopper",
            is_staff=True,
        )
        self.student = User.objects.create_user(
            username="ada@example.org",
            email="ada@example.org",
            password="pw12345",
            first_name="Ada",
            last_name="Lovelace",
        )
        self.course = Course.objects.create(
            instructor=self.instructor,
            title="Botany",
            access_code="BOT234",
            status=Course.STATUS_PUBLISHED,
            structure={
                "overview": "Plants",
                "lessons": [
                    {"id": "l1", "title": "Seeds", "content": "Seeds"},
                    {"id": "l2", "title": "Roots", "content": "Roots"},
                ],
            },
        )

    def _enroll(self, student=None, course=None):
        return Enrollment.objects.create(
            course=course or self.course,
            student=student or self.student,
            status=Enrollment.STATUS_ACTIVE,
            method=Enrollment.METHOD_ACCESS_CODE,
        )


class EnrollmentServiceTests(_CourseFixtureMixin, TestCase):
    def setUp(self):
        self._make_fixture()

    def test_course_code_creates_active_enrollment_and_event(self):
        enrollment = enroll_with_access_code(self.student, " bot234 ")
        self.assertEqual(enrollment.status, Enrollment.STATUS_ACTIVE)
        self.assertEqual(enrollment.method, Enrollment.METHOD_ACCESS_CODE)
        self.assertEqual(enrollment.total_lessons, 2)
        self.assertTrue(
            ActivityEvent.objects.filter(event_type=ActivityEvent.EVENT_ENROLLMENT, student=self.student).exists()
        )

    def test_repeat_join_is_rejected(self):
        enroll_with_access_code(self.student, "BOT234")
        with self.assertRaises(Conflict) as ctx:
            enroll_with_access_code(self.student, "BOT234")
        self.assertEqual(ctx.exception.code, "already_enrolled")

    def test_invite_code_claims_invite_in_place(self):
        invite = enroll_student(self.course, "  Ada@Example.org ")
        self.assertEqual(invite.email, "ada@example.org")
        self.assertEqual(invite.status, Enrollment.STATUS_INVITED)

        claimed = enroll_with_access_code(self.student, invite.access_code)
        self.assertEqual(claimed.id, invite.id)
        self.assertEqual(claimed.student_id, self.student.id)
        self.assertEqual(claimed.status, Enrollment.STATUS_ACTIVE)
        self.assertIsNotNone(claimed.claimed_at)
        self.assertEqual(Enrollment.objects.filter(course=self.course).count(), 1)

    def test_claiming_old_invite_stamps_enrollment_time(self):
        invite = enroll_student(self.course, "ada@example.org")
        three_days_ago = timezone.now() - timedelta(days=3)
        Enrollment.objects.filter(id=invite.id).update(enrolled_at=three_days_ago)

        claimed = enroll_with_access_code(self.student, invite.access_code)
        claimed.refresh_from_db()
        self.assertGreater(claimed.enrolled_at, three_days_ago)
        self.assertEqual(claimed.enrolled_at, claimed.claimed_at)
        self.assertEqual(instructor_unread_count(self.instructor), 1)
        row = next(
            row for row in instructor_notifications(self.instructor) if row["id"] == f"enrollment-{claimed.id}"
        )
        self.assertEqual(row["created_at"], claimed.enrolled_at.isoformat())

    def test_course_code_claims_pending_invite_for_same_email(self):
        invite = enroll_student(self.course, "ada@example.org")
        enrollment = enroll_with_access_code(self.student, "BOT234")
        self.assertEqual(enrollment.id, invite.id)
        self.assertEqual(Enrollment.objects.filter(course=self.course).count(), 1)

    def test_invite_claimed_by_someone_else_is_rejected(self):
        invite = enroll_student(self.course, "ada@example.org")
        enroll_with_access_code(self.student, invite.access_code)
        other = get_user_model().objects.create_user(username="bob@example.org", email="bob@example.org")
        with self.assertRaises(Conflict) as ctx:
            enroll_with_access_code(other, invite.access_code)
        self.assertEqual(ctx.exception.code, "already_claimed")

    def test_duplicate_invite_and_bad_codes(self):
        enroll_student(self.course, "ada@example.org")
        with self.assertRaises(Conflict):
            enroll_student(self.course, "ADA@example.org")
        with self.assertRaises(ValidationFailed) as bad_format:
            enroll_with_access_code(self.student, "12")
        self.assertEqual(bad_format.exception.code, "invalid_format")
        with self.assertRaises(NotFound) as unknown:
            enroll_with_access_code(self.student, "ZZZZZZ")
        self.assertEqual(unknown.exception.code, "invalid_code")

    def test_archived_course_cannot_be_joined(self):
        self.course.status = Course.STATUS_ARCHIVED
        self.course.save(update_fields=["status"])
        with self.assertRaises(Conflict) as ctx:
            enroll_with_access_code(self.student, "BOT234")
        self.assertEqual(ctx.exception.code, "course_archived")


class ProgressAndEngagementServiceTests(_CourseFixtureMixin, TestCase):
    def setUp(self):
        self._make_fixture()
        self.enrollment = self._enroll()

    def test_mark_lesson_completed_is_idempotent_and_updates_progress(self):
        first, created = mark_lesson_completed(self.student, self.course, "l1")
        again, created_again = mark_lesson_completed(self.student, self.course, "l1")
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, again.id)

        self.enrollment.refresh_from_db()
        self.assertEqual(self.enrollment.progress, 50)
        self.assertEqual(self.enrollment.completed_lessons, 1)
        self.assertEqual(self.enrollment.total_lessons, 2)
        self.assertEqual(
            ActivityEvent.objects.filter(event_type=ActivityEvent.EVENT_LESSON_COMPLETION).count(),
            1,
        )

    def test_unknown_lesson_is_rejected(self):
        with self.assertRaises(NotFound):
            mark_lesson_completed(self.student, self.course, "nope")

    def test_activity_events_are_append_only(self):
        mark_lesson_completed(self.student, self.course, "l1")
        event = ActivityEvent.objects.first()
        with self.assertRaises(ValueError):
            event.save()
        with self.assertRaises(ValueError):
            event.delete()

    def test_engagement_aggregates(self):
        other = get_user_model().objects.create_user(username="bob@example.org", email="bob@example.org")
        self._enroll(student=other)
        mark_lesson_completed(self.student, self.course, "l1")
        mark_lesson_completed(self.student, self.course, "l2")
        mark_lesson_completed(other, self.course, "l1")

        ranked = most_active_students(instructor=self.instructor)
        self.assertEqual([row["student_id"] for row in ranked], [self.student.id, other.id])
        self.assertEqual(ranked[0]["name"], "Ada Lovelace")
        self.assertEqual(ranked[0]["count"], 2)

        days = lesson_completion_by_day(instructor=self.instructor, days=7)
        self.assertEqual(len(days), 7)
        self.assertEqual(days[-1]["count"], 3)
        self.assertEqual(sum(row["count"] for row in days), 3)

    def test_completion_lookups_and_counts(self):
        other_course = Course.objects.create(instructor=self.instructor, title="Fungi", access_code="FUN234")
        self.assertFalse(is_lesson_completed(self.student, self.course, "l1"))
        mark_lesson_completed(self.student, self.course, "l1")
        LessonCompletion.objects.create(student=self.student, course=other_course, lesson_id="f1")

        self.assertTrue(is_lesson_completed(self.student, self.course, "l1"))
        self.assertFalse(is_lesson_completed(self.student, self.course, "l2"))
        self.assertFalse(is_lesson_completed(self.student, other_course, "l1"))
        self.assertEqual(student_lessons_completed(self.student), 2)
        self.assertEqual(course_lessons_completed(self.course), 1)
        self.assertEqual(course_lessons_completed(other_course), 1)

    def test_student_names_maps_unknown_ids(self):
        names = student_names([self.student.id, 999999])
        self.assertEqual(names[self.student.id], "Ada Lovelace")
        self.assertEqual(names[999999], UNKNOWN_STUDENT)


class TaskServiceTests(_CourseFixtureMixin, TestCase):
    def setUp(self):
        self._make_fixture()
        self._enroll()
        self.other = get_user_model().objects.create_user(username="bob@example.org", email="bob@example.org")
        self._enroll(student=self.other)

    def test_personal_task_defaults_and_toggle(self):
        with self.assertRaises(ValidationFailed):
            create_personal_task(self.instructor, "   ")
        task = create_personal_task(self.instructor, "Grade quizzes")
        due = timezone.localtime(task.due_date)
        self.assertEqual(due.date(), timezone.localdate() + timedelta(days=1))
        self.assertEqual(due.time(), time(23, 59, 59))

        toggle_task_completion(task)
        self.assertTrue(task.completed)
        self.assertIsNotNone(task.completed_at)
        self.assertEqual(list(list_tasks(self.instructor, "completed")), [task])
        self.assertEqual(list(list_tasks(self.instructor, "upcoming")), [])
        toggle_task_completion(task)
        self.assertIsNone(task.completed_at)
        with self.assertRaises(ValidationFailed):
            list_tasks(self.instructor, "someday")

    def test_assign_course_task_fans_out_with_notifications(self):
        task = assign_course_task(self.instructor, self.course, "Read chapter 1", "", "2026-10-20")
        self.assertEqual(task.assigned_count, 2)
        self.assertEqual(StudentTask.objects.filter(task=task).count(), 2)
        self.assertEqual(
            Notification.objects.filter(type=Notification.TYPE_NEW_TASK, task=task).count(),
            2,
        )
        self.assertTrue(
            Notification.objects.filter(
                recipient=self.instructor,
                type=Notification.TYPE_TASK_ASSIGNED,
                task=task,
            ).exists()
        )
        with self.assertRaises(Conflict):
            toggle_task_completion(task)

    def test_assign_to_selected_students_only(self):
        task = assign_course_task(self.instructor, self.course, "Lab", student_ids=[self.other.id])
        self.assertEqual(list(task.assignments.values_list("student_id", flat=True)), [self.other.id])
        outsider = get_user_model().objects.create_user(username="eve@example.org")
        with self.assertRaises(ValidationFailed):
            assign_course_task(self.instructor, self.course, "Lab", student_ids=[outsider.id])

    def test_empty_selection_fans_out_to_every_student(self):
        task = assign_course_task(self.instructor, self.course, "Lab", student_ids=[])
        self.assertEqual(task.assigned_count, 2)
        self.assertEqual(
            set(task.assignments.values_list("student_id", flat=True)),
            {self.student.id, self.other.id},
        )

    def test_student_tasks_order_undated_last(self):
        assign_course_task(self.instructor, self.course, "Undated")
        assign_course_task(self.instructor, self.course, "Later", due_date="2026-11-02")
        assign_course_task(self.instructor, self.course, "Sooner", due_date="2026-10-21")
        titles = [row.title for row in student_tasks(self.student)]
        self.assertEqual(titles, ["Sooner", "Later", "Undated"])

    def test_student_task_completion_owner_only_and_logs_event(self):
        task = assign_course_task(self.instructor, self.course, "Essay", due_date="2026-10-21")
        mine = task.assignments.get(student=self.student)
        with self.assertRaises(PermissionDenied):
            student_task(self.other, mine.id)

        row = student_task(self.student, mine.id)
        update_student_task_completion(row, True)
        self.assertTrue(row.completed)
        self.assertTrue(
            ActivityEvent.objects.filter(
                event_type=ActivityEvent.EVENT_TASK_COMPLETION,
                student=self.student,
            ).exists()
        )

    def test_course_task_stats(self):
        past = timezone.now() - timedelta(days=2)
        task = assign_course_task(self.instructor, self.course, "Old", due_date=past)
        task.assignments.filter(student=self.student).update(completed=True)
        stats = course_task_stats(self.course)
        self.assertEqual(stats["total_tasks"], 2)
        self.assertEqual(stats["completed_tasks"], 1)
        self.assertEqual(stats["overdue_tasks"], 1)
        self.assertEqual(stats["completion_rate"], 50.0)

    def test_overdue_notifications_are_created_once(self):
        past = timezone.now() - timedelta(hours=3)
        assign_course_task(self.instructor, self.course, "Late", due_date=past)
        self.assertEqual(create_overdue_task_notifications(dry_run=True), 2)
        self.assertEqual(create_overdue_task_notifications(), 2)
        self.assertEqual(create_overdue_task_notifications(), 0)
        overdue = Notification.objects.filter(type=Notification.TYPE_OVERDUE_TASK)
        self.assertEqual(overdue.count(), 2)
        self.assertTrue(all(row.priority == Notification.PRIORITY_HIGH for row in overdue))
        self.assertFalse(StudentTask.objects.filter(notified=False).exists())


class TaskCompletionStatsTests(_CourseFixtureMixin, TestCase):
    def setUp(self):
        self._make_fixture()
        self._enroll()

    def _due(self, day: date):
        return timezone.make_aware(datetime.combine(day, time(12, 0)), timezone.get_current_timezone())

    def test_week_runs_monday_to_sunday_and_excludes_later_tasks(self):
        today = date(2026, 10, 14)  # Wednesday
        monday = date(2026, 10, 12)
        sunday = date(2026, 10, 18)
        done = assign_course_task(self.instructor, self.course, "Mon", due_date=self._due(monday))
        done.assignments.update(completed=True)
        assign_course_task(self.instructor, self.course, "Sun", due_date=self._due(sunday))
        assign_course_task(self.instructor, self.course, "Next Mon", due_date=self._due(date(2026, 10, 19)))
        assign_course_task(self.instructor, self.course, "Prev Sun", due_date=self._due(date(2026, 10, 11)))

        rows = task_completion_by_day(self.instructor, today=today)
        self.assertEqual(rows[0]["day"], "Monday")
        self.assertEqual(rows[0]["date"], "Oct 12")
        self.assertEqual(rows[0]["total_tasks"], 1)
        self.assertEqual(rows[0]["completion_rate"], 100)
        self.assertEqual(rows[6]["day"], "Sunday")
        self.assertEqual(rows[6]["total_tasks"], 1)
        self.assertEqual(rows[6]["tasks"][0]["title"], "Sun")
        self.assertEqual(sum(row["total_tasks"] for row in rows), 2)

    def test_other_instructors_tasks_are_not_counted(self):
        other = get_user_model().objects.create_user(username="other@example.org", is_staff=True)
        assign_course_task(self.instructor, self.course, "Mine", due_date=self._due(date(2026, 10, 13)))
        rows = task_completion_by_day(other, today=date(2026, 10, 14))
        self.assertEqual(sum(row["total_tasks"] for row in rows), 0)


class NotificationServiceTests(_CourseFixtureMixin, TestCase):
    def setUp(self):
        self._make_fixture()
        self.enrollment = self._enroll()

    def test_help_request_requires_enrollment_and_response_notifies(self):
        outsider = get_user_model().objects.create_user(username="eve@example.org")
        with self.assertRaises(NotFound):
            create_help_request(outsider, course_id=self.course.id, message="help")
        with self.assertRaises(ValidationFailed):
            create_help_request(self.student, course_id=self.course.id, message="   ")

        with self.assertRaises(ValidationFailed) as bad_course:
            create_help_request(self.student, course_id="abc", message="help")
        self.assertEqual(bad_course.exception.code, "invalid_course")

        help_request = create_help_request(self.student, course_id=self.course.id, message="Stuck on seeds")
        self.assertEqual(help_request.status, HelpRequest.STATUS_PENDING)
        respond_to_help_request(help_request, self.instructor, "Try watering it.")
        self.assertEqual(help_request.status, HelpRequest.STATUS_ANSWERED)
        self.assertTrue(
            Notification.objects.filter(recipient=self.student, type=Notification.TYPE_HELP_RESPONSE).exists()
        )

    def test_virtual_notifications_fill_feed_and_track_read_state(self):
        help_request = create_help_request(self.student, course_id=self.course.id, message="Stuck")
        Notification.objects.create(recipient=self.instructor, type="new_task", title="Stored")

        feed = instructor_notifications(self.instructor)
        ids = [row["id"] for row in feed]
        self.assertIn(f"help-{help_request.id}", ids)
        self.assertIn(f"enrollment-{self.enrollment.id}", ids)
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(instructor_unread_count(self.instructor), 3)

        mark_notification_read(self.instructor, f"help-{help_request.id}")
        self.assertTrue(NotificationRead.objects.filter(user=self.instructor, key=f"help-{help_request.id}").exists())
        self.assertEqual(instructor_unread_count(self.instructor), 2)
        help_row = next(row for row in instructor_notifications(self.instructor) if row["id"].startswith("help-"))
        self.assertTrue(help_row["read"])

        mark_all_read(self.instructor)
        self.assertEqual(instructor_unread_count(self.instructor), 0)

    def test_unread_count_skips_enrollments_older_than_a_day(self):
        other = get_user_model().objects.create_user(username="bob@example.org", email="bob@example.org")
        old = self._enroll(student=other)
        Enrollment.objects.filter(id=old.id).update(enrolled_at=timezone.now() - timedelta(hours=25))

        self.assertEqual(instructor_unread_count(self.instructor), 1)
        ids = [row["id"] for row in instructor_notifications(self.instructor)]
        self.assertIn(f"enrollment-{old.id}", ids)

    def test_feed_is_truncated_to_limit(self):
        for idx in range(3):
            Notification.objects.create(recipient=self.instructor, type="new_task", title=f"N{idx}")
        feed = instructor_notifications(self.instructor, limit=2)
        self.assertEqual(len(feed), 2)
        self.assertFalse(any(row["virtual"] for row in feed))

    def test_mark_read_rejects_unknown_or_foreign_ids(self):
        other = get_user_model().objects.create_user(username="other@example.org", is_staff=True)
        stored = Notification.objects.create(recipient=self.instructor, type="new_task", title="Mine")
        with self.assertRaises(NotFound):
            mark_notification_read(other, str(stored.id))
        with self.assertRaises(NotFound):
            mark_notification_read(other, f"enrollment-{self.enrollment.id}")
        with self.assertRaises(NotFound):
            mark_notification_read(self.instructor, "bogus")

        mark_notification_read(self.instructor, stored.id)
        stored.refresh_from_db()
        self.assertTrue(stored.read)
        self.assertIsNotNone(stored.read_at)

    def test_lesson_completion_rows_are_unique(self):
        mark_lesson_completed(self.student, self.course, "l1")
        mark_lesson_completed(self.student, self.course, "l1")
        self.assertEqual(LessonCompletion.objects.count(), 1)
