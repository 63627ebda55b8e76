"""Lesson completion tracking and per-enrollment progress."""

from __future__ import annotations

from django.db import IntegrityError, transaction
from django.utils import timezone

from ..errors import NotFound
from ..models import ActivityEvent, Course, Enrollment, LessonCompletion
from .activity import emit_activity_event


def percent(part: int, total: int) -> int:
    """Round-half-up integer percentage."""
    if total <= 0:
        return 0
    return int((part * 100.0 / total) + 0.5)


def completed_lesson_ids(student, course: Course) -> list[str]:
    return list(
        LessonCompletion.objects.filter(student=student, course=course)
        .order_by("completed_at", "id")
        .values_list("lesson_id", flat=True)
    )


def is_lesson_completed(student, course: Course, lesson_id: str) -> bool:
    return LessonCompletion.objects.filter(student=student, course=course, lesson_id=lesson_id).exists()


def _completed_count(student, course: Course, lesson_ids: list[str]) -> int:
    return LessonCompletion.objects.filter(student=student, course=course, lesson_id__in=lesson_ids).count()


def update_course_progress(student, course: Course) -> Enrollment | None:
    """Recompute stored progress; courses without lessons leave it untouched."""
    enrollment = Enrollment.objects.filter(
        student=student,
        course=course,
        status=Enrollment.STATUS_ACTIVE,
    ).first()
    if enrollment is None:
        return None
    lesson_ids = course.lesson_ids()
    if not lesson_ids:
        return enrollment

    completed = _completed_count(student, course, lesson_ids)
    enrollment.progress = percent(completed, len(lesson_ids))
    enrollment.completed_lessons = completed
    enrollment.total_lessons = len(lesson_ids)
    enrollment.last_activity_at = timezone.now()
    enrollment.save(update_fields=["progress", "completed_lessons", "total_lessons", "last_activity_at"])
    return enrollment


def refresh_course_progress(course: Course) -> int:
    """Recompute every active enrollment after the lesson list changed."""
    updated = 0
    enrollments = Enrollment.objects.select_related("student").filter(
        course=course,
        status=Enrollment.STATUS_ACTIVE,
        student__isnull=False,
    )
    for enrollment in enrollments:
        if update_course_progress(enrollment.student, course) is not None:
            updated += 1
    return updated


def mark_lesson_completed(student, course: Course, lesson_id: str, *, ip_address: str = ""):
    """Idempotent: returns `(completion, created)`; repeats return the first record."""
    lesson_id = str(lesson_id or "").strip()
    if lesson_id not in course.lesson_ids():
        raise NotFound("lesson_not_found")

    existing = LessonCompletion.objects.filter(student=student, course=course, lesson_id=lesson_id).first()
    if existing is not None:
        return existing, False
    try:
        with transaction.atomic():
            completion = LessonCompletion.objects.create(student=student, course=course, lesson_id=lesson_id)
    except IntegrityError:
        # Concurrent double-submit: the other request already recorded it.
        return LessonCompletion.objects.get(student=student, course=course, lesson_id=lesson_id), False

    emit_activity_event(
        event_type=ActivityEvent.EVENT_LESSON_COMPLETION,
        course=course,
        student=student,
        details={"lesson_id": lesson_id},
        ip_address=ip_address,
    )
    update_course_progress(student, course)
    return completion, True


def course_progress(student, course: Course) -> dict:
    enrollment = Enrollment.objects.filter(
        student=student,
        course=course,
        status=Enrollment.STATUS_ACTIVE,
    ).first()
    if enrollment is None:
        return {
            "enrolled": False,
            "progress": 0,
            "completed_lessons": 0,
            "total_lessons": 0,
            "completed_lesson_ids": [],
            "last_activity_at": None,
        }
    return {
        "enrolled": True,
        "progress": enrollment.progress,
        "completed_lessons": enrollment.completed_lessons,
        "total_lessons": enrollment.total_lessons,
        "completed_lesson_ids": completed_lesson_ids(student, course),
        "last_activity_at": enrollment.last_activity_at.isoformat() if enrollment.last_activity_at else None,
    }


def student_enrollments_with_progress(student) -> list[dict]:
    """Live progress per active enrollment, computed from completions."""
    rows = []
    enrollments = Enrollment.objects.select_related("course").filter(
        student=student,
        status=Enrollment.STATUS_ACTIVE,
    )
    for enrollment in enrollments:
        course = enrollment.course
        lesson_ids = course.lesson_ids()
        completed = _completed_count(student, course, lesson_ids) if lesson_ids else 0
        rows.append(
            {
                "enrollment_id": enrollment.id,
                "course_id": course.id,
                "course_title": course.title,
                "completed_lessons": completed,
                "total_lessons": len(lesson_ids),
                "progress": percent(completed, len(lesson_ids)),
            }
        )
    return rows
