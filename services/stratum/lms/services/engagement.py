"""Engagement aggregates for the instructor dashboard graphs."""

from __future__ import annotations

from datetime import datetime, time, timedelta

from django.db.models import Count
from django.utils import timezone

from ..models import Course, LessonCompletion
from .people import student_names


def _scoped_completions(instructor=None):
    qs = LessonCompletion.objects.all()
    if instructor is not None and not instructor.is_superuser:
        qs = qs.filter(course__instructor=instructor)
    return qs


def day_label(day) -> str:
    """`Oct 18` style label (no zero padding)."""
    return f"{day.strftime('%b')} {day.day}"


def lesson_completion_by_day(*, instructor=None, days: int = 7, today=None) -> list[dict]:
    """Completions per local day for the trailing window, oldest day first."""
    days = max(int(days), 1)
    today = today or timezone.localdate()
    first_day = today - timedelta(days=days - 1)
    tz = timezone.get_current_timezone()
    window_start = timezone.make_aware(datetime.combine(first_day, time.min), tz)
    window_end = timezone.make_aware(datetime.combine(today + timedelta(days=1), time.min), tz)

    counts: dict = {}
    stamps = _scoped_completions(instructor).filter(
        completed_at__gte=window_start,
        completed_at__lt=window_end,
    ).values_list("completed_at", flat=True)
    for stamp in stamps:
        local_day = timezone.localtime(stamp, tz).date()
        counts[local_day] = counts.get(local_day, 0) + 1

    rows = []
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        rows.append({"date": day_label(day), "iso_date": day.isoformat(), "count": counts.get(day, 0)})
    return rows


def student_lessons_completed(student) -> int:
    return LessonCompletion.objects.filter(student=student).count()


def course_lessons_completed(course: Course) -> int:
    return LessonCompletion.objects.filter(course=course).count()


def most_active_students(*, limit: int = 5, instructor=None) -> list[dict]:
    ranked = list(
        _scoped_completions(instructor)
        .values("student_id")
        .annotate(count=Count("id"))
        .order_by("-count", "student_id")[: max(int(limit), 1)]
    )
    names = student_names(row["student_id"] for row in ranked)
    return [
        {"student_id": row["student_id"], "name": names.get(row["student_id"]), "count": row["count"]}
        for row in ranked
    ]
