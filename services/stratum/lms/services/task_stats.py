"""Weekly task-completion graph for the instructor dashboard."""

from __future__ import annotations

from datetime import datetime, time, timedelta

from django.utils import timezone

from ..models import StudentTask
from .engagement import day_label
from .people import student_names
from .progress import percent

__all__ = ["task_completion_by_day", "student_names", "week_bounds"]


def week_bounds(today):
    """Monday and the following Monday of the week containing `today`."""
    monday = today - timedelta(days=today.weekday())
    return monday, monday + timedelta(days=7)


def task_completion_by_day(instructor, today=None) -> list[dict]:
    """Seven rows, Monday to Sunday, bucketed by each task's local due date."""
    today = today or timezone.localdate()
    monday, next_monday = week_bounds(today)
    tz = timezone.get_current_timezone()
    start = timezone.make_aware(datetime.combine(monday, time.min), tz)
    end = timezone.make_aware(datetime.combine(next_monday, time.min), tz)

    qs = StudentTask.objects.filter(due_date__gte=start, due_date__lt=end)
    if not instructor.is_superuser:
        qs = qs.filter(course__instructor=instructor)

    buckets: dict = {}
    for row in qs.order_by("due_date", "id"):
        local_day = timezone.localtime(row.due_date, tz).date()
        buckets.setdefault(local_day, []).append(row)

    result = []
    for offset in range(7):
        day = monday + timedelta(days=offset)
        rows = buckets.get(day, [])
        completed = sum(1 for row in rows if row.completed)
        result.append(
            {
                "day": day.strftime("%A"),
                "date": day_label(day),
                "iso_date": day.isoformat(),
                "total_tasks": len(rows),
                "completed_tasks": completed,
                "completion_rate": percent(completed, len(rows)),
                "tasks": [
                    {
                        "id": row.id,
                        "title": row.title,
                        "student_id": row.student_id,
                        "completed": row.completed,
                        "due_date": row.due_date.isoformat(),
                    }
                    for row in rows
                ],
            }
        )
    return result
