"""Instructor tasks and their per-student fan-out."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

from django.db import transaction
from django.db.models import Count, F, Q
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime, parse_time

from ..errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from ..models import ActivityEvent, Course, Enrollment, Notification, StudentTask, Task
from .activity import emit_activity_event
from .progress import percent

END_OF_DAY = time(23, 59, 59)
TASK_FILTERS = ("all", "completed", "upcoming")


def _aware(value: datetime) -> datetime:
    if timezone.is_naive(value):
        return timezone.make_aware(value, timezone.get_current_timezone())
    return value


def resolve_due_date(due_date=None, due_time=None, *, default_tomorrow: bool = False):
    """Turn a date (+ optional time) into an aware datetime.

    A date with no time is due at 23:59:59 local. With no date at all the
    result is tomorrow 23:59:59 when `default_tomorrow` is set, else None.
    """
    if due_date in (None, ""):
        if not default_tomorrow:
            return None
        tomorrow = timezone.localdate() + timedelta(days=1)
        return _aware(datetime.combine(tomorrow, END_OF_DAY))

    if isinstance(due_date, datetime):
        return _aware(due_date)
    if isinstance(due_date, date):
        day = due_date
    else:
        raw = str(due_date).strip()
        parsed = parse_datetime(raw) if ("T" in raw or " " in raw) else None
        if parsed is not None:
            return _aware(parsed)
        try:
            day = parse_date(raw)
        except ValueError:
            day = None
        if day is None:
            raise ValidationFailed("invalid_due_date")

    at = END_OF_DAY
    if due_time not in (None, ""):
        if isinstance(due_time, time):
            at = due_time
        else:
            try:
                at = parse_time(str(due_time).strip())
            except ValueError:
                at = None
            if at is None:
                raise ValidationFailed("invalid_due_time")
    return _aware(datetime.combine(day, at))


def _clean_title(raw) -> str:
    title = str(raw or "").strip()[:200]
    if not title:
        raise ValidationFailed("missing_title")
    return title


def create_personal_task(instructor, title, due_date=None, due_time=None, description: str = "") -> Task:
    return Task.objects.create(
        instructor=instructor,
        title=_clean_title(title),
        description=str(description or "").strip(),
        due_date=resolve_due_date(due_date, due_time, default_tomorrow=True),
        type=Task.TYPE_PERSONAL,
    )


def instructor_task(instructor, task_id) -> Task:
    task = Task.objects.select_related("course").filter(instructor=instructor, id=task_id).first()
    if task is None:
        raise NotFound("task_not_found")
    return task


def toggle_task_completion(task: Task) -> Task:
    if task.type != Task.TYPE_PERSONAL:
        raise Conflict("not_personal_task")
    task.completed = not task.completed
    task.completed_at = timezone.now() if task.completed else None
    task.save(update_fields=["completed", "completed_at", "updated_at"])
    return task


def delete_task(task: Task) -> None:
    task.delete()


def list_tasks(instructor, task_filter: str = "all"):
    task_filter = (task_filter or "all").strip().lower()
    if task_filter not in TASK_FILTERS:
        raise ValidationFailed("invalid_filter")
    qs = Task.objects.filter(instructor=instructor, type=Task.TYPE_PERSONAL)
    if task_filter == "completed":
        return qs.filter(completed=True).order_by("-completed_at", "-id")
    if task_filter == "upcoming":
        return qs.filter(completed=False).order_by(F("due_date").asc(nulls_last=True), "id")
    return qs.order_by("-created_at", "-id")


def _assignable_enrollments(course: Course, student_ids):
    enrollments = Enrollment.objects.select_related("student").filter(
        course=course,
        status=Enrollment.STATUS_ACTIVE,
        student__isnull=False,
    )
    if not student_ids:
        return list(enrollments)

    try:
        wanted = {int(value) for value in student_ids}
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("invalid_student_ids") from exc
    selected = [row for row in enrollments if row.student_id in wanted]
    if len(selected) != len(wanted):
        raise ValidationFailed("student_not_enrolled")
    return selected


def assign_course_task(
    instructor,
    course: Course,
    title,
    description: str = "",
    due_date=None,
    student_ids=None,
    *,
    due_time=None,
) -> Task:
    """Create a course task and fan it out to the selected (default: all) students."""
    title = _clean_title(title)
    description = str(description or "").strip()
    due = resolve_due_date(due_date, due_time)
    enrollments = _assignable_enrollments(course, student_ids)
    if not enrollments:
        raise ValidationFailed("no_enrolled_students")

    with transaction.atomic():
        task = Task.objects.create(
            instructor=instructor,
            title=title,
            description=description,
            due_date=due,
            type=Task.TYPE_COURSE,
            course=course,
            assigned_count=len(enrollments),
        )
        StudentTask.objects.bulk_create(
            [
                StudentTask(
                    task=task,
                    student=row.student,
                    course=course,
                    title=title,
                    description=description,
                    due_date=due,
                )
                for row in enrollments
            ]
        )
        Notification.objects.bulk_create(
            [
                Notification(
                    recipient=row.student,
                    type=Notification.TYPE_NEW_TASK,
                    title="New Task Assigned",
                    message=f'"{title}" was assigned in {course.title}.',
                    course=course,
                    task=task,
                )
                for row in enrollments
            ]
        )
        Notification.objects.create(
            recipient=instructor,
            type=Notification.TYPE_TASK_ASSIGNED,
            title="Task Assigned",
            message=f'"{title}" was assigned to {len(enrollments)} student(s) in {course.title}.',
            course=course,
            task=task,
            priority=Notification.PRIORITY_LOW,
        )
    return task


def student_tasks(student, *, course_id=None):
    qs = StudentTask.objects.select_related("course").filter(student=student)
    if course_id:
        qs = qs.filter(course_id=course_id)
    return qs.order_by(F("due_date").asc(nulls_last=True), "id")


def student_task(student, student_task_id) -> StudentTask:
    row = StudentTask.objects.select_related("course", "task").filter(id=student_task_id).first()
    if row is None:
        raise NotFound("task_not_found")
    if row.student_id != student.id:
        raise PermissionDenied("not_task_owner")
    return row


def update_student_task_completion(student_task: StudentTask, completed: bool, *, ip_address: str = "") -> StudentTask:
    completed = bool(completed)
    if student_task.completed == completed:
        return student_task
    student_task.completed = completed
    student_task.completed_at = timezone.now() if completed else None
    student_task.save(update_fields=["completed", "completed_at", "updated_at"])
    if completed:
        emit_activity_event(
            event_type=ActivityEvent.EVENT_TASK_COMPLETION,
            course=student_task.course,
            student=student_task.student,
            details={"student_task_id": student_task.id, "task_id": student_task.task_id},
            ip_address=ip_address,
        )
    return student_task


def overdue_student_tasks(now=None):
    now = now or timezone.now()
    return StudentTask.objects.filter(
        completed=False,
        notified=False,
        due_date__isnull=False,
        due_date__lt=now,
    ).order_by("due_date", "id")


def mark_task_notified(student_task: StudentTask, *, now=None) -> StudentTask:
    student_task.notified = True
    student_task.notified_at = now or timezone.now()
    student_task.save(update_fields=["notified", "notified_at", "updated_at"])
    return student_task


def course_task_stats(course: Course, *, now=None) -> dict:
    now = now or timezone.now()
    counts = StudentTask.objects.filter(course=course).aggregate(
        total_count=Count("id"),
        completed_count=Count("id", filter=Q(completed=True)),
        overdue_count=Count("id", filter=Q(completed=False, due_date__lt=now)),
    )
    total = counts["total_count"] or 0
    completed = counts["completed_count"] or 0
    return {
        "total_tasks": total,
        "completed_tasks": completed,
        "overdue_tasks": counts["overdue_count"] or 0,
        "completion_rate": round(completed * 100.0 / total, 1) if total else 0.0,
    }


def instructor_course_tasks(instructor):
    return (
        Task.objects.select_related("course")
        .filter(instructor=instructor, type=Task.TYPE_COURSE)
        .annotate(completed_count=Count("assignments", filter=Q(assignments__completed=True)))
        .order_by("-created_at", "-id")
    )


def _iso(value):
    return value.isoformat() if value else None


def task_to_dict(task: Task) -> dict:
    row = {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "type": task.type,
        "course_id": task.course_id,
        "due_date": _iso(task.due_date),
        "completed": task.completed,
        "completed_at": _iso(task.completed_at),
        "assigned_count": task.assigned_count,
        "created_at": _iso(task.created_at),
    }
    if task.type == Task.TYPE_COURSE:
        row["course_title"] = task.course.title if task.course_id else ""
        if hasattr(task, "completed_count"):
            row["completed_count"] = task.completed_count
            row["completion_rate"] = percent(task.completed_count, task.assigned_count)
    return row


def student_task_to_dict(student_task: StudentTask, *, now=None) -> dict:
    now = now or timezone.now()
    return {
        "id": student_task.id,
        "task_id": student_task.task_id,
        "course_id": student_task.course_id,
        "course_title": student_task.course.title,
        "title": student_task.title,
        "description": student_task.description,
        "due_date": _iso(student_task.due_date),
        "completed": student_task.completed,
        "completed_at": _iso(student_task.completed_at),
        "overdue": bool(
            not student_task.completed and student_task.due_date is not None and student_task.due_date < now
        ),
    }
