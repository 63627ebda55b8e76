"""Stored and virtual notifications.

Instructors also see notifications synthesized at read time:
- `help-<id>` for each pending help request on their courses
- `enrollment-<id>` for each enrollment on their courses

Read state for those lives in NotificationRead keyed by the virtual id.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from ..errors import NotFound
from ..models import Enrollment, HelpRequest, Notification, NotificationRead
from .people import display_name
from .tasks import mark_task_notified, overdue_student_tasks

logger = logging.getLogger(__name__)

HELP_PREFIX = "help-"
ENROLLMENT_PREFIX = "enrollment-"
RECENT_ENROLLMENT_WINDOW = timedelta(hours=24)


def notification_limit() -> int:
    return max(int(getattr(settings, "STRATUM_NOTIFICATION_LIMIT", 20) or 20), 1)


def notify(
    recipient,
    *,
    type: str,
    title: str,
    message: str = "",
    course=None,
    task=None,
    priority: str = Notification.PRIORITY_MEDIUM,
) -> Notification:
    return Notification.objects.create(
        recipient=recipient,
        type=type,
        title=title[:200],
        message=message,
        course=course,
        task=task,
        priority=priority,
    )


def notification_to_dict(notification: Notification) -> dict:
    return {
        "id": str(notification.id),
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "course_id": notification.course_id,
        "task_id": notification.task_id,
        "priority": notification.priority,
        "read": notification.read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
        "virtual": False,
    }


def _virtual_row(*, key, type, title, message, course_id, created_at, priority, read) -> dict:
    return {
        "id": key,
        "type": type,
        "title": title,
        "message": message,
        "course_id": course_id,
        "task_id": None,
        "priority": priority,
        "read": read,
        "created_at": created_at.isoformat() if created_at else None,
        "virtual": True,
    }


def _pending_help_requests(user):
    return HelpRequest.objects.select_related("student", "course").filter(
        course__instructor=user,
        status=HelpRequest.STATUS_PENDING,
    )


def _course_enrollments(user):
    return Enrollment.objects.select_related("student", "course").filter(
        course__instructor=user,
        student__isnull=False,
    )


def _read_keys(user, keys) -> set[str]:
    keys = list(keys)
    if not keys:
        return set()
    return set(NotificationRead.objects.filter(user=user, key__in=keys).values_list("key", flat=True))


def _virtual_notifications(user, limit: int) -> list[tuple]:
    helps = list(_pending_help_requests(user).order_by("-created_at", "-id")[:limit])
    enrollments = list(_course_enrollments(user).order_by("-enrolled_at", "-id")[:limit])
    read = _read_keys(
        user,
        [f"{HELP_PREFIX}{row.id}" for row in helps] + [f"{ENROLLMENT_PREFIX}{row.id}" for row in enrollments],
    )

    rows = []
    for help_request in helps:
        key = f"{HELP_PREFIX}{help_request.id}"
        topic = help_request.subject or help_request.course.title
        rows.append(
            (
                help_request.created_at,
                _virtual_row(
                    key=key,
                    type="help_request",
                    title="Help Request",
                    message=f"{display_name(help_request.student)} asked for help: {topic}",
                    course_id=help_request.course_id,
                    created_at=help_request.created_at,
                    priority=Notification.PRIORITY_HIGH,
                    read=key in read,
                ),
            )
        )
    for enrollment in enrollments:
        key = f"{ENROLLMENT_PREFIX}{enrollment.id}"
        rows.append(
            (
                enrollment.enrolled_at,
                _virtual_row(
                    key=key,
                    type="enrollment",
                    title="New Enrollment",
                    message=f"{display_name(enrollment.student)} enrolled in {enrollment.course.title}",
                    course_id=enrollment.course_id,
                    created_at=enrollment.enrolled_at,
                    priority=Notification.PRIORITY_LOW,
                    read=key in read,
                ),
            )
        )
    return rows


def instructor_notifications(user, limit: int | None = None) -> list[dict]:
    """Stored notifications first; virtual ones fill any gap up to `limit`."""
    limit = limit or notification_limit()
    stored = list(Notification.objects.filter(recipient=user).order_by("-created_at", "-id")[:limit])
    rows = [(n.created_at, notification_to_dict(n)) for n in stored]
    if len(rows) < limit:
        rows.extend(_virtual_notifications(user, limit))

    seen: set[str] = set()
    merged = []
    for created_at, row in sorted(rows, key=lambda item: item[0], reverse=True):
        if row["id"] in seen:
            continue
        seen.add(row["id"])
        merged.append(row)
    return merged[:limit]


def instructor_unread_count(user) -> int:
    stored = Notification.objects.filter(recipient=user, read=False).count()
    help_keys = [f"{HELP_PREFIX}{pk}" for pk in _pending_help_requests(user).values_list("id", flat=True)]
    since = timezone.now() - RECENT_ENROLLMENT_WINDOW
    enrollment_keys = [
        f"{ENROLLMENT_PREFIX}{pk}"
        for pk in _course_enrollments(user).filter(enrolled_at__gte=since).values_list("id", flat=True)
    ]
    read = _read_keys(user, help_keys + enrollment_keys)
    unread_virtual = sum(1 for key in help_keys + enrollment_keys if key not in read)
    return stored + unread_virtual


def _virtual_target_exists(user, notification_id: str) -> bool:
    prefix, _, raw_pk = notification_id.rpartition("-")
    if not raw_pk.isdigit():
        return False
    if f"{prefix}-" == HELP_PREFIX:
        return HelpRequest.objects.filter(id=int(raw_pk), course__instructor=user).exists()
    return Enrollment.objects.filter(id=int(raw_pk), course__instructor=user).exists()


def mark_notification_read(user, notification_id) -> dict:
    notification_id = str(notification_id or "").strip()
    if notification_id.startswith((HELP_PREFIX, ENROLLMENT_PREFIX)):
        if not _virtual_target_exists(user, notification_id):
            raise NotFound("notification_not_found")
        NotificationRead.objects.get_or_create(user=user, key=notification_id)
        return {"id": notification_id, "read": True}

    if not notification_id.isdigit():
        raise NotFound("notification_not_found")
    notification = Notification.objects.filter(id=int(notification_id), recipient=user).first()
    if notification is None:
        raise NotFound("notification_not_found")
    if not notification.read:
        notification.read = True
        notification.read_at = timezone.now()
        notification.save(update_fields=["read", "read_at"])
    return {"id": notification_id, "read": True}


def mark_all_read(user) -> int:
    """Flag every stored notification and every visible virtual one as read."""
    updated = Notification.objects.filter(recipient=user, read=False).update(read=True, read_at=timezone.now())
    keys = [f"{HELP_PREFIX}{pk}" for pk in _pending_help_requests(user).values_list("id", flat=True)]
    keys += [f"{ENROLLMENT_PREFIX}{pk}" for pk in _course_enrollments(user).values_list("id", flat=True)]
    already = _read_keys(user, keys)
    NotificationRead.objects.bulk_create(
        [NotificationRead(user=user, key=key) for key in keys if key not in already],
        ignore_conflicts=True,
    )
    return updated


def student_notifications(student, limit: int | None = None) -> list[dict]:
    limit = limit or notification_limit()
    rows = Notification.objects.filter(recipient=student).order_by("-created_at", "-id")[:limit]
    return [notification_to_dict(n) for n in rows]


def student_unread_count(student) -> int:
    return Notification.objects.filter(recipient=student, read=False).count()


def create_overdue_task_notifications(now=None, *, dry_run: bool = False) -> int:
    """Notify students once per overdue task. Returns the number of tasks handled."""
    now = now or timezone.now()
    overdue = list(overdue_student_tasks(now).select_related("course", "task", "student"))
    if dry_run:
        return len(overdue)

    for student_task in overdue:
        with transaction.atomic():
            notify(
                student_task.student,
                type=Notification.TYPE_OVERDUE_TASK,
                title="Task Overdue",
                message=f'"{student_task.title}" in {student_task.course.title} is past due.',
                course=student_task.course,
                task=student_task.task,
                priority=Notification.PRIORITY_HIGH,
            )
            mark_task_notified(student_task, now=now)
    if overdue:
        logger.info("overdue_task_notifications created=%s", len(overdue))
    return len(overdue)
