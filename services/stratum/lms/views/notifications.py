"""Notification feed endpoints shared by instructors and students."""

from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from ..services import notifications as notification_service
from .helpers import login_required_json


def _limit(request) -> int:
    try:
        limit = int(request.GET.get("limit") or 0)
    except ValueError:
        limit = 0
    return min(limit, 100) if limit > 0 else notification_service.notification_limit()


@require_GET
@login_required_json
def notifications_list(request):
    user = request.user
    if user.is_staff:
        rows = notification_service.instructor_notifications(user, _limit(request))
        unread = notification_service.instructor_unread_count(user)
    else:
        rows = notification_service.student_notifications(user, _limit(request))
        unread = notification_service.student_unread_count(user)
    return JsonResponse({"notifications": rows, "unread_count": unread})


@require_GET
@login_required_json
def notifications_unread_count(request):
    user = request.user
    if user.is_staff:
        unread = notification_service.instructor_unread_count(user)
    else:
        unread = notification_service.student_unread_count(user)
    return JsonResponse({"unread_count": unread})


@require_POST
@login_required_json
def notification_mark_read(request, notification_id: str):
    return JsonResponse(notification_service.mark_notification_read(request.user, notification_id))


@require_POST
@login_required_json
def notifications_mark_all_read(request):
    updated = notification_service.mark_all_read(request.user)
    return JsonResponse({"ok": True, "updated": updated})


__all__ = [
    "notifications_list",
    "notifications_unread_count",
    "notification_mark_read",
    "notifications_mark_all_read",
]
