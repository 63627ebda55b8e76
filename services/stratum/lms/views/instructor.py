"""Instructor endpoints under /api/instructor/*.

Every query is scoped to the signed-in instructor's own courses; superusers
see everything through `visible_courses`.
"""

import logging

from django.conf import settings
from django.http import JsonResponse
from django.utils.dateparse import parse_date
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from ..errors import ValidationFailed
from ..models import CourseMedia
from ..services import courses as course_service
from ..services import enrollment as enrollment_service
from ..services import help_requests as help_service
from ..services import tasks as task_service
from ..services.engagement import lesson_completion_by_day, most_active_students
from ..services.filenames import safe_filename
from ..services.progress import refresh_course_progress
from ..services.task_stats import task_completion_by_day
from ..services.upload_policy import check_media_upload, infer_media_type
from .helpers import audit, instructor_required, parse_json

logger = logging.getLogger(__name__)


@require_http_methods(["GET", "POST"])
@instructor_required
def instructor_courses(request):
    if request.method == "POST":
        course = course_service.create_course(request.user, parse_json(request))
        audit(
            request,
            action="course.create",
            course=course,
            target_type="Course",
            target_id=course.id,
            summary=f"Created course {course.title}",
        )
        return JsonResponse({"course": course_service.course_to_dict(course)}, status=201)

    status = (request.GET.get("status") or "").strip().lower()
    qs = course_service.instructor_courses(request.user)
    if status:
        qs = qs.filter(status=status)
    rows = [course_service.course_to_dict(course, include_structure=False) for course in qs]
    return JsonResponse({"courses": rows})


@require_http_methods(["GET", "PATCH", "PUT", "DELETE"])
@instructor_required
def instructor_course_detail(request, course_id: int):
    course = course_service.owned_course(request.user, course_id)

    if request.method == "DELETE":
        title = course.title
        audit(
            request,
            action="course.delete",
            target_type="Course",
            target_id=course.id,
            summary=f"Deleted course {title}",
        )
        course.delete()
        return JsonResponse({"ok": True, "deleted": course_id})

    if request.method in {"PATCH", "PUT"}:
        changed = course_service.update_course(course, parse_json(request))
        if "structure" in changed:
            refresh_course_progress(course)
        if changed:
            audit(
                request,
                action="course.update",
                course=course,
                target_type="Course",
                target_id=course.id,
                summary=f"Updated course {course.title}",
                metadata={"fields": changed},
            )
        return JsonResponse({"course": course_service.course_to_dict(course), "changed": changed})

    return JsonResponse({"course": course_service.course_to_dict(course)})


@require_POST
@instructor_required
def instructor_regenerate_course_code(request, course_id: int):
    course = course_service.owned_course(request.user, course_id)
    code = course_service.regenerate_course_code(course)
    audit(
        request,
        action="course.rotate_code",
        course=course,
        target_type="Course",
        target_id=course.id,
        summary="Regenerated course access code",
        metadata={"access_code": code},
    )
    return JsonResponse({"access_code": code, "access_code_created_at": course.access_code_created_at.isoformat()})


@require_http_methods(["GET", "POST"])
@instructor_required
def instructor_course_enrollments(request, course_id: int):
    course = course_service.owned_course(request.user, course_id)
    if request.method == "POST":
        payload = parse_json(request)
        enrollment = enrollment_service.enroll_student(course, payload.get("email"))
        audit(
            request,
            action="enrollment.invite",
            course=course,
            target_type="Enrollment",
            target_id=enrollment.id,
            summary=f"Invited {enrollment.email}",
        )
        return JsonResponse({"enrollment": enrollment_service.enrollment_to_dict(enrollment)}, status=201)

    rows = [enrollment_service.enrollment_to_dict(row) for row in enrollment_service.course_enrollments(course)]
    return JsonResponse({"enrollments": rows})


@require_http_methods(["DELETE"])
@instructor_required
def instructor_enrollment_detail(request, course_id: int, enrollment_id: int):
    course = course_service.owned_course(request.user, course_id)
    enrollment = enrollment_service.course_enrollment(course, enrollment_id)
    audit(
        request,
        action="enrollment.remove",
        course=course,
        target_type="Enrollment",
        target_id=enrollment.id,
        summary=f"Removed enrollment {enrollment.email or enrollment.student_id}",
    )
    enrollment_service.remove_enrollment(enrollment)
    return JsonResponse({"ok": True, "deleted": enrollment_id})


@require_POST
@instructor_required
def instructor_regenerate_enrollment_code(request, course_id: int, enrollment_id: int):
    course = course_service.owned_course(request.user, course_id)
    enrollment = enrollment_service.course_enrollment(course, enrollment_id)
    code = enrollment_service.regenerate_enrollment_code(enrollment)
    audit(
        request,
        action="enrollment.rotate_code",
        course=course,
        target_type="Enrollment",
        target_id=enrollment.id,
        summary="Regenerated invite code",
    )
    return JsonResponse({"access_code": code})


@require_http_methods(["GET", "POST"])
@instructor_required
def instructor_course_tasks(request, course_id: int):
    course = course_service.owned_course(request.user, course_id)
    if request.method == "POST":
        payload = parse_json(request)
        task = task_service.assign_course_task(
            request.user,
            course,
            payload.get("title"),
            payload.get("description") or "",
            payload.get("due_date"),
            payload.get("student_ids"),
            due_time=payload.get("due_time"),
        )
        audit(
            request,
            action="task.assign",
            course=course,
            target_type="Task",
            target_id=task.id,
            summary=f"Assigned task {task.title}",
            metadata={"assigned_count": task.assigned_count},
        )
        return JsonResponse({"task": task_service.task_to_dict(task)}, status=201)

    rows = task_service.instructor_course_tasks(request.user).filter(course=course)
    return JsonResponse(
        {
            "tasks": [task_service.task_to_dict(task) for task in rows],
            "stats": task_service.course_task_stats(course),
        }
    )


@require_GET
@instructor_required
def instructor_all_course_tasks(request):
    rows = task_service.instructor_course_tasks(request.user)
    return JsonResponse({"tasks": [task_service.task_to_dict(task) for task in rows]})


@require_http_methods(["GET", "POST"])
@instructor_required
def instructor_tasks(request):
    if request.method == "POST":
        payload = parse_json(request)
        task = task_service.create_personal_task(
            request.user,
            payload.get("title"),
            due_date=payload.get("due_date"),
            due_time=payload.get("due_time"),
            description=payload.get("description") or "",
        )
        return JsonResponse({"task": task_service.task_to_dict(task)}, status=201)

    rows = task_service.list_tasks(request.user, request.GET.get("filter") or "all")
    return JsonResponse({"tasks": [task_service.task_to_dict(task) for task in rows]})


@require_POST
@instructor_required
def instructor_task_toggle(request, task_id: int):
    task = task_service.instructor_task(request.user, task_id)
    task_service.toggle_task_completion(task)
    return JsonResponse({"task": task_service.task_to_dict(task)})


@require_http_methods(["DELETE"])
@instructor_required
def instructor_task_detail(request, task_id: int):
    task = task_service.instructor_task(request.user, task_id)
    audit(
        request,
        action="task.delete",
        course=task.course,
        target_type="Task",
        target_id=task.id,
        summary=f"Deleted task {task.title}",
    )
    task_service.delete_task(task)
    return JsonResponse({"ok": True, "deleted": task_id})


def _parse_day(raw: str):
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        day = parse_date(raw)
    except ValueError:
        day = None
    if day is None:
        raise ValidationFailed("invalid_date")
    return day


@require_GET
@instructor_required
def instructor_task_completion_stats(request):
    rows = task_completion_by_day(request.user, today=_parse_day(request.GET.get("date")))
    return JsonResponse({"days": rows})


@require_GET
@instructor_required
def instructor_engagement_stats(request):
    try:
        days = min(max(int(request.GET.get("days") or 7), 1), 90)
    except ValueError as exc:
        raise ValidationFailed("invalid_days") from exc
    return JsonResponse(
        {
            "lesson_completions": lesson_completion_by_day(
                instructor=request.user,
                days=days,
                today=_parse_day(request.GET.get("date")),
            ),
            "most_active_students": most_active_students(limit=5, instructor=request.user),
        }
    )


@require_GET
@instructor_required
def instructor_help_requests(request):
    status = (request.GET.get("status") or "").strip().lower()
    rows = help_service.instructor_help_requests(request.user, status=status)
    return JsonResponse({"help_requests": [help_service.help_request_to_dict(row, include_student=True) for row in rows]})


@require_POST
@instructor_required
def instructor_help_request_respond(request, help_request_id: int):
    help_request = help_service.instructor_help_request(request.user, help_request_id)
    payload = parse_json(request)
    help_service.respond_to_help_request(help_request, request.user, payload.get("response"))
    audit(
        request,
        action="help_request.respond",
        course=help_request.course,
        target_type="HelpRequest",
        target_id=help_request.id,
        summary="Responded to help request",
    )
    return JsonResponse({"help_request": help_service.help_request_to_dict(help_request, include_student=True)})


@require_POST
@instructor_required
def instructor_help_request_resolve(request, help_request_id: int):
    help_request = help_service.instructor_help_request(request.user, help_request_id)
    help_service.resolve_help_request(help_request)
    return JsonResponse({"help_request": help_service.help_request_to_dict(help_request, include_student=True)})


def _media_to_dict(media: CourseMedia) -> dict:
    return {
        "id": media.id,
        "course_id": media.course_id,
        "media_type": media.media_type,
        "title": media.title,
        "original_filename": media.original_filename,
        "size_bytes": media.size_bytes,
        "url": f"/api/media/{media.id}/download",
        "created_at": media.created_at.isoformat() if media.created_at else None,
    }


@require_http_methods(["GET", "POST"])
@instructor_required
def instructor_course_media(request, course_id: int):
    course = course_service.owned_course(request.user, course_id)
    if request.method == "GET":
        qs = course.media.all()
        media_type = (request.GET.get("type") or "").strip().lower()
        if media_type:
            qs = qs.filter(media_type=media_type)
        return JsonResponse({"media": [_media_to_dict(row) for row in qs]})

    upload = request.FILES.get("file")
    if upload is None:
        return JsonResponse({"error": "missing_file"}, status=400)
    original_name = safe_filename(upload.name or "upload")[:255]
    media_type = (request.POST.get("media_type") or "").strip().lower() or infer_media_type(original_name)
    error = check_media_upload(
        media_type=media_type,
        filename=original_name,
        size_bytes=int(upload.size or 0),
        max_mb=int(getattr(settings, "STRATUM_MEDIA_MAX_MB", 200)),
    )
    if error:
        return JsonResponse({"error": error}, status=413 if error == "file_too_large" else 400)

    media = CourseMedia(
        course=course,
        uploaded_by=request.user,
        media_type=media_type,
        title=(request.POST.get("title") or "").strip()[:200],
        original_filename=original_name,
        size_bytes=int(upload.size or 0),
    )
    media.file.save(original_name, upload, save=False)
    media.save()
    audit(
        request,
        action="media.upload",
        course=course,
        target_type="CourseMedia",
        target_id=media.id,
        summary=f"Uploaded {media.media_type} {original_name}",
        metadata={"size_bytes": media.size_bytes},
    )
    logger.info("course_media_uploaded course_id=%s media_id=%s type=%s", course.id, media.id, media.media_type)
    return JsonResponse({"media": _media_to_dict(media)}, status=201)


@require_http_methods(["DELETE"])
@instructor_required
def instructor_media_detail(request, media_id: int):
    media = CourseMedia.objects.select_related("course").filter(id=media_id).first()
    if media is None:
        return JsonResponse({"error": "media_not_found"}, status=404)
    course_service.owned_course(request.user, media.course_id)
    audit(
        request,
        action="media.delete",
        course=media.course,
        target_type="CourseMedia",
        target_id=media.id,
        summary=f"Deleted {media.original_filename}",
    )
    media.delete()
    return JsonResponse({"ok": True, "deleted": media_id})


__all__ = [
    "instructor_courses",
    "instructor_course_detail",
    "instructor_regenerate_course_code",
    "instructor_course_enrollments",
    "instructor_enrollment_detail",
    "instructor_regenerate_enrollment_code",
    "instructor_course_tasks",
    "instructor_all_course_tasks",
    "instructor_tasks",
    "instructor_task_toggle",
    "instructor_task_detail",
    "instructor_task_completion_stats",
    "instructor_engagement_stats",
    "instructor_help_requests",
    "instructor_help_request_respond",
    "instructor_help_request_resolve",
    "instructor_course_media",
    "instructor_media_detail",
]
