"""Student endpoints under /api/student/*."""

import logging

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from ..services import enrollment as enrollment_service
from ..services import help_requests as help_service
from ..services import tasks as task_service
from ..services.courses import course_summary
from ..services.lesson_content import render_lesson_html
from ..services.people import display_name
from ..services.progress import (
    completed_lesson_ids,
    course_progress,
    mark_lesson_completed,
    student_enrollments_with_progress,
)
from .helpers import client_ip, parse_json, rate_limited, student_required

logger = logging.getLogger(__name__)


@require_POST
@student_required
def student_enroll(request):
    """Redeem a course code or an invite code.

    Body (JSON): {"access_code": "K7QF3M"}
    """
    limit = int(getattr(settings, "STRATUM_ENROLL_RATE_LIMIT_PER_MINUTE", 20))
    if rate_limited(request, scope="enroll", limit=limit):
        return JsonResponse({"error": "rate_limited"}, status=429)

    payload = parse_json(request)
    enrollment = enrollment_service.enroll_with_access_code(
        request.user,
        payload.get("access_code") or payload.get("code") or "",
        ip_address=client_ip(request),
    )
    return JsonResponse(
        {
            "ok": True,
            "enrollment": enrollment_service.enrollment_to_dict(enrollment, include_code=False),
            "course": course_summary(enrollment.course),
        },
        status=201,
    )


@require_GET
@student_required
def student_courses(request):
    return JsonResponse({"courses": enrollment_service.enrolled_courses(request.user)})


@require_GET
@student_required
def student_course_detail(request, course_id: int):
    enrollment = enrollment_service.active_enrollment(request.user, course_id)
    course = enrollment.course
    done = set(completed_lesson_ids(request.user, course))
    structure = course.structure or {}
    lessons = [
        {
            "id": lesson.get("id"),
            "title": lesson.get("title") or "",
            "content_html": render_lesson_html(lesson.get("content") or ""),
            "completed": lesson.get("id") in done,
        }
        for lesson in course.lessons()
    ]
    return JsonResponse(
        {
            "course": {
                **course_summary(course),
                "instructor_name": display_name(course.instructor),
                "overview_html": render_lesson_html(structure.get("overview") or ""),
                "lessons": lessons,
            },
            "progress": course_progress(request.user, course),
        }
    )


@require_POST
@student_required
def student_complete_lesson(request, course_id: int, lesson_id: str):
    enrollment = enrollment_service.active_enrollment(request.user, course_id)
    completion, created = mark_lesson_completed(
        request.user,
        enrollment.course,
        lesson_id,
        ip_address=client_ip(request),
    )
    return JsonResponse(
        {
            "ok": True,
            "created": created,
            "lesson_id": completion.lesson_id,
            "completed_at": completion.completed_at.isoformat(),
            "progress": course_progress(request.user, enrollment.course),
        },
        status=201 if created else 200,
    )


@require_GET
@student_required
def student_course_progress(request, course_id: int):
    enrollment = enrollment_service.active_enrollment(request.user, course_id)
    return JsonResponse({"progress": course_progress(request.user, enrollment.course)})


@require_GET
@student_required
def student_progress(request):
    return JsonResponse({"enrollments": student_enrollments_with_progress(request.user)})


@require_GET
@student_required
def student_tasks(request):
    course_id = (request.GET.get("course_id") or "").strip()
    rows = task_service.student_tasks(request.user, course_id=int(course_id) if course_id.isdigit() else None)
    return JsonResponse({"tasks": [task_service.student_task_to_dict(row) for row in rows]})


@require_http_methods(["POST", "PATCH"])
@student_required
def student_task_update(request, student_task_id: int):
    student_task = task_service.student_task(request.user, student_task_id)
    payload = parse_json(request)
    if "completed" not in payload:
        return JsonResponse({"error": "missing_fields"}, status=400)
    completed = payload["completed"]
    if not isinstance(completed, bool):
        return JsonResponse({"error": "invalid_completed"}, status=400)
    task_service.update_student_task_completion(
        student_task,
        completed,
        ip_address=client_ip(request),
    )
    return JsonResponse({"task": task_service.student_task_to_dict(student_task)})


@require_http_methods(["GET", "POST"])
@student_required
def student_help_requests(request):
    if request.method == "POST":
        payload = parse_json(request)
        help_request = help_service.create_help_request(
            request.user,
            course_id=payload.get("course_id"),
            message=payload.get("message"),
            subject=payload.get("subject") or "",
            lesson_id=payload.get("lesson_id") or "",
            ip_address=client_ip(request),
        )
        logger.info("help_request_created id=%s course_id=%s", help_request.id, help_request.course_id)
        return JsonResponse({"help_request": help_service.help_request_to_dict(help_request)}, status=201)

    rows = help_service.student_help_requests(request.user)
    return JsonResponse({"help_requests": [help_service.help_request_to_dict(row) for row in rows]})


@require_POST
@student_required
def student_help_request_resolve(request, help_request_id: int):
    help_request = help_service.student_help_request(request.user, help_request_id)
    help_service.resolve_help_request(help_request)
    return JsonResponse({"help_request": help_service.help_request_to_dict(help_request)})


__all__ = [
    "student_enroll",
    "student_courses",
    "student_course_detail",
    "student_complete_lesson",
    "student_course_progress",
    "student_progress",
    "student_tasks",
    "student_task_update",
    "student_help_requests",
    "student_help_request_resolve",
]
