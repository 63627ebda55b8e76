"""Student help requests and instructor responses."""

from __future__ import annotations

from django.utils import timezone

from ..errors import NotFound, ValidationFailed
from ..models import ActivityEvent, HelpRequest, Notification
from .activity import emit_activity_event
from .enrollment import active_enrollment
from .notifications import notify
from .people import display_name


def create_help_request(
    student,
    *,
    course_id,
    message: str,
    subject: str = "",
    lesson_id: str = "",
    ip_address: str = "",
) -> HelpRequest:
    message = (message or "").strip()
    if not message:
        raise ValidationFailed("missing_message")
    if course_id in (None, ""):
        raise ValidationFailed("missing_course")
    try:
        course_id = int(course_id)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("invalid_course") from exc
    enrollment = active_enrollment(student, course_id)

    help_request = HelpRequest.objects.create(
        student=student,
        course=enrollment.course,
        lesson_id=str(lesson_id or "").strip()[:64],
        subject=(subject or "").strip()[:200],
        message=message[:8000],
    )
    emit_activity_event(
        event_type=ActivityEvent.EVENT_HELP_REQUEST,
        course=enrollment.course,
        student=student,
        details={"help_request_id": help_request.id, "lesson_id": help_request.lesson_id},
        ip_address=ip_address,
    )
    return help_request


def student_help_requests(student):
    return HelpRequest.objects.select_related("course").filter(student=student).order_by("-updated_at", "-id")


def student_help_request(student, help_request_id) -> HelpRequest:
    help_request = student_help_requests(student).filter(id=help_request_id).first()
    if help_request is None:
        raise NotFound("help_request_not_found")
    return help_request


def instructor_help_requests(instructor, *, status: str = ""):
    qs = HelpRequest.objects.select_related("student", "course")
    if not instructor.is_superuser:
        qs = qs.filter(course__instructor=instructor)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-created_at", "-id")


def instructor_help_request(instructor, help_request_id) -> HelpRequest:
    help_request = instructor_help_requests(instructor).filter(id=help_request_id).first()
    if help_request is None:
        raise NotFound("help_request_not_found")
    return help_request


def respond_to_help_request(help_request: HelpRequest, instructor, response: str) -> HelpRequest:
    response = (response or "").strip()
    if not response:
        raise ValidationFailed("missing_response")
    help_request.instructor_response = response[:8000]
    help_request.responded_by = instructor
    help_request.responded_at = timezone.now()
    help_request.status = HelpRequest.STATUS_ANSWERED
    help_request.save(update_fields=["instructor_response", "responded_by", "responded_at", "status", "updated_at"])

    course_title = help_request.course.title if help_request.course_id else "your course"
    notify(
        help_request.student,
        type=Notification.TYPE_HELP_RESPONSE,
        title="Help Request Answered",
        message=f"{display_name(instructor)} responded to your question in {course_title}.",
        course=help_request.course,
    )
    return help_request


def resolve_help_request(help_request: HelpRequest) -> HelpRequest:
    if help_request.status != HelpRequest.STATUS_RESOLVED:
        help_request.status = HelpRequest.STATUS_RESOLVED
        help_request.resolved_at = timezone.now()
        help_request.save(update_fields=["status", "resolved_at", "updated_at"])
    return help_request


def help_request_to_dict(help_request: HelpRequest, *, include_student: bool = False) -> dict:
    row = {
        "id": help_request.id,
        "course_id": help_request.course_id,
        "course_title": help_request.course.title if help_request.course_id else "",
        "lesson_id": help_request.lesson_id,
        "subject": help_request.subject,
        "message": help_request.message,
        "status": help_request.status,
        "instructor_response": help_request.instructor_response,
        "responded_at": help_request.responded_at.isoformat() if help_request.responded_at else None,
        "resolved_at": help_request.resolved_at.isoformat() if help_request.resolved_at else None,
        "created_at": help_request.created_at.isoformat() if help_request.created_at else None,
        "updated_at": help_request.updated_at.isoformat() if help_request.updated_at else None,
    }
    if include_student:
        student = help_request.student
        row["student"] = {
            "id": student.id,
            "name": display_name(student),
            "full_name": (student.get_full_name() or "").strip(),
            "email": student.email,
        }
    return row
