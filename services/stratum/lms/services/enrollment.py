"""Enrollment flows: instructor invites and student access-code redemption.

Redemption rules:
- course codes are checked first and create a fresh `access_code` enrollment
- invite codes claim the invited row in place (student bound, status active)
- a student already enrolled in the course is rejected with `already_enrolled`
- an invite bound to a different student is rejected with `already_claimed`
"""

from __future__ import annotations

import logging

from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import IntegrityError, transaction
from django.utils import timezone

from ..errors import Conflict, NotFound, ValidationFailed
from ..models import ActivityEvent, Course, Enrollment
from .access_codes import normalize_access_code, validate_access_code_format
from .activity import emit_activity_event
from .courses import allocate_access_code, course_summary
from .people import display_name

logger = logging.getLogger(__name__)


def _normalize_email(raw: str) -> str:
    email = (raw or "").strip().lower()
    try:
        validate_email(email)
    except ValidationError as exc:
        raise ValidationFailed("invalid_email") from exc
    return email


def enroll_student(course: Course, email: str) -> Enrollment:
    """Create an instructor invite carrying its own access code."""
    email = _normalize_email(email)
    if Enrollment.objects.filter(course=course, student__email__iexact=email).exists():
        raise Conflict("already_enrolled")
    if Enrollment.objects.filter(course=course, email=email).exists():
        raise Conflict("already_invited")
    try:
        return Enrollment.objects.create(
            course=course,
            email=email,
            access_code=allocate_access_code(),
            access_code_created_at=timezone.now(),
            status=Enrollment.STATUS_INVITED,
            method=Enrollment.METHOD_INSTRUCTOR,
            total_lessons=len(course.lessons()),
        )
    except IntegrityError as exc:
        raise Conflict("already_invited") from exc


def regenerate_enrollment_code(enrollment: Enrollment) -> str:
    enrollment.access_code = allocate_access_code()
    enrollment.access_code_created_at = timezone.now()
    enrollment.save(update_fields=["access_code", "access_code_created_at"])
    return enrollment.access_code


def course_enrollment(course: Course, enrollment_id) -> Enrollment:
    enrollment = (
        Enrollment.objects.select_related("student", "course")
        .filter(course=course, id=enrollment_id)
        .first()
    )
    if enrollment is None:
        raise NotFound("enrollment_not_found")
    return enrollment


def course_enrollments(course: Course):
    return Enrollment.objects.select_related("student").filter(course=course)


def remove_enrollment(enrollment: Enrollment) -> None:
    enrollment.delete()


def _resolve_code(code: str) -> tuple[Course, Enrollment | None]:
    course = Course.objects.filter(access_code=code).first()
    if course is not None:
        return course, None
    invite = Enrollment.objects.select_related("course").filter(access_code=code).first()
    if invite is None:
        raise NotFound("invalid_code")
    return invite.course, invite


def _claim(invite: Enrollment, student, now) -> Enrollment:
    invite.student = student
    invite.status = Enrollment.STATUS_ACTIVE
    invite.claimed_at = now
    invite.enrolled_at = now
    invite.last_activity_at = now
    invite.total_lessons = len(invite.course.lessons())
    invite.save(
        update_fields=["student", "status", "enrolled_at", "claimed_at", "last_activity_at", "total_lessons"]
    )
    return invite


def enroll_with_access_code(student, raw_code: str, *, ip_address: str = "") -> Enrollment:
    code = normalize_access_code(raw_code)
    if not validate_access_code_format(code):
        raise ValidationFailed("invalid_format")

    course, invite = _resolve_code(code)
    if course.status == Course.STATUS_ARCHIVED:
        raise Conflict("course_archived")

    now = timezone.now()
    student_email = (student.email or "").strip().lower()
    try:
        with transaction.atomic():
            if Enrollment.objects.select_for_update().filter(course=course, student=student).exists():
                raise Conflict("already_enrolled")

            if invite is None and student_email:
                # A pending invite for this student's email is claimed instead of duplicated.
                invite = Enrollment.objects.filter(
                    course=course,
                    email=student_email,
                    student__isnull=True,
                ).first()

            if invite is not None:
                invite = Enrollment.objects.select_for_update().select_related("course").get(pk=invite.pk)
                if invite.student_id and invite.student_id != student.id:
                    raise Conflict("already_claimed")
                enrollment = _claim(invite, student, now)
            else:
                enrollment = Enrollment.objects.create(
                    course=course,
                    student=student,
                    email=student_email,
                    status=Enrollment.STATUS_ACTIVE,
                    method=Enrollment.METHOD_ACCESS_CODE,
                    enrolled_at=now,
                    last_activity_at=now,
                    total_lessons=len(course.lessons()),
                )
    except IntegrityError as exc:
        raise Conflict("already_enrolled") from exc

    emit_activity_event(
        event_type=ActivityEvent.EVENT_ENROLLMENT,
        course=course,
        student=student,
        details={"enrollment_id": enrollment.id, "method": enrollment.method},
        ip_address=ip_address,
    )
    logger.info(
        "enrollment_redeemed course_id=%s enrollment_id=%s method=%s",
        course.id,
        enrollment.id,
        enrollment.method,
    )
    return enrollment


def active_enrollment(student, course_id) -> Enrollment:
    enrollment = (
        Enrollment.objects.select_related("course", "course__instructor")
        .filter(student=student, course_id=course_id, status=Enrollment.STATUS_ACTIVE)
        .first()
    )
    if enrollment is None:
        raise NotFound("not_enrolled")
    return enrollment


def enrollment_to_dict(enrollment: Enrollment, *, include_code: bool = True) -> dict:
    student = enrollment.student
    row = {
        "id": enrollment.id,
        "course_id": enrollment.course_id,
        "student_id": enrollment.student_id,
        "student_name": display_name(student) if student is not None else "",
        "email": enrollment.email or (student.email if student is not None else ""),
        "status": enrollment.status,
        "method": enrollment.method,
        "progress": enrollment.progress,
        "completed_lessons": enrollment.completed_lessons,
        "total_lessons": enrollment.total_lessons,
        "enrolled_at": enrollment.enrolled_at.isoformat() if enrollment.enrolled_at else None,
        "claimed_at": enrollment.claimed_at.isoformat() if enrollment.claimed_at else None,
        "last_activity_at": enrollment.last_activity_at.isoformat() if enrollment.last_activity_at else None,
    }
    if include_code:
        row["access_code"] = enrollment.access_code
    return row


def enrolled_courses(student) -> list[dict]:
    rows = []
    enrollments = Enrollment.objects.select_related("course", "course__instructor").filter(
        student=student,
        status=Enrollment.STATUS_ACTIVE,
    )
    for enrollment in enrollments:
        course = enrollment.course
        rows.append(
            {
                "enrollment_id": enrollment.id,
                "enrollment_status": enrollment.status,
                "progress": enrollment.progress,
                "completed_lessons": enrollment.completed_lessons,
                "total_lessons": enrollment.total_lessons,
                "enrolled_at": enrollment.enrolled_at.isoformat() if enrollment.enrolled_at else None,
                "course": {
                    **course_summary(course),
                    "instructor_name": display_name(course.instructor),
                    "lesson_count": len(course.lessons()),
                },
            }
        )
    return rows
