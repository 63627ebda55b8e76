"""Course authoring: structure normalization, ownership scoping, access codes."""

from __future__ import annotations

import json
import secrets

from django.conf import settings
from django.db.models import Count, Q
from django.utils import timezone

from ..errors import NotFound, ValidationFailed
from ..models import Course, Enrollment
from .access_codes import allocate_unique_code

_EDITABLE_FIELDS = ("title", "description", "category", "status")
_STATUS_VALUES = {value for value, _label in Course.STATUS_CHOICES}


def access_code_length() -> int:
    length = int(getattr(settings, "STRATUM_ACCESS_CODE_LENGTH", 6) or 6)
    return min(max(length, 6), 8)


def _code_in_use(code: str) -> bool:
    # Course and invite codes share one namespace so redemption is unambiguous.
    return (
        Course.objects.filter(access_code=code).exists()
        or Enrollment.objects.filter(access_code=code).exists()
    )


def allocate_access_code() -> str:
    return allocate_unique_code(_code_in_use, length=access_code_length())


def _new_lesson_id(taken: set[str]) -> str:
    while True:
        candidate = secrets.token_hex(4)
        if candidate not in taken:
            return candidate


def normalize_structure(raw) -> dict:
    """Coerce user/LLM supplied structure into `{overview, lessons[{id,title,content}]}`.

    Existing lesson ids are kept so completions stay attached across edits.
    """
    if raw in (None, ""):
        return {"overview": "", "lessons": []}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ValidationFailed("invalid_structure") from exc
    if not isinstance(raw, dict):
        raise ValidationFailed("invalid_structure")

    lessons_raw = raw.get("lessons") or []
    if not isinstance(lessons_raw, list):
        raise ValidationFailed("invalid_structure")

    taken: set[str] = set()
    lessons = []
    for item in lessons_raw:
        if not isinstance(item, dict):
            continue
        lesson_id = str(item.get("id") or "").strip()[:64]
        if not lesson_id or lesson_id in taken:
            lesson_id = _new_lesson_id(taken)
        taken.add(lesson_id)
        lessons.append(
            {
                "id": lesson_id,
                "title": str(item.get("title") or "").strip()[:200] or f"Lesson {len(lessons) + 1}",
                "content": str(item.get("content") or ""),
            }
        )
    return {"overview": str(raw.get("overview") or ""), "lessons": lessons}


def visible_courses(user):
    qs = Course.objects.select_related("instructor")
    if user.is_superuser:
        return qs
    return qs.filter(instructor=user)


def owned_course(user, course_id) -> Course:
    course = visible_courses(user).filter(id=course_id).first()
    if course is None:
        raise NotFound("course_not_found")
    return course


def instructor_courses(user):
    return visible_courses(user).annotate(
        active_enrollments=Count("enrollments", filter=Q(enrollments__status=Enrollment.STATUS_ACTIVE)),
        invited_enrollments=Count("enrollments", filter=Q(enrollments__status=Enrollment.STATUS_INVITED)),
    )


def _clean_text_fields(data: dict) -> dict:
    cleaned = {}
    if "title" in data:
        cleaned["title"] = str(data.get("title") or "").strip()[:200]
        if not cleaned["title"]:
            raise ValidationFailed("missing_title")
    if "description" in data:
        cleaned["description"] = str(data.get("description") or "").strip()
    if "category" in data:
        cleaned["category"] = str(data.get("category") or "").strip()[:80] or "General"
    if "status" in data:
        status = str(data.get("status") or "").strip().lower()
        if status not in _STATUS_VALUES:
            raise ValidationFailed("invalid_status")
        cleaned["status"] = status
    return cleaned


def create_course(instructor, data: dict) -> Course:
    fields = _clean_text_fields({**data, "title": data.get("title")})
    return Course.objects.create(
        instructor=instructor,
        title=fields["title"],
        description=fields.get("description", ""),
        category=fields.get("category", "General"),
        status=fields.get("status", Course.STATUS_DRAFT),
        structure=normalize_structure(data.get("structure")),
        access_code=allocate_access_code(),
        access_code_created_at=timezone.now(),
    )


def update_course(course: Course, data: dict) -> list[str]:
    """Apply editable fields from `data`; return the list of changed field names."""
    fields = _clean_text_fields({k: data[k] for k in data if k in _EDITABLE_FIELDS})
    changed = []
    for name, value in fields.items():
        if getattr(course, name) != value:
            setattr(course, name, value)
            changed.append(name)
    if "structure" in data:
        structure = normalize_structure(data.get("structure"))
        if structure != course.structure:
            course.structure = structure
            changed.append("structure")
    if changed:
        course.save(update_fields=changed + ["updated_at"])
    return changed


def regenerate_course_code(course: Course) -> str:
    course.access_code = allocate_access_code()
    course.access_code_created_at = timezone.now()
    course.save(update_fields=["access_code", "access_code_created_at", "updated_at"])
    return course.access_code


def course_summary(course: Course) -> dict:
    return {
        "id": course.id,
        "title": course.title,
        "description": course.description,
        "category": course.category,
        "status": course.status,
    }


def course_to_dict(course: Course, *, include_structure: bool = True) -> dict:
    row = {
        **course_summary(course),
        "instructor_id": course.instructor_id,
        "access_code": course.access_code,
        "access_code_created_at": course.access_code_created_at.isoformat() if course.access_code_created_at else None,
        "lesson_count": len(course.lessons()),
        "created_at": course.created_at.isoformat() if course.created_at else None,
        "updated_at": course.updated_at.isoformat() if course.updated_at else None,
    }
    if include_structure:
        row["structure"] = course.structure
    if hasattr(course, "active_enrollments"):
        row["enrollment_count"] = course.active_enrollments
        row["invited_count"] = course.invited_enrollments
    return row
