"""Display helpers for Django users acting as instructors or students."""

from django.contrib.auth import get_user_model

UNKNOWN_STUDENT = "Unknown Student"


def display_name(user) -> str:
    if user is None:
        return UNKNOWN_STUDENT
    full = (user.get_full_name() or "").strip()
    return full or user.get_username() or UNKNOWN_STUDENT


def user_summary(user) -> dict:
    return {
        "id": user.id,
        "name": display_name(user),
        "email": user.email,
        "role": "instructor" if user.is_staff else "student",
    }


def student_names(student_ids) -> dict[int, str]:
    """Map user ids to display names; ids with no user map to "Unknown Student"."""
    ids = {int(sid) for sid in student_ids if sid}
    users = get_user_model().objects.filter(id__in=ids)
    names = {user.id: display_name(user) for user in users}
    return {sid: names.get(sid, UNKNOWN_STUDENT) for sid in ids}
