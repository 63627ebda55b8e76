"""Account registration for students and instructors.

Emails double as usernames and are unique case-insensitively.
"""

from __future__ import annotations

from django.contrib.auth import get_user_model
from django.contrib.auth.password_validation import validate_password
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import IntegrityError, transaction

from ..errors import Conflict, ValidationFailed


class WeakPassword(ValidationFailed):
    code = "weak_password"

    def __init__(self, messages: list[str]):
        super().__init__("weak_password")
        self.messages = messages


def normalize_email(raw) -> str:
    email = str(raw or "").strip().lower()
    if not email:
        raise ValidationFailed("missing_email")
    try:
        validate_email(email)
    except ValidationError as exc:
        raise ValidationFailed("invalid_email") from exc
    return email


def _split_name(name: str) -> tuple[str, str]:
    parts = (name or "").strip().split(None, 1)
    if not parts:
        return "", ""
    first = parts[0][:150]
    last = parts[1][:150] if len(parts) > 1 else ""
    return first, last


def register_user(*, email, password, name: str = "", instructor: bool = False):
    email = normalize_email(email)
    password = str(password or "")
    if not password:
        raise ValidationFailed("missing_password")

    User = get_user_model()
    if User.objects.filter(email__iexact=email).exists() or User.objects.filter(username__iexact=email).exists():
        raise Conflict("email_taken")

    first_name, last_name = _split_name(str(name or ""))
    candidate = User(username=email, email=email, first_name=first_name, last_name=last_name)
    try:
        validate_password(password, user=candidate)
    except ValidationError as exc:
        raise WeakPassword(list(exc.messages)) from exc

    try:
        with transaction.atomic():
            return User.objects.create_user(
                username=email,
                email=email,
                password=password,
                first_name=first_name,
                last_name=last_name,
                is_staff=bool(instructor),
            )
    except IntegrityError as exc:
        raise Conflict("email_taken") from exc
