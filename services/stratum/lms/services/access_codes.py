"""Access-code helpers for course-level and enrollment-level (invite) codes."""

from __future__ import annotations

import re
import secrets
from typing import Callable

# Excludes ambiguous characters (0/O, 1/I).
ACCESS_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_ACCESS_CODE_RE = re.compile(r"^[A-Z0-9]{6,8}$")


def generate_access_code(length: int = 6) -> str:
    """Generate a human-friendly access code."""
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(length))


def normalize_access_code(raw: str) -> str:
    return re.sub(r"\s+", "", str(raw or "")).upper()


def validate_access_code_format(code: str) -> bool:
    return bool(_ACCESS_CODE_RE.match(code or ""))


def allocate_unique_code(exists: Callable[[str], bool], *, length: int = 6, attempts: int = 10) -> str:
    for _ in range(attempts):
        code = generate_access_code(length)
        if not exists(code):
            return code
    raise RuntimeError("could_not_allocate_unique_access_code")
