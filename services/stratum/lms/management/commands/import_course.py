"""Import a course from a YAML manifest or a saved generator outline.

Usage:
  python manage.py import_course content/intro_python/course.yaml --instructor ada@example.org
  python manage.py import_course outline.md --instructor ada@example.org --status published

Manifest shape (YAML):
  title: Intro to Python
  description: ...
  category: Programming
  overview: ...
  lessons:
    - title: "Lesson 1: Variables"
      content: |
        inline markdown
    - title: "Lesson 2: Loops"
      file: lessons/02-loops.md   # relative to the manifest

Markdown files are read as generator outlines (`# Title`, `**Category:**`,
`## Course Overview`, `## Lesson N: ...`).
"""

from __future__ import annotations

import re
from pathlib import Path

import yaml
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from common.course_outline import parse_outline
from lms.errors import StratumError
from lms.services.courses import create_course

_TITLE_RE = re.compile(r"^#\s+(.+)$", re.M)
_CATEGORY_RE = re.compile(r"^\*\*Category:\*\*\s*(.+)$", re.M)


def _load_manifest(path: Path) -> dict:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise CommandError(f"Manifest must be a mapping: {path}")

    lessons = []
    for idx, item in enumerate(data.get("lessons") or [], start=1):
        if not isinstance(item, dict):
            raise CommandError(f"Lesson {idx} must be a mapping.")
        content = str(item.get("content") or "")
        rel_path = str(item.get("file") or "").strip()
        if rel_path:
            lesson_path = (path.parent / rel_path).resolve()
            if not lesson_path.is_relative_to(path.parent.resolve()):
                raise CommandError(f"Lesson file escapes the manifest directory: {rel_path}")
            if not lesson_path.exists():
                raise CommandError(f"Lesson file not found: {lesson_path}")
            content = lesson_path.read_text(encoding="utf-8")
        lessons.append({"id": item.get("id") or "", "title": item.get("title") or "", "content": content})

    return {
        "title": data.get("title") or "",
        "description": data.get("description") or "",
        "category": data.get("category") or "General",
        "status": data.get("status") or "",
        "structure": {"overview": data.get("overview") or "", "lessons": lessons},
    }


def _load_outline(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    title_match = _TITLE_RE.search(text)
    category_match = _CATEGORY_RE.search(text)
    return {
        "title": title_match.group(1).strip() if title_match else "",
        "description": "",
        "category": category_match.group(1).strip() if category_match else "General",
        "status": "",
        "structure": parse_outline(text),
    }


class Command(BaseCommand):
    help = "Import a course (YAML manifest or generated outline markdown) for an instructor."

    def add_arguments(self, parser):
        parser.add_argument("path", help="course.yaml manifest or outline .md file")
        parser.add_argument("--instructor", required=True, help="Instructor username that will own the course")
        parser.add_argument("--title", default="", help="Override the course title")
        parser.add_argument("--description", default="", help="Override the course description")
        parser.add_argument(
            "--status",
            default="",
            choices=["", "draft", "published", "archived"],
            help="Course status (default: manifest value, else draft)",
        )

    @transaction.atomic
    def handle(self, *args, **opts):
        path = Path(opts["path"])
        if not path.exists():
            raise CommandError(f"File not found: {path}")

        User = get_user_model()
        instructor = User.objects.filter(username=opts["instructor"].strip()).first()
        if instructor is None:
            raise CommandError(f"User not found: {opts['instructor']}")
        if not instructor.is_staff:
            raise CommandError(f"User {instructor.get_username()} is not an instructor (staff) account")

        if path.suffix.lower() in {".yaml", ".yml"}:
            data = _load_manifest(path)
        else:
            data = _load_outline(path)

        for key in ("title", "description", "status"):
            if opts[key]:
                data[key] = opts[key]
        if not data["status"]:
            data.pop("status")
        if not data["structure"]["lessons"]:
            raise CommandError("Course has no lessons.")

        try:
            course = create_course(instructor, data)
        except StratumError as exc:
            raise CommandError(f"Import failed: {exc.code}") from exc

        self.stdout.write(
            self.style.SUCCESS(
                f"Imported course {course.id} '{course.title}' with {len(course.lessons())} lesson(s); "
                f"access code {course.access_code}"
            )
        )
