"""Build course-outline prompts and parse the outlines models return.

Outline text follows the format the generator asks the model for:

    # <course title>
    **Category:** <category>
    ## Course Overview
    <overview paragraphs>
    ## Lesson 1: <title>
    <lesson body>

Both services use this: the generator returns `parsedOutline` with every
response, and the Stratum `import_course` command accepts saved outlines.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

DEFAULT_LESSON_TITLE = "Lesson 1: Introduction"
DEFAULT_LESSON_CONTENT = "This lesson introduces the key concepts of this course."

_OVERVIEW_HEADING_RE = re.compile(r"^##\s*Course\s+Overview", re.I)
_LESSON_HEADING_RE = re.compile(r"^##\s*Lesson\s+\d+:", re.I)
_HEADING_PREFIX_RE = re.compile(r"^##\s*")
_TITLE_LINE_RE = re.compile(r"^#\s")
_CATEGORY_LINE_RE = re.compile(r"^\*\*Category:")


def default_lesson() -> dict:
    return {"title": DEFAULT_LESSON_TITLE, "content": DEFAULT_LESSON_CONTENT}


def _scan(outline_text: str) -> dict:
    overview = ""
    lessons: list[dict] = []
    overview_lines: list[str] = []
    lesson_lines: list[str] = []
    current: dict | None = None
    in_overview = False

    for raw in outline_text.split("\n"):
        line = raw.strip()
        if not line:
            continue

        if _OVERVIEW_HEADING_RE.match(line):
            in_overview = True
            continue

        if _LESSON_HEADING_RE.match(line):
            in_overview = False
            # Only the first overview block is kept.
            if overview_lines and not overview:
                overview = "\n".join(overview_lines)
                overview_lines = []
            if current is not None and lesson_lines:
                current["content"] = "\n".join(lesson_lines)
                lesson_lines = []
            current = {"title": _HEADING_PREFIX_RE.sub("", line, count=1), "content": ""}
            lessons.append(current)
        elif in_overview:
            overview_lines.append(line)
        elif current is not None:
            lesson_lines.append(line)
        elif _TITLE_LINE_RE.match(line) or _CATEGORY_LINE_RE.match(line):
            continue
        else:
            overview_lines.append(line)

    if overview_lines and not overview:
        overview = "\n".join(overview_lines)
    if current is not None and lesson_lines:
        current["content"] = "\n".join(lesson_lines)
    if not lessons:
        lessons.append(default_lesson())
    return {"overview": overview, "lessons": lessons}


SYSTEM_PROMPT = (
    "You are an expert course creator specializing in creating structured educational content.\n"
    "Your task is to create a complete course structure with lessons containing actual educational content."
)

_USER_PROMPT_TEMPLATE = """Create a course outline for a course titled "{title}" with the description: "{description}".
The course should be in the category: "{category}".

Please provide:
1. A brief course overview (2-3 sentences)
2. 4-5 lessons with clear titles (e.g., "Lesson 1: Introduction to [Topic]")
3. For EACH lesson, create detailed educational content (3-5 paragraphs) that teaches the actual material, not just descriptions of what will be covered.

Format the response as follows:
# {title}
**Category:** {category}
## Course Overview
[Course overview content here]

## Lesson 1: [Lesson Title]
[Detailed lesson content here - 3-5 paragraphs of actual educational material]

## Lesson 2: [Lesson Title]
[Detailed lesson content here - 3-5 paragraphs of actual educational material]

And so on for each lesson."""


def build_course_prompts(title: str, description: str, category: str = "") -> tuple[str, str]:
    """Return `(system_prompt, user_prompt)` asking for an outline in the format above."""
    user_prompt = _USER_PROMPT_TEMPLATE.format(
        title=(title or "").strip(),
        description=(description or "").strip(),
        category=(category or "").strip() or "General",
    )
    return SYSTEM_PROMPT, user_prompt


def parse_outline(outline_text: str) -> dict:
    """Return `{"overview": str, "lessons": [{"title", "content"}, ...]}`.

    Never raises: unparseable input comes back as the overview next to the
    default introduction lesson.
    """
    text = outline_text if isinstance(outline_text, str) else str(outline_text or "")
    try:
        return _scan(text)
    except Exception:
        logger.exception("course_outline_parse_failed chars=%s", len(text))
        return {"overview": text, "lessons": [default_lesson()]}


__all__ = [
    "SYSTEM_PROMPT",
    "build_course_prompts",
    "DEFAULT_LESSON_CONTENT",
    "DEFAULT_LESSON_TITLE",
    "default_lesson",
    "parse_outline",
]
