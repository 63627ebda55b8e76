"""Lesson markdown rendering and sanitization for student-facing course views."""

from urllib.parse import urlparse

import bleach
import markdown as md
from django.conf import settings

_ALLOWED_TAGS = {
    "p",
    "br",
    "strong",
    "b",
    "em",
    "i",
    "h2",
    "h3",
    "h4",
    "ul",
    "ol",
    "li",
    "a",
    "blockquote",
    "code",
    "pre",
    "hr",
}


def _img_src_allowed(value: str, allowed_hosts: set[str]) -> bool:
    candidate = (value or "").strip()
    if not candidate:
        return False
    parsed = urlparse(candidate)
    if parsed.scheme in {"http", "https"}:
        return (parsed.hostname or "").lower() in allowed_hosts
    if parsed.scheme or parsed.netloc:
        return False
    # Relative path (same-origin once rendered).
    return True


def _external_link_attrs(attrs, new=False):
    href_key = (None, "href")
    if href_key not in attrs:
        return attrs
    attrs[(None, "target")] = "_blank"
    attrs[(None, "rel")] = "noopener"
    return attrs


def render_lesson_html(markdown_text: str) -> str:
    """Render lesson markdown (bold, italics, headings, links, images, lists) to safe HTML."""
    if not (markdown_text or "").strip():
        return ""

    allow_images = bool(getattr(settings, "STRATUM_MARKDOWN_ALLOW_IMAGES", False))
    allowed_hosts = {
        str(host).strip().lower()
        for host in getattr(settings, "STRATUM_MARKDOWN_ALLOWED_IMAGE_HOSTS", [])
        if str(host).strip()
    }

    def _img_attr_allowed(_tag: str, name: str, value: str) -> bool:
        if name == "src":
            return _img_src_allowed(value, allowed_hosts)
        return name in {"alt", "title", "loading"}

    html = md.markdown(
        markdown_text,
        extensions=["nl2br", "sane_lists", "fenced_code"],
        output_format="html5",
    )

    allowed_tags = set(_ALLOWED_TAGS)
    allowed_attrs = {
        "a": ["href", "title", "target", "rel"],
        "code": ["class"],
        "pre": ["class"],
    }
    if allow_images:
        allowed_tags.add("img")
        allowed_attrs["img"] = _img_attr_allowed

    cleaned = bleach.clean(
        html,
        tags=allowed_tags,
        attributes=allowed_attrs,
        protocols={"http", "https", "mailto"},
        strip=True,
    )
    return bleach.linkify(cleaned, callbacks=[_external_link_attrs], skip_tags=["pre", "code"], parse_email=False)
