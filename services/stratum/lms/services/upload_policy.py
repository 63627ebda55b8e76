"""Course-media upload policy: allowed extensions and size caps per media type."""

from pathlib import Path

MEDIA_EXTENSIONS = {
    "image": [".png", ".jpg", ".jpeg", ".gif", ".webp"],
    "video": [".mp4", ".webm", ".mov", ".m4v"],
    "document": [".pdf", ".doc", ".docx", ".ppt", ".pptx", ".xls", ".xlsx", ".txt", ".md", ".csv", ".zip"],
}


def file_extension(filename: str) -> str:
    return Path(filename or "").suffix.strip().lower()


def infer_media_type(filename: str) -> str:
    """Return the media type owning this file's extension, or ""."""
    ext = file_extension(filename)
    for media_type, extensions in MEDIA_EXTENSIONS.items():
        if ext in extensions:
            return media_type
    return ""


def check_media_upload(*, media_type: str, filename: str, size_bytes: int, max_mb: int) -> str:
    """Return an error code, or "" when the upload is acceptable."""
    allowed = MEDIA_EXTENSIONS.get(media_type)
    if allowed is None:
        return "invalid_media_type"
    if file_extension(filename) not in allowed:
        return "extension_not_allowed"
    if size_bytes <= 0:
        return "empty_file"
    if max_mb > 0 and size_bytes > max_mb * 1024 * 1024:
        return "file_too_large"
    return ""
