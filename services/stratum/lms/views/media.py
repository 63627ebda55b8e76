"""Permission-checked course media downloads."""

import mimetypes
from pathlib import Path

from django.http import FileResponse, JsonResponse
from django.views.decorators.http import require_GET

from ..models import CourseMedia, Enrollment
from ..services.filenames import safe_filename


def _request_can_view_media(request, media: CourseMedia) -> bool:
    user = request.user
    if not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    if user.is_staff:
        return media.course.instructor_id == user.id
    return Enrollment.objects.filter(
        course_id=media.course_id,
        student=user,
        status=Enrollment.STATUS_ACTIVE,
    ).exists()


@require_GET
def media_download(request, media_id: int):
    media = CourseMedia.objects.select_related("course").filter(id=media_id).first()
    if not media or not media.file:
        return JsonResponse({"error": "media_not_found"}, status=404)
    if not request.user.is_authenticated:
        return JsonResponse({"error": "unauthorized"}, status=401)
    if not _request_can_view_media(request, media):
        return JsonResponse({"error": "forbidden"}, status=403)

    try:
        handle = media.file.open("rb")
    except (FileNotFoundError, ValueError):
        return JsonResponse({"error": "media_not_found"}, status=404)

    filename = safe_filename((media.original_filename or Path(media.file.name).name or "media").strip()[:255])
    content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    response = FileResponse(
        handle,
        as_attachment=media.media_type == CourseMedia.TYPE_DOCUMENT,
        filename=filename,
        content_type=content_type,
    )
    response["X-Content-Type-Options"] = "nosniff"
    response["Content-Security-Policy"] = "default-src 'none'; sandbox"
    response["Referrer-Policy"] = "no-referrer"
    response["Cache-Control"] = "private, no-store"
    return response


__all__ = [
    "media_download",
]
