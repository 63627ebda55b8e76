"""Keep stored course media in sync with CourseMedia rows."""

import logging

from django.db.models.signals import post_delete, pre_save
from django.dispatch import receiver

from .models import CourseMedia

logger = logging.getLogger(__name__)


def _delete_stored_file(field_file) -> None:
    if not field_file:
        return
    name = field_file.name
    try:
        field_file.storage.delete(name)
    except Exception:
        logger.exception("course_media_file_delete_failed name=%s", name)


@receiver(post_delete, sender=CourseMedia)
def course_media_deleted(sender, instance: CourseMedia, **kwargs):
    # Also fires for course cascades, so deleting a course clears its uploads.
    _delete_stored_file(instance.file)


@receiver(pre_save, sender=CourseMedia)
def course_media_file_replaced(sender, instance: CourseMedia, **kwargs):
    if not instance.pk:
        return
    previous = CourseMedia.objects.filter(pk=instance.pk).only("file").first()
    if previous is None or not previous.file:
        return
    if previous.file.name != getattr(instance.file, "name", ""):
        _delete_stored_file(previous.file)
