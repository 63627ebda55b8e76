from django.apps import AppConfig


class LmsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "lms"
    verbose_name = "Stratum courses"

    def ready(self):
        from . import signals  # noqa: F401
