from django.contrib import admin
from django.utils.html import format_html

from .models import (
    ActivityEvent,
    AuditEvent,
    Course,
    CourseMedia,
    Enrollment,
    HelpRequest,
    Notification,
    StudentTask,
    Task,
)


class ReadOnlyAdminMixin:
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Course)
class CourseAdmin(admin.ModelAdmin):
    list_display = ("title", "instructor", "category", "status", "access_code", "updated_at")
    list_filter = ("status", "category")
    search_fields = ("title", "access_code", "instructor__username", "instructor__email")
    readonly_fields = ("created_at", "updated_at", "access_code_created_at")


@admin.register(Enrollment)
class EnrollmentAdmin(admin.ModelAdmin):
    list_display = ("course", "student", "email", "status", "method", "progress", "enrolled_at")
    list_filter = ("status", "method", "course")
    search_fields = ("email", "access_code", "student__username", "course__title")


@admin.register(HelpRequest)
class HelpRequestAdmin(admin.ModelAdmin):
    list_display = ("id", "created_at", "student", "course", "status", "responded_by")
    list_filter = ("status", "course")
    search_fields = ("subject", "student__username", "course__title")


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ("title", "type", "instructor", "course", "due_date", "completed", "assigned_count")
    list_filter = ("type", "completed")
    search_fields = ("title", "instructor__username")


@admin.register(StudentTask)
class StudentTaskAdmin(admin.ModelAdmin):
    list_display = ("title", "student", "course", "due_date", "completed", "notified")
    list_filter = ("completed", "notified", "course")
    search_fields = ("title", "student__username")


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("created_at", "recipient", "type", "priority", "read")
    list_filter = ("type", "priority", "read")
    search_fields = ("title", "recipient__username")


@admin.register(CourseMedia)
class CourseMediaAdmin(admin.ModelAdmin):
    list_display = ("original_filename", "course", "media_type", "size_bytes", "created_at", "download_link")
    list_filter = ("media_type", "course")
    search_fields = ("original_filename", "title", "course__title")
    readonly_fields = ("created_at",)

    def download_link(self, obj: CourseMedia):
        return format_html('<a href="/api/media/{}/download" target="_blank" rel="noopener">Download</a>', obj.id)

    download_link.short_description = "Download"


@admin.register(ActivityEvent)
class ActivityEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("created_at", "event_type", "course", "student", "source", "ip_address")
    list_filter = ("event_type", "source", ("created_at", admin.DateFieldListFilter))
    search_fields = ("source", "ip_address", "student__username", "course__title")
    readonly_fields = ("created_at",)


@admin.register(AuditEvent)
class AuditEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("created_at", "action", "actor_user", "course", "target_type", "target_id", "ip_address")
    list_filter = ("action", "course", "actor_user")
    search_fields = ("action", "summary", "target_type", "target_id", "ip_address", "actor_user__username")
    readonly_fields = ("created_at",)
