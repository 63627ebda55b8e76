from django.contrib import admin
from django.urls import path
from lms import views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("healthz", views.healthz),

    # Session auth
    path("api/auth/csrf", views.auth_csrf),
    path("api/auth/register/student", views.auth_register_student),
    path("api/auth/register/instructor", views.auth_register_instructor),
    path("api/auth/login", views.auth_login_view),
    path("api/auth/logout", views.auth_logout_view),
    path("api/auth/me", views.auth_me),

    # Instructor dashboard (staff-only)
    path("api/instructor/2fa/setup", views.instructor_2fa_setup),
    path("api/instructor/2fa/confirm", views.instructor_2fa_confirm),
    path("api/instructor/courses", views.instructor_courses),
    path("api/instructor/courses/<int:course_id>", views.instructor_course_detail),
    path("api/instructor/courses/<int:course_id>/access-code", views.instructor_regenerate_course_code),
    path("api/instructor/courses/<int:course_id>/enrollments", views.instructor_course_enrollments),
    path(
        "api/instructor/courses/<int:course_id>/enrollments/<int:enrollment_id>",
        views.instructor_enrollment_detail,
    ),
    path(
        "api/instructor/courses/<int:course_id>/enrollments/<int:enrollment_id>/access-code",
        views.instructor_regenerate_enrollment_code,
    ),
    path("api/instructor/courses/<int:course_id>/tasks", views.instructor_course_tasks),
    path("api/instructor/courses/<int:course_id>/media", views.instructor_course_media),
    path("api/instructor/media/<int:media_id>", views.instructor_media_detail),
    path("api/instructor/course-tasks", views.instructor_all_course_tasks),
    path("api/instructor/tasks", views.instructor_tasks),
    path("api/instructor/tasks/<int:task_id>", views.instructor_task_detail),
    path("api/instructor/tasks/<int:task_id>/toggle", views.instructor_task_toggle),
    path("api/instructor/stats/task-completion", views.instructor_task_completion_stats),
    path("api/instructor/stats/engagement", views.instructor_engagement_stats),
    path("api/instructor/help-requests", views.instructor_help_requests),
    path("api/instructor/help-requests/<int:help_request_id>/respond", views.instructor_help_request_respond),
    path("api/instructor/help-requests/<int:help_request_id>/resolve", views.instructor_help_request_resolve),

    # Student flow
    path("api/student/enroll", views.student_enroll),
    path("api/student/courses", views.student_courses),
    path("api/student/courses/<int:course_id>", views.student_course_detail),
    path("api/student/courses/<int:course_id>/progress", views.student_course_progress),
    path(
        "api/student/courses/<int:course_id>/lessons/<str:lesson_id>/complete",
        views.student_complete_lesson,
    ),
    path("api/student/progress", views.student_progress),
    path("api/student/tasks", views.student_tasks),
    path("api/student/tasks/<int:student_task_id>", views.student_task_update),
    path("api/student/help-requests", views.student_help_requests),
    path("api/student/help-requests/<int:help_request_id>/resolve", views.student_help_request_resolve),

    # Notifications (role-aware)
    path("api/notifications", views.notifications_list),
    path("api/notifications/unread-count", views.notifications_unread_count),
    path("api/notifications/read-all", views.notifications_mark_all_read),
    path("api/notifications/<str:notification_id>/read", views.notification_mark_read),

    # Media
    path("api/media/<int:media_id>/download", views.media_download),

    # Service-to-service
    path("internal/events/course-generated", views.internal_course_generated_event),
]
