"""Data model for Stratum.

Tenancy boundary:
- Every Course belongs to one instructor (a staff user).
- Students reach a course only through an Enrollment.
- Tasks, help requests and notifications hang off those two relationships,
  so instructor queries always filter by `course__instructor`.
"""

import time

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .services.access_codes import generate_access_code
from .services.filenames import safe_filename


def empty_course_structure() -> dict:
    return {"overview": "", "lessons": []}


class Course(models.Model):
    """A course authored by one instructor.

    `structure` holds `{"overview": str, "lessons": [{"id", "title", "content"}]}`.
    """

    STATUS_DRAFT = "draft"
    STATUS_PUBLISHED = "published"
    STATUS_ARCHIVED = "archived"
    STATUS_CHOICES = [
        (STATUS_DRAFT, "Draft"),
        (STATUS_PUBLISHED, "Published"),
        (STATUS_ARCHIVED, "Archived"),
    ]

    instructor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="courses_taught",
    )
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    category = models.CharField(max_length=80, default="General")
    structure = models.JSONField(default=empty_course_structure, blank=True)
    access_code = models.CharField(max_length=16, unique=True, default=generate_access_code)
    access_code_created_at = models.DateTimeField(default=timezone.now)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_DRAFT)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["instructor", "status"], name="lms_course_instr_status_idx"),
        ]

    def lessons(self) -> list[dict]:
        lessons = (self.structure or {}).get("lessons") or []
        return [lesson for lesson in lessons if isinstance(lesson, dict)]

    def lesson_ids(self) -> list[str]:
        return [str(lesson.get("id")) for lesson in self.lessons() if lesson.get("id")]

    def __str__(self) -> str:
        return f"{self.title} ({self.access_code})"


class Enrollment(models.Model):
    """A student's membership in a course.

    Instructor invites start as `invited` rows with an email + invite code and
    no student; redeeming the invite code binds the student in place.
    """

    STATUS_INVITED = "invited"
    STATUS_ACTIVE = "active"
    STATUS_CHOICES = [
        (STATUS_INVITED, "Invited"),
        (STATUS_ACTIVE, "Active"),
    ]

    METHOD_INSTRUCTOR = "instructor"
    METHOD_ACCESS_CODE = "access_code"
    METHOD_CHOICES = [
        (METHOD_INSTRUCTOR, "Instructor invite"),
        (METHOD_ACCESS_CODE, "Course access code"),
    ]

    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="enrollments")
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="enrollments",
    )
    email = models.EmailField(blank=True, default="")
    access_code = models.CharField(max_length=16, blank=True, default="")
    access_code_created_at = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    method = models.CharField(max_length=16, choices=METHOD_CHOICES, default=METHOD_ACCESS_CODE)
    progress = models.PositiveSmallIntegerField(default=0)
    completed_lessons = models.PositiveIntegerField(default=0)
    total_lessons = models.PositiveIntegerField(default=0)
    enrolled_at = models.DateTimeField(default=timezone.now)
    claimed_at = models.DateTimeField(null=True, blank=True)
    last_activity_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-enrolled_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["course", "student"],
                name="uniq_enrollment_per_course_student",
            ),
            models.UniqueConstraint(
                fields=["course", "email"],
                condition=~Q(email=""),
                name="uniq_enrollment_per_course_email",
            ),
        ]
        indexes = [
            models.Index(fields=["access_code"], name="lms_enroll_code_idx"),
            models.Index(fields=["course", "status"], name="lms_enroll_course_status_idx"),
            models.Index(fields=["student", "status"], name="lms_enroll_student_status_idx"),
        ]

    def __str__(self) -> str:
        who = self.email or (self.student.get_username() if self.student_id else "unclaimed")
        return f"{who} @ {self.course.title}"


class LessonCompletion(models.Model):
    """One completed lesson per (student, course, lesson id)."""

    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="lesson_completions",
    )
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="lesson_completions")
    lesson_id = models.CharField(max_length=64)
    completed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-completed_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["student", "course", "lesson_id"],
                name="uniq_lesson_completion",
            ),
        ]
        indexes = [
            models.Index(fields=["course", "completed_at"], name="lms_lessoncomp_course_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.student_id}:{self.course_id}/{self.lesson_id}"


class ActivityEvent(models.Model):
    """Append-only learner activity stream for dashboards and operations.

    Keep this event log metadata-only (ids, lesson ids, counts). Do not store
    help-request text or generated course content here.
    """

    EVENT_LESSON_COMPLETION = "lesson_completion"
    EVENT_TASK_COMPLETION = "task_completion"
    EVENT_ENROLLMENT = "enrollment"
    EVENT_HELP_REQUEST = "help_request"
    EVENT_COURSE_GENERATED = "course_generated"

    EVENT_TYPE_CHOICES = [
        (EVENT_LESSON_COMPLETION, "Lesson completion"),
        (EVENT_TASK_COMPLETION, "Task completion"),
        (EVENT_ENROLLMENT, "Enrollment"),
        (EVENT_HELP_REQUEST, "Help request"),
        (EVENT_COURSE_GENERATED, "Course outline generated"),
    ]

    course = models.ForeignKey(
        Course,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="activity_events",
    )
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="activity_events",
    )
    event_type = models.CharField(max_length=48, choices=EVENT_TYPE_CHOICES)
    source = models.CharField(max_length=40, default="stratum")
    details = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["event_type", "created_at"], name="lms_activity_type_idx"),
            models.Index(fields=["course", "created_at"], name="lms_activity_course_idx"),
            models.Index(fields=["student", "created_at"], name="lms_activity_student_idx"),
        ]

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("ActivityEvent is append-only and cannot be updated.")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("ActivityEvent is append-only and cannot be deleted.")

    def __str__(self) -> str:
        return f"{self.created_at.isoformat()} {self.event_type}"


class HelpRequest(models.Model):
    STATUS_PENDING = "pending"
    STATUS_ANSWERED = "answered"
    STATUS_RESOLVED = "resolved"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_ANSWERED, "Answered"),
        (STATUS_RESOLVED, "Resolved"),
    ]

    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="help_requests",
    )
    course = models.ForeignKey(
        Course,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="help_requests",
    )
    lesson_id = models.CharField(max_length=64, blank=True, default="")
    subject = models.CharField(max_length=200, blank=True, default="")
    message = models.TextField()
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING)
    instructor_response = models.TextField(blank=True, default="")
    responded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="help_responses",
    )
    responded_at = models.DateTimeField(null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["course", "status"], name="lms_help_course_status_idx"),
            models.Index(fields=["student", "updated_at"], name="lms_help_student_idx"),
        ]

    def __str__(self) -> str:
        return f"HelpRequest {self.id} ({self.status})"


class Task(models.Model):
    """An instructor to-do item.

    Types:
    - personal: the instructor's own reminder
    - course: master record for a task fanned out to students as StudentTasks
    """

    TYPE_PERSONAL = "personal"
    TYPE_COURSE = "course"
    TYPE_CHOICES = [
        (TYPE_PERSONAL, "Personal"),
        (TYPE_COURSE, "Course"),
    ]

    instructor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="tasks",
    )
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    due_date = models.DateTimeField(null=True, blank=True)
    type = models.CharField(max_length=16, choices=TYPE_CHOICES, default=TYPE_PERSONAL)
    course = models.ForeignKey(
        Course,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="tasks",
    )
    completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)
    assigned_count = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["instructor", "type", "completed"], name="lms_task_instr_type_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.type}: {self.title}"


class StudentTask(models.Model):
    """One student's copy of a course task."""

    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name="assignments")
    student = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="student_tasks",
    )
    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="student_tasks")
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    due_date = models.DateTimeField(null=True, blank=True)
    completed = models.BooleanField(default=False)
    completed_at = models.DateTimeField(null=True, blank=True)
    notified = models.BooleanField(default=False)
    notified_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["due_date", "id"]
        constraints = [
            models.UniqueConstraint(fields=["task", "student"], name="uniq_student_task_per_task"),
        ]
        indexes = [
            models.Index(fields=["course", "due_date"], name="lms_stask_course_due_idx"),
            models.Index(fields=["completed", "notified", "due_date"], name="lms_stask_overdue_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.title} -> {self.student_id}"


class Notification(models.Model):
    TYPE_NEW_TASK = "new_task"
    TYPE_TASK_ASSIGNED = "task_assigned"
    TYPE_OVERDUE_TASK = "overdue_task"
    TYPE_HELP_RESPONSE = "help_response"

    PRIORITY_LOW = "low"
    PRIORITY_MEDIUM = "medium"
    PRIORITY_HIGH = "high"
    PRIORITY_CHOICES = [
        (PRIORITY_LOW, "Low"),
        (PRIORITY_MEDIUM, "Medium"),
        (PRIORITY_HIGH, "High"),
    ]

    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notifications",
    )
    type = models.CharField(max_length=40)
    title = models.CharField(max_length=200)
    message = models.TextField(blank=True, default="")
    course = models.ForeignKey(
        Course,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="notifications",
    )
    task = models.ForeignKey(
        Task,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="notifications",
    )
    priority = models.CharField(max_length=8, choices=PRIORITY_CHOICES, default=PRIORITY_MEDIUM)
    read = models.BooleanField(default=False)
    read_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["recipient", "read"], name="lms_notif_recipient_read_idx"),
            models.Index(fields=["recipient", "created_at"], name="lms_notif_recipient_date_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.type} -> {self.recipient_id}"


class NotificationRead(models.Model):
    """Read receipt for notifications synthesized at read time (help-<id>, enrollment-<id>)."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notification_reads",
    )
    key = models.CharField(max_length=64)
    read_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "key"], name="uniq_notification_read_per_user_key"),
        ]

    def __str__(self) -> str:
        return f"{self.user_id}:{self.key}"


def _course_media_upload_to(instance: "CourseMedia", filename: str) -> str:
    """courses/<course_id>/<type>s/<epoch_ms>_<name>"""
    course_part = str(instance.course_id) if instance.course_id else "temp"
    stamp = int(time.time() * 1000)
    return f"courses/{course_part}/{instance.media_type}s/{stamp}_{safe_filename(filename)}"


class CourseMedia(models.Model):
    """Instructor-uploaded file referenced from lesson content."""

    TYPE_IMAGE = "image"
    TYPE_VIDEO = "video"
    TYPE_DOCUMENT = "document"
    TYPE_CHOICES = [
        (TYPE_IMAGE, "Image"),
        (TYPE_VIDEO, "Video"),
        (TYPE_DOCUMENT, "Document"),
    ]

    course = models.ForeignKey(Course, on_delete=models.CASCADE, related_name="media")
    uploaded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="uploaded_media",
    )
    media_type = models.CharField(max_length=16, choices=TYPE_CHOICES)
    title = models.CharField(max_length=200, blank=True, default="")
    original_filename = models.CharField(max_length=255, blank=True, default="")
    file = models.FileField(upload_to=_course_media_upload_to, max_length=300)
    size_bytes = models.PositiveBigIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["course", "media_type"], name="lms_media_course_type_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.course_id}:{self.media_type}:{self.original_filename}"


class AuditEvent(models.Model):
    """Immutable staff-action record for operations and incident review."""

    actor_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="lms_audit_events",
    )
    course = models.ForeignKey(
        Course,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_events",
    )
    action = models.CharField(max_length=80)
    target_type = models.CharField(max_length=80, blank=True, default="")
    target_id = models.CharField(max_length=64, blank=True, default="")
    summary = models.CharField(max_length=255, blank=True, default="")
    metadata = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["created_at"], name="lms_audit_created_idx"),
            models.Index(fields=["action", "created_at"], name="lms_audit_action_idx"),
            models.Index(fields=["course", "created_at"], name="lms_audit_course_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.created_at.isoformat()} {self.action} {self.target_type}:{self.target_id}"
