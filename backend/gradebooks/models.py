from __future__ import annotations

import copy
from typing import Any
from uuid import uuid4

from django.conf import settings
from django.contrib.auth.hashers import check_password, make_password
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from school.models import SchoolYear, Student


class GradebookTemplate(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", _("Draft")
        PUBLISHED = "published", _("Published")
        ARCHIVED = "archived", _("Archived")

    name = models.CharField(max_length=255)
    pages = models.JSONField(default=list, blank=True)
    variables = models.JSONField(default=dict, blank=True)
    watermark = models.JSONField(default=dict, blank=True)
    export_password = models.CharField(max_length=128, blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.DRAFT)
    current_version = models.PositiveIntegerField(default=1)
    version_history = models.JSONField(default=list, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_gradebook_templates",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name", "id"]

    def __str__(self) -> str:
        return self.name

    def set_export_password(self, raw_password: str | None) -> None:
        self.export_password = make_password(raw_password) if raw_password else ""

    def check_export_password(self, raw_password: str | None) -> bool:
        """True when the template is unprotected or ``raw_password`` matches the stored hash."""
        if not self.export_password:
            return True
        return bool(raw_password) and check_password(raw_password, self.export_password)

    def snapshot_current_version(self) -> dict[str, Any]:
        return {
            "version": int(self.current_version),
            "pages": copy.deepcopy(self.pages or []),
            "variables": copy.deepcopy(self.variables or {}),
            "watermark": copy.deepcopy(self.watermark or {}),
            "savedAt": timezone.now().isoformat(),
        }

    def pages_for_version(self, version: int | None) -> list[dict[str, Any]]:
        if version is None or int(version) == int(self.current_version):
            return list(self.pages or [])
        for entry in self.version_history or []:
            if isinstance(entry, dict) and entry.get("version") == int(version):
                return list(entry.get("pages") or [])
        return list(self.pages or [])


class TemplateAssignment(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", _("Draft")
        IN_PROGRESS = "in_progress", _("In progress")
        COMPLETED = "completed", _("Completed")
        SIGNED = "signed", _("Signed")

    template = models.ForeignKey(
        GradebookTemplate,
        on_delete=models.CASCADE,
        related_name="assignments",
    )
    template_version = models.PositiveIntegerField(null=True, blank=True)
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="template_assignments")
    completion_school_year = models.ForeignKey(
        SchoolYear,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="completed_assignments",
    )
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.DRAFT)
    is_completed = models.BooleanField(default=False)
    is_completed_sem1 = models.BooleanField(default=False)
    is_completed_sem2 = models.BooleanField(default=False)
    data = models.JSONField(default=dict, blank=True)
    data_version = models.PositiveIntegerField(default=1)
    assigned_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="gradebook_assignments_made",
    )
    assigned_at = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-assigned_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["template", "student"],
                name="unique_template_assignment_per_student",
            )
        ]

    def __str__(self) -> str:
        return f"{self.template_id}:{self.student_id}"

    def save(self, *args, **kwargs):
        if self.template_version is None and self.template_id:
            self.template_version = self.template.current_version
        super().save(*args, **kwargs)


class TemplateSignature(models.Model):
    class Type(models.TextChoices):
        STANDARD = "standard", _("Standard")
        END_OF_YEAR = "end_of_year", _("End of year")

    assignment = models.ForeignKey(
        TemplateAssignment,
        on_delete=models.CASCADE,
        related_name="signatures",
    )
    signer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="gradebook_signatures",
    )
    signer_name = models.CharField(max_length=255, blank=True)
    signed_at = models.DateTimeField(default=timezone.now)
    type = models.CharField(max_length=16, choices=Type.choices, default=Type.STANDARD)
    signature_url = models.CharField(max_length=1024, blank=True)
    # Inline data: URI captured at sign time. Never refreshed afterwards.
    signature_data = models.TextField(blank=True)
    level = models.CharField(max_length=16, blank=True)
    school_year_name = models.CharField(max_length=32, blank=True)
    signature_period_id = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-signed_at", "-id"]
        indexes = [
            models.Index(fields=["assignment", "type"], name="gradebooks_sig_assign_type_idx"),
        ]


def generate_export_job_number() -> str:
    return f"EXP-{uuid4().hex[:12].upper()}"


class GradebookExportJob(models.Model):
    class Status(models.TextChoices):
        QUEUED = "queued", _("Queued")
        RUNNING = "running", _("Running")
        SUCCEEDED = "succeeded", _("Succeeded")
        FAILED = "failed", _("Failed")

    job_number = models.CharField(max_length=32, unique=True, default=generate_export_job_number)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.QUEUED)
    assignment_ids = models.JSONField(default=list, blank=True)
    group_label = models.CharField(max_length=255, blank=True)
    hide_signatures = models.BooleanField(default=False)
    strategy = models.CharField(max_length=16, blank=True)
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="requested_gradebook_exports",
    )
    queued_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    execution_attempts = models.PositiveIntegerField(default=0)
    execution_metadata = models.JSONField(default=dict, blank=True)
    artifact_zip = models.FileField(upload_to="gradebook_exports/artifacts/", null=True, blank=True)
    artifact_size_bytes = models.PositiveBigIntegerField(default=0)
    artifact_sha256 = models.CharField(max_length=64, blank=True)
    error_detail = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="gradebooks_export_status_idx"),
        ]

    def __str__(self) -> str:
        return self.job_number
