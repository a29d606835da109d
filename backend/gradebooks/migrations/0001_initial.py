import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

import gradebooks.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("school", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="GradebookTemplate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("pages", models.JSONField(blank=True, default=list)),
                ("variables", models.JSONField(blank=True, default=dict)),
                ("watermark", models.JSONField(blank=True, default=dict)),
                ("export_password", models.CharField(blank=True, max_length=128)),
                (
                    "status",
                    models.CharField(
                        choices=[("draft", "Draft"), ("published", "Published"), ("archived", "Archived")],
                        default="draft",
                        max_length=16,
                    ),
                ),
                ("current_version", models.PositiveIntegerField(default=1)),
                ("version_history", models.JSONField(blank=True, default=list)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="created_gradebook_templates",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["name", "id"],
            },
        ),
        migrations.CreateModel(
            name="TemplateAssignment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("template_version", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("in_progress", "In progress"),
                            ("completed", "Completed"),
                            ("signed", "Signed"),
                        ],
                        default="draft",
                        max_length=16,
                    ),
                ),
                ("is_completed", models.BooleanField(default=False)),
                ("is_completed_sem1", models.BooleanField(default=False)),
                ("is_completed_sem2", models.BooleanField(default=False)),
                ("data", models.JSONField(blank=True, default=dict)),
                ("data_version", models.PositiveIntegerField(default=1)),
                ("assigned_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "assigned_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="gradebook_assignments_made",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "completion_school_year",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="completed_assignments",
                        to="school.schoolyear",
                    ),
                ),
                (
                    "student",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="template_assignments",
                        to="school.student",
                    ),
                ),
                (
                    "template",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="assignments",
                        to="gradebooks.gradebooktemplate",
                    ),
                ),
            ],
            options={
                "ordering": ["-assigned_at", "-id"],
            },
        ),
        migrations.AddConstraint(
            model_name="templateassignment",
            constraint=models.UniqueConstraint(
                fields=("template", "student"),
                name="unique_template_assignment_per_student",
            ),
        ),
        migrations.CreateModel(
            name="TemplateSignature",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("signer_name", models.CharField(blank=True, max_length=255)),
                ("signed_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "type",
                    models.CharField(
                        choices=[("standard", "Standard"), ("end_of_year", "End of year")],
                        default="standard",
                        max_length=16,
                    ),
                ),
                ("signature_url", models.CharField(blank=True, max_length=1024)),
                ("signature_data", models.TextField(blank=True)),
                ("level", models.CharField(blank=True, max_length=16)),
                ("school_year_name", models.CharField(blank=True, max_length=32)),
                ("signature_period_id", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "assignment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="signatures",
                        to="gradebooks.templateassignment",
                    ),
                ),
                (
                    "signer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="gradebook_signatures",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-signed_at", "-id"],
                "indexes": [models.Index(fields=["assignment", "type"], name="gradebooks_sig_assign_type_idx")],
            },
        ),
        migrations.CreateModel(
            name="GradebookExportJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "job_number",
                    models.CharField(
                        default=gradebooks.models.generate_export_job_number,
                        max_length=32,
                        unique=True,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("queued", "Queued"),
                            ("running", "Running"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                        ],
                        default="queued",
                        max_length=16,
                    ),
                ),
                ("assignment_ids", models.JSONField(blank=True, default=list)),
                ("group_label", models.CharField(blank=True, max_length=255)),
                ("hide_signatures", models.BooleanField(default=False)),
                ("strategy", models.CharField(blank=True, max_length=16)),
                ("queued_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("execution_attempts", models.PositiveIntegerField(default=0)),
                ("execution_metadata", models.JSONField(blank=True, default=dict)),
                (
                    "artifact_zip",
                    models.FileField(blank=True, null=True, upload_to="gradebook_exports/artifacts/"),
                ),
                ("artifact_size_bytes", models.PositiveBigIntegerField(default=0)),
                ("artifact_sha256", models.CharField(blank=True, max_length=64)),
                ("error_detail", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "requested_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="requested_gradebook_exports",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [models.Index(fields=["status", "created_at"], name="gradebooks_export_status_idx")],
            },
        ),
    ]
