from django.contrib import admin

from .models import GradebookExportJob, GradebookTemplate, TemplateAssignment, TemplateSignature


@admin.register(GradebookTemplate)
class GradebookTemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "status", "current_version", "updated_at")
    list_filter = ("status",)
    search_fields = ("name",)
    readonly_fields = ("export_password", "current_version", "version_history", "created_at", "updated_at")


@admin.register(TemplateAssignment)
class TemplateAssignmentAdmin(admin.ModelAdmin):
    list_display = ("template", "student", "template_version", "status", "data_version")
    list_filter = ("status", "template")
    search_fields = ("student__first_name", "student__last_name")


@admin.register(TemplateSignature)
class TemplateSignatureAdmin(admin.ModelAdmin):
    list_display = ("assignment", "type", "signer_name", "level", "school_year_name", "signed_at")
    list_filter = ("type", "level")
    readonly_fields = (
        "assignment",
        "signer",
        "signer_name",
        "signed_at",
        "type",
        "signature_url",
        "signature_data",
        "level",
        "school_year_name",
        "signature_period_id",
        "created_at",
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(GradebookExportJob)
class GradebookExportJobAdmin(admin.ModelAdmin):
    list_display = ("job_number", "status", "group_label", "artifact_size_bytes", "finished_at")
    list_filter = ("status",)
    search_fields = ("job_number", "group_label")
    readonly_fields = (
        "job_number",
        "execution_attempts",
        "execution_metadata",
        "artifact_size_bytes",
        "artifact_sha256",
        "error_detail",
        "queued_at",
        "started_at",
        "finished_at",
    )
