from __future__ import annotations

from django.contrib.auth.hashers import make_password
from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import serializers

from .block_registry import BLOCK_TYPE_REGISTRY, validate_template_pages
from .exporters import EXPORTERS
from .models import GradebookExportJob, GradebookTemplate, TemplateAssignment, TemplateSignature
from .resolvers import END_OF_YEAR, STANDARD


class GradebookTemplateSerializer(serializers.ModelSerializer):
    has_export_password = serializers.SerializerMethodField()

    class Meta:
        model = GradebookTemplate
        fields = [
            "id",
            "name",
            "pages",
            "variables",
            "watermark",
            "export_password",
            "has_export_password",
            "status",
            "current_version",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["current_version", "created_by", "created_at", "updated_at"]
        extra_kwargs = {"export_password": {"write_only": True, "required": False}}

    def get_has_export_password(self, obj: GradebookTemplate) -> bool:
        return bool(obj.export_password)

    def validate_export_password(self, value):
        # Stored hashed, like account passwords.
        return make_password(value) if value else ""

    def validate_pages(self, value):
        try:
            validate_template_pages(value)
        except DjangoValidationError as exc:
            if hasattr(exc, "message_dict"):
                raise serializers.ValidationError(exc.message_dict) from exc
            raise serializers.ValidationError(exc.messages) from exc
        return value

    def validate_variables(self, value):
        if not isinstance(value, dict):
            raise serializers.ValidationError("Must be an object.")
        return value

    def validate_watermark(self, value):
        if not isinstance(value, dict):
            raise serializers.ValidationError("Must be an object.")
        return value


class GradebookTemplateVersionSerializer(serializers.Serializer):
    version = serializers.IntegerField()
    savedAt = serializers.CharField(required=False, allow_blank=True)
    pages = serializers.ListField(child=serializers.DictField(), required=False)


class TemplateSignatureSerializer(serializers.ModelSerializer):
    has_snapshot = serializers.SerializerMethodField()

    class Meta:
        model = TemplateSignature
        fields = [
            "id",
            "type",
            "signer",
            "signer_name",
            "signed_at",
            "level",
            "school_year_name",
            "signature_period_id",
            "has_snapshot",
        ]
        read_only_fields = fields

    def get_has_snapshot(self, obj: TemplateSignature) -> bool:
        return bool(obj.signature_data)


class TemplateAssignmentSerializer(serializers.ModelSerializer):
    signatures = TemplateSignatureSerializer(many=True, read_only=True)

    class Meta:
        model = TemplateAssignment
        fields = [
            "id",
            "template",
            "template_version",
            "student",
            "completion_school_year",
            "status",
            "is_completed",
            "is_completed_sem1",
            "is_completed_sem2",
            "data",
            "data_version",
            "assigned_by",
            "assigned_at",
            "signatures",
            "created_at",
            "updated_at",
        ]
        read_only_fields = [
            "template_version",
            "data_version",
            "assigned_by",
            "assigned_at",
            "signatures",
            "created_at",
            "updated_at",
        ]

    def validate_data(self, value):
        if not isinstance(value, dict):
            raise serializers.ValidationError("Must be an object.")
        return value

    def validate(self, attrs):
        instance = getattr(self, "instance", None)
        if instance is not None:
            template = attrs.get("template")
            student = attrs.get("student")
            if (template is not None and template.id != instance.template_id) or (
                student is not None and student.id != instance.student_id
            ):
                raise serializers.ValidationError("Template and student of an assignment cannot change.")
        return attrs


class SignRequestSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=[STANDARD, END_OF_YEAR], default=STANDARD)
    level = serializers.CharField(required=False, allow_blank=True, default="")
    signaturePeriodId = serializers.CharField(required=False, allow_blank=True, default="")


class UnsignRequestSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=[STANDARD, END_OF_YEAR], required=False)
    level = serializers.CharField(required=False, allow_blank=True, default="")


class BatchExportRequestSerializer(serializers.Serializer):
    assignmentIds = serializers.ListField(child=serializers.CharField(allow_blank=True), required=False, default=list)
    groupLabel = serializers.CharField(required=False, allow_blank=True, default="")
    hideSignatures = serializers.BooleanField(required=False, default=False)
    strategy = serializers.ChoiceField(choices=sorted(EXPORTERS), required=False, allow_blank=True, default="")

    def validate_assignmentIds(self, value):
        return [item.strip() for item in value if item and item.strip()]


class GradebookExportJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = GradebookExportJob
        fields = [
            "id",
            "job_number",
            "status",
            "assignment_ids",
            "group_label",
            "hide_signatures",
            "strategy",
            "requested_by",
            "queued_at",
            "started_at",
            "finished_at",
            "execution_attempts",
            "execution_metadata",
            "artifact_size_bytes",
            "artifact_sha256",
            "error_detail",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class BlockTypeSerializer(serializers.Serializer):
    key = serializers.CharField()
    label = serializers.CharField()
    description = serializers.CharField()


def get_block_type_registry_payload():
    return BLOCK_TYPE_REGISTRY
