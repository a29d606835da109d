from __future__ import annotations

import logging

from django.http import FileResponse, HttpResponse, StreamingHttpResponse
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import mixins, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import IsAdminOrSubAdmin, IsStaffRole
from config.pagination import OptionalPaginationListMixin
from school.models import Enrollment, SchoolClass, Student

from .batch_export import BatchExport
from .exceptions import GradebookRenderError, SigningError
from .export_jobs import queue_export_job
from .exporters import batch_filename, content_disposition, get_exporter
from .html_executor import render_document_html
from .images import get_image_loader
from .interpreter import TemplateInterpreter
from .layout import design_mapper
from .models import GradebookExportJob, GradebookTemplate, TemplateAssignment
from .serializers import (
    BatchExportRequestSerializer,
    BlockTypeSerializer,
    GradebookExportJobSerializer,
    GradebookTemplateSerializer,
    GradebookTemplateVersionSerializer,
    SignRequestSerializer,
    TemplateAssignmentSerializer,
    TemplateSignatureSerializer,
    UnsignRequestSerializer,
    get_block_type_registry_payload,
)
from .services import (
    build_preview_document,
    load_assignment_carnet,
    load_student_carnet,
    repin_assignment,
    sign_assignment,
    unsign_assignment,
    update_template_layout,
)
from .tasks import execute_export_job

logger = logging.getLogger(__name__)

LAYOUT_FIELDS = ("pages", "variables", "watermark")
TRUE_VALUES = {"1", "true", "yes", "on"}


def _is_admin_or_subadmin(user) -> bool:
    return bool(user and user.is_authenticated and user.role in ["admin", "subadmin"])


def _flag(value) -> bool:
    return str(value or "").strip().lower() in TRUE_VALUES


def _parse_id(value) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _error_response(exc: GradebookRenderError | SigningError) -> Response:
    return Response(exc.as_payload(), status=exc.status_code)


def _generation_failed(exc: Exception) -> Response:
    return Response(
        {"error": "pdf_generation_failed", "message": str(exc) or "PDF generation failed."},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _render_pdf(document, strategy: str | None) -> bytes:
    exporter = get_exporter(strategy or None)
    exporter.prepare()
    return exporter.render(document)


def _pdf_response(pdf_bytes: bytes, filename: str) -> HttpResponse:
    response = HttpResponse(pdf_bytes, content_type="application/pdf")
    response["Content-Disposition"] = content_disposition(filename)
    response["Content-Length"] = str(len(pdf_bytes))
    return response


def _html_preview(document) -> HttpResponse:
    interpreter = TemplateInterpreter(design_mapper(), image_loader=get_image_loader())
    html = render_document_html(interpreter.render(document), title=document.title)
    return HttpResponse(html, content_type="text/html; charset=utf-8")


def _zip_response(batch: BatchExport) -> StreamingHttpResponse:
    response = StreamingHttpResponse(batch.iter_chunks(), content_type="application/zip")
    response["Content-Disposition"] = content_disposition(batch_filename(batch.group_label))
    return response


class IsAdminOrSubAdminOrStaffReadOnly(permissions.BasePermission):
    def has_permission(self, request, view):
        if _is_admin_or_subadmin(request.user):
            return True
        return bool(IsStaffRole().has_permission(request, view) and request.method in permissions.SAFE_METHODS)


class GradebookTemplateViewSet(OptionalPaginationListMixin, viewsets.ModelViewSet):
    serializer_class = GradebookTemplateSerializer
    permission_classes = [IsAdminOrSubAdminOrStaffReadOnly]
    queryset = GradebookTemplate.objects.select_related("created_by").order_by("name", "id")
    filterset_fields = ["status"]

    def perform_create(self, serializer):
        serializer.save(created_by=self.request.user)

    def perform_update(self, serializer):
        template = serializer.instance
        validated = dict(serializer.validated_data)
        layout = {key: validated.pop(key) for key in LAYOUT_FIELDS if key in validated}
        if validated:
            for attr, value in validated.items():
                setattr(template, attr, value)
            template.save()
        serializer.instance = update_template_layout(template, **layout)

    @extend_schema(responses=GradebookTemplateVersionSerializer(many=True))
    @action(detail=True, methods=["get"], url_path="versions")
    def versions(self, request, pk=None):
        template = self.get_object()
        history = [
            {
                "version": entry.get("version"),
                "savedAt": entry.get("savedAt", ""),
                "pages": entry.get("pages") or [],
            }
            for entry in (template.version_history or [])
            if isinstance(entry, dict)
        ]
        serializer = GradebookTemplateVersionSerializer(history, many=True)
        return Response(serializer.data, status=status.HTTP_200_OK)


class TemplateAssignmentViewSet(OptionalPaginationListMixin, viewsets.ModelViewSet):
    serializer_class = TemplateAssignmentSerializer
    permission_classes = [IsStaffRole]
    queryset = (
        TemplateAssignment.objects.select_related("template", "student", "assigned_by")
        .prefetch_related("signatures")
        .order_by("-assigned_at", "-id")
    )
    filterset_fields = ["template", "student", "status"]

    def perform_create(self, serializer):
        serializer.save(assigned_by=self.request.user)

    def perform_update(self, serializer):
        instance = serializer.instance
        data_changed = "data" in serializer.validated_data and serializer.validated_data["data"] != instance.data
        if data_changed:
            serializer.save(data_version=int(instance.data_version) + 1)
        else:
            serializer.save()

    @extend_schema(request=SignRequestSerializer, responses=TemplateSignatureSerializer)
    @action(detail=True, methods=["post"], url_path="sign", permission_classes=[IsAdminOrSubAdmin])
    def sign(self, request, pk=None):
        assignment = self.get_object()
        serializer = SignRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            signature = sign_assignment(
                assignment,
                signer=request.user,
                signature_type=serializer.validated_data["type"],
                level=serializer.validated_data["level"],
                signature_period_id=serializer.validated_data["signaturePeriodId"],
            )
        except SigningError as exc:
            return _error_response(exc)
        return Response(TemplateSignatureSerializer(signature).data, status=status.HTTP_201_CREATED)

    @extend_schema(request=UnsignRequestSerializer, responses={200: OpenApiTypes.OBJECT})
    @action(detail=True, methods=["post"], url_path="unsign", permission_classes=[IsAdminOrSubAdmin])
    def unsign(self, request, pk=None):
        assignment = self.get_object()
        serializer = UnsignRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        deleted_count = unsign_assignment(
            assignment,
            signer=request.user,
            signature_type=serializer.validated_data.get("type"),
            level=serializer.validated_data["level"],
        )
        return Response({"deleted": deleted_count}, status=status.HTTP_200_OK)

    @extend_schema(request=None, responses=TemplateAssignmentSerializer)
    @action(detail=True, methods=["post"], url_path="repin", permission_classes=[IsAdminOrSubAdmin])
    def repin(self, request, pk=None):
        assignment = repin_assignment(self.get_object())
        return Response(self.get_serializer(assignment).data, status=status.HTTP_200_OK)


PDF_RESPONSE = {200: OpenApiResponse(response=OpenApiTypes.BINARY, description="Rendered carnet PDF.")}
ZIP_RESPONSE = {200: OpenApiResponse(response=OpenApiTypes.BINARY, description="ZIP archive of carnets.")}


class StudentCarnetPdfView(APIView):
    permission_classes = [IsStaffRole]

    @extend_schema(
        parameters=[
            OpenApiParameter("templateId", OpenApiTypes.INT, required=True),
            OpenApiParameter("pwd", OpenApiTypes.STR),
            OpenApiParameter("strategy", OpenApiTypes.STR),
        ],
        responses=PDF_RESPONSE,
    )
    def get(self, request, student_id: int):
        raw_template_id = str(request.query_params.get("templateId") or "").strip()
        if not raw_template_id:
            return Response(
                {"error": "missing_template_id", "message": "templateId is required."},
                status=status.HTTP_400_BAD_REQUEST,
            )
        template_id = _parse_id(raw_template_id)
        try:
            if template_id is None:
                raise GradebookRenderError("Template not found.", status_code=404, code="template_not_found")
            loaded = load_student_carnet(
                student_id=student_id,
                template_id=template_id,
                password=request.query_params.get("pwd"),
            )
            pdf_bytes = _render_pdf(loaded.document, request.query_params.get("strategy"))
        except GradebookRenderError as exc:
            return _error_response(exc)
        except Exception as exc:
            logger.exception("Carnet PDF generation failed for student %s.", student_id)
            return _generation_failed(exc)
        return _pdf_response(pdf_bytes, loaded.filename)


class AssignmentCarnetPdfView(APIView):
    permission_classes = [IsStaffRole]

    @extend_schema(
        parameters=[
            OpenApiParameter("hideSignatures", OpenApiTypes.BOOL),
            OpenApiParameter("strategy", OpenApiTypes.STR),
        ],
        responses=PDF_RESPONSE,
    )
    def get(self, request, assignment_id: str):
        try:
            loaded = load_assignment_carnet(
                assignment_id,
                hide_signatures=_flag(request.query_params.get("hideSignatures")),
            )
            pdf_bytes = _render_pdf(loaded.document, request.query_params.get("strategy"))
        except GradebookRenderError as exc:
            return _error_response(exc)
        except Exception as exc:
            logger.exception("Carnet PDF generation failed for assignment %s.", assignment_id)
            return _generation_failed(exc)
        return _pdf_response(pdf_bytes, loaded.filename)


def _start_batch(assignment_ids: list, *, group_label: str, hide_signatures: bool, strategy: str | None):
    """Return a streaming ZIP response, or an error response when the batch cannot start."""
    if not assignment_ids:
        return Response(
            {"error": "missing_assignment_ids", "message": "assignmentIds must be a non-empty list."},
            status=status.HTTP_400_BAD_REQUEST,
        )
    try:
        batch = BatchExport(
            assignment_ids,
            group_label=group_label,
            hide_signatures=hide_signatures,
            strategy=strategy or None,
        )
        batch.prepare()
    except GradebookRenderError as exc:
        return _error_response(exc)
    return _zip_response(batch)


class AssignmentsZipView(APIView):
    permission_classes = [IsAdminOrSubAdmin]

    @extend_schema(request=BatchExportRequestSerializer, responses=ZIP_RESPONSE)
    def post(self, request):
        serializer = BatchExportRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return _start_batch(
            serializer.validated_data["assignmentIds"],
            group_label=serializer.validated_data["groupLabel"],
            hide_signatures=serializer.validated_data["hideSignatures"],
            strategy=serializer.validated_data["strategy"],
        )


class ClassBatchZipView(APIView):
    permission_classes = [IsAdminOrSubAdmin]

    @extend_schema(
        parameters=[
            OpenApiParameter("templateId", OpenApiTypes.INT),
            OpenApiParameter("hideSignatures", OpenApiTypes.BOOL),
            OpenApiParameter("strategy", OpenApiTypes.STR),
        ],
        responses=ZIP_RESPONSE,
    )
    def get(self, request, class_id: int):
        school_class = SchoolClass.objects.filter(id=class_id).first()
        if school_class is None:
            return Response(
                {"error": "class_not_found", "message": "Class not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        student_ids = Enrollment.objects.filter(
            school_class=school_class,
            status=Enrollment.Status.ACTIVE,
        ).values_list("student_id", flat=True)
        assignments = TemplateAssignment.objects.filter(student_id__in=list(student_ids))
        template_id = _parse_id(request.query_params.get("templateId"))
        if template_id is not None:
            assignments = assignments.filter(template_id=template_id)
        assignment_ids = list(
            assignments.order_by("student__last_name", "student__first_name", "id").values_list("id", flat=True)
        )
        return _start_batch(
            assignment_ids,
            group_label=school_class.name,
            hide_signatures=_flag(request.query_params.get("hideSignatures")),
            strategy=request.query_params.get("strategy"),
        )


class TemplatePreviewView(APIView):
    permission_classes = [IsStaffRole]

    @extend_schema(responses={200: OpenApiResponse(response=OpenApiTypes.STR, description="HTML preview.")})
    def get(self, request, template_id: int, student_id: int | None = None):
        template = GradebookTemplate.objects.filter(id=template_id).first()
        if template is None:
            return Response(
                {"error": "template_not_found", "message": "Template not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        student = None
        if student_id is not None:
            student = Student.objects.filter(id=student_id).first()
            if student is None:
                return Response(
                    {"error": "student_not_found", "message": "Student not found."},
                    status=status.HTTP_404_NOT_FOUND,
                )
        return _html_preview(build_preview_document(template=template, student=student))


class GradebookExportJobViewSet(
    OptionalPaginationListMixin,
    mixins.CreateModelMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = GradebookExportJobSerializer
    permission_classes = [IsAdminOrSubAdmin]
    queryset = GradebookExportJob.objects.select_related("requested_by").order_by("-created_at", "-id")
    filterset_fields = ["status"]

    @extend_schema(request=BatchExportRequestSerializer, responses=GradebookExportJobSerializer)
    def create(self, request, *args, **kwargs):
        serializer = BatchExportRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        assignment_ids = serializer.validated_data["assignmentIds"]
        if not assignment_ids:
            return Response(
                {"error": "missing_assignment_ids", "message": "assignmentIds must be a non-empty list."},
                status=status.HTTP_400_BAD_REQUEST,
            )
        export_job = queue_export_job(
            assignment_ids=assignment_ids,
            group_label=serializer.validated_data["groupLabel"],
            hide_signatures=serializer.validated_data["hideSignatures"],
            strategy=serializer.validated_data["strategy"],
            requested_by=request.user,
        )
        execute_export_job.delay(export_job.id)
        export_job.refresh_from_db()
        return Response(GradebookExportJobSerializer(export_job).data, status=status.HTTP_202_ACCEPTED)

    @extend_schema(responses=ZIP_RESPONSE)
    @action(detail=True, methods=["get"], url_path="download")
    def download(self, request, pk=None):
        export_job = self.get_object()
        if export_job.status != GradebookExportJob.Status.SUCCEEDED or not export_job.artifact_zip:
            return Response(
                {"error": "artifact_not_available", "message": "Export archive is not available yet."},
                status=status.HTTP_404_NOT_FOUND,
            )
        artifact_stream = export_job.artifact_zip.open("rb")
        response = FileResponse(artifact_stream, content_type="application/zip")
        response["Content-Disposition"] = content_disposition(batch_filename(export_job.group_label))
        if export_job.artifact_size_bytes:
            response["Content-Length"] = str(export_job.artifact_size_bytes)
        return response


class BlockTypeRegistryView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    @extend_schema(responses=BlockTypeSerializer(many=True))
    def get(self, request):
        return Response(get_block_type_registry_payload(), status=status.HTTP_200_OK)
