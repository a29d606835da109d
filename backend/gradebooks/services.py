from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
import re
from typing import Any

from django.db import transaction
from django.utils import timezone

from school.models import Category, SchoolYear, Student, StudentCompetencyStatus, StudentSignature

from .block_registry import validate_template_pages
from .exceptions import GradebookRenderError, SigningError
from .exporters import carnet_filename, student_pdf_filename
from .images import get_image_loader
from .interpreter import RenderDocument
from .models import GradebookTemplate, TemplateAssignment, TemplateSignature
from .resolvers import (
    END_OF_YEAR,
    STANDARD,
    CategoryInfo,
    CompetencyLine,
    RenderContext,
    SignatureRecord,
    StudentInfo,
    academic_year_label,
)

logger = logging.getLogger(__name__)

_YEAR_RANGE_PATTERN = re.compile(r"(\d{4})([-/.])(\d{4})")


@dataclass
class LoadedCarnet:
    document: RenderDocument
    filename: str
    assignment_id: int | None = None


def active_school_year() -> SchoolYear | None:
    return SchoolYear.objects.filter(active=True).order_by("-sequence", "-id").first()


def _class_for(student: Student) -> tuple[str, str]:
    enrollment = student.current_enrollment()
    if enrollment is None or enrollment.school_class is None:
        return "", ""
    return enrollment.school_class.name, enrollment.school_class.level


def build_student_info(student: Student) -> StudentInfo:
    class_name, class_level = _class_for(student)
    return StudentInfo(
        first_name=student.first_name,
        last_name=student.last_name,
        date_of_birth=student.date_of_birth,
        level=student.level or class_level,
        class_name=class_name,
        student_id=student.id,
    )


def load_categories(student: Student | None) -> tuple[CategoryInfo, ...]:
    statuses: dict[int, StudentCompetencyStatus] = {}
    if student is not None and student.pk:
        statuses = {
            status.competency_id: status
            for status in StudentCompetencyStatus.objects.filter(student=student)
        }
    categories = []
    for category in Category.objects.prefetch_related("competencies").order_by("order", "id"):
        lines = []
        for competency in category.competencies.all():
            status = statuses.get(competency.id)
            lines.append(
                CompetencyLine(
                    label=competency.label,
                    en=bool(status and status.en),
                    fr=bool(status and status.fr),
                    ar=bool(status and status.ar),
                )
            )
        categories.append(CategoryInfo(category_id=str(category.id), name=category.name, competencies=tuple(lines)))
    return tuple(categories)


def _legacy_signature_items(student: Student) -> tuple[dict[str, Any], ...]:
    try:
        pad = student.signature_pad
    except StudentSignature.DoesNotExist:
        return ()
    return tuple(item for item in (pad.items or []) if isinstance(item, dict))


def signature_records(assignment: TemplateAssignment | None) -> tuple[SignatureRecord, ...]:
    if assignment is None or not assignment.pk:
        return ()
    return tuple(
        SignatureRecord(
            type=signature.type,
            signed_at=signature.signed_at,
            signer_name=signature.signer_name,
            signature_url=signature.signature_url,
            signature_data=signature.signature_data,
            level=signature.level,
            school_year_name=signature.school_year_name,
            signature_period_id=signature.signature_period_id,
        )
        for signature in assignment.signatures.all()
    )


def build_render_context(
    *,
    student: Student | None,
    assignment: TemplateAssignment | None = None,
    hide_signatures: bool = False,
    printed_on: date | None = None,
) -> RenderContext:
    if student is None:
        return RenderContext(student=StudentInfo(), printed_on=printed_on)
    data = assignment.data if assignment is not None and isinstance(assignment.data, dict) else {}
    return RenderContext(
        student=build_student_info(student),
        data=dict(data),
        signatures=signature_records(assignment),
        categories=load_categories(student),
        legacy_signatures=_legacy_signature_items(student),
        hide_signatures=hide_signatures,
        printed_on=printed_on,
    )


def build_render_document(
    *,
    template: GradebookTemplate,
    student: Student | None,
    assignment: TemplateAssignment | None = None,
    password: str | None = None,
    enforce_password: bool = True,
    hide_signatures: bool = False,
    printed_on: date | None = None,
    visible_pages: list[int] | None = None,
) -> RenderDocument:
    version = assignment.template_version if assignment is not None else None
    use_default_carnet = enforce_password and not template.check_export_password(password)
    title = template.name
    if student is not None:
        title = f"{template.name} - {student.full_name}"
    return RenderDocument(
        pages=template.pages_for_version(version),
        context=build_render_context(
            student=student,
            assignment=assignment,
            hide_signatures=hide_signatures,
            printed_on=printed_on,
        ),
        use_default_carnet=use_default_carnet,
        visible_pages=visible_pages,
        title=title,
        metadata={"template_id": template.id, "template_version": version or template.current_version},
    )


def load_student_carnet(
    *,
    student_id: int,
    template_id: int,
    password: str | None = None,
    printed_on: date | None = None,
) -> LoadedCarnet:
    student = Student.objects.filter(id=student_id).first()
    if student is None:
        raise GradebookRenderError("Student not found.", status_code=404, code="student_not_found")
    template = GradebookTemplate.objects.filter(id=template_id).first()
    if template is None:
        raise GradebookRenderError("Template not found.", status_code=404, code="template_not_found")
    assignment = (
        TemplateAssignment.objects.filter(template=template, student=student)
        .prefetch_related("signatures")
        .first()
    )
    document = build_render_document(
        template=template,
        student=student,
        assignment=assignment,
        password=password,
        printed_on=printed_on,
    )
    return LoadedCarnet(
        document=document,
        filename=carnet_filename(last_name=student.last_name, first_name=student.first_name),
        assignment_id=assignment.id if assignment is not None else None,
    )


def assignment_filename(assignment: TemplateAssignment, *, year_name: str | None = None) -> str:
    student = assignment.student
    if year_name is None:
        active_year = active_school_year()
        year_name = active_year.name if active_year is not None else ""
    if not year_name and student.school_year_id:
        year_name = student.school_year.name
    level = student.level or _class_for(student)[1]
    return student_pdf_filename(
        level=level,
        first_name=student.first_name,
        last_name=student.last_name or "Eleve",
        year_name=year_name or "",
    )


def load_assignment_carnet(
    assignment_id: Any,
    *,
    hide_signatures: bool = False,
    year_name: str | None = None,
    printed_on: date | None = None,
) -> LoadedCarnet:
    assignment = None
    try:
        lookup_id = int(str(assignment_id).strip())
    except (TypeError, ValueError):
        lookup_id = None
    if lookup_id is not None:
        assignment = (
            TemplateAssignment.objects.select_related("template", "student", "student__school_year")
            .prefetch_related("signatures")
            .filter(id=lookup_id)
            .first()
        )
    if assignment is None:
        raise GradebookRenderError(
            f"Assignment not found: {assignment_id}",
            status_code=404,
            code="assignment_not_found",
        )
    document = build_render_document(
        template=assignment.template,
        student=assignment.student,
        assignment=assignment,
        # Assignment exports are staff exports; the password gate applies to per-student downloads.
        enforce_password=False,
        hide_signatures=hide_signatures,
        printed_on=printed_on,
    )
    return LoadedCarnet(
        document=document,
        filename=assignment_filename(assignment, year_name=year_name),
        assignment_id=assignment.id,
    )


def build_preview_document(
    *,
    template: GradebookTemplate,
    student: Student | None,
) -> RenderDocument:
    assignment = None
    if student is not None:
        assignment = (
            TemplateAssignment.objects.filter(template=template, student=student)
            .prefetch_related("signatures")
            .first()
        )
    return build_render_document(
        template=template,
        student=student,
        assignment=assignment,
        enforce_password=False,
    )


# Template authoring


def update_template_layout(
    template: GradebookTemplate,
    *,
    pages: list[dict[str, Any]] | None = None,
    variables: dict[str, Any] | None = None,
    watermark: dict[str, Any] | None = None,
) -> GradebookTemplate:
    """Apply a layout edit, snapshotting the previous version first.

    Assignments keep their pinned ``template_version`` and continue to render
    the snapshot until they are re-pinned.
    """
    if pages is not None:
        validate_template_pages(pages)
    layout_changed = (
        (pages is not None and pages != template.pages)
        or (variables is not None and variables != template.variables)
        or (watermark is not None and watermark != template.watermark)
    )
    if not layout_changed:
        return template

    with transaction.atomic():
        locked = GradebookTemplate.objects.select_for_update().get(id=template.id)
        history = list(locked.version_history or [])
        history.append(locked.snapshot_current_version())
        locked.version_history = history
        locked.current_version = int(locked.current_version) + 1
        if pages is not None:
            locked.pages = pages
        if variables is not None:
            locked.variables = variables
        if watermark is not None:
            locked.watermark = watermark
        locked.save(
            update_fields=[
                "pages",
                "variables",
                "watermark",
                "version_history",
                "current_version",
                "updated_at",
            ]
        )
    logger.info("Template %s bumped to version %s.", locked.id, locked.current_version)
    return locked


def repin_assignment(assignment: TemplateAssignment) -> TemplateAssignment:
    assignment.template_version = assignment.template.current_version
    assignment.save(update_fields=["template_version", "updated_at"])
    return assignment


# Signing


def _shift_year_name(name: str, offset: int) -> str:
    match = _YEAR_RANGE_PATTERN.search(str(name or ""))
    if not match:
        return ""
    separator = match.group(2)
    return f"{int(match.group(1)) + offset}{separator}{int(match.group(3)) + offset}"


def resolve_signature_school_year(signature_type: str, *, now=None) -> tuple[str, str]:
    """Return ``(school_year_id, school_year_name)`` recorded with a signature.

    End-of-year signatures belong to the following school year.
    """
    now = now or timezone.now()
    active_year = active_school_year()
    if active_year is None:
        label = academic_year_label(now)
        if signature_type == END_OF_YEAR:
            label = _shift_year_name(label, 1)
        return "", label
    if signature_type != END_OF_YEAR:
        return str(active_year.id), active_year.name

    next_year = None
    if active_year.sequence:
        next_year = SchoolYear.objects.filter(sequence=active_year.sequence + 1).first()
    if next_year is None and active_year.start_date:
        next_year = (
            SchoolYear.objects.filter(start_date__gt=active_year.start_date)
            .order_by("start_date", "id")
            .first()
        )
    if next_year is not None:
        return str(next_year.id), next_year.name

    computed_name = _shift_year_name(active_year.name, 1)
    if computed_name:
        found = SchoolYear.objects.filter(name=computed_name).first()
        if found is not None:
            return str(found.id), found.name
        return "", computed_name
    return str(active_year.id), active_year.name


def _snapshot_signature(signer) -> str:
    source = str(getattr(signer, "signature_url", "") or "").strip()
    if not source:
        return ""
    image = get_image_loader().load(source)
    if image is None:
        logger.warning("Signature snapshot for user %s could not be captured.", getattr(signer, "id", None))
        return ""
    return image.data_uri()


def sign_assignment(
    assignment: TemplateAssignment,
    *,
    signer,
    signature_type: str = STANDARD,
    level: str = "",
    signature_period_id: str = "",
) -> TemplateSignature:
    if signature_type not in (STANDARD, END_OF_YEAR):
        raise SigningError(f"Unsupported signature type '{signature_type}'.", code="invalid_signature_type")
    level = str(level or "").strip()
    # Captured before locking the row; loading the image may hit the network.
    signature_url = str(getattr(signer, "signature_url", "") or "")
    signature_data = _snapshot_signature(signer)

    with transaction.atomic():
        locked = TemplateAssignment.objects.select_for_update().get(id=assignment.id)
        existing = locked.signatures.filter(type=signature_type)
        if level:
            existing = existing.filter(level__in=[level, ""])
        if existing.exists():
            raise SigningError("This carnet is already signed.", code="already_signed", status_code=409)

        if signature_type == STANDARD and not (locked.is_completed_sem1 or locked.is_completed):
            raise SigningError("Semester 1 is not completed.", code="not_completed_sem1")
        if signature_type == END_OF_YEAR and not locked.is_completed_sem2:
            raise SigningError("Semester 2 is not completed.", code="not_completed_sem2")

        now = timezone.now()
        school_year_id, school_year_name = resolve_signature_school_year(signature_type, now=now)
        signature = TemplateSignature.objects.create(
            assignment=locked,
            signer=signer,
            signer_name=signer.signer_name,
            signed_at=now,
            type=signature_type,
            signature_url=signature_url,
            signature_data=signature_data,
            level=level,
            school_year_name=school_year_name,
            signature_period_id=signature_period_id,
        )

        data = dict(locked.data or {})
        history = list(data.get("signatures") or [])
        history.append(
            {
                "type": signature_type,
                "signedAt": now.isoformat(),
                "subAdminId": str(signer.id),
                "signerName": signer.signer_name,
                "schoolYearId": school_year_id,
                "schoolYearName": school_year_name,
                "level": level,
                "signaturePeriodId": signature_period_id,
            }
        )
        data["signatures"] = history
        locked.data = data
        locked.status = TemplateAssignment.Status.SIGNED
        locked.data_version = int(locked.data_version) + 1
        locked.save(update_fields=["data", "status", "data_version", "updated_at"])

    logger.info("Assignment %s signed (%s) by user %s.", locked.id, signature_type, signer.id)
    return signature


def unsign_assignment(
    assignment: TemplateAssignment,
    *,
    signer,
    signature_type: str | None = None,
    level: str = "",
) -> int:
    level = str(level or "").strip()
    signer_id = str(signer.id)

    with transaction.atomic():
        locked = TemplateAssignment.objects.select_for_update().get(id=assignment.id)
        signatures = locked.signatures.all()
        if signature_type:
            signatures = signatures.filter(type=signature_type)
        if level:
            signatures = signatures.filter(level__in=[level, ""])
        deleted_count, _details = signatures.delete()

        data = dict(locked.data or {})
        changed = False
        if signature_type == END_OF_YEAR and isinstance(data.get("promotions"), list):
            promotions = [entry for entry in data["promotions"] if str((entry or {}).get("by") or "") != signer_id]
            if len(promotions) != len(data["promotions"]):
                data["promotions"] = promotions
                changed = True

        if isinstance(data.get("signatures"), list):
            kept = []
            for entry in data["signatures"]:
                entry = entry if isinstance(entry, dict) else {}
                matches = str(entry.get("subAdminId") or "") == signer_id
                if matches and signature_type:
                    matches = str(entry.get("type") or "") == signature_type
                if matches and level:
                    matches = str(entry.get("level") or "") in (level, "")
                if not matches:
                    kept.append(entry)
            if len(kept) != len(data["signatures"]):
                data["signatures"] = kept
                changed = True

        update_fields = []
        if changed:
            locked.data = data
            locked.data_version = int(locked.data_version) + 1
            update_fields.extend(["data", "data_version"])
        if not locked.signatures.exists():
            locked.status = TemplateAssignment.Status.COMPLETED
            update_fields.append("status")
        if update_fields:
            update_fields.append("updated_at")
            locked.save(update_fields=update_fields)

    logger.info("Assignment %s unsigned (%s) by user %s.", locked.id, signature_type or "all", signer.id)
    return deleted_count
