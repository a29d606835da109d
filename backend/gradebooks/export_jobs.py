from __future__ import annotations

from datetime import timedelta
from hashlib import sha256
from io import BytesIO
import logging
import time

from django.core.files.base import ContentFile
from django.db import transaction
from django.utils import timezone

from .batch_export import BatchExport
from .exceptions import GradebookRenderError
from .exporters import batch_filename
from .models import GradebookExportJob

logger = logging.getLogger(__name__)


def queue_export_job(
    *,
    assignment_ids: list,
    group_label: str = "",
    hide_signatures: bool = False,
    strategy: str = "",
    requested_by=None,
) -> GradebookExportJob:
    return GradebookExportJob.objects.create(
        assignment_ids=[str(assignment_id) for assignment_id in assignment_ids],
        group_label=group_label,
        hide_signatures=hide_signatures,
        strategy=strategy,
        requested_by=requested_by,
        queued_at=timezone.now(),
    )


def execute_export_job_now(*, export_job_id: int) -> GradebookExportJob:
    attempt_started_monotonic = time.monotonic()
    attempt_started_at = timezone.now()

    with transaction.atomic():
        export_job = GradebookExportJob.objects.select_for_update().get(id=export_job_id)
        if export_job.status == GradebookExportJob.Status.SUCCEEDED and export_job.artifact_zip:
            return export_job

        export_job.status = GradebookExportJob.Status.RUNNING
        export_job.started_at = export_job.started_at or attempt_started_at
        export_job.finished_at = None
        export_job.error_detail = ""
        export_job.execution_attempts = int(export_job.execution_attempts) + 1
        queue_wait_ms = None
        if export_job.queued_at is not None:
            queue_wait_ms = int(
                max(0.0, (attempt_started_at - export_job.queued_at).total_seconds()) * 1000
            )
        export_job.execution_metadata = {
            **dict(export_job.execution_metadata or {}),
            "last_attempt_started_at": attempt_started_at.isoformat(),
            "last_attempt_status": "running",
            "queue_wait_ms": queue_wait_ms,
            "execution_attempt": int(export_job.execution_attempts),
        }
        export_job.save(
            update_fields=[
                "status",
                "started_at",
                "finished_at",
                "error_detail",
                "execution_attempts",
                "execution_metadata",
                "updated_at",
            ]
        )

    try:
        if not export_job.assignment_ids:
            raise GradebookRenderError("Export job has no assignments.", code="missing_assignment_ids")
        batch = BatchExport(
            list(export_job.assignment_ids),
            group_label=export_job.group_label,
            hide_signatures=export_job.hide_signatures,
            strategy=export_job.strategy or None,
        )
        buffer = BytesIO()
        summary = batch.write_to(buffer)
        zip_bytes = buffer.getvalue()
        if summary.fatal_error:
            raise GradebookRenderError(summary.fatal_error, status_code=500, code="zip_generation_failed")
    except Exception as exc:
        detail = exc.detail if isinstance(exc, GradebookRenderError) else str(exc)
        logger.warning("Export job %s failed: %s", export_job_id, detail)
        failure_at = timezone.now()
        duration_ms = int(max(0.0, time.monotonic() - attempt_started_monotonic) * 1000)
        with transaction.atomic():
            export_job = GradebookExportJob.objects.select_for_update().get(id=export_job_id)
            export_job.status = GradebookExportJob.Status.FAILED
            export_job.finished_at = failure_at
            export_job.error_detail = str(detail)[:4000]
            export_job.execution_metadata = {
                **dict(export_job.execution_metadata or {}),
                "last_attempt_finished_at": failure_at.isoformat(),
                "last_attempt_duration_ms": duration_ms,
                "last_attempt_status": "failed",
            }
            export_job.save(
                update_fields=[
                    "status",
                    "finished_at",
                    "error_detail",
                    "execution_metadata",
                    "updated_at",
                ]
            )
        return export_job

    with transaction.atomic():
        export_job = GradebookExportJob.objects.select_for_update().get(id=export_job_id)
        completed_at = timezone.now()
        duration_ms = int(max(0.0, time.monotonic() - attempt_started_monotonic) * 1000)
        stem = batch_filename(export_job.group_label).rsplit(".", 1)[0]
        artifact_name = f"{export_job.job_number.lower()}-{stem}-{completed_at.strftime('%Y%m%d%H%M%S')}.zip"
        if export_job.artifact_zip:
            export_job.artifact_zip.delete(save=False)
        export_job.artifact_zip.save(artifact_name, ContentFile(zip_bytes), save=False)
        export_job.artifact_size_bytes = len(zip_bytes)
        export_job.artifact_sha256 = sha256(zip_bytes).hexdigest()
        export_job.execution_metadata = {
            **dict(export_job.execution_metadata or {}),
            **summary.as_metadata(),
            "completed_at": completed_at.isoformat(),
            "last_attempt_finished_at": completed_at.isoformat(),
            "last_attempt_duration_ms": duration_ms,
            "last_attempt_status": "succeeded",
        }
        export_job.status = GradebookExportJob.Status.SUCCEEDED
        export_job.finished_at = completed_at
        export_job.error_detail = ""
        export_job.save(
            update_fields=[
                "artifact_zip",
                "artifact_size_bytes",
                "artifact_sha256",
                "execution_metadata",
                "status",
                "finished_at",
                "error_detail",
                "updated_at",
            ]
        )
    logger.info(
        "Export job %s finished: %s succeeded, %s failed, %s missing.",
        export_job.job_number,
        summary.succeeded,
        summary.failed,
        summary.missing,
    )
    return export_job


def prune_export_artifacts(*, days: int, dry_run: bool = False) -> tuple[int, int]:
    """Delete artifacts of jobs finished more than ``days`` ago.

    Returns ``(pruned_count, pruned_size_bytes)``; in dry-run mode the
    candidates are counted but left in place.
    """
    cutoff = timezone.now() - timedelta(days=days)
    candidates = (
        GradebookExportJob.objects.filter(finished_at__lt=cutoff, artifact_size_bytes__gt=0)
        .exclude(artifact_zip="")
        .order_by("id")
    )
    pruned_count = 0
    pruned_size_bytes = 0
    for export_job in candidates.iterator():
        if dry_run:
            pruned_count += 1
            pruned_size_bytes += int(export_job.artifact_size_bytes or 0)
            continue
        with transaction.atomic():
            locked_job = GradebookExportJob.objects.select_for_update().get(id=export_job.id)
            if not locked_job.artifact_zip or not locked_job.artifact_size_bytes:
                continue
            artifact_size = int(locked_job.artifact_size_bytes or 0)
            locked_job.artifact_zip.delete(save=False)
            locked_job.artifact_zip = ""
            locked_job.artifact_size_bytes = 0
            locked_job.artifact_sha256 = ""
            locked_job.execution_metadata = {
                **dict(locked_job.execution_metadata or {}),
                "artifact_pruned_at": timezone.now().isoformat(),
                "artifact_pruned_days_threshold": days,
            }
            locked_job.save(
                update_fields=[
                    "artifact_zip",
                    "artifact_size_bytes",
                    "artifact_sha256",
                    "execution_metadata",
                    "updated_at",
                ]
            )
        pruned_count += 1
        pruned_size_bytes += artifact_size
    return pruned_count, pruned_size_bytes
