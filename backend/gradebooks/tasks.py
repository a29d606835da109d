from __future__ import annotations

from celery import shared_task
from django.conf import settings

from .export_jobs import execute_export_job_now, prune_export_artifacts as prune_artifacts
from .models import GradebookExportJob


@shared_task
def execute_export_job(export_job_id: int) -> str:
    if not GradebookExportJob.objects.filter(id=export_job_id).exists():
        return ""
    export_job = execute_export_job_now(export_job_id=export_job_id)
    return export_job.status


@shared_task
def prune_export_artifacts(days: int | None = None) -> int:
    retention_days = int(days if days is not None else settings.GRADEBOOK_EXPORT_ARTIFACT_RETENTION_DAYS)
    pruned_count, _pruned_size_bytes = prune_artifacts(days=max(1, retention_days))
    return pruned_count
