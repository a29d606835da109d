from __future__ import annotations

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from gradebooks.export_jobs import prune_export_artifacts


class Command(BaseCommand):
    help = "Prune old batch-export ZIP artifacts while preserving job metadata."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=settings.GRADEBOOK_EXPORT_ARTIFACT_RETENTION_DAYS,
            help="Delete artifacts for jobs finished more than N days ago.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report candidates without deleting files.",
        )

    def handle(self, *args, **options):
        days = int(options["days"])
        dry_run = bool(options["dry_run"])
        if days < 1:
            raise CommandError("--days must be >= 1.")

        count, size_bytes = prune_export_artifacts(days=days, dry_run=dry_run)
        if dry_run:
            self.stdout.write(
                self.style.WARNING(f"Dry run complete: {count} candidate(s), {size_bytes} total bytes.")
            )
            return
        self.stdout.write(self.style.SUCCESS(f"Pruned {count} artifact(s) freeing {size_bytes} bytes."))
