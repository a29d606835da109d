"""ZIP export of many carnets.

Database reads happen in the calling thread before any worker starts; the
worker pool only turns ``RenderDocument`` objects into PDF bytes. Entries are
added to the archive in completion order.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
import logging
import posixpath
from typing import IO, Any, Iterator
import zipfile

from django.conf import settings
from django.utils import timezone

from .exceptions import GradebookRenderError
from .exporters import get_exporter, sanitize_filename
from .services import LoadedCarnet, active_school_year, load_assignment_carnet

logger = logging.getLogger(__name__)


class _StreamBuffer:
    """Write-only sink for ``zipfile`` that hands written bytes to a generator."""

    def __init__(self):
        self._chunks: list[bytes] = []

    def write(self, data: bytes) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        return None

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks = []
        return data


@dataclass
class BatchSummary:
    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    missing: int = 0
    fatal_error: str = ""
    entries: list[str] = field(default_factory=list)

    def as_metadata(self) -> dict[str, Any]:
        return {
            "requested": self.requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "missing": self.missing,
            "fatal_error": self.fatal_error,
        }


class BatchExport:
    def __init__(
        self,
        assignment_ids: list[Any],
        *,
        group_label: str = "",
        hide_signatures: bool = False,
        strategy: str | None = None,
        exporter=None,
        concurrency: int | None = None,
        printed_on: date | None = None,
    ):
        self.assignment_ids = [assignment_id for assignment_id in assignment_ids if str(assignment_id).strip()]
        self.group_label = str(group_label or "").strip()
        self.hide_signatures = hide_signatures
        self.exporter = exporter or get_exporter(strategy)
        self.concurrency = max(1, int(concurrency or settings.GRADEBOOK_PDF_CONCURRENCY))
        self.printed_on = printed_on
        self.started_at = timezone.now()
        self.summary = BatchSummary(requested=len(self.assignment_ids))
        self._loaded: list[tuple[Any, LoadedCarnet]] = []
        self._load_errors: list[tuple[Any, str]] = []
        self._used_names: set[str] = set()
        self._prepared = False

    def prepare(self) -> None:
        """Load inputs and start the rendering backend.

        Raises BrowserLaunchError (or another GradebookRenderError from the
        backend) before any archive bytes exist.
        """
        if self._prepared:
            return
        active_year = active_school_year()
        year_name = active_year.name if active_year is not None else None
        for assignment_id in self.assignment_ids:
            try:
                loaded = load_assignment_carnet(
                    assignment_id,
                    hide_signatures=self.hide_signatures,
                    year_name=year_name,
                    printed_on=self.printed_on,
                )
            except GradebookRenderError as exc:
                self._load_errors.append((assignment_id, exc.detail))
                continue
            self._loaded.append((assignment_id, loaded))
        self.exporter.prepare()
        self._prepared = True

    def _unique_name(self, filename: str) -> str:
        stem, extension = posixpath.splitext(filename)
        candidate = filename
        counter = 2
        while candidate in self._used_names:
            candidate = f"{stem}-{counter}{extension}"
            counter += 1
        self._used_names.add(candidate)
        return candidate

    def _info_text(self) -> str:
        lines = [f"Archive started at {self.started_at.isoformat()}"]
        if self.group_label:
            lines.append(f"Group: {self.group_label}")
        lines.append(f"Requested: {self.summary.requested}")
        lines.append(f"Found: {len(self._loaded)}")
        return "\n".join(lines) + "\n"

    def _write_error(self, archive: zipfile.ZipFile, assignment_id: Any, message: str) -> None:
        name = self._unique_name(f"errors/{sanitize_filename(str(assignment_id))}.txt")
        archive.writestr(name, f"{message}\n")
        self.summary.entries.append(name)

    def iter_chunks(self) -> Iterator[bytes]:
        self.prepare()
        sink = _StreamBuffer()
        archive = zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED)
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="gradebook-pdf")
        futures: dict[Future, tuple[Any, LoadedCarnet]] = {}
        finished = False
        try:
            archive.writestr("info.txt", self._info_text())
            yield sink.drain()

            for assignment_id, message in self._load_errors:
                self.summary.missing += 1
                self._write_error(archive, assignment_id, message)
            yield sink.drain()

            for assignment_id, loaded in self._loaded:
                futures[executor.submit(self.exporter.render, loaded.document)] = (assignment_id, loaded)

            for future in as_completed(futures):
                assignment_id, loaded = futures[future]
                try:
                    pdf_bytes = future.result()
                except Exception as exc:
                    # A failed carnet is reported in the archive; the batch continues.
                    logger.warning("Batch export failed for assignment %s: %s", assignment_id, exc)
                    self.summary.failed += 1
                    detail = getattr(exc, "detail", None) or str(exc) or "pdf_generation_failed"
                    self._write_error(archive, assignment_id, detail)
                else:
                    name = self._unique_name(loaded.filename)
                    archive.writestr(name, pdf_bytes)
                    self.summary.entries.append(name)
                    self.summary.succeeded += 1
                yield sink.drain()
            finished = True
        except GeneratorExit:
            logger.warning("Batch export aborted by the client after %s entries.", len(self.summary.entries))
            raise
        except Exception as exc:
            logger.exception("Batch export aborted.")
            self.summary.fatal_error = str(exc) or "zip_generation_failed"
            archive.writestr("errors/fatal.txt", f"{self.summary.fatal_error}\n")
            finished = True
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            if finished:
                archive.close()
        yield sink.drain()

    def write_to(self, output: IO[bytes]) -> BatchSummary:
        for chunk in self.iter_chunks():
            if chunk:
                output.write(chunk)
        return self.summary
