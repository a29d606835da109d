from __future__ import annotations

import logging
import re
import unicodedata
from urllib.parse import quote

from django.conf import settings

from .browser_pool import BrowserPool, get_browser_pool
from .exceptions import GradebookRenderError
from .html_executor import READY_FLAG, render_document_html
from .images import ImageLoader
from .interpreter import RenderDocument, TemplateInterpreter
from .layout import a4_mapper, design_mapper
from .pdf_vector import assemble_image_pdf, render_pdf

try:
    from weasyprint import HTML
except Exception:  # pragma: no cover - handled at runtime
    HTML = None

try:
    from playwright.async_api import TimeoutError as PlaywrightTimeoutError
except Exception:  # pragma: no cover - handled at runtime
    PlaywrightTimeoutError = None

logger = logging.getLogger(__name__)

# CSS pixels to PDF points.
PX_TO_PT = 0.75
SETTLE_MS = 250

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._ -]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_filename(value: str, *, fallback: str = "file") -> str:
    normalized = unicodedata.normalize("NFKD", str(value or ""))
    without_marks = "".join(char for char in normalized if not unicodedata.combining(char))
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", without_marks)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned or fallback


def content_disposition(filename: str) -> str:
    safe_name = sanitize_filename(filename).replace('"', "")
    encoded = quote(str(filename or "file"), safe="")
    return f"attachment; filename=\"{safe_name}\"; filename*=UTF-8''{encoded}"


def carnet_filename(*, last_name: str, first_name: str) -> str:
    return sanitize_filename(f"carnet-{last_name.strip()}-{first_name.strip()}.pdf")


def student_pdf_filename(*, level: str, first_name: str, last_name: str, year_name: str) -> str:
    year_safe = str(year_name or "").replace("/", "-").replace("\\", "-").strip()
    parts = [str(level or "").upper().strip(), first_name.strip(), last_name.strip(), year_safe]
    base = "-".join(part for part in parts if part) or "file"
    return sanitize_filename(f"{base}.pdf")


def batch_filename(group_label: str) -> str:
    label = str(group_label or "").strip()
    return sanitize_filename(f"carnets-{label}.zip" if label else "carnets.zip")


def build_document_html(document: RenderDocument, *, image_loader: ImageLoader | None = None) -> str:
    """HTML document in design units (800x1120 CSS px), one ``.page-canvas`` per page."""
    interpreter = TemplateInterpreter(design_mapper(), image_loader=image_loader)
    return render_document_html(interpreter.render(document), title=document.title)


class VectorExporter:
    name = "vector"

    def __init__(self, *, image_loader: ImageLoader | None = None):
        self.image_loader = image_loader

    def prepare(self) -> None:
        return None

    def render(self, document: RenderDocument) -> bytes:
        interpreter = TemplateInterpreter(a4_mapper(), image_loader=self.image_loader, footer=True)
        pages = interpreter.render(document)
        return render_pdf(pages, title=document.title)


class BrowserExporter:
    name = "browser"

    def __init__(
        self,
        *,
        pool: BrowserPool | None = None,
        image_loader: ImageLoader | None = None,
        use_native: bool | None = None,
        use_jpeg: bool | None = None,
    ):
        self.pool = pool
        self.image_loader = image_loader
        self.use_native = settings.GRADEBOOK_PDF_USE_NATIVE if use_native is None else use_native
        self.use_jpeg = settings.GRADEBOOK_PDF_USE_JPEG if use_jpeg is None else use_jpeg
        self.page_width = int(settings.GRADEBOOK_PDF_PAGE_WIDTH_PX)
        self.page_height = int(settings.GRADEBOOK_PDF_PAGE_HEIGHT_PX)
        self.device_scale_factor = min(3.0, max(1.0, float(settings.GRADEBOOK_PDF_DEVICE_SCALE_FACTOR)))
        self.image_quality = min(100, max(1, int(settings.GRADEBOOK_PDF_IMAGE_QUALITY)))
        self.ready_timeout_ms = int(settings.GRADEBOOK_PDF_READY_TIMEOUT_MS)

    def _get_pool(self) -> BrowserPool:
        return self.pool or get_browser_pool()

    def prepare(self) -> None:
        """Fail fast (BrowserLaunchError) before any output is produced."""
        self._get_pool().ensure_browser()

    async def _wait_until_ready(self, page) -> None:
        try:
            await page.wait_for_function(
                f"window.{READY_FLAG} === true",
                timeout=self.ready_timeout_ms,
            )
        except PlaywrightTimeoutError:
            logger.warning("Ready flag not set within %sms; continuing.", self.ready_timeout_ms)
        await page.wait_for_timeout(SETTLE_MS)

    def _capture(self, html: str):
        async def capture(page):
            await page.set_content(html, wait_until="load")
            await self._wait_until_ready(page)
            if self.use_native:
                return await page.pdf(
                    width=f"{self.page_width}px",
                    height=f"{self.page_height}px",
                    print_background=True,
                    margin={"top": "0", "right": "0", "bottom": "0", "left": "0"},
                )
            screenshot_options = {"type": "jpeg", "quality": self.image_quality} if self.use_jpeg else {"type": "png"}
            screenshots = []
            for element in await page.query_selector_all(".page-canvas"):
                screenshots.append(await element.screenshot(**screenshot_options))
            return screenshots

        return capture

    def render(self, document: RenderDocument) -> bytes:
        html = build_document_html(document, image_loader=self.image_loader)
        try:
            result = self._get_pool().with_page(
                self._capture(html),
                viewport={"width": self.page_width, "height": self.page_height},
                device_scale_factor=self.device_scale_factor,
            )
        except GradebookRenderError:
            raise
        except Exception as exc:
            raise GradebookRenderError(f"Browser rendering failed: {exc}", status_code=500) from exc

        if self.use_native:
            pdf_bytes = bytes(result or b"")
        else:
            screenshots = [shot for shot in (result or []) if shot]
            pdf_bytes = b""
            if screenshots:
                pdf_bytes = assemble_image_pdf(
                    screenshots,
                    width=self.page_width * PX_TO_PT,
                    height=self.page_height * PX_TO_PT,
                    title=document.title,
                )
        if not pdf_bytes:
            raise GradebookRenderError("Browser produced an empty PDF.", status_code=500)
        return pdf_bytes


class WeasyPrintExporter:
    name = "weasyprint"

    def __init__(self, *, image_loader: ImageLoader | None = None, base_url: str | None = None):
        self.image_loader = image_loader
        self.base_url = base_url

    def prepare(self) -> None:
        if HTML is None:
            raise GradebookRenderError("PDF rendering backend is unavailable.", status_code=503)

    def render(self, document: RenderDocument) -> bytes:
        self.prepare()
        html = build_document_html(document, image_loader=self.image_loader)
        return HTML(string=html, base_url=self.base_url or settings.GRADEBOOK_PUBLIC_BASE_URL).write_pdf()


EXPORTERS = {
    VectorExporter.name: VectorExporter,
    BrowserExporter.name: BrowserExporter,
    WeasyPrintExporter.name: WeasyPrintExporter,
}


def get_exporter(strategy: str | None = None, **kwargs):
    name = str(strategy or settings.GRADEBOOK_PDF_STRATEGY or "vector").strip().lower()
    exporter_class = EXPORTERS.get(name)
    if exporter_class is None:
        raise GradebookRenderError(f"Unknown PDF strategy '{name}'.", code="invalid_strategy")
    return exporter_class(**kwargs)
