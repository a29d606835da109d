"""reportlab executor for draw command lists.

Commands use a top-left origin; reportlab's origin is bottom-left, so every
y coordinate is flipped against the page height here and nowhere else.
"""

from __future__ import annotations

from io import BytesIO
import logging

from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfgen import canvas

from .commands import (
    CircleCommand,
    Color,
    ImageCommand,
    LineCommand,
    PageCommands,
    PolygonCommand,
    RectCommand,
    TextCommand,
)

logger = logging.getLogger(__name__)

REGULAR_FONT = "Helvetica"
BOLD_FONT = "Helvetica-Bold"
LEADING = 1.2
# Distance from the top of a text line to its baseline, as a share of the size.
ASCENT = 0.8


def _set_fill(pdf: canvas.Canvas, color: Color) -> None:
    pdf.setFillColorRGB(*color.rgb_fractions)
    pdf.setFillAlpha(color.alpha)


def _set_stroke(pdf: canvas.Canvas, color: Color, width: float) -> None:
    pdf.setStrokeColorRGB(*color.rgb_fractions)
    pdf.setStrokeAlpha(color.alpha)
    pdf.setLineWidth(width)


def _wrap_lines(command: TextCommand, font_name: str) -> list[str]:
    lines: list[str] = []
    for paragraph in command.text.split("\n"):
        if command.width and paragraph:
            lines.extend(simpleSplit(paragraph, font_name, command.font_size, command.width) or [""])
        else:
            lines.append(paragraph)
    return lines


def _draw_text(pdf: canvas.Canvas, command: TextCommand, page_height: float) -> None:
    font_name = BOLD_FONT if command.bold else REGULAR_FONT
    pdf.setFont(font_name, command.font_size)
    _set_fill(pdf, command.color)
    for line_index, line in enumerate(_wrap_lines(command, font_name)):
        if not line:
            continue
        baseline = page_height - (command.y + command.font_size * ASCENT + line_index * command.font_size * LEADING)
        if command.width and command.align == "center":
            pdf.drawCentredString(command.x + command.width / 2, baseline, line)
        elif command.width and command.align == "right":
            pdf.drawRightString(command.x + command.width, baseline, line)
        else:
            pdf.drawString(command.x, baseline, line)


def _draw_rect(pdf: canvas.Canvas, command: RectCommand, page_height: float) -> None:
    if command.fill is not None:
        _set_fill(pdf, command.fill)
    if command.stroke is not None:
        _set_stroke(pdf, command.stroke, command.stroke_width)
        if command.dashed:
            pdf.setDash(3, 2)
    y = page_height - command.y - command.height
    stroke = 1 if command.stroke is not None else 0
    fill = 1 if command.fill is not None else 0
    if command.radius > 0:
        pdf.roundRect(command.x, y, command.width, command.height, command.radius, stroke=stroke, fill=fill)
    else:
        pdf.rect(command.x, y, command.width, command.height, stroke=stroke, fill=fill)


def _draw_circle(pdf: canvas.Canvas, command: CircleCommand, page_height: float) -> None:
    if command.fill is not None:
        _set_fill(pdf, command.fill)
    if command.stroke is not None:
        _set_stroke(pdf, command.stroke, command.stroke_width)
    pdf.circle(
        command.cx,
        page_height - command.cy,
        command.radius,
        stroke=1 if command.stroke is not None else 0,
        fill=1 if command.fill is not None else 0,
    )


def _draw_line(pdf: canvas.Canvas, command: LineCommand, page_height: float) -> None:
    _set_stroke(pdf, command.color, command.width)
    pdf.line(command.x1, page_height - command.y1, command.x2, page_height - command.y2)


def _draw_polygon(pdf: canvas.Canvas, command: PolygonCommand, page_height: float) -> None:
    if not command.points:
        return
    _set_fill(pdf, command.fill)
    path = pdf.beginPath()
    first_x, first_y = command.points[0]
    path.moveTo(first_x, page_height - first_y)
    for point_x, point_y in command.points[1:]:
        path.lineTo(point_x, page_height - point_y)
    path.close()
    pdf.drawPath(path, stroke=0, fill=1)


def _draw_image(pdf: canvas.Canvas, command: ImageCommand, page_height: float) -> None:
    try:
        image_reader = ImageReader(BytesIO(command.data))
    except (OSError, ValueError) as exc:
        logger.warning("Skipping unreadable image (%s): %s", command.mime_type, exc)
        return
    y = page_height - command.y - command.height
    if command.clip_circle:
        radius = min(command.width, command.height) / 2
        clip = pdf.beginPath()
        clip.circle(command.x + command.width / 2, y + command.height / 2, radius)
        pdf.clipPath(clip, stroke=0, fill=0)
    pdf.drawImage(
        image_reader,
        command.x,
        y,
        width=command.width,
        height=command.height,
        mask="auto",
        preserveAspectRatio=command.fit == "contain",
        anchor="c",
    )


_DRAWERS = {
    TextCommand: _draw_text,
    RectCommand: _draw_rect,
    CircleCommand: _draw_circle,
    LineCommand: _draw_line,
    PolygonCommand: _draw_polygon,
    ImageCommand: _draw_image,
}


def draw_page(pdf: canvas.Canvas, page: PageCommands) -> None:
    pdf.setPageSize((page.width, page.height))
    if page.background is not None:
        pdf.saveState()
        _set_fill(pdf, page.background)
        pdf.rect(0, 0, page.width, page.height, stroke=0, fill=1)
        pdf.restoreState()
    for command in page.commands:
        drawer = _DRAWERS.get(type(command))
        if drawer is None:
            continue
        # Each command gets a clean graphics state (colour, alpha, dash, clip).
        pdf.saveState()
        try:
            drawer(pdf, command, page.height)
        finally:
            pdf.restoreState()


def render_pdf(pages: list[PageCommands], *, title: str = "") -> bytes:
    """Render command pages to PDF bytes. Identical input gives identical bytes."""
    buffer = BytesIO()
    first = pages[0] if pages else None
    page_size = (first.width, first.height) if first is not None else (595.28, 841.89)
    pdf = canvas.Canvas(buffer, pagesize=page_size, invariant=1)
    if title:
        pdf.setTitle(title)
    pdf.setCreator("carnet-renderer")
    if not pages:
        pdf.showPage()
    for page in pages:
        draw_page(pdf, page)
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def assemble_image_pdf(images: list[bytes], *, width: float, height: float, title: str = "") -> bytes:
    """Place one raster image per page, full bleed."""
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(width, height), invariant=1)
    if title:
        pdf.setTitle(title)
    pdf.setCreator("carnet-renderer")
    for image_bytes in images:
        pdf.setPageSize((width, height))
        pdf.drawImage(ImageReader(BytesIO(image_bytes)), 0, 0, width=width, height=height)
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()
