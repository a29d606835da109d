"""Template interpreter: walks pages and blocks and emits draw commands.

This is the only place that knows what a block *means*. The vector and HTML
executors consume the resulting ``PageCommands`` without looking at template
JSON, so both outputs stay in sync by construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
import logging
import math
from typing import Any, Callable, Iterable

from django.utils import timezone

from .blocks import (
    ArrowBlock,
    Block,
    CategoryTitleBlock,
    CircleBlock,
    CompetencyListBlock,
    DropdownBlock,
    DropdownReferenceBlock,
    ImageBlock,
    LanguageItem,
    LanguageToggleBlock,
    LanguageToggleV2Block,
    LineBlock,
    PromotionInfoBlock,
    QrBlock,
    RectBlock,
    SignatureBlock,
    SignatureBoxBlock,
    SignatureDateBlock,
    StudentInfoBlock,
    TableBlock,
    TextBlock,
    decode_block,
)
from .commands import (
    CircleCommand,
    Color,
    ImageCommand,
    LineCommand,
    PageCommands,
    PolygonCommand,
    RectCommand,
    TextCommand,
    parse_color,
)
from .images import ImageLoader, LoadedImage, decode_data_uri, get_image_loader
from .layout import DESIGN_H, CoordinateMapper
from .resolvers import (
    RenderContext,
    format_date_colon,
    format_date_slash,
    interpolate_text,
    latest_signature,
    level_allowed,
    normalize_level,
    resolve_dropdown_value,
    resolve_promotion,
    resolve_signature_date,
    resolve_table_languages,
    resolve_toggle_items,
)

logger = logging.getLogger(__name__)

LINE_HEIGHT = 1.2
FLOW_X = 40.0
FLOW_TOP = 40.0
FLOW_SPACING = 8.0
TITLE_Y = 20.0
TITLE_SIZE = 18.0
FOOTER_SIZE = 10.0
PAGE_BOTTOM_MARGIN = 60.0

ACTIVE_RING = "#2563eb"
ICON_FALLBACK_FILL = "#e5e7eb"
PLACEHOLDER_LINE = "______________________________"
CHECK_MARK = "✔"
CROSS_MARK = "✘"


def _color(value: Any, default: str | None = None) -> Color | None:
    parsed = parse_color(value)
    if parsed is None and default is not None and not str(value or "").strip():
        return parse_color(default)
    return parsed


def _solid(value: Any, default: str) -> Color:
    return parse_color(value) or parse_color(default)


def estimate_text_height(text: str, font_size: float, width: float | None = None) -> float:
    line_count = 0
    for line in (text or "").split("\n"):
        if width and width > 0:
            chars_per_line = max(1, int(width / (font_size * 0.5)))
            line_count += max(1, math.ceil(len(line) / chars_per_line))
        else:
            line_count += 1
    return max(1, line_count) * font_size * LINE_HEIGHT


@dataclass
class RenderDocument:
    """Inputs for one carnet: template pages plus the student context."""

    pages: list[dict[str, Any]]
    context: RenderContext
    use_default_carnet: bool = False
    visible_pages: list[int] | None = None
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class PageWriter:
    """Scales design-space primitives onto one output page."""

    def __init__(self, mapper: CoordinateMapper, page: PageCommands):
        self.mapper = mapper
        self.page = page

    def text(
        self,
        x: float,
        y: float,
        text: str,
        *,
        size: float,
        color: Color,
        width: float | None = None,
        align: str = "left",
        bold: bool = False,
    ) -> None:
        if not text:
            return
        self.page.add(
            TextCommand(
                x=self.mapper.scale_x(x),
                y=self.mapper.scale_y(y),
                text=text,
                font_size=self.mapper.scale_radial(size),
                color=color,
                width=self.mapper.scale_x(width) if width else None,
                align=align,
                bold=bold,
            )
        )

    def rect(
        self,
        x: float,
        y: float,
        width: float,
        height: float,
        *,
        fill: Color | None = None,
        stroke: Color | None = None,
        stroke_width: float = 1.0,
        radius: float = 0.0,
        dashed: bool = False,
    ) -> None:
        if fill is None and stroke is None:
            return
        sx, sy, sw, sh = self.mapper.rect(x, y, width, height)
        self.page.add(
            RectCommand(
                x=sx,
                y=sy,
                width=sw,
                height=sh,
                fill=fill,
                stroke=stroke,
                stroke_width=self.mapper.scale_radial(stroke_width),
                radius=self.mapper.scale_radial(radius),
                dashed=dashed,
            )
        )

    def circle(
        self,
        cx: float,
        cy: float,
        radius: float,
        *,
        fill: Color | None = None,
        stroke: Color | None = None,
        stroke_width: float = 1.0,
    ) -> None:
        if fill is None and stroke is None:
            return
        self.page.add(
            CircleCommand(
                cx=self.mapper.scale_x(cx),
                cy=self.mapper.scale_y(cy),
                radius=self.mapper.scale_radial(radius),
                fill=fill,
                stroke=stroke,
                stroke_width=self.mapper.scale_radial(stroke_width),
            )
        )

    def line(self, x1: float, y1: float, x2: float, y2: float, *, color: Color, width: float) -> None:
        self.page.add(
            LineCommand(
                x1=self.mapper.scale_x(x1),
                y1=self.mapper.scale_y(y1),
                x2=self.mapper.scale_x(x2),
                y2=self.mapper.scale_y(y2),
                color=color,
                width=self.mapper.scale_radial(width),
            )
        )

    def polygon(self, points: Iterable[tuple[float, float]], *, fill: Color) -> None:
        self.page.add(
            PolygonCommand(
                points=tuple((self.mapper.scale_x(px), self.mapper.scale_y(py)) for px, py in points),
                fill=fill,
            )
        )

    def image(
        self,
        x: float,
        y: float,
        width: float,
        height: float,
        image: LoadedImage,
        *,
        clip_circle: bool = False,
        fit: str = "fill",
    ) -> None:
        sx, sy, sw, sh = self.mapper.rect(x, y, width, height)
        self.page.add(
            ImageCommand(
                x=sx,
                y=sy,
                width=sw,
                height=sh,
                data=image.data,
                mime_type=image.mime_type,
                clip_circle=clip_circle,
                fit=fit,
            )
        )


@dataclass
class _BlockScope:
    writer: PageWriter
    context: RenderContext
    page_index: int
    original_page_index: int


class TemplateInterpreter:
    def __init__(
        self,
        mapper: CoordinateMapper,
        *,
        image_loader: ImageLoader | None = None,
        footer: bool = False,
    ):
        self.mapper = mapper
        self.image_loader = image_loader or get_image_loader()
        self.footer = footer
        self._renderers: dict[type[Block], Callable[[Any, float, float, _BlockScope], float]] = {
            TextBlock: self._render_text,
            ImageBlock: self._render_image,
            RectBlock: self._render_rect,
            CircleBlock: self._render_circle,
            LineBlock: self._render_line,
            ArrowBlock: self._render_arrow,
            QrBlock: self._render_qr,
            TableBlock: self._render_table,
            StudentInfoBlock: self._render_student_info,
            CategoryTitleBlock: self._render_category_title,
            CompetencyListBlock: self._render_competency_list,
            SignatureBlock: self._render_signature_pad,
            SignatureBoxBlock: self._render_signature_box,
            SignatureDateBlock: self._render_signature_date,
            DropdownBlock: self._render_dropdown,
            DropdownReferenceBlock: self._render_dropdown_reference,
            LanguageToggleBlock: self._render_language_toggle,
            LanguageToggleV2Block: self._render_language_toggle_v2,
            PromotionInfoBlock: self._render_promotion_info,
        }

    # Compositor

    def render(self, document: RenderDocument) -> list[PageCommands]:
        if document.use_default_carnet:
            pages = self.render_default_carnet(document.context)
        else:
            pages = self.render_pages(
                document.pages,
                document.context,
                visible_pages=document.visible_pages,
            )
        if self.footer and pages:
            self._draw_footer(pages[-1], document.context.printed_on or timezone.localdate())
        return pages

    def render_pages(
        self,
        pages: list[dict[str, Any]],
        context: RenderContext,
        *,
        visible_pages: list[int] | None = None,
    ) -> list[PageCommands]:
        output: list[PageCommands] = []
        for original_index, page in enumerate(pages or []):
            if not isinstance(page, dict) or page.get("excludeFromPdf"):
                continue
            if visible_pages is not None and original_index not in visible_pages:
                continue
            output.append(
                self.render_page(
                    page,
                    context,
                    page_index=len(output),
                    original_page_index=original_index,
                )
            )
        return output

    def _new_page(self, background: Color | None = None) -> tuple[PageCommands, PageWriter]:
        page = PageCommands(width=self.mapper.width, height=self.mapper.height, background=background)
        return page, PageWriter(self.mapper, page)

    def _block_visible(self, block: Block, context: RenderContext) -> bool:
        student_level = context.student.level
        if not level_allowed(block.levels, student_level):
            return False
        if isinstance(block, SignatureBoxBlock) and block.level:
            return normalize_level(block.level) == normalize_level(student_level)
        return True

    def _renderer_for(self, block: Block):
        for block_class in type(block).__mro__:
            renderer = self._renderers.get(block_class)
            if renderer is not None:
                return renderer
        return None

    def render_page(
        self,
        page: dict[str, Any],
        context: RenderContext,
        *,
        page_index: int,
        original_page_index: int,
    ) -> PageCommands:
        output, writer = self._new_page(parse_color(page.get("bgColor")))
        cursor_y = FLOW_TOP
        title = str(page.get("title") or "").strip()
        if title:
            writer.text(FLOW_X, TITLE_Y, title, size=TITLE_SIZE, color=_solid(None, "#333"), bold=True)
            cursor_y = TITLE_Y + TITLE_SIZE * LINE_HEIGHT + FLOW_SPACING

        decoded: list[Block] = []
        raw_blocks = page.get("blocks") if isinstance(page.get("blocks"), list) else []
        for block_index, raw_block in enumerate(raw_blocks):
            try:
                block = decode_block(raw_block, index=block_index)
            except (ValueError, TypeError, KeyError, OverflowError) as exc:
                logger.warning(
                    "Block %s on page %s could not be decoded: %s", block_index, original_page_index, exc
                )
                continue
            if block is None:
                logger.warning(
                    "Skipping unsupported block on page %s at index %s.", original_page_index, block_index
                )
                continue
            decoded.append(block)

        scope = _BlockScope(
            writer=writer,
            context=context,
            page_index=page_index,
            original_page_index=original_page_index,
        )
        # sorted() is stable, so equal z keeps document order.
        for block in sorted(decoded, key=lambda item: item.z):
            if not self._block_visible(block, context):
                continue
            renderer = self._renderer_for(block)
            if renderer is None:
                continue
            positioned = block.positioned
            origin_x = (block.x or 0.0) if positioned else FLOW_X
            origin_y = (block.y or 0.0) if positioned else cursor_y
            try:
                used_height = renderer(block, origin_x, origin_y, scope)
            except (ValueError, TypeError, KeyError, ZeroDivisionError, OverflowError, OSError) as exc:
                logger.warning(
                    "Block %s (%s) on page %s failed to render: %s",
                    block.index,
                    block.block_type,
                    original_page_index,
                    exc,
                )
                continue
            if not positioned:
                cursor_y += (used_height or 0.0) + FLOW_SPACING
        return output

    def _draw_footer(self, page: PageCommands, printed_on: date) -> None:
        writer = PageWriter(self.mapper, page)
        writer.text(
            FLOW_X,
            DESIGN_H - 30,
            f"Imprimé le {format_date_slash(printed_on)}",
            size=FOOTER_SIZE,
            color=_solid(None, "#888"),
        )

    def render_default_carnet(self, context: RenderContext) -> list[PageCommands]:
        """Built-in carnet used when the template is password protected."""
        pages: list[PageCommands] = []
        page, writer = self._new_page()
        pages.append(page)
        dark = _solid(None, "#333")
        writer.text(FLOW_X, FLOW_TOP, "Carnet Scolaire", size=20, color=dark, bold=True)
        cursor_y = FLOW_TOP + 20 * LINE_HEIGHT + FLOW_SPACING * 2
        writer.text(FLOW_X, cursor_y, f"Nom: {context.student.full_name}", size=12, color=dark)
        cursor_y += 12 * LINE_HEIGHT + 4
        writer.text(FLOW_X, cursor_y, f"Classe: {context.student.class_name}", size=12, color=dark)
        cursor_y += 12 * LINE_HEIGHT + FLOW_SPACING * 2

        title_color = _solid(None, "#6c5ce7")
        line_color = _solid(None, "#2d3436")
        for category in context.categories:
            if cursor_y + 16 * LINE_HEIGHT > DESIGN_H - PAGE_BOTTOM_MARGIN:
                page, writer = self._new_page()
                pages.append(page)
                cursor_y = FLOW_TOP
            writer.text(FLOW_X, cursor_y, category.name, size=16, color=title_color, bold=True)
            cursor_y += 16 * LINE_HEIGHT + 4
            for competency in category.competencies:
                if cursor_y + 12 * LINE_HEIGHT > DESIGN_H - PAGE_BOTTOM_MARGIN:
                    page, writer = self._new_page()
                    pages.append(page)
                    cursor_y = FLOW_TOP
                writer.text(
                    FLOW_X + 10,
                    cursor_y,
                    competency_line(competency.label, competency.en, competency.fr, competency.ar),
                    size=12,
                    color=line_color,
                )
                cursor_y += 12 * LINE_HEIGHT + 2
            cursor_y += FLOW_SPACING
        return pages

    # Shapes and text

    def _render_text(self, block: TextBlock, x: float, y: float, scope: _BlockScope) -> float:
        text = block.text
        if block.interpolate:
            text = interpolate_text(text, scope.context.student)
        if not text:
            return 0.0
        scope.writer.text(
            x,
            y,
            text,
            size=block.font_size,
            color=_solid(block.color, "#000"),
            width=block.width,
            align=block.align,
            bold=block.bold,
        )
        return estimate_text_height(text, block.font_size, block.width)

    def _render_image(self, block: ImageBlock, x: float, y: float, scope: _BlockScope) -> float:
        image = self.image_loader.load(block.url)
        if image is None:
            if block.url:
                logger.warning("Image block %s omitted: source could not be resolved.", block.index)
            return 0.0
        scope.writer.image(x, y, block.width, block.height, image)
        return block.height

    def _render_rect(self, block: RectBlock, x: float, y: float, scope: _BlockScope) -> float:
        scope.writer.rect(
            x,
            y,
            block.width,
            block.height,
            fill=parse_color(block.color),
            stroke=parse_color(block.stroke),
            stroke_width=block.stroke_width,
            radius=block.radius,
        )
        return block.height

    def _render_circle(self, block: CircleBlock, x: float, y: float, scope: _BlockScope) -> float:
        radius = block.radius
        scope.writer.circle(
            x + radius,
            y + radius,
            radius,
            fill=_color(block.color, "#ddd"),
            stroke=parse_color(block.stroke),
            stroke_width=block.stroke_width,
        )
        return radius * 2

    def _render_line(self, block: LineBlock, x: float, y: float, scope: _BlockScope) -> float:
        scope.writer.line(
            x,
            y,
            x + block.x2,
            y + block.y2,
            color=_solid(block.stroke, block.default_stroke),
            width=block.stroke_width,
        )
        return max(abs(block.y2), block.stroke_width)

    def _render_arrow(self, block: ArrowBlock, x: float, y: float, scope: _BlockScope) -> float:
        self._render_line(block, x, y, scope)
        tip_x = x + block.x2
        tip_y = y + block.y2
        scope.writer.polygon(
            ((tip_x, tip_y), (tip_x - 12, tip_y - 8), (tip_x - 12, tip_y + 8)),
            fill=_solid(block.stroke, block.default_stroke),
        )
        return max(abs(block.y2), 16.0)

    def _render_qr(self, block: QrBlock, x: float, y: float, scope: _BlockScope) -> float:
        pixel_width = max(1, round(self.mapper.scale_x(block.width)))
        pixel_height = max(1, round(self.mapper.scale_y(block.height)))
        image = self.image_loader.qr_code(block.url, width=pixel_width, height=pixel_height)
        if image is None:
            return 0.0
        scope.writer.image(x, y, block.width, block.height, image)
        return block.height

    # Tables and language icons

    def _draw_language_icon(
        self,
        writer: PageWriter,
        x: float,
        y: float,
        size: float,
        item: LanguageItem,
        *,
        image: LoadedImage | None,
        active_ring: bool,
    ) -> None:
        radius = size / 2
        cx = x + radius
        cy = y + radius
        if image is not None:
            writer.image(x, y, size, size, image, clip_circle=True)
        else:
            writer.circle(cx, cy, radius, fill=_solid(None, ICON_FALLBACK_FILL))
            code = (item.code or "?").upper()
            font_size = max(6.0, size * 0.4)
            writer.text(
                x,
                cy - font_size / 2,
                code,
                size=font_size,
                color=_solid(None, "#374151"),
                width=size,
                align="center",
                bold=True,
            )
        if item.active:
            if active_ring:
                writer.circle(cx, cy, radius + 1, stroke=_solid(None, ACTIVE_RING), stroke_width=1)
        elif active_ring:
            writer.circle(cx, cy, radius, fill=Color(255, 255, 255, 0.4))
        else:
            writer.circle(cx, cy, radius, fill=Color(0, 0, 0, 0.4))

    def _table_icon(self, block: TableBlock, item: LanguageItem) -> LoadedImage | None:
        if block.toggle_style == "v1":
            return self.image_loader.flag_icon(item.code)
        return self.image_loader.emoji_icon(item.code, item.emoji)

    def _render_table(self, block: TableBlock, x: float, y: float, scope: _BlockScope) -> float:
        writer = scope.writer
        cursor_y = y
        total_width = 0.0
        for row_index, row in enumerate(block.cells):
            row_height = block.row_height(row_index)
            cursor_x = x
            for column_index, cell in enumerate(row):
                column_width = block.column_width(column_index)
                writer.rect(cursor_x, cursor_y, column_width, row_height, fill=parse_color(cell.fill))
                edges = {
                    "t": (cursor_x, cursor_y, cursor_x + column_width, cursor_y),
                    "b": (cursor_x, cursor_y + row_height, cursor_x + column_width, cursor_y + row_height),
                    "l": (cursor_x, cursor_y, cursor_x, cursor_y + row_height),
                    "r": (cursor_x + column_width, cursor_y, cursor_x + column_width, cursor_y + row_height),
                }
                for side, border in cell.borders.items():
                    x1, y1, x2, y2 = edges[side]
                    writer.line(x1, y1, x2, y2, color=_solid(border.color, "#000"), width=border.width)
                if cell.text:
                    writer.text(
                        cursor_x + 4,
                        cursor_y + 4,
                        cell.text,
                        size=cell.font_size,
                        color=_solid(cell.color, "#333"),
                        width=max(1.0, column_width - 8),
                    )
                cursor_x += column_width
            total_width = max(total_width, cursor_x - x)
            cursor_y += row_height

            if not block.expanded_rows:
                continue
            expanded_height = block.expanded_row_height
            background = row[0].fill if row else ""
            writer.rect(
                x,
                cursor_y,
                total_width,
                expanded_height,
                fill=_solid(background or block.background_color, "#f8f9fa"),
            )
            divider = parse_color(block.expanded_divider_color)
            if divider is not None and total_width > 30:
                writer.line(
                    x + 15,
                    cursor_y,
                    x + total_width - 15,
                    cursor_y,
                    color=divider,
                    width=block.expanded_divider_width,
                )
            icon_size = min(expanded_height - 10, 24)
            if icon_size > 0:
                icon_x = x + 15
                icon_y = cursor_y + (expanded_height - icon_size) / 2
                languages = resolve_table_languages(scope.context.data, block, row_index=row_index)
                for item in languages:
                    if not level_allowed(item.levels, scope.context.student.level):
                        continue
                    self._draw_language_icon(
                        writer,
                        icon_x,
                        icon_y,
                        icon_size,
                        item,
                        image=self._table_icon(block, item),
                        active_ring=True,
                    )
                    icon_x += icon_size + 15
            cursor_y += expanded_height + block.row_gap
        return cursor_y - y

    # Student data

    def _render_student_info(self, block: StudentInfoBlock, x: float, y: float, scope: _BlockScope) -> float:
        student = scope.context.student
        lines = []
        for field_name in block.fields:
            if field_name == "name":
                lines.append(student.full_name)
            elif field_name == "class":
                lines.append(f"Classe: {student.class_name}")
            elif field_name == "dob":
                lines.append(f"Naissance: {format_date_colon(student.date_of_birth)}")
        color = _solid(block.color, "#2d3436")
        step = block.font_size * LINE_HEIGHT
        for line_index, line in enumerate(lines):
            scope.writer.text(x, y + line_index * step, line, size=block.font_size, color=color)
        return len(lines) * step

    def _render_category_title(self, block: CategoryTitleBlock, x: float, y: float, scope: _BlockScope) -> float:
        category = scope.context.category(block.category_id)
        if category is None:
            return 0.0
        scope.writer.text(x, y, category.name, size=block.font_size, color=_solid(block.color, "#6c5ce7"), bold=True)
        return block.font_size * LINE_HEIGHT

    def _render_competency_list(
        self, block: CompetencyListBlock, x: float, y: float, scope: _BlockScope
    ) -> float:
        if block.category_id:
            category = scope.context.category(block.category_id)
            categories = [category] if category is not None else []
        else:
            categories = list(scope.context.categories)
        color = _solid(block.color, "#2d3436")
        step = block.font_size * LINE_HEIGHT + 2
        cursor_y = y
        for category in categories:
            for competency in category.competencies:
                scope.writer.text(
                    x,
                    cursor_y,
                    competency_line(competency.label, competency.en, competency.fr, competency.ar),
                    size=block.font_size,
                    color=color,
                    width=block.width,
                )
                cursor_y += step
        return cursor_y - y

    # Signatures

    def _render_signature_pad(self, block: SignatureBlock, x: float, y: float, scope: _BlockScope) -> float:
        color = _solid(block.color, "#2d3436")
        items_by_label = {
            str(item.get("label") or ""): item
            for item in scope.context.legacy_signatures
            if isinstance(item, dict)
        }
        cursor_y = y
        for label in block.labels:
            scope.writer.text(x, cursor_y, f"{label}:", size=block.font_size, color=color)
            cursor_y += block.font_size * LINE_HEIGHT + 4
            image = None
            item = items_by_label.get(label)
            if item is not None and not scope.context.hide_signatures:
                image = self.image_loader.load(str(item.get("dataUrl") or item.get("url") or ""))
            if image is not None:
                scope.writer.image(x, cursor_y, 160, 60, image, fit="contain")
                cursor_y += 60 + FLOW_SPACING
            else:
                scope.writer.text(x, cursor_y, PLACEHOLDER_LINE, size=block.font_size, color=color)
                cursor_y += block.font_size * LINE_HEIGHT + FLOW_SPACING
        return cursor_y - y

    def _render_signature_box(self, block: SignatureBoxBlock, x: float, y: float, scope: _BlockScope) -> float:
        writer = scope.writer
        width = block.width
        height = block.height
        writer.rect(x, y, width, height, fill=_solid(None, "#fff"), stroke=_solid(None, "#000"), stroke_width=1)
        if scope.context.hide_signatures:
            return height

        record = latest_signature(scope.context, block.signature_type)
        if record is None:
            label = block.label or "Signature"
            writer.text(
                x,
                y + (height - 10) / 2,
                label,
                size=10,
                color=_solid(None, "#999"),
                width=width,
                align="center",
            )
            return height

        # Stored snapshot first; the signer's live profile image is never consulted.
        image = decode_data_uri(record.signature_data) if record.signature_data else None
        if image is None and record.signature_url:
            image = self.image_loader.load(record.signature_url)
        if image is not None:
            writer.image(x + 4, y + 4, max(1.0, width - 8), max(1.0, height - 8), image, fit="contain")
            return height

        fallback = f"✓ {record.signer_name} {format_date_slash(record.signed_at)}".replace("  ", " ").strip()
        writer.text(
            x,
            y + (height - 12) / 2,
            fallback,
            size=12,
            color=_solid(None, "#2d3436"),
            width=width,
            align="center",
        )
        return height

    def _render_signature_date(self, block: SignatureDateBlock, x: float, y: float, scope: _BlockScope) -> float:
        resolved = resolve_signature_date(scope.context, block)
        if resolved is None:
            return 0.0
        color = _solid(block.color, "#000")
        label = "Signé le:"
        if block.show_meta:
            label = f"{label} {resolved.meta}"
        label_size = block.font_size * 0.9
        content_height = label_size * LINE_HEIGHT + 4 + block.font_size * LINE_HEIGHT
        top = y + max(6.0, (block.height - content_height) / 2)
        inner_width = max(1.0, block.width - 12)
        scope.writer.text(x + 6, top, label, size=label_size, color=color, width=inner_width, align=block.align)
        scope.writer.text(
            x + 6,
            top + label_size * LINE_HEIGHT + 4,
            resolved.label,
            size=block.font_size,
            color=color,
            width=inner_width,
            align=block.align,
            bold=True,
        )
        return block.height

    # Dropdowns

    def _render_dropdown(self, block: DropdownBlock, x: float, y: float, scope: _BlockScope) -> float:
        value = resolve_dropdown_value(scope.context.data, block)
        width = block.width
        inner_width = max(1.0, width - 16)
        caption_height = 0.0
        if block.dropdown_number:
            caption_height += 10 * LINE_HEIGHT
        if block.label:
            caption_height += 10 * LINE_HEIGHT
        text = value if value is not None else "Sélectionner..."
        content_height = 16 + caption_height + estimate_text_height(text, block.font_size, inner_width)
        height = max(block.height, content_height)

        writer = scope.writer
        writer.rect(
            x,
            y,
            width,
            height,
            fill=_solid(None, "#fff"),
            stroke=_solid(None, "#ccc"),
            stroke_width=1,
            radius=4,
        )
        cursor_y = y + 8
        caption_color = _solid(None, "#666")
        if block.dropdown_number:
            writer.text(x + 8, cursor_y, f"Dropdown #{block.dropdown_number}", size=10, color=caption_color)
            cursor_y += 10 * LINE_HEIGHT
        if block.label:
            writer.text(x + 8, cursor_y, block.label, size=10, color=caption_color)
            cursor_y += 10 * LINE_HEIGHT
        writer.text(
            x + 8,
            cursor_y,
            text,
            size=block.font_size,
            color=_solid(block.color, "#333") if value is not None else _solid(None, "#999"),
            width=inner_width,
        )
        return height

    def _render_dropdown_reference(
        self, block: DropdownReferenceBlock, x: float, y: float, scope: _BlockScope
    ) -> float:
        value = resolve_dropdown_value(scope.context.data, block)
        if value is None:
            return 0.0
        scope.writer.text(x, y, value, size=block.font_size, color=_solid(block.color, "#333"), width=block.width)
        return estimate_text_height(value, block.font_size, block.width)

    # Language toggles

    def _toggle_items(self, block: LanguageToggleBlock, scope: _BlockScope) -> list[LanguageItem]:
        items = resolve_toggle_items(
            scope.context.data,
            block,
            original_page_index=scope.original_page_index,
            page_index=scope.page_index,
        )
        return [item for item in items if level_allowed(item.levels, scope.context.student.level)]

    def _layout_toggle(
        self, block: LanguageToggleBlock, x: float, y: float, count: int, diameter: float
    ) -> tuple[list[tuple[float, float]], float]:
        positions = []
        for item_index in range(count):
            offset = item_index * (diameter + block.spacing)
            if block.direction == "column":
                positions.append((x, y + offset))
            else:
                positions.append((x + offset, y))
        if block.direction == "column":
            extent = count * diameter + max(0, count - 1) * block.spacing
        else:
            extent = diameter
        return positions, extent

    def _render_language_toggle(
        self, block: LanguageToggleBlock, x: float, y: float, scope: _BlockScope
    ) -> float:
        items = self._toggle_items(block, scope)
        diameter = block.radius * 2
        positions, extent = self._layout_toggle(block, x, y, len(items), diameter)
        grey = _solid(None, "#ddd")
        for item, (item_x, item_y) in zip(items, positions):
            scope.writer.circle(item_x + block.radius, item_y + block.radius, block.radius, fill=grey)
            image = self.image_loader.load(item.logo) if item.logo else None
            if image is not None:
                scope.writer.image(item_x, item_y, diameter, diameter, image, clip_circle=True)
            if not item.active:
                scope.writer.circle(
                    item_x + block.radius,
                    item_y + block.radius,
                    block.radius,
                    fill=Color(0, 0, 0, 0.4),
                )
        return extent if items else 0.0

    def _render_language_toggle_v2(
        self, block: LanguageToggleV2Block, x: float, y: float, scope: _BlockScope
    ) -> float:
        items = self._toggle_items(block, scope)
        if not items:
            return 0.0
        diameter = block.radius * 2
        padding = block.padding
        positions, extent = self._layout_toggle(block, x + padding, y + padding, len(items), diameter)
        background = parse_color(block.background_color)
        if background is not None:
            if block.direction == "column":
                box_width, box_height = diameter, extent
            else:
                box_width = len(items) * diameter + (len(items) - 1) * block.spacing
                box_height = diameter
            scope.writer.rect(
                x,
                y,
                box_width + padding * 2,
                box_height + padding * 2,
                fill=background,
                radius=12,
            )
        for item, (item_x, item_y) in zip(items, positions):
            self._draw_language_icon(
                scope.writer,
                item_x,
                item_y,
                diameter,
                item,
                image=self.image_loader.emoji_icon(item.code, item.emoji),
                active_ring=False,
            )
        return extent + padding * 2

    # Promotion

    def _render_promotion_info(self, block: PromotionInfoBlock, x: float, y: float, scope: _BlockScope) -> float:
        resolved = resolve_promotion(scope.context, block)
        if resolved is None:
            return 0.0
        writer = scope.writer
        color = _solid(block.color, "#2d3436")
        if block.field_name:
            text = resolved.field_text(block.field_name)
            if not text:
                return 0.0
            writer.text(
                x,
                y + max(0.0, (block.height - block.font_size) / 2),
                text,
                size=block.font_size,
                color=color,
                width=block.width,
                align="center",
            )
            return block.height

        writer.rect(x, y, block.width, block.height, stroke=_solid(None, "#6c5ce7"), stroke_width=2, radius=8)
        cursor_y = y + 12
        writer.text(
            x,
            cursor_y,
            f"Passage en {resolved.promotion.to_level}",
            size=block.font_size,
            color=color,
            width=block.width,
            align="center",
            bold=True,
        )
        cursor_y += block.font_size * LINE_HEIGHT + 8
        writer.text(x, cursor_y, resolved.student_name, size=block.font_size, color=color, width=block.width, align="center")
        cursor_y += block.font_size * LINE_HEIGHT + 8
        if resolved.promotion.year:
            writer.text(
                x,
                cursor_y,
                f"Année {resolved.promotion.year}",
                size=block.font_size * 0.8,
                color=_solid(None, "#666"),
                width=block.width,
                align="center",
            )
        return block.height


def competency_line(label: str, en: bool, fr: bool, ar: bool) -> str:
    def mark(value: bool) -> str:
        return CHECK_MARK if value else CROSS_MARK

    return f"{label} — EN {mark(en)} | FR {mark(fr)} | AR {mark(ar)}"
