"""Typed block variants decoded from template ``{type, props}`` JSON.

Decoding never raises: malformed numbers fall back to the per-type default so
that a template saved by an older editor still renders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import re
from typing import Any, ClassVar

LEVEL_PATTERN = re.compile(r"\b(TPS|PS|MS|GS|EB1|KG1|KG2|KG3)\b", re.IGNORECASE)


def _coerce_float(value: Any, default: float | None = None) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        coerced = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(coerced):
        return default
    return coerced


def _coerce_positive(value: Any, default: float) -> float:
    # Mirrors the editor's ``value || default``: zero means "use the default".
    coerced = _coerce_float(value, None)
    if not coerced:
        return default
    return coerced


def _coerce_int(value: Any, default: int | None = None) -> int | None:
    coerced = _coerce_float(value, None)
    if coerced is None:
        return default
    return int(coerced)


def _coerce_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _coerce_levels(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(level).strip() for level in value if str(level or "").strip())


def _coerce_number_list(value: Any) -> tuple[float | None, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(_coerce_float(item, None) for item in value)


@dataclass(frozen=True)
class LanguageItem:
    code: str = ""
    label: str = ""
    emoji: str = ""
    logo: str = ""
    active: bool = False
    levels: tuple[str, ...] = ()

    @classmethod
    def from_raw(cls, raw: Any) -> LanguageItem | None:
        if not isinstance(raw, dict):
            return None
        return cls(
            code=_coerce_str(raw.get("code")).strip(),
            label=_coerce_str(raw.get("label")),
            emoji=_coerce_str(raw.get("emoji")),
            logo=_coerce_str(raw.get("logo")),
            active=bool(raw.get("active")),
            levels=_coerce_levels(raw.get("levels")),
        )


def decode_language_items(raw: Any) -> tuple[LanguageItem, ...] | None:
    if not isinstance(raw, list):
        return None
    items = [LanguageItem.from_raw(item) for item in raw]
    return tuple(item for item in items if item is not None)


DEFAULT_LANGUAGES = (
    LanguageItem(code="lb", label="Lebanese", emoji="🇱🇧"),
    LanguageItem(code="fr", label="French", emoji="🇫🇷"),
    LanguageItem(code="en", label="English", emoji="🇬🇧"),
)


@dataclass(frozen=True)
class Block:
    block_type: ClassVar[str] = ""

    index: int = 0
    x: float | None = None
    y: float | None = None
    width: float | None = None
    height: float | None = None
    z: float = 0.0
    color: str = ""
    levels: tuple[str, ...] = ()
    block_id: str = ""

    @property
    def positioned(self) -> bool:
        return bool(self.x) or bool(self.y)

    @classmethod
    def _base_kwargs(cls, props: dict[str, Any], index: int) -> dict[str, Any]:
        block_id = props.get("blockId")
        return {
            "index": index,
            "x": _coerce_float(props.get("x")),
            "y": _coerce_float(props.get("y")),
            "width": _coerce_float(props.get("width")),
            "height": _coerce_float(props.get("height")),
            "z": _coerce_float(props.get("z"), 0.0) or 0.0,
            "color": _coerce_str(props.get("color")),
            "levels": _coerce_levels(props.get("levels")),
            "block_id": block_id.strip() if isinstance(block_id, str) else "",
        }

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> Block:
        return cls(**cls._base_kwargs(props, index))


@dataclass(frozen=True)
class TextBlock(Block):
    block_type: ClassVar[str] = "text"
    interpolate: ClassVar[bool] = False

    text: str = ""
    font_size: float = 12.0
    bold: bool = False
    align: str = "left"

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> TextBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#000"
        return cls(
            text=_coerce_str(props.get("text")),
            font_size=_coerce_positive(props.get("size") or props.get("fontSize"), 12.0),
            bold=str(props.get("fontWeight") or "").lower() in {"bold", "600", "700"},
            align=_coerce_str(props.get("align"), "left") or "left",
            **kwargs,
        )


@dataclass(frozen=True)
class DynamicTextBlock(TextBlock):
    block_type: ClassVar[str] = "dynamic_text"
    interpolate: ClassVar[bool] = True


@dataclass(frozen=True)
class ImageBlock(Block):
    block_type: ClassVar[str] = "image"

    url: str = ""

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> ImageBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["width"] = _coerce_positive(props.get("width"), 120.0)
        kwargs["height"] = _coerce_positive(props.get("height"), 120.0)
        return cls(url=_coerce_str(props.get("url")).strip(), **kwargs)


@dataclass(frozen=True)
class RectBlock(Block):
    block_type: ClassVar[str] = "rect"

    stroke: str = ""
    stroke_width: float = 1.0
    radius: float = 0.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> RectBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["x"] = _coerce_positive(props.get("x"), 50.0)
        kwargs["y"] = _coerce_positive(props.get("y"), 50.0)
        kwargs["width"] = _coerce_positive(props.get("width"), 100.0)
        kwargs["height"] = _coerce_positive(props.get("height"), 50.0)
        return cls(
            stroke=_coerce_str(props.get("stroke")),
            stroke_width=_coerce_positive(props.get("strokeWidth"), 1.0),
            radius=_coerce_float(props.get("radius"), 0.0) or 0.0,
            **kwargs,
        )


@dataclass(frozen=True)
class CircleBlock(Block):
    block_type: ClassVar[str] = "circle"

    radius: float = 40.0
    stroke: str = ""
    stroke_width: float = 1.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> CircleBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["x"] = _coerce_positive(props.get("x"), 50.0)
        kwargs["y"] = _coerce_positive(props.get("y"), 50.0)
        return cls(
            radius=_coerce_positive(props.get("radius"), 40.0),
            stroke=_coerce_str(props.get("stroke")),
            stroke_width=_coerce_positive(props.get("strokeWidth"), 1.0),
            **kwargs,
        )


@dataclass(frozen=True)
class LineBlock(Block):
    block_type: ClassVar[str] = "line"
    default_stroke: ClassVar[str] = "#b2bec3"
    default_stroke_width: ClassVar[float] = 1.0

    x2: float = 100.0
    y2: float = 0.0
    stroke: str = ""
    stroke_width: float = 1.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> LineBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["x"] = _coerce_positive(props.get("x"), 50.0)
        kwargs["y"] = _coerce_positive(props.get("y"), 50.0)
        return cls(
            x2=_coerce_positive(props.get("x2"), 100.0),
            y2=_coerce_float(props.get("y2"), 0.0) or 0.0,
            stroke=_coerce_str(props.get("stroke")) or cls.default_stroke,
            stroke_width=_coerce_positive(props.get("strokeWidth"), cls.default_stroke_width),
            **kwargs,
        )


@dataclass(frozen=True)
class ArrowBlock(LineBlock):
    block_type: ClassVar[str] = "arrow"
    default_stroke: ClassVar[str] = "#6c5ce7"
    default_stroke_width: ClassVar[float] = 2.0


@dataclass(frozen=True)
class QrBlock(Block):
    block_type: ClassVar[str] = "qr"

    url: str = ""

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> QrBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["width"] = _coerce_positive(props.get("width"), 120.0)
        kwargs["height"] = _coerce_positive(props.get("height"), 120.0)
        return cls(url=_coerce_str(props.get("url")), **kwargs)


@dataclass(frozen=True)
class CellBorder:
    width: float
    color: str


@dataclass(frozen=True)
class TableCell:
    text: str = ""
    fill: str = ""
    color: str = ""
    font_size: float = 12.0
    borders: dict[str, CellBorder] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> TableCell:
        if not isinstance(raw, dict):
            return cls(text=_coerce_str(raw))
        borders: dict[str, CellBorder] = {}
        raw_borders = raw.get("borders") if isinstance(raw.get("borders"), dict) else {}
        for side in ("t", "b", "l", "r"):
            border = raw_borders.get(side)
            if not isinstance(border, dict):
                continue
            width = _coerce_float(border.get("width"), 0.0) or 0.0
            if width <= 0:
                continue
            borders[side] = CellBorder(width=width, color=_coerce_str(border.get("color"), "#000") or "#000")
        return cls(
            text=_coerce_str(raw.get("text")),
            fill=_coerce_str(raw.get("fill")),
            color=_coerce_str(raw.get("color")),
            font_size=_coerce_positive(raw.get("fontSize"), 12.0),
            borders=borders,
        )


@dataclass(frozen=True)
class TableBlock(Block):
    block_type: ClassVar[str] = "table"

    column_widths: tuple[float | None, ...] = ()
    row_heights: tuple[float | None, ...] = ()
    cells: tuple[tuple[TableCell, ...], ...] = ()
    row_ids: tuple[str, ...] = ()
    background_color: str = ""
    expanded_rows: bool = False
    expanded_row_height: float = 34.0
    expanded_divider_width: float = 0.5
    expanded_divider_color: str = "rgba(255, 255, 255, 0.5)"
    row_gap: float = 0.0
    expanded_languages: tuple[LanguageItem, ...] | None = None
    toggle_style: str = "v2"

    def column_width(self, column_index: int) -> float:
        if column_index < len(self.column_widths) and self.column_widths[column_index]:
            return float(self.column_widths[column_index])
        return 100.0

    def row_height(self, row_index: int) -> float:
        if row_index < len(self.row_heights) and self.row_heights[row_index]:
            return float(self.row_heights[row_index])
        return 40.0

    def row_id(self, row_index: int) -> str:
        if row_index < len(self.row_ids):
            return self.row_ids[row_index]
        return ""

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> TableBlock:
        kwargs = cls._base_kwargs(props, index)
        raw_cells = props.get("cells") if isinstance(props.get("cells"), list) else []
        cells = tuple(
            tuple(TableCell.from_raw(cell) for cell in row)
            for row in raw_cells
            if isinstance(row, list)
        )
        raw_row_ids = props.get("rowIds") if isinstance(props.get("rowIds"), list) else []
        toggle_style = _coerce_str(props.get("expandedToggleStyle"), "v2") or "v2"
        return cls(
            column_widths=_coerce_number_list(props.get("columnWidths")),
            row_heights=_coerce_number_list(props.get("rowHeights")),
            cells=cells,
            row_ids=tuple(_coerce_str(row_id).strip() for row_id in raw_row_ids),
            background_color=_coerce_str(props.get("backgroundColor")),
            expanded_rows=bool(props.get("expandedRows")),
            expanded_row_height=_coerce_positive(props.get("expandedRowHeight"), 34.0),
            expanded_divider_width=_coerce_positive(props.get("expandedDividerWidth"), 0.5),
            expanded_divider_color=(
                _coerce_str(props.get("expandedDividerColor")) or "rgba(255, 255, 255, 0.5)"
            ),
            row_gap=_coerce_float(props.get("rowGap"), 0.0) or 0.0,
            expanded_languages=decode_language_items(props.get("expandedLanguages")),
            toggle_style=toggle_style if toggle_style in {"v1", "v2"} else "v2",
            **kwargs,
        )


@dataclass(frozen=True)
class StudentInfoBlock(Block):
    block_type: ClassVar[str] = "student_info"

    fields: tuple[str, ...] = ("name", "class")
    font_size: float = 12.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> StudentInfoBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#2d3436"
        raw_fields = props.get("fields")
        fields = tuple(str(item) for item in raw_fields) if isinstance(raw_fields, list) else ("name", "class")
        return cls(
            fields=fields,
            font_size=_coerce_positive(props.get("fontSize"), 12.0),
            **kwargs,
        )


@dataclass(frozen=True)
class CategoryTitleBlock(Block):
    block_type: ClassVar[str] = "category_title"

    category_id: str = ""
    font_size: float = 16.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> CategoryTitleBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#6c5ce7"
        return cls(
            category_id=_coerce_str(props.get("categoryId")).strip(),
            font_size=_coerce_positive(props.get("fontSize"), 16.0),
            **kwargs,
        )


@dataclass(frozen=True)
class CompetencyListBlock(Block):
    block_type: ClassVar[str] = "competency_list"

    category_id: str = ""
    font_size: float = 12.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> CompetencyListBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#2d3436"
        return cls(
            category_id=_coerce_str(props.get("categoryId")).strip(),
            font_size=_coerce_positive(props.get("fontSize"), 12.0),
            **kwargs,
        )


@dataclass(frozen=True)
class SignatureBlock(Block):
    block_type: ClassVar[str] = "signature"

    labels: tuple[str, ...] = ("Directeur", "Enseignant", "Parent")
    font_size: float = 12.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> SignatureBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#2d3436"
        raw_labels = props.get("labels")
        labels = (
            tuple(str(label) for label in raw_labels)
            if isinstance(raw_labels, list) and raw_labels
            else ("Directeur", "Enseignant", "Parent")
        )
        return cls(
            labels=labels,
            font_size=_coerce_positive(props.get("fontSize"), 12.0),
            **kwargs,
        )


@dataclass(frozen=True)
class SignatureBoxBlock(Block):
    block_type: ClassVar[str] = "signature_box"

    label: str = ""
    period: str = ""
    level: str = ""

    @property
    def signature_type(self) -> str:
        return "end_of_year" if self.period == "end-year" else "standard"

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> SignatureBoxBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["width"] = _coerce_positive(props.get("width"), 200.0)
        kwargs["height"] = _coerce_positive(props.get("height"), 80.0)
        label = _coerce_str(props.get("label"))
        level = _coerce_str(props.get("level")).strip()
        if not level:
            match = LEVEL_PATTERN.search(label)
            if match:
                level = match.group(1).upper()
        return cls(
            label=label,
            period=_coerce_str(props.get("period")),
            level=level,
            **kwargs,
        )


@dataclass(frozen=True)
class SignatureDateBlock(Block):
    block_type: ClassVar[str] = "signature_date"

    semester: int | None = None
    level: str = ""
    show_meta: bool = False
    font_size: float = 12.0
    align: str = "center"

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> SignatureDateBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#000"
        kwargs["width"] = _coerce_positive(props.get("width"), 200.0)
        kwargs["height"] = _coerce_positive(props.get("height"), 80.0)
        raw_semester = props.get("semester", props.get("semestre"))
        semester = None
        if str(raw_semester) in {"1", "2"}:
            semester = int(str(raw_semester))
        elif props.get("period") == "mid-year":
            semester = 1
        elif props.get("period") == "end-year":
            semester = 2
        return cls(
            semester=semester,
            level=_coerce_str(props.get("level")).strip(),
            show_meta=bool(props.get("showMeta")),
            font_size=_coerce_positive(props.get("fontSize"), 12.0),
            align=_coerce_str(props.get("align"), "center") or "center",
            **kwargs,
        )


@dataclass(frozen=True)
class DropdownBlock(Block):
    block_type: ClassVar[str] = "dropdown"

    dropdown_number: int | None = None
    variable_name: str = ""
    label: str = ""
    font_size: float = 12.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> DropdownBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#333"
        kwargs["width"] = _coerce_positive(props.get("width"), 200.0)
        kwargs["height"] = _coerce_positive(props.get("height"), 32.0)
        return cls(
            dropdown_number=_coerce_int(props.get("dropdownNumber")) or None,
            variable_name=_coerce_str(props.get("variableName")).strip(),
            label=_coerce_str(props.get("label")),
            font_size=_coerce_positive(props.get("fontSize"), 12.0),
            **kwargs,
        )


@dataclass(frozen=True)
class DropdownReferenceBlock(Block):
    block_type: ClassVar[str] = "dropdown_reference"

    dropdown_number: int = 1
    font_size: float = 12.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> DropdownReferenceBlock:
        kwargs = cls._base_kwargs(props, index)
        kwargs["color"] = kwargs["color"] or "#333"
        kwargs["width"] = _coerce_positive(props.get("width"), 200.0)
        return cls(
            dropdown_number=_coerce_int(props.get("dropdownNumber")) or 1,
            font_size=_coerce_positive(props.get("fontSize"), 12.0),
            **kwargs,
        )


@dataclass(frozen=True)
class LanguageToggleBlock(Block):
    block_type: ClassVar[str] = "language_toggle"

    items: tuple[LanguageItem, ...] = ()
    radius: float = 40.0
    spacing: float = 12.0
    direction: str = "row"

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> LanguageToggleBlock:
        kwargs = cls._base_kwargs(props, index)
        return cls(
            items=decode_language_items(props.get("items")) or (),
            radius=_coerce_positive(props.get("radius"), 40.0),
            spacing=_coerce_positive(props.get("spacing"), 12.0),
            direction="column" if props.get("direction") == "column" else "row",
            **kwargs,
        )


@dataclass(frozen=True)
class LanguageToggleV2Block(LanguageToggleBlock):
    block_type: ClassVar[str] = "language_toggle_v2"

    background_color: str = ""
    padding: float = 8.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> LanguageToggleV2Block:
        kwargs = cls._base_kwargs(props, index)
        return cls(
            items=decode_language_items(props.get("items")) or (),
            radius=20.0,
            spacing=_coerce_positive(props.get("spacing"), 12.0),
            direction="column" if props.get("direction") == "column" else "row",
            background_color=_coerce_str(props.get("backgroundColor")),
            padding=_coerce_float(props.get("padding"), 8.0) or 0.0,
            **kwargs,
        )


@dataclass(frozen=True)
class PromotionInfoBlock(Block):
    block_type: ClassVar[str] = "promotion_info"

    field_name: str = ""
    target_level: str = ""
    level: str = ""
    period: str = ""
    font_size: float = 12.0

    @classmethod
    def decode(cls, props: dict[str, Any], *, index: int) -> PromotionInfoBlock:
        kwargs = cls._base_kwargs(props, index)
        field_name = _coerce_str(props.get("field")).strip()
        kwargs["color"] = kwargs["color"] or "#2d3436"
        kwargs["width"] = _coerce_positive(props.get("width"), 150.0 if field_name else 300.0)
        kwargs["height"] = _coerce_positive(props.get("height"), 30.0 if field_name else 100.0)
        return cls(
            field_name=field_name,
            target_level=_coerce_str(props.get("targetLevel")).strip(),
            level=_coerce_str(props.get("level")).strip(),
            period=_coerce_str(props.get("period")).strip(),
            font_size=_coerce_positive(props.get("fontSize"), 12.0),
            **kwargs,
        )


BLOCK_CLASSES: dict[str, type[Block]] = {
    block_class.block_type: block_class
    for block_class in (
        TextBlock,
        DynamicTextBlock,
        ImageBlock,
        RectBlock,
        CircleBlock,
        LineBlock,
        ArrowBlock,
        QrBlock,
        TableBlock,
        StudentInfoBlock,
        CategoryTitleBlock,
        CompetencyListBlock,
        SignatureBlock,
        SignatureBoxBlock,
        SignatureDateBlock,
        DropdownBlock,
        DropdownReferenceBlock,
        LanguageToggleBlock,
        LanguageToggleV2Block,
        PromotionInfoBlock,
    )
}


def decode_block(raw: Any, *, index: int) -> Block | None:
    """Return the typed variant for ``raw`` or None for unknown/malformed blocks."""
    if not isinstance(raw, dict):
        return None
    block_class = BLOCK_CLASSES.get(str(raw.get("type") or "").strip())
    if block_class is None:
        return None
    props = raw.get("props")
    if not isinstance(props, dict):
        props = {}
    return block_class.decode(props, index=index)
