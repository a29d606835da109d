from __future__ import annotations

import math
from typing import Any

from django.core.exceptions import ValidationError


BLOCK_TYPE_REGISTRY = [
    {
        "key": "text",
        "label": "Text",
        "description": "Static text drawn at a position.",
    },
    {
        "key": "dynamic_text",
        "label": "Dynamic text",
        "description": "Text with {student.*} and {class.name} tokens resolved per student.",
    },
    {
        "key": "image",
        "label": "Image",
        "description": "Inline data URI, absolute URL or server-relative media path.",
    },
    {
        "key": "rect",
        "label": "Rectangle",
        "description": "Filled and/or stroked rectangle.",
    },
    {
        "key": "circle",
        "label": "Circle",
        "description": "Filled and/or stroked circle.",
    },
    {
        "key": "line",
        "label": "Line",
        "description": "Straight line from (x, y) by (x2, y2).",
    },
    {
        "key": "arrow",
        "label": "Arrow",
        "description": "Line with a filled arrow head.",
    },
    {
        "key": "qr",
        "label": "QR code",
        "description": "QR code encoding the block url.",
    },
    {
        "key": "table",
        "label": "Table",
        "description": "Grid of cells with optional per-row language toggles.",
    },
    {
        "key": "student_info",
        "label": "Student info",
        "description": "Student name, class and date of birth.",
    },
    {
        "key": "category_title",
        "label": "Category title",
        "description": "Name of a competency category.",
    },
    {
        "key": "competency_list",
        "label": "Competency list",
        "description": "Competencies with EN/FR/AR acquisition marks.",
    },
    {
        "key": "signature",
        "label": "Signature pad",
        "description": "Legacy per-student signature lines.",
    },
    {
        "key": "signature_box",
        "label": "Signature box",
        "description": "Signature captured when the carnet was signed.",
    },
    {
        "key": "signature_date",
        "label": "Signature date",
        "description": "Date of the matching signature for a level and semester.",
    },
    {
        "key": "dropdown",
        "label": "Dropdown",
        "description": "Value selected for a dropdown in the assignment.",
    },
    {
        "key": "dropdown_reference",
        "label": "Dropdown reference",
        "description": "Read-only mirror of a dropdown value.",
    },
    {
        "key": "language_toggle",
        "label": "Language toggle",
        "description": "Row of circular language logos.",
    },
    {
        "key": "language_toggle_v2",
        "label": "Language toggle (emoji)",
        "description": "Row of circular emoji flags.",
    },
    {
        "key": "promotion_info",
        "label": "Promotion info",
        "description": "Promotion target level, year or class.",
    },
]

ALLOWED_BLOCK_TYPES = {block_type["key"] for block_type in BLOCK_TYPE_REGISTRY}
NUMERIC_PROP_KEYS = {
    "x",
    "y",
    "width",
    "height",
    "z",
    "fontSize",
    "size",
    "radius",
    "strokeWidth",
    "x2",
    "y2",
    "expandedRowHeight",
    "rowGap",
    "dropdownNumber",
}
ALLOWED_PERIODS = {"mid-year", "end-year"}
ALLOWED_TOGGLE_STYLES = {"v1", "v2"}


def _validate_numeric_props(props: dict[str, Any], *, block_path: str) -> None:
    for key in NUMERIC_PROP_KEYS:
        if key not in props or props[key] is None or props[key] == "":
            continue
        value = props[key]
        if isinstance(value, bool):
            raise ValidationError({f"{block_path}.props.{key}": "Must be a number."})
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError({f"{block_path}.props.{key}": "Must be a number."}) from exc
        if not math.isfinite(number):
            raise ValidationError({f"{block_path}.props.{key}": "Must be a finite number."})


def _validate_string_list(value: Any, *, field_path: str) -> None:
    if value is None:
        return
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError({field_path: "Must be a list of strings."})


def _validate_table_props(props: dict[str, Any], *, block_path: str) -> None:
    cells = props.get("cells")
    if cells is not None:
        if not isinstance(cells, list) or not all(isinstance(row, list) for row in cells):
            raise ValidationError({f"{block_path}.props.cells": "Must be a list of rows."})
    for key in ("columnWidths", "rowHeights"):
        values = props.get(key)
        if values is None:
            continue
        if not isinstance(values, list):
            raise ValidationError({f"{block_path}.props.{key}": "Must be a list of numbers."})
    style = props.get("expandedToggleStyle")
    if style is not None and style not in ALLOWED_TOGGLE_STYLES:
        raise ValidationError(
            {f"{block_path}.props.expandedToggleStyle": f"Unsupported toggle style '{style}'."}
        )
    languages = props.get("expandedLanguages")
    if languages is not None and not isinstance(languages, list):
        raise ValidationError({f"{block_path}.props.expandedLanguages": "Must be a list."})


def validate_block(block: Any, *, block_path: str) -> None:
    if not isinstance(block, dict):
        raise ValidationError({block_path: "Each block must be an object."})

    block_type = str(block.get("type") or "").strip()
    if block_type not in ALLOWED_BLOCK_TYPES:
        raise ValidationError({f"{block_path}.type": f"Unsupported block type '{block_type}'."})

    props = block.get("props", {})
    if props is None:
        props = {}
    if not isinstance(props, dict):
        raise ValidationError({f"{block_path}.props": "Must be an object."})

    _validate_numeric_props(props, block_path=block_path)
    _validate_string_list(props.get("levels"), field_path=f"{block_path}.props.levels")

    period = props.get("period")
    if period not in (None, "") and period not in ALLOWED_PERIODS:
        raise ValidationError({f"{block_path}.props.period": f"Unsupported period '{period}'."})

    if block_type == "table":
        _validate_table_props(props, block_path=block_path)
    elif block_type in {"language_toggle", "language_toggle_v2"}:
        items = props.get("items")
        if items is not None and not isinstance(items, list):
            raise ValidationError({f"{block_path}.props.items": "Must be a list."})
    elif block_type == "signature":
        _validate_string_list(props.get("labels"), field_path=f"{block_path}.props.labels")


def validate_template_pages(pages: Any) -> None:
    if not isinstance(pages, list):
        raise ValidationError({"pages": "Must be a list."})
    for page_index, page in enumerate(pages):
        page_path = f"pages[{page_index}]"
        if not isinstance(page, dict):
            raise ValidationError({page_path: "Each page must be an object."})
        blocks = page.get("blocks", [])
        if not isinstance(blocks, list):
            raise ValidationError({f"{page_path}.blocks": "Must be a list."})
        for block_index, block in enumerate(blocks):
            validate_block(block, block_path=f"{page_path}.blocks[{block_index}]")
