"""Resolution of per-student values used by the block interpreter.

Everything here is a pure function of a ``RenderContext``; missing data yields
None or an empty value and is never an error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import re
from typing import Any, Iterable

from django.utils.dateparse import parse_date, parse_datetime

from .blocks import (
    DEFAULT_LANGUAGES,
    DropdownBlock,
    DropdownReferenceBlock,
    LanguageItem,
    LanguageToggleBlock,
    PromotionInfoBlock,
    SignatureDateBlock,
    TableBlock,
    decode_language_items,
)

NEXT_LEVEL = {
    "TPS": "PS",
    "PS": "MS",
    "MS": "GS",
    "GS": "EB1",
    "KG1": "KG2",
    "KG2": "KG3",
    "KG3": "EB1",
}

STANDARD = "standard"
END_OF_YEAR = "end_of_year"

_TOKEN_PATTERN = re.compile(r"\{(student\.firstName|student\.lastName|student\.dob|class\.name)\}")
_CLASS_SEPARATOR = re.compile(r"\s*[-\s]\s*")


def format_date_colon(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return f"{value.day:02d}:{value.month:02d}:{value.year:04d}"


def format_date_slash(value: date | datetime | None) -> str:
    if value is None:
        return ""
    return value.strftime("%d/%m/%Y")


def _parse_when(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not value:
        return None
    raw = str(value).strip()
    try:
        parsed = parse_datetime(raw)
    except ValueError:
        parsed = None
    if parsed is not None:
        return parsed
    try:
        parsed_date = parse_date(raw[:10])
    except ValueError:
        return None
    if parsed_date is None:
        return None
    return datetime(parsed_date.year, parsed_date.month, parsed_date.day)


def _sort_key(record: SignatureRecord) -> float:
    if record.signed_at is None:
        return 0.0
    try:
        return record.signed_at.timestamp()
    except (OverflowError, OSError, ValueError):
        return 0.0


def normalize_level(value: Any) -> str:
    return str(value or "").strip().lower()


def next_level(level: str | None) -> str | None:
    return NEXT_LEVEL.get(str(level or "").strip().upper())


def academic_year_label(moment: datetime | date) -> str:
    # September or later starts a new academic year.
    start_year = moment.year if moment.month >= 9 else moment.year - 1
    return f"{start_year}/{start_year + 1}"


@dataclass(frozen=True)
class StudentInfo:
    first_name: str = ""
    last_name: str = ""
    date_of_birth: date | None = None
    level: str = ""
    class_name: str = ""
    student_id: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class SignatureRecord:
    type: str = STANDARD
    signed_at: datetime | None = None
    signer_name: str = ""
    signature_url: str = ""
    signature_data: str = ""
    level: str = ""
    school_year_name: str = ""
    school_year_id: str = ""
    signature_period_id: str = ""

    @classmethod
    def from_history_entry(cls, entry: Any) -> SignatureRecord | None:
        """Build a record from an ``assignment.data['signatures']`` entry."""
        if not isinstance(entry, dict):
            return None
        return cls(
            type=str(entry.get("type") or STANDARD),
            signed_at=_parse_when(entry.get("signedAt")),
            signer_name=str(entry.get("signerName") or ""),
            signature_url=str(entry.get("signatureUrl") or ""),
            signature_data=str(entry.get("signatureData") or ""),
            level=str(entry.get("level") or ""),
            school_year_name=str(entry.get("schoolYearName") or ""),
            school_year_id=str(entry.get("schoolYearId") or ""),
            signature_period_id=str(entry.get("signaturePeriodId") or ""),
        )

    def matches_semester(self, semester: int) -> bool:
        period_id = self.signature_period_id
        if period_id.endswith("_sem1"):
            return semester == 1
        if period_id.endswith("_sem2") or period_id.endswith("_end_of_year"):
            return semester == 2
        if semester == 1:
            return self.type == STANDARD
        return self.type == END_OF_YEAR


@dataclass(frozen=True)
class CompetencyLine:
    label: str
    en: bool = False
    fr: bool = False
    ar: bool = False


@dataclass(frozen=True)
class CategoryInfo:
    category_id: str
    name: str
    competencies: tuple[CompetencyLine, ...] = ()


@dataclass(frozen=True)
class PromotionRecord:
    from_level: str = ""
    to_level: str = ""
    year: str = ""
    class_name: str = ""
    school_year_id: str = ""

    @classmethod
    def from_entry(cls, entry: Any) -> PromotionRecord | None:
        if not isinstance(entry, dict):
            return None
        return cls(
            from_level=str(entry.get("from") or entry.get("fromLevel") or ""),
            to_level=str(entry.get("to") or entry.get("toLevel") or ""),
            year=str(entry.get("year") or ""),
            class_name=str(entry.get("class") or entry.get("className") or ""),
            school_year_id=str(entry.get("schoolYearId") or ""),
        )


@dataclass
class RenderContext:
    """Everything a template needs to render one student."""

    student: StudentInfo
    data: dict[str, Any] = field(default_factory=dict)
    signatures: tuple[SignatureRecord, ...] = ()
    categories: tuple[CategoryInfo, ...] = ()
    legacy_signatures: tuple[dict[str, Any], ...] = ()
    hide_signatures: bool = False
    printed_on: date | None = None

    @property
    def history(self) -> tuple[SignatureRecord, ...]:
        """Signature history stored on the assignment, else the signature rows."""
        raw_entries = self.data.get("signatures") if isinstance(self.data, dict) else None
        if isinstance(raw_entries, list) and raw_entries:
            records = (SignatureRecord.from_history_entry(entry) for entry in raw_entries)
            return tuple(record for record in records if record is not None)
        return tuple(self.signatures)

    @property
    def promotions(self) -> tuple[PromotionRecord, ...]:
        raw_entries = self.data.get("promotions") if isinstance(self.data, dict) else None
        if not isinstance(raw_entries, list):
            return ()
        records = (PromotionRecord.from_entry(entry) for entry in raw_entries)
        return tuple(record for record in records if record is not None)

    def category(self, category_id: str) -> CategoryInfo | None:
        for category in self.categories:
            if category.category_id == str(category_id):
                return category
        return None


def level_allowed(levels: Iterable[str], student_level: str) -> bool:
    allowed = [normalize_level(level) for level in levels if normalize_level(level)]
    if not allowed:
        return True
    return normalize_level(student_level) in allowed


def interpolate_text(text: str, student: StudentInfo) -> str:
    values = {
        "student.firstName": student.first_name,
        "student.lastName": student.last_name,
        "student.dob": format_date_colon(student.date_of_birth),
        "class.name": student.class_name,
    }
    return _TOKEN_PATTERN.sub(lambda match: values.get(match.group(1), match.group(0)), text or "")


def _non_empty(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    if text == "":
        return None
    return text


def resolve_dropdown_value(
    data: dict[str, Any],
    block: DropdownBlock | DropdownReferenceBlock,
) -> str | None:
    if block.block_id:
        value = _non_empty(data.get(f"dropdown_{block.block_id}"))
        if value is not None:
            return value
    if block.dropdown_number:
        return _non_empty(data.get(f"dropdown_{block.dropdown_number}"))
    variable_name = getattr(block, "variable_name", "")
    if variable_name:
        return _non_empty(data.get(variable_name))
    return None


def resolve_table_languages(
    data: dict[str, Any],
    block: TableBlock,
    *,
    row_index: int,
) -> tuple[LanguageItem, ...]:
    row_id = block.row_id(row_index)
    keys = []
    if block.block_id and row_id:
        keys.append(f"table_{block.block_id}_row_{row_id}")
    keys.append(f"table_{block.index}_row_{row_index}")
    for key in keys:
        items = decode_language_items(data.get(key))
        if items is not None:
            return items
    if block.expanded_languages:
        return block.expanded_languages
    return DEFAULT_LANGUAGES


def resolve_toggle_items(
    data: dict[str, Any],
    block: LanguageToggleBlock,
    *,
    original_page_index: int,
    page_index: int,
) -> tuple[LanguageItem, ...]:
    for index in (original_page_index, page_index):
        items = decode_language_items(data.get(f"language_toggle_{index}_{block.index}"))
        if items is not None:
            return items
    return block.items


def latest_signature(context: RenderContext, signature_type: str) -> SignatureRecord | None:
    candidates = [record for record in context.signatures if record.type == signature_type]
    if not candidates:
        candidates = [record for record in context.history if record.type == signature_type]
    if not candidates:
        return None
    return max(candidates, key=_sort_key)


@dataclass(frozen=True)
class ResolvedSignatureDate:
    signed_at: datetime
    level: str
    semester: int

    @property
    def label(self) -> str:
        return format_date_colon(self.signed_at)

    @property
    def meta(self) -> str:
        level = f"{self.level} " if self.level else ""
        return f"({level}S{self.semester})"


def resolve_signature_date(context: RenderContext, block: SignatureDateBlock) -> ResolvedSignatureDate | None:
    if block.semester is None:
        return None
    level = block.level or context.student.level
    wanted = normalize_level(level)
    promotions = context.promotions
    student_level = normalize_level(context.student.level)

    def matches_level(record: SignatureRecord) -> bool:
        if not wanted:
            return True
        if record.level:
            return normalize_level(record.level) == wanted
        for promotion in promotions:
            same_year = bool(record.school_year_name) and promotion.year == record.school_year_name
            same_year_id = bool(record.school_year_id) and promotion.school_year_id == record.school_year_id
            if (same_year or same_year_id) and normalize_level(promotion.from_level) == wanted:
                return True
        return bool(student_level) and student_level == wanted

    candidates = [
        record
        for record in context.history
        if record.signed_at is not None and record.matches_semester(block.semester) and matches_level(record)
    ]
    if not candidates:
        return None
    chosen = max(candidates, key=_sort_key)
    return ResolvedSignatureDate(signed_at=chosen.signed_at, level=level.upper(), semester=block.semester)


def _period_signature_type(period: str) -> str:
    return END_OF_YEAR if period == "end-year" else STANDARD


def _current_year_label(context: RenderContext, promotion: PromotionRecord, period: str) -> str:
    student_level = normalize_level(context.student.level)
    candidates = []
    for record in context.history:
        if period == "end-year" and record.type != END_OF_YEAR:
            continue
        if period == "mid-year" and record.type not in ("", STANDARD):
            continue
        if record.level and student_level and normalize_level(record.level) != student_level:
            continue
        candidates.append(record)
    if candidates:
        chosen = max(candidates, key=_sort_key)
        label = chosen.school_year_name.strip()
        if not label and chosen.signed_at is not None:
            label = academic_year_label(chosen.signed_at)
        if label:
            return label
    return promotion.year


@dataclass(frozen=True)
class ResolvedPromotion:
    promotion: PromotionRecord
    student_name: str
    current_year: str

    @property
    def class_suffix(self) -> str:
        parts = [part for part in _CLASS_SEPARATOR.split(self.promotion.class_name.strip()) if part]
        return parts[-1] if parts else ""

    def field_text(self, field_name: str) -> str:
        if field_name == "level":
            return self.promotion.to_level
        if field_name == "year":
            return f"Année {self.promotion.year}" if self.promotion.year else ""
        if field_name == "student":
            return self.student_name
        if field_name == "currentLevel":
            return self.promotion.from_level
        if field_name == "class":
            return self.class_suffix
        if field_name == "currentYear":
            return self.current_year
        return ""


def resolve_promotion(context: RenderContext, block: PromotionInfoBlock) -> ResolvedPromotion | None:
    student_level = context.student.level
    student_next = next_level(student_level)
    # A student without a level is not gated; the stored promotion decides.
    if normalize_level(student_level):
        if block.level and normalize_level(block.level) != normalize_level(student_level):
            return None
        if block.target_level and normalize_level(block.target_level) != normalize_level(student_next):
            return None

    signature = None
    if block.period in ("mid-year", "end-year"):
        signature = latest_signature(context, _period_signature_type(block.period))
        if signature is None:
            return None

    target = block.target_level or student_next
    if not target:
        return None

    promotion = None
    for candidate in context.promotions:
        if normalize_level(candidate.to_level) == normalize_level(target):
            promotion = candidate
            break

    if promotion is None:
        if signature is None:
            signature = latest_signature(context, _period_signature_type(block.period))
        if signature is None:
            return None
        year = signature.school_year_name
        if not year and signature.signed_at is not None:
            year = academic_year_label(signature.signed_at)
        promotion = PromotionRecord(
            from_level=student_level,
            to_level=target,
            year=year,
            class_name=context.student.class_name,
        )

    return ResolvedPromotion(
        promotion=promotion,
        student_name=context.student.full_name,
        current_year=_current_year_label(context, promotion, block.period),
    )
