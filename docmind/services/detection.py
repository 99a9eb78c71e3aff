"""Form field detection: an ordered chain of fallback strategies.

Default order:
1. document_ai          - Document AI form parser (via the connection pool)
2. native_form_fields   - interactive PDF form widgets (PyMuPDF)
3. text_pattern         - label-followed-by-blank regexes over page text
4. synthetic            - placeholder fields, flagged isSynthetic in metadata

Each strategy returns a typed outcome (Success / NotApplicable / Failed). The chain
returns the first Success with at least one field; a strategy that raises is recorded
as Failed and the chain moves on.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
import asyncio
import logging
import random
import re

import fitz  # PyMuPDF

from docmind.services.document_ai import DocumentAIService
from docmind.services.field_types import (
    FieldType,
    clamp_confidence,
    infer_field_type,
    sanitize_field_name,
)

logger = logging.getLogger(__name__)


@dataclass
class DetectedFieldData:
    name: str
    label: str
    field_type: FieldType
    confidence: float
    value: str = ""
    page_number: int = 1
    coordinates: dict[str, float] | None = None  # {page, x, y, width, height}, page-relative percentages
    source_strategy: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)


# --- strategy outcomes ---

@dataclass
class Success:
    fields: list[DetectedFieldData]
    strategy_id: str


@dataclass
class NotApplicable:
    reason: str


@dataclass
class Failed:
    cause: BaseException


StrategyResult = Success | NotApplicable | Failed


@dataclass
class DetectionAttempt:
    strategy_id: str
    outcome: str  # success, empty, not_applicable, failed
    detail: str = ""


@dataclass
class DetectionOutcome:
    fields: list[DetectedFieldData]
    strategy_id: str | None
    attempts: list[DetectionAttempt] = field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return bool(self.fields)


def _is_pdf(mime_type: str | None) -> bool:
    return "pdf" in (mime_type or "").lower()


def percent_box(page: int, x0: float, y0: float, x1: float, y1: float, width: float, height: float) -> dict | None:
    """Absolute rect -> page-relative percentages. None when the page size is unknown."""
    if not width or not height:
        return None
    return {
        "page": page,
        "x": round(x0 / width * 100, 3),
        "y": round(y0 / height * 100, 3),
        "width": round((x1 - x0) / width * 100, 3),
        "height": round((y1 - y0) / height * 100, 3),
    }


def vertices_box(page: int, vertices: list[tuple[float, float]]) -> dict | None:
    """Normalized (0-1) bounding vertices -> percentages. Needs at least 4 vertices."""
    if len(vertices) < 4:
        return None
    (x0, y0), (x1, _), (_, y2) = vertices[0], vertices[1], vertices[2]
    return {
        "page": page,
        "x": round(x0 * 100, 3),
        "y": round(y0 * 100, 3),
        "width": round((x1 - x0) * 100, 3),
        "height": round((y2 - y0) * 100, 3),
    }


class DetectionStrategy(ABC):
    strategy_id: str = ""

    @abstractmethod
    async def attempt(self, document_id: str, raw_bytes: bytes, mime_type: str) -> StrategyResult:
        pass


# ---------------------------------------------------------------------------
# 1. Document AI form parser
# ---------------------------------------------------------------------------

class DocumentAIStrategy(DetectionStrategy):
    strategy_id = "document_ai"

    def __init__(self, service: DocumentAIService | None, processor_type: str = "formParser"):
        self.service = service
        self.processor_type = processor_type

    async def attempt(self, document_id: str, raw_bytes: bytes, mime_type: str) -> StrategyResult:
        if self.service is None or not self.service.is_configured(self.processor_type):
            return NotApplicable("Document AI form parser not configured")
        result = await self.service.process(raw_bytes, mime_type, self.processor_type)
        fields = []
        for ff in result.form_fields:
            if not ff.name:
                continue
            ftype, _ = infer_field_type(ff.name, ff.name, ff.value)
            fields.append(DetectedFieldData(
                name=sanitize_field_name(ff.name),
                label=ff.name,
                field_type=ftype,
                value=ff.value,
                confidence=ff.confidence,
                page_number=ff.page_number,
                coordinates=vertices_box(ff.page_number, ff.normalized_vertices),
                source_strategy=self.strategy_id,
                metadata={"valueConfidence": clamp_confidence(ff.value_confidence)},
            ))
        return Success(fields, self.strategy_id)


# ---------------------------------------------------------------------------
# 2. Native PDF form widgets
# ---------------------------------------------------------------------------

_WIDGET_TYPES = {
    "Text": FieldType.TEXT,
    "ComboBox": FieldType.SELECT,
    "ListBox": FieldType.SELECT,
    "CheckBox": FieldType.CHECKBOX,
    "Button": FieldType.CHECKBOX,
    "RadioButton": FieldType.RADIO,
    "Signature": FieldType.SIGNATURE,
}

_FLAG_READ_ONLY = 1
_FLAG_REQUIRED = 2
_FLAG_MULTILINE = 4096


def extract_pdf_widgets(raw_bytes: bytes) -> list[DetectedFieldData]:
    """Blocking: read form widgets from every page. Duplicate field names keep the first widget."""
    fields: list[DetectedFieldData] = []
    seen: set[str] = set()
    doc = fitz.open(stream=raw_bytes, filetype="pdf")
    try:
        for page in doc:
            page_number = page.number + 1
            rect = page.rect
            for widget in page.widgets() or []:
                raw_name = widget.field_name or ""
                name = sanitize_field_name(raw_name)
                if not name or name in seen:
                    continue
                seen.add(name)
                label = widget.field_label or raw_name
                type_string = widget.field_type_string or "Text"
                flags = widget.field_flags or 0
                value = widget.field_value
                value = "" if value in (None, False, "Off") else str(value)
                ftype = _WIDGET_TYPES.get(type_string, FieldType.TEXT)
                if ftype == FieldType.TEXT:
                    if flags & _FLAG_MULTILINE:
                        ftype = FieldType.TEXTAREA
                    else:
                        ftype, _ = infer_field_type(name, label, value)
                r = widget.rect
                fields.append(DetectedFieldData(
                    name=name,
                    label=label,
                    field_type=ftype,
                    value=value,
                    confidence=1.0,
                    page_number=page_number,
                    coordinates=percent_box(page_number, r.x0, r.y0, r.x1, r.y1, rect.width, rect.height),
                    source_strategy=NativeFormFieldStrategy.strategy_id,
                    metadata={
                        "pdfFieldType": type_string,
                        "required": bool(flags & _FLAG_REQUIRED),
                        "readOnly": bool(flags & _FLAG_READ_ONLY),
                        "multiline": bool(flags & _FLAG_MULTILINE),
                    },
                ))
    finally:
        doc.close()
    return fields


class NativeFormFieldStrategy(DetectionStrategy):
    strategy_id = "native_form_fields"

    async def attempt(self, document_id: str, raw_bytes: bytes, mime_type: str) -> StrategyResult:
        if not _is_pdf(mime_type):
            return NotApplicable("Not a PDF document")
        fields = await asyncio.to_thread(extract_pdf_widgets, raw_bytes)
        return Success(fields, self.strategy_id)


# ---------------------------------------------------------------------------
# 3. Text patterns
# ---------------------------------------------------------------------------

# (regex, type, label)
TEXT_PATTERNS: list[tuple[re.Pattern, FieldType, str]] = [
    (re.compile(r"(?:full\s*name|name)\s*:?\s*_{3,}", re.I), FieldType.TEXT, "Name"),
    (re.compile(r"(?:email|e-mail)\s*(?:address)?\s*:?\s*_{3,}", re.I), FieldType.EMAIL, "Email"),
    (re.compile(r"(?:phone|tel|telephone)\s*(?:number)?\s*:?\s*_{3,}", re.I), FieldType.PHONE, "Phone"),
    (re.compile(r"(?:date|dob|birth\s*date)\s*:?\s*_{3,}", re.I), FieldType.DATE, "Date"),
    (re.compile(r"(?:address|street)\s*:?\s*_{3,}", re.I), FieldType.ADDRESS, "Address"),
    (re.compile(r"city\s*:?\s*_{3,}", re.I), FieldType.TEXT, "City"),
    (re.compile(r"state\s*:?\s*_{3,}", re.I), FieldType.TEXT, "State"),
    (re.compile(r"(?:zip|postal)\s*(?:code)?\s*:?\s*_{3,}", re.I), FieldType.ZIP, "ZIP Code"),
    (re.compile(r"(?:ssn|social\s*security)\s*:?\s*_{3,}", re.I), FieldType.SSN, "SSN"),
    (re.compile(r"signature\s*:?\s*_{3,}", re.I), FieldType.SIGNATURE, "Signature"),
    (re.compile(r"\[\s*\]"), FieldType.CHECKBOX, "Checkbox"),
    (re.compile(r"\(\s*\)"), FieldType.RADIO, "Radio"),
]


def match_text_patterns(pages: list[str]) -> list[DetectedFieldData]:
    """Scan each page's text for blank-after-label patterns. Names are '<label>_<n>'."""
    fields: list[DetectedFieldData] = []
    for page_number, page_text in enumerate(pages, start=1):
        for pattern, ftype, label in TEXT_PATTERNS:
            for _ in pattern.finditer(page_text or ""):
                name = f"{sanitize_field_name(label)}_{len(fields) + 1}"
                fields.append(DetectedFieldData(
                    name=name,
                    label=label,
                    field_type=ftype,
                    confidence=0.7,
                    page_number=page_number,
                    source_strategy=TextPatternStrategy.strategy_id,
                    metadata={"detectionMethod": "pattern", "pattern": pattern.pattern},
                ))
    return fields


def _pdf_page_texts(raw_bytes: bytes) -> list[str]:
    doc = fitz.open(stream=raw_bytes, filetype="pdf")
    try:
        return [page.get_text() for page in doc]
    finally:
        doc.close()


class TextPatternStrategy(DetectionStrategy):
    strategy_id = "text_pattern"

    async def attempt(self, document_id: str, raw_bytes: bytes, mime_type: str) -> StrategyResult:
        if not _is_pdf(mime_type):
            return NotApplicable("Text pattern detection only works with PDFs")
        pages = await asyncio.to_thread(_pdf_page_texts, raw_bytes)
        return Success(match_text_patterns(pages), self.strategy_id)


# ---------------------------------------------------------------------------
# 4. Synthetic placeholders
# ---------------------------------------------------------------------------

SYNTHETIC_FIELDS: list[tuple[str, str, FieldType]] = [
    ("full_name", "Full Name", FieldType.TEXT),
    ("email", "Email Address", FieldType.EMAIL),
    ("phone", "Phone Number", FieldType.PHONE),
    ("date_of_birth", "Date of Birth", FieldType.DATE),
    ("address", "Street Address", FieldType.ADDRESS),
    ("city", "City", FieldType.TEXT),
    ("state", "State", FieldType.TEXT),
    ("zip_code", "ZIP Code", FieldType.ZIP),
    ("signature", "Signature", FieldType.SIGNATURE),
]


class SyntheticFieldStrategy(DetectionStrategy):
    """Last resort. Confidence is deliberately high (0.85-1.0); metadata.isSynthetic marks the fields."""

    strategy_id = "synthetic"

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    async def attempt(self, document_id: str, raw_bytes: bytes, mime_type: str) -> StrategyResult:
        logger.warning("[%s] Using synthetic placeholder fields", document_id)
        fields = [
            DetectedFieldData(
                name=name,
                label=label,
                field_type=ftype,
                confidence=self.rng.uniform(0.85, 1.0),
                page_number=1,
                coordinates={"page": 1, "x": 15.0, "y": 18.0 + i * 7.0, "width": 50.0, "height": 5.0},
                source_strategy=self.strategy_id,
                metadata={"isSynthetic": True},
            )
            for i, (name, label, ftype) in enumerate(SYNTHETIC_FIELDS)
        ]
        return Success(fields, self.strategy_id)


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

class DetectionStrategyChain:
    def __init__(self, strategies: list[DetectionStrategy]):
        self.strategies = list(strategies)

    async def detect(self, document_id: str, raw_bytes: bytes, mime_type: str) -> DetectionOutcome:
        attempts: list[DetectionAttempt] = []
        for strategy in self.strategies:
            sid = strategy.strategy_id
            try:
                result = await strategy.attempt(document_id, raw_bytes, mime_type)
            except Exception as e:
                logger.warning("[%s] Strategy %s failed: %s", document_id, sid, e)
                result = Failed(e)

            if isinstance(result, Success) and result.fields:
                attempts.append(DetectionAttempt(sid, "success", f"{len(result.fields)} fields"))
                logger.info("[%s] Detected %d fields using %s", document_id, len(result.fields), sid)
                return DetectionOutcome(fields=result.fields, strategy_id=sid, attempts=attempts)
            if isinstance(result, Success):
                attempts.append(DetectionAttempt(sid, "empty", "0 fields"))
            elif isinstance(result, NotApplicable):
                attempts.append(DetectionAttempt(sid, "not_applicable", result.reason))
            else:
                attempts.append(DetectionAttempt(sid, "failed", str(result.cause)))

        logger.error("[%s] All detection strategies failed: %s", document_id, attempts)
        return DetectionOutcome(fields=[], strategy_id=None, attempts=attempts, error="All detection strategies failed")


def build_default_chain(document_ai: DocumentAIService | None = None, *, include_synthetic: bool = True) -> DetectionStrategyChain:
    strategies: list[DetectionStrategy] = [
        DocumentAIStrategy(document_ai),
        NativeFormFieldStrategy(),
        TextPatternStrategy(),
    ]
    if include_synthetic:
        strategies.append(SyntheticFieldStrategy())
    return DetectionStrategyChain(strategies)
