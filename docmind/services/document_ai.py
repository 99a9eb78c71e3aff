"""Document AI request/response model.

Requests go through the ConnectionPool (one admission slot per call). The response
Document proto is flattened into plain dataclasses so the rest of the system never
touches proto types:
- text, page breaks (character offsets of pages 2..n)
- form fields with normalized bounding vertices
- tables (header/body rows of cell text)
- entities
"""
from dataclasses import dataclass, field
from typing import Any
import asyncio
import logging
import time

from google.api_core.client_options import ClientOptions
from google.cloud import documentai
from google.protobuf import field_mask_pb2

from docmind.config import DOCUMENT_AI_LOCATION, DOCUMENT_AI_PROCESSORS, DOCUMENT_AI_PROJECT_NUMBER
from docmind.services.connection_pool import ConnectionPool

logger = logging.getLogger(__name__)

PROCESSOR_TYPES = ("ocr", "formParser", "layoutParser", "summarizer")


@dataclass
class FormFieldResult:
    name: str
    value: str
    confidence: float
    value_confidence: float
    page_number: int
    normalized_vertices: list[tuple[float, float]] = field(default_factory=list)


@dataclass
class TableResult:
    page_number: int
    header_rows: list[list[str]] = field(default_factory=list)
    body_rows: list[list[str]] = field(default_factory=list)


@dataclass
class EntityResult:
    type: str
    mention_text: str
    confidence: float
    page_numbers: list[int] = field(default_factory=list)


@dataclass
class DocumentAIResult:
    text: str = ""
    page_count: int = 0
    page_breaks: list[int] = field(default_factory=list)
    form_fields: list[FormFieldResult] = field(default_factory=list)
    tables: list[TableResult] = field(default_factory=list)
    entities: list[EntityResult] = field(default_factory=list)
    summary: str | None = None
    processing_time_ms: int = 0


def processor_path(project: str, location: str, processor_id: str) -> str:
    return f"projects/{project}/locations/{location}/processors/{processor_id}"


def make_documentai_client(processor_type: str = "default") -> documentai.DocumentProcessorServiceClient:
    """Client factory for the ConnectionPool. Regional endpoint follows DOCUMENT_AI_LOCATION."""
    opts = ClientOptions(api_endpoint=f"{DOCUMENT_AI_LOCATION}-documentai.googleapis.com")
    return documentai.DocumentProcessorServiceClient(client_options=opts)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _anchor_text(anchor: Any, full_text: str) -> str:
    """Text for a TextAnchor: inline content when present, else the referenced segments."""
    if anchor is None:
        return ""
    content = getattr(anchor, "content", "") or ""
    if content:
        return content
    parts = []
    for seg in getattr(anchor, "text_segments", None) or []:
        start = int(getattr(seg, "start_index", 0) or 0)
        end = int(getattr(seg, "end_index", 0) or 0)
        parts.append(full_text[start:end])
    return "".join(parts)


def _layout_text(layout: Any, full_text: str) -> str:
    return _anchor_text(getattr(layout, "text_anchor", None), full_text).strip()


def _vertices(layout: Any) -> list[tuple[float, float]]:
    poly = getattr(layout, "bounding_poly", None)
    if poly is None:
        return []
    return [(float(v.x or 0), float(v.y or 0)) for v in (getattr(poly, "normalized_vertices", None) or [])]


def _page_start(page: Any) -> int | None:
    segs = getattr(getattr(getattr(page, "layout", None), "text_anchor", None), "text_segments", None) or []
    if not segs:
        return None
    return int(getattr(segs[0], "start_index", 0) or 0)


def parse_document(document: Any, processor_type: str = "ocr") -> DocumentAIResult:
    """Flatten a documentai.Document (or any object with the same attribute shape)."""
    text = getattr(document, "text", "") or ""
    pages = list(getattr(document, "pages", None) or [])
    result = DocumentAIResult(text=text, page_count=len(pages))

    for idx, page in enumerate(pages):
        page_number = int(getattr(page, "page_number", 0) or 0) or idx + 1
        if idx > 0:
            start = _page_start(page)
            if start is not None:
                result.page_breaks.append(start)

        for ff in getattr(page, "form_fields", None) or []:
            name_layout = getattr(ff, "field_name", None)
            value_layout = getattr(ff, "field_value", None)
            result.form_fields.append(FormFieldResult(
                name=_layout_text(name_layout, text),
                value=_layout_text(value_layout, text),
                confidence=float(getattr(name_layout, "confidence", 0) or 0),
                value_confidence=float(getattr(value_layout, "confidence", 0) or 0),
                page_number=page_number,
                normalized_vertices=_vertices(name_layout),
            ))

        for table in getattr(page, "tables", None) or []:
            header = [
                [_layout_text(getattr(c, "layout", None), text) for c in (row.cells or [])]
                for row in (getattr(table, "header_rows", None) or [])
            ]
            body = [
                [_layout_text(getattr(c, "layout", None), text) for c in (row.cells or [])]
                for row in (getattr(table, "body_rows", None) or [])
            ]
            if header or body:
                result.tables.append(TableResult(page_number=page_number, header_rows=header, body_rows=body))

    for ent in getattr(document, "entities", None) or []:
        refs = getattr(getattr(ent, "page_anchor", None), "page_refs", None) or []
        result.entities.append(EntityResult(
            type=getattr(ent, "type_", None) or getattr(ent, "type", None) or "unknown",
            mention_text=getattr(ent, "mention_text", "") or "",
            confidence=float(getattr(ent, "confidence", 0) or 0),
            page_numbers=[int(getattr(r, "page", 0) or 0) + 1 for r in refs],
        ))

    if processor_type == "summarizer":
        result.summary = text
    return result


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentAIService:
    def __init__(
        self,
        pool: ConnectionPool,
        project: str | None = DOCUMENT_AI_PROJECT_NUMBER,
        location: str = DOCUMENT_AI_LOCATION,
        processors: dict[str, str | None] | None = None,
    ):
        self.pool = pool
        self.project = project
        self.location = location
        self.processors = dict(DOCUMENT_AI_PROCESSORS if processors is None else processors)

    def is_configured(self, processor_type: str) -> bool:
        return bool(self.project and self.processors.get(processor_type))

    def processor_name(self, processor_type: str) -> str:
        if processor_type not in PROCESSOR_TYPES:
            raise ValueError(f"Unknown processor type: {processor_type}. Available: {list(PROCESSOR_TYPES)}")
        processor_id = self.processors.get(processor_type)
        if not (self.project and processor_id):
            raise ValueError(f"Document AI processor not configured: {processor_type}")
        return processor_path(self.project, self.location, processor_id)

    def build_request(
        self,
        raw_bytes: bytes,
        mime_type: str,
        processor_type: str,
        *,
        field_mask: list[str] | None = None,
        language_hints: list[str] | None = None,
        pages: list[int] | None = None,
    ) -> documentai.ProcessRequest:
        request = documentai.ProcessRequest(
            name=self.processor_name(processor_type),
            raw_document=documentai.RawDocument(content=raw_bytes, mime_type=mime_type),
        )
        if field_mask:
            request.field_mask = field_mask_pb2.FieldMask(paths=field_mask)
        if language_hints or pages:
            options = documentai.ProcessOptions()
            if language_hints:
                options.ocr_config = documentai.OcrConfig(
                    hints=documentai.OcrConfig.Hints(language_hints=language_hints)
                )
            if pages:
                options.individual_page_selector = documentai.ProcessOptions.IndividualPageSelector(pages=pages)
            request.process_options = options
        return request

    async def process(
        self,
        raw_bytes: bytes,
        mime_type: str,
        processor_type: str = "ocr",
        **request_kwargs,
    ) -> DocumentAIResult:
        """Run one processor over the document. Holds a pool slot for the duration of the call."""
        request = self.build_request(raw_bytes, mime_type, processor_type, **request_kwargs)
        started = time.monotonic()
        async with self.pool.client(processor_type) as client:
            response = await asyncio.to_thread(client.process_document, request=request)
        document = getattr(response, "document", None)
        if document is None:
            raise RuntimeError("Document AI processing returned no document")
        result = parse_document(document, processor_type)
        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Document AI %s: %d pages, %d form fields, %d tables in %dms",
            processor_type, result.page_count, len(result.form_fields), len(result.tables),
            result.processing_time_ms,
        )
        return result
