"""
Per-document processing pipeline.

Stages: UPLOAD -> FIELD_DETECTION -> OCR (optional) -> VALIDATION (optional) -> STORAGE -> COMPLETED.
FAILED is absorbing; CANCELLED when cancel() lands while a run is in flight.

One run per document id at a time (SingleFlightGuard). The guard is process-local:
several API/worker processes can still process the same document concurrently, so
multi-instance deployments need a database-level lock in front of process_document.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields as dataclass_fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable
import asyncio
import logging

import fitz  # PyMuPDF

from docmind.services.detection import DetectedFieldData, DetectionOutcome, DetectionStrategyChain
from docmind.services.document_ai import DocumentAIService
from docmind.services.embeddings import EmbeddingGenerator, process_document_embeddings
from docmind.services.error_recovery import ErrorContext, ErrorRecoveryService, RecoveryResult
from docmind.services.field_validation import validate_fields
from docmind.services.storage import ObjectStore
from docmind.worker.db import (
    get_document,
    get_extraction,
    mark_document_failed,
    merge_document_metadata,
    replace_detected_fields,
    safe_rollback,
    save_extraction,
    set_document_status,
    to_uuid,
)

logger = logging.getLogger(__name__)

ALREADY_PROCESSING = "ALREADY_PROCESSING"
CANCELLED = "CANCELLED"

Publisher = Callable[[Any, str, dict], Awaitable[Any]]


class ProcessingStage(str, Enum):
    UPLOAD = "upload"
    FIELD_DETECTION = "field_detection"
    OCR = "ocr"
    VALIDATION = "validation"
    STORAGE = "storage"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DocumentNotFoundError(LookupError):
    pass


class ProcessingCancelled(Exception):
    """Raised at a stage boundary when the run no longer owns its guard entry."""


@dataclass
class ProcessingOptions:
    detect_fields: bool = True
    run_ocr: bool = False
    validate_fields: bool = True
    generate_embeddings: bool = False
    publish_events: bool = True

    @classmethod
    def from_dict(cls, data: dict | None) -> "ProcessingOptions":
        """Build from a stored/queued options dict; unknown keys are ignored."""
        known = {f.name for f in dataclass_fields(cls)}
        return cls(**{k: bool(v) for k, v in (data or {}).items() if k in known})

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProcessingResult:
    success: bool
    stage: ProcessingStage
    message: str = ""
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Single-flight guard
# ---------------------------------------------------------------------------

class SingleFlightGuard:
    """document_id -> (owner token, current stage). All methods are synchronous."""

    def __init__(self):
        self._active: dict[str, tuple[object, ProcessingStage]] = {}

    def try_claim(self, document_id: str) -> object | None:
        if document_id in self._active:
            return None
        token = object()
        self._active[document_id] = (token, ProcessingStage.UPLOAD)
        return token

    def owns(self, document_id: str, token: object) -> bool:
        entry = self._active.get(document_id)
        return entry is not None and entry[0] is token

    def set_stage(self, document_id: str, token: object, stage: ProcessingStage) -> bool:
        if not self.owns(document_id, token):
            return False
        self._active[document_id] = (token, stage)
        return True

    def stage(self, document_id: str) -> ProcessingStage | None:
        entry = self._active.get(document_id)
        return entry[1] if entry else None

    def release(self, document_id: str, token: object) -> None:
        # A cancelled run may find its slot already taken by a newer run.
        if self.owns(document_id, token):
            del self._active[document_id]

    def cancel(self, document_id: str) -> bool:
        return self._active.pop(document_id, None) is not None

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._active

    def __len__(self) -> int:
        return len(self._active)


# ---------------------------------------------------------------------------
# Local text extraction (OCR stage without Document AI)
# ---------------------------------------------------------------------------

def extract_pdf_text(raw_bytes: bytes) -> tuple[str, list[int], int]:
    """(full_text, page_breaks, page_count) from the PDF text layer. Pages joined by a blank line."""
    doc = fitz.open(stream=raw_bytes, filetype="pdf")
    try:
        pages = [page.get_text() for page in doc]
    finally:
        doc.close()
    parts: list[str] = []
    page_breaks: list[int] = []
    offset = 0
    for i, text in enumerate(pages):
        if i > 0:
            parts.append("\n\n")
            offset += 2
            page_breaks.append(offset)
        parts.append(text)
        offset += len(text)
    return "".join(parts), page_breaks, len(pages)


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _field_summary(f: DetectedFieldData) -> dict:
    return {
        "name": f.name,
        "label": f.label,
        "type": getattr(f.field_type, "value", f.field_type),
        "confidence": f.confidence,
        "page": f.page_number,
        "strategy": f.source_strategy,
    }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ProcessingPipeline:
    """Construct once per process; share the instance between routes and the queue worker."""

    def __init__(
        self,
        session_factory,
        storage: ObjectStore,
        chain: DetectionStrategyChain,
        recovery: ErrorRecoveryService,
        *,
        document_ai: DocumentAIService | None = None,
        embeddings: EmbeddingGenerator | None = None,
        publisher: Publisher | None = None,
        guard: SingleFlightGuard | None = None,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.chain = chain
        self.recovery = recovery
        self.document_ai = document_ai
        self.embeddings = embeddings
        self.publisher = publisher
        self.guard = guard or SingleFlightGuard()

    def get_status(self, document_id) -> ProcessingStage | None:
        return self.guard.stage(str(document_id))

    async def cancel(self, document_id) -> bool:
        """Drop the in-flight run (cooperative: it stops at its next stage boundary) and mark the document cancelled.

        A run that has reached COMPLETED is past cancelling; False is returned and the document is left alone.
        """
        key = str(document_id)
        if self.guard.stage(key) == ProcessingStage.COMPLETED:
            logger.info("[%s] Cancel refused: processing already completed", key)
            return False
        if not self.guard.cancel(key):
            return False
        async with self.session_factory() as db:
            await set_document_status(db, to_uuid(key), "cancelled")
        logger.info("[%s] Processing cancelled", key)
        return True

    def _enter(self, key: str, token: object, stage: ProcessingStage) -> None:
        if not self.guard.set_stage(key, token, stage):
            raise ProcessingCancelled(key)
        logger.info("[%s] Stage: %s", key, stage.value)

    async def _publish(self, db, event_type: str, data: dict, options: ProcessingOptions) -> None:
        if self.publisher is None or not options.publish_events:
            return
        try:
            await self.publisher(db, event_type, data)
        except Exception as e:
            logger.warning("[%s] Failed to publish %s: %s", data.get("documentId"), event_type, e)
            await safe_rollback(db)

    async def process_document(
        self,
        document_id,
        user_id: str | None = None,
        options: ProcessingOptions | None = None,
    ) -> ProcessingResult:
        key = str(document_id)
        token = self.guard.try_claim(key)
        if token is None:
            return ProcessingResult(
                success=False,
                stage=self.guard.stage(key) or ProcessingStage.UPLOAD,
                message="Document is already being processed",
                error=ALREADY_PROCESSING,
            )
        options = options or ProcessingOptions()
        stage = ProcessingStage.UPLOAD
        try:
            async with self.session_factory() as db:
                try:
                    return await self._run(db, key, token, user_id, options)
                except ProcessingCancelled:
                    await safe_rollback(db)
                    logger.info("[%s] Run stopped after cancellation", key)
                    return ProcessingResult(False, ProcessingStage.CANCELLED, "Processing cancelled", error=CANCELLED)
                except Exception as e:
                    stage = self.guard.stage(key) or stage
                    logger.error("[%s] Processing failed at %s: %s", key, stage.value, e, exc_info=True)
                    await safe_rollback(db)
                    recovery = await self._record_failure(db, key, user_id, stage, e, options)
                    return ProcessingResult(
                        success=False,
                        stage=ProcessingStage.FAILED,
                        message="Document processing failed",
                        error=str(e),
                        data={
                            "failed_stage": stage.value,
                            "recovery": {
                                "strategy": recovery.strategy.value,
                                "error_type": recovery.error_type.value,
                                "retry_after_ms": recovery.retry_after_ms,
                                "message": recovery.message,
                            },
                        },
                    )
        finally:
            self.guard.release(key, token)

    async def _record_failure(self, db, key: str, user_id, stage: ProcessingStage, error: Exception, options: ProcessingOptions) -> RecoveryResult:
        try:
            doc_uuid = to_uuid(key)
        except ValueError:
            doc_uuid = None
        if doc_uuid is not None:
            await mark_document_failed(db, doc_uuid, str(error))
        recovery = await self.recovery.handle_error(error, ErrorContext(
            operation="document-processing",
            document_id=key,
            user_id=user_id,
            stage=stage.value,
        ))
        if doc_uuid is not None:
            await self._publish(db, "document.failed", {
                "documentId": key, "stage": stage.value, "error": str(error), "timestamp": _iso_now(),
            }, options)
        return recovery

    async def _run(self, db, key: str, token: object, user_id: str | None, options: ProcessingOptions) -> ProcessingResult:
        doc_uuid = to_uuid(key)

        # --- UPLOAD: fetch + download ---
        document = await get_document(db, doc_uuid, user_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {key}")
        document.status = "processing"
        document.processing_error = None
        await db.commit()

        raw = await self.storage.download(document.file_path)
        mime_type = document.mime_type or "application/pdf"
        logger.info("[%s] Downloaded %s (%d bytes, %s)", key, document.filename, len(raw), mime_type)

        # --- FIELD_DETECTION ---
        outcome = DetectionOutcome(fields=[], strategy_id=None)
        if options.detect_fields:
            self._enter(key, token, ProcessingStage.FIELD_DETECTION)
            outcome = await self.chain.detect(key, raw, mime_type)
            if not outcome.succeeded:
                await self.recovery.handle_error(outcome.error or "No fields detected", ErrorContext(
                    operation="field-detection", document_id=key, user_id=user_id,
                    stage=ProcessingStage.FIELD_DETECTION.value,
                    metadata={"attempts": [asdict(a) for a in outcome.attempts]},
                ))

        # --- OCR ---
        text = None
        page_breaks: list[int] = []
        page_count = None
        if options.run_ocr:
            self._enter(key, token, ProcessingStage.OCR)
            text, page_breaks, page_count = await self._extract(db, key, doc_uuid, raw, mime_type)

        # --- VALIDATION ---
        validation = None
        if options.validate_fields and outcome.fields:
            self._enter(key, token, ProcessingStage.VALIDATION)
            validation = validate_fields(outcome.fields)
            logger.info(
                "[%s] Validation: %d valid, %d invalid, %d warnings",
                key, validation["valid"], validation["invalid"], validation["warnings"],
            )

        # --- STORAGE ---
        self._enter(key, token, ProcessingStage.STORAGE)
        meta_patch: dict[str, Any] = {}
        if options.detect_fields:
            await replace_detected_fields(db, doc_uuid, outcome.fields)
            meta_patch["fieldDetection"] = {
                "strategy": outcome.strategy_id,
                "fieldsDetected": len(outcome.fields),
                "detectedAt": _iso_now(),
                "attempts": [asdict(a) for a in outcome.attempts],
            }
            if outcome.error:
                meta_patch["fieldDetection"]["error"] = outcome.error
        if validation is not None:
            meta_patch["validation"] = validation

        chunk_count = None
        if options.generate_embeddings:
            chunk_count = await self._embed(db, key, doc_uuid, user_id, raw, mime_type, text, page_breaks, meta_patch)

        merge_document_metadata(document, meta_patch)
        # A cancel() that landed during STORAGE wins: nothing is committed.
        # Once COMPLETED is set, cancel() refuses.
        if not self.guard.set_stage(key, token, ProcessingStage.COMPLETED):
            raise ProcessingCancelled(key)
        document.status = "completed"
        await db.commit()
        logger.info("[%s] Completed: %d fields (%s)", key, len(outcome.fields), outcome.strategy_id)

        data = {
            "documentId": key,
            "fieldsDetected": len(outcome.fields),
            "strategy": outcome.strategy_id,
            "fields": [_field_summary(f) for f in outcome.fields],
        }
        if validation is not None:
            data["validation"] = {k: validation[k] for k in ("total", "valid", "invalid", "warnings")}
        if page_count is not None:
            data["pageCount"] = page_count
            await self._publish(db, "extraction.completed", {
                "documentId": key, "pageCount": page_count, "timestamp": _iso_now(),
            }, options)
        if chunk_count is not None:
            data["chunks"] = chunk_count
            await self._publish(db, "embeddings.generated", {
                "documentId": key, "chunks": chunk_count, "timestamp": _iso_now(),
            }, options)
        await self._publish(db, "document.processed", {
            "documentId": key, "fieldsDetected": len(outcome.fields), "timestamp": _iso_now(),
        }, options)
        return ProcessingResult(
            success=True,
            stage=ProcessingStage.COMPLETED,
            message=f"Document processed successfully. {len(outcome.fields)} fields detected.",
            data=data,
        )

    async def _extract(self, db, key, doc_uuid, raw, mime_type) -> tuple[str | None, list[int], int | None]:
        """Document AI OCR when configured, else the PDF text layer. Images without Document AI are skipped."""
        if self.document_ai is not None and self.document_ai.is_configured("ocr"):
            result = await self.document_ai.process(raw, mime_type, "ocr")
            text, page_breaks, page_count = result.text, result.page_breaks, result.page_count
            tables = [asdict(t) for t in result.tables]
            entities = [asdict(e) for e in result.entities]
            elapsed = result.processing_time_ms
        elif "pdf" in mime_type.lower():
            text, page_breaks, page_count = await asyncio.to_thread(extract_pdf_text, raw)
            tables, entities, elapsed = [], [], None
        else:
            logger.info("[%s] OCR skipped: no OCR processor configured for %s", key, mime_type)
            return None, [], None
        await save_extraction(
            db, doc_uuid,
            full_text=text, page_breaks=page_breaks, page_count=page_count,
            tables=tables, entities=entities, processing_time_ms=elapsed,
        )
        logger.info("[%s] Extracted %d chars over %d pages", key, len(text), page_count)
        return text, page_breaks, page_count

    async def _embed(self, db, key, doc_uuid, user_id, raw, mime_type, text, page_breaks, meta_patch) -> int | None:
        """Embedding failures never fail the document; they are recorded and surfaced in metadata."""
        if text is None:
            extraction = await get_extraction(db, doc_uuid)
            if extraction is not None and extraction.full_text:
                text, page_breaks = extraction.full_text, list(extraction.page_breaks or [])
            elif "pdf" in mime_type.lower():
                text, page_breaks, _ = await asyncio.to_thread(extract_pdf_text, raw)
        if not text or not text.strip():
            meta_patch["embeddings"] = {"status": "skipped", "reason": "no extracted text"}
            return None
        try:
            async with db.begin_nested():
                count = await process_document_embeddings(
                    db, doc_uuid, text, page_breaks, {"document_id": key}, generator=self.embeddings,
                )
        except Exception as e:
            logger.warning("[%s] Embedding generation failed: %s", key, e, exc_info=True)
            await self.recovery.handle_error(e, ErrorContext(
                operation="embedding-generation", document_id=key, user_id=user_id,
                stage=ProcessingStage.STORAGE.value,
            ))
            meta_patch["embeddings"] = {"status": "failed", "error": str(e)}
            return None
        meta_patch["embeddings"] = {"status": "completed", "chunks": count, "generatedAt": _iso_now()}
        return count
