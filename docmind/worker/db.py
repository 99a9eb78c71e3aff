"""
Document persistence helpers.

Pipeline, queue worker and embedding job read and write documents, detected fields,
extractions and chunks through this module; they never call ``db.add()`` for those
tables directly.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docmind.models import (
    DetectedField,
    Document,
    DocumentChunk,
    DocumentExtraction,
    QueueItem,
)

logger = logging.getLogger(__name__)

FIELD_INSERT_BATCH_SIZE = 50


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_uuid(value: Any) -> UUID:
    """UUID from str/UUID; raises ValueError for malformed ids."""
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


# ---------------------------------------------------------------------------
# Stale item recovery
# ---------------------------------------------------------------------------

async def recover_stale_items(
    db: AsyncSession,
    timeout_minutes: float = 30.0,
    worker_id: str | None = None,
) -> int:
    """Release queue items stuck in 'processing' for longer than *timeout_minutes*.

    Catches items whose worker died (crash, restart, OOM) mid-run. The attempt was
    already counted when the item started, so items with attempts left go back to
    ``pending`` and items that used their last attempt are dead-lettered. Returns the
    number of items touched.
    """
    now = _utc_now_naive()
    cutoff = now - timedelta(minutes=timeout_minutes)
    stuck = (QueueItem.status == "processing", QueueItem.started_at < cutoff)
    note = f"stuck in processing >{timeout_minutes}min (by {worker_id or 'unknown'})"

    exhausted = await db.execute(
        update(QueueItem)
        .where(*stuck, QueueItem.attempts >= QueueItem.max_attempts)
        .values(status="failed", completed_at=now, error=f"Dead-lettered: {note}")
        .returning(QueueItem.id, QueueItem.document_id)
    )
    failed = exhausted.fetchall()
    reset = await db.execute(
        update(QueueItem)
        .where(*stuck, QueueItem.attempts < QueueItem.max_attempts)
        .values(status="pending", started_at=None, error=f"Auto-recovered: {note}")
        .returning(QueueItem.id, QueueItem.document_id)
    )
    recovered = reset.fetchall()
    if failed:
        await db.execute(
            update(Document)
            .where(Document.id.in_([doc_id for _, doc_id in failed]), Document.status == "processing")
            .values(status="failed", processing_error=f"Queue item {note}", updated_at=now)
        )
    await db.commit()

    for item_id, doc_id in failed:
        logger.warning("[stale-recovery] Queue item %s (doc %s) out of attempts -> failed", item_id, doc_id)
    for item_id, doc_id in recovered:
        logger.warning(
            "[stale-recovery] Reset queue item %s (doc %s) from processing -> pending",
            item_id, doc_id,
        )
    return len(failed) + len(recovered)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

async def get_document(db: AsyncSession, doc_uuid: UUID, user_id: str | None = None) -> Document | None:
    stmt = select(Document).where(Document.id == doc_uuid)
    if user_id:
        stmt = stmt.where(Document.user_id == user_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def set_document_status(db: AsyncSession, doc_uuid: UUID, status: str) -> None:
    """Set Document.status and commit."""
    await db.execute(
        update(Document)
        .where(Document.id == doc_uuid)
        .values(status=status, updated_at=_utc_now_naive())
    )
    await db.commit()


async def mark_document_failed(db: AsyncSession, doc_uuid: UUID, error_message: str) -> bool:
    """status=failed, processing_error recorded, processing_attempts += 1. Returns False if the write failed."""
    try:
        await db.execute(
            update(Document)
            .where(Document.id == doc_uuid)
            .values(
                status="failed",
                processing_error=(error_message or "")[:2000],
                processing_attempts=Document.processing_attempts + 1,
                updated_at=_utc_now_naive(),
            )
        )
        await db.commit()
        return True
    except Exception as exc:
        logger.error("[db] mark_document_failed(%s) failed: %s", doc_uuid, exc, exc_info=True)
        await safe_rollback(db)
        return False


def merge_document_metadata(document: Document, patch: dict) -> dict:
    """Shallow-merge *patch* into document metadata (new dict so the JSONB change is detected)."""
    merged = {**(document.doc_metadata or {}), **patch}
    document.doc_metadata = merged
    return merged


# ---------------------------------------------------------------------------
# Detected fields (full replace per run)
# ---------------------------------------------------------------------------

async def replace_detected_fields(
    db: AsyncSession,
    doc_uuid: UUID,
    fields: Iterable[Any],
    batch_size: int = FIELD_INSERT_BATCH_SIZE,
) -> int:
    """Delete all fields for the document, then insert *fields* in batches (flushed, not committed)."""
    await db.execute(delete(DetectedField).where(DetectedField.document_id == doc_uuid))
    rows = [
        DetectedField(
            document_id=doc_uuid,
            field_name=f.name,
            field_label=f.label,
            field_type=getattr(f.field_type, "value", f.field_type),
            field_value=f.value or None,
            confidence=f.confidence,
            coordinates=f.coordinates,
            page_number=f.page_number,
            source_strategy=f.source_strategy,
            field_metadata=f.metadata or {},
        )
        for f in fields
    ]
    for i in range(0, len(rows), batch_size):
        db.add_all(rows[i : i + batch_size])
        await db.flush()
    logger.info("[db] Replaced detected fields for %s: %d rows", doc_uuid, len(rows))
    return len(rows)


# ---------------------------------------------------------------------------
# Extraction (OCR stage output)
# ---------------------------------------------------------------------------

async def save_extraction(
    db: AsyncSession,
    doc_uuid: UUID,
    *,
    full_text: str,
    page_breaks: list[int],
    page_count: int,
    tables: list[dict] | None = None,
    entities: list[dict] | None = None,
    processing_time_ms: int | None = None,
) -> DocumentExtraction:
    await db.execute(delete(DocumentExtraction).where(DocumentExtraction.document_id == doc_uuid))
    row = DocumentExtraction(
        document_id=doc_uuid,
        full_text=full_text,
        page_breaks=page_breaks,
        page_count=page_count,
        tables=tables or [],
        entities=entities or [],
        processing_time_ms=processing_time_ms,
    )
    db.add(row)
    await db.flush()
    return row


async def get_extraction(db: AsyncSession, doc_uuid: UUID) -> DocumentExtraction | None:
    result = await db.execute(select(DocumentExtraction).where(DocumentExtraction.document_id == doc_uuid))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Chunks (full replace per embedding run)
# ---------------------------------------------------------------------------

async def replace_chunks(db: AsyncSession, doc_uuid: UUID, rows: list[dict]) -> int:
    """Delete existing chunks, insert the new set. Each row: chunk_index, chunk_text, embedding, page_number, metadata."""
    await db.execute(delete(DocumentChunk).where(DocumentChunk.document_id == doc_uuid))
    db.add_all([
        DocumentChunk(
            document_id=doc_uuid,
            chunk_index=r["chunk_index"],
            chunk_text=r["chunk_text"],
            embedding=r["embedding"],
            page_number=r.get("page_number"),
            chunk_metadata=r.get("metadata") or {},
        )
        for r in rows
    ])
    await db.flush()
    return len(rows)


# ---------------------------------------------------------------------------
# Commit / rollback helpers
# ---------------------------------------------------------------------------

async def safe_commit(db: AsyncSession) -> bool:
    """Commit; on failure rollback and return False."""
    try:
        await db.commit()
        return True
    except Exception as exc:
        logger.error("[db] commit failed, rolling back: %s", exc, exc_info=True)
        await db.rollback()
        return False


async def safe_rollback(db: AsyncSession) -> None:
    """Rollback; never raises."""
    try:
        await db.rollback()
    except Exception as exc:
        logger.error("[db] rollback failed: %s", exc, exc_info=True)
