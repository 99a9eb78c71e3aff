"""
Batch processing: up to MAX_BATCH_DOCUMENTS documents per request.

Inline batches run the shared pipeline with at most ``max_concurrency`` documents in
flight; one document's failure never stops its siblings. Queued batches add one
queue item per document. A finished inline batch publishes ``batch.completed``.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable
from uuid import UUID
import asyncio
import logging
import time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docmind.models import Document
from docmind.services.pipeline import ProcessingOptions, ProcessingPipeline
from docmind.services.processing_queue import DEFAULT_PRIORITY, ProcessingQueue
from docmind.worker.db import to_uuid

logger = logging.getLogger(__name__)

MAX_BATCH_DOCUMENTS = 50
DEFAULT_BATCH_CONCURRENCY = 5

Publisher = Callable[[AsyncSession, str, dict], Awaitable[Any]]


@dataclass
class BatchItemResult:
    documentId: str
    status: str  # success | failed
    processingTime: int | None = None
    stage: str | None = None
    fieldsDetected: int | None = None
    error: str | None = None


@dataclass
class BatchResult:
    results: list[BatchItemResult] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {"stats": self.stats, "results": [asdict(r) for r in self.results]}


def validate_batch(document_ids: list[str] | None) -> list[str]:
    """Normalised ids in request order; ValueError for an empty, oversized or malformed batch."""
    if not document_ids:
        raise ValueError("Document IDs array is required")
    if len(document_ids) > MAX_BATCH_DOCUMENTS:
        raise ValueError(f"Maximum {MAX_BATCH_DOCUMENTS} documents per batch")
    ids: list[str] = []
    for raw in document_ids:
        try:
            doc_id = str(to_uuid(raw))
        except ValueError:
            raise ValueError(f"Invalid document ID: {raw}")
        if doc_id not in ids:
            ids.append(doc_id)
    return ids


def batch_stats(results: list[BatchItemResult]) -> dict:
    timed = [r.processingTime for r in results if r.processingTime is not None]
    successful = sum(1 for r in results if r.status == "success")
    return {
        "total": len(results),
        "successful": successful,
        "failed": len(results) - successful,
        "averageProcessingTime": sum(timed) / len(timed) if timed else 0.0,
    }


class BatchProcessor:
    def __init__(
        self,
        session_factory,
        pipeline: ProcessingPipeline,
        queue: ProcessingQueue,
        *,
        publisher: Publisher | None = None,
    ):
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.queue = queue
        self.publisher = publisher

    async def check_access(self, db: AsyncSession, document_ids: list[str], user_id: str | None) -> None:
        """LookupError unless every document exists (and belongs to user_id when given)."""
        stmt = select(Document.id).where(Document.id.in_([to_uuid(d) for d in document_ids]))
        if user_id:
            stmt = stmt.where(Document.user_id == user_id)
        result = await db.execute(stmt)
        found = {str(row) for row in result.scalars().all()}
        missing = [d for d in document_ids if d not in found]
        if missing:
            logger.warning("Batch rejected: %d of %d documents not accessible", len(missing), len(document_ids))
            raise LookupError("Some documents not found or access denied")

    async def _process_one(self, document_id: str, user_id: str | None, options: ProcessingOptions) -> BatchItemResult:
        started = time.monotonic()
        try:
            result = await self.pipeline.process_document(document_id, user_id, options)
        except Exception as e:
            logger.error("[%s] Batch item failed: %s", document_id, e, exc_info=True)
            return BatchItemResult(document_id, "failed", int((time.monotonic() - started) * 1000), error=str(e))
        return BatchItemResult(
            documentId=document_id,
            status="success" if result.success else "failed",
            processingTime=int((time.monotonic() - started) * 1000),
            stage=result.stage.value,
            fieldsDetected=result.data.get("fieldsDetected") if result.success else None,
            error=None if result.success else (result.error or result.message),
        )

    async def run(
        self,
        document_ids: list[str],
        user_id: str | None = None,
        options: ProcessingOptions | None = None,
        max_concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> BatchResult:
        ids = validate_batch(document_ids)
        options = options or ProcessingOptions()
        async with self.session_factory() as db:
            await self.check_access(db, ids, user_id)

        sem = asyncio.Semaphore(max(1, max_concurrency))

        async def _limited(doc_id: str) -> BatchItemResult:
            async with sem:
                return await self._process_one(doc_id, user_id, options)

        results = list(await asyncio.gather(*(_limited(d) for d in ids)))
        batch = BatchResult(results, batch_stats(results))
        logger.info(
            "Batch of %d finished: %d successful, %d failed",
            batch.stats["total"], batch.stats["successful"], batch.stats["failed"],
        )
        if options.publish_events:
            await self._publish_completed(batch, user_id)
        return batch

    async def enqueue(
        self,
        db: AsyncSession,
        document_ids: list[str],
        user_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        processor_types: list[str] | None = None,
        options: ProcessingOptions | None = None,
    ) -> list[UUID]:
        ids = validate_batch(document_ids)
        await self.check_access(db, ids, user_id)
        stored = (options or ProcessingOptions()).as_dict()
        return [await self.queue.enqueue(db, d, priority, processor_types, stored) for d in ids]

    async def _publish_completed(self, batch: BatchResult, user_id: str | None) -> None:
        if self.publisher is None:
            return
        try:
            async with self.session_factory() as db:
                await self.publisher(db, "batch.completed", {"userId": user_id, **batch.as_dict()})
        except Exception as e:
            logger.warning("Failed to publish batch.completed: %s", e)
