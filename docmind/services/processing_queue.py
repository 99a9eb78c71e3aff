"""
Persisted priority queue of document-processing work items.

Lifecycle per item:
    pending -> processing (attempts += 1, started_at) -> completed
                                                      -> pending, rescheduled with backoff
                                                      -> failed (dead-letter, terminal)

Backoff after a failed run is ``2**attempts_before_run * 5 minutes``; the run that
brings attempts up to max_attempts dead-letters instead. Only ``retry_failed``
brings a failed item back.

Claiming uses ``SELECT ... FOR UPDATE SKIP LOCKED`` so several workers can poll the
same table without double-processing an item.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable
from uuid import UUID
import asyncio
import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from docmind.models import Document, QueueItem
from docmind.services.error_recovery import ErrorContext, ErrorRecoveryService
from docmind.services.pipeline import ProcessingOptions, ProcessingPipeline
from docmind.worker.db import _utc_now_naive, safe_commit, to_uuid

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PROCESSOR_TYPES = ["ocr", "formParser"]
BASE_RETRY_DELAY = timedelta(minutes=5)
RECOVERY_REQUEUE_DELAY = timedelta(seconds=60)

Processor = Callable[[QueueItem], Awaitable[Any]]


class QueueProcessingError(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Item state transitions (pure; caller commits)
# ---------------------------------------------------------------------------

def backoff_delay(attempts_before: int) -> timedelta:
    return BASE_RETRY_DELAY * (2 ** max(0, attempts_before))


def mark_started(item: QueueItem, now: datetime) -> None:
    item.status = "processing"
    item.started_at = now
    item.attempts = (item.attempts or 0) + 1


def mark_completed(item: QueueItem, now: datetime) -> None:
    item.status = "completed"
    item.completed_at = now
    item.error = None


def apply_failure(item: QueueItem, error: BaseException | str, now: datetime) -> str:
    """Reschedule with backoff or dead-letter. Expects attempts already incremented by mark_started."""
    item.error = str(error)[:2000]
    attempts_before = max(0, item.attempts - 1)
    if item.attempts >= item.max_attempts:
        item.status = "failed"
        item.completed_at = now
    else:
        item.status = "pending"
        item.started_at = None
        item.scheduled_at = now + backoff_delay(attempts_before)
    return item.status


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@dataclass
class QueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    average_wait_ms: float = 0.0
    average_processing_ms: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


def compute_stats(rows: Iterable[Any]) -> QueueStats:
    """rows: objects with status, scheduled_at, started_at, completed_at."""
    stats = QueueStats()
    waits: list[float] = []
    runs: list[float] = []
    for r in rows:
        if r.status in ("pending", "processing", "completed", "failed"):
            setattr(stats, r.status, getattr(stats, r.status) + 1)
        if r.started_at and r.scheduled_at:
            waits.append((r.started_at - r.scheduled_at).total_seconds() * 1000)
        if r.completed_at and r.started_at:
            runs.append((r.completed_at - r.started_at).total_seconds() * 1000)
    stats.average_wait_ms = sum(waits) / len(waits) if waits else 0.0
    stats.average_processing_ms = sum(runs) / len(runs) if runs else 0.0
    return stats


# ---------------------------------------------------------------------------
# Default processor
# ---------------------------------------------------------------------------

def options_for_item(item: QueueItem) -> ProcessingOptions:
    raw = dict(item.options or {})
    if "run_ocr" not in raw and "ocr" in (item.processor_types or []):
        raw["run_ocr"] = True
    return ProcessingOptions.from_dict(raw)


def pipeline_processor(pipeline: ProcessingPipeline) -> Processor:
    """Queue processor that runs the pipeline and raises when the run did not succeed."""

    async def _process(item: QueueItem) -> None:
        result = await pipeline.process_document(str(item.document_id), options=options_for_item(item))
        if not result.success:
            raise QueueProcessingError(result.error or result.message or "processing failed")

    return _process


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class ProcessingQueue:
    def __init__(
        self,
        session_factory,
        processor: Processor,
        *,
        recovery: ErrorRecoveryService | None = None,
        max_concurrent: int = 10,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.recovery = recovery
        self.max_concurrent = max_concurrent
        self._running: dict[UUID, asyncio.Task] = {}

    @property
    def running(self) -> int:
        return len(self._running)

    # --- producers ---

    async def enqueue(
        self,
        db: AsyncSession,
        document_id,
        priority: int = DEFAULT_PRIORITY,
        processor_types: list[str] | None = None,
        options: dict | None = None,
        *,
        scheduled_at: datetime | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> UUID:
        item = QueueItem(
            id=uuid.uuid4(),
            document_id=to_uuid(document_id),
            priority=priority,
            status="pending",
            attempts=0,
            max_attempts=max_attempts,
            scheduled_at=scheduled_at or _utc_now_naive(),
            processor_types=list(processor_types) if processor_types is not None else list(DEFAULT_PROCESSOR_TYPES),
            options=options or {},
        )
        db.add(item)
        await db.commit()
        logger.info("[ITEM %s] Enqueued document %s (priority %s)", item.id, document_id, priority)
        return item.id

    async def requeue_for_retry(self, document_id: str, context: ErrorContext) -> UUID | None:
        """Recovery hook for queue_for_later.

        Reuses an open item for the document instead of adding another. When the
        document's newest item is dead-lettered nothing is enqueued: only retry_failed
        brings a failed item back.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(QueueItem.id, QueueItem.status)
                .where(QueueItem.document_id == to_uuid(document_id))
                .order_by(QueueItem.created_at.desc())
                .limit(1)
            )
            latest = result.first()
            if latest is not None:
                item_id, status = latest
                if status in ("pending", "processing"):
                    return item_id
                if status == "failed":
                    logger.info("[ITEM %s] Dead-lettered; not requeueing document %s", item_id, document_id)
                    return None
            return await self.enqueue(
                db, document_id,
                options={"requeued_by": context.operation},
                scheduled_at=_utc_now_naive() + RECOVERY_REQUEUE_DELAY,
            )

    # --- consumers ---

    async def select_ready(self, db: AsyncSession, limit: int) -> list[QueueItem]:
        """Claim up to *limit* ready items: mark them processing and commit."""
        if limit <= 0:
            return []
        now = _utc_now_naive()
        result = await db.execute(
            select(QueueItem)
            .where(
                QueueItem.status == "pending",
                QueueItem.attempts < QueueItem.max_attempts,
                QueueItem.scheduled_at <= now,
            )
            .order_by(QueueItem.priority.desc(), QueueItem.scheduled_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        items = list(result.scalars().all())
        for item in items:
            mark_started(item, now)
        if items:
            await db.commit()
        return items

    async def process_round(self) -> int:
        """Claim as many items as there are free slots and start them. Returns the number started."""
        capacity = self.max_concurrent - len(self._running)
        if capacity <= 0:
            return 0
        async with self.session_factory() as db:
            items = await self.select_ready(db, capacity)
            claimed = [(item.id, item.document_id) for item in items]
        for item_id, doc_id in claimed:
            task = asyncio.create_task(self._run_item(item_id), name=f"queue-item-{item_id}")
            self._running[item_id] = task
            task.add_done_callback(lambda _t, k=item_id: self._running.pop(k, None))
            logger.info("[ITEM %s] Started for document %s", item_id, doc_id)
        return len(claimed)

    async def wait_any(self, timeout: float | None = None) -> None:
        if self._running:
            await asyncio.wait(list(self._running.values()), timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

    async def drain(self) -> None:
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    async def run_forever(self, poll_interval: float = 2.0, error_sleep: float = 5.0) -> None:
        poll_count = 0
        while True:
            try:
                started = await self.process_round()
                if self._running:
                    # Next round as soon as any slot frees up (or new work may be due).
                    await self.wait_any(timeout=poll_interval)
                elif not started:
                    poll_count += 1
                    if poll_count % 10 == 0:
                        logger.debug("No ready queue items (poll #%s)", poll_count)
                    await asyncio.sleep(poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in queue loop: %s", e, exc_info=True)
                await asyncio.sleep(error_sleep)

    async def _run_item(self, item_id: UUID) -> None:
        """Run one claimed item in its own session. Never raises: a failing item cannot affect its siblings."""
        try:
            async with self.session_factory() as db:
                item = await db.get(QueueItem, item_id)
                if item is None:
                    logger.warning("[ITEM %s] Vanished before processing", item_id)
                    return
                try:
                    await self.processor(item)
                except Exception as e:
                    status = apply_failure(item, e, _utc_now_naive())
                    await safe_commit(db)
                    logger.warning(
                        "[ITEM %s] Failed (attempt %d/%d) -> %s: %s",
                        item_id, item.attempts, item.max_attempts, status, e,
                    )
                    if self.recovery is not None:
                        await self.recovery.handle_error(e, ErrorContext(
                            operation="queue-processing",
                            document_id=str(item.document_id),
                            metadata={"queue_id": str(item_id), "attempts": item.attempts, "status": status},
                        ))
                    return
                mark_completed(item, _utc_now_naive())
                await safe_commit(db)
                logger.info("[ITEM %s] Completed", item_id)
        except Exception as e:
            logger.error("[ITEM %s] Unexpected error: %s", item_id, e, exc_info=True)

    # --- maintenance ---

    async def stats(self, db: AsyncSession) -> QueueStats:
        result = await db.execute(
            select(QueueItem.status, QueueItem.scheduled_at, QueueItem.started_at, QueueItem.completed_at)
        )
        return compute_stats(result.all())

    async def cleanup(self, db: AsyncSession, days_old: int = 7) -> int:
        cutoff = _utc_now_naive() - timedelta(days=days_old)
        result = await db.execute(
            delete(QueueItem)
            .where(
                QueueItem.status.in_(("completed", "failed")),
                QueueItem.completed_at < cutoff,
            )
            .returning(QueueItem.id)
        )
        deleted = len(result.fetchall())
        await db.commit()
        logger.info("Queue cleanup: removed %d items older than %d days", deleted, days_old)
        return deleted

    async def retry_failed(self, db: AsyncSession, item_id) -> bool:
        """Explicit requeue of a dead-lettered item. Returns False unless the item exists and is failed."""
        item = await db.get(QueueItem, to_uuid(item_id))
        if item is None or item.status != "failed":
            return False
        item.status = "pending"
        item.attempts = 0
        item.error = None
        item.started_at = None
        item.completed_at = None
        item.scheduled_at = _utc_now_naive()
        document = await db.get(Document, item.document_id)
        if document is not None:
            document.status = "pending"
        await db.commit()
        logger.info("[ITEM %s] Requeued after failure", item.id)
        return True
