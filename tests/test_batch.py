"""Unit tests for docmind.services.batch."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest

from docmind.services.batch import (
    MAX_BATCH_DOCUMENTS,
    BatchItemResult,
    BatchProcessor,
    batch_stats,
    validate_batch,
)
from docmind.services.pipeline import ProcessingOptions, ProcessingResult, ProcessingStage


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _Ctx:
    def __init__(self, value):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, *exc):
        return False


def _mock_db(found_ids=()):
    db = AsyncMock()
    result = MagicMock()
    result.scalars.return_value.all.return_value = [UUID(str(i)) for i in found_ids]
    db.execute = AsyncMock(return_value=result)
    return db


def _ok(fields=2):
    return ProcessingResult(True, ProcessingStage.COMPLETED, "done", data={"fieldsDetected": fields})


def _processor(db, pipeline, queue=None, publisher=None):
    return BatchProcessor(lambda: _Ctx(db), pipeline, queue or SimpleNamespace(enqueue=AsyncMock()), publisher=publisher)


# ---------------------------------------------------------------------------
# validate_batch / batch_stats
# ---------------------------------------------------------------------------

def test_validate_batch_limits():
    with pytest.raises(ValueError, match="required"):
        validate_batch([])
    with pytest.raises(ValueError, match="Maximum 50"):
        validate_batch([str(uuid4()) for _ in range(MAX_BATCH_DOCUMENTS + 1)])
    with pytest.raises(ValueError, match="Invalid document ID"):
        validate_batch(["nope"])


def test_validate_batch_accepts_fifty_and_drops_duplicates():
    ids = [str(uuid4()) for _ in range(MAX_BATCH_DOCUMENTS)]
    assert validate_batch(ids) == ids
    assert validate_batch([ids[0], ids[0].upper(), ids[1]]) == [ids[0], ids[1]]


def test_batch_stats():
    stats = batch_stats([
        BatchItemResult("a", "success", 100),
        BatchItemResult("b", "failed", 300),
        BatchItemResult("c", "failed", None),
    ])
    assert stats == {"total": 3, "successful": 1, "failed": 2, "averageProcessingTime": 200.0}


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_run_bounds_concurrency_and_isolates_failures():
    ids = [str(uuid4()) for _ in range(7)]
    in_flight = 0
    peak = 0

    async def process_document(doc_id, user_id, options):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        in_flight -= 1
        if doc_id == ids[3]:
            raise RuntimeError("storage exploded")
        if doc_id == ids[4]:
            return ProcessingResult(False, ProcessingStage.FAILED, "Document processing failed", error="bad pdf")
        return _ok()

    pipeline = SimpleNamespace(process_document=process_document)
    publisher = AsyncMock()
    batch = await _processor(_mock_db(ids), pipeline, publisher=publisher).run(ids, "u1", max_concurrency=2)

    assert peak <= 2
    assert [r.documentId for r in batch.results] == ids
    assert batch.stats["total"] == 7
    assert batch.stats["successful"] == 5
    assert batch.results[3].error == "storage exploded"
    assert (batch.results[4].status, batch.results[4].error) == ("failed", "bad pdf")
    assert batch.results[0].fieldsDetected == 2

    publisher.assert_awaited_once()
    event_type, payload = publisher.await_args.args[1:]
    assert event_type == "batch.completed"
    assert payload["userId"] == "u1"
    assert payload["stats"]["failed"] == 2


@pytest.mark.asyncio
async def test_run_rejects_inaccessible_documents_before_processing():
    ids = [str(uuid4()), str(uuid4())]
    pipeline = SimpleNamespace(process_document=AsyncMock(return_value=_ok()))
    with pytest.raises(LookupError):
        await _processor(_mock_db(ids[:1]), pipeline).run(ids, "u1")
    pipeline.process_document.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_without_events_skips_publish():
    doc_id = str(uuid4())
    publisher = AsyncMock()
    pipeline = SimpleNamespace(process_document=AsyncMock(return_value=_ok()))
    await _processor(_mock_db([doc_id]), pipeline, publisher=publisher).run(
        [doc_id], options=ProcessingOptions(publish_events=False),
    )
    publisher.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_batch():
    doc_id = str(uuid4())
    pipeline = SimpleNamespace(process_document=AsyncMock(return_value=_ok()))
    publisher = AsyncMock(side_effect=RuntimeError("db down"))
    batch = await _processor(_mock_db([doc_id]), pipeline, publisher=publisher).run([doc_id])
    assert batch.stats["successful"] == 1


# ---------------------------------------------------------------------------
# enqueue
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_enqueue_adds_one_item_per_document():
    ids = [str(uuid4()), str(uuid4())]
    queue = SimpleNamespace(enqueue=AsyncMock(side_effect=[uuid4(), uuid4()]))
    db = _mock_db(ids)
    queue_ids = await _processor(db, SimpleNamespace(), queue).enqueue(db, ids, "u1", priority=9)
    assert len(queue_ids) == 2
    first = queue.enqueue.await_args_list[0].args
    assert first[1] == ids[0] and first[2] == 9
    assert first[4]["detect_fields"] is True
