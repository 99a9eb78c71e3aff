"""Unit tests for docmind.services.pipeline (storage, DB helpers and recovery mocked)."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import fitz
import pytest

from docmind.services.detection import DetectedFieldData, DetectionAttempt, DetectionOutcome
from docmind.services.error_recovery import ErrorType, RecoveryResult, RecoveryStrategy
from docmind.services.field_types import FieldType
from docmind.services.pipeline import (
    ALREADY_PROCESSING,
    CANCELLED,
    ProcessingOptions,
    ProcessingPipeline,
    ProcessingStage,
    SingleFlightGuard,
    extract_pdf_text,
)


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


def _mock_db():
    db = AsyncMock()
    db.add = MagicMock()
    db.begin_nested = MagicMock(return_value=_Ctx(None))
    return db


def _document(doc_id, **kw):
    defaults = dict(
        id=doc_id, filename="form.pdf", file_path="gs://docmind-uploads/form.pdf",
        mime_type="application/pdf", status="pending", processing_error=None, doc_metadata={"owner": "x"},
    )
    defaults.update(kw)
    return SimpleNamespace(**defaults)


def _field(name="email", value="a@b.co"):
    return DetectedFieldData(
        name=name, label=name, field_type=FieldType.EMAIL, confidence=0.9, value=value,
        coordinates={"page": 1, "x": 1, "y": 1, "width": 1, "height": 1}, source_strategy="native_form_fields",
    )


def _outcome(fields):
    if fields:
        return DetectionOutcome(fields, "native_form_fields", [DetectionAttempt("native_form_fields", "success")])
    return DetectionOutcome([], None, [DetectionAttempt("synthetic", "failed", "x")], error="All detection strategies failed")


def _recovery(strategy=RecoveryStrategy.FAIL_FAST, error_type=ErrorType.UNKNOWN):
    recovery = MagicMock()
    recovery.handle_error = AsyncMock(return_value=RecoveryResult(False, strategy, "handled", error_type))
    return recovery


def _pipeline(db, *, fields=None, recovery=None, publisher=None):
    storage = MagicMock()
    storage.download = AsyncMock(return_value=b"%PDF-1.7")
    chain = MagicMock()
    chain.detect = AsyncMock(return_value=_outcome([_field()] if fields is None else fields))
    return ProcessingPipeline(
        lambda: _Ctx(db), storage, chain, recovery or _recovery(),
        publisher=publisher or AsyncMock(),
    )


@pytest.fixture
def db_helpers():
    names = [
        "get_document", "replace_detected_fields", "set_document_status", "mark_document_failed",
        "save_extraction", "get_extraction", "safe_rollback",
    ]
    patchers = {n: patch(f"docmind.services.pipeline.{n}", new=AsyncMock()) for n in names}
    mocks = {n: p.start() for n, p in patchers.items()}
    yield SimpleNamespace(**mocks)
    for p in patchers.values():
        p.stop()


def _published(pipeline) -> list[str]:
    return [c.args[1] for c in pipeline.publisher.await_args_list]


# ---------------------------------------------------------------------------
# Options / guard / text extraction
# ---------------------------------------------------------------------------

def test_processing_options_from_dict_ignores_unknown_keys():
    opts = ProcessingOptions.from_dict({"run_ocr": 1, "requeued_by": "x", "detect_fields": False})
    assert opts.run_ocr is True
    assert opts.detect_fields is False
    assert ProcessingOptions.from_dict(None) == ProcessingOptions()


def test_single_flight_guard():
    guard = SingleFlightGuard()
    token = guard.try_claim("d1")
    assert token is not None
    assert guard.try_claim("d1") is None
    assert guard.stage("d1") == ProcessingStage.UPLOAD
    assert guard.set_stage("d1", token, ProcessingStage.OCR)
    assert not guard.set_stage("d1", object(), ProcessingStage.STORAGE)
    assert guard.cancel("d1")
    assert "d1" not in guard
    # a newer run's claim survives the old run's release
    newer = guard.try_claim("d1")
    guard.release("d1", token)
    assert guard.owns("d1", newer)
    guard.release("d1", newer)
    assert len(guard) == 0


def test_extract_pdf_text_records_page_breaks():
    doc = fitz.open()
    for text in ("First page", "Second page"):
        doc.new_page().insert_text((72, 72), text)
    raw = doc.tobytes()
    doc.close()

    text, breaks, count = extract_pdf_text(raw)

    assert count == 2
    assert len(breaks) == 1
    assert text[breaks[0]:].startswith("Second page")
    assert text[:breaks[0]].rstrip().endswith("First page")


# ---------------------------------------------------------------------------
# process_document
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_process_document_success(db_helpers):
    doc_id = uuid4()
    document = _document(doc_id)
    db_helpers.get_document.return_value = document
    db = _mock_db()
    pipeline = _pipeline(db)

    result = await pipeline.process_document(str(doc_id), "user-1")

    assert result.success
    assert result.stage == ProcessingStage.COMPLETED
    assert result.data["fieldsDetected"] == 1
    assert result.data["strategy"] == "native_form_fields"
    assert result.data["validation"] == {"total": 1, "valid": 1, "invalid": 0, "warnings": 0}
    assert document.status == "completed"
    assert document.doc_metadata["owner"] == "x"
    assert document.doc_metadata["fieldDetection"]["fieldsDetected"] == 1
    assert document.doc_metadata["fieldDetection"]["attempts"][0]["outcome"] == "success"
    db_helpers.get_document.assert_awaited_once_with(db, doc_id, "user-1")
    db_helpers.replace_detected_fields.assert_awaited_once()
    assert _published(pipeline) == ["document.processed"]
    assert pipeline.get_status(doc_id) is None


@pytest.mark.asyncio
async def test_process_document_rejects_concurrent_run(db_helpers):
    doc_id = str(uuid4())
    db_helpers.get_document.return_value = _document(doc_id)
    pipeline = _pipeline(_mock_db())
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_download(*args, **kwargs):
        started.set()
        await release.wait()
        return b"%PDF-1.7"

    pipeline.storage.download = AsyncMock(side_effect=slow_download)

    first = asyncio.create_task(pipeline.process_document(doc_id))
    await started.wait()
    second = await pipeline.process_document(doc_id)
    release.set()
    first_result = await first

    assert not second.success
    assert second.error == ALREADY_PROCESSING
    assert first_result.success
    assert pipeline.storage.download.await_count == 1
    db_helpers.mark_document_failed.assert_not_awaited()
    assert _published(pipeline) == ["document.processed"]
    assert len(pipeline.guard) == 0


@pytest.mark.asyncio
async def test_process_document_missing_document_fails_at_upload(db_helpers):
    db_helpers.get_document.return_value = None
    recovery = _recovery()
    pipeline = _pipeline(_mock_db(), recovery=recovery)
    doc_id = str(uuid4())

    result = await pipeline.process_document(doc_id)

    assert not result.success
    assert result.stage == ProcessingStage.FAILED
    assert result.data["failed_stage"] == "upload"
    assert result.data["recovery"]["strategy"] == "fail_fast"
    db_helpers.mark_document_failed.assert_awaited_once()
    ctx = recovery.handle_error.await_args.args[1]
    assert (ctx.operation, ctx.document_id, ctx.stage) == ("document-processing", doc_id, "upload")
    assert _published(pipeline) == ["document.failed"]
    assert len(pipeline.guard) == 0


@pytest.mark.asyncio
async def test_process_document_storage_error_reports_recovery(db_helpers):
    db_helpers.get_document.return_value = _document(uuid4())
    recovery = _recovery(RecoveryStrategy.RETRY, ErrorType.STORAGE)
    pipeline = _pipeline(_mock_db(), recovery=recovery)
    pipeline.storage.download = AsyncMock(side_effect=RuntimeError("download failed"))

    result = await pipeline.process_document(str(uuid4()))

    assert result.error == "download failed"
    assert result.data["recovery"]["error_type"] == "storage"


@pytest.mark.asyncio
async def test_process_document_detection_failure_is_not_fatal(db_helpers):
    doc_id = uuid4()
    document = _document(doc_id)
    db_helpers.get_document.return_value = document
    recovery = _recovery()
    pipeline = _pipeline(_mock_db(), fields=[], recovery=recovery)

    result = await pipeline.process_document(str(doc_id))

    assert result.success
    assert result.data["fieldsDetected"] == 0
    assert "validation" not in result.data
    ctx = recovery.handle_error.await_args.args[1]
    assert ctx.operation == "field-detection"
    assert document.doc_metadata["fieldDetection"]["error"] == "All detection strategies failed"


@pytest.mark.asyncio
async def test_cancel_during_detection_stops_before_storage(db_helpers):
    doc_id = str(uuid4())
    db_helpers.get_document.return_value = _document(doc_id)
    db = _mock_db()
    pipeline = _pipeline(db)

    async def detect_then_cancel(key, raw, mime):
        pipeline.guard.cancel(key)
        return _outcome([_field()])

    pipeline.chain.detect = AsyncMock(side_effect=detect_then_cancel)

    result = await pipeline.process_document(doc_id)

    assert not result.success
    assert result.stage == ProcessingStage.CANCELLED
    assert result.error == CANCELLED
    db_helpers.replace_detected_fields.assert_not_awaited()
    assert db.commit.await_count == 1  # only the "processing" status write
    assert _published(pipeline) == []


@pytest.mark.asyncio
async def test_process_document_ocr_uses_pdf_text_layer(db_helpers):
    doc_id = uuid4()
    db_helpers.get_document.return_value = _document(doc_id)
    pipeline = _pipeline(_mock_db())

    with patch("docmind.services.pipeline.extract_pdf_text", return_value=("Hello.\n\nWorld.", [8], 2)):
        result = await pipeline.process_document(str(doc_id), options=ProcessingOptions(run_ocr=True))

    assert result.data["pageCount"] == 2
    kwargs = db_helpers.save_extraction.await_args.kwargs
    assert (kwargs["full_text"], kwargs["page_breaks"], kwargs["page_count"]) == ("Hello.\n\nWorld.", [8], 2)
    assert _published(pipeline) == ["extraction.completed", "document.processed"]


@pytest.mark.asyncio
async def test_process_document_ocr_skipped_for_images_without_document_ai(db_helpers):
    doc_id = uuid4()
    db_helpers.get_document.return_value = _document(doc_id, mime_type="image/png")
    pipeline = _pipeline(_mock_db())

    result = await pipeline.process_document(str(doc_id), options=ProcessingOptions(run_ocr=True))

    assert result.success
    assert "pageCount" not in result.data
    db_helpers.save_extraction.assert_not_awaited()


@pytest.mark.asyncio
async def test_embedding_failure_does_not_fail_document(db_helpers):
    doc_id = uuid4()
    document = _document(doc_id)
    db_helpers.get_document.return_value = document
    db_helpers.get_extraction.return_value = SimpleNamespace(full_text="Some text.", page_breaks=[])
    recovery = _recovery()
    pipeline = _pipeline(_mock_db(), recovery=recovery)

    with patch(
        "docmind.services.pipeline.process_document_embeddings",
        new=AsyncMock(side_effect=RuntimeError("provider down")),
    ):
        result = await pipeline.process_document(str(doc_id), options=ProcessingOptions(generate_embeddings=True))

    assert result.success
    assert "chunks" not in result.data
    assert document.doc_metadata["embeddings"] == {"status": "failed", "error": "provider down"}
    assert recovery.handle_error.await_args.args[1].operation == "embedding-generation"


@pytest.mark.asyncio
async def test_embeddings_generated_from_stored_extraction(db_helpers):
    doc_id = uuid4()
    document = _document(doc_id)
    db_helpers.get_document.return_value = document
    db_helpers.get_extraction.return_value = SimpleNamespace(full_text="Some text.", page_breaks=[])
    pipeline = _pipeline(_mock_db())

    with patch("docmind.services.pipeline.process_document_embeddings", new=AsyncMock(return_value=3)) as embed:
        result = await pipeline.process_document(str(doc_id), options=ProcessingOptions(generate_embeddings=True))

    assert result.data["chunks"] == 3
    assert embed.await_args.args[2] == "Some text."
    assert document.doc_metadata["embeddings"]["status"] == "completed"
    assert _published(pipeline) == ["embeddings.generated", "document.processed"]


@pytest.mark.asyncio
async def test_publish_events_can_be_disabled(db_helpers):
    db_helpers.get_document.return_value = _document(uuid4())
    pipeline = _pipeline(_mock_db())
    await pipeline.process_document(str(uuid4()), options=ProcessingOptions(publish_events=False))
    pipeline.publisher.assert_not_awaited()


@pytest.mark.asyncio
async def test_publisher_failure_is_swallowed(db_helpers):
    db_helpers.get_document.return_value = _document(uuid4())
    pipeline = _pipeline(_mock_db(), publisher=AsyncMock(side_effect=RuntimeError("outbox down")))
    result = await pipeline.process_document(str(uuid4()))
    assert result.success


# ---------------------------------------------------------------------------
# cancel
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_without_run_returns_false(db_helpers):
    pipeline = _pipeline(_mock_db())
    assert await pipeline.cancel(uuid4()) is False
    db_helpers.set_document_status.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_in_flight_marks_document_cancelled(db_helpers):
    doc_id = uuid4()
    pipeline = _pipeline(_mock_db())
    pipeline.guard.try_claim(str(doc_id))

    assert await pipeline.cancel(doc_id) is True
    assert db_helpers.set_document_status.await_args.args[1:] == (doc_id, "cancelled")
    assert pipeline.get_status(doc_id) is None


@pytest.mark.asyncio
async def test_cancel_after_completion_is_refused(db_helpers):
    doc_id = uuid4()
    pipeline = _pipeline(_mock_db())
    token = pipeline.guard.try_claim(str(doc_id))
    pipeline.guard.set_stage(str(doc_id), token, ProcessingStage.COMPLETED)

    assert await pipeline.cancel(doc_id) is False
    db_helpers.set_document_status.assert_not_awaited()
    assert pipeline.get_status(doc_id) == ProcessingStage.COMPLETED


@pytest.mark.asyncio
async def test_cancel_while_committing_leaves_document_completed(db_helpers):
    doc_id = str(uuid4())
    document = _document(doc_id)
    db_helpers.get_document.return_value = document
    db = _mock_db()
    pipeline = _pipeline(db)
    refused = []

    async def commit_then_cancel():
        if document.status == "completed":
            refused.append(await pipeline.cancel(doc_id))

    db.commit = AsyncMock(side_effect=commit_then_cancel)

    result = await pipeline.process_document(doc_id)

    assert result.success
    assert refused == [False]
    assert document.status == "completed"
    db_helpers.set_document_status.assert_not_awaited()


@pytest.mark.asyncio
async def test_pdf_text_layer_is_read_off_the_event_loop(db_helpers):
    doc_id = uuid4()
    db_helpers.get_document.return_value = _document(doc_id)
    pipeline = _pipeline(_mock_db())
    to_thread = AsyncMock(return_value=("Hello.", [], 1))

    with patch("docmind.services.pipeline.asyncio.to_thread", new=to_thread):
        result = await pipeline.process_document(str(doc_id), options=ProcessingOptions(run_ocr=True))

    assert result.success
    assert to_thread.await_args.args == (extract_pdf_text, b"%PDF-1.7")
