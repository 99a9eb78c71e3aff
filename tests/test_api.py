"""API tests for DocMind."""
import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from docmind.main import recovery_to_http
from docmind.services.error_recovery import ErrorType, RecoveryResult, RecoveryStrategy
from docmind.services.pipeline import ALREADY_PROCESSING, ProcessingResult, ProcessingStage


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


def test_invalid_uuid_is_400(client: TestClient):
    r = client.post("/documents/not-a-uuid/process", json={})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid document ID"


# ---------------------------------------------------------------------------
# recovery_to_http
# ---------------------------------------------------------------------------

def test_recovery_to_http_retry_strategies():
    assert recovery_to_http("retry", "network", 1500) == (503, {"Retry-After": "2"})
    assert recovery_to_http("retry_with_backoff", "network", 100) == (503, {"Retry-After": "1"})
    assert recovery_to_http("queue_for_later", "quota_exceeded", None) == (503, {"Retry-After": "1"})


def test_recovery_to_http_other_cases():
    assert recovery_to_http("notify_user", "auth") == (401, {})
    assert recovery_to_http("log_and_continue", "validation") == (200, {})
    assert recovery_to_http("fail_fast", "processing") == (500, {})


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

def test_process_success(client: TestClient, services):
    doc_id = str(uuid.uuid4())
    services.pipeline.process_document.return_value = ProcessingResult(
        success=True, stage=ProcessingStage.COMPLETED, message="done", data={"fieldsDetected": 3},
    )
    r = client.post(f"/documents/{doc_id}/process", json={"user_id": "u1"})
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["stage"] == "completed"
    assert data["data"] == {"fieldsDetected": 3}
    args = services.pipeline.process_document.await_args.args
    assert args[0] == doc_id and args[1] == "u1"


def test_process_already_running_is_409(client: TestClient, services):
    services.pipeline.process_document.return_value = ProcessingResult(
        success=False, stage=ProcessingStage.FAILED, error=ALREADY_PROCESSING,
    )
    r = client.post(f"/documents/{uuid.uuid4()}/process", json={})
    assert r.status_code == 409


def test_process_retryable_failure_sets_retry_after(client: TestClient, services):
    services.pipeline.process_document.return_value = ProcessingResult(
        success=False,
        stage=ProcessingStage.FAILED,
        error="connection reset",
        data={"recovery": {"strategy": "retry_with_backoff", "error_type": "network", "retry_after_ms": 4000}},
    )
    r = client.post(f"/documents/{uuid.uuid4()}/process", json={})
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "4"


def test_process_queue_returns_202(client: TestClient, services):
    queue_id = uuid.uuid4()
    services.queue.enqueue.return_value = queue_id
    r = client.post(f"/documents/{uuid.uuid4()}/process", json={"queue": True, "priority": 8, "run_ocr": True})
    assert r.status_code == 202
    assert r.json()["queueId"] == str(queue_id)
    kwargs = services.queue.enqueue.await_args.kwargs
    assert kwargs["priority"] == 8
    assert kwargs["processor_types"] == ["ocr", "formParser"]
    services.pipeline.process_document.assert_not_awaited()


def test_process_priority_out_of_range_is_422(client: TestClient):
    r = client.post(f"/documents/{uuid.uuid4()}/process", json={"priority": 11})
    assert r.status_code == 422


def test_status_not_found(client: TestClient):
    r = client.get(f"/documents/{uuid.uuid4()}/status")
    assert r.status_code == 404


def test_cancel_not_in_flight_is_404(client: TestClient):
    r = client.post(f"/documents/{uuid.uuid4()}/cancel")
    assert r.status_code == 404


def test_cancel_in_flight(client: TestClient, services):
    services.pipeline.cancel.return_value = True
    doc_id = str(uuid.uuid4())
    r = client.post(f"/documents/{doc_id}/cancel")
    assert r.status_code == 200
    assert r.json() == {"success": True, "document_id": doc_id}


def test_signed_url_storage_error_goes_through_recovery(client: TestClient, services, db):
    db.execute.return_value.scalar_one_or_none.return_value = SimpleNamespace(file_path="docs/a.pdf")
    services.storage.signed_url.side_effect = PermissionError("403 forbidden")
    services.recovery.handle_error.return_value = RecoveryResult(
        success=False, strategy=RecoveryStrategy.NOTIFY_USER, message="Authentication failed", error_type=ErrorType.AUTH,
    )
    r = client.get(f"/documents/{uuid.uuid4()}/signed-url")
    assert r.status_code == 401
    assert r.json()["error_type"] == "auth"


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

def test_queue_retry_unknown_item_is_404(client: TestClient):
    r = client.post(f"/queue/{uuid.uuid4()}/retry")
    assert r.status_code == 404


def test_queue_cleanup_passes_days(client: TestClient, services):
    services.queue.cleanup.return_value = 4
    r = client.post("/queue/cleanup?days=30")
    assert r.status_code == 200
    assert r.json()["deletedCount"] == 4
    assert services.queue.cleanup.await_args.args[1] == 30


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def test_webhook_register_unknown_event_is_400(client: TestClient):
    r = client.post("/webhooks/endpoints", json={"url": "https://example.com/hook", "events": ["document.exploded"]})
    assert r.status_code == 400


def test_webhook_unregister_invalid_id_is_400(client: TestClient):
    r = client.delete("/webhooks/endpoints/nope")
    assert r.status_code == 400


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class _Ctx:
    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        return self.db

    async def __aexit__(self, *exc):
        return False


def test_chat_stream_event_order(client: TestClient, services, db):
    session_id = uuid.uuid4()
    services.session_factory.side_effect = lambda: _Ctx(db)
    services.chat.get_or_create_session = AsyncMock(return_value=SimpleNamespace(id=session_id))

    async def _stream(db, sid, query, document_id, citations_out=None):
        citations_out.append({"index": 1, "page": 2})
        for token in ("Hel", "lo"):
            yield token

    services.chat.stream_response = _stream
    r = client.post(f"/documents/{uuid.uuid4()}/chat/stream", json={"message": "hi", "user_id": "u1"})
    assert r.status_code == 200
    events = [json.loads(line[len("data: "):]) for line in r.text.split("\n\n") if line.startswith("data: ")]
    assert [e["type"] for e in events] == ["citations", "content", "content", "done"]
    assert events[0]["citations"] == [{"index": 1, "page": 2}]
    assert "".join(e["content"] for e in events if e["type"] == "content") == "Hello"
    assert events[-1]["sessionId"] == str(session_id)


def test_chat_llm_failure_is_mapped(client: TestClient, services):
    services.chat.get_or_create_session.return_value = SimpleNamespace(id=uuid.uuid4())
    cause = TimeoutError("upstream timeout")
    err = RuntimeError("chat failed")
    err.__cause__ = cause
    services.chat.generate_response.side_effect = err
    services.recovery.handle_error.return_value = RecoveryResult(
        success=False, strategy=RecoveryStrategy.RETRY_WITH_BACKOFF, message="Network error",
        error_type=ErrorType.NETWORK, retry_after_ms=2000,
    )
    r = client.post(f"/documents/{uuid.uuid4()}/chat", json={"message": "hi", "user_id": "u1"})
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "2"
    assert services.recovery.handle_error.await_args.args[0] is cause


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

def test_batch_process_inline(client: TestClient, services):
    from docmind.services.batch import BatchItemResult, BatchResult

    doc_id = str(uuid.uuid4())
    services.batch.run.return_value = BatchResult(
        [BatchItemResult(doc_id, "success", 120)],
        {"total": 1, "successful": 1, "failed": 0, "averageProcessingTime": 120.0},
    )
    r = client.post("/documents/batch-process", json={"document_ids": [doc_id], "max_concurrency": 3})
    assert r.status_code == 200
    data = r.json()
    assert data["stats"]["successful"] == 1
    assert data["results"][0]["documentId"] == doc_id
    assert services.batch.run.await_args.args[3] == 3


def test_batch_process_too_many_documents_is_400(client: TestClient, services):
    services.batch.run.side_effect = ValueError("Maximum 50 documents per batch")
    r = client.post("/documents/batch-process", json={"document_ids": [str(uuid.uuid4())] * 51})
    assert r.status_code == 400


def test_batch_process_access_denied_is_404(client: TestClient, services):
    services.batch.run.side_effect = LookupError("Some documents not found or access denied")
    r = client.post("/documents/batch-process", json={"document_ids": [str(uuid.uuid4())], "user_id": "u1"})
    assert r.status_code == 404


def test_batch_process_queued(client: TestClient, services):
    services.batch.enqueue.return_value = [uuid.uuid4(), uuid.uuid4()]
    r = client.post("/documents/batch-process", json={"document_ids": [str(uuid.uuid4())] * 2, "queue": True})
    assert r.status_code == 202
    assert len(r.json()["queueIds"]) == 2
    services.batch.run.assert_not_awaited()
