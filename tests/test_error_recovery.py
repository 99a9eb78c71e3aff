"""Unit tests for docmind.services.error_recovery."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from google.api_core import exceptions as gapi_exceptions

from docmind.services.error_recovery import (
    ErrorContext,
    ErrorRecoveryService,
    ErrorType,
    GoogleApiErrorClassifier,
    MessagePatternClassifier,
    RecoveryStrategy,
    fallback_for,
    select_strategy,
)


# --- classification ---

@pytest.mark.parametrize("message,expected", [
    ("Network request failed", ErrorType.NETWORK),
    ("Request timed out", ErrorType.NETWORK),
    ("401 Unauthorized", ErrorType.AUTH),
    ("Failed to download file from bucket", ErrorType.STORAGE),
    ("Document AI returned nothing", ErrorType.PROCESSING),
    ("invalid date", ErrorType.VALIDATION),
    ("Rate limit hit", ErrorType.QUOTA_EXCEEDED),
    ("something odd", ErrorType.UNKNOWN),
])
def test_message_pattern_classifier(message, expected):
    assert MessagePatternClassifier().classify(message) == expected


def test_google_api_errors_classified_by_type():
    c = GoogleApiErrorClassifier()
    assert c.classify(gapi_exceptions.ResourceExhausted("nope")) == ErrorType.QUOTA_EXCEEDED
    assert c.classify(gapi_exceptions.PermissionDenied("nope")) == ErrorType.AUTH
    assert c.classify(gapi_exceptions.ServiceUnavailable("nope")) == ErrorType.NETWORK
    assert c.classify(gapi_exceptions.InvalidArgument("nope")) == ErrorType.VALIDATION
    assert c.classify(ConnectionResetError("reset")) == ErrorType.NETWORK
    # falls through to message patterns
    assert c.classify(RuntimeError("bucket missing")) == ErrorType.STORAGE


# --- strategy table ---

@pytest.mark.parametrize("error_type,count,expected", [
    (ErrorType.NETWORK, 0, RecoveryStrategy.RETRY_WITH_BACKOFF),
    (ErrorType.NETWORK, 3, RecoveryStrategy.FAIL_FAST),
    (ErrorType.AUTH, 0, RecoveryStrategy.NOTIFY_USER),
    (ErrorType.STORAGE, 0, RecoveryStrategy.RETRY),
    (ErrorType.STORAGE, 1, RecoveryStrategy.FALLBACK),
    (ErrorType.STORAGE, 3, RecoveryStrategy.FAIL_FAST),
    (ErrorType.PROCESSING, 0, RecoveryStrategy.FALLBACK),
    (ErrorType.PROCESSING, 3, RecoveryStrategy.QUEUE_FOR_LATER),
    (ErrorType.VALIDATION, 5, RecoveryStrategy.LOG_AND_CONTINUE),
    (ErrorType.QUOTA_EXCEEDED, 0, RecoveryStrategy.QUEUE_FOR_LATER),
    (ErrorType.UNKNOWN, 0, RecoveryStrategy.LOG_AND_CONTINUE),
    (ErrorType.UNKNOWN, 3, RecoveryStrategy.FAIL_FAST),
])
def test_select_strategy(error_type, count, expected):
    assert select_strategy(error_type, count) == expected


def test_fallback_for_operation():
    assert fallback_for("field-detection")[1] == {"strategy": "synthetic_fields"}
    assert fallback_for("storage")[1] == {"strategy": "local_storage"}
    assert fallback_for("document-processing")[1] == {"strategy": "simplified_processing"}
    assert fallback_for("chat") == ("Using fallback strategy", {})


# --- service ---

@pytest.mark.asyncio
async def test_network_backoff_doubles_then_fails_fast():
    svc = ErrorRecoveryService()
    ctx = ErrorContext(operation="download", document_id="d1")
    delays = []
    for _ in range(3):
        r = await svc.handle_error(ConnectionError("connection reset"), ctx)
        assert r.strategy == RecoveryStrategy.RETRY_WITH_BACKOFF
        delays.append(r.retry_after_ms)
    assert delays == [1000, 2000, 4000]
    last = await svc.handle_error(ConnectionError("connection reset"), ctx)
    assert last.strategy == RecoveryStrategy.FAIL_FAST
    assert not last.success


@pytest.mark.asyncio
async def test_retry_counts_are_per_operation_and_document():
    svc = ErrorRecoveryService()
    await svc.handle_error("timeout", ErrorContext("download", "d1"))
    await svc.handle_error("timeout", ErrorContext("download", "d2"))
    assert svc.retry_count("download", "d1") == 1
    assert svc.retry_count("download", "d2") == 1
    svc.clear_retry_attempts("download", "d1")
    assert svc.retry_count("download", "d1") == 0


@pytest.mark.asyncio
async def test_auth_error_notifies_user():
    svc = ErrorRecoveryService()
    r = await svc.handle_error("permission denied", ErrorContext("storage"))
    assert r.strategy == RecoveryStrategy.NOTIFY_USER
    assert r.message == svc.user_message(ErrorType.AUTH)


@pytest.mark.asyncio
async def test_queue_for_later_calls_requeue_hook():
    requeue = AsyncMock(return_value="q-1")
    svc = ErrorRecoveryService(requeue=requeue)
    r = await svc.handle_error("quota exceeded", ErrorContext("document-processing", "d1"))
    assert r.strategy == RecoveryStrategy.QUEUE_FOR_LATER
    assert r.retry_after_ms == 60_000
    assert r.data == {"queued": True, "queue_id": "q-1"}
    requeue.assert_awaited_once()
    assert requeue.await_args.args[0] == "d1"


@pytest.mark.asyncio
async def test_requeue_failure_is_logged_not_raised():
    svc = ErrorRecoveryService(requeue=AsyncMock(side_effect=RuntimeError("db down")))
    r = await svc.handle_error("quota exceeded", ErrorContext("document-processing", "d1"))
    assert r.data["queued"] is False


@pytest.mark.asyncio
async def test_requeue_declined_is_not_reported_as_queued():
    svc = ErrorRecoveryService(requeue=AsyncMock(return_value=None))
    r = await svc.handle_error("quota exceeded", ErrorContext("queue-processing", "d1"))
    assert r.strategy == RecoveryStrategy.QUEUE_FOR_LATER
    assert r.data == {"queued": False}


@pytest.mark.asyncio
async def test_errors_are_persisted_through_session_factory():
    db = AsyncMock()
    factory = lambda: _Ctx(db)
    svc = ErrorRecoveryService(session_factory=factory)
    with patch("docmind.services.error_recovery.log_error", new=AsyncMock()) as log_error:
        await svc.handle_error(ValueError("invalid"), ErrorContext("validation", "d1", stage="validation"))
    kwargs = log_error.await_args.kwargs
    assert kwargs["error_type"] == "validation"
    assert kwargs["recovery_strategy"] == "log_and_continue"
    assert kwargs["recovery_success"] is True
    assert kwargs["context"]["error_class"] == "ValueError"


@pytest.mark.asyncio
async def test_error_stats():
    svc = ErrorRecoveryService()
    await svc.handle_error("invalid value", ErrorContext("a"))
    await svc.handle_error("permission denied", ErrorContext("b"))
    stats = svc.get_error_stats()
    assert stats["total_errors"] == 2
    assert stats["errors_by_type"] == {"validation": 1, "auth": 1}
    assert stats["recovery_success_rate"] == 50.0


class _Ctx:
    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        return self.db

    async def __aexit__(self, *exc):
        return False
