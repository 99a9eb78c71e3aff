"""Error classification and recovery strategy selection.

Flow for every handled error: classify -> select strategy (type x retry count) ->
build RecoveryResult -> append in-memory audit entry -> persist error_logs row.

Classification is pluggable (ErrorClassifier). The default MessagePatternClassifier is
a best-effort substring heuristic; GoogleApiErrorClassifier maps structured
google.api_core exceptions first and only falls back to message patterns.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable
import logging

from google.api_core import exceptions as gapi_exceptions

from docmind.services.error_tracker import log_error

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BASE_BACKOFF_MS = 1000
QUEUE_RETRY_AFTER_MS = 60_000


class ErrorType(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    STORAGE = "storage"
    PROCESSING = "processing"
    VALIDATION = "validation"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    FALLBACK = "fallback"
    QUEUE_FOR_LATER = "queue_for_later"
    NOTIFY_USER = "notify_user"
    LOG_AND_CONTINUE = "log_and_continue"
    FAIL_FAST = "fail_fast"


USER_MESSAGES: dict[ErrorType, str] = {
    ErrorType.NETWORK: "Network connection issue. Please check your internet and try again.",
    ErrorType.AUTH: "Authentication required. Please log in and try again.",
    ErrorType.STORAGE: "File storage issue. Please try uploading again.",
    ErrorType.PROCESSING: "Document processing failed. We'll retry automatically.",
    ErrorType.VALIDATION: "Some fields contain invalid data. Please review and correct.",
    ErrorType.QUOTA_EXCEEDED: "Processing limit reached. Please try again later.",
    ErrorType.UNKNOWN: "An unexpected error occurred. Please try again.",
}


@dataclass
class ErrorContext:
    operation: str
    document_id: str | None = None
    user_id: str | None = None
    stage: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def retry_key(self) -> tuple[str, str]:
        return (self.operation, str(self.document_id) if self.document_id else "global")


@dataclass
class RecoveryResult:
    success: bool
    strategy: RecoveryStrategy
    message: str
    error_type: ErrorType
    retry_after_ms: int | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorLogEntry:
    timestamp: datetime
    operation: str
    document_id: str | None
    error_type: ErrorType
    message: str
    strategy: RecoveryStrategy
    success: bool


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class ErrorClassifier(ABC):
    @abstractmethod
    def classify(self, error: BaseException | str) -> ErrorType:
        pass


class MessagePatternClassifier(ErrorClassifier):
    """Substring heuristics over the lowercased error message. First match wins."""

    RULES: list[tuple[ErrorType, tuple[str, ...]]] = [
        (ErrorType.NETWORK, ("network", "fetch", "timeout", "timed out", "connection", "unavailable", "deadline")),
        (ErrorType.AUTH, ("unauthorized", "unauthenticated", "forbidden", "permission denied", "credential")),
        (ErrorType.STORAGE, ("storage", "upload", "download", "bucket")),
        (ErrorType.PROCESSING, ("processing", "document ai")),
        (ErrorType.VALIDATION, ("validation", "invalid")),
        (ErrorType.QUOTA_EXCEEDED, ("quota", "limit", "resource exhausted")),
    ]

    def classify(self, error: BaseException | str) -> ErrorType:
        message = str(error).lower()
        for error_type, needles in self.RULES:
            if any(n in message for n in needles):
                return error_type
        return ErrorType.UNKNOWN


class GoogleApiErrorClassifier(ErrorClassifier):
    """Structured classification of google.api_core errors (Document AI, GCS), then message patterns."""

    EXCEPTION_TYPES: list[tuple[type, ErrorType]] = [
        (gapi_exceptions.ResourceExhausted, ErrorType.QUOTA_EXCEEDED),
        (gapi_exceptions.TooManyRequests, ErrorType.QUOTA_EXCEEDED),
        (gapi_exceptions.DeadlineExceeded, ErrorType.NETWORK),
        (gapi_exceptions.ServiceUnavailable, ErrorType.NETWORK),
        (gapi_exceptions.Unauthenticated, ErrorType.AUTH),
        (gapi_exceptions.Unauthorized, ErrorType.AUTH),
        (gapi_exceptions.PermissionDenied, ErrorType.AUTH),
        (gapi_exceptions.Forbidden, ErrorType.AUTH),
        (gapi_exceptions.InvalidArgument, ErrorType.VALIDATION),
        (gapi_exceptions.BadRequest, ErrorType.VALIDATION),
    ]

    def __init__(self, fallback: ErrorClassifier | None = None):
        self.fallback = fallback or MessagePatternClassifier()

    def classify(self, error: BaseException | str) -> ErrorType:
        if isinstance(error, BaseException):
            for exc_type, error_type in self.EXCEPTION_TYPES:
                if isinstance(error, exc_type):
                    return error_type
            if isinstance(error, (ConnectionError, TimeoutError)):
                return ErrorType.NETWORK
        return self.fallback.classify(error)


def select_strategy(error_type: ErrorType, retry_count: int, max_retries: int = MAX_RETRIES) -> RecoveryStrategy:
    """Fixed recovery table: (error type, retries so far) -> strategy."""
    exhausted = retry_count >= max_retries
    if error_type == ErrorType.NETWORK:
        return RecoveryStrategy.FAIL_FAST if exhausted else RecoveryStrategy.RETRY_WITH_BACKOFF
    if error_type == ErrorType.AUTH:
        return RecoveryStrategy.NOTIFY_USER
    if error_type == ErrorType.STORAGE:
        if exhausted:
            return RecoveryStrategy.FAIL_FAST
        return RecoveryStrategy.RETRY if retry_count == 0 else RecoveryStrategy.FALLBACK
    if error_type == ErrorType.PROCESSING:
        return RecoveryStrategy.QUEUE_FOR_LATER if exhausted else RecoveryStrategy.FALLBACK
    if error_type == ErrorType.VALIDATION:
        return RecoveryStrategy.LOG_AND_CONTINUE
    if error_type == ErrorType.QUOTA_EXCEEDED:
        return RecoveryStrategy.QUEUE_FOR_LATER
    return RecoveryStrategy.FAIL_FAST if exhausted else RecoveryStrategy.LOG_AND_CONTINUE


def fallback_for(operation: str) -> tuple[str, dict]:
    """Substitute outcome for a FALLBACK recovery, by operation name."""
    op = (operation or "").lower()
    if "field-detection" in op or "detection" in op:
        return "Using synthetic field detection", {"strategy": "synthetic_fields"}
    if "storage" in op:
        return "Using local storage fallback", {"strategy": "local_storage"}
    if "processing" in op:
        return "Using simplified processing", {"strategy": "simplified_processing"}
    return "Using fallback strategy", {}


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

RequeueHook = Callable[[str, ErrorContext], Awaitable[Any]]


class ErrorRecoveryService:
    """Construct once per process and pass to the pipeline, queue and route layer."""

    def __init__(
        self,
        classifier: ErrorClassifier | None = None,
        *,
        session_factory=None,
        requeue: RequeueHook | None = None,
        max_retries: int = MAX_RETRIES,
        base_backoff_ms: int = BASE_BACKOFF_MS,
    ):
        self.classifier = classifier or GoogleApiErrorClassifier()
        self.session_factory = session_factory
        self.requeue = requeue
        self.max_retries = max_retries
        self.base_backoff_ms = base_backoff_ms
        self._retry_attempts: dict[tuple[str, str], int] = {}
        self._log: list[ErrorLogEntry] = []

    def classify(self, error: BaseException | str) -> ErrorType:
        return self.classifier.classify(error)

    def retry_count(self, operation: str, document_id: str | None = None) -> int:
        return self._retry_attempts.get(ErrorContext(operation, document_id).retry_key, 0)

    def clear_retry_attempts(self, operation: str, document_id: str | None = None) -> None:
        self._retry_attempts.pop(ErrorContext(operation, document_id).retry_key, None)

    def user_message(self, error_type: ErrorType) -> str:
        return USER_MESSAGES.get(error_type, USER_MESSAGES[ErrorType.UNKNOWN])

    def _decide(self, error: BaseException | str, ctx: ErrorContext) -> RecoveryResult:
        """Synchronous: classify, bump the retry counter, build the result."""
        error_type = self.classify(error)
        key = ctx.retry_key
        count = self._retry_attempts.get(key, 0)
        strategy = select_strategy(error_type, count, self.max_retries)
        attempt = count + 1
        self._retry_attempts[key] = attempt
        message = str(error)

        if strategy == RecoveryStrategy.RETRY_WITH_BACKOFF:
            backoff_ms = self.base_backoff_ms * 2 ** (attempt - 1)
            return RecoveryResult(
                False, strategy, f"Retrying operation after {backoff_ms}ms", error_type,
                retry_after_ms=backoff_ms, data={"retry_count": attempt, "backoff_ms": backoff_ms},
            )
        if strategy == RecoveryStrategy.RETRY:
            return RecoveryResult(
                False, strategy, f"Retrying operation (attempt {attempt})", error_type,
                retry_after_ms=0, data={"retry_count": attempt},
            )
        if strategy == RecoveryStrategy.FALLBACK:
            fb_message, fb_data = fallback_for(ctx.operation)
            return RecoveryResult(True, strategy, fb_message, error_type, data=fb_data)
        if strategy == RecoveryStrategy.QUEUE_FOR_LATER:
            return RecoveryResult(
                False, strategy, "Operation queued for later retry", error_type,
                retry_after_ms=QUEUE_RETRY_AFTER_MS, data={"queued": False},
            )
        if strategy == RecoveryStrategy.NOTIFY_USER:
            return RecoveryResult(False, strategy, self.user_message(error_type), error_type, data={"notified": True})
        if strategy == RecoveryStrategy.LOG_AND_CONTINUE:
            return RecoveryResult(True, strategy, "Error logged, continuing with operation", error_type, data={"logged": True})
        return RecoveryResult(False, RecoveryStrategy.FAIL_FAST, message, error_type, data={"failed": True})

    async def handle_error(self, error: BaseException | str, context: ErrorContext) -> RecoveryResult:
        result = self._decide(error, context)
        logger.warning(
            "[%s] %s error in %s -> %s (retry %s)",
            context.document_id or "global", result.error_type.value, context.operation,
            result.strategy.value, self._retry_attempts.get(context.retry_key),
        )

        if result.strategy == RecoveryStrategy.QUEUE_FOR_LATER and context.document_id and self.requeue:
            try:
                queued = await self.requeue(str(context.document_id), context)
                result.data["queued"] = queued is not None
                if queued is not None:
                    result.data["queue_id"] = str(queued)
            except Exception as e:
                logger.error("[%s] Failed to queue for retry: %s", context.document_id, e, exc_info=True)

        self._log.append(ErrorLogEntry(
            timestamp=datetime.now(timezone.utc),
            operation=context.operation,
            document_id=context.document_id,
            error_type=result.error_type,
            message=str(error),
            strategy=result.strategy,
            success=result.success,
        ))
        await self._persist(error, context, result)
        return result

    async def _persist(self, error: BaseException | str, context: ErrorContext, result: RecoveryResult) -> None:
        if self.session_factory is None:
            return
        try:
            async with self.session_factory() as db:
                await log_error(
                    db,
                    operation=context.operation,
                    error_type=result.error_type.value,
                    error_message=str(error),
                    recovery_strategy=result.strategy.value,
                    recovery_success=result.success,
                    document_id=context.document_id,
                    user_id=context.user_id,
                    stage=context.stage,
                    context={**(context.metadata or {}), "error_class": type(error).__name__},
                )
        except Exception as e:
            logger.error("Failed to persist error log for %s: %s", context.operation, e, exc_info=True)

    @property
    def entries(self) -> list[ErrorLogEntry]:
        return list(self._log)

    def get_error_stats(self) -> dict:
        by_type: dict[str, int] = {}
        successes = 0
        for entry in self._log:
            by_type[entry.error_type.value] = by_type.get(entry.error_type.value, 0) + 1
            if entry.success:
                successes += 1
        total = len(self._log)
        return {
            "total_errors": total,
            "errors_by_type": by_type,
            "recovery_success_rate": (successes / total) * 100 if total else 0.0,
        }
