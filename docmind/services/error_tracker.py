"""Error audit persistence: one error_logs row per error handled by the recovery service."""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from docmind.models import ErrorLog
from datetime import datetime, timezone
from uuid import UUID
import uuid
import logging

logger = logging.getLogger(__name__)


def _to_uuid(value) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError):
        return None


async def log_error(
    db: AsyncSession,
    operation: str,
    error_type: str,
    error_message: str,
    recovery_strategy: str,
    recovery_success: bool = False,
    document_id: str | UUID | None = None,
    user_id: str | None = None,
    stage: str | None = None,
    context: dict | None = None,
) -> ErrorLog | None:
    """
    Insert an error_logs row and commit.

    Returns:
        The created ErrorLog, or None if persisting failed (the session is rolled back).
        Never raises; error auditing must not change the caller's control flow.
    """
    doc_uuid = _to_uuid(document_id)
    if document_id is not None and doc_uuid is None:
        logger.warning("log_error: ignoring malformed document_id %r", document_id)

    entry = ErrorLog(
        id=uuid.uuid4(),
        document_id=doc_uuid,
        user_id=user_id,
        operation=operation,
        stage=stage,
        error_type=error_type,
        error_message=(error_message or "")[:4000],
        recovery_strategy=recovery_strategy,
        recovery_success=bool(recovery_success),
        context=context or {},
        created_at=datetime.now(timezone.utc).replace(tzinfo=None),
    )
    db.add(entry)
    try:
        await db.commit()
        logger.info(
            "Logged to error_logs: id=%s operation=%s document_id=%s error_type=%s strategy=%s success=%s",
            entry.id, operation, doc_uuid, error_type, recovery_strategy, recovery_success,
        )
        return entry
    except Exception as e:
        try:
            await db.rollback()
        except Exception as rb_err:
            logger.error("Rollback after error_logs commit failure also failed: %s", rb_err)
        logger.error("Failed to commit error log (rollback done): %s", e, exc_info=True)
        return None


async def count_errors_by_type(db: AsyncSession, document_id: str | UUID | None = None) -> dict[str, int]:
    """Persisted error counts grouped by error_type (optionally for one document)."""
    stmt = select(ErrorLog.error_type, func.count(ErrorLog.id)).group_by(ErrorLog.error_type)
    doc_uuid = _to_uuid(document_id)
    if doc_uuid is not None:
        stmt = stmt.where(ErrorLog.document_id == doc_uuid)
    result = await db.execute(stmt)
    return {row[0]: int(row[1]) for row in result.all()}
