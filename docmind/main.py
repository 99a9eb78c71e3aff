import json
import logging
import math
from typing import Optional, List
from uuid import UUID

from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docmind.config import ENV
from docmind.database import AsyncSessionLocal, get_db
from docmind.models import DetectedField, Document
from docmind.services.error_recovery import ErrorContext, ErrorType, RecoveryResult, RecoveryStrategy
from docmind.services.error_tracker import count_errors_by_type
from docmind.services.pipeline import ALREADY_PROCESSING, ProcessingOptions
from docmind.services.webhooks import (
    WebhookDispatcher,
    list_endpoints,
    publish,
    register_endpoint,
    unregister_endpoint,
)
from docmind.services.wiring import Services, build_services

# Set up logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - [API] - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

app = FastAPI(title="DocMind", version="0.1.0")

# CORS - in dev allow any origin
cors_origins = ["*"] if ENV == "dev" else []
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,  # must be False when allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
)

_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(AsyncSessionLocal)
    return _services


@app.on_event("startup")
async def start_services():
    get_services().pool.start()


@app.on_event("shutdown")
async def stop_services():
    if _services is not None:
        await _services.shutdown()


# ---------------------------------------------------------------------------
# Recovery -> HTTP
# ---------------------------------------------------------------------------

_RETRY_STRATEGIES = {
    RecoveryStrategy.RETRY.value,
    RecoveryStrategy.RETRY_WITH_BACKOFF.value,
    RecoveryStrategy.QUEUE_FOR_LATER.value,
}


def recovery_to_http(strategy: str, error_type: str, retry_after_ms: Optional[int] = None) -> tuple[int, dict]:
    """Status code and headers for a recovery decision."""
    if strategy in _RETRY_STRATEGIES:
        seconds = max(1, math.ceil((retry_after_ms or 0) / 1000))
        return 503, {"Retry-After": str(seconds)}
    if error_type == ErrorType.AUTH.value:
        return 401, {}
    if error_type == ErrorType.VALIDATION.value:
        return 200, {}
    return 500, {}


def recovery_response(result: RecoveryResult, **extra) -> JSONResponse:
    status, headers = recovery_to_http(result.strategy.value, result.error_type.value, result.retry_after_ms)
    body = {
        "success": status == 200,
        "error": result.message,
        "error_type": result.error_type.value,
        "strategy": result.strategy.value,
        **extra,
    }
    if status == 200:
        body["warnings"] = [result.message]
    return JSONResponse(status_code=status, content=body, headers=headers)


async def handle_route_error(services: Services, error: Exception, operation: str, document_id: Optional[str] = None) -> JSONResponse:
    logger.error("%s failed for %s: %s", operation, document_id or "global", error, exc_info=True)
    result = await services.recovery.handle_error(error, ErrorContext(operation=operation, document_id=document_id))
    return recovery_response(result)


def _parse_uuid(value: str, what: str = "document ID") -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {what}")


@app.get("/health")
def health_check():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

class ProcessRequest(BaseModel):
    user_id: Optional[str] = None
    detect_fields: bool = True
    run_ocr: bool = False
    validate_fields: bool = True
    generate_embeddings: bool = False
    queue: bool = False  # enqueue instead of processing inline
    priority: int = Field(default=5, ge=1, le=10)


@app.post("/documents/{document_id}/process")
async def process_document(
    document_id: str,
    body: ProcessRequest = ProcessRequest(),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    _parse_uuid(document_id)
    options = ProcessingOptions(
        detect_fields=body.detect_fields,
        run_ocr=body.run_ocr,
        validate_fields=body.validate_fields,
        generate_embeddings=body.generate_embeddings,
    )
    if body.queue:
        queue_id = await services.queue.enqueue(
            db, document_id, priority=body.priority,
            processor_types=["ocr", "formParser"] if body.run_ocr else ["formParser"],
            options=options.as_dict(),
        )
        return JSONResponse(status_code=202, content={"success": True, "queued": True, "queueId": str(queue_id)})

    result = await services.pipeline.process_document(document_id, body.user_id, options)
    payload = {
        "success": result.success,
        "stage": result.stage.value,
        "message": result.message,
        "error": result.error,
        "data": result.data,
    }
    if result.success:
        return payload
    if result.error == ALREADY_PROCESSING:
        return JSONResponse(status_code=409, content=payload)
    recovery = result.data.get("recovery")
    if recovery:
        status, headers = recovery_to_http(recovery["strategy"], recovery["error_type"], recovery.get("retry_after_ms"))
        return JSONResponse(status_code=status, content=payload, headers=headers)
    return JSONResponse(status_code=409, content=payload)  # cancelled


class BatchProcessRequest(BaseModel):
    document_ids: List[str]
    user_id: Optional[str] = None
    detect_fields: bool = True
    run_ocr: bool = False
    validate_fields: bool = True
    generate_embeddings: bool = False
    max_concurrency: int = Field(default=5, ge=1, le=20)
    queue: bool = False
    priority: int = Field(default=5, ge=1, le=10)
    processor_types: Optional[List[str]] = None


@app.post("/documents/batch-process")
async def batch_process(
    body: BatchProcessRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Up to 50 documents; inline with bounded concurrency, or one queue item each."""
    options = ProcessingOptions(
        detect_fields=body.detect_fields,
        run_ocr=body.run_ocr,
        validate_fields=body.validate_fields,
        generate_embeddings=body.generate_embeddings,
    )
    try:
        if body.queue:
            queue_ids = await services.batch.enqueue(
                db, body.document_ids, body.user_id, body.priority, body.processor_types, options,
            )
            return JSONResponse(
                status_code=202,
                content={"success": True, "queued": True, "queueIds": [str(q) for q in queue_ids]},
            )
        result = await services.batch.run(body.document_ids, body.user_id, options, body.max_concurrency)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "message": "Batch processing completed", **result.as_dict()}


@app.get("/documents/{document_id}/status")
async def get_document_status(
    document_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    doc_uuid = _parse_uuid(document_id)
    result = await db.execute(select(Document).where(Document.id == doc_uuid))
    document = result.scalar_one_or_none()
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    stage = services.pipeline.get_status(document_id)
    metadata = document.doc_metadata or {}
    return {
        "document_id": str(document.id),
        "filename": document.filename,
        "status": document.status,
        "stage": stage.value if stage else None,
        "processing_attempts": document.processing_attempts,
        "processing_error": document.processing_error,
        "field_detection": metadata.get("fieldDetection"),
        "validation": metadata.get("validation"),
        "embeddings": metadata.get("embeddings"),
        "updated_at": document.updated_at.isoformat() if document.updated_at else None,
    }


@app.post("/documents/{document_id}/cancel")
async def cancel_processing(document_id: str, services: Services = Depends(get_services)):
    _parse_uuid(document_id)
    cancelled = await services.pipeline.cancel(document_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail="Document is not being processed")
    return {"success": True, "document_id": document_id}


@app.get("/documents/{document_id}/fields")
async def get_document_fields(document_id: str, db: AsyncSession = Depends(get_db)):
    doc_uuid = _parse_uuid(document_id)
    result = await db.execute(
        select(DetectedField)
        .where(DetectedField.document_id == doc_uuid)
        .order_by(DetectedField.page_number, DetectedField.field_name)
    )
    return {
        "document_id": document_id,
        "fields": [
            {
                "id": str(f.id),
                "name": f.field_name,
                "label": f.field_label,
                "type": f.field_type,
                "value": f.field_value,
                "confidence": f.confidence,
                "coordinates": f.coordinates,
                "page_number": f.page_number,
                "source_strategy": f.source_strategy,
                "metadata": f.field_metadata or {},
            }
            for f in result.scalars().all()
        ],
    }


@app.get("/documents/{document_id}/signed-url")
async def get_signed_url(
    document_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    doc_uuid = _parse_uuid(document_id)
    result = await db.execute(select(Document).where(Document.id == doc_uuid))
    document = result.scalar_one_or_none()
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    try:
        url = await services.storage.signed_url(document.file_path)
    except Exception as e:
        return await handle_route_error(services, e, "storage", document_id)
    return {"document_id": document_id, "url": url}


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class QueueRequest(BaseModel):
    document_id: str
    priority: int = Field(default=5, ge=1, le=10)
    processor_types: Optional[List[str]] = None
    options: Optional[dict] = None


@app.post("/queue")
async def add_to_queue(
    body: QueueRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    _parse_uuid(body.document_id)
    queue_id = await services.queue.enqueue(db, body.document_id, body.priority, body.processor_types, body.options)
    return {"success": True, "queueId": str(queue_id)}


@app.get("/queue/stats")
async def queue_stats(db: AsyncSession = Depends(get_db), services: Services = Depends(get_services)):
    stats = await services.queue.stats(db)
    return {"success": True, "stats": stats.as_dict()}


@app.post("/queue/cleanup")
async def queue_cleanup(
    days: int = Query(default=7, ge=0),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    deleted = await services.queue.cleanup(db, days)
    return {"success": True, "deletedCount": deleted}


@app.post("/queue/{item_id}/retry")
async def queue_retry(item_id: str, db: AsyncSession = Depends(get_db), services: Services = Depends(get_services)):
    _parse_uuid(item_id, "queue item ID")
    if not await services.queue.retry_failed(db, item_id):
        raise HTTPException(status_code=404, detail="No failed queue item with that ID")
    return {"success": True, "queueId": item_id}


# ---------------------------------------------------------------------------
# Errors / pool
# ---------------------------------------------------------------------------

@app.get("/errors/stats")
async def error_stats(
    document_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return {
        "process": services.recovery.get_error_stats(),
        "persisted_by_type": await count_errors_by_type(db, document_id),
    }


@app.get("/pool/stats")
async def pool_stats(services: Services = Depends(get_services)):
    return services.pool.stats()


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    user_id: str


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@app.post("/documents/{document_id}/chat/stream")
async def chat_stream(document_id: str, body: ChatRequest, services: Services = Depends(get_services)):
    """SSE: one citations event, content events per token, then done."""
    _parse_uuid(document_id)

    async def event_stream():
        # Own session: request-scoped dependencies are torn down before the body streams.
        async with services.session_factory() as db:
            session = await services.chat.get_or_create_session(db, document_id, body.user_id)
            citations: list = []
            sent_citations = False
            async for token in services.chat.stream_response(db, session.id, body.message, document_id, citations_out=citations):
                if not sent_citations:
                    yield _sse({"type": "citations", "citations": citations})
                    sent_citations = True
                yield _sse({"type": "content", "content": token})
            if not sent_citations:
                yield _sse({"type": "citations", "citations": citations})
            yield _sse({"type": "done", "sessionId": str(session.id)})

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/documents/{document_id}/chat")
async def chat(
    document_id: str,
    body: ChatRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    _parse_uuid(document_id)
    session = await services.chat.get_or_create_session(db, document_id, body.user_id)
    try:
        reply = await services.chat.generate_response(db, session.id, body.message, document_id)
    except RuntimeError as e:
        return await handle_route_error(services, e.__cause__ or e, "chat", document_id)
    return {"sessionId": str(session.id), **reply}


@app.get("/documents/{document_id}/chat/history")
async def chat_history(
    document_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    _parse_uuid(document_id)
    session = await services.chat.get_or_create_session(db, document_id, user_id)
    return {"sessionId": str(session.id), "messages": await services.chat.get_history(db, session.id)}


@app.delete("/documents/{document_id}/chat/history")
async def clear_chat_history(
    document_id: str,
    user_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    _parse_uuid(document_id)
    session = await services.chat.get_or_create_session(db, document_id, user_id)
    await services.chat.clear_history(db, session.id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class WebhookRegisterRequest(BaseModel):
    url: str
    events: List[str]
    secret: Optional[str] = None
    headers: Optional[dict] = None
    user_id: Optional[str] = None


class WebhookEventRequest(BaseModel):
    type: str
    data: dict


def _endpoint_dict(e) -> dict:
    return {
        "id": str(e.id),
        "url": e.url,
        "events": e.events,
        "active": e.active,
        "retry_config": {
            "max_attempts": e.max_attempts,
            "backoff_multiplier": e.backoff_multiplier,
            "initial_delay_ms": e.initial_delay_ms,
        },
    }


@app.post("/webhooks/endpoints")
async def webhook_register(body: WebhookRegisterRequest, db: AsyncSession = Depends(get_db)):
    try:
        endpoint = await register_endpoint(db, body.url, body.events, body.secret, body.headers, body.user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "endpoint": _endpoint_dict(endpoint)}


@app.get("/webhooks/endpoints")
async def webhook_list(user_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    return {"success": True, "endpoints": [_endpoint_dict(e) for e in await list_endpoints(db, user_id)]}


@app.delete("/webhooks/endpoints/{endpoint_id}")
async def webhook_unregister(endpoint_id: str, db: AsyncSession = Depends(get_db)):
    _parse_uuid(endpoint_id, "endpoint ID")
    if not await unregister_endpoint(db, endpoint_id):
        raise HTTPException(status_code=404, detail="Endpoint not found")
    return {"success": True}


@app.post("/webhooks/endpoints/{endpoint_id}/test")
async def webhook_test(endpoint_id: str, db: AsyncSession = Depends(get_db)):
    _parse_uuid(endpoint_id, "endpoint ID")
    dispatcher = WebhookDispatcher()
    try:
        delivered = await dispatcher.test_endpoint(db, endpoint_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    finally:
        await dispatcher.aclose()
    return {"success": delivered}


@app.post("/webhooks/events")
async def webhook_publish(body: WebhookEventRequest, db: AsyncSession = Depends(get_db)):
    try:
        event = await publish(db, body.type, body.data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "eventId": str(event.id)}
