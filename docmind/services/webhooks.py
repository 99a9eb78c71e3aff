"""Webhook outbox: endpoint registry, event publishing, signed delivery with retry.

Publishers only insert a WebhookEvent row (``publish``); delivery happens later in the
worker's drain loop, so a slow or dead receiver never affects document processing.

Delivery: POST JSON ``{id, type, data, timestamp}`` with X-Webhook-Event,
X-Webhook-Timestamp and (when the endpoint has a secret) X-Webhook-Signature =
hex HMAC-SHA256 of the exact body bytes. 5xx, 429 and transport errors are retried
with delay ``initial_delay_ms * backoff_multiplier**(attempt-1)``; other non-2xx
responses are final. Every attempt is logged as a WebhookDelivery row.
"""
from __future__ import annotations

from datetime import timedelta, timezone
from typing import Any, Awaitable, Callable
import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docmind.config import WEBHOOK_TIMEOUT_SECONDS
from docmind.models import WebhookDelivery, WebhookEndpoint, WebhookEvent
from docmind.worker.db import _utc_now_naive, to_uuid

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "document.uploaded",
    "document.processing",
    "document.processed",
    "document.failed",
    "document.deleted",
    "extraction.completed",
    "embeddings.generated",
    "form_fields.detected",
    "batch.completed",
    "queue.status_changed",
)
TEST_EVENT_TYPE = "test.webhook"

MAX_RESPONSE_BODY = 2000
DELIVERY_CLAIM_TIMEOUT = timedelta(minutes=15)


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def event_body(event: WebhookEvent) -> dict:
    created = event.created_at or _utc_now_naive()
    return {
        "id": str(event.id),
        "type": event.event_type,
        "data": event.payload,
        "timestamp": created.replace(tzinfo=timezone.utc).isoformat(),
    }


def retry_delay_seconds(endpoint: WebhookEndpoint, attempt: int) -> float:
    """Delay after failed attempt number *attempt* (1-based)."""
    return (endpoint.initial_delay_ms or 1000) * (endpoint.backoff_multiplier or 2.0) ** (attempt - 1) / 1000.0


def _retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


# ---------------------------------------------------------------------------
# Endpoint registry
# ---------------------------------------------------------------------------

async def register_endpoint(
    db: AsyncSession,
    url: str,
    events: list[str],
    secret: str | None = None,
    headers: dict | None = None,
    user_id: str | None = None,
) -> WebhookEndpoint:
    if not url or not events:
        raise ValueError("URL and events are required")
    unknown = [e for e in events if e not in EVENT_TYPES]
    if unknown:
        raise ValueError(f"Unknown event types: {unknown}")
    endpoint = WebhookEndpoint(
        id=uuid.uuid4(),
        user_id=user_id,
        url=url,
        events=list(events),
        secret=secret,
        headers=headers or {},
        active=True,
        max_attempts=3,
        backoff_multiplier=2.0,
        initial_delay_ms=1000,
    )
    db.add(endpoint)
    await db.commit()
    logger.info("Registered webhook endpoint %s -> %s for %s", endpoint.id, url, events)
    return endpoint


async def unregister_endpoint(db: AsyncSession, endpoint_id) -> bool:
    """Deactivate (rows are kept for the delivery log). Returns False if no such endpoint."""
    result = await db.execute(
        update(WebhookEndpoint)
        .where(WebhookEndpoint.id == to_uuid(endpoint_id))
        .values(active=False)
    )
    await db.commit()
    return (result.rowcount or 0) > 0


async def list_endpoints(db: AsyncSession, user_id: str | None = None) -> list[WebhookEndpoint]:
    stmt = select(WebhookEndpoint).where(WebhookEndpoint.active.is_(True)).order_by(WebhookEndpoint.created_at)
    if user_id:
        stmt = stmt.where(WebhookEndpoint.user_id == user_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

async def publish(db: AsyncSession, event_type: str, data: dict[str, Any]) -> WebhookEvent:
    """Insert a pending outbox event and commit."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    event = WebhookEvent(
        id=uuid.uuid4(),
        event_type=event_type,
        payload=data,
        status="pending",
        created_at=_utc_now_naive(),
    )
    db.add(event)
    await db.commit()
    logger.debug("Published %s event %s", event_type, event.id)
    return event


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class WebhookDispatcher:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def deliver(self, db: AsyncSession, event: WebhookEvent, endpoint: WebhookEndpoint) -> bool:
        """POST one event to one endpoint with retries. Adds a WebhookDelivery per attempt (not committed)."""
        body_dict = event_body(event)
        body = json.dumps(body_dict, separators=(",", ":")).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event.event_type,
            "X-Webhook-Timestamp": body_dict["timestamp"],
            **(endpoint.headers or {}),
        }
        if endpoint.secret:
            headers["X-Webhook-Signature"] = sign_payload(endpoint.secret, body)

        max_attempts = max(1, endpoint.max_attempts or 3)
        for attempt in range(1, max_attempts + 1):
            started = time.monotonic()
            status_code = None
            error = None
            response_text = None
            try:
                response = await self._client.post(endpoint.url, content=body, headers=headers)
                status_code = response.status_code
                response_text = response.text[:MAX_RESPONSE_BODY]
            except httpx.HTTPError as e:
                error = str(e) or type(e).__name__
            ok = status_code is not None and 200 <= status_code < 300
            db.add(WebhookDelivery(
                event_id=event.id,
                endpoint_id=endpoint.id,
                attempt=attempt,
                status_code=status_code,
                success=ok,
                response_body=response_text,
                error=error,
                duration_ms=int((time.monotonic() - started) * 1000),
            ))
            if ok:
                return True
            if status_code is not None and not _retryable_status(status_code):
                logger.warning("Webhook %s -> %s rejected with %s", event.id, endpoint.url, status_code)
                return False
            logger.warning(
                "Webhook %s -> %s attempt %d/%d failed: %s",
                event.id, endpoint.url, attempt, max_attempts, error or status_code,
            )
            if attempt < max_attempts:
                await self._sleep(retry_delay_seconds(endpoint, attempt))
        return False

    async def broadcast(self, db: AsyncSession, event: WebhookEvent, endpoints: list[WebhookEndpoint]) -> dict:
        results = await asyncio.gather(*(self.deliver(db, event, ep) for ep in endpoints))
        successful = sum(1 for r in results if r)
        logger.info(
            "Webhook %s (%s): %d successful, %d failed",
            event.id, event.event_type, successful, len(results) - successful,
        )
        return {"successful": successful, "failed": len(results) - successful}

    async def drain(self, db: AsyncSession, limit: int = 50) -> int:
        """Deliver outbox events, oldest first. Returns the number of events processed.

        Events are claimed (status ``delivering``) and committed before any HTTP call, so
        no row lock or open transaction spans a delivery. An event left ``delivering`` by
        a dead worker is claimed again after DELIVERY_CLAIM_TIMEOUT.
        """
        now = _utc_now_naive()
        result = await db.execute(
            select(WebhookEvent)
            .where(or_(
                WebhookEvent.status == "pending",
                and_(WebhookEvent.status == "delivering", WebhookEvent.processed_at < now - DELIVERY_CLAIM_TIMEOUT),
            ))
            .order_by(WebhookEvent.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        events = list(result.scalars().all())
        if not events:
            return 0
        for event in events:
            event.status = "delivering"
            event.processed_at = now
        endpoints = await list_endpoints(db)
        await db.commit()

        for event in events:
            subscribed = [e for e in endpoints if event.event_type in (e.events or [])]
            outcome = await self.broadcast(db, event, subscribed) if subscribed else {"failed": 0}
            event.status = "failed" if outcome["failed"] else "delivered"
            event.processed_at = _utc_now_naive()
            await db.commit()
        return len(events)

    async def test_endpoint(self, db: AsyncSession, endpoint_id) -> bool:
        result = await db.execute(select(WebhookEndpoint).where(WebhookEndpoint.id == to_uuid(endpoint_id)))
        endpoint = result.scalar_one_or_none()
        if endpoint is None:
            raise LookupError("Endpoint not found")
        now = _utc_now_naive()
        event = WebhookEvent(
            id=uuid.uuid4(),
            event_type=TEST_EVENT_TYPE,
            payload={"message": "This is a test webhook", "timestamp": now.replace(tzinfo=timezone.utc).isoformat()},
            status="pending",
            created_at=now,
        )
        db.add(event)
        ok = await self.deliver(db, event, endpoint)
        event.status = "delivered" if ok else "failed"
        event.processed_at = _utc_now_naive()
        await db.commit()
        return ok
