"""Unit tests for docmind.services.webhooks (httpx.MockTransport, mocked AsyncSession)."""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import httpx
import pytest

from docmind.models import WebhookDelivery, WebhookEndpoint, WebhookEvent
from docmind.services.webhooks import (
    WebhookDispatcher,
    event_body,
    publish,
    register_endpoint,
    retry_delay_seconds,
    sign_payload,
    unregister_endpoint,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_db(scalars_all=None, scalar_one_or_none=None, rowcount=1):
    db = AsyncMock()
    db.add = MagicMock()
    result = MagicMock()
    result.scalars.return_value.all.return_value = scalars_all or []
    result.scalar_one_or_none.return_value = scalar_one_or_none
    result.rowcount = rowcount
    db.execute = AsyncMock(return_value=result)
    return db


def _endpoint(**kw):
    defaults = dict(
        id=uuid4(), url="https://hooks.example.com/in", events=["document.processed"],
        secret=None, headers={}, active=True, max_attempts=3, backoff_multiplier=2.0, initial_delay_ms=1000,
    )
    defaults.update(kw)
    return SimpleNamespace(**defaults)


def _event(event_type="document.processed"):
    return SimpleNamespace(
        id=uuid4(), event_type=event_type, payload={"documentId": "d1"},
        status="pending", created_at=datetime(2024, 1, 2, 3, 4, 5), processed_at=None,
    )


def _dispatcher(handler):
    sleep = AsyncMock()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookDispatcher(client, sleep=sleep), sleep


def _deliveries(db) -> list[WebhookDelivery]:
    return [c.args[0] for c in db.add.call_args_list if isinstance(c.args[0], WebhookDelivery)]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def test_sign_payload_is_hex_hmac_sha256():
    body = b'{"a":1}'
    assert sign_payload("s3cret", body) == hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()


def test_event_body_uses_utc_timestamp():
    ev = _event()
    body = event_body(ev)
    assert body["type"] == "document.processed"
    assert body["data"] == {"documentId": "d1"}
    assert body["timestamp"] == "2024-01-02T03:04:05+00:00"


def test_retry_delay_seconds():
    ep = _endpoint(initial_delay_ms=500, backoff_multiplier=3.0)
    assert [retry_delay_seconds(ep, n) for n in (1, 2, 3)] == [0.5, 1.5, 4.5]


# ---------------------------------------------------------------------------
# Registry / publish
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_endpoint_validates_input():
    db = _mock_db()
    with pytest.raises(ValueError, match="URL and events are required"):
        await register_endpoint(db, "", ["document.processed"])
    with pytest.raises(ValueError, match="Unknown event types"):
        await register_endpoint(db, "https://x", ["nope"])
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_register_endpoint_defaults():
    db = _mock_db()
    ep = await register_endpoint(db, "https://x", ["document.failed"], secret="k")
    assert isinstance(ep, WebhookEndpoint)
    assert (ep.max_attempts, ep.backoff_multiplier, ep.initial_delay_ms, ep.active) == (3, 2.0, 1000, True)
    db.add.assert_called_once_with(ep)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_unregister_endpoint_reports_missing():
    assert await unregister_endpoint(_mock_db(rowcount=1), uuid4()) is True
    assert await unregister_endpoint(_mock_db(rowcount=0), uuid4()) is False


@pytest.mark.asyncio
async def test_publish_inserts_pending_event():
    db = _mock_db()
    ev = await publish(db, "document.processed", {"documentId": "d1"})
    assert isinstance(ev, WebhookEvent)
    assert ev.status == "pending"
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_publish_rejects_unknown_type():
    with pytest.raises(ValueError):
        await publish(_mock_db(), "nope", {})


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_deliver_signs_body_and_sets_headers():
    seen = {}

    def handler(request: httpx.Request):
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(200, text="ok")

    dispatcher, sleep = _dispatcher(handler)
    db = _mock_db()
    ok = await dispatcher.deliver(db, _event(), _endpoint(secret="k", headers={"X-Tenant": "t1"}))

    assert ok is True
    h = seen["headers"]
    assert h["x-webhook-event"] == "document.processed"
    assert h["x-webhook-timestamp"] == "2024-01-02T03:04:05+00:00"
    assert h["x-tenant"] == "t1"
    assert h["x-webhook-signature"] == sign_payload("k", seen["body"])
    assert json.loads(seen["body"])["data"] == {"documentId": "d1"}
    sleep.assert_not_awaited()
    [delivery] = _deliveries(db)
    assert (delivery.attempt, delivery.status_code, delivery.success) == (1, 200, True)


@pytest.mark.asyncio
async def test_deliver_without_secret_is_unsigned():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        return httpx.Response(204)

    dispatcher, _ = _dispatcher(handler)
    assert await dispatcher.deliver(_mock_db(), _event(), _endpoint())
    assert "x-webhook-signature" not in seen["headers"]


@pytest.mark.asyncio
async def test_deliver_retries_5xx_with_backoff_then_succeeds():
    statuses = iter([503, 500, 200])
    dispatcher, sleep = _dispatcher(lambda request: httpx.Response(next(statuses)))
    db = _mock_db()

    assert await dispatcher.deliver(db, _event(), _endpoint())
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
    assert [d.attempt for d in _deliveries(db)] == [1, 2, 3]


@pytest.mark.asyncio
async def test_deliver_does_not_retry_4xx():
    dispatcher, sleep = _dispatcher(lambda request: httpx.Response(404, text="gone"))
    db = _mock_db()
    assert await dispatcher.deliver(db, _event(), _endpoint()) is False
    sleep.assert_not_awaited()
    [delivery] = _deliveries(db)
    assert delivery.response_body == "gone"


@pytest.mark.asyncio
async def test_deliver_retries_429_and_transport_errors_until_exhausted():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(429)
        raise httpx.ConnectError("refused", request=request)

    dispatcher, sleep = _dispatcher(handler)
    db = _mock_db()
    assert await dispatcher.deliver(db, _event(), _endpoint(max_attempts=3)) is False
    assert len(calls) == 3
    assert sleep.await_count == 2
    deliveries = _deliveries(db)
    assert deliveries[0].status_code == 429
    assert deliveries[2].status_code is None
    assert "refused" in deliveries[2].error


@pytest.mark.asyncio
async def test_broadcast_counts_results():
    def handler(request):
        return httpx.Response(200 if "good" in str(request.url) else 400)

    dispatcher, _ = _dispatcher(handler)
    endpoints = [_endpoint(url="https://good.example"), _endpoint(url="https://bad.example")]
    assert await dispatcher.broadcast(_mock_db(), _event(), endpoints) == {"successful": 1, "failed": 1}


@pytest.mark.asyncio
async def test_drain_marks_events_by_outcome():
    ok_event, bad_event, orphan = _event(), _event("document.failed"), _event("batch.completed")
    endpoints = [
        _endpoint(url="https://ok.example", events=["document.processed"]),
        _endpoint(url="https://bad.example", events=["document.failed"]),
    ]
    events_result = MagicMock()
    events_result.scalars.return_value.all.return_value = [ok_event, bad_event, orphan]
    endpoints_result = MagicMock()
    endpoints_result.scalars.return_value.all.return_value = endpoints
    db = _mock_db()
    db.execute = AsyncMock(side_effect=[events_result, endpoints_result])

    def handler(request):
        return httpx.Response(200 if "ok." in str(request.url) else 410)

    dispatcher, _ = _dispatcher(handler)
    assert await dispatcher.drain(db) == 3
    assert ok_event.status == "delivered"
    assert bad_event.status == "failed"
    # no subscribers: nothing to deliver
    assert orphan.status == "delivered"
    assert all(e.processed_at is not None for e in (ok_event, bad_event, orphan))
    # one claim commit, then one per event
    assert db.commit.await_count == 4


@pytest.mark.asyncio
async def test_drain_commits_claim_before_any_http_call():
    event = _event()
    events_result = MagicMock()
    events_result.scalars.return_value.all.return_value = [event]
    endpoints_result = MagicMock()
    endpoints_result.scalars.return_value.all.return_value = [_endpoint(max_attempts=2)]
    calls: list[str] = []
    db = _mock_db()
    results = iter([events_result, endpoints_result])

    async def execute(stmt):
        calls.append("execute")
        return next(results)

    async def commit():
        calls.append("commit")

    db.execute = AsyncMock(side_effect=execute)
    db.commit = AsyncMock(side_effect=commit)

    def handler(request):
        calls.append(f"http:{event.status}")
        return httpx.Response(503)

    dispatcher, sleep = _dispatcher(handler)
    await dispatcher.drain(db)

    assert calls == ["execute", "execute", "commit", "http:delivering", "http:delivering", "commit"]
    sleep.assert_awaited_once()
    assert event.status == "failed"


@pytest.mark.asyncio
async def test_drain_with_nothing_pending_does_not_commit():
    db = _mock_db(scalars_all=[])
    dispatcher, _ = _dispatcher(lambda request: httpx.Response(200))
    assert await dispatcher.drain(db) == 0
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_test_endpoint_not_found():
    dispatcher, _ = _dispatcher(lambda request: httpx.Response(200))
    with pytest.raises(LookupError):
        await dispatcher.test_endpoint(_mock_db(scalar_one_or_none=None), uuid4())


@pytest.mark.asyncio
async def test_test_endpoint_delivers_test_event():
    seen = {}

    def handler(request):
        seen["event"] = request.headers["x-webhook-event"]
        return httpx.Response(200)

    dispatcher, _ = _dispatcher(handler)
    db = _mock_db(scalar_one_or_none=_endpoint())
    assert await dispatcher.test_endpoint(db, uuid4()) is True
    assert seen["event"] == "test.webhook"
    db.commit.assert_awaited_once()
