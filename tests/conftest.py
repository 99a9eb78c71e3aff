"""Pytest fixtures for DocMind tests."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from docmind import main
from docmind.database import get_db
from docmind.main import app, get_services


def _fake_services():
    return SimpleNamespace(
        pipeline=SimpleNamespace(process_document=AsyncMock(), cancel=AsyncMock(return_value=False), get_status=MagicMock(return_value=None)),
        queue=SimpleNamespace(enqueue=AsyncMock(), stats=AsyncMock(), cleanup=AsyncMock(return_value=0), retry_failed=AsyncMock(return_value=False)),
        recovery=SimpleNamespace(handle_error=AsyncMock(), get_error_stats=MagicMock(return_value={})),
        pool=SimpleNamespace(stats=MagicMock(return_value={}), start=MagicMock(), shutdown=AsyncMock()),
        storage=SimpleNamespace(signed_url=AsyncMock()),
        chat=SimpleNamespace(get_or_create_session=AsyncMock(), stream_response=MagicMock(), generate_response=AsyncMock()),
        batch=SimpleNamespace(run=AsyncMock(), enqueue=AsyncMock()),
        session_factory=MagicMock(),
        shutdown=AsyncMock(),
    )


@pytest.fixture
def db():
    session = AsyncMock()
    session.add = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = None
    result.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=result)
    return session


@pytest.fixture
def services():
    return _fake_services()


@pytest.fixture
def client(db, services, monkeypatch) -> TestClient:
    """FastAPI test client with the DB session and service graph replaced by mocks."""

    async def _get_db():
        yield db

    monkeypatch.setattr(main, "_services", services)
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()
