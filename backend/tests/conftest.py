"""Pytest configuration and fixtures."""

import pytest
from fastapi import Header
from fastapi.testclient import TestClient

from chat_cache import ChatCache
from conversation_aggregator import ConversationAggregator
from tests.fakes import FakePushClient, InMemoryStore


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def push():
    return FakePushClient()


@pytest.fixture
def cache(tmp_path):
    return ChatCache(str(tmp_path / "cache"))


@pytest.fixture
def aggregator(store, cache):
    return ConversationAggregator(store, cache)


@pytest.fixture
def client(store, push, aggregator, monkeypatch):
    """TestClient with the store, push relay, aggregator and auth replaced by test doubles."""
    import config
    from deps import get_aggregator, get_push_client, get_store
    from main import app
    from middleware import verify_token
    from rate_limit import limiter

    monkeypatch.setattr(config, "EVENTS_SECRET", "test-secret")
    monkeypatch.setattr(limiter, "enabled", False)

    async def fake_verify_token(authorization: str = Header(None)):
        return {"uid": (authorization or "").replace("Bearer ", "")}

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_push_client] = lambda: push
    app.dependency_overrides[get_aggregator] = lambda: aggregator
    app.dependency_overrides[verify_token] = fake_verify_token
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
