"""Shared fixtures: an in-memory store wired into every service, and a mocked S3 client."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from threadline.core import auth, cache
from threadline.main import app
from threadline.models.models import User
from threadline.services import (
    feed_service,
    like_service,
    media_service,
    post_service,
    thread_service,
    user_service,
)
from tests.fakes import FakeRedis, FakeStore

STORE_CONSUMERS = (auth, feed_service, like_service, post_service, thread_service, user_service)


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """Run without a cache unless a test installs a mock client."""
    monkeypatch.setattr(cache, "redis_client", None)


@pytest.fixture
def fake_redis(no_redis, monkeypatch) -> FakeRedis:
    redis = FakeRedis()
    monkeypatch.setattr(cache, "redis_client", redis)
    return redis


@pytest.fixture
def fake_store(monkeypatch) -> FakeStore:
    store = FakeStore()
    for module in STORE_CONSUMERS:
        monkeypatch.setattr(module, "store", store)
        monkeypatch.setattr(module, "get_connection", store.connection)
    return store


@pytest.fixture
def s3(monkeypatch) -> MagicMock:
    client = MagicMock()
    monkeypatch.setattr(media_service, "s3_client", client)
    return client


@pytest.fixture
def alice(fake_store) -> User:
    return fake_store.add_user("alice", avatar_public_id="social-network/avatars/alice")


@pytest.fixture
def bob(fake_store) -> User:
    return fake_store.add_user("bob", avatar_url="https://legacy.example.com/bob.png")


@pytest.fixture
def client(fake_store, s3) -> TestClient:
    # Not entered as a context manager, so the lifespan (real DB/Redis) never runs
    return TestClient(app)
