"""Tests for the webhook rate limiter"""

from unittest.mock import MagicMock

import pytest
import redis
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from marketplace import rate_limiter
from marketplace.rate_limiter import check_rate_limit, create_rate_limiter


@pytest.fixture(autouse=True)
def clean_cache():
    rate_limiter.memory_cache.clear()
    yield
    rate_limiter.memory_cache.clear()


def test_memory_only_window():
    results = [check_rate_limit("test:1.2.3.4", limit=3, window_seconds=60)[0] for _ in range(4)]
    assert results == [True, True, True, False]


def test_redis_errors_fail_open():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("down")
    client.set.side_effect = redis.ConnectionError("down")

    allowed, count, _ = check_rate_limit("test:5.6.7.8", limit=2, window_seconds=60, client=client)

    assert allowed is True
    assert count == 1


def test_dependency_returns_429_with_retry_after():
    app = FastAPI()
    limiter = create_rate_limiter(limit=1, window_seconds=60, key_prefix="test_webhook")

    @app.post("/hook")
    async def hook(request: Request, _: None = Depends(limiter)):
        return {"ok": True}

    client = TestClient(app)

    assert client.post("/hook").status_code == 200
    response = client.post("/hook")
    assert response.status_code == 429
    assert "Retry-After" in response.headers
