from unittest.mock import AsyncMock

import pytest

from booking_engine.db.migrate import migration_files
from booking_engine.services.infrastructure.redis_client import (
    RELEASE_LOCK_SCRIPT,
    RedisClient,
    RedisLock,
)


@pytest.fixture
def redis_client():
    client = AsyncMock()
    client.set.return_value = True
    client.eval.return_value = 1
    return client


@pytest.mark.asyncio
async def test_lock_acquired_and_released(redis_client):
    lock = RedisLock(redis_client, "calendar_sync:prov-1", ttl_s=300)

    async with lock as acquired:
        assert acquired is True

    key, token = redis_client.set.call_args.args
    assert key == "calendar_sync:prov-1"
    assert redis_client.set.call_args.kwargs == {"px": 300_000, "nx": True}
    redis_client.eval.assert_awaited_once_with(RELEASE_LOCK_SCRIPT, 1, key, token)


@pytest.mark.asyncio
async def test_busy_lock_is_not_released(redis_client):
    redis_client.set.return_value = None

    async with RedisLock(redis_client, "calendar_sync:prov-1", ttl_s=300) as acquired:
        assert acquired is False

    redis_client.eval.assert_not_called()


@pytest.mark.asyncio
async def test_lock_released_when_body_raises(redis_client):
    with pytest.raises(ValueError):
        async with RedisLock(redis_client, "calendar_sync:prov-1", ttl_s=5):
            raise ValueError("boom")

    redis_client.eval.assert_awaited_once()


def test_lock_requires_initialized_client():
    with pytest.raises(RuntimeError):
        RedisClient("redis://localhost:6379/0").lock("calendar_sync:prov-1", 300)


@pytest.mark.asyncio
async def test_ping_reports_failure():
    client = RedisClient("redis://localhost:6379/0")
    client._initialized = True
    client.client = AsyncMock()
    client.client.ping.side_effect = ConnectionError("refused")

    assert await client.ping() is False


def test_migrations_discovered_in_order():
    assert [p.name for p in migration_files()] == ["001_calendar_engine.sql"]
