"""
Tests for event publishing over Redis pub/sub.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.features.progression.domain import EngineEvent, EventType
from app.features.progression.services.events import (
    DeferredEventPublisher,
    InMemoryEventPublisher,
    RedisEventPublisher,
)
from app.services.redis_client import FastRedisClient


def _event() -> EngineEvent:
    return EngineEvent(
        type=EventType.CHAT_UNLOCKED,
        connection_id="conn-1",
        recipients=("alice", "bob"),
        payload={"progress": 55},
    )


@pytest.mark.asyncio
async def test_publisher_sends_json_to_channel():
    client = MagicMock()
    client.publish = AsyncMock(return_value=True)
    publisher = RedisEventPublisher(client, "progression-events")

    await publisher.publish(_event())

    channel, message = client.publish.await_args.args
    assert channel == "progression-events"
    body = json.loads(message)
    assert body["type"] == "chat.unlocked"
    assert body["recipients"] == ["alice", "bob"]
    assert body["payload"] == {"progress": 55}


@pytest.mark.asyncio
async def test_publisher_tolerates_undelivered_event():
    client = MagicMock()
    client.publish = AsyncMock(return_value=False)
    publisher = RedisEventPublisher(client, "progression-events")

    await publisher.publish(_event())

    client.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_uninitialized_client_drops_message():
    client = FastRedisClient(url="redis://localhost:6379/0")

    assert await client.publish("progression-events", "{}") is False
    assert await client.ping() is False


@pytest.mark.asyncio
async def test_client_publish_failure_returns_false():
    client = FastRedisClient(url="redis://localhost:6379/0")
    client._initialized = True
    client.client = MagicMock()
    client.client.publish = AsyncMock(side_effect=ConnectionError("gone"))

    assert await client.publish("progression-events", "{}") is False


@pytest.mark.asyncio
async def test_initialize_without_url_fails(monkeypatch):
    monkeypatch.setattr("app.services.redis_client.settings.REDIS_URL", None)
    client = FastRedisClient()

    with pytest.raises(RuntimeError):
        await client.initialize()


@pytest.mark.asyncio
async def test_deferred_publisher_releases_after_block():
    sink = InMemoryEventPublisher()
    deferred = DeferredEventPublisher(sink)

    async with deferred.collect():
        await deferred.publish(_event())
        async with deferred.collect():
            await deferred.publish(_event())
        assert sink.events == []

    assert len(sink.events) == 2


@pytest.mark.asyncio
async def test_deferred_publisher_drops_events_on_error():
    sink = InMemoryEventPublisher()
    deferred = DeferredEventPublisher(sink)

    with pytest.raises(RuntimeError):
        async with deferred.collect():
            await deferred.publish(_event())
            raise RuntimeError("rolled back")

    assert sink.events == []

    await deferred.publish(_event())
    assert len(sink.events) == 1
