"""
Event publishers.

Delivery to devices (push, sockets) is handled downstream; the engine only
hands events to a publisher after the state change is persisted.
"""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Protocol

from app.features.progression.domain import EngineEvent, EventType
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient

logger = get_logger(__name__)


class EventPublisher(Protocol):
    async def publish(self, event: EngineEvent) -> None: ...


class InMemoryEventPublisher:
    """Keeps every published event in order."""

    def __init__(self):
        self.events: list[EngineEvent] = []

    async def publish(self, event: EngineEvent) -> None:
        self.events.append(event)
        logger.debug("Event recorded", event_type=str(event.type), connection_id=event.connection_id)

    def of_type(self, event_type: EventType) -> list[EngineEvent]:
        return [event for event in self.events if event.type == event_type]

    def clear(self) -> None:
        self.events.clear()


class RedisEventPublisher:
    """Publishes events as JSON to a Redis pub/sub channel."""

    def __init__(self, client: FastRedisClient, channel: str):
        self.client = client
        self.channel = channel

    async def publish(self, event: EngineEvent) -> None:
        message = json.dumps(event.to_dict(), default=str)
        delivered = await self.client.publish(self.channel, message)
        if not delivered:
            logger.warning(
                "Event not delivered",
                event_type=str(event.type),
                connection_id=event.connection_id,
                channel=self.channel,
            )


class DeferredEventPublisher:
    """
    Holds back events published inside `collect()` until the block exits
    cleanly, so a rolled-back step announces nothing. Outside `collect()`
    events go straight to the wrapped publisher.
    """

    def __init__(self, publisher: EventPublisher):
        self.publisher = publisher
        self._pending: ContextVar[list[EngineEvent] | None] = ContextVar(
            f"pending_events_{id(self)}", default=None
        )

    async def publish(self, event: EngineEvent) -> None:
        pending = self._pending.get()
        if pending is None:
            await self.publisher.publish(event)
        else:
            pending.append(event)

    @asynccontextmanager
    async def collect(self) -> AsyncIterator[None]:
        if self._pending.get() is not None:
            yield
            return

        pending: list[EngineEvent] = []
        token = self._pending.set(pending)
        try:
            yield
        finally:
            self._pending.reset(token)

        for event in pending:
            await self.publisher.publish(event)
