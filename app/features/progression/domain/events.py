"""
Events emitted by the engine for clients and notification delivery.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class EventType(StrEnum):
    CONNECTION_REQUESTED = "connection.requested"
    CONNECTION_ACCEPTED = "connection.accepted"
    CONNECTION_POSTPONED = "connection.postponed"
    CONNECTION_ENDED = "connection.ended"
    ROUND_OPENED = "round.opened"
    ROUND_REOPENED = "round.reopened"
    ROUND_RESOLVED = "round.resolved"
    ROUND_CANCELLED = "round.cancelled"
    CATALOG_EXHAUSTED = "round.catalog_exhausted"
    BOTH_RESPONDED = "mission.both_responded"
    MISSION_COMPLETED = "mission.completed"
    PROGRESS_UPDATED = "progress.updated"
    CHAT_UNLOCKED = "chat.unlocked"


@dataclass(frozen=True, slots=True)
class EngineEvent:
    type: EventType
    connection_id: str
    recipients: tuple[str, ...]
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": str(self.type),
            "connection_id": self.connection_id,
            "recipients": list(self.recipients),
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }
