"""
Connection Store: the authoritative record and transition gate for
connection state.

Mutating calls are made from inside one engine step (see
ProgressionEngine._step), which holds the connection lock and the
repository transaction.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from app.features.progression.domain import (
    Connection,
    ConnectionStatus,
    EngineEvent,
    EventType,
)
from app.features.progression.domain.errors import (
    DuplicateConnectionError,
    InvalidTransitionError,
    NotFoundError,
    NotParticipantError,
)
from app.features.progression.domain.progress import ProgressOutcome, ProgressState, apply_points
from app.features.progression.repository.base import ProgressionRepository
from app.features.progression.services.events import EventPublisher
from app.infrastructure.observability.logging import get_logger, log_transition

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ConnectionStore:
    def __init__(
        self,
        repository: ProgressionRepository,
        publisher: EventPublisher,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.publisher = publisher
        self.clock = clock

    async def get(self, connection_id: str) -> Connection:
        connection = await self.repository.get_connection(connection_id)
        if connection is None:
            raise NotFoundError(
                f"Connection {connection_id} not found", connection_id=connection_id
            )
        return connection

    async def get_for_member(self, connection_id: str, user_id: str) -> Connection:
        connection = await self.get(connection_id)
        if not connection.is_member(user_id):
            raise NotParticipantError(
                "You are not part of this connection", connection_id=connection_id
            )
        return connection

    async def list_for_user(self, user_id: str) -> list[Connection]:
        return await self.repository.list_connections(user_id)

    async def request_connection(self, initiator: str, target: str) -> Connection:
        if initiator == target:
            raise InvalidTransitionError("Cannot connect with yourself", user_id=initiator)

        existing = await self.repository.find_open_connection(initiator, target)
        if existing is not None:
            raise DuplicateConnectionError(
                "A connection between these users already exists", connection_id=existing.id
            )

        now = self.clock()
        connection = Connection(
            id=str(uuid.uuid4()),
            user_a=initiator,
            user_b=target,
            status=ConnectionStatus.PENDING,
            created_at=now,
            last_activity_at=now,
        )
        await self.repository.add_connection(connection)

        log_transition("connection", connection.id, None, str(connection.status))
        await self._publish(EventType.CONNECTION_REQUESTED, connection, (target,), initiator=initiator)
        return connection

    async def accept_connection(self, connection_id: str, responder: str) -> Connection:
        connection = await self.get(connection_id)
        self._require_pending_receiver(connection, responder, action="accept")

        previous = connection.status
        now = self.clock()
        connection.status = ConnectionStatus.ACTIVE
        connection.accepted_at = now
        connection.last_activity_at = now
        connection.seen_by_receiver = True
        await self.repository.save_connection(connection)

        log_transition("connection", connection.id, str(previous), str(connection.status))
        await self._publish(EventType.CONNECTION_ACCEPTED, connection, (connection.user_a,))
        return connection

    async def postpone_connection(self, connection_id: str, responder: str) -> Connection:
        """Receiver defers a pending request; it can still be accepted later."""
        connection = await self.get(connection_id)
        if connection.status != ConnectionStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot postpone a {connection.status} connection", connection_id=connection_id
            )
        self._require_pending_receiver(connection, responder, action="postpone")

        connection.status = ConnectionStatus.LATER
        connection.seen_by_receiver = True
        await self.repository.save_connection(connection)

        log_transition("connection", connection.id, "PENDING", str(connection.status))
        await self._publish(EventType.CONNECTION_POSTPONED, connection, (responder,))
        return connection

    async def end_connection(
        self, connection_id: str, actor: str, reason: str = "ended"
    ) -> Connection:
        """
        Move any non-ENDED connection to ENDED.

        The open voting round, if any, is cancelled by the engine in the same
        serialized step.
        """
        connection = await self.get(connection_id)
        if not connection.is_member(actor):
            raise NotParticipantError(
                "You are not part of this connection", connection_id=connection_id
            )
        if connection.status == ConnectionStatus.ENDED:
            raise InvalidTransitionError("Connection already ended", connection_id=connection_id)

        previous = connection.status
        now = self.clock()
        connection.status = ConnectionStatus.ENDED
        connection.ended_at = now
        connection.ended_by = actor
        connection.last_activity_at = now
        await self.repository.save_connection(connection)

        log_transition(
            "connection", connection.id, str(previous), str(connection.status), reason=reason
        )
        await self._publish(
            EventType.CONNECTION_ENDED,
            connection,
            (connection.other_user(actor),),
            reason=reason,
            ended_by=actor,
        )
        return connection

    async def mark_seen(self, connection_id: str, viewer: str) -> Connection:
        connection = await self.get_for_member(connection_id, viewer)
        if viewer == connection.user_b and not connection.seen_by_receiver:
            connection.seen_by_receiver = True
            await self.repository.save_connection(connection)
        return connection

    async def open_round_slot(self, connection_id: str) -> Connection:
        """Advance the round counter and clear the finished mission for a new round."""
        connection = await self.get(connection_id)
        self._require_active(connection)
        connection.round_count += 1
        connection.current_mission_id = None
        await self.repository.save_connection(connection)
        return connection

    async def set_current_mission(self, connection_id: str, mission_id: str) -> Connection:
        connection = await self.get(connection_id)
        self._require_active(connection)
        connection.current_mission_id = mission_id
        connection.last_activity_at = self.clock()
        await self.repository.save_connection(connection)

        logger.info("Current mission set", connection_id=connection_id, mission_id=mission_id)
        return connection

    async def record_completion(self, connection_id: str, mission_id: str) -> Connection:
        connection = await self.get(connection_id)
        self._require_active(connection)
        if mission_id not in connection.completed_mission_ids:
            connection.completed_mission_ids.append(mission_id)
        if connection.current_mission_id == mission_id:
            connection.current_mission_id = None
        connection.last_activity_at = self.clock()
        await self.repository.save_connection(connection)
        return connection

    async def apply_progress_delta(self, connection_id: str, points: int) -> ProgressOutcome | None:
        """
        Add mission points to the connection's progress.

        Returns None (and changes nothing) once the connection has ended. The
        chat-unlock event is emitted only on the call that crosses the
        threshold.
        """
        connection = await self.get(connection_id)
        if connection.status == ConnectionStatus.ENDED:
            logger.info(
                "Progress update ignored for ended connection",
                connection_id=connection_id,
                points=points,
            )
            return None
        self._require_active(connection)

        outcome = apply_points(
            ProgressState(
                progress=connection.progress,
                temperature=connection.temperature,
                chat_unlocked=connection.chat_unlocked,
            ),
            points,
        )
        connection.progress = outcome.current.progress
        connection.temperature = outcome.current.temperature
        connection.chat_unlocked = outcome.current.chat_unlocked
        connection.last_activity_at = self.clock()
        await self.repository.save_connection(connection)

        logger.info(
            "Progress updated",
            connection_id=connection_id,
            points=points,
            applied=outcome.applied,
            progress=connection.progress,
            temperature=str(connection.temperature),
        )
        await self._publish(
            EventType.PROGRESS_UPDATED,
            connection,
            connection.members,
            progress=connection.progress,
            temperature=str(connection.temperature),
            applied=outcome.applied,
        )

        if outcome.unlocked_now:
            log_transition("chat", connection.id, "LOCKED", "UNLOCKED", progress=connection.progress)
            await self._publish(
                EventType.CHAT_UNLOCKED, connection, connection.members, progress=connection.progress
            )

        return outcome

    def _require_active(self, connection: Connection) -> None:
        if connection.status != ConnectionStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Connection is {connection.status}, not ACTIVE", connection_id=connection.id
            )

    def _require_pending_receiver(self, connection: Connection, responder: str, action: str) -> None:
        if not connection.status.is_pending:
            raise InvalidTransitionError(
                f"Cannot {action} a {connection.status} connection", connection_id=connection.id
            )
        if responder != connection.user_b:
            raise InvalidTransitionError(
                f"Only the invited user can {action} this connection",
                connection_id=connection.id,
            )

    async def _publish(
        self, event_type: EventType, connection: Connection, recipients: tuple[str, ...], **payload
    ) -> None:
        await self.publisher.publish(
            EngineEvent(
                type=event_type,
                connection_id=connection.id,
                recipients=tuple(recipients),
                payload=payload,
                occurred_at=self.clock(),
            )
        )
