"""
Voting Coordinator: the dual-vote mission selection protocol.

A round is OPEN until both members have voted or its deadline passes, then
RESOLVED exactly once. Ending the connection cancels an open round.

Resolution rules:
- most votes wins;
- ties break toward the main-interest option, then a shared-interest
  option, then option order (which follows catalog order);
- at the deadline a single vote wins outright;
- a deadline with no votes re-opens the round (up to `max_empty_reopens`
  times), after which the default option is chosen: the first
  main-interest option, else the first option.
"""

import uuid
from collections import Counter
from datetime import datetime, timedelta

from app.features.progression.domain import (
    Connection,
    ConnectionStatus,
    EngineEvent,
    EventType,
    RoundResolution,
    SharedInterest,
    VotingRound,
)
from app.features.progression.domain.constants import MIN_ROUND_OPTIONS
from app.features.progression.domain.errors import (
    AlreadyVotedError,
    InvalidOptionError,
    InvalidTransitionError,
    NotFoundError,
    NotParticipantError,
    RoundClosedError,
)
from app.features.progression.repository.base import ProgressionRepository
from app.features.progression.services.catalog import MissionCatalog
from app.features.progression.services.connection_store import Clock, ConnectionStore, utc_now
from app.features.progression.services.events import EventPublisher
from app.infrastructure.observability.logging import get_logger, log_transition

logger = get_logger(__name__)


def winning_option(voting_round: VotingRound) -> str:
    """Mission id the round resolves to given its current votes."""
    if not voting_round.votes:
        return default_option(voting_round)

    tally = Counter(voting_round.votes.values())
    top = max(tally.values())
    tied = [
        (index, option)
        for index, option in enumerate(voting_round.options)
        if tally[option.mission_id] == top
    ]
    tied.sort(
        key=lambda item: (not item[1].is_main_interest, not item[1].is_shared_interest, item[0])
    )
    return tied[0][1].mission_id


def default_option(voting_round: VotingRound) -> str:
    for option in voting_round.options:
        if option.is_main_interest:
            return option.mission_id
    return voting_round.options[0].mission_id


class VotingCoordinator:
    def __init__(
        self,
        repository: ProgressionRepository,
        catalog: MissionCatalog,
        store: ConnectionStore,
        publisher: EventPublisher,
        *,
        voting_window: timedelta,
        option_count: int,
        max_empty_reopens: int = 1,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.catalog = catalog
        self.store = store
        self.publisher = publisher
        self.voting_window = voting_window
        self.option_count = option_count
        self.max_empty_reopens = max_empty_reopens
        self.clock = clock

    async def get_round(self, round_id: str) -> VotingRound:
        voting_round = await self.repository.get_round(round_id)
        if voting_round is None:
            raise NotFoundError(f"Voting round {round_id} not found", round_id=round_id)
        return voting_round

    async def current_round(self, connection_id: str) -> VotingRound | None:
        return await self.repository.get_latest_round(connection_id)

    async def open_round(
        self, connection: Connection, shared_interests: list[SharedInterest]
    ) -> VotingRound | None:
        """
        Open the next round for an ACTIVE connection.

        Returns the already-open round if there is one, or None when fewer
        than two uncompleted missions remain.
        """
        if connection.status != ConnectionStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Cannot open a round on a {connection.status} connection",
                connection_id=connection.id,
            )

        latest = await self.repository.get_latest_round(connection.id)
        if latest is not None and latest.is_open:
            return latest

        options = self.catalog.candidates(
            exclude=connection.completed_mission_ids,
            shared_interests=shared_interests,
            limit=self.option_count,
        )
        if len(options) < MIN_ROUND_OPTIONS:
            logger.info(
                "Mission catalog exhausted for connection",
                connection_id=connection.id,
                completed=len(connection.completed_mission_ids),
            )
            await self._publish(
                EventType.CATALOG_EXHAUSTED,
                connection.id,
                connection.members,
                completed=len(connection.completed_mission_ids),
            )
            return None

        connection = await self.store.open_round_slot(connection.id)
        now = self.clock()
        voting_round = VotingRound(
            id=str(uuid.uuid4()),
            connection_id=connection.id,
            round_number=connection.round_count,
            options=options,
            voting_ends_at=now + self.voting_window,
            created_at=now,
        )
        await self.repository.save_round(voting_round)

        log_transition(
            "round",
            connection.id,
            None,
            str(voting_round.status),
            round_id=voting_round.id,
            round_number=voting_round.round_number,
        )
        await self._publish(
            EventType.ROUND_OPENED,
            connection.id,
            connection.members,
            round_id=voting_round.id,
            round_number=voting_round.round_number,
            options=voting_round.option_ids,
            voting_ends_at=voting_round.voting_ends_at.isoformat(),
        )
        return voting_round

    async def cast_vote(self, round_id: str, user_id: str, mission_id: str) -> VotingRound:
        voting_round = await self.get_round(round_id)
        connection = await self.store.get(voting_round.connection_id)

        if not connection.is_member(user_id):
            raise NotParticipantError("You are not part of this connection", round_id=round_id)
        if not voting_round.is_open:
            raise RoundClosedError("Voting for this round is closed", round_id=round_id)
        if user_id in voting_round.votes:
            raise AlreadyVotedError("You already voted in this round", round_id=round_id)
        if mission_id not in voting_round.option_ids:
            raise InvalidOptionError(
                "Mission is not one of this round's options",
                round_id=round_id,
                mission_id=mission_id,
            )

        voting_round.votes[user_id] = mission_id
        logger.info(
            "Vote cast",
            connection_id=connection.id,
            round_id=round_id,
            user_id=user_id,
            mission_id=mission_id,
        )

        if all(member in voting_round.votes for member in connection.members):
            return await self._resolve(voting_round, connection, RoundResolution.BOTH_VOTED)

        await self.repository.save_round(voting_round)
        return voting_round

    async def expire_round(self, round_id: str, now: datetime | None = None) -> VotingRound:
        """
        Apply the deadline policy. A no-op for rounds that are already
        resolved or cancelled, or whose deadline has not passed.
        """
        voting_round = await self.get_round(round_id)
        now = now or self.clock()

        if not voting_round.is_open or now < voting_round.voting_ends_at:
            return voting_round

        connection = await self.store.get(voting_round.connection_id)
        if connection.status != ConnectionStatus.ACTIVE:
            return await self._cancel(voting_round, connection.members, reason="connection_inactive")

        if voting_round.votes:
            return await self._resolve(voting_round, connection, RoundResolution.DEADLINE)

        if voting_round.reopen_count < self.max_empty_reopens:
            voting_round.reopen_count += 1
            voting_round.voting_ends_at = now + self.voting_window
            await self.repository.save_round(voting_round)

            logger.info(
                "Voting round re-opened after empty deadline",
                connection_id=connection.id,
                round_id=round_id,
                reopen_count=voting_round.reopen_count,
            )
            await self._publish(
                EventType.ROUND_REOPENED,
                connection.id,
                connection.members,
                round_id=round_id,
                voting_ends_at=voting_round.voting_ends_at.isoformat(),
            )
            return voting_round

        return await self._resolve(voting_round, connection, RoundResolution.DEFAULT)

    async def cancel_open_round(self, connection: Connection) -> VotingRound | None:
        latest = await self.repository.get_latest_round(connection.id)
        if latest is None or not latest.is_open:
            return None
        return await self._cancel(latest, connection.members, reason="connection_ended")

    async def mark_completed(self, connection_id: str, mission_id: str) -> VotingRound | None:
        latest = await self.repository.get_latest_round(connection_id)
        if latest is None or latest.resolved_mission_id != mission_id:
            return None
        latest.completed = True
        await self.repository.save_round(latest)
        return latest

    async def _resolve(
        self, voting_round: VotingRound, connection: Connection, resolution: RoundResolution
    ) -> VotingRound:
        if voting_round.resolved:
            return voting_round

        mission_id = winning_option(voting_round)
        voting_round.resolved = True
        voting_round.resolved_mission_id = mission_id
        voting_round.resolved_at = self.clock()
        voting_round.resolution = resolution
        await self.repository.save_round(voting_round)
        await self.store.set_current_mission(connection.id, mission_id)

        log_transition(
            "round",
            connection.id,
            "VOTING",
            str(voting_round.status),
            round_id=voting_round.id,
            mission_id=mission_id,
            resolution=str(resolution),
        )
        await self._publish(
            EventType.ROUND_RESOLVED,
            connection.id,
            connection.members,
            round_id=voting_round.id,
            mission_id=mission_id,
            resolution=str(resolution),
            votes=dict(voting_round.votes),
        )
        return voting_round

    async def _cancel(
        self, voting_round: VotingRound, recipients: tuple[str, ...], reason: str
    ) -> VotingRound:
        voting_round.cancelled = True
        await self.repository.save_round(voting_round)

        log_transition(
            "round",
            voting_round.connection_id,
            "VOTING",
            str(voting_round.status),
            round_id=voting_round.id,
            reason=reason,
        )
        await self._publish(
            EventType.ROUND_CANCELLED,
            voting_round.connection_id,
            recipients,
            round_id=voting_round.id,
            reason=reason,
        )
        return voting_round

    async def _publish(
        self, event_type: EventType, connection_id: str, recipients: tuple[str, ...], **payload
    ) -> None:
        await self.publisher.publish(
            EngineEvent(
                type=event_type,
                connection_id=connection_id,
                recipients=tuple(recipients),
                payload=payload,
                occurred_at=self.clock(),
            )
        )
