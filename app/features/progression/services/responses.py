"""
Response Aggregator: collects each member's answer to the active mission and
completes the mission once both have answered.

Answers stay private until both exist; completion awards the mission's
points (with the interest bonus of the round option it was picked from)
exactly once per mission per connection.
"""

from dataclasses import dataclass, field
from typing import Any

from app.features.progression.domain import (
    Connection,
    ConnectionStatus,
    EngineEvent,
    EventType,
    Mission,
    MissionResponse,
)
from app.features.progression.domain.errors import (
    AlreadyRespondedError,
    MissionNotActiveError,
)
from app.features.progression.domain.progress import ProgressOutcome, mission_award
from app.features.progression.repository.base import ProgressionRepository
from app.features.progression.services.catalog import MissionCatalog
from app.features.progression.services.connection_store import Clock, ConnectionStore, utc_now
from app.features.progression.services.events import EventPublisher
from app.features.progression.services.voting import VotingCoordinator
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class MissionReveal:
    """Both answers for a mission, plus how they compare."""

    mission_id: str
    responses: dict[str, dict[str, Any]]
    comparison: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "mission_id": self.mission_id,
            "responses": self.responses,
            "comparison": self.comparison,
        }


@dataclass(slots=True)
class SubmissionResult:
    response: MissionResponse
    both_responded: bool = False
    mission_completed: bool = False
    awarded_points: int = 0
    progress: ProgressOutcome | None = None
    reveal: MissionReveal | None = None


@dataclass(slots=True)
class HistoryEntry:
    round_number: int
    mission_id: str | None
    status: str
    resolution: str | None
    responses: dict[str, dict[str, Any]] = field(default_factory=dict)


class ResponseAggregator:
    def __init__(
        self,
        repository: ProgressionRepository,
        catalog: MissionCatalog,
        store: ConnectionStore,
        voting: VotingCoordinator,
        publisher: EventPublisher,
        clock: Clock = utc_now,
    ):
        self.repository = repository
        self.catalog = catalog
        self.store = store
        self.voting = voting
        self.publisher = publisher
        self.clock = clock

    async def submit_response(
        self, connection_id: str, user_id: str, mission_id: str, payload: Any
    ) -> SubmissionResult:
        connection = await self.store.get_for_member(connection_id, user_id)
        mission = self.catalog.get(mission_id)

        if mission_id in connection.completed_mission_ids:
            raise AlreadyRespondedError(
                "This mission is already completed", connection_id=connection_id, mission_id=mission_id
            )
        if connection.status != ConnectionStatus.ACTIVE or connection.current_mission_id != mission_id:
            raise MissionNotActiveError(
                "Mission is not active for this connection",
                connection_id=connection_id,
                mission_id=mission_id,
            )

        existing = await self.repository.get_responses(connection_id, mission_id)
        if any(r.user_id == user_id for r in existing):
            raise AlreadyRespondedError(
                "You already responded to this mission",
                connection_id=connection_id,
                mission_id=mission_id,
            )

        answer = mission.content.validate_response(payload)
        response = MissionResponse(
            mission_id=mission_id,
            connection_id=connection_id,
            user_id=user_id,
            response=answer,
            submitted_at=self.clock(),
        )
        await self.repository.add_response(response)

        logger.info(
            "Mission response recorded",
            connection_id=connection_id,
            mission_id=mission_id,
            user_id=user_id,
            mission_type=str(mission.type),
        )

        responses = [*existing, response]
        if not all(any(r.user_id == m for r in responses) for m in connection.members):
            return SubmissionResult(response=response)

        return await self._complete(connection, mission, responses, response)

    async def _complete(
        self,
        connection: Connection,
        mission: Mission,
        responses: list[MissionResponse],
        response: MissionResponse,
    ) -> SubmissionResult:
        voting_round = await self.voting.current_round(connection.id)
        option = voting_round.option_for(mission.id) if voting_round else None
        awarded = mission_award(
            mission.points,
            is_main_interest=bool(option and option.is_main_interest),
            is_shared_interest=bool(option and option.is_shared_interest),
        )

        reveal = self._reveal(mission, connection, responses)

        await self.store.record_completion(connection.id, mission.id)
        await self.voting.mark_completed(connection.id, mission.id)

        await self._publish(
            EventType.BOTH_RESPONDED, connection, **reveal.to_dict()
        )
        outcome = await self.store.apply_progress_delta(connection.id, awarded)
        await self._publish(
            EventType.MISSION_COMPLETED,
            connection,
            mission_id=mission.id,
            awarded_points=awarded,
            progress=outcome.current.progress if outcome else connection.progress,
        )

        logger.info(
            "Mission completed",
            connection_id=connection.id,
            mission_id=mission.id,
            awarded_points=awarded,
        )
        return SubmissionResult(
            response=response,
            both_responded=True,
            mission_completed=True,
            awarded_points=awarded,
            progress=outcome,
            reveal=reveal,
        )

    async def get_responses(
        self, connection_id: str, mission_id: str, viewer: str
    ) -> tuple[list[MissionResponse], MissionReveal | None]:
        """
        Responses visible to `viewer`: only their own until both members
        have answered, then both plus the comparison.
        """
        connection = await self.store.get_for_member(connection_id, viewer)
        mission = self.catalog.get(mission_id)
        responses = await self.repository.get_responses(connection_id, mission_id)

        if all(any(r.user_id == m for r in responses) for m in connection.members):
            return responses, self._reveal(mission, connection, responses)
        return [r for r in responses if r.user_id == viewer], None

    async def get_history(self, connection_id: str, viewer: str) -> list[HistoryEntry]:
        """Completed missions with both answers, in completion order."""
        connection = await self.store.get_for_member(connection_id, viewer)
        rounds = {
            r.resolved_mission_id: r
            for r in await self.repository.list_rounds(connection_id)
            if r.resolved_mission_id
        }

        entries = []
        for mission_id in connection.completed_mission_ids:
            voting_round = rounds.get(mission_id)
            responses = await self.repository.get_responses(connection_id, mission_id)
            entries.append(
                HistoryEntry(
                    round_number=voting_round.round_number if voting_round else 0,
                    mission_id=mission_id,
                    status=str(voting_round.status) if voting_round else "COMPLETED",
                    resolution=(
                        str(voting_round.resolution)
                        if voting_round and voting_round.resolution
                        else None
                    ),
                    responses={r.user_id: r.response for r in responses},
                )
            )
        return entries

    def _reveal(
        self, mission: Mission, connection: Connection, responses: list[MissionResponse]
    ) -> MissionReveal:
        by_user = {r.user_id: r.response for r in responses}
        first, second = (by_user[m] for m in connection.members)
        return MissionReveal(
            mission_id=mission.id,
            responses=by_user,
            comparison=mission.content.compare(first, second),
        )

    async def _publish(self, event_type: EventType, connection: Connection, **payload) -> None:
        await self.publisher.publish(
            EngineEvent(
                type=event_type,
                connection_id=connection.id,
                recipients=connection.members,
                payload=payload,
                occurred_at=self.clock(),
            )
        )
