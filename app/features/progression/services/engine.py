"""
Progression engine facade.

Wires the connection store, voting coordinator and response aggregator
together. Every mutation of a connection is one step: it holds the
connection's in-process lock, runs inside a repository transaction that
locks the connection row (so other processes queue behind it), and only
publishes its events once that transaction has committed. Round deadline
timers are armed and disarmed after the step.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from app.config import Settings
from app.features.progression.domain import (
    Connection,
    ConnectionStatus,
    Mission,
    MissionResponse,
    SharedInterest,
    VotingRound,
)
from app.features.progression.domain.constants import MAX_PROGRESS
from app.features.progression.domain.errors import (
    MissionNotActiveError,
    NotFoundError,
)
from app.features.progression.domain.progress import ProgressOutcome
from app.features.progression.repository import (
    InMemoryProgressionRepository,
    PostgresProgressionRepository,
    ProgressionRepository,
)
from app.features.progression.services.catalog import MissionCatalog
from app.features.progression.services.connection_store import Clock, ConnectionStore, utc_now
from app.features.progression.services.events import (
    DeferredEventPublisher,
    EventPublisher,
    InMemoryEventPublisher,
    RedisEventPublisher,
)
from app.features.progression.services.interests import (
    InMemoryInterestDirectory,
    InterestDirectory,
    ProfileServiceInterestDirectory,
    compatibility_score,
    compute_shared_interests,
)
from app.features.progression.services.locks import ConnectionLockRegistry
from app.features.progression.services.responses import (
    HistoryEntry,
    MissionReveal,
    ResponseAggregator,
    SubmissionResult,
)
from app.features.progression.services.scheduler import RoundExpiryScheduler
from app.features.progression.services.voting import VotingCoordinator
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

StatusFilter = Literal["incoming", "outgoing", "PENDING", "LATER", "ACTIVE", "ENDED"]
SortOrder = Literal["newest", "oldest", "progress", "compatibility"]


@dataclass(slots=True)
class ConnectionView:
    """A connection as seen by one of its members."""

    connection: Connection
    viewer: str
    shared_interests: list[SharedInterest] = field(default_factory=list)
    compatibility_score: int = 0
    current_round: VotingRound | None = None

    @property
    def other_user(self) -> str:
        return self.connection.other_user(self.viewer)

    @property
    def is_initiator(self) -> bool:
        return self.connection.user_a == self.viewer


@dataclass(slots=True)
class PendingCounts:
    pending: int = 0
    later: int = 0
    unseen: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.later


@dataclass(slots=True)
class CategoryProgress:
    """Missions of one catalog category completed by the pair."""

    category: str
    answered: int
    total: int

    @property
    def is_completed(self) -> bool:
        return self.answered >= self.total


@dataclass(slots=True)
class ConnectionOverview:
    view: ConnectionView
    categories: list[CategoryProgress] = field(default_factory=list)

    @property
    def answered(self) -> int:
        return sum(c.answered for c in self.categories)

    @property
    def total(self) -> int:
        return sum(c.total for c in self.categories)


@dataclass(slots=True)
class CategoryMission:
    """
    A mission of a category with the viewer's answer. The other member's
    answer is only filled in once the mission is completed.
    """

    mission: Mission
    completed: bool
    is_current: bool
    user_response: dict[str, Any] | None = None
    other_response: dict[str, Any] | None = None


class ProgressionEngine:
    def __init__(
        self,
        repository: ProgressionRepository,
        catalog: MissionCatalog,
        publisher: EventPublisher,
        interests: InterestDirectory,
        *,
        voting_window: timedelta = timedelta(hours=24),
        option_count: int = 3,
        max_empty_reopens: int = 1,
        clock: Clock = utc_now,
        enable_timers: bool = True,
    ):
        self.repository = repository
        self.catalog = catalog
        self.publisher = publisher
        self.interests = interests
        self.clock = clock
        self.enable_timers = enable_timers

        self.locks = ConnectionLockRegistry()
        self.events = DeferredEventPublisher(publisher)
        self.store = ConnectionStore(repository, self.events, clock)
        self.voting = VotingCoordinator(
            repository,
            catalog,
            self.store,
            self.events,
            voting_window=voting_window,
            option_count=option_count,
            max_empty_reopens=max_empty_reopens,
            clock=clock,
        )
        self.responses = ResponseAggregator(
            repository, catalog, self.store, self.voting, self.events, clock
        )
        self.expiry = RoundExpiryScheduler(self.expire_round, clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Re-arm deadline timers for rounds left open by a previous process."""
        if not self.enable_timers:
            return
        open_rounds = await self.repository.list_open_rounds()
        for voting_round in open_rounds:
            self.expiry.schedule(voting_round.id, voting_round.voting_ends_at)
        logger.info("Progression engine started", restored_timers=len(open_rounds))

    async def shutdown(self) -> None:
        await self.expiry.shutdown()
        await self.interests.aclose()

    @asynccontextmanager
    async def _step(self, connection_id: str) -> AsyncIterator[None]:
        """One serialized, all-or-nothing mutation of a connection."""
        async with self.locks.hold(connection_id):
            async with self.events.collect():
                async with self.repository.atomic(connection_id):
                    yield

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def request_connection(self, initiator: str, target: str) -> Connection:
        async with self.locks.hold_pair(initiator, target):
            async with self.events.collect():
                async with self.repository.atomic():
                    return await self.store.request_connection(initiator, target)

    async def accept_connection(self, connection_id: str, user_id: str) -> Connection:
        # Profile lookups happen before the row lock is taken
        shared = await self.shared_interests_for(await self.store.get(connection_id))

        async with self._step(connection_id):
            connection = await self.store.accept_connection(connection_id, user_id)
            voting_round = await self.voting.open_round(connection, shared)
            connection = await self.store.get(connection_id)

        self._arm(voting_round)
        return connection

    async def postpone_connection(self, connection_id: str, user_id: str) -> Connection:
        async with self._step(connection_id):
            return await self.store.postpone_connection(connection_id, user_id)

    async def decline_connection(self, connection_id: str, user_id: str) -> Connection:
        return await self._end(connection_id, user_id, reason="declined")

    async def end_connection(self, connection_id: str, user_id: str) -> Connection:
        return await self._end(connection_id, user_id, reason="ended")

    async def _end(self, connection_id: str, user_id: str, reason: str) -> Connection:
        async with self._step(connection_id):
            connection = await self.store.end_connection(connection_id, user_id, reason=reason)
            cancelled = await self.voting.cancel_open_round(connection)

        if cancelled is not None:
            self.expiry.cancel(cancelled.id)
        return connection

    async def get_connection_view(self, connection_id: str, viewer: str) -> ConnectionView:
        async with self._step(connection_id):
            connection = await self.store.mark_seen(connection_id, viewer)
        return await self._view(connection, viewer, include_round=True)

    async def list_connections(
        self,
        user_id: str,
        status: StatusFilter | None = None,
        sort_by: SortOrder = "newest",
    ) -> list[ConnectionView]:
        connections = await self.store.list_for_user(user_id)

        if status == "incoming":
            connections = [c for c in connections if c.user_b == user_id and c.status.is_pending]
        elif status == "outgoing":
            connections = [c for c in connections if c.user_a == user_id and c.status.is_pending]
        elif status:
            connections = [c for c in connections if c.status == ConnectionStatus(status)]

        # The viewer's interests are fetched once for the whole listing
        interest_cache: dict[str, list[str]] = {}
        views = [await self._view(c, user_id, interest_cache=interest_cache) for c in connections]

        if sort_by == "oldest":
            views.sort(key=lambda v: v.connection.created_at)
        elif sort_by == "progress":
            views.sort(key=lambda v: v.connection.progress, reverse=True)
        elif sort_by == "compatibility":
            views.sort(key=lambda v: v.compatibility_score, reverse=True)
        else:
            views.sort(key=lambda v: v.connection.created_at, reverse=True)
        return views

    async def pending_counts(self, user_id: str) -> PendingCounts:
        """Incoming requests still waiting on `user_id`."""
        counts = PendingCounts()
        for connection in await self.store.list_for_user(user_id):
            if connection.user_b != user_id or not connection.status.is_pending:
                continue
            if connection.status == ConnectionStatus.LATER:
                counts.later += 1
            else:
                counts.pending += 1
            if not connection.seen_by_receiver:
                counts.unseen += 1
        return counts

    async def get_overview(self, connection_id: str, viewer: str) -> ConnectionOverview:
        """Per-category mission progress of the pair, in catalog order."""
        connection = await self.store.get_for_member(connection_id, viewer)
        completed = set(connection.completed_mission_ids)

        categories = []
        for category in self.catalog.categories():
            mission_ids = [m.id for m in self.catalog.list_missions(category)]
            categories.append(
                CategoryProgress(
                    category=category,
                    answered=sum(1 for mission_id in mission_ids if mission_id in completed),
                    total=len(mission_ids),
                )
            )

        view = await self._view(connection, viewer, include_round=True)
        return ConnectionOverview(view=view, categories=categories)

    async def get_category_missions(
        self, connection_id: str, category: str, viewer: str
    ) -> list[CategoryMission]:
        connection = await self.store.get_for_member(connection_id, viewer)
        missions = self.catalog.list_missions(category)
        if not missions:
            raise NotFoundError(f"Unknown mission category {category}", category=category)

        entries = []
        for mission in missions:
            completed = mission.id in connection.completed_mission_ids
            by_user = {
                r.user_id: r.response
                for r in await self.repository.get_responses(connection_id, mission.id)
            }
            entries.append(
                CategoryMission(
                    mission=mission,
                    completed=completed,
                    is_current=mission.id == connection.current_mission_id,
                    user_response=by_user.get(viewer),
                    other_response=(
                        by_user.get(connection.other_user(viewer)) if completed else None
                    ),
                )
            )
        return entries

    async def shared_interests_for(self, connection: Connection) -> list[SharedInterest]:
        first = await self.interests.get_interests(connection.user_a)
        second = await self.interests.get_interests(connection.user_b)
        return compute_shared_interests(first, second)

    async def _view(
        self,
        connection: Connection,
        viewer: str,
        include_round: bool = False,
        interest_cache: dict[str, list[str]] | None = None,
    ) -> ConnectionView:
        cache = {} if interest_cache is None else interest_cache
        for user_id in connection.members:
            if user_id not in cache:
                cache[user_id] = await self.interests.get_interests(user_id)

        first, second = cache[connection.user_a], cache[connection.user_b]
        view = ConnectionView(
            connection=connection,
            viewer=viewer,
            shared_interests=compute_shared_interests(first, second),
            compatibility_score=compatibility_score(first, second),
        )
        if include_round:
            view.current_round = await self.voting.current_round(connection.id)
        return view

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    async def get_current_round(self, connection_id: str, viewer: str) -> VotingRound:
        await self.store.get_for_member(connection_id, viewer)
        voting_round = await self.voting.current_round(connection_id)
        if voting_round is None:
            raise NotFoundError("No voting round for this connection", connection_id=connection_id)
        return voting_round

    async def cast_vote(self, connection_id: str, user_id: str, mission_id: str) -> VotingRound:
        async with self._step(connection_id):
            await self.store.get_for_member(connection_id, user_id)
            voting_round = await self.voting.current_round(connection_id)
            if voting_round is None:
                raise NotFoundError(
                    "No voting round for this connection", connection_id=connection_id
                )
            voting_round = await self.voting.cast_vote(voting_round.id, user_id, mission_id)

        if voting_round.resolved:
            self.expiry.cancel(voting_round.id)
        return voting_round

    async def expire_round(self, round_id: str, now: datetime | None = None) -> VotingRound:
        voting_round = await self.voting.get_round(round_id)
        async with self._step(voting_round.connection_id):
            voting_round = await self.voting.expire_round(round_id, now)

        if voting_round.is_open:
            # Re-opened with a fresh deadline, or not yet due
            self._arm(voting_round)
        else:
            self.expiry.cancel(voting_round.id)
        return voting_round

    async def expire_due_rounds(self, now: datetime | None = None) -> list[VotingRound]:
        """Resolve every open round whose deadline has passed."""
        now = now or self.clock()
        expired = []
        for voting_round in await self.repository.list_open_rounds():
            if voting_round.voting_ends_at <= now:
                expired.append(await self.expire_round(voting_round.id, now))
        return expired

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------

    def list_missions(self, category: str | None = None) -> list[Mission]:
        return self.catalog.list_missions(category)

    async def get_active_mission(
        self, connection_id: str, viewer: str
    ) -> tuple[Mission, list[MissionResponse]]:
        connection = await self.store.get_for_member(connection_id, viewer)
        if connection.status != ConnectionStatus.ACTIVE or connection.current_mission_id is None:
            raise MissionNotActiveError(
                "No active mission for this connection", connection_id=connection_id
            )
        mission = self.catalog.get(connection.current_mission_id)
        responses = await self.repository.get_responses(connection_id, mission.id)
        return mission, responses

    async def submit_response(
        self, connection_id: str, user_id: str, mission_id: str, response: Any
    ) -> SubmissionResult:
        shared = await self.shared_interests_for(await self.store.get(connection_id))

        next_round = None
        async with self._step(connection_id):
            result = await self.responses.submit_response(
                connection_id, user_id, mission_id, response
            )
            if result.mission_completed:
                next_round = await self._open_next_round(connection_id, shared)

        self._arm(next_round)
        return result

    async def get_responses(
        self, connection_id: str, mission_id: str, viewer: str
    ) -> tuple[list[MissionResponse], MissionReveal | None]:
        return await self.responses.get_responses(connection_id, mission_id, viewer)

    async def get_history(self, connection_id: str, viewer: str) -> list[HistoryEntry]:
        return await self.responses.get_history(connection_id, viewer)

    async def apply_progress_delta(self, connection_id: str, points: int) -> ProgressOutcome | None:
        async with self._step(connection_id):
            return await self.store.apply_progress_delta(connection_id, points)

    async def _open_next_round(
        self, connection_id: str, shared: list[SharedInterest]
    ) -> VotingRound | None:
        connection = await self.store.get(connection_id)
        if connection.status != ConnectionStatus.ACTIVE or connection.progress >= MAX_PROGRESS:
            return None
        return await self.voting.open_round(connection, shared)

    def _arm(self, voting_round: VotingRound | None) -> None:
        if self.enable_timers and voting_round is not None and voting_round.is_open:
            self.expiry.schedule(voting_round.id, voting_round.voting_ends_at)


def build_engine(config: Settings, clock: Clock = utc_now) -> ProgressionEngine:
    """Assemble an engine from settings (storage, events and interest source)."""
    if config.STORAGE_BACKEND == "postgres":
        repository: ProgressionRepository = PostgresProgressionRepository()
    else:
        repository = InMemoryProgressionRepository()

    if config.EVENT_BACKEND == "redis":
        from app.services.redis_client import fast_redis

        publisher: EventPublisher = RedisEventPublisher(fast_redis, config.EVENT_CHANNEL)
    else:
        publisher = InMemoryEventPublisher()

    if config.PROFILE_SERVICE_URL:
        interests: InterestDirectory = ProfileServiceInterestDirectory(config.PROFILE_SERVICE_URL)
    else:
        interests = InMemoryInterestDirectory()

    logger.info(
        "Building progression engine",
        storage=config.STORAGE_BACKEND,
        events=config.EVENT_BACKEND,
        profile_service=bool(config.PROFILE_SERVICE_URL),
    )
    return ProgressionEngine(
        repository,
        MissionCatalog.from_file(),
        publisher,
        interests,
        voting_window=timedelta(hours=config.VOTING_WINDOW_HOURS),
        option_count=config.voting_option_count(),
        max_empty_reopens=config.MAX_EMPTY_ROUND_REOPENS,
        clock=clock,
    )


_engine: ProgressionEngine | None = None


def get_engine() -> ProgressionEngine:
    """FastAPI dependency returning the process-wide engine."""
    global _engine
    if _engine is None:
        from app.config import settings

        _engine = build_engine(settings)
    return _engine


def set_engine(engine: ProgressionEngine | None) -> None:
    global _engine
    _engine = engine
