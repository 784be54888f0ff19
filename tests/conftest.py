import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import pytest

from app.auth.verify import auth_dependency
from app.features.progression.domain import Connection
from app.features.progression.repository import InMemoryProgressionRepository
from app.features.progression.services.catalog import MissionCatalog
from app.features.progression.services.engine import ProgressionEngine
from app.features.progression.services.events import InMemoryEventPublisher
from app.features.progression.services.interests import InMemoryInterestDirectory

ALICE = "alice"
BOB = "bob"


class FakeClock:
    """Manually advanced clock, injected wherever the engine reads time."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    return MissionCatalog.from_file()


@pytest.fixture
def repository():
    return InMemoryProgressionRepository()


def _yielding(name: str):
    async def method(self, *args, **kwargs):
        await asyncio.sleep(0)
        result = await getattr(InMemoryProgressionRepository, name)(self, *args, **kwargs)
        await asyncio.sleep(0)
        return result

    method.__name__ = name
    return method


class YieldingRepository(InMemoryProgressionRepository):
    """In-memory storage that gives up the event loop around every call, like a database driver."""

    @asynccontextmanager
    async def atomic(self, connection_id: str | None = None):
        await asyncio.sleep(0)
        async with super().atomic(connection_id):
            await asyncio.sleep(0)
            yield

    add_connection = _yielding("add_connection")
    get_connection = _yielding("get_connection")
    save_connection = _yielding("save_connection")
    find_open_connection = _yielding("find_open_connection")
    list_connections = _yielding("list_connections")
    save_round = _yielding("save_round")
    get_round = _yielding("get_round")
    get_latest_round = _yielding("get_latest_round")
    list_rounds = _yielding("list_rounds")
    list_open_rounds = _yielding("list_open_rounds")
    add_response = _yielding("add_response")
    get_responses = _yielding("get_responses")


@pytest.fixture
def yielding_repository():
    return YieldingRepository()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def interests():
    return InMemoryInterestDirectory(
        {
            ALICE: ["music", "travel", "food"],
            BOB: ["travel", "music", "sports"],
        }
    )


@pytest.fixture
def engine(repository, catalog, publisher, interests, clock):
    return ProgressionEngine(
        repository,
        catalog,
        publisher,
        interests,
        voting_window=timedelta(hours=24),
        option_count=3,
        max_empty_reopens=1,
        clock=clock,
        enable_timers=False,
    )


@pytest.fixture
def make_engine(catalog, publisher, interests, clock):
    """Build another engine over the given storage, sharing events, interests and time."""

    def _make(repository) -> ProgressionEngine:
        return ProgressionEngine(
            repository, catalog, publisher, interests, clock=clock, enable_timers=False
        )

    return _make


@pytest.fixture
def connect(engine):
    """Async helper: request and accept a connection, opening the first round."""

    async def _connect(initiator: str = ALICE, target: str = BOB) -> Connection:
        connection = await engine.request_connection(initiator, target)
        return await engine.accept_connection(connection.id, target)

    return _connect


@pytest.fixture
def play_round(engine):
    """Async helper: both members vote for the first option and answer it."""

    async def _play(connection_id: str, answers: dict | None = None):
        voting_round = await engine.get_current_round(connection_id, ALICE)
        mission_id = voting_round.option_ids[0]
        await engine.cast_vote(connection_id, ALICE, mission_id)
        await engine.cast_vote(connection_id, BOB, mission_id)

        mission = engine.catalog.get(mission_id)
        payloads = answers or {ALICE: sample_answer(mission), BOB: sample_answer(mission)}
        await engine.submit_response(connection_id, ALICE, mission_id, payloads[ALICE])
        return await engine.submit_response(connection_id, BOB, mission_id, payloads[BOB])

    return _play


def sample_answer(mission) -> dict:
    """A valid response payload for any mission type."""
    content = mission.content
    mission_type = str(mission.type)
    if mission_type == "QUESTION":
        return {"text": "Somewhere by the sea"}
    if mission_type == "CHOICE":
        return {"selected": content.options[0]}
    if mission_type in ("THIS_OR_THAT", "WOULD_YOU_RATHER"):
        return {"choices": {str(i): "A" for i in range(len(content.pairs))}}
    if mission_type == "RANKING":
        return {"ranking": list(content.items)}
    raise AssertionError(f"unhandled mission type {mission.type}")


@pytest.fixture
def answer_for():
    return sample_answer


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": ALICE}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply
