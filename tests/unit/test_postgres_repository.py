"""
Tests for the Postgres repository's row mapping and write paths.

Database calls are patched; no server is needed.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import psycopg
import pytest

from app.db.helpers import DatabaseError
from app.features.progression.domain import (
    Connection,
    ConnectionStatus,
    MissionResponse,
    RoundResolution,
    RoundStatus,
    Temperature,
)
from app.features.progression.domain.errors import (
    AlreadyRespondedError,
    DuplicateConnectionError,
)
from app.features.progression.repository.postgres import (
    SCHEMA_STATEMENTS,
    PostgresProgressionRepository,
)

MODULE = "app.features.progression.repository.postgres"
NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def repository():
    return PostgresProgressionRepository()


def _connection_row(**overrides):
    row = {
        "id": "conn-1",
        "user_a": "alice",
        "user_b": "bob",
        "status": "ACTIVE",
        "progress": 35,
        "temperature": "COOL",
        "chat_unlocked": False,
        "current_mission_id": "soundtrack",
        "created_at": NOW,
        "accepted_at": NOW,
        "ended_at": None,
        "ended_by": None,
        "seen_by_receiver": True,
        "last_activity_at": NOW,
        "round_count": 2,
        "completed_mission_ids": ["dream-trip"],
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_get_connection_maps_row(repository):
    with patch(f"{MODULE}.fetch_one", AsyncMock(return_value=_connection_row())):
        connection = await repository.get_connection("conn-1")

    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.temperature == Temperature.COOL
    assert connection.completed_mission_ids == ["dream-trip"]


@pytest.mark.asyncio
async def test_get_connection_missing(repository):
    with patch(f"{MODULE}.fetch_one", AsyncMock(return_value=None)):
        assert await repository.get_connection("nope") is None


@pytest.mark.asyncio
async def test_find_open_connection_uses_sorted_pair_key(repository):
    fetch = AsyncMock(return_value=None)
    with patch(f"{MODULE}.fetch_one", fetch):
        await repository.find_open_connection("bob", "alice")

    assert fetch.await_args.args[1] == ("alice|bob",)


@pytest.mark.asyncio
async def test_get_round_maps_options_and_resolution(repository):
    row = {
        "id": "round-1",
        "connection_id": "conn-1",
        "round_number": 1,
        "options": [
            {"mission_id": "soundtrack", "is_main_interest": True, "is_shared_interest": True},
            {"mission_id": "bookshelf", "is_main_interest": False, "is_shared_interest": False},
        ],
        "voting_ends_at": NOW,
        "created_at": NOW,
        "votes": {"alice": "soundtrack"},
        "resolved": True,
        "resolved_mission_id": "soundtrack",
        "resolved_at": NOW,
        "resolution": "DEADLINE",
        "cancelled": False,
        "completed": False,
        "reopen_count": 0,
    }
    with patch(f"{MODULE}.fetch_one", AsyncMock(return_value=row)):
        voting_round = await repository.get_round("round-1")

    assert voting_round.option_ids == ["soundtrack", "bookshelf"]
    assert voting_round.options[0].is_main_interest is True
    assert voting_round.resolution == RoundResolution.DEADLINE
    assert voting_round.status == RoundStatus.ACTIVE


@pytest.mark.asyncio
async def test_save_connection_missing_row_fails(repository):
    connection = Connection(
        id="conn-1", user_a="alice", user_b="bob", status=ConnectionStatus.PENDING, created_at=NOW
    )
    with patch(f"{MODULE}.execute_query", AsyncMock(return_value=0)):
        with pytest.raises(DatabaseError):
            await repository.save_connection(connection)


@pytest.mark.asyncio
async def test_add_connection_unique_violation_is_duplicate(repository):
    connection = Connection(
        id="conn-2", user_a="bob", user_b="alice", status=ConnectionStatus.PENDING, created_at=NOW
    )
    error = DatabaseError("Query failed", operation="execute", recoverable=False)
    error.__cause__ = psycopg.errors.UniqueViolation("duplicate key")

    with patch(f"{MODULE}.execute_query", AsyncMock(side_effect=error)):
        with pytest.raises(DuplicateConnectionError):
            await repository.add_connection(connection)


@pytest.mark.asyncio
async def test_add_response_conflict_is_already_responded(repository):
    response = MissionResponse(
        mission_id="soundtrack",
        connection_id="conn-1",
        user_id="alice",
        response={"selected": "Jazz"},
        submitted_at=NOW,
    )
    with patch(f"{MODULE}.execute_query", AsyncMock(return_value=0)):
        with pytest.raises(AlreadyRespondedError):
            await repository.add_response(response)


def _fake_transaction(conn, log: list):
    @asynccontextmanager
    async def transaction():
        log.append("begin")
        try:
            yield conn
        except Exception:
            log.append("rollback")
            raise
        log.append("commit")

    return AsyncMock(side_effect=lambda: transaction())


@pytest.mark.asyncio
async def test_atomic_locks_row_and_routes_queries_to_transaction(repository):
    conn = MagicMock(name="transaction-connection")
    log = []
    fetch = AsyncMock(return_value=_connection_row())

    with (
        patch(f"{MODULE}.get_db_transaction", _fake_transaction(conn, log)) as begin,
        patch(f"{MODULE}.fetch_one", fetch),
    ):
        async with repository.atomic("conn-1"):
            async with repository.atomic("conn-1"):
                await repository.get_connection("conn-1")
        await repository.get_connection("conn-1")

    assert log == ["begin", "commit"]
    begin.assert_awaited_once()
    lock_query, lock_params = fetch.await_args_list[0].args
    assert "FOR UPDATE" in lock_query
    assert lock_params == ("conn-1",)
    assert [c.kwargs["connection"] for c in fetch.await_args_list] == [conn, conn, conn, None]


@pytest.mark.asyncio
async def test_atomic_rolls_back_on_error(repository):
    log = []

    with (
        patch(f"{MODULE}.get_db_transaction", _fake_transaction(MagicMock(), log)),
        patch(f"{MODULE}.fetch_one", AsyncMock(return_value={"id": "conn-1"})),
    ):
        with pytest.raises(RuntimeError):
            async with repository.atomic("conn-1"):
                raise RuntimeError("boom")

    assert log == ["begin", "rollback"]


@pytest.mark.asyncio
async def test_ensure_schema_runs_in_one_transaction(repository):
    execute = AsyncMock()
    with patch(f"{MODULE}.execute_transaction", execute):
        await repository.ensure_schema()

    [statements] = execute.await_args.args
    assert len(statements) == len(SCHEMA_STATEMENTS)
    assert statements[0][0] == SCHEMA_STATEMENTS[0]
    assert all(params == () for _, params in statements)
