"""
Postgres persistence for connections, voting rounds and mission responses.

Options, votes, payloads and the completed-mission list are stored as JSONB.
A partial unique index on `pair_key` backs the one-open-connection-per-pair
rule at the storage level.

`atomic()` opens one transaction per engine step and locks the connection
row with `SELECT ... FOR UPDATE`, which serializes the API processes and the
expiry worker on the same pair. Every query issued inside the block runs on
that transaction's connection.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar

import psycopg
from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from app.db.helpers import (
    DatabaseError,
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    with_db_retry,
)
from app.db.pool import get_db_transaction
from app.features.progression.domain import (
    Connection,
    ConnectionStatus,
    MissionOption,
    MissionResponse,
    RoundResolution,
    Temperature,
    VotingRound,
)
from app.features.progression.domain.errors import (
    AlreadyRespondedError,
    DuplicateConnectionError,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Connection of the transaction opened by `atomic()` in the current task
_transaction: ContextVar[psycopg.AsyncConnection | None] = ContextVar(
    "progression_transaction", default=None
)


def _current() -> psycopg.AsyncConnection | None:
    return _transaction.get()


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS connections (
        id TEXT PRIMARY KEY,
        user_a TEXT NOT NULL,
        user_b TEXT NOT NULL,
        pair_key TEXT NOT NULL,
        status TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
        temperature TEXT NOT NULL,
        chat_unlocked BOOLEAN NOT NULL DEFAULT FALSE,
        current_mission_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        accepted_at TIMESTAMPTZ,
        ended_at TIMESTAMPTZ,
        ended_by TEXT,
        seen_by_receiver BOOLEAN NOT NULL DEFAULT FALSE,
        last_activity_at TIMESTAMPTZ,
        round_count INTEGER NOT NULL DEFAULT 0,
        completed_mission_ids JSONB NOT NULL DEFAULT '[]'::jsonb
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS connections_open_pair_idx
        ON connections (pair_key) WHERE status <> 'ENDED'
    """,
    "CREATE INDEX IF NOT EXISTS connections_user_a_idx ON connections (user_a)",
    "CREATE INDEX IF NOT EXISTS connections_user_b_idx ON connections (user_b)",
    """
    CREATE TABLE IF NOT EXISTS voting_rounds (
        id TEXT PRIMARY KEY,
        connection_id TEXT NOT NULL REFERENCES connections (id),
        round_number INTEGER NOT NULL,
        options JSONB NOT NULL,
        voting_ends_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        votes JSONB NOT NULL DEFAULT '{}'::jsonb,
        resolved BOOLEAN NOT NULL DEFAULT FALSE,
        resolved_mission_id TEXT,
        resolved_at TIMESTAMPTZ,
        resolution TEXT,
        cancelled BOOLEAN NOT NULL DEFAULT FALSE,
        completed BOOLEAN NOT NULL DEFAULT FALSE,
        reopen_count INTEGER NOT NULL DEFAULT 0,
        UNIQUE (connection_id, round_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mission_responses (
        mission_id TEXT NOT NULL,
        connection_id TEXT NOT NULL REFERENCES connections (id),
        user_id TEXT NOT NULL,
        response JSONB NOT NULL,
        submitted_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (mission_id, connection_id, user_id)
    )
    """,
)


class PostgresProgressionRepository:
    """Repository backed by the shared psycopg pool."""

    CONNECTION_COLUMNS = """
        id, user_a, user_b, status, progress, temperature, chat_unlocked,
        current_mission_id, created_at, accepted_at, ended_at, ended_by,
        seen_by_receiver, last_activity_at, round_count, completed_mission_ids
    """

    ROUND_COLUMNS = """
        id, connection_id, round_number, options, voting_ends_at, created_at, votes,
        resolved, resolved_mission_id, resolved_at, resolution, cancelled, completed,
        reopen_count
    """

    async def ensure_schema(self) -> None:
        await execute_transaction([(statement, ()) for statement in SCHEMA_STATEMENTS])
        logger.info("Progression schema ensured", statements=len(SCHEMA_STATEMENTS))

    @asynccontextmanager
    async def atomic(self, connection_id: str | None = None) -> AsyncIterator[None]:
        if _transaction.get() is not None:
            if connection_id is not None:
                await self._lock_connection(connection_id)
            yield
            return

        async with await get_db_transaction() as conn:
            token = _transaction.set(conn)
            try:
                if connection_id is not None:
                    await self._lock_connection(connection_id)
                yield
            finally:
                _transaction.reset(token)

    async def _lock_connection(self, connection_id: str) -> None:
        # Row lock held until commit or rollback
        await fetch_one(
            "SELECT id FROM connections WHERE id = %s FOR UPDATE",
            (connection_id,),
            connection=_current(),
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_connection(row: dict | None) -> Connection | None:
        if not row:
            return None

        return Connection(
            id=row["id"],
            user_a=row["user_a"],
            user_b=row["user_b"],
            status=ConnectionStatus(row["status"]),
            progress=row["progress"],
            temperature=Temperature(row["temperature"]),
            chat_unlocked=row["chat_unlocked"],
            current_mission_id=row.get("current_mission_id"),
            created_at=row["created_at"],
            accepted_at=row.get("accepted_at"),
            ended_at=row.get("ended_at"),
            ended_by=row.get("ended_by"),
            seen_by_receiver=row["seen_by_receiver"],
            last_activity_at=row.get("last_activity_at"),
            round_count=row["round_count"],
            completed_mission_ids=list(row.get("completed_mission_ids") or []),
        )

    @staticmethod
    def _row_to_round(row: dict | None) -> VotingRound | None:
        if not row:
            return None

        return VotingRound(
            id=row["id"],
            connection_id=row["connection_id"],
            round_number=row["round_number"],
            options=[MissionOption(**option) for option in row["options"]],
            voting_ends_at=row["voting_ends_at"],
            created_at=row["created_at"],
            votes=dict(row.get("votes") or {}),
            resolved=row["resolved"],
            resolved_mission_id=row.get("resolved_mission_id"),
            resolved_at=row.get("resolved_at"),
            resolution=RoundResolution(row["resolution"]) if row.get("resolution") else None,
            cancelled=row["cancelled"],
            completed=row["completed"],
            reopen_count=row["reopen_count"],
        )

    @staticmethod
    def _row_to_response(row: dict) -> MissionResponse:
        return MissionResponse(
            mission_id=row["mission_id"],
            connection_id=row["connection_id"],
            user_id=row["user_id"],
            response=row["response"],
            submitted_at=row["submitted_at"],
        )

    @staticmethod
    def _connection_params(connection: Connection) -> tuple:
        return (
            connection.user_a,
            connection.user_b,
            "|".join(connection.pair_key),
            str(connection.status),
            connection.progress,
            str(connection.temperature),
            connection.chat_unlocked,
            connection.current_mission_id,
            connection.created_at,
            connection.accepted_at,
            connection.ended_at,
            connection.ended_by,
            connection.seen_by_receiver,
            connection.last_activity_at,
            connection.round_count,
            Jsonb(connection.completed_mission_ids),
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def add_connection(self, connection: Connection) -> None:
        query = """
            INSERT INTO connections (
                id, user_a, user_b, pair_key, status, progress, temperature, chat_unlocked,
                current_mission_id, created_at, accepted_at, ended_at, ended_by,
                seen_by_receiver, last_activity_at, round_count, completed_mission_ids
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        try:
            await execute_query(
                query,
                (connection.id, *self._connection_params(connection)),
                connection=_current(),
            )
        except DatabaseError as e:
            # Another writer opened this pair first
            if isinstance(e.__cause__, pg_errors.UniqueViolation):
                raise DuplicateConnectionError(
                    "A connection between these users already exists",
                    user_a=connection.user_a,
                    user_b=connection.user_b,
                ) from e
            raise

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_connection(self, connection_id: str) -> Connection | None:
        query = f"SELECT {self.CONNECTION_COLUMNS} FROM connections WHERE id = %s"
        row = await fetch_one(query, (connection_id,), connection=_current())
        return self._row_to_connection(row)

    async def save_connection(self, connection: Connection) -> None:
        query = """
            UPDATE connections
            SET user_a = %s, user_b = %s, pair_key = %s, status = %s, progress = %s,
                temperature = %s, chat_unlocked = %s, current_mission_id = %s,
                created_at = %s, accepted_at = %s, ended_at = %s, ended_by = %s,
                seen_by_receiver = %s, last_activity_at = %s, round_count = %s,
                completed_mission_ids = %s
            WHERE id = %s
        """
        updated = await execute_query(
            query, (*self._connection_params(connection), connection.id), connection=_current()
        )
        if updated != 1:
            raise DatabaseError(
                f"Connection {connection.id} not found for update",
                operation="save_connection",
                recoverable=False,
            )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find_open_connection(self, user_a: str, user_b: str) -> Connection | None:
        query = f"""
            SELECT {self.CONNECTION_COLUMNS}
            FROM connections
            WHERE pair_key = %s AND status <> 'ENDED'
        """
        pair_key = "|".join(sorted((user_a, user_b)))
        row = await fetch_one(query, (pair_key,), connection=_current())
        return self._row_to_connection(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_connections(self, user_id: str) -> list[Connection]:
        query = f"""
            SELECT {self.CONNECTION_COLUMNS}
            FROM connections
            WHERE user_a = %s OR user_b = %s
            ORDER BY created_at
        """
        rows = await fetch_all(query, (user_id, user_id), connection=_current())
        return [self._row_to_connection(row) for row in rows]

    # ------------------------------------------------------------------
    # Voting rounds
    # ------------------------------------------------------------------

    async def save_round(self, voting_round: VotingRound) -> None:
        query = f"""
            INSERT INTO voting_rounds ({self.ROUND_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                options = EXCLUDED.options,
                voting_ends_at = EXCLUDED.voting_ends_at,
                votes = EXCLUDED.votes,
                resolved = EXCLUDED.resolved,
                resolved_mission_id = EXCLUDED.resolved_mission_id,
                resolved_at = EXCLUDED.resolved_at,
                resolution = EXCLUDED.resolution,
                cancelled = EXCLUDED.cancelled,
                completed = EXCLUDED.completed,
                reopen_count = EXCLUDED.reopen_count
        """
        options = [
            {
                "mission_id": o.mission_id,
                "is_main_interest": o.is_main_interest,
                "is_shared_interest": o.is_shared_interest,
            }
            for o in voting_round.options
        ]
        params = (
            voting_round.id,
            voting_round.connection_id,
            voting_round.round_number,
            Jsonb(options),
            voting_round.voting_ends_at,
            voting_round.created_at,
            Jsonb(voting_round.votes),
            voting_round.resolved,
            voting_round.resolved_mission_id,
            voting_round.resolved_at,
            str(voting_round.resolution) if voting_round.resolution else None,
            voting_round.cancelled,
            voting_round.completed,
            voting_round.reopen_count,
        )
        await execute_query(query, params, connection=_current())

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_round(self, round_id: str) -> VotingRound | None:
        query = f"SELECT {self.ROUND_COLUMNS} FROM voting_rounds WHERE id = %s"
        row = await fetch_one(query, (round_id,), connection=_current())
        return self._row_to_round(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_latest_round(self, connection_id: str) -> VotingRound | None:
        query = f"""
            SELECT {self.ROUND_COLUMNS}
            FROM voting_rounds
            WHERE connection_id = %s
            ORDER BY round_number DESC
            LIMIT 1
        """
        row = await fetch_one(query, (connection_id,), connection=_current())
        return self._row_to_round(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_rounds(self, connection_id: str) -> list[VotingRound]:
        query = f"""
            SELECT {self.ROUND_COLUMNS}
            FROM voting_rounds
            WHERE connection_id = %s
            ORDER BY round_number
        """
        rows = await fetch_all(query, (connection_id,), connection=_current())
        return [self._row_to_round(row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_open_rounds(self) -> list[VotingRound]:
        query = f"""
            SELECT {self.ROUND_COLUMNS}
            FROM voting_rounds
            WHERE resolved = false AND cancelled = false
            ORDER BY voting_ends_at
        """
        rows = await fetch_all(query, connection=_current())
        return [self._row_to_round(row) for row in rows]

    # ------------------------------------------------------------------
    # Mission responses
    # ------------------------------------------------------------------

    async def add_response(self, response: MissionResponse) -> None:
        query = """
            INSERT INTO mission_responses (
                mission_id, connection_id, user_id, response, submitted_at
            )
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
        """
        inserted = await execute_query(
            query,
            (
                response.mission_id,
                response.connection_id,
                response.user_id,
                Jsonb(response.response),
                response.submitted_at,
            ),
            connection=_current(),
        )
        if inserted == 0:
            raise AlreadyRespondedError(
                "You already answered this mission",
                mission_id=response.mission_id,
                connection_id=response.connection_id,
            )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_responses(self, connection_id: str, mission_id: str) -> list[MissionResponse]:
        query = """
            SELECT mission_id, connection_id, user_id, response, submitted_at
            FROM mission_responses
            WHERE connection_id = %s AND mission_id = %s
            ORDER BY submitted_at
        """
        rows = await fetch_all(query, (connection_id, mission_id), connection=_current())
        return [self._row_to_response(row) for row in rows]
