"""
In-process repository used for local development and tests.

`atomic()` mirrors what the Postgres repository gets from a transaction: a
lock per connection row that every engine sharing this repository honours,
and an undo journal that restores the previous records when the block fails.
"""

import asyncio
import copy
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any

from app.features.progression.domain import (
    Connection,
    ConnectionStatus,
    MissionResponse,
    VotingRound,
)
from app.features.progression.domain.errors import (
    AlreadyRespondedError,
    DuplicateConnectionError,
)

_MISSING = object()


class _Transaction:
    def __init__(self):
        self.undo: list[tuple[dict, Any, Any]] = []
        self.locked: set[str] = set()


class InMemoryProgressionRepository:
    """Dict-backed storage that hands out deep copies of every record."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._rounds: dict[str, VotingRound] = {}
        self._responses: dict[tuple[str, str, str], MissionResponse] = {}
        self._row_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._transaction: ContextVar[_Transaction | None] = ContextVar(
            f"memory_transaction_{id(self)}", default=None
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def atomic(self, connection_id: str | None = None) -> AsyncIterator[None]:
        outer = self._transaction.get()
        transaction = outer or _Transaction()

        lock = None
        if connection_id is not None and connection_id not in transaction.locked:
            lock = self._row_lock(connection_id)
            await lock.acquire()
            transaction.locked.add(connection_id)

        token = self._transaction.set(transaction) if outer is None else None
        try:
            yield
        except BaseException:
            if outer is None:
                self._rollback(transaction)
            raise
        finally:
            if token is not None:
                self._transaction.reset(token)
            if lock is not None:
                transaction.locked.discard(connection_id)
                lock.release()

    def _row_lock(self, connection_id: str) -> asyncio.Lock:
        lock = self._row_locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._row_locks[connection_id] = lock
        return lock

    def _remember(self, table: dict, key: Any) -> None:
        transaction = self._transaction.get()
        if transaction is not None:
            transaction.undo.append((table, key, table.get(key, _MISSING)))

    @staticmethod
    def _rollback(transaction: _Transaction) -> None:
        for table, key, previous in reversed(transaction.undo):
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous
        transaction.undo.clear()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def add_connection(self, connection: Connection) -> None:
        if connection.id in self._connections:
            raise ValueError(f"Connection {connection.id} already stored")
        # Same rule as the partial unique index on pair_key
        for stored in self._connections.values():
            if stored.pair_key == connection.pair_key and stored.status != ConnectionStatus.ENDED:
                raise DuplicateConnectionError(
                    "A connection between these users already exists", connection_id=stored.id
                )
        self._remember(self._connections, connection.id)
        self._connections[connection.id] = copy.deepcopy(connection)

    async def get_connection(self, connection_id: str) -> Connection | None:
        connection = self._connections.get(connection_id)
        return copy.deepcopy(connection) if connection else None

    async def save_connection(self, connection: Connection) -> None:
        self._remember(self._connections, connection.id)
        self._connections[connection.id] = copy.deepcopy(connection)

    async def find_open_connection(self, user_a: str, user_b: str) -> Connection | None:
        pair = tuple(sorted((user_a, user_b)))
        for connection in self._connections.values():
            if connection.pair_key == pair and connection.status != ConnectionStatus.ENDED:
                return copy.deepcopy(connection)
        return None

    async def list_connections(self, user_id: str) -> list[Connection]:
        return [copy.deepcopy(c) for c in self._connections.values() if c.is_member(user_id)]

    # ------------------------------------------------------------------
    # Voting rounds
    # ------------------------------------------------------------------

    async def save_round(self, voting_round: VotingRound) -> None:
        self._remember(self._rounds, voting_round.id)
        self._rounds[voting_round.id] = copy.deepcopy(voting_round)

    async def get_round(self, round_id: str) -> VotingRound | None:
        voting_round = self._rounds.get(round_id)
        return copy.deepcopy(voting_round) if voting_round else None

    async def get_latest_round(self, connection_id: str) -> VotingRound | None:
        rounds = await self.list_rounds(connection_id)
        return rounds[-1] if rounds else None

    async def list_rounds(self, connection_id: str) -> list[VotingRound]:
        rounds = [r for r in self._rounds.values() if r.connection_id == connection_id]
        return [copy.deepcopy(r) for r in sorted(rounds, key=lambda r: r.round_number)]

    async def list_open_rounds(self) -> list[VotingRound]:
        return [copy.deepcopy(r) for r in self._rounds.values() if r.is_open]

    # ------------------------------------------------------------------
    # Mission responses
    # ------------------------------------------------------------------

    async def add_response(self, response: MissionResponse) -> None:
        key = (response.mission_id, response.connection_id, response.user_id)
        if key in self._responses:
            raise AlreadyRespondedError(
                "You already answered this mission",
                mission_id=response.mission_id,
                connection_id=response.connection_id,
            )
        self._remember(self._responses, key)
        self._responses[key] = copy.deepcopy(response)

    async def get_responses(self, connection_id: str, mission_id: str) -> list[MissionResponse]:
        responses = [
            r
            for (m_id, c_id, _), r in self._responses.items()
            if m_id == mission_id and c_id == connection_id
        ]
        return [copy.deepcopy(r) for r in sorted(responses, key=lambda r: r.submitted_at)]
