"""
Repository contract for the progression feature.

Implementations must return copies of stored records: services mutate what
they load and persist it explicitly with the matching save call. Writes made
inside `atomic()` are committed together or not at all.
"""

from contextlib import AbstractAsyncContextManager
from typing import Protocol

from app.features.progression.domain import Connection, MissionResponse, VotingRound


class ProgressionRepository(Protocol):
    def atomic(self, connection_id: str | None = None) -> AbstractAsyncContextManager[None]:
        """
        Run the enclosed reads and writes as one transaction.

        With a `connection_id` the connection row stays locked until the
        block exits, so concurrent writers (other processes included) take
        turns. A nested call joins the outer transaction.
        """
        ...

    async def add_connection(self, connection: Connection) -> None: ...

    async def get_connection(self, connection_id: str) -> Connection | None: ...

    async def save_connection(self, connection: Connection) -> None: ...

    async def find_open_connection(self, user_a: str, user_b: str) -> Connection | None:
        """Return the non-ENDED connection between two users, in either direction."""
        ...

    async def list_connections(self, user_id: str) -> list[Connection]: ...

    async def save_round(self, voting_round: VotingRound) -> None: ...

    async def get_round(self, round_id: str) -> VotingRound | None: ...

    async def get_latest_round(self, connection_id: str) -> VotingRound | None: ...

    async def list_rounds(self, connection_id: str) -> list[VotingRound]: ...

    async def list_open_rounds(self) -> list[VotingRound]: ...

    async def add_response(self, response: MissionResponse) -> None:
        """Store a response; raises AlreadyRespondedError on a duplicate."""
        ...

    async def get_responses(self, connection_id: str, mission_id: str) -> list[MissionResponse]: ...
