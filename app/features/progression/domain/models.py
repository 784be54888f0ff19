"""
Domain models for the connection progression feature.

Connection, VotingRound and MissionResponse are plain dataclasses mutated
only by the services under the per-connection lock. Repositories hand out
copies, so a failed operation never leaves a half-applied change behind.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class ConnectionStatus(StrEnum):
    PENDING = "PENDING"
    LATER = "LATER"  # receiver postponed the request
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"

    @property
    def is_pending(self) -> bool:
        return self in (ConnectionStatus.PENDING, ConnectionStatus.LATER)


class Temperature(StrEnum):
    COLD = "COLD"
    COOL = "COOL"
    WARM = "WARM"
    HOT = "HOT"


class MissionType(StrEnum):
    QUESTION = "QUESTION"
    CHOICE = "CHOICE"
    THIS_OR_THAT = "THIS_OR_THAT"
    WOULD_YOU_RATHER = "WOULD_YOU_RATHER"
    RANKING = "RANKING"


class RoundStatus(StrEnum):
    VOTING = "VOTING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class RoundResolution(StrEnum):
    BOTH_VOTED = "BOTH_VOTED"
    DEADLINE = "DEADLINE"
    DEFAULT = "DEFAULT"


@dataclass(slots=True)
class Connection:
    """Pairwise relationship between the initiator (user_a) and the target (user_b)."""

    id: str
    user_a: str
    user_b: str
    status: ConnectionStatus
    created_at: datetime
    progress: int = 0
    temperature: Temperature = Temperature.COLD
    chat_unlocked: bool = False
    current_mission_id: str | None = None
    accepted_at: datetime | None = None
    ended_at: datetime | None = None
    ended_by: str | None = None
    seen_by_receiver: bool = False
    last_activity_at: datetime | None = None
    round_count: int = 0
    completed_mission_ids: list[str] = field(default_factory=list)

    def is_member(self, user_id: str) -> bool:
        return user_id in (self.user_a, self.user_b)

    def other_user(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a

    @property
    def members(self) -> tuple[str, str]:
        return (self.user_a, self.user_b)

    @property
    def pair_key(self) -> tuple[str, str]:
        """Order-independent key for the two members."""
        return tuple(sorted(self.members))


@dataclass(slots=True)
class MissionOption:
    """A voting candidate, flagged against the pair's shared interests."""

    mission_id: str
    is_main_interest: bool = False
    is_shared_interest: bool = False


@dataclass(slots=True)
class VotingRound:
    id: str
    connection_id: str
    round_number: int
    options: list[MissionOption]
    voting_ends_at: datetime
    created_at: datetime
    votes: dict[str, str] = field(default_factory=dict)
    resolved: bool = False
    resolved_mission_id: str | None = None
    resolved_at: datetime | None = None
    resolution: RoundResolution | None = None
    cancelled: bool = False
    completed: bool = False
    reopen_count: int = 0

    @property
    def is_open(self) -> bool:
        return not self.resolved and not self.cancelled

    @property
    def status(self) -> RoundStatus:
        if self.cancelled:
            return RoundStatus.SKIPPED
        if not self.resolved:
            return RoundStatus.VOTING
        if self.completed:
            return RoundStatus.COMPLETED
        return RoundStatus.ACTIVE

    @property
    def option_ids(self) -> list[str]:
        return [option.mission_id for option in self.options]

    def option_for(self, mission_id: str) -> MissionOption | None:
        return next((o for o in self.options if o.mission_id == mission_id), None)


@dataclass(slots=True)
class MissionResponse:
    mission_id: str
    connection_id: str
    user_id: str
    response: dict
    submitted_at: datetime


@dataclass(frozen=True, slots=True)
class SharedInterest:
    """Read model derived from both members' declared interests."""

    interest: str
    weight: float
    is_main: bool
