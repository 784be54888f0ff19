"""
Request and response bodies for the progression API.

Everything is camelCase on the wire; the `from_*` constructors map domain
objects onto the view of the requesting user.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.features.progression.domain import (
    Mission,
    MissionResponse,
    SharedInterest,
    VotingRound,
)
from app.features.progression.services.catalog import MissionCatalog
from app.features.progression.services.engine import (
    CategoryMission,
    CategoryProgress,
    ConnectionOverview,
    ConnectionView,
    PendingCounts,
)
from app.features.progression.services.responses import (
    HistoryEntry,
    MissionReveal,
    SubmissionResult,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


class CreateConnectionRequest(CamelModel):
    target_user_id: str = Field(..., min_length=1)


class VoteRequest(CamelModel):
    mission_option_id: str = Field(..., min_length=1)


class RespondRequest(CamelModel):
    mission_id: str = Field(..., min_length=1)
    response: Any


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


class MissionOut(CamelModel):
    id: str
    type: str
    title: str
    description: str
    category: str
    tags: list[str]
    points: int
    difficulty: int
    content: dict[str, Any]

    @classmethod
    def from_mission(cls, mission: Mission) -> "MissionOut":
        return cls(
            id=mission.id,
            type=str(mission.type),
            title=mission.title,
            description=mission.description,
            category=mission.category,
            tags=list(mission.tags),
            points=mission.points,
            difficulty=mission.difficulty,
            content=mission.content.model_dump(by_alias=True),
        )


class RoundOptionOut(CamelModel):
    mission_id: str
    is_main_interest: bool
    is_shared_interest: bool
    mission: MissionOut | None = None


class RoundOut(CamelModel):
    id: str
    round_number: int
    status: str
    options: list[RoundOptionOut]
    voting_ends_at: datetime
    user_voted: bool
    other_voted: bool
    user_vote: str | None = None
    resolved_mission_id: str | None = None
    resolution: str | None = None
    reopen_count: int = 0

    @classmethod
    def from_round(
        cls, voting_round: VotingRound, viewer: str, catalog: MissionCatalog
    ) -> "RoundOut":
        options = [
            RoundOptionOut(
                mission_id=option.mission_id,
                is_main_interest=option.is_main_interest,
                is_shared_interest=option.is_shared_interest,
                mission=(
                    MissionOut.from_mission(catalog.get(option.mission_id))
                    if option.mission_id in catalog
                    else None
                ),
            )
            for option in voting_round.options
        ]
        return cls(
            id=voting_round.id,
            round_number=voting_round.round_number,
            status=str(voting_round.status),
            options=options,
            voting_ends_at=voting_round.voting_ends_at,
            user_voted=viewer in voting_round.votes,
            other_voted=any(user != viewer for user in voting_round.votes),
            user_vote=voting_round.votes.get(viewer),
            resolved_mission_id=voting_round.resolved_mission_id,
            resolution=str(voting_round.resolution) if voting_round.resolution else None,
            reopen_count=voting_round.reopen_count,
        )


class OtherUserOut(CamelModel):
    id: str


class SharedInterestOut(CamelModel):
    interest: str
    weight: float
    is_main: bool

    @classmethod
    def from_interest(cls, shared: SharedInterest) -> "SharedInterestOut":
        return cls(interest=shared.interest, weight=shared.weight, is_main=shared.is_main)


class ConnectionOut(CamelModel):
    id: str
    status: str
    progress: int
    temperature: str
    chat_unlocked: bool
    other_user: OtherUserOut
    is_initiator: bool
    current_mission: MissionOut | None = None
    current_round: RoundOut | None = None
    shared_interests: list[SharedInterestOut]
    compatibility_score: int
    seen_by_receiver: bool
    round_count: int
    completed_missions: int
    last_activity: datetime | None = None
    created_at: datetime
    accepted_at: datetime | None = None
    ended_at: datetime | None = None

    @classmethod
    def from_view(cls, view: ConnectionView, catalog: MissionCatalog) -> "ConnectionOut":
        connection = view.connection
        current_mission = None
        if connection.current_mission_id and connection.current_mission_id in catalog:
            current_mission = MissionOut.from_mission(catalog.get(connection.current_mission_id))

        return cls(
            id=connection.id,
            status=str(connection.status),
            progress=connection.progress,
            temperature=str(connection.temperature),
            chat_unlocked=connection.chat_unlocked,
            other_user=OtherUserOut(id=view.other_user),
            is_initiator=view.is_initiator,
            current_mission=current_mission,
            current_round=(
                RoundOut.from_round(view.current_round, view.viewer, catalog)
                if view.current_round
                else None
            ),
            shared_interests=[SharedInterestOut.from_interest(s) for s in view.shared_interests],
            compatibility_score=view.compatibility_score,
            seen_by_receiver=connection.seen_by_receiver,
            round_count=connection.round_count,
            completed_missions=len(connection.completed_mission_ids),
            last_activity=connection.last_activity_at,
            created_at=connection.created_at,
            accepted_at=connection.accepted_at,
            ended_at=connection.ended_at,
        )


class PendingCountOut(CamelModel):
    pending: int
    later: int
    unseen: int
    total: int

    @classmethod
    def from_counts(cls, counts: PendingCounts) -> "PendingCountOut":
        return cls(
            pending=counts.pending, later=counts.later, unseen=counts.unseen, total=counts.total
        )


class ResponseOut(CamelModel):
    user_id: str
    response: dict[str, Any]
    submitted_at: datetime

    @classmethod
    def from_response(cls, response: MissionResponse) -> "ResponseOut":
        return cls(
            user_id=response.user_id,
            response=response.response,
            submitted_at=response.submitted_at,
        )


class ActiveMissionOut(CamelModel):
    mission: MissionOut
    user_responded: bool
    other_responded: bool
    user_response: dict[str, Any] | None = None

    @classmethod
    def from_mission(
        cls, mission: Mission, responses: list[MissionResponse], viewer: str
    ) -> "ActiveMissionOut":
        own = next((r for r in responses if r.user_id == viewer), None)
        return cls(
            mission=MissionOut.from_mission(mission),
            user_responded=own is not None,
            other_responded=any(r.user_id != viewer for r in responses),
            user_response=own.response if own else None,
        )


class RevealOut(CamelModel):
    mission_id: str
    responses: dict[str, dict[str, Any]]
    comparison: dict[str, Any]

    @classmethod
    def from_reveal(cls, reveal: MissionReveal) -> "RevealOut":
        return cls(
            mission_id=reveal.mission_id,
            responses=reveal.responses,
            comparison=reveal.comparison,
        )


class SubmitResponseOut(CamelModel):
    mission_id: str
    both_responded: bool
    mission_completed: bool
    awarded_points: int
    progress: int | None = None
    temperature: str | None = None
    chat_unlocked: bool | None = None
    reveal: RevealOut | None = None

    @classmethod
    def from_result(cls, result: SubmissionResult) -> "SubmitResponseOut":
        outcome = result.progress
        return cls(
            mission_id=result.response.mission_id,
            both_responded=result.both_responded,
            mission_completed=result.mission_completed,
            awarded_points=result.awarded_points,
            progress=outcome.current.progress if outcome else None,
            temperature=str(outcome.current.temperature) if outcome else None,
            chat_unlocked=outcome.current.chat_unlocked if outcome else None,
            reveal=RevealOut.from_reveal(result.reveal) if result.reveal else None,
        )


class MissionResponsesOut(CamelModel):
    mission_id: str
    revealed: bool
    responses: list[ResponseOut]
    comparison: dict[str, Any] | None = None


class HistoryEntryOut(CamelModel):
    round_number: int
    mission_id: str | None
    mission_title: str | None = None
    status: str
    resolution: str | None = None
    responses: dict[str, dict[str, Any]]

    @classmethod
    def from_entry(cls, entry: HistoryEntry, catalog: MissionCatalog) -> "HistoryEntryOut":
        title = None
        if entry.mission_id and entry.mission_id in catalog:
            title = catalog.get(entry.mission_id).title
        return cls(
            round_number=entry.round_number,
            mission_id=entry.mission_id,
            mission_title=title,
            status=entry.status,
            resolution=entry.resolution,
            responses=entry.responses,
        )


class CategoryProgressOut(CamelModel):
    category: str
    answered: int
    total: int
    is_completed: bool

    @classmethod
    def from_progress(cls, progress: CategoryProgress) -> "CategoryProgressOut":
        return cls(
            category=progress.category,
            answered=progress.answered,
            total=progress.total,
            is_completed=progress.is_completed,
        )


class OverviewOut(CamelModel):
    connection: ConnectionOut
    categories: list[CategoryProgressOut]
    answered: int
    total: int

    @classmethod
    def from_overview(cls, overview: ConnectionOverview, catalog: MissionCatalog) -> "OverviewOut":
        return cls(
            connection=ConnectionOut.from_view(overview.view, catalog),
            categories=[CategoryProgressOut.from_progress(c) for c in overview.categories],
            answered=overview.answered,
            total=overview.total,
        )


class CategoryMissionOut(CamelModel):
    mission: MissionOut
    completed: bool
    is_current: bool
    user_response: dict[str, Any] | None = None
    other_response: dict[str, Any] | None = None

    @classmethod
    def from_entry(cls, entry: CategoryMission) -> "CategoryMissionOut":
        return cls(
            mission=MissionOut.from_mission(entry.mission),
            completed=entry.completed,
            is_current=entry.is_current,
            user_response=entry.user_response,
            other_response=entry.other_response,
        )


class CategoryMissionsOut(CamelModel):
    category: str
    answered: int
    total: int
    missions: list[CategoryMissionOut]

    @classmethod
    def from_entries(cls, category: str, entries: list[CategoryMission]) -> "CategoryMissionsOut":
        return cls(
            category=category,
            answered=sum(1 for entry in entries if entry.completed),
            total=len(entries),
            missions=[CategoryMissionOut.from_entry(entry) for entry in entries],
        )
