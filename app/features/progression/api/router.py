"""
Connection progression routes.

Every endpoint acts on behalf of the authenticated user (the token's `sub`).
Engine errors propagate to the application's ProgressionError handler,
which renders `{"error": ..., "code": ...}`.
"""

from typing import Literal

from fastapi import APIRouter, Depends, Query, status

from app.auth.verify import current_user_id
from app.features.progression.api.schemas import (
    ActiveMissionOut,
    CategoryMissionsOut,
    ConnectionOut,
    CreateConnectionRequest,
    HistoryEntryOut,
    MissionOut,
    MissionResponsesOut,
    OverviewOut,
    PendingCountOut,
    RespondRequest,
    ResponseOut,
    RoundOut,
    SubmitResponseOut,
    VoteRequest,
)
from app.features.progression.services.engine import (
    ConnectionView,
    ProgressionEngine,
    get_engine,
)
from app.infrastructure.observability.logging import bind_request_context

router = APIRouter(tags=["progression"])


def _acting_user(user_id: str = Depends(current_user_id)) -> str:
    bind_request_context(user_id=user_id)
    return user_id


async def _connection_out(
    engine: ProgressionEngine, connection_id: str, user_id: str
) -> ConnectionOut:
    view = await engine.get_connection_view(connection_id, user_id)
    return ConnectionOut.from_view(view, engine.catalog)


# ----------------------------------------------------------------------
# Connections
# ----------------------------------------------------------------------


@router.post("/connections", response_model=ConnectionOut, status_code=status.HTTP_201_CREATED)
async def request_connection(
    body: CreateConnectionRequest,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    connection = await engine.request_connection(user_id, body.target_user_id)
    return ConnectionOut.from_view(
        ConnectionView(connection=connection, viewer=user_id), engine.catalog
    )


@router.get("/connections", response_model=list[ConnectionOut])
async def list_connections(
    status_filter: Literal["incoming", "outgoing", "PENDING", "LATER", "ACTIVE", "ENDED"]
    | None = Query(None, alias="status"),
    sort_by: Literal["newest", "oldest", "progress", "compatibility"] = Query(
        "newest", alias="sortBy"
    ),
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    views = await engine.list_connections(user_id, status=status_filter, sort_by=sort_by)
    return [ConnectionOut.from_view(view, engine.catalog) for view in views]


@router.get("/connections/pending-count", response_model=PendingCountOut)
async def pending_count(
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    return PendingCountOut.from_counts(await engine.pending_counts(user_id))


@router.get("/connections/{connection_id}", response_model=ConnectionOut)
async def get_connection(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    return await _connection_out(engine, connection_id, user_id)


@router.post("/connections/{connection_id}/accept", response_model=ConnectionOut)
async def accept_connection(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    await engine.accept_connection(connection_id, user_id)
    return await _connection_out(engine, connection_id, user_id)


@router.post("/connections/{connection_id}/later", response_model=ConnectionOut)
async def postpone_connection(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    await engine.postpone_connection(connection_id, user_id)
    return await _connection_out(engine, connection_id, user_id)


@router.post("/connections/{connection_id}/decline", response_model=ConnectionOut)
async def decline_connection(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    await engine.decline_connection(connection_id, user_id)
    return await _connection_out(engine, connection_id, user_id)


@router.post("/connections/{connection_id}/end", response_model=ConnectionOut)
async def end_connection(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    await engine.end_connection(connection_id, user_id)
    return await _connection_out(engine, connection_id, user_id)


@router.get("/connections/{connection_id}/overview", response_model=OverviewOut)
async def get_overview(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    overview = await engine.get_overview(connection_id, user_id)
    return OverviewOut.from_overview(overview, engine.catalog)


@router.get(
    "/connections/{connection_id}/overview/{category}", response_model=CategoryMissionsOut
)
async def get_category_missions(
    connection_id: str,
    category: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    entries = await engine.get_category_missions(connection_id, category, user_id)
    return CategoryMissionsOut.from_entries(category, entries)


# ----------------------------------------------------------------------
# Voting rounds
# ----------------------------------------------------------------------


@router.get("/connections/{connection_id}/round", response_model=RoundOut)
async def get_current_round(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    voting_round = await engine.get_current_round(connection_id, user_id)
    return RoundOut.from_round(voting_round, user_id, engine.catalog)


@router.post("/connections/{connection_id}/round/vote", response_model=RoundOut)
async def cast_vote(
    connection_id: str,
    body: VoteRequest,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    voting_round = await engine.cast_vote(connection_id, user_id, body.mission_option_id)
    return RoundOut.from_round(voting_round, user_id, engine.catalog)


# ----------------------------------------------------------------------
# Missions
# ----------------------------------------------------------------------


@router.get("/connections/{connection_id}/mission", response_model=ActiveMissionOut)
async def get_active_mission(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    mission, responses = await engine.get_active_mission(connection_id, user_id)
    return ActiveMissionOut.from_mission(mission, responses, user_id)


@router.post("/connections/{connection_id}/mission/respond", response_model=SubmitResponseOut)
async def submit_response(
    connection_id: str,
    body: RespondRequest,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    result = await engine.submit_response(connection_id, user_id, body.mission_id, body.response)
    return SubmitResponseOut.from_result(result)


@router.get(
    "/connections/{connection_id}/missions/{mission_id}/responses",
    response_model=MissionResponsesOut,
)
async def get_mission_responses(
    connection_id: str,
    mission_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    responses, reveal = await engine.get_responses(connection_id, mission_id, user_id)
    return MissionResponsesOut(
        mission_id=mission_id,
        revealed=reveal is not None,
        responses=[ResponseOut.from_response(r) for r in responses],
        comparison=reveal.comparison if reveal else None,
    )


@router.get("/connections/{connection_id}/history", response_model=list[HistoryEntryOut])
async def get_history(
    connection_id: str,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    entries = await engine.get_history(connection_id, user_id)
    return [HistoryEntryOut.from_entry(entry, engine.catalog) for entry in entries]


@router.get("/missions", response_model=list[MissionOut])
async def list_missions(
    category: str | None = None,
    user_id: str = Depends(_acting_user),
    engine: ProgressionEngine = Depends(get_engine),
):
    return [MissionOut.from_mission(m) for m in engine.list_missions(category)]
