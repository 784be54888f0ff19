"""
Tests for the per-category overview of a connection.
"""

import pytest

from app.features.progression.domain.errors import NotFoundError, NotParticipantError

ALICE = "alice"
BOB = "bob"


@pytest.mark.asyncio
async def test_overview_counts_completed_missions_per_category(engine, connect, play_round):
    connection = await connect()
    await play_round(connection.id)

    overview = await engine.get_overview(connection.id, BOB)

    by_category = {c.category: c for c in overview.categories}
    assert list(by_category) == engine.catalog.categories()
    assert len(by_category) == 11
    assert (by_category["music"].answered, by_category["music"].total) == (1, 1)
    assert by_category["music"].is_completed is True
    assert (by_category["deep_talk"].answered, by_category["deep_talk"].total) == (0, 2)
    assert by_category["deep_talk"].is_completed is False
    assert (overview.answered, overview.total) == (1, 12)

    assert overview.view.viewer == BOB
    assert overview.view.shared_interests[0].interest == "music"
    assert overview.view.compatibility_score == 50
    assert overview.view.current_round.round_number == 2


@pytest.mark.asyncio
async def test_overview_requires_membership(engine, connect):
    connection = await connect()

    with pytest.raises(NotParticipantError):
        await engine.get_overview(connection.id, "mallory")


@pytest.mark.asyncio
async def test_category_missions_hide_partner_answer_until_completed(engine, connect):
    connection = await connect()
    await engine.cast_vote(connection.id, ALICE, "dream-trip")
    await engine.cast_vote(connection.id, BOB, "dream-trip")
    answer = {"text": "Lisbon"}
    await engine.submit_response(connection.id, ALICE, "dream-trip", answer)

    [as_alice] = await engine.get_category_missions(connection.id, "travel", ALICE)
    [as_bob] = await engine.get_category_missions(connection.id, "travel", BOB)

    assert as_alice.is_current is True
    assert as_alice.completed is False
    assert as_alice.user_response == answer
    assert as_alice.other_response is None
    assert as_bob.user_response is None
    assert as_bob.other_response is None


@pytest.mark.asyncio
async def test_category_missions_show_both_answers_once_completed(
    engine, connect, play_round, answer_for
):
    connection = await connect()
    mission = engine.catalog.get("soundtrack")
    await play_round(connection.id)

    [entry] = await engine.get_category_missions(connection.id, "music", BOB)

    assert entry.mission.id == "soundtrack"
    assert entry.completed is True
    assert entry.is_current is False
    assert entry.user_response == answer_for(mission)
    assert entry.other_response == answer_for(mission)


@pytest.mark.asyncio
async def test_unknown_category_not_found(engine, connect):
    connection = await connect()

    with pytest.raises(NotFoundError):
        await engine.get_category_missions(connection.id, "astrology", ALICE)
