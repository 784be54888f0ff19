"""
Tests for connection lifecycle transitions.
"""

from unittest.mock import patch

import pytest

from app.features.progression.domain import ConnectionStatus, EventType, Temperature
from app.features.progression.domain.errors import (
    DuplicateConnectionError,
    InvalidTransitionError,
    NotFoundError,
    NotParticipantError,
)

ALICE = "alice"
BOB = "bob"


@pytest.mark.asyncio
async def test_request_creates_pending_connection(engine, publisher):
    connection = await engine.request_connection(ALICE, BOB)

    assert connection.status == ConnectionStatus.PENDING
    assert connection.user_a == ALICE
    assert connection.user_b == BOB
    assert connection.progress == 0
    assert connection.temperature == Temperature.COLD
    assert connection.chat_unlocked is False

    [event] = publisher.of_type(EventType.CONNECTION_REQUESTED)
    assert event.recipients == (BOB,)


@pytest.mark.asyncio
async def test_request_self_rejected(engine):
    with pytest.raises(InvalidTransitionError):
        await engine.request_connection(ALICE, ALICE)


@pytest.mark.asyncio
async def test_duplicate_request_rejected_in_either_direction(engine):
    await engine.request_connection(ALICE, BOB)

    with pytest.raises(DuplicateConnectionError):
        await engine.request_connection(ALICE, BOB)
    with pytest.raises(DuplicateConnectionError):
        await engine.request_connection(BOB, ALICE)


@pytest.mark.asyncio
async def test_new_request_allowed_after_end(engine, connect):
    connection = await connect()
    await engine.end_connection(connection.id, ALICE)

    again = await engine.request_connection(BOB, ALICE)

    assert again.id != connection.id
    assert again.status == ConnectionStatus.PENDING


@pytest.mark.asyncio
async def test_only_target_can_accept(engine):
    connection = await engine.request_connection(ALICE, BOB)

    with pytest.raises(InvalidTransitionError):
        await engine.accept_connection(connection.id, ALICE)


@pytest.mark.asyncio
async def test_accept_activates_and_opens_first_round(engine, publisher, clock):
    connection = await engine.request_connection(ALICE, BOB)

    accepted = await engine.accept_connection(connection.id, BOB)

    assert accepted.status == ConnectionStatus.ACTIVE
    assert accepted.accepted_at == clock.now
    assert accepted.round_count == 1
    assert publisher.of_type(EventType.CONNECTION_ACCEPTED)[0].recipients == (ALICE,)
    assert len(publisher.of_type(EventType.ROUND_OPENED)) == 1


@pytest.mark.asyncio
async def test_accept_twice_rejected(engine, connect):
    connection = await connect()

    with pytest.raises(InvalidTransitionError):
        await engine.accept_connection(connection.id, BOB)


@pytest.mark.asyncio
async def test_postponed_request_can_still_be_accepted(engine):
    connection = await engine.request_connection(ALICE, BOB)

    later = await engine.postpone_connection(connection.id, BOB)
    assert later.status == ConnectionStatus.LATER

    with pytest.raises(InvalidTransitionError):
        await engine.postpone_connection(connection.id, BOB)

    accepted = await engine.accept_connection(connection.id, BOB)
    assert accepted.status == ConnectionStatus.ACTIVE


@pytest.mark.asyncio
async def test_decline_pending_ends_connection(engine, publisher):
    connection = await engine.request_connection(ALICE, BOB)

    declined = await engine.decline_connection(connection.id, BOB)

    assert declined.status == ConnectionStatus.ENDED
    assert declined.ended_by == BOB
    [event] = publisher.of_type(EventType.CONNECTION_ENDED)
    assert event.payload["reason"] == "declined"
    assert event.recipients == (ALICE,)


@pytest.mark.asyncio
async def test_end_twice_rejected(engine, connect):
    connection = await connect()
    await engine.end_connection(connection.id, BOB)

    with pytest.raises(InvalidTransitionError):
        await engine.end_connection(connection.id, ALICE)


@pytest.mark.asyncio
async def test_outsider_cannot_end(engine, connect):
    connection = await connect()

    with pytest.raises(NotParticipantError):
        await engine.end_connection(connection.id, "mallory")


@pytest.mark.asyncio
async def test_unknown_connection(engine):
    with pytest.raises(NotFoundError):
        await engine.accept_connection("missing", BOB)


@pytest.mark.asyncio
async def test_progress_delta_unlocks_chat_once(engine, connect, publisher):
    connection = await connect()

    await engine.apply_progress_delta(connection.id, 40)
    stored = await engine.store.get(connection.id)
    assert stored.temperature == Temperature.COOL
    assert stored.chat_unlocked is False

    outcome = await engine.apply_progress_delta(connection.id, 15)
    assert outcome.current.progress == 55
    assert outcome.current.temperature == Temperature.WARM
    assert outcome.unlocked_now is True

    await engine.apply_progress_delta(connection.id, 10)

    assert len(publisher.of_type(EventType.CHAT_UNLOCKED)) == 1
    assert len(publisher.of_type(EventType.PROGRESS_UPDATED)) == 3


@pytest.mark.asyncio
async def test_progress_delta_ignored_after_end(engine, connect, publisher):
    connection = await connect()
    await engine.apply_progress_delta(connection.id, 20)
    await engine.end_connection(connection.id, ALICE)
    publisher.clear()

    assert await engine.apply_progress_delta(connection.id, 50) is None

    stored = await engine.store.get(connection.id)
    assert stored.progress == 20
    assert stored.chat_unlocked is False
    assert publisher.events == []


@pytest.mark.asyncio
async def test_progress_delta_on_pending_rejected(engine):
    connection = await engine.request_connection(ALICE, BOB)

    with pytest.raises(InvalidTransitionError):
        await engine.apply_progress_delta(connection.id, 10)


@pytest.mark.asyncio
async def test_viewing_marks_seen_for_receiver_only(engine):
    connection = await engine.request_connection(ALICE, BOB)

    await engine.get_connection_view(connection.id, ALICE)
    assert (await engine.store.get(connection.id)).seen_by_receiver is False

    await engine.get_connection_view(connection.id, BOB)
    assert (await engine.store.get(connection.id)).seen_by_receiver is True


@pytest.mark.asyncio
async def test_pending_counts(engine):
    first = await engine.request_connection(ALICE, BOB)
    second = await engine.request_connection("carol", BOB)
    await engine.request_connection("dave", BOB)
    await engine.request_connection(BOB, "erin")
    await engine.postpone_connection(second.id, BOB)
    await engine.get_connection_view(first.id, BOB)

    counts = await engine.pending_counts(BOB)

    assert counts.pending == 2
    assert counts.later == 1
    assert counts.unseen == 1
    assert counts.total == 3


@pytest.mark.asyncio
async def test_list_filters_and_sorting(engine, clock, interests):
    interests.set_interests("carol", ["music", "travel", "food"])
    older = await engine.request_connection(ALICE, BOB)
    clock.advance(minutes=5)
    newer = await engine.request_connection(ALICE, "carol")
    clock.advance(minutes=5)
    incoming = await engine.request_connection("dave", ALICE)

    newest_first = await engine.list_connections(ALICE)
    assert [v.connection.id for v in newest_first] == [incoming.id, newer.id, older.id]

    oldest_first = await engine.list_connections(ALICE, sort_by="oldest")
    assert oldest_first[0].connection.id == older.id

    outgoing = await engine.list_connections(ALICE, status="outgoing")
    assert {v.connection.id for v in outgoing} == {older.id, newer.id}

    incoming_only = await engine.list_connections(ALICE, status="incoming")
    assert [v.connection.id for v in incoming_only] == [incoming.id]

    by_compatibility = await engine.list_connections(ALICE, sort_by="compatibility")
    assert by_compatibility[0].connection.id == newer.id
    assert by_compatibility[0].compatibility_score == 100


@pytest.mark.asyncio
async def test_list_fetches_each_profile_once(engine, interests):
    for other in ("bob", "carol", "dave"):
        await engine.request_connection(ALICE, other)

    with patch.object(interests, "get_interests", wraps=interests.get_interests) as lookup:
        views = await engine.list_connections(ALICE)

    assert len(views) == 3
    fetched = [c.args[0] for c in lookup.await_args_list]
    assert sorted(fetched) == ["alice", "bob", "carol", "dave"]
