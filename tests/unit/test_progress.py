"""
Tests for progress and temperature scoring.
"""

import pytest

from app.features.progression.domain import Temperature
from app.features.progression.domain.constants import UNLOCK_THRESHOLD
from app.features.progression.domain.errors import ProgressInvariantError
from app.features.progression.domain.progress import (
    ProgressState,
    apply_points,
    clamp,
    mission_award,
    normalize,
    temperature_for,
)


@pytest.mark.parametrize(
    "progress,expected",
    [
        (0, Temperature.COLD),
        (29, Temperature.COLD),
        (30, Temperature.COOL),
        (49, Temperature.COOL),
        (50, Temperature.WARM),
        (69, Temperature.WARM),
        (70, Temperature.HOT),
        (100, Temperature.HOT),
    ],
)
def test_temperature_bands(progress, expected):
    assert temperature_for(progress) == expected


def test_forty_then_fifteen_warms_and_unlocks_once():
    state = ProgressState(progress=40, temperature=temperature_for(40), chat_unlocked=False)
    assert state.temperature == Temperature.COOL

    outcome = apply_points(state, 15)

    assert outcome.current.progress == 55
    assert outcome.current.temperature == Temperature.WARM
    assert outcome.current.chat_unlocked is True
    assert outcome.unlocked_now is True
    assert outcome.temperature_changed is True

    again = apply_points(outcome.current, 10)
    assert again.current.chat_unlocked is True
    assert again.unlocked_now is False


def test_progress_is_clamped_at_100():
    state = ProgressState(progress=95, temperature=Temperature.HOT, chat_unlocked=True)

    outcome = apply_points(state, 25)

    assert outcome.current.progress == 100
    assert outcome.applied == 5


def test_unlock_exactly_at_threshold():
    state = ProgressState.initial()

    outcome = apply_points(state, UNLOCK_THRESHOLD)

    assert outcome.current.chat_unlocked is True


def test_progress_never_decreases():
    state = ProgressState.initial()
    seen = [state.progress]
    for points in (10, 0, 25, 40, 40):
        state = apply_points(state, points).current
        seen.append(state.progress)

    assert seen == sorted(seen)


def test_negative_points_rejected():
    with pytest.raises(ProgressInvariantError):
        normalize(-5)


def test_normalize_is_direct_percentage():
    assert normalize(15) == 15
    assert clamp(140) == 100
    assert clamp(-3) == 0


@pytest.mark.parametrize(
    "points,main,shared,expected",
    [
        (10, False, False, 10),
        (10, True, True, 12),
        (15, False, True, 17),  # 16.5 rounds half up
        (20, False, True, 22),
        (25, True, False, 30),
    ],
)
def test_mission_award_interest_bonus(points, main, shared, expected):
    assert mission_award(points, is_main_interest=main, is_shared_interest=shared) == expected
