"""
Progress & temperature scoring.

Pure functions only: every progress change in the engine goes through
`apply_points`, which enforces that progress and chat unlock never move
backwards.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.features.progression.domain.constants import (
    MAIN_INTEREST_BONUS,
    MAX_PROGRESS,
    MIN_PROGRESS,
    SHARED_INTEREST_BONUS,
    TEMPERATURE_BANDS,
    UNLOCK_THRESHOLD,
)
from app.features.progression.domain.errors import ProgressInvariantError
from app.features.progression.domain.models import Temperature


@dataclass(frozen=True, slots=True)
class ProgressState:
    progress: int
    temperature: Temperature
    chat_unlocked: bool

    @classmethod
    def initial(cls) -> "ProgressState":
        return cls(progress=MIN_PROGRESS, temperature=Temperature.COLD, chat_unlocked=False)


@dataclass(frozen=True, slots=True)
class ProgressOutcome:
    previous: ProgressState
    current: ProgressState
    applied: int

    @property
    def unlocked_now(self) -> bool:
        return self.current.chat_unlocked and not self.previous.chat_unlocked

    @property
    def temperature_changed(self) -> bool:
        return self.current.temperature != self.previous.temperature


def clamp(value: int, low: int = MIN_PROGRESS, high: int = MAX_PROGRESS) -> int:
    return max(low, min(high, value))


def temperature_for(progress: int) -> Temperature:
    for lower_bound, band in TEMPERATURE_BANDS:
        if progress >= lower_bound:
            return Temperature(band)
    return Temperature.COLD


def is_unlocked(progress: int) -> bool:
    return progress >= UNLOCK_THRESHOLD


def normalize(points: int) -> int:
    """Map a mission's point value onto the 0-100 progress scale (1 point = 1%)."""
    if points < 0:
        raise ProgressInvariantError("Mission points cannot be negative", points=points)
    return int(points)


def mission_award(
    points: int, *, is_main_interest: bool = False, is_shared_interest: bool = False
) -> int:
    """Points awarded for completing a mission, with the interest bonus applied."""
    multiplier = 1.0
    if is_main_interest:
        multiplier = MAIN_INTEREST_BONUS
    elif is_shared_interest:
        multiplier = SHARED_INTEREST_BONUS

    scaled = Decimal(points) * Decimal(str(multiplier))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_points(state: ProgressState, points: int) -> ProgressOutcome:
    """Return the state after adding `points` to progress."""
    delta = normalize(points)
    progress = clamp(state.progress + delta)
    current = ProgressState(
        progress=progress,
        temperature=temperature_for(progress),
        chat_unlocked=state.chat_unlocked or is_unlocked(progress),
    )

    if current.progress < state.progress:
        raise ProgressInvariantError(
            "Progress cannot decrease", previous=state.progress, current=current.progress
        )
    if state.chat_unlocked and not current.chat_unlocked:
        raise ProgressInvariantError("Chat unlock cannot be reverted")

    return ProgressOutcome(previous=state, current=current, applied=current.progress - state.progress)
