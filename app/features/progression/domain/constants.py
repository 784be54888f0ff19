"""
Scoring constants shared by every component of the progression engine.

The temperature bands are mirrored by the mobile client's rendering logic and
must stay in sync with it.
"""

# Progress at or above which chat is unlocked for the pair.
UNLOCK_THRESHOLD = 50

MIN_PROGRESS = 0
MAX_PROGRESS = 100

# Lower bound (inclusive) of each temperature band, hottest first.
TEMPERATURE_BANDS: tuple[tuple[int, str], ...] = (
    (70, "HOT"),
    (50, "WARM"),
    (30, "COOL"),
    (0, "COLD"),
)

# Point multipliers for missions offered because of the pair's interests.
MAIN_INTEREST_BONUS = 1.2
SHARED_INTEREST_BONUS = 1.1

MIN_ROUND_OPTIONS = 2
MAX_ROUND_OPTIONS = 5

DEFAULT_QUESTION_MAX_LENGTH = 500
