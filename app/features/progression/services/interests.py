"""
Shared-interest read model.

Profiles (and the interests declared on them) live in the profile service;
this module only fetches interest lists and derives what the pair shares.
Interest lists are ordered by the user's own preference.
"""

from typing import Protocol

import httpx

from app.features.progression.domain import SharedInterest
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class InterestDirectory(Protocol):
    async def get_interests(self, user_id: str) -> list[str]: ...

    async def aclose(self) -> None: ...


class InMemoryInterestDirectory:
    """Interest lists kept in-process (development and tests)."""

    def __init__(self, interests: dict[str, list[str]] | None = None):
        self._interests: dict[str, list[str]] = dict(interests or {})

    def set_interests(self, user_id: str, interests: list[str]) -> None:
        self._interests[user_id] = list(interests)

    async def get_interests(self, user_id: str) -> list[str]:
        return list(self._interests.get(user_id, []))

    async def aclose(self) -> None:
        pass


class ProfileServiceInterestDirectory:
    """
    Reads `interests` from the profile service's public profile endpoint.

    One HTTP client is shared by every lookup and created on first use;
    `aclose()` releases it on shutdown.
    """

    def __init__(
        self, base_url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def get_interests(self, user_id: str) -> list[str]:
        url = f"{self.base_url}/users/{user_id}"
        try:
            response = await self.client.get(url)
            response.raise_for_status()
            payload = response.json()
            interests = (payload.get("interests") if isinstance(payload, dict) else None) or []
        except (httpx.HTTPError, ValueError) as e:
            # Interests only bias mission candidates; a missing list is not fatal
            logger.warning(
                "Failed to fetch profile interests",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return []

        return [str(interest) for interest in interests]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _normalize(interests: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for interest in interests:
        key = interest.strip().casefold()
        if key:
            seen.setdefault(key, None)
    return list(seen)


def compute_shared_interests(first: list[str], second: list[str]) -> list[SharedInterest]:
    """
    Interests declared by both users, strongest first.

    Weight is 1.0 for an interest both users list first and decays with its
    position in each list. The strongest shared interest is the main one.
    """
    a, b = _normalize(first), _normalize(second)
    b_positions = {interest: i for i, interest in enumerate(b)}

    weighted = [
        (round(2 / (2 + i + b_positions[interest]), 3), interest)
        for i, interest in enumerate(a)
        if interest in b_positions
    ]
    weighted.sort(key=lambda item: (-item[0], item[1]))

    return [
        SharedInterest(interest=interest, weight=weight, is_main=index == 0)
        for index, (weight, interest) in enumerate(weighted)
    ]


def compatibility_score(first: list[str], second: list[str]) -> int:
    """Overlap of both interest lists on a 0-100 scale."""
    a, b = set(_normalize(first)), set(_normalize(second))
    union = a | b
    if not union:
        return 0
    return round(100 * len(a & b) / len(union))
