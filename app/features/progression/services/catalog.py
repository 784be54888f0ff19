"""
Mission catalog.

Read-only, ordered collection of mission templates. Catalog order is the
final tie-breaker everywhere missions are ranked.
"""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from app.features.progression.domain import Mission, MissionOption, SharedInterest
from app.features.progression.domain.errors import NotFoundError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "missions.json"


class MissionCatalog:
    def __init__(self, missions: Iterable[Mission]):
        self._missions: dict[str, Mission] = {}
        for mission in missions:
            if mission.id in self._missions:
                raise ValueError(f"Duplicate mission id in catalog: {mission.id}")
            self._missions[mission.id] = mission
        self._positions = {mission_id: i for i, mission_id in enumerate(self._missions)}

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> "MissionCatalog":
        return cls(Mission.model_validate(record) for record in records)

    @classmethod
    def from_file(cls, path: Path | str | None = None) -> "MissionCatalog":
        catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
        with catalog_path.open(encoding="utf-8") as fh:
            catalog = cls.from_records(json.load(fh))

        logger.info("Mission catalog loaded", path=str(catalog_path), missions=len(catalog))
        return catalog

    def __len__(self) -> int:
        return len(self._missions)

    def __contains__(self, mission_id: object) -> bool:
        return mission_id in self._missions

    def get(self, mission_id: str) -> Mission:
        mission = self._missions.get(mission_id)
        if mission is None:
            raise NotFoundError(f"Mission {mission_id} not found", mission_id=mission_id)
        return mission

    def list_missions(self, category: str | None = None) -> list[Mission]:
        missions = list(self._missions.values())
        if category:
            missions = [m for m in missions if m.category == category]
        return missions

    def categories(self) -> list[str]:
        """Distinct categories, in the order they first appear."""
        return list(dict.fromkeys(m.category for m in self._missions.values()))

    def position(self, mission_id: str) -> int:
        return self._positions[mission_id]

    def candidates(
        self,
        exclude: Iterable[str],
        shared_interests: list[SharedInterest],
        limit: int,
    ) -> list[MissionOption]:
        """
        Pick up to `limit` voting options, main-interest missions first, then
        shared-interest missions, then the rest, each group in catalog order.
        """
        excluded = set(exclude)
        main_keys = {si.interest.casefold() for si in shared_interests if si.is_main}
        shared_keys = {si.interest.casefold() for si in shared_interests}

        ranked: list[tuple[int, int, MissionOption]] = []
        for position, mission in enumerate(self._missions.values()):
            if mission.id in excluded:
                continue
            keys = mission.interest_keys
            option = MissionOption(
                mission_id=mission.id,
                is_main_interest=bool(keys & main_keys),
                is_shared_interest=bool(keys & shared_keys),
            )
            rank = 0 if option.is_main_interest else 1 if option.is_shared_interest else 2
            ranked.append((rank, position, option))

        ranked.sort(key=lambda item: (item[0], item[1]))
        return [option for _, _, option in ranked[:limit]]
