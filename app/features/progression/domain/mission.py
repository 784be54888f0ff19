"""Mission template model."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from app.features.progression.domain.content import MissionContent, parse_content
from app.features.progression.domain.models import MissionType


class Mission(BaseModel):
    """Immutable mission template owned by the catalog."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    id: str = Field(..., min_length=1)
    type: MissionType
    title: str
    description: str = ""
    content: MissionContent
    category: str
    tags: tuple[str, ...] = ()
    points: int = Field(..., gt=0, le=100)
    difficulty: int = Field(1, ge=1, le=5)

    @model_validator(mode="before")
    @classmethod
    def _parse_content_for_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" in data and "content" in data:
            data = dict(data)
            data["content"] = parse_content(MissionType(data["type"]), data["content"])
        return data

    @property
    def interest_keys(self) -> set[str]:
        """Interests this mission speaks to (its category plus tags)."""
        return {key.casefold() for key in (self.category, *self.tags)}
