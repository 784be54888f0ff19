"""
Mission content variants.

Each mission type carries its own content schema and its own response
validator. `CONTENT_MODELS` is the single lookup used to parse raw catalog
content for a given type.
"""

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.features.progression.domain.constants import DEFAULT_QUESTION_MAX_LENGTH
from app.features.progression.domain.errors import InvalidResponseError
from app.features.progression.domain.models import MissionType

PAIR_SIDES = ("A", "B")


class ContentModel(BaseModel):
    """Base for all content variants (camelCase on the wire)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    mission_type: ClassVar[MissionType]

    def validate_response(self, payload: Any) -> dict[str, Any]:
        raise NotImplementedError

    def compare(self, first: dict[str, Any], second: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


class OptionPair(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    option_a: str = Field(..., min_length=1)
    option_b: str = Field(..., min_length=1)


def _require_mapping(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise InvalidResponseError("Response must be an object", received=type(payload).__name__)
    return payload


class QuestionContent(ContentModel):
    mission_type: ClassVar[MissionType] = MissionType.QUESTION

    question: str = Field(..., min_length=1)
    max_length: int = Field(DEFAULT_QUESTION_MAX_LENGTH, gt=0)

    def validate_response(self, payload: Any) -> dict[str, Any]:
        text = _require_mapping(payload).get("text")
        if not isinstance(text, str) or not text.strip():
            raise InvalidResponseError("Answer text is required")

        text = text.strip()
        if len(text) > self.max_length:
            raise InvalidResponseError(
                f"Answer exceeds {self.max_length} characters", length=len(text)
            )
        return {"text": text}

    def compare(self, first: dict[str, Any], second: dict[str, Any]) -> dict[str, Any]:
        return {"same": first["text"].casefold() == second["text"].casefold()}


class ChoiceContent(ContentModel):
    mission_type: ClassVar[MissionType] = MissionType.CHOICE

    question: str = Field(..., min_length=1)
    options: list[str] = Field(..., min_length=2)

    def validate_response(self, payload: Any) -> dict[str, Any]:
        selected = _require_mapping(payload).get("selected")
        if selected not in self.options:
            raise InvalidResponseError("Selection is not one of the offered options")
        return {"selected": selected}

    def compare(self, first: dict[str, Any], second: dict[str, Any]) -> dict[str, Any]:
        return {"same": first["selected"] == second["selected"]}


class _PairedContent(ContentModel):
    """Shared validation for variants answered with one side per pair."""

    pairs_field: ClassVar[str]

    @property
    def pairs(self) -> list[OptionPair]:
        return getattr(self, self.pairs_field)

    def validate_response(self, payload: Any) -> dict[str, Any]:
        raw = _require_mapping(payload).get("choices")
        if isinstance(raw, list):
            raw = dict(enumerate(raw))
        if not isinstance(raw, dict):
            raise InvalidResponseError("A choice is required for every pair")

        choices: dict[str, str] = {}
        for key, side in raw.items():
            try:
                index = int(key)
            except (TypeError, ValueError) as e:
                raise InvalidResponseError(f"Invalid pair index: {key!r}") from e
            if not 0 <= index < len(self.pairs):
                raise InvalidResponseError(f"Pair index out of range: {index}")
            if not isinstance(side, str) or side.upper() not in PAIR_SIDES:
                raise InvalidResponseError(f"Choice for pair {index} must be 'A' or 'B'")
            choices[str(index)] = side.upper()

        if len(choices) != len(self.pairs):
            raise InvalidResponseError(
                "A choice is required for every pair",
                answered=len(choices),
                expected=len(self.pairs),
            )
        return {"choices": dict(sorted(choices.items(), key=lambda item: int(item[0])))}

    def compare(self, first: dict[str, Any], second: dict[str, Any]) -> dict[str, Any]:
        matches = [
            first["choices"][str(i)] == second["choices"][str(i)] for i in range(len(self.pairs))
        ]
        return {"matches": matches, "matched": sum(matches), "total": len(matches)}


class ThisOrThatContent(_PairedContent):
    mission_type: ClassVar[MissionType] = MissionType.THIS_OR_THAT
    pairs_field: ClassVar[str] = "choices"

    choices: list[OptionPair] = Field(..., min_length=1)


class WouldYouRatherContent(_PairedContent):
    mission_type: ClassVar[MissionType] = MissionType.WOULD_YOU_RATHER
    pairs_field: ClassVar[str] = "scenarios"

    scenarios: list[OptionPair] = Field(..., min_length=1)


class RankingContent(ContentModel):
    mission_type: ClassVar[MissionType] = MissionType.RANKING

    question: str = Field(..., min_length=1)
    items: list[str] = Field(..., min_length=2)

    @field_validator("items")
    @classmethod
    def _unique_items(cls, items: list[str]) -> list[str]:
        if len(set(items)) != len(items):
            raise ValueError("ranking items must be unique")
        return items

    def validate_response(self, payload: Any) -> dict[str, Any]:
        ranking = _require_mapping(payload).get("ranking")
        if (
            not isinstance(ranking, list)
            or not all(isinstance(item, str) for item in ranking)
            or sorted(ranking) != sorted(self.items)
        ):
            raise InvalidResponseError("Ranking must order every item exactly once")
        return {"ranking": list(ranking)}

    def compare(self, first: dict[str, Any], second: dict[str, Any]) -> dict[str, Any]:
        matches = [a == b for a, b in zip(first["ranking"], second["ranking"], strict=True)]
        return {"matches": matches, "matched": sum(matches), "total": len(matches)}


MissionContent = (
    QuestionContent | ChoiceContent | ThisOrThatContent | WouldYouRatherContent | RankingContent
)

CONTENT_MODELS: dict[MissionType, type[ContentModel]] = {
    model.mission_type: model
    for model in (
        QuestionContent,
        ChoiceContent,
        ThisOrThatContent,
        WouldYouRatherContent,
        RankingContent,
    )
}


def parse_content(mission_type: MissionType, raw: Any) -> ContentModel:
    """Parse raw content for a mission type into its variant model."""
    if isinstance(raw, ContentModel):
        if raw.mission_type != mission_type:
            raise ValueError(f"{type(raw).__name__} does not match mission type {mission_type}")
        return raw
    return CONTENT_MODELS[mission_type].model_validate(raw)
