"""
Error taxonomy for the progression engine.

Every error is a local validation failure surfaced to the caller as-is; none
of them is retried by the engine. The API layer maps `status_code` and `code`
onto the HTTP response.
"""

from typing import Any


class ProgressionError(Exception):
    """Base class for all engine failures."""

    code = "PROGRESSION_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class DuplicateConnectionError(ProgressionError):
    code = "DUPLICATE_CONNECTION"
    status_code = 409


class InvalidTransitionError(ProgressionError):
    code = "INVALID_TRANSITION"
    status_code = 409


class AlreadyVotedError(ProgressionError):
    code = "ALREADY_VOTED"
    status_code = 409


class AlreadyRespondedError(ProgressionError):
    code = "ALREADY_RESPONDED"
    status_code = 409


class RoundClosedError(ProgressionError):
    code = "ROUND_CLOSED"
    status_code = 410


class InvalidOptionError(ProgressionError):
    code = "INVALID_OPTION"
    status_code = 422


class InvalidResponseError(ProgressionError):
    code = "INVALID_RESPONSE"
    status_code = 422


class NotFoundError(ProgressionError):
    code = "NOT_FOUND"
    status_code = 404


class MissionNotActiveError(NotFoundError):
    """The mission exists but is not the connection's current mission."""

    code = "MISSION_NOT_ACTIVE"


class NotParticipantError(ProgressionError):
    code = "NOT_PARTICIPANT"
    status_code = 403


class ProgressInvariantError(ProgressionError):
    """Raised when a progress update would move progress or unlock backwards."""

    code = "PROGRESS_INVARIANT"
    status_code = 500
