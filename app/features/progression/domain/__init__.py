"""
Domain subpackage for the connection progression feature.
"""

from .events import EngineEvent, EventType
from .mission import Mission
from .models import (
    Connection,
    ConnectionStatus,
    MissionOption,
    MissionResponse,
    MissionType,
    RoundResolution,
    RoundStatus,
    SharedInterest,
    Temperature,
    VotingRound,
)

__all__ = [
    "Connection",
    "ConnectionStatus",
    "EngineEvent",
    "EventType",
    "Mission",
    "MissionOption",
    "MissionResponse",
    "MissionType",
    "RoundResolution",
    "RoundStatus",
    "SharedInterest",
    "Temperature",
    "VotingRound",
]
