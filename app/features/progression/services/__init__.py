"""
Service layer for the connection progression feature.
"""

from .catalog import MissionCatalog
from .connection_store import ConnectionStore
from .engine import ConnectionView, PendingCounts, ProgressionEngine, build_engine, get_engine
from .events import EventPublisher, InMemoryEventPublisher, RedisEventPublisher
from .interests import InMemoryInterestDirectory, ProfileServiceInterestDirectory
from .responses import ResponseAggregator, SubmissionResult
from .scheduler import RoundExpiryScheduler
from .voting import VotingCoordinator

__all__ = [
    "ConnectionStore",
    "ConnectionView",
    "EventPublisher",
    "InMemoryEventPublisher",
    "InMemoryInterestDirectory",
    "MissionCatalog",
    "PendingCounts",
    "ProfileServiceInterestDirectory",
    "ProgressionEngine",
    "RedisEventPublisher",
    "ResponseAggregator",
    "RoundExpiryScheduler",
    "SubmissionResult",
    "VotingCoordinator",
    "build_engine",
    "get_engine",
]
