"""
Repository subpackage for the connection progression feature.
"""

from .base import ProgressionRepository
from .memory import InMemoryProgressionRepository
from .postgres import PostgresProgressionRepository

__all__ = [
    "InMemoryProgressionRepository",
    "PostgresProgressionRepository",
    "ProgressionRepository",
]
