"""
Connection progression feature package.

This vertical slice keeps every layer of the connection and mission
progression flow co-located (domain models, repositories, services, jobs
and the API router) so the whole feature can be navigated in one place.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as progression_router  # noqa: F401
from .services.engine import ProgressionEngine, build_engine, get_engine  # noqa: F401
from .jobs.round_expiry_job import start_round_expiry_scheduler  # noqa: F401
