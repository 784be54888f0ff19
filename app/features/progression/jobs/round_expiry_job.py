"""
Round expiry sweep.

In-process timers resolve rounds at their deadline while the API process is
up. This job runs in the worker and periodically resolves any round whose
deadline passed without a timer firing (restarts, multiple API replicas).
"""

import asyncio
from datetime import UTC, datetime

from app.config import settings
from app.features.progression.domain import RoundStatus
from app.features.progression.services.engine import ProgressionEngine, build_engine
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RoundExpiryJobError(Exception):
    """Raised when a sweep cannot run at all (storage unavailable)."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class RoundExpiryMetrics:
    """Metrics tracking for one sweep."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.rounds_checked = 0
        self.rounds_resolved = 0
        self.rounds_reopened = 0
        self.rounds_skipped = 0
        self.total_duration_seconds = 0.0

    def record(self, status: RoundStatus, reopened: bool) -> None:
        self.rounds_checked += 1
        if reopened:
            self.rounds_reopened += 1
        elif status == RoundStatus.SKIPPED:
            self.rounds_skipped += 1
        else:
            self.rounds_resolved += 1

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "round_expiry",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 3),
            "rounds_checked": self.rounds_checked,
            "rounds_resolved": self.rounds_resolved,
            "rounds_reopened": self.rounds_reopened,
            "rounds_skipped": self.rounds_skipped,
        }


class RoundExpiryJob:
    def __init__(self, engine: ProgressionEngine):
        self.engine = engine
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = RoundExpiryMetrics()

    async def run_once(self, now: datetime | None = None) -> dict:
        """Run a single sweep and return its metrics."""
        if self.is_running:
            logger.warning("Round expiry sweep already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            reopen_counts = {
                r.id: r.reopen_count for r in await self.engine.repository.list_open_rounds()
            }
            for voting_round in await self.engine.expire_due_rounds(now):
                reopened = (
                    voting_round.is_open
                    and voting_round.reopen_count > reopen_counts.get(voting_round.id, 0)
                )
                self.job_metrics.record(voting_round.status, reopened)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)

            metrics = self.job_metrics.to_dict()
            logger.info("Round expiry sweep completed", **metrics)
            return metrics

        except Exception as e:
            logger.error("Round expiry sweep failed", error=str(e), error_type=type(e).__name__)
            raise RoundExpiryJobError(f"Round expiry sweep failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "round_expiry",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


def _worker_engine() -> ProgressionEngine:
    engine = build_engine(settings)
    # The sweep is the only deadline mechanism in the worker process
    engine.enable_timers = False
    return engine


async def run_round_expiry_job(engine: ProgressionEngine | None = None) -> dict:
    """Run a single sweep."""
    return await RoundExpiryJob(engine or _worker_engine()).run_once()


async def start_round_expiry_scheduler() -> None:
    """
    Start the periodic round expiry sweep.

    Runs in the worker process; storage is initialized here because the
    worker has no FastAPI lifespan.
    """
    from app.db.pool import db_pool
    from app.features.progression.repository import PostgresProgressionRepository
    from app.services.redis_client import fast_redis

    if settings.STORAGE_BACKEND == "postgres":
        await db_pool.initialize()
    if settings.EVENT_BACKEND == "redis":
        await fast_redis.initialize()

    engine = _worker_engine()
    if isinstance(engine.repository, PostgresProgressionRepository):
        await engine.repository.ensure_schema()

    job = RoundExpiryJob(engine)
    interval = settings.EXPIRY_SWEEP_INTERVAL_SECONDS
    logger.info("Starting round expiry scheduler", interval_seconds=interval)

    try:
        while True:
            try:
                await job.run_once()
            except RoundExpiryJobError as e:
                logger.error("Error in round expiry scheduler", error=str(e))
            await asyncio.sleep(interval)
    finally:
        await engine.shutdown()
        if settings.EVENT_BACKEND == "redis":
            await fast_redis.close()
        if settings.STORAGE_BACKEND == "postgres":
            await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_round_expiry_scheduler())
