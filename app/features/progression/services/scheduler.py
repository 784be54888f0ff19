"""
In-process deadline timers for voting rounds.

One asyncio task per open round sleeps until the round's deadline and then
hands the round to the expire callback. The callback re-checks the round
under the connection lock, so a timer that fires after the round resolved
is harmless. The worker's periodic sweep covers rounds whose timers were
lost to a restart.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime

from app.features.progression.services.connection_store import Clock, utc_now
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ExpireCallback = Callable[[str], Awaitable[object]]


class RoundExpiryScheduler:
    def __init__(self, expire: ExpireCallback, clock: Clock = utc_now):
        self._expire = expire
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def pending(self) -> set[str]:
        return {round_id for round_id, task in self._tasks.items() if not task.done()}

    def schedule(self, round_id: str, deadline: datetime) -> None:
        """
        Arm (or re-arm) the timer for a round.

        A timer already armed for the round is cancelled, unless it is the
        caller itself (a re-opened round re-arming from inside its timer).
        """
        previous = self._tasks.get(round_id)
        if previous is not None and previous is not asyncio.current_task() and not previous.done():
            previous.cancel()

        delay = max(0.0, (deadline - self._clock()).total_seconds())
        task = asyncio.create_task(self._fire(round_id, delay), name=f"round-expiry:{round_id}")
        self._tasks[round_id] = task
        logger.debug("Round expiry scheduled", round_id=round_id, delay_seconds=round(delay, 3))

    def cancel(self, round_id: str) -> None:
        task = self._tasks.pop(round_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            logger.debug("Round expiry cancelled", round_id=round_id)

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Round expiry timers stopped", cancelled=len(tasks))

    async def _fire(self, round_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self._expire(round_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The sweep retries the round later
            logger.error(
                "Round expiry failed", round_id=round_id, error=str(e), error_type=type(e).__name__
            )
        finally:
            if self._tasks.get(round_id) is asyncio.current_task():
                del self._tasks[round_id]
