import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from viraloop.utils.logger import logger
from viraloop.billing.repo.tables import utcnow


def seconds_until_next_run(now: datetime, hour_utc: int) -> float:
    next_run = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


class DailyJobScheduler:
    """Runs one coroutine shortly after startup and then every day at a fixed UTC hour.

    The startup run covers whatever a restart made the process miss. Errors
    in a run are logged and the loop keeps its schedule.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        hour_utc: int = 0,
        startup_delay: float = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.job = job
        self.hour_utc = hour_utc
        self.startup_delay = startup_delay
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_once(self) -> None:
        try:
            await self.job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[SCHEDULER] Job {self.name} failed: {e}", exc_info=True)

    async def _loop(self) -> None:
        logger.info(
            f"[SCHEDULER] Starting {self.name} "
            f"(startup_delay={self.startup_delay}s, daily at {self.hour_utc:02d}:00 UTC)"
        )
        try:
            await asyncio.sleep(self.startup_delay)
            await self._run_once()

            while True:
                delay = seconds_until_next_run(self.clock(), self.hour_utc)
                logger.debug(f"[SCHEDULER] Next {self.name} run in {delay:.0f}s")
                await asyncio.sleep(delay)
                await self._run_once()
        except asyncio.CancelledError:
            logger.info(f"[SCHEDULER] {self.name} loop cancelled")
            raise

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._loop(), name=f"scheduler:{self.name}")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
