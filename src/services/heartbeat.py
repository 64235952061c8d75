"""
Periodic heartbeat scheduler.

Runs once immediately on start, then every ``interval`` seconds. Each beat
runs the registered tasks in order (weather refresh, status broadcast, ...).
A failing task is logged and does not stop the schedule.
"""

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

from common.logging import TimedLogger, get_logger
from common.models import HeartbeatInfo, utc_now

logger = get_logger(__name__)

HeartbeatTask = Callable[[], Awaitable[None]]


class HeartbeatService:
    """asyncio-based periodic task runner."""

    def __init__(self, interval: float = 1800.0):
        self.interval = interval
        self.last_run = None
        self.next_run = None
        self._tasks: List[HeartbeatTask] = []
        self._loop_task: Optional[asyncio.Task] = None
        self._beat_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def add_task(self, task: HeartbeatTask) -> None:
        self._tasks.append(task)

    def info(self) -> HeartbeatInfo:
        return HeartbeatInfo(
            interval=self.interval,
            last_run=self.last_run,
            next_run=self.next_run,
            is_running=self.is_running,
        )

    def start(self) -> None:
        """Start the schedule; a no-op when already running."""
        if self.is_running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run(), name="heartbeat")
        logger.info(event="heartbeat_started", interval=self.interval)

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        self.next_run = None
        logger.info(event="heartbeat_stopped")

    async def trigger_now(self) -> None:
        """Run one beat immediately; the periodic schedule is not shifted."""
        await self._beat()

    async def _run(self) -> None:
        while True:
            self.next_run = utc_now() + timedelta(seconds=self.interval)
            await self._beat()
            delay = (self.next_run - utc_now()).total_seconds()
            await asyncio.sleep(max(0.0, delay))

    async def _beat(self) -> None:
        # Concurrent triggers run one after the other, never interleaved
        async with self._beat_lock:
            self.last_run = utc_now()
            with TimedLogger(logger, "heartbeat_fired", task_count=len(self._tasks)):
                for task in self._tasks:
                    try:
                        await task()
                    except Exception as e:
                        logger.exception(
                            event="heartbeat_task_failed",
                            task=getattr(task, "__name__", repr(task)),
                            error=str(e),
                        )
