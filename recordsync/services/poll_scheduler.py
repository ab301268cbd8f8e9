"""Debounced, self-terminating status polling."""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from enum import Enum

from recordsync.models.schemas import Recording
from recordsync.services.errors import NetworkError, NetworkServiceError
from recordsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"


class PollScheduler:
    """Refreshes recording summaries while anything is still processing.

    Usage::

        scheduler = PollScheduler(engine, interval=30.0, debounce=15.0)
        scheduler.arm()          # after an upload, or when pending items show up
        ...
        scheduler.stop()         # on logout / teardown

    Each tick calls ``list_summary`` (falling back to ``list_full`` when a
    pending record is not on the first page), hydrates records that reached
    ``transcribed``/``completed``, and once nothing is pending cancels
    itself and runs one ``list_full`` to pick up the final content.
    Consecutive network failures stretch the wait, capped at
    *max_backoff*.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval: float = 30.0,
        debounce: float = 15.0,
        max_backoff: float = 240.0,
        page_size: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.interval = interval
        self.debounce = debounce
        self.max_backoff = max_backoff
        self.page_size = page_size
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._generation = 0
        self._last_refresh: float | None = None
        self._failures = 0

    @property
    def state(self) -> PollState:
        return PollState.ARMED if self._task is not None else PollState.IDLE

    @property
    def is_armed(self) -> bool:
        return self.state == PollState.ARMED

    @property
    def current_delay(self) -> float:
        if not self._failures:
            return self.interval
        return min(self.interval * 2 ** self._failures, max(self.max_backoff, self.interval))

    def arm(self) -> None:
        """Start the timer if it is not already running."""
        if self._task is not None:
            return
        self._generation += 1
        self._task = asyncio.create_task(self._run(self._generation))
        logger.info(f"Status polling armed (every {self.interval:.0f}s)")

    def observe(self, recordings: Iterable[Recording]) -> None:
        """Arm when any recording is still in a non-terminal status."""
        if any(not r.status.is_terminal for r in recordings):
            self.arm()

    def stop(self) -> None:
        """Cancel the timer. An in-flight tick will not act on its result."""
        self._generation += 1
        task, self._task = self._task, None
        self._failures = 0
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
        logger.info("Status polling stopped")

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self.current_delay)
            if generation != self._generation:
                return
            await self.tick()

    async def tick(self) -> bool:
        """Run one refresh check. Returns False when skipped by the debounce floor."""
        now = self._clock()
        if self._last_refresh is not None and now - self._last_refresh < self.debounce:
            logger.debug(f"Skipping refresh, last one {now - self._last_refresh:.1f}s ago")
            return False
        self._last_refresh = now
        generation = self._generation

        try:
            summaries = await self.engine.list_summary(page=1, page_size=self.page_size)
        except NetworkError as e:
            self._failures += 1
            logger.warning(f"Status refresh failed ({self._failures} in a row), next in {self.current_delay:.0f}s: {e}")
            return True
        except NetworkServiceError as e:
            logger.error(f"Status refresh failed: {e}")
            return True
        self._failures = 0

        if generation != self._generation:
            return True

        on_page = {s.id for s in summaries}
        if any(r.id not in on_page for r in self.engine.pending()):
            logger.info("Pending recordings beyond the first summary page, refreshing the full list")
            try:
                await self.engine.list_full()
            except NetworkServiceError as e:
                logger.error(f"Full refresh for off-page recordings failed: {e}")
            if generation != self._generation:
                return True

        for recording_id in self.engine.needs_hydration():
            try:
                await self.engine.get_detail(recording_id)
            except NetworkServiceError as e:
                logger.error(f"Could not load recording details for {recording_id}: {e}")
            if generation != self._generation:
                return True

        if not self.engine.pending():
            logger.info("No recordings pending, stopping status polling")
            self.stop()
            try:
                await self.engine.list_full()
            except NetworkServiceError as e:
                logger.error(f"Final full refresh failed: {e}")
        return True
