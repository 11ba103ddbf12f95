"""
Session Clock - per-session countdown for the item up for bid.

The clock never mutates a session. When the deadline passes it calls
the expiry callback with the item id and start time it was armed for,
and the engine runs that expiry through the same per-session gate as
client actions. A stale expiry (item already closed, or a bid has since
moved the start time) is recognized there and ignored.

With auto_expire disabled no background task is created; expiry is then
driven lazily by time-left reads.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from gavel.utils.logger import get_logger

logger = get_logger("clock")

# (session_id, item_id, start_time) -> None
ExpireCallback = Callable[[str, str, float], Awaitable[None]]


class SessionClock:
    """Countdown for one session."""

    def __init__(
        self,
        session_id: str,
        duration: float,
        on_expire: ExpireCallback,
        now: Callable[[], float] = time.time,
        auto_expire: bool = True,
    ):
        self.session_id = session_id
        self.duration = duration
        self.auto_expire = auto_expire
        self._on_expire = on_expire
        self._now = now
        self._task: Optional[asyncio.Task] = None
        self._item_id: Optional[str] = None
        self._start_time: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self._item_id is not None

    @property
    def item_id(self) -> Optional[str]:
        return self._item_id

    @property
    def deadline(self) -> Optional[float]:
        if self._start_time is None:
            return None
        return self._start_time + self.duration

    def time_left(self) -> float:
        if self._start_time is None:
            return 0.0
        return max(0.0, self.duration - (self._now() - self._start_time))

    def arm(self, item_id: str, start_time: float) -> None:
        """(Re)start the countdown for an item from start_time."""
        self.cancel()
        self._item_id = item_id
        self._start_time = start_time
        if self.auto_expire:
            self._task = asyncio.get_running_loop().create_task(
                self._run(item_id, start_time),
                name=f"clock-{self.session_id}",
            )
        logger.debug(
            f"Clock armed for session {self.session_id} item {item_id}, "
            f"{self.time_left():.1f}s left"
        )

    def cancel(self) -> None:
        """Stop the countdown. An expiry already in flight stays harmless."""
        task = self._task
        self._task = None
        self._item_id = None
        self._start_time = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, item_id: str, start_time: float) -> None:
        # The event loop may wake a little early relative to now()
        while True:
            delay = start_time + self.duration - self._now()
            if delay <= 0:
                break
            await asyncio.sleep(delay)

        # Detach first: the callback re-arms this clock for the next item
        if self._task is asyncio.current_task():
            self._task = None

        try:
            await self._on_expire(self.session_id, item_id, start_time)
        except Exception as e:
            # The next time-left read retries the expiry lazily
            logger.error(f"Expiry for session {self.session_id} item {item_id} failed: {e}")
