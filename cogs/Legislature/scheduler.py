# cogs/Legislature/scheduler.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, List, Optional

log = logging.getLogger("legislature.scheduler")

# A tick returns True to keep ticking, False to stop the timer.
TickFn = Callable[[], Awaitable[bool]]


class Scheduler:
    """Owns one periodic asyncio task per entity key.

    Lifecycle: ``arm`` when an entity opens, ``cancel`` when it closes, and
    ``arm`` again on restore (which replaces any previous task for the key).
    Each task runs its tick immediately, then once per ``period`` seconds, and
    never runs two ticks of the same key at the same time.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def arm(self, key: str, tick: TickFn, period: float) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, tick, period), name=f"ticker:{key}")
        self._tasks[key] = task
        log.debug("Armed ticker %s (every %.1fs)", key, period)
        return task

    def cancel(self, key: str) -> bool:
        """Forget the key's timer. A tick cancelling its own key is left to finish its work."""
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        log.debug("Cancelled ticker %s", key)
        return True

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def is_armed(self, key: str) -> bool:
        return key in self._tasks

    def keys(self) -> List[str]:
        return list(self._tasks)

    async def shutdown(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _owns(self, key: str) -> bool:
        return self._tasks.get(key) is asyncio.current_task()

    async def _run(self, key: str, tick: TickFn, period: float):
        try:
            while self._owns(key):
                try:
                    keep_going = await tick()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log.exception("Ticker %s failed; retrying next period", key)
                    keep_going = True
                if not keep_going or not self._owns(key):
                    break
                await asyncio.sleep(period)
        finally:
            if self._owns(key):
                del self._tasks[key]


class KeyedLock:
    """One ``asyncio.Lock`` per entity key, forgotten once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
