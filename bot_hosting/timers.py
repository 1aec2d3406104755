# timers.py - cancellable timers grouped per operation
import asyncio
import inspect
import logging
from typing import Callable, Set

logger = logging.getLogger(__name__)


class ScopeClosed(RuntimeError):
    pass


class TimerScope:
    """Cancellation token of one operation; closing it cancels every timer it started"""

    def __init__(self, name: str):
        self.name = name
        self.closed = False
        self._tasks: Set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: Callable, *args) -> asyncio.Task:
        """Run callback once after delay seconds"""
        return self._spawn(self._run_later(delay, callback, args))

    def every(self, interval: float, callback: Callable, *args) -> asyncio.Task:
        """Run callback every interval seconds until the scope is cancelled"""
        return self._spawn(self._run_every(interval, callback, args))

    def cancel(self):
        """Close the scope and cancel every timer it still owns"""
        self.closed = True
        tasks = list(self._tasks)
        self._tasks.clear()
        current = asyncio.current_task() if _loop_running() else None
        for task in tasks:
            # a callback may close its own scope; it must still run to the end
            if task is not current:
                task.cancel()

    @property
    def active(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()
        return False

    def _spawn(self, coro) -> asyncio.Task:
        if self.closed:
            coro.close()
            raise ScopeClosed(f"timer scope {self.name} is closed")
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_later(self, delay, callback, args):
        await asyncio.sleep(delay)
        if self.closed:
            return
        await _invoke(self.name, callback, args)

    async def _run_every(self, interval, callback, args):
        while not self.closed:
            await asyncio.sleep(interval)
            if self.closed:
                return
            await _invoke(self.name, callback, args)

    def __repr__(self):
        return f"TimerScope({self.name!r}, active={self.active}, closed={self.closed})"


async def _invoke(name: str, callback: Callable, args):
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Timer callback in {name} failed: {e}", exc_info=True)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
        return True
    except RuntimeError:
        return False
