# connections.py - waits for freshly deployed bots to report in
import asyncio
import logging
import time
from typing import Dict, Optional

from .config import CONNECT_TIMEOUT
from .errors import DeploymentTimeout, InvalidSessionError, SupersededError
from .timers import TimerScope

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
INVALID_SESSION = "invalid_session"
OUTCOMES = (HEALTHY, INVALID_SESSION)


class PendingConnection:
    """A deployment waiting for its bot to prove it is alive"""

    def __init__(self, app_name: str, progress=None):
        self.app_name = app_name
        self.progress = progress
        self.registered_at = time.monotonic()
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.timers = TimerScope(f"connect:{app_name}")

    @property
    def settled(self) -> bool:
        return self.future.done()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.registered_at

    def _resolve(self, detail: Optional[str]):
        self.timers.cancel()
        self.future.set_result(detail)

    def _reject(self, error: Exception):
        self.timers.cancel()
        self.future.set_exception(error)
        # nobody may be awaiting a superseded entry
        self.future.add_done_callback(_consume_exception)

    def __repr__(self):
        state = 'settled' if self.settled else 'pending'
        return f"PendingConnection({self.app_name!r}, {state}, {self.elapsed:.0f}s)"


def _consume_exception(future: asyncio.Future):
    if not future.cancelled():
        future.exception()


class ConnectionRegistry:
    """Process-wide table of pending connections, one per app name.

    All mutations are synchronous, so an entry is installed or removed
    without any other coroutine observing a half-updated table.
    """

    def __init__(self, timeout: float = CONNECT_TIMEOUT):
        self.timeout = timeout
        self._pending: Dict[str, PendingConnection] = {}

    def register(self, app_name: str, progress=None) -> PendingConnection:
        previous = self._pending.pop(app_name, None)
        if previous is not None and not previous.settled:
            logger.warning(f"Superseding pending connection for {app_name}")
            previous._reject(SupersededError(app_name))

        entry = PendingConnection(app_name, progress)
        self._pending[app_name] = entry
        entry.timers.call_later(self.timeout, self._expire_entry, entry)
        logger.info(f"Waiting up to {self.timeout:.0f}s for {app_name} to connect")
        return entry

    def signal(self, app_name: str, outcome: str, detail: Optional[str] = None) -> bool:
        """Report the health of app_name. Returns False when nobody was waiting."""
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown connection outcome: {outcome}")
        entry = self._pending.pop(app_name, None)
        if entry is None or entry.settled:
            logger.info(f"Connection signal '{outcome}' for {app_name} with no pending wait, ignoring")
            return False

        if outcome == HEALTHY:
            logger.info(f"{app_name} connected after {entry.elapsed:.0f}s")
            entry._resolve(detail)
        else:
            logger.info(f"{app_name} reported an invalid session: {detail}")
            entry._reject(InvalidSessionError(app_name, detail))
        return True

    def expire(self, app_name: str) -> bool:
        """Reject the pending wait for app_name with a timeout, if still pending"""
        entry = self._pending.get(app_name)
        if entry is None:
            return False
        return self._expire_entry(entry)

    def _expire_entry(self, entry: PendingConnection) -> bool:
        # the timer of a replaced entry must not touch its successor
        if self._pending.get(entry.app_name) is not entry or entry.settled:
            return False
        del self._pending[entry.app_name]
        logger.warning(f"{entry.app_name} did not connect within {self.timeout:.0f}s")
        entry._reject(DeploymentTimeout("Connection", entry.elapsed))
        return True

    async def wait(self, entry: PendingConnection) -> Optional[str]:
        """Await the outcome of entry; returns the healthy detail or raises"""
        try:
            return await asyncio.shield(entry.future)
        except asyncio.CancelledError:
            if self._pending.get(entry.app_name) is entry:
                del self._pending[entry.app_name]
            entry.timers.cancel()
            if not entry.future.done():
                entry.future.cancel()
            raise

    def get(self, app_name: str) -> Optional[PendingConnection]:
        return self._pending.get(app_name)

    def cancel_all(self):
        """Drop every pending wait, e.g. on shutdown"""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            entry.timers.cancel()
            if not entry.future.done():
                entry.future.cancel()

    def __contains__(self, app_name: str) -> bool:
        return app_name in self._pending

    def __len__(self) -> int:
        return len(self._pending)
