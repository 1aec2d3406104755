# build_poller.py - wait for a remote build to finish
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .config import BUILD_POLL_INTERVAL, BUILD_TIMEOUT
from .errors import BuildFailed, DeploymentTimeout, PlatformError
from .models import BUILD_FAILED, BUILD_PENDING, BUILD_SUCCEEDED, BUILD_TIMED_OUT

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], Awaitable[None]]


class PendingBuild:
    """One in-flight remote build"""

    def __init__(self, app_name: str, build_id: str):
        self.app_name = app_name
        self.build_id = build_id
        self.status = BUILD_PENDING
        self.started_at = time.monotonic()
        self.polls = 0

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def __repr__(self):
        return f"PendingBuild({self.app_name!r}, {self.build_id!r}, status={self.status!r}, polls={self.polls})"


class BuildPoller:
    """Polls build status on a fixed cadence until it succeeds, fails or times out"""

    def __init__(self, platform, poll_interval: float = BUILD_POLL_INTERVAL,
                 timeout: float = BUILD_TIMEOUT, max_poll_errors: int = 3):
        self.platform = platform
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_poll_errors = max_poll_errors

    async def wait(self, app_name: str, build_id: str,
                   on_poll: Optional[ProgressCallback] = None) -> PendingBuild:
        """Return the succeeded build or raise BuildFailed / DeploymentTimeout.

        The timeout cancels the polling coroutine, so no status call is made
        after the outcome is decided.
        """
        build = PendingBuild(app_name, build_id)
        try:
            await asyncio.wait_for(self._poll(build, on_poll), timeout=self.timeout)
        except asyncio.TimeoutError:
            build.status = BUILD_TIMED_OUT
            logger.warning(f"Build {build_id} for {app_name} timed out after {build.polls} polls")
            raise DeploymentTimeout("Build", build.elapsed)
        return build

    async def _poll(self, build: PendingBuild, on_poll: Optional[ProgressCallback]):
        errors = 0
        while True:
            await asyncio.sleep(self.poll_interval)
            build.polls += 1
            try:
                status = await self.platform.get_build_status(build.app_name, build.build_id)
            except PlatformError as e:
                errors += 1
                if e.is_not_found or errors >= self.max_poll_errors:
                    build.status = BUILD_FAILED
                    raise
                logger.warning(f"Error polling build {build.build_id} for {build.app_name}: {e}")
                continue
            errors = 0

            if on_poll is not None:
                try:
                    await on_poll(status, build.elapsed)
                except Exception as e:
                    logger.debug(f"Build progress callback failed: {e}")

            if status == BUILD_SUCCEEDED:
                build.status = BUILD_SUCCEEDED
                logger.info(f"Build {build.build_id} for {build.app_name} succeeded after {build.polls} polls")
                return
            if status == BUILD_FAILED:
                build.status = BUILD_FAILED
                raise BuildFailed(build.app_name, build.build_id, "the platform reported the build as failed")
            if status != BUILD_PENDING:
                logger.info(f"Build {build.build_id} reported unexpected status {status!r}, still waiting")
