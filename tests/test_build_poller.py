"""Tests for BuildPoller."""

import asyncio

import pytest

from bot_hosting.build_poller import BuildPoller
from bot_hosting.errors import BuildFailed, DeploymentTimeout, PlatformError
from bot_hosting.models import BUILD_FAILED, BUILD_PENDING, BUILD_SUCCEEDED

from tests.conftest import FakePlatform


class TestBuildPoller:
    """Polling cadence and terminal outcomes."""

    async def test_polls_until_success(self):
        platform = FakePlatform([BUILD_PENDING, BUILD_PENDING, BUILD_SUCCEEDED])
        poller = BuildPoller(platform, poll_interval=0.01, timeout=1)

        build = await poller.wait("my-bot-01", "b1")

        assert build.status == BUILD_SUCCEEDED
        assert platform.status_calls == 3
        assert build.polls == 3
        await asyncio.sleep(0.05)
        assert platform.status_calls == 3

    async def test_failed_build_raises(self):
        platform = FakePlatform([BUILD_PENDING, BUILD_FAILED])
        poller = BuildPoller(platform, poll_interval=0.01, timeout=1)

        with pytest.raises(BuildFailed) as exc_info:
            await poller.wait("my-bot-01", "b1")

        assert exc_info.value.build_id == "b1"
        assert platform.status_calls == 2

    async def test_timeout_stops_polling(self):
        platform = FakePlatform([BUILD_PENDING])
        poller = BuildPoller(platform, poll_interval=0.02, timeout=0.09)

        with pytest.raises(DeploymentTimeout) as exc_info:
            await poller.wait("my-bot-01", "b1")

        assert exc_info.value.what == "Build"
        calls = platform.status_calls
        assert calls <= 5
        await asyncio.sleep(0.1)
        assert platform.status_calls == calls

    async def test_timeout_is_a_timeout_error(self):
        poller = BuildPoller(FakePlatform([BUILD_PENDING]), poll_interval=0.01, timeout=0.03)
        with pytest.raises(TimeoutError):
            await poller.wait("my-bot-01", "b1")

    async def test_tolerates_transient_errors(self):
        platform = FakePlatform([
            PlatformError(503, "unavailable"),
            PlatformError(None, "connection reset"),
            BUILD_SUCCEEDED,
        ])
        poller = BuildPoller(platform, poll_interval=0.01, timeout=1)

        build = await poller.wait("my-bot-01", "b1")

        assert build.status == BUILD_SUCCEEDED
        assert platform.status_calls == 3

    async def test_gives_up_after_repeated_errors(self):
        platform = FakePlatform([PlatformError(503, "unavailable")])
        poller = BuildPoller(platform, poll_interval=0.01, timeout=1, max_poll_errors=3)

        with pytest.raises(PlatformError):
            await poller.wait("my-bot-01", "b1")

        assert platform.status_calls == 3

    async def test_missing_build_fails_immediately(self):
        platform = FakePlatform([PlatformError(404, "Couldn't find that build.")])
        poller = BuildPoller(platform, poll_interval=0.01, timeout=1)

        with pytest.raises(PlatformError) as exc_info:
            await poller.wait("my-bot-01", "b1")

        assert exc_info.value.is_not_found
        assert platform.status_calls == 1

    async def test_progress_callback_receives_each_status(self):
        platform = FakePlatform([BUILD_PENDING, BUILD_SUCCEEDED])
        poller = BuildPoller(platform, poll_interval=0.01, timeout=1)
        seen = []

        async def on_poll(status, elapsed):
            seen.append(status)

        await poller.wait("my-bot-01", "b1", on_poll=on_poll)

        assert seen == [BUILD_PENDING, BUILD_SUCCEEDED]

    async def test_failing_progress_callback_does_not_stop_the_wait(self):
        poller = BuildPoller(FakePlatform([BUILD_SUCCEEDED]), poll_interval=0.01, timeout=1)

        async def on_poll(status, elapsed):
            raise RuntimeError("chat is down")

        build = await poller.wait("my-bot-01", "b1", on_poll=on_poll)
        assert build.status == BUILD_SUCCEEDED
