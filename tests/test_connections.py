"""Tests for ConnectionRegistry."""

import asyncio

import pytest

from bot_hosting.connections import HEALTHY, INVALID_SESSION, ConnectionRegistry
from bot_hosting.errors import DeploymentTimeout, InvalidSessionError, SupersededError


class TestSignal:

    async def test_healthy_signal_resolves_wait(self):
        registry = ConnectionRegistry(timeout=1)
        entry = registry.register("my-bot-01")

        assert registry.signal("my-bot-01", HEALTHY) is True
        assert await registry.wait(entry) is None
        assert "my-bot-01" not in registry

    async def test_invalid_session_signal_rejects_wait(self):
        registry = ConnectionRegistry(timeout=1)
        entry = registry.register("my-bot-01")

        registry.signal("my-bot-01", INVALID_SESSION, "ABC123")

        with pytest.raises(InvalidSessionError) as exc_info:
            await registry.wait(entry)
        assert exc_info.value.detail == "ABC123"

    async def test_signal_without_waiter_is_ignored(self):
        registry = ConnectionRegistry(timeout=1)
        assert registry.signal("nobody-home", HEALTHY) is False
        assert len(registry) == 0

    async def test_second_signal_is_ignored(self):
        registry = ConnectionRegistry(timeout=1)
        entry = registry.register("my-bot-01")

        assert registry.signal("my-bot-01", HEALTHY) is True
        assert registry.signal("my-bot-01", INVALID_SESSION) is False
        assert await registry.wait(entry) is None

    async def test_unknown_outcome_is_rejected(self):
        registry = ConnectionRegistry(timeout=1)
        with pytest.raises(ValueError):
            registry.signal("my-bot-01", "sleepy")


class TestExpiry:

    async def test_no_signal_times_out(self):
        registry = ConnectionRegistry(timeout=0.05)
        entry = registry.register("my-bot-01")

        with pytest.raises(DeploymentTimeout) as exc_info:
            await registry.wait(entry)

        assert exc_info.value.what == "Connection"
        assert "my-bot-01" not in registry

    async def test_expiry_never_fires_after_signal(self):
        registry = ConnectionRegistry(timeout=0.05)
        entry = registry.register("my-bot-01")
        registry.signal("my-bot-01", HEALTHY, "ok")

        await asyncio.sleep(0.1)

        assert entry.future.result() == "ok"
        assert entry.timers.active == 0
        assert registry.expire("my-bot-01") is False

    async def test_manual_expire(self):
        registry = ConnectionRegistry(timeout=10)
        entry = registry.register("my-bot-01")

        assert registry.expire("my-bot-01") is True

        with pytest.raises(DeploymentTimeout):
            await registry.wait(entry)


class TestSupersede:

    async def test_new_registration_supersedes_old(self):
        registry = ConnectionRegistry(timeout=1)
        first = registry.register("my-bot-01")
        second = registry.register("my-bot-01")

        with pytest.raises(SupersededError):
            await registry.wait(first)

        assert registry.get("my-bot-01") is second
        assert registry.signal("my-bot-01", HEALTHY) is True
        assert await registry.wait(second) is None

    async def test_old_timer_does_not_expire_successor(self):
        registry = ConnectionRegistry(timeout=0.05)
        registry.register("my-bot-01")
        await asyncio.sleep(0.03)
        second = registry.register("my-bot-01")

        await asyncio.sleep(0.03)

        # the first entry's deadline has passed, the second's has not
        assert not second.settled
        assert registry.get("my-bot-01") is second

    async def test_superseded_entry_without_waiter_does_not_leak(self):
        registry = ConnectionRegistry(timeout=1)
        first = registry.register("my-bot-01")
        registry.register("my-bot-01")

        assert first.settled
        assert isinstance(first.future.exception(), SupersededError)
        registry.cancel_all()


class TestCancellation:

    async def test_cancelled_waiter_removes_entry(self):
        registry = ConnectionRegistry(timeout=1)
        entry = registry.register("my-bot-01")
        task = asyncio.ensure_future(registry.wait(entry))
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert "my-bot-01" not in registry
        assert entry.timers.active == 0

    async def test_cancel_all(self):
        registry = ConnectionRegistry(timeout=1)
        a = registry.register("bot-aaaaa")
        b = registry.register("bot-bbbbb")

        registry.cancel_all()

        assert len(registry) == 0
        assert a.future.cancelled()
        assert b.future.cancelled()
