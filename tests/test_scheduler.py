"""Tests for LifecycleScheduler: trial expiry, deletion, reminders."""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from bot_hosting.errors import PlatformError
from bot_hosting.scheduler import DELETION, WARNING, LifecycleScheduler, parse_logout_time

from tests.conftest import wait_until


@pytest.fixture
async def scheduler(platform, store, messenger):
    scheduler = LifecycleScheduler(platform, store, messenger)
    yield scheduler
    scheduler.cancel_all()


def deploy(platform, store, app_name="my-bot-01", user_id=7):
    platform.apps[app_name] = {}
    store.add_owned_bot(user_id, app_name, "SESSION", bot_type="levanter", is_free_trial=True)


class TestDeleteBot:

    async def test_deletes_remote_and_local(self, scheduler, platform, store, messenger):
        deploy(platform, store)

        assert await scheduler.delete_bot("my-bot-01", 7, reason="Bye.") is True

        assert "my-bot-01" not in platform.apps
        assert store.get_owned_bot("my-bot-01") is None
        assert messenger.sent[-1]['text'].startswith("✅")

    async def test_is_idempotent(self, scheduler, platform, store):
        deploy(platform, store)

        assert await scheduler.delete_bot("my-bot-01", 7) is True
        assert await scheduler.delete_bot("my-bot-01", 7) is True
        assert len(platform.called('delete_app')) == 2

    async def test_remote_failure_still_removes_record(self, scheduler, platform, store, messenger):
        deploy(platform, store)
        platform.fail['delete_app'] = PlatformError(503, "unavailable")

        assert await scheduler.delete_bot("my-bot-01", 7) is False

        assert store.get_owned_bot("my-bot-01") is None
        assert any("Could not delete" in text for text in messenger.operator)

    async def test_cancels_pending_tasks(self, scheduler, platform, store):
        deploy(platform, store)
        scheduler.schedule_warning("my-bot-01", 7, 60)
        scheduler.schedule_deletion("my-bot-01", 7, 60)

        await scheduler.delete_bot("my-bot-01", 7)

        assert not scheduler.is_scheduled("my-bot-01", WARNING)
        assert not scheduler.is_scheduled("my-bot-01", DELETION)


class TestScheduling:

    async def test_trial_expires(self, scheduler, platform, store, messenger):
        deploy(platform, store)
        scheduler.schedule_deletion("my-bot-01", 7, 0.01)

        await wait_until(lambda: store.get_owned_bot("my-bot-01") is None)

        assert "my-bot-01" not in platform.apps
        assert any("free trial has ended" in m['text'] for m in messenger.sent)
        assert not scheduler.is_scheduled("my-bot-01", DELETION)

    async def test_warning_is_sent(self, scheduler, platform, store, messenger):
        deploy(platform, store)
        scheduler.schedule_warning("my-bot-01", 7, 0.01)

        await wait_until(lambda: messenger.sent)

        assert messenger.sent[0]['chat_id'] == 7
        assert "5 minutes" in messenger.sent[0]['text']

    async def test_warning_skipped_for_deleted_bot(self, scheduler, messenger):
        scheduler.schedule_warning("ghost-bot", 7, 0.01)
        await asyncio.sleep(0.05)
        assert messenger.sent == []

    async def test_rescheduling_replaces(self, scheduler, platform, store):
        deploy(platform, store)
        scheduler.schedule_deletion("my-bot-01", 7, 0.01)
        scheduler.schedule_deletion("my-bot-01", 7, 60)

        await asyncio.sleep(0.05)

        assert store.get_owned_bot("my-bot-01") is not None
        assert scheduler.is_scheduled("my-bot-01", DELETION)

    async def test_failed_task_notifies_operator(self, scheduler, platform, store, messenger):
        deploy(platform, store)

        async def broken_send(chat_id, text, **opts):
            raise RuntimeError("chat is down")

        messenger.send_message = broken_send
        scheduler.schedule_warning("my-bot-01", 7, 0.01)

        await wait_until(lambda: messenger.operator)
        assert "warning" in messenger.operator[0]


class TestRestartBot:

    async def test_restart(self, scheduler, platform, store):
        deploy(platform, store)
        await scheduler.restart_bot("my-bot-01")
        assert platform.called('restart_dynos') == [('restart_dynos', 'my-bot-01')]

    async def test_restart_missing_app(self, scheduler):
        with pytest.raises(PlatformError):
            await scheduler.restart_bot("ghost-bot")


class TestLoggedOutReminders:

    async def test_reminds_after_a_day(self, scheduler, platform, store, messenger):
        now = datetime(2026, 1, 3)
        deploy(platform, store)
        store.mark_logged_out("my-bot-01", now - timedelta(days=2))
        platform.dyno_state["my-bot-01"] = "crashed"

        assert await scheduler.remind_logged_out_bots(now=now) == 1
        assert messenger.sent[0]['chat_id'] == 7
        assert messenger.sent[0]['reply_markup'] is not None

    async def test_recent_logout_is_left_alone(self, scheduler, platform, store, messenger):
        now = datetime(2026, 1, 3)
        deploy(platform, store)
        store.mark_logged_out("my-bot-01", now - timedelta(hours=2))
        platform.dyno_state["my-bot-01"] = "crashed"

        assert await scheduler.remind_logged_out_bots(now=now) == 0

    async def test_running_bot_is_left_alone(self, scheduler, platform, store):
        now = datetime(2026, 1, 3)
        deploy(platform, store)
        store.mark_logged_out("my-bot-01", now - timedelta(days=2))

        assert await scheduler.remind_logged_out_bots(now=now) == 0

    async def test_vanished_app_is_dropped(self, scheduler, store):
        store.add_owned_bot(7, "gone-bot", "S")

        assert await scheduler.remind_logged_out_bots() == 0
        assert store.get_owned_bot("gone-bot") is None


@pytest.fixture
def local_offset(monkeypatch):
    """Run with the local clock 5h30 ahead of UTC"""
    monkeypatch.setenv('TZ', 'IST-05:30')
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def as_utc_text(local: datetime) -> str:
    return local.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


class TestLogoutTimestamps:

    def test_utc_text_becomes_local_time(self, local_offset):
        assert parse_logout_time("2026-01-03T00:00:00Z") == datetime(2026, 1, 3, 5, 30)

    def test_naive_text_is_kept(self, local_offset):
        assert parse_logout_time("2026-01-03T00:00:00") == datetime(2026, 1, 3)

    def test_garbage(self):
        assert parse_logout_time("yesterday") is None

    async def test_platform_timestamp_uses_local_clock(self, scheduler, platform, store, local_offset):
        now = datetime(2026, 1, 3, 12, 0)
        deploy(platform, store)
        platform.dyno_state["my-bot-01"] = "crashed"
        platform.apps["my-bot-01"]['LAST_LOGOUT_ALERT'] = as_utc_text(now - timedelta(hours=1))

        assert await scheduler.remind_logged_out_bots(now=now, after=3 * 3600) == 0

        platform.apps["my-bot-01"]['LAST_LOGOUT_ALERT'] = as_utc_text(now - timedelta(hours=4))
        assert await scheduler.remind_logged_out_bots(now=now, after=3 * 3600) == 1
