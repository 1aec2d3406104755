"""Tests for health report parsing and the channel bridge."""

import pytest

from bot_hosting.connections import HEALTHY, INVALID_SESSION
from bot_hosting.errors import InvalidSessionError
from bot_hosting.health import HealthReportHandler, parse_health_report


class TestParse:

    def test_connected(self):
        assert parse_health_report("[my-bot-01] connected.\nTime: 2026-01-01") == \
            ("my-bot-01", HEALTHY, None)

    def test_user_logged_out(self):
        text = "User [my-bot-01] has logged out.\n[levanter_abc] invalid"
        assert parse_health_report(text) == ("my-bot-01", INVALID_SESSION, "levanter_abc")

    def test_monitor_alert_format(self):
        text = ('Hey, good morning!\n\nBot "my-bot-01" has logged out.\n'
                '`levanter_abc` invalid\nTime: 2026-01-01 09:00:00')
        assert parse_health_report(text) == ("my-bot-01", INVALID_SESSION, "levanter_abc")

    def test_logged_out_without_session(self):
        assert parse_health_report("User [My-Bot-01] has logged out.") == \
            ("my-bot-01", INVALID_SESSION, None)

    @pytest.mark.parametrize("text", ["", "hello", "my-bot-01 connected", "Build succeeded"])
    def test_unrelated(self, text):
        assert parse_health_report(text) is None


class TestHandler:

    async def test_connected_post_resolves_waiter(self, engine):
        entry = engine.registry.register("my-bot-01")
        handler = HealthReportHandler(engine)

        assert handler.handle_text("[my-bot-01] connected.") is True
        assert await engine.registry.wait(entry) is None

    async def test_logout_post_rejects_waiter_and_marks_bot(self, engine, store):
        store.add_owned_bot(7, "my-bot-01", "S")
        entry = engine.registry.register("my-bot-01")
        handler = HealthReportHandler(engine)

        handler.handle_text("User [my-bot-01] has logged out.\n[S] invalid")

        with pytest.raises(InvalidSessionError):
            await engine.registry.wait(entry)
        assert store.get_owned_bot("my-bot-01").logged_out_at is not None

    async def test_report_without_waiter(self, engine):
        assert HealthReportHandler(engine).handle_text("[my-bot-01] connected.") is False
        assert HealthReportHandler(engine).handle_text("nothing here") is False
