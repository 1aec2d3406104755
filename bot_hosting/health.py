# health.py - turn health reports from deployed bots into connection signals
import logging
import re
from typing import Optional, Tuple

from telegram import Update
from telegram.ext import ContextTypes

from .connections import HEALTHY, INVALID_SESSION

logger = logging.getLogger(__name__)

CONNECTED_RE = re.compile(r'^\[([a-z0-9-]+)\]\s+connected\.?', re.IGNORECASE | re.MULTILINE)
LOGGED_OUT_RE = re.compile(r'User \[([a-z0-9-]+)\] has logged out\.', re.IGNORECASE)
SESSION_INVALID_RE = re.compile(r'[\[`]([^\]`]+)[\]`]\s*invalid', re.IGNORECASE)
BOT_LOGGED_OUT_RE = re.compile(r'Bot "\*?([a-z0-9-]+)\*?" has logged out', re.IGNORECASE)


def parse_health_report(text: str) -> Optional[Tuple[str, str, Optional[str]]]:
    """Return (app_name, outcome, detail) for a recognised report, else None"""
    if not text:
        return None
    match = LOGGED_OUT_RE.search(text) or BOT_LOGGED_OUT_RE.search(text)
    if match:
        app_name = match.group(1).lower()
        session = SESSION_INVALID_RE.search(text[match.end():])
        return app_name, INVALID_SESSION, session.group(1) if session else None
    match = CONNECTED_RE.search(text)
    if match:
        return match.group(1).lower(), HEALTHY, None
    return None


class HealthReportHandler:
    """Feeds channel posts into the engine's connection registry and records"""

    def __init__(self, engine, channel_id: Optional[int] = None):
        self.engine = engine
        self.channel_id = channel_id

    def handle_text(self, text: str) -> bool:
        report = parse_health_report(text)
        if report is None:
            return False
        app_name, outcome, detail = report
        if outcome == INVALID_SESSION:
            self.engine.store.mark_logged_out(app_name)
        return self.engine.registry.signal(app_name, outcome, detail)

    async def handle_post(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """channel_post handler"""
        post = update.channel_post
        if post is None or not post.text:
            return
        if self.channel_id and post.chat_id != self.channel_id:
            return
        matched = self.handle_text(post.text)
        logger.debug(f"Channel post handled, waiter matched: {matched}")
