# scheduler.py - deferred lifecycle actions for deployed bots
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from .config import LOGOUT_REMINDER_AFTER
from .errors import PlatformError
from .messenger import escape_markdown
from .timers import TimerScope

logger = logging.getLogger(__name__)

WARNING = "warning"
DELETION = "deletion"


def parse_logout_time(value: str) -> Optional[datetime]:
    """LAST_LOGOUT_ALERT as naive local time, the clock local records are kept in"""
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def change_session_keyboard(app_name: str, user_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("🔑 Change Session ID", callback_data=f"change_session:{app_name}:{user_id}")]
    ])


class LifecycleScheduler:
    """Fire-once tasks keyed by (app name, kind), detached from whoever scheduled them.

    Errors inside a task are logged and reported to the operator; nothing is
    raised to the scheduling caller.
    """

    def __init__(self, platform, store, messenger):
        self.platform = platform
        self.store = store
        self.messenger = messenger
        self._tasks: Dict[Tuple[str, str], TimerScope] = {}

    def schedule_warning(self, app_name: str, user_id: int, delay: float) -> TimerScope:
        return self._schedule(app_name, WARNING, delay, self._send_warning, app_name, user_id)

    def schedule_deletion(self, app_name: str, user_id: int, delay: float) -> TimerScope:
        return self._schedule(app_name, DELETION, delay, self._expire_trial, app_name, user_id)

    def is_scheduled(self, app_name: str, kind: str) -> bool:
        scope = self._tasks.get((app_name, kind))
        return scope is not None and scope.active > 0

    def cancel(self, app_name: str):
        """Cancel every pending task for app_name"""
        for kind in (WARNING, DELETION):
            scope = self._tasks.pop((app_name, kind), None)
            if scope is not None:
                scope.cancel()

    def cancel_all(self):
        for scope in self._tasks.values():
            scope.cancel()
        self._tasks.clear()

    def _schedule(self, app_name, kind, delay, callback, *args) -> TimerScope:
        key = (app_name, kind)
        previous = self._tasks.pop(key, None)
        if previous is not None:
            previous.cancel()
        scope = TimerScope(f"{kind}:{app_name}")
        self._tasks[key] = scope
        scope.call_later(delay, self._run, key, scope, callback, *args)
        logger.info(f"Scheduled {kind} for {app_name} in {delay:.0f}s")
        return scope

    async def _run(self, key, scope, callback, *args):
        if self._tasks.get(key) is scope:
            del self._tasks[key]
        try:
            await callback(*args)
        except Exception as e:
            logger.error(f"Scheduled {key[1]} for {key[0]} failed: {e}", exc_info=True)
            await self._notify_operator(f"⚠️ Scheduled {key[1]} for {key[0]} failed: {e}")

    # ==================== ACTIONS ====================
    async def _send_warning(self, app_name: str, user_id: int):
        if self.store.get_owned_bot(app_name) is None:
            logger.info(f"Skipping trial warning for {app_name}, bot is already gone")
            return
        await self.messenger.send_message(
            user_id,
            f"⏳ Your free trial bot *{escape_markdown(app_name)}* will be deleted in 5 minutes.\n"
            f"Get a deploy key to keep a bot running permanently."
        )

    async def _expire_trial(self, app_name: str, user_id: int):
        await self.delete_bot(app_name, user_id, reason="Your free trial has ended.")

    async def delete_bot(self, app_name: str, user_id: Optional[int], reason: Optional[str] = None) -> bool:
        """Delete the remote app and the local record.

        Returns True when the remote app was deleted or was already gone.
        The local record is removed either way; removing an absent record
        is not an error.
        """
        self.cancel(app_name)
        if user_id is None:
            user_id = self.store.owner_of(app_name)

        if user_id is not None and reason:
            await self.messenger.send_message(
                user_id, f"🗑️ {reason}\nDeleting *{escape_markdown(app_name)}*..."
            )

        remote_ok = True
        try:
            await self.platform.delete_app(app_name)
        except PlatformError as e:
            if e.is_not_found:
                logger.info(f"App {app_name} was already gone on the platform")
            else:
                remote_ok = False
                logger.error(f"Failed to delete app {app_name}: {e}")
                await self._notify_operator(
                    f"⚠️ Could not delete app *{escape_markdown(app_name)}* "
                    f"(user {user_id}): {escape_markdown(e)}"
                )

        self.store.remove_owned_bot(user_id, app_name)

        if user_id is not None and reason:
            await self.messenger.send_message(
                user_id, f"✅ Bot *{escape_markdown(app_name)}* has been deleted."
            )
        return remote_ok

    async def restart_bot(self, app_name: str):
        """Restart the dynos of app_name; PlatformError propagates"""
        await self.platform.restart_dynos(app_name)
        logger.info(f"Restarted {app_name}")

    async def remind_logged_out_bots(self, now: Optional[datetime] = None,
                                     after: float = LOGOUT_REMINDER_AFTER) -> int:
        """Remind owners whose bot has been logged out for too long.

        Bots whose app no longer exists are dropped from the local records.
        Returns the number of reminders sent.
        """
        now = now or datetime.now()
        threshold = timedelta(seconds=after)
        sent = 0
        for bot in self.store.all_owned_bots():
            try:
                info = await self.platform.get_app_info(bot.app_name)
            except PlatformError as e:
                logger.error(f"[Reminder] Error checking {bot.app_name} (user {bot.user_id}): {e}")
                continue
            if info is None:
                logger.info(f"[Reminder] App {bot.app_name} not found, removing it from records")
                self.store.remove_owned_bot(bot.user_id, bot.app_name)
                continue

            logged_out_at = bot.logged_out_at
            if logged_out_at is None and info.config.get('LAST_LOGOUT_ALERT'):
                logged_out_at = parse_logout_time(info.config['LAST_LOGOUT_ALERT'])
            if logged_out_at is None or info.is_up:
                continue
            if now - logged_out_at <= threshold:
                continue

            await self.messenger.send_message(
                bot.user_id,
                f"📢 Reminder: Your *{escape_markdown(bot.bot_type.upper())}* bot "
                f"*{escape_markdown(bot.app_name)}* has been logged out for more than 24 hours!\n"
                f"Please update your session ID to bring it back online.",
                reply_markup=change_session_keyboard(bot.app_name, bot.user_id),
            )
            sent += 1
        logger.info(f"[Reminder] Sent {sent} logged-out reminders")
        return sent

    async def _notify_operator(self, text: str):
        try:
            await self.messenger.notify_operator(text)
        except Exception as e:
            logger.error(f"Operator notification failed: {e}")
