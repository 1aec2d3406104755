# messenger.py - Telegram side of the engine
import logging
from typing import List, Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError

logger = logging.getLogger(__name__)


def escape_markdown(text) -> str:
    """Escape the characters legacy Markdown treats specially"""
    text = str(text)
    for ch in ('\\', '_', '*', '`', '['):
        text = text.replace(ch, f'\\{ch}')
    return text


class TelegramMessenger:
    """Sends and edits chat messages; failures are logged, never raised"""

    def __init__(self, bot: Bot, operator_chat_ids: Optional[List[int]] = None):
        self.bot = bot
        self.operator_chat_ids = operator_chat_ids or []

    async def send_message(self, chat_id: int, text: str, **opts) -> Optional[int]:
        opts.setdefault('parse_mode', ParseMode.MARKDOWN)
        try:
            message = await self.bot.send_message(chat_id=chat_id, text=text, **opts)
            return message.message_id
        except BadRequest as e:
            if opts.get('parse_mode'):
                # retry once without formatting, user supplied text may break Markdown
                logger.warning(f"Markdown rejected for chat {chat_id}: {e}, resending as plain text")
                opts.pop('parse_mode')
                return await self.send_message(chat_id, text, parse_mode=None, **opts)
            logger.error(f"Failed to send message to {chat_id}: {e}")
        except TelegramError as e:
            logger.error(f"Failed to send message to {chat_id}: {e}")
        return None

    async def edit_message_text(self, text: str, chat_id: int, message_id: int, **opts) -> bool:
        opts.setdefault('parse_mode', ParseMode.MARKDOWN)
        try:
            await self.bot.edit_message_text(text=text, chat_id=chat_id, message_id=message_id, **opts)
            return True
        except BadRequest as e:
            if 'not modified' in str(e).lower():
                return True
            logger.warning(f"Could not edit message {message_id} in {chat_id}: {e}")
        except TelegramError as e:
            logger.warning(f"Could not edit message {message_id} in {chat_id}: {e}")
        return False

    async def notify_operator(self, text: str):
        for chat_id in self.operator_chat_ids:
            await self.send_message(chat_id, text)
