# alerts.py - operator alerts from code that cannot await
import logging
import threading
from typing import List, Optional

import requests

from .config import TELEGRAM_API_URL

logger = logging.getLogger(__name__)


class OperatorAlerter:
    """Posts straight to the Bot API sendMessage endpoint.

    Used by the log monitor, which runs inside logging handlers and stream
    writes. ``send`` returns immediately and delivers on a daemon thread.
    """

    def __init__(self, bot_token: str, chat_ids: List[int], timeout: float = 10,
                 api_url: str = TELEGRAM_API_URL):
        self.bot_token = bot_token
        self.chat_ids = chat_ids
        self.timeout = timeout
        self.api_url = api_url.rstrip('/')

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_ids)

    def send(self, text: str):
        """Fire-and-forget"""
        if not self.configured:
            logger.warning("Operator alerts are not configured, dropping alert")
            return
        threading.Thread(target=self.send_now, args=(text,), daemon=True).start()

    def send_now(self, text: str) -> Optional[int]:
        """Deliver to every operator chat; returns the first message id"""
        first_id = None
        for chat_id in self.chat_ids:
            message_id = self._post(chat_id, text)
            if first_id is None:
                first_id = message_id
        return first_id

    def _post(self, chat_id: int, text: str) -> Optional[int]:
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        try:
            response = requests.post(
                url, json={'chat_id': chat_id, 'text': text, 'parse_mode': 'Markdown'}, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json().get('result', {}).get('message_id')
        except requests.RequestException as e:
            # never let an alert failure bubble into the log pipeline
            logger.warning(f"Telegram alert to {chat_id} failed: {e}")
        except ValueError as e:
            logger.warning(f"Telegram alert to {chat_id} returned invalid JSON: {e}")
        return None
