# storage.py - JSON file persistence for owned bots, trials and deploy keys
import json
import logging
import os
import secrets
import string
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import TRIAL_COOLDOWN_DAYS
from .models import KEY_UNKNOWN, DeployKey, FreeTrialWindow, OwnedBot

logger = logging.getLogger(__name__)

KEY_CHARS = string.ascii_uppercase + string.digits
KEY_LENGTH = 8


def generate_key(length: int = KEY_LENGTH) -> str:
    return ''.join(secrets.choice(KEY_CHARS) for _ in range(length))


class Database:
    """Durable records owned by the hosting bot.

    Everything lives in one JSON document that is rewritten on every change.
    """

    def __init__(self, file_path: Optional[str] = None,
                 trial_cooldown_days: int = TRIAL_COOLDOWN_DAYS):
        self.file_path = file_path
        self.trial_cooldown = timedelta(days=trial_cooldown_days)
        self.data = self.load_data()

    def load_data(self) -> Dict:
        empty = {'bots': {}, 'trials': {}, 'keys': {}}
        if not self.file_path or not os.path.exists(self.file_path):
            return empty
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt database file {self.file_path}: {e}")
            raise
        for section in empty:
            data.setdefault(section, {})
        logger.info(f"Loaded {len(data['bots'])} bots and {len(data['keys'])} keys from {self.file_path}")
        return data

    def save_data(self):
        if not self.file_path:
            return
        tmp_path = f"{self.file_path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(self.data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.file_path)

    # ---------- owned bots ----------
    def add_owned_bot(self, user_id: int, app_name: str, session_token: str,
                      bot_type: str = "unknown", is_free_trial: bool = False,
                      status: str = "live") -> OwnedBot:
        """Insert or replace the record for app_name"""
        bot = OwnedBot(user_id=user_id, app_name=app_name, session_token=session_token,
                       bot_type=bot_type, is_free_trial=is_free_trial, status=status)
        self.data['bots'][app_name] = bot.to_dict()
        self.save_data()
        logger.info(f"[DB] Recorded bot {app_name} for user {user_id} ({bot_type}, {status})")
        return bot

    def remove_owned_bot(self, user_id: int, app_name: str) -> bool:
        """Remove the record; returns False when there was nothing to remove"""
        record = self.data['bots'].get(app_name)
        if record is None or (user_id is not None and record['user_id'] != user_id):
            logger.info(f"[DB] No record of {app_name} for user {user_id}, nothing to remove")
            return False
        del self.data['bots'][app_name]
        self.save_data()
        logger.info(f"[DB] Removed bot {app_name} for user {user_id}")
        return True

    def get_owned_bot(self, app_name: str) -> Optional[OwnedBot]:
        record = self.data['bots'].get(app_name)
        return OwnedBot.from_dict(record) if record else None

    def owner_of(self, app_name: str) -> Optional[int]:
        record = self.data['bots'].get(app_name)
        return record['user_id'] if record else None

    def list_owned_bots(self, user_id: int) -> List[OwnedBot]:
        bots = [OwnedBot.from_dict(r) for r in self.data['bots'].values() if r['user_id'] == user_id]
        return sorted(bots, key=lambda b: b.created_at)

    def all_owned_bots(self) -> List[OwnedBot]:
        return [OwnedBot.from_dict(r) for r in self.data['bots'].values()]

    def update_session(self, user_id: int, app_name: str, session_token: str) -> bool:
        record = self.data['bots'].get(app_name)
        if record is None or record['user_id'] != user_id:
            return False
        record['session_token'] = session_token
        record['logged_out_at'] = None
        self.save_data()
        return True

    def set_bot_status(self, app_name: str, status: str) -> bool:
        record = self.data['bots'].get(app_name)
        if record is None:
            return False
        record['status'] = status
        self.save_data()
        return True

    def mark_logged_out(self, app_name: str, when: Optional[datetime] = None) -> bool:
        record = self.data['bots'].get(app_name)
        if record is None:
            return False
        if not record.get('logged_out_at'):
            record['logged_out_at'] = (when or datetime.now()).isoformat()
            self.save_data()
        return True

    # ---------- free trials ----------
    def get_free_trial_window(self, user_id: int) -> Optional[FreeTrialWindow]:
        used_at = self.data['trials'].get(str(user_id))
        if not used_at:
            return None
        return FreeTrialWindow(user_id, datetime.fromisoformat(used_at), self.trial_cooldown)

    def can_deploy_free_trial(self, user_id: int, now: Optional[datetime] = None) -> bool:
        window = self.get_free_trial_window(user_id)
        return window is None or window.can_deploy(now)

    def record_free_trial_use(self, user_id: int, when: Optional[datetime] = None) -> FreeTrialWindow:
        """Create or move the user's trial window; one record per user"""
        when = when or datetime.now()
        self.data['trials'][str(user_id)] = when.isoformat()
        self.save_data()
        logger.info(f"[DB] Recorded free trial for {user_id}")
        return FreeTrialWindow(user_id, when, self.trial_cooldown)

    # ---------- deploy keys ----------
    def add_deploy_key(self, key: str, uses: int, created_by: Optional[int] = None,
                       user_id: Optional[int] = None) -> DeployKey:
        deploy_key = DeployKey(key=key, uses_left=uses, created_by=created_by, user_id=user_id)
        self.data['keys'][key] = deploy_key.to_dict()
        self.save_data()
        logger.info(f"[DB] Added key {key} user {user_id or 'any'} uses {uses} by {created_by}")
        return deploy_key

    def create_deploy_key(self, uses: int = 1, created_by: Optional[int] = None,
                          user_id: Optional[int] = None) -> DeployKey:
        """Add a key with a fresh random name"""
        key = generate_key()
        while key in self.data['keys']:
            key = generate_key()
        return self.add_deploy_key(key, uses, created_by=created_by, user_id=user_id)

    def get_deploy_key(self, key: str) -> Optional[DeployKey]:
        record = self.data['keys'].get(key)
        return DeployKey.from_dict(record) if record else None

    def deploy_key_status(self, key: str, user_id: Optional[int] = None) -> str:
        """unknown, exhausted or active; keys bound to another user are unknown"""
        deploy_key = self.get_deploy_key(key)
        if deploy_key is None:
            return KEY_UNKNOWN
        if deploy_key.user_id is not None and user_id is not None and deploy_key.user_id != user_id:
            return KEY_UNKNOWN
        return deploy_key.status

    def consume_deploy_key(self, key: str, user_id: Optional[int] = None) -> Optional[int]:
        """Use up one use of key and return the uses left.

        None means the key cannot be used: it never existed, belongs to
        somebody else, or is exhausted. ``deploy_key_status`` tells these
        apart.
        """
        deploy_key = self.get_deploy_key(key)
        if deploy_key is None or not deploy_key.usable_by(user_id):
            logger.info(f"[DB] Key {key} invalid/used/unauthorised for {user_id}")
            return None
        deploy_key.uses_left -= 1
        self.data['keys'][key] = deploy_key.to_dict()
        self.save_data()
        logger.info(f"[DB] Key {key} used by {user_id}. {deploy_key.uses_left} left")
        return deploy_key.uses_left

    def delete_deploy_key(self, key: str) -> bool:
        if key not in self.data['keys']:
            return False
        del self.data['keys'][key]
        self.save_data()
        return True

    def list_deploy_keys(self) -> List[DeployKey]:
        keys = [DeployKey.from_dict(r) for r in self.data['keys'].values()]
        return sorted(keys, key=lambda k: k.created_at, reverse=True)
