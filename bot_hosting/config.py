# config.py - environment driven settings for the hosting engine
import os
from typing import Dict, List, Optional

# ==================== CONFIGURATION ====================
HEROKU_API_URL = "https://api.heroku.com"
TELEGRAM_API_URL = "https://api.telegram.org"

BOT_TYPES = ("levanter", "raganork")

# Timing (seconds unless noted)
BUILD_POLL_INTERVAL = 10
BUILD_TIMEOUT = 300
CONNECT_TIMEOUT = 120
ANIMATION_TICK = 2
TRIAL_COOLDOWN_DAYS = 14
TRIAL_WARNING_AFTER = 55 * 60
TRIAL_LIFETIME = 60 * 60
LOGOUT_ALERT_COOLDOWN = 5 * 60
LOGOUT_REMINDER_AFTER = 24 * 60 * 60
RESTART_DELAY_MINUTES = 1

DEFAULT_BUILDPACKS = [
    "https://github.com/heroku/heroku-buildpack-apt",
    "https://github.com/jonathanong/heroku-buildpack-ffmpeg-latest",
    "heroku/nodejs",
]

DEFAULT_ADDONS = ["heroku-postgresql"]

# Config vars written to every new app, per bot flavour
DEFAULT_ENV_VARS: Dict[str, Dict[str, str]] = {
    "levanter": {},
    "raganork": {},
}

DB_FILE = "bot_hosting.json"
FLASK_HOST = "0.0.0.0"
FLASK_PORT = 8080


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return int(value)


def _env_list(name: str, default: List[str]) -> List[str]:
    """Comma separated; set but empty means an empty list"""
    value = os.getenv(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """Runtime settings handed to the engine and its collaborators."""

    def __init__(self, telegram_bot_token: str = "", heroku_api_key: str = "",
                 admin_id: Optional[int] = None, channel_id: Optional[int] = None,
                 repo_urls: Optional[Dict[str, str]] = None,
                 app_name: str = "",
                 default_env_vars: Optional[Dict[str, Dict[str, str]]] = None,
                 buildpacks: Optional[List[str]] = None,
                 addons: Optional[List[str]] = None,
                 build_poll_interval: float = BUILD_POLL_INTERVAL,
                 build_timeout: float = BUILD_TIMEOUT,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 animation_tick: float = ANIMATION_TICK,
                 trial_cooldown_days: int = TRIAL_COOLDOWN_DAYS,
                 trial_warning_after: float = TRIAL_WARNING_AFTER,
                 trial_lifetime: float = TRIAL_LIFETIME,
                 logout_alert_cooldown: float = LOGOUT_ALERT_COOLDOWN,
                 restart_delay_minutes: float = RESTART_DELAY_MINUTES,
                 enable_self_restart: bool = False,
                 db_file: str = DB_FILE,
                 flask_host: str = FLASK_HOST,
                 flask_port: int = FLASK_PORT):
        self.telegram_bot_token = telegram_bot_token
        self.heroku_api_key = heroku_api_key
        self.admin_id = admin_id
        self.channel_id = channel_id
        self.repo_urls = repo_urls or {}
        self.app_name = app_name
        self.default_env_vars = default_env_vars if default_env_vars is not None else DEFAULT_ENV_VARS
        self.buildpacks = buildpacks if buildpacks is not None else list(DEFAULT_BUILDPACKS)
        self.addons = addons if addons is not None else list(DEFAULT_ADDONS)
        self.build_poll_interval = build_poll_interval
        self.build_timeout = build_timeout
        self.connect_timeout = connect_timeout
        self.animation_tick = animation_tick
        self.trial_cooldown_days = trial_cooldown_days
        self.trial_warning_after = trial_warning_after
        self.trial_lifetime = trial_lifetime
        self.logout_alert_cooldown = logout_alert_cooldown
        self.restart_delay_minutes = restart_delay_minutes
        self.enable_self_restart = enable_self_restart
        self.db_file = db_file
        self.flask_host = flask_host
        self.flask_port = flask_port

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables"""
        heroku_api_key = os.getenv('HEROKU_API_KEY', '')
        return cls(
            telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN', ''),
            heroku_api_key=heroku_api_key,
            admin_id=_env_int('ADMIN_ID'),
            channel_id=_env_int('TELEGRAM_CHANNEL_ID'),
            repo_urls={
                'levanter': os.getenv('GITHUB_LEVANTER_REPO_URL', ''),
                'raganork': os.getenv('GITHUB_RAGANORK_REPO_URL', ''),
            },
            app_name=os.getenv('APP_NAME', ''),
            addons=_env_list('HEROKU_ADDONS', DEFAULT_ADDONS),
            build_poll_interval=float(os.getenv('BUILD_POLL_INTERVAL', BUILD_POLL_INTERVAL)),
            build_timeout=float(os.getenv('BUILD_TIMEOUT', BUILD_TIMEOUT)),
            connect_timeout=float(os.getenv('CONNECT_TIMEOUT', CONNECT_TIMEOUT)),
            animation_tick=float(os.getenv('ANIMATION_TICK', ANIMATION_TICK)),
            restart_delay_minutes=float(os.getenv('RESTART_DELAY_MINUTES', RESTART_DELAY_MINUTES)),
            enable_self_restart=_env_flag('ENABLE_SELF_RESTART', bool(heroku_api_key)),
            db_file=os.getenv('DB_FILE', DB_FILE),
            flask_host=os.getenv('FLASK_HOST', FLASK_HOST),
            flask_port=int(os.getenv('PORT', FLASK_PORT)),
        )

    def source_url(self, bot_type: str) -> Optional[str]:
        """Tarball URL the remote build pulls for a bot flavour"""
        repo_url = self.repo_urls.get(bot_type)
        if not repo_url:
            return None
        return f"{repo_url.rstrip('/')}/tarball/main"

    @property
    def operator_chat_ids(self) -> List[int]:
        chat_ids = []
        if self.admin_id:
            chat_ids.append(self.admin_id)
        if self.channel_id and self.channel_id != self.admin_id:
            chat_ids.append(self.channel_id)
        return chat_ids
