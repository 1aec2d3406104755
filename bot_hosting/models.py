# models.py - data structures used by the deployment engine
import re
from datetime import datetime, timedelta
from typing import Dict, Optional

from .config import BOT_TYPES, TRIAL_COOLDOWN_DAYS
from .errors import ValidationError

APP_NAME_PATTERN = re.compile(r'^[a-z0-9-]+$')
APP_NAME_MIN_LENGTH = 5
APP_NAME_MAX_LENGTH = 30

# Pipeline states
VALIDATING = "validating"
CREATING_APP = "creating_app"
BUILDING = "building"
AWAITING_CONNECTION = "awaiting_connection"
LIVE = "live"
FAILED = "failed"

# Build states
BUILD_PENDING = "pending"
BUILD_SUCCEEDED = "succeeded"
BUILD_FAILED = "failed"
BUILD_TIMED_OUT = "timed-out"

# Deploy key states
KEY_UNKNOWN = "unknown"
KEY_EXHAUSTED = "exhausted"
KEY_ACTIVE = "active"


def validate_app_name(app_name: str) -> str:
    """Return the app name or raise ValidationError"""
    if not app_name or len(app_name) < APP_NAME_MIN_LENGTH:
        raise ValidationError(
            f"App name must be at least {APP_NAME_MIN_LENGTH} characters long.",
            code="app_name_too_short",
        )
    if len(app_name) > APP_NAME_MAX_LENGTH:
        raise ValidationError(
            f"App name must be at most {APP_NAME_MAX_LENGTH} characters long.",
            code="app_name_too_long",
        )
    if not APP_NAME_PATTERN.match(app_name):
        raise ValidationError(
            "App name may only contain lowercase letters, numbers and hyphens.",
            code="app_name_invalid",
        )
    return app_name


def parse_flag(value, field: str) -> bool:
    """JSON booleans, or the strings true/false"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    raise ValidationError(f"{field} must be true or false", code="invalid_flag")


class DeploymentRequest:
    """What a user asked to deploy. Never mutated after creation."""

    __slots__ = ('user_id', 'app_name', 'session_token', 'bot_type',
                 'is_free_trial', 'auto_status_view', 'deploy_key')

    def __init__(self, user_id: int, app_name: str, session_token: str, bot_type: str,
                 is_free_trial: bool = False, auto_status_view: bool = False,
                 deploy_key: Optional[str] = None):
        object.__setattr__(self, 'user_id', user_id)
        object.__setattr__(self, 'app_name', (app_name or '').strip().lower())
        object.__setattr__(self, 'session_token', (session_token or '').strip())
        object.__setattr__(self, 'bot_type', (bot_type or '').strip().lower())
        object.__setattr__(self, 'is_free_trial', bool(is_free_trial))
        object.__setattr__(self, 'auto_status_view', bool(auto_status_view))
        object.__setattr__(self, 'deploy_key', (deploy_key or '').strip() or None)

    def __setattr__(self, name, value):
        raise AttributeError(f"DeploymentRequest is immutable (tried to set {name})")

    def validate(self):
        """Check the request on its own, without looking anything up"""
        validate_app_name(self.app_name)
        if self.bot_type not in BOT_TYPES:
            raise ValidationError(
                f"Unknown bot type '{self.bot_type}'. Choose one of: {', '.join(BOT_TYPES)}.",
                code="bot_type_invalid",
            )
        if not self.session_token or any(ch.isspace() for ch in self.session_token):
            raise ValidationError("Please send a valid session ID.", code="session_invalid")
        if not self.is_free_trial and not self.deploy_key:
            raise ValidationError("A deploy key is required for this deployment.", code="key_missing")

    def config_vars(self) -> Dict[str, str]:
        return {
            'SESSION_ID': self.session_token,
            'AUTO_STATUS_VIEW': 'true' if self.auto_status_view else 'false',
            'APP_NAME': self.app_name,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'DeploymentRequest':
        """Create from a JSON payload (camelCase or snake_case keys)"""
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return default

        user_id = pick('userId', 'user_id')
        if user_id is None:
            raise ValidationError("Missing required field: userId", code="missing_field")
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            raise ValidationError("userId must be a number", code="missing_field")

        return cls(
            user_id=user_id,
            app_name=pick('appName', 'app_name', default=''),
            session_token=pick('sessionId', 'sessionToken', 'session_token', default=''),
            bot_type=pick('botType', 'bot_type', default=''),
            is_free_trial=parse_flag(pick('isFreeTrial', 'is_free_trial', default=False), 'isFreeTrial'),
            auto_status_view=parse_flag(pick('autoStatusView', 'auto_status_view', default=False),
                                        'autoStatusView'),
            deploy_key=pick('deployKey', 'deploy_key'),
        )

    def __repr__(self):
        return (f"DeploymentRequest(user_id={self.user_id!r}, app_name={self.app_name!r}, "
                f"bot_type={self.bot_type!r}, is_free_trial={self.is_free_trial!r})")


class FreeTrialWindow:
    """Last time a user started a free trial"""

    def __init__(self, user_id: int, used_at: datetime,
                 cooldown: timedelta = timedelta(days=TRIAL_COOLDOWN_DAYS)):
        self.user_id = user_id
        self.used_at = used_at
        self.cooldown = cooldown

    @property
    def available_at(self) -> datetime:
        return self.used_at + self.cooldown

    def can_deploy(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return now >= self.available_at


class DeployKey:
    def __init__(self, key: str, uses_left: int, created_by: Optional[int] = None,
                 user_id: Optional[int] = None, created_at: Optional[datetime] = None):
        self.key = key
        self.uses_left = max(0, int(uses_left))
        self.created_by = created_by
        self.user_id = user_id
        self.created_at = created_at or datetime.now()

    @property
    def status(self) -> str:
        return KEY_ACTIVE if self.uses_left > 0 else KEY_EXHAUSTED

    def usable_by(self, user_id: Optional[int]) -> bool:
        if self.uses_left <= 0:
            return False
        return self.user_id is None or user_id is None or self.user_id == user_id

    def to_dict(self) -> Dict:
        return {
            'key': self.key,
            'uses_left': self.uses_left,
            'created_by': self.created_by,
            'user_id': self.user_id,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'DeployKey':
        return cls(
            key=data['key'],
            uses_left=data.get('uses_left', 0),
            created_by=data.get('created_by'),
            user_id=data.get('user_id'),
            created_at=datetime.fromisoformat(data['created_at']) if data.get('created_at') else None,
        )


class OwnedBot:
    """A deployed bot as recorded locally"""

    def __init__(self, user_id: int, app_name: str, session_token: str,
                 bot_type: str = "unknown", is_free_trial: bool = False,
                 status: str = "live", created_at: Optional[datetime] = None,
                 logged_out_at: Optional[datetime] = None):
        self.user_id = user_id
        self.app_name = app_name
        self.session_token = session_token
        self.bot_type = bot_type
        self.is_free_trial = is_free_trial
        self.status = status  # live, degraded
        self.created_at = created_at or datetime.now()
        self.logged_out_at = logged_out_at

    def to_dict(self) -> Dict:
        return {
            'user_id': self.user_id,
            'app_name': self.app_name,
            'session_token': self.session_token,
            'bot_type': self.bot_type,
            'is_free_trial': self.is_free_trial,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'logged_out_at': self.logged_out_at.isoformat() if self.logged_out_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'OwnedBot':
        return cls(
            user_id=data['user_id'],
            app_name=data['app_name'],
            session_token=data.get('session_token', ''),
            bot_type=data.get('bot_type', 'unknown'),
            is_free_trial=data.get('is_free_trial', False),
            status=data.get('status', 'live'),
            created_at=datetime.fromisoformat(data['created_at']) if data.get('created_at') else None,
            logged_out_at=datetime.fromisoformat(data['logged_out_at']) if data.get('logged_out_at') else None,
        )

    def public_dict(self) -> Dict:
        """Same as to_dict without the session token"""
        data = self.to_dict()
        data.pop('session_token', None)
        return data
