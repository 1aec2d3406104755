"""Shared fixtures: in-memory fakes for the hosting platform and the chat.

The engine only talks to its collaborators through small async methods, so
the fakes below stand in for Heroku and Telegram without any network.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from bot_hosting.config import Settings
from bot_hosting.engine import HostingEngine
from bot_hosting.errors import PlatformError
from bot_hosting.models import BUILD_SUCCEEDED
from bot_hosting.platform import AppInfo
from bot_hosting.storage import Database


# ============================================================================
# Fakes
# ============================================================================


class FakePlatform:
    """Heroku stand-in with scripted build statuses.

    ``build_statuses`` is consumed one entry per status call; the last entry
    repeats. An entry that is an exception is raised instead of returned.
    Assigning ``fail[method] = exc`` makes that method raise.
    """

    def __init__(self, build_statuses=None):
        self.apps: Dict[str, Dict[str, str]] = {}
        self.build_statuses = list(build_statuses or [BUILD_SUCCEEDED])
        self.status_calls = 0
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}
        self.dyno_state: Dict[str, Optional[str]] = {}

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        error = self.fail.get(method)
        if error is not None:
            raise error

    def called(self, method) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _require(self, name):
        if name not in self.apps:
            raise PlatformError(404, "Couldn't find that app.", "not_found")

    async def create_app(self, name):
        self._record('create_app', name)
        if name in self.apps:
            raise PlatformError(422, f"Name {name} is already taken", "invalid_params")
        self.apps[name] = {}
        return {'name': name}

    async def app_exists(self, name):
        self._record('app_exists', name)
        return name in self.apps

    async def delete_app(self, name):
        self._record('delete_app', name)
        self._require(name)
        del self.apps[name]

    async def get_app_info(self, name):
        self._record('get_app_info', name)
        if name not in self.apps:
            return None
        return AppInfo(name, self.dyno_state.get(name, 'up'), None, None, dict(self.apps[name]))

    async def set_config_vars(self, name, config_vars):
        self._record('set_config_vars', name, dict(config_vars))
        self._require(name)
        self.apps[name].update(config_vars)
        return dict(self.apps[name])

    async def get_config_vars(self, name):
        self._record('get_config_vars', name)
        self._require(name)
        return dict(self.apps[name])

    async def add_addon(self, name, plan):
        self._record('add_addon', name, plan)
        self._require(name)

    async def install_buildpacks(self, name, buildpacks):
        self._record('install_buildpacks', name, list(buildpacks))

    async def trigger_build(self, name, source_url):
        self._record('trigger_build', name, source_url)
        return f"build-{name}"

    async def get_build_status(self, name, build_id):
        self.status_calls += 1
        if len(self.build_statuses) > 1:
            status = self.build_statuses.pop(0)
        else:
            status = self.build_statuses[0]
        if isinstance(status, Exception):
            raise status
        return status

    async def restart_dynos(self, name):
        self._record('restart_dynos', name)
        self._require(name)


class FakeMessenger:
    """Records every message; ids count up from 1"""

    def __init__(self):
        self.sent: List[dict] = []
        self.edits: List[dict] = []
        self.operator: List[str] = []
        self._next_id = 0

    async def send_message(self, chat_id, text, **opts):
        self._next_id += 1
        self.sent.append({'chat_id': chat_id, 'text': text, 'message_id': self._next_id, **opts})
        return self._next_id

    async def edit_message_text(self, text, chat_id, message_id, **opts):
        self.edits.append({'chat_id': chat_id, 'message_id': message_id, 'text': text, **opts})
        return True

    async def notify_operator(self, text):
        self.operator.append(text)

    @property
    def last_text(self) -> Optional[str]:
        if self.edits:
            return self.edits[-1]['text']
        return self.sent[-1]['text'] if self.sent else None


async def wait_until(predicate, timeout: float = 2.0, step: float = 0.005):
    """Yield to the loop until predicate() is true"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(step)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with millisecond timings"""
    return Settings(
        telegram_bot_token="test-token",
        heroku_api_key="test-key",
        admin_id=1000,
        repo_urls={
            'levanter': 'https://github.com/example/levanter',
            'raganork': 'https://github.com/example/raganork',
        },
        build_poll_interval=0.01,
        build_timeout=1,
        connect_timeout=0.2,
        animation_tick=0,
        trial_warning_after=60,
        trial_lifetime=120,
    )


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def store() -> Database:
    return Database(None)


@pytest.fixture
async def engine(settings, platform, store, messenger):
    engine = HostingEngine(settings, platform, store, messenger)
    yield engine
    await engine.shutdown()
