# platform.py - thin async wrapper over the Heroku Platform API
import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

import aiohttp

from .config import HEROKU_API_URL
from .errors import PlatformError

logger = logging.getLogger(__name__)


class AppInfo:
    """Snapshot of a remote app"""

    def __init__(self, name: str, dyno_state: Optional[str], created_at: Optional[datetime],
                 released_at: Optional[datetime], config: Dict[str, str]):
        self.name = name
        self.dyno_state = dyno_state  # up, crashed, idle, starting, ... or None without dynos
        self.created_at = created_at
        self.released_at = released_at
        self.config = config

    @property
    def is_up(self) -> bool:
        return self.dyno_state == 'up'

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'dyno_state': self.dyno_state,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'released_at': self.released_at.isoformat() if self.released_at else None,
        }


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class HerokuClient:
    """One method per Platform API call. No retries; callers decide."""

    def __init__(self, api_key: str, base_url: str = HEROKU_API_URL,
                 session: Optional[aiohttp.ClientSession] = None,
                 request_timeout: float = 30):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self._session = session
        self._owns_session = session is None
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Accept': 'application/vnd.heroku+json; version=3',
            'Content-Type': 'application/json',
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(self, method: str, path: str, json_body=None):
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method, url, json=json_body, headers=self.headers) as response:
                if response.status >= 400:
                    raise await self._error_from(response)
                if response.status == 204:
                    return None
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            logger.warning(f"Heroku {method} {path} transport error: {e}")
            raise PlatformError(None, f"Could not reach the hosting platform: {e}") from e
        except asyncio.TimeoutError as e:
            logger.warning(f"Heroku {method} {path} timed out")
            raise PlatformError(None, "The hosting platform did not answer in time") from e

    @staticmethod
    async def _error_from(response: aiohttp.ClientResponse) -> PlatformError:
        error_id = None
        message = response.reason or f"HTTP {response.status}"
        try:
            body = await response.json(content_type=None)
            if isinstance(body, dict):
                error_id = body.get('id')
                message = body.get('message') or message
        except (aiohttp.ContentTypeError, ValueError):
            pass
        return PlatformError(response.status, message, error_id=error_id)

    # ==================== APPS ====================
    async def create_app(self, name: str) -> Dict:
        logger.info(f"Creating app {name}")
        return await self._request('POST', '/apps', {'name': name})

    async def app_exists(self, name: str) -> bool:
        """True when the name is taken on the platform"""
        try:
            await self._request('GET', f'/apps/{name}')
        except PlatformError as e:
            if e.is_not_found:
                return False
            raise
        return True

    async def delete_app(self, name: str):
        logger.info(f"Deleting app {name}")
        await self._request('DELETE', f'/apps/{name}')

    async def get_app_info(self, name: str) -> Optional[AppInfo]:
        """App snapshot, or None when the app does not exist"""
        try:
            app = await self._request('GET', f'/apps/{name}')
            dynos = await self._request('GET', f'/apps/{name}/dynos') or []
            config = await self._request('GET', f'/apps/{name}/config-vars') or {}
        except PlatformError as e:
            if e.is_not_found:
                return None
            raise
        worker = next((d for d in dynos if d.get('type') == 'worker'), None)
        if worker is None and dynos:
            worker = dynos[0]
        return AppInfo(
            name=app.get('name', name),
            dyno_state=worker.get('state') if worker else None,
            created_at=_parse_time(app.get('created_at')),
            released_at=_parse_time(app.get('released_at')),
            config=config,
        )

    # ==================== CONFIG ====================
    async def set_config_vars(self, name: str, config_vars: Dict[str, Optional[str]]) -> Dict:
        # Heroku removes a var when its value is null
        return await self._request('PATCH', f'/apps/{name}/config-vars', config_vars)

    async def get_config_vars(self, name: str) -> Dict[str, str]:
        return await self._request('GET', f'/apps/{name}/config-vars') or {}

    async def install_buildpacks(self, name: str, buildpacks: List[str]):
        updates = [{'buildpack': bp} for bp in buildpacks]
        return await self._request('PUT', f'/apps/{name}/buildpack-installations', {'updates': updates})

    async def add_addon(self, name: str, plan: str):
        addon = await self._request('POST', f'/apps/{name}/addons', {'plan': plan})
        logger.info(f"Addon {plan} attached to {name}")
        return addon

    # ==================== BUILDS ====================
    async def trigger_build(self, name: str, source_url: str) -> str:
        build = await self._request('POST', f'/apps/{name}/builds', {'source_blob': {'url': source_url}})
        logger.info(f"Build {build['id']} started for {name}")
        return build['id']

    async def get_build_status(self, name: str, build_id: str) -> str:
        build = await self._request('GET', f'/apps/{name}/builds/{build_id}')
        return build.get('status', 'pending')

    # ==================== DYNOS ====================
    async def restart_dynos(self, name: str):
        logger.info(f"Restarting dynos of {name}")
        await self._request('DELETE', f'/apps/{name}/dynos')
