# engine.py - one deployment engine per process, wired from its collaborators
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from .build_poller import BuildPoller
from .config import Settings
from .connections import ConnectionRegistry
from .errors import ValidationError
from .models import DeploymentRequest, DeployKey, OwnedBot, validate_app_name
from .pipeline import DeploymentPipeline, DeploymentResult
from .scheduler import LifecycleScheduler

logger = logging.getLogger(__name__)


class HostingEngine:
    """Owns the registry, poller, scheduler and pipeline for one process.

    Nothing here is module-global: tests build as many isolated engines as
    they like.
    """

    def __init__(self, settings: Settings, platform, store, messenger,
                 clock: Callable[[], datetime] = datetime.now):
        self.settings = settings
        self.platform = platform
        self.store = store
        self.messenger = messenger
        self.clock = clock
        self.registry = ConnectionRegistry(timeout=settings.connect_timeout)
        self.poller = BuildPoller(platform, poll_interval=settings.build_poll_interval,
                                  timeout=settings.build_timeout)
        self.scheduler = LifecycleScheduler(platform, store, messenger)
        self.pipeline = DeploymentPipeline(settings, platform, store, messenger,
                                           self.registry, self.poller, self.scheduler, clock=clock)
        self._running: Set[asyncio.Task] = set()

    # ==================== DEPLOYMENTS ====================
    async def deploy(self, request: DeploymentRequest, chat_id: Optional[int] = None) -> DeploymentResult:
        """Run a deployment to completion"""
        return await self.pipeline.run(request, chat_id)

    def start_deployment(self, request: DeploymentRequest, chat_id: Optional[int] = None) -> asyncio.Task:
        """Run a deployment in the background and return its task"""
        task = asyncio.ensure_future(self.pipeline.run(request, chat_id))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        logger.info(f"Deployment of {request.app_name} for {request.user_id} started in background")
        return task

    @property
    def running_deployments(self) -> int:
        return len(self._running)

    def signal_connection(self, app_name: str, outcome: str, detail: Optional[str] = None) -> bool:
        return self.registry.signal(app_name, outcome, detail)

    # ==================== QUERIES ====================
    async def check_app_name(self, app_name: str) -> bool:
        """True when app_name is valid and free"""
        validate_app_name(app_name)
        if self.store.owner_of(app_name) is not None:
            return False
        return not await self.platform.app_exists(app_name)

    def trial_status(self, user_id: int) -> Dict:
        window = self.store.get_free_trial_window(user_id)
        if window is None:
            return {'eligible': True, 'available_at': None}
        return {
            'eligible': window.can_deploy(self.clock()),
            'available_at': window.available_at.isoformat(),
        }

    def list_bots(self, user_id: int) -> List[OwnedBot]:
        return self.store.list_owned_bots(user_id)

    # ==================== MANAGEMENT ====================
    def _require_owned(self, app_name: str, user_id: Optional[int]) -> OwnedBot:
        bot = self.store.get_owned_bot(app_name)
        if bot is None or (user_id is not None and bot.user_id != user_id):
            raise ValidationError(f"Bot {app_name} not found.", code="bot_not_found")
        return bot

    async def restart_bot(self, app_name: str, user_id: Optional[int] = None):
        self._require_owned(app_name, user_id)
        await self.scheduler.restart_bot(app_name)

    async def delete_bot(self, app_name: str, user_id: Optional[int] = None) -> bool:
        bot = self._require_owned(app_name, user_id)
        return await self.scheduler.delete_bot(app_name, bot.user_id)

    async def update_session(self, app_name: str, user_id: int, session_token: str):
        """Replace SESSION_ID on the platform and locally; the dyno restarts on config change"""
        self._require_owned(app_name, user_id)
        session_token = (session_token or '').strip()
        if not session_token or any(ch.isspace() for ch in session_token):
            raise ValidationError("Please send a valid session ID.", code="session_invalid")
        await self.platform.set_config_vars(app_name, {'SESSION_ID': session_token})
        self.store.update_session(user_id, app_name, session_token)
        self.store.set_bot_status(app_name, "live")
        logger.info(f"Session of {app_name} updated by {user_id}")

    # ==================== DEPLOY KEYS ====================
    def is_operator(self, user_id: int) -> bool:
        return self.settings.admin_id is not None and user_id == self.settings.admin_id

    def _require_operator(self, user_id: int):
        if not self.is_operator(user_id):
            raise ValidationError("Only the admin can manage deploy keys.", code="not_operator")

    def generate_deploy_key(self, operator_id: int, uses: int = 1,
                            user_id: Optional[int] = None) -> DeployKey:
        self._require_operator(operator_id)
        if uses < 1:
            raise ValidationError("A key needs at least one use.", code="key_uses_invalid")
        return self.store.create_deploy_key(uses, created_by=operator_id, user_id=user_id)

    def list_deploy_keys(self, operator_id: int) -> List[DeployKey]:
        self._require_operator(operator_id)
        return self.store.list_deploy_keys()

    async def shutdown(self):
        for task in list(self._running):
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        self.registry.cancel_all()
        self.scheduler.cancel_all()
