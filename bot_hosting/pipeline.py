# pipeline.py - the per-request deployment state machine
import logging
from datetime import datetime
from typing import Callable, List, Optional

from .config import Settings
from .errors import (DeploymentTimeout, HostingError, InvalidSessionError, PlatformError,
                     SupersededError, ValidationError)
from .messenger import escape_markdown
from .models import (AWAITING_CONNECTION, BUILDING, CREATING_APP, FAILED, KEY_EXHAUSTED,
                     KEY_UNKNOWN, LIVE, VALIDATING, DeploymentRequest)
from .progress import ProgressMessage
from .scheduler import change_session_keyboard

logger = logging.getLogger(__name__)

# Stage tags used in failed results
STAGE_VALIDATE = "validate"
STAGE_CREATE = "create"
STAGE_BUILD = "build"
STAGE_CONNECT = "connect"


class DeploymentResult:
    """Outcome of one pipeline run"""

    def __init__(self, request: DeploymentRequest):
        self.request = request
        self.state = VALIDATING
        self.history: List[str] = [VALIDATING]
        self.stage: Optional[str] = None
        self.error: Optional[Exception] = None
        self.build_id: Optional[str] = None
        self.key_uses_left: Optional[int] = None
        self.app_created = False
        self.persisted = False
        self.superseded = False

    @property
    def app_name(self) -> str:
        return self.request.app_name

    @property
    def success(self) -> bool:
        return self.state == LIVE

    @property
    def degraded(self) -> bool:
        """Failed to connect, but the bot is kept so the user can fix it"""
        return self.state == FAILED and self.stage == STAGE_CONNECT and self.persisted

    def transition(self, state: str):
        self.state = state
        self.history.append(state)

    def fail(self, stage: str, error: Exception):
        self.stage = stage
        self.error = error
        self.transition(FAILED)

    @property
    def message(self) -> str:
        if self.success:
            return f"Bot {self.app_name} is live."
        if self.state != FAILED:
            return f"Deployment of {self.app_name} is {self.state.replace('_', ' ')}."
        reason = self.error.user_message() if isinstance(self.error, HostingError) else "Unexpected error"
        return f"Deployment of {self.app_name} failed at {self.stage}: {reason}"

    def to_dict(self) -> dict:
        return {
            'app_name': self.app_name,
            'state': self.state,
            'stage': self.stage,
            'success': self.success,
            'degraded': self.degraded,
            'message': self.message,
            'build_id': self.build_id,
        }

    def __repr__(self):
        if self.state == FAILED:
            return f"DeploymentResult({self.app_name!r}, failed({self.stage!r}, {type(self.error).__name__}))"
        return f"DeploymentResult({self.app_name!r}, {self.state!r})"


class DeploymentPipeline:
    """Drives validating -> creating_app -> building -> awaiting_connection -> live.

    Every stage error is caught here, tagged with its stage, and turned into
    one edited progress message for the user and one operator message.
    """

    def __init__(self, settings: Settings, platform, store, messenger, registry, poller, scheduler,
                 clock: Callable[[], datetime] = datetime.now):
        self.settings = settings
        self.platform = platform
        self.store = store
        self.messenger = messenger
        self.registry = registry
        self.poller = poller
        self.scheduler = scheduler
        self.clock = clock

    async def run(self, request: DeploymentRequest, chat_id: Optional[int] = None) -> DeploymentResult:
        result = DeploymentResult(request)
        progress = ProgressMessage(self.messenger, chat_id or request.user_id, tick=self.settings.animation_tick)
        name = escape_markdown(request.app_name)
        stage = STAGE_VALIDATE
        try:
            await progress.start(f"🔍 Checking deployment request for *{name}*...")
            await self._validate(request, result)

            stage = STAGE_CREATE
            result.transition(CREATING_APP)
            await progress.update(f"🏗️ Creating app *{name}*...")
            await self._create_app(request, result, progress)

            stage = STAGE_BUILD
            result.transition(BUILDING)
            await progress.update(f"📦 Starting build for *{name}*...")
            await self._build(request, result, progress)

            stage = STAGE_CONNECT
            result.transition(AWAITING_CONNECTION)
            await progress.update(f"🔌 Build complete. Waiting for *{name}* to connect...")
            await self._await_connection(request, result, progress)
        except HostingError as e:
            await self._handle_failure(request, result, progress, stage, e)
        except Exception as e:
            logger.error(f"Unexpected error deploying {request.app_name} at {stage}: {e}", exc_info=True)
            await self._handle_failure(request, result, progress, stage, e)
        finally:
            progress.stop()
        return result

    # ==================== STAGES ====================
    async def _validate(self, request: DeploymentRequest, result: DeploymentResult):
        request.validate()

        if request.is_free_trial:
            window = self.store.get_free_trial_window(request.user_id)
            if window is not None and not window.can_deploy(self.clock()):
                raise ValidationError(
                    f"You have already used your free trial. You can use it again after "
                    f"{window.available_at.strftime('%Y-%m-%d %H:%M')}.",
                    code="trial_cooldown",
                )
        else:
            self._check_deploy_key(request)

        if self.settings.source_url(request.bot_type) is None:
            raise ValidationError(
                f"Deployments of {request.bot_type} bots are not available right now.",
                code="bot_type_unavailable",
            )

        if self.store.owner_of(request.app_name) is not None or await self.platform.app_exists(request.app_name):
            raise ValidationError(
                f"The name '{request.app_name}' is already taken. Please choose another one.",
                code="app_name_taken",
            )

        if not request.is_free_trial:
            uses_left = self.store.consume_deploy_key(request.deploy_key, request.user_id)
            if uses_left is None:
                # used up between the check and now
                self._check_deploy_key(request)
                raise ValidationError("This deploy key can no longer be used.", code="key_exhausted")
            result.key_uses_left = uses_left

    def _check_deploy_key(self, request: DeploymentRequest):
        status = self.store.deploy_key_status(request.deploy_key, request.user_id)
        if status == KEY_UNKNOWN:
            raise ValidationError("Invalid deploy key. Please check it and try again.", code="key_not_found")
        if status == KEY_EXHAUSTED:
            raise ValidationError("This deploy key has no uses left.", code="key_exhausted")

    async def _create_app(self, request: DeploymentRequest, result: DeploymentResult, progress: ProgressMessage):
        name = request.app_name
        await self.platform.create_app(name)
        result.app_created = True

        await progress.update(f"⚙️ Configuring *{escape_markdown(name)}*...")
        for plan in self.settings.addons:
            await self.platform.add_addon(name, plan)
        await self.platform.install_buildpacks(name, self.settings.buildpacks)

        config_vars = dict(self.settings.default_env_vars.get(request.bot_type, {}))
        config_vars.update(request.config_vars())
        await self.platform.set_config_vars(name, config_vars)

    async def _build(self, request: DeploymentRequest, result: DeploymentResult, progress: ProgressMessage):
        name = request.app_name
        result.build_id = await self.platform.trigger_build(name, self.settings.source_url(request.bot_type))

        async def on_poll(status: str, elapsed: float):
            await progress.update(f"📦 Building *{escape_markdown(name)}*... Status: {status} ({int(elapsed)}s)")

        await self.poller.wait(name, result.build_id, on_poll=on_poll)

    async def _await_connection(self, request: DeploymentRequest, result: DeploymentResult,
                                progress: ProgressMessage):
        entry = self.registry.register(request.app_name, progress)
        await self.registry.wait(entry)

        self._persist(request, result, status="live")
        result.transition(LIVE)
        self._start_trial_clock(request)

        name = escape_markdown(request.app_name)
        text = f"✅ *{name}* is deployed and connected!"
        if request.is_free_trial:
            minutes = int(self.settings.trial_lifetime // 60)
            text += f"\n\n⏳ This is a free trial: it will be deleted automatically in {minutes} minutes."
        elif result.key_uses_left is not None:
            text += f"\n\n🔑 Deploy key uses left: {result.key_uses_left}"
        await progress.finish(text)
        await self._notify_operator(
            f"✅ *{name}* deployed for user `{request.user_id}` "
            f"({request.bot_type}{', free trial' if request.is_free_trial else ''})"
        )
        logger.info(f"Deployment of {request.app_name} for {request.user_id} is live")

    # ==================== FAILURES ====================
    async def _handle_failure(self, request: DeploymentRequest, result: DeploymentResult,
                              progress: ProgressMessage, stage: str, error: Exception):
        progress.stop()
        result.fail(stage, error)
        name = escape_markdown(request.app_name)

        if isinstance(error, SupersededError):
            # the newer request owns the user's feedback
            result.superseded = True
            logger.info(f"Deployment of {request.app_name} was superseded by a newer request")
            return

        logger.warning(f"Deployment of {request.app_name} for {request.user_id} failed at {stage}: {error}")

        if stage == STAGE_CREATE and result.app_created:
            await self._remove_half_created_app(request.app_name)

        reason = escape_markdown(error.user_message() if isinstance(error, HostingError)
                                 else "An unexpected error occurred.")
        reply_markup = None

        if stage == STAGE_VALIDATE:
            text = f"❌ Cannot deploy *{name}*: {reason}"
        elif stage == STAGE_CREATE:
            text = f"❌ Could not create *{name}*: {reason}"
        elif stage == STAGE_BUILD:
            text = (f"❌ Build failed for *{name}*: {reason}\n\n"
                    f"Please try again later or contact support.")
        else:
            try:
                self._persist(request, result, status="degraded")
                self._start_trial_clock(request)
            except Exception as e:
                logger.error(f"Could not record degraded deployment {request.app_name}: {e}", exc_info=True)
            if isinstance(error, InvalidSessionError):
                text = (f"⚠️ *{name}* was deployed but could not log in: your session ID is invalid.\n\n"
                        f"Update the session ID to bring it online.")
            elif isinstance(error, DeploymentTimeout):
                text = (f"⚠️ *{name}* was deployed but did not connect within {int(error.elapsed)}s.\n\n"
                        f"Your session ID may be invalid or expired. You can update it below.")
            else:
                text = f"⚠️ *{name}* was deployed but its connection could not be confirmed: {reason}"
            reply_markup = change_session_keyboard(request.app_name, request.user_id)

        await progress.finish(text, reply_markup=reply_markup)
        if stage != STAGE_VALIDATE:
            await self._notify_operator(
                f"❌ Deployment of *{name}* for user `{request.user_id}` failed at *{stage}*: "
                f"{escape_markdown(error)}"
            )

    async def _remove_half_created_app(self, app_name: str):
        try:
            await self.platform.delete_app(app_name)
            logger.info(f"Deleted half-created app {app_name}")
        except PlatformError as e:
            if not e.is_not_found:
                logger.warning(f"Failed to delete half-created app {app_name}: {e}")

    # ==================== BOOKKEEPING ====================
    def _persist(self, request: DeploymentRequest, result: DeploymentResult, status: str):
        self.store.add_owned_bot(
            request.user_id, request.app_name, request.session_token,
            bot_type=request.bot_type, is_free_trial=request.is_free_trial, status=status,
        )
        result.persisted = True

    def _start_trial_clock(self, request: DeploymentRequest):
        if not request.is_free_trial:
            return
        self.store.record_free_trial_use(request.user_id, self.clock())
        self.scheduler.schedule_warning(request.app_name, request.user_id, self.settings.trial_warning_after)
        self.scheduler.schedule_deletion(request.app_name, request.user_id, self.settings.trial_lifetime)

    async def _notify_operator(self, text: str):
        try:
            await self.messenger.notify_operator(text)
        except Exception as e:
            logger.error(f"Operator notification failed: {e}")
