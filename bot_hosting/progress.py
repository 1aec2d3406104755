# progress.py - one chat message that tracks a deployment in place
import logging
from typing import Optional

from .config import ANIMATION_TICK
from .timers import TimerScope

logger = logging.getLogger(__name__)

ANIMATION_FRAMES = ['🕛', '🕒', '🕡', '🕘']


class ProgressMessage:
    """Sent once, then edited; animated while a stage is running.

    Every call to ``update`` or ``finish`` stops the running animation before
    editing, so no tick can overwrite a newer state.
    """

    def __init__(self, messenger, chat_id: int, tick: float = ANIMATION_TICK):
        self.messenger = messenger
        self.chat_id = chat_id
        self.tick = tick
        self.message_id: Optional[int] = None
        self.text = ""
        self.edits = 0
        self._frame = 0
        self._animation: Optional[TimerScope] = None

    @property
    def animating(self) -> bool:
        return self._animation is not None and not self._animation.closed

    async def start(self, text: str, animate: bool = True) -> Optional[int]:
        self.text = text
        self.message_id = await self.messenger.send_message(self.chat_id, self._render(animate))
        if self.message_id is None:
            logger.warning(f"Progress message for chat {self.chat_id} could not be sent")
        if animate:
            self._start_animation()
        return self.message_id

    async def update(self, text: str, animate: bool = True, **opts):
        self.stop()
        self.text = text
        await self._edit(self._render(animate), **opts)
        if animate:
            self._start_animation()

    async def finish(self, text: str, **opts):
        self.stop()
        self.text = text
        await self._edit(text, **opts)

    def stop(self):
        if self._animation is not None:
            self._animation.cancel()
            self._animation = None

    def _start_animation(self):
        if self.message_id is None or self.tick <= 0:
            return
        self._animation = TimerScope(f"progress:{self.chat_id}:{self.message_id}")
        self._animation.every(self.tick, self._animate)

    async def _animate(self):
        self._frame = (self._frame + 1) % len(ANIMATION_FRAMES)
        await self._edit(self._render(True))

    def _render(self, animate: bool) -> str:
        if not animate:
            return self.text
        return f"{self.text} {ANIMATION_FRAMES[self._frame]}"

    async def _edit(self, text: str, **opts):
        if self.message_id is None:
            return
        self.edits += 1
        await self.messenger.edit_message_text(text, chat_id=self.chat_id, message_id=self.message_id, **opts)
