# log_monitor.py - watch this process's own log output for logouts and restart on them
# Matching is plain substring/regex work; an unrelated line that contains a
# pattern also triggers. Request logs are skipped, their text comes from clients.
import asyncio
import logging
import os
import re
import sys
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from .config import LOGOUT_ALERT_COOLDOWN

logger = logging.getLogger(__name__)

LOGOUT_PATTERNS = [
    'ERROR: Failed to initialize bot. Details: No valid session found',
    'SESSION LOGGED OUT. Please rescan QR and update SESSION.',
    'Reason: logout',
    'Authentication Error',
    ' has logged out.',
    '] invalid',
]

STARTED_PATTERNS = [
    'Bot initialization complete',
    'Bot started',
]

# request logs quote the client's request line verbatim
IGNORED_LOGGERS = ('werkzeug',)

SESSION_FOR_RE = re.compile(r'for (\S+)\.')
SESSION_BRACKET_RE = re.compile(r'\[([^\]]+)\]\s*invalid', re.IGNORECASE)


class SessionInvalidated:
    def __init__(self, identifier: Optional[str], line: str):
        self.identifier = identifier
        self.line = line

    def __eq__(self, other):
        return isinstance(other, SessionInvalidated) and other.identifier == self.identifier

    def __repr__(self):
        return f"SessionInvalidated(identifier={self.identifier!r})"


class InstanceStarted:
    def __init__(self, line: str):
        self.line = line

    def __repr__(self):
        return "InstanceStarted()"


def extract_session_id(line: str) -> Optional[str]:
    """Best effort: 'for XYZ.' first, then '[XYZ] invalid'"""
    match = SESSION_FOR_RE.search(line)
    if match:
        return match.group(1)
    match = SESSION_BRACKET_RE.search(line)
    if match:
        return match.group(1)
    return None


class LogClassifier:
    def __init__(self, logout_patterns: Optional[List[str]] = None,
                 started_patterns: Optional[List[str]] = None):
        self.logout_patterns = logout_patterns if logout_patterns is not None else LOGOUT_PATTERNS
        self.started_patterns = started_patterns if started_patterns is not None else STARTED_PATTERNS

    def classify(self, line: str):
        if any(pattern in line for pattern in self.logout_patterns):
            return SessionInvalidated(extract_session_id(line), line)
        if any(pattern in line for pattern in self.started_patterns):
            return InstanceStarted(line)
        return None


class LogoutAlertState:
    """Remembers when the last logout alert went out"""

    def __init__(self, cooldown: float = LOGOUT_ALERT_COOLDOWN,
                 clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self.clock = clock
        self.last_alert_time: Optional[float] = None
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """True (and the window restarts) when an alert may be sent now"""
        with self._lock:
            now = self.clock()
            if self.last_alert_time is not None and now - self.last_alert_time < self.cooldown:
                return False
            self.last_alert_time = now
            return True


class RestartTrigger:
    def __init__(self, alerter, app_name: str = "", classifier: Optional[LogClassifier] = None,
                 alert_state: Optional[LogoutAlertState] = None,
                 restart_enabled: bool = False, restart_delay: float = 60,
                 exit_fn: Callable[[], None] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.alerter = alerter
        self.app_name = app_name
        self.classifier = classifier or LogClassifier()
        self.alert_state = alert_state or LogoutAlertState()
        self.restart_enabled = restart_enabled
        self.restart_delay = restart_delay
        self.exit_fn = exit_fn or _exit_for_restart
        self.loop = loop
        self.alerts_sent = 0
        self._exit_timer = None
        self._lock = threading.Lock()

    @property
    def exit_scheduled(self) -> bool:
        return self._exit_timer is not None

    def feed(self, line: str):
        """Inspect one output line"""
        event = self.classifier.classify(line)
        if isinstance(event, SessionInvalidated):
            self.on_session_invalidated(event)
        elif isinstance(event, InstanceStarted):
            self.on_instance_started(event)
        return event

    def on_session_invalidated(self, event: SessionInvalidated):
        if self.alert_state.try_acquire():
            self.alerts_sent += 1
            self.alerter.send(self._logout_message(event.identifier))
        else:
            logger.debug("Skipping logout alert, cooldown not expired")

        if self.restart_enabled:
            self._schedule_exit(event.identifier)
        else:
            logger.debug("Self restart disabled, not scheduling exit after logout")

    def on_instance_started(self, event: InstanceStarted):
        if self.app_name:
            self.alerter.send(f"[{self.app_name}] connected.\nTime: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    def cancel(self):
        with self._lock:
            if self._exit_timer is not None:
                self._exit_timer.cancel()
                self._exit_timer = None

    def _schedule_exit(self, identifier: Optional[str]):
        with self._lock:
            if self._exit_timer is not None:
                return
            # logger would feed back into the tap, so write to the real stderr
            if sys.__stderr__ is not None:
                sys.__stderr__.write(
                    f"Detected logout for session {identifier or 'unknown'}. "
                    f"Scheduling process exit in {self.restart_delay:.0f}s.\n"
                )
            loop = self.loop or _running_loop()
            if loop is None:
                timer = threading.Timer(self.restart_delay, self.exit_fn)
                timer.daemon = True
                timer.start()
                self._exit_timer = timer
            elif _running_loop() is loop:
                self._exit_timer = loop.call_later(self.restart_delay, self.exit_fn)
            else:
                self._exit_timer = _PendingExit()
                loop.call_soon_threadsafe(self._arm_loop_timer, loop)

    def _arm_loop_timer(self, loop):
        with self._lock:
            if isinstance(self._exit_timer, _PendingExit):
                self._exit_timer = loop.call_later(self.restart_delay, self.exit_fn)

    def _logout_message(self, identifier: Optional[str]) -> str:
        hour = datetime.now().hour
        greeting = 'good morning' if hour < 12 else 'good afternoon' if hour < 17 else 'good evening'
        minutes = self.restart_delay / 60
        if minutes >= 60 and minutes % 60 == 0:
            restart_display = f"{int(minutes // 60)} hour(s)"
        else:
            restart_display = f"{minutes:g} minute(s)"
        lines = [
            f"Hey, {greeting}!",
            "",
            f'Bot "{self.app_name or "this bot"}" has logged out.',
            f"`{identifier or 'UNKNOWN_SESSION'}` invalid",
            f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        ]
        if self.restart_enabled:
            lines.append(f"Restarting in {restart_display}.")
        return "\n".join(lines)


class _PendingExit:
    """Placeholder while the loop timer is being armed from another thread"""

    def cancel(self):
        pass


def _exit_for_restart():
    # may run on a timer thread, where sys.exit would only end that thread
    logging.shutdown()
    os._exit(1)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class LogTapHandler(logging.Handler):
    """Feeds formatted log records into a RestartTrigger, except from ignored loggers"""

    def __init__(self, trigger: RestartTrigger, level=logging.NOTSET,
                 ignored_loggers=IGNORED_LOGGERS):
        super().__init__(level)
        self.trigger = trigger
        self.ignored_loggers = tuple(ignored_loggers) + (__name__,)
        self._local = threading.local()

    def is_ignored(self, name: str) -> bool:
        return any(name == ignored or name.startswith(ignored + '.') for ignored in self.ignored_loggers)

    def emit(self, record: logging.LogRecord):
        if getattr(self._local, 'busy', False) or self.is_ignored(record.name):
            return
        self._local.busy = True
        try:
            for line in self.format(record).splitlines():
                self.trigger.feed(line)
        except Exception:
            self.handleError(record)
        finally:
            self._local.busy = False


class StreamTap:
    """Line-buffering wrapper around a text stream (stdout/stderr)"""

    def __init__(self, stream, trigger: RestartTrigger):
        self.stream = stream
        self.trigger = trigger
        self._buffer = ""
        self._local = threading.local()

    def write(self, data: str) -> int:
        written = self.stream.write(data)
        if not getattr(self._local, 'busy', False):
            self._local.busy = True
            try:
                self._buffer += data
                while '\n' in self._buffer:
                    line, self._buffer = self._buffer.split('\n', 1)
                    self.trigger.feed(line)
            finally:
                self._local.busy = False
        return written

    def flush(self):
        self.stream.flush()

    def __getattr__(self, name):
        return getattr(self.stream, name)


def install(trigger: RestartTrigger, capture_streams: bool = True) -> LogTapHandler:
    """Attach the trigger to the root logger and, optionally, to stdout/stderr"""
    handler = LogTapHandler(trigger)
    handler.setFormatter(logging.Formatter('%(message)s'))
    logging.getLogger().addHandler(handler)
    if capture_streams and not isinstance(sys.stdout, StreamTap):
        sys.stdout = StreamTap(sys.stdout, trigger)
        sys.stderr = StreamTap(sys.stderr, trigger)
    logger.info("Log monitor installed")
    return handler
