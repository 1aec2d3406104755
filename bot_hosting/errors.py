# errors.py - error taxonomy shared by the deployment engine
from typing import Optional


class HostingError(Exception):
    """Base class for deployment engine errors"""

    def user_message(self) -> str:
        return str(self)


class ValidationError(HostingError):
    """Bad input, trial still cooling down, or unusable deploy key.

    ``code`` is a stable machine-readable reason; the text is shown to the
    user verbatim.
    """

    def __init__(self, message: str, code: str = "invalid"):
        super().__init__(message)
        self.code = code


class PlatformError(HostingError):
    """Non-2xx answer (or transport failure) from the hosting platform API"""

    def __init__(self, http_status: Optional[int], message: str, error_id: Optional[str] = None):
        super().__init__(message)
        self.http_status = http_status
        self.message = message
        self.error_id = error_id

    @property
    def is_not_found(self) -> bool:
        return self.http_status == 404

    @property
    def is_conflict(self) -> bool:
        # Heroku answers 422 "Name ... is already taken" for app name clashes
        if self.http_status == 409:
            return True
        return self.http_status == 422 and "taken" in (self.message or "").lower()

    def user_message(self) -> str:
        if self.is_conflict:
            return "That app name is already taken. Please choose another one."
        if self.http_status is not None and 400 <= self.http_status < 500:
            return self.message
        return "The hosting platform is not responding properly. Please try again later."

    def __str__(self):
        return f"[{self.http_status}] {self.message}" if self.http_status else self.message


class DeploymentTimeout(HostingError, TimeoutError):
    """A build or connection wait exceeded its bound"""

    def __init__(self, what: str, elapsed: float):
        super().__init__(f"{what} timed out after {int(elapsed)}s")
        self.what = what
        self.elapsed = elapsed


class BuildFailed(HostingError):
    """The remote build reached the failed state"""

    def __init__(self, app_name: str, build_id: str, reason: str = ""):
        super().__init__(f"Build {build_id} for {app_name} failed" + (f": {reason}" if reason else ""))
        self.app_name = app_name
        self.build_id = build_id
        self.reason = reason


class InvalidSessionError(HostingError):
    """The deployed instance reported that its session is not valid"""

    def __init__(self, app_name: str, detail: Optional[str] = None):
        message = f"Bot {app_name} could not log in: session is invalid"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
        self.app_name = app_name
        self.detail = detail


class SupersededError(HostingError):
    """A newer connection wait for the same app replaced this one"""

    def __init__(self, app_name: str):
        super().__init__(f"Connection wait for {app_name} was superseded")
        self.app_name = app_name
