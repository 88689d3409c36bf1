from typing import Any, Optional

PLAN_UPGRADE_REQUIRED = "PLAN_UPGRADE_REQUIRED"
PLAN_UPGRADE_MESSAGE = (
    "Filing pack generation requires Basic plan or higher. "
    "Please upgrade your plan to continue."
)
NO_WORKSPACE_MESSAGE = "No workspace selected."


class FilingPackError(Exception):
    """Base class for errors raised by the filing pack client and poller"""


class NoSubjectError(FilingPackError):
    def __init__(self, message: str = NO_WORKSPACE_MESSAGE):
        super().__init__(message)
        self.message = message


class RequestError(FilingPackError):
    """A status or generation request failed.

    `status` is the HTTP status code, or 0 when no response was received
    (in which case `code` is NETWORK_ERROR or TIMEOUT).
    """

    def __init__(
        self,
        status: int,
        message: str,
        code: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status = status
        self.message = message
        self.code = code
        self.data = data or {}

    @property
    def requires_plan_upgrade(self) -> bool:
        return self.code == PLAN_UPGRADE_REQUIRED or self.data.get("code") == PLAN_UPGRADE_REQUIRED


class PlanUpgradeRequiredError(RequestError):
    def __init__(self, cause: RequestError):
        super().__init__(cause.status, PLAN_UPGRADE_MESSAGE, PLAN_UPGRADE_REQUIRED, cause.data)


class TransientFetchError(FilingPackError):
    """A background poll failed; the next tick retries"""

    def __init__(self, subject: Any, cause: BaseException):
        super().__init__(f"Polling {subject} failed: {cause}")
        self.subject = subject
        self.cause = cause
