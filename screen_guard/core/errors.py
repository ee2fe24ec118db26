"""
Error kinds raised by the enforcement core.
"""

from typing import Optional


class ScreenGuardError(Exception):
    """Base class for all Screen Guard errors."""


class PermissionDenied(ScreenGuardError):
    """An OS permission (overlay or usage access) is not granted.

    Non-fatal: callers degrade to last-known or zero data and surface a
    prompt to the user.
    """

    def __init__(self, message: str, permission: str):
        super().__init__(message)
        self.permission = permission


class ChargeFailed(ScreenGuardError):
    """The unlock charge was declined or could not be completed."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id


class RefundExecutionFailed(ScreenGuardError):
    """The provider rejected or failed a scheduled refund."""

    def __init__(self, message: str, job_id: str):
        super().__init__(message)
        self.job_id = job_id


class NativeCommandFailed(ScreenGuardError):
    """A block or unblock command to the native mechanism failed."""


class PaymentProviderError(ScreenGuardError):
    """Raised by payment provider adapters for any provider-side failure."""


class UnknownAppError(ScreenGuardError, ValueError):
    """An app id is not in the tracked-apps table."""
