"""Exceptions raised by the Fiskaly TSE integration.

Every failure of a remote call surfaces as a subclass of ``TseError``. The
exception keeps the HTTP status and the message the Fiskaly API returned so
the admin UI can show the concrete reason.
"""

from typing import Any, Optional


class TseError(Exception):
    """Base class for all TSE failures."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Any = None,
    ):
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class AuthenticationFailed(TseError):
    """API key/secret were rejected or the auth endpoint was unreachable."""


class TssStateTransitionFailed(TseError):
    """A PATCH of the TSS state was refused."""


class AdminAuthFailed(TseError):
    """The admin PIN was rejected."""


class ClientRegistrationFailed(TseError):
    """The POS client could not be registered under the TSS."""


class TransactionStartFailed(TseError):
    """The remote transaction could not be opened (state ACTIVE)."""


class TransactionFinishFailed(TseError):
    """The remote transaction could not be finished and signed."""


class TransactionCancelFailed(TseError):
    """The remote transaction could not be cancelled."""


class InitializationTimeout(TseError):
    """The TSS did not reach the expected state within the polling bound.

    Remote state is left untouched, polling again later is safe.
    """

    def __init__(self, message: str, last_state: Optional[str] = None, attempts: int = 0):
        self.last_state = last_state
        self.attempts = attempts
        super().__init__(message)


class ExportFailed(TseError):
    """The DSFinV-K / TAR export request failed."""


class NotConfigured(TseError):
    """No (complete) TSE configuration exists for the organization."""


class NotEnabled(TseError):
    """The TSE manager is not initialized for the organization."""
