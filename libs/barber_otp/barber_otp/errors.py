from __future__ import annotations


class OTPError(Exception):
    """Base exception for OTP operations."""


class InvalidPhoneFormat(OTPError, ValueError):
    """The phone string matches none of the accepted spellings."""


class OTPRateLimitError(OTPError):
    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class DispatchError(OTPError):
    """An outbound message could not be handed to the provider."""

    retryable = False

    def __init__(self, message: str, *, code: str | int | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.code = code
        if retryable is not None:
            self.retryable = retryable


class DispatchConfigError(DispatchError):
    """Credentials or sender settings are missing or rejected (auth/config mismatch)."""

    retryable = False


class DispatchRejectedError(DispatchError):
    """The provider refused or failed the message; trying again later may work."""

    retryable = True


class InvalidDispatchMode(OTPError, ValueError):
    pass


class InvalidStoreBackend(OTPError, ValueError):
    """OTP_STORE names no known challenge store, or its settings are incomplete."""


class StatusLookupError(OTPError):
    """The provider could not report on a message sid."""

    def __init__(self, message: str, *, status: int | None = None, code: str | int | None = None):
        super().__init__(message)
        self.status = status
        self.code = code
