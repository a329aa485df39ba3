from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds exposed by the kernel.

    Boundary layers branch on ``exc.kind``; message text is for humans only.
    """

    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_PENDING = "account_pending"
    ACCOUNT_INACTIVE = "account_inactive"
    ACCOUNT_NOT_FOUND = "account_not_found"
    OTP_EXPIRED = "otp_expired"
    OTP_INVALID = "otp_invalid"
    OTP_LOCKED = "otp_locked"
    RATE_LIMITED = "rate_limited"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    SESSION_NOT_FOUND = "session_not_found"
    FORBIDDEN = "forbidden"
    VALIDATION_ERROR = "validation_error"
    ALREADY_LINKED = "already_linked"
    INVALID_STATE = "invalid_state"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    Each subclass pins an ``ErrorKind`` and the HTTP status it maps to. The
    ``error_code`` is the kind's value so envelopes carry a stable code:
    - validation_error (400)
    - invalid_credentials / otp_* / token_* (401)
    - forbidden / account_locked / account_pending / account_inactive (403)
    - account_not_found / session_not_found (404)
    - duplicate_identifier / already_linked / invalid_state (409)
    - rate_limited / otp_locked (429)
    """

    status_code: int = 400
    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    kind = ErrorKind.VALIDATION_ERROR


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    kind = ErrorKind.INVALID_CREDENTIALS


class InvalidCredentialsError(AuthenticationError):
    kind = ErrorKind.INVALID_CREDENTIALS


class OtpExpiredError(AuthenticationError):
    kind = ErrorKind.OTP_EXPIRED


class OtpInvalidError(AuthenticationError):
    """Wrong code; ``remaining_attempts`` is also in ``detail``."""

    kind = ErrorKind.OTP_INVALID

    def __init__(self, message: str, *, remaining_attempts: int) -> None:
        super().__init__(message, detail={"remaining_attempts": remaining_attempts})
        self.remaining_attempts = remaining_attempts


class TokenInvalidError(AuthenticationError):
    kind = ErrorKind.TOKEN_INVALID


class TokenExpiredError(AuthenticationError):
    kind = ErrorKind.TOKEN_EXPIRED


class ForbiddenError(ServiceError):
    """Access denied - ownership or role violation (403)."""
    status_code = 403
    kind = ErrorKind.FORBIDDEN


class AccountLockedError(ForbiddenError):
    kind = ErrorKind.ACCOUNT_LOCKED

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(message, detail={"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class AccountPendingError(ForbiddenError):
    kind = ErrorKind.ACCOUNT_PENDING


class AccountInactiveError(ForbiddenError):
    kind = ErrorKind.ACCOUNT_INACTIVE


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    kind = ErrorKind.ACCOUNT_NOT_FOUND


class AccountNotFoundError(NotFoundError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND


class SessionNotFoundError(NotFoundError):
    kind = ErrorKind.SESSION_NOT_FOUND


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    kind = ErrorKind.INVALID_STATE


class DuplicateIdentifierError(ConflictError):
    kind = ErrorKind.DUPLICATE_IDENTIFIER


class AlreadyLinkedError(ConflictError):
    kind = ErrorKind.ALREADY_LINKED


class InvalidStateError(ConflictError):
    kind = ErrorKind.INVALID_STATE


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self, message: str, *, retry_after_seconds: Optional[int] = None
    ) -> None:
        detail = {}
        if retry_after_seconds is not None:
            detail["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, detail=detail)
        self.retry_after_seconds = retry_after_seconds


class OtpLockedError(RateLimitedError):
    kind = ErrorKind.OTP_LOCKED


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "OtpExpiredError",
    "OtpInvalidError",
    "TokenInvalidError",
    "TokenExpiredError",
    "ForbiddenError",
    "AccountLockedError",
    "AccountPendingError",
    "AccountInactiveError",
    "NotFoundError",
    "AccountNotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "DuplicateIdentifierError",
    "AlreadyLinkedError",
    "InvalidStateError",
    "RateLimitedError",
    "OtpLockedError",
]
