"""Error taxonomy for the security engine.

Every recoverable condition is a subclass of ``AuthError`` carrying a
stable ``code``, the HTTP ``status_code`` the boundary should use and a
``public_message`` that is safe to show an unauthenticated caller.
The internal message (``str(exc)``) may carry detail for logs; the public
message never reveals whether a username exists, never echoes a submitted
code and never reveals remaining attempts.

Infrastructure failures (database, Redis) are not wrapped and propagate
as-is.
"""

from datetime import datetime
from enum import Enum


class ErrorCode(str, Enum):
    """Stable machine-readable error codes."""

    UNAUTHORIZED = "unauthorized"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCESS_TOKEN_EXPIRED = "access_token_expired"
    ACCESS_TOKEN_MALFORMED = "access_token_malformed"
    ACCESS_TOKEN_SIGNATURE = "access_token_signature_invalid"
    OPERATION_TIMEOUT = "operation_timeout"
    FORBIDDEN = "forbidden"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    CHALLENGE_EXPIRED = "challenge_expired"
    CHALLENGE_ALREADY_USED = "challenge_already_used"
    CHALLENGE_CODE_MISMATCH = "challenge_code_mismatch"
    CHALLENGE_INVALIDATED = "challenge_invalidated"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_EXPIRED = "token_expired"
    RATE_EXCEEDED = "rate_exceeded"
    MFA_NOT_CONFIGURED = "mfa_not_configured"


class AuthError(Exception):
    """Base class for recoverable authentication/authorization failures."""

    code: ErrorCode = ErrorCode.UNAUTHORIZED
    status_code: int = 401
    public_message: str = "Authentication required"

    def __init__(self, message: str | None = None):
        self.message = message or self.public_message
        super().__init__(self.message)


class UnauthorizedError(AuthError):
    """No credential, or the credential is invalid or expired."""


class InvalidCredentialsError(UnauthorizedError):
    """Username/password pair rejected (same response for unknown users)."""

    code = ErrorCode.INVALID_CREDENTIALS
    public_message = "Invalid username or password"


class AccessTokenExpiredError(UnauthorizedError):
    code = ErrorCode.ACCESS_TOKEN_EXPIRED
    public_message = "Access token expired"


class AccessTokenMalformedError(UnauthorizedError):
    code = ErrorCode.ACCESS_TOKEN_MALFORMED
    public_message = "Invalid access token"


class AccessTokenSignatureError(UnauthorizedError):
    code = ErrorCode.ACCESS_TOKEN_SIGNATURE
    public_message = "Invalid access token"


class OperationTimeoutError(UnauthorizedError):
    """A verification or rotation missed its deadline and was denied."""

    code = ErrorCode.OPERATION_TIMEOUT
    public_message = "Authentication could not be completed"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} timed out")


class ForbiddenError(AuthError):
    """Authenticated, but the permission is not granted."""

    code = ErrorCode.FORBIDDEN
    status_code = 403
    public_message = "Permission denied"


class ChallengeError(AuthError):
    """Base class for MFA challenge verification failures."""

    public_message = "Verification failed"


class ChallengeNotFoundError(ChallengeError):
    code = ErrorCode.CHALLENGE_NOT_FOUND


class ChallengeExpiredError(ChallengeError):
    code = ErrorCode.CHALLENGE_EXPIRED
    public_message = "Verification code expired"


class ChallengeAlreadyUsedError(ChallengeError):
    code = ErrorCode.CHALLENGE_ALREADY_USED
    public_message = "Verification code already used"


class ChallengeCodeMismatchError(ChallengeError):
    code = ErrorCode.CHALLENGE_CODE_MISMATCH
    public_message = "Invalid verification code"


class ChallengeInvalidatedError(ChallengeError):
    """Superseded by a newer challenge for the same operation."""

    code = ErrorCode.CHALLENGE_INVALIDATED
    public_message = "Verification code is no longer valid"


class AccountLockedError(AuthError):
    """Too many failed attempts; the identifier is temporarily locked."""

    code = ErrorCode.ACCOUNT_LOCKED
    status_code = 423
    public_message = "Too many attempts"

    def __init__(self, identifier: str, locked_until: datetime | None = None):
        self.identifier = identifier
        self.locked_until = locked_until
        super().__init__(f"Identifier {identifier!r} locked until {locked_until}")


class RefreshTokenError(AuthError):
    """Base class for refresh-token failures."""

    public_message = "Session is no longer valid"


class TokenNotFoundError(RefreshTokenError):
    code = ErrorCode.TOKEN_NOT_FOUND


class TokenRevokedError(RefreshTokenError):
    code = ErrorCode.TOKEN_REVOKED


class TokenExpiredError(RefreshTokenError):
    code = ErrorCode.TOKEN_EXPIRED


class RateExceededError(AuthError):
    """Raised by the external throttle in front of the engine."""

    code = ErrorCode.RATE_EXCEEDED
    status_code = 429
    public_message = "Too many requests"

    def __init__(self, message: str | None = None, retry_after: int = 0):
        self.retry_after = retry_after
        super().__init__(message)


class MfaNotConfiguredError(AuthError):
    """The requested MFA method is not set up for this user."""

    code = ErrorCode.MFA_NOT_CONFIGURED
    status_code = 400
    public_message = "Multi-factor authentication is not configured"
