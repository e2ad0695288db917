from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. The generic codes are:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Authentication outcomes have their own codes (see the subclasses below)
    so clients can tell a pending account from a locked one without parsing
    messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Login outcomes


class InvalidCredentials(ServiceError):
    """Unknown account or wrong password; the two are never distinguished."""
    status_code = 400
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountPending(ForbiddenError):
    """Email address not verified yet."""
    error_code = "account_pending"

    def __init__(self, message: str = "verify your email address before signing in", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedTemporary(ForbiddenError):
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "account temporarily locked; reset your password or contact support",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountLockedPermanent(ForbiddenError):
    error_code = "account_locked_permanent"

    def __init__(
        self, message: str = "account permanently locked; contact support", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class SessionLimitReached(ForbiddenError):
    """The account already holds its maximum number of live sessions."""
    error_code = "session_limit_reached"

    def __init__(
        self,
        message: str = "maximum number of active sessions reached; sign out elsewhere first",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class MfaRequired(AuthenticationError):
    """Password accepted but a second factor is still needed.

    The login route turns this into a successful ``mfa_required`` response;
    anywhere else it surfaces as a 401.
    """
    error_code = "mfa_required"

    def __init__(self, user_id: str, *, delivery: str = "sent") -> None:
        super().__init__(
            "verification code required",
            detail={"user_id": user_id, "delivery": delivery},
        )
        self.user_id = user_id
        self.delivery = delivery


class MfaInvalidCode(ValidationError):
    error_code = "mfa_invalid_code"

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            "invalid verification code",
            detail={"attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


class MfaExpired(ValidationError):
    """Challenge missing, consumed, exhausted or past its TTL."""
    error_code = "mfa_expired"

    def __init__(self, message: str = "verification code expired or invalid; sign in again", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Per-request token outcomes


class TokenExpired(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "session token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid session token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevoked(AuthenticationError):
    error_code = "session_revoked"

    def __init__(self, message: str = "session has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFound(AuthenticationError):
    error_code = "session_not_found"

    def __init__(self, message: str = "not authenticated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordReused(ValidationError):
    error_code = "password_reused"

    def __init__(
        self, message: str = "new password must differ from previously used passwords", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ConfigMissing(ServerError):
    """Required configuration is absent; fatal at startup."""
    error_code = "config_missing"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentials",
    "AccountPending",
    "AccountLockedTemporary",
    "AccountLockedPermanent",
    "SessionLimitReached",
    "MfaRequired",
    "MfaInvalidCode",
    "MfaExpired",
    "TokenExpired",
    "TokenInvalid",
    "SessionRevoked",
    "SessionNotFound",
    "PasswordReused",
    "ConfigMissing",
]
