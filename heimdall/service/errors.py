from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients switch on:
    - validation_failed (400)
    - unauthorized / login_failed / invalid_token / token_expired (401)
    - forbidden / account_disabled / account_locked (403)
    - resource_not_found (404)
    - conflict (409)
    - rate_limit_exceeded (429)
    - internal_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_failed"

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
    error_code = "validation_failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class CredentialError(AuthenticationError):
    """Unknown user or wrong password; the two are never told apart (401)."""
    error_code = "login_failed"

    def __init__(self, message: str = "用户名或密码错误", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenError(AuthenticationError):
    """Bearer token rejected (401).

    ``kind`` is one of ``malformed``, ``expired``, ``not_yet_valid``,
    ``bad_signature``, ``invalid`` or ``revoked``.
    """
    error_code = "invalid_token"

    def __init__(self, kind: str, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or f"token {kind.replace('_', ' ')}", **kwargs)
        self.kind = kind


class InvalidTokenError(TokenError):
    error_code = "invalid_token"


class TokenExpiredError(TokenError):
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__("expired", message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "账户已被禁用", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    error_code = "account_locked"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "resource_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limit_exceeded"


class ServerError(ServiceError):
    """Internal server error (500). The message never carries store detail."""
    status_code = 500
    error_code = "internal_error"
    default_message = "系统错误，请稍后重试"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or self.default_message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "CredentialError",
    "TokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ForbiddenError",
    "AccountDisabledError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
