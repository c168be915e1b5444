from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - timeout (504)
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


class WeakPasswordError(ValidationError):
    pass


class InvalidDocumentError(ValidationError):
    """Uploaded document is too large, of the wrong type, or misnamed."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "invalid phone number or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(AuthenticationError):
    def __init__(self, message: str = "token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    def __init__(self, message: str = "token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSignatureError(AuthenticationError):
    def __init__(self, message: str = "invalid token signature", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MalformedTokenError(AuthenticationError):
    def __init__(self, message: str = "malformed token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountSuspendedError(ForbiddenError):
    def __init__(self, message: str = "account is suspended", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicatePhoneError(ConflictError):
    def __init__(self, message: str = "phone number already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DuplicateEmailError(ConflictError):
    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DuplicatePlateError(ConflictError):
    def __init__(self, message: str = "vehicle plate already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class OTPCooldownError(RateLimitedError):
    """A code for this phone and purpose was sent too recently."""

    def __init__(self, remaining_seconds: int) -> None:
        super().__init__(
            f"please wait {remaining_seconds} seconds before requesting new OTP",
            detail={"retry_after": remaining_seconds},
        )
        self.remaining_seconds = remaining_seconds


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class MessageDeliveryError(ServerError):
    def __init__(self, message: str = "failed to send OTP", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServiceTimeoutError(ServiceError):
    """A storage or messaging call missed its deadline (504)."""
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "InvalidDocumentError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenRevokedError",
    "TokenExpiredError",
    "InvalidSignatureError",
    "MalformedTokenError",
    "ForbiddenError",
    "AccountSuspendedError",
    "NotFoundError",
    "ConflictError",
    "DuplicatePhoneError",
    "DuplicateEmailError",
    "DuplicatePlateError",
    "RateLimitedError",
    "OTPCooldownError",
    "ServerError",
    "MessageDeliveryError",
    "ServiceTimeoutError",
]
