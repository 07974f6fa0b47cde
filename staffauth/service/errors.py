from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


class ServiceError(Exception):
    """Auth failure that the API layer renders as an error envelope.

    ``status_code`` picks the HTTP status and ``error_code`` the stable code
    clients branch on. Lockout and disabled accounts get their own codes so a
    login form can tell them apart from a bad password.
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
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bad credentials, or a missing, expired or revoked token."""

    status_code = 401
    error_code = "unauthorized"


class AccountLockedError(AuthenticationError):
    """Too many failed logins; the account opens again at ``lockout_end``."""

    error_code = "account_locked"

    def __init__(self, lockout_end: datetime) -> None:
        if lockout_end.tzinfo is None:
            lockout_end = lockout_end.replace(tzinfo=timezone.utc)
        self.lockout_end = lockout_end
        super().__init__(
            "account is temporarily locked",
            detail={"lockout_end": lockout_end.isoformat()},
        )


class AccountDisabledError(AuthenticationError):
    error_code = "account_disabled"

    def __init__(self, user_id: str) -> None:
        super().__init__("account is disabled", detail={"user_id": user_id})


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class PermissionDeniedError(ForbiddenError):
    """The caller's role does not carry ``permission``."""

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__("insufficient permissions", detail={"required": permission})


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate username/email, or a role that is still referenced."""

    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class StorageUnavailableError(ServerError):
    status_code = 503

    def __init__(self) -> None:
        super().__init__("storage temporarily unavailable")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AccountLockedError",
    "AccountDisabledError",
    "ForbiddenError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "StorageUnavailableError",
]
