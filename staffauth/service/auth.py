from __future__ import annotations

import contextlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from staffauth.config import Settings
from staffauth.logging import get_logger
from staffauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ServerError,
    StorageUnavailableError,
    ValidationError,
)
from staffauth.service.tokens import TokenIssuer, user_id_from_claims
from staffauth.storage.common import classify_device, ensure_aware, refresh_is_active
from staffauth.storage.errors import (
    ConstraintViolation,
    InvalidState,
    NotFound,
    StorageError,
    TransientStorageError,
    ValidationFailure,
)
from staffauth.storage.models import (
    PERMISSION_FLAGS,
    Account,
    AuthEvent,
    IssuedToken,
    Role,
    Session,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
SESSION_TOKEN_BYTES = 32
INVALID_CREDENTIALS = "invalid username or password"


class AuthStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        role_id: str,
        *,
        password_salt: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> Account: ...

    def record_login_success(self, account_id: str) -> Account: ...

    def record_login_failure(
        self, account_id: str, *, max_attempts: int = 5, lockout_minutes: int = 15
    ) -> Account: ...

    def set_password(
        self, account_id: str, password_hash: str, password_salt: Optional[str] = None
    ) -> Account: ...

    def set_password_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Account: ...

    def clear_password_reset_token(self, account_id: str) -> Account: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def assign_role(self, account_id: str, role_id: str) -> Account: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def create_token(self, token: IssuedToken) -> IssuedToken: ...

    def get_token_by_access(self, access_token: str) -> Optional[IssuedToken]: ...

    def get_token_by_refresh(self, refresh_token: str) -> Optional[IssuedToken]: ...

    def revoke_token(self, token_id: str, reason: str) -> bool: ...

    def revoke_all_user_tokens(self, user_id: str, reason: str) -> int: ...

    def is_access_token_valid(self, access_token: str) -> bool: ...

    def create_session(
        self, user_id: str, session_token: str, *, ttl: timedelta, **kwargs: Any
    ) -> Session: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    def extend_session(self, session_id: str, extension: timedelta) -> Session: ...

    def terminate_all_user_sessions(self, user_id: str) -> int: ...

    def record_auth_event(self, action: str, was_successful: bool, **kwargs: Any) -> AuthEvent: ...


@dataclass
class AuthContext:
    user_id: str
    username: str
    role_id: str
    role_name: str
    permissions: List[str] = field(default_factory=list)
    token_id: Optional[str] = None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass
class LoginResult:
    account: Account
    role: Role
    session: Session
    token: IssuedToken
    access_token: str
    refresh_token: str
    expires_at: datetime


@contextlib.contextmanager
def translate_storage_errors() -> Iterator[None]:
    """Re-raise storage failures as service errors with HTTP semantics."""
    try:
        yield
    except NotFound as exc:
        raise NotFoundError(exc.message, detail=exc.detail) from exc
    except (ConstraintViolation, InvalidState) as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    except ValidationFailure as exc:
        raise ValidationError(exc.message, detail=exc.detail) from exc
    except TransientStorageError as exc:
        raise StorageUnavailableError() from exc


class AuthService:
    """Login, token refresh, logout and password flows over the stores."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.issuer = issuer or TokenIssuer(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return utcnow()

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password_policy(self, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def verify_password(self, account: Account, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _salt_of(self, encoded_hash: str) -> Optional[str]:
        # $argon2id$v=19$m=...,t=...,p=...$<salt>$<hash>
        parts = encoded_hash.split("$")
        return parts[4] if len(parts) >= 6 else None

    def _log_event(self, action: str, ok: bool, **kwargs: Any) -> None:
        try:
            self.store.record_auth_event(action, ok, **kwargs)
        except StorageError as exc:
            self.logger.warning("auth_event_record_failed", action=action, error=exc.message)

    # accounts
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role_id: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> Account:
        if not username or not email or "@" not in email:
            raise ValidationError("username and a valid email are required")
        self._check_password_policy(password)
        if role_id is None:
            role = self.store.get_role_by_name(self.settings.default_role_name)
            if not role:
                raise ServerError(
                    f"default role '{self.settings.default_role_name}' is not configured"
                )
            role_id = role.id
        password_hash = self.hash_password(password)
        with translate_storage_errors():
            account = self.store.create_account(
                username,
                email,
                password_hash,
                role_id,
                password_salt=self._salt_of(password_hash),
                employee_id=employee_id,
            )
        self.logger.info("account_registered", user_id=account.id, username=username)
        return account

    async def login(
        self,
        username: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
    ) -> LoginResult:
        now = self._now()
        account = self.store.get_account_by_username(username)
        audit = {"ip_address": ip_address, "user_agent": user_agent}
        if not account:
            self._log_event(
                "login",
                False,
                username_attempted=username,
                failure_reason="unknown_user",
                **audit,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        audit["username_attempted"] = username
        if not account.is_active:
            self._log_event(
                "login", False, user_id=account.id, failure_reason="account_inactive", **audit
            )
            raise AccountDisabledError(account.id)
        if account.is_locked(now):
            self._log_event(
                "login", False, user_id=account.id, failure_reason="account_locked", **audit
            )
            raise AccountLockedError(account.lockout_end)
        if not self.verify_password(account, password):
            updated = self.store.record_login_failure(
                account.id,
                max_attempts=self.settings.max_failed_login_attempts,
                lockout_minutes=self.settings.lockout_minutes,
            )
            self._log_event(
                "login",
                False,
                user_id=account.id,
                failure_reason="invalid_password",
                details=f"failed_attempts={updated.failed_login_attempts}",
                **audit,
            )
            if updated.is_locked(now):
                self._log_event(
                    "account_lockout",
                    True,
                    user_id=account.id,
                    details=f"lockout_end={ensure_aware(updated.lockout_end).isoformat()}",
                    **audit,
                )
            raise AuthenticationError(INVALID_CREDENTIALS)
        role = self.store.get_role(account.role_id)
        if not role or not role.is_active:
            self._log_event(
                "login", False, user_id=account.id, failure_reason="role_inactive", **audit
            )
            raise AuthenticationError("role is not active for this account")

        with translate_storage_errors():
            account = self.store.record_login_success(account.id)
            session = self.store.create_session(
                account.id,
                secrets.token_urlsafe(SESSION_TOKEN_BYTES),
                ttl=timedelta(hours=self.settings.session_ttl_hours),
                ip_address=ip_address,
                user_agent=user_agent,
                device_type=classify_device(user_agent),
                location=location,
                max_concurrent=self.settings.max_concurrent_sessions,
            )
            token = self._persist_token_pair(account, role, ip_address, user_agent)
        self._log_event("login", True, user_id=account.id, **audit)
        self.logger.info(
            "login_succeeded", user_id=account.id, session_id=session.id, token_id=token.id
        )
        return LoginResult(
            account=account,
            role=role,
            session=session,
            token=token,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=token.expires_at,
        )

    def _persist_token_pair(
        self,
        account: Account,
        role: Role,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedToken:
        access_token, expires_at = self.issuer.issue_access_token(account, role)
        refresh_token, refresh_expires_at = self.issuer.issue_refresh_token()
        return self.store.create_token(
            IssuedToken(
                id=new_id(),
                user_id=account.id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                refresh_expires_at=refresh_expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        audit = {"ip_address": ip_address, "user_agent": user_agent}
        record = self.store.get_token_by_refresh(refresh_token) if refresh_token else None
        if not record or not refresh_is_active(record):
            self._log_event("refresh", False, failure_reason="invalid_refresh_token", **audit)
            raise AuthenticationError("invalid refresh token")
        account = self.store.get_account(record.user_id)
        if not account or not account.is_active:
            self._log_event(
                "refresh", False, user_id=record.user_id, failure_reason="account_unavailable", **audit
            )
            raise AuthenticationError("user account not available")
        role = self.store.get_role(account.role_id)
        if not role or not role.is_active:
            raise AuthenticationError("role is not active for this account")

        access_token, expires_at = self.issuer.issue_access_token(account, role)
        new_refresh, refresh_expires_at = self.issuer.issue_refresh_token()
        try:
            token = self.store.rotate_refresh_token(
                record.id,
                new_refresh,
                refresh_expires_at,
                new_access_token=access_token,
                new_access_expires_at=expires_at,
            )
        except (InvalidState, NotFound) as exc:
            self._log_event(
                "refresh", False, user_id=account.id, failure_reason=exc.message, **audit
            )
            raise AuthenticationError("invalid refresh token") from exc

        session = self._extend_newest_session(account.id)
        self._log_event("refresh", True, user_id=account.id, **audit)
        self.logger.info("token_refreshed", user_id=account.id, token_id=token.id)
        return LoginResult(
            account=account,
            role=role,
            session=session,
            token=token,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=token.expires_at,
        )

    def _extend_newest_session(self, user_id: str) -> Optional[Session]:
        active = self.store.list_active_sessions(user_id)
        if not active:
            return None
        newest = max(active, key=lambda s: ensure_aware(s.login_time))
        target = self._now() + timedelta(hours=self.settings.session_ttl_hours)
        delta = target - ensure_aware(newest.expires_at)
        if delta <= timedelta(0):
            return newest
        with translate_storage_errors():
            return self.store.extend_session(newest.id, delta)

    async def logout(self, user_id: str, access_token: Optional[str] = None) -> None:
        with translate_storage_errors():
            if access_token:
                record = self.store.get_token_by_access(access_token)
                if record and record.user_id == user_id:
                    self.store.revoke_token(record.id, "User logout")
            self.store.terminate_all_user_sessions(user_id)
        self._log_event("logout", True, user_id=user_id)
        self.logger.info("logout_completed", user_id=user_id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
    ) -> None:
        account = self.store.get_account(user_id)
        if not account:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not self.verify_password(account, current_password):
            self._log_event(
                "password_change",
                False,
                user_id=user_id,
                failure_reason="invalid_current_password",
                ip_address=ip_address,
            )
            raise AuthenticationError("current password is incorrect")
        self._check_password_policy(new_password)
        self._replace_password(account, new_password, reason="Password changed")
        self._log_event("password_change", True, user_id=user_id, ip_address=ip_address)

    def _replace_password(self, account: Account, new_password: str, *, reason: str) -> None:
        new_hash = self.hash_password(new_password)
        with translate_storage_errors():
            self.store.set_password(account.id, new_hash, self._salt_of(new_hash))
            revoked = self.store.revoke_all_user_tokens(account.id, reason)
            terminated = self.store.terminate_all_user_sessions(account.id)
        self.logger.info(
            "password_replaced",
            user_id=account.id,
            tokens_revoked=revoked,
            sessions_terminated=terminated,
        )

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token; unknown emails return None so callers cannot enumerate accounts."""
        account = self.store.get_account_by_email(email)
        if not account or not account.is_active:
            self.logger.info("password_reset_requested_unknown")
            return None
        token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)
        expires_at = self._now() + timedelta(hours=self.settings.password_reset_ttl_hours)
        with translate_storage_errors():
            self.store.set_password_reset_token(account.id, token, expires_at)
        self._log_event("password_reset_requested", True, user_id=account.id)
        return token

    async def complete_password_reset(
        self, email: str, token: str, new_password: str
    ) -> None:
        account = self.store.get_account_by_email(email)
        valid = (
            account is not None
            and account.password_reset_token is not None
            and account.password_reset_expires is not None
            and secrets.compare_digest(account.password_reset_token, token or "")
            and ensure_aware(account.password_reset_expires) > self._now()
        )
        if not valid:
            if account:
                self._log_event(
                    "password_reset", False, user_id=account.id, failure_reason="invalid_token"
                )
            raise ValidationError("invalid or expired reset token")
        self._check_password_policy(new_password)
        self._replace_password(account, new_password, reason="Password reset")
        with translate_storage_errors():
            self.store.clear_password_reset_token(account.id)
        self._log_event("password_reset", True, user_id=account.id)

    async def verify_email(self, user_id: str) -> Account:
        account = self.store.mark_email_verified(user_id)
        if not account:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("email_verified", user_id=user_id)
        return account

    # role administration
    async def set_user_role(self, user_id: str, role_id: str) -> Account:
        with translate_storage_errors():
            account = self.store.assign_role(user_id, role_id)
            # outstanding tokens carry the old permission set
            self.store.revoke_all_user_tokens(user_id, "Role changed")
        return account

    async def delete_role(self, role_id: str) -> None:
        with translate_storage_errors():
            self.store.delete_role(role_id)

    # request authentication
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(
        self, authorization: Optional[str], *, check_revocation: bool = False
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        claims = self.issuer.validate_access_token(token)
        if not claims:
            return None
        if check_revocation and not self.store.is_access_token_valid(token):
            self.logger.info("revoked_token_presented", user_id=claims.get("user_id"))
            return None
        permissions = claims.get("permission") or []
        if isinstance(permissions, str):
            permissions = [permissions]
        return AuthContext(
            user_id=user_id_from_claims(claims),
            username=claims.get("unique_name", ""),
            role_id=claims.get("role_id", ""),
            role_name=claims.get("role_name", ""),
            permissions=list(permissions),
            token_id=claims.get("jti"),
        )

    def require_permission(self, ctx: Optional[AuthContext], permission: str) -> AuthContext:
        if ctx is None:
            raise AuthenticationError("authentication required")
        if not ctx.has_permission(permission):
            raise PermissionDeniedError(permission)
        return ctx


DEFAULT_ROLES = (
    (
        "Administrator",
        "Full access to every capability",
        {flag: True for flag in PERMISSION_FLAGS},
    ),
    (
        "Manager",
        "Manages employees, attendance and reports",
        {
            "can_view_employees": True,
            "can_edit_employees": True,
            "can_view_attendance": True,
            "can_edit_attendance": True,
            "can_generate_reports": True,
        },
    ),
    (
        "Employee",
        "Read access to the employee directory and attendance",
        {"can_view_employees": True, "can_view_attendance": True},
    ),
)


def ensure_default_roles(store: Any) -> List[Role]:
    """Create any missing default role; existing roles are left untouched."""
    roles: List[Role] = []
    for name, description, flags in DEFAULT_ROLES:
        role = store.get_role_by_name(name)
        if role is None:
            try:
                role = store.create_role(name, description, permissions=flags)
            except ConstraintViolation:
                role = store.get_role_by_name(name)
        roles.append(role)
    return roles
