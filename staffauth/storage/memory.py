from __future__ import annotations

import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional

from staffauth.logging import get_logger
from staffauth.storage.common import (
    ensure_aware,
    normalize_permission_updates,
    refresh_is_active,
    role_grants,
    session_is_active,
    session_is_purgeable,
    token_is_active,
)
from staffauth.storage.errors import (
    ConstraintViolation,
    InvalidState,
    NotFound,
    ValidationFailure,
)
from staffauth.storage.models import (
    ADMINISTRATOR_ROLE,
    Account,
    AuthEvent,
    IssuedToken,
    Role,
    Session,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process store implementing the account, role, token and session contract.

    Every public method takes the data lock, so the store is safe to share
    between request threads.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[str, Role] = {}
        self.tokens: Dict[str, IssuedToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.auth_events: List[AuthEvent] = []
        self._data_lock = threading.RLock()

    # roles
    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        permissions: Optional[Mapping[str, bool]] = None,
    ) -> Role:
        flags = normalize_permission_updates(permissions or {})
        with self._data_lock:
            if self._find_role_by_name(name):
                raise ConstraintViolation(
                    f"role '{name}' already exists", {"field": "name"}
                )
            now = utcnow()
            role = Role(
                id=new_id(),
                name=name,
                description=description,
                is_active=True,
                created_at=now,
                updated_at=now,
                **flags,
            )
            self.roles[role.id] = role
            self.logger.info("role_created", role_id=role.id, role_name=name)
            return role

    def _find_role_by_name(self, name: str) -> Optional[Role]:
        lowered = name.lower()
        return next(
            (r for r in self.roles.values() if r.name.lower() == lowered), None
        )

    def _require_role(self, role_id: str) -> Role:
        role = self.roles.get(role_id)
        if not role:
            raise NotFound(f"role {role_id} not found", {"role_id": role_id})
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return self._find_role_by_name(name)

    def list_roles(self, active_only: bool = False) -> List[Role]:
        with self._data_lock:
            roles = [r for r in self.roles.values() if r.is_active or not active_only]
            return sorted(roles, key=lambda r: r.name.lower())

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        with self._data_lock:
            role = self._require_role(role_id)
            if name is not None and name != role.name:
                existing = self._find_role_by_name(name)
                if existing and existing.id != role_id:
                    raise ConstraintViolation(
                        f"role '{name}' already exists", {"field": "name"}
                    )
                role.name = name
            if description is not None:
                role.description = description
            role.updated_at = utcnow()
            self.logger.info("role_updated", role_id=role_id, role_name=role.name)
            return role

    def update_role_permissions(
        self, role_id: str, permissions: Mapping[str, bool]
    ) -> Role:
        updates = normalize_permission_updates(permissions)
        with self._data_lock:
            role = self._require_role(role_id)
            for flag, enabled in updates.items():
                setattr(role, flag, enabled)
            role.updated_at = utcnow()
            self.logger.info(
                "role_permissions_updated", role_id=role_id, flags=sorted(updates)
            )
            return role

    def set_role_active(self, role_id: str, is_active: bool) -> Role:
        with self._data_lock:
            role = self._require_role(role_id)
            if not is_active and role.name.lower() == ADMINISTRATOR_ROLE.lower():
                raise InvalidState("cannot deactivate the Administrator role")
            role.is_active = is_active
            role.updated_at = utcnow()
            self.logger.info("role_active_changed", role_id=role_id, is_active=is_active)
            return role

    def clone_role(
        self, source_role_id: str, new_name: str, description: Optional[str] = None
    ) -> Role:
        with self._data_lock:
            source = self._require_role(source_role_id)
            return self.create_role(
                new_name, description, permissions=source.permission_flags()
            )

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            role = self._require_role(role_id)
            if any(a.role_id == role_id for a in self.accounts.values()):
                raise InvalidState(
                    f"cannot delete role '{role.name}' because it is assigned to one or more users",
                    {"role_id": role_id},
                )
            self.roles.pop(role_id, None)
            self.logger.info("role_deleted", role_id=role_id, role_name=role.name)
            return True

    def list_accounts_in_role(self, role_id: str) -> List[Account]:
        with self._data_lock:
            return [a for a in self.accounts.values() if a.role_id == role_id]

    def count_accounts_per_role(self) -> Dict[str, int]:
        with self._data_lock:
            counts = Counter(a.role_id for a in self.accounts.values())
            return {
                role.name: counts.get(role.id, 0) for role in self.roles.values()
            }

    def role_has_permission(self, role_id: str, permission: str) -> bool:
        with self._data_lock:
            role = self.roles.get(role_id)
            return bool(role) and role_grants(role, permission)

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        role_id: str,
        *,
        password_salt: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            self._check_account_unique(username, email)
            if role_id not in self.roles:
                raise ConstraintViolation(
                    f"role {role_id} does not exist", {"role_id": role_id}
                )
            now = utcnow()
            account = Account(
                id=new_id(),
                username=username,
                email=email,
                password_hash=password_hash,
                password_salt=password_salt,
                role_id=role_id,
                employee_id=employee_id,
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self.logger.info("account_created", user_id=account.id, username=username)
            return account

    def _check_account_unique(
        self, username: Optional[str], email: Optional[str], exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.accounts.values():
            if existing.id == exclude_id:
                continue
            if username is not None and existing.username.lower() == username.lower():
                raise ConstraintViolation(
                    f"username '{username}' is already taken", {"field": "username"}
                )
            if email is not None and existing.email.lower() == email.lower():
                raise ConstraintViolation(
                    f"email '{email}' is already registered", {"field": "email"}
                )

    def _require_account(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise NotFound(f"user {account_id} not found", {"user_id": account_id})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        lowered = username.lower()
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.username.lower() == lowered),
                None,
            )

    def get_account_by_email(self, email: str) -> Optional[Account]:
        lowered = email.lower()
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.email.lower() == lowered), None
            )

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(
                self.accounts.values(), key=lambda a: a.created_at, reverse=True
            )
            return ordered[:limit]

    def update_account(
        self,
        account_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            self._check_account_unique(
                username if username != account.username else None,
                email if email != account.email else None,
                exclude_id=account_id,
            )
            if username is not None:
                account.username = username
            if email is not None:
                account.email = email
            if employee_id is not None:
                account.employee_id = employee_id
            account.updated_at = utcnow()
            return account

    def record_login_success(self, account_id: str) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.failed_login_attempts = 0
            account.lockout_end = None
            account.last_login = utcnow()
            return account

    def record_login_failure(
        self, account_id: str, *, max_attempts: int = 5, lockout_minutes: int = 15
    ) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.failed_login_attempts += 1
            if account.failed_login_attempts >= max_attempts:
                account.lockout_end = utcnow() + timedelta(minutes=lockout_minutes)
                self.logger.warning(
                    "account_locked",
                    user_id=account_id,
                    lockout_end=account.lockout_end.isoformat(),
                )
            return account

    def set_password(
        self, account_id: str, password_hash: str, password_salt: Optional[str] = None
    ) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.password_hash = password_hash
            account.password_salt = password_salt
            account.updated_at = utcnow()
            return account

    def set_password_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.password_reset_token = token
            account.password_reset_expires = expires_at
            return account

    def clear_password_reset_token(self, account_id: str) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.password_reset_token = None
            account.password_reset_expires = None
            account.updated_at = utcnow()
            return account

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            now = utcnow()
            account.is_email_verified = True
            account.email_verified_at = now
            account.updated_at = now
            return account

    def set_account_active(self, account_id: str, is_active: bool) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            account.is_active = is_active
            account.updated_at = utcnow()
            self.logger.info("account_active_changed", user_id=account_id, is_active=is_active)
            return account

    def assign_role(self, account_id: str, role_id: str) -> Account:
        with self._data_lock:
            account = self._require_account(account_id)
            role = self._require_role(role_id)
            if not role.is_active:
                raise InvalidState(
                    f"cannot assign inactive role '{role.name}'", {"role_id": role_id}
                )
            account.role_id = role_id
            account.updated_at = utcnow()
            self.logger.info("role_assigned", user_id=account_id, role_id=role_id)
            return account

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                raise NotFound(f"user {account_id} not found", {"user_id": account_id})
            self.accounts.pop(account_id, None)
            for token_id, token in list(self.tokens.items()):
                if token.user_id == account_id:
                    self.tokens.pop(token_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == account_id:
                    self.sessions.pop(sess_id, None)
            self.auth_events = [e for e in self.auth_events if e.user_id != account_id]
            self.logger.info("account_deleted", user_id=account_id)
            return True

    # tokens
    def create_token(self, token: IssuedToken) -> IssuedToken:
        if token is None:
            raise ValidationFailure("token record is required")
        with self._data_lock:
            if token.user_id not in self.accounts:
                raise ConstraintViolation(
                    f"user {token.user_id} not found", {"user_id": token.user_id}
                )
            token.created_at = utcnow()
            token.is_revoked = False
            token.revoked_at = None
            token.revoked_reason = None
            self.tokens[token.id] = token
            self.logger.info(
                "token_created",
                token_id=token.id,
                user_id=token.user_id,
                expires_at=token.expires_at.isoformat(),
            )
            return token

    def _require_token(self, token_id: str) -> IssuedToken:
        token = self.tokens.get(token_id)
        if not token:
            raise NotFound(f"token {token_id} not found", {"token_id": token_id})
        return token

    def revoke_token(self, token_id: str, reason: str) -> bool:
        with self._data_lock:
            token = self._require_token(token_id)
            if token.is_revoked:
                return True
            token.is_revoked = True
            token.revoked_reason = reason
            token.revoked_at = utcnow()
            self.logger.info(
                "token_revoked", token_id=token_id, user_id=token.user_id, reason=reason
            )
            return True

    def _revoke_matching(self, matches: List[IssuedToken], reason: str) -> int:
        now = utcnow()
        for token in matches:
            token.is_revoked = True
            token.revoked_reason = reason
            token.revoked_at = now
        return len(matches)

    def revoke_all_user_tokens(self, user_id: str, reason: str) -> int:
        with self._data_lock:
            now = utcnow()
            matches = [
                t
                for t in self.tokens.values()
                if t.user_id == user_id and token_is_active(t, now)
            ]
            count = self._revoke_matching(matches, reason)
        self.logger.info("user_tokens_revoked", user_id=user_id, count=count, reason=reason)
        return count

    def revoke_tokens_by_ip(self, ip_address: str, reason: str) -> int:
        with self._data_lock:
            now = utcnow()
            matches = [
                t
                for t in self.tokens.values()
                if t.ip_address == ip_address and token_is_active(t, now)
            ]
            count = self._revoke_matching(matches, reason)
        self.logger.warning("ip_tokens_revoked", ip_address=ip_address, count=count, reason=reason)
        return count

    def rotate_refresh_token(
        self,
        token_id: str,
        new_refresh_token: str,
        new_refresh_expires_at: datetime,
        *,
        new_access_token: Optional[str] = None,
        new_access_expires_at: Optional[datetime] = None,
    ) -> IssuedToken:
        with self._data_lock:
            token = self._require_token(token_id)
            if token.is_revoked:
                raise InvalidState("cannot refresh a revoked token", {"token_id": token_id})
            if ensure_aware(token.expires_at) <= utcnow():
                raise InvalidState("cannot refresh an expired token", {"token_id": token_id})
            token.refresh_token = new_refresh_token
            token.refresh_expires_at = new_refresh_expires_at
            if new_access_token is not None:
                token.access_token = new_access_token
            if new_access_expires_at is not None:
                token.expires_at = new_access_expires_at
            self.logger.info("token_rotated", token_id=token_id, user_id=token.user_id)
            return token

    def cleanup_expired_tokens(self, threshold: datetime) -> int:
        threshold = ensure_aware(threshold)
        with self._data_lock:
            expired = [
                tid
                for tid, t in self.tokens.items()
                if ensure_aware(t.expires_at) < threshold
            ]
            for tid in expired:
                self.tokens.pop(tid, None)
        self.logger.info(
            "tokens_purged", count=len(expired), threshold=threshold.isoformat()
        )
        return len(expired)

    def get_token(self, token_id: str) -> Optional[IssuedToken]:
        with self._data_lock:
            return self.tokens.get(token_id)

    def get_token_by_access(self, access_token: str) -> Optional[IssuedToken]:
        with self._data_lock:
            return next(
                (t for t in self.tokens.values() if t.access_token == access_token), None
            )

    def get_token_by_refresh(self, refresh_token: str) -> Optional[IssuedToken]:
        with self._data_lock:
            return next(
                (t for t in self.tokens.values() if t.refresh_token == refresh_token),
                None,
            )

    def list_tokens(self) -> List[IssuedToken]:
        with self._data_lock:
            return sorted(self.tokens.values(), key=lambda t: t.created_at, reverse=True)

    def list_active_tokens(self, user_id: str) -> List[IssuedToken]:
        with self._data_lock:
            now = utcnow()
            return [
                t
                for t in self.list_tokens()
                if t.user_id == user_id and token_is_active(t, now)
            ]

    def list_token_history(self, user_id: str) -> List[IssuedToken]:
        with self._data_lock:
            return [t for t in self.list_tokens() if t.user_id == user_id]

    def list_expired_tokens(self) -> List[IssuedToken]:
        with self._data_lock:
            now = utcnow()
            return [t for t in self.list_tokens() if ensure_aware(t.expires_at) <= now]

    def list_revoked_tokens(self) -> List[IssuedToken]:
        with self._data_lock:
            return [t for t in self.list_tokens() if t.is_revoked]

    def is_access_token_valid(self, access_token: str) -> bool:
        token = self.get_token_by_access(access_token)
        return token is not None and token_is_active(token)

    def is_refresh_token_valid(self, refresh_token: str) -> bool:
        token = self.get_token_by_refresh(refresh_token)
        return token is not None and refresh_is_active(token)

    def count_active_tokens(self) -> int:
        with self._data_lock:
            now = utcnow()
            return sum(1 for t in self.tokens.values() if token_is_active(t, now))

    def count_tokens_by_ip(self) -> Dict[str, int]:
        with self._data_lock:
            now = utcnow()
            return dict(
                Counter(
                    t.ip_address
                    for t in self.tokens.values()
                    if t.ip_address and token_is_active(t, now)
                )
            )

    # sessions
    def create_session(
        self,
        user_id: str,
        session_token: str,
        *,
        ttl: timedelta,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
        location: Optional[str] = None,
        max_concurrent: Optional[int] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.accounts:
                raise ConstraintViolation(
                    f"user {user_id} not found", {"user_id": user_id}
                )
            if any(s.session_token == session_token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "session token already exists", {"field": "session_token"}
                )
            now = utcnow()
            if max_concurrent:
                active = [
                    s
                    for s in self.sessions.values()
                    if s.user_id == user_id and session_is_active(s, now)
                ]
                if len(active) >= max_concurrent:
                    oldest = min(active, key=lambda s: s.login_time)
                    oldest.is_active = False
                    oldest.logout_time = now
                    self.logger.info(
                        "session_evicted_concurrent_limit",
                        session_id=oldest.id,
                        user_id=user_id,
                        limit=max_concurrent,
                    )
            sess = Session(
                id=new_id(),
                user_id=user_id,
                session_token=session_token,
                expires_at=now + ttl,
                login_time=now,
                last_activity=now,
                ip_address=ip_address,
                user_agent=user_agent,
                device_type=device_type,
                location=location,
                is_active=True,
            )
            self.sessions[sess.id] = sess
            self.logger.info("session_created", session_id=sess.id, user_id=user_id)
            return sess

    def _require_session(self, session_id: str) -> Session:
        sess = self.sessions.get(session_id)
        if not sess:
            raise NotFound(f"session {session_id} not found", {"session_id": session_id})
        return sess

    def terminate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self._require_session(session_id)
            sess.is_active = False
            sess.logout_time = utcnow()
            self.logger.info("session_terminated", session_id=session_id, user_id=sess.user_id)
            return True

    def terminate_all_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            matches = [
                s for s in self.sessions.values() if s.user_id == user_id and s.is_active
            ]
            for sess in matches:
                sess.is_active = False
                sess.logout_time = now
        self.logger.info("user_sessions_terminated", user_id=user_id, count=len(matches))
        return len(matches)

    def update_session_activity(self, session_id: str) -> Session:
        with self._data_lock:
            sess = self._require_session(session_id)
            if not sess.is_active:
                raise InvalidState(
                    "cannot update activity for inactive session", {"session_id": session_id}
                )
            now = utcnow()
            if ensure_aware(sess.expires_at) <= now:
                sess.is_active = False
                raise InvalidState(
                    "cannot update activity for expired session", {"session_id": session_id}
                )
            sess.last_activity = now
            return sess

    def extend_session(self, session_id: str, extension: timedelta) -> Session:
        with self._data_lock:
            sess = self._require_session(session_id)
            if not sess.is_active:
                raise InvalidState(
                    "cannot extend expiration for inactive session", {"session_id": session_id}
                )
            sess.expires_at = ensure_aware(sess.expires_at) + extension
            sess.last_activity = utcnow()
            self.logger.info(
                "session_extended",
                session_id=session_id,
                expires_at=sess.expires_at.isoformat(),
            )
            return sess

    def cleanup_expired_sessions(self, threshold: datetime) -> int:
        threshold = ensure_aware(threshold)
        with self._data_lock:
            purge = [
                sid
                for sid, s in self.sessions.items()
                if session_is_purgeable(s, threshold)
            ]
            for sid in purge:
                self.sessions.pop(sid, None)
        self.logger.info(
            "sessions_purged", count=len(purge), threshold=threshold.isoformat()
        )
        return len(purge)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.session_token == session_token),
                None,
            )

    def list_sessions(self) -> List[Session]:
        with self._data_lock:
            return sorted(self.sessions.values(), key=lambda s: s.login_time, reverse=True)

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            now = utcnow()
            return [
                s
                for s in self.list_sessions()
                if s.user_id == user_id and session_is_active(s, now)
            ]

    def list_session_history(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.list_sessions() if s.user_id == user_id]

    def list_expired_sessions(self) -> List[Session]:
        with self._data_lock:
            now = utcnow()
            return [s for s in self.list_sessions() if ensure_aware(s.expires_at) <= now]

    def list_inactive_sessions(self, idle_for: timedelta) -> List[Session]:
        with self._data_lock:
            cutoff = utcnow() - idle_for
            return [
                s
                for s in self.list_sessions()
                if s.is_active
                and ensure_aware(s.last_activity or s.login_time) < cutoff
            ]

    def list_sessions_by_device(self, device_type: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.list_sessions() if s.device_type == device_type]

    def list_sessions_by_location(self, location: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.list_sessions() if s.location == location]

    def is_session_valid(self, session_token: str) -> bool:
        sess = self.get_session_by_token(session_token)
        return sess is not None and session_is_active(sess)

    def count_active_sessions(self) -> int:
        with self._data_lock:
            now = utcnow()
            return sum(1 for s in self.sessions.values() if session_is_active(s, now))

    def count_active_sessions_per_user(self) -> Dict[str, int]:
        with self._data_lock:
            now = utcnow()
            return dict(
                Counter(
                    s.user_id for s in self.sessions.values() if session_is_active(s, now)
                )
            )

    # audit
    def record_auth_event(
        self,
        action: str,
        was_successful: bool,
        *,
        user_id: Optional[str] = None,
        username_attempted: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
        details: Optional[str] = None,
    ) -> AuthEvent:
        event = AuthEvent(
            id=new_id(),
            action=action,
            was_successful=was_successful,
            user_id=user_id,
            username_attempted=username_attempted,
            ip_address=ip_address,
            user_agent=user_agent,
            failure_reason=failure_reason,
            details=details,
        )
        with self._data_lock:
            self.auth_events.append(event)
        return event

    def list_auth_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuthEvent]:
        with self._data_lock:
            events = [e for e in self.auth_events if not user_id or e.user_id == user_id]
            return [replace(e) for e in reversed(events)][:limit]

    def count_failed_attempts_by_ip(self, ip_address: str, since: datetime) -> int:
        since = ensure_aware(since)
        with self._data_lock:
            return sum(
                1
                for e in self.auth_events
                if e.action == "login"
                and not e.was_successful
                and e.ip_address == ip_address
                and ensure_aware(e.timestamp) >= since
            )

    def count_failed_attempts_by_username(self, username: str, since: datetime) -> int:
        since = ensure_aware(since)
        wanted = username.lower()
        with self._data_lock:
            return sum(
                1
                for e in self.auth_events
                if e.action == "login"
                and not e.was_successful
                and (e.username_attempted or "").lower() == wanted
                and ensure_aware(e.timestamp) >= since
            )

    def purge_auth_events(self, threshold: datetime) -> int:
        threshold = ensure_aware(threshold)
        with self._data_lock:
            kept = [e for e in self.auth_events if ensure_aware(e.timestamp) >= threshold]
            purged = len(self.auth_events) - len(kept)
            self.auth_events = kept
        self.logger.info("auth_events_purged", count=purged, threshold=threshold.isoformat())
        return purged
