from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Role flag -> permission claim. Adding a capability only needs a new row here
# plus the matching boolean field on Role.
PERMISSION_CLAIMS: Tuple[Tuple[str, str], ...] = (
    ("can_view_employees", "view_employees"),
    ("can_edit_employees", "edit_employees"),
    ("can_delete_employees", "delete_employees"),
    ("can_view_attendance", "view_attendance"),
    ("can_edit_attendance", "edit_attendance"),
    ("can_generate_reports", "generate_reports"),
    ("can_manage_users", "manage_users"),
    ("can_manage_roles", "manage_roles"),
    ("can_access_admin_panel", "admin_access"),
)

PERMISSION_FLAGS: Tuple[str, ...] = tuple(flag for flag, _ in PERMISSION_CLAIMS)
PERMISSION_VOCABULARY: frozenset[str] = frozenset(claim for _, claim in PERMISSION_CLAIMS)

ADMINISTRATOR_ROLE = "Administrator"


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    can_view_employees: bool = False
    can_edit_employees: bool = False
    can_delete_employees: bool = False
    can_view_attendance: bool = False
    can_edit_attendance: bool = False
    can_generate_reports: bool = False
    can_manage_users: bool = False
    can_manage_roles: bool = False
    can_access_admin_panel: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def permission_flags(self) -> Dict[str, bool]:
        return {flag: bool(getattr(self, flag)) for flag in PERMISSION_FLAGS}

    def permissions(self) -> List[str]:
        """Claim strings for every enabled flag, in table order."""
        return [claim for flag, claim in PERMISSION_CLAIMS if getattr(self, flag)]


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: str
    role_id: str
    password_salt: Optional[str] = None
    employee_id: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    failed_login_attempts: int = 0
    lockout_end: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lockout_end is None:
            return False
        return self.lockout_end > (now or utcnow())


@dataclass
class IssuedToken:
    """One persisted access/refresh pair."""

    id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    is_revoked: bool = False
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    login_time: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    location: Optional[str] = None
    logout_time: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    is_active: bool = True


@dataclass
class AuthEvent:
    id: str
    action: str
    was_successful: bool
    user_id: Optional[str] = None
    username_attempted: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    details: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


def role_from_row(row: dict) -> Role:
    names = {f.name for f in fields(Role)}
    return Role(**{k: v for k, v in row.items() if k in names})


def account_from_row(row: dict) -> Account:
    names = {f.name for f in fields(Account)}
    return Account(**{k: v for k, v in row.items() if k in names})


def token_from_row(row: dict) -> IssuedToken:
    names = {f.name for f in fields(IssuedToken)}
    return IssuedToken(**{k: v for k, v in row.items() if k in names})


def session_from_row(row: dict) -> Session:
    names = {f.name for f in fields(Session)}
    return Session(**{k: v for k, v in row.items() if k in names})


def auth_event_from_row(row: dict) -> AuthEvent:
    names = {f.name for f in fields(AuthEvent)}
    return AuthEvent(**{k: v for k, v in row.items() if k in names})
