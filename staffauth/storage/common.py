"""Logic shared by the memory and postgres stores.

Validity rules live here so both backends agree on what "active" means.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from staffauth.storage.errors import ValidationFailure
from staffauth.storage.models import (
    PERMISSION_FLAGS,
    PERMISSION_VOCABULARY,
    IssuedToken,
    Role,
    Session,
    utcnow,
)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def token_is_active(token: IssuedToken, now: Optional[datetime] = None) -> bool:
    """Access side: usable while not revoked and before the access expiry."""
    now = now or utcnow()
    return not token.is_revoked and ensure_aware(token.expires_at) > now


def refresh_is_active(token: IssuedToken, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return not token.is_revoked and ensure_aware(token.refresh_expires_at) > now


def session_is_active(session: Session, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return session.is_active and ensure_aware(session.expires_at) > now


def session_is_purgeable(session: Session, threshold: datetime) -> bool:
    """A session is purged once its expiry or its logout precedes the threshold."""
    threshold = ensure_aware(threshold)
    if ensure_aware(session.expires_at) < threshold:
        return True
    return session.logout_time is not None and ensure_aware(session.logout_time) < threshold


def normalize_permission_updates(permissions: Mapping[str, bool]) -> Dict[str, bool]:
    """Validate a ``{flag: bool}`` mapping against the known role flags."""
    if permissions is None:
        raise ValidationFailure("permissions mapping is required")
    updates: Dict[str, bool] = {}
    for flag, enabled in permissions.items():
        if flag not in PERMISSION_FLAGS:
            raise ValidationFailure(
                f"invalid permission flag: {flag}", {"flag": flag}
            )
        updates[flag] = bool(enabled)
    return updates


def role_grants(role: Role, permission: str) -> bool:
    """Accept either a claim string (``view_employees``) or a flag name."""
    if permission in PERMISSION_FLAGS:
        return bool(getattr(role, permission))
    if permission in PERMISSION_VOCABULARY:
        return permission in role.permissions()
    return False


def classify_device(user_agent: Optional[str]) -> str:
    """Coarse device bucket for session records."""
    if not user_agent:
        return "Unknown"
    agent = user_agent.lower()
    if "mobile" in agent or ("android" in agent and "tablet" not in agent):
        return "Mobile"
    if "tablet" in agent or "ipad" in agent:
        return "Tablet"
    if any(marker in agent for marker in ("windows", "mac", "linux", "x11")):
        return "Desktop"
    return "Other"
