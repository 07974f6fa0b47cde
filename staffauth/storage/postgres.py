from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from staffauth.logging import get_logger
from staffauth.storage.common import (
    ensure_aware,
    normalize_permission_updates,
    refresh_is_active,
    role_grants,
    token_is_active,
    session_is_active,
)
from staffauth.storage.errors import (
    ConstraintViolation,
    InvalidState,
    NotFound,
    TransientStorageError,
    ValidationFailure,
)
from staffauth.storage.models import (
    ADMINISTRATOR_ROLE,
    PERMISSION_FLAGS,
    Account,
    AuthEvent,
    IssuedToken,
    Role,
    Session,
    account_from_row,
    auth_event_from_row,
    new_id,
    role_from_row,
    session_from_row,
    token_from_row,
    utcnow,
)

_PERMISSION_COLUMNS = ",\n".join(
    f"                    {flag} BOOLEAN NOT NULL DEFAULT FALSE" for flag in PERMISSION_FLAGS
)

SCHEMA_STATEMENTS: Sequence[str] = (
    f"""
    CREATE TABLE IF NOT EXISTS staff_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
{_PERMISSION_COLUMNS},
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS staff_role_name_key ON staff_role (lower(name))",
    """
    CREATE TABLE IF NOT EXISTS staff_account (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        password_salt TEXT,
        role_id TEXT NOT NULL REFERENCES staff_role (id) ON DELETE RESTRICT,
        employee_id TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lockout_end TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expires TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS staff_account_username_key ON staff_account (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS staff_account_email_key ON staff_account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES staff_account (id) ON DELETE CASCADE,
        access_token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_reason TEXT,
        revoked_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_idx ON auth_token (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_token_expires_idx ON auth_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES staff_account (id) ON DELETE CASCADE,
        session_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        login_time TIMESTAMPTZ NOT NULL DEFAULT now(),
        logout_time TIMESTAMPTZ,
        last_activity TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT,
        device_type TEXT,
        location TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_session_user_idx ON user_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_log (
        id TEXT PRIMARY KEY,
        user_id TEXT REFERENCES staff_account (id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        was_successful BOOLEAN NOT NULL,
        username_attempted TEXT,
        ip_address TEXT,
        user_agent TEXT,
        failure_reason TEXT,
        details TEXT,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_log_timestamp_idx ON auth_log (timestamp)",
)


class PostgresStore:
    """Postgres-backed account, role, token and session store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise TransientStorageError("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # roles
    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        permissions: Optional[Mapping[str, bool]] = None,
    ) -> Role:
        flags = normalize_permission_updates(permissions or {})
        values = {flag: flags.get(flag, False) for flag in PERMISSION_FLAGS}
        role_id = new_id()
        now = utcnow()
        columns = ", ".join(PERMISSION_FLAGS)
        placeholders = ", ".join(["%s"] * len(PERMISSION_FLAGS))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO staff_role (id, name, description, {columns}, is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, {placeholders}, TRUE, %s, %s)
                    RETURNING *
                    """,
                    (role_id, name, description, *values.values(), now, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(f"role '{name}' already exists", {"field": "name"})
        self.logger.info("role_created", role_id=role_id, role_name=name)
        return role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM staff_role WHERE id = %s", (role_id,)).fetchone()
        return role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_role WHERE lower(name) = lower(%s)", (name,)
            ).fetchone()
        return role_from_row(row) if row else None

    def list_roles(self, active_only: bool = False) -> List[Role]:
        query = "SELECT * FROM staff_role"
        if active_only:
            query += " WHERE is_active"
        query += " ORDER BY lower(name)"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [role_from_row(r) for r in rows]

    def _require_role_row(self, conn, role_id: str, *, lock: bool = False) -> dict:
        query = "SELECT * FROM staff_role WHERE id = %s"
        if lock:
            query += " FOR UPDATE"
        row = conn.execute(query, (role_id,)).fetchone()
        if not row:
            raise NotFound(f"role {role_id} not found", {"role_id": role_id})
        return row

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        try:
            with self._connect() as conn:
                current = self._require_role_row(conn, role_id, lock=True)
                row = conn.execute(
                    """
                    UPDATE staff_role SET name = %s, description = %s, updated_at = %s
                    WHERE id = %s RETURNING *
                    """,
                    (
                        name if name is not None else current["name"],
                        description if description is not None else current["description"],
                        utcnow(),
                        role_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(f"role '{name}' already exists", {"field": "name"})
        self.logger.info("role_updated", role_id=role_id, role_name=row["name"])
        return role_from_row(row)

    def update_role_permissions(
        self, role_id: str, permissions: Mapping[str, bool]
    ) -> Role:
        updates = normalize_permission_updates(permissions)
        with self._connect() as conn:
            current = self._require_role_row(conn, role_id, lock=True)
            if not updates:
                return role_from_row(current)
            assignments = ", ".join(f"{flag} = %s" for flag in updates)
            row = conn.execute(
                f"UPDATE staff_role SET {assignments}, updated_at = %s WHERE id = %s RETURNING *",
                (*updates.values(), utcnow(), role_id),
            ).fetchone()
        self.logger.info("role_permissions_updated", role_id=role_id, flags=sorted(updates))
        return role_from_row(row)

    def set_role_active(self, role_id: str, is_active: bool) -> Role:
        with self._connect() as conn:
            current = self._require_role_row(conn, role_id, lock=True)
            if not is_active and current["name"].lower() == ADMINISTRATOR_ROLE.lower():
                raise InvalidState("cannot deactivate the Administrator role")
            row = conn.execute(
                "UPDATE staff_role SET is_active = %s, updated_at = %s WHERE id = %s RETURNING *",
                (is_active, utcnow(), role_id),
            ).fetchone()
        self.logger.info("role_active_changed", role_id=role_id, is_active=is_active)
        return role_from_row(row)

    def clone_role(
        self, source_role_id: str, new_name: str, description: Optional[str] = None
    ) -> Role:
        source = self.get_role(source_role_id)
        if not source:
            raise NotFound(f"role {source_role_id} not found", {"role_id": source_role_id})
        return self.create_role(new_name, description, permissions=source.permission_flags())

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            current = self._require_role_row(conn, role_id, lock=True)
            in_use = conn.execute(
                "SELECT 1 FROM staff_account WHERE role_id = %s LIMIT 1", (role_id,)
            ).fetchone()
            if in_use:
                raise InvalidState(
                    f"cannot delete role '{current['name']}' because it is assigned to one or more users",
                    {"role_id": role_id},
                )
            conn.execute("DELETE FROM staff_role WHERE id = %s", (role_id,))
        self.logger.info("role_deleted", role_id=role_id, role_name=current["name"])
        return True

    def list_accounts_in_role(self, role_id: str) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM staff_account WHERE role_id = %s ORDER BY username", (role_id,)
            ).fetchall()
        return [account_from_row(r) for r in rows]

    def count_accounts_per_role(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.name AS name, COUNT(a.id) AS total
                FROM staff_role r LEFT JOIN staff_account a ON a.role_id = r.id
                GROUP BY r.name
                """
            ).fetchall()
        return {r["name"]: int(r["total"]) for r in rows}

    def role_has_permission(self, role_id: str, permission: str) -> bool:
        role = self.get_role(role_id)
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
        account_id = new_id()
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO staff_account (id, username, email, password_hash, password_salt, role_id, employee_id, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, username, email, password_hash, password_salt, role_id, employee_id, now, now),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(f"role {role_id} does not exist", {"role_id": role_id})
        self.logger.info("account_created", user_id=account_id, username=username)
        return account_from_row(row)

    def _fetch_account(self, where: str, value: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM staff_account WHERE {where}", (value,)).fetchone()
        return account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", account_id)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("lower(username) = lower(%s)", username)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("lower(email) = lower(%s)", email)

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM staff_account ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [account_from_row(r) for r in rows]

    def _update_account(self, account_id: str, assignments: Dict[str, Any]) -> Account:
        sets = ", ".join(f"{col} = %s" for col in assignments)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE staff_account SET {sets} WHERE id = %s RETURNING *",
                (*assignments.values(), account_id),
            ).fetchone()
        if not row:
            raise NotFound(f"user {account_id} not found", {"user_id": account_id})
        return account_from_row(row)

    def update_account(
        self,
        account_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> Account:
        assignments: Dict[str, Any] = {}
        if username is not None:
            assignments["username"] = username
        if email is not None:
            assignments["email"] = email
        if employee_id is not None:
            assignments["employee_id"] = employee_id
        assignments["updated_at"] = utcnow()
        try:
            return self._update_account(account_id, assignments)
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})

    def record_login_success(self, account_id: str) -> Account:
        return self._update_account(
            account_id,
            {"failed_login_attempts": 0, "lockout_end": None, "last_login": utcnow()},
        )

    def record_login_failure(
        self, account_id: str, *, max_attempts: int = 5, lockout_minutes: int = 15
    ) -> Account:
        lockout_end = utcnow() + timedelta(minutes=lockout_minutes)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE staff_account
                SET failed_login_attempts = failed_login_attempts + 1,
                    lockout_end = CASE WHEN failed_login_attempts + 1 >= %s THEN %s ELSE lockout_end END
                WHERE id = %s RETURNING *
                """,
                (max_attempts, lockout_end, account_id),
            ).fetchone()
        if not row:
            raise NotFound(f"user {account_id} not found", {"user_id": account_id})
        account = account_from_row(row)
        if account.failed_login_attempts >= max_attempts:
            self.logger.warning(
                "account_locked", user_id=account_id, lockout_end=lockout_end.isoformat()
            )
        return account

    def set_password(
        self, account_id: str, password_hash: str, password_salt: Optional[str] = None
    ) -> Account:
        return self._update_account(
            account_id,
            {"password_hash": password_hash, "password_salt": password_salt, "updated_at": utcnow()},
        )

    def set_password_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Account:
        return self._update_account(
            account_id, {"password_reset_token": token, "password_reset_expires": expires_at}
        )

    def clear_password_reset_token(self, account_id: str) -> Account:
        return self._update_account(
            account_id,
            {"password_reset_token": None, "password_reset_expires": None, "updated_at": utcnow()},
        )

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        now = utcnow()
        try:
            return self._update_account(
                account_id, {"is_email_verified": True, "email_verified_at": now, "updated_at": now}
            )
        except NotFound:
            return None

    def set_account_active(self, account_id: str, is_active: bool) -> Account:
        account = self._update_account(
            account_id, {"is_active": is_active, "updated_at": utcnow()}
        )
        self.logger.info("account_active_changed", user_id=account_id, is_active=is_active)
        return account

    def assign_role(self, account_id: str, role_id: str) -> Account:
        with self._connect() as conn:
            role = self._require_role_row(conn, role_id)
            if not role["is_active"]:
                raise InvalidState(
                    f"cannot assign inactive role '{role['name']}'", {"role_id": role_id}
                )
            row = conn.execute(
                "UPDATE staff_account SET role_id = %s, updated_at = %s WHERE id = %s RETURNING *",
                (role_id, utcnow(), account_id),
            ).fetchone()
        if not row:
            raise NotFound(f"user {account_id} not found", {"user_id": account_id})
        self.logger.info("role_assigned", user_id=account_id, role_id=role_id)
        return account_from_row(row)

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM staff_account WHERE id = %s", (account_id,))
        if cur.rowcount == 0:
            raise NotFound(f"user {account_id} not found", {"user_id": account_id})
        self.logger.info("account_deleted", user_id=account_id)
        return True

    # tokens
    def create_token(self, token: IssuedToken) -> IssuedToken:
        if token is None:
            raise ValidationFailure("token record is required")
        token.created_at = utcnow()
        token.is_revoked = False
        token.revoked_at = None
        token.revoked_reason = None
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_token (id, user_id, access_token, refresh_token, expires_at, refresh_expires_at, created_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.access_token,
                        token.refresh_token,
                        token.expires_at,
                        token.refresh_expires_at,
                        token.created_at,
                        token.ip_address,
                        token.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(f"user {token.user_id} not found", {"user_id": token.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token value already issued", {"token_id": token.id})
        self.logger.info(
            "token_created",
            token_id=token.id,
            user_id=token.user_id,
            expires_at=token.expires_at.isoformat(),
        )
        return token

    def revoke_token(self, token_id: str, reason: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id, is_revoked FROM auth_token WHERE id = %s FOR UPDATE", (token_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"token {token_id} not found", {"token_id": token_id})
            if row["is_revoked"]:
                return True
            conn.execute(
                """
                UPDATE auth_token SET is_revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE id = %s
                """,
                (reason, utcnow(), token_id),
            )
        self.logger.info("token_revoked", token_id=token_id, user_id=row["user_id"], reason=reason)
        return True

    def revoke_all_user_tokens(self, user_id: str, reason: str) -> int:
        now = utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_token SET is_revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE user_id = %s AND NOT is_revoked AND expires_at > %s
                """,
                (reason, now, user_id, now),
            )
        count = cur.rowcount
        self.logger.info("user_tokens_revoked", user_id=user_id, count=count, reason=reason)
        return count

    def revoke_tokens_by_ip(self, ip_address: str, reason: str) -> int:
        now = utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_token SET is_revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE ip_address = %s AND NOT is_revoked AND expires_at > %s
                """,
                (reason, now, ip_address, now),
            )
        count = cur.rowcount
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
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE id = %s FOR UPDATE", (token_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"token {token_id} not found", {"token_id": token_id})
            if row["is_revoked"]:
                raise InvalidState("cannot refresh a revoked token", {"token_id": token_id})
            if ensure_aware(row["expires_at"]) <= utcnow():
                raise InvalidState("cannot refresh an expired token", {"token_id": token_id})
            row = conn.execute(
                """
                UPDATE auth_token
                SET refresh_token = %s, refresh_expires_at = %s,
                    access_token = COALESCE(%s, access_token),
                    expires_at = COALESCE(%s, expires_at)
                WHERE id = %s RETURNING *
                """,
                (new_refresh_token, new_refresh_expires_at, new_access_token, new_access_expires_at, token_id),
            ).fetchone()
        self.logger.info("token_rotated", token_id=token_id, user_id=row["user_id"])
        return token_from_row(row)

    def cleanup_expired_tokens(self, threshold: datetime) -> int:
        threshold = ensure_aware(threshold)
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE expires_at < %s", (threshold,))
        self.logger.info("tokens_purged", count=cur.rowcount, threshold=threshold.isoformat())
        return cur.rowcount

    def _fetch_tokens(self, where: str = "TRUE", params: Sequence[Any] = ()) -> List[IssuedToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_token WHERE {where} ORDER BY created_at DESC", params
            ).fetchall()
        return [token_from_row(r) for r in rows]

    def get_token(self, token_id: str) -> Optional[IssuedToken]:
        found = self._fetch_tokens("id = %s", (token_id,))
        return found[0] if found else None

    def get_token_by_access(self, access_token: str) -> Optional[IssuedToken]:
        found = self._fetch_tokens("access_token = %s", (access_token,))
        return found[0] if found else None

    def get_token_by_refresh(self, refresh_token: str) -> Optional[IssuedToken]:
        found = self._fetch_tokens("refresh_token = %s", (refresh_token,))
        return found[0] if found else None

    def list_tokens(self) -> List[IssuedToken]:
        return self._fetch_tokens()

    def list_active_tokens(self, user_id: str) -> List[IssuedToken]:
        return self._fetch_tokens(
            "user_id = %s AND NOT is_revoked AND expires_at > %s", (user_id, utcnow())
        )

    def list_token_history(self, user_id: str) -> List[IssuedToken]:
        return self._fetch_tokens("user_id = %s", (user_id,))

    def list_expired_tokens(self) -> List[IssuedToken]:
        return self._fetch_tokens("expires_at <= %s", (utcnow(),))

    def list_revoked_tokens(self) -> List[IssuedToken]:
        return self._fetch_tokens("is_revoked")

    def is_access_token_valid(self, access_token: str) -> bool:
        token = self.get_token_by_access(access_token)
        return token is not None and token_is_active(token)

    def is_refresh_token_valid(self, refresh_token: str) -> bool:
        token = self.get_token_by_refresh(refresh_token)
        return token is not None and refresh_is_active(token)

    def count_active_tokens(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM auth_token WHERE NOT is_revoked AND expires_at > %s",
                (utcnow(),),
            ).fetchone()
        return int(row["total"])

    def count_tokens_by_ip(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ip_address, COUNT(*) AS total FROM auth_token
                WHERE ip_address IS NOT NULL AND NOT is_revoked AND expires_at > %s
                GROUP BY ip_address
                """,
                (utcnow(),),
            ).fetchall()
        return {r["ip_address"]: int(r["total"]) for r in rows}

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
        now = utcnow()
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
        try:
            with self._connect() as conn:
                if max_concurrent:
                    active = conn.execute(
                        """
                        SELECT id FROM user_session
                        WHERE user_id = %s AND is_active AND expires_at > %s
                        ORDER BY login_time ASC FOR UPDATE
                        """,
                        (user_id, now),
                    ).fetchall()
                    if len(active) >= max_concurrent:
                        oldest_id = active[0]["id"]
                        conn.execute(
                            "UPDATE user_session SET is_active = FALSE, logout_time = %s WHERE id = %s",
                            (now, oldest_id),
                        )
                        self.logger.info(
                            "session_evicted_concurrent_limit",
                            session_id=oldest_id,
                            user_id=user_id,
                            limit=max_concurrent,
                        )
                conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, session_token, expires_at, login_time, last_activity, ip_address, user_agent, device_type, location, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                    """,
                    (
                        sess.id,
                        user_id,
                        session_token,
                        sess.expires_at,
                        now,
                        now,
                        ip_address,
                        user_agent,
                        device_type,
                        location,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(f"user {user_id} not found", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "session_token"})
        self.logger.info("session_created", session_id=sess.id, user_id=user_id)
        return sess

    def _require_session_row(self, conn, session_id: str) -> dict:
        row = conn.execute(
            "SELECT * FROM user_session WHERE id = %s FOR UPDATE", (session_id,)
        ).fetchone()
        if not row:
            raise NotFound(f"session {session_id} not found", {"session_id": session_id})
        return row

    def terminate_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = self._require_session_row(conn, session_id)
            conn.execute(
                "UPDATE user_session SET is_active = FALSE, logout_time = %s WHERE id = %s",
                (utcnow(), session_id),
            )
        self.logger.info("session_terminated", session_id=session_id, user_id=row["user_id"])
        return True

    def terminate_all_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, logout_time = %s
                WHERE user_id = %s AND is_active
                """,
                (utcnow(), user_id),
            )
        self.logger.info("user_sessions_terminated", user_id=user_id, count=cur.rowcount)
        return cur.rowcount

    def update_session_activity(self, session_id: str) -> Session:
        expired = False
        with self._connect() as conn:
            row = self._require_session_row(conn, session_id)
            if not row["is_active"]:
                raise InvalidState(
                    "cannot update activity for inactive session", {"session_id": session_id}
                )
            now = utcnow()
            if ensure_aware(row["expires_at"]) <= now:
                conn.execute(
                    "UPDATE user_session SET is_active = FALSE WHERE id = %s", (session_id,)
                )
                expired = True
            else:
                row = conn.execute(
                    "UPDATE user_session SET last_activity = %s WHERE id = %s RETURNING *",
                    (now, session_id),
                ).fetchone()
        # raised after the block so the deactivation commits
        if expired:
            raise InvalidState(
                "cannot update activity for expired session", {"session_id": session_id}
            )
        return session_from_row(row)

    def extend_session(self, session_id: str, extension: timedelta) -> Session:
        with self._connect() as conn:
            row = self._require_session_row(conn, session_id)
            if not row["is_active"]:
                raise InvalidState(
                    "cannot extend expiration for inactive session", {"session_id": session_id}
                )
            row = conn.execute(
                """
                UPDATE user_session SET expires_at = expires_at + %s, last_activity = %s
                WHERE id = %s RETURNING *
                """,
                (extension, utcnow(), session_id),
            ).fetchone()
        sess = session_from_row(row)
        self.logger.info(
            "session_extended", session_id=session_id, expires_at=sess.expires_at.isoformat()
        )
        return sess

    def cleanup_expired_sessions(self, threshold: datetime) -> int:
        threshold = ensure_aware(threshold)
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM user_session
                WHERE expires_at < %s OR (logout_time IS NOT NULL AND logout_time < %s)
                """,
                (threshold, threshold),
            )
        self.logger.info("sessions_purged", count=cur.rowcount, threshold=threshold.isoformat())
        return cur.rowcount

    def _fetch_sessions(self, where: str = "TRUE", params: Sequence[Any] = ()) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_session WHERE {where} ORDER BY login_time DESC", params
            ).fetchall()
        return [session_from_row(r) for r in rows]

    def get_session(self, session_id: str) -> Optional[Session]:
        found = self._fetch_sessions("id = %s", (session_id,))
        return found[0] if found else None

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        found = self._fetch_sessions("session_token = %s", (session_token,))
        return found[0] if found else None

    def list_sessions(self) -> List[Session]:
        return self._fetch_sessions()

    def list_active_sessions(self, user_id: str) -> List[Session]:
        return self._fetch_sessions(
            "user_id = %s AND is_active AND expires_at > %s", (user_id, utcnow())
        )

    def list_session_history(self, user_id: str) -> List[Session]:
        return self._fetch_sessions("user_id = %s", (user_id,))

    def list_expired_sessions(self) -> List[Session]:
        return self._fetch_sessions("expires_at <= %s", (utcnow(),))

    def list_inactive_sessions(self, idle_for: timedelta) -> List[Session]:
        return self._fetch_sessions(
            "is_active AND COALESCE(last_activity, login_time) < %s", (utcnow() - idle_for,)
        )

    def list_sessions_by_device(self, device_type: str) -> List[Session]:
        return self._fetch_sessions("device_type = %s", (device_type,))

    def list_sessions_by_location(self, location: str) -> List[Session]:
        return self._fetch_sessions("location = %s", (location,))

    def is_session_valid(self, session_token: str) -> bool:
        sess = self.get_session_by_token(session_token)
        return sess is not None and session_is_active(sess)

    def count_active_sessions(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM user_session WHERE is_active AND expires_at > %s",
                (utcnow(),),
            ).fetchone()
        return int(row["total"])

    def count_active_sessions_per_user(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, COUNT(*) AS total FROM user_session
                WHERE is_active AND expires_at > %s GROUP BY user_id
                """,
                (utcnow(),),
            ).fetchall()
        return {r["user_id"]: int(r["total"]) for r in rows}

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_log (id, user_id, action, was_successful, username_attempted, ip_address, user_agent, failure_reason, details, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    user_id,
                    action,
                    was_successful,
                    username_attempted,
                    ip_address,
                    user_agent,
                    failure_reason,
                    details,
                    event.timestamp,
                ),
            )
        return event

    def list_auth_events(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuthEvent]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM auth_log WHERE user_id = %s ORDER BY timestamp DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_log ORDER BY timestamp DESC LIMIT %s", (limit,)
                ).fetchall()
        return [auth_event_from_row(r) for r in rows]

    def count_failed_attempts_by_ip(self, ip_address: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM auth_log
                WHERE action = 'login' AND NOT was_successful
                  AND ip_address = %s AND timestamp >= %s
                """,
                (ip_address, ensure_aware(since)),
            ).fetchone()
        return int(row["total"]) if row else 0

    def count_failed_attempts_by_username(self, username: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM auth_log
                WHERE action = 'login' AND NOT was_successful
                  AND lower(username_attempted) = lower(%s) AND timestamp >= %s
                """,
                (username, ensure_aware(since)),
            ).fetchone()
        return int(row["total"]) if row else 0

    def purge_auth_events(self, threshold: datetime) -> int:
        threshold = ensure_aware(threshold)
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_log WHERE timestamp < %s", (threshold,))
        self.logger.info("auth_events_purged", count=cur.rowcount, threshold=threshold.isoformat())
        return cur.rowcount
