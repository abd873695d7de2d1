from __future__ import annotations

import re
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from heimdall.logging import get_logger
from heimdall.service.clock import Clock, SystemClock
from heimdall.storage.errors import ConstraintViolation, StoreUnavailable
from heimdall.storage.models import (
    STATUS_ACTIVE,
    USER_STATUSES,
    LoginLog,
    LoginLogFilter,
    User,
    UserFilter,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS admin_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        role TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        login_fail_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_log (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        username TEXT NOT NULL,
        login_method TEXT NOT NULL,
        ip_address TEXT NOT NULL,
        user_agent TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        fail_reason TEXT,
        session_id TEXT,
        country TEXT,
        region TEXT,
        city TEXT,
        device_type TEXT,
        browser TEXT,
        os TEXT,
        login_at TIMESTAMPTZ NOT NULL,
        logout_at TIMESTAMPTZ,
        duration INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_log_login_at_idx ON login_log (login_at DESC)",
    "CREATE INDEX IF NOT EXISTS login_log_username_idx ON login_log (username)",
)

_USER_SORT_COLUMNS = {
    "username": "username",
    "createdAt": "created_at",
    "lastLoginAt": "last_login_at",
}

_LOG_COLUMNS = (
    "id",
    "user_id",
    "username",
    "login_method",
    "ip_address",
    "user_agent",
    "status",
    "fail_reason",
    "session_id",
    "country",
    "region",
    "city",
    "device_type",
    "browser",
    "os",
    "login_at",
    "logout_at",
    "duration",
)


class PostgresStore:
    """Postgres-backed store for admin users and login audit records."""

    def __init__(self, dsn: str, *, clock: Optional[Clock] = None) -> None:
        self.dsn = dsn
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            display_name=row.get("display_name"),
            role=row["role"],
            status=row.get("status", STATUS_ACTIVE),
            login_fail_count=row.get("login_fail_count") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: str = "author",
        display_name: Optional[str] = None,
        status: str = STATUS_ACTIVE,
    ) -> User:
        user = User.new(
            username,
            email,
            password_hash,
            role=role,
            display_name=display_name,
            status=status,
        )
        now = self.clock.now()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO admin_user (id, username, email, password_hash, display_name,
                                            role, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        user.display_name,
                        user.role,
                        user.status,
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        user.created_at = user.updated_at = now
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    def _fetch_user(self, column: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM admin_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def _update_user(
        self, user_id: str, assignments: str, params: Tuple[Any, ...]
    ) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE admin_user SET {assignments}, updated_at = %s WHERE id = %s "
                "RETURNING login_fail_count",
                (*params, self.clock.now(), user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return row

    def update_login_info(self, user_id: str, login_at: datetime, ip: str) -> None:
        self._update_user(
            user_id,
            "last_login_at = %s, last_login_ip = %s, login_fail_count = 0",
            (login_at, ip),
        )

    def increment_login_fail_count(self, user_id: str) -> int:
        row = self._update_user(user_id, "login_fail_count = login_fail_count + 1", ())
        return int(row["login_fail_count"])

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        self._update_user(user_id, "password_hash = %s", (password_hash,))

    def lock_user(self, user_id: str, locked_until: datetime) -> None:
        self._update_user(user_id, "locked_until = %s", (locked_until,))

    def unlock_user(self, user_id: str) -> None:
        self._update_user(user_id, "locked_until = NULL, login_fail_count = 0", ())

    def set_user_status(self, user_id: str, status: str) -> None:
        if status not in USER_STATUSES:
            raise ConstraintViolation("unknown user status", {"status": status})
        self._update_user(user_id, "status = %s", (status,))

    def list_users(
        self, filters: UserFilter, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[User], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if filters.role:
            clauses.append("role = %s")
            params.append(filters.role)
        if filters.status:
            clauses.append("status = %s")
            params.append(filters.status)
        if filters.keyword:
            escaped = re.sub(r"([\\%_])", r"\\\1", filters.keyword)
            clauses.append(
                "(username ILIKE %s OR email ILIKE %s OR COALESCE(display_name, '') ILIKE %s)"
            )
            params.extend([f"%{escaped}%"] * 3)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        column = _USER_SORT_COLUMNS.get(filters.sort_by or "")
        if column:
            direction = "DESC" if filters.sort_desc else "ASC"
            nulls = "NULLS FIRST" if not filters.sort_desc else "NULLS LAST"
            order = f"{column} {direction} {nulls}"
        else:
            order = "created_at DESC"
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS total FROM admin_user {where}", tuple(params)
            ).fetchone()["total"]
            rows = conn.execute(
                f"SELECT * FROM admin_user {where} ORDER BY {order} LIMIT %s OFFSET %s",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
        return [self._user_from_row(row) for row in rows], int(total)

    def append_login_log(self, log: LoginLog) -> None:
        placeholders = ", ".join(["%s"] * len(_LOG_COLUMNS))
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO login_log ({', '.join(_LOG_COLUMNS)}) VALUES ({placeholders})",
                tuple(getattr(log, column) for column in _LOG_COLUMNS),
            )

    def list_login_logs(
        self, filters: LoginLogFilter, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[LoginLog], int]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("username", filters.username),
            ("user_id", filters.user_id),
            ("status", filters.status),
            ("ip_address", filters.ip_address),
        ):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if filters.start_time:
            clauses.append("login_at >= %s")
            params.append(filters.start_time)
        if filters.end_time:
            clauses.append("login_at <= %s")
            params.append(filters.end_time)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS total FROM login_log {where}", tuple(params)
            ).fetchone()["total"]
            rows = conn.execute(
                f"SELECT * FROM login_log {where} ORDER BY login_at DESC LIMIT %s OFFSET %s",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
        return [LoginLog(**{column: row[column] for column in _LOG_COLUMNS}) for row in rows], int(total)
