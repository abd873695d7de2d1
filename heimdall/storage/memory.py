from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from heimdall.logging import get_logger
from heimdall.service.clock import Clock, SystemClock
from heimdall.storage.errors import ConstraintViolation
from heimdall.storage.models import (
    STATUS_ACTIVE,
    USER_STATUSES,
    LoginLog,
    LoginLogFilter,
    User,
    UserFilter,
)


class MemoryStore:
    """In-process user and audit store used for tests and local development."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self.users: Dict[str, User] = {}
        self.login_logs: List[LoginLog] = []
        self._data_lock = threading.RLock()
        self.logger = get_logger(__name__)

    def ping(self) -> None:
        return None

    # users
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
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                username,
                email,
                password_hash,
                role=role,
                display_name=display_name,
                status=status,
            )
            user.created_at = user.updated_at = self.clock.now()
            self.users[user.id] = user
            self.logger.info("user_created", user_id=user.id, role=role)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def _touch(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        user.updated_at = self.clock.now()
        return user

    def update_login_info(self, user_id: str, login_at: datetime, ip: str) -> None:
        with self._data_lock:
            user = self._touch(user_id)
            user.last_login_at = login_at
            user.last_login_ip = ip
            user.login_fail_count = 0

    def increment_login_fail_count(self, user_id: str) -> int:
        with self._data_lock:
            user = self._touch(user_id)
            user.login_fail_count += 1
            return user.login_fail_count

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self._touch(user_id)
            user.password_hash = password_hash

    def lock_user(self, user_id: str, locked_until: datetime) -> None:
        with self._data_lock:
            user = self._touch(user_id)
            user.locked_until = locked_until

    def unlock_user(self, user_id: str) -> None:
        with self._data_lock:
            user = self._touch(user_id)
            user.locked_until = None
            user.login_fail_count = 0

    def set_user_status(self, user_id: str, status: str) -> None:
        if status not in USER_STATUSES:
            raise ConstraintViolation("unknown user status", {"status": status})
        with self._data_lock:
            user = self._touch(user_id)
            user.status = status

    def list_users(
        self, filters: UserFilter, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            matched = [replace(user) for user in self.users.values() if filters.matches(user)]
        if filters.sort_by == "username":
            matched.sort(key=lambda user: user.username, reverse=filters.sort_desc)
        elif filters.sort_by == "lastLoginAt":
            # never-logged-in accounts sort as the oldest
            floor = datetime.min.replace(tzinfo=timezone.utc)
            matched.sort(key=lambda user: user.last_login_at or floor, reverse=filters.sort_desc)
        elif filters.sort_by == "createdAt":
            matched.sort(key=lambda user: user.created_at, reverse=filters.sort_desc)
        else:
            matched.sort(key=lambda user: user.created_at, reverse=True)
        offset = (page - 1) * limit
        return matched[offset : offset + limit], len(matched)

    # login audit
    def append_login_log(self, log: LoginLog) -> None:
        with self._data_lock:
            self.login_logs.append(replace(log))

    def list_login_logs(
        self, filters: LoginLogFilter, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[LoginLog], int]:
        with self._data_lock:
            matched = [log for log in self.login_logs if filters.matches(log)]
        matched.sort(key=lambda log: log.login_at, reverse=True)
        offset = (page - 1) * limit
        return [replace(log) for log in matched[offset : offset + limit]], len(matched)


class MemoryCache:
    """Key-value fallback with the same surface as ``RedisCache``.

    Entries expire against the injected clock so expiry is deterministic in tests.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._values: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._buckets: Dict[str, Tuple[float, datetime]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self.clock.now():
            self._values.pop(key, None)
            return None
        return entry

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                expires_at = self.clock.now() + timedelta(seconds=ttl_seconds)
                self._values[key] = ("1", expires_at)
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._values[key] = (str(count), expires_at)
            return count

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            expires_at = (
                self.clock.now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
            )
            self._values[key] = (value, expires_at)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._values if key.startswith(prefix)]
            for key in doomed:
                del self._values[key]
            return len(doomed)

    async def ttl(self, key: str) -> int:
        """Seconds until expiry; -2 for a missing key and -1 for no expiry."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            _, expires_at = entry
            if expires_at is None:
                return -1
            return int((expires_at - self.clock.now()).total_seconds())

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self.clock.now()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._buckets[key] = (tokens, now)
        return allowed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
