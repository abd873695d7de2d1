from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_EDITOR = "editor"
ROLE_AUTHOR = "author"
USER_ROLES = (ROLE_OWNER, ROLE_ADMIN, ROLE_EDITOR, ROLE_AUTHOR)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
USER_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE)

LOGIN_SUCCESS = "success"
LOGIN_FAILED = "failed"

LOGIN_METHOD_USERNAME = "username"
LOGIN_METHOD_EMAIL = "email"

# Audit fail reasons are stored verbatim and surfaced in the admin log view.
FAIL_REASON_USER_NOT_FOUND = "用户不存在"
FAIL_REASON_BAD_PASSWORD = "密码错误"
FAIL_REASON_DISABLED = "账户已被禁用"
FAIL_REASON_LOCKED = "账户已被锁定"
FAIL_REASON_TOO_MANY_ATTEMPTS = "登录失败次数过多"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str = field(repr=False, default="")
    display_name: Optional[str] = None
    role: str = ROLE_AUTHOR
    status: str = STATUS_ACTIVE
    login_fail_count: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: str = ROLE_AUTHOR,
        display_name: Optional[str] = None,
        status: str = STATUS_ACTIVE,
    ) -> "User":
        return cls(
            id=uuid.uuid4().hex,
            username=username,
            email=email,
            password_hash=password_hash,
            display_name=display_name or username,
            role=role,
            status=status,
        )

    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass
class LoginLog:
    username: str
    ip_address: str
    user_agent: str
    status: str
    login_method: str = LOGIN_METHOD_USERNAME
    user_id: Optional[str] = None
    fail_reason: Optional[str] = None
    session_id: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    login_at: datetime = field(default_factory=_utcnow)
    logout_at: Optional[datetime] = None
    duration: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def mark_logout(self, logout_at: datetime, started_at: Optional[datetime] = None) -> None:
        """Stamp the logout time and derive the session duration in seconds."""
        self.logout_at = logout_at
        start = started_at or self.login_at
        self.duration = max(0, int((logout_at - start).total_seconds()))


@dataclass
class LoginLogFilter:
    username: Optional[str] = None
    user_id: Optional[str] = None
    status: Optional[str] = None
    ip_address: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def matches(self, log: LoginLog) -> bool:
        if self.username and log.username != self.username:
            return False
        if self.user_id and log.user_id != self.user_id:
            return False
        if self.status and log.status != self.status:
            return False
        if self.ip_address and log.ip_address != self.ip_address:
            return False
        if self.start_time and log.login_at < self.start_time:
            return False
        if self.end_time and log.login_at > self.end_time:
            return False
        return True


USER_SORT_FIELDS = ("username", "createdAt", "lastLoginAt")


@dataclass
class UserFilter:
    role: Optional[str] = None
    status: Optional[str] = None
    # Case-insensitive substring of username, email or display name
    keyword: Optional[str] = None
    sort_by: Optional[str] = None
    sort_desc: bool = False

    def matches(self, user: User) -> bool:
        if self.role and user.role != self.role:
            return False
        if self.status and user.status != self.status:
            return False
        if self.keyword:
            needle = self.keyword.lower()
            haystack = (user.username, user.email, user.display_name or "")
            if not any(needle in value.lower() for value in haystack):
                return False
        return True
