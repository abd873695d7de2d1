from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from heimdall.service.clock import format_rfc3339
from heimdall.storage.models import LoginLog, User

MAX_CREDENTIAL_LENGTH = 256


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code keeps snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Envelope(BaseModel):
    """Success envelope: ``{code, message, data?, timestamp}``."""

    code: int = 200
    message: str = "success"
    data: Optional[Any] = None
    timestamp: str


class ErrorBody(BaseModel):
    """Error envelope: ``{code, msg, details?}``."""

    code: str = Field(..., min_length=1)
    msg: str
    details: Optional[Any] = None


class LoginRequest(CamelModel):
    username: str = Field(default="", max_length=MAX_CREDENTIAL_LENGTH)
    password: str = Field(default="", max_length=MAX_CREDENTIAL_LENGTH)
    remember_me: bool = False


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(default="", max_length=4096)


class UserSummary(CamelModel):
    id: str
    username: str
    email: str
    display_name: Optional[str] = None
    role: str
    status: str
    last_login_at: Optional[str] = None
    last_login_ip: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name,
            role=user.role,
            status=user.status,
            last_login_at=format_rfc3339(user.last_login_at),
            last_login_ip=user.last_login_ip,
            created_at=format_rfc3339(user.created_at),
            updated_at=format_rfc3339(user.updated_at),
        )


class TokenData(CamelModel):
    token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class LoginData(TokenData):
    user: UserSummary


class LoginLogItem(CamelModel):
    id: str
    user_id: Optional[str] = None
    username: str
    login_method: str
    ip_address: str
    user_agent: str
    status: str
    fail_reason: Optional[str] = None
    session_id: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    login_at: str
    logout_at: Optional[str] = None
    duration: Optional[int] = None

    @classmethod
    def from_log(cls, log: LoginLog) -> "LoginLogItem":
        return cls(
            id=log.id,
            user_id=log.user_id,
            username=log.username,
            login_method=log.login_method,
            ip_address=log.ip_address,
            user_agent=log.user_agent,
            status=log.status,
            fail_reason=log.fail_reason,
            session_id=log.session_id,
            country=log.country,
            region=log.region,
            city=log.city,
            device_type=log.device_type,
            browser=log.browser,
            os=log.os,
            login_at=format_rfc3339(log.login_at),
            logout_at=format_rfc3339(log.logout_at),
            duration=log.duration,
        )


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class LoginLogPage(CamelModel):
    items: List[LoginLogItem]
    pagination: Pagination



class UserPage(CamelModel):
    items: List[UserSummary]
    pagination: Pagination
