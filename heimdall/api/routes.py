from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request
from pydantic import BaseModel

from heimdall.api.schemas import (
    Envelope,
    LoginData,
    LoginLogItem,
    LoginLogPage,
    LoginRequest,
    LogoutRequest,
    Pagination,
    RefreshRequest,
    TokenData,
    UserPage,
    UserSummary,
)
from heimdall.service.clock import format_rfc3339, parse_rfc3339
from heimdall.service.errors import RateLimitedError, ValidationError
from heimdall.service.runtime import check_rate_limit, get_runtime
from heimdall.service.session import AuthContext
from heimdall.storage.models import LOGIN_FAILED, LOGIN_SUCCESS, LoginLogFilter, UserFilter

router = APIRouter(prefix="/admin")


def _envelope(runtime, message: str, data: Any = None) -> Envelope:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return Envelope(
        code=200,
        message=message,
        data=data,
        timestamp=format_rfc3339(runtime.clock.now()),
    )


def client_ip(request: Request) -> str:
    """Resolve the caller address, honouring proxy headers when configured."""
    if get_runtime().settings.trust_forwarded_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    return request.client.host if request.client else ""


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


async def get_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.gateway.authorize(
        authorization,
        client_ip=client_ip(request),
        user_agent=_user_agent(request),
    )


async def get_logout_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Like ``get_auth_context`` but an expired, correctly signed token still logs out."""
    runtime = get_runtime()
    return await runtime.gateway.authorize(
        authorization,
        client_ip=client_ip(request),
        user_agent=_user_agent(request),
        allow_expired=True,
    )


def _parse_time(value: Optional[str], field: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_rfc3339(value)
    except ValueError as exc:
        raise ValidationError(f"{field}格式错误", detail={"field": field}) from exc


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Verify credentials and issue an access/refresh token pair.

    Raises:
        400: If username or password is missing
        401: If credentials are invalid (never says which part)
        403: If the account is disabled or locked
        429: If the per-IP rate limit is exceeded
    """
    runtime = get_runtime()
    ip = client_ip(request)
    allowed = await check_rate_limit(
        runtime, f"login:{ip}", runtime.settings.login_rate_limit_per_minute, 60
    )
    if not allowed:
        raise RateLimitedError("请求过于频繁，请稍后再试")
    result = await runtime.gateway.login(
        body.username, body.password, ip, _user_agent(request)
    )
    data = LoginData(
        token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.expires_in,
        token_type=result.tokens.token_type,
        user=UserSummary.from_user(result.user),
    )
    return _envelope(runtime, "登录成功", data)


@router.post(
    "/logout", response_model=Envelope, response_model_exclude_none=True, tags=["auth"]
)
async def logout(
    body: Optional[LogoutRequest] = None,
    ctx: AuthContext = Depends(get_logout_context),
):
    runtime = get_runtime()
    await runtime.gateway.logout(ctx, body.refresh_token if body else None)
    return _envelope(runtime, "登出成功")


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.gateway.refresh(
        body.refresh_token,
        client_ip=client_ip(request),
        user_agent=_user_agent(request),
    )
    data = TokenData(
        token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=max(0, int((pair.expires_at - runtime.clock.now()).total_seconds())),
        token_type=pair.token_type,
    )
    return _envelope(runtime, "刷新成功", data)


@router.get("/profile", response_model=Envelope, tags=["auth"])
async def profile(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = await runtime.accounts.profile(ctx)
    return _envelope(runtime, "success", UserSummary.from_user(user))


@router.get("/login-logs", response_model=Envelope, tags=["audit"])
async def list_login_logs(
    ctx: AuthContext = Depends(get_auth_context),
    username: Optional[str] = Query(None, max_length=256),
    user_id: Optional[str] = Query(None, alias="userId", max_length=128),
    status: Optional[str] = Query(None),
    ip_address: Optional[str] = Query(None, alias="ipAddress", max_length=64),
    start_time: Optional[str] = Query(None, alias="startTime"),
    end_time: Optional[str] = Query(None, alias="endTime"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """List login audit records, newest first. Owner and admin only."""
    runtime = get_runtime()
    runtime.accounts.require_admin(ctx)
    if status and status not in (LOGIN_SUCCESS, LOGIN_FAILED):
        raise ValidationError("status只能是success或failed", detail={"field": "status"})
    filters = LoginLogFilter(
        username=username or None,
        user_id=user_id or None,
        status=status or None,
        ip_address=ip_address or None,
        start_time=_parse_time(start_time, "startTime"),
        end_time=_parse_time(end_time, "endTime"),
    )
    result = await runtime.accounts.list_login_logs(filters, page=page, limit=limit)
    data = LoginLogPage(
        items=[LoginLogItem.from_log(log) for log in result.items],
        pagination=Pagination.model_validate(result.pagination()),
    )
    return _envelope(runtime, "success", data)


@router.get("/users", response_model=Envelope, tags=["admin"])
async def list_users(
    ctx: AuthContext = Depends(get_auth_context),
    role: Optional[str] = Query(None, max_length=32),
    status: Optional[str] = Query(None, max_length=32),
    keyword: Optional[str] = Query(None, max_length=128),
    sort_by: Optional[str] = Query(None, alias="sortBy", max_length=32),
    sort_desc: bool = Query(False, alias="sortDesc"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    """List admin accounts, newest first unless ``sortBy`` says otherwise. Owner and admin only."""
    runtime = get_runtime()
    runtime.accounts.require_admin(ctx)
    filters = UserFilter(
        role=role or None,
        status=status or None,
        keyword=keyword or None,
        sort_by=sort_by or None,
        sort_desc=sort_desc,
    )
    result = await runtime.accounts.list_users(filters, page=page, limit=limit)
    data = UserPage(
        items=[UserSummary.from_user(user) for user in result.items],
        pagination=Pagination.model_validate(result.pagination()),
    )
    return _envelope(runtime, "获取用户列表成功", data)


@router.get("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def user_detail(
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    user = await runtime.accounts.user_detail(ctx, user_id)
    return _envelope(runtime, "获取用户详情成功", UserSummary.from_user(user))


@router.post("/users/{user_id}/disable", response_model=Envelope, tags=["admin"])
async def disable_user(
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    user = await runtime.accounts.disable(ctx, user_id)
    return _envelope(runtime, "账户已禁用", UserSummary.from_user(user))


@router.post("/users/{user_id}/enable", response_model=Envelope, tags=["admin"])
async def enable_user(
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    user = await runtime.accounts.enable(ctx, user_id)
    return _envelope(runtime, "账户已启用", UserSummary.from_user(user))


@router.post("/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_user(
    user_id: str = Path(..., max_length=128),
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    user = await runtime.accounts.unlock(ctx, user_id)
    return _envelope(runtime, "账户已解锁", UserSummary.from_user(user))
