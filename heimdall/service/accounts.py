from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from heimdall.logging import get_logger
from heimdall.service.attempts import AttemptTracker
from heimdall.service.clock import Clock, SystemClock
from heimdall.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from heimdall.service.lockout import LockoutEngine
from heimdall.service.passwords import PasswordPolicy
from heimdall.service.session import AuthContext
from heimdall.storage.common import call_store
from heimdall.storage.errors import ConstraintViolation
from heimdall.storage.models import (
    ROLE_ADMIN,
    ROLE_OWNER,
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    USER_ROLES,
    USER_SORT_FIELDS,
    USER_STATUSES,
    LoginLogFilter,
    User,
    UserFilter,
)

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
DEFAULT_USER_PAGE_SIZE = 10
ADMIN_ROLES = (ROLE_OWNER, ROLE_ADMIN)
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class Page:
    items: List[Any]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
            "hasNext": self.page < self.total_pages,
            "hasPrev": self.page > 1,
        }


class AccountService:
    """Profile lookup, user and login-log queries, and administrative account state changes."""

    def __init__(
        self,
        store,
        *,
        lockout: LockoutEngine,
        tracker: Optional[AttemptTracker] = None,
        passwords: Optional[PasswordPolicy] = None,
        clock: Optional[Clock] = None,
        store_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.lockout = lockout
        self.tracker = tracker
        self.passwords = passwords
        self.clock = clock or SystemClock()
        self.store_timeout = store_timeout

    async def _call(self, func, *args, **kwargs):
        try:
            return await call_store(func, *args, timeout=self.store_timeout, **kwargs)
        except ConstraintViolation:
            raise
        except Exception as exc:
            logger.error("account_store_call_failed", op=func.__name__, error=str(exc))
            raise ServerError() from exc

    async def _require_user(self, user_id: str) -> User:
        user = await self._call(self.store.get_user, user_id)
        if user is None:
            raise NotFoundError("用户不存在")
        return user

    @staticmethod
    def require_admin(ctx: AuthContext) -> None:
        if ctx.role not in ADMIN_ROLES:
            raise ForbiddenError("权限不足")

    async def profile(self, ctx: AuthContext) -> User:
        user = await self._require_user(ctx.user_id)
        if not user.is_active():
            raise AccountDisabledError()
        state = self.lockout.lock_state(user)
        if state.locked:
            raise AccountLockedError(
                f"账户已被锁定，还需等待{state.remaining_minutes(self.clock.now())}分钟"
            )
        return user

    async def list_login_logs(
        self, filters: LoginLogFilter, *, page: int = 1, limit: int = DEFAULT_PAGE_SIZE
    ) -> Page:
        page = max(1, page)
        if limit <= 0:
            limit = DEFAULT_PAGE_SIZE
        limit = min(limit, MAX_PAGE_SIZE)
        if filters.start_time and filters.end_time and filters.start_time > filters.end_time:
            raise ValidationError("开始时间不能晚于结束时间")
        items, total = await self._call(
            self.store.list_login_logs, filters, page=page, limit=limit
        )
        return Page(items=items, page=page, limit=limit, total=total)

    async def disable(self, ctx: AuthContext, user_id: str) -> User:
        self.require_admin(ctx)
        if user_id == ctx.user_id:
            raise ValidationError("不能禁用当前登录的账户")
        await self._require_user(user_id)
        await self._call(self.store.set_user_status, user_id, STATUS_INACTIVE)
        logger.info("account_disabled", user_id=user_id, actor=ctx.user_id)
        return await self._require_user(user_id)

    async def _clear_lock(self, user: User) -> None:
        await self._call(self.store.unlock_user, user.id)
        if self.tracker is not None:
            # Counters are keyed by whichever identifier was submitted at login.
            await self.tracker.clear_all(user.username, user.email)

    async def enable(self, ctx: AuthContext, user_id: str) -> User:
        """Re-activate an account; also clears any lock and the failure counters."""
        self.require_admin(ctx)
        user = await self._require_user(user_id)
        await self._call(self.store.set_user_status, user_id, STATUS_ACTIVE)
        await self._clear_lock(user)
        logger.info("account_enabled", user_id=user_id, actor=ctx.user_id)
        return await self._require_user(user_id)

    async def unlock(self, ctx: AuthContext, user_id: str) -> User:
        """Lift a lockout. The account status is left alone, so a disabled user stays disabled."""
        self.require_admin(ctx)
        user = await self._require_user(user_id)
        await self._clear_lock(user)
        logger.info("account_unlocked", user_id=user_id, actor=ctx.user_id)
        return await self._require_user(user_id)

    async def list_users(
        self, filters: UserFilter, *, page: int = 1, limit: int = DEFAULT_USER_PAGE_SIZE
    ) -> Page:
        page = max(1, page)
        if limit <= 0:
            limit = DEFAULT_USER_PAGE_SIZE
        limit = min(limit, MAX_PAGE_SIZE)
        if filters.role and filters.role not in USER_ROLES:
            raise ValidationError(f"未知角色: {filters.role}")
        if filters.status and filters.status not in USER_STATUSES:
            raise ValidationError(f"未知状态: {filters.status}")
        if filters.sort_by and filters.sort_by not in USER_SORT_FIELDS:
            raise ValidationError(f"不支持的排序字段: {filters.sort_by}")
        items, total = await self._call(self.store.list_users, filters, page=page, limit=limit)
        return Page(items=items, page=page, limit=limit, total=total)

    async def user_detail(self, ctx: AuthContext, user_id: str) -> User:
        """Any account may view itself; viewing others needs a current admin role."""
        user = await self._require_user(user_id)
        if ctx.user_id == user.id:
            return user
        actor = await self._call(self.store.get_user, ctx.user_id)
        if actor is None or actor.role not in ADMIN_ROLES:
            raise ForbiddenError("权限不足")
        return user

    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str,
        display_name: Optional[str] = None,
    ) -> User:
        if role not in USER_ROLES:
            raise ValidationError(f"未知角色: {role}")
        if self.passwords is None:
            raise ServerError()
        self.passwords.check_for_user(password, username, email)
        password_hash = self.passwords.hash(password)
        return await self._call(
            self.store.create_user,
            username,
            email,
            password_hash,
            role=role,
            display_name=display_name,
        )
