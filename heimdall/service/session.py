from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from heimdall.logging import get_logger
from heimdall.service.attempts import AttemptTracker
from heimdall.service.audit import AuditRecorder
from heimdall.service.clock import Clock, SystemClock, format_rfc3339
from heimdall.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AuthenticationError,
    CredentialError,
    InvalidTokenError,
    ServerError,
    TokenExpiredError,
    ValidationError,
)
from heimdall.service.lockout import LockoutEngine
from heimdall.service.passwords import PasswordHashError, PasswordPolicy
from heimdall.service.tokens import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
    Claims,
    TokenManager,
    TokenPair,
    parse_auth_header,
    revocation_key,
    session_key,
)
from heimdall.storage.common import call_store
from heimdall.storage.models import (
    FAIL_REASON_BAD_PASSWORD,
    FAIL_REASON_DISABLED,
    FAIL_REASON_LOCKED,
    FAIL_REASON_TOO_MANY_ATTEMPTS,
    FAIL_REASON_USER_NOT_FOUND,
    LOGIN_FAILED,
    LOGIN_METHOD_EMAIL,
    LOGIN_METHOD_USERNAME,
    LOGIN_SUCCESS,
    LoginLog,
    User,
)

logger = get_logger(__name__)

REVOKED_SENTINEL = "1"


class UserReader(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


class UserWriter(Protocol):
    def update_login_info(self, user_id: str, login_at: datetime, ip: str) -> None: ...

    def increment_login_fail_count(self, user_id: str) -> int: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...


class RevocationStore(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to an authenticated request by the authorization gate."""

    user_id: str
    username: str
    role: str
    token_id: str
    client_ip: str
    user_agent: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    user: User
    expires_in: int


class SessionGateway:
    """Runs the login, logout and refresh protocols and the request auth gate."""

    def __init__(
        self,
        *,
        users: UserReader,
        user_writer: UserWriter,
        kv: RevocationStore,
        passwords: PasswordPolicy,
        tokens: TokenManager,
        tracker: AttemptTracker,
        lockout: LockoutEngine,
        audit: AuditRecorder,
        clock: Optional[Clock] = None,
        kv_timeout: float = 2.0,
        store_timeout: float = 10.0,
        refresh_rotation: bool = False,
    ) -> None:
        self.users = users
        self.user_writer = user_writer
        self.kv = kv
        self.passwords = passwords
        self.tokens = tokens
        self.tracker = tracker
        self.lockout = lockout
        self.audit = audit
        self.clock = clock or SystemClock()
        self.kv_timeout = kv_timeout
        self.store_timeout = store_timeout
        self.refresh_rotation = refresh_rotation

    # -- helpers ---------------------------------------------------------

    async def _fetch_user(self, identifier: str) -> Optional[User]:
        lookup = self.users.get_user_by_email if "@" in identifier else self.users.get_user_by_username
        try:
            return await call_store(lookup, identifier, timeout=self.store_timeout)
        except Exception as exc:
            logger.error("login_user_fetch_failed", username=identifier, error=str(exc))
            raise ServerError() from exc

    async def _record_failure(
        self,
        username: str,
        reason: str,
        client_ip: str,
        user_agent: str,
        *,
        user: Optional[User] = None,
        method: str = LOGIN_METHOD_USERNAME,
    ) -> None:
        await self.audit.record(
            LoginLog(
                username=username,
                user_id=user.id if user else None,
                ip_address=client_ip,
                user_agent=user_agent,
                status=LOGIN_FAILED,
                fail_reason=reason,
                login_method=method,
                login_at=self.clock.now(),
            )
        )

    async def _kv(self, awaitable):
        return await asyncio.wait_for(awaitable, self.kv_timeout)

    async def _remember_session(
        self, user_id: str, token_id: str, client_ip: str, user_agent: str
    ) -> None:
        value = json.dumps(
            {"ip": client_ip, "userAgent": user_agent, "loginAt": format_rfc3339(self.clock.now())}
        )
        try:
            await self._kv(
                self.kv.set(
                    session_key(user_id, token_id),
                    value,
                    int(self.tokens.access_ttl.total_seconds()),
                )
            )
        except Exception as exc:
            logger.warning("session_key_write_failed", user_id=user_id, error=str(exc))

    async def _revoke(self, claims: Claims) -> bool:
        """Write the revocation entry for ``claims``; False if it had already expired."""
        try:
            remaining = self.tokens.remaining_lifetime(claims)
        except TokenExpiredError:
            return False
        ttl = max(1, math.ceil(remaining.total_seconds()))
        await self._kv(self.kv.set(revocation_key(claims.jti), REVOKED_SENTINEL, ttl))
        logger.info("token_revoked", jti=claims.jti, token_type=claims.token_type, ttl=ttl)
        return True

    # -- login -----------------------------------------------------------

    async def login(
        self, username: str, password: str, client_ip: str, user_agent: str = ""
    ) -> LoginResult:
        username = (username or "").strip()
        if not username or not password:
            raise ValidationError("用户名和密码不能为空")
        method = LOGIN_METHOD_EMAIL if "@" in username else LOGIN_METHOD_USERNAME

        count = await self.tracker.read(username, client_ip)
        if self.lockout.should_lock(count):
            logger.warning("login_blocked_by_attempts", username=username, client_ip=client_ip)
            await self._record_failure(
                username, FAIL_REASON_TOO_MANY_ATTEMPTS, client_ip, user_agent, method=method
            )
            raise AccountLockedError(
                f"登录失败次数过多，请{self.lockout.lockout_minutes}分钟后再试"
            )

        user = await self._fetch_user(username)
        if user is None:
            await self._record_failure(
                username, FAIL_REASON_USER_NOT_FOUND, client_ip, user_agent, method=method
            )
            await self.tracker.observe_failure(username, client_ip)
            logger.info("login_failed", username=username, reason="user_not_found")
            raise CredentialError()

        if not user.is_active():
            await self._record_failure(
                username, FAIL_REASON_DISABLED, client_ip, user_agent, user=user, method=method
            )
            raise AccountDisabledError()

        now = self.clock.now()
        state = self.lockout.lock_state(user)
        if state.locked:
            await self._record_failure(
                username, FAIL_REASON_LOCKED, client_ip, user_agent, user=user, method=method
            )
            raise AccountLockedError(
                f"账户已被锁定，还需等待{state.remaining_minutes(now)}分钟"
            )

        try:
            verified = await asyncio.to_thread(self.passwords.verify, password, user.password_hash)
        except PasswordHashError as exc:
            logger.error("password_hash_unreadable", user_id=user.id, kind=exc.kind)
            raise ServerError() from exc

        if not verified:
            await self._reject_bad_password(user, username, client_ip, user_agent, method)

        try:
            tokens = self.tokens.issue(user.id, user.username, user.role)
        except Exception as exc:
            logger.error("token_issue_failed", user_id=user.id, error=str(exc))
            raise ServerError() from exc

        await self.tracker.clear(username, client_ip)

        try:
            await call_store(
                self.user_writer.update_login_info,
                user.id,
                now,
                client_ip,
                timeout=self.store_timeout,
            )
        except Exception as exc:
            logger.warning("login_info_update_failed", user_id=user.id, error=str(exc))
        await self._maybe_upgrade_hash(user, password)

        await self.audit.record(
            LoginLog(
                username=user.username,
                user_id=user.id,
                ip_address=client_ip,
                user_agent=user_agent,
                status=LOGIN_SUCCESS,
                session_id=tokens.access_jti,
                login_method=method,
                login_at=now,
            )
        )
        await self._remember_session(user.id, tokens.access_jti, client_ip, user_agent)
        logger.info("login_succeeded", user_id=user.id, client_ip=client_ip)

        expires_in = max(0, int((tokens.expires_at - now).total_seconds()))
        return LoginResult(tokens=tokens, user=user, expires_in=expires_in)

    async def _reject_bad_password(
        self, user: User, username: str, client_ip: str, user_agent: str, method: str
    ) -> None:
        await self._record_failure(
            username, FAIL_REASON_BAD_PASSWORD, client_ip, user_agent, user=user, method=method
        )
        # Tracker first: a store outage after this point must not lock silently.
        count = await self.tracker.observe_failure(username, client_ip)
        try:
            await call_store(
                self.user_writer.increment_login_fail_count, user.id, timeout=self.store_timeout
            )
        except Exception as exc:
            logger.warning("login_fail_count_update_failed", user_id=user.id, error=str(exc))

        logger.info("login_failed", username=username, reason="bad_password", attempts=count)
        if self.lockout.should_lock(count):
            try:
                await self.lockout.apply_lock(user.id)
            except Exception as exc:
                logger.error("account_lock_write_failed", user_id=user.id, error=str(exc))
            raise AccountLockedError(
                f"登录失败次数过多，账户已被锁定{self.lockout.lockout_minutes}分钟"
            )
        raise CredentialError()

    async def _maybe_upgrade_hash(self, user: User, password: str) -> None:
        if not self.passwords.needs_rehash(user.password_hash):
            return
        try:
            new_hash = await asyncio.to_thread(self.passwords.hash, password)
            await call_store(
                self.user_writer.update_password_hash,
                user.id,
                new_hash,
                timeout=self.store_timeout,
            )
            logger.info("password_hash_upgraded", user_id=user.id)
        except Exception as exc:
            # Rehash also re-runs the strength policy; a legacy password that
            # no longer passes simply keeps its old hash.
            logger.warning("password_hash_upgrade_skipped", user_id=user.id, error=str(exc))

    # -- authorization gate -------------------------------------------------

    async def authorize(
        self,
        authorization: Optional[str],
        *,
        client_ip: str = "",
        user_agent: str = "",
        allow_expired: bool = False,
    ) -> AuthContext:
        token = parse_auth_header(authorization)
        claims = self.tokens.validate(
            token, token_type=TOKEN_TYPE_ACCESS, allow_expired=allow_expired
        )
        try:
            revoked = await self._kv(self.kv.exists(revocation_key(claims.jti)))
        except Exception as exc:
            # Fail open so a key-value outage does not lock every admin out.
            logger.warning("revocation_check_failed", jti=claims.jti, error=str(exc))
            revoked = False
        if revoked:
            logger.info("revoked_token_presented", jti=claims.jti)
            raise InvalidTokenError("revoked", "token has been revoked")
        return AuthContext(
            user_id=claims.sub,
            username=claims.username,
            role=claims.role,
            token_id=claims.jti,
            client_ip=client_ip,
            user_agent=user_agent,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )

    # -- logout ----------------------------------------------------------

    async def logout(self, ctx: Optional[AuthContext], refresh_token: Optional[str] = None) -> None:
        if ctx is None or not ctx.user_id:
            raise AuthenticationError("用户未认证")

        now = self.clock.now()
        access_claims = Claims(
            sub=ctx.user_id,
            username=ctx.username,
            role=ctx.role,
            jti=ctx.token_id,
            iss=self.tokens.issuer,
            iat=int(ctx.issued_at.timestamp()),
            nbf=int(ctx.issued_at.timestamp()),
            exp=int(ctx.expires_at.timestamp()),
        )
        try:
            revoked = await self._revoke(access_claims)
        except Exception as exc:
            logger.error("access_token_revoke_failed", jti=ctx.token_id, error=str(exc))
            raise ServerError() from exc
        if not revoked:
            logger.info("logout_token_already_expired", jti=ctx.token_id)

        if refresh_token:
            await self._revoke_refresh(ctx, refresh_token)

        try:
            await self._kv(self.kv.delete(session_key(ctx.user_id, ctx.token_id)))
        except Exception as exc:
            logger.warning("session_key_delete_failed", user_id=ctx.user_id, error=str(exc))

        log = LoginLog(
            username=ctx.username,
            user_id=ctx.user_id,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
            status=LOGIN_SUCCESS,
            session_id=ctx.token_id,
            login_method=LOGIN_METHOD_USERNAME,
            login_at=now,
        )
        log.mark_logout(now, started_at=ctx.issued_at)
        await self.audit.record(log)
        logger.info("logout_succeeded", user_id=ctx.user_id, jti=ctx.token_id)

    async def _revoke_refresh(self, ctx: AuthContext, refresh_token: str) -> None:
        try:
            claims = self.tokens.validate(
                refresh_token, token_type=TOKEN_TYPE_REFRESH, allow_expired=True
            )
            if claims.sub != ctx.user_id:
                logger.warning("logout_refresh_owner_mismatch", user_id=ctx.user_id)
                return
            await self._revoke(claims)
        except Exception as exc:
            logger.warning("refresh_token_revoke_failed", user_id=ctx.user_id, error=str(exc))

    # -- refresh ---------------------------------------------------------

    async def refresh(
        self, refresh_token: str, *, client_ip: str = "", user_agent: str = ""
    ) -> TokenPair:
        if not refresh_token:
            raise ValidationError("refreshToken不能为空")
        claims = self.tokens.validate(refresh_token, token_type=TOKEN_TYPE_REFRESH)
        try:
            revoked = await self._kv(self.kv.exists(revocation_key(claims.jti)))
        except Exception as exc:
            # An unverifiable refresh token is never honoured; the client may retry.
            logger.error("refresh_revocation_check_failed", jti=claims.jti, error=str(exc))
            raise ServerError() from exc
        if revoked:
            raise InvalidTokenError("revoked", "refresh token has been revoked")

        try:
            tokens = self.tokens.issue(claims.sub, claims.username, claims.role)
        except Exception as exc:
            logger.error("token_issue_failed", user_id=claims.sub, error=str(exc))
            raise ServerError() from exc

        if self.refresh_rotation:
            try:
                await self._revoke(claims)
            except Exception as exc:
                logger.warning("refresh_rotation_revoke_failed", jti=claims.jti, error=str(exc))
        await self._remember_session(claims.sub, tokens.access_jti, client_ip, user_agent)
        logger.info("tokens_refreshed", user_id=claims.sub, previous_jti=claims.jti)
        return tokens


__all__ = [
    "AuthContext",
    "LoginResult",
    "RevocationStore",
    "SessionGateway",
    "UserReader",
    "UserWriter",
]
