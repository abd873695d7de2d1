from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from heimdall.logging import get_logger

logger = get_logger(__name__)


class AttemptStore(Protocol):
    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...


class AttemptTracker:
    """Counts failed logins per (username, client IP) in the shared key-value store.

    The window is fixed from the first failure. Every store error is swallowed
    and logged: an unobservable counter must never lock an account, so callers
    get ``None`` and carry on.
    """

    def __init__(
        self,
        store: AttemptStore,
        *,
        prefix: str = "login_attempts:",
        window_seconds: int = 1800,
        timeout: float = 2.0,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.window_seconds = window_seconds
        self.timeout = timeout

    def key(self, username: str, client_ip: str) -> str:
        return f"{self.prefix}{username}:{client_ip}"

    async def observe_failure(self, username: str, client_ip: str) -> Optional[int]:
        key = self.key(username, client_ip)
        try:
            return await asyncio.wait_for(
                self.store.incr_with_ttl(key, self.window_seconds), self.timeout
            )
        except Exception as exc:
            logger.warning("attempt_tracker_degraded", op="observe", key=key, error=str(exc))
            return None

    async def read(self, username: str, client_ip: str) -> Optional[int]:
        """Current count; 0 when no key exists, ``None`` when the store is unavailable."""
        key = self.key(username, client_ip)
        try:
            value = await asyncio.wait_for(self.store.get(key), self.timeout)
        except Exception as exc:
            logger.warning("attempt_tracker_degraded", op="read", key=key, error=str(exc))
            return None
        if value is None:
            return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("attempt_tracker_bad_value", key=key, value=value)
            return None

    async def clear(self, username: str, client_ip: str) -> None:
        key = self.key(username, client_ip)
        try:
            await asyncio.wait_for(self.store.delete(key), self.timeout)
        except Exception as exc:
            logger.warning("attempt_tracker_degraded", op="clear", key=key, error=str(exc))

    async def clear_all(self, *identifiers: str) -> int:
        """Drop the counters for every client IP under each login identifier."""
        removed = 0
        for identifier in filter(None, identifiers):
            prefix = f"{self.prefix}{identifier}:"
            try:
                removed += await asyncio.wait_for(
                    self.store.delete_prefix(prefix), self.timeout
                )
            except Exception as exc:
                logger.warning(
                    "attempt_tracker_degraded", op="clear_all", prefix=prefix, error=str(exc)
                )
        return removed
