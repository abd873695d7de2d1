from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from heimdall.logging import get_logger
from heimdall.service.clock import Clock, SystemClock, as_utc
from heimdall.storage.common import call_store
from heimdall.storage.models import User

logger = get_logger(__name__)


class LockWriter(Protocol):
    def lock_user(self, user_id: str, locked_until: datetime) -> None: ...


@dataclass(frozen=True)
class LockState:
    locked: bool
    until: Optional[datetime] = None

    def remaining_minutes(self, now: datetime) -> int:
        """Whole minutes left on the lock, rounded up so a live lock never reads 0."""
        if not self.locked or self.until is None:
            return 0
        return max(1, math.ceil((self.until - now).total_seconds() / 60))


class LockoutEngine:
    def __init__(
        self,
        users: LockWriter,
        *,
        max_attempts: int = 5,
        lockout_seconds: int = 1800,
        clock: Optional[Clock] = None,
        store_timeout: float = 10.0,
    ) -> None:
        self.users = users
        self.max_attempts = max_attempts
        self.lockout = timedelta(seconds=lockout_seconds)
        self.clock = clock or SystemClock()
        self.store_timeout = store_timeout

    @property
    def lockout_minutes(self) -> int:
        return int(self.lockout.total_seconds() // 60)

    def should_lock(self, count: Optional[int]) -> bool:
        return count is not None and count >= self.max_attempts

    async def apply_lock(self, user_id: str) -> datetime:
        """Set ``lock_until = now + lockout``. Re-applying just overwrites the field."""
        lock_until = self.clock.now() + self.lockout
        await call_store(
            self.users.lock_user, user_id, lock_until, timeout=self.store_timeout
        )
        logger.warning("account_locked", user_id=user_id, locked_until=lock_until.isoformat())
        return lock_until

    def lock_state(self, user: User) -> LockState:
        if user.locked_until is None:
            return LockState(locked=False)
        until = as_utc(user.locked_until)
        if until <= self.clock.now():
            return LockState(locked=False)
        return LockState(locked=True, until=until)
