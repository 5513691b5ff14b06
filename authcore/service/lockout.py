from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.persistence import StoreGateway
from authcore.storage.models import User

logger = get_logger(__name__)


class LockoutGuard:
    """Per-account failed-attempt counter with a temporary lock.

    Reaching ``threshold`` consecutive failures sets ``locked_until`` and
    resets the counter to 0 in the same atomic store update. A lock whose
    expiry has passed no longer blocks; the counter is only cleared again
    by a successful login or an explicit unlock.
    """

    def __init__(
        self,
        db: StoreGateway,
        *,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(minutes=30),
        clock: Clock = utc_now,
    ) -> None:
        self.db = db
        self.threshold = threshold
        self.lock_duration = lock_duration
        self._clock = clock

    def is_locked(self, user: User) -> bool:
        return user.is_locked(self._clock())

    def locked_until(self, user: User) -> Optional[datetime]:
        return user.locked_until if self.is_locked(user) else None

    async def record_failure(self, user_id: str) -> int:
        lock_until = self._clock() + self.lock_duration
        attempts = await self.db.call(
            "register_failed_attempt", user_id, self.threshold, lock_until
        )
        if attempts >= self.threshold:
            logger.warning(
                "account_locked",
                user_id=user_id,
                attempts=attempts,
                locked_until=lock_until.isoformat(),
            )
        else:
            logger.info("login_failure_recorded", user_id=user_id, attempts=attempts)
        return attempts

    def crossed_threshold(self, attempts: int) -> bool:
        return attempts >= self.threshold

    async def record_success(self, user_id: str) -> None:
        await self.db.call("record_successful_login", user_id, self._clock())

    async def lock(self, user_id: str, duration: Optional[timedelta] = None) -> datetime:
        until = self._clock() + (duration or self.lock_duration)
        await self.db.call("set_lock", user_id, until)
        logger.warning("account_locked_manually", user_id=user_id, locked_until=until.isoformat())
        return until

    async def unlock(self, user_id: str) -> None:
        await self.db.call("set_lock", user_id, None)
        logger.info("account_unlocked", user_id=user_id)
