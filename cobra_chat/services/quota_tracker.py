"""
Per-user chat quota: at most ``limit`` generated answers per rolling window.

The window is lazy: it only advances when someone reads the record, and each
user's window starts from their own first action after expiry. ``increment``
is a read followed by a write, so two concurrent increments can both read
``count=N`` and both write ``N+1``, under-counting usage by one.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from cobra_chat.services.persistence import KeyValueStore
from cobra_chat.utils.clock import parse_timestamp, utcnow
from cobra_chat.utils.errors import QuotaExceededError, ValidationError
from cobra_chat.utils.logger import logger
from cobra_chat.utils.security import mask_user_id

QUOTA_ROOT = "chatLimits"


@dataclass(frozen=True)
class QuotaStatus:
    count: int
    reset_at: datetime
    allowed: bool
    remaining: int
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "reset_at": self.reset_at.isoformat(),
            "allowed": self.allowed,
            "remaining": self.remaining,
            "degraded": self.degraded,
        }


def format_time_until_reset(reset_at: datetime, now: Optional[datetime] = None) -> str:
    """Human countdown such as "2h 5m", "12m" or "Soon"."""
    diff = reset_at - (now or utcnow())
    if diff.total_seconds() <= 0:
        return "Soon"

    total_minutes = int(diff.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class QuotaTracker:
    def __init__(
        self,
        db: KeyValueStore,
        limit: int = 5,
        window: timedelta = timedelta(hours=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.limit = limit
        self.window = window
        self.clock = clock

    def _path(self, user_id: str) -> str:
        if not user_id:
            raise ValidationError("User ID is required")
        return f"{QUOTA_ROOT}/{user_id}"

    def _status(self, count: int, reset_at: datetime, degraded: bool = False) -> QuotaStatus:
        return QuotaStatus(
            count=count,
            reset_at=reset_at,
            allowed=count < self.limit,
            remaining=max(0, self.limit - count),
            degraded=degraded,
        )

    async def _start_window(self, user_id: str, now: datetime) -> QuotaStatus:
        reset_at = now + self.window
        await self.db.set(self._path(user_id), {
            "count": 0,
            "resetAt": reset_at.isoformat(),
            "lastUpdated": now.isoformat(),
        })
        return self._status(0, reset_at)

    async def check(self, user_id: str) -> QuotaStatus:
        """Current usage; starts a fresh window when none exists or it has expired.

        If the store is unreachable the check fails open (``degraded=True``).
        """
        path = self._path(user_id)
        now = self.clock()
        try:
            data = await self.db.get(path) or {}
            try:
                reset_at = parse_timestamp(data.get("resetAt"))
            except (TypeError, ValueError):
                # Unreadable record: start over as if none existed
                logger.warning(f"Invalid resetAt for {mask_user_id(user_id)}, starting a new window")
                reset_at = None

            if reset_at is None or now >= reset_at:
                return await self._start_window(user_id, now)

            return self._status(max(0, int(data.get("count") or 0)), reset_at)
        except Exception as e:
            logger.error(f"Error getting chat limit data for {mask_user_id(user_id)}: {str(e)}")
            return self._status(0, now + self.window, degraded=True)

    async def increment(self, user_id: str) -> QuotaStatus:
        """Consumes one unit. Raises QuotaExceededError when nothing is left."""
        current = await self.check(user_id)
        if not current.allowed:
            raise QuotaExceededError(current)

        new_count = current.count + 1
        await self.db.update(self._path(user_id), {
            "count": new_count,
            "lastUpdated": self.clock().isoformat(),
        })
        logger.info(f"Chat count for {mask_user_id(user_id)}: {new_count}/{self.limit}")
        return self._status(new_count, current.reset_at)

    async def reset(self, user_id: str) -> QuotaStatus:
        """Admin reset: zero count and a fresh window starting now."""
        status = await self._start_window(user_id, self.clock())
        logger.info(f"Chat count reset for {mask_user_id(user_id)}")
        return status

    async def all_records(self) -> Dict[str, Any]:
        return await self.db.get(QUOTA_ROOT) or {}

