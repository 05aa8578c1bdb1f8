import time
from datetime import datetime, timezone
from typing import Callable, Optional

from app.config.config import settings
from app.core.cache import StoreUnavailableError, get_store
from app.core.utils import LoggerMixin
from app.schemas.reminder_schemas import RateLimitResult


class RateLimitService(LoggerMixin):
    """
    Sliding-window rate limiting for reminder processing.

    Used globally (cron batches per window) and per recipient (messages
    per phone number per window). When the store is unreachable the
    limiter fails open.
    """

    KEY_PREFIX = "rate_limit:"
    CRON_IDENTIFIER = "cron_batch"

    def __init__(self, store, clock: Callable[[], float] = time.time):
        super().__init__()
        self.store = store
        self._clock = clock

    def _key(self, identifier: str) -> str:
        return f"{self.KEY_PREFIX}{identifier}"

    @staticmethod
    def _reset_time(now: float, window_seconds: float, oldest: Optional[float]) -> datetime:
        start = oldest if oldest is not None else now
        return datetime.fromtimestamp(start + window_seconds, tz=timezone.utc)

    async def check_limit(
        self, identifier: str, window_seconds: float, max_requests: int
    ) -> RateLimitResult:
        """
        Check and consume one request for ``identifier``.

        Returns allowed/remaining/reset_time; the request is recorded only
        when allowed, atomically with the count.
        """
        now = self._clock()
        try:
            allowed, count, oldest = await self.store.sliding_window_hit(
                self._key(identifier), now, window_seconds, max_requests
            )
        except StoreUnavailableError as e:
            self.log_error(
                {
                    "event": "rate_limit_check_error",
                    "identifier": identifier,
                    "error": str(e),
                    "policy": "fail_open",
                }
            )
            return RateLimitResult(
                allowed=True,
                remaining=max(0, max_requests - 1),
                reset_time=self._reset_time(now, window_seconds, None),
                total_requests=1,
            )

        total = count + 1 if allowed else count
        result = RateLimitResult(
            allowed=allowed,
            remaining=max(0, max_requests - total),
            reset_time=self._reset_time(now, window_seconds, oldest),
            total_requests=total,
        )

        self.log_debug(
            {
                "event": "rate_limit_checked",
                "identifier": identifier,
                "allowed": allowed,
                "total_requests": total,
                "max_requests": max_requests,
                "window_seconds": window_seconds,
            }
        )
        return result

    async def get_status(
        self, identifier: str, window_seconds: float, max_requests: int
    ) -> RateLimitResult:
        """Current window usage without consuming a request."""
        now = self._clock()
        try:
            count, oldest = await self.store.sliding_window_count(
                self._key(identifier), now, window_seconds
            )
        except StoreUnavailableError as e:
            self.log_error(
                {"event": "rate_limit_status_error", "identifier": identifier, "error": str(e)}
            )
            return RateLimitResult(
                allowed=True,
                remaining=max_requests,
                reset_time=self._reset_time(now, window_seconds, None),
                total_requests=0,
            )

        return RateLimitResult(
            allowed=count < max_requests,
            remaining=max(0, max_requests - count),
            reset_time=self._reset_time(now, window_seconds, oldest),
            total_requests=count,
        )

    async def reset(self, identifier: str) -> None:
        try:
            await self.store.delete(self._key(identifier))
            self.log_info({"event": "rate_limit_reset", "identifier": identifier})
        except StoreUnavailableError as e:
            self.log_error(
                {"event": "rate_limit_reset_error", "identifier": identifier, "error": str(e)}
            )

    async def check_cron_limit(self) -> RateLimitResult:
        return await self.check_limit(
            self.CRON_IDENTIFIER,
            window_seconds=settings.CRON_RATE_LIMIT_WINDOW_SECONDS,
            max_requests=settings.CRON_RATE_LIMIT_MAX_REQUESTS,
        )

    async def get_cron_status(self) -> RateLimitResult:
        return await self.get_status(
            self.CRON_IDENTIFIER,
            window_seconds=settings.CRON_RATE_LIMIT_WINDOW_SECONDS,
            max_requests=settings.CRON_RATE_LIMIT_MAX_REQUESTS,
        )

    async def check_recipient_limit(self, phone_number: str) -> RateLimitResult:
        return await self.check_limit(
            f"recipient:{phone_number}",
            window_seconds=settings.RECIPIENT_RATE_LIMIT_WINDOW_SECONDS,
            max_requests=settings.RECIPIENT_RATE_LIMIT_MAX_REQUESTS,
        )


async def build_rate_limit_service() -> RateLimitService:
    return RateLimitService(await get_store())
