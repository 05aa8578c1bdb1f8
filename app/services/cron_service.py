"""
Cron Service

One invocation of the externally triggered reminder batch: rate limit,
global lock, select due reminders, dispatch them, deliver due followups
and summarise. Overlapping invocations are safe; only one holds the
batch lock at a time.
"""
import secrets
import time
from typing import Callable, Optional

from app.config.config import settings
from app.core.utils import LoggerMixin, utcnow
from app.schemas.reminder_schemas import (
    CronRunResponse,
    CronStatusResponse,
    FollowupSummary,
    RateLimitResult,
    ReminderSummary,
)
from app.services.dispatch_service import DispatchService
from app.services.followup_service import FollowupService
from app.services.lock_service import DistributedLockService
from app.services.rate_limit_service import RateLimitService
from app.services.reminder_selector import ReminderSelector


class CronRateLimitedError(Exception):
    """Too many cron invocations in the current window."""

    def __init__(self, result: RateLimitResult):
        super().__init__("Rate limit exceeded")
        self.result = result


class CronAlreadyRunningError(Exception):
    """Another invocation holds the batch lock."""


def generate_instance_id() -> str:
    """Trace id for one invocation, e.g. ``cron_1718000000000_9f2c1a``."""
    return f"cron_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class CronService(LoggerMixin):
    def __init__(
        self,
        lock_service: DistributedLockService,
        rate_limiter: RateLimitService,
        selector: ReminderSelector,
        dispatcher: DispatchService,
        followup_service: Optional[FollowupService] = None,
        clock: Callable = utcnow,
        lock_ttl: Optional[float] = None,
        send_timeout: Optional[float] = None,
    ):
        super().__init__()
        self.lock_service = lock_service
        self.rate_limiter = rate_limiter
        self.selector = selector
        self.dispatcher = dispatcher
        self.followup_service = followup_service
        self._clock = clock
        self.lock_ttl = lock_ttl or settings.CRON_LOCK_TTL_SECONDS
        self.send_timeout = (
            settings.WHATSAPP_TIMEOUT_SECONDS if send_timeout is None else send_timeout
        )

    async def run(self, instance_id: Optional[str] = None) -> CronRunResponse:
        """
        Run one batch.

        Raises:
            CronRateLimitedError: the global rate limit rejected this call
            CronAlreadyRunningError: another invocation holds the batch lock
        """
        instance_id = instance_id or generate_instance_id()
        started = time.monotonic()

        limit = await self.rate_limiter.check_cron_limit()
        if not limit.allowed:
            self.log_warning(
                {
                    "event": "cron_rate_limited",
                    "instance_id": instance_id,
                    "reset_time": limit.reset_time.isoformat(),
                }
            )
            raise CronRateLimitedError(limit)

        self.log_info({"event": "cron_started", "instance_id": instance_id})

        response = await self.lock_service.with_lock(
            settings.CRON_LOCK_KEY,
            lambda: self._process_batch(instance_id, started),
            ttl=self.lock_ttl,
            max_retries=0,
        )
        if response is None:
            self.log_warning({"event": "cron_already_running", "instance_id": instance_id})
            raise CronAlreadyRunningError(instance_id)

        self.log_info(
            {
                "event": "cron_completed",
                "instance_id": instance_id,
                "duration_ms": response.duration_ms,
                "found": response.reminders.found,
                "successful": response.reminders.successful,
                "failed": response.reminders.failed,
                "skipped": response.reminders.skipped,
                "followups_sent": response.followups.sent,
            }
        )
        return response

    async def _process_batch(self, instance_id: str, started: float) -> CronRunResponse:
        now = self._clock()
        # No send may start once a full transport timeout would outlive the lock
        deadline = started + self.lock_ttl - self.send_timeout

        reminders = await self.selector.select_due(now)
        batch = await self.dispatcher.dispatch_batch(reminders, deadline=deadline)

        followups = FollowupSummary(processed=0, sent=0, failed=0)
        if self.followup_service is not None and settings.FOLLOWUPS_ENABLED:
            results = await self.followup_service.process_pending_followups(
                self.dispatcher, now, deadline=deadline
            )
            followups = FollowupSummary(
                processed=len(results),
                sent=sum(1 for r in results if r.status == "SENT"),
                failed=sum(1 for r in results if not r.processed),
            )

        return CronRunResponse(
            success=True,
            timestamp=now,
            instance_id=instance_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            reminders=ReminderSummary(
                found=len(reminders),
                processed=batch.processed,
                successful=batch.successful,
                failed=batch.failed,
                skipped=batch.skipped,
            ),
            errors=batch.errors,
            followups=followups,
        )

    async def status(self) -> CronStatusResponse:
        """Batch lock state and global rate-limit usage, consuming nothing."""
        ttl = await self.lock_service.get_lock_ttl(settings.CRON_LOCK_KEY)
        return CronStatusResponse(
            locked=ttl > 0,
            lock_ttl_seconds=ttl,
            rate_limit=await self.rate_limiter.get_cron_status(),
        )
