"""
Reminder Dispatcher

Sends due reminders (and followups) exactly once. Every item goes through
the same routine:

1. take the per-item distributed lock (short TTL, fail fast),
2. re-read the item and skip it unless it is still PENDING,
3. render and send the message through the transport,
4. record SENT/FAILED with an atomic conditional update in a transaction.

Errors are contained per item so one bad record never stops a batch.
"""
import time
import uuid
from typing import Callable, List, Optional

from app.config.config import settings
from app.core.utils import LoggerMixin, mask_phone, utcnow
from app.db.session import AsyncSessionLocal
from app.models.patient_model import Patient
from app.models.reminder_model import (
    FollowupStatus,
    Reminder,
    ReminderFollowup,
    ReminderStatus,
)
from app.repositories.reminder_repo import FollowupRepository, ReminderRepository
from app.schemas.reminder_schemas import BatchResult, DispatchResult, SendResult
from app.services.message_templates import (
    render_followup_message,
    render_reminder_message,
)


class DispatchTarget:
    """How to load, render and record one kind of dispatchable item."""

    entity = "item"
    lock_prefix = "item_processing"

    async def load(self, db, item_id: uuid.UUID):
        raise NotImplementedError

    def is_pending(self, item) -> bool:
        raise NotImplementedError

    def patient(self, item) -> Patient:
        return item.patient

    def render(self, item) -> str:
        raise NotImplementedError

    async def record(self, db, item, message: str, result: SendResult, now) -> Optional[str]:
        """Persist the send outcome; return the new status, or None if not PENDING anymore."""
        raise NotImplementedError


class ReminderTarget(DispatchTarget):
    entity = "reminder"
    lock_prefix = "reminder_processing"

    def __init__(self, followup_service=None):
        self.followup_service = followup_service

    async def load(self, db, item_id):
        return await ReminderRepository(db).get_reminder_by_id(item_id)

    def is_pending(self, item: Reminder) -> bool:
        return item.status == ReminderStatus.PENDING.value and item.sent_at is None

    def render(self, item: Reminder) -> str:
        return render_reminder_message(
            reminder_type=item.reminder_type,
            patient_name=item.patient.name,
            message=item.message,
            title=item.title,
            description=item.description,
        )

    async def record(self, db, item: Reminder, message, result, now):
        status = ReminderStatus.SENT if result.success else ReminderStatus.FAILED
        updated = await ReminderRepository(db).mark_outcome(
            item.id,
            status=status,
            sent_at=now,
            message_id=result.message_id,
            error_message=None if result.success else result.error,
        )
        if not updated:
            return None

        if result.success and self.followup_service is not None:
            await self.followup_service.schedule_followups(db, item, now)

        return status.value


class FollowupTarget(DispatchTarget):
    entity = "followup"
    lock_prefix = "followup_processing"

    async def load(self, db, item_id):
        return await FollowupRepository(db).get_followup_by_id(item_id)

    def is_pending(self, item: ReminderFollowup) -> bool:
        return item.status == FollowupStatus.PENDING.value

    def render(self, item: ReminderFollowup) -> str:
        reminder = item.reminder
        return render_followup_message(
            followup_type=item.followup_type,
            reminder_type=reminder.reminder_type if reminder else None,
            patient_name=item.patient.name,
            reminder_title=reminder.title if reminder else None,
        )

    async def record(self, db, item: ReminderFollowup, message, result, now):
        status = FollowupStatus.SENT if result.success else FollowupStatus.FAILED
        updated = await FollowupRepository(db).mark_outcome(
            item.id,
            status=status,
            sent_at=now,
            message=message,
            message_id=result.message_id,
            error=None if result.success else result.error,
        )
        return status.value if updated else None


class DispatchService(LoggerMixin):
    """Per-item locked dispatch of reminders and followups."""

    def __init__(
        self,
        lock_service,
        transport,
        session_factory=AsyncSessionLocal,
        rate_limiter=None,
        followup_service=None,
        clock: Callable = utcnow,
        lock_ttl: Optional[float] = None,
        lock_max_retries: Optional[int] = None,
        lock_retry_delay: Optional[float] = None,
        max_reported_errors: Optional[int] = None,
    ):
        super().__init__()
        self.lock_service = lock_service
        self.transport = transport
        self.rate_limiter = rate_limiter
        self._session_factory = session_factory
        self._clock = clock
        self.lock_ttl = lock_ttl or settings.REMINDER_LOCK_TTL_SECONDS
        self.lock_max_retries = (
            settings.REMINDER_LOCK_MAX_RETRIES if lock_max_retries is None else lock_max_retries
        )
        self.lock_retry_delay = (
            settings.LOCK_RETRY_DELAY_SECONDS if lock_retry_delay is None else lock_retry_delay
        )
        self.max_reported_errors = max_reported_errors or settings.MAX_REPORTED_ERRORS

        self.reminder_target = ReminderTarget(
            followup_service if settings.FOLLOWUPS_ENABLED else None
        )
        self.followup_target = FollowupTarget()

    async def dispatch_item(self, target: DispatchTarget, item_id: uuid.UUID) -> DispatchResult:
        """Lock, re-check, send and record one item. Never raises."""
        lock_key = f"{target.lock_prefix}:{item_id}"

        try:
            result = await self.lock_service.with_lock(
                lock_key,
                lambda: self._process(target, item_id),
                ttl=self.lock_ttl,
                max_retries=self.lock_max_retries,
                retry_delay=self.lock_retry_delay,
            )
        except Exception as e:
            self.log_error(
                {
                    "event": f"{target.entity}_dispatch_error",
                    f"{target.entity}_id": str(item_id),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            return DispatchResult(
                item_id=str(item_id),
                success=False,
                error=f"Failed to process {target.entity} {item_id}: {e}",
            )

        if result is None:
            self.log_warning(
                {
                    "event": "processing_lock_not_acquired",
                    "entity": target.entity,
                    f"{target.entity}_id": str(item_id),
                }
            )
            return DispatchResult(
                item_id=str(item_id),
                success=False,
                error=f"Could not acquire processing lock for {target.entity} {item_id}",
            )

        return result

    async def _process(self, target: DispatchTarget, item_id: uuid.UUID) -> DispatchResult:
        async with self._session_factory() as db:
            item = await target.load(db, item_id)

        if item is None or not target.is_pending(item):
            self.log_info(
                {
                    "event": f"{target.entity}_already_processed",
                    f"{target.entity}_id": str(item_id),
                    "status": getattr(item, "status", None),
                }
            )
            return DispatchResult(item_id=str(item_id), success=True, skipped=True)

        patient = target.patient(item)
        if not patient.is_eligible:
            self.log_info(
                {
                    "event": f"{target.entity}_recipient_not_eligible",
                    f"{target.entity}_id": str(item_id),
                    "patient_id": str(patient.id),
                }
            )
            return DispatchResult(item_id=str(item_id), success=True, skipped=True)

        if self.rate_limiter is not None and settings.RECIPIENT_RATE_LIMIT_ENABLED:
            limit = await self.rate_limiter.check_recipient_limit(patient.phone_number)
            if not limit.allowed:
                self.log_warning(
                    {
                        "event": "recipient_rate_limited",
                        f"{target.entity}_id": str(item_id),
                        "patient_id": str(patient.id),
                        "reset_time": limit.reset_time.isoformat(),
                    }
                )
                return DispatchResult(
                    item_id=str(item_id),
                    success=False,
                    error=f"Recipient rate limit exceeded for {target.entity} {item_id}",
                )

        message = target.render(item)
        send_result = await self.transport.send(patient.phone_number, message)
        now = self._clock()

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    new_status = await target.record(db, item, message, send_result, now)
        except Exception:
            payload = {
                "event": f"{target.entity}_persist_failed",
                f"{target.entity}_id": str(item_id),
                "patient_id": str(patient.id),
                "send_success": send_result.success,
                "message_id": send_result.message_id,
            }
            if send_result.success:
                # Delivered but still PENDING: the next run sends it again
                self.log_critical(
                    {**payload, "event": f"{target.entity}_sent_but_not_recorded"},
                    exc_info=True,
                )
            else:
                self.log_error(payload, exc_info=True)
            raise

        if new_status is None:
            self.log_error(
                {
                    "event": f"{target.entity}_state_changed_during_dispatch",
                    f"{target.entity}_id": str(item_id),
                    "patient_id": str(patient.id),
                }
            )
            return DispatchResult(
                item_id=str(item_id),
                success=False,
                message_id=send_result.message_id,
                error=f"{target.entity.capitalize()} {item_id} changed state during dispatch",
            )

        log_payload = {
            "event": f"{target.entity}_dispatched",
            f"{target.entity}_id": str(item_id),
            "patient_id": str(patient.id),
            "to": mask_phone(patient.phone_number),
            "status": new_status,
            "message_id": send_result.message_id,
        }
        if send_result.success:
            self.log_info(log_payload)
        else:
            self.log_warning({**log_payload, "error": send_result.error})

        return DispatchResult(
            item_id=str(item_id),
            success=send_result.success,
            message_id=send_result.message_id,
            error=None if send_result.success else send_result.error,
            status=new_status,
        )

    async def dispatch(self, reminder: Reminder) -> DispatchResult:
        return await self.dispatch_item(self.reminder_target, reminder.id)

    async def dispatch_followup(self, followup: ReminderFollowup) -> DispatchResult:
        return await self.dispatch_item(self.followup_target, followup.id)

    async def dispatch_batch(
        self, reminders: List[Reminder], deadline: Optional[float] = None
    ) -> BatchResult:
        """
        Dispatch reminders one by one and aggregate the outcome.

        Only the first ``max_reported_errors`` error strings are returned;
        every error is logged. Once ``time.monotonic()`` reaches
        ``deadline`` no further reminder is started; the rest stay PENDING
        for the next run.
        """
        batch = BatchResult()

        for index, reminder in enumerate(reminders):
            if deadline is not None and time.monotonic() >= deadline:
                self.log_warning(
                    {
                        "event": "batch_deadline_reached",
                        "entity": "reminder",
                        "remaining": len(reminders) - index,
                    }
                )
                break

            result = await self.dispatch(reminder)
            batch.processed += 1
            batch.results.append(result)

            if result.skipped:
                batch.skipped += 1
            elif result.success:
                batch.successful += 1
            else:
                batch.failed += 1
                error = f"Reminder {reminder.id}: {result.error}"
                self.log_warning(
                    {
                        "event": "reminder_dispatch_failed",
                        "reminder_id": str(reminder.id),
                        "patient_id": str(reminder.patient_id),
                        "error": result.error,
                    }
                )
                if len(batch.errors) < self.max_reported_errors:
                    batch.errors.append(error)

        self.log_info(
            {
                "event": "reminder_batch_dispatched",
                "processed": batch.processed,
                "successful": batch.successful,
                "failed": batch.failed,
                "skipped": batch.skipped,
            }
        )
        return batch
