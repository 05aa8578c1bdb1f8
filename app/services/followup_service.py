"""
Followup Scheduler

After a reminder is sent, three followups (15 minutes, 2 hours, 24 hours
by default) are scheduled to ask the patient whether they acted on it.
Due followups are delivered through the same locked dispatch routine as
reminders.
"""
import time
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from app.config.config import settings
from app.core.utils import LoggerMixin, utcnow
from app.db.session import AsyncSessionLocal
from app.models.reminder_model import (
    FollowupStatus,
    FollowupType,
    Reminder,
    ReminderFollowup,
    ReminderPriority,
    ReminderType,
)
from app.repositories.reminder_repo import FollowupRepository
from app.schemas.reminder_schemas import FollowupResult

FOLLOWUP_STAGES = (
    FollowupType.REMINDER_15MIN,
    FollowupType.REMINDER_2H,
    FollowupType.REMINDER_24H,
)

BASE_TIMINGS = (timedelta(minutes=15), timedelta(hours=2), timedelta(hours=24))

TYPE_TIMINGS = {
    ReminderType.APPOINTMENT.value: (
        timedelta(minutes=15),
        timedelta(hours=3),
        timedelta(hours=24),
    ),
    ReminderType.GENERAL.value: (
        timedelta(minutes=30),
        timedelta(hours=4),
        timedelta(hours=36),
    ),
}

PRIORITY_MULTIPLIERS = {
    ReminderPriority.HIGH.value: 0.5,
    ReminderPriority.LOW.value: 1.5,
}


def get_followup_timings(
    reminder_type: Optional[str], priority: Optional[str]
) -> Dict[FollowupType, timedelta]:
    """Delay of each followup stage after the reminder was sent."""
    if reminder_type == ReminderType.MEDICATION.value:
        multiplier = PRIORITY_MULTIPLIERS.get(priority, 1.0)
        delays = tuple(delay * multiplier for delay in BASE_TIMINGS)
    else:
        delays = TYPE_TIMINGS.get(reminder_type, BASE_TIMINGS)
    return dict(zip(FOLLOWUP_STAGES, delays))


class FollowupService(LoggerMixin):
    """Schedule, deliver and cancel reminder followups."""

    def __init__(self, session_factory=AsyncSessionLocal, batch_size: Optional[int] = None):
        super().__init__()
        self._session_factory = session_factory
        self.batch_size = batch_size or settings.FOLLOWUP_BATCH_SIZE

    async def schedule_followups(
        self, db, reminder: Reminder, sent_at: datetime
    ) -> List[ReminderFollowup]:
        """
        Create the followups for a reminder that was just sent.

        Runs inside the caller's transaction so the followups exist only if
        the reminder's SENT status was recorded.
        """
        timings = get_followup_timings(reminder.reminder_type, reminder.priority)
        followups = [
            ReminderFollowup(
                reminder_id=reminder.id,
                patient_id=reminder.patient_id,
                followup_type=stage.value,
                status=FollowupStatus.PENDING.value,
                scheduled_at=sent_at + delay,
                retry_count=0,
            )
            for stage, delay in timings.items()
        ]
        await FollowupRepository(db).add_followups(followups)

        self.log_info(
            {
                "event": "followups_scheduled",
                "reminder_id": str(reminder.id),
                "patient_id": str(reminder.patient_id),
                "count": len(followups),
            }
        )
        return followups

    async def process_pending_followups(
        self,
        dispatcher,
        now: Optional[datetime] = None,
        deadline: Optional[float] = None,
    ) -> List[FollowupResult]:
        """
        Deliver due followups one by one; a failure never stops the rest.

        Followups not started before the monotonic ``deadline`` stay PENDING.
        """
        now = now or utcnow()
        async with self._session_factory() as db:
            followups = await FollowupRepository(db).get_due_followups(now, self.batch_size)

        results = []
        for index, followup in enumerate(followups):
            if deadline is not None and time.monotonic() >= deadline:
                self.log_warning(
                    {
                        "event": "batch_deadline_reached",
                        "entity": "followup",
                        "remaining": len(followups) - index,
                    }
                )
                break

            dispatched = await dispatcher.dispatch_followup(followup)

            if dispatched.skipped:
                status = "SKIPPED"
            else:
                status = dispatched.status or FollowupStatus.PENDING.value

            results.append(
                FollowupResult(
                    followup_id=str(followup.id),
                    processed=dispatched.success,
                    status=status,
                    sent_message_id=dispatched.message_id,
                    error=dispatched.error,
                )
            )

        if results:
            self.log_info(
                {
                    "event": "followups_processed",
                    "count": len(results),
                    "sent": sum(1 for r in results if r.status == FollowupStatus.SENT.value),
                    "failed": sum(1 for r in results if not r.processed),
                }
            )
        return results

    async def cancel_followups_for_reminder(self, reminder_id: uuid.UUID) -> int:
        async with self._session_factory() as db:
            async with db.begin():
                cancelled = await FollowupRepository(db).cancel_for_reminder(reminder_id)

        self.log_info(
            {
                "event": "followups_cancelled",
                "reminder_id": str(reminder_id),
                "count": cancelled,
            }
        )
        return cancelled

    async def get_followup_stats(self, patient_id: Optional[uuid.UUID] = None) -> Dict[str, int]:
        """Followup counts per status, optionally for one patient."""
        async with self._session_factory() as db:
            counts = await FollowupRepository(db).count_by_status(patient_id)

        stats = {status.value: counts.get(status.value, 0) for status in FollowupStatus}
        stats["total"] = sum(stats.values())
        return stats
