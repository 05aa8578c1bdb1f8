from datetime import datetime
from typing import Dict, List, Optional
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import func, update
from sqlalchemy.orm import contains_eager, selectinload
from app.models.patient_model import Patient, VerificationStatus
from app.models.reminder_model import (
    FollowupStatus,
    Reminder,
    ReminderFollowup,
    ReminderStatus,
)


def _eligible_patient_clause():
    return (
        Patient.is_active == True,
        Patient.verification_status == VerificationStatus.VERIFIED.value,
    )


class ReminderRepository:
    """Repository layer for reminder data access.

    Status writes are conditional on the row still being PENDING, so a
    reminder can move out of PENDING exactly once. Callers own the
    transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_due_reminders(
        self, now: datetime, current_time: str, limit: int
    ) -> List[Reminder]:
        """Due, unsent reminders of eligible patients, patient eagerly loaded."""
        query = (
            select(Reminder)
            .join(Patient, Reminder.patient_id == Patient.id)
            .options(contains_eager(Reminder.patient))
            .where(
                Reminder.is_active == True,
                Reminder.start_date <= now,
                Reminder.scheduled_time <= current_time,
                Reminder.sent_at.is_(None),
                Reminder.status == ReminderStatus.PENDING.value,
                *_eligible_patient_clause(),
            )
            .order_by(Reminder.scheduled_time, Reminder.created_at)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().unique().all())

    async def get_reminder_by_id(self, reminder_id: uuid.UUID) -> Optional[Reminder]:
        result = await self.db.execute(
            select(Reminder)
            .options(selectinload(Reminder.patient))
            .where(Reminder.id == reminder_id)
        )
        return result.scalars().first()

    async def mark_outcome(
        self,
        reminder_id: uuid.UUID,
        status: ReminderStatus,
        sent_at: datetime,
        message_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """PENDING -> SENT/FAILED. False when the reminder was no longer PENDING."""
        result = await self.db.execute(
            update(Reminder)
            .where(
                Reminder.id == reminder_id,
                Reminder.status == ReminderStatus.PENDING.value,
            )
            .values(
                status=status.value,
                sent_at=sent_at,
                message_id=message_id,
                error_message=error_message,
            )
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1


class FollowupRepository:
    """Repository layer for followup data access."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add_followups(self, followups: List[ReminderFollowup]) -> List[ReminderFollowup]:
        self.db.add_all(followups)
        await self.db.flush()
        return followups

    async def get_due_followups(self, now: datetime, limit: int) -> List[ReminderFollowup]:
        query = (
            select(ReminderFollowup)
            .join(Patient, ReminderFollowup.patient_id == Patient.id)
            .options(contains_eager(ReminderFollowup.patient))
            .where(
                ReminderFollowup.status == FollowupStatus.PENDING.value,
                ReminderFollowup.scheduled_at <= now,
                *_eligible_patient_clause(),
            )
            .order_by(ReminderFollowup.scheduled_at)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().unique().all())

    async def get_followup_by_id(self, followup_id: uuid.UUID) -> Optional[ReminderFollowup]:
        result = await self.db.execute(
            select(ReminderFollowup)
            .options(
                selectinload(ReminderFollowup.patient),
                selectinload(ReminderFollowup.reminder),
            )
            .where(ReminderFollowup.id == followup_id)
        )
        return result.scalars().first()

    async def get_followups_for_reminder(self, reminder_id: uuid.UUID) -> List[ReminderFollowup]:
        result = await self.db.execute(
            select(ReminderFollowup)
            .where(ReminderFollowup.reminder_id == reminder_id)
            .order_by(ReminderFollowup.scheduled_at)
        )
        return list(result.scalars().all())

    async def mark_outcome(
        self,
        followup_id: uuid.UUID,
        status: FollowupStatus,
        sent_at: datetime,
        message: Optional[str] = None,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        values = {
            "status": status.value,
            "sent_at": sent_at,
            "message": message,
            "message_id": message_id,
            "error": error,
        }
        if status == FollowupStatus.FAILED:
            values["retry_count"] = ReminderFollowup.retry_count + 1

        result = await self.db.execute(
            update(ReminderFollowup)
            .where(
                ReminderFollowup.id == followup_id,
                ReminderFollowup.status == FollowupStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def cancel_for_reminder(self, reminder_id: uuid.UUID) -> int:
        result = await self.db.execute(
            update(ReminderFollowup)
            .where(
                ReminderFollowup.reminder_id == reminder_id,
                ReminderFollowup.status == FollowupStatus.PENDING.value,
            )
            .values(status=FollowupStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def count_by_status(self, patient_id: Optional[uuid.UUID] = None) -> Dict[str, int]:
        query = select(ReminderFollowup.status, func.count(ReminderFollowup.id)).group_by(
            ReminderFollowup.status
        )
        if patient_id:
            query = query.where(ReminderFollowup.patient_id == patient_id)
        result = await self.db.execute(query)
        return dict(result.all())
