"""
Reminder Dispatcher Tests

Exactly-once delivery, per-item failure isolation and status recording.
"""
import asyncio
import logging
import time

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.models.reminder_model import ReminderFollowup, ReminderStatus
from app.repositories.reminder_repo import ReminderRepository
from app.schemas.reminder_schemas import SendResult
from app.services.dispatch_service import DispatchService


@pytest.mark.asyncio
@pytest.mark.unit
class TestDispatchReminder:
    async def test_successful_send_marks_sent(
        self, dispatcher, transport, make_patient, make_reminder, fetch_reminder
    ):
        patient = await make_patient(phone_number="081234567890")
        reminder = await make_reminder(patient, message="Minum obat sekarang")

        result = await dispatcher.dispatch(reminder)

        assert result.success
        assert result.message_id == "wamid_1"
        assert transport.sent == [("081234567890", "Minum obat sekarang")]

        stored = await fetch_reminder(reminder.id)
        assert stored.status == ReminderStatus.SENT.value
        assert stored.sent_at is not None
        assert stored.message_id == "wamid_1"
        assert stored.error_message is None

    async def test_transport_failure_marks_failed(
        self, dispatcher, transport, make_patient, make_reminder, fetch_reminder
    ):
        transport.result = SendResult(success=False, error="timeout")
        reminder = await make_reminder(await make_patient())

        batch = await dispatcher.dispatch_batch([reminder])

        assert batch.failed == 1
        assert batch.successful == 0
        assert "timeout" in batch.errors[0]

        stored = await fetch_reminder(reminder.id)
        assert stored.status == ReminderStatus.FAILED.value
        assert stored.sent_at is not None
        assert stored.error_message == "timeout"

    async def test_already_processed_is_skipped(
        self, dispatcher, transport, make_patient, make_reminder
    ):
        reminder = await make_reminder(await make_patient())
        await dispatcher.dispatch(reminder)

        again = await dispatcher.dispatch(reminder)

        assert again.skipped
        assert len(transport.sent) == 1

    async def test_held_item_lock_fails_item(
        self, dispatcher, lock_service, transport, make_patient, make_reminder, fetch_reminder
    ):
        reminder = await make_reminder(await make_patient())
        await lock_service.acquire(f"reminder_processing:{reminder.id}", ttl=60)

        result = await dispatcher.dispatch(reminder)

        assert not result.success
        assert "Could not acquire processing lock" in result.error
        assert transport.sent == []
        assert (await fetch_reminder(reminder.id)).status == ReminderStatus.PENDING.value

    async def test_patient_no_longer_eligible_is_skipped(
        self, dispatcher, transport, session_factory, make_patient, make_reminder
    ):
        patient = await make_patient()
        reminder = await make_reminder(patient)
        async with session_factory() as session:
            stored = await session.get(type(patient), patient.id)
            stored.is_active = False
            await session.commit()

        result = await dispatcher.dispatch(reminder)

        assert result.skipped
        assert transport.sent == []

    async def test_templated_message_for_titled_reminder(
        self, dispatcher, transport, make_patient, make_reminder
    ):
        reminder = await make_reminder(
            await make_patient(name="Budi"),
            title="Amlodipine 5mg",
            message="Minum 1 tablet setelah makan",
        )

        await dispatcher.dispatch(reminder)

        (_, message), = transport.sent
        assert "Halo Budi" in message
        assert "*Amlodipine 5mg*" in message
        assert "Minum 1 tablet setelah makan" in message

    async def test_success_schedules_followups(
        self, dispatcher, session_factory, make_patient, make_reminder
    ):
        reminder = await make_reminder(await make_patient())

        await dispatcher.dispatch(reminder)

        async with session_factory() as session:
            followups = (
                await session.execute(
                    select(ReminderFollowup).where(ReminderFollowup.reminder_id == reminder.id)
                )
            ).scalars().all()
        assert len(followups) == 3

    async def test_failure_schedules_no_followups(
        self, dispatcher, transport, session_factory, make_patient, make_reminder
    ):
        transport.result = SendResult(success=False, error="invalid number")
        reminder = await make_reminder(await make_patient())

        await dispatcher.dispatch(reminder)

        async with session_factory() as session:
            followups = (await session.execute(select(ReminderFollowup))).scalars().all()
        assert followups == []


@pytest.mark.asyncio
@pytest.mark.unit
class TestDispatchBatch:
    async def test_counts_outcomes(self, dispatcher, make_patient, make_reminder):
        patient = await make_patient()
        first = await make_reminder(patient)
        second = await make_reminder(patient)
        await dispatcher.dispatch(second)

        batch = await dispatcher.dispatch_batch([first, second])

        assert batch.processed == 2
        assert batch.successful == 1
        assert batch.skipped == 1
        assert batch.failed == 0
        assert batch.errors == []

    async def test_reported_errors_are_capped(
        self, dispatcher, transport, make_patient, make_reminder
    ):
        transport.result = SendResult(success=False, error="device offline")
        patient = await make_patient()
        reminders = [await make_reminder(patient) for _ in range(7)]

        batch = await dispatcher.dispatch_batch(reminders)

        assert batch.failed == 7
        assert len(batch.errors) == 5

    async def test_persistence_failure_is_contained(
        self, dispatcher, lock_service, transport, make_patient, make_reminder, fetch_reminder,
        monkeypatch, caplog,
    ):
        patient = await make_patient()
        broken = await make_reminder(patient)
        healthy = await make_reminder(patient)
        original = ReminderRepository.mark_outcome

        async def flaky_mark_outcome(self, reminder_id, *args, **kwargs):
            if reminder_id == broken.id:
                raise SQLAlchemyError("disk I/O error")
            return await original(self, reminder_id, *args, **kwargs)

        monkeypatch.setattr(ReminderRepository, "mark_outcome", flaky_mark_outcome)

        batch = await dispatcher.dispatch_batch([broken, healthy])

        assert batch.failed == 1
        assert batch.successful == 1
        assert "disk I/O error" in batch.errors[0]
        assert (await fetch_reminder(healthy.id)).status == ReminderStatus.SENT.value
        assert not await lock_service.is_locked(f"reminder_processing:{broken.id}")

        # delivered as wamid_1 but left PENDING, so it is flagged for manual reconciliation
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "reminder_sent_but_not_recorded" in critical[0].getMessage()
        assert "wamid_1" in critical[0].getMessage()
        assert (await fetch_reminder(broken.id)).status == ReminderStatus.PENDING.value

    async def test_deadline_stops_batch(
        self, dispatcher, transport, make_patient, make_reminder, fetch_reminder
    ):
        patient = await make_patient()
        reminders = [await make_reminder(patient) for _ in range(2)]

        batch = await dispatcher.dispatch_batch(reminders, deadline=time.monotonic() - 1)

        assert batch.processed == 0
        assert transport.sent == []
        for reminder in reminders:
            assert (await fetch_reminder(reminder.id)).status == ReminderStatus.PENDING.value

    async def test_concurrent_batches_send_each_reminder_once(
        self, lock_service, transport, session_factory, followup_service,
        make_patient, make_reminder, fetch_reminder,
    ):
        transport.delay = 0.05
        patient = await make_patient()
        reminders = [await make_reminder(patient) for _ in range(3)]

        def new_dispatcher():
            return DispatchService(
                lock_service=lock_service,
                transport=transport,
                session_factory=session_factory,
                followup_service=followup_service,
                lock_retry_delay=0.01,
            )

        first, second = await asyncio.gather(
            new_dispatcher().dispatch_batch(reminders),
            new_dispatcher().dispatch_batch(reminders),
        )

        assert len(transport.sent) == 3
        assert first.successful + second.successful == 3
        for reminder in reminders:
            assert (await fetch_reminder(reminder.id)).status == ReminderStatus.SENT.value
