"""
Cron Service Tests

Time budget of one batch under the global lock.
"""
import pytest
from sqlalchemy import func, select

from app.config.config import settings
from app.models.reminder_model import Reminder, ReminderStatus
from app.services.cron_service import CronService
from app.services.reminder_selector import ReminderSelector


@pytest.mark.asyncio
@pytest.mark.unit
class TestCronBatchBudget:
    async def test_slow_sends_stop_before_lock_expires(
        self, lock_service, rate_limiter, session_factory, dispatcher, followup_service,
        transport, make_patient, make_reminder,
    ):
        # five sends take ~1s; the budget is 1.0s TTL minus a 0.4s send timeout
        transport.delay = 0.2
        patient = await make_patient()
        for _ in range(5):
            await make_reminder(patient)

        service = CronService(
            lock_service=lock_service,
            rate_limiter=rate_limiter,
            selector=ReminderSelector(session_factory=session_factory),
            dispatcher=dispatcher,
            followup_service=followup_service,
            lock_ttl=1.0,
            send_timeout=0.4,
        )
        response = await service.run()

        processed = response.reminders.processed
        assert response.reminders.found == 5
        assert 1 <= processed < 5
        assert response.reminders.successful == processed
        assert len(transport.sent) == processed

        async with session_factory() as session:
            pending = await session.scalar(
                select(func.count())
                .select_from(Reminder)
                .where(Reminder.status == ReminderStatus.PENDING.value)
            )
        assert pending == 5 - processed
        assert await lock_service.get_lock_ttl(settings.CRON_LOCK_KEY) == 0.0

    async def test_defaults_come_from_settings(
        self, lock_service, rate_limiter, session_factory, dispatcher
    ):
        service = CronService(
            lock_service=lock_service,
            rate_limiter=rate_limiter,
            selector=ReminderSelector(session_factory=session_factory),
            dispatcher=dispatcher,
        )

        assert service.lock_ttl == settings.CRON_LOCK_TTL_SECONDS
        assert service.send_timeout == settings.WHATSAPP_TIMEOUT_SECONDS
