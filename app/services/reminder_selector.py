from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from app.config.config import settings
from app.core.utils import LoggerMixin, utcnow
from app.db.session import AsyncSessionLocal
from app.models.reminder_model import Reminder
from app.repositories.reminder_repo import ReminderRepository


def local_time_of_day(now: datetime, timezone_name: str) -> str:
    """HH:MM wall-clock time of ``now`` in ``timezone_name``."""
    return now.astimezone(ZoneInfo(timezone_name)).strftime("%H:%M")


class ReminderSelector(LoggerMixin):
    """
    Reads the reminders that are due right now.

    A reminder is due when it is active, its start date has passed, its
    time of day has passed (in the clinic's timezone, regardless of the
    date), it has never been sent, it is still PENDING, and its patient is
    active and verified. Each call returns at most ``batch_size`` rows.
    """

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        batch_size: Optional[int] = None,
        timezone_name: Optional[str] = None,
    ):
        super().__init__()
        self._session_factory = session_factory
        self.batch_size = batch_size or settings.REMINDER_BATCH_SIZE
        self.timezone_name = timezone_name or settings.APP_TIMEZONE

    async def select_due(self, now: Optional[datetime] = None) -> List[Reminder]:
        now = now or utcnow()
        current_time = local_time_of_day(now, self.timezone_name)

        async with self._session_factory() as db:
            reminders = await ReminderRepository(db).get_due_reminders(
                now=now, current_time=current_time, limit=self.batch_size
            )

        self.log_info(
            {
                "event": "due_reminders_selected",
                "count": len(reminders),
                "current_time": current_time,
                "timezone": self.timezone_name,
                "limit": self.batch_size,
            }
        )
        return reminders
