from .patient_model import Patient, VerificationStatus
from .reminder_model import (
    Reminder,
    ReminderFollowup,
    ReminderStatus,
    ReminderType,
    ReminderPriority,
    FollowupStatus,
    FollowupType,
)
from .lock_model import DistributedLock
