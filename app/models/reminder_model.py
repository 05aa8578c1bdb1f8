"""
Reminder and Followup Models

Reminders are the scheduled outbound WhatsApp messages; followups are the
secondary messages scheduled after a reminder was sent. Both share the
same PENDING -> SENT/FAILED lifecycle, updated only by the dispatcher.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, TYPE_CHECKING
from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    String,
    Text,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from app.db.base import Base

if TYPE_CHECKING:
    from app.models.patient_model import Patient


class ReminderStatus(str, Enum):
    """Reminder delivery status"""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class ReminderType(str, Enum):
    """Reminder type, drives message formatting and followup timings"""

    MEDICATION = "MEDICATION"
    APPOINTMENT = "APPOINTMENT"
    GENERAL = "GENERAL"


class ReminderPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class FollowupStatus(str, Enum):
    """Followup delivery status"""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class FollowupType(str, Enum):
    """Followup stage relative to the original reminder"""

    REMINDER_15MIN = "REMINDER_15MIN"
    REMINDER_2H = "REMINDER_2H"
    REMINDER_24H = "REMINDER_24H"


class Reminder(Base):
    """A scheduled reminder for a patient."""

    __tablename__ = "reminders"

    id: Mapped[uuid.UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        unique=True,
        index=True,
    )

    patient_id: Mapped[uuid.UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Scheduling
    start_date: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    scheduled_time: Mapped[str] = mapped_column(
        String(5), nullable=False, comment="Time of day, HH:MM"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, index=True
    )

    # Content
    reminder_type: Mapped[str] = mapped_column(
        String(20), default=ReminderType.GENERAL.value, nullable=False
    )
    priority: Mapped[str] = mapped_column(
        String(10), default=ReminderPriority.MEDIUM.value, nullable=False
    )
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20),
        default=ReminderStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, index=True
    )
    message_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Transport message id"
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    patient: Mapped["Patient"] = relationship(
        "Patient", back_populates="reminders", lazy="select"
    )
    followups: Mapped[List["ReminderFollowup"]] = relationship(
        "ReminderFollowup", back_populates="reminder", lazy="select"
    )

    __table_args__ = (
        Index(
            "idx_reminders_due",
            "is_active",
            "status",
            "start_date",
            "scheduled_time",
        ),
        # Due-time selection compares HH:MM as text
        CheckConstraint(
            "scheduled_time LIKE '__:__'", name="ck_reminders_scheduled_time_hhmm"
        ),
    )

    @validates("scheduled_time")
    def validate_scheduled_time(self, key: str, value: str) -> str:
        """Normalise to zero-padded ``HH:MM`` ("9:00" -> "09:00")."""
        try:
            return datetime.strptime(value.strip(), "%H:%M").strftime("%H:%M")
        except (AttributeError, ValueError):
            raise ValueError(f"scheduled_time must be HH:MM, got {value!r}") from None

    def __repr__(self) -> str:
        return (
            f"<Reminder id={self.id} type={self.reminder_type} "
            f"status={self.status}>"
        )


class ReminderFollowup(Base):
    """Followup message tied to a sent reminder."""

    __tablename__ = "reminder_followups"

    id: Mapped[uuid.UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        unique=True,
        index=True,
    )

    reminder_id: Mapped[uuid.UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("reminders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    followup_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=FollowupStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    reminder: Mapped["Reminder"] = relationship(
        "Reminder", back_populates="followups", lazy="select"
    )
    patient: Mapped["Patient"] = relationship("Patient", lazy="select")

    __table_args__ = (
        Index("idx_followups_pending_scheduled", "status", "scheduled_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReminderFollowup id={self.id} type={self.followup_type} "
            f"status={self.status}>"
        )
