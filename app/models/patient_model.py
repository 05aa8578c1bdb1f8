import uuid
from datetime import datetime
from enum import Enum
from typing import List, TYPE_CHECKING
from sqlalchemy import TIMESTAMP, Boolean, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from app.db.base import Base

if TYPE_CHECKING:
    from app.models.reminder_model import Reminder


class VerificationStatus(str, Enum):
    """WhatsApp opt-in verification status"""

    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class Patient(Base):
    """
    Patient as seen by the reminder engine.

    Owned and edited by the patient management flows; the dispatch
    engine only reads it to decide eligibility and the recipient number.
    """

    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        unique=True,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, index=True
    )

    verification_status: Mapped[str] = mapped_column(
        String(20),
        default=VerificationStatus.PENDING.value,
        nullable=False,
        index=True,
    )

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

    reminders: Mapped[List["Reminder"]] = relationship(
        "Reminder", back_populates="patient", lazy="select"
    )

    @property
    def is_eligible(self) -> bool:
        """Active and opted in to WhatsApp messages."""
        return (
            self.is_active
            and self.verification_status == VerificationStatus.VERIFIED.value
        )

    def __repr__(self) -> str:
        return (
            f"<Patient id={self.id} active={self.is_active} "
            f"verification={self.verification_status}>"
        )
