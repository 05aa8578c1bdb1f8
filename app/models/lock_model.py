from datetime import datetime
from sqlalchemy import TIMESTAMP, String
from sqlalchemy.orm import Mapped, mapped_column
from app.db.base import Base


class DistributedLock(Base):
    """
    Row-backed lease used by the database lock store.

    At most one row exists per key; a row whose expires_at has passed is
    considered abandoned and is overwritten by the next acquirer.
    """

    __tablename__ = "distributed_locks"

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner_token: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False
    )

    def __repr__(self) -> str:
        return f"<DistributedLock key={self.lock_key} expires_at={self.expires_at}>"
