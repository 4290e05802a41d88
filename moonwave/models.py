import uuid
from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, DateTime, Integer, Numeric, String, Text, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)  # stored as naive UTC

def _new_id() -> str:
    return str(uuid.uuid4())

class Base(DeclarativeBase):
    pass

class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    cycle: Mapped[str] = mapped_column(String(16), nullable=False)  # weekly|monthly|quarterly|yearly|onetime
    anchor_day: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    notify_seven_days: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_three_days: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_one_day: Mapped[bool] = mapped_column(Boolean, default=False)
    notify_same_day: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

class ReminderRecordRow(Base):
    __tablename__ = "reminder_records"
    __table_args__ = (
        # the dedup key; inserts racing on it fail with IntegrityError
        UniqueConstraint("subscription_id", "kind", "occurrence_date", name="uq_reminder_records_key"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # sevenDay|threeDay|oneDay|sameDay
    occurrence_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False, default="payment_reminder")
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")  # low|medium|high

    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
