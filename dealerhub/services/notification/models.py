"""Notification persistence models.

Inbox records (operator alerts + end-user notifications), device targets,
reminder entries and consumed-event dedupe rows are owned by this service.
`User`, `Department` and `Appointment` are read models over tables owned by
the dealership backend.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint, event, func, inspect
from sqlalchemy.orm import Mapped, mapped_column

from dealerhub.common.clock import utcnow
from dealerhub.common.db import Base, JSONPayload


class NotificationCategory(str, Enum):
    REGISTRATION = "REGISTRATION"
    APPOINTMENT = "APPOINTMENT"
    APPOINTMENT_APPROVED = "APPOINTMENT_APPROVED"
    APPOINTMENT_REJECTED = "APPOINTMENT_REJECTED"
    BREAKDOWN = "BREAKDOWN"
    SERVICE = "SERVICE"
    OFFER = "OFFER"
    PAYMENT = "PAYMENT"
    GENERAL = "GENERAL"


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class User(Base):
    """Backend-owned principal row (read model)."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String, unique=True)
    role: Mapped[str] = mapped_column(String, default="USER", index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Department(Base):
    """Backend-owned department row (read model)."""

    __tablename__ = "departments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String)


class Appointment(Base):
    """Backend-owned appointment row (read model)."""

    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    department_id: Mapped[str] = mapped_column(ForeignKey("departments.id"))
    date_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default=AppointmentStatus.PENDING.value, index=True)


class AdminAlert(Base):
    """Operator-facing inbox record; recipient is always operator-wide (null)."""

    __tablename__ = "admin_alerts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    recipient_id: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONPayload, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class UserNotification(Base):
    """End-user inbox record."""

    __tablename__ = "user_notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    recipient_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    category: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONPayload, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class DeviceTarget(Base):
    """Push-capable identifier, owned by one principal or anonymous (guest)."""

    __tablename__ = "device_targets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    identifier: Mapped[str] = mapped_column(String, unique=True)
    owner_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=True
    )
    platform: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ReminderEntry(Base):
    """Future-dated reminder for one appointment; `sent_at` null means pending."""

    __tablename__ = "appointment_reminders"
    __table_args__ = (UniqueConstraint("appointment_id", "kind", name="uq_reminder_appointment_kind"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    appointment_id: Mapped[str] = mapped_column(ForeignKey("appointments.id", ondelete="CASCADE"), index=True)
    kind: Mapped[str] = mapped_column(String)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class InboxEvent(Base):
    """Deduplication rows for consumed dealership events."""

    __tablename__ = "inbox_events"
    __table_args__ = (UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_service: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


IMMUTABLE_INBOX_COLUMNS = ("recipient_id", "category", "title", "body", "payload")


def _reject_inbox_mutation(mapper, connection, target) -> None:
    state = inspect(target)
    for column in IMMUTABLE_INBOX_COLUMNS:
        if state.attrs[column].history.has_changes():
            raise ValueError(f"{target.__tablename__}.{column} is immutable once created")


event.listen(AdminAlert, "before_update", _reject_inbox_mutation)
event.listen(UserNotification, "before_update", _reject_inbox_mutation)
