"""Typed notices and recipient sets.

Every domain event the service knows how to announce is one variant of the
`Notice` union; each carries its own payload fields. The dispatcher resolves
audience, wording and client action from the variant in a single match.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from dealerhub.services.notification.models import NotificationCategory


@dataclass(frozen=True)
class SinglePrincipal:
    """One known principal (end-user or operator)."""

    principal_id: str


@dataclass(frozen=True)
class PrincipalList:
    principal_ids: tuple[str, ...]


@dataclass(frozen=True)
class Operators:
    """Operator-wide alert: one admin alert, realtime fan-out, operator devices."""


@dataclass(frozen=True)
class Broadcast:
    """All active end-users plus every anonymous device target."""


RecipientSet = SinglePrincipal | PrincipalList | Operators | Broadcast


class UserRegistered(BaseModel):
    kind: Literal["user.registered"] = "user.registered"
    user_id: str
    name: str
    email: str


class AppointmentBooked(BaseModel):
    kind: Literal["appointment.created"] = "appointment.created"
    appointment_id: str
    user_name: str
    department: str
    date_time: datetime


class AppointmentApproved(BaseModel):
    kind: Literal["appointment.confirmed"] = "appointment.confirmed"
    appointment_id: str
    user_id: str
    department: str
    date_time: datetime


class AppointmentRejected(BaseModel):
    kind: Literal["appointment.rejected"] = "appointment.rejected"
    appointment_id: str
    user_id: str
    department: str
    date_time: datetime
    reason: str | None = None


class AppointmentReminder(BaseModel):
    kind: Literal["appointment.reminder"] = "appointment.reminder"
    appointment_id: str
    user_id: str
    department: str
    date_time: datetime
    reminder_kind: str
    offset_hours: int


class BreakdownReported(BaseModel):
    kind: Literal["breakdown.created"] = "breakdown.created"
    request_id: str
    user_name: str
    latitude: float
    longitude: float


class BreakdownAssigned(BaseModel):
    kind: Literal["breakdown.assigned"] = "breakdown.assigned"
    request_id: str
    user_name: str
    assigned_to: str


class BreakdownResolved(BaseModel):
    kind: Literal["breakdown.resolved"] = "breakdown.resolved"
    request_id: str
    user_id: str


class Announcement(BaseModel):
    """Free-form operator message to chosen users or everyone."""

    kind: Literal["announcement"] = "announcement"
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    category: NotificationCategory = NotificationCategory.GENERAL
    user_ids: list[str] | None = None
    data: dict[str, str] = Field(default_factory=dict)


Notice = Annotated[
    Union[
        UserRegistered,
        AppointmentBooked,
        AppointmentApproved,
        AppointmentRejected,
        AppointmentReminder,
        BreakdownReported,
        BreakdownAssigned,
        BreakdownResolved,
        Announcement,
    ],
    Field(discriminator="kind"),
]


def format_time(value: datetime) -> str:
    return value.strftime("%H:%M")


def reminder_phrase(offset_hours: int) -> str:
    if offset_hours == 24:
        return "tomorrow"
    if offset_hours == 1:
        return "in 1 hour"
    if offset_hours % 24 == 0:
        return f"in {offset_hours // 24} days"
    return f"in {offset_hours} hours"
