"""Event triggers: turn dealership domain events into notices.

Business services call `EventTriggers` in-process or publish an
`EventEnvelope` to the dealership topics; both paths end in
`NotificationDispatcher.publish`. Confirmation is the one transition that also
schedules reminders.
"""

import asyncio
from datetime import datetime

from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError

from dealerhub.common.events import EventEnvelope, consume_forever
from dealerhub.common.logging import logger
from dealerhub.common.metrics import duplicate_events_skipped_total
from dealerhub.services.notification.dispatcher import DispatchResult, NotificationDispatcher
from dealerhub.services.notification.models import InboxEvent
from dealerhub.services.notification.notices import (
    AppointmentApproved,
    AppointmentBooked,
    AppointmentRejected,
    BreakdownAssigned,
    BreakdownReported,
    BreakdownResolved,
    Notice,
    UserRegistered,
)
from dealerhub.services.notification.reminders import ReminderScheduler

TOPICS = ("dealership.users", "dealership.appointments", "dealership.breakdowns")

TRIGGER_KINDS = frozenset(
    {
        "user.registered",
        "appointment.created",
        "appointment.confirmed",
        "appointment.rejected",
        "breakdown.created",
        "breakdown.assigned",
        "breakdown.resolved",
    }
)
# Cancellation is announced to the customer the same way as a rejection.
EVENT_ALIASES = {"appointment.cancelled": "appointment.rejected"}

notice_adapter = TypeAdapter(Notice)


class EventTriggers:
    """Call sites for business-logic transitions."""

    def __init__(
        self,
        session_factory,
        dispatcher: NotificationDispatcher,
        scheduler: ReminderScheduler,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.service_name = service_name

    async def user_registered(self, user_id: str, name: str, email: str) -> DispatchResult:
        return await self.dispatcher.publish(UserRegistered(user_id=user_id, name=name, email=email))

    async def appointment_created(
        self, appointment_id: str, user_name: str, department: str, date_time: datetime
    ) -> DispatchResult:
        return await self.dispatcher.publish(
            AppointmentBooked(
                appointment_id=appointment_id, user_name=user_name, department=department, date_time=date_time
            )
        )

    async def appointment_confirmed(
        self, appointment_id: str, user_id: str, department: str, date_time: datetime
    ) -> DispatchResult:
        """Schedule reminders, then tell the customer; push problems never undo the schedule."""

        self.scheduler.schedule(appointment_id, date_time)
        return await self.dispatcher.publish(
            AppointmentApproved(
                appointment_id=appointment_id, user_id=user_id, department=department, date_time=date_time
            )
        )

    async def appointment_rejected(
        self,
        appointment_id: str,
        user_id: str,
        department: str,
        date_time: datetime,
        reason: str | None = None,
    ) -> DispatchResult:
        return await self.dispatcher.publish(
            AppointmentRejected(
                appointment_id=appointment_id,
                user_id=user_id,
                department=department,
                date_time=date_time,
                reason=reason,
            )
        )

    async def breakdown_created(
        self, request_id: str, user_name: str, latitude: float, longitude: float
    ) -> DispatchResult:
        return await self.dispatcher.publish(
            BreakdownReported(request_id=request_id, user_name=user_name, latitude=latitude, longitude=longitude)
        )

    async def breakdown_assigned(self, request_id: str, user_name: str, assigned_to: str) -> DispatchResult:
        return await self.dispatcher.publish(
            BreakdownAssigned(request_id=request_id, user_name=user_name, assigned_to=assigned_to)
        )

    async def breakdown_resolved(self, request_id: str, user_id: str) -> DispatchResult:
        return await self.dispatcher.publish(BreakdownResolved(request_id=request_id, user_id=user_id))

    def _claim(self, event_id: str) -> bool:
        """Commit the inbox row for this consumer; False when another delivery already holds it."""

        with self.session_factory() as db:
            db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def to_notice(self, event: EventEnvelope):
        """Parse an envelope into a notice; None for event types nobody announces."""

        kind = EVENT_ALIASES.get(event.event_type, event.event_type)
        if kind not in TRIGGER_KINDS:
            return None
        return notice_adapter.validate_python({**event.payload, "kind": kind})

    async def handle_event(self, event: EventEnvelope) -> DispatchResult | None:
        """Dispatch one consumed event at most once per consumer.

        The inbox row is claimed before anything is dispatched, so a redelivery
        after a crash mid-dispatch is skipped rather than announced twice.
        """

        if not self._claim(event.event_id):
            logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
            duplicate_events_skipped_total.labels(service=self.service_name, topic=event.event_type).inc()
            return None

        notice = self.to_notice(event)
        if notice is None:
            logger.info("event ignored event_type=%s aggregate_id=%s", event.event_type, event.aggregate_id)
            return None
        if isinstance(notice, AppointmentApproved):
            return await self.appointment_confirmed(
                notice.appointment_id, notice.user_id, notice.department, notice.date_time
            )
        return await self.dispatcher.publish(notice)

    async def start_consumers(self) -> None:
        """Consume every dealership topic in parallel."""

        await asyncio.gather(
            *(
                consume_forever(topic, f"{self.service_name}-{topic.split('.')[-1]}", self.handle_event)
                for topic in TOPICS
            )
        )
