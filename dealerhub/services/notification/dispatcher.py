"""Notification dispatcher.

Coordinates the three delivery channels for one logical notification:

1. inbox records are written synchronously in a single transaction; failure
   raises `InboxWriteError` and nothing else happens,
2. operator recipients get a realtime event (fire-and-forget),
3. device targets get a push through the gateway, normally on the background
   queue; permanently invalid targets are purged afterwards. A full queue
   drops the push and the result says so with `delivery_dropped`.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from dealerhub.common.errors import InboxWriteError
from dealerhub.common.identity import OPERATOR_ROLES, Role
from dealerhub.common.logging import logger
from dealerhub.common.metrics import dispatch_latency_seconds, notifications_dispatched_total
from dealerhub.common.tasks import BackgroundTaskQueue
from dealerhub.common.tracing import tracer
from dealerhub.services.notification.devices import DeviceRegistry
from dealerhub.services.notification.gateway import DeliveryGateway, DeliveryReport
from dealerhub.services.notification.inbox import InboxStore, serialize_record
from dealerhub.services.notification.models import NotificationCategory, User
from dealerhub.services.notification.notices import (
    Announcement,
    AppointmentApproved,
    AppointmentBooked,
    AppointmentRejected,
    AppointmentReminder,
    Broadcast,
    BreakdownAssigned,
    BreakdownReported,
    BreakdownResolved,
    Operators,
    PrincipalList,
    RecipientSet,
    SinglePrincipal,
    UserRegistered,
    format_time,
    reminder_phrase,
)
from dealerhub.services.notification.realtime import RealtimeSessionRegistry

REALTIME_EVENT = "admin:notification"


@dataclass
class DispatchResult:
    records_written: int = 0
    record_ids: list[str] = field(default_factory=list)
    unknown_recipients: list[str] = field(default_factory=list)
    realtime_sessions: int = 0
    push_succeeded: int = 0
    push_failed: int = 0
    invalid_targets_removed: int = 0
    delivery_deferred: bool = False
    delivery_dropped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "records": self.records_written,
            "sent": self.push_succeeded,
            "failed": self.push_failed,
            "invalid_targets_removed": self.invalid_targets_removed,
            "unknown_recipients": self.unknown_recipients,
            "realtime_sessions": self.realtime_sessions,
            "delivery_deferred": self.delivery_deferred,
            "delivery_dropped": self.delivery_dropped,
        }


@dataclass
class _PushPlan:
    """Push work captured at dispatch time and resolved when it runs."""

    title: str
    body: str
    data: dict[str, Any]
    pools: list[tuple[str, Callable[[], list[str]]]] = field(default_factory=list)


def _audience(recipients: RecipientSet) -> str:
    match recipients:
        case SinglePrincipal():
            return "principal"
        case PrincipalList():
            return "list"
        case Operators():
            return "operators"
        case Broadcast():
            return "broadcast"
    raise TypeError(f"unsupported recipient set {recipients!r}")


class NotificationDispatcher:
    """Fan-out of one notification across inbox, realtime and push."""

    def __init__(
        self,
        session_factory,
        inbox: InboxStore,
        devices: DeviceRegistry,
        gateway: DeliveryGateway,
        registry: RealtimeSessionRegistry,
        queue: BackgroundTaskQueue | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.inbox = inbox
        self.devices = devices
        self.gateway = gateway
        self.registry = registry
        self.queue = queue

    async def notify(
        self,
        recipients: RecipientSet,
        category: NotificationCategory,
        title: str,
        body: str,
        payload: dict[str, Any] | None = None,
        await_delivery: bool = False,
    ) -> DispatchResult:
        """Persist, then fan out. Only the inbox write can fail the call.

        With `await_delivery` (or when no running queue is attached) push
        delivery completes before returning and the result carries real counts.
        """

        category = NotificationCategory(category)
        payload = dict(payload or {})
        audience = _audience(recipients)
        notifications_dispatched_total.labels(category=category.value, audience=audience).inc()

        with tracer.start_as_current_span("notification.dispatch") as span:
            span.set_attribute("notification.category", category.value)
            span.set_attribute("notification.audience", audience)
            started = perf_counter()
            result, realtime, plan = self._persist(recipients, category, title, body, payload)
            dispatch_latency_seconds.labels(audience=audience).observe(perf_counter() - started)

            result.realtime_sessions = self._emit_realtime(realtime)

            if not plan.pools:
                return result
            if await_delivery or self.queue is None or not self.queue.running:
                report, removed = await self._deliver(plan)
                result.push_succeeded = report.success_count
                result.push_failed = report.failure_count
                result.invalid_targets_removed = removed
            else:
                result.delivery_deferred = self.queue.submit(
                    f"push:{category.value}", lambda: self._deliver(plan)
                )
                # Inbox records stand; only the push for this dispatch is lost.
                result.delivery_dropped = not result.delivery_deferred
            return result

    def _persist(
        self,
        recipients: RecipientSet,
        category: NotificationCategory,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> tuple[DispatchResult, list[tuple[str | None, dict]], _PushPlan]:
        result = DispatchResult()
        realtime: list[tuple[str | None, dict]] = []
        plan = _PushPlan(title=title, body=body, data={**payload, "type": category.value})
        try:
            with self.session_factory() as db:
                match recipients:
                    case Operators():
                        alert = self.inbox.add_admin_alert(db, category, title, body, payload)
                        db.commit()
                        result.records_written = 1
                        result.record_ids = [alert.id]
                        plan.data["notificationId"] = alert.id
                        realtime.append((None, {"event": REALTIME_EVENT, "data": serialize_record(alert)}))
                        plan.pools.append(("operators", self.devices.operator_identifiers))
                        return result, realtime, plan
                    case SinglePrincipal(principal_id=principal_id):
                        requested = [principal_id]
                        users = self._known_users(db, requested)
                    case PrincipalList(principal_ids=principal_ids):
                        requested = list(dict.fromkeys(principal_ids))
                        users = self._known_users(db, requested)
                    case Broadcast():
                        users = (
                            db.execute(select(User).where(User.role == Role.USER.value, User.is_active.is_(True)))
                            .scalars()
                            .all()
                        )
                        requested = [user.id for user in users]
                    case _:
                        raise TypeError(f"unsupported recipient set {recipients!r}")

                known_ids = [user.id for user in users]
                records = self.inbox.add_user_notifications(db, known_ids, category, title, body, payload)
                db.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "inbox write failed category=%s audience=%s error=%s", category.value, _audience(recipients), exc
            )
            raise InboxWriteError(f"could not persist {category.value} notification") from exc

        result.records_written = len(records)
        result.record_ids = [record.id for record in records]
        known = set(known_ids)
        result.unknown_recipients = [principal_id for principal_id in requested if principal_id not in known]
        if result.unknown_recipients:
            logger.warning("notification recipients not found ids=%s", result.unknown_recipients)
        if len(records) == 1:
            plan.data["notificationId"] = records[0].id

        roles = {user.id: user.role for user in users}
        for record in records:
            if roles.get(record.recipient_id) in {role.value for role in OPERATOR_ROLES}:
                realtime.append((record.recipient_id, {"event": REALTIME_EVENT, "data": serialize_record(record)}))

        if known_ids:
            plan.pools.append(("principals", lambda: self.devices.identifiers_for(known_ids)))
        if isinstance(recipients, Broadcast):
            plan.pools.append(("anonymous", self.devices.anonymous_identifiers))
        return result, realtime, plan

    def _known_users(self, db, principal_ids: list[str]) -> list[User]:
        if not principal_ids:
            return []
        return list(db.execute(select(User).where(User.id.in_(principal_ids))).scalars().all())

    def _emit_realtime(self, realtime: list[tuple[str | None, dict]]) -> int:
        started = 0
        for principal_id, event in realtime:
            try:
                if principal_id is None:
                    started += self.registry.broadcast(event)
                elif self.registry.send_to(principal_id, event):
                    started += 1
            except Exception as exc:
                logger.error("realtime fan-out failed principal_id=%s error=%s", principal_id, exc)
        return started

    async def _deliver(self, plan: _PushPlan) -> tuple[DeliveryReport, int]:
        total = DeliveryReport()
        removed = 0
        for pool, resolve in plan.pools:
            try:
                identifiers = resolve()
            except Exception as exc:
                logger.error("device target lookup failed pool=%s title=%s error=%s", pool, plan.title, exc)
                continue
            report = await self.gateway.send(identifiers, plan.title, plan.body, plan.data)
            logger.info(
                "push pool delivered pool=%s targets=%s success=%s failure=%s",
                pool,
                len(identifiers),
                report.success_count,
                report.failure_count,
            )
            if report.invalid_targets:
                try:
                    removed += self.devices.invalidate(report.invalid_targets)
                except Exception as exc:
                    logger.error("invalid target cleanup failed pool=%s error=%s", pool, exc)
            total = total.merge(report)
        return total, removed

    async def publish(self, notice, await_delivery: bool = False) -> DispatchResult:
        """Dispatch a typed notice; the one place wording and audience are decided."""

        match notice:
            case UserRegistered():
                return await self.notify(
                    Operators(),
                    NotificationCategory.REGISTRATION,
                    "New Client Registered",
                    f"{notice.name} ({notice.email}) has registered",
                    {"userId": notice.user_id, "name": notice.name, "email": notice.email, "action": "open_client"},
                    await_delivery,
                )
            case AppointmentBooked():
                return await self.notify(
                    Operators(),
                    NotificationCategory.APPOINTMENT,
                    "New Appointment Booked",
                    f"{notice.user_name} booked an appointment with {notice.department}",
                    {
                        "appointmentId": notice.appointment_id,
                        "department": notice.department,
                        "dateTime": notice.date_time.isoformat(),
                        "action": "open_appointment",
                    },
                    await_delivery,
                )
            case AppointmentApproved():
                return await self.notify(
                    SinglePrincipal(notice.user_id),
                    NotificationCategory.APPOINTMENT_APPROVED,
                    "Appointment Confirmed",
                    f"Your appointment with {notice.department} on "
                    f"{notice.date_time.strftime('%Y-%m-%d')} at {format_time(notice.date_time)} is confirmed.",
                    {
                        "appointmentId": notice.appointment_id,
                        "departmentName": notice.department,
                        "dateTime": notice.date_time.isoformat(),
                        "action": "open_appointment",
                    },
                    await_delivery,
                )
            case AppointmentRejected():
                body = (
                    f"Your appointment with {notice.department} on "
                    f"{notice.date_time.strftime('%Y-%m-%d')} was declined."
                )
                if notice.reason:
                    body = f"{body} Reason: {notice.reason}"
                return await self.notify(
                    SinglePrincipal(notice.user_id),
                    NotificationCategory.APPOINTMENT_REJECTED,
                    "Appointment Declined",
                    body,
                    {
                        "appointmentId": notice.appointment_id,
                        "departmentName": notice.department,
                        "dateTime": notice.date_time.isoformat(),
                        "action": "book_appointment",
                    },
                    await_delivery,
                )
            case AppointmentReminder():
                return await self.notify(
                    SinglePrincipal(notice.user_id),
                    NotificationCategory.APPOINTMENT,
                    "Appointment Reminder",
                    f"You have an appointment with {notice.department} "
                    f"{reminder_phrase(notice.offset_hours)} at {format_time(notice.date_time)}.",
                    {
                        "appointmentId": notice.appointment_id,
                        "departmentName": notice.department,
                        "dateTime": notice.date_time.isoformat(),
                        "reminderType": notice.reminder_kind,
                        "action": "open_appointment",
                    },
                    await_delivery,
                )
            case BreakdownReported():
                return await self.notify(
                    Operators(),
                    NotificationCategory.BREAKDOWN,
                    "New Breakdown Request",
                    f"{notice.user_name} has requested breakdown assistance",
                    {
                        "requestId": notice.request_id,
                        "latitude": notice.latitude,
                        "longitude": notice.longitude,
                        "action": "open_breakdown",
                    },
                    await_delivery,
                )
            case BreakdownAssigned():
                return await self.notify(
                    Operators(),
                    NotificationCategory.BREAKDOWN,
                    "Breakdown Assigned",
                    f"Breakdown request from {notice.user_name} has been assigned",
                    {"requestId": notice.request_id, "assignedTo": notice.assigned_to, "action": "open_breakdown"},
                    await_delivery,
                )
            case BreakdownResolved():
                return await self.notify(
                    SinglePrincipal(notice.user_id),
                    NotificationCategory.SERVICE,
                    "Breakdown Request Resolved",
                    "Your breakdown request has been resolved. Drive safe!",
                    {"requestId": notice.request_id, "action": "open_breakdown"},
                    await_delivery,
                )
            case Announcement(user_ids=None):
                return await self.notify(
                    Broadcast(), notice.category, notice.title, notice.body, notice.data, await_delivery
                )
            case Announcement():
                return await self.notify(
                    PrincipalList(tuple(notice.user_ids)),
                    notice.category,
                    notice.title,
                    notice.body,
                    notice.data,
                    await_delivery,
                )
            case _:
                raise TypeError(f"unsupported notice {notice!r}")
