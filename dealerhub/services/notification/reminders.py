"""Appointment reminder scheduling, sweeping and cleanup.

Each reminder entry moves PENDING -> SENT exactly once. The sweep claims an
entry with a conditional update guarded by `sent_at IS NULL` before doing
anything else, so overlapping sweeps never fire the same reminder twice and a
failed dispatch is never retried.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from dealerhub.common.clock import Clock, as_utc, utcnow
from dealerhub.common.config import settings
from dealerhub.common.logging import logger
from dealerhub.common.metrics import (
    reminders_cleaned_total,
    reminders_fired_total,
    reminders_scheduled_total,
    reminders_skipped_total,
)
from dealerhub.common.ticker import run_every
from dealerhub.services.notification.models import Appointment, AppointmentStatus, Department, ReminderEntry
from dealerhub.services.notification.notices import AppointmentReminder


@dataclass(frozen=True)
class ReminderOffset:
    hours: int

    @property
    def kind(self) -> str:
        return f"{self.hours}h"

    @property
    def delta(self) -> timedelta:
        return timedelta(hours=self.hours)


def parse_offset(kind: str) -> ReminderOffset:
    if not kind.endswith("h") or not kind[:-1].isdigit():
        raise ValueError(f"unknown reminder kind {kind!r}")
    return ReminderOffset(hours=int(kind[:-1]))


@dataclass
class SweepReport:
    due: int = 0
    fired: int = 0
    skipped: int = 0
    failed: int = 0
    claimed_elsewhere: int = 0


class ReminderScheduler:
    """Creates reminder entries on confirmation and fires them when due."""

    def __init__(
        self,
        session_factory,
        dispatcher,
        offsets_hours: list[int] | None = None,
        window: timedelta | None = None,
        interval: timedelta | None = None,
        cleanup_interval: timedelta | None = None,
        retention: timedelta | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        hours = offsets_hours if offsets_hours is not None else settings.reminder_offsets_hours
        self.offsets = [ReminderOffset(hours=h) for h in sorted(set(hours), reverse=True) if h > 0]
        self.window = window if window is not None else timedelta(seconds=settings.reminder_window_seconds)
        self.interval = interval or timedelta(seconds=settings.reminder_sweep_interval_seconds)
        self.cleanup_interval = cleanup_interval or timedelta(seconds=settings.reminder_cleanup_interval_seconds)
        self.retention = retention if retention is not None else timedelta(days=settings.reminder_retention_days)
        self.clock = clock
        self._last_sweep_at: datetime | None = None

    def schedule(self, appointment_id: str, appointment_time: datetime) -> list[ReminderEntry]:
        """Create one pending entry per offset that still lies in the future.

        Offsets already in the past are dropped; kinds already scheduled for the
        appointment are left untouched.
        """

        now = self.clock()
        appointment_time = as_utc(appointment_time)
        created: list[ReminderEntry] = []
        try:
            with self.session_factory() as db:
                existing = set(
                    db.execute(
                        select(ReminderEntry.kind).where(ReminderEntry.appointment_id == appointment_id)
                    ).scalars()
                )
                for offset in self.offsets:
                    scheduled_for = appointment_time - offset.delta
                    if scheduled_for <= now or offset.kind in existing:
                        continue
                    entry = ReminderEntry(appointment_id=appointment_id, kind=offset.kind, scheduled_for=scheduled_for)
                    db.add(entry)
                    created.append(entry)
                db.commit()
        except IntegrityError:
            logger.warning("reminders already scheduled concurrently appointment_id=%s", appointment_id)
            return []

        for entry in created:
            reminders_scheduled_total.labels(kind=entry.kind).inc()
            logger.info(
                "reminder scheduled appointment_id=%s kind=%s scheduled_for=%s",
                appointment_id,
                entry.kind,
                as_utc(entry.scheduled_for).isoformat(),
            )
        return created

    def _lookback(self, now: datetime) -> timedelta:
        # Cover everything since the previous tick so a delayed tick cannot skip entries.
        if self._last_sweep_at is None:
            return self.interval
        return max(self.interval, now - self._last_sweep_at)

    def _claim(self, entry_id: str, now: datetime) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(ReminderEntry)
                .where(ReminderEntry.id == entry_id, ReminderEntry.sent_at.is_(None))
                .values(sent_at=now)
            )
            db.commit()
        return result.rowcount == 1

    async def sweep(self) -> SweepReport:
        """Fire pending reminders scheduled in `[now - lookback, now + window)`."""

        now = self.clock()
        lower = now - self._lookback(now)
        upper = now + self.window
        with self.session_factory() as db:
            rows = db.execute(
                select(ReminderEntry, Appointment, Department.name)
                .join(Appointment, Appointment.id == ReminderEntry.appointment_id)
                .join(Department, Department.id == Appointment.department_id)
                .where(
                    ReminderEntry.sent_at.is_(None),
                    ReminderEntry.scheduled_for >= lower,
                    ReminderEntry.scheduled_for < upper,
                )
                .order_by(ReminderEntry.scheduled_for)
            ).all()
        self._last_sweep_at = now

        report = SweepReport(due=len(rows))
        logger.info("checking for due reminders count=%s", len(rows))
        for entry, appointment, department_name in rows:
            try:
                if not self._claim(entry.id, now):
                    report.claimed_elsewhere += 1
                    continue
                if appointment.status != AppointmentStatus.CONFIRMED.value:
                    report.skipped += 1
                    reminders_skipped_total.labels(reason=appointment.status.lower()).inc()
                    logger.info(
                        "reminder skipped reminder_id=%s appointment_id=%s status=%s",
                        entry.id,
                        appointment.id,
                        appointment.status,
                    )
                    continue
                await self.dispatcher.publish(
                    AppointmentReminder(
                        appointment_id=appointment.id,
                        user_id=appointment.user_id,
                        department=department_name,
                        date_time=as_utc(appointment.date_time),
                        reminder_kind=entry.kind,
                        offset_hours=parse_offset(entry.kind).hours,
                    )
                )
                report.fired += 1
                reminders_fired_total.labels(kind=entry.kind).inc()
                logger.info(
                    "reminder sent reminder_id=%s appointment_id=%s kind=%s", entry.id, appointment.id, entry.kind
                )
            except Exception as exc:
                report.failed += 1
                logger.exception("failed to send reminder reminder_id=%s error=%s", entry.id, exc)
        return report

    async def cleanup(self) -> int:
        """Delete sent entries scheduled before the retention cutoff; pending ones are kept."""

        cutoff = self.clock() - self.retention
        with self.session_factory() as db:
            result = db.execute(
                delete(ReminderEntry).where(ReminderEntry.sent_at.is_not(None), ReminderEntry.scheduled_for < cutoff)
            )
            db.commit()
        if result.rowcount:
            reminders_cleaned_total.inc(result.rowcount)
            logger.info("cleaned up old reminders count=%s", result.rowcount)
        return result.rowcount

    async def run_sweeps(self) -> None:
        await run_every("reminder-sweep", self.interval.total_seconds(), self.sweep)

    async def run_cleanups(self) -> None:
        await run_every("reminder-cleanup", self.cleanup_interval.total_seconds(), self.cleanup)
