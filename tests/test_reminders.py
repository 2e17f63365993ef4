"""Reminder scheduling, sweeping, at-most-once firing and cleanup."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import T0, FakeClock
from dealerhub.common.db import SessionLocal
from dealerhub.services.notification.models import AppointmentStatus, ReminderEntry, UserNotification
from dealerhub.services.notification.notices import format_time, reminder_phrase
from dealerhub.services.notification.reminders import ReminderScheduler, parse_offset


def _scheduler(dispatcher, clock):
    return ReminderScheduler(
        SessionLocal,
        dispatcher,
        offsets_hours=[24, 1],
        window=timedelta(minutes=5),
        interval=timedelta(minutes=15),
        retention=timedelta(days=7),
        clock=clock,
    )


def _entries(appointment_id):
    with SessionLocal() as db:
        rows = db.execute(
            select(ReminderEntry).where(ReminderEntry.appointment_id == appointment_id).order_by(ReminderEntry.kind)
        ).scalars()
        return {entry.kind: entry for entry in rows}


def _notifications(user_id):
    with SessionLocal() as db:
        return db.execute(select(UserNotification).where(UserNotification.recipient_id == user_id)).scalars().all()


class RecordingDispatcher:
    """Stands in for the dispatcher; fails for chosen appointments."""

    def __init__(self, failing=()) -> None:
        self.failing = set(failing)
        self.published = []

    async def publish(self, notice, await_delivery=False):
        if notice.appointment_id in self.failing:
            raise RuntimeError("push backend exploded")
        self.published.append(notice)


@pytest.mark.asyncio
async def test_scheduled_then_only_24h_fires(dispatcher, make_user, make_appointment):
    """Appointment at T+48h: entries at T+24h and T+47h; sweep near T+24h fires one."""

    clock = FakeClock(T0)
    scheduler = _scheduler(dispatcher, clock)
    user = make_user()
    appointment = make_appointment(user, T0 + timedelta(hours=48), department="Sales")

    created = scheduler.schedule(appointment, T0 + timedelta(hours=48))
    assert sorted(entry.kind for entry in created) == ["1h", "24h"]
    entries = _entries(appointment)
    assert entries["24h"].scheduled_for.replace(tzinfo=None) == (T0 + timedelta(hours=24)).replace(tzinfo=None)
    assert entries["1h"].scheduled_for.replace(tzinfo=None) == (T0 + timedelta(hours=47)).replace(tzinfo=None)

    clock.now = T0 + timedelta(hours=24) - timedelta(minutes=2)
    report = await scheduler.sweep()

    assert report.fired == 1
    entries = _entries(appointment)
    assert entries["24h"].sent_at is not None
    assert entries["1h"].sent_at is None
    (notification,) = _notifications(user)
    assert notification.payload["reminderType"] == "24h"
    assert "tomorrow at 09:00" in notification.body
    assert "Sales" in notification.body


@pytest.mark.asyncio
async def test_sweep_just_after_due_time_fires(dispatcher, make_user, make_appointment):
    clock = FakeClock(T0)
    scheduler = _scheduler(dispatcher, clock)
    user = make_user()
    appointment = make_appointment(user, T0 + timedelta(hours=48))
    scheduler.schedule(appointment, T0 + timedelta(hours=48))

    clock.now = T0 + timedelta(hours=24, minutes=2)
    report = await scheduler.sweep()

    assert report.fired == 1
    assert _entries(appointment)["1h"].sent_at is None


def test_past_offsets_are_dropped(dispatcher, make_user, make_appointment):
    clock = FakeClock(T0)
    scheduler = _scheduler(dispatcher, clock)
    user = make_user()
    appointment = make_appointment(user, T0 + timedelta(hours=2))

    created = scheduler.schedule(appointment, T0 + timedelta(hours=2))

    assert [entry.kind for entry in created] == ["1h"]
    assert set(_entries(appointment)) == {"1h"}


def test_appointment_in_the_past_schedules_nothing(dispatcher, make_user, make_appointment):
    scheduler = _scheduler(dispatcher, FakeClock(T0))
    user = make_user()
    appointment = make_appointment(user, T0 - timedelta(hours=1))

    assert scheduler.schedule(appointment, T0 - timedelta(hours=1)) == []


def test_rescheduling_keeps_existing_entries(dispatcher, make_user, make_appointment):
    scheduler = _scheduler(dispatcher, FakeClock(T0))
    user = make_user()
    appointment = make_appointment(user, T0 + timedelta(hours=48))

    scheduler.schedule(appointment, T0 + timedelta(hours=48))
    assert scheduler.schedule(appointment, T0 + timedelta(hours=48)) == []
    assert len(_entries(appointment)) == 2


@pytest.mark.asyncio
async def test_overlapping_sweeps_fire_once(dispatcher, make_user, make_appointment):
    """Two schedulers (two processes) sweeping the same instant fire each entry once."""

    clock = FakeClock(T0)
    first = _scheduler(dispatcher, clock)
    second = _scheduler(dispatcher, clock)
    user = make_user()
    appointment = make_appointment(user, T0 + timedelta(hours=48))
    first.schedule(appointment, T0 + timedelta(hours=48))

    clock.now = T0 + timedelta(hours=24)
    reports = await asyncio.gather(first.sweep(), second.sweep())
    again = await first.sweep()

    assert sum(report.fired for report in reports) == 1
    assert again.fired == 0
    assert len(_notifications(user)) == 1


@pytest.mark.asyncio
async def test_non_confirmed_appointment_is_skipped(dispatcher, make_user, make_appointment):
    clock = FakeClock(T0)
    scheduler = _scheduler(dispatcher, clock)
    user = make_user()
    appointment = make_appointment(user, T0 + timedelta(hours=48), status=AppointmentStatus.CANCELLED.value)
    scheduler.schedule(appointment, T0 + timedelta(hours=48))

    clock.now = T0 + timedelta(hours=24)
    report = await scheduler.sweep()

    assert report.skipped == 1
    assert report.fired == 0
    assert _entries(appointment)["24h"].sent_at is not None
    assert _notifications(user) == []


@pytest.mark.asyncio
async def test_dispatch_failure_does_not_abort_sweep(make_user, make_appointment):
    """A failing entry is marked sent and not retried; the rest still fire."""

    clock = FakeClock(T0)
    user = make_user()
    broken = make_appointment(user, T0 + timedelta(hours=48))
    healthy = make_appointment(user, T0 + timedelta(hours=48, minutes=1))
    dispatcher = RecordingDispatcher(failing={broken})
    scheduler = _scheduler(dispatcher, clock)
    scheduler.schedule(broken, T0 + timedelta(hours=48))
    scheduler.schedule(healthy, T0 + timedelta(hours=48, minutes=1))

    clock.now = T0 + timedelta(hours=24)
    report = await scheduler.sweep()

    assert report.failed == 1
    assert report.fired == 1
    assert [notice.appointment_id for notice in dispatcher.published] == [healthy]
    assert _entries(broken)["24h"].sent_at is not None

    retry = await scheduler.sweep()
    assert retry.due == 0


@pytest.mark.asyncio
async def test_late_sweep_widens_lookback(make_user, make_appointment):
    """A sweep that runs late still covers everything since the previous sweep."""

    clock = FakeClock(T0)
    dispatcher = RecordingDispatcher()
    scheduler = _scheduler(dispatcher, clock)
    user = make_user()
    appointment = make_appointment(user, T0 + timedelta(hours=1, minutes=20))
    scheduler.schedule(appointment, T0 + timedelta(hours=1, minutes=20))

    first = await scheduler.sweep()
    assert first.due == 0

    clock.advance(timedelta(minutes=40))
    second = await scheduler.sweep()

    assert second.fired == 1
    assert dispatcher.published[0].reminder_kind == "1h"


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_sent_entries(dispatcher, make_user, make_appointment):
    clock = FakeClock(T0)
    scheduler = _scheduler(dispatcher, clock)
    user = make_user()
    old_sent = make_appointment(user, T0 - timedelta(days=9))
    recent_sent = make_appointment(user, T0 - timedelta(days=1))
    old_pending = make_appointment(user, T0 - timedelta(days=9))
    with SessionLocal() as db:
        db.add_all(
            [
                ReminderEntry(
                    appointment_id=old_sent, kind="24h", scheduled_for=T0 - timedelta(days=8), sent_at=T0
                ),
                ReminderEntry(
                    appointment_id=recent_sent, kind="24h", scheduled_for=T0 - timedelta(days=1), sent_at=T0
                ),
                ReminderEntry(appointment_id=old_pending, kind="24h", scheduled_for=T0 - timedelta(days=8)),
            ]
        )
        db.commit()

    assert await scheduler.cleanup() == 1
    assert _entries(old_sent) == {}
    assert "24h" in _entries(recent_sent)
    assert "24h" in _entries(old_pending)


def test_parse_offset():
    assert parse_offset("24h").hours == 24
    assert parse_offset("1h").delta == timedelta(hours=1)
    with pytest.raises(ValueError):
        parse_offset("tomorrow")


@pytest.mark.parametrize(
    "hours,phrase",
    [(24, "tomorrow"), (1, "in 1 hour"), (48, "in 2 days"), (6, "in 6 hours")],
)
def test_reminder_phrase(hours, phrase):
    assert reminder_phrase(hours) == phrase


def test_format_time():
    assert format_time(datetime(2026, 3, 2, 7, 5, tzinfo=timezone.utc)) == "07:05"


def test_zero_window_and_retention_are_kept(dispatcher):
    scheduler = ReminderScheduler(SessionLocal, dispatcher, window=timedelta(0), retention=timedelta(0))

    assert scheduler.window == timedelta(0)
    assert scheduler.retention == timedelta(0)
    assert ReminderScheduler(SessionLocal, dispatcher).window == timedelta(seconds=300)
