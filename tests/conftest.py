"""Shared fixtures: SQLite database, fake push provider, fake transports.

Environment is set before any `dealerhub` import because settings, engine and
the app are built at import time.
"""

import asyncio
import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone

_DB_DIR = tempfile.mkdtemp(prefix="dealerhub-tests-")
os.environ["POSTGRES_DSN"] = f"sqlite+pysqlite:///{_DB_DIR}/notification.db"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["KAFKA_CONSUMERS_ENABLED"] = "false"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""
os.environ["FIREBASE_PROJECT_ID"] = ""
os.environ["REDIS_URL"] = "redis://127.0.0.1:1/0"

import jwt  # noqa: E402
import pytest  # noqa: E402

from dealerhub.common.config import settings  # noqa: E402
from dealerhub.common.db import Base, SessionLocal, engine  # noqa: E402
from dealerhub.common.identity import IdentityVerifier  # noqa: E402
from dealerhub.services.notification.devices import DeviceRegistry  # noqa: E402
from dealerhub.services.notification.dispatcher import NotificationDispatcher  # noqa: E402
from dealerhub.services.notification.gateway import DeliveryGateway, TargetOutcome  # noqa: E402
from dealerhub.services.notification.inbox import InboxStore  # noqa: E402
from dealerhub.services.notification.models import (  # noqa: E402
    Appointment,
    AppointmentStatus,
    Department,
    User,
)
from dealerhub.services.notification.realtime import RealtimeSessionRegistry  # noqa: E402

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakePushProvider:
    """Records batches; outcome per identifier is driven by the invalid/transient sets."""

    name = "fake"

    def __init__(self, invalid=(), transient=(), fail_batches: bool = False) -> None:
        self.invalid = set(invalid)
        self.transient = set(transient)
        self.fail_batches = fail_batches
        self.batches: list[list[str]] = []
        self.messages: list[tuple[str, str, dict]] = []

    def send_batch(self, identifiers, title, body, data):
        self.batches.append(list(identifiers))
        self.messages.append((title, body, data))
        if self.fail_batches:
            raise ConnectionError("provider unreachable")
        outcomes = []
        for identifier in identifiers:
            if identifier in self.invalid:
                outcomes.append(TargetOutcome(identifier, success=False, permanent=True, error="unregistered"))
            elif identifier in self.transient:
                outcomes.append(TargetOutcome(identifier, success=False, permanent=False, error="unavailable"))
            else:
                outcomes.append(TargetOutcome(identifier, success=True))
        return outcomes


class FakeTransport:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.sent: list[dict] = []

    async def send_json(self, data) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def make_token(principal_id: str, role: str = "USER", claim: str = "userId", **extra) -> str:
    return jwt.encode({claim: principal_id, "role": role, **extra}, settings.jwt_secret, algorithm="HS256")


def device_token(seed: str) -> str:
    """Registration tokens are long; pad to a realistic length."""

    return (seed + "-" + "x" * 64)[:80]


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def make_user():
    counter = itertools.count(1)

    def _make(name: str | None = None, role: str = "USER", is_active: bool = True) -> str:
        n = next(counter)
        with SessionLocal() as db:
            user = User(
                name=name or f"User {n}",
                email=f"user{n}@example.com",
                role=role,
                is_active=is_active,
            )
            db.add(user)
            db.commit()
            return user.id

    return _make


@pytest.fixture
def make_appointment():
    def _make(
        user_id: str,
        date_time: datetime,
        status: str = AppointmentStatus.CONFIRMED.value,
        department: str = "Service",
    ) -> str:
        with SessionLocal() as db:
            dept = Department(name=department)
            db.add(dept)
            db.flush()
            appointment = Appointment(user_id=user_id, department_id=dept.id, date_time=date_time, status=status)
            db.add(appointment)
            db.commit()
            return appointment.id

    return _make


@pytest.fixture
def provider():
    return FakePushProvider()


@pytest.fixture
def verifier():
    return IdentityVerifier()


@pytest.fixture
def registry(verifier):
    return RealtimeSessionRegistry(verifier, send_timeout=0.2)


@pytest.fixture
def inbox():
    return InboxStore(SessionLocal)


@pytest.fixture
def devices():
    return DeviceRegistry(SessionLocal)


@pytest.fixture
def gateway(provider):
    return DeliveryGateway(provider)


@pytest.fixture
def dispatcher(inbox, devices, gateway, registry):
    return NotificationDispatcher(SessionLocal, inbox, devices, gateway, registry)
