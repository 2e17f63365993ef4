"""Run one reminder sweep or cleanup outside the service process.

Uses the same settings as the service (POSTGRES_DSN etc.). Push runs inline
because no background queue is started here.
"""

import argparse
import asyncio

from dealerhub.common.config import settings
from dealerhub.common.db import SessionLocal
from dealerhub.common.identity import IdentityVerifier
from dealerhub.common.logging import configure_logging
from dealerhub.services.notification.devices import DeviceRegistry
from dealerhub.services.notification.dispatcher import NotificationDispatcher
from dealerhub.services.notification.gateway import DeliveryGateway, FirebasePushProvider
from dealerhub.services.notification.inbox import InboxStore
from dealerhub.services.notification.realtime import RealtimeSessionRegistry
from dealerhub.services.notification.reminders import ReminderScheduler


async def run(job: str) -> None:
    dispatcher = NotificationDispatcher(
        SessionLocal,
        InboxStore(SessionLocal),
        DeviceRegistry(SessionLocal),
        DeliveryGateway(FirebasePushProvider.from_settings(), batch_size=settings.push_batch_size),
        RealtimeSessionRegistry(IdentityVerifier()),
    )
    scheduler = ReminderScheduler(SessionLocal, dispatcher)
    if job == "sweep":
        report = await scheduler.sweep()
        print(
            f"due={report.due} fired={report.fired} skipped={report.skipped} "
            f"failed={report.failed} claimed_elsewhere={report.claimed_elsewhere}"
        )
    else:
        print(f"cleaned={await scheduler.cleanup()}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one reminder job now.")
    parser.add_argument("job", choices=["sweep", "cleanup"])
    args = parser.parse_args()

    configure_logging()
    asyncio.run(run(args.job))


if __name__ == "__main__":
    main()
