"""Push delivery gateway.

The gateway chunks targets into provider-sized batches, issues one provider
call per batch and accumulates per-target outcomes. It never retries. With no
provider configured it is a no-op that reports zero successes and failures.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from dealerhub.common.config import settings
from dealerhub.common.errors import DeliveryError
from dealerhub.common.logging import logger
from dealerhub.common.metrics import push_batches_total, push_delivery_total

FCM_MULTICAST_LIMIT = 500


@dataclass(frozen=True)
class TargetOutcome:
    identifier: str
    success: bool
    permanent: bool = False
    error: str | None = None


@dataclass
class DeliveryReport:
    success_count: int = 0
    failure_count: int = 0
    invalid_targets: list[str] = field(default_factory=list)

    def merge(self, other: "DeliveryReport") -> "DeliveryReport":
        return DeliveryReport(
            success_count=self.success_count + other.success_count,
            failure_count=self.failure_count + other.failure_count,
            invalid_targets=self.invalid_targets + other.invalid_targets,
        )


class PushProvider(Protocol):
    name: str

    def send_batch(
        self, identifiers: list[str], title: str, body: str, data: dict[str, str]
    ) -> list[TargetOutcome]:
        """Send one multicast; one outcome per identifier, in order."""
        ...


class FirebasePushProvider:
    """Firebase Cloud Messaging via the Admin SDK multicast API."""

    name = "fcm"
    # Error codes meaning the registration token will never work again.
    PERMANENT_CODES = frozenset({"UNREGISTERED", "SENDER_ID_MISMATCH", "NOT_FOUND"})

    def __init__(self, app) -> None:
        self.app = app

    @classmethod
    def from_settings(cls) -> "FirebasePushProvider | None":
        if not (settings.firebase_project_id and settings.firebase_private_key and settings.firebase_client_email):
            logger.warning("firebase credentials not configured, push notifications disabled")
            return None
        try:
            cert = credentials.Certificate(
                {
                    "type": "service_account",
                    "project_id": settings.firebase_project_id,
                    "private_key": settings.firebase_private_key.replace("\\n", "\n"),
                    "client_email": settings.firebase_client_email,
                    "token_uri": "https://oauth2.googleapis.com/token",
                }
            )
            try:
                app = firebase_admin.get_app()
            except ValueError:
                app = firebase_admin.initialize_app(cert)
        except (ValueError, exceptions.FirebaseError) as exc:
            # Inbox, realtime and reminders keep running without push.
            logger.warning(
                "firebase initialization failed, push notifications disabled project=%s error=%s",
                settings.firebase_project_id,
                exc,
            )
            return None
        logger.info("firebase admin sdk initialized project=%s", settings.firebase_project_id)
        return cls(app)

    def _classify(self, identifier: str, exc: Exception | None) -> TargetOutcome:
        code = getattr(exc, "code", None)
        permanent = isinstance(exc, (messaging.UnregisteredError, messaging.SenderIdMismatchError))
        if not permanent and code == "INVALID_ARGUMENT":
            # Malformed registration tokens are reported as invalid arguments.
            permanent = "registration token" in str(exc).lower()
        elif not permanent and code:
            permanent = str(code).upper() in self.PERMANENT_CODES
        return TargetOutcome(identifier=identifier, success=False, permanent=permanent, error=str(exc))

    def send_batch(
        self, identifiers: list[str], title: str, body: str, data: dict[str, str]
    ) -> list[TargetOutcome]:
        message = messaging.MulticastMessage(
            tokens=identifiers,
            notification=messaging.Notification(title=title, body=body),
            data=data or None,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(channel_id="high_importance_channel", sound="default"),
            ),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1, content_available=True))
            ),
        )
        try:
            response = messaging.send_each_for_multicast(message, app=self.app)
        except exceptions.FirebaseError as exc:
            raise DeliveryError(str(exc), provider=self.name, error_code=getattr(exc, "code", None)) from exc
        outcomes = []
        for identifier, result in zip(identifiers, response.responses):
            if result.success:
                outcomes.append(TargetOutcome(identifier=identifier, success=True))
            else:
                outcomes.append(self._classify(identifier, result.exception))
        return outcomes


def stringify_data(data: dict[str, Any] | None) -> dict[str, str]:
    """Provider data payloads only carry strings."""

    return {str(key): "" if value is None else str(value) for key, value in (data or {}).items()}


class DeliveryGateway:
    """Batched, best-effort push delivery."""

    def __init__(self, provider: PushProvider | None, batch_size: int = FCM_MULTICAST_LIMIT) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.provider = provider
        self.batch_size = min(batch_size, FCM_MULTICAST_LIMIT)

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def send(
        self,
        targets: list[str],
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> DeliveryReport:
        """Deliver to every target; returns summed counts and permanently invalid identifiers."""

        unique_targets = list(dict.fromkeys(target for target in targets if target))
        if self.provider is None:
            logger.debug("push provider not configured, skipping targets=%s", len(unique_targets))
            return DeliveryReport()
        if not unique_targets:
            return DeliveryReport()

        payload = stringify_data(data)
        report = DeliveryReport()
        for start in range(0, len(unique_targets), self.batch_size):
            batch = unique_targets[start : start + self.batch_size]
            report = report.merge(await self._send_batch(batch, title, body, payload))
        logger.info(
            "push delivered targets=%s success=%s failure=%s invalid=%s",
            len(unique_targets),
            report.success_count,
            report.failure_count,
            len(report.invalid_targets),
        )
        return report

    async def _send_batch(self, batch: list[str], title: str, body: str, data: dict[str, str]) -> DeliveryReport:
        try:
            outcomes = await asyncio.to_thread(self.provider.send_batch, batch, title, body, data)
        except Exception as exc:
            push_batches_total.labels(result="error").inc()
            push_delivery_total.labels(outcome="transient").inc(len(batch))
            logger.error(
                "push batch failed provider=%s size=%s title=%s error=%s",
                self.provider.name,
                len(batch),
                title,
                exc,
            )
            return DeliveryReport(failure_count=len(batch))

        push_batches_total.labels(result="ok").inc()
        report = DeliveryReport()
        for outcome in outcomes:
            if outcome.success:
                report.success_count += 1
                push_delivery_total.labels(outcome="success").inc()
                continue
            report.failure_count += 1
            if outcome.permanent:
                report.invalid_targets.append(outcome.identifier)
                push_delivery_total.labels(outcome="invalid").inc()
            else:
                push_delivery_total.labels(outcome="transient").inc()
                logger.warning("push target failed transiently error=%s", outcome.error)
        # Targets the provider did not report on count as failures.
        missing = len(batch) - len(outcomes)
        if missing > 0:
            report.failure_count += missing
        return report
