"""Push gateway batching, outcome classification and no-op behavior."""

import pytest
from firebase_admin import exceptions, messaging

from conftest import FakePushProvider
from dealerhub.common.config import settings
from dealerhub.services.notification.gateway import (
    DeliveryGateway,
    FirebasePushProvider,
    stringify_data,
)


@pytest.mark.asyncio
async def test_batch_counts_sum_to_aggregate():
    """Per-batch outcomes add up to the returned report."""

    provider = FakePushProvider(invalid={"t2"}, transient={"t4"})
    gateway = DeliveryGateway(provider, batch_size=2)

    report = await gateway.send(["t1", "t2", "t3", "t4", "t5"], "Hello", "World", {"n": 1})

    assert [len(batch) for batch in provider.batches] == [2, 2, 1]
    assert report.success_count == 3
    assert report.failure_count == 2
    assert report.success_count + report.failure_count == 5
    assert report.invalid_targets == ["t2"]


@pytest.mark.asyncio
async def test_without_provider_is_noop():
    report = await DeliveryGateway(None).send(["t1", "t2"], "Hello", "World")

    assert report.success_count == 0
    assert report.failure_count == 0
    assert report.invalid_targets == []


@pytest.mark.asyncio
async def test_failed_batch_counts_every_target_as_failed():
    """A provider exception fails the batch but never marks targets invalid."""

    provider = FakePushProvider(fail_batches=True)
    gateway = DeliveryGateway(provider, batch_size=2)

    report = await gateway.send(["t1", "t2", "t3"], "Hello", "World")

    assert len(provider.batches) == 2
    assert report.success_count == 0
    assert report.failure_count == 3
    assert report.invalid_targets == []


@pytest.mark.asyncio
async def test_duplicate_and_blank_targets_are_collapsed():
    provider = FakePushProvider()
    report = await DeliveryGateway(provider).send(["t1", "", "t1", "t2"], "Hello", "World")

    assert provider.batches == [["t1", "t2"]]
    assert report.success_count == 2


@pytest.mark.asyncio
async def test_empty_target_list_skips_provider():
    provider = FakePushProvider()
    report = await DeliveryGateway(provider).send([], "Hello", "World")

    assert provider.batches == []
    assert report.success_count == 0


def test_batch_size_is_capped_at_provider_limit():
    assert DeliveryGateway(FakePushProvider(), batch_size=2000).batch_size == 500
    with pytest.raises(ValueError):
        DeliveryGateway(FakePushProvider(), batch_size=0)


@pytest.mark.asyncio
async def test_data_payload_is_stringified():
    provider = FakePushProvider()
    await DeliveryGateway(provider).send(["t1"], "Hello", "World", {"latitude": 51.5, "reason": None})

    _, _, data = provider.messages[0]
    assert data == {"latitude": "51.5", "reason": ""}
    assert stringify_data(None) == {}


def test_firebase_classifies_unregistered_as_permanent():
    fcm = FirebasePushProvider(app=None)

    outcome = fcm._classify("t1", messaging.UnregisteredError("Requested entity was not found."))

    assert outcome.success is False
    assert outcome.permanent is True


def test_firebase_classifies_malformed_token_as_permanent():
    fcm = FirebasePushProvider(app=None)

    outcome = fcm._classify(
        "t1", exceptions.InvalidArgumentError("The registration token is not a valid FCM registration token")
    )

    assert outcome.permanent is True


def test_firebase_classifies_unavailable_as_transient():
    fcm = FirebasePushProvider(app=None)

    outcome = fcm._classify("t1", exceptions.UnavailableError("try again later"))

    assert outcome.permanent is False
    assert outcome.error == "try again later"


def test_firebase_disabled_without_credentials():
    assert FirebasePushProvider.from_settings() is None


def test_firebase_disabled_with_malformed_key(monkeypatch):
    """A broken service-account key disables push instead of failing startup."""

    monkeypatch.setattr(settings, "firebase_project_id", "dealerhub-test")
    monkeypatch.setattr(settings, "firebase_client_email", "push@dealerhub-test.iam.gserviceaccount.com")
    monkeypatch.setattr(settings, "firebase_private_key", "not-a-pem-key")

    assert FirebasePushProvider.from_settings() is None
    assert DeliveryGateway(FirebasePushProvider.from_settings()).enabled is False
