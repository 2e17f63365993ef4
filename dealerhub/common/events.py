"""Kafka envelope + producer/consumer helpers.

Business services publish dealership domain events with this envelope; the
notification service consumes them and turns them into notices.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from itertools import chain
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field, ValidationError

from dealerhub.common.config import settings
from dealerhub.common.logging import bound, logger
from dealerhub.common.metrics import event_queue_delay_seconds, events_consumed_total

CONSUMER_RESTART_DELAY_SECONDS = 2.0
CONSUMER_BATCH_SIZE = 50


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    payload: dict[str, Any]


EventHandler = Callable[[EventEnvelope], Awaitable[object]]


class KafkaBus:
    """Lazy Kafka producer wrapper."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(topic, event.model_dump_json().encode("utf-8"))

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()


async def _start_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Consumer with manual commits; offsets move only after a batch is handled."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def _observe_delay(topic: str, event: EventEnvelope) -> None:
    try:
        occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    except ValueError:
        return
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def handle_record(topic: str, record, handler: EventHandler) -> str:
    """Decode one Kafka record and run `handler`; returns the outcome label.

    A record that cannot be decoded or whose handler raises is logged and
    counted, never re-raised, so one bad event cannot stall its partition.
    """

    try:
        event = EventEnvelope.model_validate_json(record.value)
    except ValidationError as exc:
        outcome = "undecodable"
        logger.error("event undecodable topic=%s offset=%s error=%s", topic, record.offset, exc)
    else:
        _observe_delay(topic, event)
        with bound(trace_id=event.trace_id, event_id=event.event_id):
            logger.info(
                "event received topic=%s event_type=%s aggregate_id=%s", topic, event.event_type, event.aggregate_id
            )
            try:
                await handler(event)
                outcome = "handled"
            except Exception as exc:
                outcome = "failed"
                logger.exception(
                    "event handler failed topic=%s offset=%s event_type=%s error=%s",
                    topic,
                    record.offset,
                    event.event_type,
                    exc,
                )
    events_consumed_total.labels(topic=topic, outcome=outcome).inc()
    return outcome


async def consume_forever(topic: str, group_id: str, handler: EventHandler) -> None:
    """Consume `topic` until cancelled, restarting the consumer after broker errors."""

    while True:
        consumer = None
        try:
            consumer = await _start_consumer(topic, group_id)
            logger.info("consumer started topic=%s group=%s", topic, group_id)
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=CONSUMER_BATCH_SIZE)
                for record in chain.from_iterable(batches.values()):
                    await handle_record(topic, record, handler)
                if batches:
                    await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "consumer restarting topic=%s group=%s delay=%ss error=%s",
                topic,
                group_id,
                CONSUMER_RESTART_DELAY_SECONDS,
                exc,
            )
            await asyncio.sleep(CONSUMER_RESTART_DELAY_SECONDS)
        finally:
            if consumer is not None:
                await consumer.stop()
