"""Publish one dealership domain event to its Kafka topic.

Useful for exercising the notification consumers and duplicate-event handling
without the dealership backend.
"""

import argparse
import asyncio
import json
from pathlib import Path

from dealerhub.common.events import EventEnvelope, KafkaBus

TOPIC_BY_PREFIX = {
    "user": "dealership.users",
    "appointment": "dealership.appointments",
    "breakdown": "dealership.breakdowns",
}


async def publish(bootstrap_servers: str, event: EventEnvelope) -> str:
    """Route the envelope by event type prefix and publish it."""

    topic = TOPIC_BY_PREFIX.get(event.event_type.split(".", 1)[0])
    if topic is None:
        raise SystemExit(f"No topic for event type {event.event_type!r}")
    bus = KafkaBus(bootstrap_servers)
    try:
        await bus.publish(topic, event)
    finally:
        await bus.close()
    return topic


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish a dealership event for the notification service.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--event-type", required=True, help="e.g. appointment.confirmed")
    parser.add_argument("--aggregate-id", required=True)
    parser.add_argument("--event-id", default=None, help="Reuse an id to test duplicate skipping")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON payload file")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")
    payload = json.loads(args.json_inline) if args.json_inline else json.loads(Path(args.json_file).read_text())

    fields = {"event_type": args.event_type, "aggregate_id": args.aggregate_id, "payload": payload}
    if args.event_id:
        fields["event_id"] = args.event_id
    event = EventEnvelope(**fields)

    topic = asyncio.run(publish(args.bootstrap_servers, event))
    print(f"Published event_id={event.event_id} to topic={topic}")


if __name__ == "__main__":
    main()
