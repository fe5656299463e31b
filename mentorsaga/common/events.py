"""Kafka envelope + producer/consumer helpers.

This module standardizes event structure, metadata propagation, and resilient
consumer loops used by every service.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from mentorsaga.common.config import settings
from mentorsaga.common.errors import TransientExternalError
from mentorsaga.common.logging import bound_context, logger
from mentorsaga.common.metrics import dlq_published_total, event_queue_delay_seconds, retries_total


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


class KafkaBus:
    """Lazy Kafka producer wrapper used by service outbox publishers."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        # Keyed by aggregate so every event for one payment lands on one partition.
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

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
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    delay_seconds = max(
        0.0,
        (datetime.now(timezone.utc) - occurred_at.astimezone(timezone.utc)).total_seconds(),
    )
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def _dead_letter(bus: KafkaBus, topic: str, event: EventEnvelope, error_type: str, reason: str) -> None:
    """Park an envelope on `<topic>.dlq` in the shape `scripts/replay_dlq.py` expects."""

    dlq_topic = f"{topic}.dlq"
    await bus.publish(
        dlq_topic,
        EventEnvelope(
            event_type=dlq_topic,
            aggregate_id=event.aggregate_id,
            trace_id=event.trace_id,
            payload={
                "reason": reason,
                "error_type": error_type,
                "retryable": error_type == "RETRY_EXHAUSTED",
                "source": settings.service_name,
                "source_event_id": event.event_id,
                "replay_topic": topic,
                "failed_event": event.model_dump(),
            },
        ),
    )
    dlq_published_total.labels(service=settings.service_name, topic=dlq_topic, error_type=error_type).inc()


async def dispatch_with_retry(topic: str, event: EventEnvelope, handler, bus: KafkaBus) -> None:
    """Run `handler` with bounded exponential backoff on transient failures.

    Exhausted or non-transient failures go to the topic's DLQ so the offset can
    still be committed.
    """

    max_attempts = settings.consumer_max_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            await handler(event)
            return
        except TransientExternalError as exc:
            if attempt == max_attempts:
                logger.error("handler_retry_exhausted topic=%s attempts=%s error=%s", topic, attempt, exc)
                await _dead_letter(bus, topic, event, "RETRY_EXHAUSTED", str(exc))
                return
            backoff_seconds = 2 ** (attempt - 1)
            retries_total.labels(service=settings.service_name, dependency=topic).inc()
            logger.warning(
                "handler_transient_error topic=%s attempt=%s backoff_s=%s error=%s",
                topic,
                attempt,
                backoff_seconds,
                exc,
            )
            await asyncio.sleep(backoff_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("handler_error topic=%s error=%s", topic, exc)
            await _dead_letter(bus, topic, event, "NON_RETRYABLE", str(exc))
            return


async def consume_forever(topic: str, group_id: str, handler, bus: KafkaBus | None = None) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Offsets are committed per batch only after every message in it was handled
    or dead-lettered, so delivery is at-least-once.
    """

    bus = bus or KafkaBus()
    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for _, messages in results.items():
                    for msg in messages:
                        try:
                            event = EventEnvelope(**json.loads(msg.value.decode("utf-8")))
                        except (ValueError, TypeError) as exc:
                            logger.error(
                                "undecodable_message topic=%s offset=%s error=%s", topic, msg.offset, exc
                            )
                            continue
                        _observe_delay(topic, event)
                        with bound_context(
                            trace_id=event.trace_id, event_id=event.event_id, payment_id=event.aggregate_id
                        ):
                            logger.info(
                                "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
                                topic,
                                group_id,
                                event.event_type,
                                event.aggregate_id,
                            )
                            await dispatch_with_retry(topic, event, handler, bus)
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)
