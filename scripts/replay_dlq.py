"""List or replay dead-lettered saga events.

A replayed event keeps its original event_id and is keyed by payment id, so it
lands on the same partition and the consumer's inbox/step-log checks decide
what, if anything, is still left to do.
"""

import argparse
import asyncio
import json
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer


def _matches(envelope: dict, payment_id: str | None, event_id: str | None) -> bool:
    failed_event = envelope.get("payload", {}).get("failed_event") or {}
    if payment_id and envelope.get("aggregate_id") != payment_id:
        return False
    if event_id and failed_event.get("event_id") != event_id:
        return False
    return True


async def scan_dlq(
    bootstrap_servers: str,
    dlq_topic: str,
    payment_id: str | None,
    event_id: str | None,
    replay: bool,
    dry_run: bool,
    timeout_seconds: int,
) -> int:
    """Walk the DLQ from the beginning; print matches and optionally replay them."""

    if replay and not payment_id and not event_id:
        raise ValueError("Replaying needs --payment-id or --event-id")

    consumer = AIOKafkaConsumer(
        dlq_topic,
        bootstrap_servers=bootstrap_servers,
        group_id=f"dlq-inspect-{uuid4()}",
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers) if replay and not dry_run else None
    await consumer.start()
    if producer:
        await producer.start()
    matched = 0
    try:
        deadline = asyncio.get_running_loop().time() + timeout_seconds
        while asyncio.get_running_loop().time() < deadline:
            results = await consumer.getmany(timeout_ms=1000, max_records=200)
            if not results:
                break
            for _, messages in results.items():
                for msg in messages:
                    envelope = json.loads(msg.value.decode("utf-8"))
                    if not _matches(envelope, payment_id, event_id):
                        continue
                    matched += 1
                    payload = envelope.get("payload", {})
                    failed_event = payload.get("failed_event")
                    print(
                        f"payment_id={envelope.get('aggregate_id')} error_type={payload.get('error_type')} "
                        f"reason={payload.get('reason')!r} replay_topic={payload.get('replay_topic')}"
                    )
                    if not replay:
                        continue
                    if not payload.get("replay_topic") or not isinstance(failed_event, dict):
                        print("  not replayable (missing replay_topic/failed_event)")
                        continue
                    if dry_run:
                        print("  dry run; not published")
                        continue
                    await producer.send_and_wait(
                        payload["replay_topic"],
                        json.dumps(failed_event).encode("utf-8"),
                        key=str(failed_event.get("aggregate_id", "")).encode("utf-8"),
                    )
                    print(f"  replayed event_id={failed_event.get('event_id')}")
        if not matched:
            print("No matching DLQ events.")
            return 1
        return 0
    finally:
        await consumer.stop()
        if producer:
            await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect or replay dead-lettered saga events.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--dlq-topic", default="checkout.completed.dlq")
    parser.add_argument("--payment-id", default=None)
    parser.add_argument("--event-id", default=None, help="event_id of the original failed event")
    parser.add_argument("--replay", action="store_true", help="publish matches back to their source topic")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--timeout-seconds", type=int, default=30)
    args = parser.parse_args()

    rc = asyncio.run(
        scan_dlq(
            bootstrap_servers=args.bootstrap_servers,
            dlq_topic=args.dlq_topic,
            payment_id=args.payment_id,
            event_id=args.event_id,
            replay=args.replay,
            dry_run=args.dry_run,
            timeout_seconds=args.timeout_seconds,
        )
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
