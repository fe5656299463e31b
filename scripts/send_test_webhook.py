"""Sign a JSON payload and POST it to a local webhook endpoint.

Useful for replay and duplicate-delivery testing against the payments and
scheduling services without the real providers.
"""

import argparse
import hashlib
import hmac
import json
import time
from pathlib import Path

import httpx


def stripe_signature_header(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """Build a `Stripe-Signature` header value (`t=...,v1=...`)."""

    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def scheduling_signature_header(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def main() -> None:
    parser = argparse.ArgumentParser(description="POST a signed webhook to a local service.")
    parser.add_argument("--provider", choices=["stripe", "scheduling"], required=True)
    parser.add_argument("--url", default=None, help="Override the target URL")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--file", dest="json_file", required=True, help="Path to JSON payload")
    parser.add_argument("--repeat", type=int, default=1, help="Send the same delivery N times")
    args = parser.parse_args()

    body = json.dumps(json.loads(Path(args.json_file).read_text())).encode("utf-8")
    if args.provider == "stripe":
        url = args.url or "http://localhost:8001/webhooks/stripe"
        headers = {"stripe-signature": stripe_signature_header(args.secret, body)}
    else:
        url = args.url or "http://localhost:8002/webhooks/scheduling"
        headers = {"x-cal-signature-256": scheduling_signature_header(args.secret, body)}
    headers["content-type"] = "application/json"

    for attempt in range(1, args.repeat + 1):
        resp = httpx.post(url, content=body, headers=headers, timeout=10.0)
        print(f"attempt={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
