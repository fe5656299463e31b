"""Report payments whose booking saga never reached a terminal step."""

import argparse
import json

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="List stuck booking sagas from the reconciliation service.")
    parser.add_argument("--reconciliation-url", default="http://localhost:8003")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--older-than-minutes", type=int, default=15)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.reconciliation_url}/sagas/stuck",
        params={"older_than_minutes": args.older_than_minutes},
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    items = resp.json()["items"]
    print(json.dumps(items, indent=2, default=str))
    # Non-zero exit so cron/CI can alert on it.
    raise SystemExit(1 if items else 0)


if __name__ == "__main__":
    main()
