"""Fetch and print one payment intent (with its transactions) as JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for inspecting an intent on a running service."""

    parser = argparse.ArgumentParser(description="Print a payment intent and its transaction history.")
    parser.add_argument("intent_id", type=int)
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()

    resp = httpx.get(f"{args.base_url}/payment-intents/{args.intent_id}", timeout=10.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
