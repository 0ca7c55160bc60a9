"""Build a signed MercadoPago-style `payment` webhook.

Prints the body and headers; with `--send` it POSTs them to a running
service. Handy for exercising the x-signature check locally.
"""

import argparse
import json
import time
from uuid import uuid4

import httpx

from vetpay.services.webhooks.signature import signature_header


def main() -> None:
    parser = argparse.ArgumentParser(description="Sign (and optionally send) a MercadoPago payment webhook.")
    parser.add_argument("intent_id", type=int)
    parser.add_argument("payment_id")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--request-id", default=None, help="x-request-id header (random when omitted)")
    parser.add_argument("--send", action="store_true", help="POST the webhook instead of only printing it")
    args = parser.parse_args()

    request_id = args.request_id or str(uuid4())
    body = {"type": "payment", "action": "payment.updated", "data": {"id": args.payment_id}}
    headers = {
        "x-signature": signature_header(args.payment_id, request_id, str(int(time.time())), args.secret),
        "x-request-id": request_id,
    }
    print(json.dumps({"body": body, "headers": headers}, indent=2))

    if args.send:
        url = f"{args.base_url}/payment-intents/{args.intent_id}/mercadopago/webhook"
        resp = httpx.post(url, json=body, headers=headers, timeout=10.0)
        print(f"status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
