"""MercadoPago `x-signature` webhook verification.

The header looks like `ts=1704908010,v1=618c8534...`. `v1` is the hex
HMAC-SHA256, keyed with the webhook secret, of the manifest

    id:{data.id};request-id:{x-request-id};ts:{ts};

where the `request-id` part is left out when the request carried no
`x-request-id` header, and an alphanumeric `data.id` is lower-cased.
"""

import hashlib
import hmac
import re

from vetpay.common.errors import SignatureError


ALPHANUMERIC_RE = re.compile(r"^[a-zA-Z0-9]+$")


def parse_signature_header(header: str | None) -> tuple[str, str]:
    """Return `(ts, v1)` from an `x-signature` header."""

    if not header:
        raise SignatureError("missing x-signature header")
    ts = None
    digest = None
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        key = key.strip()
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            digest = value.strip()
    if not ts or not digest:
        raise SignatureError("x-signature header must carry ts and v1")
    return ts, digest


def build_manifest(data_id: str, request_id: str | None, ts: str) -> str:
    manifest_id = data_id.lower() if ALPHANUMERIC_RE.match(data_id) else data_id
    parts = [f"id:{manifest_id}"]
    if request_id:
        parts.append(f"request-id:{request_id}")
    parts.append(f"ts:{ts}")
    return ";".join(parts) + ";"


def sign_manifest(manifest: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(header: str | None, data_id: str, request_id: str | None, secret: str) -> None:
    """Raise `SignatureError` unless `header` signs this notification."""

    ts, digest = parse_signature_header(header)
    expected = sign_manifest(build_manifest(data_id, request_id, ts), secret)
    if not hmac.compare_digest(expected, digest):
        raise SignatureError("x-signature mismatch")


def signature_header(data_id: str, request_id: str | None, ts: str, secret: str) -> str:
    """Build a valid header; used by tests and the local signing script."""

    return f"ts={ts},v1={sign_manifest(build_manifest(data_id, request_id, ts), secret)}"
