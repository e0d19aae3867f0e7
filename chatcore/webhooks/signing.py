"""Webhook request signing.

The signature is ``hex(HMAC-SHA256(secret, "<unix_timestamp>.<raw_body>"))`` so
it binds both the payload and the send time. Receivers recompute it and
apply their own clock-skew policy.
"""

import hashlib
import hmac

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
EVENT_HEADER = "X-Event"
USER_AGENT = "chatcore-webhooks/0.1"


def compute_signature(secret: str, timestamp: int | str, body: str | bytes) -> str:
    raw_body = body.encode("utf-8") if isinstance(body, str) else body
    message = str(timestamp).encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str, timestamp: int | str, body: str | bytes, signature: str
) -> bool:
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected, signature.strip().lower())


def signed_headers(secret: str, event_type: str, body: str, timestamp: int) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        SIGNATURE_HEADER: compute_signature(secret, timestamp, body),
        TIMESTAMP_HEADER: str(timestamp),
        EVENT_HEADER: event_type,
    }
