import hashlib
import hmac

from chatcore.webhooks.signing import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    compute_signature,
    signed_headers,
    verify_signature,
)


def test_signature_binds_timestamp_and_body() -> None:
    body = '{"id":"evt_1"}'
    expected = hmac.new(b"s3cret", b"1700000000." + body.encode(), hashlib.sha256).hexdigest()
    assert compute_signature("s3cret", 1700000000, body) == expected
    assert compute_signature("s3cret", 1700000001, body) != expected


def test_verify_signature_round_trip_and_tamper() -> None:
    body = '{"id":"evt_1"}'
    signature = compute_signature("s3cret", 1700000000, body)
    assert verify_signature("s3cret", "1700000000", body, signature.upper()) is True
    assert verify_signature("s3cret", 1700000000, body + " ", signature) is False
    assert verify_signature("other", 1700000000, body, signature) is False


def test_signed_headers_carry_event_and_timestamp() -> None:
    headers = signed_headers("s3cret", "chat.turn.completed", "{}", 1700000000)
    assert headers[EVENT_HEADER] == "chat.turn.completed"
    assert headers[TIMESTAMP_HEADER] == "1700000000"
    assert headers[SIGNATURE_HEADER] == compute_signature("s3cret", 1700000000, "{}")
    assert headers["Content-Type"] == "application/json"
