"""Unit tests for payload serialization and signatures."""

import hashlib
import hmac
import json

from hookline.webhooks.signing import compute_signature, serialize_payload, verify_signature

ENVELOPE = {
    "event": "call.completed",
    "event_id": "call_123",
    "timestamp": "2024-06-01T12:00:00.000Z",
    "data": {"caller": "Zoë", "duration": 42, "tags": ["vip", "inbound"]},
}


class TestSerializePayload:
    """Tests for serialize_payload."""

    def test_compact_and_ordered(self):
        """No insignificant whitespace, key order preserved."""
        body = serialize_payload({"b": 1, "a": [1, 2]})
        assert body == b'{"b":1,"a":[1,2]}'

    def test_non_ascii_left_unescaped(self):
        """Non-ASCII characters are sent as UTF-8, not \\u escapes."""
        body = serialize_payload(ENVELOPE)
        assert "Zoë".encode() in body
        assert b"\\u" not in body

    def test_round_trips_to_same_value(self):
        assert json.loads(serialize_payload(ENVELOPE)) == ENVELOPE


class TestComputeSignature:
    """Tests for compute_signature."""

    def test_hex_hmac_sha256(self):
        """Signature is the plain hex HMAC-SHA256 digest."""
        body = serialize_payload(ENVELOPE)
        expected = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        assert compute_signature(body, "secret") == expected
        assert len(expected) == 64

    def test_deterministic(self):
        body = serialize_payload(ENVELOPE)
        assert compute_signature(body, "secret") == compute_signature(body, "secret")

    def test_str_and_bytes_agree(self):
        body = serialize_payload(ENVELOPE)
        assert compute_signature(body.decode("utf-8"), "k") == compute_signature(body, "k")

    def test_any_byte_change_changes_signature(self):
        body = serialize_payload(ENVELOPE)
        original = compute_signature(body, "secret")
        for index in (0, len(body) // 2, len(body) - 1):
            mutated = bytearray(body)
            mutated[index] ^= 0x01
            assert compute_signature(bytes(mutated), "secret") != original


class TestVerifySignature:
    """Tests for verify_signature."""

    def test_valid_signature(self):
        body = serialize_payload(ENVELOPE)
        assert verify_signature(body, "secret", compute_signature(body, "secret"))

    def test_wrong_secret_fails(self):
        body = serialize_payload(ENVELOPE)
        assert not verify_signature(body, "other", compute_signature(body, "secret"))

    def test_tampered_body_fails(self):
        body = serialize_payload(ENVELOPE)
        signature = compute_signature(body, "secret")
        assert not verify_signature(body.replace(b"42", b"43"), "secret", signature)

    def test_receiver_reserialization_matches(self):
        """A receiver re-serializing the parsed body compactly gets the same bytes."""
        body = serialize_payload(ENVELOPE)
        received = json.loads(body)
        reserialized = json.dumps(received, separators=(",", ":"), ensure_ascii=False)
        assert verify_signature(reserialized, "secret", compute_signature(body, "secret"))
