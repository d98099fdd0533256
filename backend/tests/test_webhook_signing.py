import hashlib
import hmac

import pytest

from eventhooks.application.services.signing import (
    canonical_json,
    generate_secret,
    sign,
    sign_bytes,
    signature_header_value,
    validate_secret,
    verify_signature,
)
from eventhooks.core.exceptions import ConfigurationError

SECRET = "0123456789abcdef" * 4


def test_canonical_json_is_key_order_independent():
    left = canonical_json({"b": 1, "a": {"d": 2, "c": 3}})
    right = canonical_json({"a": {"c": 3, "d": 2}, "b": 1})
    assert left == right == b'{"a":{"c":3,"d":2},"b":1}'


def test_sign_is_deterministic_and_sensitive_to_payload():
    payload = {"event_id": "e1", "data": {"amount": 100}}
    assert sign(payload, SECRET) == sign(payload, SECRET)
    assert sign(payload, SECRET) != sign({"event_id": "e1", "data": {"amount": 101}}, SECRET)
    assert sign(payload, SECRET) != sign(payload, "f" * 64)


def test_sign_matches_plain_hmac_over_sent_bytes():
    body = canonical_json({"hello": "world"})
    expected = hmac.new(SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()
    assert sign_bytes(body, SECRET) == expected
    assert signature_header_value(expected) == f"sha256={expected}"


def test_verify_signature_accepts_prefixed_and_bare_digests():
    body = canonical_json({"event_type": "user.created"})
    digest = sign_bytes(body, SECRET)

    assert verify_signature(body, f"sha256={digest}", SECRET)
    assert verify_signature(body, digest, SECRET)
    assert not verify_signature(body + b" ", f"sha256={digest}", SECRET)
    assert not verify_signature(body, "sha256=deadbeef", SECRET)
    assert not verify_signature(body, "", SECRET)


def test_generated_secrets_are_64_hex_chars_and_unique():
    first = generate_secret()
    second = generate_secret()
    assert validate_secret(first) == first
    assert len(first) == 64
    assert first != second


def test_validate_secret_rejects_malformed_values():
    for value in (None, "", "abc", "G" * 64, SECRET.upper()):
        with pytest.raises(ConfigurationError):
            validate_secret(value)
