"""
Unit tests for Ed25519 request signing.

Signatures are verified with ``cryptography`` directly, the same way the
gateway verifies them.
"""

from __future__ import annotations

import base64
import hashlib
import re

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from clawexchange_runtime.signing import (
    DEFAULT_MANIFEST_HASH,
    EMPTY_BODY,
    build_auth_headers,
    build_signature_message,
    canonical_json,
    derive_agent_id,
    generate_key_pair,
    generate_nonce,
    sign_request,
)


UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


def _verify(public_hex: str, signature_b64: str, message: str) -> None:
    key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_hex))
    key.verify(base64.b64decode(signature_b64), message.encode("utf-8"))


# ============================================================
#  Keys and identity
# ============================================================


def test_generate_key_pair_shapes() -> None:
    """Key pairs have hex keys and a 16-char agent ID."""
    keys = generate_key_pair()
    assert len(keys.public_key) == 64
    assert keys.public_key == keys.public_key.lower()
    assert len(keys.agent_id) == 16
    assert keys.agent_id == derive_agent_id(keys.public_key)


def test_agent_id_hashes_hex_text() -> None:
    """The agent ID hashes the hex text, not raw bytes."""
    public_hex = "ab" * 32
    expected = hashlib.sha256(public_hex.encode("utf-8")).hexdigest()[:16]
    assert derive_agent_id(public_hex) == expected


def test_agent_id_is_case_sensitive() -> None:
    """Hex casing changes the agent ID."""
    assert derive_agent_id("ab" * 32) != derive_agent_id("AB" * 32)


def test_generate_nonce_is_uuid4() -> None:
    """Nonces are unique UUID v4 strings."""
    nonces = {generate_nonce() for _ in range(20)}
    assert len(nonces) == 20
    assert all(UUID4_RE.match(n) for n in nonces)


# ============================================================
#  Signing
# ============================================================


def test_signature_message_is_concatenation() -> None:
    """The signed message is body + nonce + timestamp."""
    assert build_signature_message('{"a":1}', "n", "123") == '{"a":1}n123'
    assert build_signature_message({"a": 1, "b": "x"}, "n", "1") == '{"a":1,"b":"x"}n1'


def test_canonical_json_keeps_unicode_and_order() -> None:
    """Canonical JSON is compact and keeps key order."""
    assert canonical_json({"z": 1, "a": "é"}) == '{"z":1,"a":"é"}'


def test_sign_request_is_deterministic_and_verifies() -> None:
    """Signing is deterministic and verifies."""
    keys = generate_key_pair()
    sig1 = sign_request('{"x":1}', "nonce-1", "1700000000", keys.private_key_der)
    sig2 = sign_request('{"x":1}', "nonce-1", "1700000000", keys.private_key_der)
    assert sig1 == sig2
    _verify(keys.public_key, sig1, '{"x":1}nonce-11700000000')


def test_tampered_message_fails_verification() -> None:
    """A changed body fails verification."""
    keys = generate_key_pair()
    sig = sign_request('{"x":1}', "nonce-1", "1700000000", keys.private_key_der)
    with pytest.raises(InvalidSignature):
        _verify(keys.public_key, sig, '{"x":2}nonce-11700000000')


def test_wrong_key_fails_verification() -> None:
    """Another agent's key fails verification."""
    keys = generate_key_pair()
    other = generate_key_pair()
    sig = sign_request(EMPTY_BODY, "n", "1", keys.private_key_der)
    with pytest.raises(InvalidSignature):
        _verify(other.public_key, sig, "{}n1")


def test_empty_body_signs_braces_literal() -> None:
    """Empty bodies sign as "{}"."""
    keys = generate_key_pair()
    sig = sign_request(EMPTY_BODY, "abc", "42", keys.private_key_der)
    _verify(keys.public_key, sig, "{}abc42")


# ============================================================
#  Headers
# ============================================================


def test_build_auth_headers() -> None:
    """All five X-Claw headers are built and verify."""
    keys = generate_key_pair()
    headers = build_auth_headers(EMPTY_BODY, keys.agent_id, keys.private_key_der)

    assert set(headers) == {
        "X-Claw-Agent-ID",
        "X-Claw-Signature",
        "X-Claw-Nonce",
        "X-Claw-Timestamp",
        "X-Claw-Manifest-Hash",
    }
    assert headers["X-Claw-Agent-ID"] == keys.agent_id
    assert headers["X-Claw-Manifest-Hash"] == DEFAULT_MANIFEST_HASH
    assert headers["X-Claw-Timestamp"].isdigit()
    assert UUID4_RE.match(headers["X-Claw-Nonce"])
    _verify(
        keys.public_key,
        headers["X-Claw-Signature"],
        "{}" + headers["X-Claw-Nonce"] + headers["X-Claw-Timestamp"],
    )


def test_build_auth_headers_fresh_nonce_each_call() -> None:
    """Each call gets a new nonce."""
    keys = generate_key_pair()
    first = build_auth_headers(EMPTY_BODY, keys.agent_id, keys.private_key_der, "f" * 64)
    second = build_auth_headers(EMPTY_BODY, keys.agent_id, keys.private_key_der, "f" * 64)
    assert first["X-Claw-Nonce"] != second["X-Claw-Nonce"]
    assert first["X-Claw-Manifest-Hash"] == "f" * 64
