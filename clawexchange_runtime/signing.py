"""
Ed25519 request signing for the ClawExchange gateway.

Every authenticated call carries five ``X-Claw-*`` headers. The signature
covers ``body + nonce + timestamp`` as a plain string concatenation, where
``body`` is the exact JSON string sent on the wire (``{}`` for calls without
a body).

Usage::

    from clawexchange_runtime.signing import generate_key_pair, build_auth_headers

    keys = generate_key_pair()
    headers = build_auth_headers("{}", keys.agent_id, keys.private_key_der)
"""

from __future__ import annotations

import base64
import hashlib
import json
import time
import uuid
from typing import Any, NamedTuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

__all__ = [
    "KeyPair",
    "EMPTY_BODY",
    "DEFAULT_MANIFEST_HASH",
    "canonical_json",
    "generate_key_pair",
    "derive_agent_id",
    "build_signature_message",
    "sign_message",
    "sign_request",
    "generate_nonce",
    "build_auth_headers",
]

# Signed in place of a body for GET-like requests
EMPTY_BODY = "{}"

DEFAULT_MANIFEST_HASH = "0" * 64

AGENT_ID_LENGTH = 16


class KeyPair(NamedTuple):
    """A freshly generated agent keypair."""

    public_key: str
    """Raw 32-byte public key as 64-char lowercase hex."""
    private_key_der: bytes
    """PKCS#8 DER-encoded private key."""
    agent_id: str
    """First 16 hex chars of SHA-256(public_key)."""


def canonical_json(body: Any) -> str:
    """Serialize a body the way the gateway re-serializes it for verification.

    Compact separators, insertion-ordered keys, non-ASCII left as-is.
    """
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def generate_key_pair() -> KeyPair:
    """Generate an Ed25519 keypair and derive its agent ID."""
    private_key = ed25519.Ed25519PrivateKey.generate()
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    private_der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_hex = public_raw.hex()
    return KeyPair(
        public_key=public_hex,
        private_key_der=private_der,
        agent_id=derive_agent_id(public_hex),
    )


def derive_agent_id(public_key_hex: str) -> str:
    """Derive the agent ID from a hex-encoded public key.

    The hash input is the hex *string* (UTF-8 text), not the decoded key
    bytes, so ``"AB01..."`` and ``"ab01..."`` yield different IDs.
    """
    digest = hashlib.sha256(public_key_hex.encode("utf-8")).hexdigest()
    return digest[:AGENT_ID_LENGTH]


def build_signature_message(body: Any, nonce: str, timestamp: str) -> str:
    """Build the string that gets signed.

    ``body`` may be an already-serialized string (used verbatim) or any
    JSON-serializable value, which is canonicalized first.
    """
    body_string = body if isinstance(body, str) else canonical_json(body)
    return f"{body_string}{nonce}{timestamp}"


def _load_private_key(private_key_der: bytes) -> ed25519.Ed25519PrivateKey:
    key = serialization.load_der_private_key(bytes(private_key_der), password=None)
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise ValueError("Private key must be an Ed25519 key")
    return key


def sign_message(message: str, private_key_der: bytes) -> str:
    """Sign ``message`` with a DER-encoded Ed25519 key; returns base64."""
    signature = _load_private_key(private_key_der).sign(message.encode("utf-8"))
    return base64.b64encode(signature).decode("ascii")


def sign_request(body: Any, nonce: str, timestamp: str, private_key_der: bytes) -> str:
    """Sign a request envelope. Deterministic for identical inputs."""
    return sign_message(build_signature_message(body, nonce, timestamp), private_key_der)


def generate_nonce() -> str:
    """Generate a single-use UUID v4 nonce."""
    return str(uuid.uuid4())


def build_auth_headers(
    body_string: str,
    agent_id: str,
    private_key_der: bytes,
    manifest_hash: str | None = None,
) -> dict[str, str]:
    """Build all five ``X-Claw-*`` headers for one authenticated request.

    A new nonce and timestamp are generated on every call, so a retried
    request must call this again rather than reuse the previous headers.

    Args:
        body_string: The exact JSON string sent as the request body
            (``"{}"`` for requests without a body).
        agent_id: The agent's derived ID.
        private_key_der: DER-encoded Ed25519 private key.
        manifest_hash: Agent manifest hash (defaults to 64 zeros).
    """
    nonce = generate_nonce()
    timestamp = str(int(time.time()))
    return {
        "X-Claw-Agent-ID": agent_id,
        "X-Claw-Signature": sign_request(body_string, nonce, timestamp, private_key_der),
        "X-Claw-Nonce": nonce,
        "X-Claw-Timestamp": timestamp,
        "X-Claw-Manifest-Hash": manifest_hash or DEFAULT_MANIFEST_HASH,
    }
