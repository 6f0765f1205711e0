"""Ed25519 identity keys for federation nodes and subjects.

Every node holds a long-term identity key and signs the share commitments it
submits. Every subject registers a key at creation and signs its own
negotiation and revocation requests. Signatures are deterministic (RFC 8032),
so verification gives the same verdict on every replica.

Public keys and signatures travel as lowercase hex.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

# Domain separator prefixed to every signed message
DOMAIN_SEPARATOR_SIGN = b"ssid-federation-sign-v1"


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding used for signing and hashing."""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def signing_digest(data: bytes) -> bytes:
    return hashlib.sha512(DOMAIN_SEPARATOR_SIGN + data).digest()


class IdentityKey:
    """Ed25519 signing key.

    Example:
        >>> key = IdentityKey.generate()
        >>> sig = key.sign(b"payload")
        >>> verify_signature(key.public_key_hex, b"payload", sig)
        True
    """

    def __init__(
        self,
        private_key: Ed25519PrivateKey | None = None,
        private_key_bytes: bytes | None = None,
    ):
        if private_key is not None:
            self._private_key = private_key
        elif private_key_bytes is not None:
            if len(private_key_bytes) != 32:
                raise ValueError(f"Private key must be 32 bytes, got {len(private_key_bytes)}")
            self._private_key = Ed25519PrivateKey.from_private_bytes(private_key_bytes)
        else:
            raise ValueError("Either private_key or private_key_bytes must be provided")

        self._public_key = self._private_key.public_key()

    def __repr__(self) -> str:
        return f"IdentityKey(public={self.public_key_hex[:16]}...)"

    @classmethod
    def generate(cls) -> IdentityKey:
        return cls(private_key=Ed25519PrivateKey.generate())

    @classmethod
    def from_private_hex(cls, hex_string: str) -> IdentityKey:
        return cls(private_key_bytes=bytes.fromhex(hex_string))

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_key.public_bytes_raw()

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    @property
    def private_key_hex(self) -> str:
        """Private key seed as hex (for secure storage only)."""
        return self._private_key.private_bytes_raw().hex()

    def sign(self, data: bytes) -> str:
        """Sign data and return the signature as hex."""
        return self._private_key.sign(signing_digest(data)).hex()


def verify_signature(public_key_hex: str, data: bytes, signature_hex: str) -> bool:
    """Verify a hex signature over data. Malformed input verifies as False."""
    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
        public_key.verify(bytes.fromhex(signature_hex), signing_digest(data))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False
