"""Tests for ssid_federation.crypto.signatures - Ed25519 identity keys."""

from __future__ import annotations

import pytest

from ssid_federation.crypto.signatures import (
    IdentityKey,
    canonical_json,
    verify_signature,
)


class TestCanonicalJson:
    def test_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'

    def test_key_order_irrelevant(self):
        assert canonical_json({"x": 1, "y": 2}) == canonical_json({"y": 2, "x": 1})


class TestIdentityKey:
    """Key generation, import and signing."""

    def test_generate_unique(self):
        assert IdentityKey.generate().public_key_hex != IdentityKey.generate().public_key_hex

    def test_public_key_is_32_bytes(self):
        key = IdentityKey.generate()
        assert len(key.public_key_bytes) == 32
        assert len(key.public_key_hex) == 64

    def test_private_hex_round_trip(self):
        key = IdentityKey.generate()
        restored = IdentityKey.from_private_hex(key.private_key_hex)
        assert restored.public_key_hex == key.public_key_hex

    def test_signatures_are_deterministic(self):
        key = IdentityKey.generate()
        assert key.sign(b"payload") == key.sign(b"payload")

    def test_repr_hides_private_key(self):
        key = IdentityKey.generate()
        assert key.private_key_hex not in repr(key)

    def test_wrong_length_rejected(self):
        with pytest.raises(ValueError):
            IdentityKey(private_key_bytes=b"\x01" * 16)

    def test_requires_key_material(self):
        with pytest.raises(ValueError):
            IdentityKey()


class TestVerifySignature:
    """verify_signature never raises on bad input."""

    def test_valid(self):
        key = IdentityKey.generate()
        assert verify_signature(key.public_key_hex, b"data", key.sign(b"data"))

    def test_modified_data(self):
        key = IdentityKey.generate()
        assert not verify_signature(key.public_key_hex, b"data!", key.sign(b"data"))

    def test_other_key(self):
        key = IdentityKey.generate()
        other = IdentityKey.generate()
        assert not verify_signature(other.public_key_hex, b"data", key.sign(b"data"))

    @pytest.mark.parametrize(
        "public_key,signature",
        [
            ("zz", "00" * 64),
            ("00" * 31, "00" * 64),
            (None, "00" * 64),
        ],
    )
    def test_malformed_input_is_false(self, public_key, signature):
        assert verify_signature(public_key, b"data", signature) is False

    def test_malformed_signature_is_false(self):
        key = IdentityKey.generate()
        assert verify_signature(key.public_key_hex, b"data", "not-hex") is False
