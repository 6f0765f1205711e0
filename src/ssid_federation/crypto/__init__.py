"""Cryptographic primitives for the federation.

- shares: Shamir sharing, Feldman commitments, reconstruction, pseudonyms
- signatures: Ed25519 identity keys for nodes and subjects
"""

from ssid_federation.crypto.shares import (
    G,
    ORDER,
    Commitment,
    KeyDealing,
    KeyPair,
    Polynomial,
    PseudonymTag,
    PublicPolynomial,
    Share,
    aggregate_shares,
    combine_public,
    commit,
    deal,
    decode_point,
    derive_pseudonym,
    encode_point,
    generate_keypair,
    reconstruct,
    split_secret,
    verify_commitment,
    verify_commitments,
    verify_share,
)
from ssid_federation.crypto.signatures import (
    IdentityKey,
    canonical_json,
    verify_signature,
)

__all__ = [
    "G",
    "ORDER",
    "Commitment",
    "IdentityKey",
    "KeyDealing",
    "KeyPair",
    "Polynomial",
    "PseudonymTag",
    "PublicPolynomial",
    "Share",
    "aggregate_shares",
    "canonical_json",
    "combine_public",
    "commit",
    "deal",
    "decode_point",
    "derive_pseudonym",
    "encode_point",
    "generate_keypair",
    "reconstruct",
    "split_secret",
    "verify_commitment",
    "verify_commitments",
    "verify_share",
    "verify_signature",
]
