# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""SSID Federation - threshold custody of self-sovereign identity master keys.

A federation of independent nodes jointly holds the master key of every
subject (SS-ID) as Shamir shares. No single node ever sees the whole key.

Architecture:
  crypto.shares         -> secp256k1 Shamir sharing, Feldman commitments, pseudonyms
  crypto.signatures     -> Ed25519 identity keys for nodes and subjects
  federation.registry   -> subject lifecycle (pending -> active -> revoked)
  federation.negotiation-> per-subject master-key negotiation rounds
  federation.consensus  -> submit to / replay from the external ordering service
  federation.audit      -> append-only, hash-chained audit trail
  federation.ceremony   -> scoped, audited reconstruction of a master scalar
  federation.node       -> wiring plus the public query interface

Every node replays the same totally ordered transaction stream and reaches
bit-identical state. Nothing in a transition depends on wall-clock time or
local randomness.
"""

__version__ = "0.3.0"
