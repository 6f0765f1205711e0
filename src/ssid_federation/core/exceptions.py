# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Exception hierarchy for the SSID federation.

Errors fall into four layers:

- cryptographic (threshold parameters, reconstruction),
- registry (subject lifecycle, rounds, signatures),
- protocol (negotiation timeout, non-fatal),
- replica integrity (broken audit chain, divergence) which is fatal.

Recoverable errors reject a single transaction; the rejection is audited and
replay continues. Fatal errors halt the replica until someone reconciles it
by hand.
"""

from __future__ import annotations

from typing import Any


class FederationError(Exception):
    """Base exception for all federation errors."""

    #: Fatal errors stop transaction application on the node.
    fatal = False

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def reason(self) -> str:
        """Short machine-readable reason recorded in the audit log."""
        return self.__class__.__name__

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# AMBIENT
# =============================================================================


class ConfigException(FederationError):
    """Exception for configuration errors.

    Raised when:
    - The federation registry file is missing or invalid
    - A setting is out of range
    """

    def __init__(self, message: str, missing_vars: list[str] | None = None):
        details = {}
        if missing_vars:
            details["missing_vars"] = missing_vars
        super().__init__(message, details)
        self.missing_vars = missing_vars or []


class ValidationException(FederationError):
    """Exception for field-level validation errors.

    Raised when:
    - A subject id exceeds the configured maximum size
    - The holder set is empty, too large or contains duplicates
    - A field has the wrong type
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


# =============================================================================
# CRYPTOGRAPHIC LAYER
# =============================================================================


class InvalidThreshold(FederationError):
    """Threshold parameters violate 1 <= t <= n."""

    def __init__(self, t: int, n: int):
        super().__init__(f"Invalid threshold: t={t}, n={n}", {"t": t, "n": n})
        self.t = t
        self.n = n


class ReconstructionError(FederationError):
    """Base class for failures while interpolating a secret."""


class InsufficientShares(ReconstructionError):
    """Fewer than t distinct shares were provided."""

    def __init__(self, provided: int, required: int):
        super().__init__(
            f"Insufficient shares: {provided} provided, {required} required",
            {"provided": provided, "required": required},
        )
        self.provided = provided
        self.required = required


class DuplicateIndex(ReconstructionError):
    """The same share index appears more than once."""

    def __init__(self, index: int):
        super().__init__(f"Duplicate share index: {index}", {"index": index})
        self.index = index


class InconsistentShares(ReconstructionError):
    """The shares do not interpolate to the declared key.

    Does not say which share is bad. Callers isolate the faulty
    holder by checking each share against its own commitment.
    """

    def __init__(self, message: str = "Shares are inconsistent with the declared master key"):
        super().__init__(message)


# =============================================================================
# REGISTRY LAYER
# =============================================================================


class InvalidTransition(FederationError):
    """The transaction is not allowed in the subject's current state."""

    def __init__(self, message: str, subject_id: str | None = None, state: str | None = None):
        details = {}
        if subject_id is not None:
            details["subject_id"] = subject_id
        if state is not None:
            details["state"] = state
        super().__init__(message, details)
        self.subject_id = subject_id
        self.state = state


class StaleRound(FederationError):
    """The negotiation round is not newer than the last accepted one."""

    def __init__(self, subject_id: str, round: int, current: int):
        super().__init__(
            f"Stale round {round} for subject {subject_id} (current round {current})",
            {"subject_id": subject_id, "round": round, "current": current},
        )
        self.subject_id = subject_id
        self.round = round
        self.current = current


class UnknownSubject(FederationError):
    """No subject is registered under the given id."""

    def __init__(self, subject_id: str):
        super().__init__(f"Unknown subject: {subject_id}", {"subject_id": subject_id})
        self.subject_id = subject_id


class DuplicateNode(FederationError):
    """A node submitted a second commitment for the same round."""

    def __init__(self, subject_id: str, round: int, node_id: str):
        super().__init__(
            f"Node {node_id} already committed for subject {subject_id} round {round}",
            {"subject_id": subject_id, "round": round, "node_id": node_id},
        )
        self.node_id = node_id


class InvalidSignature(FederationError):
    """A request or commitment signature does not verify."""

    def __init__(self, message: str, signer: str | None = None):
        super().__init__(message, {"signer": signer} if signer else None)
        self.signer = signer


class InvalidCommitment(FederationError):
    """A share commitment is not on the declared master polynomial."""

    def __init__(self, subject_id: str, node_id: str, index: int):
        super().__init__(
            f"Commitment from {node_id} (index {index}) does not verify for subject {subject_id}",
            {"subject_id": subject_id, "node_id": node_id, "index": index},
        )
        self.node_id = node_id
        self.index = index


class MalformedTransaction(FederationError):
    """Transaction bytes could not be decoded into a known operation."""


# =============================================================================
# PROTOCOL LAYER
# =============================================================================


class NegotiationTimeout(FederationError):
    """A negotiation round reached its deadline without t valid commitments.

    Non-fatal: the session aborts and the subject may retry with a new round.
    """

    def __init__(self, subject_id: str, round: int, valid: int, required: int):
        super().__init__(
            f"Negotiation for {subject_id} round {round} timed out with {valid}/{required} commitments",
            {"subject_id": subject_id, "round": round, "valid": valid, "required": required},
        )
        self.subject_id = subject_id
        self.round = round


# =============================================================================
# REPLICA INTEGRITY (FATAL)
# =============================================================================


class ChainBroken(FederationError):
    """The audit hash chain does not verify.

    Signals tampering or replica divergence. Never repaired automatically.
    """

    fatal = True

    def __init__(self, at_offset: int, message: str = "Audit chain broken"):
        super().__init__(f"{message} at offset {at_offset}", {"at_offset": at_offset})
        self.at_offset = at_offset


class ReplicaDivergence(FederationError):
    """The local post-transition state hash differs from a peer's."""

    fatal = True

    def __init__(self, height: int, local_hash: str, peer_hash: str):
        super().__init__(
            f"Replica diverged at height {height}",
            {"height": height, "local_hash": local_hash, "peer_hash": peer_hash},
        )
        self.height = height


class ReplicaHalted(FederationError):
    """The replica stopped after a fatal error and refuses new transactions."""

    fatal = True
