"""Data model for the federation: subjects, commitments, sessions, transactions.

Transactions form a closed tagged variant (CreateSubject | NegotiateKey |
SubmitCommitment | RevokeSubject). Clients wrap one in a signed Request; the
canonical JSON bytes of the request are what the ordering service carries.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, ClassVar

from ..core.exceptions import ConfigException, MalformedTransaction
from ..crypto.shares import Commitment, PublicPolynomial
from ..crypto.signatures import IdentityKey, canonical_json, verify_signature

# Signer name used when the subject's own key signs a request
SUBJECT_SIGNER = "subject"

# (subject_id, round, "op" | "node", operation name or node id)
IdempotencyKey = tuple[str, int, str, str]


# =============================================================================
# ENUMS
# =============================================================================


class SubjectState(StrEnum):
    """Lifecycle of an SS-ID subject."""

    PENDING = "pending"  # Created, no committed master key yet
    ACTIVE = "active"  # At least t verified commitments
    REVOKED = "revoked"  # Terminal


class SessionStatus(StrEnum):
    COLLECTING = "collecting"
    COMMITTED = "committed"
    ABORTED = "aborted"


class Operation(StrEnum):
    CREATE_SUBJECT = "create_subject"
    NEGOTIATE_KEY = "negotiate_key"
    SUBMIT_COMMITMENT = "submit_commitment"
    REVOKE_SUBJECT = "revoke_subject"


# =============================================================================
# FEDERATION MEMBERSHIP
# =============================================================================


class Federation:
    """Flat set of node ids and their Ed25519 public keys.

    Nodes reference each other by id only.
    """

    def __init__(self, nodes: Mapping[str, str]):
        self._nodes = dict(nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._nodes))

    def public_key(self, node_id: str) -> str | None:
        return self._nodes.get(node_id)

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [{"node_id": n, "public_key": self._nodes[n]} for n in sorted(self._nodes)]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Federation:
        return cls({entry["node_id"]: entry["public_key"] for entry in data["nodes"]})

    @classmethod
    def load(cls, path: str | Path) -> Federation:
        """Load membership from a JSON registry file.

        Raises:
            ConfigException: if the file is missing or malformed.
        """
        try:
            with open(path) as f:
                return cls.from_dict(json.load(f))
        except OSError as e:
            raise ConfigException(f"Cannot read federation registry {path}: {e}") from e
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ConfigException(f"Invalid federation registry {path}: {e}") from e


def _identifier(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise MalformedTransaction(f"{field_name} must be a string, got {type(value).__name__}")
    return value


# =============================================================================
# SUBJECT STATE
# =============================================================================


@dataclass(frozen=True)
class ShareCommitment:
    """A holder's signed commitment to its share of a subject's master key."""

    subject_id: str
    round: int
    node_id: str
    commitment: Commitment
    signature: str = ""

    @property
    def index(self) -> int:
        return self.commitment.index

    def signed_data(self) -> bytes:
        return canonical_json(
            {
                "subject_id": self.subject_id,
                "round": self.round,
                "node_id": self.node_id,
                **self.commitment.to_dict(),
            }
        )

    @classmethod
    def sign(
        cls,
        subject_id: str,
        round: int,
        node_id: str,
        commitment: Commitment,
        key: IdentityKey,
    ) -> ShareCommitment:
        unsigned = cls(subject_id=subject_id, round=round, node_id=node_id, commitment=commitment)
        return cls(
            subject_id=subject_id,
            round=round,
            node_id=node_id,
            commitment=commitment,
            signature=key.sign(unsigned.signed_data()),
        )

    def verify_signature(self, public_key_hex: str) -> bool:
        return verify_signature(public_key_hex, self.signed_data(), self.signature)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "round": self.round,
            "node_id": self.node_id,
            "commitment": self.commitment.to_dict(),
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShareCommitment:
        return cls(
            subject_id=_identifier(data["subject_id"], "subject_id"),
            round=int(data["round"]),
            node_id=_identifier(data["node_id"], "node_id"),
            commitment=Commitment.from_dict(data["commitment"]),
            signature=str(data.get("signature", "")),
        )


@dataclass(frozen=True)
class Subject:
    """An SS-ID subject as seen by every replica.

    Immutable: registry transitions build a new instance. The private master
    scalar never appears here, only its public polynomial.
    """

    subject_id: str
    subject_key: str
    threshold: int
    holders: tuple[str, ...]
    state: SubjectState = SubjectState.PENDING
    round: int = 0  # Highest negotiation round opened
    committed_round: int = 0  # Round whose key is active, 0 if none
    master_public: PublicPolynomial | None = None
    commitments: tuple[ShareCommitment, ...] = ()
    created_height: int = 0

    @property
    def n(self) -> int:
        return len(self.holders)

    @property
    def threshold_params(self) -> dict[str, int]:
        return {"t": self.threshold, "n": self.n}

    @property
    def master_public_key(self) -> str | None:
        return self.master_public.key_hex if self.master_public else None

    def index_of(self, node_id: str) -> int | None:
        """Share index held by a node (1-based), or None if not a holder."""
        try:
            return self.holders.index(node_id) + 1
        except ValueError:
            return None

    def commitment_for(self, node_id: str) -> ShareCommitment | None:
        for item in self.commitments:
            if item.node_id == node_id:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "subject_key": self.subject_key,
            "threshold": self.threshold,
            "holders": list(self.holders),
            "state": self.state.value,
            "round": self.round,
            "committed_round": self.committed_round,
            "master_public": self.master_public.to_dict() if self.master_public else None,
            "commitments": [c.to_dict() for c in self.commitments],
            "created_height": self.created_height,
        }


@dataclass
class NegotiationSession:
    """An in-flight master-key negotiation round for one subject."""

    subject_id: str
    round: int
    master_public: PublicPolynomial
    threshold: int
    opened_at: int
    deadline: int
    status: SessionStatus = SessionStatus.COLLECTING
    commitments: dict[str, ShareCommitment] = field(default_factory=dict)
    rejections: list[tuple[str, str]] = field(default_factory=list)

    @property
    def valid_count(self) -> int:
        return len(self.commitments)

    def is_expired(self, height: int) -> bool:
        return self.status == SessionStatus.COLLECTING and height > self.deadline

    def ordered_commitments(self) -> tuple[ShareCommitment, ...]:
        """Accepted commitments sorted by share index."""
        return tuple(sorted(self.commitments.values(), key=lambda c: c.index))


# =============================================================================
# TRANSACTIONS
# =============================================================================


def _deadline(payload: dict[str, Any]) -> int | None:
    """Deadline span in heights; must be positive when given."""
    value = payload.get("deadline")
    if value is None:
        return None
    span = int(value)
    if span < 1:
        raise MalformedTransaction(f"Deadline must be at least one height, got {span}")
    return span


@dataclass(frozen=True)
class CreateSubject:
    """Register a subject and open negotiation round 1."""

    op: ClassVar[Operation] = Operation.CREATE_SUBJECT

    subject_id: str
    subject_key: str
    threshold: int
    holders: tuple[str, ...]
    master_public: PublicPolynomial
    deadline: int | None = None

    @property
    def round(self) -> int:
        return 1

    def idempotency_key(self) -> IdempotencyKey:
        return (self.subject_id, self.round, "op", self.op.value)

    def to_payload(self) -> dict[str, Any]:
        return {
            "subject_key": self.subject_key,
            "threshold": self.threshold,
            "holders": list(self.holders),
            "master_public": self.master_public.to_dict(),
            "deadline": self.deadline,
        }

    @classmethod
    def from_payload(cls, subject_id: str, payload: dict[str, Any]) -> CreateSubject:
        return cls(
            subject_id=subject_id,
            subject_key=str(payload["subject_key"]),
            threshold=int(payload["threshold"]),
            holders=tuple(str(h) for h in payload["holders"]),
            master_public=PublicPolynomial.from_dict(payload["master_public"]),
            deadline=_deadline(payload),
        )


@dataclass(frozen=True)
class NegotiateKey:
    """Open a fresh negotiation round (retry after abort, or key rotation)."""

    op: ClassVar[Operation] = Operation.NEGOTIATE_KEY

    subject_id: str
    round: int
    master_public: PublicPolynomial
    deadline: int | None = None

    def idempotency_key(self) -> IdempotencyKey:
        return (self.subject_id, self.round, "op", self.op.value)

    def to_payload(self) -> dict[str, Any]:
        return {
            "round": self.round,
            "master_public": self.master_public.to_dict(),
            "deadline": self.deadline,
        }

    @classmethod
    def from_payload(cls, subject_id: str, payload: dict[str, Any]) -> NegotiateKey:
        return cls(
            subject_id=subject_id,
            round=int(payload["round"]),
            master_public=PublicPolynomial.from_dict(payload["master_public"]),
            deadline=_deadline(payload),
        )


@dataclass(frozen=True)
class SubmitCommitment:
    """A holder's share commitment for a negotiation round."""

    op: ClassVar[Operation] = Operation.SUBMIT_COMMITMENT

    commitment: ShareCommitment

    @property
    def subject_id(self) -> str:
        return self.commitment.subject_id

    @property
    def round(self) -> int:
        return self.commitment.round

    def idempotency_key(self) -> IdempotencyKey:
        return (self.commitment.subject_id, self.commitment.round, "node", self.commitment.node_id)

    def to_payload(self) -> dict[str, Any]:
        return self.commitment.to_dict()

    @classmethod
    def from_payload(cls, subject_id: str, payload: dict[str, Any]) -> SubmitCommitment:
        commitment = ShareCommitment.from_dict(payload)
        if commitment.subject_id != subject_id:
            raise MalformedTransaction("Commitment subject does not match request subject")
        return cls(commitment=commitment)


@dataclass(frozen=True)
class RevokeSubject:
    """Terminally revoke a subject."""

    op: ClassVar[Operation] = Operation.REVOKE_SUBJECT

    subject_id: str
    reason: str = ""

    @property
    def round(self) -> int:
        return 0

    def idempotency_key(self) -> IdempotencyKey:
        return (self.subject_id, self.round, "op", self.op.value)

    def to_payload(self) -> dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def from_payload(cls, subject_id: str, payload: dict[str, Any]) -> RevokeSubject:
        return cls(subject_id=subject_id, reason=str(payload.get("reason", "")))


Transaction = CreateSubject | NegotiateKey | SubmitCommitment | RevokeSubject

_TRANSACTION_TYPES: dict[Operation, type] = {
    Operation.CREATE_SUBJECT: CreateSubject,
    Operation.NEGOTIATE_KEY: NegotiateKey,
    Operation.SUBMIT_COMMITMENT: SubmitCommitment,
    Operation.REVOKE_SUBJECT: RevokeSubject,
}


# =============================================================================
# REQUEST ENVELOPE
# =============================================================================


@dataclass(frozen=True)
class Request:
    """Signed client request; its canonical bytes are the consensus transaction.

    ``signer`` is SUBJECT_SIGNER when the subject key signed it, otherwise
    the id of the submitting node.
    """

    op: Operation
    subject_id: str
    payload: dict[str, Any]
    signer: str
    signature: str = ""

    def signed_data(self) -> bytes:
        return canonical_json(
            {
                "op": self.op.value,
                "subject_id": self.subject_id,
                "payload": self.payload,
                "signer": self.signer,
            }
        )

    @classmethod
    def create(cls, tx: Transaction, key: IdentityKey, signer: str = SUBJECT_SIGNER) -> Request:
        unsigned = cls(op=tx.op, subject_id=tx.subject_id, payload=tx.to_payload(), signer=signer)
        return cls(
            op=unsigned.op,
            subject_id=unsigned.subject_id,
            payload=unsigned.payload,
            signer=signer,
            signature=key.sign(unsigned.signed_data()),
        )

    def verify(self, public_key_hex: str) -> bool:
        return verify_signature(public_key_hex, self.signed_data(), self.signature)

    def transaction(self) -> Transaction:
        """Decode the payload into its typed transaction.

        Raises:
            MalformedTransaction: if the payload does not fit the operation.
        """
        tx_type = _TRANSACTION_TYPES[self.op]
        try:
            return tx_type.from_payload(self.subject_id, self.payload)
        except MalformedTransaction:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MalformedTransaction(f"Invalid {self.op.value} payload: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op.value,
            "subject_id": self.subject_id,
            "payload": self.payload,
            "signer": self.signer,
            "signature": self.signature,
        }

    def to_bytes(self) -> bytes:
        return canonical_json(self.to_dict())

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.to_bytes()).hexdigest()

    @classmethod
    def from_bytes(cls, data: bytes) -> Request:
        """Parse transaction bytes delivered by the ordering service.

        Raises:
            MalformedTransaction: on anything that is not a well-formed request.
        """
        try:
            raw = json.loads(data)
            return cls(
                op=Operation(raw["op"]),
                subject_id=str(raw["subject_id"]),
                payload=dict(raw["payload"]),
                signer=str(raw["signer"]),
                signature=str(raw["signature"]),
            )
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError, RecursionError) as e:
            raise MalformedTransaction(f"Undecodable transaction: {e}") from e
