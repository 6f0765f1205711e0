"""Subject registry: lifecycle state of every SS-ID subject on this replica.

    pending --(t commitments)--> active --(revoke)--> revoked

Transitions are module-level pure functions of (current subject, input) that
return a new immutable Subject. SubjectRegistry only validates, calls them,
and stores the result, so replaying the same inputs on any node yields the
same registry.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator
from dataclasses import replace
from typing import Any

from ..core.exceptions import (
    DuplicateNode,
    InvalidSignature,
    InvalidTransition,
    StaleRound,
    UnknownSubject,
    ValidationException,
)
from ..crypto.shares import PublicPolynomial, check_threshold
from ..crypto.signatures import canonical_json
from .models import (
    CreateSubject,
    Federation,
    ShareCommitment,
    Subject,
    SubjectState,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_SUBJECT_ID_SIZE = 256
DEFAULT_MAX_HOLDERS = 64


# =============================================================================
# PURE TRANSITIONS
# =============================================================================


def create_subject(
    current: Subject | None,
    tx: CreateSubject,
    height: int,
    federation: Federation,
    max_subject_id_size: int = DEFAULT_MAX_SUBJECT_ID_SIZE,
    max_holders: int = DEFAULT_MAX_HOLDERS,
) -> Subject:
    """Build a new pending subject with round 1 open."""
    if current is not None:
        raise InvalidTransition("Subject already exists", tx.subject_id, current.state.value)

    if not tx.subject_id:
        raise ValidationException("Subject id must not be empty", field="subject_id")
    if len(tx.subject_id) > max_subject_id_size:
        raise ValidationException(
            f"Subject id exceeds {max_subject_id_size} characters",
            field="subject_id",
            value=len(tx.subject_id),
        )
    if len(tx.holders) > max_holders:
        raise ValidationException(f"At most {max_holders} holders allowed", field="holders", value=len(tx.holders))
    if len(set(tx.holders)) != len(tx.holders):
        raise ValidationException("Holder list contains duplicates", field="holders")
    for node_id in tx.holders:
        if node_id not in federation:
            raise ValidationException("Holder is not a federation node", field="holders", value=node_id)

    check_threshold(tx.threshold, len(tx.holders))
    if tx.master_public.threshold != tx.threshold:
        raise ValidationException(
            "Master public polynomial degree does not match threshold",
            field="master_public",
            value=tx.master_public.threshold,
        )

    return Subject(
        subject_id=tx.subject_id,
        subject_key=tx.subject_key,
        threshold=tx.threshold,
        holders=tx.holders,
        state=SubjectState.PENDING,
        round=tx.round,
        created_height=height,
    )


def check_round(current: Subject, round: int) -> None:
    """A new round must be strictly newer than every round opened before."""
    if current.state == SubjectState.REVOKED:
        raise InvalidTransition("Subject is revoked", current.subject_id, current.state.value)
    if round <= current.round:
        raise StaleRound(current.subject_id, round, current.round)


def open_round(current: Subject, round: int, master_public: PublicPolynomial) -> Subject:
    """Record that a strictly newer negotiation round has been opened."""
    check_round(current, round)
    if master_public.threshold != current.threshold:
        raise ValidationException(
            "Master public polynomial degree does not match threshold",
            field="master_public",
            value=master_public.threshold,
        )
    return replace(current, round=round)


def activate_subject(
    current: Subject,
    round: int,
    master_public: PublicPolynomial,
    commitments: tuple[ShareCommitment, ...],
) -> Subject:
    """Install the result of a committed negotiation (first key or rotation)."""
    if current.state == SubjectState.REVOKED:
        raise InvalidTransition("Subject is revoked", current.subject_id, current.state.value)
    if len(commitments) < current.threshold:
        raise InvalidTransition(
            f"Activation needs {current.threshold} commitments, got {len(commitments)}",
            current.subject_id,
            current.state.value,
        )
    return replace(
        current,
        state=SubjectState.ACTIVE,
        committed_round=round,
        master_public=master_public,
        commitments=commitments,
    )


def append_commitment(current: Subject, commitment: ShareCommitment) -> Subject:
    """Add a late, already-verified commitment for the committed round."""
    if current.state != SubjectState.ACTIVE:
        raise InvalidTransition("Late commitments need an active subject", current.subject_id, current.state.value)
    if commitment.round != current.committed_round:
        raise StaleRound(current.subject_id, commitment.round, current.committed_round)
    if current.commitment_for(commitment.node_id) is not None:
        raise DuplicateNode(current.subject_id, commitment.round, commitment.node_id)
    if len(current.commitments) >= current.n:
        raise InvalidTransition("All holders already committed", current.subject_id, current.state.value)

    ordered = tuple(sorted((*current.commitments, commitment), key=lambda c: c.index))
    return replace(current, commitments=ordered)


def revoke_subject(current: Subject) -> Subject:
    if current.state == SubjectState.REVOKED:
        raise InvalidTransition("Subject is already revoked", current.subject_id, current.state.value)
    return replace(current, state=SubjectState.REVOKED)


# =============================================================================
# REGISTRY
# =============================================================================


class SubjectRegistry:
    """All subjects known to this replica, keyed by subject id.

    Owned by the replay loop. Nothing else may call the mutating methods.
    """

    def __init__(
        self,
        federation: Federation,
        max_subject_id_size: int = DEFAULT_MAX_SUBJECT_ID_SIZE,
        max_holders: int = DEFAULT_MAX_HOLDERS,
    ):
        self._federation = federation
        self._max_subject_id_size = max_subject_id_size
        self._max_holders = max_holders
        self._subjects: dict[str, Subject] = {}

    @property
    def federation(self) -> Federation:
        return self._federation

    def __contains__(self, subject_id: object) -> bool:
        return subject_id in self._subjects

    def __len__(self) -> int:
        return len(self._subjects)

    def __iter__(self) -> Iterator[Subject]:
        for subject_id in sorted(self._subjects):
            yield self._subjects[subject_id]

    def find(self, subject_id: str) -> Subject | None:
        return self._subjects.get(subject_id)

    def get(self, subject_id: str) -> Subject:
        subject = self._subjects.get(subject_id)
        if subject is None:
            raise UnknownSubject(subject_id)
        return subject

    def view(self, subject_id: str) -> dict[str, Any]:
        """Public projection handed to profile servers and terminals."""
        subject = self.get(subject_id)
        return {
            "subject_id": subject.subject_id,
            "state": subject.state.value,
            "master_public_key": subject.master_public_key,
            "threshold_params": subject.threshold_params,
        }

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def check_round(self, subject_id: str, round: int) -> Subject:
        subject = self.get(subject_id)
        check_round(subject, round)
        return subject

    def check_commitment(self, commitment: ShareCommitment) -> Subject:
        """Subject-level admission checks for a commitment.

        Round routing is left to the negotiation protocol.

        Raises:
            UnknownSubject, InvalidTransition, ValidationException, InvalidSignature
        """
        subject = self.get(commitment.subject_id)
        if subject.state == SubjectState.REVOKED:
            raise InvalidTransition("Subject is revoked", subject.subject_id, subject.state.value)

        expected_index = subject.index_of(commitment.node_id)
        if expected_index is None:
            raise ValidationException("Node is not a holder of this subject", field="node_id", value=commitment.node_id)
        if commitment.index != expected_index:
            raise ValidationException(
                f"Node {commitment.node_id} holds index {expected_index}",
                field="index",
                value=commitment.index,
            )

        public_key = self._federation.public_key(commitment.node_id)
        if public_key is None or not commitment.verify_signature(public_key):
            raise InvalidSignature("Commitment signature does not verify", signer=commitment.node_id)
        return subject

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def create(self, tx: CreateSubject, height: int) -> Subject:
        subject = create_subject(
            self.find(tx.subject_id),
            tx,
            height,
            self._federation,
            self._max_subject_id_size,
            self._max_holders,
        )
        self._subjects[subject.subject_id] = subject
        logger.info(f"Subject {subject.subject_id} created (t={subject.threshold}, n={subject.n})")
        return subject

    def open_round(self, subject_id: str, round: int, master_public: PublicPolynomial) -> Subject:
        subject = open_round(self.get(subject_id), round, master_public)
        self._subjects[subject_id] = subject
        return subject

    def activate(
        self,
        subject_id: str,
        round: int,
        master_public: PublicPolynomial,
        commitments: tuple[ShareCommitment, ...],
    ) -> Subject:
        subject = activate_subject(self.get(subject_id), round, master_public, commitments)
        self._subjects[subject_id] = subject
        logger.info(f"Subject {subject_id} active with round {round} key ({len(commitments)} commitments)")
        return subject

    def add_late_commitment(self, commitment: ShareCommitment) -> Subject:
        subject = append_commitment(self.get(commitment.subject_id), commitment)
        self._subjects[subject.subject_id] = subject
        return subject

    def revoke(self, subject_id: str) -> Subject:
        subject = revoke_subject(self.get(subject_id))
        self._subjects[subject_id] = subject
        logger.info(f"Subject {subject_id} revoked")
        return subject

    # -------------------------------------------------------------------------
    # Replica comparison
    # -------------------------------------------------------------------------

    def state_digest(self) -> str:
        """SHA-256 over the canonical encoding of every subject, in id order."""
        return hashlib.sha256(canonical_json([s.to_dict() for s in self])).hexdigest()
