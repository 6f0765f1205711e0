"""Reconstruction ceremony: the only place a master scalar ever exists.

Holders contribute signed shares. Each contribution is authenticated with
the holder's identity key and checked against the commitment that holder
registered for the subject's committed round, so a bad share is pinned to
the node that sent it before any interpolation happens.

The scalar is yielded inside a ``with`` block and never stored:

    with reconstruction_ceremony(subject, contributions, federation, log) as secret:
        sign_recovery_statement(secret)

Every ceremony, failed or not, is recorded in a node-local audit log that is
kept apart from the replicated chain.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from ..core.exceptions import (
    DuplicateNode,
    FederationError,
    InsufficientShares,
    InvalidCommitment,
    InvalidSignature,
    InvalidTransition,
    StaleRound,
    ValidationException,
)
from ..crypto.shares import Share, commit, reconstruct, verify_commitments
from ..crypto.signatures import IdentityKey, canonical_json, verify_signature
from .audit import AuditLog, AuditOutcome
from .models import Federation, Subject, SubjectState

logger = logging.getLogger(__name__)

KIND_RECONSTRUCTION = "reconstruction"


@dataclass(frozen=True)
class ShareContribution:
    """A holder's share, signed for one ceremony."""

    subject_id: str
    round: int
    node_id: str
    share: Share = field(repr=False)
    signature: str = field(default="", repr=False)

    def signed_data(self) -> bytes:
        return canonical_json(
            {
                "subject_id": self.subject_id,
                "round": self.round,
                "node_id": self.node_id,
                **self.share.to_dict(),
            }
        )

    @classmethod
    def sign(cls, subject_id: str, round: int, node_id: str, share: Share, key: IdentityKey) -> ShareContribution:
        unsigned = cls(subject_id=subject_id, round=round, node_id=node_id, share=share)
        return cls(
            subject_id=subject_id,
            round=round,
            node_id=node_id,
            share=share,
            signature=key.sign(unsigned.signed_data()),
        )

    def verify_signature(self, public_key_hex: str) -> bool:
        return verify_signature(public_key_hex, self.signed_data(), self.signature)


def _check_contribution(subject: Subject, contribution: ShareContribution, federation: Federation) -> None:
    if contribution.subject_id != subject.subject_id:
        raise ValidationException("Contribution is for another subject", field="subject_id")
    if contribution.round != subject.committed_round:
        raise StaleRound(subject.subject_id, contribution.round, subject.committed_round)

    index = subject.index_of(contribution.node_id)
    if index is None:
        raise ValidationException("Node is not a holder of this subject", field="node_id", value=contribution.node_id)
    if contribution.share.index != index:
        raise ValidationException(
            f"Node {contribution.node_id} holds index {index}",
            field="index",
            value=contribution.share.index,
        )

    public_key = federation.public_key(contribution.node_id)
    if public_key is None or not contribution.verify_signature(public_key):
        raise InvalidSignature("Contribution signature does not verify", signer=contribution.node_id)

    recorded = subject.commitment_for(contribution.node_id)
    if recorded is None or commit(contribution.share).encoded != recorded.commitment.encoded:
        raise InvalidCommitment(subject.subject_id, contribution.node_id, index)


def _ceremony_digest(subject: Subject, contributions: Sequence[ShareContribution]) -> str:
    # Signatures only: share values never reach the log
    return hashlib.sha256(
        canonical_json(
            {
                "subject_id": subject.subject_id,
                "round": subject.committed_round,
                "signatures": sorted(c.signature for c in contributions),
            }
        )
    ).hexdigest()


@contextmanager
def reconstruction_ceremony(
    subject: Subject,
    contributions: Sequence[ShareContribution],
    federation: Federation,
    log: AuditLog,
    purpose: str = "",
    workers: int = 1,
) -> Iterator[int]:
    """Authenticate t holders, verify their shares and yield the master scalar.

    Args:
        subject: Active subject whose key is reconstructed
        contributions: Signed shares, at least ``subject.threshold`` of them
        federation: Membership used to look up holder keys
        log: Node-local ceremony log
        purpose: Free-text reason recorded with the ceremony
        workers: Thread pool size for the Feldman checks

    Raises:
        InvalidTransition: subject is not active
        InvalidSignature, InvalidCommitment, ValidationException, DuplicateNode:
            a contribution failed its checks (the error names the holder)
        InsufficientShares: fewer than t valid contributions
        InconsistentShares: shares do not reconstruct the registered key
    """
    digest = _ceremony_digest(subject, contributions)
    participants = [c.node_id for c in contributions]
    details: dict[str, Any] = {"participants": participants, "purpose": purpose}

    try:
        if subject.state != SubjectState.ACTIVE or subject.master_public is None:
            raise InvalidTransition("Only active subjects can be reconstructed", subject.subject_id, subject.state.value)

        seen: set[str] = set()
        for contribution in contributions:
            if contribution.node_id in seen:
                raise DuplicateNode(subject.subject_id, contribution.round, contribution.node_id)
            seen.add(contribution.node_id)
            _check_contribution(subject, contribution, federation)

        if len(contributions) < subject.threshold:
            raise InsufficientShares(len(contributions), subject.threshold)

        # Shares match their holders' commitments; also check those lie on the key polynomial
        verdicts = verify_commitments(
            ((c.node_id, commit(c.share)) for c in contributions),
            subject.master_public,
            workers=workers,
        )
        for node_id, ok in verdicts:
            if not ok:
                raise InvalidCommitment(subject.subject_id, node_id, subject.index_of(node_id) or 0)

        secret = reconstruct([c.share for c in contributions], subject.threshold, subject.master_public)
    except FederationError as e:
        log.append(
            payload_digest=digest,
            kind=KIND_RECONSTRUCTION,
            outcome=AuditOutcome.REJECTED,
            subject_id=subject.subject_id,
            round=subject.committed_round,
            reason=e.reason,
            details={**details, "error": e.details},
        )
        logger.warning(f"Reconstruction of {subject.subject_id} refused: {e.reason}")
        raise

    log.append(
        payload_digest=digest,
        kind=KIND_RECONSTRUCTION,
        outcome=AuditOutcome.ACCEPTED,
        subject_id=subject.subject_id,
        round=subject.committed_round,
        details=details,
    )
    logger.info(f"Reconstruction of {subject.subject_id} opened by {len(participants)} holders")
    try:
        yield secret
    finally:
        del secret
        logger.info(f"Reconstruction of {subject.subject_id} closed")
