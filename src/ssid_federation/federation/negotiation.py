"""Master-key negotiation rounds.

    collecting --(t valid commitments before deadline)--> committed
    collecting --(deadline passed with fewer than t)----> aborted

A subject has at most one collecting session. Invalid commitments are
recorded against the session and rejected individually; they never abort
the round. Deadlines are consensus heights, so every replica aborts a round
at the same point of the delivery stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..core.exceptions import (
    DuplicateNode,
    FederationError,
    InvalidCommitment,
    InvalidTransition,
    NegotiationTimeout,
    StaleRound,
    ValidationException,
)
from ..crypto.shares import PublicPolynomial, verify_commitment
from .models import (
    NegotiationSession,
    SessionStatus,
    ShareCommitment,
    Subject,
    SubjectState,
)
from .registry import SubjectRegistry

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE = 10

ABORT_SUPERSEDED = "superseded"
ABORT_REVOKED = "subject_revoked"


@dataclass(frozen=True)
class SessionResult:
    """Outcome of a closed session, handed back to the replay loop for auditing."""

    subject_id: str
    round: int
    status: SessionStatus
    valid: int
    required: int
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    subject: Subject | None = None

    @property
    def committed(self) -> bool:
        return self.status == SessionStatus.COMMITTED


@dataclass(frozen=True)
class SubmitResult:
    """An accepted commitment.

    ``late`` marks a commitment appended to an already committed round.
    ``session`` is set when this commitment was the one that committed it.
    """

    commitment: ShareCommitment
    late: bool = False
    session: SessionResult | None = None


class NegotiationProtocol:
    """Collects share commitments per subject and commits or aborts rounds."""

    def __init__(self, registry: SubjectRegistry, default_deadline: int = DEFAULT_DEADLINE):
        if default_deadline < 1:
            raise ValidationException("Deadline must be at least one height", field="default_deadline")
        self._registry = registry
        self._default_deadline = default_deadline
        self._sessions: dict[str, NegotiationSession] = {}

    def session(self, subject_id: str) -> NegotiationSession | None:
        return self._sessions.get(subject_id)

    def sessions(self) -> list[NegotiationSession]:
        return [self._sessions[s] for s in sorted(self._sessions)]

    # -------------------------------------------------------------------------
    # Opening and closing
    # -------------------------------------------------------------------------

    def open(
        self,
        subject_id: str,
        round: int,
        master_public: PublicPolynomial,
        height: int,
        deadline: int | None = None,
    ) -> list[SessionResult]:
        """Open a collecting session for a round the registry has accepted.

        An older in-flight session of the same subject is aborted.

        Returns:
            Results of superseded sessions (empty or one element).
        """
        subject = self._registry.get(subject_id)
        if subject.round != round:
            raise StaleRound(subject_id, round, subject.round)
        span = self._default_deadline if deadline is None else deadline
        if span < 1:
            raise ValidationException("Deadline must be at least one height", field="deadline", value=span)

        results = []
        previous = self._sessions.get(subject_id)
        if previous is not None:
            results.append(self._abort(previous, ABORT_SUPERSEDED))

        self._sessions[subject_id] = NegotiationSession(
            subject_id=subject_id,
            round=round,
            master_public=master_public,
            threshold=subject.threshold,
            opened_at=height,
            deadline=height + span,
        )
        logger.info(f"Negotiation {subject_id}#{round} open until height {height + span}")
        return results

    def cancel(self, subject_id: str, reason: str = ABORT_REVOKED) -> SessionResult | None:
        """Abort the subject's in-flight session, if any."""
        session = self._sessions.get(subject_id)
        if session is None:
            return None
        return self._abort(session, reason)

    def expire(self, height: int) -> list[SessionResult]:
        """Abort every collecting session whose deadline lies below ``height``."""
        results = []
        for session in self.sessions():
            if not session.is_expired(height):
                continue
            timeout = NegotiationTimeout(session.subject_id, session.round, session.valid_count, session.threshold)
            results.append(self._abort(session, timeout.reason, timeout.details))
        return results

    def _abort(self, session: NegotiationSession, reason: str, details: dict[str, Any] | None = None) -> SessionResult:
        session.status = SessionStatus.ABORTED
        del self._sessions[session.subject_id]
        logger.warning(
            f"Negotiation {session.subject_id}#{session.round} aborted: {reason} "
            f"({session.valid_count}/{session.threshold} valid)"
        )
        return SessionResult(
            subject_id=session.subject_id,
            round=session.round,
            status=SessionStatus.ABORTED,
            valid=session.valid_count,
            required=session.threshold,
            reason=reason,
            details={"rejections": [list(r) for r in session.rejections], **(details or {})},
        )

    # -------------------------------------------------------------------------
    # Commitments
    # -------------------------------------------------------------------------

    def submit(self, commitment: ShareCommitment, height: int) -> SubmitResult:
        """Admit one holder's commitment.

        Raises:
            FederationError: the commitment is rejected; the open round, if
                any, keeps collecting.
        """
        subject = self._registry.check_commitment(commitment)

        session = self._sessions.get(subject.subject_id)
        if session is not None and session.round == commitment.round:
            return self._submit_to_session(session, commitment)

        if subject.state == SubjectState.ACTIVE and commitment.round == subject.committed_round:
            return self._submit_late(subject, commitment)

        if commitment.round < subject.round:
            raise StaleRound(subject.subject_id, commitment.round, subject.round)
        raise InvalidTransition(
            f"No negotiation open for round {commitment.round}",
            subject.subject_id,
            subject.state.value,
        )

    def _submit_to_session(self, session: NegotiationSession, commitment: ShareCommitment) -> SubmitResult:
        try:
            if commitment.node_id in session.commitments:
                raise DuplicateNode(session.subject_id, session.round, commitment.node_id)
            if not verify_commitment(commitment.commitment, commitment.index, session.master_public):
                raise InvalidCommitment(session.subject_id, commitment.node_id, commitment.index)
        except FederationError as e:
            session.rejections.append((commitment.node_id, e.reason))
            raise

        session.commitments[commitment.node_id] = commitment
        logger.debug(f"Negotiation {session.subject_id}#{session.round}: {session.valid_count}/{session.threshold}")

        if session.valid_count < session.threshold:
            return SubmitResult(commitment=commitment)
        return SubmitResult(commitment=commitment, session=self._commit(session))

    def _submit_late(self, subject: Subject, commitment: ShareCommitment) -> SubmitResult:
        if not verify_commitment(commitment.commitment, commitment.index, subject.master_public):
            raise InvalidCommitment(subject.subject_id, commitment.node_id, commitment.index)
        self._registry.add_late_commitment(commitment)
        return SubmitResult(commitment=commitment, late=True)

    def _commit(self, session: NegotiationSession) -> SessionResult:
        subject = self._registry.activate(
            session.subject_id,
            session.round,
            session.master_public,
            session.ordered_commitments(),
        )
        session.status = SessionStatus.COMMITTED
        del self._sessions[session.subject_id]
        return SessionResult(
            subject_id=session.subject_id,
            round=session.round,
            status=SessionStatus.COMMITTED,
            valid=session.valid_count,
            required=session.threshold,
            details={
                "master_public_key": subject.master_public_key,
                "holders": [c.node_id for c in subject.commitments],
            },
            subject=subject,
        )
