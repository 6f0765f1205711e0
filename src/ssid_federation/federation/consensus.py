"""Deterministic replay of ordered transactions.

Every node runs one ConsensusAdapter. Clients hand signed requests to
``submit``, which broadcasts their canonical bytes through the ordering
service. The service delivers them back to every node as (height, bytes)
pairs, possibly more than once, and ``deliver`` applies them:

1. heights at or below the last applied one are redeliveries and skipped,
2. sessions whose deadline lies below the new height are aborted,
3. the request is decoded, its signature re-checked and the transaction
   dispatched to the registry or the negotiation protocol,
4. the outcome is appended to the replicated audit log.

No step reads the wall clock or local randomness, so two replicas fed the
same delivery stream end with identical registries and audit chains.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Protocol

from ..core.exceptions import (
    ChainBroken,
    FederationError,
    InvalidSignature,
    MalformedTransaction,
    ReplicaDivergence,
    ReplicaHalted,
    ValidationException,
)
from ..core.logging import correlation_context
from .audit import AuditLog, AuditOutcome, AuditRecord
from .models import (
    SUBJECT_SIGNER,
    CreateSubject,
    Federation,
    IdempotencyKey,
    NegotiateKey,
    Request,
    RevokeSubject,
    SubmitCommitment,
    Transaction,
)
from .negotiation import NegotiationProtocol, SessionResult
from .registry import SubjectRegistry

logger = logging.getLogger(__name__)

KIND_MALFORMED = "malformed"
KIND_COMMITTED = "negotiation_committed"
KIND_ABORTED = "negotiation_aborted"


@dataclass(frozen=True)
class Delivery:
    """One transaction as ordered by the ordering service."""

    height: int
    tx: bytes

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.tx).hexdigest()


# ---------------------------------------------------------------------------
# Ordering service protocol
# ---------------------------------------------------------------------------


class OrderingService(Protocol):
    """Totally ordered, at-least-once broadcast of opaque transaction bytes."""

    def broadcast(self, tx: bytes) -> None: ...
    def deliveries(self, after: int) -> Iterator[Delivery]: ...


class InMemoryOrderingService:
    """Single-process implementation of :class:`OrderingService`.

    Heights start at 1. ``redeliver`` queues an already ordered transaction
    to be handed out again, which exercises at-least-once handling.
    """

    def __init__(self) -> None:
        self._log: list[Delivery] = []
        self._redeliveries: list[Delivery] = []
        self._lock = threading.Lock()

    @property
    def height(self) -> int:
        with self._lock:
            return len(self._log)

    def broadcast(self, tx: bytes) -> None:
        with self._lock:
            self._log.append(Delivery(height=len(self._log) + 1, tx=tx))

    def redeliver(self, height: int) -> None:
        with self._lock:
            if not 1 <= height <= len(self._log):
                raise ValidationException("No delivery at that height", field="height", value=height)
            self._redeliveries.append(self._log[height - 1])

    def deliveries(self, after: int) -> Iterator[Delivery]:
        with self._lock:
            pending = self._redeliveries + self._log[after:]
            self._redeliveries = []
        yield from pending


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ConsensusAdapter:
    """Applies delivered transactions to one replica, in height order.

    Owns every append to the replicated audit log. After a fatal error the
    adapter halts and refuses further work with ReplicaHalted.
    """

    def __init__(
        self,
        registry: SubjectRegistry,
        protocol: NegotiationProtocol,
        audit: AuditLog,
        ordering: OrderingService,
        audit_verify_interval: int = 0,
    ):
        self._registry = registry
        self._protocol = protocol
        self._audit = audit
        self._ordering = ordering
        self._audit_verify_interval = audit_verify_interval

        self._last_height = 0
        self._applied_count = 0
        # idempotency key -> digest of the accepted transaction
        self._applied: dict[IdempotencyKey, str] = {}
        # Submitted digests not yet delivered back
        self._submitted: set[str] = set()
        self._halted_by: FederationError | None = None

    @property
    def federation(self) -> Federation:
        return self._registry.federation

    @property
    def last_height(self) -> int:
        return self._last_height

    @property
    def halted(self) -> bool:
        return self._halted_by is not None

    def _check_running(self) -> None:
        if self._halted_by is not None:
            raise ReplicaHalted(
                f"Replica halted: {self._halted_by.message}",
                {"cause": self._halted_by.to_dict()},
            )

    def _halt(self, error: FederationError) -> None:
        if self._halted_by is None:
            self._halted_by = error
            logger.critical(f"Replica halted at height {self._last_height}: {error.message}")

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def authorize(self, request: Request, tx: Transaction) -> None:
        """Check the request signature against the key allowed to issue it.

        Raises:
            InvalidSignature: wrong signer or signature.
            UnknownSubject: the request targets a subject not yet created.
        """
        match tx:
            case CreateSubject():
                expected_signer, public_key = SUBJECT_SIGNER, tx.subject_key
            case NegotiateKey() | RevokeSubject():
                expected_signer, public_key = SUBJECT_SIGNER, self._registry.get(tx.subject_id).subject_key
            case SubmitCommitment():
                expected_signer = tx.commitment.node_id
                public_key = self.federation.public_key(expected_signer)
            case _:
                raise MalformedTransaction(f"Unsupported transaction {type(tx).__name__}")

        if request.signer != expected_signer:
            raise InvalidSignature(f"{request.op.value} must be signed by {expected_signer}", signer=request.signer)
        if public_key is None or not request.verify(public_key):
            raise InvalidSignature("Request signature does not verify", signer=request.signer)

    def submit(self, request: Request) -> str:
        """Verify a client request and broadcast it once.

        Returns:
            The transaction digest, also when the request was already submitted.
        """
        self._check_running()
        tx = request.transaction()
        self.authorize(request, tx)

        digest = request.digest
        if digest in self._submitted:
            logger.debug(f"Request {digest[:16]} already submitted")
            return digest
        self._ordering.broadcast(request.to_bytes())
        self._submitted.add(digest)
        logger.info(f"Submitted {request.op.value} for {request.subject_id} ({digest[:16]})")
        return digest

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    def sync(self) -> list[AuditRecord]:
        """Pull every pending delivery from the ordering service and apply it."""
        self._check_running()
        records: list[AuditRecord] = []
        for delivery in self._ordering.deliveries(self._last_height):
            records.extend(self.deliver(delivery))
        return records

    def deliver(self, delivery: Delivery) -> list[AuditRecord]:
        """Apply one delivery and return the audit records it produced.

        Raises:
            ReplicaHalted: the replica stopped after a fatal error.
            ChainBroken: periodic verification found a broken chain.
        """
        self._check_running()
        if delivery.height <= self._last_height:
            logger.debug(f"Skipping redelivery at height {delivery.height}")
            return []

        digest = delivery.digest
        self._submitted.discard(digest)
        with correlation_context(digest):
            self._last_height = delivery.height
            records = [self._record_session(r, digest, delivery.height) for r in self._protocol.expire(delivery.height)]
            records.extend(self._apply(delivery, digest))

            self._applied_count += 1
            if self._audit_verify_interval and self._applied_count % self._audit_verify_interval == 0:
                self.verify()
        return records

    def _apply(self, delivery: Delivery, digest: str) -> list[AuditRecord]:
        try:
            request = Request.from_bytes(delivery.tx)
        except MalformedTransaction as e:
            logger.warning(f"Rejected undecodable transaction at height {delivery.height}")
            return [self._record_rejection(e, digest, delivery.height, KIND_MALFORMED)]

        try:
            tx = request.transaction()
        except MalformedTransaction as e:
            return [self._record_rejection(e, digest, delivery.height, request.op.value, request.subject_id)]

        key = tx.idempotency_key()
        if self._applied.get(key) == digest:
            logger.debug(f"Skipping already applied {request.op.value} {key}")
            return []

        try:
            self.authorize(request, tx)
            details, sessions = self._dispatch(tx, delivery.height)
        except FederationError as e:
            if e.fatal:
                self._halt(e)
                raise
            return [self._record_rejection(e, digest, delivery.height, request.op.value, tx.subject_id, tx.round)]

        if isinstance(tx, RevokeSubject):
            self._forget(tx.subject_id)
        self._applied[key] = digest
        records = [
            self._audit.append(
                payload_digest=digest,
                kind=request.op.value,
                outcome=AuditOutcome.ACCEPTED,
                subject_id=tx.subject_id,
                round=tx.round,
                height=delivery.height,
                details=details,
            )
        ]
        logger.info(f"Applied {request.op.value} for {tx.subject_id} at height {delivery.height}")
        records.extend(self._record_session(r, digest, delivery.height) for r in sessions)
        return records

    def _forget(self, subject_id: str) -> None:
        """Drop idempotency keys of a revoked subject; its transactions are rejected from now on."""
        for key in [k for k in self._applied if k[0] == subject_id]:
            del self._applied[key]

    def _dispatch(self, tx: Transaction, height: int) -> tuple[dict[str, Any], list[SessionResult]]:
        """Run one transaction against registry and protocol state."""
        match tx:
            case CreateSubject():
                subject = self._registry.create(tx, height)
                sessions = self._protocol.open(tx.subject_id, tx.round, tx.master_public, height, tx.deadline)
                return {"threshold": subject.threshold_params, "holders": list(subject.holders)}, sessions
            case NegotiateKey():
                self._registry.open_round(tx.subject_id, tx.round, tx.master_public)
                sessions = self._protocol.open(tx.subject_id, tx.round, tx.master_public, height, tx.deadline)
                return {"master_public_key": tx.master_public.key_hex}, sessions
            case SubmitCommitment():
                result = self._protocol.submit(tx.commitment, height)
                details = {"node_id": tx.commitment.node_id, "index": tx.commitment.index, "late": result.late}
                return details, [result.session] if result.session else []
            case RevokeSubject():
                self._registry.revoke(tx.subject_id)
                cancelled = self._protocol.cancel(tx.subject_id)
                return {"reason": tx.reason}, [cancelled] if cancelled else []
            case _:
                raise MalformedTransaction(f"Unsupported transaction {type(tx).__name__}")

    def _record_rejection(
        self,
        error: FederationError,
        digest: str,
        height: int,
        kind: str,
        subject_id: str | None = None,
        round: int | None = None,
    ) -> AuditRecord:
        logger.warning(
            f"Rejected {kind} at height {height}: {error.reason}",
            extra={"extra_data": {"subject_id": subject_id, "error": error.to_dict()}},
        )
        return self._audit.append(
            payload_digest=digest,
            kind=kind,
            outcome=AuditOutcome.REJECTED,
            subject_id=subject_id,
            round=round,
            height=height,
            reason=error.reason,
            details=error.details,
        )

    def _record_session(self, result: SessionResult, digest: str, height: int) -> AuditRecord:
        return self._audit.append(
            payload_digest=digest,
            kind=KIND_COMMITTED if result.committed else KIND_ABORTED,
            outcome=AuditOutcome.COMMITTED if result.committed else AuditOutcome.ABORTED,
            subject_id=result.subject_id,
            round=result.round,
            height=height,
            reason=result.reason,
            details={"valid": result.valid, "required": result.required, **result.details},
        )

    # -------------------------------------------------------------------------
    # Integrity
    # -------------------------------------------------------------------------

    def state_hash(self) -> str:
        """Hash of registry state and audit head, comparable across replicas."""
        return hashlib.sha256(f"{self._registry.state_digest()}:{self._audit.head}".encode("ascii")).hexdigest()

    def cross_check(self, peer_hash: str) -> None:
        """Compare with a peer's state hash taken at the same height.

        Raises:
            ReplicaDivergence: hashes differ; this replica halts.
        """
        self._check_running()
        local_hash = self.state_hash()
        if local_hash != peer_hash:
            error = ReplicaDivergence(self._last_height, local_hash, peer_hash)
            self._halt(error)
            raise error

    def verify(self) -> None:
        """Verify the audit chain.

        Raises:
            ChainBroken: the chain does not verify; this replica halts.
        """
        try:
            self._audit.verify_chain()
        except ChainBroken as e:
            self._halt(e)
            raise
