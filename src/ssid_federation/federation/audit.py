"""Append-only, hash-chained audit log of every transition a replica applies.

Each record carries the SHA-256 hash of its predecessor, so altering any
record breaks the chain from that offset on. Records contain consensus
heights instead of timestamps: two replicas that apply the same delivery
stream produce byte-identical chains.

A broken chain means tampering or replica divergence. It is reported, never
repaired.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any

from ..core.exceptions import ChainBroken
from ..crypto.signatures import canonical_json

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditOutcome(StrEnum):
    ACCEPTED = "accepted"  # Transaction applied
    REJECTED = "rejected"  # Transaction refused, state unchanged
    COMMITTED = "committed"  # Negotiation round finalized
    ABORTED = "aborted"  # Negotiation round timed out or was superseded


@dataclass(frozen=True)
class AuditRecord:
    """One link of the audit chain.

    Attributes:
        sequence: Position in the chain, starting at 0
        previous_hash: record_hash of the previous record (GENESIS_HASH first)
        payload_digest: SHA-256 of the transaction bytes that caused it
        kind: Operation name, or negotiation_committed / negotiation_aborted
        outcome: What happened
        subject_id: Affected subject, if any
        round: Negotiation round, if any
        height: Consensus height of the delivery
        reason: Rejection or abort reason
        details: Extra non-secret context
        record_hash: SHA-256(previous_hash || canonical record)
    """

    sequence: int
    previous_hash: str
    payload_digest: str
    kind: str
    outcome: AuditOutcome
    subject_id: str | None = None
    round: int | None = None
    height: int | None = None
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    record_hash: str = ""

    def _hashable(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "payload_digest": self.payload_digest,
            "kind": self.kind,
            "outcome": self.outcome.value,
            "subject_id": self.subject_id,
            "round": self.round,
            "height": self.height,
            "reason": self.reason,
            "details": self.details,
        }

    def compute_hash(self) -> str:
        return hashlib.sha256(self.previous_hash.encode("ascii") + canonical_json(self._hashable())).hexdigest()

    def verify_hash(self) -> bool:
        return self.record_hash == self.compute_hash()

    def to_dict(self) -> dict[str, Any]:
        return {
            **self._hashable(),
            "previous_hash": self.previous_hash,
            "record_hash": self.record_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditRecord:
        return cls(
            sequence=data["sequence"],
            previous_hash=data["previous_hash"],
            payload_digest=data["payload_digest"],
            kind=data["kind"],
            outcome=AuditOutcome(data["outcome"]),
            subject_id=data.get("subject_id"),
            round=data.get("round"),
            height=data.get("height"),
            reason=data.get("reason"),
            details=data.get("details") or {},
            record_hash=data.get("record_hash", ""),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


class AuditHistory:
    """Ordered sub-history of one subject.

    Lazy and restartable: every iteration walks the log again, up to the
    length it had when that iteration started.
    """

    def __init__(self, log: AuditLog, subject_id: str):
        self._log = log
        self._subject_id = subject_id

    def __iter__(self) -> Iterator[AuditRecord]:
        end = len(self._log)
        for offset in range(end):
            record = self._log[offset]
            if record.subject_id == self._subject_id:
                yield record

    def __repr__(self) -> str:
        return f"AuditHistory(subject_id={self._subject_id!r})"


class AuditLog:
    """Hash-chained audit log, optionally mirrored to a JSON-lines file.

    Owned by the replay loop; reads are safe from other threads.
    """

    def __init__(self, path: str | Path | None = None):
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()
        self._path = Path(path) if path else None
        if self._path:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __getitem__(self, offset: int) -> AuditRecord:
        with self._lock:
            return self._records[offset]

    @property
    def head(self) -> str:
        """Hash of the last record, or GENESIS_HASH when empty."""
        with self._lock:
            return self._records[-1].record_hash if self._records else GENESIS_HASH

    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    def append(
        self,
        *,
        payload_digest: str,
        kind: str,
        outcome: AuditOutcome,
        subject_id: str | None = None,
        round: int | None = None,
        height: int | None = None,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Chain a new record onto the log and return it."""
        with self._lock:
            previous = self._records[-1].record_hash if self._records else GENESIS_HASH
            unsigned = AuditRecord(
                sequence=len(self._records),
                previous_hash=previous,
                payload_digest=payload_digest,
                kind=kind,
                outcome=outcome,
                subject_id=subject_id,
                round=round,
                height=height,
                reason=reason,
                details=details or {},
            )
            record = replace(unsigned, record_hash=unsigned.compute_hash())
            self._records.append(record)

            if self._path:
                with open(self._path, "a") as f:
                    f.write(record.to_json() + "\n")

        logger.debug(
            f"Audit #{record.sequence} {record.kind} -> {record.outcome.value}",
            extra={"extra_data": {"subject_id": subject_id, "reason": reason}},
        )
        return record

    def verify_chain(self) -> None:
        """Recompute every link.

        Raises:
            ChainBroken: at the offset of the first record whose sequence,
                back-link or hash does not verify.
        """
        previous = GENESIS_HASH
        for offset, record in enumerate(self.records()):
            if record.sequence != offset:
                raise ChainBroken(offset, "Audit sequence out of order")
            if record.previous_hash != previous:
                raise ChainBroken(offset, "Audit back-link mismatch")
            if not record.verify_hash():
                raise ChainBroken(offset, "Audit record hash mismatch")
            previous = record.record_hash

    def get_history(self, subject_id: str) -> AuditHistory:
        return AuditHistory(self, subject_id)

    @classmethod
    def load(cls, path: str | Path) -> AuditLog:
        """Load a mirrored log without recomputing anything.

        Tampering in the file surfaces on verify_chain().
        """
        log = cls()
        with open(path) as f:
            for line in f:
                line = line.strip()
                if line:
                    log._records.append(AuditRecord.from_dict(json.loads(line)))
        log._path = Path(path)
        return log
