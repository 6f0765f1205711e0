"""Federation layer: subjects, negotiation, deterministic replay and audit.

Modules:
- models: subjects, commitments, sessions, transactions and signed requests
- registry: subject lifecycle state machine
- negotiation: master-key negotiation rounds
- consensus: ordering service protocol and the replay adapter
- audit: hash-chained audit log
- ceremony: scoped master-key reconstruction
- node: FederationNode, the wiring and query surface
"""

from ssid_federation.federation.audit import (
    GENESIS_HASH,
    AuditHistory,
    AuditLog,
    AuditOutcome,
    AuditRecord,
)
from ssid_federation.federation.ceremony import (
    ShareContribution,
    reconstruction_ceremony,
)
from ssid_federation.federation.consensus import (
    ConsensusAdapter,
    Delivery,
    InMemoryOrderingService,
    OrderingService,
)
from ssid_federation.federation.models import (
    SUBJECT_SIGNER,
    CreateSubject,
    Federation,
    NegotiateKey,
    NegotiationSession,
    Operation,
    Request,
    RevokeSubject,
    SessionStatus,
    ShareCommitment,
    Subject,
    SubjectState,
    SubmitCommitment,
    Transaction,
)
from ssid_federation.federation.negotiation import (
    NegotiationProtocol,
    SessionResult,
    SubmitResult,
)
from ssid_federation.federation.node import FederationNode
from ssid_federation.federation.registry import SubjectRegistry

__all__ = [
    # Audit
    "GENESIS_HASH",
    "AuditHistory",
    "AuditLog",
    "AuditOutcome",
    "AuditRecord",
    # Ceremony
    "ShareContribution",
    "reconstruction_ceremony",
    # Consensus
    "ConsensusAdapter",
    "Delivery",
    "InMemoryOrderingService",
    "OrderingService",
    # Models
    "SUBJECT_SIGNER",
    "CreateSubject",
    "Federation",
    "NegotiateKey",
    "NegotiationSession",
    "Operation",
    "Request",
    "RevokeSubject",
    "SessionStatus",
    "ShareCommitment",
    "Subject",
    "SubjectState",
    "SubmitCommitment",
    "Transaction",
    # Negotiation
    "NegotiationProtocol",
    "SessionResult",
    "SubmitResult",
    # Node
    "FederationNode",
    # Registry
    "SubjectRegistry",
]
