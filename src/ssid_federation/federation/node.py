"""A federation node: one replica plus the operations exposed around it.

FederationNode wires settings, membership, registry, negotiation protocol,
audit log and consensus adapter together. Queries only ever return public
material: master public keys, threshold parameters, pseudonym tags and audit
records. The master scalar is reachable through ``reconstruction_ceremony``
alone.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any

from ..core.config import FederationSettings, get_config
from ..core.exceptions import ConfigException, InvalidTransition
from ..crypto.shares import PseudonymTag, Share, commit, verify_commitments
from ..crypto.shares import derive_pseudonym as _derive_pseudonym
from ..crypto.signatures import IdentityKey
from .audit import AuditHistory, AuditLog, AuditRecord
from .ceremony import ShareContribution, reconstruction_ceremony
from .consensus import ConsensusAdapter, OrderingService
from .models import Federation, Request, ShareCommitment, SubjectState, SubmitCommitment
from .negotiation import NegotiationProtocol
from .registry import SubjectRegistry

logger = logging.getLogger(__name__)


class FederationNode:
    """One member of the SS-ID federation.

    Example:
        >>> ordering = InMemoryOrderingService()
        >>> node = FederationNode("node-a", federation, ordering, identity=key)
        >>> node.submit(Request.create(create_tx, subject_key))
        >>> node.sync()
        >>> node.get_subject("alice")["state"]
        'pending'
    """

    def __init__(
        self,
        node_id: str,
        federation: Federation,
        ordering: OrderingService,
        identity: IdentityKey | None = None,
        settings: FederationSettings | None = None,
        audit: AuditLog | None = None,
    ):
        self.settings = settings or get_config()
        if node_id not in federation:
            raise ConfigException(f"Node {node_id} is not a federation member")
        if identity is not None and federation.public_key(node_id) != identity.public_key_hex:
            raise ConfigException(f"Identity key does not match the registered key of {node_id}")

        self.node_id = node_id
        self.federation = federation
        self.identity = identity

        self.registry = SubjectRegistry(
            federation,
            max_subject_id_size=self.settings.max_subject_id_size,
            max_holders=self.settings.max_holders,
        )
        self.protocol = NegotiationProtocol(self.registry, default_deadline=self.settings.negotiation_deadline)
        self.audit = audit or _open_audit_log(self.settings.audit_log_path)
        # Node-local, never part of the replicated chain
        self.ceremony_log = AuditLog()
        self.adapter = ConsensusAdapter(
            self.registry,
            self.protocol,
            self.audit,
            ordering,
            audit_verify_interval=self.settings.audit_verify_interval,
        )

    @classmethod
    def from_config(cls, ordering: OrderingService, settings: FederationSettings | None = None) -> FederationNode:
        """Build a node from SSID_* settings.

        Raises:
            ConfigException: node id or federation registry missing, or the
                configured key does not belong to the node.
        """
        settings = settings or get_config()
        missing = []
        if not settings.node_id:
            missing.append("SSID_NODE_ID")
        if not settings.federation_registry_path:
            missing.append("SSID_FEDERATION_REGISTRY")
        if missing:
            raise ConfigException("Federation node is not configured", missing_vars=missing)

        identity = None
        if settings.node_private_key:
            try:
                identity = IdentityKey.from_private_hex(settings.node_private_key)
            except ValueError as e:
                raise ConfigException(f"Invalid SSID_NODE_PRIVATE_KEY: {e}") from e

        federation = Federation.load(settings.federation_registry_path)
        return cls(settings.node_id, federation, ordering, identity=identity, settings=settings)

    def __repr__(self) -> str:
        return f"FederationNode(node_id={self.node_id!r}, height={self.adapter.last_height})"

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def submit(self, request: Request) -> str:
        return self.adapter.submit(request)

    def sync(self) -> list[AuditRecord]:
        return self.adapter.sync()

    def _require_identity(self) -> IdentityKey:
        if self.identity is None:
            raise ConfigException("Node has no identity key", missing_vars=["SSID_NODE_PRIVATE_KEY"])
        return self.identity

    def commitment_request(self, subject_id: str, round: int, share: Share) -> Request:
        """Signed SubmitCommitment for a share this node holds."""
        identity = self._require_identity()
        commitment = ShareCommitment.sign(subject_id, round, self.node_id, commit(share), identity)
        return Request.create(SubmitCommitment(commitment=commitment), identity, signer=self.node_id)

    def contribute(self, subject_id: str, share: Share) -> ShareContribution:
        """Sign this node's share for a reconstruction ceremony."""
        subject = self.registry.get(subject_id)
        return ShareContribution.sign(subject_id, subject.committed_round, self.node_id, share, self._require_identity())

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_subject(self, subject_id: str) -> dict[str, Any]:
        """Public view: subject_id, state, master_public_key, threshold_params."""
        return self.registry.view(subject_id)

    def derive_pseudonym(self, subject_id: str, public_info: bytes) -> PseudonymTag:
        """Pseudonym tag of an active subject for a given context.

        Raises:
            UnknownSubject, InvalidTransition: subject missing or not active.
        """
        subject = self.registry.get(subject_id)
        if subject.state != SubjectState.ACTIVE or subject.master_public is None:
            raise InvalidTransition("Pseudonyms need an active subject", subject_id, subject.state.value)
        return _derive_pseudonym(public_info, subject.master_public.key)

    def get_history(self, subject_id: str) -> AuditHistory:
        return self.audit.get_history(subject_id)

    def verify_chain(self) -> None:
        """Raises ChainBroken (and halts the replica) on a broken chain."""
        self.adapter.verify()

    def verify_subject(self, subject_id: str) -> list[tuple[str, bool]]:
        """Re-check every stored commitment of a subject on the thread pool."""
        subject = self.registry.get(subject_id)
        if subject.master_public is None:
            return []
        return verify_commitments(
            ((c.node_id, c.commitment) for c in subject.commitments),
            subject.master_public,
            workers=self.settings.verify_workers,
        )

    def state_hash(self) -> str:
        return self.adapter.state_hash()

    def cross_check(self, peer_hash: str) -> None:
        self.adapter.cross_check(peer_hash)

    # -------------------------------------------------------------------------
    # Reconstruction
    # -------------------------------------------------------------------------

    def reconstruction_ceremony(
        self,
        subject_id: str,
        contributions: Sequence[ShareContribution],
        purpose: str = "",
    ) -> AbstractContextManager[int]:
        """Scoped reconstruction of a subject's master scalar.

        Usage:
            with node.reconstruction_ceremony("alice", contributions, purpose="recovery") as secret:
                ...
        """
        return reconstruction_ceremony(
            self.registry.get(subject_id),
            contributions,
            self.federation,
            self.ceremony_log,
            purpose=purpose,
            workers=self.settings.verify_workers,
        )

    def ceremonies(self) -> Iterator[AuditRecord]:
        return iter(self.ceremony_log.records())


def _open_audit_log(path: str | None) -> AuditLog:
    """Replicated log, mirrored to ``path`` when configured.

    Replay always starts from height 0, so the mirror must start empty.
    """
    if path is None:
        return AuditLog()
    mirror = Path(path)
    if mirror.exists() and mirror.stat().st_size > 0:
        raise ConfigException(f"Audit log {path} already holds records; move it aside before replaying")
    logger.info(f"Mirroring audit log to {path}")
    return AuditLog(mirror)
