"""Global test fixtures for the ssid_federation test suite."""

from __future__ import annotations

import os
from dataclasses import dataclass

import pytest

from ssid_federation.core.config import FederationSettings, clear_config_cache
from ssid_federation.crypto.shares import (
    KeyDealing,
    PublicPolynomial,
    Share,
    aggregate_shares,
    combine_public,
    commit,
)
from ssid_federation.crypto.signatures import IdentityKey
from ssid_federation.federation.consensus import InMemoryOrderingService
from ssid_federation.federation.models import (
    CreateSubject,
    Federation,
    NegotiateKey,
    Request,
    RevokeSubject,
    ShareCommitment,
    SubmitCommitment,
)
from ssid_federation.federation.node import FederationNode

NODE_IDS = ("node-1", "node-2", "node-3", "node-4", "node-5")


# ============================================================================
# Key Material
# ============================================================================


@dataclass
class Dealt:
    """Result of a simulated distributed key generation."""

    public: PublicPolynomial
    shares: dict[int, Share]


def run_dkg(t: int, n: int) -> Dealt:
    """Every holder deals a polynomial; the master key is their sum."""
    dealings = [KeyDealing.deal(t, n) for _ in range(n)]
    public = combine_public([d.public for d in dealings])
    shares = {i: aggregate_shares(i, [d.share_for(i) for d in dealings]) for i in range(1, n + 1)}
    return Dealt(public=public, shares=shares)


@pytest.fixture(scope="session")
def node_keys() -> dict[str, IdentityKey]:
    return {node_id: IdentityKey.generate() for node_id in NODE_IDS}


@pytest.fixture(scope="session")
def federation(node_keys) -> Federation:
    return Federation({node_id: key.public_key_hex for node_id, key in node_keys.items()})


@pytest.fixture(scope="session")
def subject_key() -> IdentityKey:
    return IdentityKey.generate()


@pytest.fixture
def dealing() -> Dealt:
    """3-of-5 master key negotiated by all five nodes."""
    return run_dkg(3, 5)


@pytest.fixture
def make_dealing():
    return run_dkg


# ============================================================================
# Requests
# ============================================================================


class RequestFactory:
    """Builds correctly signed requests for tests."""

    def __init__(self, node_keys: dict[str, IdentityKey], subject_key: IdentityKey):
        self.node_keys = node_keys
        self.subject_key = subject_key

    def create(
        self,
        subject_id: str,
        dealt: Dealt,
        threshold: int = 3,
        holders: tuple[str, ...] = NODE_IDS,
        deadline: int | None = None,
    ) -> Request:
        tx = CreateSubject(
            subject_id=subject_id,
            subject_key=self.subject_key.public_key_hex,
            threshold=threshold,
            holders=holders,
            master_public=dealt.public,
            deadline=deadline,
        )
        return Request.create(tx, self.subject_key)

    def negotiate(self, subject_id: str, round: int, dealt: Dealt, deadline: int | None = None) -> Request:
        tx = NegotiateKey(subject_id=subject_id, round=round, master_public=dealt.public, deadline=deadline)
        return Request.create(tx, self.subject_key)

    def share_commitment(self, subject_id: str, round: int, node_id: str, share: Share) -> ShareCommitment:
        return ShareCommitment.sign(subject_id, round, node_id, commit(share), self.node_keys[node_id])

    def commitment(self, subject_id: str, round: int, node_id: str, dealt: Dealt) -> Request:
        index = NODE_IDS.index(node_id) + 1
        item = self.share_commitment(subject_id, round, node_id, dealt.shares[index])
        return Request.create(SubmitCommitment(commitment=item), self.node_keys[node_id], signer=node_id)

    def revoke(self, subject_id: str, reason: str = "") -> Request:
        return Request.create(RevokeSubject(subject_id=subject_id, reason=reason), self.subject_key)


@pytest.fixture
def requests(node_keys, subject_key) -> RequestFactory:
    return RequestFactory(node_keys, subject_key)


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all SSID_ environment variables and the cached config."""
    for key in list(os.environ.keys()):
        if key.startswith("SSID_"):
            monkeypatch.delenv(key, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def settings(clean_env) -> FederationSettings:
    return FederationSettings(negotiation_deadline=5, verify_workers=2)


# ============================================================================
# Nodes
# ============================================================================


@pytest.fixture
def ordering() -> InMemoryOrderingService:
    return InMemoryOrderingService()


@pytest.fixture
def node(federation, ordering, node_keys, settings) -> FederationNode:
    return FederationNode("node-1", federation, ordering, identity=node_keys["node-1"], settings=settings)
