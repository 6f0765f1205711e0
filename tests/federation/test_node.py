"""Tests for ssid_federation.federation.node - FederationNode wiring and queries."""

from __future__ import annotations

import json

import pytest

from ssid_federation.core.config import FederationSettings
from ssid_federation.core.exceptions import ConfigException, InvalidTransition, UnknownSubject
from ssid_federation.crypto.shares import derive_pseudonym, encode_point, public_point
from ssid_federation.crypto.signatures import IdentityKey
from ssid_federation.federation.audit import AuditLog
from ssid_federation.federation.node import FederationNode

from conftest import NODE_IDS


def activate(node, requests, dealing, holders=NODE_IDS[:3]):
    node.submit(requests.create("alice", dealing))
    node.sync()
    for node_id in holders:
        node.submit(requests.commitment("alice", 1, node_id, dealing))
    node.sync()


# ============================================================================
# Construction
# ============================================================================


class TestConstruction:
    def test_unknown_node(self, federation, ordering, settings):
        with pytest.raises(ConfigException):
            FederationNode("node-x", federation, ordering, settings=settings)

    def test_identity_must_match_registry(self, federation, ordering, settings):
        with pytest.raises(ConfigException):
            FederationNode("node-1", federation, ordering, identity=IdentityKey.generate(), settings=settings)

    def test_from_config(self, tmp_path, monkeypatch, clean_env, federation, node_keys, ordering):
        registry_path = tmp_path / "federation.json"
        registry_path.write_text(json.dumps(federation.to_dict()))
        monkeypatch.setenv("SSID_NODE_ID", "node-2")
        monkeypatch.setenv("SSID_NODE_PRIVATE_KEY", node_keys["node-2"].private_key_hex)
        monkeypatch.setenv("SSID_FEDERATION_REGISTRY", str(registry_path))
        monkeypatch.setenv("SSID_NEGOTIATION_DEADLINE", "7")

        node = FederationNode.from_config(ordering)
        assert node.node_id == "node-2"
        assert node.identity.public_key_hex == node_keys["node-2"].public_key_hex
        assert node.protocol._default_deadline == 7

    def test_from_config_missing(self, clean_env, ordering):
        with pytest.raises(ConfigException) as exc_info:
            FederationNode.from_config(ordering)
        assert exc_info.value.missing_vars == ["SSID_NODE_ID", "SSID_FEDERATION_REGISTRY"]

    def test_from_config_bad_private_key(self, tmp_path, clean_env, federation, ordering):
        registry_path = tmp_path / "federation.json"
        registry_path.write_text(json.dumps(federation.to_dict()))
        settings = FederationSettings(
            node_id="node-1",
            federation_registry_path=str(registry_path),
            node_private_key="abcd",
        )
        with pytest.raises(ConfigException):
            FederationNode.from_config(ordering, settings)

    def test_audit_mirror(self, tmp_path, federation, ordering, settings, requests, dealing):
        path = tmp_path / "audit.jsonl"
        mirrored = settings.model_copy(update={"audit_log_path": str(path)})
        node = FederationNode("node-1", federation, ordering, settings=mirrored)
        node.submit(requests.create("alice", dealing))
        node.sync()
        assert AuditLog.load(path).head == node.audit.head

    def test_audit_mirror_must_start_empty(self, tmp_path, federation, ordering, settings):
        path = tmp_path / "audit.jsonl"
        path.write_text('{"sequence": 0}\n')
        mirrored = settings.model_copy(update={"audit_log_path": str(path)})
        with pytest.raises(ConfigException):
            FederationNode("node-1", federation, ordering, settings=mirrored)


# ============================================================================
# Queries
# ============================================================================


class TestQueries:
    def test_get_subject_unknown(self, node):
        with pytest.raises(UnknownSubject):
            node.get_subject("nobody")

    def test_get_subject_exposes_public_fields_only(self, node, requests, dealing):
        activate(node, requests, dealing)
        assert set(node.get_subject("alice")) == {"subject_id", "state", "master_public_key", "threshold_params"}

    def test_derive_pseudonym(self, node, requests, dealing):
        activate(node, requests, dealing)
        tag = node.derive_pseudonym("alice", b"shop.example")
        assert tag == derive_pseudonym(b"shop.example", dealing.public.key)
        assert tag == node.derive_pseudonym("alice", b"shop.example")

    def test_derive_pseudonym_pending(self, node, requests, dealing):
        node.submit(requests.create("alice", dealing))
        node.sync()
        with pytest.raises(InvalidTransition):
            node.derive_pseudonym("alice", b"ctx")

    def test_history(self, node, requests, dealing):
        activate(node, requests, dealing)
        kinds = [r.kind for r in node.get_history("alice")]
        assert kinds == ["create_subject"] + ["submit_commitment"] * 3 + ["negotiation_committed"]

    def test_verify_subject(self, node, requests, dealing):
        activate(node, requests, dealing, holders=NODE_IDS)
        assert node.verify_subject("alice") == [(node_id, True) for node_id in NODE_IDS]

    def test_verify_subject_pending(self, node, requests, dealing):
        node.submit(requests.create("alice", dealing))
        node.sync()
        assert node.verify_subject("alice") == []


# ============================================================================
# Commitments and Ceremonies
# ============================================================================


class TestHolderOperations:
    def test_commitment_request(self, node, requests, dealing):
        node.submit(requests.create("alice", dealing))
        node.sync()
        node.submit(node.commitment_request("alice", 1, dealing.shares[1]))
        (record,) = node.sync()
        assert record.details["node_id"] == "node-1"
        assert node.protocol.session("alice").valid_count == 1

    def test_commitment_request_needs_identity(self, federation, ordering, settings, dealing):
        observer = FederationNode("node-4", federation, ordering, settings=settings)
        with pytest.raises(ConfigException):
            observer.commitment_request("alice", 1, dealing.shares[4])

    def test_ceremony_through_node(self, federation, ordering, node_keys, settings, requests, dealing):
        nodes = {
            node_id: FederationNode(node_id, federation, ordering, identity=node_keys[node_id], settings=settings)
            for node_id in NODE_IDS[:3]
        }
        coordinator = nodes["node-1"]
        activate(coordinator, requests, dealing)
        for member in nodes.values():
            member.sync()

        items = [member.contribute("alice", dealing.shares[i + 1]) for i, member in enumerate(nodes.values())]
        with coordinator.reconstruction_ceremony("alice", items, purpose="recovery") as secret:
            assert encode_point(public_point(secret)) == dealing.public.coefficients[0]

        (record,) = list(coordinator.ceremonies())
        assert record.kind == "reconstruction"
        # Ceremonies stay out of the replicated chain
        assert all(r.kind != "reconstruction" for r in coordinator.audit.records())
        assert coordinator.state_hash() == nodes["node-2"].state_hash()
