#!/usr/bin/env python3
"""Example 01: Subject lifecycle - negotiate, use and recover a master key.

This example runs a three-node federation in one process:
1. Negotiating a 2-of-3 master key for a subject (DKG)
2. Committing the negotiation through the ordering service
3. Deriving a pseudonym and checking replica agreement
4. Reconstructing the key in an audited ceremony

Requirements:
    - `pip install -e .` from the repository root
    - No external services (in-memory ordering service)

Usage:
    python examples/01_subject_lifecycle.py
"""

from __future__ import annotations

from ssid_federation.core.config import FederationSettings
from ssid_federation.core.logging import configure_logging
from ssid_federation.crypto import (
    IdentityKey,
    KeyDealing,
    aggregate_shares,
    combine_public,
    encode_point,
)
from ssid_federation.crypto.shares import public_point
from ssid_federation.federation import (
    CreateSubject,
    Federation,
    FederationNode,
    InMemoryOrderingService,
    Request,
)

NODE_IDS = ("node-a", "node-b", "node-c")


def print_step(step: int, text: str) -> None:
    """Print a step description."""
    print(f"\n[Step {step}] {text}")
    print("-" * 40)


def main() -> None:
    """Run the subject lifecycle example."""
    configure_logging(level="WARNING", json_format=False)
    print("=" * 60)
    print("  SSID Federation Example 01: Subject Lifecycle")
    print("=" * 60)

    node_keys = {node_id: IdentityKey.generate() for node_id in NODE_IDS}
    federation = Federation({node_id: key.public_key_hex for node_id, key in node_keys.items()})
    ordering = InMemoryOrderingService()
    settings = FederationSettings(negotiation_deadline=5)
    nodes = {
        node_id: FederationNode(node_id, federation, ordering, identity=node_keys[node_id], settings=settings)
        for node_id in NODE_IDS
    }

    # =========================================================================
    # Step 1: Distributed key generation
    # =========================================================================
    print_step(1, "Negotiating a 2-of-3 master key")

    dealings = [KeyDealing.deal(2, 3) for _ in NODE_IDS]
    master_public = combine_public([d.public for d in dealings])
    shares = {
        node_id: aggregate_shares(i, [d.share_for(i) for d in dealings])
        for i, node_id in enumerate(NODE_IDS, start=1)
    }
    print(f"  Master public key: {master_public.key_hex[:32]}...")
    print("  Each node holds one aggregated share; nobody holds the key.")

    # =========================================================================
    # Step 2: Create the subject and commit the round
    # =========================================================================
    print_step(2, "Creating subject 'alice' and submitting commitments")

    subject_key = IdentityKey.generate()
    create = CreateSubject(
        subject_id="alice",
        subject_key=subject_key.public_key_hex,
        threshold=2,
        holders=NODE_IDS,
        master_public=master_public,
    )
    nodes["node-a"].submit(Request.create(create, subject_key))
    for node in nodes.values():
        node.sync()

    for node_id in NODE_IDS[:2]:
        nodes[node_id].submit(nodes[node_id].commitment_request("alice", 1, shares[node_id]))
    for node in nodes.values():
        node.sync()

    view = nodes["node-c"].get_subject("alice")
    print(f"  State on node-c: {view['state']}")
    print(f"  Threshold: {view['threshold_params']}")

    # =========================================================================
    # Step 3: Pseudonyms and replica agreement
    # =========================================================================
    print_step(3, "Deriving a pseudonym and comparing replicas")

    tags = {node_id: node.derive_pseudonym("alice", b"shop.example") for node_id, node in nodes.items()}
    print(f"  Pseudonym for shop.example: {tags['node-a'][:32]}...")
    print(f"  Same tag on every node: {len(set(tags.values())) == 1}")

    hashes = {node.state_hash() for node in nodes.values()}
    print(f"  Replica state hashes agree: {len(hashes) == 1}")
    for record in nodes["node-b"].get_history("alice"):
        print(f"    #{record.sequence} h={record.height} {record.kind}: {record.outcome}")

    # =========================================================================
    # Step 4: Audited reconstruction
    # =========================================================================
    print_step(4, "Recovering the master key in a ceremony")

    contributions = [nodes[node_id].contribute("alice", shares[node_id]) for node_id in ("node-b", "node-c")]
    coordinator = nodes["node-a"]
    with coordinator.reconstruction_ceremony("alice", contributions, purpose="recovery demo") as secret:
        matches = encode_point(public_point(secret)) == master_public.coefficients[0]
        print(f"  Reconstructed key matches master public key: {matches}")

    (record,) = coordinator.ceremonies()
    print(f"  Ceremony logged locally: {record.outcome}, participants={record.details['participants']}")

    coordinator.verify_chain()
    print("\n✓ Audit chain verified")


if __name__ == "__main__":
    main()
