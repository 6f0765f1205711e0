"""Tests for ssid_federation.federation.audit - the hash-chained audit log."""

from __future__ import annotations

import json
from dataclasses import replace

import pytest

from ssid_federation.core.exceptions import ChainBroken
from ssid_federation.federation.audit import (
    GENESIS_HASH,
    AuditLog,
    AuditOutcome,
    AuditRecord,
)


def fill(log: AuditLog, count: int = 5) -> AuditLog:
    for i in range(count):
        log.append(
            payload_digest=f"{i:064x}",
            kind="submit_commitment",
            outcome=AuditOutcome.ACCEPTED if i % 2 == 0 else AuditOutcome.REJECTED,
            subject_id="alice" if i % 2 == 0 else "bob",
            round=1,
            height=i + 1,
            reason=None if i % 2 == 0 else "InvalidCommitment",
        )
    return log


# ============================================================================
# Appending
# ============================================================================


class TestAppend:
    def test_empty_log_head_is_genesis(self):
        log = AuditLog()
        assert log.head == GENESIS_HASH
        assert len(log) == 0

    def test_records_are_linked(self):
        log = fill(AuditLog(), 3)
        records = log.records()
        assert records[0].previous_hash == GENESIS_HASH
        assert records[1].previous_hash == records[0].record_hash
        assert records[2].previous_hash == records[1].record_hash
        assert log.head == records[2].record_hash
        assert [r.sequence for r in records] == [0, 1, 2]

    def test_same_input_same_chain(self):
        assert fill(AuditLog()).head == fill(AuditLog()).head

    def test_record_hash_verifies(self):
        record = fill(AuditLog(), 1)[0]
        assert record.verify_hash()
        assert not replace(record, kind="revoke_subject").verify_hash()

    def test_dict_round_trip(self):
        record = fill(AuditLog(), 2)[1]
        assert AuditRecord.from_dict(json.loads(record.to_json())) == record


# ============================================================================
# Verification
# ============================================================================


class TestVerifyChain:
    """verify_chain reports the first broken offset."""

    def test_intact_chain(self):
        fill(AuditLog()).verify_chain()

    def test_empty_chain(self):
        AuditLog().verify_chain()

    @pytest.mark.parametrize("offset", [0, 2, 4])
    def test_edited_record(self, offset):
        log = fill(AuditLog())
        log._records[offset] = replace(log._records[offset], outcome=AuditOutcome.COMMITTED)
        with pytest.raises(ChainBroken) as exc_info:
            log.verify_chain()
        assert exc_info.value.at_offset == offset
        assert exc_info.value.fatal

    def test_rehashed_record_breaks_next_link(self):
        log = fill(AuditLog())
        edited = replace(log._records[1], reason="edited")
        log._records[1] = replace(edited, record_hash=edited.compute_hash())
        with pytest.raises(ChainBroken) as exc_info:
            log.verify_chain()
        assert exc_info.value.at_offset == 2

    def test_removed_record(self):
        log = fill(AuditLog())
        del log._records[3]
        with pytest.raises(ChainBroken) as exc_info:
            log.verify_chain()
        assert exc_info.value.at_offset == 3


# ============================================================================
# History
# ============================================================================


class TestHistory:
    def test_filters_by_subject(self):
        log = fill(AuditLog())
        assert [r.sequence for r in log.get_history("alice")] == [0, 2, 4]
        assert [r.sequence for r in log.get_history("bob")] == [1, 3]
        assert list(log.get_history("carol")) == []

    def test_restartable(self):
        history = fill(AuditLog()).get_history("alice")
        assert list(history) == list(history)

    def test_sees_new_records_on_next_iteration(self):
        log = fill(AuditLog(), 1)
        history = log.get_history("alice")
        assert len(list(history)) == 1
        log.append(payload_digest="ff" * 32, kind="revoke_subject", outcome=AuditOutcome.ACCEPTED, subject_id="alice")
        assert len(list(history)) == 2


# ============================================================================
# Persistence
# ============================================================================


class TestPersistence:
    def test_mirror_and_load(self, tmp_path):
        path = tmp_path / "audit" / "chain.jsonl"
        log = fill(AuditLog(path))
        loaded = AuditLog.load(path)
        assert loaded.records() == log.records()
        loaded.verify_chain()

    def test_loaded_log_keeps_appending(self, tmp_path):
        path = tmp_path / "chain.jsonl"
        fill(AuditLog(path), 2)
        loaded = AuditLog.load(path)
        loaded.append(payload_digest="aa" * 32, kind="revoke_subject", outcome=AuditOutcome.ACCEPTED)
        AuditLog.load(path).verify_chain()
        assert len(AuditLog.load(path)) == 3

    def test_tampered_file_detected(self, tmp_path):
        path = tmp_path / "chain.jsonl"
        fill(AuditLog(path))
        lines = path.read_text().splitlines()
        entry = json.loads(lines[3])
        entry["reason"] = "nothing to see"
        lines[3] = json.dumps(entry)
        path.write_text("\n".join(lines) + "\n")

        with pytest.raises(ChainBroken) as exc_info:
            AuditLog.load(path).verify_chain()
        assert exc_info.value.at_offset == 3
