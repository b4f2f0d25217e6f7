"""
Tests for the Hash-Chained Webhook Security Log

Chain linking, tamper detection, signed checkpoints and truncation.
"""

import base64

import pytest

from decrown_billing.core.audit import GENESIS_HASH, CheckpointSigner, SecurityLog, compute_entry_hash
from decrown_billing.persistence.models import ValidationResult


@pytest.fixture
def security_log(db, signer, clock):
    return SecurityLog(db, signer, checkpoint_interval=0, clock=clock)


def record_many(log, count, result=ValidationResult.VALID):
    return [
        log.record("mock", "payment.succeeded", f"evt_{i}", result, source_ip="10.0.0.1")
        for i in range(count)
    ]


class TestChain:
    """Test appending and verifying the chain."""

    def test_empty_log_is_valid(self, security_log):
        result = security_log.verify()

        assert result.valid
        assert result.length == 0

    def test_entries_link_from_genesis(self, security_log):
        entries = record_many(security_log, 3)

        assert [e.sequence for e in entries] == [0, 1, 2]
        assert entries[0].prev_hash == GENESIS_HASH
        assert entries[1].prev_hash == entries[0].entry_hash
        assert entries[2].prev_hash == entries[1].entry_hash
        assert entries[2].entry_hash == compute_entry_hash(entries[2])

        result = security_log.verify()
        assert result.valid
        assert result.length == 3

    def test_verify_pages_through_long_logs(self, security_log):
        record_many(security_log, 7)

        result = security_log.verify(page_size=2)

        assert result.valid
        assert result.length == 7

    def test_rejections_are_logged_too(self, security_log):
        entry = security_log.record(
            "stripe", "unknown", "unknown", ValidationResult.INVALID_SIGNATURE,
            error_message="x" * 5000, user_agent="u" * 900,
        )

        assert entry.validation_result == ValidationResult.INVALID_SIGNATURE
        assert len(entry.error_message) == 1000
        assert len(entry.user_agent) == 500
        assert security_log.verify().valid

    def test_modified_entry_is_detected(self, db, security_log):
        """Rewriting a rejection as valid breaks the entry's hash."""
        record_many(security_log, 2)
        security_log.record("mock", "payment.succeeded", "evt_forged", ValidationResult.INVALID_SIGNATURE)
        record_many(security_log, 1)

        db.execute_write(
            "UPDATE webhook_security_logs SET validation_result = ? WHERE sequence = ?",
            ("valid", 2)
        )
        result = security_log.verify()

        assert not result.valid
        assert result.length == 2
        assert result.error == "Entry 2 was modified"

    def test_deleted_entry_is_detected(self, db, security_log):
        record_many(security_log, 3)

        db.execute_write("DELETE FROM webhook_security_logs WHERE sequence = ?", (1,))
        result = security_log.verify()

        assert not result.valid
        assert result.error == "Chain sequence gap at position 1"

    def test_relinked_entry_is_detected(self, db, security_log):
        record_many(security_log, 3)

        db.execute_write(
            "UPDATE webhook_security_logs SET prev_hash = ? WHERE sequence = ?",
            (GENESIS_HASH, 2)
        )

        assert security_log.verify().error == "Hash chain broken at position 2"


class TestCheckpoints:
    """Test Ed25519-signed checkpoints of the chain head."""

    def test_periodic_checkpoints(self, db, signer, clock):
        log = SecurityLog(db, signer, checkpoint_interval=2, clock=clock)
        record_many(log, 5)

        checkpoints = log.entries.checkpoints()

        assert [cp.sequence for cp in checkpoints] == [1, 3]
        assert all(cp.key_id == signer.key_id for cp in checkpoints)
        assert log.verify().checkpoints_verified == 2

    def test_manual_checkpoint_is_idempotent(self, security_log, signer):
        assert security_log.checkpoint() is None

        record_many(security_log, 2)
        first = security_log.checkpoint()
        second = security_log.checkpoint()

        assert first.sequence == 1
        assert second.signature == first.signature
        assert len(security_log.entries.checkpoints()) == 1
        assert signer.verify(first.signed_content(), first.signature)

    def test_truncated_log_is_detected(self, db, signer, clock):
        """Dropping the tail below a signed checkpoint fails verification."""
        log = SecurityLog(db, signer, checkpoint_interval=2, clock=clock)
        record_many(log, 4)

        db.execute_write("DELETE FROM webhook_security_logs WHERE sequence >= ?", (2,))
        result = log.verify()

        assert not result.valid
        assert result.length == 2
        assert result.error == "Log is shorter than its latest checkpoint"

    def test_forged_checkpoint_signature(self, db, security_log):
        record_many(security_log, 2)
        checkpoint = security_log.checkpoint()
        forged = CheckpointSigner().sign(checkpoint.signed_content())

        db.execute_write("UPDATE audit_checkpoints SET signature = ? WHERE sequence = ?", (forged, 1))
        result = security_log.verify()

        assert not result.valid
        assert result.error == "Checkpoint signature at 1 is invalid"

    def test_checkpoint_of_rebuilt_log_does_not_match(self, db, security_log):
        """A log rebuilt from scratch no longer matches the signed head."""
        record_many(security_log, 2)
        security_log.checkpoint()

        db.execute_write("DELETE FROM webhook_security_logs")
        security_log.record("mock", "payment.succeeded", "evt_a", ValidationResult.VALID)
        security_log.record("mock", "payment.succeeded", "evt_b", ValidationResult.VALID)
        result = security_log.verify()

        assert not result.valid
        assert result.error == "Checkpoint at 1 does not match the log"


class TestCheckpointSigner:
    """Test key handling."""

    def test_sign_and_verify(self, signer):
        signature = signer.sign(b"7:abc")

        assert signer.verify(b"7:abc", signature)
        assert not signer.verify(b"8:abc", signature)
        assert not CheckpointSigner().verify(b"7:abc", signature)

    def test_garbage_signature(self, signer):
        assert not signer.verify(b"7:abc", "not-base64!!")

    def test_key_from_environment(self):
        environ = {"AUDIT_SIGNING_KEY": base64.b64encode(bytes(range(32))).decode("ascii")}

        first = CheckpointSigner.from_env(environ)
        second = CheckpointSigner.from_env(environ)

        assert first.key_id == second.key_id
        assert second.verify(b"data", first.sign(b"data"))

    def test_ephemeral_key_without_environment(self):
        assert CheckpointSigner.from_env({}).key_id != CheckpointSigner.from_env({}).key_id
