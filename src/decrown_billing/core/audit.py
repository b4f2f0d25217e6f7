"""
Hash-Chained Webhook Security Log

Every inbound webhook outcome (accepted, rejected, duplicate, failed) is
appended here. Each entry carries the hash of its predecessor, starting from
GENESIS, so editing, deleting or reordering any entry breaks the chain.

Periodic checkpoints sign the current head with an Ed25519 key; a verifier
holding the public key can also detect a log that was truncated and rebuilt.
"""

import base64
import hashlib
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional
import structlog
from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from ..persistence.database import Database
from ..persistence.models import AuditCheckpoint, SecurityLogEntry, ValidationResult, utcnow
from ..persistence.repository import SecurityLogRepository

logger = structlog.get_logger()

GENESIS_HASH = "GENESIS"


def compute_entry_hash(entry: SecurityLogEntry) -> str:
    return hashlib.sha3_256(entry.canonical_content().encode("utf-8")).hexdigest()


class CheckpointSigner:
    """Ed25519 signer for security log checkpoints."""

    def __init__(self, private_key_bytes: Optional[bytes] = None):
        if private_key_bytes:
            self._private_key = ed25519.Ed25519PrivateKey.from_private_bytes(private_key_bytes)
        else:
            self._private_key = ed25519.Ed25519PrivateKey.generate()
        self._public_key = self._private_key.public_key()
        self.key_id = hashlib.sha256(self.public_key_bytes()).hexdigest()[:16]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CheckpointSigner":
        """Load the key from AUDIT_SIGNING_KEY (base64 raw 32 bytes) or generate one."""
        env = os.environ if environ is None else environ
        encoded = env.get("AUDIT_SIGNING_KEY")
        if encoded:
            return cls(base64.b64decode(encoded))
        signer = cls()
        logger.warning("audit_signing_key_ephemeral", key_id=signer.key_id)
        return signer

    def public_key_bytes(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def sign(self, data: bytes) -> str:
        return base64.b64encode(self._private_key.sign(data)).decode("utf-8")

    def verify(self, data: bytes, signature_b64: str) -> bool:
        try:
            self._public_key.verify(base64.b64decode(signature_b64), data)
        except (CryptoInvalidSignature, ValueError):
            return False
        return True


@dataclass
class ChainVerification:
    valid: bool
    length: int
    checkpoints_verified: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "length": self.length,
            "checkpoints_verified": self.checkpoints_verified,
            "error": self.error,
        }


class SecurityLog:
    """
    Append-only security log.

    Appends are serialized (advisory lock on PostgreSQL, the write lock on
    SQLite) so sequence numbers and prev_hash links never fork. Call
    ``record`` outside of other transactions so the entry survives a
    rollback of the work it describes.
    """

    def __init__(
        self,
        db: Database,
        signer: Optional[CheckpointSigner] = None,
        checkpoint_interval: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.signer = signer or CheckpointSigner()
        self.checkpoint_interval = checkpoint_interval
        self.clock = clock
        self.entries = SecurityLogRepository(db)

    def record(
        self,
        provider: str,
        event_type: str,
        event_id: str,
        result: ValidationResult,
        error_message: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SecurityLogEntry:
        with self.db.transaction():
            self.db.advisory_lock("webhook_security_logs")
            head = self.entries.head()
            entry = SecurityLogEntry(
                sequence=head.sequence + 1 if head else 0,
                provider=provider,
                event_type=event_type or "unknown",
                event_id=event_id or "unknown",
                validation_result=result,
                prev_hash=head.entry_hash if head else GENESIS_HASH,
                logged_at=self.clock(),
                error_message=error_message[:1000] if error_message else None,
                source_ip=source_ip,
                user_agent=user_agent[:500] if user_agent else None,
            )
            entry.entry_hash = compute_entry_hash(entry)
            self.entries.append(entry)
            if self.checkpoint_interval and (entry.sequence + 1) % self.checkpoint_interval == 0:
                self._sign_head(entry)

        log = logger.info if result in (ValidationResult.VALID, ValidationResult.DUPLICATE) else logger.warning
        log(
            "webhook_security_event",
            provider=provider,
            event_id=entry.event_id,
            event_type=entry.event_type,
            result=result.value,
            sequence=entry.sequence,
            error=error_message,
        )
        return entry

    def _sign_head(self, head: SecurityLogEntry) -> AuditCheckpoint:
        checkpoint = AuditCheckpoint(
            sequence=head.sequence,
            head_hash=head.entry_hash,
            signature="",
            key_id=self.signer.key_id,
            created_at=self.clock(),
        )
        checkpoint.signature = self.signer.sign(checkpoint.signed_content())
        self.entries.add_checkpoint(checkpoint)
        logger.info("audit_checkpoint_signed", sequence=head.sequence, key_id=self.signer.key_id)
        return checkpoint

    def checkpoint(self) -> Optional[AuditCheckpoint]:
        """Sign the current head now. Returns None for an empty log."""
        with self.db.transaction():
            self.db.advisory_lock("webhook_security_logs")
            head = self.entries.head()
            if head is None:
                return None
            latest = self.entries.latest_checkpoint()
            if latest is not None and latest.sequence == head.sequence:
                return latest
            return self._sign_head(head)

    def verify(self, page_size: int = 1000) -> ChainVerification:
        """
        Walk the chain from GENESIS, recomputing every hash.

        Returns (valid, length, checkpoints verified, first error).
        """
        checkpoints = {cp.sequence: cp for cp in self.entries.checkpoints()}
        verified = 0
        prev_hash = GENESIS_HASH
        expected = 0
        last_sequence = -1

        while True:
            page = self.entries.page(last_sequence, page_size)
            if not page:
                break
            for entry in page:
                if entry.sequence != expected:
                    return ChainVerification(False, expected, verified, f"Chain sequence gap at position {expected}")
                if entry.prev_hash != prev_hash:
                    return ChainVerification(False, expected, verified, f"Hash chain broken at position {expected}")
                if compute_entry_hash(entry) != entry.entry_hash:
                    return ChainVerification(False, expected, verified, f"Entry {expected} was modified")

                checkpoint = checkpoints.get(entry.sequence)
                if checkpoint is not None:
                    if checkpoint.head_hash != entry.entry_hash:
                        return ChainVerification(
                            False, expected, verified, f"Checkpoint at {entry.sequence} does not match the log"
                        )
                    if checkpoint.key_id == self.signer.key_id:
                        if not self.signer.verify(checkpoint.signed_content(), checkpoint.signature):
                            return ChainVerification(
                                False, expected, verified, f"Checkpoint signature at {entry.sequence} is invalid"
                            )
                        verified += 1

                prev_hash = entry.entry_hash
                expected += 1
                last_sequence = entry.sequence

        if checkpoints and max(checkpoints) >= expected:
            return ChainVerification(False, expected, verified, "Log is shorter than its latest checkpoint")
        return ChainVerification(True, expected, verified)
