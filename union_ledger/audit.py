"""
Audit Trail Module

Append-only record of every account, transaction, loan and import state
change. Each event stores the SHA-256 digest of its predecessor, so editing
or removing a stored event breaks the chain. Events are written only after
the change they describe has committed.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, _serialize_value


class AuditEventType(Enum):
    """What happened to the audited entity"""
    # Accounts
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_DEACTIVATED = "account_deactivated"

    # Transactions and transfers
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSFER_COMPLETED = "transfer_completed"

    # Loan lifecycle
    LOAN_APPLIED = "loan_applied"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_PAYMENT_MADE = "loan_payment_made"
    LOAN_PAID_OFF = "loan_paid_off"
    LOAN_DEFAULTED = "loan_defaulted"

    # Administration
    BULK_IMPORT_COMPLETED = "bulk_import_completed"


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str  # account, transaction, transfer, loan, import
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    actor_id: Optional[str] = None

    # Not covered by the digest
    UNHASHED_FIELDS = ('current_hash', 'updated_at')

    def __post_init__(self):
        self.metadata = _serialize_value(self.metadata or {})

    def digest(self) -> str:
        """SHA-256 over the canonical JSON form of every hashed field"""
        payload = {
            key: value for key, value in self.to_dict().items()
            if key not in self.UNHASHED_FIELDS
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def is_intact(self) -> bool:
        return self.current_hash == self.digest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            actor_id=data.get('actor_id'),
        )


class AuditTrail:
    """
    Writer and verifier for the audit chain.

    The chain head is cached in memory and re-read from storage on start-up,
    so a restarted process keeps extending the same chain.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._chain_lock = threading.Lock()
        self._head: str = self._read_head()

    def _read_head(self) -> str:
        stored = self.storage.load_all(self.table_name)
        return (stored[-1].get('current_hash') or "") if stored else ""

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None
    ) -> None:
        """
        Queue an event for the chain.

        The event is written once the caller's unit of work commits, so a
        rolled-back change never leaves an event (or a chain gap) behind.

        Args:
            event_type: What happened
            entity_type: Kind of record it happened to
            entity_id: ID of that record
            metadata: Additional event-specific data
            actor_id: Caller-supplied identity that initiated the action
        """
        if not self.enabled:
            return
        metadata = _serialize_value(metadata or {})
        self.storage.after_commit(
            lambda: self._link(event_type, entity_type, entity_id, metadata, actor_id)
        )

    def _link(self, event_type: AuditEventType, entity_type: str, entity_id: str,
              metadata: Dict[str, Any], actor_id: Optional[str]) -> AuditEvent:
        # Unit of work before chain lock, matching every other writer.
        with self.storage.atomic(), self._chain_lock:
            created = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=created,
                updated_at=created,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._head,
                current_hash="",
                metadata=metadata,
                actor_id=actor_id
            )
            event.current_hash = event.digest()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = event.current_hash
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Events recorded against one entity, oldest first"""
        matches = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        return [AuditEvent.from_dict(data) for data in matches]

    def get_all_events(self) -> List[AuditEvent]:
        return [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain from the first event.

        Returns:
            ``valid`` plus ``hash_errors`` (events whose content no longer
            matches their digest) and ``chain_breaks`` (events whose
            ``previous_hash`` does not match the event before them)
        """
        hash_errors: List[Dict[str, Any]] = []
        chain_breaks: List[Dict[str, Any]] = []
        events = self.get_all_events()

        expected_previous = ""
        for position, event in enumerate(events):
            if not event.is_intact():
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'stored_hash': event.current_hash,
                    'computed_hash': event.digest(),
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'stored_previous_hash': event.previous_hash,
                    'expected_previous_hash': expected_previous,
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }
