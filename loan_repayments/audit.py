"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan and installment state change is logged here, inside the same
storage transaction as the change itself.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_CREATED = "loan_created"
    LOAN_CYCLE_RESET = "loan_cycle_reset"
    LOAN_REPAID = "loan_repaid"
    REPAYMENT_RECEIVED = "repayment_received"
    REPAYMENT_UNAPPLIED = "repayment_unapplied"
    INSTALLMENT_REPAID = "installment_repaid"
    INSTALLMENT_PREPAID = "installment_prepaid"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # loan, installment or repayment
    entity_id: str
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any]
    sequence: int = 0   # Position in the chain

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'sequence': self.sequence,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from its stored dictionary"""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        # Sequence and hash of the newest event, kept in step with the chain
        self.head_table = f"{table_name}_head"

    def _chain_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.head_table, "head")
        if head is not None:
            return head

        # Chain written before the head record existed
        events = self.storage.load_all(self.table_name)
        if not events:
            return {'sequence': 0, 'current_hash': ""}
        last = max(events, key=lambda e: e.get('sequence', 0))
        return {'sequence': last['sequence'], 'current_hash': last['current_hash']}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data (JSON serializable)

        Returns:
            Created AuditEvent
        """
        # Reading the chain head and appending happen in one transaction
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            # The head is stored in the same transaction, so a rollback rewinds it too
            head = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'],
                current_hash="",
                metadata=json.loads(json.dumps(metadata or {}, default=str)),
                sequence=head['sequence'] + 1
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, "head", {
                'sequence': event.sequence,
                'current_hash': event.current_hash
            })
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for an entity in chain order"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_all_events(self) -> List[AuditEvent]:
        """Get the whole chain in order"""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with ``valid``, ``total_events``, ``hash_errors`` and
            ``chain_breaks`` (lists of event ids)
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for event in events:
            if not event.verify_hash():
                result['hash_errors'].append(event.id)
            if event.previous_hash != previous_hash:
                result['chain_breaks'].append(event.id)
            previous_hash = event.current_hash

        result['valid'] = not result['hash_errors'] and not result['chain_breaks']
        return result
