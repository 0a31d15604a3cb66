"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every agreement transition and settlement outcome is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Agreement events
    LOAN_REQUEST_CREATED = "loan_request_created"
    LOAN_OFFER_CREATED = "loan_offer_created"
    LOAN_CLAIMED = "loan_claimed"
    LOAN_ACCEPTED = "loan_accepted"
    LOAN_REJECTED = "loan_rejected"
    LOAN_CANCELLED = "loan_cancelled"
    LOAN_COMPLETED = "loan_completed"
    CONTRACT_GENERATED = "contract_generated"

    # Settlement events
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_DECLINED = "payment_declined"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int       # Position in the chain
    event_type: AuditEventType
    entity_type: str    # agreement, transaction, contract
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, datetime):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
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
        self._lock = threading.Lock()
        self._head = None   # (event_id, sequence, hash) of the last event this trail wrote

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _chain_head(self):
        """
        Sequence and hash of the most recent event

        The cached head is trusted only while its event is still stored; a
        rolled-back write forces a rescan. Assumes one AuditTrail per table.
        """
        if self._head is not None:
            event_id, sequence, current_hash = self._head
            if self.storage.exists(self.table_name, event_id):
                return sequence, current_hash

        events = self.storage.load_all(self.table_name)
        if not events:
            self._head = None
            return 0, ""
        last = max(events, key=lambda e: e['sequence'])
        self._head = (last['id'], last['sequence'], last['current_hash'])
        return last['sequence'], last['current_hash']

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            sequence, previous_hash = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=sequence + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = (event.id, event.sequence, event.current_hash)
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity in chain order"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self._load_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
