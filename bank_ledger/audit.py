"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every committed state change in the ledger is logged here.
"""

import hashlib
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .models import utc_now
from .storage import LedgerStorage


class AuditEventType(Enum):
    """Types of audit events"""
    # Account events
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_DELETED = "account_deleted"

    # Ledger events
    DEPOSIT_POSTED = "deposit_posted"
    WITHDRAWAL_POSTED = "withdrawal_posted"
    TRANSFER_POSTED = "transfer_posted"


@dataclass
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_type: str   # account, transaction, transfer
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = {k: _serializable(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
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
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id')
        )


def _serializable(value: Any) -> Any:
    """Convert metadata values to JSON-serializable format"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serializable(v) for v in value]
    return value


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: LedgerStorage):
        self.storage = storage
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self.storage.list_audit_events()
        if events:
            self._last_hash = events[-1].get('current_hash')

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
            user_id: ID of the actor who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=utc_now(),
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.append_audit_event(event.id, event.to_dict())
            self._last_hash = event.current_hash

            return event

    def get_all_events(self) -> List[AuditEvent]:
        """All audit events in chain order"""
        return [AuditEvent.from_dict(data) for data in self.storage.list_audit_events()]

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All audit events for a specific entity in chain order"""
        return [
            event for event in self.get_all_events()
            if event.entity_type == entity_type and event.entity_id == entity_id
        ]

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

        events = self.get_all_events()
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

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        return self._last_hash
