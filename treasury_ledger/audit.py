"""
Audit Trail Module

Hash-chained audit log with SHA-256 for tamper detection. Every mutating
ledger operation records an event here. Recording is fire-and-forget: a
failure to write an audit event is logged and never surfaces to the caller.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord, new_id, utc_now, _serialize

logger = logging.getLogger("treasury.audit")


class AuditAction(Enum):
    """Types of audit events"""
    # Generic entity lifecycle
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    # Fund and cash postings
    MOVEMENT_CREATED = "movement_created"
    MOVEMENT_DELETED = "movement_deleted"
    EXCHANGE_CREATED = "exchange_created"
    TRANSFER_TO_SUB = "transfer_to_sub"

    # Reimbursements and closings
    REIMBURSEMENT_CREATED = "reimbursement_created"
    REIMBURSEMENT_APPROVED = "reimbursement_approved"
    REIMBURSEMENT_REJECTED = "reimbursement_rejected"
    CLOSING_RECORDED = "closing_recorded"

    # Fixed deposits
    DEPOSIT_CREATED = "deposit_created"
    DEPOSIT_TOP_UP = "deposit_top_up"
    DEPOSIT_WITHDRAWAL = "deposit_withdrawal"
    INTEREST_PAID = "interest_paid"
    INTEREST_CAPITALIZED = "interest_capitalized"
    DEPOSIT_CANCELLED = "deposit_cancelled"
    DEPOSIT_RENEWED = "deposit_renewed"

    # Recovery
    COMPENSATION = "compensation"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    action: AuditAction
    module: str
    detail: str
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.metadata = _serialize(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'module': self.module,
            'detail': self.detail,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor_id': self.actor_id,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail. ``record`` is the sink every service writes to.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events", enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        events = self.storage.find(self.table_name, {}, order_by='created_at')
        if events:
            self._last_hash = events[-1].get('current_hash')

    def log_event(
        self,
        action: AuditAction,
        module: str,
        detail: str,
        entity_id: str,
        entity_type: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Append an audit event to the chain. Storage failures propagate.

        Args:
            action: What happened
            module: Ledger module (funds, petty_cash, fixed_deposit)
            detail: Human-readable description
            entity_id: ID of the affected entity
            entity_type: Type of the affected entity
            actor_id: Opaque id of the user who initiated the action
            metadata: Additional event-specific data

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = utc_now()
            event = AuditEvent(
                id=new_id(),
                created_at=now,
                updated_at=now,
                action=action,
                module=module,
                detail=detail,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                actor_id=actor_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            return event

    def record(
        self,
        action: AuditAction,
        module: str,
        detail: str,
        entity_id: str,
        entity_type: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """Fire-and-forget variant of log_event; never raises"""
        if not self.enabled:
            return None
        try:
            return self.log_event(action, module, detail, entity_id, entity_type, actor_id, metadata)
        except Exception as e:
            logger.warning(f"Audit record dropped ({action.value} {entity_type}:{entity_id}): {e}")
            return None

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Get audit events for one entity, oldest first"""
        events_data = self.storage.find(
            self.table_name,
            {'entity_type': entity_type, 'entity_id': entity_id},
            order_by='created_at'
        )
        events = [AuditEvent.from_dict(data) for data in events_data]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_module(self, module: str, start_time: Optional[datetime] = None,
                             end_time: Optional[datetime] = None) -> List[AuditEvent]:
        """Get audit events for a module within an optional time range"""
        events_data = self.storage.find(
            self.table_name,
            {'module': module},
            order_by='created_at',
            range_field='created_at' if (start_time or end_time) else None,
            range_from=start_time,
            range_to=end_time
        )
        return [AuditEvent.from_dict(data) for data in events_data]

    def get_recent(self, limit: int = 100) -> List[AuditEvent]:
        """Most recent events, newest first"""
        events_data = self.storage.find(self.table_name, {}, order_by='created_at', descending=True)
        return [AuditEvent.from_dict(data) for data in events_data[:limit]]

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

        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': i})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': i})
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
