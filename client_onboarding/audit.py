"""
Audit Trail Module

Hash-chained, append-only audit log (SHA-256) for onboarding activity.
Every committed state transition, reviewer assignment, decision, setup step
and blocker change is recorded here so a client's onboarding history can be
reconstructed and checked for tampering.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storage_value


class AuditEventType(Enum):
    """Types of audit events"""
    # Onboarding workflow (state machine)
    ONBOARDING_WORKFLOW_CREATED = "onboarding_workflow_created"
    STATE_TRANSITION = "state_transition"
    TRANSITION_REJECTED = "transition_rejected"

    # Account setup
    ACCOUNT_SETUP_INITIATED = "account_setup_initiated"
    ACCOUNT_SETUP_UPDATED = "account_setup_updated"
    SETUP_STEP_COMPLETED = "setup_step_completed"
    SETUP_STEP_FAILED = "setup_step_failed"
    ACCOUNT_SETUP_COMPLETED = "account_setup_completed"
    ACCOUNT_SETUP_FAILED = "account_setup_failed"

    # Compliance approval
    WORKFLOW_CREATED = "workflow_created"
    REVIEWER_ASSIGNED = "reviewer_assigned"
    STEP_STARTED = "step_started"
    DECISION_SUBMITTED = "decision_submitted"
    STEP_COMPLETED = "step_completed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_ESCALATED = "workflow_escalated"

    # Identity and documents
    VERIFICATION_SESSION_CREATED = "verification_session_created"
    VERIFICATION_SESSION_COMPLETED = "verification_session_completed"
    DOCUMENT_SUBMITTED = "document_submitted"
    DOCUMENT_STATUS_CHANGED = "document_status_changed"
    DOCUMENT_REQUESTED = "document_requested"

    # Progress tracking
    PROGRESS_INITIALIZED = "progress_initialized"
    MILESTONE_ACHIEVED = "milestone_achieved"
    BLOCKER_REPORTED = "blocker_reported"
    BLOCKER_ESCALATED = "blocker_escalated"
    BLOCKER_RESOLVED = "blocker_resolved"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # onboarding_workflow, compliance_workflow, account_setup, ...
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        if self.metadata:
            self.metadata = to_storage_value(self.metadata)

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
            'user_id': self.user_id,
            'sequence': self.sequence,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail shared by all onboarding engines
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Pick up the chain head left by a previous process (durable storage)"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)

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
            user_id: ID of user (or system actor) who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            self._sequence += 1

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                sequence=self._sequence
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash

            return event

    def _load_events(self, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        data = self.storage.find(self.table_name, filters) if filters else self.storage.load_all(self.table_name)
        events = [AuditEvent.from_dict(item) for item in data]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first.
        With ``limit`` only the most recent N are returned.
        """
        events = self._load_events({'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType, limit: Optional[int] = None) -> List[AuditEvent]:
        events = self._load_events({'event_type': event_type.value})
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        events = self._load_events()
        if limit:
            events = events[-limit:]
        return events

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

    def get_latest_hash(self) -> Optional[str]:
        return self._last_hash
