"""
Event System Module

In-process publish/subscribe used by the onboarding engines to cooperate.
The state machine, compliance engine, progress tracker and verification
engines never call each other directly; they publish domain events carrying
copied snapshots keyed by workflow id and the controller reacts to them.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events emitted during client onboarding"""

    # Onboarding workflow (state machine)
    WORKFLOW_CREATED = "onboarding.workflow_created"
    STATE_TRANSITION = "onboarding.state_transition"
    AUTO_TRANSITION_READY = "onboarding.auto_transition_ready"

    # Account setup
    ACCOUNT_SETUP_INITIATED = "account_setup.initiated"
    ACCOUNT_SETUP_COMPLETED = "account_setup.completed"
    ACCOUNT_SETUP_FAILED = "account_setup.failed"
    SETUP_STEP_STARTED = "account_setup.step_started"
    SETUP_STEP_COMPLETED = "account_setup.step_completed"
    SETUP_STEP_FAILED = "account_setup.step_failed"

    # Compliance approval
    COMPLIANCE_WORKFLOW_CREATED = "compliance.workflow_created"
    REVIEWER_ASSIGNED = "compliance.reviewer_assigned"
    COMPLIANCE_STEP_STARTED = "compliance.step_started"
    DECISION_SUBMITTED = "compliance.decision_submitted"
    COMPLIANCE_STEP_COMPLETED = "compliance.step_completed"
    COMPLIANCE_WORKFLOW_COMPLETED = "compliance.workflow_completed"
    COMPLIANCE_WORKFLOW_ESCALATED = "compliance.workflow_escalated"

    # Identity verification
    IDENTITY_SESSION_CREATED = "identity.session_created"
    IDENTITY_METHOD_COMPLETED = "identity.method_completed"
    IDENTITY_SESSION_COMPLETED = "identity.session_completed"

    # Document collection
    DOCUMENT_SUBMITTED = "document.submitted"
    DOCUMENT_VERIFIED = "document.verified"
    DOCUMENT_REJECTED = "document.rejected"
    DOCUMENT_UNDER_REVIEW = "document.under_review"
    ADDITIONAL_DOCUMENT_REQUESTED = "document.additional_requested"

    # Progress tracking
    PROGRESS_INITIALIZED = "progress.initialized"
    STEP_PROGRESS_UPDATED = "progress.step_updated"
    PHASE_COMPLETED = "progress.phase_completed"
    MILESTONE_ACHIEVED = "progress.milestone_achieved"
    BLOCKER_REPORTED = "progress.blocker_reported"
    BLOCKER_ESCALATED = "progress.blocker_escalated"
    BLOCKER_RESOLVED = "progress.blocker_resolved"
    PROGRESS_COMPLETED = "progress.completed"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        timestamp = data['timestamp']
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp,
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """
    Central event dispatcher.

    Handlers run synchronously in registration order. A handler that raises is
    logged and skipped; the remaining handlers still run and the publisher
    never sees the exception.
    """

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("onboarding.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def unsubscribe_all(self, handler: Callable) -> None:
        with self._lock:
            try:
                self._global_handlers.remove(handler)
            except ValueError:
                self.logger.warning(f"Global handler {_handler_name(handler)} was not subscribed")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}",
                    exc_info=True
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
            self.logger.info("All event handlers cleared")

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)

    def get_subscribed_events(self) -> List[DomainEvent]:
        with self._lock:
            return [event for event, handlers in self._handlers.items() if handlers]


_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the process-wide event dispatcher"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    global _global_dispatcher
    _global_dispatcher = dispatcher


class EventPublisherMixin:
    """Mixin giving an engine a ``publish_event`` helper"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: Optional[EventDispatcher]) -> None:
        self._event_dispatcher = event_dispatcher

    @property
    def event_dispatcher(self) -> EventDispatcher:
        return self._event_dispatcher or get_global_dispatcher()

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        self.event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        ))
