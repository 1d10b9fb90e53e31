"""
Onboarding Workflow State Machine

Owns the canonical lifecycle of a client onboarding. The transition graph is a
static table keyed by ``(state, event)``; business checks are attached to
rules by validator *name* and resolved at run time, so the graph can be
inspected and tested on its own while validators are swapped freely.

Every committed transition is persisted, audited and then published as a
``STATE_TRANSITION`` event. The controller listens for those events to drive
the document, identity, compliance, account-setup and progress engines.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Any, Tuple
from enum import Enum
import logging
import threading
import uuid

from .storage import StorageInterface, StorageRecord, KeyedLocks
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .config import get_config
from .logging_config import log_action


logger = logging.getLogger("onboarding.state_machine")


class WorkflowState(Enum):
    """Lifecycle states of a client onboarding"""
    INITIATED = "INITIATED"
    DOCUMENT_COLLECTION = "DOCUMENT_COLLECTION"
    DOCUMENT_VERIFICATION = "DOCUMENT_VERIFICATION"
    IDENTITY_VERIFICATION = "IDENTITY_VERIFICATION"
    KYC_PROCESSING = "KYC_PROCESSING"
    AML_SCREENING = "AML_SCREENING"
    RISK_ASSESSMENT = "RISK_ASSESSMENT"
    SUITABILITY_REVIEW = "SUITABILITY_REVIEW"
    COMPLIANCE_REVIEW = "COMPLIANCE_REVIEW"
    ACCOUNT_SETUP = "ACCOUNT_SETUP"
    FUNDING_SETUP = "FUNDING_SETUP"
    FINAL_APPROVAL = "FINAL_APPROVAL"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.REJECTED, WorkflowState.CANCELLED})


class WorkflowEvent(Enum):
    """Events that drive the onboarding state machine"""
    START_ONBOARDING = "START_ONBOARDING"
    DOCUMENTS_SUBMITTED = "DOCUMENTS_SUBMITTED"
    DOCUMENTS_VERIFIED = "DOCUMENTS_VERIFIED"
    DOCUMENTS_REJECTED = "DOCUMENTS_REJECTED"
    IDENTITY_VERIFIED = "IDENTITY_VERIFIED"
    IDENTITY_VERIFICATION_FAILED = "IDENTITY_VERIFICATION_FAILED"
    KYC_COMPLETED = "KYC_COMPLETED"
    AML_CLEARED = "AML_CLEARED"
    AML_FLAGGED = "AML_FLAGGED"
    RISK_ASSESSED = "RISK_ASSESSED"
    SUITABILITY_APPROVED = "SUITABILITY_APPROVED"
    COMPLIANCE_APPROVED = "COMPLIANCE_APPROVED"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    FUNDING_COMPLETED = "FUNDING_COMPLETED"
    FINAL_APPROVED = "FINAL_APPROVED"
    RESUME_APPLICATION = "RESUME_APPLICATION"
    REJECT = "REJECT"
    SUSPEND = "SUSPEND"
    CANCEL = "CANCEL"


class ValidationStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class TransitionErrorCode(Enum):
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONDITIONS_NOT_MET = "CONDITIONS_NOT_MET"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"


@dataclass
class ValidationResult:
    """Outcome of one named validator"""
    validator: str
    status: ValidationStatus
    message: str = ""


@dataclass
class StateTransition:
    """One committed entry of a workflow's transition log"""
    id: str
    from_state: WorkflowState
    to_state: WorkflowState
    event: WorkflowEvent
    triggered_by: str
    timestamp: datetime
    validation_results: List[ValidationResult] = field(default_factory=list)
    approved_by: Optional[str] = None


@dataclass
class WorkflowInstance(StorageRecord):
    """Onboarding workflow; mutated only through ``process_event``"""
    client_id: str
    tenant_id: str
    current_state: WorkflowState = WorkflowState.INITIATED
    previous_state: Optional[WorkflowState] = None
    state_data: Dict[str, Any] = field(default_factory=dict)
    transitions: List[StateTransition] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.current_state in TERMINAL_STATES


Condition = Callable[[WorkflowInstance, Dict[str, Any]], bool]
Validator = Callable[[WorkflowInstance, Dict[str, Any]], ValidationResult]


@dataclass
class TransitionRule:
    """
    Edge of the transition graph. At most one rule exists per
    ``(from_state, event)`` pair.
    """
    from_state: WorkflowState
    event: WorkflowEvent
    to_state: WorkflowState
    validators: List[str] = field(default_factory=list)
    requires_approval: bool = False
    auto_transition: bool = False
    timeout_ms: Optional[int] = None
    condition: Optional[Condition] = None

    @property
    def key(self) -> Tuple[WorkflowState, WorkflowEvent]:
        return (self.from_state, self.event)


@dataclass
class TransitionError:
    code: TransitionErrorCode
    message: str


@dataclass
class TransitionResult:
    """Structured result of ``process_event``; guard failures never raise"""
    success: bool
    new_state: Optional[WorkflowState] = None
    errors: List[TransitionError] = field(default_factory=list)
    transition: Optional[StateTransition] = None


# Default validators. Each receives the workflow as it stands before the
# transition plus the incoming event data.

def _passed(message: str = "") -> ValidationResult:
    return ValidationResult(validator="", status=ValidationStatus.PASSED, message=message)


def _failed(message: str) -> ValidationResult:
    return ValidationResult(validator="", status=ValidationStatus.FAILED, message=message)


def _lookup(workflow: WorkflowInstance, event_data: Dict[str, Any], key: str) -> Any:
    if key in event_data:
        return event_data[key]
    return workflow.state_data.get(key)


def validate_client_information(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> ValidationResult:
    missing = [key for key in ("client_type", "account_type") if not workflow.metadata.get(key)]
    if missing:
        return _failed(f"Missing client information: {', '.join(missing)}")
    return _passed("Client information present")


def validate_documents_submitted(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> ValidationResult:
    documents = _lookup(workflow, event_data, "document_ids") or []
    if not documents:
        return _failed("At least one document must be submitted")
    return _passed(f"{len(documents)} document(s) submitted")


def validate_identity_confidence(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> ValidationResult:
    score = _lookup(workflow, event_data, "confidence_score")
    if score is None:
        return _failed("Identity verification confidence score is required")
    threshold = get_config().identity_score_threshold
    if score >= threshold:
        return _passed(f"Identity confidence {score} meets threshold {threshold}")
    if score >= threshold - 15:
        return ValidationResult(
            validator="",
            status=ValidationStatus.WARNING,
            message=f"Identity confidence {score} is below {threshold}; manual review recommended"
        )
    return _failed(f"Identity confidence {score} is below threshold {threshold}")


def validate_kyc_profile(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> ValidationResult:
    if not _lookup(workflow, event_data, "kyc_profile_id"):
        return _failed("KYC profile reference is required")
    return _passed("KYC profile recorded")


def validate_aml_screening(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> ValidationResult:
    matches = event_data.get("aml_matches") or []
    if matches:
        return _failed(f"AML screening returned {len(matches)} potential match(es)")
    return _passed("No AML matches")


RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


def validate_risk_assessment(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> ValidationResult:
    level = _lookup(workflow, event_data, "risk_level")
    if level not in RISK_LEVELS:
        return _failed("A risk level of LOW, MEDIUM, HIGH or CRITICAL is required")
    return _passed(f"Risk level {level}")


def validate_funding_received(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> ValidationResult:
    try:
        funded = Decimal(str(_lookup(workflow, event_data, "funded_amount") or "0"))
        minimum = Decimal(str(_lookup(workflow, event_data, "minimum_initial_deposit")
                              or get_config().minimum_initial_deposit))
    except InvalidOperation:
        return _failed("Funded amount must be numeric")
    if funded < minimum:
        return _failed(f"Funded amount {funded} is below minimum {minimum}")
    return _passed(f"Funded amount {funded} received")


def risk_level_acceptable(workflow: WorkflowInstance, event_data: Dict[str, Any]) -> bool:
    """Critical-risk clients cannot proceed to suitability review"""
    return _lookup(workflow, event_data, "risk_level") != "CRITICAL"


DEFAULT_VALIDATORS: Dict[str, Validator] = {
    "client_information_present": validate_client_information,
    "documents_submitted": validate_documents_submitted,
    "identity_confidence": validate_identity_confidence,
    "kyc_profile_complete": validate_kyc_profile,
    "aml_screening_clear": validate_aml_screening,
    "risk_assessment_recorded": validate_risk_assessment,
    "funding_received": validate_funding_received,
}


def build_default_rules() -> List[TransitionRule]:
    """The onboarding transition graph: happy path first, then side exits"""
    S, E = WorkflowState, WorkflowEvent
    rules = [
        TransitionRule(S.INITIATED, E.START_ONBOARDING, S.DOCUMENT_COLLECTION,
                       validators=["client_information_present"]),
        TransitionRule(S.DOCUMENT_COLLECTION, E.DOCUMENTS_SUBMITTED, S.DOCUMENT_VERIFICATION,
                       validators=["documents_submitted"]),
        TransitionRule(S.DOCUMENT_VERIFICATION, E.DOCUMENTS_VERIFIED, S.IDENTITY_VERIFICATION,
                       auto_transition=True),
        TransitionRule(S.DOCUMENT_VERIFICATION, E.DOCUMENTS_REJECTED, S.DOCUMENT_COLLECTION),
        TransitionRule(S.IDENTITY_VERIFICATION, E.IDENTITY_VERIFIED, S.KYC_PROCESSING,
                       validators=["identity_confidence"], auto_transition=True),
        TransitionRule(S.IDENTITY_VERIFICATION, E.IDENTITY_VERIFICATION_FAILED, S.DOCUMENT_COLLECTION),
        TransitionRule(S.KYC_PROCESSING, E.KYC_COMPLETED, S.AML_SCREENING,
                       validators=["kyc_profile_complete"], auto_transition=True),
        TransitionRule(S.AML_SCREENING, E.AML_CLEARED, S.RISK_ASSESSMENT,
                       validators=["aml_screening_clear"], auto_transition=True),
        TransitionRule(S.AML_SCREENING, E.AML_FLAGGED, S.COMPLIANCE_REVIEW),
        TransitionRule(S.RISK_ASSESSMENT, E.RISK_ASSESSED, S.SUITABILITY_REVIEW,
                       validators=["risk_assessment_recorded"], condition=risk_level_acceptable),
        TransitionRule(S.SUITABILITY_REVIEW, E.SUITABILITY_APPROVED, S.COMPLIANCE_REVIEW),
        TransitionRule(S.COMPLIANCE_REVIEW, E.COMPLIANCE_APPROVED, S.ACCOUNT_SETUP,
                       requires_approval=True),
        TransitionRule(S.ACCOUNT_SETUP, E.ACCOUNT_CREATED, S.FUNDING_SETUP),
        TransitionRule(S.FUNDING_SETUP, E.FUNDING_COMPLETED, S.FINAL_APPROVAL,
                       validators=["funding_received"]),
        TransitionRule(S.FINAL_APPROVAL, E.FINAL_APPROVED, S.COMPLETED, requires_approval=True),
        TransitionRule(S.SUSPENDED, E.RESUME_APPLICATION, S.DOCUMENT_COLLECTION),
    ]

    for state in WorkflowState:
        if state in TERMINAL_STATES:
            continue
        rules.append(TransitionRule(state, E.REJECT, S.REJECTED))
        if state != S.SUSPENDED:
            rules.append(TransitionRule(state, E.SUSPEND, S.SUSPENDED))
        rules.append(TransitionRule(state, E.CANCEL, S.CANCELLED))

    return rules


class OnboardingWorkflowStateMachine(EventPublisherMixin):
    """Root orchestrator of the onboarding lifecycle"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_manager: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        rules: Optional[List[TransitionRule]] = None,
        validators: Optional[Dict[str, Validator]] = None,
        auto_transitions: Optional[bool] = None
    ):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.set_event_dispatcher(event_dispatcher)
        self.workflows_table = "onboarding_workflows"

        self._rules: Dict[Tuple[WorkflowState, WorkflowEvent], TransitionRule] = {}
        for rule in (rules if rules is not None else build_default_rules()):
            self.add_rule(rule)

        self._validators: Dict[str, Validator] = dict(DEFAULT_VALIDATORS)
        if validators:
            self._validators.update(validators)

        config = get_config()
        self.auto_transitions = config.enable_auto_transitions if auto_transitions is None else auto_transitions
        self.default_timeout_ms = config.auto_transition_timeout_ms
        self._locks = KeyedLocks()
        self._timers: List[threading.Timer] = []

    # Graph management

    def add_rule(self, rule: TransitionRule) -> None:
        if rule.key in self._rules:
            raise ValueError(
                f"Rule already defined for {rule.from_state.value} + {rule.event.value}"
            )
        self._rules[rule.key] = rule

    def get_rule(self, state: WorkflowState, event: WorkflowEvent) -> Optional[TransitionRule]:
        return self._rules.get((state, event))

    def get_rules(self) -> List[TransitionRule]:
        return list(self._rules.values())

    def register_validator(self, name: str, validator: Validator) -> None:
        self._validators[name] = validator

    # Workflow lifecycle

    def create_workflow(self, client_id: str, tenant_id: str,
                        metadata: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """Create a workflow in INITIATED state"""
        now = datetime.now(timezone.utc)
        workflow_metadata = {
            'jurisdiction': 'US',
            'regulatory_requirements': ['KYC', 'AML'],
        }
        workflow_metadata.update(metadata or {})

        workflow = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            tenant_id=tenant_id,
            metadata=workflow_metadata
        )
        self._save(workflow)

        self.audit.log_event(
            AuditEventType.ONBOARDING_WORKFLOW_CREATED,
            'onboarding_workflow',
            workflow.id,
            {'client_id': client_id, 'tenant_id': tenant_id, 'metadata': workflow_metadata},
            client_id
        )
        logger.info(f"Onboarding workflow {workflow.id} created for client {client_id}")

        self.publish_event(DomainEvent.WORKFLOW_CREATED, 'onboarding_workflow', workflow.id, workflow.to_dict())
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowInstance]:
        data = self.storage.load(self.workflows_table, workflow_id)
        return WorkflowInstance.from_dict(data) if data else None

    def list_workflows(self, tenant_id: Optional[str] = None, state: Optional[WorkflowState] = None,
                       client_id: Optional[str] = None) -> List[WorkflowInstance]:
        """Workflows matching the filters, newest first"""
        filters = {}
        if tenant_id:
            filters['tenant_id'] = tenant_id
        if client_id:
            filters['client_id'] = client_id
        if state:
            filters['current_state'] = state.value

        workflows = [WorkflowInstance.from_dict(data) for data in self.storage.find(self.workflows_table, filters)]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    def get_workflows_by_client(self, client_id: str) -> List[WorkflowInstance]:
        return self.list_workflows(client_id=client_id)

    def get_available_events(self, workflow_id: str) -> List[WorkflowEvent]:
        """Every event with a rule keyed to the workflow's current state"""
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            raise ValueError("Workflow not found")
        return [rule.event for rule in self._rules.values() if rule.from_state == workflow.current_state]

    def process_event(
        self,
        workflow_id: str,
        event: Any,
        event_data: Optional[Dict[str, Any]] = None,
        triggered_by: str = "system"
    ) -> TransitionResult:
        """
        Apply ``event`` to the workflow.

        Guards run in a fixed order (rule lookup, condition, validators,
        approval) and the first failure aborts with nothing committed. On
        success the transition is persisted and audited, then published.
        """
        event_data = dict(event_data or {})

        with self._locks.hold(workflow_id):
            workflow = self.get_workflow(workflow_id)
            if not workflow:
                return self._reject(None, TransitionErrorCode.WORKFLOW_NOT_FOUND,
                                    f"Workflow {workflow_id} not found", event, triggered_by)

            try:
                workflow_event = event if isinstance(event, WorkflowEvent) else WorkflowEvent(event)
            except ValueError:
                return self._reject(workflow, TransitionErrorCode.INVALID_TRANSITION,
                                    f"Unknown event {event}", event, triggered_by)

            rule = self.get_rule(workflow.current_state, workflow_event)
            if not rule:
                return self._reject(
                    workflow, TransitionErrorCode.INVALID_TRANSITION,
                    f"Event {workflow_event.value} is not allowed in state {workflow.current_state.value}",
                    workflow_event, triggered_by
                )

            if rule.condition is not None and not rule.condition(workflow, event_data):
                return self._reject(
                    workflow, TransitionErrorCode.CONDITIONS_NOT_MET,
                    f"Conditions for {workflow_event.value} are not met",
                    workflow_event, triggered_by
                )

            validation_results = []
            for name in rule.validators:
                result = self._run_validator(name, workflow, event_data)
                validation_results.append(result)
                if result.status == ValidationStatus.FAILED:
                    return self._reject(
                        workflow, TransitionErrorCode.VALIDATION_FAILED,
                        f"Validation {name} failed: {result.message}",
                        workflow_event, triggered_by
                    )

            approved_by = event_data.get('approved_by')
            if rule.requires_approval and not approved_by:
                return self._reject(
                    workflow, TransitionErrorCode.APPROVAL_REQUIRED,
                    f"Transition {workflow_event.value} requires approval",
                    workflow_event, triggered_by
                )

            transition = self._commit(workflow, rule, event_data, triggered_by, validation_results, approved_by)
            snapshot = workflow.to_dict()

        self.publish_event(DomainEvent.STATE_TRANSITION, 'onboarding_workflow', workflow_id, {
            'workflow': snapshot,
            'transition': snapshot['transitions'][-1],
        })

        if rule.auto_transition and self.auto_transitions:
            self._schedule_auto_transition(workflow_id, rule.to_state, rule.timeout_ms or self.default_timeout_ms)

        return TransitionResult(success=True, new_state=rule.to_state, transition=transition)

    def _run_validator(self, name: str, workflow: WorkflowInstance,
                       event_data: Dict[str, Any]) -> ValidationResult:
        validator = self._validators.get(name)
        if validator is None:
            return ValidationResult(name, ValidationStatus.FAILED, f"Validator {name} is not registered")
        try:
            result = validator(workflow, event_data)
        except Exception as e:
            logger.warning(f"Validator {name} raised for workflow {workflow.id}: {e}")
            return ValidationResult(name, ValidationStatus.FAILED, str(e))
        result.validator = name
        return result

    def _commit(self, workflow: WorkflowInstance, rule: TransitionRule, event_data: Dict[str, Any],
                triggered_by: str, validation_results: List[ValidationResult],
                approved_by: Optional[str]) -> StateTransition:
        now = datetime.now(timezone.utc)
        transition = StateTransition(
            id=str(uuid.uuid4()),
            from_state=workflow.current_state,
            to_state=rule.to_state,
            event=rule.event,
            triggered_by=triggered_by,
            timestamp=now,
            validation_results=validation_results,
            approved_by=approved_by
        )

        workflow.previous_state = workflow.current_state
        workflow.current_state = rule.to_state
        workflow.transitions.append(transition)
        workflow.state_data.update(event_data)
        workflow.updated_at = now
        if rule.to_state == WorkflowState.COMPLETED:
            workflow.completed_at = now

        self._save(workflow)

        self.audit.log_event(
            AuditEventType.STATE_TRANSITION,
            'onboarding_workflow',
            workflow.id,
            {
                'from_state': transition.from_state.value,
                'to_state': transition.to_state.value,
                'event': rule.event.value,
                'approved_by': approved_by,
                'warnings': [r.message for r in validation_results if r.status == ValidationStatus.WARNING]
            },
            triggered_by
        )
        log_action(
            logger, "info",
            f"Workflow {workflow.id}: {transition.from_state.value} -> {transition.to_state.value} "
            f"on {rule.event.value} by {triggered_by}",
            user_id=triggered_by,
            action=rule.event.value,
            resource="onboarding_workflow",
            workflow_id=workflow.id,
            client_id=workflow.client_id
        )
        return transition

    def _reject(self, workflow: Optional[WorkflowInstance], code: TransitionErrorCode, message: str,
                event: Any, triggered_by: str) -> TransitionResult:
        event_name = event.value if isinstance(event, WorkflowEvent) else str(event)
        if workflow is not None:
            self.audit.log_event(
                AuditEventType.TRANSITION_REJECTED,
                'onboarding_workflow',
                workflow.id,
                {'state': workflow.current_state.value, 'event': event_name, 'code': code.value, 'message': message},
                triggered_by
            )
        logger.warning(f"Transition rejected ({code.value}): {message}")
        return TransitionResult(success=False, errors=[TransitionError(code=code, message=message)])

    def _save(self, workflow: WorkflowInstance) -> None:
        self.storage.save(self.workflows_table, workflow.id, workflow.to_dict())

    # Auto transitions

    def _schedule_auto_transition(self, workflow_id: str, state: WorkflowState, timeout_ms: int) -> None:
        timer = threading.Timer(timeout_ms / 1000.0, self._signal_auto_transition, args=(workflow_id, state))
        timer.daemon = True
        self._timers = [t for t in self._timers if t.is_alive()]
        self._timers.append(timer)
        timer.start()

    def _signal_auto_transition(self, workflow_id: str, state: WorkflowState) -> None:
        """
        Announce that the workflow may progress automatically. Nothing is
        committed here; the controller decides whether to send the next event.
        """
        workflow = self.get_workflow(workflow_id)
        if not workflow or workflow.current_state != state:
            return
        self.publish_event(DomainEvent.AUTO_TRANSITION_READY, 'onboarding_workflow', workflow_id, {
            'workflow_id': workflow_id,
            'client_id': workflow.client_id,
            'state': state.value,
            'available_events': [e.value for e in self.get_available_events(workflow_id)]
        })

    def shutdown(self) -> None:
        """Cancel pending auto-transition timers"""
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    # Reporting

    def get_workflow_metrics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        workflows = self.list_workflows(tenant_id=tenant_id)
        by_state: Dict[str, int] = {}
        for workflow in workflows:
            by_state[workflow.current_state.value] = by_state.get(workflow.current_state.value, 0) + 1

        completed = [w for w in workflows if w.current_state == WorkflowState.COMPLETED]
        durations = [
            (w.completed_at - w.created_at).total_seconds() / 3600
            for w in completed if w.completed_at
        ]
        total = len(workflows)

        return {
            'total_workflows': total,
            'active_workflows': len([w for w in workflows if not w.is_terminal and
                                     w.current_state != WorkflowState.SUSPENDED]),
            'completed_workflows': len(completed),
            'rejected_workflows': by_state.get(WorkflowState.REJECTED.value, 0),
            'cancelled_workflows': by_state.get(WorkflowState.CANCELLED.value, 0),
            'suspended_workflows': by_state.get(WorkflowState.SUSPENDED.value, 0),
            'workflows_by_state': by_state,
            'completion_rate': (len(completed) / total * 100) if total else 0.0,
            'average_completion_hours': (sum(durations) / len(durations)) if durations else 0.0
        }
