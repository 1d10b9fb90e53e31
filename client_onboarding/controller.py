"""
Onboarding Controller Module

Wires the engines together through the event dispatcher. The state machine
owns the lifecycle; the controller listens for its transitions and for the
engines' completion events, then advances progress tracking, starts the
document and compliance work each state needs, feeds compliance approval
back into the state machine and notifies the client.

``OnboardingSystem`` builds the whole object graph from configuration.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .audit import AuditTrail
from .events import DomainEvent, EventDispatcher, EventPayload
from .config import get_config
from .state_machine import OnboardingWorkflowStateMachine, WorkflowState, WorkflowEvent
from .account_setup import AccountSetupEngine
from .compliance_approval import ComplianceApprovalEngine, ComplianceWorkflowType, ComplianceWorkflowStatus
from .verification import VerificationProviderPort
from .identity_verification import IdentityVerificationEngine, SessionStatus
from .document_collection import DocumentCollectionEngine
from .progress import OnboardingProgressTracker, OnboardingProgress, OnboardingPhase, StepStatus
from .notifications import NotificationPort, create_notification_port
from .logging_config import get_logger


logger = get_logger("onboarding.controller")


# Progress phase that each workflow state belongs to
STATE_PHASES: Dict[WorkflowState, OnboardingPhase] = {
    WorkflowState.INITIATED: OnboardingPhase.INITIATION,
    WorkflowState.DOCUMENT_COLLECTION: OnboardingPhase.DOCUMENT_COLLECTION,
    WorkflowState.DOCUMENT_VERIFICATION: OnboardingPhase.DOCUMENT_COLLECTION,
    WorkflowState.IDENTITY_VERIFICATION: OnboardingPhase.IDENTITY_VERIFICATION,
    WorkflowState.KYC_PROCESSING: OnboardingPhase.KYC_AML_REVIEW,
    WorkflowState.AML_SCREENING: OnboardingPhase.KYC_AML_REVIEW,
    WorkflowState.RISK_ASSESSMENT: OnboardingPhase.KYC_AML_REVIEW,
    WorkflowState.SUITABILITY_REVIEW: OnboardingPhase.KYC_AML_REVIEW,
    WorkflowState.COMPLIANCE_REVIEW: OnboardingPhase.COMPLIANCE_APPROVAL,
    WorkflowState.ACCOUNT_SETUP: OnboardingPhase.ACCOUNT_SETUP,
    WorkflowState.FUNDING_SETUP: OnboardingPhase.FUNDING_SETUP,
    WorkflowState.FINAL_APPROVAL: OnboardingPhase.FINAL_REVIEW,
}

DOCUMENT_STEP = "Identity Documents Upload"
IDENTITY_STEP = "Identity Verification"
DOCUMENT_REMINDER = "Document Submission"
COMPLIANCE_SYSTEM_APPROVER = "compliance-system"


def identity_score_lookup(identity: IdentityVerificationEngine) -> Callable[[str], Optional[float]]:
    """Confidence of the most recent completed identity session of a workflow"""

    def lookup(workflow_id: str) -> Optional[float]:
        sessions = [s for s in identity.get_sessions_by_workflow(workflow_id)
                    if s.status == SessionStatus.COMPLETED and s.completed_at]
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.completed_at).overall_confidence

    return lookup


class OnboardingController:
    """Reacts to domain events and keeps the engines in step"""

    def __init__(
        self,
        event_dispatcher: EventDispatcher,
        state_machine: OnboardingWorkflowStateMachine,
        documents: DocumentCollectionEngine,
        identity: IdentityVerificationEngine,
        compliance: ComplianceApprovalEngine,
        progress: OnboardingProgressTracker,
        notifications: NotificationPort
    ):
        self.event_dispatcher = event_dispatcher
        self.state_machine = state_machine
        self.documents = documents
        self.identity = identity
        self.compliance = compliance
        self.progress = progress
        self.notifications = notifications
        self._subscriptions: List[Tuple[DomainEvent, Callable[[EventPayload], None]]] = []

    def register(self) -> None:
        """Subscribe every handler; calling twice is a no-op"""
        if self._subscriptions:
            return
        self._subscriptions = [
            (DomainEvent.WORKFLOW_CREATED, self.on_workflow_created),
            (DomainEvent.STATE_TRANSITION, self.on_state_transition),
            (DomainEvent.AUTO_TRANSITION_READY, self.on_auto_transition_ready),
            (DomainEvent.DOCUMENT_VERIFIED, self.on_document_verified),
            (DomainEvent.IDENTITY_SESSION_COMPLETED, self.on_identity_session_completed),
            (DomainEvent.MILESTONE_ACHIEVED, self.on_milestone_achieved),
            (DomainEvent.BLOCKER_REPORTED, self.on_blocker_reported),
            (DomainEvent.COMPLIANCE_WORKFLOW_COMPLETED, self.on_compliance_workflow_completed),
        ]
        for event_type, handler in self._subscriptions:
            self.event_dispatcher.subscribe(event_type, handler)

    def unregister(self) -> None:
        for event_type, handler in self._subscriptions:
            self.event_dispatcher.unsubscribe(event_type, handler)
        self._subscriptions = []

    # Workflow events

    def on_workflow_created(self, event: EventPayload) -> None:
        workflow = event.data
        metadata = workflow.get('metadata') or {}
        self.progress.initialize_progress(
            client_id=workflow['client_id'],
            tenant_id=workflow['tenant_id'],
            workflow_id=workflow['id'],
            client_type=metadata.get('client_type', 'individual'),
            account_type=metadata.get('account_type', 'INDIVIDUAL_TAXABLE')
        )
        self.notifications.send_welcome(workflow['client_id'], workflow['id'])

    def on_state_transition(self, event: EventPayload) -> None:
        workflow = event.data['workflow']
        state = WorkflowState(workflow['current_state'])

        record = self.progress.get_progress_by_workflow(workflow['id'])
        if record:
            self.advance_progress(record, state)

        if state == WorkflowState.DOCUMENT_COLLECTION:
            self.notifications.send_step_reminder(workflow['client_id'], DOCUMENT_REMINDER)
            self.documents.initialize_requirements(
                workflow['id'], (workflow.get('metadata') or {}).get('client_type', 'individual')
            )
        elif state == WorkflowState.COMPLIANCE_REVIEW:
            self._start_compliance_review(workflow)
        elif state == WorkflowState.COMPLETED:
            self.notifications.send_completion(workflow['client_id'], workflow['id'])

    def on_auto_transition_ready(self, event: EventPayload) -> None:
        logger.info(
            f"Workflow {event.data['workflow_id']} ready to leave {event.data['state']}; "
            f"available events: {', '.join(event.data.get('available_events', []))}"
        )

    def advance_progress(self, record: OnboardingProgress, state: WorkflowState) -> None:
        """
        Complete every phase before the one ``state`` maps to and start the
        first step of that phase. Moving back to an earlier state leaves
        completed phases alone.
        """
        order = [phase.phase for phase in record.phases]
        if state == WorkflowState.COMPLETED:
            index = len(order)
        else:
            phase = STATE_PHASES.get(state)
            if phase == OnboardingPhase.COMPLIANCE_APPROVAL and phase not in order:
                phase = OnboardingPhase.KYC_AML_REVIEW
            if phase is None or phase not in order:
                return
            index = order.index(phase)

        for earlier in record.phases[:index]:
            for step in earlier.steps:
                if step.status != StepStatus.COMPLETED:
                    self.progress.update_step_progress(record.id, step.id, StepStatus.COMPLETED, actor="workflow")

        if index < len(record.phases) and record.phases[index].steps:
            first = record.phases[index].steps[0]
            if first.status == StepStatus.PENDING:
                self.progress.update_step_progress(record.id, first.id, StepStatus.IN_PROGRESS, actor="workflow")

    def _start_compliance_review(self, workflow: Dict[str, Any]) -> None:
        if self.compliance.get_workflow_by_onboarding_id(workflow['id']):
            return
        metadata = workflow.get('metadata') or {}
        state_data = workflow.get('state_data') or {}
        self.compliance.create_compliance_workflow(
            client_id=workflow['client_id'],
            tenant_id=workflow['tenant_id'],
            workflow_id=workflow['id'],
            workflow_type=ComplianceWorkflowType.CLIENT_ONBOARDING,
            metadata={
                'account_type': metadata.get('account_type', 'INDIVIDUAL_TAXABLE'),
                'risk_level': state_data.get('risk_level'),
                'jurisdiction': metadata.get('jurisdiction', 'US'),
                'regulatory_requirements': metadata.get('regulatory_requirements', ['KYC', 'AML']),
                'business_rules': ['StandardOnboarding']
            }
        )

    # Engine completion events

    def on_document_verified(self, event: EventPayload) -> None:
        workflow_id = event.data['workflow_id']
        if not self.documents.get_completion_status(workflow_id)['complete']:
            return
        self._complete_step(workflow_id, DOCUMENT_STEP)

    def on_identity_session_completed(self, event: EventPayload) -> None:
        if event.data.get('status') != SessionStatus.COMPLETED.value:
            return
        self._complete_step(event.data['workflow_id'], IDENTITY_STEP)

    def _complete_step(self, workflow_id: str, step_name: str) -> None:
        record = self.progress.get_progress_by_workflow(workflow_id)
        if not record:
            return
        step = record.find_step_by_name(step_name)
        if step and step.status != StepStatus.COMPLETED:
            self.progress.update_step_progress(record.id, step.id, StepStatus.COMPLETED)

    def on_milestone_achieved(self, event: EventPayload) -> None:
        self.notifications.send_milestone(event.data['client_id'], event.data['milestone_name'])

    def on_blocker_reported(self, event: EventPayload) -> None:
        blocker = event.data['blocker']
        hours = blocker.get('estimated_resolution_hours') or 0
        self.notifications.send_delay(
            event.data['client_id'],
            blocker['description'],
            datetime.now(timezone.utc) + timedelta(hours=hours)
        )

    def on_compliance_workflow_completed(self, event: EventPayload) -> None:
        if event.data.get('status') != ComplianceWorkflowStatus.APPROVED.value:
            return
        result = self.state_machine.process_event(
            event.data['workflow_id'],
            WorkflowEvent.COMPLIANCE_APPROVED,
            {'approved_by': COMPLIANCE_SYSTEM_APPROVER},
            'system'
        )
        if not result.success:
            logger.warning(
                f"Compliance approval for workflow {event.data['workflow_id']} was not applied: "
                f"{'; '.join(error.message for error in result.errors)}"
            )


def create_storage(backend: Optional[str] = None, database_path: Optional[str] = None) -> StorageInterface:
    config = get_config()
    backend = (backend or config.storage_backend).lower()
    if backend == "sqlite":
        return SQLiteStorage(database_path or config.database_path)
    if backend == "memory":
        return InMemoryStorage()
    raise ValueError(f"Unknown storage backend: {backend}")


class OnboardingSystem:
    """Client onboarding system with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        notifications: Optional[NotificationPort] = None,
        provider: Optional[VerificationProviderPort] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage or create_storage()
        self.audit_trail = AuditTrail(self.storage)
        self.event_dispatcher = event_dispatcher or EventDispatcher()

        self.state_machine = OnboardingWorkflowStateMachine(self.storage, self.audit_trail, self.event_dispatcher)
        self.account_setup = AccountSetupEngine(self.storage, self.audit_trail, self.event_dispatcher)
        self.compliance = ComplianceApprovalEngine(self.storage, self.audit_trail, self.event_dispatcher)
        self.identity = IdentityVerificationEngine(
            self.storage, self.audit_trail, self.event_dispatcher, provider=provider
        )
        self.documents = DocumentCollectionEngine(
            self.storage, self.audit_trail, self.event_dispatcher, provider=provider
        )
        self.progress = OnboardingProgressTracker(
            self.storage, self.audit_trail, self.event_dispatcher,
            identity_score_lookup=identity_score_lookup(self.identity)
        )
        self.notifications = notifications or create_notification_port()

        self.controller = OnboardingController(
            self.event_dispatcher,
            self.state_machine,
            self.documents,
            self.identity,
            self.compliance,
            self.progress,
            self.notifications
        )
        self.controller.register()

    def shutdown(self) -> None:
        self.controller.unregister()
        self.state_machine.shutdown()
        self.documents.shutdown()
        self.storage.close()
