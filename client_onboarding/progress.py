"""
Onboarding Progress Module

Client-facing view of an onboarding: phases made of steps (some carrying
user actions), milestones gated on phase completion, blockers and a timeline
estimate.

Every step update cascades: step -> phase progress and status -> overall
progress and status -> milestone checks -> timeline estimate. Phase progress
is ``(100 * completed steps + sum of in-progress step percentages) / steps``
and overall progress is the mean of the phase values.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum
from collections import Counter
import logging
import uuid

from .storage import (
    StorageInterface, StorageRecord, KeyedLocks, from_storage_value, to_storage_value, build_dataclass
)
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .config import get_config


logger = logging.getLogger("onboarding.progress")


class OnboardingStatus(Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class OnboardingPhase(Enum):
    INITIATION = "INITIATION"
    DOCUMENT_COLLECTION = "DOCUMENT_COLLECTION"
    IDENTITY_VERIFICATION = "IDENTITY_VERIFICATION"
    KYC_AML_REVIEW = "KYC_AML_REVIEW"
    COMPLIANCE_APPROVAL = "COMPLIANCE_APPROVAL"
    ACCOUNT_SETUP = "ACCOUNT_SETUP"
    FUNDING_SETUP = "FUNDING_SETUP"
    FINAL_REVIEW = "FINAL_REVIEW"


class PhaseStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"
    SKIPPED = "SKIPPED"


class StepStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    BLOCKED = "BLOCKED"


class StepCategory(Enum):
    CLIENT_ACTION = "CLIENT_ACTION"
    DOCUMENT_REVIEW = "DOCUMENT_REVIEW"
    SYSTEM_PROCESS = "SYSTEM_PROCESS"
    COMPLIANCE_CHECK = "COMPLIANCE_CHECK"
    APPROVAL = "APPROVAL"


class StepPriority(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class StepOwner(Enum):
    CLIENT = "CLIENT"
    SYSTEM = "SYSTEM"
    COMPLIANCE = "COMPLIANCE"
    OPERATIONS = "OPERATIONS"
    ADVISOR = "ADVISOR"


class ActionType(Enum):
    UPLOAD_DOCUMENT = "UPLOAD_DOCUMENT"
    FILL_FORM = "FILL_FORM"
    VERIFY_IDENTITY = "VERIFY_IDENTITY"
    REVIEW_TERMS = "REVIEW_TERMS"
    PROVIDE_INFORMATION = "PROVIDE_INFORMATION"
    CONFIRM_DETAILS = "CONFIRM_DETAILS"


class ActionStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class MilestoneType(Enum):
    CLIENT_EXPERIENCE = "CLIENT_EXPERIENCE"
    REGULATORY = "REGULATORY"
    BUSINESS = "BUSINESS"
    OPERATIONAL = "OPERATIONAL"


class MilestoneStatus(Enum):
    UPCOMING = "UPCOMING"
    IN_PROGRESS = "IN_PROGRESS"
    ACHIEVED = "ACHIEVED"
    MISSED = "MISSED"
    CANCELLED = "CANCELLED"


class MilestoneSignificance(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class CriteriaType(Enum):
    THRESHOLD = "THRESHOLD"
    BOOLEAN = "BOOLEAN"


class CriteriaStatus(Enum):
    PENDING = "PENDING"
    MET = "MET"
    NOT_MET = "NOT_MET"


class BlockerType(Enum):
    TECHNICAL = "TECHNICAL"
    REGULATORY = "REGULATORY"
    OPERATIONAL = "OPERATIONAL"
    CLIENT_ACTION = "CLIENT_ACTION"
    THIRD_PARTY = "THIRD_PARTY"
    RESOURCE = "RESOURCE"


class BlockerSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class BlockerStatus(Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


ACTIVE_BLOCKER_STATUSES = (BlockerStatus.OPEN, BlockerStatus.IN_PROGRESS, BlockerStatus.ESCALATED)


class ProgressEventType(Enum):
    PHASE_STARTED = "PHASE_STARTED"
    PHASE_COMPLETED = "PHASE_COMPLETED"
    STEP_STARTED = "STEP_STARTED"
    STEP_UPDATED = "STEP_UPDATED"
    STEP_COMPLETED = "STEP_COMPLETED"
    MILESTONE_ACHIEVED = "MILESTONE_ACHIEVED"
    BLOCKER_REPORTED = "BLOCKER_REPORTED"
    BLOCKER_ESCALATED = "BLOCKER_ESCALATED"
    BLOCKER_RESOLVED = "BLOCKER_RESOLVED"
    TIMELINE_UPDATED = "TIMELINE_UPDATED"


class EventImpact(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class UserAction:
    id: str
    name: str
    description: str
    action_type: ActionType
    status: ActionStatus = ActionStatus.PENDING
    required: bool = True
    instructions: str = ""
    estimated_minutes: int = 0


@dataclass
class StepProgress:
    id: str
    name: str
    description: str
    category: StepCategory
    priority: StepPriority
    owner: StepOwner
    estimated_duration_minutes: float
    automated: bool = False
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    user_actions: List[UserAction] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration_minutes: Optional[float] = None


@dataclass
class PhaseProgress:
    id: str
    phase: OnboardingPhase
    estimated_duration_minutes: float
    steps: List[StepProgress] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    status: PhaseStatus = PhaseStatus.PENDING
    progress: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration_minutes: Optional[float] = None


@dataclass
class MilestoneCriteria:
    id: str
    name: str
    description: str
    criteria_type: CriteriaType
    weight: int = 100
    threshold: float = 1
    status: CriteriaStatus = CriteriaStatus.PENDING
    current_value: Optional[float] = None
    evaluated_at: Optional[datetime] = None


@dataclass
class CelebrationAction:
    channel: str  # email, sms, phone, in_app
    message: str
    timing: str = "immediate"


@dataclass
class Milestone:
    id: str
    name: str
    description: str
    milestone_type: MilestoneType
    significance: MilestoneSignificance
    target_date: datetime
    dependencies: List[str] = field(default_factory=list)
    criteria: List[MilestoneCriteria] = field(default_factory=list)
    celebrations: List[CelebrationAction] = field(default_factory=list)
    status: MilestoneStatus = MilestoneStatus.UPCOMING
    achieved_at: Optional[datetime] = None


@dataclass
class BlockerImpact:
    affected_steps: List[str] = field(default_factory=list)
    affected_milestones: List[str] = field(default_factory=list)
    delay_estimate_hours: float = 0.0


@dataclass
class Blocker:
    id: str
    name: str
    description: str
    blocker_type: BlockerType
    severity: BlockerSeverity
    reported_by: str
    reported_at: datetime
    impact: BlockerImpact = field(default_factory=BlockerImpact)
    status: BlockerStatus = BlockerStatus.OPEN
    estimated_resolution_hours: Optional[float] = None
    escalated: bool = False
    escalated_to: Optional[str] = None
    escalated_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_minutes: Optional[float] = None


@dataclass
class ProgressEvent:
    id: str
    event_type: ProgressEventType
    description: str
    actor: str
    actor_type: str
    impact: EventImpact
    phase: Optional[OnboardingPhase] = None
    step_id: Optional[str] = None
    milestone_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class NotificationRecord:
    id: str
    notification_type: str
    recipient: str
    channel: str
    subject: str
    content: str
    scheduled_for: datetime
    status: str = "PENDING"


@dataclass
class TimelineEstimate:
    total_estimated_minutes: float
    remaining_estimated_minutes: float
    buffer_minutes: float
    confidence: float
    critical_path: List[str] = field(default_factory=list)
    factors_considered: List[str] = field(default_factory=list)
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class OnboardingProgress(StorageRecord):
    """Progress record for one onboarding workflow"""
    client_id: str
    tenant_id: str
    workflow_id: str
    client_type: str
    account_type: str
    current_phase: OnboardingPhase
    timeline: TimelineEstimate
    status: OnboardingStatus = OnboardingStatus.NOT_STARTED
    overall_progress: int = 0
    phases: List[PhaseProgress] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    blockers: List[Blocker] = field(default_factory=list)
    history: List[ProgressEvent] = field(default_factory=list)
    notifications: List[NotificationRecord] = field(default_factory=list)
    estimated_completion_date: Optional[datetime] = None
    actual_completion_date: Optional[datetime] = None

    def find_step(self, step_id: str) -> Optional[StepProgress]:
        for phase in self.phases:
            for step in phase.steps:
                if step.id == step_id:
                    return step
        return None

    def find_step_by_name(self, name: str) -> Optional[StepProgress]:
        for phase in self.phases:
            for step in phase.steps:
                if step.name == name:
                    return step
        return None

    def get_phase(self, phase: OnboardingPhase) -> Optional[PhaseProgress]:
        for candidate in self.phases:
            if candidate.phase == phase:
                return candidate
        return None

    def get_blocker(self, blocker_id: str) -> Optional[Blocker]:
        for blocker in self.blockers:
            if blocker.id == blocker_id:
                return blocker
        return None


PendingEvents = List[Tuple[DomainEvent, Dict[str, Any]]]

HOUR = 60
DAY = 24 * HOUR

ENTITY_CLIENT_TYPES = ("entity", "corporate", "llc", "partnership")


def _action(name: str, description: str, action_type: str, instructions: str, minutes: int) -> Dict[str, Any]:
    return {'name': name, 'description': description, 'action_type': action_type,
            'instructions': instructions, 'estimated_minutes': minutes}


def _step(name: str, description: str, category: str, priority: str, owner: str, minutes: float,
          automated: bool = False, actions: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {'name': name, 'description': description, 'category': category, 'priority': priority,
            'owner': owner, 'estimated_duration_minutes': minutes, 'automated': automated,
            'user_actions': actions or []}


PHASE_TEMPLATES = {
    OnboardingPhase.INITIATION: (2 * HOUR, [
        _step("Welcome and Orientation", "Client introduction and process overview",
              "CLIENT_ACTION", "HIGH", "CLIENT", 30,
              actions=[_action("Review Welcome Materials", "Review onboarding guide and timeline",
                               "REVIEW_TERMS", "Please review the provided onboarding materials", 15)]),
        _step("Initial Data Collection", "Collect basic client information",
              "CLIENT_ACTION", "HIGH", "CLIENT", 90,
              actions=[_action("Complete Application Form", "Fill out the account application",
                               "FILL_FORM", "Complete all required fields in the application form", 60)]),
    ]),
    OnboardingPhase.DOCUMENT_COLLECTION: (DAY, [
        _step("Identity Documents Upload", "Upload government-issued ID",
              "CLIENT_ACTION", "CRITICAL", "CLIENT", 30,
              actions=[_action("Upload Driver License", "Upload front and back of driver license",
                               "UPLOAD_DOCUMENT", "Take clear photos of both sides of your driver license", 15)]),
    ]),
    OnboardingPhase.IDENTITY_VERIFICATION: (4 * HOUR, [
        _step("Identity Verification", "Verify identity with document, biometric and knowledge checks",
              "CLIENT_ACTION", "CRITICAL", "CLIENT", 20,
              actions=[_action("Complete Identity Verification", "Take a selfie and answer security questions",
                               "VERIFY_IDENTITY", "Follow the on-screen identity verification steps", 15)]),
    ]),
    OnboardingPhase.KYC_AML_REVIEW: (DAY, [
        _step("KYC Profile Review", "Review know-your-customer profile",
              "COMPLIANCE_CHECK", "HIGH", "COMPLIANCE", 4 * HOUR),
        _step("AML Screening", "Screen against sanctions and watch lists",
              "SYSTEM_PROCESS", "CRITICAL", "SYSTEM", 30, automated=True),
    ]),
    OnboardingPhase.COMPLIANCE_APPROVAL: (5 * DAY, [
        _step("Entity Documentation Review", "Review entity formation documents",
              "DOCUMENT_REVIEW", "HIGH", "COMPLIANCE", 4 * HOUR),
    ]),
    OnboardingPhase.ACCOUNT_SETUP: (8 * HOUR, [
        _step("Account Configuration", "Configure and provision the account",
              "SYSTEM_PROCESS", "HIGH", "OPERATIONS", 2 * HOUR, automated=True),
    ]),
    OnboardingPhase.FUNDING_SETUP: (2 * DAY, [
        _step("Initial Funding", "Fund the new account",
              "CLIENT_ACTION", "HIGH", "CLIENT", DAY,
              actions=[_action("Fund Account", "Transfer the initial deposit",
                               "PROVIDE_INFORMATION", "Initiate a transfer from your linked bank account", 10)]),
    ]),
    OnboardingPhase.FINAL_REVIEW: (2 * HOUR, [
        _step("Final Review", "Final compliance sign-off", "APPROVAL", "HIGH", "COMPLIANCE", HOUR),
    ]),
}


def phases_for(client_type: str) -> List[OnboardingPhase]:
    """Phase sequence for a client type; entities get a compliance approval phase"""
    phases = [
        OnboardingPhase.INITIATION,
        OnboardingPhase.DOCUMENT_COLLECTION,
        OnboardingPhase.IDENTITY_VERIFICATION,
        OnboardingPhase.KYC_AML_REVIEW,
    ]
    if (client_type or "").lower() in ENTITY_CLIENT_TYPES:
        phases.append(OnboardingPhase.COMPLIANCE_APPROVAL)
    phases.extend([OnboardingPhase.ACCOUNT_SETUP, OnboardingPhase.FUNDING_SETUP, OnboardingPhase.FINAL_REVIEW])
    return phases


def build_phases(client_type: str) -> List[PhaseProgress]:
    phases = []
    previous: Optional[OnboardingPhase] = None
    for phase in phases_for(client_type):
        minutes, steps = PHASE_TEMPLATES[phase]
        phases.append(build_dataclass(PhaseProgress, {
            'id': str(uuid.uuid4()),
            'phase': phase,
            'estimated_duration_minutes': minutes,
            'dependencies': [previous.value] if previous else [],
            'steps': [
                {**step, 'id': str(uuid.uuid4()),
                 'user_actions': [{**action, 'id': str(uuid.uuid4())} for action in step['user_actions']]}
                for step in steps
            ]
        }))
        previous = phase
    return phases


def _criterion(name: str, description: str, criteria_type: CriteriaType, threshold: float) -> MilestoneCriteria:
    return MilestoneCriteria(id=str(uuid.uuid4()), name=name, description=description,
                             criteria_type=criteria_type, threshold=threshold)


def build_milestones(client_type: str, start: datetime) -> List[Milestone]:
    approval_phase = (OnboardingPhase.COMPLIANCE_APPROVAL
                      if (client_type or "").lower() in ENTITY_CLIENT_TYPES else OnboardingPhase.KYC_AML_REVIEW)
    return [
        Milestone(
            id=str(uuid.uuid4()),
            name="Documents Submitted",
            description="All required documents have been submitted",
            milestone_type=MilestoneType.CLIENT_EXPERIENCE,
            significance=MilestoneSignificance.HIGH,
            target_date=start + timedelta(days=3),
            dependencies=[OnboardingPhase.DOCUMENT_COLLECTION.value],
            criteria=[_criterion("Document Completeness", "All required documents uploaded",
                                 CriteriaType.BOOLEAN, 1)],
            celebrations=[CelebrationAction("email", "Great progress! All your documents have been received.")]
        ),
        Milestone(
            id=str(uuid.uuid4()),
            name="Identity Verified",
            description="Client identity has been successfully verified",
            milestone_type=MilestoneType.REGULATORY,
            significance=MilestoneSignificance.CRITICAL,
            target_date=start + timedelta(days=5),
            dependencies=[OnboardingPhase.IDENTITY_VERIFICATION.value],
            criteria=[_criterion("Identity Verification Score",
                                 "Identity verification confidence above threshold",
                                 CriteriaType.THRESHOLD, get_config().identity_score_threshold)]
        ),
        Milestone(
            id=str(uuid.uuid4()),
            name="Account Approved",
            description="Account has received final approval",
            milestone_type=MilestoneType.BUSINESS,
            significance=MilestoneSignificance.CRITICAL,
            target_date=start + timedelta(days=10),
            dependencies=[approval_phase.value],
            criteria=[_criterion("Compliance Approval", "Final compliance approval received",
                                 CriteriaType.BOOLEAN, 1)],
            celebrations=[
                CelebrationAction("email", "Congratulations! Your account has been approved."),
                CelebrationAction("phone", "Welcome call from relationship manager", "next_business_day"),
            ]
        ),
        Milestone(
            id=str(uuid.uuid4()),
            name="Account Funded",
            description="Initial deposit has been received",
            milestone_type=MilestoneType.BUSINESS,
            significance=MilestoneSignificance.HIGH,
            target_date=start + timedelta(days=12),
            dependencies=[OnboardingPhase.FUNDING_SETUP.value],
            criteria=[_criterion("Funding Received", "Initial deposit settled", CriteriaType.BOOLEAN, 1)],
            celebrations=[CelebrationAction("email", "Your account is funded and ready to invest.")]
        ),
    ]


def initial_timeline(phases: List[PhaseProgress], buffer_percent: int) -> TimelineEstimate:
    total = sum(phase.estimated_duration_minutes for phase in phases)
    buffer = total * buffer_percent / 100
    return TimelineEstimate(
        total_estimated_minutes=total + buffer,
        remaining_estimated_minutes=total + buffer,
        buffer_minutes=buffer,
        confidence=75.0,
        critical_path=[phase.phase.value for phase in phases],
        factors_considered=[
            "Historical completion times",
            "Phase dependencies",
            "Client type complexity",
            "Regulatory requirements",
        ]
    )


def calculate_phase_progress(steps: List[StepProgress]) -> int:
    """``(100 * completed + sum of in-progress percentages) / total``, rounded"""
    if not steps:
        return 100
    completed = sum(1 for step in steps if step.status == StepStatus.COMPLETED)
    partial = sum(step.progress for step in steps if step.status == StepStatus.IN_PROGRESS)
    return round((completed * 100 + partial) / len(steps))


def _minutes_between(start: Optional[datetime], end: datetime) -> Optional[float]:
    return (end - start).total_seconds() / 60 if start else None


IdentityScoreLookup = Callable[[str], Optional[float]]


class OnboardingProgressTracker(EventPublisherMixin):
    """Tracks phases, milestones, blockers and timeline of each onboarding"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_manager: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        identity_score_lookup: Optional[IdentityScoreLookup] = None
    ):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.set_event_dispatcher(event_dispatcher)
        self.identity_score_lookup = identity_score_lookup
        self.progress_table = "onboarding_progress"
        self._locks = KeyedLocks()

        config = get_config()
        self.history_limit = config.history_limit
        self.buffer_percent = config.timeline_buffer_percent

        self._criteria_evaluators: Dict[str, Callable[[OnboardingProgress, MilestoneCriteria], Optional[float]]] = {
            "Document Completeness": self._evaluate_document_completeness,
            "Identity Verification Score": self._evaluate_identity_score,
            "Compliance Approval": self._evaluate_compliance_approval,
            "Funding Received": self._evaluate_funding_received,
        }

    def initialize_progress(
        self,
        client_id: str,
        tenant_id: str,
        workflow_id: str,
        client_type: str = "individual",
        account_type: str = "INDIVIDUAL_TAXABLE"
    ) -> OnboardingProgress:
        now = datetime.now(timezone.utc)
        phases = build_phases(client_type)
        timeline = initial_timeline(phases, self.buffer_percent)
        progress = OnboardingProgress(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            client_type=client_type,
            account_type=account_type,
            current_phase=OnboardingPhase.INITIATION,
            timeline=timeline,
            phases=phases,
            milestones=build_milestones(client_type, now),
            estimated_completion_date=now + timedelta(minutes=timeline.total_estimated_minutes)
        )
        self._add_history(progress, ProgressEventType.PHASE_STARTED, "Onboarding process initiated",
                          impact=EventImpact.MEDIUM, phase=OnboardingPhase.INITIATION,
                          metadata={'client_type': client_type, 'account_type': account_type})

        with self._locks.hold(progress.id):
            self._save(progress)
            self.audit.log_event(
                AuditEventType.PROGRESS_INITIALIZED,
                'onboarding_progress',
                progress.id,
                {'workflow_id': workflow_id, 'client_type': client_type, 'phases': len(phases)},
                'system'
            )

        logger.info(f"Progress tracking initialized for workflow {workflow_id} with {len(phases)} phases")
        self.publish_event(DomainEvent.PROGRESS_INITIALIZED, 'onboarding_progress', progress.id, progress.to_dict())
        return progress

    def update_step_progress(
        self,
        progress_id: str,
        step_id: str,
        status: Any,
        progress_percentage: Optional[int] = None,
        notes: Optional[str] = None,
        actor: str = "system"
    ) -> OnboardingProgress:
        """
        Update one step and cascade to phase, overall, milestones and timeline.

        Raises:
            ValueError: progress record or step not found
        """
        new_status = from_storage_value(status, StepStatus)

        pending_events: PendingEvents = []
        with self._locks.hold(progress_id):
            record = self._require_progress(progress_id)
            step = record.find_step(step_id)
            if not step:
                raise ValueError("Step not found")
            self._apply_step_update(record, step, new_status, progress_percentage, notes, actor, pending_events)
            self._cascade(record, pending_events)
            self._save(record)
        self._publish_all(progress_id, pending_events)
        return record

    def update_step_by_name(self, progress_id: str, step_name: str, status: Any,
                            progress_percentage: Optional[int] = None, actor: str = "system") -> OnboardingProgress:
        record = self._require_progress(progress_id)
        step = record.find_step_by_name(step_name)
        if not step:
            raise ValueError("Step not found")
        return self.update_step_progress(progress_id, step.id, status, progress_percentage, actor=actor)

    def _apply_step_update(self, record: OnboardingProgress, step: StepProgress, new_status: StepStatus,
                           progress_percentage: Optional[int], notes: Optional[str], actor: str,
                           pending_events: PendingEvents) -> None:
        now = datetime.now(timezone.utc)
        old_status = step.status
        step.status = new_status
        if old_status == StepStatus.COMPLETED and new_status != StepStatus.COMPLETED:
            step.progress = 0
            step.completed_at = None
            step.actual_duration_minutes = None
        if progress_percentage is not None:
            step.progress = max(0, min(100, int(progress_percentage)))
        if notes:
            step.notes.append(notes)

        if new_status == StepStatus.IN_PROGRESS and not step.started_at:
            step.started_at = now
        if new_status == StepStatus.COMPLETED:
            step.progress = 100
            if not step.completed_at:
                step.completed_at = now
                step.actual_duration_minutes = _minutes_between(step.started_at, now)
            for action in step.user_actions:
                if action.status != ActionStatus.SKIPPED:
                    action.status = ActionStatus.COMPLETED

        event_type = {
            StepStatus.IN_PROGRESS: ProgressEventType.STEP_STARTED,
            StepStatus.COMPLETED: ProgressEventType.STEP_COMPLETED,
        }.get(new_status, ProgressEventType.STEP_UPDATED)
        self._add_history(
            record, event_type, f'Step "{step.name}" {new_status.value.lower()}',
            impact=EventImpact.HIGH if step.priority == StepPriority.CRITICAL else EventImpact.MEDIUM,
            step_id=step.id, actor=actor, metadata={'old_status': old_status.value, 'progress': step.progress}
        )
        pending_events.append((DomainEvent.STEP_PROGRESS_UPDATED, {
            'progress_id': record.id,
            'workflow_id': record.workflow_id,
            'client_id': record.client_id,
            'step_id': step.id,
            'step_name': step.name,
            'old_status': old_status.value,
            'new_status': new_status.value,
            'step_progress': step.progress
        }))

    # Cascade

    def _cascade(self, record: OnboardingProgress, pending_events: PendingEvents) -> None:
        self._update_phases(record, pending_events)
        self._update_overall(record, pending_events)
        self._check_milestones(record, pending_events)
        self._update_timeline(record)
        record.updated_at = datetime.now(timezone.utc)

    def _update_phases(self, record: OnboardingProgress, pending_events: PendingEvents) -> None:
        now = datetime.now(timezone.utc)
        for phase in record.phases:
            if phase.status == PhaseStatus.SKIPPED:
                continue
            phase.progress = calculate_phase_progress(phase.steps)
            old_status = phase.status

            statuses = [step.status for step in phase.steps]
            completed = statuses.count(StepStatus.COMPLETED)
            if completed == len(statuses):
                phase.status = PhaseStatus.COMPLETED
                if not phase.completed_at:
                    phase.completed_at = now
                    phase.actual_duration_minutes = _minutes_between(phase.started_at, now)
            elif StepStatus.BLOCKED in statuses:
                phase.status = PhaseStatus.BLOCKED
            elif completed or StepStatus.IN_PROGRESS in statuses:
                phase.status = PhaseStatus.IN_PROGRESS
            else:
                phase.status = PhaseStatus.IN_PROGRESS if phase.started_at else PhaseStatus.PENDING

            if old_status == PhaseStatus.COMPLETED and phase.status != PhaseStatus.COMPLETED:
                phase.completed_at = None
                phase.actual_duration_minutes = None
                logger.info(f"Phase {phase.phase.value} reopened for workflow {record.workflow_id}")

            if phase.status in (PhaseStatus.IN_PROGRESS, PhaseStatus.COMPLETED) and not phase.started_at:
                phase.started_at = now
                self._add_history(record, ProgressEventType.PHASE_STARTED, f'Phase "{phase.phase.value}" started',
                                  impact=EventImpact.MEDIUM, phase=phase.phase)

            if old_status != PhaseStatus.COMPLETED and phase.status == PhaseStatus.COMPLETED:
                self._add_history(record, ProgressEventType.PHASE_COMPLETED, f'Phase "{phase.phase.value}" completed',
                                  impact=EventImpact.HIGH, phase=phase.phase,
                                  metadata={'phase_progress': phase.progress})
                logger.info(f"Phase {phase.phase.value} completed for workflow {record.workflow_id}")
                pending_events.append((DomainEvent.PHASE_COMPLETED, {
                    'progress_id': record.id,
                    'workflow_id': record.workflow_id,
                    'client_id': record.client_id,
                    'phase': phase.phase.value,
                    'actual_duration_minutes': phase.actual_duration_minutes
                }))

    def _update_overall(self, record: OnboardingProgress, pending_events: PendingEvents) -> None:
        if not record.phases:
            record.overall_progress = 0
            return
        record.overall_progress = round(sum(phase.progress for phase in record.phases) / len(record.phases))

        for phase in record.phases:
            if phase.status in (PhaseStatus.IN_PROGRESS, PhaseStatus.BLOCKED):
                record.current_phase = phase.phase
                break

        old_status = record.status
        statuses = [phase.status for phase in record.phases]
        if all(status in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED) for status in statuses):
            record.status = OnboardingStatus.COMPLETED
            record.current_phase = record.phases[-1].phase
            if not record.actual_completion_date:
                record.actual_completion_date = datetime.now(timezone.utc)
        elif PhaseStatus.BLOCKED in statuses:
            record.status = OnboardingStatus.BLOCKED
        elif record.overall_progress > 0 or old_status in (OnboardingStatus.BLOCKED, OnboardingStatus.COMPLETED):
            record.status = OnboardingStatus.IN_PROGRESS

        if old_status == OnboardingStatus.COMPLETED and record.status != OnboardingStatus.COMPLETED:
            record.actual_completion_date = None

        if old_status != OnboardingStatus.COMPLETED and record.status == OnboardingStatus.COMPLETED:
            logger.info(f"Onboarding progress {record.id} completed for workflow {record.workflow_id}")
            pending_events.append((DomainEvent.PROGRESS_COMPLETED, {
                'progress_id': record.id,
                'workflow_id': record.workflow_id,
                'client_id': record.client_id
            }))

    def _check_milestones(self, record: OnboardingProgress, pending_events: PendingEvents) -> None:
        completed_phases = {phase.phase.value for phase in record.phases if phase.status == PhaseStatus.COMPLETED}
        now = datetime.now(timezone.utc)

        for milestone in record.milestones:
            if milestone.status != MilestoneStatus.UPCOMING:
                continue
            if not all(dependency in completed_phases for dependency in milestone.dependencies):
                continue

            met = 0
            for criteria in milestone.criteria:
                evaluator = self._criteria_evaluators.get(criteria.name)
                value = evaluator(record, criteria) if evaluator else None
                criteria.evaluated_at = now
                if value is None:
                    criteria.status = CriteriaStatus.NOT_MET
                    continue
                criteria.status = CriteriaStatus.MET
                criteria.current_value = value
                met += 1

            if met != len(milestone.criteria):
                continue

            milestone.status = MilestoneStatus.ACHIEVED
            milestone.achieved_at = now
            self._add_history(
                record, ProgressEventType.MILESTONE_ACHIEVED, f'Milestone "{milestone.name}" achieved',
                impact=EventImpact.CRITICAL if milestone.significance == MilestoneSignificance.CRITICAL
                else EventImpact.HIGH,
                milestone_id=milestone.id, metadata={'milestone_type': milestone.milestone_type.value}
            )
            for celebration in milestone.celebrations:
                record.notifications.append(NotificationRecord(
                    id=str(uuid.uuid4()),
                    notification_type="MILESTONE_ACHIEVED",
                    recipient=record.client_id,
                    channel=celebration.channel,
                    subject="Milestone Achievement",
                    content=celebration.message,
                    scheduled_for=now if celebration.timing == "immediate" else now + timedelta(days=1)
                ))

            self.audit.log_event(
                AuditEventType.MILESTONE_ACHIEVED,
                'onboarding_progress',
                record.id,
                {'milestone_id': milestone.id, 'milestone_name': milestone.name},
                'system'
            )
            logger.info(f"Milestone '{milestone.name}' achieved for workflow {record.workflow_id}")
            pending_events.append((DomainEvent.MILESTONE_ACHIEVED, {
                'progress_id': record.id,
                'workflow_id': record.workflow_id,
                'client_id': record.client_id,
                'milestone_id': milestone.id,
                'milestone_name': milestone.name,
                'celebrations': [c.message for c in milestone.celebrations]
            }))

    def _phase_completed(self, record: OnboardingProgress, phase: OnboardingPhase) -> bool:
        candidate = record.get_phase(phase)
        return candidate is not None and candidate.status == PhaseStatus.COMPLETED

    def _evaluate_document_completeness(self, record: OnboardingProgress,
                                        criteria: MilestoneCriteria) -> Optional[float]:
        return 1.0 if self._phase_completed(record, OnboardingPhase.DOCUMENT_COLLECTION) else None

    def _evaluate_identity_score(self, record: OnboardingProgress, criteria: MilestoneCriteria) -> Optional[float]:
        if not self._phase_completed(record, OnboardingPhase.IDENTITY_VERIFICATION):
            return None
        score = self.identity_score_lookup(record.workflow_id) if self.identity_score_lookup else 100.0
        if score is None or score < criteria.threshold:
            return None
        return float(score)

    def _evaluate_compliance_approval(self, record: OnboardingProgress,
                                      criteria: MilestoneCriteria) -> Optional[float]:
        phase = (OnboardingPhase.COMPLIANCE_APPROVAL if record.get_phase(OnboardingPhase.COMPLIANCE_APPROVAL)
                 else OnboardingPhase.KYC_AML_REVIEW)
        return 1.0 if self._phase_completed(record, phase) else None

    def _evaluate_funding_received(self, record: OnboardingProgress, criteria: MilestoneCriteria) -> Optional[float]:
        return 1.0 if self._phase_completed(record, OnboardingPhase.FUNDING_SETUP) else None

    def _update_timeline(self, record: OnboardingProgress) -> None:
        completed = [phase for phase in record.phases if phase.status == PhaseStatus.COMPLETED]
        remaining = [phase for phase in record.phases if phase.status not in (PhaseStatus.COMPLETED,
                                                                               PhaseStatus.SKIPPED)]

        accuracy = 0.0
        if completed:
            variance = sum(
                abs(phase.actual_duration_minutes - phase.estimated_duration_minutes) / phase.estimated_duration_minutes
                for phase in completed
                if phase.actual_duration_minutes is not None and phase.estimated_duration_minutes
            )
            accuracy = max(0.0, 100 - (variance / len(completed)) * 100)

        factor = 1.0 if accuracy > 70 else 1 + self.buffer_percent / 100
        remaining_minutes = sum(phase.estimated_duration_minutes * factor for phase in remaining)

        timeline = record.timeline
        timeline.remaining_estimated_minutes = remaining_minutes
        timeline.confidence = max(50.0, accuracy)
        timeline.last_updated = datetime.now(timezone.utc)
        if remaining_minutes > 0:
            record.estimated_completion_date = timeline.last_updated + timedelta(minutes=remaining_minutes)

    # Blockers

    def report_blocker(
        self,
        progress_id: str,
        name: str,
        description: str,
        blocker_type: Any,
        severity: Any,
        reported_by: str,
        affected_steps: Optional[List[str]] = None,
        affected_milestones: Optional[List[str]] = None,
        estimated_resolution_hours: Optional[float] = None
    ) -> Blocker:
        """Record a blocker; every affected step becomes BLOCKED immediately"""
        pending_events: PendingEvents = []
        with self._locks.hold(progress_id):
            record = self._require_progress(progress_id)
            blocker = Blocker(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                blocker_type=from_storage_value(blocker_type, BlockerType),
                severity=from_storage_value(severity, BlockerSeverity),
                reported_by=reported_by,
                reported_at=datetime.now(timezone.utc),
                impact=BlockerImpact(
                    affected_steps=list(affected_steps or []),
                    affected_milestones=list(affected_milestones or []),
                    delay_estimate_hours=estimated_resolution_hours or 0.0
                ),
                estimated_resolution_hours=estimated_resolution_hours
            )
            record.blockers.append(blocker)

            for step_id in blocker.impact.affected_steps:
                step = record.find_step(step_id)
                if step:
                    step.status = StepStatus.BLOCKED

            self._add_history(
                record, ProgressEventType.BLOCKER_REPORTED, f"Blocker reported: {name}",
                impact=EventImpact.CRITICAL if blocker.severity == BlockerSeverity.CRITICAL else EventImpact.HIGH,
                actor=reported_by, metadata={'blocker_id': blocker.id, 'severity': blocker.severity.value}
            )
            self._cascade(record, pending_events)
            self._save(record)
            self.audit.log_event(
                AuditEventType.BLOCKER_REPORTED,
                'onboarding_progress',
                record.id,
                {'blocker_id': blocker.id, 'name': name, 'severity': blocker.severity.value,
                 'affected_steps': blocker.impact.affected_steps},
                reported_by
            )
            logger.warning(f"Blocker '{name}' ({blocker.severity.value}) reported on workflow {record.workflow_id}")
            pending_events.append((DomainEvent.BLOCKER_REPORTED, self._blocker_payload(record, blocker)))

        self._publish_all(progress_id, pending_events)
        return blocker

    def escalate_blocker(self, progress_id: str, blocker_id: str, escalated_to: str,
                         reason: str = "") -> Blocker:
        pending_events: PendingEvents = []
        with self._locks.hold(progress_id):
            record = self._require_progress(progress_id)
            blocker = self._require_blocker(record, blocker_id)
            if blocker.status not in (BlockerStatus.OPEN, BlockerStatus.IN_PROGRESS):
                raise ValueError(f"Blocker cannot be escalated from {blocker.status.value}")

            blocker.status = BlockerStatus.ESCALATED
            blocker.escalated = True
            blocker.escalated_to = escalated_to
            blocker.escalated_at = datetime.now(timezone.utc)
            self._add_history(record, ProgressEventType.BLOCKER_ESCALATED, f"Blocker escalated: {blocker.name}",
                              impact=EventImpact.HIGH, actor=escalated_to,
                              metadata={'blocker_id': blocker_id, 'reason': reason})
            record.updated_at = blocker.escalated_at
            self._save(record)
            self.audit.log_event(
                AuditEventType.BLOCKER_ESCALATED,
                'onboarding_progress',
                record.id,
                {'blocker_id': blocker_id, 'escalated_to': escalated_to, 'reason': reason},
                'system'
            )
            pending_events.append((DomainEvent.BLOCKER_ESCALATED, self._blocker_payload(record, blocker)))

        self._publish_all(progress_id, pending_events)
        return blocker

    def resolve_blocker(self, progress_id: str, blocker_id: str, resolution: str, resolved_by: str) -> Blocker:
        """
        Resolve a blocker.

        Affected steps go back to PENDING rather than to the status they had
        before the blocker, unless another active blocker still holds them.
        """
        return self._finish_blocker(progress_id, blocker_id, BlockerStatus.RESOLVED, resolution, resolved_by)

    def close_blocker(self, progress_id: str, blocker_id: str, closed_by: str, reason: str = "") -> Blocker:
        return self._finish_blocker(progress_id, blocker_id, BlockerStatus.CLOSED, reason, closed_by)

    def _finish_blocker(self, progress_id: str, blocker_id: str, status: BlockerStatus,
                        resolution: str, actor: str) -> Blocker:
        pending_events: PendingEvents = []
        with self._locks.hold(progress_id):
            record = self._require_progress(progress_id)
            blocker = self._require_blocker(record, blocker_id)
            if blocker.status not in ACTIVE_BLOCKER_STATUSES:
                raise ValueError(f"Blocker is already {blocker.status.value.lower()}")

            now = datetime.now(timezone.utc)
            blocker.status = status
            blocker.resolution = resolution
            blocker.resolved_by = actor
            blocker.resolved_at = now
            blocker.resolution_minutes = _minutes_between(blocker.reported_at, now)

            still_blocked = {
                step_id
                for other in record.blockers if other.status in ACTIVE_BLOCKER_STATUSES
                for step_id in other.impact.affected_steps
            }
            for step_id in blocker.impact.affected_steps:
                step = record.find_step(step_id)
                if step and step.status == StepStatus.BLOCKED and step_id not in still_blocked:
                    step.status = StepStatus.PENDING

            self._add_history(record, ProgressEventType.BLOCKER_RESOLVED, f"Blocker resolved: {blocker.name}",
                              impact=EventImpact.MEDIUM, actor=actor, actor_type='admin',
                              metadata={'blocker_id': blocker_id, 'resolution': resolution,
                                        'resolution_minutes': blocker.resolution_minutes})
            self._cascade(record, pending_events)
            self._save(record)
            self.audit.log_event(
                AuditEventType.BLOCKER_RESOLVED,
                'onboarding_progress',
                record.id,
                {'blocker_id': blocker_id, 'status': status.value, 'resolution': resolution},
                actor
            )
            logger.info(f"Blocker '{blocker.name}' {status.value.lower()} on workflow {record.workflow_id} by {actor}")
            pending_events.append((DomainEvent.BLOCKER_RESOLVED, self._blocker_payload(record, blocker)))

        self._publish_all(progress_id, pending_events)
        return blocker

    @staticmethod
    def _blocker_payload(record: OnboardingProgress, blocker: Blocker) -> Dict[str, Any]:
        return {
            'progress_id': record.id,
            'workflow_id': record.workflow_id,
            'client_id': record.client_id,
            'blocker': to_storage_value(blocker)
        }

    # Queries

    def get_progress(self, progress_id: str) -> Optional[OnboardingProgress]:
        data = self.storage.load(self.progress_table, progress_id)
        return OnboardingProgress.from_dict(data) if data else None

    def get_progress_by_workflow(self, workflow_id: str) -> Optional[OnboardingProgress]:
        records = [OnboardingProgress.from_dict(data)
                   for data in self.storage.find(self.progress_table, {'workflow_id': workflow_id})]
        if not records:
            return None
        return max(records, key=lambda r: r.created_at)

    def get_progress_by_client(self, client_id: str, tenant_id: Optional[str] = None) -> List[OnboardingProgress]:
        filters = {'client_id': client_id}
        if tenant_id:
            filters['tenant_id'] = tenant_id
        return [OnboardingProgress.from_dict(data) for data in self.storage.find(self.progress_table, filters)]

    def get_progress_summary(self, progress_id: str) -> Dict[str, Any]:
        record = self._require_progress(progress_id)
        upcoming = sorted(
            (m for m in record.milestones if m.status == MilestoneStatus.UPCOMING),
            key=lambda m: m.target_date
        )
        return {
            'progress_id': record.id,
            'workflow_id': record.workflow_id,
            'overall_status': record.status,
            'overall_progress': record.overall_progress,
            'current_phase': record.current_phase,
            'next_milestone': upcoming[0] if upcoming else None,
            'estimated_completion': record.estimated_completion_date,
            'active_blockers': len([b for b in record.blockers if b.status in ACTIVE_BLOCKER_STATUSES]),
            'recent_events': list(reversed(record.history[-10:]))
        }

    def get_next_actions(self, progress_id: str) -> List[Dict[str, Any]]:
        """Pending client actions in phases whose prerequisites are done"""
        record = self._require_progress(progress_id)
        completed_phases = {phase.phase.value for phase in record.phases if phase.status == PhaseStatus.COMPLETED}

        actions = []
        for phase in record.phases:
            if phase.status == PhaseStatus.COMPLETED:
                continue
            if not all(dependency in completed_phases for dependency in phase.dependencies):
                continue
            for step in phase.steps:
                if step.owner != StepOwner.CLIENT or step.status not in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                    continue
                for action in step.user_actions:
                    if action.status in (ActionStatus.PENDING, ActionStatus.IN_PROGRESS):
                        actions.append({
                            'phase': phase.phase.value,
                            'step_id': step.id,
                            'step_name': step.name,
                            'action_id': action.id,
                            'name': action.name,
                            'description': action.description,
                            'action_type': action.action_type.value,
                            'instructions': action.instructions,
                            'required': action.required,
                            'estimated_minutes': action.estimated_minutes
                        })
        return actions

    def list_progress(self, tenant_id: Optional[str] = None) -> List[OnboardingProgress]:
        filters = {'tenant_id': tenant_id} if tenant_id else {}
        records = [OnboardingProgress.from_dict(data) for data in self.storage.find(self.progress_table, filters)]
        return sorted(records, key=lambda r: r.created_at)

    def get_progress_metrics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        records = self.list_progress(tenant_id)
        total = len(records)
        completed = [r for r in records if r.status == OnboardingStatus.COMPLETED]
        completion_hours = [
            (r.actual_completion_date - r.created_at).total_seconds() / 3600
            for r in completed if r.actual_completion_date
        ]
        blocker_types = Counter(b.blocker_type.value for r in records for b in r.blockers)

        phase_rates = {}
        for phase in OnboardingPhase:
            instances = [p for r in records for p in r.phases if p.phase == phase]
            done = [p for p in instances if p.status == PhaseStatus.COMPLETED]
            phase_rates[phase.value] = (len(done) / len(instances) * 100) if instances else 0.0

        return {
            'total_onboardings': total,
            'active_onboardings': len([r for r in records if r.status == OnboardingStatus.IN_PROGRESS]),
            'blocked_onboardings': len([r for r in records if r.status == OnboardingStatus.BLOCKED]),
            'completed_onboardings': len(completed),
            'completion_rate': (len(completed) / total * 100) if total else 0.0,
            'average_completion_hours': (sum(completion_hours) / len(completion_hours)) if completion_hours else 0.0,
            'common_blockers': [{'type': t, 'count': c} for t, c in blocker_types.most_common(5)],
            'phase_completion_rates': phase_rates
        }

    # Internals

    def _add_history(self, record: OnboardingProgress, event_type: ProgressEventType, description: str,
                     impact: EventImpact, actor: str = "system", actor_type: str = "system",
                     phase: Optional[OnboardingPhase] = None, step_id: Optional[str] = None,
                     milestone_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        record.history.append(ProgressEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            description=description,
            actor=actor,
            actor_type=actor_type,
            impact=impact,
            phase=phase,
            step_id=step_id,
            milestone_id=milestone_id,
            metadata=dict(metadata or {})
        ))
        if len(record.history) > self.history_limit:
            record.history = record.history[-self.history_limit:]

    def _require_progress(self, progress_id: str) -> OnboardingProgress:
        record = self.get_progress(progress_id)
        if not record:
            raise ValueError("Progress record not found")
        return record

    @staticmethod
    def _require_blocker(record: OnboardingProgress, blocker_id: str) -> Blocker:
        blocker = record.get_blocker(blocker_id)
        if not blocker:
            raise ValueError("Blocker not found")
        return blocker

    def _save(self, record: OnboardingProgress) -> None:
        self.storage.save(self.progress_table, record.id, record.to_dict())

    def _publish_all(self, progress_id: str, pending_events: PendingEvents) -> None:
        for event_type, data in pending_events:
            self.publish_event(event_type, 'onboarding_progress', progress_id, data)
