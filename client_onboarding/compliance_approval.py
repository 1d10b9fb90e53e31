"""
Compliance Approval Module

Multi-step compliance sign-off for an onboarding. Each workflow type gets its
own approval steps with role-based reviewer requirements, followed by a
universal Final Approval step that depends on every other step.

Reviewers are picked from a shared pool by a weighted score of quality,
timeliness and spare capacity. A step completes once it has collected as many
decisions as it requires reviewers; once every step is complete the workflow
resolves from the decisions it received (reject beats conditional approval
beats approval).
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import threading
import uuid

from .storage import StorageInterface, StorageRecord, KeyedLocks, from_storage_value, build_dataclass
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .step_runner import find_all_eligible, sort_by_order
from .config import get_config


logger = logging.getLogger("onboarding.compliance")


class ComplianceWorkflowType(Enum):
    CLIENT_ONBOARDING = "CLIENT_ONBOARDING"
    HIGH_RISK_CLIENT = "HIGH_RISK_CLIENT"
    REGULATORY_CHANGE = "REGULATORY_CHANGE"
    EXCEPTION_APPROVAL = "EXCEPTION_APPROVAL"
    PERIODIC_REVIEW = "PERIODIC_REVIEW"


class ComplianceWorkflowStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_INFORMATION = "AWAITING_INFORMATION"
    ESCALATED = "ESCALATED"
    APPROVED = "APPROVED"
    CONDITIONALLY_APPROVED = "CONDITIONALLY_APPROVED"
    REJECTED = "REJECTED"


class CompliancePriority(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class ApprovalStepStatus(Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ESCALATED = "ESCALATED"
    SKIPPED = "SKIPPED"


class ReviewerRole(Enum):
    COMPLIANCE_ANALYST = "COMPLIANCE_ANALYST"
    RISK_ANALYST = "RISK_ANALYST"
    SENIOR_COMPLIANCE_OFFICER = "SENIOR_COMPLIANCE_OFFICER"
    COMPLIANCE_MANAGER = "COMPLIANCE_MANAGER"
    LEGAL_COUNSEL = "LEGAL_COUNSEL"


class DecisionType(Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CONDITIONAL_APPROVE = "CONDITIONAL_APPROVE"
    REQUEST_MORE_INFO = "REQUEST_MORE_INFO"
    ESCALATE = "ESCALATE"


class CriteriaStatus(Enum):
    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"


class CriteriaResult(Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    CONDITIONAL = "CONDITIONAL"


class RiskLevel(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class DeadlineType(Enum):
    REGULATORY = "REGULATORY"
    BUSINESS = "BUSINESS"


class DeadlineStatus(Enum):
    ACTIVE = "ACTIVE"
    MET = "MET"
    MISSED = "MISSED"


@dataclass
class ComplianceReviewer(StorageRecord):
    """Member of the reviewer pool"""
    name: str
    role: ReviewerRole
    title: str = ""
    department: str = "Compliance"
    jurisdictions: List[str] = field(default_factory=list)
    specializations: List[str] = field(default_factory=list)
    availability: str = "available"  # available, busy or out_of_office
    current_reviews: int = 0
    max_capacity: int = 10
    quality_score: float = 80.0
    timeliness: float = 80.0
    reviews_completed: int = 0

    @property
    def remaining_capacity_percentage(self) -> float:
        if self.max_capacity <= 0:
            return 0.0
        return (self.max_capacity - self.current_reviews) / self.max_capacity * 100

    @property
    def selection_score(self) -> float:
        return 0.4 * self.quality_score + 0.3 * self.timeliness + 0.3 * self.remaining_capacity_percentage


@dataclass
class ReviewerRequirement:
    role: ReviewerRole
    count: int = 1
    jurisdiction: Optional[str] = None
    specialization: Optional[str] = None


@dataclass
class ApprovalCriteria:
    id: str
    name: str
    description: str
    weight: int
    threshold: int
    status: CriteriaStatus = CriteriaStatus.PENDING
    result: Optional[CriteriaResult] = None
    evaluated_by: Optional[str] = None
    evaluated_at: Optional[datetime] = None


@dataclass
class CriteriaEvaluation:
    criteria_id: str
    result: CriteriaResult
    score: float
    notes: str = ""


@dataclass
class StepDecision:
    reviewer_id: str
    decision: DecisionType
    reasoning: str
    timestamp: datetime
    criteria_evaluations: List[CriteriaEvaluation] = field(default_factory=list)


@dataclass
class ApprovalStep:
    id: str
    name: str
    description: str
    order: int
    dependencies: List[str] = field(default_factory=list)
    required_reviewers: List[ReviewerRequirement] = field(default_factory=list)
    assigned_reviewers: List[str] = field(default_factory=list)
    criteria: List[ApprovalCriteria] = field(default_factory=list)
    decisions: List[StepDecision] = field(default_factory=list)
    status: ApprovalStepStatus = ApprovalStepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def required_decision_count(self) -> int:
        return sum(requirement.count for requirement in self.required_reviewers)


@dataclass
class ComplianceDecision:
    id: str
    step_id: str
    reviewer_id: str
    decision: DecisionType
    reasoning: str
    confidence_level: float
    timestamp: datetime
    conditions: List[str] = field(default_factory=list)


@dataclass
class RiskFactor:
    category: str
    description: str
    score: int
    likelihood: str = "medium"
    impact: str = "medium"
    source: str = "system"
    mitigated: bool = False


@dataclass
class RiskAssessment:
    id: str
    overall_risk: RiskLevel
    score: int
    assessed_at: datetime
    valid_until: datetime
    risk_factors: List[RiskFactor] = field(default_factory=list)
    assessed_by: str = "system"
    methodology: str = "Automated Risk Scoring v1.0"


@dataclass
class EscalationRecord:
    id: str
    step_id: str
    reason: str
    escalated_by: str
    escalated_to: str
    escalated_at: datetime
    resolved_at: Optional[datetime] = None


@dataclass
class WorkflowDeadline:
    id: str
    deadline_type: DeadlineType
    deadline: datetime
    reminder_dates: List[datetime] = field(default_factory=list)
    status: DeadlineStatus = DeadlineStatus.ACTIVE
    consequences: List[str] = field(default_factory=list)


@dataclass
class ComplianceMetadata:
    account_type: str = "INDIVIDUAL_TAXABLE"
    risk_level: Optional[str] = None
    jurisdiction: str = "US"
    regulatory_requirements: List[str] = field(default_factory=list)
    business_rules: List[str] = field(default_factory=list)


@dataclass
class ComplianceWorkflow(StorageRecord):
    """Compliance approval aggregate for one onboarding"""
    client_id: str
    tenant_id: str
    workflow_id: str
    workflow_type: ComplianceWorkflowType
    priority: CompliancePriority
    risk_assessment: RiskAssessment
    metadata: ComplianceMetadata
    status: ComplianceWorkflowStatus = ComplianceWorkflowStatus.PENDING
    approval_steps: List[ApprovalStep] = field(default_factory=list)
    reviewers: List[str] = field(default_factory=list)
    decisions: List[ComplianceDecision] = field(default_factory=list)
    escalations: List[EscalationRecord] = field(default_factory=list)
    deadlines: List[WorkflowDeadline] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    def get_step(self, step_id: str) -> Optional[ApprovalStep]:
        for step in self.approval_steps:
            if step.id == step_id:
                return step
        return None

    @property
    def is_resolved(self) -> bool:
        return self.status in (
            ComplianceWorkflowStatus.APPROVED,
            ComplianceWorkflowStatus.CONDITIONALLY_APPROVED,
            ComplianceWorkflowStatus.REJECTED,
        )


DEFAULT_REVIEWERS = [
    {'id': "reviewer-001", 'name': "Sarah Johnson", 'title': "Senior Compliance Officer",
     'role': ReviewerRole.SENIOR_COMPLIANCE_OFFICER, 'jurisdictions': ["US", "NY"],
     'specializations': ["KYC", "AML", "FINRA"], 'current_reviews': 5, 'max_capacity': 15,
     'quality_score': 92, 'timeliness': 90},
    {'id': "reviewer-002", 'name': "Michael Chen", 'title': "Compliance Manager",
     'role': ReviewerRole.COMPLIANCE_MANAGER, 'jurisdictions': ["US"],
     'specializations': ["Risk Assessment", "Regulatory Filings"], 'current_reviews': 3, 'max_capacity': 10,
     'quality_score': 94, 'timeliness': 88},
    {'id': "reviewer-003", 'name': "Priya Patel", 'title': "Compliance Analyst",
     'role': ReviewerRole.COMPLIANCE_ANALYST, 'jurisdictions': ["US"],
     'specializations': ["KYC", "Document Review"], 'current_reviews': 4, 'max_capacity': 20,
     'quality_score': 88, 'timeliness': 92},
    {'id': "reviewer-004", 'name': "David Okafor", 'title': "Risk Analyst",
     'role': ReviewerRole.RISK_ANALYST, 'jurisdictions': ["US"],
     'specializations': ["Risk Assessment"], 'current_reviews': 2, 'max_capacity': 12,
     'quality_score': 90, 'timeliness': 85},
]

ENTITY_ACCOUNT_TYPES = ("CORPORATE", "LLC", "TRUST")
ELEVATED_RISK = (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value)


def _criteria(name: str, description: str, weight: int, threshold: int) -> ApprovalCriteria:
    return ApprovalCriteria(id=str(uuid.uuid4()), name=name, description=description,
                            weight=weight, threshold=threshold)


def build_approval_steps(workflow_type: ComplianceWorkflowType, risk_level: Optional[str]) -> List[ApprovalStep]:
    """Steps for the workflow type plus the universal Final Approval step"""
    steps: List[ApprovalStep] = []

    if workflow_type == ComplianceWorkflowType.CLIENT_ONBOARDING:
        steps.append(ApprovalStep(
            id=str(uuid.uuid4()), name="Document Review",
            description="Review all submitted client documents", order=1,
            required_reviewers=[ReviewerRequirement(ReviewerRole.COMPLIANCE_ANALYST)],
            criteria=[
                _criteria("Document Completeness", "All required documents submitted", 30, 100),
                _criteria("Document Authenticity", "Documents appear authentic", 40, 85),
            ]
        ))
        steps.append(ApprovalStep(
            id=str(uuid.uuid4()), name="Risk Assessment Review",
            description="Evaluate client risk profile", order=2, dependencies=["Document Review"],
            required_reviewers=[ReviewerRequirement(ReviewerRole.RISK_ANALYST)],
            criteria=[_criteria("Risk Score Validation", "Risk score within acceptable range", 50, 75)]
        ))
    elif workflow_type == ComplianceWorkflowType.HIGH_RISK_CLIENT:
        steps.append(ApprovalStep(
            id=str(uuid.uuid4()), name="Enhanced Due Diligence",
            description="Perform enhanced due diligence review", order=1,
            required_reviewers=[ReviewerRequirement(ReviewerRole.SENIOR_COMPLIANCE_OFFICER)],
            criteria=[_criteria("Enhanced KYC Review", "Additional identity and background verification", 60, 90)]
        ))
        steps.append(ApprovalStep(
            id=str(uuid.uuid4()), name="Senior Management Approval",
            description="Senior management review and approval", order=2,
            dependencies=["Enhanced Due Diligence"],
            required_reviewers=[ReviewerRequirement(ReviewerRole.COMPLIANCE_MANAGER)],
            criteria=[_criteria("Business Justification",
                                "Clear business justification for accepting high-risk client", 40, 80)]
        ))

    final_role = (ReviewerRole.COMPLIANCE_MANAGER if risk_level in ELEVATED_RISK
                  else ReviewerRole.SENIOR_COMPLIANCE_OFFICER)
    steps.append(ApprovalStep(
        id=str(uuid.uuid4()), name="Final Approval", description="Final compliance approval",
        order=len(steps) + 1, dependencies=[step.name for step in steps],
        required_reviewers=[ReviewerRequirement(final_role)],
        criteria=[_criteria("Overall Compliance", "Overall compliance with all requirements", 100, 85)]
    ))
    return steps


def determine_priority(workflow_type: ComplianceWorkflowType, risk_level: Optional[str]) -> CompliancePriority:
    if risk_level == RiskLevel.CRITICAL.value:
        return CompliancePriority.CRITICAL
    if risk_level == RiskLevel.HIGH.value:
        return CompliancePriority.HIGH
    if workflow_type == ComplianceWorkflowType.REGULATORY_CHANGE:
        return CompliancePriority.URGENT
    if workflow_type in (ComplianceWorkflowType.HIGH_RISK_CLIENT, ComplianceWorkflowType.EXCEPTION_APPROVAL):
        return CompliancePriority.HIGH
    return CompliancePriority.MEDIUM


def assess_initial_risk(metadata: ComplianceMetadata) -> RiskAssessment:
    """Score geographic and account-type risk factors"""
    now = datetime.now(timezone.utc)
    factors = []
    if metadata.jurisdiction in get_config().high_risk_jurisdictions:
        factors.append(RiskFactor(
            category="Geographic",
            description=f"High-risk jurisdiction: {metadata.jurisdiction}",
            score=25, likelihood="high", source="GeographicRiskAssessment"
        ))
    if metadata.account_type in ENTITY_ACCOUNT_TYPES:
        factors.append(RiskFactor(
            category="Account Type",
            description="Entity account requires enhanced oversight",
            score=15, source="AccountTypeAssessment"
        ))

    score = sum(factor.score for factor in factors)
    if score >= 50:
        overall = RiskLevel.HIGH
    elif score >= 25:
        overall = RiskLevel.MEDIUM
    else:
        overall = RiskLevel.LOW

    return RiskAssessment(
        id=str(uuid.uuid4()),
        overall_risk=overall,
        score=score,
        assessed_at=now,
        valid_until=now + timedelta(days=365),
        risk_factors=factors
    )


def build_deadlines(workflow_type: ComplianceWorkflowType) -> List[WorkflowDeadline]:
    config = get_config()
    now = datetime.now(timezone.utc)

    if workflow_type == ComplianceWorkflowType.CLIENT_ONBOARDING:
        deadline = now + timedelta(days=config.onboarding_deadline_days)
        return [WorkflowDeadline(
            id=str(uuid.uuid4()), deadline_type=DeadlineType.REGULATORY, deadline=deadline,
            reminder_dates=[deadline - timedelta(days=days) for days in (7, 3, 1)],
            consequences=["Regulatory non-compliance", "Potential penalties"]
        )]
    if workflow_type == ComplianceWorkflowType.HIGH_RISK_CLIENT:
        deadline = now + timedelta(days=config.high_risk_deadline_days)
        return [WorkflowDeadline(
            id=str(uuid.uuid4()), deadline_type=DeadlineType.BUSINESS, deadline=deadline,
            reminder_dates=[deadline - timedelta(days=days) for days in (2, 1)],
            consequences=["Delayed account opening", "Client dissatisfaction"]
        )]
    return [WorkflowDeadline(
        id=str(uuid.uuid4()), deadline_type=DeadlineType.BUSINESS,
        deadline=now + timedelta(days=config.onboarding_deadline_days)
    )]


def calculate_decision_confidence(evaluations: List[CriteriaEvaluation]) -> float:
    """Mean evaluation score clamped to 0..100; 50 when nothing was evaluated"""
    if not evaluations:
        return 50.0
    average = sum(evaluation.score for evaluation in evaluations) / len(evaluations)
    return min(100.0, max(0.0, average))


PendingEvents = List[Tuple[DomainEvent, Dict[str, Any]]]


class ComplianceApprovalEngine(EventPublisherMixin):
    """Creates compliance workflows, assigns reviewers and aggregates decisions"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_manager: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        seed_reviewers: bool = True
    ):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.set_event_dispatcher(event_dispatcher)
        self.workflows_table = "compliance_workflows"
        self.reviewers_table = "compliance_reviewers"
        self._locks = KeyedLocks()
        self._reviewer_lock = threading.RLock()

        if seed_reviewers:
            self._seed_default_reviewers()

    # Reviewer pool

    def _seed_default_reviewers(self) -> None:
        now = datetime.now(timezone.utc)
        for data in DEFAULT_REVIEWERS:
            if self.storage.exists(self.reviewers_table, data['id']):
                continue
            self.register_reviewer(build_dataclass(ComplianceReviewer, {
                **data, 'created_at': now, 'updated_at': now
            }))

    def register_reviewer(self, reviewer: ComplianceReviewer) -> ComplianceReviewer:
        with self._reviewer_lock:
            self.storage.save(self.reviewers_table, reviewer.id, reviewer.to_dict())
        logger.info(f"Reviewer {reviewer.id} ({reviewer.role.value}) registered")
        return reviewer

    def get_reviewer(self, reviewer_id: str) -> Optional[ComplianceReviewer]:
        data = self.storage.load(self.reviewers_table, reviewer_id)
        return ComplianceReviewer.from_dict(data) if data else None

    def list_reviewers(self) -> List[ComplianceReviewer]:
        """Reviewer pool in registration order"""
        reviewers = [ComplianceReviewer.from_dict(data) for data in self.storage.load_all(self.reviewers_table)]
        return sorted(reviewers, key=lambda r: (r.created_at, r.id))

    def find_available_reviewers(self, requirement: ReviewerRequirement,
                                 exclude: Optional[List[str]] = None) -> List[ComplianceReviewer]:
        excluded = set(exclude or [])
        candidates = []
        for reviewer in self.list_reviewers():
            if reviewer.id in excluded or reviewer.role != requirement.role:
                continue
            if reviewer.availability != "available":
                continue
            if reviewer.current_reviews >= reviewer.max_capacity:
                continue
            if requirement.jurisdiction and requirement.jurisdiction not in reviewer.jurisdictions:
                continue
            if requirement.specialization and requirement.specialization not in reviewer.specializations:
                continue
            candidates.append(reviewer)
        return candidates

    @staticmethod
    def select_best_reviewer(candidates: List[ComplianceReviewer]) -> Optional[ComplianceReviewer]:
        """Highest weighted score wins; the first of equals is kept"""
        if not candidates:
            return None
        return max(candidates, key=lambda reviewer: reviewer.selection_score)

    def _adjust_workload(self, reviewer_id: str, delta: int, completed: int = 0) -> None:
        with self._reviewer_lock:
            reviewer = self.get_reviewer(reviewer_id)
            if not reviewer:
                return
            reviewer.current_reviews = max(0, reviewer.current_reviews + delta)
            reviewer.reviews_completed += completed
            reviewer.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.reviewers_table, reviewer.id, reviewer.to_dict())

    # Workflow lifecycle

    def create_compliance_workflow(
        self,
        client_id: str,
        tenant_id: str,
        workflow_id: str,
        workflow_type: ComplianceWorkflowType = ComplianceWorkflowType.CLIENT_ONBOARDING,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ComplianceWorkflow:
        """Build the workflow, assign reviewers and start the first step"""
        workflow_type = from_storage_value(workflow_type, ComplianceWorkflowType)
        workflow_metadata = build_dataclass(ComplianceMetadata, dict(metadata or {}))

        risk_assessment = assess_initial_risk(workflow_metadata)
        if not workflow_metadata.risk_level:
            workflow_metadata.risk_level = risk_assessment.overall_risk.value

        now = datetime.now(timezone.utc)
        workflow = ComplianceWorkflow(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            workflow_type=workflow_type,
            priority=determine_priority(workflow_type, workflow_metadata.risk_level),
            risk_assessment=risk_assessment,
            metadata=workflow_metadata,
            approval_steps=build_approval_steps(workflow_type, workflow_metadata.risk_level),
            deadlines=build_deadlines(workflow_type)
        )

        pending_events: PendingEvents = []
        with self._locks.hold(workflow.id):
            self._save(workflow)
            self.audit.log_event(
                AuditEventType.WORKFLOW_CREATED,
                'compliance_workflow',
                workflow.id,
                {
                    'workflow_type': workflow_type.value,
                    'client_id': client_id,
                    'onboarding_workflow_id': workflow_id,
                    'risk_level': workflow_metadata.risk_level,
                    'priority': workflow.priority.value
                },
                'system'
            )
            logger.info(f"Compliance workflow {workflow.id} ({workflow_type.value}) created for client {client_id}")
            pending_events.append((DomainEvent.COMPLIANCE_WORKFLOW_CREATED, workflow.to_dict()))

            self._assign_reviewers(workflow, pending_events)
            self._start_workflow(workflow, pending_events)
            self._save(workflow)

        self._publish_all(workflow.id, pending_events)
        return workflow

    def assign_reviewers(self, workflow_id: str) -> ComplianceWorkflow:
        """Fill reviewer slots on every still-PENDING step"""
        pending_events: PendingEvents = []
        with self._locks.hold(workflow_id):
            workflow = self._require_workflow(workflow_id)
            self._assign_reviewers(workflow, pending_events)
            self._start_next_steps(workflow, pending_events)
            self._save(workflow)
        self._publish_all(workflow_id, pending_events)
        return workflow

    def _assign_reviewers(self, workflow: ComplianceWorkflow, pending_events: PendingEvents) -> None:
        for step in sort_by_order(workflow.approval_steps):
            if step.status != ApprovalStepStatus.PENDING:
                continue

            for requirement in step.required_reviewers:
                for _ in range(requirement.count):
                    with self._reviewer_lock:
                        reviewer = self.select_best_reviewer(
                            self.find_available_reviewers(requirement, exclude=step.assigned_reviewers)
                        )
                        if reviewer is None:
                            logger.warning(
                                f"No available {requirement.role.value} reviewer for step "
                                f"'{step.name}' of compliance workflow {workflow.id}"
                            )
                            break
                        self._adjust_workload(reviewer.id, +1)

                    step.assigned_reviewers.append(reviewer.id)
                    if reviewer.id not in workflow.reviewers:
                        workflow.reviewers.append(reviewer.id)

                    self.audit.log_event(
                        AuditEventType.REVIEWER_ASSIGNED,
                        'compliance_workflow',
                        workflow.id,
                        {'step_id': step.id, 'step_name': step.name,
                         'reviewer_id': reviewer.id, 'reviewer_name': reviewer.name},
                        'system'
                    )
                    pending_events.append((DomainEvent.REVIEWER_ASSIGNED, {
                        'compliance_workflow_id': workflow.id,
                        'step_id': step.id,
                        'step_name': step.name,
                        'reviewer_id': reviewer.id
                    }))

            if step.assigned_reviewers:
                step.status = ApprovalStepStatus.ASSIGNED

        workflow.updated_at = datetime.now(timezone.utc)

    def _start_workflow(self, workflow: ComplianceWorkflow, pending_events: PendingEvents) -> None:
        workflow.status = ComplianceWorkflowStatus.IN_PROGRESS
        first_steps = [step for step in sort_by_order(workflow.approval_steps)
                       if not step.dependencies and step.status == ApprovalStepStatus.ASSIGNED]
        if first_steps:
            self._mark_started(workflow, first_steps[0], pending_events)

    def _mark_started(self, workflow: ComplianceWorkflow, step: ApprovalStep, pending_events: PendingEvents) -> None:
        step.status = ApprovalStepStatus.IN_PROGRESS
        step.started_at = datetime.now(timezone.utc)
        self.audit.log_event(
            AuditEventType.STEP_STARTED,
            'compliance_workflow',
            workflow.id,
            {'step_id': step.id, 'step_name': step.name},
            'system'
        )
        pending_events.append((DomainEvent.COMPLIANCE_STEP_STARTED, {
            'compliance_workflow_id': workflow.id,
            'workflow_id': workflow.workflow_id,
            'client_id': workflow.client_id,
            'step_id': step.id,
            'step_name': step.name,
            'assigned_reviewers': list(step.assigned_reviewers)
        }))

    def submit_decision(
        self,
        workflow_id: str,
        step_id: str,
        reviewer_id: str,
        decision: Any,
        reasoning: str = "",
        criteria_evaluations: Optional[List[Any]] = None,
        conditions: Optional[List[str]] = None
    ) -> ComplianceDecision:
        """
        Record a reviewer's decision on a step.

        Raises:
            ValueError: workflow or step missing, or reviewer not assigned to the step
        """
        decision_type = from_storage_value(decision, DecisionType)
        evaluations = from_storage_value(list(criteria_evaluations or []), List[CriteriaEvaluation])

        pending_events: PendingEvents = []
        with self._locks.hold(workflow_id):
            workflow = self._require_workflow(workflow_id)
            step = workflow.get_step(step_id)
            if not step:
                raise ValueError("Step not found")
            if reviewer_id not in step.assigned_reviewers:
                raise ValueError("Reviewer not assigned to this step")

            if any(previous.reviewer_id == reviewer_id for previous in step.decisions):
                logger.warning(
                    f"Reviewer {reviewer_id} submitted another decision on step '{step.name}' "
                    f"of compliance workflow {workflow_id}; it counts toward completion"
                )

            now = datetime.now(timezone.utc)
            compliance_decision = ComplianceDecision(
                id=str(uuid.uuid4()),
                step_id=step_id,
                reviewer_id=reviewer_id,
                decision=decision_type,
                reasoning=reasoning,
                confidence_level=calculate_decision_confidence(evaluations),
                timestamp=now,
                conditions=list(conditions or [])
            )
            workflow.decisions.append(compliance_decision)
            step.decisions.append(StepDecision(
                reviewer_id=reviewer_id,
                decision=decision_type,
                reasoning=reasoning,
                timestamp=now,
                criteria_evaluations=evaluations
            ))

            criteria_by_id = {criteria.id: criteria for criteria in step.criteria}
            for evaluation in evaluations:
                criteria = criteria_by_id.get(evaluation.criteria_id)
                if criteria is None:
                    continue
                criteria.status = CriteriaStatus.PASSED if evaluation.result == CriteriaResult.PASS \
                    else CriteriaStatus.FAILED
                criteria.result = evaluation.result
                criteria.evaluated_by = reviewer_id
                criteria.evaluated_at = now

            self._adjust_workload(reviewer_id, -1, completed=1)

            self.audit.log_event(
                AuditEventType.DECISION_SUBMITTED,
                'compliance_workflow',
                workflow_id,
                {
                    'step_id': step_id,
                    'decision': decision_type.value,
                    'reasoning': reasoning,
                    'confidence_level': compliance_decision.confidence_level,
                    'criteria_evaluations': evaluations
                },
                reviewer_id
            )
            logger.info(f"Compliance workflow {workflow_id}: {decision_type.value} on '{step.name}' by {reviewer_id}")
            pending_events.append((DomainEvent.DECISION_SUBMITTED, {
                'compliance_workflow_id': workflow_id,
                'workflow_id': workflow.workflow_id,
                'client_id': workflow.client_id,
                'step_id': step_id,
                'decision': decision_type.value,
                'reviewer_id': reviewer_id
            }))

            if decision_type == DecisionType.ESCALATE:
                self._escalate(workflow, step, reasoning or "Escalated by reviewer", reviewer_id, pending_events)
            else:
                self._check_step_completion(workflow, step, pending_events)

            workflow.updated_at = now
            self._save(workflow)

        self._publish_all(workflow_id, pending_events)
        return compliance_decision

    def escalate_step(self, workflow_id: str, step_id: str, reason: str,
                      escalated_by: str = "system") -> ComplianceWorkflow:
        pending_events: PendingEvents = []
        with self._locks.hold(workflow_id):
            workflow = self._require_workflow(workflow_id)
            step = workflow.get_step(step_id)
            if not step:
                raise ValueError("Step not found")
            self._escalate(workflow, step, reason, escalated_by, pending_events)
            self._save(workflow)
        self._publish_all(workflow_id, pending_events)
        return workflow

    def _escalate(self, workflow: ComplianceWorkflow, step: ApprovalStep, reason: str,
                  escalated_by: str, pending_events: PendingEvents) -> None:
        with self._reviewer_lock:
            manager = self.select_best_reviewer(
                self.find_available_reviewers(ReviewerRequirement(ReviewerRole.COMPLIANCE_MANAGER))
            )
        escalation = EscalationRecord(
            id=str(uuid.uuid4()),
            step_id=step.id,
            reason=reason,
            escalated_by=escalated_by,
            escalated_to=manager.id if manager else "unassigned",
            escalated_at=datetime.now(timezone.utc)
        )
        workflow.escalations.append(escalation)
        if manager and manager.id not in step.assigned_reviewers:
            step.assigned_reviewers.append(manager.id)
            self._adjust_workload(manager.id, 1)
        step.status = ApprovalStepStatus.ESCALATED
        workflow.status = ComplianceWorkflowStatus.ESCALATED
        workflow.updated_at = escalation.escalated_at

        self.audit.log_event(
            AuditEventType.WORKFLOW_ESCALATED,
            'compliance_workflow',
            workflow.id,
            {'step_id': step.id, 'reason': reason, 'escalated_to': escalation.escalated_to},
            escalated_by
        )
        logger.warning(f"Compliance workflow {workflow.id} escalated on '{step.name}': {reason}")
        pending_events.append((DomainEvent.COMPLIANCE_WORKFLOW_ESCALATED, workflow.to_dict()))

    def _check_step_completion(self, workflow: ComplianceWorkflow, step: ApprovalStep,
                               pending_events: PendingEvents) -> None:
        if step.status == ApprovalStepStatus.COMPLETED:
            return
        decided = [d for d in step.decisions if d.decision != DecisionType.ESCALATE]
        if len(decided) < step.required_decision_count:
            return

        step.status = ApprovalStepStatus.COMPLETED
        step.completed_at = datetime.now(timezone.utc)
        if workflow.status == ComplianceWorkflowStatus.ESCALATED and not any(
                other.status == ApprovalStepStatus.ESCALATED for other in workflow.approval_steps):
            workflow.status = ComplianceWorkflowStatus.IN_PROGRESS
        self.audit.log_event(
            AuditEventType.STEP_COMPLETED,
            'compliance_workflow',
            workflow.id,
            {'step_id': step.id, 'step_name': step.name},
            'system'
        )
        pending_events.append((DomainEvent.COMPLIANCE_STEP_COMPLETED, {
            'compliance_workflow_id': workflow.id,
            'workflow_id': workflow.workflow_id,
            'client_id': workflow.client_id,
            'step_id': step.id,
            'step_name': step.name
        }))
        self._start_next_steps(workflow, pending_events)

    def _start_next_steps(self, workflow: ComplianceWorkflow, pending_events: PendingEvents) -> None:
        ready = find_all_eligible(workflow.approval_steps, ApprovalStepStatus.ASSIGNED, ApprovalStepStatus.COMPLETED)
        for step in sort_by_order(ready):
            self._mark_started(workflow, step, pending_events)
        self._check_workflow_completion(workflow, pending_events)

    def _check_workflow_completion(self, workflow: ComplianceWorkflow, pending_events: PendingEvents) -> None:
        if workflow.completed_at is not None:
            return
        if not all(step.status == ApprovalStepStatus.COMPLETED for step in workflow.approval_steps):
            return

        now = datetime.now(timezone.utc)
        final = [d.decision for d in workflow.decisions if d.decision != DecisionType.REQUEST_MORE_INFO]
        if DecisionType.REJECT in final:
            workflow.status = ComplianceWorkflowStatus.REJECTED
            workflow.rejected_at = now
        elif DecisionType.CONDITIONAL_APPROVE in final:
            workflow.status = ComplianceWorkflowStatus.CONDITIONALLY_APPROVED
            workflow.approved_at = now
        elif DecisionType.APPROVE in final:
            workflow.status = ComplianceWorkflowStatus.APPROVED
            workflow.approved_at = now
        else:
            # Only information requests were received; nothing to resolve from.
            workflow.status = ComplianceWorkflowStatus.AWAITING_INFORMATION
            workflow.updated_at = now
            logger.warning(f"Compliance workflow {workflow.id} finished its steps without a final decision")
            return

        workflow.completed_at = now
        workflow.updated_at = now
        for deadline in workflow.deadlines:
            if deadline.status == DeadlineStatus.ACTIVE:
                deadline.status = DeadlineStatus.MET if now <= deadline.deadline else DeadlineStatus.MISSED

        self.audit.log_event(
            AuditEventType.WORKFLOW_COMPLETED,
            'compliance_workflow',
            workflow.id,
            {'final_status': workflow.status.value, 'total_decisions': len(final)},
            'system'
        )
        logger.info(f"Compliance workflow {workflow.id} resolved as {workflow.status.value}")
        pending_events.append((DomainEvent.COMPLIANCE_WORKFLOW_COMPLETED, workflow.to_dict()))

    def check_deadlines(self, now: Optional[datetime] = None) -> List[ComplianceWorkflow]:
        """Mark overdue deadlines of unresolved workflows as MISSED"""
        now = now or datetime.now(timezone.utc)
        updated = []
        for candidate in self.list_workflows():
            if candidate.is_resolved:
                continue
            with self._locks.hold(candidate.id):
                workflow = self._require_workflow(candidate.id)
                missed = [d for d in workflow.deadlines if d.status == DeadlineStatus.ACTIVE and d.deadline < now]
                if not missed:
                    continue
                for deadline in missed:
                    deadline.status = DeadlineStatus.MISSED
                workflow.updated_at = now
                self._save(workflow)
                logger.warning(f"Compliance workflow {workflow.id} missed {len(missed)} deadline(s)")
                updated.append(workflow)
        return updated

    # Queries

    def get_workflow(self, workflow_id: str) -> Optional[ComplianceWorkflow]:
        data = self.storage.load(self.workflows_table, workflow_id)
        return ComplianceWorkflow.from_dict(data) if data else None

    def list_workflows(self, tenant_id: Optional[str] = None) -> List[ComplianceWorkflow]:
        filters = {'tenant_id': tenant_id} if tenant_id else {}
        workflows = [ComplianceWorkflow.from_dict(data) for data in self.storage.find(self.workflows_table, filters)]
        return sorted(workflows, key=lambda w: w.created_at)

    def get_workflow_by_onboarding_id(self, onboarding_workflow_id: str) -> Optional[ComplianceWorkflow]:
        """Most recent compliance workflow created for an onboarding workflow"""
        workflows = [ComplianceWorkflow.from_dict(data) for data in
                     self.storage.find(self.workflows_table, {'workflow_id': onboarding_workflow_id})]
        if not workflows:
            return None
        return max(workflows, key=lambda w: w.created_at)

    def get_workflows_by_client(self, client_id: str, tenant_id: Optional[str] = None) -> List[ComplianceWorkflow]:
        filters = {'client_id': client_id}
        if tenant_id:
            filters['tenant_id'] = tenant_id
        return [ComplianceWorkflow.from_dict(data) for data in self.storage.find(self.workflows_table, filters)]

    def get_workflows_by_reviewer(self, reviewer_id: str) -> List[ComplianceWorkflow]:
        return [workflow for workflow in self.list_workflows() if reviewer_id in workflow.reviewers]

    def get_compliance_metrics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        workflows = self.list_workflows(tenant_id=tenant_id)
        total = len(workflows)

        completed = [w for w in workflows if w.completed_at]
        approved = [w for w in workflows if w.status in (ComplianceWorkflowStatus.APPROVED,
                                                          ComplianceWorkflowStatus.CONDITIONALLY_APPROVED)]
        rejected = [w for w in workflows if w.status == ComplianceWorkflowStatus.REJECTED]
        pending = [w for w in workflows if w.status in (ComplianceWorkflowStatus.PENDING,
                                                         ComplianceWorkflowStatus.IN_PROGRESS,
                                                         ComplianceWorkflowStatus.AWAITING_INFORMATION)]
        escalated = [w for w in workflows if w.escalations]

        deadlines = [d for w in workflows for d in w.deadlines]
        missed = [d for d in deadlines if d.status == DeadlineStatus.MISSED]

        review_hours = [(w.completed_at - w.created_at).total_seconds() / 3600 for w in completed]

        return {
            'total_workflows': total,
            'approved_workflows': len(approved),
            'rejected_workflows': len(rejected),
            'pending_workflows': len(pending),
            'completed_workflows': len(completed),
            'approval_rate': (len(approved) / len(completed) * 100) if completed else 0.0,
            'escalation_rate': (len(escalated) / total * 100) if total else 0.0,
            'deadline_miss_rate': (len(missed) / len(deadlines) * 100) if deadlines else 0.0,
            'average_review_hours': (sum(review_hours) / len(review_hours)) if review_hours else 0.0,
            'reviewer_utilization': [
                {
                    'reviewer_id': reviewer.id,
                    'name': reviewer.name,
                    'utilization': (reviewer.current_reviews / reviewer.max_capacity * 100)
                    if reviewer.max_capacity else 0.0
                }
                for reviewer in self.list_reviewers()
            ]
        }

    def _require_workflow(self, workflow_id: str) -> ComplianceWorkflow:
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            raise ValueError("Workflow not found")
        return workflow

    def _save(self, workflow: ComplianceWorkflow) -> None:
        self.storage.save(self.workflows_table, workflow.id, workflow.to_dict())

    def _publish_all(self, workflow_id: str, pending_events: PendingEvents) -> None:
        for event_type, data in pending_events:
            self.publish_event(event_type, 'compliance_workflow', workflow_id, data)
