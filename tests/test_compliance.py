"""
Test suite for the compliance approval engine

Tests step construction per workflow type, reviewer selection and workload,
decision aggregation, escalation, deadlines and metrics.
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

from client_onboarding.storage import InMemoryStorage
from client_onboarding.audit import AuditTrail, AuditEventType
from client_onboarding.events import EventDispatcher, DomainEvent
from client_onboarding.compliance_approval import (
    ComplianceApprovalEngine, ComplianceWorkflowType, ComplianceWorkflowStatus, CompliancePriority,
    ApprovalStepStatus, ReviewerRole, ReviewerRequirement, ComplianceReviewer, DecisionType,
    CriteriaStatus, DeadlineStatus, RiskLevel, ComplianceMetadata,
    build_approval_steps, determine_priority, assess_initial_risk, calculate_decision_confidence,
    CriteriaEvaluation, CriteriaResult
)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_manager(storage):
    """Create audit manager for testing"""
    return AuditTrail(storage)


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def compliance_engine(storage, audit_manager, dispatcher):
    """Compliance engine seeded with the default reviewer pool"""
    return ComplianceApprovalEngine(storage, audit_manager, dispatcher)


@pytest.fixture
def onboarding_review(compliance_engine):
    return compliance_engine.create_compliance_workflow("client-1", "tenant-1", "wf-1")


def step_named(workflow, name):
    return next(step for step in workflow.approval_steps if step.name == name)


def decide_all(engine, workflow, decision=DecisionType.APPROVE):
    """Submit the same decision on every step in order, as the assigned reviewer"""
    for step in sorted(workflow.approval_steps, key=lambda s: s.order):
        for reviewer_id in step.assigned_reviewers:
            engine.submit_decision(workflow.id, step.id, reviewer_id, decision, "reviewed")
    return engine.get_workflow(workflow.id)


class TestWorkflowConstruction:
    """Steps, priority and risk"""

    def test_onboarding_steps(self):
        """Test client onboarding gets document, risk and final steps"""
        steps = build_approval_steps(ComplianceWorkflowType.CLIENT_ONBOARDING, "LOW")

        assert [s.name for s in steps] == ["Document Review", "Risk Assessment Review", "Final Approval"]
        assert steps[-1].dependencies == ["Document Review", "Risk Assessment Review"]
        assert steps[-1].required_reviewers[0].role == ReviewerRole.SENIOR_COMPLIANCE_OFFICER

    def test_high_risk_final_approval_needs_manager(self):
        """Test elevated risk routes final approval to a compliance manager"""
        steps = build_approval_steps(ComplianceWorkflowType.HIGH_RISK_CLIENT, "HIGH")

        assert [s.name for s in steps] == ["Enhanced Due Diligence", "Senior Management Approval", "Final Approval"]
        assert steps[-1].required_reviewers[0].role == ReviewerRole.COMPLIANCE_MANAGER

    def test_other_types_only_have_final_approval(self):
        """Test workflow types without specific steps still get Final Approval"""
        steps = build_approval_steps(ComplianceWorkflowType.PERIODIC_REVIEW, None)
        assert [s.name for s in steps] == ["Final Approval"]
        assert steps[0].dependencies == []

    def test_priority(self):
        """Test priority follows risk first, then workflow type"""
        assert determine_priority(ComplianceWorkflowType.CLIENT_ONBOARDING, "CRITICAL") == CompliancePriority.CRITICAL
        assert determine_priority(ComplianceWorkflowType.CLIENT_ONBOARDING, "HIGH") == CompliancePriority.HIGH
        assert determine_priority(ComplianceWorkflowType.REGULATORY_CHANGE, "LOW") == CompliancePriority.URGENT
        assert determine_priority(ComplianceWorkflowType.CLIENT_ONBOARDING, "LOW") == CompliancePriority.MEDIUM

    def test_initial_risk(self):
        """Test jurisdiction and entity factors add up"""
        assessment = assess_initial_risk(ComplianceMetadata(account_type="CORPORATE", jurisdiction="AF"))

        assert assessment.score == 40
        assert assessment.overall_risk == RiskLevel.MEDIUM
        assert {f.category for f in assessment.risk_factors} == {"Geographic", "Account Type"}

    def test_decision_confidence(self):
        """Test confidence is the clamped mean score, 50 without evaluations"""
        assert calculate_decision_confidence([]) == 50.0
        evaluations = [CriteriaEvaluation("c1", CriteriaResult.PASS, 90),
                       CriteriaEvaluation("c2", CriteriaResult.PASS, 130)]
        assert calculate_decision_confidence(evaluations) == 100.0


class TestCreateWorkflow:
    """Creating a compliance workflow"""

    def test_reviewers_assigned_and_first_step_started(self, onboarding_review):
        """Test every step gets a reviewer and only the first step starts"""
        document_review = step_named(onboarding_review, "Document Review")

        assert onboarding_review.status == ComplianceWorkflowStatus.IN_PROGRESS
        assert document_review.status == ApprovalStepStatus.IN_PROGRESS
        assert document_review.assigned_reviewers == ["reviewer-003"]
        assert step_named(onboarding_review, "Risk Assessment Review").assigned_reviewers == ["reviewer-004"]
        assert step_named(onboarding_review, "Final Approval").status == ApprovalStepStatus.ASSIGNED
        assert set(onboarding_review.reviewers) == {"reviewer-001", "reviewer-003", "reviewer-004"}

    def test_metadata_and_deadline(self, onboarding_review):
        """Test defaults are filled in and the regulatory deadline is set"""
        assert onboarding_review.metadata.jurisdiction == "US"
        assert onboarding_review.metadata.risk_level == "LOW"
        assert onboarding_review.priority == CompliancePriority.MEDIUM
        deadline = onboarding_review.deadlines[0]
        assert deadline.status == DeadlineStatus.ACTIVE
        assert len(deadline.reminder_dates) == 3

    def test_reviewer_workload_increases(self, compliance_engine, onboarding_review):
        """Test assignment adds to the reviewer's current reviews"""
        assert compliance_engine.get_reviewer("reviewer-003").current_reviews == 5

    def test_workflow_type_accepted_as_string(self, compliance_engine):
        """Test the workflow type may be passed by value"""
        workflow = compliance_engine.create_compliance_workflow(
            "client-2", "tenant-1", "wf-2", "HIGH_RISK_CLIENT", {"risk_level": "HIGH"}
        )

        assert workflow.workflow_type == ComplianceWorkflowType.HIGH_RISK_CLIENT
        assert workflow.priority == CompliancePriority.HIGH
        assert step_named(workflow, "Final Approval").assigned_reviewers == ["reviewer-002"]

    def test_lookup_by_onboarding_id(self, compliance_engine, onboarding_review):
        """Test compliance workflows can be found from the onboarding workflow id"""
        assert compliance_engine.get_workflow_by_onboarding_id("wf-1").id == onboarding_review.id
        assert compliance_engine.get_workflow_by_onboarding_id("other") is None
        assert len(compliance_engine.get_workflows_by_client("client-1")) == 1
        assert compliance_engine.get_workflows_by_reviewer("reviewer-004")[0].id == onboarding_review.id

    def test_no_reviewer_available(self, storage, audit_manager, dispatcher):
        """Test a step with no eligible reviewer stays PENDING"""
        engine = ComplianceApprovalEngine(storage, audit_manager, dispatcher, seed_reviewers=False)
        workflow = engine.create_compliance_workflow("client-1", "tenant-1", "wf-1")

        assert all(step.status == ApprovalStepStatus.PENDING for step in workflow.approval_steps)
        assert workflow.reviewers == []

    def test_created_events(self, compliance_engine, dispatcher):
        """Test creation publishes the workflow, assignments and the first step start"""
        handler = Mock()
        dispatcher.subscribe_all(handler)

        compliance_engine.create_compliance_workflow("client-1", "tenant-1", "wf-1")

        types = [call[0][0].event_type for call in handler.call_args_list]
        assert types[0] == DomainEvent.COMPLIANCE_WORKFLOW_CREATED
        assert types.count(DomainEvent.REVIEWER_ASSIGNED) == 3
        assert types[-1] == DomainEvent.COMPLIANCE_STEP_STARTED


class TestReviewerSelection:
    """Reviewer pool"""

    def test_best_score_wins(self, compliance_engine):
        """Test the highest weighted score is selected among candidates"""
        now = datetime.now(timezone.utc)
        compliance_engine.register_reviewer(ComplianceReviewer(
            id="reviewer-star", created_at=now, updated_at=now, name="Star Analyst",
            role=ReviewerRole.COMPLIANCE_ANALYST, current_reviews=0, max_capacity=10,
            quality_score=99, timeliness=99
        ))

        candidates = compliance_engine.find_available_reviewers(ReviewerRequirement(ReviewerRole.COMPLIANCE_ANALYST))
        assert compliance_engine.select_best_reviewer(candidates).id == "reviewer-star"

    def test_unavailable_and_full_reviewers_skipped(self, compliance_engine):
        """Test availability and capacity filter the pool"""
        now = datetime.now(timezone.utc)
        compliance_engine.register_reviewer(ComplianceReviewer(
            id="reviewer-away", created_at=now, updated_at=now, name="Away",
            role=ReviewerRole.LEGAL_COUNSEL, availability="out_of_office"
        ))
        compliance_engine.register_reviewer(ComplianceReviewer(
            id="reviewer-full", created_at=now, updated_at=now, name="Full",
            role=ReviewerRole.LEGAL_COUNSEL, current_reviews=3, max_capacity=3
        ))

        assert compliance_engine.find_available_reviewers(ReviewerRequirement(ReviewerRole.LEGAL_COUNSEL)) == []

    def test_jurisdiction_requirement(self, compliance_engine):
        """Test jurisdiction requirements filter reviewers"""
        requirement = ReviewerRequirement(ReviewerRole.SENIOR_COMPLIANCE_OFFICER, jurisdiction="NY")
        assert [r.id for r in compliance_engine.find_available_reviewers(requirement)] == ["reviewer-001"]

        requirement = ReviewerRequirement(ReviewerRole.COMPLIANCE_MANAGER, jurisdiction="NY")
        assert compliance_engine.find_available_reviewers(requirement) == []


class TestDecisions:
    """Submitting and aggregating decisions"""

    def test_all_approvals_approve_workflow(self, compliance_engine, onboarding_review, audit_manager):
        """Test approving every step resolves the workflow as APPROVED"""
        result = decide_all(compliance_engine, onboarding_review)

        assert result.status == ComplianceWorkflowStatus.APPROVED
        assert result.approved_at is not None
        assert result.completed_at is not None
        assert result.deadlines[0].status == DeadlineStatus.MET
        assert len(audit_manager.get_events_by_type(AuditEventType.WORKFLOW_COMPLETED)) == 1

    def test_completion_event_carries_onboarding_id(self, compliance_engine, onboarding_review, dispatcher):
        """Test the completion event includes the onboarding workflow id and status"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.COMPLIANCE_WORKFLOW_COMPLETED, handler)

        decide_all(compliance_engine, onboarding_review)

        data = handler.call_args[0][0].data
        assert data["workflow_id"] == "wf-1"
        assert data["status"] == "APPROVED"

    def test_reject_beats_approve(self, compliance_engine, onboarding_review):
        """Test a single rejection rejects the workflow"""
        document_review = step_named(onboarding_review, "Document Review")
        compliance_engine.submit_decision(onboarding_review.id, document_review.id, "reviewer-003",
                                          "REJECT", "Forged utility bill")
        workflow = compliance_engine.get_workflow(onboarding_review.id)
        for name in ("Risk Assessment Review", "Final Approval"):
            step = step_named(workflow, name)
            compliance_engine.submit_decision(workflow.id, step.id, step.assigned_reviewers[0], "APPROVE")

        result = compliance_engine.get_workflow(onboarding_review.id)
        assert result.status == ComplianceWorkflowStatus.REJECTED
        assert result.rejected_at is not None

    def test_conditional_beats_approve(self, compliance_engine, onboarding_review):
        """Test a conditional approval makes the outcome conditional"""
        steps = sorted(onboarding_review.approval_steps, key=lambda s: s.order)
        compliance_engine.submit_decision(onboarding_review.id, steps[0].id, "reviewer-003", "APPROVE")
        compliance_engine.submit_decision(onboarding_review.id, steps[1].id, "reviewer-004",
                                          "CONDITIONAL_APPROVE", conditions=["Annual review"])
        decision = compliance_engine.submit_decision(onboarding_review.id, steps[2].id, "reviewer-001", "APPROVE")

        assert decision.conditions == []
        result = compliance_engine.get_workflow(onboarding_review.id)
        assert result.status == ComplianceWorkflowStatus.CONDITIONALLY_APPROVED
        assert result.decisions[1].conditions == ["Annual review"]

    def test_only_information_requests_await_information(self, compliance_engine, onboarding_review):
        """Test a workflow with only information requests waits instead of resolving"""
        result = decide_all(compliance_engine, onboarding_review, DecisionType.REQUEST_MORE_INFO)

        assert result.status == ComplianceWorkflowStatus.AWAITING_INFORMATION
        assert result.completed_at is None

    def test_step_completion_starts_dependents(self, compliance_engine, onboarding_review):
        """Test completing a step starts the steps that depended on it"""
        document_review = step_named(onboarding_review, "Document Review")
        compliance_engine.submit_decision(onboarding_review.id, document_review.id, "reviewer-003", "APPROVE")

        workflow = compliance_engine.get_workflow(onboarding_review.id)
        assert step_named(workflow, "Document Review").status == ApprovalStepStatus.COMPLETED
        assert step_named(workflow, "Risk Assessment Review").status == ApprovalStepStatus.IN_PROGRESS
        assert step_named(workflow, "Final Approval").status == ApprovalStepStatus.ASSIGNED

    def test_criteria_evaluations_recorded(self, compliance_engine, onboarding_review):
        """Test evaluations update criteria and drive decision confidence"""
        step = step_named(onboarding_review, "Document Review")
        completeness, authenticity = step.criteria

        decision = compliance_engine.submit_decision(
            onboarding_review.id, step.id, "reviewer-003", "APPROVE", "ok",
            criteria_evaluations=[
                {"criteria_id": completeness.id, "result": "PASS", "score": 100},
                {"criteria_id": authenticity.id, "result": "FAIL", "score": 60},
            ]
        )

        assert decision.confidence_level == 80.0
        criteria = step_named(compliance_engine.get_workflow(onboarding_review.id), "Document Review").criteria
        assert criteria[0].status == CriteriaStatus.PASSED
        assert criteria[1].status == CriteriaStatus.FAILED
        assert criteria[1].evaluated_by == "reviewer-003"

    def test_decision_releases_workload(self, compliance_engine, onboarding_review):
        """Test a decision frees the reviewer's slot and counts as completed"""
        step = step_named(onboarding_review, "Document Review")
        compliance_engine.submit_decision(onboarding_review.id, step.id, "reviewer-003", "APPROVE")

        reviewer = compliance_engine.get_reviewer("reviewer-003")
        assert reviewer.current_reviews == 4
        assert reviewer.reviews_completed == 1

    def test_unassigned_reviewer_rejected(self, compliance_engine, onboarding_review):
        """Test only assigned reviewers may decide a step"""
        step = step_named(onboarding_review, "Document Review")
        with pytest.raises(ValueError, match="Reviewer not assigned"):
            compliance_engine.submit_decision(onboarding_review.id, step.id, "reviewer-002", "APPROVE")

    def test_unknown_step_and_workflow(self, compliance_engine, onboarding_review):
        """Test missing workflows and steps raise"""
        with pytest.raises(ValueError, match="Step not found"):
            compliance_engine.submit_decision(onboarding_review.id, "missing", "reviewer-003", "APPROVE")
        with pytest.raises(ValueError, match="Workflow not found"):
            compliance_engine.submit_decision("missing", "missing", "reviewer-003", "APPROVE")

    def test_duplicate_decision_counts(self, compliance_engine):
        """Test a second decision from the same reviewer still counts toward completion"""
        engine = compliance_engine
        workflow = engine.create_compliance_workflow("client-1", "tenant-1", "wf-1", "PERIODIC_REVIEW")
        final = workflow.approval_steps[0]
        final.required_reviewers[0].count = 2
        engine._save(workflow)

        engine.submit_decision(workflow.id, final.id, "reviewer-001", "APPROVE")
        assert engine.get_workflow(workflow.id).status == ComplianceWorkflowStatus.IN_PROGRESS
        engine.submit_decision(workflow.id, final.id, "reviewer-001", "APPROVE")

        assert engine.get_workflow(workflow.id).status == ComplianceWorkflowStatus.APPROVED


class TestEscalation:
    """Escalations and deadlines"""

    def test_escalate_decision(self, compliance_engine, onboarding_review, dispatcher):
        """Test an ESCALATE decision escalates the step to a manager"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.COMPLIANCE_WORKFLOW_ESCALATED, handler)
        step = step_named(onboarding_review, "Document Review")

        compliance_engine.submit_decision(onboarding_review.id, step.id, "reviewer-003", "ESCALATE",
                                          "Unclear source of funds")

        workflow = compliance_engine.get_workflow(onboarding_review.id)
        assert workflow.status == ComplianceWorkflowStatus.ESCALATED
        assert step_named(workflow, "Document Review").status == ApprovalStepStatus.ESCALATED
        assert workflow.escalations[0].escalated_to == "reviewer-002"
        assert workflow.escalations[0].reason == "Unclear source of funds"
        handler.assert_called_once()

    def test_manager_decides_escalated_step(self, compliance_engine, onboarding_review):
        """Test the manager an escalation goes to can complete the step"""
        step = step_named(onboarding_review, "Document Review")
        workload = compliance_engine.get_reviewer("reviewer-002").current_reviews

        compliance_engine.submit_decision(onboarding_review.id, step.id, "reviewer-003", "ESCALATE",
                                          "Unclear source of funds")
        workflow = compliance_engine.get_workflow(onboarding_review.id)
        manager_id = workflow.escalations[0].escalated_to
        assert manager_id in step_named(workflow, "Document Review").assigned_reviewers
        assert compliance_engine.get_reviewer(manager_id).current_reviews == workload + 1

        compliance_engine.submit_decision(onboarding_review.id, step.id, manager_id, "APPROVE", "Funds explained")

        workflow = compliance_engine.get_workflow(onboarding_review.id)
        assert step_named(workflow, "Document Review").status == ApprovalStepStatus.COMPLETED
        assert workflow.status == ComplianceWorkflowStatus.IN_PROGRESS
        assert compliance_engine.get_reviewer(manager_id).current_reviews == workload

    def test_escalate_step_directly(self, compliance_engine, onboarding_review):
        """Test steps can be escalated outside a decision"""
        step = step_named(onboarding_review, "Risk Assessment Review")
        workflow = compliance_engine.escalate_step(onboarding_review.id, step.id, "SLA breach", "ops")

        assert workflow.escalations[0].escalated_by == "ops"

    def test_missed_deadlines(self, compliance_engine, onboarding_review):
        """Test deadlines past due on unresolved workflows are marked missed"""
        later = datetime.now(timezone.utc) + timedelta(days=60)

        updated = compliance_engine.check_deadlines(now=later)

        assert [w.id for w in updated] == [onboarding_review.id]
        assert compliance_engine.get_workflow(onboarding_review.id).deadlines[0].status == DeadlineStatus.MISSED
        assert compliance_engine.check_deadlines(now=later) == []

    def test_resolved_workflows_skip_deadline_check(self, compliance_engine, onboarding_review):
        """Test resolved workflows are not touched by the deadline sweep"""
        decide_all(compliance_engine, onboarding_review)
        later = datetime.now(timezone.utc) + timedelta(days=60)
        assert compliance_engine.check_deadlines(now=later) == []


class TestComplianceMetrics:
    """Reporting"""

    def test_metrics(self, compliance_engine):
        """Test approval, pending and escalation figures"""
        approved = compliance_engine.create_compliance_workflow("client-1", "tenant-1", "wf-1")
        decide_all(compliance_engine, approved)
        escalated = compliance_engine.create_compliance_workflow("client-2", "tenant-1", "wf-2")
        step = step_named(escalated, "Document Review")
        compliance_engine.escalate_step(escalated.id, step.id, "needs manager")
        compliance_engine.create_compliance_workflow("client-3", "tenant-1", "wf-3")

        metrics = compliance_engine.get_compliance_metrics("tenant-1")

        assert metrics["total_workflows"] == 3
        assert metrics["approved_workflows"] == 1
        assert metrics["pending_workflows"] == 1
        assert metrics["approval_rate"] == 100.0
        assert metrics["escalation_rate"] == pytest.approx(100 / 3)
        assert len(metrics["reviewer_utilization"]) == 4
