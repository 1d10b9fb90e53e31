"""
Test suite for the onboarding workflow state machine

Tests the transition graph, guard ordering, validators, approvals, auto
transition signals, audit records and published events.
"""

import threading
import pytest
from unittest.mock import Mock

from client_onboarding.storage import InMemoryStorage
from client_onboarding.audit import AuditTrail, AuditEventType
from client_onboarding.events import EventDispatcher, DomainEvent
from client_onboarding.state_machine import (
    OnboardingWorkflowStateMachine, WorkflowState, WorkflowEvent, TransitionRule,
    TransitionErrorCode, ValidationResult, ValidationStatus, build_default_rules
)


CLIENT_METADATA = {"client_type": "INDIVIDUAL", "account_type": "INDIVIDUAL_TAXABLE"}


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
def state_machine(storage, audit_manager, dispatcher):
    """State machine without auto-transition timers"""
    machine = OnboardingWorkflowStateMachine(storage, audit_manager, dispatcher, auto_transitions=False)
    yield machine
    machine.shutdown()


@pytest.fixture
def workflow(state_machine):
    return state_machine.create_workflow("client-1", "tenant-1", CLIENT_METADATA)


def advance(machine, workflow_id, steps):
    """Apply (event, data) pairs and assert each one succeeds"""
    for event, data in steps:
        result = machine.process_event(workflow_id, event, data, triggered_by="tester")
        assert result.success, result.errors
    return machine.get_workflow(workflow_id)


HAPPY_PATH = [
    (WorkflowEvent.START_ONBOARDING, {}),
    (WorkflowEvent.DOCUMENTS_SUBMITTED, {"document_ids": ["doc-1"]}),
    (WorkflowEvent.DOCUMENTS_VERIFIED, {}),
    (WorkflowEvent.IDENTITY_VERIFIED, {"confidence_score": 92}),
    (WorkflowEvent.KYC_COMPLETED, {"kyc_profile_id": "kyc-1"}),
    (WorkflowEvent.AML_CLEARED, {}),
    (WorkflowEvent.RISK_ASSESSED, {"risk_level": "LOW"}),
    (WorkflowEvent.SUITABILITY_APPROVED, {}),
    (WorkflowEvent.COMPLIANCE_APPROVED, {"approved_by": "officer-1"}),
    (WorkflowEvent.ACCOUNT_CREATED, {}),
    (WorkflowEvent.FUNDING_COMPLETED, {"funded_amount": "25000"}),
    (WorkflowEvent.FINAL_APPROVED, {"approved_by": "manager-1"}),
]


class TestTransitionGraph:
    """Static rule table"""

    def test_one_rule_per_state_event_pair(self):
        """Test the default graph has no duplicate keys"""
        rules = build_default_rules()
        keys = [rule.key for rule in rules]
        assert len(keys) == len(set(keys))

    def test_no_rules_leave_terminal_states(self):
        """Test terminal states have no outgoing edges"""
        terminal = {WorkflowState.COMPLETED, WorkflowState.REJECTED, WorkflowState.CANCELLED}
        assert not [rule for rule in build_default_rules() if rule.from_state in terminal]

    def test_duplicate_rule_rejected(self, state_machine):
        """Test add_rule refuses a second rule for the same key"""
        with pytest.raises(ValueError, match="Rule already defined"):
            state_machine.add_rule(TransitionRule(
                WorkflowState.INITIATED, WorkflowEvent.START_ONBOARDING, WorkflowState.CANCELLED
            ))

    def test_available_events_for_new_workflow(self, state_machine, workflow):
        """Test available events come from rules keyed to the current state"""
        events = state_machine.get_available_events(workflow.id)
        assert set(events) == {
            WorkflowEvent.START_ONBOARDING, WorkflowEvent.REJECT,
            WorkflowEvent.SUSPEND, WorkflowEvent.CANCEL
        }

    def test_available_events_unknown_workflow(self, state_machine):
        """Test looking up events for a missing workflow raises"""
        with pytest.raises(ValueError, match="not found"):
            state_machine.get_available_events("missing")

    def test_suspended_cannot_suspend_again(self, state_machine, workflow):
        """Test SUSPEND has no rule from SUSPENDED"""
        advance(state_machine, workflow.id, [(WorkflowEvent.SUSPEND, {})])
        events = state_machine.get_available_events(workflow.id)
        assert WorkflowEvent.SUSPEND not in events
        assert WorkflowEvent.RESUME_APPLICATION in events


class TestWorkflowLifecycle:
    """Creating and advancing workflows"""

    def test_create_workflow(self, state_machine, audit_manager, dispatcher):
        """Test a new workflow starts INITIATED with default metadata"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.WORKFLOW_CREATED, handler)

        workflow = state_machine.create_workflow("client-9", "tenant-1", CLIENT_METADATA)

        assert workflow.current_state == WorkflowState.INITIATED
        assert workflow.metadata["jurisdiction"] == "US"
        assert workflow.metadata["client_type"] == "INDIVIDUAL"
        assert state_machine.get_workflow(workflow.id).client_id == "client-9"
        handler.assert_called_once()
        assert handler.call_args[0][0].data["client_id"] == "client-9"

        events = audit_manager.get_events_for_entity("onboarding_workflow", workflow.id)
        assert events[0].event_type == AuditEventType.ONBOARDING_WORKFLOW_CREATED

    def test_full_happy_path(self, state_machine, workflow):
        """Test a workflow can travel from INITIATED to COMPLETED"""
        completed = advance(state_machine, workflow.id, HAPPY_PATH)

        assert completed.current_state == WorkflowState.COMPLETED
        assert completed.previous_state == WorkflowState.FINAL_APPROVAL
        assert completed.completed_at is not None
        assert len(completed.transitions) == len(HAPPY_PATH)
        assert completed.transitions[-1].approved_by == "manager-1"
        assert completed.is_terminal

    def test_event_accepted_as_string(self, state_machine, workflow):
        """Test events may be passed by value"""
        result = state_machine.process_event(workflow.id, "START_ONBOARDING")
        assert result.success
        assert result.new_state == WorkflowState.DOCUMENT_COLLECTION

    def test_state_data_accumulates(self, state_machine, workflow):
        """Test event data is merged into the workflow's state data"""
        updated = advance(state_machine, workflow.id, HAPPY_PATH[:2])
        assert updated.state_data["document_ids"] == ["doc-1"]

    def test_documents_rejected_loops_back(self, state_machine, workflow):
        """Test rejected documents return the workflow to collection"""
        updated = advance(state_machine, workflow.id, HAPPY_PATH[:2] + [(WorkflowEvent.DOCUMENTS_REJECTED, {})])
        assert updated.current_state == WorkflowState.DOCUMENT_COLLECTION

    def test_suspend_and_resume(self, state_machine, workflow):
        """Test a suspended workflow resumes at document collection"""
        updated = advance(state_machine, workflow.id, [
            (WorkflowEvent.START_ONBOARDING, {}),
            (WorkflowEvent.SUSPEND, {}),
            (WorkflowEvent.RESUME_APPLICATION, {}),
        ])
        assert updated.current_state == WorkflowState.DOCUMENT_COLLECTION

    def test_aml_flag_routes_to_compliance(self, state_machine, workflow):
        """Test an AML flag skips straight to compliance review"""
        updated = advance(state_machine, workflow.id, HAPPY_PATH[:5] + [(WorkflowEvent.AML_FLAGGED, {})])
        assert updated.current_state == WorkflowState.COMPLIANCE_REVIEW

    def test_publishes_state_transition(self, state_machine, workflow, dispatcher):
        """Test committed transitions publish a snapshot and the transition record"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.STATE_TRANSITION, handler)

        state_machine.process_event(workflow.id, WorkflowEvent.START_ONBOARDING)

        data = handler.call_args[0][0].data
        assert data["workflow"]["current_state"] == "DOCUMENT_COLLECTION"
        assert data["transition"]["from_state"] == "INITIATED"
        assert data["transition"]["event"] == "START_ONBOARDING"


class TestGuards:
    """Rejected transitions commit nothing"""

    def test_unknown_workflow(self, state_machine):
        """Test a missing workflow is reported, not raised"""
        result = state_machine.process_event("missing", WorkflowEvent.START_ONBOARDING)
        assert not result.success
        assert result.errors[0].code == TransitionErrorCode.WORKFLOW_NOT_FOUND

    def test_unknown_event_name(self, state_machine, workflow):
        """Test an unrecognised event value is an invalid transition"""
        result = state_machine.process_event(workflow.id, "TELEPORT")
        assert result.errors[0].code == TransitionErrorCode.INVALID_TRANSITION

    def test_event_not_allowed_in_state(self, state_machine, workflow, audit_manager):
        """Test an event without a rule from the current state is rejected and audited"""
        result = state_machine.process_event(workflow.id, WorkflowEvent.FINAL_APPROVED, {"approved_by": "x"})

        assert not result.success
        assert result.errors[0].code == TransitionErrorCode.INVALID_TRANSITION
        assert state_machine.get_workflow(workflow.id).current_state == WorkflowState.INITIATED
        rejected = audit_manager.get_events_by_type(AuditEventType.TRANSITION_REJECTED)
        assert rejected[0].metadata["event"] == "FINAL_APPROVED"

    def test_client_information_required(self, state_machine):
        """Test START_ONBOARDING needs client and account type"""
        workflow = state_machine.create_workflow("client-2", "tenant-1")
        result = state_machine.process_event(workflow.id, WorkflowEvent.START_ONBOARDING)

        assert result.errors[0].code == TransitionErrorCode.VALIDATION_FAILED
        assert "client_type" in result.errors[0].message

    def test_documents_required(self, state_machine, workflow):
        """Test DOCUMENTS_SUBMITTED fails without document ids"""
        advance(state_machine, workflow.id, HAPPY_PATH[:1])
        result = state_machine.process_event(workflow.id, WorkflowEvent.DOCUMENTS_SUBMITTED, {})
        assert result.errors[0].code == TransitionErrorCode.VALIDATION_FAILED

    def test_low_identity_confidence_fails(self, state_machine, workflow):
        """Test an identity score far below threshold fails validation"""
        advance(state_machine, workflow.id, HAPPY_PATH[:3])
        result = state_machine.process_event(workflow.id, WorkflowEvent.IDENTITY_VERIFIED, {"confidence_score": 50})
        assert result.errors[0].code == TransitionErrorCode.VALIDATION_FAILED

    def test_borderline_identity_confidence_warns(self, state_machine, workflow):
        """Test a score just under threshold passes with a warning"""
        advance(state_machine, workflow.id, HAPPY_PATH[:3])
        result = state_machine.process_event(workflow.id, WorkflowEvent.IDENTITY_VERIFIED, {"confidence_score": 80})

        assert result.success
        assert result.transition.validation_results[0].status == ValidationStatus.WARNING

    def test_critical_risk_condition(self, state_machine, workflow):
        """Test critical-risk clients cannot leave risk assessment"""
        advance(state_machine, workflow.id, HAPPY_PATH[:6])
        result = state_machine.process_event(workflow.id, WorkflowEvent.RISK_ASSESSED, {"risk_level": "CRITICAL"})
        assert result.errors[0].code == TransitionErrorCode.CONDITIONS_NOT_MET

    def test_approval_required(self, state_machine, workflow):
        """Test compliance approval needs an approver"""
        advance(state_machine, workflow.id, HAPPY_PATH[:8])
        result = state_machine.process_event(workflow.id, WorkflowEvent.COMPLIANCE_APPROVED, {})

        assert result.errors[0].code == TransitionErrorCode.APPROVAL_REQUIRED
        assert state_machine.get_workflow(workflow.id).current_state == WorkflowState.COMPLIANCE_REVIEW

    def test_funding_below_minimum(self, state_machine, workflow):
        """Test funding must reach the minimum initial deposit"""
        advance(state_machine, workflow.id, HAPPY_PATH[:10])
        result = state_machine.process_event(workflow.id, WorkflowEvent.FUNDING_COMPLETED, {"funded_amount": "500"})
        assert result.errors[0].code == TransitionErrorCode.VALIDATION_FAILED

    def test_terminal_state_rejects_everything(self, state_machine, workflow):
        """Test a cancelled workflow accepts no further events"""
        advance(state_machine, workflow.id, [(WorkflowEvent.CANCEL, {})])
        assert state_machine.get_available_events(workflow.id) == []
        result = state_machine.process_event(workflow.id, WorkflowEvent.RESUME_APPLICATION)
        assert result.errors[0].code == TransitionErrorCode.INVALID_TRANSITION

    def test_raising_validator_counts_as_failure(self, state_machine, workflow):
        """Test a validator exception becomes a failed validation"""
        def explode(workflow, data):
            raise RuntimeError("service down")

        state_machine.register_validator("client_information_present", explode)
        result = state_machine.process_event(workflow.id, WorkflowEvent.START_ONBOARDING)

        assert result.errors[0].code == TransitionErrorCode.VALIDATION_FAILED
        assert "service down" in result.errors[0].message

    def test_custom_validator(self, state_machine, workflow):
        """Test validators can be swapped by name"""
        state_machine.register_validator(
            "client_information_present",
            lambda wf, data: ValidationResult("", ValidationStatus.FAILED, "blocked by policy")
        )
        result = state_machine.process_event(workflow.id, WorkflowEvent.START_ONBOARDING)
        assert "blocked by policy" in result.errors[0].message


class TestAutoTransitions:
    """Auto-transition readiness signals"""

    def test_signal_published_after_timeout(self, storage, audit_manager, dispatcher):
        """Test an auto-transition rule announces readiness without committing"""
        machine = OnboardingWorkflowStateMachine(storage, audit_manager, dispatcher, auto_transitions=True)
        machine.default_timeout_ms = 10
        received = threading.Event()
        payloads = []

        def on_ready(event):
            payloads.append(event.data)
            received.set()

        dispatcher.subscribe(DomainEvent.AUTO_TRANSITION_READY, on_ready)
        workflow = machine.create_workflow("client-1", "tenant-1", CLIENT_METADATA)
        advance(machine, workflow.id, HAPPY_PATH[:3])

        assert received.wait(2.0)
        machine.shutdown()

        assert payloads[0]["state"] == "IDENTITY_VERIFICATION"
        assert "IDENTITY_VERIFIED" in payloads[0]["available_events"]
        assert machine.get_workflow(workflow.id).current_state == WorkflowState.IDENTITY_VERIFICATION


class TestQueriesAndMetrics:
    """Listing and reporting"""

    def test_list_workflows_filters(self, state_machine):
        """Test tenant, client and state filters"""
        first = state_machine.create_workflow("client-1", "tenant-1", CLIENT_METADATA)
        state_machine.create_workflow("client-2", "tenant-1", CLIENT_METADATA)
        state_machine.create_workflow("client-1", "tenant-2", CLIENT_METADATA)
        advance(state_machine, first.id, HAPPY_PATH[:1])

        assert len(state_machine.list_workflows(tenant_id="tenant-1")) == 2
        assert len(state_machine.get_workflows_by_client("client-1")) == 2
        in_collection = state_machine.list_workflows(state=WorkflowState.DOCUMENT_COLLECTION)
        assert [w.id for w in in_collection] == [first.id]

    def test_metrics(self, state_machine):
        """Test counts by state and completion rate"""
        done = state_machine.create_workflow("client-1", "tenant-1", CLIENT_METADATA)
        advance(state_machine, done.id, HAPPY_PATH)
        cancelled = state_machine.create_workflow("client-2", "tenant-1", CLIENT_METADATA)
        advance(state_machine, cancelled.id, [(WorkflowEvent.CANCEL, {})])
        state_machine.create_workflow("client-3", "tenant-1", CLIENT_METADATA)

        metrics = state_machine.get_workflow_metrics("tenant-1")

        assert metrics["total_workflows"] == 3
        assert metrics["completed_workflows"] == 1
        assert metrics["cancelled_workflows"] == 1
        assert metrics["active_workflows"] == 1
        assert metrics["completion_rate"] == pytest.approx(100 / 3)
