"""
Test suite for identity verification

Tests the rule-based verification provider and verification sessions:
document, biometric and knowledge-based methods, retries, expiry and metrics.
"""

import pytest
from datetime import timedelta
from unittest.mock import Mock

from client_onboarding.storage import InMemoryStorage
from client_onboarding.audit import AuditTrail, AuditEventType
from client_onboarding.events import EventDispatcher, DomainEvent
from client_onboarding.verification import (
    RuleBasedVerificationProvider, IdentityDocumentType, BiometricType, VerificationIssue
)
from client_onboarding.identity_verification import (
    IdentityVerificationEngine, VerificationSessionType, VerificationMethod, SessionStatus,
    MethodStatus, summarize_questions
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
def identity_engine(storage, audit_manager, dispatcher):
    """Create identity verification engine for testing"""
    return IdentityVerificationEngine(storage, audit_manager, dispatcher)


@pytest.fixture
def full_session(identity_engine):
    return identity_engine.create_verification_session("client-1", "tenant-1", "wf-1")


def answer_all(engine, session, correct=True, seconds=120):
    """Start KBA and answer every question"""
    session = engine.start_knowledge_based_auth(session.id)
    kba = session.knowledge_based_auth
    answers = {
        q.id: q.expected_answer if correct else "None of the above"
        for q in kba.questions
    }
    return engine.submit_kba_answers(session.id, kba.id, answers, time_taken_seconds=seconds)


class TestRuleBasedProvider:
    """Deterministic default provider"""

    def test_passport_needs_only_front(self):
        """Test one-sided documents verify from the front image"""
        result = RuleBasedVerificationProvider().verify_document(IdentityDocumentType.PASSPORT, "front.jpg")

        assert result.verified
        assert result.confidence == 92.0
        assert result.extracted_data["document_type"] == "PASSPORT"

    def test_two_sided_document_without_back(self):
        """Test a driver's license without its back image fails"""
        result = RuleBasedVerificationProvider().verify_document(IdentityDocumentType.DRIVERS_LICENSE, "front.jpg")

        assert not result.verified
        assert VerificationIssue.POOR_IMAGE_QUALITY in result.issues

    def test_same_input_same_document_number(self):
        """Test extraction is deterministic"""
        provider = RuleBasedVerificationProvider()
        first = provider.verify_document(IdentityDocumentType.PASSPORT, "front.jpg")
        second = provider.verify_document(IdentityDocumentType.PASSPORT, "front.jpg")
        assert first.extracted_data["document_number"] == second.extracted_data["document_number"]

    def test_missing_biometric_capture(self):
        """Test an empty capture fails liveness and matching"""
        result = RuleBasedVerificationProvider().verify_biometric(BiometricType.FACE, "")

        assert not result.verified
        assert VerificationIssue.LIVENESS_CHECK_FAILED in result.issues

    def test_kba_questions(self):
        """Test the requested number of questions is generated"""
        questions = RuleBasedVerificationProvider().generate_kba_questions("client-1", 5)

        assert len(questions) == 5
        assert len({q.id for q in questions}) == 5
        assert all(q.expected_answer in q.options for q in questions)

    def test_document_authenticity_by_size(self):
        """Test tiny files score below the review threshold"""
        provider = RuleBasedVerificationProvider()
        assert provider.score_document_authenticity("statement.pdf", 2048) == 90.0
        assert provider.score_document_authenticity("statement.pdf", 10) == 70.0


class TestSessionCreation:
    """Creating sessions"""

    def test_full_session_has_all_methods(self, full_session, audit_manager):
        """Test a full verification session requires all three methods"""
        assert full_session.status == SessionStatus.PENDING
        assert full_session.methods == [VerificationMethod.DOCUMENT, VerificationMethod.BIOMETRIC,
                                        VerificationMethod.KBA]
        assert full_session.document_verification is not None
        assert full_session.knowledge_based_auth is not None
        assert full_session.expires_at > full_session.created_at

        events = audit_manager.get_events_for_entity("verification_session", full_session.id)
        assert events[0].event_type == AuditEventType.VERIFICATION_SESSION_CREATED

    def test_session_type_by_value(self, identity_engine):
        """Test session types may be passed by value and only create their methods"""
        session = identity_engine.create_verification_session("client-1", "tenant-1", "wf-1", "DOCUMENT_ONLY")

        assert session.session_type == VerificationSessionType.DOCUMENT_ONLY
        assert session.biometric_verification is None
        assert session.knowledge_based_auth is None

    def test_reverification_methods(self, identity_engine):
        """Test re-verification uses biometric and KBA"""
        session = identity_engine.create_verification_session(
            "client-1", "tenant-1", "wf-1", VerificationSessionType.RE_VERIFICATION
        )
        assert session.methods == [VerificationMethod.BIOMETRIC, VerificationMethod.KBA]


class TestVerificationMethods:
    """Running individual methods"""

    def test_document_verification(self, identity_engine, full_session):
        """Test a passport verifies and leaves the session in progress"""
        session = identity_engine.start_document_verification(full_session.id, "PASSPORT", "front.jpg")

        assert session.status == SessionStatus.IN_PROGRESS
        assert session.document_verification.status == MethodStatus.COMPLETED
        assert session.document_verification.attempts == 1
        assert session.results[0].method == VerificationMethod.DOCUMENT

    def test_failed_document_can_be_retried(self, identity_engine, full_session):
        """Test a failed document attempt can be repeated until it passes"""
        identity_engine.start_document_verification(full_session.id, "DRIVERS_LICENSE", "front.jpg")
        session = identity_engine.start_document_verification(full_session.id, "DRIVERS_LICENSE",
                                                              "front.jpg", "back.jpg")

        assert session.document_verification.status == MethodStatus.COMPLETED
        assert session.document_verification.attempts == 2
        assert len([r for r in session.results if r.method == VerificationMethod.DOCUMENT]) == 1

    def test_attempt_limit(self, identity_engine, full_session):
        """Test attempts stop at the configured maximum"""
        for _ in range(3):
            identity_engine.start_document_verification(full_session.id, "NATIONAL_ID", "front.jpg")

        with pytest.raises(ValueError, match="Maximum verification attempts"):
            identity_engine.start_document_verification(full_session.id, "NATIONAL_ID", "front.jpg", "back.jpg")

    def test_completed_method_cannot_rerun(self, identity_engine, full_session):
        """Test a verified method is closed"""
        identity_engine.start_biometric_verification(full_session.id, "FACE", "selfie.jpg")
        with pytest.raises(ValueError, match="already completed"):
            identity_engine.start_biometric_verification(full_session.id, "FACE", "selfie.jpg")

    def test_method_not_in_session(self, identity_engine):
        """Test methods outside the session type are refused"""
        session = identity_engine.create_verification_session("client-1", "tenant-1", "wf-1", "KBA_ONLY")
        with pytest.raises(ValueError, match="not initialized"):
            identity_engine.start_biometric_verification(session.id, "FACE", "selfie.jpg")

    def test_kba_questions_hide_answers(self, identity_engine, full_session):
        """Test the client-facing question summary omits expected answers"""
        session = identity_engine.start_knowledge_based_auth(full_session.id)
        summary = summarize_questions(session.knowledge_based_auth.questions)

        assert len(summary) == 5
        assert all("expected_answer" not in q for q in summary)

    def test_kba_scoring(self, identity_engine, full_session):
        """Test correct answers pass and a slow completion carries no indicators"""
        session = answer_all(identity_engine, full_session)
        kba = session.knowledge_based_auth

        assert kba.score == 100.0
        assert kba.passed
        assert kba.risk_indicators == []

    def test_kba_fast_completion_flagged(self, identity_engine, full_session):
        """Test suspiciously fast answers are recorded as risk indicators"""
        session = answer_all(identity_engine, full_session, seconds=10)
        assert session.knowledge_based_auth.risk_indicators == [
            "unusually_fast_completion", "perfect_score_fast_completion"
        ]

    def test_kba_wrong_answers_fail(self, identity_engine, full_session):
        """Test wrong answers fail the KBA method"""
        session = answer_all(identity_engine, full_session, correct=False)

        assert not session.knowledge_based_auth.passed
        assert session.knowledge_based_auth.status == MethodStatus.FAILED

    def test_kba_unknown_id(self, identity_engine, full_session):
        """Test answers for another KBA record are rejected"""
        identity_engine.start_knowledge_based_auth(full_session.id)
        with pytest.raises(ValueError, match="KBA verification not found"):
            identity_engine.submit_kba_answers(full_session.id, "other", {})

    def test_unknown_session(self, identity_engine):
        """Test missing sessions raise"""
        with pytest.raises(ValueError, match="not found"):
            identity_engine.start_document_verification("missing", "PASSPORT", "front.jpg")


class TestSessionCompletion:
    """Finishing sessions"""

    def test_all_methods_verified(self, identity_engine, full_session, dispatcher):
        """Test a session completes once every method has verified"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.IDENTITY_SESSION_COMPLETED, handler)

        identity_engine.start_document_verification(full_session.id, "PASSPORT", "front.jpg")
        identity_engine.start_biometric_verification(full_session.id, "FACE", "selfie.jpg")
        session = answer_all(identity_engine, full_session)

        assert session.status == SessionStatus.COMPLETED
        assert session.overall_confidence == pytest.approx((92.0 + 90.0 + 100.0) / 3)
        assert session.completed_at is not None
        handler.assert_called_once()
        assert handler.call_args[0][0].data["workflow_id"] == "wf-1"

    def test_failed_method_fails_session(self, identity_engine, full_session):
        """Test a session with a failed method ends FAILED with risk factors"""
        identity_engine.start_document_verification(full_session.id, "PASSPORT", "front.jpg")
        identity_engine.start_biometric_verification(full_session.id, "FACE", "")
        session = answer_all(identity_engine, full_session)

        assert session.status == SessionStatus.FAILED
        assert "liveness_check_failed" in session.risk_factors
        assert "biometric_match_failed" in session.risk_factors

    def test_finished_session_is_closed(self, identity_engine):
        """Test no method can run once the session has finished"""
        session = identity_engine.create_verification_session("client-1", "tenant-1", "wf-1", "BIOMETRIC_ONLY")
        identity_engine.start_biometric_verification(session.id, "FACE", "selfie.jpg")

        with pytest.raises(ValueError, match="completed"):
            identity_engine.start_biometric_verification(session.id, "FACE", "selfie.jpg")

    def test_expired_session(self, identity_engine):
        """Test a session past its timeout expires on next use"""
        identity_engine.session_timeout = timedelta(seconds=-1)
        session = identity_engine.create_verification_session("client-1", "tenant-1", "wf-1")

        with pytest.raises(ValueError, match="expired"):
            identity_engine.start_document_verification(session.id, "PASSPORT", "front.jpg")
        assert identity_engine.get_session(session.id).status == SessionStatus.EXPIRED


class TestVerificationQueries:
    """Lookups and metrics"""

    def test_sessions_by_workflow_and_client(self, identity_engine):
        """Test sessions are grouped by workflow and client"""
        first = identity_engine.create_verification_session("client-1", "tenant-1", "wf-1")
        identity_engine.create_verification_session("client-1", "tenant-1", "wf-2")

        assert [s.id for s in identity_engine.get_sessions_by_workflow("wf-1")] == [first.id]
        assert len(identity_engine.get_sessions_by_client("client-1")) == 2

    def test_metrics(self, identity_engine):
        """Test success rates per session and per method"""
        passed = identity_engine.create_verification_session("client-1", "tenant-1", "wf-1", "BIOMETRIC_ONLY")
        identity_engine.start_biometric_verification(passed.id, "FACE", "selfie.jpg")
        failed = identity_engine.create_verification_session("client-2", "tenant-1", "wf-2", "BIOMETRIC_ONLY")
        identity_engine.start_biometric_verification(failed.id, "FACE", "")

        metrics = identity_engine.get_verification_metrics("tenant-1")

        assert metrics["total_sessions"] == 2
        assert metrics["completed_sessions"] == 1
        assert metrics["failed_sessions"] == 1
        assert metrics["success_rate"] == 50.0
        assert metrics["method_success_rates"]["BIOMETRIC"] == 50.0
