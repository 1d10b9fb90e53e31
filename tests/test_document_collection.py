"""
Test suite for document collection

Tests requirement catalogues, submissions with their parallel checks,
replacement of earlier uploads, manual review and completion tracking.
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

from client_onboarding.storage import InMemoryStorage
from client_onboarding.audit import AuditTrail, AuditEventType
from client_onboarding.events import EventDispatcher, DomainEvent
from client_onboarding.document_collection import (
    DocumentCollectionEngine, DocumentCategory, RequirementStatus, SubmissionStatus,
    CheckType, CheckStatus, VerificationCheck, aggregate_status, file_format_of, standard_requirements
)


GOOD_SIZE = 200 * 1024


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
def document_engine(storage, audit_manager, dispatcher):
    """Create document collection engine for testing"""
    engine = DocumentCollectionEngine(storage, audit_manager, dispatcher)
    yield engine
    engine.shutdown()


@pytest.fixture
def requirements(document_engine):
    return {r.name: r for r in document_engine.initialize_requirements("wf-1", "individual")}


def submit(engine, requirement, file_name="document.pdf", file_size=GOOD_SIZE, metadata=None):
    return engine.submit_document("wf-1", "client-1", "tenant-1", requirement.id, file_name, file_size, metadata)


def check_of(submission, check_type):
    return next(check for check in submission.checks if check.check_type == check_type)


class TestRequirements:
    """Requirement catalogues"""

    def test_individual_requirements(self, requirements):
        """Test individuals get the standard seven requirements"""
        assert len(requirements) == 7
        assert requirements["Driver's License"].category == DocumentCategory.IDENTITY
        assert requirements["Tax Return"].accepted_formats == ["pdf"]
        assert not requirements["Passport"].required

    def test_entity_requirements(self, document_engine):
        """Test entities also need formation and ownership documents"""
        names = [r.name for r in document_engine.initialize_requirements("wf-2", "CORPORATE")]

        assert "Articles of Incorporation" in names
        assert "Beneficial Ownership Form" in names
        assert len(standard_requirements("llc")) == 9

    def test_initialize_is_idempotent(self, document_engine, requirements):
        """Test initializing twice returns the existing requirements"""
        again = document_engine.initialize_requirements("wf-1", "individual")
        assert {r.id for r in again} == {r.id for r in requirements.values()}

    def test_request_additional_document(self, document_engine, dispatcher, audit_manager):
        """Test compliance can request an extra document"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.ADDITIONAL_DOCUMENT_REQUESTED, handler)

        requirement = document_engine.request_additional_document(
            "wf-1", "Source of Funds Letter", "Letter explaining source of funds",
            "FINANCIAL", accepted_formats=["PDF"], requested_by="officer-1"
        )

        assert requirement.category == DocumentCategory.FINANCIAL
        assert requirement.accepted_formats == ["pdf"]
        assert document_engine.get_requirement(requirement.id).requested_by == "officer-1"
        handler.assert_called_once()
        assert audit_manager.get_events_by_type(AuditEventType.DOCUMENT_REQUESTED)[0].user_id == "officer-1"


class TestHelpers:
    """Module helpers"""

    def test_file_format(self):
        """Test file extensions are normalised"""
        assert file_format_of("Scan.JPG") == "jpg"
        assert file_format_of("archive.tar.gz") == "gz"
        assert file_format_of("no_extension") == ""

    def test_aggregate_status(self):
        """Test failure beats review beats pass"""
        passed = VerificationCheck(CheckType.FORMAT, CheckStatus.PASSED)
        review = VerificationCheck(CheckType.AUTHENTICITY, CheckStatus.REQUIRES_REVIEW)
        failed = VerificationCheck(CheckType.EXPIRATION, CheckStatus.FAILED)

        assert aggregate_status([passed, review, failed]) == SubmissionStatus.REJECTED
        assert aggregate_status([passed, review]) == SubmissionStatus.UNDER_REVIEW
        assert aggregate_status([passed, VerificationCheck(CheckType.CONTENT, CheckStatus.SKIPPED)]) == \
            SubmissionStatus.VERIFIED


class TestSubmissions:
    """Submitting and verifying documents"""

    def test_valid_document_verified(self, document_engine, requirements, audit_manager):
        """Test a well-formed document passes every check"""
        submission = submit(document_engine, requirements["Bank Statement"])

        assert submission.status == SubmissionStatus.VERIFIED
        assert submission.verified_at is not None
        assert len(submission.checks) == 4
        assert check_of(submission, CheckType.AUTHENTICITY).status == CheckStatus.SKIPPED
        assert document_engine.get_requirement(requirements["Bank Statement"].id).status == RequirementStatus.VERIFIED
        assert audit_manager.get_events_by_type(AuditEventType.DOCUMENT_SUBMITTED)[0].user_id == "client-1"

    def test_events_published_after_checks(self, document_engine, requirements, dispatcher):
        """Test submission and outcome events are both published"""
        handler = Mock()
        dispatcher.subscribe_all(handler)

        submit(document_engine, requirements["Bank Statement"])

        types = [call[0][0].event_type for call in handler.call_args_list]
        assert types == [DomainEvent.DOCUMENT_SUBMITTED, DomainEvent.DOCUMENT_VERIFIED]
        assert handler.call_args[0][0].data["requirement_name"] == "Bank Statement"

    def test_wrong_format_rejected(self, document_engine, requirements):
        """Test files outside the accepted formats are rejected"""
        submission = submit(document_engine, requirements["Tax Return"], file_name="return.png")

        assert submission.status == SubmissionStatus.REJECTED
        assert "INVALID_FORMAT" in submission.flags
        assert submission.rejected_at is not None

    def test_oversized_file_rejected(self, document_engine, requirements):
        """Test files above the size limit are rejected"""
        submission = submit(document_engine, requirements["Utility Bill"], file_size=6 * 1024 * 1024)
        assert "FILE_TOO_LARGE" in submission.flags

    def test_unsupported_format_skips_extraction(self, document_engine, requirements):
        """Test content extraction is skipped for formats it cannot read"""
        submission = submit(document_engine, requirements["Voided Check"], file_name="check.tiff")
        assert check_of(submission, CheckType.CONTENT).status == CheckStatus.SKIPPED

    def test_low_authenticity_needs_review(self, document_engine, requirements, dispatcher):
        """Test a low authenticity score sends the document to manual review"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.DOCUMENT_UNDER_REVIEW, handler)

        submission = submit(document_engine, requirements["Driver's License"], file_size=100)

        assert submission.status == SubmissionStatus.UNDER_REVIEW
        assert "LOW_AUTHENTICITY_SCORE" in submission.flags
        assert document_engine.get_requirement(requirements["Driver's License"].id).status == \
            RequirementStatus.SUBMITTED
        handler.assert_called_once()

    def test_expired_document_rejected(self, document_engine, requirements):
        """Test an expiration date in the past rejects the document"""
        expired = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        submission = submit(document_engine, requirements["Passport"], file_name="passport.jpg",
                            metadata={"expiration_date": expired})

        assert submission.status == SubmissionStatus.REJECTED
        assert "DOCUMENT_EXPIRED" in submission.flags

    def test_expiring_soon_flagged(self, document_engine, requirements):
        """Test documents close to expiry pass with a warning flag"""
        soon = (datetime.now(timezone.utc) + timedelta(days=10)).date().isoformat()
        submission = submit(document_engine, requirements["Passport"], file_name="passport.jpg",
                            metadata={"expiration_date": soon})

        assert submission.status == SubmissionStatus.VERIFIED
        assert "EXPIRES_SOON" in submission.flags
        assert submission.expiration_date.tzinfo is not None

    def test_expiration_from_extraction(self, document_engine, requirements):
        """Test the extracted expiration date is used when none was supplied"""
        submission = submit(document_engine, requirements["Passport"], file_name="passport.jpg")

        assert check_of(submission, CheckType.EXPIRATION).status == CheckStatus.PASSED
        assert submission.expiration_date > datetime.now(timezone.utc)

    def test_resubmission_replaces_previous(self, document_engine, requirements):
        """Test a new upload for the same requirement replaces the earlier one"""
        first = submit(document_engine, requirements["Bank Statement"])
        second = submit(document_engine, requirements["Bank Statement"])

        replaced = document_engine.get_submission(first.id)
        assert replaced.status == SubmissionStatus.REPLACED
        assert replaced.replaced_by == second.id
        assert [s.id for s in document_engine.get_submissions("wf-1")] == [second.id]
        assert len(document_engine.get_submissions("wf-1", include_replaced=True)) == 2

    def test_malformed_expiration_date_needs_review(self, document_engine, requirements):
        """Test an unreadable expiration date sends the resubmission to manual review"""
        first = submit(document_engine, requirements["Passport"], file_name="passport.jpg")
        second = submit(document_engine, requirements["Passport"], file_name="passport.jpg",
                        metadata={"expiration_date": "not-a-date"})

        check = check_of(second, CheckType.EXPIRATION)
        assert check.status == CheckStatus.REQUIRES_REVIEW
        assert "INVALID_EXPIRATION_DATE" in second.flags
        assert document_engine.get_submission(second.id).status == SubmissionStatus.UNDER_REVIEW
        assert document_engine.get_submission(first.id).replaced_by == second.id

    def test_failed_checks_keep_previous_submission(self, document_engine, requirements):
        """Test an error while checking a resubmission leaves the earlier upload in place"""
        first = submit(document_engine, requirements["Passport"], file_name="passport.jpg")
        assert first.status == SubmissionStatus.VERIFIED

        document_engine.provider = Mock()
        document_engine.provider.extract_document_content.side_effect = RuntimeError("extraction service down")
        document_engine.provider.score_document_authenticity.return_value = 99.0

        with pytest.raises(RuntimeError, match="extraction service down"):
            submit(document_engine, requirements["Passport"], file_name="passport.jpg")

        submissions = document_engine.get_submissions("wf-1", include_replaced=True)
        assert [(s.id, s.status) for s in submissions] == [(first.id, SubmissionStatus.VERIFIED)]

    def test_unknown_requirement(self, document_engine, requirements):
        """Test submissions must reference a requirement of the same workflow"""
        with pytest.raises(ValueError, match="requirement not found"):
            document_engine.submit_document("wf-1", "client-1", "tenant-1", "missing", "a.pdf", GOOD_SIZE)

        other = document_engine.initialize_requirements("wf-2")[0]
        with pytest.raises(ValueError, match="requirement not found"):
            document_engine.submit_document("wf-1", "client-1", "tenant-1", other.id, "a.pdf", GOOD_SIZE)


class TestManualReview:
    """Reviewer decisions"""

    def test_approve_review(self, document_engine, requirements):
        """Test approving a document under review verifies it"""
        submission = submit(document_engine, requirements["Driver's License"], file_size=100)

        reviewed = document_engine.review_document(submission.id, True, "officer-1", "Checked hologram")

        assert reviewed.status == SubmissionStatus.VERIFIED
        assert reviewed.reviewed_by == "officer-1"
        assert reviewed.review_notes == "Checked hologram"
        assert document_engine.get_pending_reviews() == []

    def test_reject_review(self, document_engine, requirements):
        """Test rejecting a document under review rejects its requirement"""
        submission = submit(document_engine, requirements["Driver's License"], file_size=100)

        document_engine.review_document(submission.id, False, "officer-1")

        assert document_engine.get_requirement(requirements["Driver's License"].id).status == \
            RequirementStatus.REJECTED

    def test_review_requires_under_review(self, document_engine, requirements):
        """Test only documents awaiting review can be reviewed"""
        submission = submit(document_engine, requirements["Bank Statement"])
        with pytest.raises(ValueError, match="not awaiting review"):
            document_engine.review_document(submission.id, True, "officer-1")

    def test_review_unknown_submission(self, document_engine):
        """Test reviewing a missing submission raises"""
        with pytest.raises(ValueError, match="not found"):
            document_engine.review_document("missing", True, "officer-1")

    def test_pending_reviews(self, document_engine, requirements):
        """Test the review queue lists documents under review by tenant"""
        submission = submit(document_engine, requirements["Driver's License"], file_size=100)

        assert [s.id for s in document_engine.get_pending_reviews("tenant-1")] == [submission.id]
        assert document_engine.get_pending_reviews("tenant-2") == []


class TestCompletion:
    """Completion status and metrics"""

    def test_completion_status(self, document_engine, requirements):
        """Test progress counts only required documents"""
        submit(document_engine, requirements["Bank Statement"])
        submit(document_engine, requirements["Utility Bill"], file_name="bill.exe")
        submit(document_engine, requirements["Passport"], file_name="passport.jpg")

        status = document_engine.get_completion_status("wf-1")

        assert status["total_required"] == 4
        assert status["submitted"] == 2
        assert status["verified"] == 1
        assert status["rejected"] == 1
        assert status["completion_percentage"] == 25.0
        assert set(status["missing"]) == {"Driver's License", "Voided Check"}
        assert not status["complete"]

    def test_all_required_verified_is_complete(self, document_engine, requirements):
        """Test verifying every required document completes collection"""
        for requirement in requirements.values():
            if requirement.required:
                submit(document_engine, requirement)

        assert document_engine.get_completion_status("wf-1")["complete"]

    def test_metrics(self, document_engine, requirements):
        """Test submission counts and common flags"""
        submit(document_engine, requirements["Bank Statement"])
        submit(document_engine, requirements["Tax Return"], file_name="return.png")
        submit(document_engine, requirements["Driver's License"], file_size=100)

        metrics = document_engine.get_document_metrics("tenant-1")

        assert metrics["total_submissions"] == 3
        assert metrics["verified_submissions"] == 1
        assert metrics["rejected_submissions"] == 1
        assert metrics["under_review_submissions"] == 1
        assert metrics["verification_rate"] == 50.0
        assert {"flag": "INVALID_FORMAT", "count": 1} in metrics["common_flags"]
