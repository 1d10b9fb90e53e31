"""
Document Collection Module

Tracks which documents an onboarding needs and verifies what the client
submits. Requirements are created per onboarding workflow from a standard
catalogue (individuals get identity, address, banking and tax documents;
entities additionally need formation and beneficial ownership documents) and
compliance staff can request more later.

Every submission runs four checks in parallel (format, content extraction,
authenticity, expiration). The submission status is decided only after all
of them finished: any FAILED check rejects it, any check that needs review
puts it UNDER_REVIEW, otherwise it is VERIFIED.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
from collections import Counter
import logging
import os
import uuid

from .storage import StorageInterface, StorageRecord, KeyedLocks, from_storage_value, build_dataclass
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .verification import VerificationProviderPort, RuleBasedVerificationProvider
from .config import get_config


logger = logging.getLogger("onboarding.documents")


class DocumentCategory(Enum):
    IDENTITY = "IDENTITY"
    ADDRESS = "ADDRESS"
    FINANCIAL = "FINANCIAL"
    TAX = "TAX"
    ENTITY = "ENTITY"
    BANKING = "BANKING"
    REGULATORY = "REGULATORY"
    OTHER = "OTHER"


class RequirementStatus(Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class SubmissionStatus(Enum):
    PROCESSING = "PROCESSING"
    VERIFIED = "VERIFIED"
    UNDER_REVIEW = "UNDER_REVIEW"
    REJECTED = "REJECTED"
    REPLACED = "REPLACED"


class CheckType(Enum):
    FORMAT = "FORMAT"
    CONTENT = "CONTENT"
    AUTHENTICITY = "AUTHENTICITY"
    EXPIRATION = "EXPIRATION"


class CheckStatus(Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"
    SKIPPED = "SKIPPED"


class ValidationRuleType(Enum):
    EXPIRATION = "EXPIRATION"
    AUTHENTICITY = "AUTHENTICITY"
    CONTENT = "CONTENT"


@dataclass
class ValidationRule:
    rule_type: ValidationRuleType
    description: str
    error_message: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentRequirement(StorageRecord):
    """A document an onboarding workflow needs"""
    workflow_id: str
    name: str
    description: str
    category: DocumentCategory
    required: bool = True
    accepted_formats: List[str] = field(default_factory=lambda: ["pdf", "jpg", "jpeg", "png"])
    max_file_size_mb: int = 10
    validation_rules: List[ValidationRule] = field(default_factory=list)
    status: RequirementStatus = RequirementStatus.PENDING
    requested_by: str = "system"

    def get_rule(self, rule_type: ValidationRuleType) -> Optional[ValidationRule]:
        for rule in self.validation_rules:
            if rule.rule_type == rule_type:
                return rule
        return None


@dataclass
class VerificationCheck:
    check_type: CheckType
    status: CheckStatus
    confidence: float = 0.0
    flags: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DocumentSubmission(StorageRecord):
    """One uploaded file for a requirement"""
    workflow_id: str
    client_id: str
    tenant_id: str
    requirement_id: str
    requirement_name: str
    file_name: str
    file_format: str
    file_size: int
    status: SubmissionStatus = SubmissionStatus.PROCESSING
    checks: List[VerificationCheck] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    expiration_date: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    replaced_by: Optional[str] = None


PendingEvents = List[Tuple[DomainEvent, Dict[str, Any]]]

MB = 1024 * 1024
EXTRACTABLE_FORMATS = ("pdf", "jpg", "jpeg", "png")
IMAGE_OR_PDF = ["jpg", "jpeg", "png", "pdf"]
PDF_ONLY = ["pdf"]


def _rule(rule_type: str, description: str, error_message: str, **parameters) -> Dict[str, Any]:
    return {'rule_type': rule_type, 'description': description,
            'error_message': error_message, 'parameters': parameters}


INDIVIDUAL_REQUIREMENTS = [
    {'name': "Driver's License", 'description': "Valid government-issued driver's license (front and back)",
     'category': "IDENTITY", 'required': True, 'accepted_formats': IMAGE_OR_PDF, 'max_file_size_mb': 10,
     'validation_rules': [
         _rule("EXPIRATION", "Document must not be expired", "Driver's license must not be expired"),
         _rule("AUTHENTICITY", "Security features must be present",
               "Document appears to lack required security features",
               features=["hologram", "microprint", "barcode"]),
     ]},
    {'name': "Passport", 'description': "Valid passport photo page",
     'category': "IDENTITY", 'required': False, 'accepted_formats': IMAGE_OR_PDF, 'max_file_size_mb': 10,
     'validation_rules': [
         _rule("EXPIRATION", "Passport must not be expired", "Passport must not be expired"),
     ]},
    {'name': "Utility Bill", 'description': "Utility bill dated within the last 90 days",
     'category': "ADDRESS", 'required': True, 'accepted_formats': IMAGE_OR_PDF, 'max_file_size_mb': 5,
     'validation_rules': [
         _rule("CONTENT", "Must show name and service address",
               "Utility bill must show the client's name and address", required_fields=["name", "address"]),
     ]},
    {'name': "Bank Statement", 'description': "Most recent bank statement",
     'category': "FINANCIAL", 'required': True, 'accepted_formats': IMAGE_OR_PDF, 'max_file_size_mb': 10,
     'validation_rules': []},
    {'name': "Tax Return", 'description': "Most recent federal tax return",
     'category': "TAX", 'required': False, 'accepted_formats': PDF_ONLY, 'max_file_size_mb': 20,
     'validation_rules': []},
    {'name': "Voided Check", 'description': "Voided check for the funding bank account",
     'category': "BANKING", 'required': True, 'accepted_formats': IMAGE_OR_PDF, 'max_file_size_mb': 5,
     'validation_rules': []},
    {'name': "FATCA Form", 'description': "FATCA self-certification form",
     'category': "REGULATORY", 'required': False, 'accepted_formats': PDF_ONLY, 'max_file_size_mb': 10,
     'validation_rules': []},
]

ENTITY_REQUIREMENTS = [
    {'name': "Articles of Incorporation", 'description': "Certified articles of incorporation or organization",
     'category': "ENTITY", 'required': True, 'accepted_formats': PDF_ONLY, 'max_file_size_mb': 10,
     'validation_rules': [
         _rule("AUTHENTICITY", "State seal must be present", "Document must carry a state seal",
               features=["state_seal_present"]),
     ]},
    {'name': "Beneficial Ownership Form", 'description': "Certification of beneficial owners",
     'category': "REGULATORY", 'required': True, 'accepted_formats': PDF_ONLY, 'max_file_size_mb': 10,
     'validation_rules': []},
]

ENTITY_CLIENT_TYPES = ("entity", "corporate", "llc", "partnership")


def standard_requirements(client_type: str) -> List[Dict[str, Any]]:
    """Requirement templates for a client type"""
    templates = list(INDIVIDUAL_REQUIREMENTS)
    if (client_type or "").lower() in ENTITY_CLIENT_TYPES:
        templates.extend(ENTITY_REQUIREMENTS)
    return templates


def file_format_of(file_name: str) -> str:
    return os.path.splitext(file_name)[1].lstrip(".").lower()


def aggregate_status(checks: List[VerificationCheck]) -> SubmissionStatus:
    """Overall status from finished checks: failure beats review beats pass"""
    statuses = [check.status for check in checks]
    if CheckStatus.FAILED in statuses:
        return SubmissionStatus.REJECTED
    if CheckStatus.REQUIRES_REVIEW in statuses:
        return SubmissionStatus.UNDER_REVIEW
    return SubmissionStatus.VERIFIED


ACTIVE_SUBMISSION_STATUSES = (SubmissionStatus.PROCESSING, SubmissionStatus.VERIFIED, SubmissionStatus.UNDER_REVIEW)

STATUS_EVENTS = {
    SubmissionStatus.VERIFIED: DomainEvent.DOCUMENT_VERIFIED,
    SubmissionStatus.REJECTED: DomainEvent.DOCUMENT_REJECTED,
    SubmissionStatus.UNDER_REVIEW: DomainEvent.DOCUMENT_UNDER_REVIEW,
}

REQUIREMENT_STATUS = {
    SubmissionStatus.VERIFIED: RequirementStatus.VERIFIED,
    SubmissionStatus.REJECTED: RequirementStatus.REJECTED,
    SubmissionStatus.UNDER_REVIEW: RequirementStatus.SUBMITTED,
}


class DocumentCollectionEngine(EventPublisherMixin):
    """Document requirements, submissions and verification checks"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_manager: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        provider: Optional[VerificationProviderPort] = None,
        max_workers: int = 4
    ):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.set_event_dispatcher(event_dispatcher)
        self.provider = provider or RuleBasedVerificationProvider()
        self.requirements_table = "document_requirements"
        self.submissions_table = "document_submissions"
        self._locks = KeyedLocks()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="document-checks")

        config = get_config()
        self.authenticity_threshold = config.authenticity_review_threshold
        self.expiry_warning = timedelta(days=config.expiry_warning_days)

    # Requirements

    def initialize_requirements(self, workflow_id: str, client_type: str = "individual") -> List[DocumentRequirement]:
        """Create the standard requirements for a workflow (idempotent)"""
        with self._locks.hold(workflow_id):
            existing = self.get_requirements(workflow_id)
            if existing:
                return existing

            now = datetime.now(timezone.utc)
            requirements = []
            for template in standard_requirements(client_type):
                requirement = build_dataclass(DocumentRequirement, {
                    **template,
                    'id': str(uuid.uuid4()),
                    'created_at': now,
                    'updated_at': now,
                    'workflow_id': workflow_id
                })
                self._save_requirement(requirement)
                requirements.append(requirement)

        logger.info(f"Initialized {len(requirements)} document requirements for workflow {workflow_id} ({client_type})")
        return requirements

    def request_additional_document(
        self,
        workflow_id: str,
        name: str,
        description: str,
        category: Any = DocumentCategory.OTHER,
        required: bool = True,
        accepted_formats: Optional[List[str]] = None,
        requested_by: str = "system"
    ) -> DocumentRequirement:
        now = datetime.now(timezone.utc)
        requirement = DocumentRequirement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            workflow_id=workflow_id,
            name=name,
            description=description,
            category=from_storage_value(category, DocumentCategory),
            required=required,
            requested_by=requested_by
        )
        if accepted_formats:
            requirement.accepted_formats = [fmt.lower() for fmt in accepted_formats]

        with self._locks.hold(workflow_id):
            self._save_requirement(requirement)
            self.audit.log_event(
                AuditEventType.DOCUMENT_REQUESTED,
                'document_requirement',
                requirement.id,
                {'workflow_id': workflow_id, 'name': name, 'required': required},
                requested_by
            )

        logger.info(f"Additional document '{name}' requested for workflow {workflow_id} by {requested_by}")
        self.publish_event(DomainEvent.ADDITIONAL_DOCUMENT_REQUESTED, 'document_requirement',
                           requirement.id, requirement.to_dict())
        return requirement

    def get_requirement(self, requirement_id: str) -> Optional[DocumentRequirement]:
        data = self.storage.load(self.requirements_table, requirement_id)
        return DocumentRequirement.from_dict(data) if data else None

    def get_requirements(self, workflow_id: str) -> List[DocumentRequirement]:
        requirements = [DocumentRequirement.from_dict(data)
                        for data in self.storage.find(self.requirements_table, {'workflow_id': workflow_id})]
        return sorted(requirements, key=lambda r: r.created_at)

    # Submissions

    def submit_document(
        self,
        workflow_id: str,
        client_id: str,
        tenant_id: str,
        requirement_id: str,
        file_name: str,
        file_size: int,
        metadata: Optional[Dict[str, Any]] = None
    ) -> DocumentSubmission:
        """
        Submit a file against a requirement and verify it.

        A previous active submission for the same requirement is marked
        REPLACED.

        Raises:
            ValueError: requirement missing or belonging to another workflow
        """
        pending_events: PendingEvents = []
        with self._locks.hold(workflow_id):
            requirement = self.get_requirement(requirement_id)
            if not requirement or requirement.workflow_id != workflow_id:
                raise ValueError("Document requirement not found")

            now = datetime.now(timezone.utc)
            submission = DocumentSubmission(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                workflow_id=workflow_id,
                client_id=client_id,
                tenant_id=tenant_id,
                requirement_id=requirement.id,
                requirement_name=requirement.name,
                file_name=file_name,
                file_format=file_format_of(file_name),
                file_size=file_size,
                metadata=dict(metadata or {})
            )
            checks = self._run_checks(requirement, submission)

            for previous in self._active_submissions(workflow_id, requirement.id):
                previous.status = SubmissionStatus.REPLACED
                previous.replaced_by = submission.id
                previous.updated_at = now
                self._save_submission(previous)

            self._save_submission(submission)
            self.audit.log_event(
                AuditEventType.DOCUMENT_SUBMITTED,
                'document_submission',
                submission.id,
                {'workflow_id': workflow_id, 'requirement': requirement.name,
                 'file_name': file_name, 'file_size': file_size},
                client_id
            )
            pending_events.append((DomainEvent.DOCUMENT_SUBMITTED, submission.to_dict()))

            submission.checks = checks
            submission.flags = [flag for check in submission.checks for flag in check.flags]
            self._apply_status(submission, requirement, aggregate_status(submission.checks), pending_events)

        self._publish_all(submission.id, pending_events)
        return submission

    def review_document(self, submission_id: str, approved: bool, reviewer_id: str,
                        notes: Optional[str] = None) -> DocumentSubmission:
        """Manual decision on a submission that is UNDER_REVIEW"""
        submission = self.get_submission(submission_id)
        if not submission:
            raise ValueError("Document submission not found")

        pending_events: PendingEvents = []
        with self._locks.hold(submission.workflow_id):
            submission = self.get_submission(submission_id)
            if submission.status != SubmissionStatus.UNDER_REVIEW:
                raise ValueError("Document is not awaiting review")
            requirement = self.get_requirement(submission.requirement_id)
            submission.reviewed_by = reviewer_id
            submission.review_notes = notes
            status = SubmissionStatus.VERIFIED if approved else SubmissionStatus.REJECTED
            self._apply_status(submission, requirement, status, pending_events, actor=reviewer_id)

        self._publish_all(submission_id, pending_events)
        return submission

    def _apply_status(self, submission: DocumentSubmission, requirement: Optional[DocumentRequirement],
                      status: SubmissionStatus, pending_events: PendingEvents, actor: str = "system") -> None:
        now = datetime.now(timezone.utc)
        previous = submission.status
        submission.status = status
        submission.updated_at = now
        if status == SubmissionStatus.VERIFIED:
            submission.verified_at = now
        elif status == SubmissionStatus.REJECTED:
            submission.rejected_at = now
        self._save_submission(submission)

        if requirement:
            requirement.status = REQUIREMENT_STATUS[status]
            requirement.updated_at = now
            self._save_requirement(requirement)

        self.audit.log_event(
            AuditEventType.DOCUMENT_STATUS_CHANGED,
            'document_submission',
            submission.id,
            {'from_status': previous.value, 'to_status': status.value, 'flags': list(submission.flags)},
            actor
        )
        if status == SubmissionStatus.VERIFIED:
            logger.info(f"Document '{submission.requirement_name}' verified for workflow {submission.workflow_id}")
        else:
            logger.warning(f"Document '{submission.requirement_name}' for workflow {submission.workflow_id} "
                           f"is {status.value} (flags: {', '.join(submission.flags) or 'none'})")
        pending_events.append((STATUS_EVENTS[status], submission.to_dict()))

    # Checks

    def _run_checks(self, requirement: DocumentRequirement, submission: DocumentSubmission) -> List[VerificationCheck]:
        futures = [
            self._executor.submit(check, requirement, submission)
            for check in (self._check_format, self._check_content,
                          self._check_authenticity, self._check_expiration)
        ]
        return [future.result() for future in futures]

    def _check_format(self, requirement: DocumentRequirement, submission: DocumentSubmission) -> VerificationCheck:
        flags = []
        if submission.file_format not in requirement.accepted_formats:
            flags.append('INVALID_FORMAT')
        if submission.file_size > requirement.max_file_size_mb * MB:
            flags.append('FILE_TOO_LARGE')
        return VerificationCheck(
            check_type=CheckType.FORMAT,
            status=CheckStatus.FAILED if flags else CheckStatus.PASSED,
            confidence=100.0,
            flags=flags,
            details={'format': submission.file_format, 'accepted_formats': list(requirement.accepted_formats),
                     'file_size': submission.file_size}
        )

    def _check_content(self, requirement: DocumentRequirement, submission: DocumentSubmission) -> VerificationCheck:
        if submission.file_format not in EXTRACTABLE_FORMATS:
            return VerificationCheck(check_type=CheckType.CONTENT, status=CheckStatus.SKIPPED,
                                     details={'reason': 'Unsupported format for extraction'})
        content = self.provider.extract_document_content(requirement.name, submission.file_format,
                                                         submission.file_size)
        return VerificationCheck(check_type=CheckType.CONTENT, status=CheckStatus.PASSED,
                                 confidence=content.confidence, details=dict(content.fields))

    def _check_authenticity(self, requirement: DocumentRequirement,
                            submission: DocumentSubmission) -> VerificationCheck:
        rule = requirement.get_rule(ValidationRuleType.AUTHENTICITY)
        if rule is None:
            return VerificationCheck(check_type=CheckType.AUTHENTICITY, status=CheckStatus.SKIPPED)

        score = self.provider.score_document_authenticity(requirement.name, submission.file_size)
        if score < self.authenticity_threshold:
            return VerificationCheck(check_type=CheckType.AUTHENTICITY, status=CheckStatus.REQUIRES_REVIEW,
                                     confidence=score, flags=['LOW_AUTHENTICITY_SCORE'],
                                     details={'message': rule.error_message})
        return VerificationCheck(check_type=CheckType.AUTHENTICITY, status=CheckStatus.PASSED, confidence=score)

    def _check_expiration(self, requirement: DocumentRequirement,
                          submission: DocumentSubmission) -> VerificationCheck:
        rule = requirement.get_rule(ValidationRuleType.EXPIRATION)
        if rule is None:
            return VerificationCheck(check_type=CheckType.EXPIRATION, status=CheckStatus.SKIPPED)

        try:
            expiration = from_storage_value(submission.metadata.get('expiration_date'), datetime)
        except (TypeError, ValueError):
            return VerificationCheck(check_type=CheckType.EXPIRATION, status=CheckStatus.REQUIRES_REVIEW,
                                     flags=['INVALID_EXPIRATION_DATE'],
                                     details={'expiration_date': str(submission.metadata.get('expiration_date'))})
        if expiration is None:
            expiration = self.provider.extract_document_content(
                requirement.name, submission.file_format, submission.file_size
            ).expiration_date
        if expiration is None:
            return VerificationCheck(check_type=CheckType.EXPIRATION, status=CheckStatus.REQUIRES_REVIEW,
                                     flags=['EXPIRATION_UNKNOWN'])
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        submission.expiration_date = expiration

        now = datetime.now(timezone.utc)
        details = {'expiration_date': expiration.isoformat()}
        if expiration < now:
            details['message'] = rule.error_message
            return VerificationCheck(check_type=CheckType.EXPIRATION, status=CheckStatus.FAILED,
                                     confidence=100.0, flags=['DOCUMENT_EXPIRED'], details=details)
        flags = ['EXPIRES_SOON'] if expiration - now <= self.expiry_warning else []
        return VerificationCheck(check_type=CheckType.EXPIRATION, status=CheckStatus.PASSED,
                                 confidence=100.0, flags=flags, details=details)

    # Queries

    def get_submission(self, submission_id: str) -> Optional[DocumentSubmission]:
        data = self.storage.load(self.submissions_table, submission_id)
        return DocumentSubmission.from_dict(data) if data else None

    def get_submissions(self, workflow_id: str, include_replaced: bool = False) -> List[DocumentSubmission]:
        submissions = [DocumentSubmission.from_dict(data)
                       for data in self.storage.find(self.submissions_table, {'workflow_id': workflow_id})]
        if not include_replaced:
            submissions = [s for s in submissions if s.status != SubmissionStatus.REPLACED]
        return sorted(submissions, key=lambda s: s.created_at)

    def get_pending_reviews(self, tenant_id: Optional[str] = None) -> List[DocumentSubmission]:
        """Submissions waiting for a manual decision, oldest first"""
        filters = {'status': SubmissionStatus.UNDER_REVIEW.value}
        if tenant_id:
            filters['tenant_id'] = tenant_id
        submissions = [DocumentSubmission.from_dict(data)
                       for data in self.storage.find(self.submissions_table, filters)]
        return sorted(submissions, key=lambda s: s.created_at)

    def _active_submissions(self, workflow_id: str, requirement_id: str) -> List[DocumentSubmission]:
        return [s for s in self.get_submissions(workflow_id)
                if s.requirement_id == requirement_id and s.status in ACTIVE_SUBMISSION_STATUSES]

    def get_completion_status(self, workflow_id: str) -> Dict[str, Any]:
        requirements = [r for r in self.get_requirements(workflow_id) if r.required]
        submissions = self.get_submissions(workflow_id)
        by_requirement: Dict[str, List[DocumentSubmission]] = {}
        for submission in submissions:
            by_requirement.setdefault(submission.requirement_id, []).append(submission)

        submitted = [r for r in requirements if by_requirement.get(r.id)]
        verified = [r for r in requirements if r.status == RequirementStatus.VERIFIED]
        rejected = [r for r in requirements if r.status == RequirementStatus.REJECTED]
        missing = [r.name for r in requirements if not by_requirement.get(r.id)]
        total = len(requirements)

        return {
            'workflow_id': workflow_id,
            'total_required': total,
            'submitted': len(submitted),
            'verified': len(verified),
            'rejected': len(rejected),
            'pending': total - len(verified) - len(rejected),
            'completion_percentage': (len(verified) / total * 100) if total else 100.0,
            'missing': missing,
            'complete': len(verified) == total
        }

    def get_document_metrics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        filters = {'tenant_id': tenant_id} if tenant_id else {}
        submissions = [DocumentSubmission.from_dict(data)
                       for data in self.storage.find(self.submissions_table, filters)]
        decided = [s for s in submissions if s.status in (SubmissionStatus.VERIFIED, SubmissionStatus.REJECTED)]
        verified = [s for s in submissions if s.status == SubmissionStatus.VERIFIED]
        flags = Counter(flag for s in submissions for flag in s.flags)

        return {
            'total_submissions': len(submissions),
            'verified_submissions': len(verified),
            'rejected_submissions': len([s for s in submissions if s.status == SubmissionStatus.REJECTED]),
            'under_review_submissions': len([s for s in submissions if s.status == SubmissionStatus.UNDER_REVIEW]),
            'replaced_submissions': len([s for s in submissions if s.status == SubmissionStatus.REPLACED]),
            'verification_rate': (len(verified) / len(decided) * 100) if decided else 0.0,
            'common_flags': [{'flag': flag, 'count': count} for flag, count in flags.most_common(5)]
        }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _save_requirement(self, requirement: DocumentRequirement) -> None:
        self.storage.save(self.requirements_table, requirement.id, requirement.to_dict())

    def _save_submission(self, submission: DocumentSubmission) -> None:
        self.storage.save(self.submissions_table, submission.id, submission.to_dict())

    def _publish_all(self, submission_id: str, pending_events: PendingEvents) -> None:
        for event_type, data in pending_events:
            self.publish_event(event_type, 'document_submission', submission_id, data)
