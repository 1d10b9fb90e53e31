"""
Verification Provider Module

Narrow port between the identity and document engines and whatever actually
inspects images, biometrics and files. The engines only see result records
with a status and a confidence; swapping in a vendor integration means
implementing ``VerificationProviderPort``.

``RuleBasedVerificationProvider`` is the default. It is deterministic so that
the same input always produces the same outcome.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import hashlib
import logging
import uuid


logger = logging.getLogger("onboarding.verification")


class IdentityDocumentType(Enum):
    DRIVERS_LICENSE = "DRIVERS_LICENSE"
    PASSPORT = "PASSPORT"
    NATIONAL_ID = "NATIONAL_ID"
    STATE_ID = "STATE_ID"
    RESIDENCE_PERMIT = "RESIDENCE_PERMIT"


# Documents that are only valid with both sides captured
TWO_SIDED_DOCUMENTS = frozenset({
    IdentityDocumentType.DRIVERS_LICENSE,
    IdentityDocumentType.NATIONAL_ID,
    IdentityDocumentType.STATE_ID,
    IdentityDocumentType.RESIDENCE_PERMIT,
})


class BiometricType(Enum):
    FACE = "FACE"
    FINGERPRINT = "FINGERPRINT"
    VOICE = "VOICE"


class VerificationIssue(Enum):
    INVALID_DOCUMENT = "INVALID_DOCUMENT"
    POOR_IMAGE_QUALITY = "POOR_IMAGE_QUALITY"
    LIVENESS_CHECK_FAILED = "LIVENESS_CHECK_FAILED"
    BIOMETRIC_MATCH_FAILED = "BIOMETRIC_MATCH_FAILED"


@dataclass
class DocumentCheckResult:
    verified: bool
    confidence: float
    authenticity_score: float = 0.0
    extracted_data: Dict[str, Any] = field(default_factory=dict)
    issues: List[VerificationIssue] = field(default_factory=list)


@dataclass
class BiometricCheckResult:
    verified: bool
    match_score: float
    liveness_score: float
    issues: List[VerificationIssue] = field(default_factory=list)


@dataclass
class KbaQuestion:
    """Knowledge-based authentication question with its expected answer"""
    id: str
    question: str
    options: List[str]
    category: str
    expected_answer: str


@dataclass
class ExtractedContent:
    confidence: float
    fields: Dict[str, Any] = field(default_factory=dict)
    expiration_date: Optional[datetime] = None


class VerificationProviderPort(ABC):
    """Abstract interface for identity and document verification providers"""

    @abstractmethod
    def verify_document(self, document_type: IdentityDocumentType, front_image: str,
                        back_image: Optional[str] = None) -> DocumentCheckResult:
        """Check a government-issued identity document"""
        pass

    @abstractmethod
    def verify_biometric(self, biometric_type: BiometricType, capture_data: str) -> BiometricCheckResult:
        """Match a biometric capture and run liveness detection"""
        pass

    @abstractmethod
    def generate_kba_questions(self, client_id: str, count: int) -> List[KbaQuestion]:
        pass

    @abstractmethod
    def score_kba_answer(self, question: KbaQuestion, answer: str) -> bool:
        pass

    @abstractmethod
    def score_document_authenticity(self, document_name: str, file_size: int) -> float:
        """Authenticity score 0-100 for a submitted file"""
        pass

    @abstractmethod
    def extract_document_content(self, document_name: str, file_format: str, file_size: int) -> ExtractedContent:
        pass


KBA_TEMPLATES = [
    ("Which of the following streets have you lived on?", "address_history"),
    ("What was the make of your first car?", "vehicle_history"),
    ("Which of these phone numbers have you had?", "phone_history"),
    ("What year did you graduate from high school?", "education"),
    ("Which bank have you had an account with?", "financial_history"),
]

KBA_OPTIONS = ["Option A", "Option B", "Option C", "None of the above"]


class RuleBasedVerificationProvider(VerificationProviderPort):
    """
    Deterministic provider used by default and in tests.

    Documents verify when every required side is present; biometrics verify
    when a capture was supplied; KBA answers are compared with the expected
    option; files of at least 1 KB score as authentic.
    """

    def __init__(self, document_confidence: float = 92.0, match_score: float = 90.0,
                 liveness_score: float = 95.0, minimum_authentic_size: int = 1024):
        self.document_confidence = document_confidence
        self.match_score = match_score
        self.liveness_score = liveness_score
        self.minimum_authentic_size = minimum_authentic_size

    def verify_document(self, document_type: IdentityDocumentType, front_image: str,
                        back_image: Optional[str] = None) -> DocumentCheckResult:
        if not front_image:
            return DocumentCheckResult(verified=False, confidence=0.0,
                                       issues=[VerificationIssue.INVALID_DOCUMENT])
        if document_type in TWO_SIDED_DOCUMENTS and not back_image:
            return DocumentCheckResult(verified=False, confidence=40.0, authenticity_score=40.0,
                                       issues=[VerificationIssue.POOR_IMAGE_QUALITY])

        digest = hashlib.sha256(front_image.encode("utf-8")).hexdigest()
        return DocumentCheckResult(
            verified=True,
            confidence=self.document_confidence,
            authenticity_score=self.document_confidence,
            extracted_data={
                'document_type': document_type.value,
                'document_number': digest[:9].upper(),
                'expiration_date': (datetime.now(timezone.utc) + timedelta(days=730)).date().isoformat()
            }
        )

    def verify_biometric(self, biometric_type: BiometricType, capture_data: str) -> BiometricCheckResult:
        if not capture_data:
            return BiometricCheckResult(
                verified=False, match_score=0.0, liveness_score=0.0,
                issues=[VerificationIssue.LIVENESS_CHECK_FAILED, VerificationIssue.BIOMETRIC_MATCH_FAILED]
            )
        return BiometricCheckResult(verified=True, match_score=self.match_score, liveness_score=self.liveness_score)

    def generate_kba_questions(self, client_id: str, count: int) -> List[KbaQuestion]:
        questions = []
        for index in range(count):
            text, category = KBA_TEMPLATES[index % len(KBA_TEMPLATES)]
            questions.append(KbaQuestion(
                id=str(uuid.uuid4()),
                question=text,
                options=list(KBA_OPTIONS),
                category=category,
                expected_answer=KBA_OPTIONS[index % 3]
            ))
        return questions

    def score_kba_answer(self, question: KbaQuestion, answer: str) -> bool:
        return answer == question.expected_answer

    def score_document_authenticity(self, document_name: str, file_size: int) -> float:
        return 90.0 if file_size >= self.minimum_authentic_size else 70.0

    def extract_document_content(self, document_name: str, file_format: str, file_size: int) -> ExtractedContent:
        return ExtractedContent(
            confidence=85.0,
            fields={'document_name': document_name, 'format': file_format},
            expiration_date=datetime.now(timezone.utc) + timedelta(days=730)
        )
