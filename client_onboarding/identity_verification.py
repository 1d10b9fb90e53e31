"""
Identity Verification Module

Verification sessions combine up to three methods (identity document,
biometric capture and knowledge-based authentication). The session type
decides which methods are required; each method is retried at most
``max_verification_attempts`` times and the whole session expires after
``session_timeout_minutes``.

A session completes once every required method has either COMPLETED or
FAILED. It is COMPLETED only when all of them verified, and its overall
confidence is the mean of the per-method confidences.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord, KeyedLocks, from_storage_value
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .verification import (
    VerificationProviderPort, RuleBasedVerificationProvider, IdentityDocumentType,
    BiometricType, VerificationIssue, KbaQuestion
)
from .config import get_config


logger = logging.getLogger("onboarding.identity")


class VerificationSessionType(Enum):
    FULL_VERIFICATION = "FULL_VERIFICATION"
    DOCUMENT_ONLY = "DOCUMENT_ONLY"
    BIOMETRIC_ONLY = "BIOMETRIC_ONLY"
    KBA_ONLY = "KBA_ONLY"
    RE_VERIFICATION = "RE_VERIFICATION"


class VerificationMethod(Enum):
    DOCUMENT = "DOCUMENT"
    BIOMETRIC = "BIOMETRIC"
    KBA = "KBA"


SESSION_METHODS = {
    VerificationSessionType.FULL_VERIFICATION: [VerificationMethod.DOCUMENT, VerificationMethod.BIOMETRIC,
                                                VerificationMethod.KBA],
    VerificationSessionType.DOCUMENT_ONLY: [VerificationMethod.DOCUMENT],
    VerificationSessionType.BIOMETRIC_ONLY: [VerificationMethod.BIOMETRIC],
    VerificationSessionType.KBA_ONLY: [VerificationMethod.KBA],
    VerificationSessionType.RE_VERIFICATION: [VerificationMethod.BIOMETRIC, VerificationMethod.KBA],
}


class SessionStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class MethodStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


FINISHED_METHOD_STATUSES = (MethodStatus.COMPLETED, MethodStatus.FAILED)
TERMINAL_SESSION_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED)


@dataclass
class DocumentVerification:
    id: str
    status: MethodStatus = MethodStatus.PENDING
    attempts: int = 0
    document_type: Optional[IdentityDocumentType] = None
    confidence: float = 0.0
    authenticity_score: float = 0.0
    extracted_data: Dict[str, Any] = field(default_factory=dict)
    issues: List[VerificationIssue] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class BiometricVerification:
    id: str
    status: MethodStatus = MethodStatus.PENDING
    attempts: int = 0
    biometric_type: Optional[BiometricType] = None
    match_score: float = 0.0
    liveness_score: float = 0.0
    issues: List[VerificationIssue] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class KnowledgeBasedAuth:
    id: str
    status: MethodStatus = MethodStatus.PENDING
    attempts: int = 0
    questions: List[KbaQuestion] = field(default_factory=list)
    answers: Dict[str, str] = field(default_factory=dict)
    score: float = 0.0
    passed: bool = False
    risk_indicators: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class VerificationResult:
    method: VerificationMethod
    verified: bool
    confidence: float
    details: Dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class VerificationSession(StorageRecord):
    """Identity verification session for one onboarding"""
    client_id: str
    tenant_id: str
    workflow_id: str
    session_type: VerificationSessionType
    methods: List[VerificationMethod]
    expires_at: datetime
    status: SessionStatus = SessionStatus.PENDING
    document_verification: Optional[DocumentVerification] = None
    biometric_verification: Optional[BiometricVerification] = None
    knowledge_based_auth: Optional[KnowledgeBasedAuth] = None
    results: List[VerificationResult] = field(default_factory=list)
    overall_confidence: Optional[float] = None
    risk_factors: List[str] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def method_status(self, method: VerificationMethod) -> Optional[MethodStatus]:
        record = {
            VerificationMethod.DOCUMENT: self.document_verification,
            VerificationMethod.BIOMETRIC: self.biometric_verification,
            VerificationMethod.KBA: self.knowledge_based_auth,
        }[method]
        return record.status if record else None


PendingEvents = List[Tuple[DomainEvent, Dict[str, Any]]]


def summarize_questions(questions: List[KbaQuestion]) -> List[Dict[str, Any]]:
    """Questions as shown to the client, without expected answers"""
    return [
        {'id': q.id, 'question': q.question, 'options': list(q.options), 'category': q.category}
        for q in questions
    ]


class IdentityVerificationEngine(EventPublisherMixin):
    """Runs identity verification sessions against a verification provider"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_manager: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        provider: Optional[VerificationProviderPort] = None
    ):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.set_event_dispatcher(event_dispatcher)
        self.provider = provider or RuleBasedVerificationProvider()
        self.sessions_table = "verification_sessions"
        self._locks = KeyedLocks()

        config = get_config()
        self.max_attempts = config.max_verification_attempts
        self.session_timeout = timedelta(minutes=config.session_timeout_minutes)
        self.kba_question_count = config.kba_question_count
        self.kba_pass_score = config.kba_pass_score

    def create_verification_session(
        self,
        client_id: str,
        tenant_id: str,
        workflow_id: str,
        session_type: Any = VerificationSessionType.FULL_VERIFICATION
    ) -> VerificationSession:
        session_type = from_storage_value(session_type, VerificationSessionType)
        methods = SESSION_METHODS[session_type]
        now = datetime.now(timezone.utc)

        session = VerificationSession(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            session_type=session_type,
            methods=list(methods),
            expires_at=now + self.session_timeout,
            document_verification=DocumentVerification(id=str(uuid.uuid4()))
            if VerificationMethod.DOCUMENT in methods else None,
            biometric_verification=BiometricVerification(id=str(uuid.uuid4()))
            if VerificationMethod.BIOMETRIC in methods else None,
            knowledge_based_auth=KnowledgeBasedAuth(id=str(uuid.uuid4()))
            if VerificationMethod.KBA in methods else None
        )

        with self._locks.hold(session.id):
            self._save(session)
            self.audit.log_event(
                AuditEventType.VERIFICATION_SESSION_CREATED,
                'verification_session',
                session.id,
                {'client_id': client_id, 'workflow_id': workflow_id, 'session_type': session_type.value},
                'system'
            )

        logger.info(f"Verification session {session.id} ({session_type.value}) created for client {client_id}")
        self.publish_event(DomainEvent.IDENTITY_SESSION_CREATED, 'verification_session', session.id, session.to_dict())
        return session

    def start_document_verification(
        self,
        session_id: str,
        document_type: Any,
        front_image: str,
        back_image: Optional[str] = None
    ) -> VerificationSession:
        """Verify an identity document for the session"""
        document_type = from_storage_value(document_type, IdentityDocumentType)

        pending_events: PendingEvents = []
        with self._locks.hold(session_id):
            session = self._require_active_session(session_id)
            record = session.document_verification
            if record is None:
                raise ValueError("Document verification method not initialized")
            self._begin_attempt(record)
            record.document_type = document_type

            result = self.provider.verify_document(document_type, front_image, back_image)
            record.confidence = result.confidence
            record.authenticity_score = result.authenticity_score
            record.extracted_data = dict(result.extracted_data)
            record.issues = list(result.issues)

            self._finish_method(session, VerificationMethod.DOCUMENT, record, result.verified, result.confidence,
                                {'document_type': document_type.value,
                                 'issues': [issue.value for issue in result.issues]},
                                pending_events)
            self._save(session)
        self._publish_all(session_id, pending_events)
        return session

    def start_biometric_verification(
        self,
        session_id: str,
        biometric_type: Any,
        capture_data: str
    ) -> VerificationSession:
        biometric_type = from_storage_value(biometric_type, BiometricType)

        pending_events: PendingEvents = []
        with self._locks.hold(session_id):
            session = self._require_active_session(session_id)
            record = session.biometric_verification
            if record is None:
                raise ValueError("Biometric verification method not initialized")
            self._begin_attempt(record)
            record.biometric_type = biometric_type

            result = self.provider.verify_biometric(biometric_type, capture_data)
            record.match_score = result.match_score
            record.liveness_score = result.liveness_score
            record.issues = list(result.issues)

            self._finish_method(session, VerificationMethod.BIOMETRIC, record, result.verified, result.match_score,
                                {'biometric_type': biometric_type.value,
                                 'liveness_score': result.liveness_score,
                                 'issues': [issue.value for issue in result.issues]},
                                pending_events)
            self._save(session)
        self._publish_all(session_id, pending_events)
        return session

    def start_knowledge_based_auth(self, session_id: str) -> VerificationSession:
        """Generate a fresh set of KBA questions for the session"""
        with self._locks.hold(session_id):
            session = self._require_active_session(session_id)
            record = session.knowledge_based_auth
            if record is None:
                raise ValueError("KBA method not initialized")
            self._begin_attempt(record)
            record.questions = self.provider.generate_kba_questions(session.client_id, self.kba_question_count)
            record.answers = {}
            record.score = 0.0
            record.passed = False
            record.risk_indicators = []
            session.status = SessionStatus.IN_PROGRESS
            session.updated_at = datetime.now(timezone.utc)
            self._save(session)
        return session

    def submit_kba_answers(
        self,
        session_id: str,
        kba_id: str,
        answers: Dict[str, str],
        time_taken_seconds: Optional[float] = None
    ) -> VerificationSession:
        """
        Score KBA answers.

        The score is the share of answered questions that were answered
        correctly; unknown question ids are ignored. Completion times under 30
        seconds, or a perfect score in under a minute, are recorded as risk
        indicators.
        """
        pending_events: PendingEvents = []
        with self._locks.hold(session_id):
            session = self._require_active_session(session_id)
            record = session.knowledge_based_auth
            if record is None or record.id != kba_id:
                raise ValueError("KBA verification not found")
            if record.status != MethodStatus.IN_PROGRESS:
                raise ValueError("KBA verification is not in progress")

            questions = {question.id: question for question in record.questions}
            answered = {qid: answer for qid, answer in answers.items() if qid in questions}
            correct = sum(1 for qid, answer in answered.items()
                          if self.provider.score_kba_answer(questions[qid], answer))
            score = (correct / len(answered) * 100) if answered else 0.0

            now = datetime.now(timezone.utc)
            if time_taken_seconds is None:
                time_taken_seconds = (now - record.started_at).total_seconds() if record.started_at else 0.0

            indicators = []
            if time_taken_seconds < 30:
                indicators.append('unusually_fast_completion')
            if score == 100 and time_taken_seconds < 60:
                indicators.append('perfect_score_fast_completion')

            record.answers = dict(answered)
            record.score = score
            record.passed = score >= self.kba_pass_score
            record.risk_indicators = indicators

            self._finish_method(session, VerificationMethod.KBA, record, record.passed, score,
                                {'correct_answers': correct, 'total_answered': len(answered),
                                 'time_taken_seconds': time_taken_seconds, 'risk_indicators': indicators},
                                pending_events)
            self._save(session)
        self._publish_all(session_id, pending_events)
        return session

    def _begin_attempt(self, record) -> None:
        if record.status == MethodStatus.COMPLETED:
            raise ValueError("Verification method already completed")
        if record.attempts >= self.max_attempts:
            raise ValueError("Maximum verification attempts exceeded")
        record.attempts += 1
        record.status = MethodStatus.IN_PROGRESS
        record.started_at = datetime.now(timezone.utc)
        record.completed_at = None

    def _finish_method(self, session: VerificationSession, method: VerificationMethod, record,
                       verified: bool, confidence: float, details: Dict[str, Any],
                       pending_events: PendingEvents) -> None:
        now = datetime.now(timezone.utc)
        record.status = MethodStatus.COMPLETED if verified else MethodStatus.FAILED
        record.completed_at = now

        session.results = [r for r in session.results if r.method != method]
        session.results.append(VerificationResult(method=method, verified=verified,
                                                  confidence=confidence, details=details))
        session.status = SessionStatus.IN_PROGRESS
        session.updated_at = now

        if verified:
            logger.info(f"{method.value} verification passed for session {session.id} ({confidence:.1f})")
        else:
            logger.warning(f"{method.value} verification failed for session {session.id} "
                           f"(attempt {record.attempts}/{self.max_attempts})")

        pending_events.append((DomainEvent.IDENTITY_METHOD_COMPLETED, {
            'session_id': session.id,
            'workflow_id': session.workflow_id,
            'client_id': session.client_id,
            'method': method.value,
            'verified': verified,
            'confidence': confidence,
            'attempts': record.attempts
        }))
        self._check_session_completion(session, pending_events)

    def _check_session_completion(self, session: VerificationSession, pending_events: PendingEvents) -> None:
        statuses = [session.method_status(method) for method in session.methods]
        if not all(status in FINISHED_METHOD_STATUSES for status in statuses):
            return

        all_verified = all(status == MethodStatus.COMPLETED for status in statuses)

        results = [result for result in session.results if result.method in session.methods]
        session.overall_confidence = sum(r.confidence for r in results) / len(results) if results else 0.0
        session.risk_factors = self._risk_factors(session)
        session.status = SessionStatus.COMPLETED if all_verified else SessionStatus.FAILED
        session.completed_at = datetime.now(timezone.utc)

        self.audit.log_event(
            AuditEventType.VERIFICATION_SESSION_COMPLETED,
            'verification_session',
            session.id,
            {'status': session.status.value, 'overall_confidence': session.overall_confidence,
             'risk_factors': session.risk_factors},
            'system'
        )
        logger.info(f"Verification session {session.id} finished as {session.status.value} "
                    f"(confidence {session.overall_confidence:.1f})")
        pending_events.append((DomainEvent.IDENTITY_SESSION_COMPLETED, session.to_dict()))

    @staticmethod
    def _risk_factors(session: VerificationSession) -> List[str]:
        factors = []
        document = session.document_verification
        if document and document.status == MethodStatus.FAILED:
            factors.append('document_verification_failed')
        biometric = session.biometric_verification
        if biometric and biometric.status == MethodStatus.FAILED:
            if VerificationIssue.LIVENESS_CHECK_FAILED in biometric.issues:
                factors.append('liveness_check_failed')
            factors.append('biometric_match_failed')
        kba = session.knowledge_based_auth
        if kba:
            factors.extend(kba.risk_indicators)
        return factors

    # Queries

    def get_session(self, session_id: str) -> Optional[VerificationSession]:
        data = self.storage.load(self.sessions_table, session_id)
        return VerificationSession.from_dict(data) if data else None

    def get_sessions_by_workflow(self, workflow_id: str) -> List[VerificationSession]:
        sessions = [VerificationSession.from_dict(data)
                    for data in self.storage.find(self.sessions_table, {'workflow_id': workflow_id})]
        return sorted(sessions, key=lambda s: s.created_at)

    def get_sessions_by_client(self, client_id: str) -> List[VerificationSession]:
        sessions = [VerificationSession.from_dict(data)
                    for data in self.storage.find(self.sessions_table, {'client_id': client_id})]
        return sorted(sessions, key=lambda s: s.created_at)

    def get_verification_metrics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        filters = {'tenant_id': tenant_id} if tenant_id else {}
        sessions = [VerificationSession.from_dict(data) for data in self.storage.find(self.sessions_table, filters)]

        completed = [s for s in sessions if s.status == SessionStatus.COMPLETED]
        failed = [s for s in sessions if s.status == SessionStatus.FAILED]
        finished = completed + failed
        durations = [(s.completed_at - s.created_at).total_seconds() / 60 for s in finished if s.completed_at]

        method_rates = {}
        for method in VerificationMethod:
            results = [r for s in sessions for r in s.results if r.method == method]
            verified = [r for r in results if r.verified]
            method_rates[method.value] = (len(verified) / len(results) * 100) if results else 0.0

        return {
            'total_sessions': len(sessions),
            'completed_sessions': len(completed),
            'failed_sessions': len(failed),
            'expired_sessions': len([s for s in sessions if s.status == SessionStatus.EXPIRED]),
            'success_rate': (len(completed) / len(finished) * 100) if finished else 0.0,
            'average_duration_minutes': (sum(durations) / len(durations)) if durations else 0.0,
            'method_success_rates': method_rates
        }

    def _require_active_session(self, session_id: str) -> VerificationSession:
        session = self.get_session(session_id)
        if not session:
            raise ValueError("Verification session not found")
        if session.status in TERMINAL_SESSION_STATUSES:
            raise ValueError(f"Verification session is {session.status.value.lower()}")
        if datetime.now(timezone.utc) > session.expires_at:
            session.status = SessionStatus.EXPIRED
            session.updated_at = datetime.now(timezone.utc)
            self._save(session)
            logger.warning(f"Verification session {session_id} expired")
            raise ValueError("Verification session has expired")
        return session

    def _save(self, session: VerificationSession) -> None:
        self.storage.save(self.sessions_table, session.id, session.to_dict())

    def _publish_all(self, session_id: str, pending_events: PendingEvents) -> None:
        for event_type, data in pending_events:
            self.publish_event(event_type, 'verification_session', session_id, data)
