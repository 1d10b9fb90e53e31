"""
Identity verification endpoints
"""

from typing import Any, Dict
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_onboarding_system, http_error, require_workflow, serialize
from .schemas import (
    CreateVerificationSessionRequest, DocumentVerificationRequest,
    BiometricVerificationRequest, KbaAnswersRequest
)
from ..controller import OnboardingSystem
from ..identity_verification import VerificationSession, summarize_questions


router = APIRouter()


def session_view(session: VerificationSession) -> Dict[str, Any]:
    """Serialized session with expected KBA answers removed"""
    data = serialize(session)
    if session.knowledge_based_auth:
        data['knowledge_based_auth']['questions'] = summarize_questions(session.knowledge_based_auth.questions)
    return data


def _require_session(system: OnboardingSystem, workflow_id: str, session_id: str) -> VerificationSession:
    session = system.identity.get_session(session_id)
    if not session or session.workflow_id != workflow_id:
        raise HTTPException(status_code=404, detail="Verification session not found")
    return session


@router.post("/workflows/{workflow_id}/identity/sessions", status_code=status.HTTP_201_CREATED)
async def create_verification_session(
    workflow_id: str,
    request: CreateVerificationSessionRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    workflow = require_workflow(system, workflow_id)
    try:
        session = system.identity.create_verification_session(
            workflow.client_id, workflow.tenant_id, workflow_id, request.session_type
        )
    except Exception as e:
        raise http_error(e)
    return {
        "session_id": session.id,
        "methods": [method.value for method in session.methods],
        "expires_at": session.expires_at.isoformat()
    }


@router.get("/workflows/{workflow_id}/identity/sessions/{session_id}")
async def get_verification_session(
    workflow_id: str,
    session_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return session_view(_require_session(system, workflow_id, session_id))


@router.post("/workflows/{workflow_id}/identity/sessions/{session_id}/documents")
async def start_document_verification(
    workflow_id: str,
    session_id: str,
    request: DocumentVerificationRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    _require_session(system, workflow_id, session_id)
    try:
        session = system.identity.start_document_verification(
            session_id, request.document_type, request.front_image, request.back_image
        )
    except Exception as e:
        raise http_error(e)
    return session_view(session)


@router.post("/workflows/{workflow_id}/identity/sessions/{session_id}/biometric")
async def start_biometric_verification(
    workflow_id: str,
    session_id: str,
    request: BiometricVerificationRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    _require_session(system, workflow_id, session_id)
    try:
        session = system.identity.start_biometric_verification(
            session_id, request.biometric_type, request.capture_data
        )
    except Exception as e:
        raise http_error(e)
    return session_view(session)


@router.post("/workflows/{workflow_id}/identity/sessions/{session_id}/kba")
async def start_knowledge_based_auth(
    workflow_id: str,
    session_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Generate KBA questions; the response never includes the answers"""
    _require_session(system, workflow_id, session_id)
    try:
        session = system.identity.start_knowledge_based_auth(session_id)
    except Exception as e:
        raise http_error(e)
    kba = session.knowledge_based_auth
    return {"kba_id": kba.id, "questions": summarize_questions(kba.questions)}


@router.post("/workflows/{workflow_id}/identity/sessions/{session_id}/kba/{kba_id}/answers")
async def submit_kba_answers(
    workflow_id: str,
    session_id: str,
    kba_id: str,
    request: KbaAnswersRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    _require_session(system, workflow_id, session_id)
    try:
        session = system.identity.submit_kba_answers(
            session_id, kba_id, request.answers, request.time_taken_seconds
        )
    except Exception as e:
        raise http_error(e)
    kba = session.knowledge_based_auth
    return {
        "passed": kba.passed,
        "score": kba.score,
        "risk_indicators": kba.risk_indicators,
        "session_status": session.status.value
    }
