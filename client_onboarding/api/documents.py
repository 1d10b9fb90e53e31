"""
Document collection endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_onboarding_system, http_error, require_workflow, serialize
from .schemas import SubmitDocumentRequest, RequestDocumentRequest, ReviewDocumentRequest
from ..controller import OnboardingSystem


router = APIRouter()


@router.post("/workflows/{workflow_id}/documents", status_code=status.HTTP_201_CREATED)
async def submit_document(
    workflow_id: str,
    request: SubmitDocumentRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Submit a file against a document requirement and run verification checks"""
    workflow = require_workflow(system, workflow_id)
    try:
        submission = system.documents.submit_document(
            workflow_id=workflow_id,
            client_id=workflow.client_id,
            tenant_id=workflow.tenant_id,
            requirement_id=request.requirement_id,
            file_name=request.file_name,
            file_size=request.file_size,
            metadata=request.metadata
        )
    except Exception as e:
        raise http_error(e)

    return {
        "submission_id": submission.id,
        "status": submission.status.value,
        "flags": submission.flags,
        "checks": serialize(submission.checks)
    }


@router.get("/workflows/{workflow_id}/documents")
async def get_documents(
    workflow_id: str,
    include_replaced: bool = False,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    require_workflow(system, workflow_id)
    submissions = system.documents.get_submissions(workflow_id, include_replaced=include_replaced)
    return {"documents": [serialize(s) for s in submissions]}


@router.get("/workflows/{workflow_id}/documents/requirements")
async def get_document_requirements(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    require_workflow(system, workflow_id)
    return {"requirements": [serialize(r) for r in system.documents.get_requirements(workflow_id)]}


@router.post("/workflows/{workflow_id}/documents/requirements", status_code=status.HTTP_201_CREATED)
async def request_additional_document(
    workflow_id: str,
    request: RequestDocumentRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Ask the client for a document outside the standard set"""
    require_workflow(system, workflow_id)
    try:
        requirement = system.documents.request_additional_document(
            workflow_id,
            request.name,
            request.description,
            category=request.category,
            required=request.required,
            accepted_formats=request.accepted_formats,
            requested_by=request.requested_by
        )
    except Exception as e:
        raise http_error(e)
    return serialize(requirement)


@router.get("/workflows/{workflow_id}/documents/status")
async def get_document_status(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    require_workflow(system, workflow_id)
    return system.documents.get_completion_status(workflow_id)


@router.post("/workflows/{workflow_id}/documents/{submission_id}/review")
async def review_document(
    workflow_id: str,
    submission_id: str,
    request: ReviewDocumentRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Manual decision on a document flagged for review"""
    submission = system.documents.get_submission(submission_id)
    if not submission or submission.workflow_id != workflow_id:
        raise HTTPException(status_code=404, detail="Document submission not found")
    try:
        submission = system.documents.review_document(
            submission_id, request.approved, request.reviewer_id, request.notes
        )
    except Exception as e:
        raise http_error(e)
    return serialize(submission)
