"""
Onboarding workflow endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_onboarding_system, http_error, serialize
from .schemas import CreateWorkflowRequest, ProcessEventRequest
from ..controller import OnboardingSystem
from ..state_machine import WorkflowState, TransitionErrorCode


router = APIRouter()


@router.post("/workflows", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: CreateWorkflowRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Start a new onboarding workflow in INITIATED state"""
    metadata = dict(request.metadata)
    metadata.update({'client_type': request.client_type, 'account_type': request.account_type})
    if request.jurisdiction:
        metadata['jurisdiction'] = request.jurisdiction

    try:
        workflow = system.state_machine.create_workflow(request.client_id, request.tenant_id, metadata)
    except Exception as e:
        raise http_error(e)

    progress = system.progress.get_progress_by_workflow(workflow.id)
    return {
        "workflow_id": workflow.id,
        "current_state": workflow.current_state.value,
        "progress_id": progress.id if progress else None,
        "message": "Onboarding workflow created successfully"
    }


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    workflow = system.state_machine.get_workflow(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return serialize(workflow)


@router.get("/workflows")
async def list_workflows(
    tenant_id: Optional[str] = None,
    state: Optional[str] = None,
    client_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """List workflows, newest first"""
    try:
        state_filter = WorkflowState(state) if state else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid state: {state}")

    workflows = system.state_machine.list_workflows(tenant_id=tenant_id, state=state_filter, client_id=client_id)
    return {"workflows": [serialize(w) for w in workflows]}


@router.post("/workflows/{workflow_id}/events")
async def process_event(
    workflow_id: str,
    request: ProcessEventRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Apply an event; guard failures come back as ``success: false`` with errors"""
    result = system.state_machine.process_event(
        workflow_id, request.event, request.event_data, request.triggered_by
    )
    if not result.success and any(e.code == TransitionErrorCode.WORKFLOW_NOT_FOUND for e in result.errors):
        raise HTTPException(status_code=404, detail="Workflow not found")
    return serialize(result)


@router.get("/workflows/{workflow_id}/events")
async def get_available_events(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    try:
        events = system.state_machine.get_available_events(workflow_id)
    except Exception as e:
        raise http_error(e)
    return {"workflow_id": workflow_id, "available_events": [event.value for event in events]}
