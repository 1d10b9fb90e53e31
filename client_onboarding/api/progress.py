"""
Progress tracking endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_onboarding_system, http_error, serialize
from .schemas import UpdateStepRequest, ReportBlockerRequest, EscalateBlockerRequest, ResolveBlockerRequest
from ..controller import OnboardingSystem
from ..progress import OnboardingProgress


router = APIRouter()


def _require_progress(system: OnboardingSystem, workflow_id: str) -> OnboardingProgress:
    record = system.progress.get_progress_by_workflow(workflow_id)
    if not record:
        raise HTTPException(status_code=404, detail="Progress not found")
    return record


@router.get("/workflows/{workflow_id}/progress")
async def get_progress(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return serialize(_require_progress(system, workflow_id))


@router.get("/workflows/{workflow_id}/progress/summary")
async def get_progress_summary(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    record = _require_progress(system, workflow_id)
    return serialize(system.progress.get_progress_summary(record.id))


@router.put("/workflows/{workflow_id}/progress/steps/{step_id}")
async def update_step_progress(
    workflow_id: str,
    step_id: str,
    request: UpdateStepRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    record = _require_progress(system, workflow_id)
    try:
        record = system.progress.update_step_progress(
            record.id, step_id, request.status, request.progress, request.notes, request.actor
        )
    except Exception as e:
        raise http_error(e)
    return {
        "overall_status": record.status.value,
        "overall_progress": record.overall_progress,
        "current_phase": record.current_phase.value
    }


@router.post("/workflows/{workflow_id}/progress/blockers", status_code=status.HTTP_201_CREATED)
async def report_blocker(
    workflow_id: str,
    request: ReportBlockerRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Report a blocker; the affected steps are marked BLOCKED"""
    record = _require_progress(system, workflow_id)
    try:
        blocker = system.progress.report_blocker(
            record.id,
            request.name,
            request.description,
            request.blocker_type,
            request.severity,
            request.reported_by,
            affected_steps=request.affected_steps,
            affected_milestones=request.affected_milestones,
            estimated_resolution_hours=request.estimated_resolution_hours
        )
    except Exception as e:
        raise http_error(e)
    return {"blocker_id": blocker.id, "status": blocker.status.value}


@router.post("/workflows/{workflow_id}/progress/blockers/{blocker_id}/escalate")
async def escalate_blocker(
    workflow_id: str,
    blocker_id: str,
    request: EscalateBlockerRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    record = _require_progress(system, workflow_id)
    try:
        blocker = system.progress.escalate_blocker(record.id, blocker_id, request.escalated_to, request.reason)
    except Exception as e:
        raise http_error(e)
    return {"blocker_id": blocker.id, "status": blocker.status.value}


@router.post("/workflows/{workflow_id}/progress/blockers/{blocker_id}/resolve")
async def resolve_blocker(
    workflow_id: str,
    blocker_id: str,
    request: ResolveBlockerRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    record = _require_progress(system, workflow_id)
    try:
        blocker = system.progress.resolve_blocker(record.id, blocker_id, request.resolution, request.resolved_by)
    except Exception as e:
        raise http_error(e)
    return {"blocker_id": blocker.id, "status": blocker.status.value, "resolved": True}
