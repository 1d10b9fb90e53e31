"""
Client-facing endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_onboarding_system
from ..controller import OnboardingSystem


router = APIRouter()


@router.get("/{client_id}/workflows")
async def get_client_workflows(
    client_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    workflows = system.state_machine.get_workflows_by_client(client_id)
    return {
        "workflows": [
            {
                "workflow_id": w.id,
                "current_state": w.current_state.value,
                "created_at": w.created_at.isoformat(),
                "completed_at": w.completed_at.isoformat() if w.completed_at else None
            }
            for w in workflows
        ]
    }


@router.get("/{client_id}/progress")
async def get_client_progress(
    client_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Progress of every onboarding the client has"""
    records = system.progress.get_progress_by_client(client_id)
    return {
        "progress": [
            {
                "progress_id": r.id,
                "workflow_id": r.workflow_id,
                "status": r.status.value,
                "overall_progress": r.overall_progress,
                "current_phase": r.current_phase.value,
                "estimated_completion": (r.estimated_completion_date.isoformat()
                                         if r.estimated_completion_date else None)
            }
            for r in records
        ]
    }


@router.get("/{client_id}/next-actions")
async def get_client_next_actions(
    client_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Outstanding client actions across the client's active onboardings"""
    actions = []
    for record in system.progress.get_progress_by_client(client_id):
        for action in system.progress.get_next_actions(record.id):
            actions.append({**action, "workflow_id": record.workflow_id})
    return {"actions": actions}
