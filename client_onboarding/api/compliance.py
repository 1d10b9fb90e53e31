"""
Compliance approval endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_onboarding_system, http_error, serialize
from .schemas import ComplianceDecisionRequest
from ..controller import OnboardingSystem


router = APIRouter()


def _require_compliance_workflow(system: OnboardingSystem, workflow_id: str):
    workflow = system.compliance.get_workflow_by_onboarding_id(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Compliance workflow not found")
    return workflow


@router.get("/workflows/{workflow_id}/compliance")
async def get_compliance_workflow(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return serialize(_require_compliance_workflow(system, workflow_id))


@router.post("/workflows/{workflow_id}/compliance/decisions", status_code=status.HTTP_201_CREATED)
async def submit_compliance_decision(
    workflow_id: str,
    request: ComplianceDecisionRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Record a reviewer decision on one approval step"""
    compliance_workflow = _require_compliance_workflow(system, workflow_id)
    try:
        decision = system.compliance.submit_decision(
            compliance_workflow.id,
            request.step_id,
            request.reviewer_id,
            request.decision,
            reasoning=request.reasoning,
            criteria_evaluations=[evaluation.model_dump() for evaluation in request.criteria_evaluations],
            conditions=request.conditions
        )
    except Exception as e:
        raise http_error(e)

    updated = system.compliance.get_workflow(compliance_workflow.id)
    return {
        "decision_id": decision.id,
        "confidence_level": decision.confidence_level,
        "workflow_status": updated.status.value if updated else None
    }
