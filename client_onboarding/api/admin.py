"""
Admin endpoints (dashboard, review queue, deadline sweep)
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends

from .dependencies import get_onboarding_system, serialize
from ..controller import OnboardingSystem
from ..compliance_approval import ComplianceWorkflowStatus
from ..progress import ACTIVE_BLOCKER_STATUSES


router = APIRouter()


@router.get("/dashboard")
async def get_admin_dashboard(
    tenant_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
) -> Dict[str, Any]:
    """Headline numbers from every engine"""
    workflows = system.state_machine.get_workflow_metrics(tenant_id)
    progress = system.progress.get_progress_metrics(tenant_id)
    compliance = system.compliance.get_compliance_metrics(tenant_id)
    documents = system.documents.get_document_metrics(tenant_id)
    identity = system.identity.get_verification_metrics(tenant_id)

    return {
        "workflows": {
            "total": workflows['total_workflows'],
            "active": workflows['active_workflows'],
            "completed": workflows['completed_workflows'],
            "by_state": workflows['workflows_by_state'],
        },
        "progress": {
            "blocked": progress['blocked_onboardings'],
            "completion_rate": progress['completion_rate'],
            "common_blockers": progress['common_blockers'],
        },
        "compliance": {
            "pending": compliance['pending_workflows'],
            "approval_rate": compliance['approval_rate'],
            "escalation_rate": compliance['escalation_rate'],
        },
        "documents": documents,
        "identity": identity,
    }


@router.get("/review-queue")
async def get_review_queue(
    tenant_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
) -> Dict[str, Any]:
    """Work waiting on people: compliance reviews, flagged documents, open blockers"""
    open_statuses = (ComplianceWorkflowStatus.PENDING, ComplianceWorkflowStatus.IN_PROGRESS,
                     ComplianceWorkflowStatus.AWAITING_INFORMATION, ComplianceWorkflowStatus.ESCALATED)
    compliance = [
        {
            "compliance_workflow_id": w.id,
            "workflow_id": w.workflow_id,
            "client_id": w.client_id,
            "status": w.status.value,
            "priority": w.priority.value,
            "reviewers": w.reviewers,
        }
        for w in system.compliance.list_workflows(tenant_id) if w.status in open_statuses
    ]

    documents = [
        {
            "submission_id": s.id,
            "workflow_id": s.workflow_id,
            "requirement_name": s.requirement_name,
            "flags": s.flags,
        }
        for s in system.documents.get_pending_reviews(tenant_id)
    ]

    blockers = []
    for record in system.progress.list_progress(tenant_id):
        for blocker in record.blockers:
            if blocker.status in ACTIVE_BLOCKER_STATUSES:
                blockers.append({"workflow_id": record.workflow_id, **serialize(blocker)})

    return {"compliance": compliance, "documents": documents, "blockers": blockers}


@router.post("/deadlines/check")
async def check_compliance_deadlines(system: OnboardingSystem = Depends(get_onboarding_system)) -> Dict[str, Any]:
    """Mark missed compliance deadlines and escalate the affected workflows"""
    escalated = system.compliance.check_deadlines()
    return {"escalated_workflows": [w.id for w in escalated]}
