"""
Analytics endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_onboarding_system, serialize
from ..controller import OnboardingSystem


router = APIRouter()


@router.get("/workflows")
async def get_workflow_analytics(
    tenant_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return system.state_machine.get_workflow_metrics(tenant_id)


@router.get("/documents")
async def get_document_analytics(
    tenant_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return system.documents.get_document_metrics(tenant_id)


@router.get("/identity")
async def get_identity_verification_analytics(
    tenant_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return system.identity.get_verification_metrics(tenant_id)


@router.get("/compliance")
async def get_compliance_analytics(
    tenant_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return serialize(system.compliance.get_compliance_metrics(tenant_id))


@router.get("/progress")
async def get_progress_analytics(
    tenant_id: Optional[str] = None,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    return system.progress.get_progress_metrics(tenant_id)
