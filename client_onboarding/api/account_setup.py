"""
Account setup endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_onboarding_system, http_error, require_workflow, serialize
from .schemas import AccountSetupRequestModel, UpdateAccountSetupRequest
from ..controller import OnboardingSystem


router = APIRouter()


@router.post("/workflows/{workflow_id}/account-setup", status_code=status.HTTP_201_CREATED)
async def initiate_account_setup(
    workflow_id: str,
    request: AccountSetupRequestModel,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Create an account setup request and run its steps"""
    workflow = require_workflow(system, workflow_id)
    configuration = dict(request.configuration)
    configuration.setdefault('account_type', workflow.metadata.get('account_type', 'INDIVIDUAL_TAXABLE'))
    try:
        setup = system.account_setup.initiate_account_setup(
            workflow.client_id,
            workflow.tenant_id,
            workflow_id,
            configuration=configuration,
            funding=request.funding,
            preferences=request.preferences
        )
    except Exception as e:
        raise http_error(e)

    return {
        "setup_id": setup.id,
        "status": setup.status.value,
        "errors": serialize(setup.errors)
    }


@router.get("/workflows/{workflow_id}/account-setup")
async def get_account_setup(
    workflow_id: str,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    setup = system.account_setup.get_setup_by_workflow(workflow_id)
    if not setup:
        raise HTTPException(status_code=404, detail="Account setup not found")
    return serialize(setup)


@router.put("/workflows/{workflow_id}/account-setup")
async def update_account_setup(
    workflow_id: str,
    request: UpdateAccountSetupRequest,
    system: OnboardingSystem = Depends(get_onboarding_system)
):
    """Apply corrections to a setup and rerun the failed steps"""
    setup = system.account_setup.get_setup_by_workflow(workflow_id)
    if not setup:
        raise HTTPException(status_code=404, detail="Account setup not found")
    try:
        setup = system.account_setup.update_setup_configuration(
            setup.id,
            configuration=request.configuration,
            funding=request.funding,
            preferences=request.preferences
        )
    except Exception as e:
        raise http_error(e)
    return serialize(setup)
