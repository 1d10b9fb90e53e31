"""
Shared API dependencies: the onboarding system instance and error mapping
"""

from typing import Any, Optional
import logging

from fastapi import HTTPException

from ..controller import OnboardingSystem
from ..storage import to_storage_value


logger = logging.getLogger("onboarding.api")


_system: Optional[OnboardingSystem] = None


def get_onboarding_system() -> OnboardingSystem:
    """Dependency returning the process-wide onboarding system"""
    global _system
    if _system is None:
        _system = OnboardingSystem()
    return _system


def set_onboarding_system(system: Optional[OnboardingSystem]) -> None:
    global _system
    _system = system


def http_error(error: Exception) -> HTTPException:
    """404 for missing entities, 400 for other business errors, 500 otherwise"""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, ValueError):
        message = str(error)
        if "not found" in message.lower():
            return HTTPException(status_code=404, detail=message)
        return HTTPException(status_code=400, detail=message)
    logger.error(f"Unexpected API error: {error}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal server error")


def serialize(value: Any) -> Any:
    """JSON-safe form of records, enums and datetimes"""
    return to_storage_value(value)


def require_workflow(system: OnboardingSystem, workflow_id: str):
    workflow = system.state_machine.get_workflow(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow
