"""
Pydantic schemas for API requests
"""

from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field


# Workflow schemas
class CreateWorkflowRequest(BaseModel):
    client_id: str
    tenant_id: str
    client_type: str = Field("individual", description="individual, entity or trust")
    account_type: str = Field("INDIVIDUAL_TAXABLE", description="Account type being opened")
    jurisdiction: Optional[str] = Field(None, description="ISO country code, defaults to US")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProcessEventRequest(BaseModel):
    event: str = Field(..., description="Workflow event (START_ONBOARDING, DOCUMENTS_SUBMITTED, ...)")
    event_data: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "api"


# Document schemas
class SubmitDocumentRequest(BaseModel):
    requirement_id: str
    file_name: str
    file_size: int = Field(..., ge=0, description="File size in bytes")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RequestDocumentRequest(BaseModel):
    name: str
    description: str
    category: str = "OTHER"
    required: bool = True
    accepted_formats: Optional[List[str]] = None
    requested_by: str = "system"


class ReviewDocumentRequest(BaseModel):
    approved: bool
    reviewer_id: str
    notes: Optional[str] = None


# Identity schemas
class CreateVerificationSessionRequest(BaseModel):
    session_type: str = Field("FULL_VERIFICATION", description="FULL_VERIFICATION, DOCUMENT_ONLY, ...")


class DocumentVerificationRequest(BaseModel):
    document_type: str = Field(..., description="DRIVERS_LICENSE, PASSPORT, NATIONAL_ID, ...")
    front_image: str
    back_image: Optional[str] = None


class BiometricVerificationRequest(BaseModel):
    biometric_type: str = "FACE"
    capture_data: str


class KbaAnswersRequest(BaseModel):
    answers: Dict[str, str] = Field(..., description="Question id -> chosen option")
    time_taken_seconds: Optional[float] = None


# Account setup schemas
class AccountSetupRequestModel(BaseModel):
    configuration: Dict[str, Any] = Field(default_factory=dict)
    funding: Dict[str, Any] = Field(default_factory=dict)
    preferences: Dict[str, Any] = Field(default_factory=dict)


class UpdateAccountSetupRequest(BaseModel):
    configuration: Optional[Dict[str, Any]] = None
    funding: Optional[Dict[str, Any]] = None
    preferences: Optional[Dict[str, Any]] = None


# Compliance schemas
class CriteriaEvaluationModel(BaseModel):
    criteria_id: str
    result: str = Field(..., description="PASS, FAIL or CONDITIONAL")
    score: float
    notes: str = ""


class ComplianceDecisionRequest(BaseModel):
    step_id: str
    reviewer_id: str
    decision: str = Field(..., description="APPROVE, REJECT, CONDITIONAL_APPROVE, REQUEST_MORE_INFO, ESCALATE")
    reasoning: str = ""
    criteria_evaluations: List[CriteriaEvaluationModel] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)


# Progress schemas
class UpdateStepRequest(BaseModel):
    status: str
    progress: Optional[int] = Field(None, ge=0, le=100)
    notes: Optional[str] = None
    actor: str = "api"


class ReportBlockerRequest(BaseModel):
    name: str
    description: str
    blocker_type: str = Field(..., description="TECHNICAL, REGULATORY, OPERATIONAL, CLIENT_ACTION, ...")
    severity: str = Field(..., description="LOW, MEDIUM, HIGH or CRITICAL")
    reported_by: str
    affected_steps: List[str] = Field(default_factory=list)
    affected_milestones: List[str] = Field(default_factory=list)
    estimated_resolution_hours: Optional[float] = None


class EscalateBlockerRequest(BaseModel):
    escalated_to: str
    reason: str = ""


class ResolveBlockerRequest(BaseModel):
    resolution: str
    resolved_by: str
