"""
Commodity Workflow API

Endpoints:
- POST /api/workflows - Register a farmer batch (starts at farmer_registration)
- GET /api/workflows - List workflows
- GET /api/workflows/{workflow_id} - Workflow with stage history
- POST /api/workflows/{workflow_id}/advance - Enter the next stage
- POST /api/workflows/{workflow_id}/override - Human decision on manual review / block
- POST /api/workflows/{workflow_id}/block - Operator cancellation
- POST /api/workflows/{workflow_id}/unblock - Lift an operator block

Every mutating call needs X-API-Key plus the X-Actor-* role-claim headers.
Domain errors are mapped to HTTP status codes by the app's exception handler.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from compliance.capabilities import Principal
from compliance.service.auth import get_principal, verify_api_key
from compliance.service.dependencies import Services, get_services

router = APIRouter(prefix="/api/workflows", tags=["workflows"])

# ============================================================================
# Pydantic Models (Request/Response Schemas)
# ============================================================================

class WorkflowCreate(BaseModel):
    """Request schema for registering a farmer batch"""
    commodity_batch_ref: str = Field(..., min_length=1, max_length=100, description="External batch reference")
    payload: Dict[str, Any] = Field(..., description="farmer_id, farmer_name, county")


class AdvanceRequest(BaseModel):
    """Request schema for entering a stage"""
    stage: str = Field(..., description="Target stage, e.g. land_mapping")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Stage inputs")


class OverrideRequest(BaseModel):
    decision: str = Field(..., description="pass or reject")
    notes: str = Field(..., min_length=1, description="Reviewer justification")


class BlockRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the workflow is stopped")


class StageEntryResponse(BaseModel):
    seq: int
    stage: str
    entered_at: str
    exited_at: Optional[str]
    verdict: Optional[str]
    actor_id: Optional[str]


class WorkflowResponse(BaseModel):
    """Response schema for a workflow"""
    id: str
    commodity_batch_ref: str
    current_stage: str
    review_stage: Optional[str]
    last_verdict: Optional[str]
    blocked: bool
    block_reason: Optional[str]
    context: Dict[str, Any]
    archived: bool
    archived_at: Optional[str]
    version: int
    stage_history: List[StageEntryResponse]


class AdvanceResponse(BaseModel):
    new_stage: str
    verdict: Optional[str]
    evaluation: Optional[Dict[str, Any]]
    replayed: bool
    workflow: WorkflowResponse

# ============================================================================
# API Endpoints
# ============================================================================

@router.post("", response_model=WorkflowResponse, status_code=201)
def create_workflow(
    body: WorkflowCreate,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """
    Register a farmer batch

    **Access:** farmer, field_agent

    **Example:**
    ```json
    {
      "commodity_batch_ref": "BATCH-2025-0001",
      "payload": {"farmer_id": "F-001", "farmer_name": "Amina Njeri", "county": "Nyeri"}
    }
    ```
    """
    return services.orchestrator.create_workflow(body.commodity_batch_ref, body.payload, principal)


@router.get("", response_model=List[WorkflowResponse])
def list_workflows(
    stage: Optional[str] = Query(None, description="Filter by current stage"),
    blocked: Optional[bool] = Query(None, description="Filter by blocked flag"),
    include_archived: bool = Query(False, description="Include archived workflows"),
    _: bool = Depends(verify_api_key),
    services: Services = Depends(get_services),
):
    return services.orchestrator.list(stage=stage, blocked=blocked, include_archived=include_archived)


@router.get("/{workflow_id}", response_model=WorkflowResponse)
def get_workflow(
    workflow_id: str,
    _: bool = Depends(verify_api_key),
    services: Services = Depends(get_services),
):
    return services.orchestrator.get(workflow_id)


@router.post("/{workflow_id}/advance", response_model=AdvanceResponse)
def advance_workflow(
    workflow_id: str,
    body: AdvanceRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """
    Enter the next stage

    Re-sending the same stage with the same payload returns the stored result.
    A reject verdict answers 409 (gate_rejected) with the blocked workflow in
    ``current_state``.
    """
    return services.orchestrator.advance(workflow_id, body.stage, body.payload, principal).to_dict()


@router.post("/{workflow_id}/override", response_model=WorkflowResponse)
def override_workflow(
    workflow_id: str,
    body: OverrideRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """**Access:** regulatory_supervisor, operator"""
    return services.orchestrator.override(workflow_id, principal, body.decision, body.notes)


@router.post("/{workflow_id}/block", response_model=WorkflowResponse)
def block_workflow(
    workflow_id: str,
    body: BlockRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.orchestrator.block(workflow_id, principal, body.reason)


@router.post("/{workflow_id}/unblock", response_model=WorkflowResponse)
def unblock_workflow(
    workflow_id: str,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.orchestrator.unblock(workflow_id, principal)
