"""
Operator API

Endpoints:
- GET /api/operator/parked - Operations whose retries were exhausted
- POST /api/operator/parked/{operation_id}/replay - Re-run a parked workflow advance
- POST /api/operator/notifications/redeliver - Retry parked notifications once
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from compliance.capabilities import Capability, Principal, require_capability
from compliance.service.auth import get_principal
from compliance.service.dependencies import Services, get_services

router = APIRouter(prefix="/api/operator", tags=["operator"])


class ParkedOperationResponse(BaseModel):
    id: str
    operation_type: str
    entity_id: Optional[str]
    payload: Dict[str, Any]
    status: str
    retry_count: int
    error_message: Optional[str]
    created_at: Optional[str]
    resolved_at: Optional[str]


class RedeliveryResponse(BaseModel):
    delivered: int
    failed: int


@router.get("/parked", response_model=List[ParkedOperationResponse])
def list_parked(
    status: Optional[str] = Query("retry_exhausted", description="retry_exhausted or resolved"),
    operation_type: Optional[str] = Query(None, description="workflow.advance or notification"),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    require_capability(principal, Capability.OPERATIONS)
    return services.operator_queue.list(status=status, operation_type=operation_type)


@router.post("/parked/{operation_id}/replay")
def replay_parked(
    operation_id: str,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Re-run a parked advance as its original caller; safe because advance is idempotent."""
    return services.orchestrator.replay_parked(operation_id, principal).to_dict()


@router.post("/notifications/redeliver", response_model=RedeliveryResponse)
def redeliver_notifications(
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    require_capability(principal, Capability.OPERATIONS)
    return services.operator_queue.redeliver_notifications(services.notifier)
