"""
Certificate Approval API

Endpoints:
- POST /api/certificates - Submit a certificate request
- GET /api/certificates/pending - Reviewer queue (priority, then oldest first)
- GET /api/certificates/{approval_id} - Approval details
- POST /api/certificates/{approval_id}/decide - Approve or reject (reviewers)
- POST /api/certificates/{approval_id}/send - Release an approved certificate
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from compliance.capabilities import Principal
from compliance.service.auth import get_principal, verify_api_key
from compliance.service.dependencies import Services, get_services

router = APIRouter(prefix="/api/certificates", tags=["certificates"])

# ============================================================================
# Pydantic Models (Request/Response Schemas)
# ============================================================================

class CertificateCreate(BaseModel):
    """Request schema for a certificate request"""
    certificate_type: str = Field(..., min_length=1, max_length=50, description="eudr_due_diligence, phytosanitary, ...")
    subject_ref: str = Field(..., min_length=1, max_length=100, description="Workflow or purchase request id")
    jurisdiction: str = Field(..., min_length=1, max_length=100, description="Reviewing jurisdiction")
    priority: int = Field(0, description="Higher is reviewed first")


class DecisionRequest(BaseModel):
    decision: str = Field(..., description="approve or reject")
    notes: Optional[str] = Field(None, description="Required when rejecting")


class CertificateResponse(BaseModel):
    """Response schema for a certificate approval"""
    id: str
    certificate_type: str
    subject_ref: str
    jurisdiction: str
    requested_by: str
    requested_by_role: str
    priority: int
    status: str
    reviewer_id: Optional[str]
    decision_at: Optional[str]
    rejection_reason: Optional[str]
    review_notes: Optional[str]
    sent_at: Optional[str]
    created_at: Optional[str]
    version: int

# ============================================================================
# API Endpoints
# ============================================================================

@router.post("", response_model=CertificateResponse, status_code=201)
def submit_certificate(
    body: CertificateCreate,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.approvals.submit(
        body.certificate_type,
        body.subject_ref,
        body.jurisdiction,
        principal,
        priority=body.priority,
    )


@router.get("/pending", response_model=List[CertificateResponse])
def pending_certificates(
    jurisdiction: Optional[str] = Query(None, description="Filter by jurisdiction"),
    limit: int = Query(50, le=100, description="Max results"),
    _: bool = Depends(verify_api_key),
    services: Services = Depends(get_services),
):
    return services.approvals.pending_queue(jurisdiction=jurisdiction, limit=limit)


@router.get("/{approval_id}", response_model=CertificateResponse)
def get_certificate(
    approval_id: str,
    _: bool = Depends(verify_api_key),
    services: Services = Depends(get_services),
):
    return services.approvals.get(approval_id)


@router.post("/{approval_id}/decide", response_model=CertificateResponse)
def decide_certificate(
    approval_id: str,
    body: DecisionRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """
    Approve or reject a pending certificate

    **Access:** regulatory_reviewer, regulatory_supervisor (for the approval's jurisdiction)

    A second decision answers 409 (already_decided).
    """
    return services.approvals.decide(approval_id, principal, body.decision, body.notes)


@router.post("/{approval_id}/send", response_model=CertificateResponse)
def send_certificate(
    approval_id: str,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.approvals.send(approval_id, principal)
