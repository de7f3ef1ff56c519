"""
Marketplace Coordination API

Endpoints:
- POST /api/marketplace/offers - Post a sell offer (buyers)
- GET /api/marketplace/offers - Browse open offers
- POST /api/marketplace/offers/{offer_id}/expire - Withdraw an offer (seller)
- POST /api/marketplace/requests - Request to purchase against an offer (exporters)
- GET /api/marketplace/requests/{request_id} - Request with gate sub-states
- POST /api/marketplace/requests/{request_id}/start-review - Reviewer picks up the request
- POST /api/marketplace/requests/{request_id}/review - Regulatory gate decision
- POST /api/marketplace/requests/{request_id}/resubmit - Answer a revision request
- POST /api/marketplace/requests/{request_id}/schedule-inspection - Assign a port inspector
- POST /api/marketplace/requests/{request_id}/inspection-result - Port gate result
- POST /api/marketplace/requests/{request_id}/inspection-override - Decide a conditional inspection
- POST /api/marketplace/requests/{request_id}/respond - Counterparty accept / veto
- POST /api/marketplace/requests/{request_id}/cancel - Exporter withdraws

Architecture:
- Role-based access through compliance.capabilities (role claim headers)
- Each gate is one versioned update; a stale write answers 409 with the current state
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from compliance.capabilities import Principal
from compliance.service.auth import get_principal, verify_api_key
from compliance.service.dependencies import Services, get_services

router = APIRouter(prefix="/api/marketplace", tags=["marketplace"])

# ============================================================================
# Pydantic Models (Request/Response Schemas)
# ============================================================================

class OfferCreate(BaseModel):
    """Request schema for posting a sell offer"""
    commodity: str = Field(..., min_length=1, max_length=100, description="Commodity, e.g. coffee")
    quantity: float = Field(..., gt=0, description="Quantity on offer")
    price_per_unit: float = Field(..., gt=0, description="Asking price per unit")
    source_location: str = Field(..., min_length=1, max_length=200, description="Origin jurisdiction")
    expires_at: datetime = Field(..., description="Offer expiry (UTC)")
    available_from: Optional[datetime] = Field(None, description="Defaults to now")
    eudr_compliant: bool = Field(False, description="Seller's EUDR declaration")
    seller_ref: Optional[str] = Field(None, description="Only the system may post for another seller")


class OfferResponse(BaseModel):
    """Response schema for an offer"""
    id: str
    seller_ref: str
    commodity: str
    quantity: float
    remaining_quantity: float
    price_per_unit: float
    source_location: Optional[str]
    available_from: str
    expires_at: str
    eudr_compliant: bool
    status: str
    version: int


class PurchaseRequestCreate(BaseModel):
    """Request schema for a purchase request"""
    offer_id: str = Field(..., description="Offer to purchase against")
    quantity: float = Field(..., description="Quantity requested")
    agreed_price: float = Field(..., description="Price per unit")
    buyer_ref: Optional[str] = Field(None, description="Offer owner; must match the offer's seller when given")


class ReviewDecision(BaseModel):
    decision: str = Field(..., description="approve, reject or revision")
    notes: Optional[str] = Field(None, description="Required for reject and revision")


class ResubmitRequest(BaseModel):
    quantity: Optional[float] = Field(None, description="New quantity (keeps the current one when omitted)")
    agreed_price: Optional[float] = Field(None, description="New price")


class ScheduleInspectionRequest(BaseModel):
    inspector_id: str = Field(..., min_length=1, description="Port inspector actor id")
    inspection_date: datetime = Field(..., description="Scheduled inspection time (UTC)")


class InspectionResultRequest(BaseModel):
    result: str = Field(..., description="passed, failed or conditional")
    notes: Optional[str] = None


class InspectionOverrideRequest(BaseModel):
    decision: str = Field(..., description="pass or fail")
    notes: str = Field(..., min_length=1)


class CounterpartyResponseRequest(BaseModel):
    decision: str = Field(..., description="accept or reject")
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class PurchaseRequestResponse(BaseModel):
    """Response schema for a purchase request"""
    id: str
    offer_id: str
    buyer_ref: str
    requester_ref: str
    quantity_requested: float
    agreed_price: float
    regulatory_review: Dict[str, Any]
    revision_notes: Optional[str]
    port_inspection: Dict[str, Any]
    counterparty_response: Dict[str, Any]
    overall_status: str
    rejection_reason: Optional[str]
    progress_percent: int
    certificate_approval_id: Optional[str]
    version: int
    events: Optional[List[Dict[str, Any]]] = None

# ============================================================================
# Offers
# ============================================================================

@router.post("/offers", response_model=OfferResponse, status_code=201)
def create_offer(
    body: OfferCreate,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """
    Post a sell offer

    **Access:** buyer

    **Example:**
    ```json
    {
      "commodity": "coffee",
      "quantity": 500,
      "price_per_unit": 2750,
      "source_location": "Nyeri",
      "expires_at": "2025-03-01T00:00:00Z"
    }
    ```
    """
    return services.marketplace.create_offer(
        principal,
        commodity=body.commodity,
        quantity=body.quantity,
        price_per_unit=body.price_per_unit,
        source_location=body.source_location,
        expires_at=body.expires_at,
        available_from=body.available_from,
        eudr_compliant=body.eudr_compliant,
        seller_ref=body.seller_ref,
    )


@router.get("/offers", response_model=List[OfferResponse])
def list_offers(
    commodity: Optional[str] = Query(None, description="Filter by commodity"),
    _: bool = Depends(verify_api_key),
    services: Services = Depends(get_services),
):
    """Open offers, soonest expiry first."""
    return services.marketplace.list_open_offers(commodity=commodity)


@router.post("/offers/{offer_id}/expire", response_model=OfferResponse)
def expire_offer(
    offer_id: str,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.marketplace.expire_offer(offer_id, principal)

# ============================================================================
# Purchase requests
# ============================================================================

@router.post("/requests", response_model=PurchaseRequestResponse, status_code=201)
def submit_purchase_request(
    body: PurchaseRequestCreate,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """
    Request to purchase against an offer

    **Access:** exporter

    An expired offer answers 410 (offer_expired); too little remaining
    quantity answers 409 (insufficient_quantity).
    """
    return services.marketplace.submit_purchase_request(
        body.offer_id,
        principal,
        quantity=body.quantity,
        agreed_price=body.agreed_price,
        buyer_ref=body.buyer_ref,
    )


@router.get("/requests/{request_id}", response_model=PurchaseRequestResponse)
def get_purchase_request(
    request_id: str,
    include_events: bool = Query(False, description="Include the transition audit trail"),
    _: bool = Depends(verify_api_key),
    services: Services = Depends(get_services),
):
    return services.marketplace.get_request(request_id, include_events=include_events)


@router.post("/requests/{request_id}/start-review", response_model=PurchaseRequestResponse)
def start_review(
    request_id: str,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.marketplace.start_review(request_id, principal)


@router.post("/requests/{request_id}/review", response_model=PurchaseRequestResponse)
def review_request(
    request_id: str,
    body: ReviewDecision,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """**Access:** regulatory_reviewer"""
    return services.marketplace.review_request(request_id, principal, body.decision, body.notes)


@router.post("/requests/{request_id}/resubmit", response_model=PurchaseRequestResponse)
def resubmit_request(
    request_id: str,
    body: ResubmitRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.marketplace.resubmit_purchase_request(
        request_id, principal, quantity=body.quantity, agreed_price=body.agreed_price
    )


@router.post("/requests/{request_id}/schedule-inspection", response_model=PurchaseRequestResponse)
def schedule_inspection(
    request_id: str,
    body: ScheduleInspectionRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.marketplace.schedule_inspection(request_id, principal, body.inspector_id, body.inspection_date)


@router.post("/requests/{request_id}/inspection-result", response_model=PurchaseRequestResponse)
def inspection_result(
    request_id: str,
    body: InspectionResultRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """**Access:** the assigned port_inspector"""
    return services.marketplace.submit_inspection_result(request_id, principal, body.result, body.notes)


@router.post("/requests/{request_id}/inspection-override", response_model=PurchaseRequestResponse)
def inspection_override(
    request_id: str,
    body: InspectionOverrideRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.marketplace.override_inspection(request_id, principal, body.decision, body.notes)


@router.post("/requests/{request_id}/respond", response_model=PurchaseRequestResponse)
def respond_as_counterparty(
    request_id: str,
    body: CounterpartyResponseRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """
    Counterparty accept or veto

    **Access:** the buyer who owns the offer, only after both gates passed
    """
    return services.marketplace.respond_as_counterparty(request_id, principal, body.decision, body.notes)


@router.post("/requests/{request_id}/cancel", response_model=PurchaseRequestResponse)
def cancel_request(
    request_id: str,
    body: CancelRequest,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
):
    return services.marketplace.cancel_request(request_id, principal, body.reason)
