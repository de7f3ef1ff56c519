"""
Query helpers for AgriTrace Ledger

Reads only. State changes go through the components that own each
record (orchestrator, approvals, marketplace engine).
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from database.models import (
    CertificateApproval,
    MarketplaceOffer,
    ParkedOperation,
    PurchaseRequest,
    PurchaseRequestEvent,
    Workflow,
    WorkflowStageEntry,
)


def get_workflow_history(db: Session, workflow_id: str) -> List[WorkflowStageEntry]:
    """Stage history for a workflow, oldest first."""
    return db.query(WorkflowStageEntry)\
        .filter(WorkflowStageEntry.workflow_id == workflow_id)\
        .order_by(WorkflowStageEntry.seq)\
        .all()


def find_active_workflow(db: Session, commodity_batch_ref: str) -> Optional[Workflow]:
    """The batch's workflow that has not been archived yet, if any."""
    return db.query(Workflow)\
        .filter(Workflow.commodity_batch_ref == commodity_batch_ref, Workflow.archived.is_(False))\
        .order_by(Workflow.created_at.desc())\
        .first()


def list_workflows(
    db: Session,
    stage: Optional[str] = None,
    blocked: Optional[bool] = None,
    include_archived: bool = False,
    limit: int = 100,
) -> List[Workflow]:
    query = db.query(Workflow)
    if stage:
        query = query.filter(Workflow.current_stage == stage)
    if blocked is not None:
        query = query.filter(Workflow.blocked == blocked)
    if not include_archived:
        query = query.filter(Workflow.archived.is_(False))
    return query.order_by(Workflow.created_at.desc()).limit(limit).all()


def list_pending_approvals(db: Session, jurisdiction: Optional[str] = None, limit: int = 100) -> List[CertificateApproval]:
    """Reviewer queue: higher priority first, then oldest first."""
    query = db.query(CertificateApproval).filter(CertificateApproval.status == "pending")
    if jurisdiction:
        query = query.filter(CertificateApproval.jurisdiction == jurisdiction)
    return query\
        .order_by(CertificateApproval.priority.desc(), CertificateApproval.created_at.asc(), CertificateApproval.id.asc())\
        .limit(limit)\
        .all()


def list_open_offers(db: Session, now: datetime, commodity: Optional[str] = None, limit: int = 100) -> List[MarketplaceOffer]:
    """Offers still accepting purchase requests."""
    query = db.query(MarketplaceOffer).filter(
        MarketplaceOffer.status == "open",
        MarketplaceOffer.expires_at > now,
    )
    if commodity:
        query = query.filter(MarketplaceOffer.commodity == commodity)
    return query.order_by(MarketplaceOffer.expires_at.asc()).limit(limit).all()


def list_lapsed_offers(db: Session, now: datetime) -> List[MarketplaceOffer]:
    """Offers past ``expires_at`` that have not been marked expired yet."""
    return db.query(MarketplaceOffer)\
        .filter(MarketplaceOffer.status != "expired", MarketplaceOffer.expires_at <= now)\
        .all()


def list_requests(
    db: Session,
    status: Optional[str] = None,
    offer_id: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
    limit: Optional[int] = 100,
) -> List[PurchaseRequest]:
    query = db.query(PurchaseRequest)
    if status:
        query = query.filter(PurchaseRequest.overall_status == status)
    if statuses:
        query = query.filter(PurchaseRequest.overall_status.in_(list(statuses)))
    if offer_id:
        query = query.filter(PurchaseRequest.offer_id == offer_id)
    query = query.order_by(PurchaseRequest.created_at.asc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def get_request_events(db: Session, request_id: str) -> List[PurchaseRequestEvent]:
    return db.query(PurchaseRequestEvent)\
        .filter(PurchaseRequestEvent.request_id == request_id)\
        .order_by(PurchaseRequestEvent.id)\
        .all()


def list_parked_operations(
    db: Session,
    status: Optional[str] = None,
    operation_type: Optional[str] = None,
    limit: int = 100,
) -> List[ParkedOperation]:
    query = db.query(ParkedOperation)
    if status:
        query = query.filter(ParkedOperation.status == status)
    if operation_type:
        query = query.filter(ParkedOperation.operation_type == operation_type)
    return query.order_by(ParkedOperation.created_at.asc()).limit(limit).all()
