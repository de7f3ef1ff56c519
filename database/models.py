"""
SQLAlchemy models for AgriTrace Ledger

Every mutable row carries a ``version`` column. Writers go through
``Store.conditional_update`` so two concurrent writers to the same row
cannot both succeed.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Text, JSON, Boolean, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC instant as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value):
    return value.isoformat() if value else None


class Workflow(Base):
    """Per-batch compliance workflow (owned by the orchestrator)"""
    __tablename__ = "workflows"

    id = Column(String(40), primary_key=True)
    commodity_batch_ref = Column(String(100), nullable=False, index=True)
    current_stage = Column(String(40), nullable=False, index=True)
    review_stage = Column(String(40))  # assessment stage parked in manual_review
    last_verdict = Column(String(20))  # pass, review, reject, override
    blocked = Column(Boolean, default=False, nullable=False, index=True)
    block_reason = Column(Text)
    context = Column(JSON, nullable=False, default=dict)  # accumulated stage inputs

    archived = Column(Boolean, default=False, nullable=False, index=True)
    archived_at = Column(DateTime)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    history = relationship(
        "WorkflowStageEntry",
        back_populates="workflow",
        order_by="WorkflowStageEntry.seq",
    )

    def to_dict(self, history=None) -> dict:
        entries = self.history if history is None else history
        return {
            "id": self.id,
            "commodity_batch_ref": self.commodity_batch_ref,
            "current_stage": self.current_stage,
            "review_stage": self.review_stage,
            "last_verdict": self.last_verdict,
            "blocked": self.blocked,
            "block_reason": self.block_reason,
            "context": dict(self.context or {}),
            "archived": self.archived,
            "archived_at": _iso(self.archived_at),
            "version": self.version,
            "stage_history": [entry.to_dict() for entry in entries],
        }


class WorkflowStageEntry(Base):
    """Append-only stage history row"""
    __tablename__ = "workflow_stage_entries"
    __table_args__ = (UniqueConstraint("workflow_id", "seq", name="uq_workflow_stage_seq"),)

    id = Column(Integer, primary_key=True)
    workflow_id = Column(String(40), ForeignKey("workflows.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    stage = Column(String(40), nullable=False)
    entered_at = Column(DateTime, nullable=False)
    exited_at = Column(DateTime)
    verdict = Column(String(20))
    payload_hash = Column(String(64), nullable=False)
    payload = Column(JSON)
    actor_id = Column(String(100))

    workflow = relationship("Workflow", back_populates="history")

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "stage": self.stage,
            "entered_at": _iso(self.entered_at),
            "exited_at": _iso(self.exited_at),
            "verdict": self.verdict,
            "actor_id": self.actor_id,
        }


class CertificateApproval(Base):
    """Reviewer-gated certificate request (shared by reference)"""
    __tablename__ = "certificate_approvals"

    id = Column(String(40), primary_key=True)
    certificate_type = Column(String(50), nullable=False, index=True)
    subject_ref = Column(String(100), nullable=False, index=True)  # WF-… or PR-…
    jurisdiction = Column(String(100), nullable=False, index=True)
    requested_by = Column(String(100), nullable=False)
    requested_by_role = Column(String(50), nullable=False)
    priority = Column(Integer, nullable=False, default=0)

    status = Column(String(20), default="pending", nullable=False, index=True)  # pending, approved, rejected, sent
    reviewer_id = Column(String(100))
    decision_at = Column(DateTime)
    rejection_reason = Column(Text)
    review_notes = Column(Text)
    sent_at = Column(DateTime)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "certificate_type": self.certificate_type,
            "subject_ref": self.subject_ref,
            "jurisdiction": self.jurisdiction,
            "requested_by": self.requested_by,
            "requested_by_role": self.requested_by_role,
            "priority": self.priority,
            "status": self.status,
            "reviewer_id": self.reviewer_id,
            "decision_at": _iso(self.decision_at),
            "rejection_reason": self.rejection_reason,
            "review_notes": self.review_notes,
            "sent_at": _iso(self.sent_at),
            "created_at": _iso(self.created_at),
            "version": self.version,
        }


class MarketplaceOffer(Base):
    """Sell offer posted by a licensed buyer"""
    __tablename__ = "marketplace_offers"

    id = Column(String(40), primary_key=True)
    seller_ref = Column(String(100), nullable=False, index=True)
    commodity = Column(String(100), nullable=False, index=True)
    quantity = Column(Float, nullable=False)
    remaining_quantity = Column(Float, nullable=False)
    price_per_unit = Column(Float, nullable=False)
    source_location = Column(String(200))
    available_from = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    eudr_compliant = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), default="open", nullable=False, index=True)  # open, expired, consumed

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    requests = relationship("PurchaseRequest", back_populates="offer")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_ref": self.seller_ref,
            "commodity": self.commodity,
            "quantity": self.quantity,
            "remaining_quantity": self.remaining_quantity,
            "price_per_unit": self.price_per_unit,
            "source_location": self.source_location,
            "available_from": _iso(self.available_from),
            "expires_at": _iso(self.expires_at),
            "eudr_compliant": self.eudr_compliant,
            "status": self.status,
            "version": self.version,
        }


class PurchaseRequest(Base):
    """Exporter purchase request against an offer (owned by the marketplace engine)"""
    __tablename__ = "purchase_requests"

    id = Column(String(40), primary_key=True)
    offer_id = Column(String(40), ForeignKey("marketplace_offers.id"), nullable=False, index=True)
    buyer_ref = Column(String(100), nullable=False, index=True)  # offer owner, the counterparty
    requester_ref = Column(String(100), nullable=False, index=True)  # exporter
    quantity_requested = Column(Float, nullable=False)
    agreed_price = Column(Float, nullable=False)

    # Regulatory review gate
    regulatory_review_status = Column(String(20), default="pending", nullable=False)  # pending, approved, rejected
    regulatory_reviewer_id = Column(String(100))
    regulatory_notes = Column(Text)
    reviewed_at = Column(DateTime)
    revision_notes = Column(Text)

    # Port inspection gate
    port_inspection_status = Column(String(20), default="not_scheduled", nullable=False)
    inspector_id = Column(String(100))
    inspection_date = Column(DateTime)
    inspection_result = Column(String(20))  # passed, failed, conditional
    inspection_notes = Column(Text)
    inspected_at = Column(DateTime)

    # Counterparty
    counterparty_status = Column(String(20), default="pending", nullable=False)  # pending, accepted, rejected
    responded_at = Column(DateTime)

    overall_status = Column(String(30), default="pending", nullable=False, index=True)
    rejection_reason = Column(String(100))
    progress_percent = Column(Integer, default=25, nullable=False)
    certificate_approval_id = Column(String(40))  # weak link, never a foreign key

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    offer = relationship("MarketplaceOffer", back_populates="requests")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "buyer_ref": self.buyer_ref,
            "requester_ref": self.requester_ref,
            "quantity_requested": self.quantity_requested,
            "agreed_price": self.agreed_price,
            "regulatory_review": {
                "status": self.regulatory_review_status,
                "reviewer_id": self.regulatory_reviewer_id,
                "notes": self.regulatory_notes,
                "reviewed_at": _iso(self.reviewed_at),
            },
            "revision_notes": self.revision_notes,
            "port_inspection": {
                "status": self.port_inspection_status,
                "inspector_id": self.inspector_id,
                "scheduled_for": _iso(self.inspection_date),
                "result": self.inspection_result,
                "notes": self.inspection_notes,
            },
            "counterparty_response": {"status": self.counterparty_status},
            "overall_status": self.overall_status,
            "rejection_reason": self.rejection_reason,
            "progress_percent": self.progress_percent,
            "certificate_approval_id": self.certificate_approval_id,
            "version": self.version,
        }


class PurchaseRequestEvent(Base):
    """Audit trail of purchase request transitions"""
    __tablename__ = "purchase_request_events"

    id = Column(Integer, primary_key=True)
    request_id = Column(String(40), ForeignKey("purchase_requests.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    from_status = Column(String(30))
    to_status = Column(String(30), nullable=False)
    actor_id = Column(String(100))
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class ParkedOperation(Base):
    """Operations whose retries were exhausted, surfaced to operators"""
    __tablename__ = "parked_operations"

    id = Column(String(40), primary_key=True)
    operation_type = Column(String(50), nullable=False)  # "workflow.advance", "notification"
    entity_id = Column(String(40), index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), default="retry_exhausted", index=True)  # retry_exhausted, resolved
    retry_count = Column(Integer, default=0)
    error_message = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "status": self.status,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
        }


def init_database(engine):
    """Create all tables."""
    Base.metadata.create_all(engine)
