"""
Database package for AgriTrace Ledger
"""

from .models import (
    Base,
    Workflow,
    WorkflowStageEntry,
    CertificateApproval,
    MarketplaceOffer,
    PurchaseRequest,
    PurchaseRequestEvent,
    ParkedOperation,
    init_database,
    utcnow,
)
from .store import Store, new_id

__all__ = [
    "Base",
    "Workflow",
    "WorkflowStageEntry",
    "CertificateApproval",
    "MarketplaceOffer",
    "PurchaseRequest",
    "PurchaseRequestEvent",
    "ParkedOperation",
    "init_database",
    "utcnow",
    "Store",
    "new_id",
]
