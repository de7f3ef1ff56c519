"""
Service wiring

One set of components per process, built from Settings. Routers reach them
through the ``get_services`` dependency; tests override it with services
bound to an in-memory database.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from compliance.certificates.approvals import CertificateApprovals
from compliance.config import Settings, load_settings
from compliance.marketplace.engine import MarketplaceEngine
from compliance.notifications import Notifier, build_sink
from compliance.operator_queue import OperatorQueue
from compliance.retry import BackoffPolicy
from compliance.workflow.orchestrator import WorkflowOrchestrator
from database.models import init_database, utcnow
from database.store import Store


@dataclass
class Services:
    settings: Settings
    store: Store
    notifier: Notifier
    operator_queue: OperatorQueue
    approvals: CertificateApprovals
    orchestrator: WorkflowOrchestrator
    marketplace: MarketplaceEngine


def build_services(
    settings: Optional[Settings] = None,
    session_factory=None,
    sink=None,
    clock: Callable = utcnow,
    sleep: Optional[Callable[[float], None]] = None,
) -> Services:
    settings = settings or load_settings()
    if session_factory is None:
        from database.connection import SessionLocal, engine
        init_database(engine)
        session_factory = SessionLocal

    store = Store(session_factory)
    operator_queue = OperatorQueue(store)
    notifier = Notifier(sink or build_sink(settings), BackoffPolicy.from_settings(settings), operator_queue, sleep=sleep)
    approvals = CertificateApprovals(store, notifier, settings, clock=clock, sleep=sleep)
    return Services(
        settings=settings,
        store=store,
        notifier=notifier,
        operator_queue=operator_queue,
        approvals=approvals,
        orchestrator=WorkflowOrchestrator(
            store, notifier, approvals, settings, operator_queue=operator_queue, clock=clock, sleep=sleep
        ),
        marketplace=MarketplaceEngine(store, notifier, approvals, settings, clock=clock, sleep=sleep),
    )


@lru_cache()
def get_services() -> Services:
    """Process-wide services (FastAPI dependency)."""
    return build_services()
