"""
Operator queue for operations whose retries were exhausted

Rows are written with status ``retry_exhausted`` and stay there until an
operator replays them (or a redelivery run succeeds) and they are marked
``resolved``.
"""

import logging
from typing import Any, Dict, List, Optional

from compliance.errors import ExternalServiceError, PreconditionError
from compliance.notifications import NotificationEvent
from database import crud
from database.models import ParkedOperation, utcnow
from database.store import Store, new_id

logger = logging.getLogger(__name__)

RETRY_EXHAUSTED = "retry_exhausted"
RESOLVED = "resolved"


class OperatorQueue:
    def __init__(self, store: Store):
        self.store = store

    def park(
        self,
        operation_type: str,
        entity_id: Optional[str],
        payload: Dict[str, Any],
        retry_count: int = 0,
        error: Optional[str] = None,
    ) -> str:
        operation_id = new_id("OPS")
        with self.store.transaction() as db:
            db.add(ParkedOperation(
                id=operation_id,
                operation_type=operation_type,
                entity_id=entity_id,
                payload=payload,
                status=RETRY_EXHAUSTED,
                retry_count=retry_count,
                error_message=error,
            ))
        logger.warning(f"Parked {operation_type} for {entity_id} as {operation_id}: {error}")
        return operation_id

    def park_quietly(self, operation_type: str, entity_id: Optional[str], payload: Dict[str, Any], **kwargs) -> Optional[str]:
        """Park, logging instead of raising when the store itself is down."""
        try:
            return self.park(operation_type, entity_id, payload, **kwargs)
        except ExternalServiceError as e:
            logger.critical(
                f"Could not park {operation_type} for {entity_id}; operator action required. "
                f"Payload: {payload}. Error: {e}"
            )
            return None

    def get(self, operation_id: str) -> Dict[str, Any]:
        with self.store.transaction() as db:
            return self.store.load(db, ParkedOperation, operation_id, "Parked operation").to_dict()

    def list(self, status: Optional[str] = RETRY_EXHAUSTED, operation_type: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.store.transaction() as db:
            return [op.to_dict() for op in crud.list_parked_operations(db, status=status, operation_type=operation_type)]

    def resolve(self, operation_id: str) -> Dict[str, Any]:
        with self.store.transaction() as db:
            operation = self.store.load(db, ParkedOperation, operation_id, "Parked operation")
            if operation.status == RESOLVED:
                raise PreconditionError(
                    f"Parked operation {operation_id} already resolved",
                    entity_id=operation_id,
                    current_state=operation.to_dict(),
                    attempted="resolve",
                )
            operation.status = RESOLVED
            operation.resolved_at = utcnow()
            return operation.to_dict()

    def redeliver_notifications(self, notifier) -> Dict[str, int]:
        """One delivery attempt per parked notification; resolves the ones that go through."""
        delivered = failed = 0
        for operation in self.list(operation_type="notification"):
            event = NotificationEvent.from_dict(operation["payload"])
            try:
                notifier.sink.emit(event)
            except ExternalServiceError as e:
                failed += 1
                logger.warning(f"Redelivery of {operation['id']} failed: {e}")
                continue
            self.resolve(operation["id"])
            delivered += 1
        return {"delivered": delivered, "failed": failed}
