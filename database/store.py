"""
Transactional row store used by the compliance core

The core treats persistence as a row store with per-record optimistic
concurrency: read a row, compute the new values, then write them with
``UPDATE ... WHERE id = :id AND version = :expected``. Zero affected rows
means another writer got there first.
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Optional, Type

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from compliance.errors import EntityNotFound, ExternalServiceError, StateConflictError

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    """Opaque record identifier, e.g. ``WF-3F8A2B1C9D0E``."""
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


class Store:
    """Thin transactional wrapper around a SQLAlchemy session factory."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def transaction(self):
        """Session with automatic commit/rollback and driver error translation."""
        db: Session = self.session_factory()
        db.expire_on_commit = False
        try:
            yield db
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise StateConflictError(f"Concurrent write rejected by the store: {e.orig}") from e
        except (OperationalError, InterfaceError) as e:
            db.rollback()
            logger.warning(f"Store unavailable: {e.orig}")
            raise ExternalServiceError(f"Store unavailable: {e.orig}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def load(self, db: Session, model: Type, record_id: str, label: Optional[str] = None):
        record = db.get(model, record_id)
        if record is None:
            raise EntityNotFound(f"{label or model.__name__} {record_id} not found", entity_id=record_id)
        return record

    def conditional_update(
        self,
        db: Session,
        model: Type,
        record_id: str,
        expected_version: int,
        values: Dict[str, Any],
    ) -> int:
        """
        Write ``values`` only if the row is still at ``expected_version``.

        Returns the new version. Raises StateConflictError when the row
        moved on since it was read.
        """
        new_version = expected_version + 1
        rows = (
            db.query(model)
            .filter(model.id == record_id, model.version == expected_version)
            .update(dict(values, version=new_version), synchronize_session=False)
        )
        if rows != 1:
            logger.info(f"Version conflict on {model.__tablename__}/{record_id} (expected v{expected_version})")
            raise StateConflictError(
                f"{model.__name__} {record_id} was modified concurrently",
                entity_id=record_id,
            )
        return new_version

    def refresh(self, db: Session, record):
        """Reload a record after a conditional update."""
        db.expire(record)
        db.refresh(record)
        return record
