"""
Domain errors for AgriTrace Ledger

Every error carries the entity id, the authoritative state at the time of
failure, and the transition that was attempted, so clients can reconcile
without a second round-trip.
"""

from typing import Any, Dict, Optional


class ComplianceError(Exception):
    """Base class for all domain errors."""

    kind = "compliance_error"
    retryable = False

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        current_state: Optional[Dict[str, Any]] = None,
        attempted: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.current_state = current_state
        self.attempted = attempted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "detail": self.message,
            "entity_id": self.entity_id,
            "attempted": self.attempted,
            "current_state": self.current_state,
        }


class ValidationError(ComplianceError):
    """Malformed input. Not retried."""
    kind = "validation_error"


class MissingInput(ValidationError):
    kind = "missing_input"


class EntityNotFound(ValidationError):
    kind = "not_found"


class AuthorizationError(ComplianceError):
    """Role or capability mismatch. Not retried."""
    kind = "authorization_error"


class RoleNotAuthorized(AuthorizationError):
    kind = "role_not_authorized"


class StateConflictError(ComplianceError):
    """Optimistic version mismatch. Re-read and retry."""
    kind = "state_conflict"
    retryable = True


class PreconditionError(ComplianceError):
    """Stage or gate not satisfied in the current state."""
    kind = "precondition_failed"


class InvalidTransition(PreconditionError):
    kind = "invalid_transition"


class WorkflowBlocked(PreconditionError):
    kind = "workflow_blocked"


class GateRejected(PreconditionError):
    kind = "gate_rejected"


class AlreadyDecided(PreconditionError):
    kind = "already_decided"


class NotApproved(PreconditionError):
    kind = "not_approved"


class InsufficientQuantity(PreconditionError):
    kind = "insufficient_quantity"


class ExpirationError(ComplianceError):
    """Offer or window lapsed."""
    kind = "expired"


class OfferExpired(ExpirationError):
    kind = "offer_expired"


class ExternalServiceError(ComplianceError):
    """Store or notification failure. Retried with backoff, then parked."""
    kind = "external_service_error"
    retryable = True

    def __init__(self, message: str, parked_operation_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.parked_operation_id = parked_operation_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["parked_operation_id"] = self.parked_operation_id
        return data
