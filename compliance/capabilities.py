"""
Role capabilities

Every state-machine transition calls ``require_capability`` with the
caller's principal. The principal's role comes from the authenticated
role claim, never from the request payload.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional

from compliance.errors import RoleNotAuthorized

ALL_JURISDICTIONS = "*"


class Role(str, Enum):
    FARMER = "farmer"
    FIELD_AGENT = "field_agent"
    INSPECTOR = "inspector"
    BUYER = "buyer"
    EXPORTER = "exporter"
    REGULATORY_REVIEWER = "regulatory_reviewer"
    REGULATORY_SUPERVISOR = "regulatory_supervisor"
    PORT_INSPECTOR = "port_inspector"
    OPERATOR = "operator"
    SYSTEM = "system"


class Capability(str, Enum):
    WORKFLOW_REGISTER = "workflow.register"
    WORKFLOW_MAP_LAND = "workflow.map_land"
    WORKFLOW_ASSESS = "workflow.assess"
    WORKFLOW_CERTIFY = "workflow.certify"
    WORKFLOW_LOGISTICS = "workflow.logistics"
    WORKFLOW_EXPORT = "workflow.export"
    WORKFLOW_OVERRIDE = "workflow.override"
    CERTIFICATE_REQUEST = "certificate.request"
    CERTIFICATE_REVIEW = "certificate.review"
    CERTIFICATE_SEND = "certificate.send"
    OFFER_MANAGE = "marketplace.offer"
    PURCHASE_REQUEST = "marketplace.request"
    REGULATORY_REVIEW = "marketplace.review"
    INSPECTION_SCHEDULE = "marketplace.schedule_inspection"
    INSPECTION_RESULT = "marketplace.inspect"
    INSPECTION_OVERRIDE = "marketplace.inspection_override"
    COUNTERPARTY_RESPOND = "marketplace.respond"
    OPERATIONS = "operator.queue"
    SWEEP = "marketplace.sweep"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.FARMER: frozenset({Capability.WORKFLOW_REGISTER}),
    Role.FIELD_AGENT: frozenset({
        Capability.WORKFLOW_REGISTER,
        Capability.WORKFLOW_MAP_LAND,
        Capability.WORKFLOW_LOGISTICS,
        Capability.CERTIFICATE_REQUEST,
    }),
    Role.INSPECTOR: frozenset({
        Capability.WORKFLOW_ASSESS,
        Capability.WORKFLOW_CERTIFY,
        Capability.CERTIFICATE_REQUEST,
    }),
    Role.BUYER: frozenset({
        Capability.WORKFLOW_LOGISTICS,
        Capability.OFFER_MANAGE,
        Capability.COUNTERPARTY_RESPOND,
    }),
    Role.EXPORTER: frozenset({
        Capability.WORKFLOW_LOGISTICS,
        Capability.WORKFLOW_EXPORT,
        Capability.CERTIFICATE_REQUEST,
        Capability.PURCHASE_REQUEST,
    }),
    Role.REGULATORY_REVIEWER: frozenset({
        Capability.WORKFLOW_ASSESS,
        Capability.WORKFLOW_CERTIFY,
        Capability.CERTIFICATE_REVIEW,
        Capability.CERTIFICATE_SEND,
        Capability.REGULATORY_REVIEW,
        Capability.INSPECTION_SCHEDULE,
    }),
    Role.REGULATORY_SUPERVISOR: frozenset({
        Capability.WORKFLOW_OVERRIDE,
        Capability.CERTIFICATE_REVIEW,
        Capability.CERTIFICATE_SEND,
        Capability.INSPECTION_OVERRIDE,
    }),
    Role.PORT_INSPECTOR: frozenset({
        Capability.INSPECTION_SCHEDULE,
        Capability.INSPECTION_RESULT,
    }),
    Role.OPERATOR: frozenset({
        Capability.WORKFLOW_OVERRIDE,
        Capability.OPERATIONS,
    }),
    Role.SYSTEM: frozenset({
        Capability.CERTIFICATE_REQUEST,
        Capability.CERTIFICATE_SEND,
        Capability.OFFER_MANAGE,
        Capability.OPERATIONS,
        Capability.SWEEP,
    }),
}


@dataclass(frozen=True)
class Principal:
    """Authenticated caller: actor id, role claim and jurisdictions."""
    actor_id: str
    role: str
    jurisdictions: FrozenSet[str] = field(default_factory=frozenset)

    def covers(self, jurisdiction: Optional[str]) -> bool:
        if jurisdiction is None:
            return True
        return ALL_JURISDICTIONS in self.jurisdictions or jurisdiction in self.jurisdictions


SYSTEM_PRINCIPAL = Principal(actor_id="system", role=Role.SYSTEM.value, jurisdictions=frozenset({ALL_JURISDICTIONS}))


def capabilities_for(role: str) -> FrozenSet[Capability]:
    try:
        return ROLE_CAPABILITIES[Role(role)]
    except ValueError:
        return frozenset()


def require_capability(
    principal: Principal,
    capability: Capability,
    jurisdiction: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> None:
    """Raise RoleNotAuthorized unless the principal's role grants ``capability`` in ``jurisdiction``."""
    if capability not in capabilities_for(principal.role):
        raise RoleNotAuthorized(
            f"Role '{principal.role}' lacks capability '{capability.value}'",
            entity_id=entity_id,
            attempted=capability.value,
        )
    if not principal.covers(jurisdiction):
        raise RoleNotAuthorized(
            f"Actor {principal.actor_id} is not authorized for jurisdiction '{jurisdiction}'",
            entity_id=entity_id,
            attempted=capability.value,
        )


def require_actor(principal: Principal, expected_actor_id: str, action: str, entity_id: Optional[str] = None) -> None:
    """Raise RoleNotAuthorized unless the principal is the named party (or the system)."""
    if principal.role == Role.SYSTEM.value:
        return
    if principal.actor_id != expected_actor_id:
        raise RoleNotAuthorized(
            f"Only {expected_actor_id} may {action}",
            entity_id=entity_id,
            attempted=action,
        )
