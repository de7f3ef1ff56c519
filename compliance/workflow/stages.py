"""
Stage Registry

Static table of the per-batch compliance pipeline: thirteen ordered stages
plus the ``manual_review`` side state. Each definition names its single
predecessor, the payload keys it requires, the context keys earlier
stages must have supplied, and the capability needed to enter it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from compliance.capabilities import Capability
from compliance.errors import ValidationError


class Stage(str, Enum):
    FARMER_REGISTRATION = "farmer_registration"
    LAND_MAPPING = "land_mapping"
    COMMODITY_REGISTRATION = "commodity_registration"
    EUDR_ASSESSMENT = "eudr_assessment"
    QUALITY_ASSESSMENT = "quality_assessment"
    CERTIFICATE_REQUESTED = "certificate_requested"
    CERTIFICATE_ISSUED = "certificate_issued"
    HARVEST_RECORDED = "harvest_recorded"
    WAREHOUSE_INTAKE = "warehouse_intake"
    TRANSPORT_DISPATCHED = "transport_dispatched"
    PORT_ARRIVAL = "port_arrival"
    EXPORT_DOCUMENTATION = "export_documentation"
    EXPORT_PACK_GENERATED = "export_pack_generated"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class StageDefinition:
    stage: Stage
    capability: Optional[Capability]
    predecessor: Optional[Stage] = None
    required_inputs: Tuple[str, ...] = ()
    numeric_inputs: Tuple[str, ...] = ()
    required_context: Tuple[str, ...] = ()
    evaluates: bool = False             # calls the risk/compliance evaluator
    requests_certificate: bool = False  # submits a CertificateApproval
    requires_certificate: bool = False  # waits on an approved/sent certificate
    terminal: bool = False
    side_state: bool = False


_DEFINITIONS = (
    StageDefinition(
        Stage.FARMER_REGISTRATION,
        Capability.WORKFLOW_REGISTER,
        required_inputs=("farmer_id", "farmer_name", "county"),
    ),
    StageDefinition(
        Stage.LAND_MAPPING,
        Capability.WORKFLOW_MAP_LAND,
        predecessor=Stage.FARMER_REGISTRATION,
        required_inputs=("plot_polygon",),
        required_context=("farmer_id",),
    ),
    StageDefinition(
        Stage.COMMODITY_REGISTRATION,
        Capability.WORKFLOW_REGISTER,
        predecessor=Stage.LAND_MAPPING,
        required_inputs=("commodity", "quantity_kg", "declared_grade"),
        numeric_inputs=("quantity_kg",),
    ),
    StageDefinition(
        Stage.EUDR_ASSESSMENT,
        Capability.WORKFLOW_ASSESS,
        predecessor=Stage.COMMODITY_REGISTRATION,
        required_inputs=("tree_cover_loss_hectares", "documents"),
        numeric_inputs=("tree_cover_loss_hectares",),
        required_context=("farmer_id", "plot_polygon"),
        evaluates=True,
    ),
    StageDefinition(
        Stage.QUALITY_ASSESSMENT,
        Capability.WORKFLOW_ASSESS,
        predecessor=Stage.EUDR_ASSESSMENT,
        required_inputs=("quality_grade", "inspector_id"),
        required_context=("plot_polygon", "documents"),
        evaluates=True,
    ),
    StageDefinition(
        Stage.CERTIFICATE_REQUESTED,
        Capability.CERTIFICATE_REQUEST,
        predecessor=Stage.QUALITY_ASSESSMENT,
        required_inputs=("certificate_type",),
        requests_certificate=True,
    ),
    StageDefinition(
        Stage.CERTIFICATE_ISSUED,
        Capability.WORKFLOW_CERTIFY,
        predecessor=Stage.CERTIFICATE_REQUESTED,
        required_context=("certificate_approval_id",),
        requires_certificate=True,
    ),
    StageDefinition(
        Stage.HARVEST_RECORDED,
        Capability.WORKFLOW_LOGISTICS,
        predecessor=Stage.CERTIFICATE_ISSUED,
        required_inputs=("harvest_date", "harvested_kg"),
        numeric_inputs=("harvested_kg",),
    ),
    StageDefinition(
        Stage.WAREHOUSE_INTAKE,
        Capability.WORKFLOW_LOGISTICS,
        predecessor=Stage.HARVEST_RECORDED,
        required_inputs=("warehouse_id", "received_kg"),
        numeric_inputs=("received_kg",),
    ),
    StageDefinition(
        Stage.TRANSPORT_DISPATCHED,
        Capability.WORKFLOW_LOGISTICS,
        predecessor=Stage.WAREHOUSE_INTAKE,
        required_inputs=("transporter_id", "vehicle_ref"),
    ),
    StageDefinition(
        Stage.PORT_ARRIVAL,
        Capability.WORKFLOW_LOGISTICS,
        predecessor=Stage.TRANSPORT_DISPATCHED,
        required_inputs=("port_code",),
    ),
    StageDefinition(
        Stage.EXPORT_DOCUMENTATION,
        Capability.WORKFLOW_EXPORT,
        predecessor=Stage.PORT_ARRIVAL,
        required_inputs=("exporter_id", "destination_country"),
    ),
    StageDefinition(
        Stage.EXPORT_PACK_GENERATED,
        Capability.WORKFLOW_EXPORT,
        predecessor=Stage.EXPORT_DOCUMENTATION,
        required_inputs=("pack_reference",),
        required_context=("certificate_approval_id",),
        requires_certificate=True,
        terminal=True,
    ),
    StageDefinition(
        Stage.MANUAL_REVIEW,
        None,
        side_state=True,
    ),
)

REGISTRY: Dict[Stage, StageDefinition] = {definition.stage: definition for definition in _DEFINITIONS}

PIPELINE: Tuple[Stage, ...] = tuple(d.stage for d in _DEFINITIONS if not d.side_state)


def get_stage(name) -> StageDefinition:
    """Look up a stage definition by enum member or name."""
    try:
        return REGISTRY[Stage(name)]
    except ValueError:
        raise ValidationError(f"Unknown workflow stage '{name}'", attempted=str(name))

