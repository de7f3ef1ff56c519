"""
Stage Registry tests
"""

import pytest

from compliance.capabilities import Capability
from compliance.errors import ValidationError
from compliance.workflow.stages import PIPELINE, REGISTRY, Stage, get_stage


def test_pipeline_order():
    assert [stage.value for stage in PIPELINE] == [
        "farmer_registration",
        "land_mapping",
        "commodity_registration",
        "eudr_assessment",
        "quality_assessment",
        "certificate_requested",
        "certificate_issued",
        "harvest_recorded",
        "warehouse_intake",
        "transport_dispatched",
        "port_arrival",
        "export_documentation",
        "export_pack_generated",
    ]
    assert Stage.MANUAL_REVIEW not in PIPELINE


def test_each_stage_follows_its_single_predecessor():
    assert REGISTRY[PIPELINE[0]].predecessor is None
    for previous, stage in zip(PIPELINE, PIPELINE[1:]):
        assert REGISTRY[stage].predecessor == previous


def test_only_last_stage_is_terminal():
    terminal = [stage for stage in PIPELINE if REGISTRY[stage].terminal]
    assert terminal == [Stage.EXPORT_PACK_GENERATED]


def test_assessment_stages_call_the_evaluator():
    assert [stage for stage in PIPELINE if REGISTRY[stage].evaluates] == [Stage.EUDR_ASSESSMENT, Stage.QUALITY_ASSESSMENT]
    assert REGISTRY[Stage.EUDR_ASSESSMENT].capability == Capability.WORKFLOW_ASSESS


def test_certificate_stages():
    assert REGISTRY[Stage.CERTIFICATE_REQUESTED].requests_certificate
    assert REGISTRY[Stage.CERTIFICATE_ISSUED].requires_certificate
    assert REGISTRY[Stage.EXPORT_PACK_GENERATED].requires_certificate


def test_get_stage_accepts_names_and_members():
    assert get_stage("land_mapping").stage == Stage.LAND_MAPPING
    assert get_stage(Stage.PORT_ARRIVAL).required_inputs == ("port_code",)


def test_get_stage_unknown():
    with pytest.raises(ValidationError):
        get_stage("roasting")

