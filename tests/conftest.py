"""
Shared fixtures: in-memory database, recording notification sink, a
manually driven clock and the actors used across the tests.
"""

import itertools
import os
import sys
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from compliance.capabilities import Principal
from compliance.config import Settings
from compliance.errors import ExternalServiceError
from compliance.service.dependencies import build_services
from database.connection import build_engine, build_session_factory
from database.models import init_database

START = datetime(2025, 1, 6, 8, 0, 0)

PLOT = [[-0.4201, 36.9512], [-0.4201, 36.9587], [-0.4263, 36.9587], [-0.4263, 36.9512]]
ALL_DOCUMENTS = ["land_title", "farmer_id", "harvest_declaration"]


class RecordingSink:
    """Notification sink that keeps every event; can be told to fail."""

    def __init__(self):
        self.events = []
        self.failures = 0

    def emit(self, event):
        if self.failures > 0:
            self.failures -= 1
            raise ExternalServiceError("notification endpoint unavailable", entity_id=event.entity_id)
        self.events.append(event)

    def types(self):
        return [event.type for event in self.events]

    def of_type(self, event_type):
        return [event for event in self.events if event.type == event_type]


class ManualClock:
    def __init__(self, start=START):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings():
    return Settings(
        store_retry_attempts=3,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        conflict_retry_attempts=3,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def services(settings, session_factory, sink, clock):
    return build_services(
        settings=settings,
        session_factory=session_factory,
        sink=sink,
        clock=clock,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def actors():
    return SimpleNamespace(
        farmer=Principal("F-001", "farmer", frozenset({"Nyeri"})),
        field_agent=Principal("AG-7", "field_agent", frozenset({"Nyeri"})),
        inspector=Principal("INS-3", "inspector", frozenset({"Nyeri"})),
        reviewer=Principal("REV-1", "regulatory_reviewer", frozenset({"Nyeri"})),
        second_reviewer=Principal("REV-2", "regulatory_reviewer", frozenset({"Nyeri"})),
        foreign_reviewer=Principal("REV-9", "regulatory_reviewer", frozenset({"Kiambu"})),
        supervisor=Principal("SUP-1", "regulatory_supervisor", frozenset({"*"})),
        exporter=Principal("EXP-1", "exporter", frozenset({"*"})),
        other_exporter=Principal("EXP-2", "exporter", frozenset({"*"})),
        buyer=Principal("BUY-1", "buyer", frozenset({"*"})),
        other_buyer=Principal("BUY-2", "buyer", frozenset({"*"})),
        port_inspector=Principal("PORT-4", "port_inspector", frozenset({"*"})),
        other_port_inspector=Principal("PORT-5", "port_inspector", frozenset({"*"})),
        operator=Principal("OPS-1", "operator", frozenset({"*"})),
    )


@pytest.fixture
def registration():
    return {"farmer_id": "F-001", "farmer_name": "Amina Njeri", "county": "Nyeri"}


@pytest.fixture
def pipeline(actors):
    """(stage, actor, payload) for every stage after farmer_registration, clean evidence."""
    return [
        ("land_mapping", actors.field_agent, {"plot_polygon": PLOT}),
        ("commodity_registration", actors.field_agent, {"commodity": "coffee", "quantity_kg": 1200, "declared_grade": "A"}),
        ("eudr_assessment", actors.inspector, {"tree_cover_loss_hectares": 0.1, "documents": ALL_DOCUMENTS}),
        ("quality_assessment", actors.inspector, {"quality_grade": "A", "inspector_id": "INS-3"}),
        ("certificate_requested", actors.inspector, {"certificate_type": "eudr_due_diligence"}),
        ("certificate_issued", actors.inspector, {}),
        ("harvest_recorded", actors.field_agent, {"harvest_date": "2025-01-10", "harvested_kg": 1150}),
        ("warehouse_intake", actors.field_agent, {"warehouse_id": "WH-NY-01", "received_kg": 1140}),
        ("transport_dispatched", actors.field_agent, {"transporter_id": "TR-22", "vehicle_ref": "KDA 123X"}),
        ("port_arrival", actors.field_agent, {"port_code": "KEMBA"}),
        ("export_documentation", actors.exporter, {"exporter_id": "EXP-1", "destination_country": "DE"}),
        ("export_pack_generated", actors.exporter, {"pack_reference": "PACK-0001"}),
    ]


@pytest.fixture
def drive_workflow(services, actors, registration, pipeline):
    """
    Create a workflow and advance it through ``until`` (inclusive).

    The certificate is approved right after certificate_requested unless
    ``approve_certificate`` is False.
    """
    batches = itertools.count(1)

    def drive(until=None, approve_certificate=True):
        batch_ref = f"BATCH-2025-{next(batches):04d}"
        workflow = services.orchestrator.create_workflow(batch_ref, registration, actors.field_agent)
        workflow_id = workflow["id"]
        if until is None:
            return workflow_id
        for stage, actor, payload in pipeline:
            result = services.orchestrator.advance(workflow_id, stage, payload, actor)
            if stage == "certificate_requested" and approve_certificate:
                approval_id = result.workflow["context"]["certificate_approval_id"]
                services.approvals.decide(approval_id, actors.reviewer, "approve")
            if stage == until:
                break
        return workflow_id

    return drive


@pytest.fixture
def offer(services, actors, clock):
    """500 units @ 2750 from Nyeri, expiring in 30 days."""
    return services.marketplace.create_offer(
        actors.buyer,
        commodity="coffee",
        quantity=500,
        price_per_unit=2750,
        source_location="Nyeri",
        expires_at=clock.now + timedelta(days=30),
        eudr_compliant=True,
    )


@pytest.fixture
def file_services(tmp_path, sink):
    """Services on a file-backed SQLite database, for tests that use threads."""
    engine = build_engine(f"sqlite:///{tmp_path / 'agritrace.db'}")
    init_database(engine)
    settings = Settings(
        store_retry_attempts=6,
        backoff_base_seconds=0.05,
        backoff_max_seconds=0.5,
        conflict_retry_attempts=5,
    )
    yield build_services(settings=settings, session_factory=build_session_factory(engine), sink=sink)
    engine.dispose()
