"""
Commodity Workflow Orchestrator tests

Covers ordering, idempotent retries, evaluator routing (pass / review /
reject), human overrides, certificate waits, operator controls and the
retry / parking path for store outages.
"""

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime

import pytest

from compliance.errors import (
    ExternalServiceError,
    GateRejected,
    InvalidTransition,
    MissingInput,
    PreconditionError,
    RoleNotAuthorized,
    StateConflictError,
    ValidationError,
    WorkflowBlocked,
)
from compliance.service.dependencies import build_services
from compliance.workflow.orchestrator import WorkflowOrchestrator
from database.store import Store

from conftest import ALL_DOCUMENTS, PLOT


class FlakyStore(Store):
    """Store whose transactions fail while ``failures`` is positive."""

    def __init__(self, session_factory, failures=0):
        super().__init__(session_factory)
        self.failures = failures
        self.attempts = 0

    @contextmanager
    def transaction(self):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ExternalServiceError("store unavailable")
        with super().transaction() as db:
            yield db


class ConflictOnceStore(Store):
    """Loses the first versioned write, as if another writer got there first."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.conflicts = 1

    def conditional_update(self, db, model, record_id, expected_version, values):
        if self.conflicts:
            self.conflicts -= 1
            raise StateConflictError(f"{record_id} modified concurrently", entity_id=record_id)
        return super().conditional_update(db, model, record_id, expected_version, values)


def _orchestrator_on(store, services, settings, clock):
    return WorkflowOrchestrator(
        store,
        services.notifier,
        services.approvals,
        settings,
        operator_queue=services.operator_queue,
        clock=clock,
        sleep=lambda seconds: None,
    )


# ============================================================================
# Creation and ordering
# ============================================================================

def test_create_workflow(services, actors, registration, sink):
    workflow = services.orchestrator.create_workflow("BATCH-2025-0001", registration, actors.field_agent)

    assert workflow["id"].startswith("WF-")
    assert workflow["current_stage"] == "farmer_registration"
    assert workflow["blocked"] is False
    assert [entry["stage"] for entry in workflow["stage_history"]] == ["farmer_registration"]
    assert workflow["context"]["county"] == "Nyeri"
    assert sink.types() == ["workflow.created"]


def test_repeated_registration_returns_existing_workflow(services, actors, registration, sink):
    first = services.orchestrator.create_workflow("BATCH-2025-0001", registration, actors.field_agent)
    second = services.orchestrator.create_workflow("BATCH-2025-0001", dict(registration), actors.field_agent)

    assert second["id"] == first["id"]
    assert len(services.orchestrator.list()) == 1
    assert sink.types() == ["workflow.created"]

    changed = dict(registration, farmer_name="Someone Else")
    with pytest.raises(InvalidTransition):
        services.orchestrator.create_workflow("BATCH-2025-0001", changed, actors.field_agent)


def test_archived_batch_can_be_registered_again(services, drive_workflow, actors, registration):
    archived_id = drive_workflow(until="export_pack_generated")
    batch_ref = services.orchestrator.get(archived_id)["commodity_batch_ref"]

    renewed = services.orchestrator.create_workflow(batch_ref, registration, actors.field_agent)
    assert renewed["id"] != archived_id


def test_create_workflow_requires_registration_fields(services, actors):
    with pytest.raises(MissingInput):
        services.orchestrator.create_workflow("BATCH-1", {"farmer_id": "F-001", "county": "Nyeri"}, actors.field_agent)


def test_create_workflow_outside_jurisdiction(services, actors):
    payload = {"farmer_id": "F-002", "farmer_name": "Peter Kamau", "county": "Kiambu"}
    with pytest.raises(RoleNotAuthorized):
        services.orchestrator.create_workflow("BATCH-2", payload, actors.farmer)


def test_full_pipeline_archives_workflow(services, drive_workflow, sink):
    workflow_id = drive_workflow(until="export_pack_generated")
    workflow = services.orchestrator.get(workflow_id)

    assert workflow["current_stage"] == "export_pack_generated"
    assert workflow["archived"] is True
    assert workflow["archived_at"] is not None
    assert len(workflow["stage_history"]) == 13
    assert "workflow.archived" in sink.types()

    entered = [datetime.fromisoformat(entry["entered_at"]) for entry in workflow["stage_history"]]
    assert all(earlier < later for earlier, later in zip(entered, entered[1:]))
    # every entry but the last has been exited
    assert all(entry["exited_at"] for entry in workflow["stage_history"][:-1])


def test_archived_workflow_refuses_new_stages(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="export_pack_generated")
    with pytest.raises(InvalidTransition):
        services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT[:3]}, actors.field_agent)


def test_stages_must_follow_predecessor(services, drive_workflow, actors):
    workflow_id = drive_workflow()
    with pytest.raises(InvalidTransition) as excinfo:
        services.orchestrator.advance(
            workflow_id,
            "commodity_registration",
            {"commodity": "coffee", "quantity_kg": 100, "declared_grade": "A"},
            actors.field_agent,
        )
    assert excinfo.value.current_state["current_stage"] == "farmer_registration"


def test_manual_review_cannot_be_requested(services, drive_workflow, actors):
    workflow_id = drive_workflow()
    with pytest.raises(InvalidTransition):
        services.orchestrator.advance(workflow_id, "manual_review", {}, actors.operator)


def test_unknown_stage(services, drive_workflow, actors):
    workflow_id = drive_workflow()
    with pytest.raises(ValidationError):
        services.orchestrator.advance(workflow_id, "roasting", {}, actors.field_agent)


def test_role_without_capability(services, drive_workflow, actors):
    workflow_id = drive_workflow()
    with pytest.raises(RoleNotAuthorized):
        services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.farmer)


def test_missing_and_invalid_inputs(services, drive_workflow, actors):
    workflow_id = drive_workflow()
    with pytest.raises(MissingInput):
        services.orchestrator.advance(workflow_id, "land_mapping", {}, actors.field_agent)
    with pytest.raises(ValidationError):
        services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT[:2]}, actors.field_agent)

    services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.field_agent)
    with pytest.raises(ValidationError):
        services.orchestrator.advance(
            workflow_id,
            "commodity_registration",
            {"commodity": "coffee", "quantity_kg": "lots", "declared_grade": "A"},
            actors.field_agent,
        )
    with pytest.raises(ValidationError):
        services.orchestrator.advance(
            workflow_id,
            "commodity_registration",
            {"commodity": "coffee", "quantity_kg": 100, "declared_grade": "Premium"},
            actors.field_agent,
        )


# ============================================================================
# Idempotency
# ============================================================================

def test_identical_retry_returns_stored_result(services, drive_workflow, actors, sink):
    workflow_id = drive_workflow()
    first = services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.field_agent)
    events_after_first = len(sink.events)

    second = services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.field_agent)

    assert second.replayed is True
    assert second.new_stage == first.new_stage == "land_mapping"
    assert second.workflow["version"] == first.workflow["version"]
    assert len(second.workflow["stage_history"]) == 2
    assert len(sink.events) == events_after_first


def test_same_stage_different_payload_is_invalid(services, drive_workflow, actors):
    workflow_id = drive_workflow()
    services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.field_agent)
    with pytest.raises(InvalidTransition):
        services.orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT[:3]}, actors.field_agent)


def test_identical_review_retry_is_replayed(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="commodity_registration")
    payload = {"tree_cover_loss_hectares": 1.0, "documents": ALL_DOCUMENTS}
    services.orchestrator.advance(workflow_id, "eudr_assessment", payload, actors.inspector)

    again = services.orchestrator.advance(workflow_id, "eudr_assessment", payload, actors.inspector)
    assert again.replayed is True
    assert again.verdict == "review"
    assert again.new_stage == "manual_review"


# ============================================================================
# Evaluator routing
# ============================================================================

def test_clean_assessment_passes(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="commodity_registration")
    result = services.orchestrator.advance(
        workflow_id,
        "eudr_assessment",
        {"tree_cover_loss_hectares": 0.1, "documents": ALL_DOCUMENTS},
        actors.inspector,
    )
    assert result.verdict == "pass"
    assert result.evaluation["risk_level"] == "low"
    assert result.workflow["context"]["eudr_assessment_evaluation"]["score"] == 100


def test_review_verdict_routes_to_manual_review(services, drive_workflow, actors, sink):
    workflow_id = drive_workflow(until="commodity_registration")
    result = services.orchestrator.advance(
        workflow_id,
        "eudr_assessment",
        {"tree_cover_loss_hectares": 1.0, "documents": ALL_DOCUMENTS},
        actors.inspector,
    )

    assert result.verdict == "review"
    assert result.new_stage == "manual_review"
    history = result.workflow["stage_history"]
    assert [(e["stage"], e["verdict"]) for e in history[-2:]] == [("eudr_assessment", "review"), ("manual_review", None)]
    assert result.workflow["review_stage"] == "eudr_assessment"
    assert "workflow.manual_review" in sink.types()

    with pytest.raises(PreconditionError):
        services.orchestrator.advance(workflow_id, "quality_assessment", {"quality_grade": "A", "inspector_id": "INS-3"}, actors.inspector)


def test_override_pass_returns_to_reviewed_stage(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="commodity_registration")
    services.orchestrator.advance(
        workflow_id,
        "eudr_assessment",
        {"tree_cover_loss_hectares": 0.1, "documents": ["land_title", "farmer_id"]},
        actors.inspector,
    )

    workflow = services.orchestrator.override(workflow_id, actors.supervisor, "pass", "Harvest declaration verified on site")

    assert workflow["current_stage"] == "eudr_assessment"
    assert workflow["last_verdict"] == "pass"
    assert workflow["review_stage"] is None
    assert workflow["stage_history"][-1]["verdict"] == "pass"

    # the quality gate still sees the missing document
    result = services.orchestrator.advance(workflow_id, "quality_assessment", {"quality_grade": "A", "inspector_id": "INS-3"}, actors.inspector)
    assert result.verdict == "review"
    assert result.workflow["review_stage"] == "quality_assessment"


def test_override_reject_blocks(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="commodity_registration")
    services.orchestrator.advance(
        workflow_id,
        "eudr_assessment",
        {"tree_cover_loss_hectares": 1.2, "documents": ALL_DOCUMENTS},
        actors.inspector,
    )
    workflow = services.orchestrator.override(workflow_id, actors.supervisor, "reject", "Clearing visible on imagery")

    assert workflow["blocked"] is True
    assert workflow["current_stage"] == "eudr_assessment"
    assert workflow["last_verdict"] == "reject"


def test_override_requires_review_or_block(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="land_mapping")
    with pytest.raises(PreconditionError):
        services.orchestrator.override(workflow_id, actors.supervisor, "pass", "nothing to decide")
    with pytest.raises(MissingInput):
        services.orchestrator.override(workflow_id, actors.supervisor, "pass", " ")
    with pytest.raises(RoleNotAuthorized):
        services.orchestrator.override(workflow_id, actors.inspector, "pass", "not my call")


def test_reject_verdict_blocks_before_raising(services, drive_workflow, actors, sink):
    workflow_id = drive_workflow(until="commodity_registration")
    payload = {"tree_cover_loss_hectares": 3.4, "documents": ALL_DOCUMENTS}

    with pytest.raises(GateRejected) as excinfo:
        services.orchestrator.advance(workflow_id, "eudr_assessment", payload, actors.inspector)

    state = excinfo.value.current_state
    assert state["blocked"] is True
    assert state["current_stage"] == "eudr_assessment"
    assert state["stage_history"][-1]["verdict"] == "reject"

    stored = services.orchestrator.get(workflow_id)
    assert stored["blocked"] is True
    assert "eudr_assessment rejected" in stored["block_reason"]
    assert "workflow.blocked" in sink.types()

    # an identical retry reports the same rejection without writing
    with pytest.raises(GateRejected):
        services.orchestrator.advance(workflow_id, "eudr_assessment", payload, actors.inspector)
    assert len(services.orchestrator.get(workflow_id)["stage_history"]) == len(stored["stage_history"])

    with pytest.raises(WorkflowBlocked):
        services.orchestrator.advance(workflow_id, "quality_assessment", {"quality_grade": "A", "inspector_id": "INS-3"}, actors.inspector)


def test_resubmission_after_unblock(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="commodity_registration")
    with pytest.raises(GateRejected):
        services.orchestrator.advance(
            workflow_id,
            "eudr_assessment",
            {"tree_cover_loss_hectares": 3.4, "documents": ALL_DOCUMENTS},
            actors.inspector,
        )
    services.orchestrator.unblock(workflow_id, actors.operator)

    # leaving a failed assessment is refused until it is re-run
    with pytest.raises(PreconditionError):
        services.orchestrator.advance(workflow_id, "quality_assessment", {"quality_grade": "A", "inspector_id": "INS-3"}, actors.inspector)

    result = services.orchestrator.advance(
        workflow_id,
        "eudr_assessment",
        {"tree_cover_loss_hectares": 0.2, "documents": ALL_DOCUMENTS, "survey_ref": "RESURVEY-2"},
        actors.inspector,
    )
    assert result.verdict == "pass"
    assert [e["stage"] for e in result.workflow["stage_history"][-2:]] == ["eudr_assessment", "eudr_assessment"]

    result = services.orchestrator.advance(workflow_id, "quality_assessment", {"quality_grade": "B", "inspector_id": "INS-3"}, actors.inspector)
    assert result.verdict == "pass"


# ============================================================================
# Certificates
# ============================================================================

def test_certificate_requested_creates_approval(services, drive_workflow, actors, sink):
    workflow_id = drive_workflow(until="certificate_requested", approve_certificate=False)
    workflow = services.orchestrator.get(workflow_id)
    approval_id = workflow["context"]["certificate_approval_id"]

    approval = services.approvals.get(approval_id)
    assert approval["status"] == "pending"
    assert approval["subject_ref"] == workflow_id
    assert approval["jurisdiction"] == "Nyeri"
    assert [a["id"] for a in services.approvals.pending_queue()] == [approval_id]
    assert "certificate.submitted" in sink.types()


def test_certificate_issued_waits_for_approval(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="certificate_requested", approve_certificate=False)
    approval_id = services.orchestrator.get(workflow_id)["context"]["certificate_approval_id"]

    with pytest.raises(PreconditionError):
        services.orchestrator.advance(workflow_id, "certificate_issued", {}, actors.inspector)

    services.approvals.decide(approval_id, actors.reviewer, "approve")
    result = services.orchestrator.advance(workflow_id, "certificate_issued", {}, actors.inspector)
    assert result.new_stage == "certificate_issued"


def test_rejected_certificate_never_issues(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="certificate_requested", approve_certificate=False)
    approval_id = services.orchestrator.get(workflow_id)["context"]["certificate_approval_id"]
    services.approvals.decide(approval_id, actors.reviewer, "reject", "Land title does not match plot")

    with pytest.raises(PreconditionError):
        services.orchestrator.advance(workflow_id, "certificate_issued", {}, actors.inspector)


def test_rejected_certificate_can_be_requested_again(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="certificate_requested", approve_certificate=False)
    rejected_id = services.orchestrator.get(workflow_id)["context"]["certificate_approval_id"]
    services.approvals.decide(rejected_id, actors.reviewer, "reject", "Land title does not match plot")

    # the original request is sent again once the title is corrected
    request_payload = {"certificate_type": "eudr_due_diligence"}
    result = services.orchestrator.advance(workflow_id, "certificate_requested", request_payload, actors.inspector)

    assert result.replayed is False
    assert result.new_stage == "certificate_requested"
    renewed_id = result.workflow["context"]["certificate_approval_id"]
    assert renewed_id != rejected_id
    assert services.approvals.get(renewed_id)["status"] == "pending"
    assert services.approvals.get(rejected_id)["status"] == "rejected"
    stages = [entry["stage"] for entry in result.workflow["stage_history"]]
    assert stages[-2:] == ["certificate_requested", "certificate_requested"]

    # a lost response on the new request is still an idempotent retry
    again = services.orchestrator.advance(workflow_id, "certificate_requested", request_payload, actors.inspector)
    assert again.replayed is True
    assert again.workflow["context"]["certificate_approval_id"] == renewed_id

    services.approvals.decide(renewed_id, actors.reviewer, "approve")
    issued = services.orchestrator.advance(workflow_id, "certificate_issued", {}, actors.inspector)
    assert issued.new_stage == "certificate_issued"


def test_pending_certificate_cannot_be_requested_twice(services, drive_workflow, actors):
    workflow_id = drive_workflow(until="certificate_requested", approve_certificate=False)
    with pytest.raises(InvalidTransition):
        services.orchestrator.advance(workflow_id, "certificate_requested", {"certificate_type": "organic"}, actors.inspector)


# ============================================================================
# Operator controls and configuration
# ============================================================================

def test_block_and_unblock(services, drive_workflow, actors, sink):
    workflow_id = drive_workflow(until="land_mapping")
    blocked = services.orchestrator.block(workflow_id, actors.operator, "Farmer disputes plot boundary")
    assert blocked["blocked"] is True

    # blocking twice is a no-op
    assert services.orchestrator.block(workflow_id, actors.operator, "again")["version"] == blocked["version"]

    with pytest.raises(WorkflowBlocked):
        services.orchestrator.advance(
            workflow_id,
            "commodity_registration",
            {"commodity": "coffee", "quantity_kg": 1200, "declared_grade": "A"},
            actors.field_agent,
        )

    services.orchestrator.unblock(workflow_id, actors.operator)
    result = services.orchestrator.advance(
        workflow_id,
        "commodity_registration",
        {"commodity": "coffee", "quantity_kg": 1200, "declared_grade": "A"},
        actors.field_agent,
    )
    assert result.new_stage == "commodity_registration"
    assert sink.types().count("workflow.blocked") == 1
    assert "workflow.unblocked" in sink.types()


def test_block_requires_reason_and_capability(services, drive_workflow, actors):
    workflow_id = drive_workflow()
    with pytest.raises(MissingInput):
        services.orchestrator.block(workflow_id, actors.operator, "")
    with pytest.raises(RoleNotAuthorized):
        services.orchestrator.block(workflow_id, actors.exporter, "not allowed")


def test_maintenance_mode_refuses_mutations(settings, session_factory, sink, clock, actors, registration):
    services = build_services(
        settings=replace(settings, maintenance_mode=True),
        session_factory=session_factory,
        sink=sink,
        clock=clock,
        sleep=lambda seconds: None,
    )
    with pytest.raises(PreconditionError):
        services.orchestrator.create_workflow("BATCH-1", registration, actors.field_agent)
    assert services.orchestrator.list() == []


def test_list_workflows(services, drive_workflow):
    drive_workflow(until="land_mapping")
    drive_workflow()
    assert len(services.orchestrator.list()) == 2
    assert len(services.orchestrator.list(stage="land_mapping")) == 1


# ============================================================================
# Failure handling
# ============================================================================

def test_conflict_is_retried_with_fresh_read(services, settings, session_factory, clock, drive_workflow, actors):
    workflow_id = drive_workflow()
    store = ConflictOnceStore(session_factory)
    orchestrator = _orchestrator_on(store, services, settings, clock)

    result = orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.field_agent)

    assert result.new_stage == "land_mapping"
    assert [e["stage"] for e in result.workflow["stage_history"]] == ["farmer_registration", "land_mapping"]


def test_transient_store_failure_recovers(services, settings, session_factory, clock, drive_workflow, actors):
    workflow_id = drive_workflow()
    store = FlakyStore(session_factory, failures=2)
    orchestrator = _orchestrator_on(store, services, settings, clock)

    result = orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.field_agent)

    assert result.new_stage == "land_mapping"
    assert store.attempts == 3
    assert services.operator_queue.list() == []


def test_exhausted_retries_park_and_replay(services, settings, session_factory, clock, drive_workflow, actors):
    workflow_id = drive_workflow()
    store = FlakyStore(session_factory, failures=100)
    orchestrator = _orchestrator_on(store, services, settings, clock)

    with pytest.raises(ExternalServiceError) as excinfo:
        orchestrator.advance(workflow_id, "land_mapping", {"plot_polygon": PLOT}, actors.field_agent)

    operation_id = excinfo.value.parked_operation_id
    assert operation_id is not None
    assert store.attempts == settings.store_retry_attempts

    parked = services.operator_queue.list()
    assert [op["id"] for op in parked] == [operation_id]
    assert parked[0]["operation_type"] == "workflow.advance"
    assert parked[0]["payload"]["stage"] == "land_mapping"
    assert parked[0]["payload"]["actor_id"] == "AG-7"

    store.failures = 0
    with pytest.raises(RoleNotAuthorized):
        orchestrator.replay_parked(operation_id, actors.field_agent)

    result = orchestrator.replay_parked(operation_id, actors.operator)
    assert result.new_stage == "land_mapping"
    assert services.operator_queue.get(operation_id)["status"] == "resolved"

    # replaying again is refused, the advance itself stays idempotent
    with pytest.raises(PreconditionError):
        orchestrator.replay_parked(operation_id, actors.operator)
