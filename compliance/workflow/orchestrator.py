"""
Commodity Workflow Orchestrator

Moves a commodity batch through the Stage Registry pipeline. Each call is
one read/compute/write unit against the workflow row:

1. load the workflow and its stage history
2. check capability, idempotency, ordering, block/review state and inputs
3. run the evaluator at the assessment stages
4. write the new stage with a conditional update on ``version`` and append
   the history entry in the same transaction
5. publish notifications after the commit

A ``reject`` verdict is persisted (workflow blocked) before GateRejected is
raised to the caller.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from compliance.capabilities import Capability, Principal, require_capability
from compliance.certificates.approvals import ISSUABLE_STATUSES, REJECTED, CertificateApprovals
from compliance.config import Settings
from compliance.errors import (
    ExternalServiceError,
    GateRejected,
    InvalidTransition,
    MissingInput,
    PreconditionError,
    ValidationError,
    WorkflowBlocked,
)
from compliance.notifications import Notifier
from compliance.operator_queue import RESOLVED, OperatorQueue
from compliance.retry import BackoffPolicy, run_unit
from compliance.workflow.evaluator import (
    DocumentationEvidence,
    GeospatialEvidence,
    evaluate,
    is_valid_polygon,
    normalize_grade,
)
from compliance.workflow.stages import Stage, StageDefinition, REGISTRY, get_stage
from database import crud
from database.models import Workflow, WorkflowStageEntry, utcnow
from database.store import Store, new_id

logger = logging.getLogger(__name__)

ADVANCE_OPERATION = "workflow.advance"


def payload_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a stage payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class AdvanceResult:
    new_stage: str
    verdict: Optional[str]
    workflow: Dict[str, Any]
    evaluation: Optional[Dict[str, Any]] = None
    replayed: bool = False
    certificate: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_stage": self.new_stage,
            "verdict": self.verdict,
            "evaluation": self.evaluation,
            "replayed": self.replayed,
            "workflow": self.workflow,
        }


class WorkflowOrchestrator:
    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        approvals: CertificateApprovals,
        settings: Settings,
        operator_queue: Optional[OperatorQueue] = None,
        clock: Callable = utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.approvals = approvals
        self.settings = settings
        self.operator_queue = operator_queue
        self.clock = clock
        self.policy = BackoffPolicy.from_settings(settings)
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _run(self, label: str, unit):
        return run_unit(unit, self.policy, self.settings.conflict_retry_attempts, label=label, sleep=self.sleep)

    def _check_maintenance(self, workflow_id: Optional[str], attempted: str) -> None:
        if self.settings.maintenance_mode:
            raise PreconditionError(
                "Workflow mutations are disabled while maintenance mode is on",
                entity_id=workflow_id,
                attempted=attempted,
            )

    def _next_instant(self, previous):
        """Clock reading strictly after ``previous``."""
        now = self.clock()
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    @staticmethod
    def _jurisdiction(context: Dict[str, Any]) -> Optional[str]:
        return context.get("county")

    def _validate_inputs(self, definition: StageDefinition, payload: Dict[str, Any], context: Dict[str, Any], workflow_id: Optional[str]):
        for key in definition.required_inputs:
            value = payload.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MissingInput(
                    f"Stage {definition.stage.value} requires '{key}'",
                    entity_id=workflow_id,
                    attempted=definition.stage.value,
                )

        for key in definition.required_context:
            if context.get(key) in (None, ""):
                raise MissingInput(
                    f"Stage {definition.stage.value} needs '{key}' from an earlier stage",
                    entity_id=workflow_id,
                    attempted=definition.stage.value,
                )

        for key in definition.numeric_inputs:
            value = payload[key]
            if isinstance(value, bool):
                raise ValidationError(f"'{key}' must be a number", entity_id=workflow_id, attempted=definition.stage.value)
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise ValidationError(f"'{key}' must be a number, got {value!r}", entity_id=workflow_id, attempted=definition.stage.value)
            if number < 0:
                raise ValidationError(f"'{key}' cannot be negative", entity_id=workflow_id, attempted=definition.stage.value)

        if "plot_polygon" in payload and not is_valid_polygon(payload["plot_polygon"]):
            raise ValidationError(
                "plot_polygon must be a list of at least three [lat, lon] vertices",
                entity_id=workflow_id,
                attempted=definition.stage.value,
            )
        if "documents" in payload and not isinstance(payload["documents"], list):
            raise ValidationError("documents must be a list of document names", entity_id=workflow_id, attempted=definition.stage.value)
        for key in ("declared_grade", "quality_grade"):
            if key in payload:
                normalize_grade(payload[key])

    def _evaluate(self, stage: Stage, merged: Dict[str, Any], payload: Dict[str, Any]):
        if stage == Stage.EUDR_ASSESSMENT:
            grade = merged.get("declared_grade")
        else:
            grade = payload["quality_grade"]
        geospatial = GeospatialEvidence(
            plot_polygon=merged.get("plot_polygon"),
            tree_cover_loss_hectares=float(merged.get("tree_cover_loss_hectares") or 0.0),
            protected_area_overlap=bool(merged.get("protected_area_overlap", False)),
        )
        documentation = DocumentationEvidence.from_names(merged.get("documents") or [])
        return evaluate(geospatial, documentation, grade)

    @staticmethod
    def _entry(workflow_id: str, seq: int, stage: str, entered_at, payload: Dict[str, Any], principal: Principal, verdict: Optional[str] = None):
        return WorkflowStageEntry(
            workflow_id=workflow_id,
            seq=seq,
            stage=stage,
            entered_at=entered_at,
            verdict=verdict,
            payload_hash=payload_hash(payload),
            payload=payload,
            actor_id=principal.actor_id,
        )

    def _may_rerun(self, db, definition: StageDefinition, workflow: Workflow, context: Dict[str, Any]) -> bool:
        """An assessment that did not pass, or a certificate request that was rejected, may be entered again."""
        if definition.evaluates:
            return workflow.last_verdict != "pass"
        if definition.requests_certificate and context.get("certificate_approval_id"):
            return self.approvals.status_of(db, context["certificate_approval_id"]) == REJECTED
        return False

    @staticmethod
    def _replay_candidate(history: List[WorkflowStageEntry]) -> Optional[WorkflowStageEntry]:
        """The entry an identical retry would have produced (skips the manual_review marker)."""
        if not history:
            return None
        last = history[-1]
        if last.stage == Stage.MANUAL_REVIEW.value and len(history) > 1:
            return history[-2]
        return last

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_workflow(self, commodity_batch_ref: str, payload: Dict[str, Any], principal: Principal) -> Dict[str, Any]:
        """
        Register the farmer batch; the workflow starts at farmer_registration.

        A batch has one active workflow. Repeating the registration returns it
        unchanged; a different registration for the same batch is refused.
        """
        self._check_maintenance(None, "workflow.create")
        if not commodity_batch_ref or not commodity_batch_ref.strip():
            raise MissingInput("commodity_batch_ref is required", attempted="workflow.create")

        payload = dict(payload or {})
        definition = REGISTRY[Stage.FARMER_REGISTRATION]
        self._validate_inputs(definition, payload, {}, None)
        require_capability(principal, definition.capability, self._jurisdiction(payload))

        def unit():
            with self.store.transaction() as db:
                existing = crud.find_active_workflow(db, commodity_batch_ref)
                if existing is not None:
                    history = crud.get_workflow_history(db, existing.id)
                    if history and history[0].payload_hash == payload_hash(payload):
                        return existing.to_dict(history=history), True
                    raise InvalidTransition(
                        f"Batch {commodity_batch_ref} already has active workflow {existing.id}",
                        entity_id=existing.id,
                        current_state=existing.to_dict(history=history),
                        attempted="workflow.create",
                    )

                now = self.clock()
                workflow = Workflow(
                    id=new_id("WF"),
                    commodity_batch_ref=commodity_batch_ref,
                    current_stage=definition.stage.value,
                    blocked=False,
                    context=payload,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
                db.add(workflow)
                entry = self._entry(workflow.id, 1, definition.stage.value, now, payload, principal)
                db.add(entry)
                db.flush()
                return workflow.to_dict(history=[entry]), False

        snapshot, replayed = self._run("workflow.create", unit)
        if replayed:
            logger.info(f"Batch {commodity_batch_ref}: duplicate registration, returning workflow {snapshot['id']}")
            return snapshot
        logger.info(f"Workflow {snapshot['id']} created for batch {commodity_batch_ref} by {principal.actor_id}")
        self.notifier.publish(
            "workflow.created",
            snapshot["id"],
            commodity_batch_ref=commodity_batch_ref,
            stage=snapshot["current_stage"],
        )
        return snapshot

    # ------------------------------------------------------------------
    # Advance
    # ------------------------------------------------------------------

    def advance(self, workflow_id: str, stage: str, payload: Dict[str, Any], principal: Principal) -> AdvanceResult:
        """
        Move the workflow into ``stage``.

        Identical retries return the stored result without writing. Store
        failures that outlast the backoff are parked for operator replay and
        surfaced as ExternalServiceError with the parked operation id.
        """
        payload = dict(payload or {})
        stage = stage.value if isinstance(stage, Stage) else str(stage)
        try:
            return self._advance(workflow_id, stage, payload, principal)
        except ExternalServiceError as e:
            operation_id = None
            if self.operator_queue is not None:
                operation_id = self.operator_queue.park_quietly(
                    ADVANCE_OPERATION,
                    workflow_id,
                    {
                        "workflow_id": workflow_id,
                        "stage": stage,
                        "payload": payload,
                        "actor_id": principal.actor_id,
                        "role": principal.role,
                        "jurisdictions": sorted(principal.jurisdictions),
                    },
                    retry_count=self.policy.max_attempts,
                    error=str(e),
                )
            logger.error(f"Advance of {workflow_id} to {stage} failed after retries (parked as {operation_id})", exc_info=True)
            raise ExternalServiceError(
                f"Advance of {workflow_id} to {stage} could not be stored: {e.message}",
                parked_operation_id=operation_id,
                entity_id=workflow_id,
                attempted=stage,
            ) from e

    def _advance(self, workflow_id: str, stage: str, payload: Dict[str, Any], principal: Principal) -> AdvanceResult:
        self._check_maintenance(workflow_id, str(stage))
        definition = get_stage(stage)
        target = definition.stage
        if definition.side_state:
            raise InvalidTransition(
                f"{target.value} is entered only through a review verdict",
                entity_id=workflow_id,
                attempted=target.value,
            )
        incoming_hash = payload_hash(payload)

        def unit():
            with self.store.transaction() as db:
                workflow = self.store.load(db, Workflow, workflow_id, "Workflow")
                history = crud.get_workflow_history(db, workflow_id)
                context = dict(workflow.context or {})
                require_capability(principal, definition.capability, self._jurisdiction(context), entity_id=workflow_id)

                candidate = self._replay_candidate(history)
                identical = candidate is not None and candidate.stage == target.value and candidate.payload_hash == incoming_hash
                # a rejected certificate may be requested again with the same payload
                if identical and definition.requests_certificate and self._may_rerun(db, definition, workflow, context):
                    identical = False
                if identical:
                    snapshot = workflow.to_dict(history=history)
                    if candidate.verdict == "reject":
                        raise GateRejected(
                            f"{target.value} was rejected: {workflow.block_reason or 'see evaluation'}",
                            entity_id=workflow_id,
                            current_state=snapshot,
                            attempted=target.value,
                        )
                    return AdvanceResult(
                        new_stage=workflow.current_stage,
                        verdict=candidate.verdict,
                        workflow=snapshot,
                        evaluation=context.get(f"{target.value}_evaluation"),
                        replayed=True,
                    )

                if workflow.archived:
                    raise InvalidTransition(
                        f"Workflow {workflow_id} is archived",
                        entity_id=workflow_id,
                        current_state=workflow.to_dict(history=history),
                        attempted=target.value,
                    )
                if workflow.current_stage == Stage.MANUAL_REVIEW.value:
                    raise PreconditionError(
                        f"Workflow {workflow_id} is awaiting a manual review override of {workflow.review_stage}",
                        entity_id=workflow_id,
                        current_state=workflow.to_dict(history=history),
                        attempted=target.value,
                    )
                if workflow.blocked:
                    raise WorkflowBlocked(
                        f"Workflow {workflow_id} is blocked: {workflow.block_reason}",
                        entity_id=workflow_id,
                        current_state=workflow.to_dict(history=history),
                        attempted=target.value,
                    )

                current = Stage(workflow.current_stage)
                rerun = target == current and self._may_rerun(db, definition, workflow, context)
                if target == current and not rerun:
                    raise InvalidTransition(
                        f"Workflow {workflow_id} already entered {target.value} with a different payload",
                        entity_id=workflow_id,
                        current_state=workflow.to_dict(history=history),
                        attempted=target.value,
                    )
                if not rerun:
                    if definition.predecessor != current:
                        expected = definition.predecessor.value if definition.predecessor else "none"
                        raise InvalidTransition(
                            f"{target.value} must follow {expected}, workflow is at {current.value}",
                            entity_id=workflow_id,
                            current_state=workflow.to_dict(history=history),
                            attempted=target.value,
                        )
                    if REGISTRY[current].evaluates and workflow.last_verdict != "pass":
                        raise PreconditionError(
                            f"{current.value} has verdict {workflow.last_verdict}, it must pass before {target.value}",
                            entity_id=workflow_id,
                            current_state=workflow.to_dict(history=history),
                            attempted=target.value,
                        )

                self._validate_inputs(definition, payload, context, workflow_id)
                merged = dict(context)
                merged.update(payload)

                verdict = None
                evaluation = None
                if definition.evaluates:
                    evaluation = self._evaluate(target, merged, payload).to_dict()
                    verdict = evaluation["verdict"]
                    merged[f"{target.value}_evaluation"] = evaluation

                certificate = None
                if definition.requests_certificate:
                    approval = self.approvals.create(
                        db,
                        payload["certificate_type"],
                        workflow_id,
                        payload.get("jurisdiction") or self._jurisdiction(context),
                        principal,
                        priority=payload.get("priority", 0),
                    )
                    merged["certificate_approval_id"] = approval.id
                    certificate = approval.to_dict()

                if definition.requires_certificate:
                    approval_id = context["certificate_approval_id"]
                    status = self.approvals.status_of(db, approval_id)
                    if status not in ISSUABLE_STATUSES:
                        hint = "request a new certificate" if status == REJECTED else "waits for approval"
                        raise PreconditionError(
                            f"Certificate {approval_id} is {status}, {target.value} {hint}",
                            entity_id=workflow_id,
                            current_state=workflow.to_dict(history=history),
                            attempted=target.value,
                        )

                last = history[-1] if history else None
                entered_at = self._next_instant(last.entered_at if last else None)
                values = {
                    "current_stage": target.value,
                    "review_stage": None,
                    "last_verdict": verdict,
                    "context": merged,
                    "updated_at": entered_at,
                }
                new_entries = [self._entry(workflow_id, (last.seq if last else 0) + 1, target.value, entered_at, payload, principal, verdict)]

                if verdict == "review":
                    review_at = entered_at + timedelta(microseconds=1)
                    new_entries[0].exited_at = review_at
                    new_entries.append(self._entry(workflow_id, new_entries[0].seq + 1, Stage.MANUAL_REVIEW.value, review_at, {}, principal))
                    values["current_stage"] = Stage.MANUAL_REVIEW.value
                    values["review_stage"] = target.value
                elif verdict == "reject":
                    values["blocked"] = True
                    values["block_reason"] = f"{target.value} rejected: {', '.join(evaluation['factors']) or 'high risk'}"

                if definition.terminal:
                    values["archived"] = True
                    values["archived_at"] = entered_at

                self.store.conditional_update(db, Workflow, workflow_id, workflow.version, values)
                if last is not None and last.exited_at is None:
                    last.exited_at = entered_at
                for entry in new_entries:
                    db.add(entry)
                db.flush()

                self.store.refresh(db, workflow)
                snapshot = workflow.to_dict(history=history + new_entries)
                return AdvanceResult(
                    new_stage=workflow.current_stage,
                    verdict=verdict,
                    workflow=snapshot,
                    evaluation=evaluation,
                    certificate=certificate,
                )

        result = self._run(f"workflow.advance {workflow_id}->{target.value}", unit)
        if result.replayed:
            logger.info(f"Workflow {workflow_id}: duplicate {target.value} request, returning stored result")
            return result

        logger.info(f"Workflow {workflow_id} entered {target.value} (verdict={result.verdict}) by {principal.actor_id}")
        self._announce(workflow_id, target, result, principal)

        if result.verdict == "reject":
            raise GateRejected(
                f"{target.value} rejected: {result.workflow['block_reason']}",
                entity_id=workflow_id,
                current_state=result.workflow,
                attempted=target.value,
            )
        return result

    def _announce(self, workflow_id: str, stage: Stage, result: AdvanceResult, principal: Principal) -> None:
        self.notifier.publish(
            "workflow.stage_entered",
            workflow_id,
            stage=stage.value,
            verdict=result.verdict,
            actor_id=principal.actor_id,
        )
        if result.certificate is not None:
            self.approvals.announce_submitted(result.certificate)
        if result.verdict == "review":
            self.notifier.publish("workflow.manual_review", workflow_id, review_stage=stage.value, evaluation=result.evaluation)
        elif result.verdict == "reject":
            self.notifier.publish("workflow.blocked", workflow_id, reason=result.workflow["block_reason"])
        if result.workflow["archived"]:
            self.notifier.publish("workflow.archived", workflow_id, stage=stage.value)

    # ------------------------------------------------------------------
    # Human and operator controls
    # ------------------------------------------------------------------

    def override(self, workflow_id: str, principal: Principal, decision: str, notes: str) -> Dict[str, Any]:
        """
        Human decision on a workflow in manual_review or blocked.

        ``pass`` returns it to the reviewed stage with verdict pass and clears
        the block. ``reject`` blocks it at that stage.
        """
        self._check_maintenance(workflow_id, "workflow.override")
        if decision not in ("pass", "reject"):
            raise ValidationError(f"Override decision must be pass or reject, got '{decision}'", entity_id=workflow_id, attempted="workflow.override")
        if not notes or not notes.strip():
            raise MissingInput("Override requires notes", entity_id=workflow_id, attempted="workflow.override")

        def unit():
            with self.store.transaction() as db:
                workflow = self.store.load(db, Workflow, workflow_id, "Workflow")
                history = crud.get_workflow_history(db, workflow_id)
                require_capability(principal, Capability.WORKFLOW_OVERRIDE, self._jurisdiction(workflow.context or {}), entity_id=workflow_id)

                in_review = workflow.current_stage == Stage.MANUAL_REVIEW.value
                if workflow.archived or not (in_review or workflow.blocked):
                    raise PreconditionError(
                        f"Workflow {workflow_id} is neither in manual review nor blocked",
                        entity_id=workflow_id,
                        current_state=workflow.to_dict(history=history),
                        attempted=f"workflow.override.{decision}",
                    )

                target = workflow.review_stage if in_review else workflow.current_stage
                last = history[-1] if history else None
                entered_at = self._next_instant(last.entered_at if last else None)
                values = {"current_stage": target, "review_stage": None, "last_verdict": decision, "updated_at": entered_at}
                if decision == "pass":
                    values.update(blocked=False, block_reason=None)
                else:
                    values.update(blocked=True, block_reason=f"override rejected: {notes}")

                self.store.conditional_update(db, Workflow, workflow_id, workflow.version, values)
                if last is not None and last.exited_at is None:
                    last.exited_at = entered_at
                entry = self._entry(
                    workflow_id,
                    (last.seq if last else 0) + 1,
                    target,
                    entered_at,
                    {"override": decision, "notes": notes},
                    principal,
                    verdict=decision,
                )
                db.add(entry)
                db.flush()
                self.store.refresh(db, workflow)
                return workflow.to_dict(history=history + [entry])

        snapshot = self._run(f"workflow.override {workflow_id}", unit)
        logger.info(f"Workflow {workflow_id} override {decision} by {principal.actor_id}")
        self.notifier.publish("workflow.override", workflow_id, decision=decision, stage=snapshot["current_stage"], actor_id=principal.actor_id)
        return snapshot

    def block(self, workflow_id: str, principal: Principal, reason: str) -> Dict[str, Any]:
        """Operator cancellation: stop the workflow until it is unblocked."""
        self._check_maintenance(workflow_id, "workflow.block")
        if not reason or not reason.strip():
            raise MissingInput("Blocking requires a reason", entity_id=workflow_id, attempted="workflow.block")
        return self._set_blocked(workflow_id, principal, True, reason)

    def unblock(self, workflow_id: str, principal: Principal) -> Dict[str, Any]:
        self._check_maintenance(workflow_id, "workflow.unblock")
        return self._set_blocked(workflow_id, principal, False, None)

    def _set_blocked(self, workflow_id: str, principal: Principal, blocked: bool, reason: Optional[str]) -> Dict[str, Any]:
        action = "block" if blocked else "unblock"

        def unit():
            with self.store.transaction() as db:
                workflow = self.store.load(db, Workflow, workflow_id, "Workflow")
                history = crud.get_workflow_history(db, workflow_id)
                require_capability(principal, Capability.WORKFLOW_OVERRIDE, self._jurisdiction(workflow.context or {}), entity_id=workflow_id)
                if workflow.archived:
                    raise InvalidTransition(
                        f"Workflow {workflow_id} is archived",
                        entity_id=workflow_id,
                        current_state=workflow.to_dict(history=history),
                        attempted=f"workflow.{action}",
                    )
                if workflow.blocked == blocked:
                    return workflow.to_dict(history=history), False

                self.store.conditional_update(
                    db,
                    Workflow,
                    workflow_id,
                    workflow.version,
                    {"blocked": blocked, "block_reason": reason, "updated_at": self.clock()},
                )
                self.store.refresh(db, workflow)
                return workflow.to_dict(history=history), True

        snapshot, changed = self._run(f"workflow.{action} {workflow_id}", unit)
        if changed:
            logger.info(f"Workflow {workflow_id} {action}ed by {principal.actor_id}")
            self.notifier.publish(f"workflow.{action}ed", workflow_id, reason=reason, actor_id=principal.actor_id)
        return snapshot

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, workflow_id: str) -> Dict[str, Any]:
        with self.store.transaction() as db:
            workflow = self.store.load(db, Workflow, workflow_id, "Workflow")
            return workflow.to_dict(history=crud.get_workflow_history(db, workflow_id))

    def list(self, stage: Optional[str] = None, blocked: Optional[bool] = None, include_archived: bool = False) -> List[Dict[str, Any]]:
        with self.store.transaction() as db:
            return [
                w.to_dict(history=crud.get_workflow_history(db, w.id))
                for w in crud.list_workflows(db, stage=stage, blocked=blocked, include_archived=include_archived)
            ]

    # ------------------------------------------------------------------
    # Operator replay
    # ------------------------------------------------------------------

    def replay_parked(self, operation_id: str, principal: Principal) -> AdvanceResult:
        """Re-run a parked advance as its original caller and resolve it."""
        require_capability(principal, Capability.OPERATIONS, entity_id=operation_id)
        if self.operator_queue is None:
            raise PreconditionError("No operator queue configured", entity_id=operation_id, attempted="operator.replay")

        operation = self.operator_queue.get(operation_id)
        if operation["operation_type"] != ADVANCE_OPERATION:
            raise ValidationError(
                f"Parked operation {operation_id} is a {operation['operation_type']}, not a workflow advance",
                entity_id=operation_id,
                attempted="operator.replay",
            )
        if operation["status"] == RESOLVED:
            raise PreconditionError(
                f"Parked operation {operation_id} already resolved",
                entity_id=operation_id,
                current_state=operation,
                attempted="operator.replay",
            )

        data = operation["payload"]
        original = Principal(
            actor_id=data["actor_id"],
            role=data["role"],
            jurisdictions=frozenset(data.get("jurisdictions") or ()),
        )
        try:
            result = self._advance(data["workflow_id"], data["stage"], data.get("payload") or {}, original)
        except GateRejected:
            self.operator_queue.resolve(operation_id)
            raise
        self.operator_queue.resolve(operation_id)
        logger.info(f"Replayed parked operation {operation_id} for {data['workflow_id']} ({principal.actor_id})")
        return result
