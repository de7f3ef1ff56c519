"""
Certificate Approval State Machine

pending -> approved | rejected, approved -> sent. ``sent`` and ``rejected``
are terminal. Decisions are a single conditional update on ``version`` so
two reviewers racing on the same approval cannot both win.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from compliance.capabilities import Capability, Principal, require_capability
from compliance.config import Settings
from compliance.errors import AlreadyDecided, MissingInput, NotApproved, ValidationError
from compliance.notifications import Notifier
from compliance.retry import BackoffPolicy, run_unit
from database import crud
from database.models import CertificateApproval, utcnow
from database.store import Store, new_id

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
SENT = "sent"

ISSUABLE_STATUSES = (APPROVED, SENT)

DECISIONS = {"approve": APPROVED, "reject": REJECTED}


class CertificateApprovals:
    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        settings: Settings,
        clock: Callable = utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.policy = BackoffPolicy.from_settings(settings)
        self.sleep = sleep

    def _run(self, label: str, unit):
        return run_unit(unit, self.policy, self.settings.conflict_retry_attempts, label=label, sleep=self.sleep)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def create(
        self,
        db: Session,
        certificate_type: str,
        subject_ref: str,
        jurisdiction: str,
        principal: Principal,
        priority: int = 0,
    ) -> CertificateApproval:
        """
        Add a pending approval inside the caller's transaction.

        The orchestrator and the marketplace engine use this so the approval
        and the state change that requested it commit together. The caller
        publishes ``certificate.submitted`` after its commit.
        """
        for name, value in (("certificate_type", certificate_type), ("subject_ref", subject_ref), ("jurisdiction", jurisdiction)):
            if not value or not str(value).strip():
                raise MissingInput(f"Certificate request is missing '{name}'", attempted="certificate.submit")
        require_capability(principal, Capability.CERTIFICATE_REQUEST, jurisdiction, entity_id=subject_ref)

        approval = CertificateApproval(
            id=new_id("CERT"),
            certificate_type=certificate_type,
            subject_ref=subject_ref,
            jurisdiction=jurisdiction,
            requested_by=principal.actor_id,
            requested_by_role=principal.role,
            priority=int(priority),
            status=PENDING,
            created_at=self.clock(),
        )
        db.add(approval)
        db.flush()
        logger.info(f"Certificate {approval.id} ({certificate_type}) requested for {subject_ref} by {principal.actor_id}")
        return approval

    def submit(
        self,
        certificate_type: str,
        subject_ref: str,
        jurisdiction: str,
        principal: Principal,
        priority: int = 0,
    ) -> Dict[str, Any]:
        def unit():
            with self.store.transaction() as db:
                return self.create(db, certificate_type, subject_ref, jurisdiction, principal, priority).to_dict()

        snapshot = self._run("certificate.submit", unit)
        self.announce_submitted(snapshot)
        return snapshot

    def announce_submitted(self, snapshot: Dict[str, Any]) -> None:
        self.notifier.publish(
            "certificate.submitted",
            snapshot["id"],
            certificate_type=snapshot["certificate_type"],
            subject_ref=snapshot["subject_ref"],
            jurisdiction=snapshot["jurisdiction"],
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def decide(self, approval_id: str, principal: Principal, decision: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """Approve or reject a pending approval. Rejection requires notes."""
        if decision not in DECISIONS:
            raise ValidationError(
                f"Decision must be one of {', '.join(DECISIONS)}, got '{decision}'",
                entity_id=approval_id,
                attempted="certificate.decide",
            )
        if decision == "reject" and not (notes and notes.strip()):
            raise MissingInput("Rejection requires notes", entity_id=approval_id, attempted="certificate.decide")

        def unit():
            with self.store.transaction() as db:
                approval = self.store.load(db, CertificateApproval, approval_id, "Certificate approval")
                require_capability(principal, Capability.CERTIFICATE_REVIEW, approval.jurisdiction, entity_id=approval_id)
                if approval.status != PENDING:
                    raise AlreadyDecided(
                        f"Certificate {approval_id} already {approval.status}",
                        entity_id=approval_id,
                        current_state=approval.to_dict(),
                        attempted=f"certificate.{decision}",
                    )

                values = {
                    "status": DECISIONS[decision],
                    "reviewer_id": principal.actor_id,
                    "decision_at": self.clock(),
                    "review_notes": notes,
                }
                if decision == "reject":
                    values["rejection_reason"] = notes
                self.store.conditional_update(db, CertificateApproval, approval_id, approval.version, values)
                return self.store.refresh(db, approval).to_dict()

        snapshot = self._run("certificate.decide", unit)
        logger.info(f"Certificate {approval_id} {snapshot['status']} by {principal.actor_id}")
        self.notifier.publish(
            "certificate.decided",
            approval_id,
            status=snapshot["status"],
            subject_ref=snapshot["subject_ref"],
            reviewer_id=principal.actor_id,
        )
        return snapshot

    def send(self, approval_id: str, principal: Principal) -> Dict[str, Any]:
        def unit():
            with self.store.transaction() as db:
                approval = self.store.load(db, CertificateApproval, approval_id, "Certificate approval")
                require_capability(principal, Capability.CERTIFICATE_SEND, approval.jurisdiction, entity_id=approval_id)
                if approval.status == SENT:
                    raise AlreadyDecided(
                        f"Certificate {approval_id} was already sent",
                        entity_id=approval_id,
                        current_state=approval.to_dict(),
                        attempted="certificate.send",
                    )
                if approval.status != APPROVED:
                    raise NotApproved(
                        f"Certificate {approval_id} is {approval.status}, only approved certificates can be sent",
                        entity_id=approval_id,
                        current_state=approval.to_dict(),
                        attempted="certificate.send",
                    )
                self.store.conditional_update(db, CertificateApproval, approval_id, approval.version, {"status": SENT, "sent_at": self.clock()})
                return self.store.refresh(db, approval).to_dict()

        snapshot = self._run("certificate.send", unit)
        logger.info(f"Certificate {approval_id} sent by {principal.actor_id}")
        self.notifier.publish("certificate.sent", approval_id, subject_ref=snapshot["subject_ref"])
        return snapshot

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, approval_id: str) -> Dict[str, Any]:
        with self.store.transaction() as db:
            return self.store.load(db, CertificateApproval, approval_id, "Certificate approval").to_dict()

    def status_of(self, db: Session, approval_id: str) -> str:
        return self.store.load(db, CertificateApproval, approval_id, "Certificate approval").status

    def pending_queue(self, jurisdiction: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Reviewer queue, higher priority first then oldest first."""
        with self.store.transaction() as db:
            return [a.to_dict() for a in crud.list_pending_approvals(db, jurisdiction=jurisdiction, limit=limit)]
