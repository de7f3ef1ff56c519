"""
Marketplace Coordination Engine

Three-party saga over a purchase request:

    pending -> under_review -> inspection_scheduled -> approved -> contract_signed
                    |                  |                  |
                    +-> revision_required -> pending      +-> rejected (veto)
                    +-> rejected       +-> rejected

A buyer posts a sell offer, an exporter requests to purchase against it, a
regulatory reviewer and a port inspector pass their gates, and only then
can the buyer (the counterparty) sign. Every transition is one conditional
update on the request's ``version``; the loser of a race re-reads and
either re-applies or gets a PreconditionError with the current state.

Quantity is reserved on the offer when a request is submitted and released
when the request is rejected, vetoed or cancelled.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from compliance.capabilities import SYSTEM_PRINCIPAL, Capability, Principal, require_actor, require_capability
from compliance.certificates.approvals import CertificateApprovals
from compliance.config import Settings
from compliance.errors import (
    InsufficientQuantity,
    MissingInput,
    OfferExpired,
    PreconditionError,
    ValidationError,
)
from compliance.notifications import Notifier
from compliance.retry import BackoffPolicy, run_unit
from database import crud
from database.models import MarketplaceOffer, PurchaseRequest, PurchaseRequestEvent, as_utc, utcnow
from database.store import Store, new_id

logger = logging.getLogger(__name__)

# Offer status
OFFER_OPEN = "open"
OFFER_EXPIRED = "expired"
OFFER_CONSUMED = "consumed"

# Purchase request overall status
PENDING = "pending"
UNDER_REVIEW = "under_review"
REVISION_REQUIRED = "revision_required"
INSPECTION_SCHEDULED = "inspection_scheduled"
APPROVED = "approved"
REJECTED = "rejected"
CONTRACT_SIGNED = "contract_signed"

TERMINAL_STATUSES = (REJECTED, CONTRACT_SIGNED)
AWAITING_REVIEW = (PENDING, REVISION_REQUIRED)

CONTRACT_CERTIFICATE = "export_contract"

PROGRESS_STEP = 25


def progress_for(reviewed: bool = False, inspected: bool = False, accepted: bool = False) -> int:
    """25% per completed milestone; submission always counts."""
    return PROGRESS_STEP * (1 + int(reviewed) + int(inspected) + int(accepted))


class MarketplaceEngine:
    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        approvals: CertificateApprovals,
        settings: Settings,
        clock: Callable = utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.approvals = approvals
        self.settings = settings
        self.clock = clock
        self.policy = BackoffPolicy.from_settings(settings)
        self.sleep = sleep

    def _run(self, label: str, unit):
        return run_unit(unit, self.policy, self.settings.conflict_retry_attempts, label=label, sleep=self.sleep)

    # ============================================================================
    # Offers
    # ============================================================================

    def create_offer(
        self,
        principal: Principal,
        commodity: str,
        quantity: float,
        price_per_unit: float,
        source_location: str,
        expires_at: datetime,
        available_from: Optional[datetime] = None,
        eudr_compliant: bool = False,
        seller_ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Post a sell offer. The seller is the calling buyer unless the system posts on someone's behalf."""
        require_capability(principal, Capability.OFFER_MANAGE, source_location)
        if seller_ref and seller_ref != principal.actor_id:
            require_actor(principal, seller_ref, "post offers for this seller")
        for name, value in (("commodity", commodity), ("source_location", source_location)):
            if not value or not str(value).strip():
                raise MissingInput(f"Offer requires '{name}'", attempted="offer.create")
        if quantity is None or quantity <= 0:
            raise ValidationError("Offer quantity must be positive", attempted="offer.create")
        if price_per_unit is None or price_per_unit <= 0:
            raise ValidationError("Offer price_per_unit must be positive", attempted="offer.create")

        now = self.clock()
        available_from = as_utc(available_from) if available_from else now
        expires_at = as_utc(expires_at)
        if expires_at <= available_from:
            raise ValidationError("Offer expires_at must be after available_from", attempted="offer.create")

        def unit():
            with self.store.transaction() as db:
                offer = MarketplaceOffer(
                    id=new_id("OFR"),
                    seller_ref=seller_ref or principal.actor_id,
                    commodity=commodity,
                    quantity=float(quantity),
                    remaining_quantity=float(quantity),
                    price_per_unit=float(price_per_unit),
                    source_location=source_location,
                    available_from=available_from,
                    expires_at=expires_at,
                    eudr_compliant=bool(eudr_compliant),
                    status=OFFER_OPEN,
                    created_at=now,
                )
                db.add(offer)
                db.flush()
                return offer.to_dict()

        snapshot = self._run("offer.create", unit)
        logger.info(f"Offer {snapshot['id']} posted by {snapshot['seller_ref']}: {quantity} {commodity} @ {price_per_unit}")
        self.notifier.publish(
            "offer.created",
            snapshot["id"],
            seller_ref=snapshot["seller_ref"],
            commodity=commodity,
            quantity=snapshot["quantity"],
            expires_at=snapshot["expires_at"],
        )
        return snapshot

    def expire_offer(self, offer_id: str, principal: Principal) -> Dict[str, Any]:
        """Withdraw an offer now. Requests still awaiting review are rejected."""

        def unit():
            with self.store.transaction() as db:
                offer = self.store.load(db, MarketplaceOffer, offer_id, "Offer")
                require_capability(principal, Capability.OFFER_MANAGE, offer.source_location, entity_id=offer_id)
                require_actor(principal, offer.seller_ref, "expire this offer", entity_id=offer_id)
                if offer.status == OFFER_EXPIRED:
                    return offer.to_dict(), []
                rejected = self._expire(db, offer, principal, "offer withdrawn by seller")
                return offer.to_dict(), rejected

        snapshot, rejected = self._run(f"offer.expire {offer_id}", unit)
        self._announce_expiry(snapshot, rejected)
        return snapshot

    def _expire(self, db: Session, offer: MarketplaceOffer, principal: Principal, notes: str) -> List[str]:
        """Mark ``offer`` expired and reject its waiting requests, inside the caller's transaction."""
        now = self.clock()
        rejected = []
        released = 0.0
        for request in crud.list_requests(db, offer_id=offer.id, statuses=AWAITING_REVIEW, limit=None):
            self.store.conditional_update(
                db,
                PurchaseRequest,
                request.id,
                request.version,
                {"overall_status": REJECTED, "rejection_reason": "offer_expired", "updated_at": now},
            )
            db.add(PurchaseRequestEvent(
                request_id=request.id,
                action="offer_expired",
                from_status=request.overall_status,
                to_status=REJECTED,
                actor_id=principal.actor_id,
                notes=notes,
                created_at=now,
            ))
            released += request.quantity_requested
            rejected.append(request.id)

        self.store.conditional_update(
            db,
            MarketplaceOffer,
            offer.id,
            offer.version,
            {
                "status": OFFER_EXPIRED,
                "expires_at": min(offer.expires_at, now),
                "remaining_quantity": offer.remaining_quantity + released,
                "updated_at": now,
            },
        )
        db.flush()
        self.store.refresh(db, offer)
        return rejected

    def _announce_expiry(self, snapshot: Dict[str, Any], rejected: List[str]) -> None:
        if snapshot["status"] != OFFER_EXPIRED:
            return
        logger.info(f"Offer {snapshot['id']} expired, {len(rejected)} waiting request(s) rejected")
        self.notifier.publish("offer.expired", snapshot["id"], rejected_requests=rejected)
        for request_id in rejected:
            self.notifier.publish("purchase_request.rejected", request_id, reason="offer_expired", offer_id=snapshot["id"])

    def sweep_expired_offers(self, now: Optional[datetime] = None, principal: Principal = SYSTEM_PRINCIPAL) -> Dict[str, List[str]]:
        """
        Expire every offer past ``expires_at`` and reject its waiting requests.

        Each offer is its own unit so one conflict does not hold back the
        rest of the sweep.
        """
        require_capability(principal, Capability.SWEEP)
        cutoff = as_utc(now) if now else self.clock()
        with self.store.transaction() as db:
            lapsed = [offer.id for offer in crud.list_lapsed_offers(db, cutoff)]

        summary = {"expired_offers": [], "rejected_requests": []}
        for offer_id in lapsed:
            def unit(offer_id=offer_id):
                with self.store.transaction() as db:
                    offer = self.store.load(db, MarketplaceOffer, offer_id, "Offer")
                    if offer.status == OFFER_EXPIRED:
                        return None, []
                    rejected = self._expire(db, offer, principal, "offer expired")
                    return offer.to_dict(), rejected

            snapshot, rejected = self._run(f"offer.sweep {offer_id}", unit)
            if snapshot is None:
                continue
            self._announce_expiry(snapshot, rejected)
            summary["expired_offers"].append(offer_id)
            summary["rejected_requests"].extend(rejected)

        if summary["expired_offers"]:
            logger.info(f"Offer sweep expired {len(summary['expired_offers'])} offer(s)")
        return summary

    def get_offer(self, offer_id: str) -> Dict[str, Any]:
        with self.store.transaction() as db:
            return self.store.load(db, MarketplaceOffer, offer_id, "Offer").to_dict()

    def list_open_offers(self, commodity: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.store.transaction() as db:
            return [offer.to_dict() for offer in crud.list_open_offers(db, self.clock(), commodity=commodity)]

    # ============================================================================
    # Reservation helpers
    # ============================================================================

    def _adjust_reservation(self, db: Session, offer: MarketplaceOffer, delta: float) -> None:
        """Reserve ``delta`` (or release it when negative) on the offer."""
        remaining = offer.remaining_quantity - delta
        if offer.status == OFFER_EXPIRED:
            status = OFFER_EXPIRED
        else:
            status = OFFER_CONSUMED if remaining <= 0 else OFFER_OPEN
        self.store.conditional_update(
            db,
            MarketplaceOffer,
            offer.id,
            offer.version,
            {"remaining_quantity": remaining, "status": status, "updated_at": self.clock()},
        )

    def _check_offer_open(self, offer: MarketplaceOffer, attempted: str, request_id: Optional[str] = None) -> None:
        now = self.clock()
        if offer.status == OFFER_EXPIRED or now >= offer.expires_at:
            raise OfferExpired(
                f"Offer {offer.id} expired at {offer.expires_at.isoformat()}",
                entity_id=request_id or offer.id,
                current_state=offer.to_dict(),
                attempted=attempted,
            )
        if now < offer.available_from:
            raise PreconditionError(
                f"Offer {offer.id} is not available until {offer.available_from.isoformat()}",
                entity_id=request_id or offer.id,
                current_state=offer.to_dict(),
                attempted=attempted,
            )

    def _check_offer_available(self, offer: MarketplaceOffer, quantity: float, attempted: str, request_id: Optional[str] = None) -> None:
        self._check_offer_open(offer, attempted, request_id)
        if quantity is None or quantity <= 0:
            raise ValidationError("Requested quantity must be positive", entity_id=request_id or offer.id, attempted=attempted)
        if quantity > offer.remaining_quantity:
            raise InsufficientQuantity(
                f"Offer {offer.id} has {offer.remaining_quantity} remaining, {quantity} requested",
                entity_id=request_id or offer.id,
                current_state=offer.to_dict(),
                attempted=attempted,
            )

    # ============================================================================
    # Purchase requests
    # ============================================================================

    def submit_purchase_request(
        self,
        offer_id: str,
        principal: Principal,
        quantity: float,
        agreed_price: float,
        buyer_ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Exporter requests part of an offer. Expiry is checked before anything else about the request."""

        def unit():
            with self.store.transaction() as db:
                offer = self.store.load(db, MarketplaceOffer, offer_id, "Offer")
                require_capability(principal, Capability.PURCHASE_REQUEST, offer.source_location, entity_id=offer_id)
                self._check_offer_available(offer, quantity, "purchase_request.submit")
                if agreed_price is None or agreed_price <= 0:
                    raise ValidationError("agreed_price must be positive", entity_id=offer_id, attempted="purchase_request.submit")
                if buyer_ref and buyer_ref != offer.seller_ref:
                    raise ValidationError(
                        f"buyer_ref {buyer_ref} does not own offer {offer_id}",
                        entity_id=offer_id,
                        attempted="purchase_request.submit",
                    )

                self._adjust_reservation(db, offer, float(quantity))
                now = self.clock()
                request = PurchaseRequest(
                    id=new_id("PR"),
                    offer_id=offer.id,
                    buyer_ref=offer.seller_ref,
                    requester_ref=principal.actor_id,
                    quantity_requested=float(quantity),
                    agreed_price=float(agreed_price),
                    overall_status=PENDING,
                    progress_percent=progress_for(),
                    created_at=now,
                    updated_at=now,
                )
                db.add(request)
                db.flush()
                db.add(PurchaseRequestEvent(
                    request_id=request.id,
                    action="submitted",
                    from_status=None,
                    to_status=PENDING,
                    actor_id=principal.actor_id,
                    created_at=now,
                ))
                db.flush()
                return request.to_dict()

        snapshot = self._run(f"purchase_request.submit {offer_id}", unit)
        logger.info(f"Purchase request {snapshot['id']} on {offer_id} by {principal.actor_id}: {quantity} @ {agreed_price}")
        self.notifier.publish(
            "purchase_request.submitted",
            snapshot["id"],
            offer_id=offer_id,
            buyer_ref=snapshot["buyer_ref"],
            requester_ref=snapshot["requester_ref"],
            quantity=snapshot["quantity_requested"],
        )
        return snapshot

    def _transition(
        self,
        request_id: str,
        principal: Principal,
        action: str,
        capability: Capability,
        apply: Callable[[Session, PurchaseRequest, MarketplaceOffer], Tuple[Dict[str, Any], Optional[str]]],
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Shared read/check/write unit for every gate.

        ``apply`` checks the gate-specific preconditions and returns the new
        column values plus the snapshot of any certificate approval it
        created. Terminal requests refuse every gate.
        """
        certificate_holder: Dict[str, Any] = {}

        def unit():
            certificate_holder.clear()
            with self.store.transaction() as db:
                request = self.store.load(db, PurchaseRequest, request_id, "Purchase request")
                offer = self.store.load(db, MarketplaceOffer, request.offer_id, "Offer")
                require_capability(principal, capability, offer.source_location, entity_id=request_id)
                if request.overall_status in TERMINAL_STATUSES:
                    raise PreconditionError(
                        f"Purchase request {request_id} is {request.overall_status}",
                        entity_id=request_id,
                        current_state=request.to_dict(),
                        attempted=action,
                    )

                values, certificate = apply(db, request, offer)
                from_status = request.overall_status
                now = self.clock()
                values["updated_at"] = now
                self.store.conditional_update(db, PurchaseRequest, request_id, request.version, values)
                db.add(PurchaseRequestEvent(
                    request_id=request_id,
                    action=action,
                    from_status=from_status,
                    to_status=values.get("overall_status", from_status),
                    actor_id=principal.actor_id,
                    notes=notes,
                    created_at=now,
                ))
                db.flush()
                self.store.refresh(db, request)
                if certificate is not None:
                    certificate_holder["certificate"] = certificate
                return request.to_dict()

        snapshot = self._run(f"purchase_request.{action} {request_id}", unit)
        logger.info(f"Purchase request {request_id} {action} by {principal.actor_id} -> {snapshot['overall_status']}")
        self.notifier.publish(
            f"purchase_request.{action}",
            request_id,
            overall_status=snapshot["overall_status"],
            progress_percent=snapshot["progress_percent"],
            actor_id=principal.actor_id,
        )
        if "certificate" in certificate_holder:
            self.approvals.announce_submitted(certificate_holder["certificate"])
        return snapshot

    @staticmethod
    def _refuse(request: PurchaseRequest, message: str, attempted: str):
        return PreconditionError(message, entity_id=request.id, current_state=request.to_dict(), attempted=attempted)

    def _release(self, db: Session, request: PurchaseRequest, offer: MarketplaceOffer) -> None:
        self._adjust_reservation(db, offer, -request.quantity_requested)

    def start_review(self, request_id: str, principal: Principal) -> Dict[str, Any]:
        """Reviewer picks up a pending request (optional step)."""

        def apply(db, request, offer):
            if request.overall_status != PENDING:
                raise self._refuse(request, f"Review can only start on a pending request, it is {request.overall_status}", "start_review")
            return {"overall_status": UNDER_REVIEW, "regulatory_reviewer_id": principal.actor_id}, None

        return self._transition(request_id, principal, "review_started", Capability.REGULATORY_REVIEW, apply)

    def review_request(self, request_id: str, principal: Principal, decision: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """Regulatory gate: approve schedules a port inspection, revision sends it back to the exporter."""
        if decision not in ("approve", "reject", "revision"):
            raise ValidationError(f"Review decision must be approve, reject or revision, got '{decision}'", entity_id=request_id, attempted="review")
        if decision != "approve" and not (notes and notes.strip()):
            raise MissingInput(f"A {decision} decision requires notes", entity_id=request_id, attempted="review")

        def apply(db, request, offer):
            if request.overall_status not in (PENDING, UNDER_REVIEW):
                raise self._refuse(request, f"Request is {request.overall_status}, not awaiting regulatory review", f"review.{decision}")
            now = self.clock()
            if decision == "approve":
                return {
                    "overall_status": INSPECTION_SCHEDULED,
                    "regulatory_review_status": "approved",
                    "regulatory_reviewer_id": principal.actor_id,
                    "regulatory_notes": notes,
                    "reviewed_at": now,
                    "port_inspection_status": "awaiting_schedule",
                    "progress_percent": progress_for(reviewed=True),
                }, None
            if decision == "reject":
                self._release(db, request, offer)
                return {
                    "overall_status": REJECTED,
                    "regulatory_review_status": "rejected",
                    "regulatory_reviewer_id": principal.actor_id,
                    "regulatory_notes": notes,
                    "reviewed_at": now,
                    "rejection_reason": "regulatory_rejected",
                }, None
            return {
                "overall_status": REVISION_REQUIRED,
                "regulatory_review_status": "pending",
                "regulatory_reviewer_id": None,
                "regulatory_notes": None,
                "reviewed_at": None,
                "revision_notes": notes,
                "progress_percent": progress_for(),
            }, None

        action = {"approve": "review_approved", "reject": "review_rejected", "revision": "revision_requested"}[decision]
        return self._transition(request_id, principal, action, Capability.REGULATORY_REVIEW, apply, notes=notes)

    def resubmit_purchase_request(
        self,
        request_id: str,
        principal: Principal,
        quantity: Optional[float] = None,
        agreed_price: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Exporter answers a revision request; the reservation follows the new quantity."""

        def apply(db, request, offer):
            require_actor(principal, request.requester_ref, "resubmit this request", entity_id=request_id)
            if request.overall_status != REVISION_REQUIRED:
                raise self._refuse(request, f"Only revision_required requests can be resubmitted, it is {request.overall_status}", "resubmit")
            self._check_offer_open(offer, "resubmit", request_id=request_id)
            new_quantity = float(quantity) if quantity is not None else request.quantity_requested
            if new_quantity <= 0:
                raise ValidationError("Requested quantity must be positive", entity_id=request_id, attempted="resubmit")
            # the current reservation already counts toward the request
            delta = new_quantity - request.quantity_requested
            if delta > offer.remaining_quantity:
                raise InsufficientQuantity(
                    f"Offer {offer.id} has {offer.remaining_quantity} remaining, {delta} more requested",
                    entity_id=request_id,
                    current_state=request.to_dict(),
                    attempted="resubmit",
                )
            new_price = request.agreed_price
            if agreed_price is not None:
                if agreed_price <= 0:
                    raise ValidationError("agreed_price must be positive", entity_id=request_id, attempted="resubmit")
                new_price = float(agreed_price)
            if delta != 0:
                self._adjust_reservation(db, offer, delta)
            return {
                "overall_status": PENDING,
                "quantity_requested": new_quantity,
                "agreed_price": new_price,
                "progress_percent": progress_for(),
            }, None

        return self._transition(request_id, principal, "resubmitted", Capability.PURCHASE_REQUEST, apply)

    def schedule_inspection(self, request_id: str, principal: Principal, inspector_id: str, inspection_date: datetime) -> Dict[str, Any]:
        if not inspector_id or not inspector_id.strip():
            raise MissingInput("inspector_id is required", entity_id=request_id, attempted="schedule_inspection")
        if inspection_date is None:
            raise MissingInput("inspection_date is required", entity_id=request_id, attempted="schedule_inspection")

        def apply(db, request, offer):
            if request.overall_status != INSPECTION_SCHEDULED or request.port_inspection_status not in ("awaiting_schedule", "scheduled"):
                raise self._refuse(
                    request,
                    f"Inspection cannot be scheduled while the request is {request.overall_status} "
                    f"(port inspection {request.port_inspection_status})",
                    "schedule_inspection",
                )
            return {
                "port_inspection_status": "scheduled",
                "inspector_id": inspector_id,
                "inspection_date": as_utc(inspection_date),
            }, None

        return self._transition(request_id, principal, "inspection_scheduled", Capability.INSPECTION_SCHEDULE, apply)

    def submit_inspection_result(self, request_id: str, principal: Principal, result: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """Port gate. ``conditional`` leaves the request waiting for a supervisor override."""
        if result not in ("passed", "failed", "conditional"):
            raise ValidationError(f"Inspection result must be passed, failed or conditional, got '{result}'", entity_id=request_id, attempted="inspection_result")

        def apply(db, request, offer):
            if request.overall_status != INSPECTION_SCHEDULED or request.port_inspection_status != "scheduled":
                raise self._refuse(
                    request,
                    f"No scheduled inspection to report on (request {request.overall_status}, port inspection {request.port_inspection_status})",
                    f"inspection.{result}",
                )
            require_actor(principal, request.inspector_id, "report this inspection", entity_id=request_id)
            values = {
                "port_inspection_status": result,
                "inspection_result": result,
                "inspection_notes": notes,
                "inspected_at": self.clock(),
            }
            if result == "passed":
                values.update(overall_status=APPROVED, progress_percent=progress_for(reviewed=True, inspected=True))
            elif result == "failed":
                self._release(db, request, offer)
                values.update(overall_status=REJECTED, rejection_reason="inspection_failed")
            return values, None

        return self._transition(request_id, principal, f"inspection_{result}", Capability.INSPECTION_RESULT, apply, notes=notes)

    def override_inspection(self, request_id: str, principal: Principal, decision: str, notes: str) -> Dict[str, Any]:
        """Supervisor decision on a conditional inspection."""
        if decision not in ("pass", "fail"):
            raise ValidationError(f"Inspection override must be pass or fail, got '{decision}'", entity_id=request_id, attempted="inspection_override")
        if not notes or not notes.strip():
            raise MissingInput("Inspection override requires notes", entity_id=request_id, attempted="inspection_override")

        def apply(db, request, offer):
            if request.port_inspection_status != "conditional":
                raise self._refuse(request, f"Port inspection is {request.port_inspection_status}, not conditional", f"inspection_override.{decision}")
            if decision == "pass":
                return {
                    "port_inspection_status": "passed",
                    "overall_status": APPROVED,
                    "progress_percent": progress_for(reviewed=True, inspected=True),
                }, None
            self._release(db, request, offer)
            return {"port_inspection_status": "failed", "overall_status": REJECTED, "rejection_reason": "inspection_failed"}, None

        return self._transition(request_id, principal, f"inspection_override_{decision}", Capability.INSPECTION_OVERRIDE, apply, notes=notes)

    def respond_as_counterparty(self, request_id: str, principal: Principal, decision: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Buyer signs or vetoes once both gates have passed.

        Signing submits an ``export_contract`` CertificateApproval in the same
        transaction so final documentation goes through the reviewer queue.
        """
        if decision not in ("accept", "reject"):
            raise ValidationError(f"Response must be accept or reject, got '{decision}'", entity_id=request_id, attempted="respond")

        def apply(db, request, offer):
            require_actor(principal, request.buyer_ref, "respond to this request", entity_id=request_id)
            gates_passed = (
                request.overall_status == APPROVED
                and request.regulatory_review_status == "approved"
                and request.port_inspection_status == "passed"
            )
            if not gates_passed:
                raise self._refuse(
                    request,
                    f"Counterparty can respond only after review and inspection passed (request is {request.overall_status})",
                    f"respond.{decision}",
                )
            now = self.clock()
            if decision == "reject":
                self._release(db, request, offer)
                return {
                    "counterparty_status": "rejected",
                    "responded_at": now,
                    "overall_status": REJECTED,
                    "rejection_reason": "counterparty_rejected",
                }, None

            approval = self.approvals.create(db, CONTRACT_CERTIFICATE, request.id, offer.source_location, SYSTEM_PRINCIPAL)
            return {
                "counterparty_status": "accepted",
                "responded_at": now,
                "overall_status": CONTRACT_SIGNED,
                "progress_percent": progress_for(reviewed=True, inspected=True, accepted=True),
                "certificate_approval_id": approval.id,
            }, approval.to_dict()

        action = "contract_signed" if decision == "accept" else "counterparty_rejected"
        return self._transition(request_id, principal, action, Capability.COUNTERPARTY_RESPOND, apply, notes=notes)

    def cancel_request(self, request_id: str, principal: Principal, reason: str) -> Dict[str, Any]:
        """Exporter withdraws. Refused once the contract is signed."""
        if not reason or not reason.strip():
            raise MissingInput("Cancellation requires a reason", entity_id=request_id, attempted="cancel")

        def apply(db, request, offer):
            require_actor(principal, request.requester_ref, "cancel this request", entity_id=request_id)
            self._release(db, request, offer)
            return {"overall_status": REJECTED, "rejection_reason": "cancelled"}, None

        return self._transition(request_id, principal, "cancelled", Capability.PURCHASE_REQUEST, apply, notes=reason)

    # ============================================================================
    # Reads
    # ============================================================================

    def get_request(self, request_id: str, include_events: bool = False) -> Dict[str, Any]:
        with self.store.transaction() as db:
            request = self.store.load(db, PurchaseRequest, request_id, "Purchase request")
            data = request.to_dict()
            if include_events:
                data["events"] = [
                    {
                        "action": event.action,
                        "from_status": event.from_status,
                        "to_status": event.to_status,
                        "actor_id": event.actor_id,
                        "notes": event.notes,
                        "created_at": event.created_at.isoformat(),
                    }
                    for event in crud.get_request_events(db, request_id)
                ]
            return data

    def list_requests(self, status: Optional[str] = None, offer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.store.transaction() as db:
            return [request.to_dict() for request in crud.list_requests(db, status=status, offer_id=offer_id)]
