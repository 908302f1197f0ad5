"""
Dispute Resolution Service
Escalation of a milestone into a held state, arbitration outcome and the
resulting fund movements. Callers hold the per-deal lock.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Config
from models import (
    Deal, DealStatus, Dispute, DisputeOutcome, DisputeStatus, Milestone, MilestoneStatus,
    PartyRole, Payout, ReviewStatus,
)
from services.audit_logger import audit_logger
from services.deal_service import DealService
from services.milestone_service import MilestoneService, open_dispute_for
from services.payout_issuer import PayoutIssuer, dispute_release_key, milestone_release_key
from utils.datetime_helpers import resolve_now
from utils.escrow_state_machine import restore_milestone_after_withdrawal, transition_deal, transition_milestone
from utils.exceptions import (
    AuthorizationError, InvalidStateError, InvalidTransitionError, NotFoundError,
    PaymentCapabilityError, ValidationError,
)

logger = logging.getLogger(__name__)

MAX_EVIDENCE_ITEMS = 20


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution"""

    dispute_id: str
    outcome: str
    released_amount: int = 0
    refunded_amount: int = 0
    held_remainder: int = 0
    payout_id: Optional[str] = None


def _resolve_outcome(outcome: Union[str, DisputeOutcome]) -> DisputeOutcome:
    if isinstance(outcome, DisputeOutcome):
        return outcome
    try:
        return DisputeOutcome(str(outcome).lower().strip())
    except ValueError:
        raise ValidationError(f"Unknown dispute outcome '{outcome}'", field="outcome") from None


class DisputeResolver:
    """Raise, resolve and withdraw disputes on milestones"""

    def __init__(self, deal_service: DealService, milestone_service: MilestoneService,
                 payout_issuer: PayoutIssuer):
        self.deal_service = deal_service
        self.milestone_service = milestone_service
        self.payout_issuer = payout_issuer

    @staticmethod
    def get(session: Session, dispute_id: str) -> Dispute:
        dispute = session.query(Dispute).filter(Dispute.dispute_id == dispute_id).first()
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

    # ------------------------------------------------------------------
    # Raise
    # ------------------------------------------------------------------

    def raise_dispute(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str,
                      role: PartyRole, reason: str, evidence: Optional[List[str]] = None,
                      now=None) -> Dispute:
        """
        Open a dispute on a SUBMITTED, APPROVED or recently RELEASED milestone.

        SUBMITTED milestones move to DISPUTED; APPROVED ones keep their status
        (their payout is parked). Both hold the deal in DISPUTED. A RELEASED
        milestone inside the contestation window gets a review dispute that
        changes no state.
        """
        moment = resolve_now(now)
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required", field="reason")
        evidence = list(evidence or [])
        if len(evidence) > MAX_EVIDENCE_ITEMS:
            raise ValidationError(f"At most {MAX_EVIDENCE_ITEMS} evidence references are accepted", field="evidence")

        existing = open_dispute_for(session, milestone)
        if existing is not None:
            raise InvalidStateError(
                f"Milestone {milestone.milestone_id} already has open dispute {existing.dispute_id}"
            )
        if self.payout_issuer.has_processing_payout(session, milestone):
            raise InvalidStateError(
                f"Milestone {milestone.milestone_id} has a payout in flight; wait for it to settle"
            )

        previous_milestone_status = milestone.status
        previous_deal_status = deal.status
        is_review = False

        if milestone.status == MilestoneStatus.SUBMITTED.value:
            self._require_open_deal(deal)
            transition_milestone(milestone, MilestoneStatus.DISPUTED)
            self.deal_service.mark_disputed(session, deal, moment)
        elif milestone.status == MilestoneStatus.APPROVED.value:
            self._require_open_deal(deal)
            self.deal_service.mark_disputed(session, deal, moment)
        elif milestone.status == MilestoneStatus.RELEASED.value:
            window_ends = milestone.released_at + timedelta(hours=Config.DISPUTE_CONTESTATION_HOURS)
            if moment > window_ends:
                raise InvalidStateError(
                    f"Milestone {milestone.milestone_id} was released at {milestone.released_at}; "
                    f"the {Config.DISPUTE_CONTESTATION_HOURS}h contestation window has closed"
                )
            is_review = True
        else:
            raise InvalidTransitionError("Milestone", milestone.status, MilestoneStatus.DISPUTED.value)

        dispute = Dispute(
            deal_id=deal.id,
            milestone_id=milestone.id,
            raised_by=actor_id,
            raised_by_role=role.value,
            reason=reason.strip(),
            evidence=evidence,
            is_review=is_review,
            status=DisputeStatus.OPEN.value,
            previous_milestone_status=previous_milestone_status,
            previous_deal_status=previous_deal_status,
            created_at=moment,
        )
        session.add(dispute)
        session.flush()
        if not is_review:
            milestone.disputed_at = moment

        audit_logger.record(
            session, "DISPUTE_RAISED", actor_id, "dispute", dispute.dispute_id, deal.deal_id,
            {"milestone": milestone.milestone_id, "role": role.value, "reason": dispute.reason,
             "review": is_review, "milestone_status": previous_milestone_status},
            now=moment,
        )
        logger.warning(
            f"⚠️ DISPUTE_RAISED: {dispute.dispute_id} on {milestone.milestone_id} by {role.value} {actor_id}"
            f"{' (review)' if is_review else ''}"
        )
        return dispute

    @staticmethod
    def _require_open_deal(deal: Deal) -> None:
        if deal.status not in (DealStatus.FUNDED.value, DealStatus.DISPUTED.value):
            raise InvalidStateError(f"Deal {deal.deal_id} is {deal.status.upper()}; disputes need a funded deal")

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def resolve(self, session: Session, deal: Deal, dispute: Dispute, resolver_id: str,
                outcome: Union[str, DisputeOutcome], amount: Optional[int] = None,
                note: Optional[str] = None, refund_remainder: bool = True, now=None) -> ResolutionResult:
        """
        Close an open dispute with an arbitration outcome.

        Release outcomes go through the payout issuer first; the dispute stays
        OPEN if the payout fails, so the same call can be repeated.
        """
        moment = resolve_now(now)
        outcome = _resolve_outcome(outcome)
        if dispute.status != DisputeStatus.OPEN.value:
            raise InvalidStateError(f"Dispute {dispute.dispute_id} is already {dispute.status.upper()}")
        milestone = dispute.milestone

        if outcome is DisputeOutcome.PARTIAL_RELEASE:
            if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount < milestone.amount:
                raise ValidationError(
                    f"Partial release amount must be between 0 and {milestone.amount} (exclusive), got {amount!r}",
                    field="amount",
                )

        dispute.outcome = outcome.value
        dispute.resolution_note = note
        dispute.resolved_by = resolver_id
        dispute.refund_remainder = refund_remainder

        if dispute.is_review:
            dispute.resolved_amount = amount
            self._close(session, deal, dispute, moment)
            return ResolutionResult(dispute.dispute_id, outcome.value)

        if outcome is DisputeOutcome.FULL_RELEASE:
            return self._release(session, deal, dispute, milestone, milestone.amount, moment)
        if outcome is DisputeOutcome.PARTIAL_RELEASE:
            return self._release(session, deal, dispute, milestone, amount, moment)
        if outcome is DisputeOutcome.RETURN_TO_PENDING:
            return self._return_to_pending(session, deal, dispute, milestone, moment)
        return self._refund(session, deal, dispute, milestone, moment)

    def _close(self, session: Session, deal: Deal, dispute: Dispute, now) -> None:
        dispute.status = DisputeStatus.RESOLVED.value
        dispute.resolved_at = resolve_now(now)
        audit_logger.record(
            session, "DISPUTE_RESOLVED", dispute.resolved_by or "system", "dispute", dispute.dispute_id,
            deal.deal_id,
            {"outcome": dispute.outcome, "amount": dispute.resolved_amount,
             "held_remainder": dispute.held_remainder, "note": dispute.resolution_note},
            now=now,
        )
        logger.info(f"⚖️ DISPUTE_RESOLVED: {dispute.dispute_id} outcome {dispute.outcome}")

    def _release(self, session: Session, deal: Deal, dispute: Dispute, milestone: Milestone,
                 gross_amount: int, now) -> ResolutionResult:
        dispute.resolved_amount = gross_amount
        if milestone.status == MilestoneStatus.APPROVED.value and gross_amount == milestone.amount:
            # Full release of an approved milestone retries its own payout
            key = milestone_release_key(milestone)
        else:
            self.payout_issuer.cancel_failed(session, milestone_release_key(milestone), dispute.resolved_by, now)
            key = dispute_release_key(dispute)

        payout = self.payout_issuer.issue(
            session, deal, milestone, gross_amount, key, dispute.resolved_by, dispute=dispute, now=now,
        )
        return self.finish_resolution(session, deal, dispute, payout, now)

    def finish_resolution(self, session: Session, deal: Deal, dispute: Dispute, payout: Payout,
                          now=None) -> ResolutionResult:
        """Apply a COMPLETED dispute payout; also used by payout reconciliation"""
        milestone = dispute.milestone
        remainder = milestone.amount - payout.gross_amount
        refunded = 0

        if dispute.status == DisputeStatus.OPEN.value:
            if remainder > 0 and not dispute.refund_remainder:
                dispute.held_remainder = remainder
            self._close(session, deal, dispute, now)
        self.milestone_service.finish_release(session, deal, milestone, payout, dispute.resolved_by or "system", now)

        if remainder > 0 and dispute.refund_remainder and dispute.held_remainder is None:
            # Released funds are final; settle them before calling out again
            session.commit()
            try:
                self.deal_service.refund(
                    session, deal, remainder, "partial_remainder", dispute.resolved_by or "system",
                    milestone=milestone, dispute=dispute, now=now,
                )
                refunded = remainder
            except PaymentCapabilityError as e:
                dispute.held_remainder = remainder
                session.commit()
                logger.error(
                    f"❌ REMAINDER_REFUND_FAILED: {dispute.dispute_id} {remainder} {deal.currency} "
                    f"held for manual follow-up ({e.kind})"
                )
                raise

        return ResolutionResult(
            dispute.dispute_id, dispute.outcome,
            released_amount=payout.gross_amount,
            refunded_amount=refunded,
            held_remainder=dispute.held_remainder or 0,
            payout_id=payout.payout_id,
        )

    def _return_to_pending(self, session: Session, deal: Deal, dispute: Dispute, milestone: Milestone,
                           now) -> ResolutionResult:
        if milestone.status != MilestoneStatus.DISPUTED.value:
            raise InvalidTransitionError(
                "Milestone", milestone.status, MilestoneStatus.PENDING.value,
                "only a DISPUTED milestone can be returned to pending",
            )
        transition_milestone(milestone, MilestoneStatus.PENDING)
        if milestone.current_deliverable is not None:
            milestone.current_deliverable.review_status = ReviewStatus.REJECTED.value
        milestone.current_deliverable = None
        milestone.submitted_at = None
        self._close(session, deal, dispute, now)
        self.deal_service.reopen_after_dispute(session, deal, now)
        return ResolutionResult(dispute.dispute_id, dispute.outcome)

    def _refund(self, session: Session, deal: Deal, dispute: Dispute, milestone: Milestone,
                now) -> ResolutionResult:
        """Return every unreleased milestone amount to the brand; the deal ends REFUNDED"""
        others = [d for d in self.deal_service.open_blocking_disputes(session, deal) if d.id != dispute.id]
        if others:
            raise InvalidStateError(
                f"Deal {deal.deal_id} has other open disputes ({', '.join(d.dispute_id for d in others)}); "
                f"resolve them before refunding the deal"
            )
        unreleased = [m for m in deal.milestones if m.status != MilestoneStatus.RELEASED.value]
        for other in unreleased:
            if self.payout_issuer.has_processing_payout(session, other):
                raise InvalidStateError(f"Milestone {other.milestone_id} has a payout in flight")

        refund_total = sum(m.amount for m in unreleased)
        moment = resolve_now(now)
        if refund_total > 0:
            self.deal_service.refund(
                session, deal, refund_total, "dispute_refund", dispute.resolved_by,
                milestone=milestone, dispute=dispute, now=moment,
            )
        for other in unreleased:
            self.payout_issuer.cancel_failed(session, milestone_release_key(other), dispute.resolved_by, moment)
            other.refunded_at = moment

        if milestone.status == MilestoneStatus.DISPUTED.value:
            transition_milestone(milestone, MilestoneStatus.PENDING)
        dispute.resolved_amount = refund_total
        self._close(session, deal, dispute, moment)
        self.deal_service.mark_refunded(session, deal, moment)
        return ResolutionResult(dispute.dispute_id, dispute.outcome, refunded_amount=refund_total)

    # ------------------------------------------------------------------
    # Withdraw
    # ------------------------------------------------------------------

    def withdraw(self, session: Session, deal: Deal, dispute: Dispute, actor_id: str, now=None) -> Dispute:
        """Raising party drops the dispute; milestone and deal return to their pre-dispute state"""
        moment = resolve_now(now)
        if dispute.raised_by != actor_id:
            raise AuthorizationError(f"Only the party that raised dispute {dispute.dispute_id} can withdraw it")
        if dispute.status != DisputeStatus.OPEN.value:
            raise InvalidStateError(f"Dispute {dispute.dispute_id} is already {dispute.status.upper()}")

        milestone = dispute.milestone
        if not dispute.is_review:
            if milestone.status == MilestoneStatus.DISPUTED.value:
                restore_milestone_after_withdrawal(milestone, dispute.previous_milestone_status)
            milestone.disputed_at = None

        dispute.status = DisputeStatus.WITHDRAWN.value
        dispute.resolved_at = moment

        if (not dispute.is_review and deal.status == DealStatus.DISPUTED.value
                and dispute.previous_deal_status == DealStatus.FUNDED.value
                and not self.deal_service.open_blocking_disputes(session, deal)):
            transition_deal(deal, DealStatus.FUNDED)

        audit_logger.record(
            session, "DISPUTE_WITHDRAWN", actor_id, "dispute", dispute.dispute_id, deal.deal_id,
            {"milestone": milestone.milestone_id, "restored_status": milestone.status}, now=moment,
        )
        logger.info(f"↩️ DISPUTE_WITHDRAWN: {dispute.dispute_id} by {actor_id}")
        return dispute

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def list_disputes(session: Session, deal: Optional[Deal] = None, status: Optional[str] = None) -> List[Dispute]:
        query = session.query(Dispute)
        if deal is not None:
            query = query.filter(Dispute.deal_id == deal.id)
        if status is not None:
            if status not in {s.value for s in DisputeStatus}:
                raise ValidationError(f"Unknown dispute status '{status}'", field="status")
            query = query.filter(Dispute.status == status)
        return query.order_by(Dispute.id).all()

    @staticmethod
    def stats(session: Session) -> Dict[str, Any]:
        by_status = dict(session.query(Dispute.status, func.count(Dispute.id)).group_by(Dispute.status).all())
        by_outcome = dict(
            session.query(Dispute.outcome, func.count(Dispute.id))
            .filter(Dispute.status == DisputeStatus.RESOLVED.value)
            .group_by(Dispute.outcome)
            .all()
        )
        return {
            "total": sum(by_status.values()),
            "open": by_status.get(DisputeStatus.OPEN.value, 0),
            "resolved": by_status.get(DisputeStatus.RESOLVED.value, 0),
            "withdrawn": by_status.get(DisputeStatus.WITHDRAWN.value, 0),
            "by_outcome": by_outcome,
        }


def dispute_to_dict(dispute: Dispute) -> Dict[str, Any]:
    return {
        "dispute_id": dispute.dispute_id,
        "deal_id": dispute.deal.deal_id if dispute.deal else None,
        "milestone_id": dispute.milestone.milestone_id if dispute.milestone else None,
        "raised_by": dispute.raised_by,
        "raised_by_role": dispute.raised_by_role,
        "reason": dispute.reason,
        "evidence": dispute.evidence or [],
        "is_review": dispute.is_review,
        "status": dispute.status,
        "outcome": dispute.outcome,
        "resolved_amount": dispute.resolved_amount,
        "held_remainder": dispute.held_remainder,
        "resolution_note": dispute.resolution_note,
        "resolved_by": dispute.resolved_by,
        "created_at": dispute.created_at.isoformat() if dispute.created_at else None,
        "resolved_at": dispute.resolved_at.isoformat() if dispute.resolved_at else None,
    }

