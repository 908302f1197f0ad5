"""
Milestone lifecycle service
Submission, review (approve / revise / reject), auto and admin force release.
Every status change goes through ``transition_milestone``; callers hold the
per-deal lock for the whole call, payout side effect included.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from config import Config
from models import (
    Deal, DealStatus, Deliverable, Dispute, DisputeStatus, Milestone, MilestoneStatus,
    Payout, ReviewStatus,
)
from services.audit_logger import audit_logger
from services.deal_service import DealService
from services.payout_issuer import PayoutIssuer, milestone_release_key
from utils.datetime_helpers import resolve_now
from utils.deliverable_validation import DeliverableSubmission, validate_deliverable
from utils.escrow_state_machine import transition_milestone
from utils.exceptions import (
    AlreadyReleasedError, InvalidStateError, InvalidTransitionError, NotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)

RELEASABLE_DEAL_STATES = frozenset({DealStatus.FUNDED.value, DealStatus.DISPUTED.value})


def open_dispute_for(session: Session, milestone: Milestone) -> Optional[Dispute]:
    session.flush()
    return (
        session.query(Dispute)
        .filter(Dispute.milestone_id == milestone.id, Dispute.status == DisputeStatus.OPEN.value)
        .first()
    )


def auto_release_due_at(deal: Deal, milestone: Milestone):
    if milestone.submitted_at is None:
        return None
    return milestone.submitted_at + timedelta(days=deal.auto_release_days)


class MilestoneService:
    """Deliverable-and-payment unit lifecycle"""

    def __init__(self, deal_service: DealService, payout_issuer: PayoutIssuer):
        self.deal_service = deal_service
        self.payout_issuer = payout_issuer

    @staticmethod
    def get(session: Session, milestone_id: str) -> Milestone:
        milestone = session.query(Milestone).filter(Milestone.milestone_id == milestone_id).first()
        if milestone is None:
            raise NotFoundError("Milestone", milestone_id)
        return milestone

    @staticmethod
    def _review(milestone: Milestone, status: ReviewStatus, reviewer: str, now,
                feedback: Optional[str] = None, requirements: Optional[Iterable[str]] = None) -> None:
        deliverable = milestone.current_deliverable
        if deliverable is None:
            return
        deliverable.review_status = status.value
        deliverable.reviewed_by = reviewer
        deliverable.reviewed_at = resolve_now(now)
        if feedback is not None:
            deliverable.feedback = feedback
        if requirements is not None:
            deliverable.requirements = list(requirements)

    # ------------------------------------------------------------------
    # Creator side
    # ------------------------------------------------------------------

    def submit(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str,
               submission: Optional[DeliverableSubmission], now=None) -> Milestone:
        moment = resolve_now(now)
        if deal.status != DealStatus.FUNDED.value:
            raise ValidationError(
                f"Deal {deal.deal_id} is {deal.status.upper()}; work can only be submitted on a FUNDED deal",
                field="deal",
            )
        if milestone.status == MilestoneStatus.RELEASED.value:
            raise AlreadyReleasedError(milestone.milestone_id)
        if milestone.status != MilestoneStatus.PENDING.value:
            raise InvalidTransitionError("Milestone", milestone.status, MilestoneStatus.SUBMITTED.value)

        submission = validate_deliverable(submission)

        deliverable = Deliverable(
            milestone_id=milestone.id,
            submitted_by=actor_id,
            submission_type=submission.submission_type.value,
            description=submission.description,
            file_reference=submission.file_reference,
            file_hash=submission.file_hash,
            external_url=submission.external_url,
            text_body=submission.text_body,
            submission_metadata=submission.metadata,
            review_status=ReviewStatus.AWAITING_REVIEW.value,
            submitted_at=moment,
        )
        session.add(deliverable)
        session.flush()

        transition_milestone(milestone, MilestoneStatus.SUBMITTED)
        milestone.current_deliverable = deliverable
        milestone.submitted_at = moment
        audit_logger.record(
            session, "MILESTONE_SUBMITTED", actor_id, "milestone", milestone.milestone_id, deal.deal_id,
            {"deliverable": deliverable.deliverable_id, "type": deliverable.submission_type,
             "round": milestone.revision_count + 1},
            now=moment,
        )
        return milestone

    # ------------------------------------------------------------------
    # Brand side
    # ------------------------------------------------------------------

    def approve(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str,
                feedback: Optional[str] = None, now=None) -> Payout:
        """
        SUBMITTED -> APPROVED, then release through the payout issuer.

        A second call fails with AlreadyReleasedError once RELEASED. A payout
        failure leaves the milestone APPROVED and propagates.
        """
        moment = resolve_now(now)
        self._guard_reviewable(deal, milestone, MilestoneStatus.APPROVED)

        transition_milestone(milestone, MilestoneStatus.APPROVED)
        milestone.approved_at = moment
        milestone.approval_feedback = feedback
        self._review(milestone, ReviewStatus.APPROVED, actor_id, moment, feedback)
        audit_logger.record(session, "MILESTONE_APPROVED", actor_id, "milestone", milestone.milestone_id,
                            deal.deal_id, {"feedback": feedback}, now=moment)
        return self.release(session, deal, milestone, actor_id, moment)

    def request_revision(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str,
                         feedback: str, requirements: Optional[Iterable[str]] = None, now=None) -> Milestone:
        """SUBMITTED -> PENDING with the deliverable cleared; bounded by MAX_REVISION_ROUNDS"""
        if not feedback or not feedback.strip():
            raise ValidationError("Revision feedback is required", field="feedback")
        self._guard_reviewable(deal, milestone, MilestoneStatus.PENDING)
        self._guard_revision_cap(milestone)

        self._review(milestone, ReviewStatus.REVISION_REQUESTED, actor_id, now, feedback, requirements)
        self._return_to_pending(milestone)
        audit_logger.record(
            session, "MILESTONE_REVISION_REQUESTED", actor_id, "milestone", milestone.milestone_id, deal.deal_id,
            {"feedback": feedback, "requirements": list(requirements or []), "round": milestone.revision_count},
            now=now,
        )
        return milestone

    def reject(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str,
               reason: str, feedback: Optional[str] = None, now=None) -> Milestone:
        """Non-final rejection: SUBMITTED -> PENDING, resubmission allowed within the round cap"""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required", field="reason")
        self._guard_reviewable(deal, milestone, MilestoneStatus.PENDING)
        self._guard_revision_cap(milestone)

        self._review(milestone, ReviewStatus.REJECTED, actor_id, now, feedback)
        self._return_to_pending(milestone)
        milestone.rejection_reason = reason
        milestone.rejected_at = resolve_now(now)
        audit_logger.record(
            session, "MILESTONE_REJECTED", actor_id, "milestone", milestone.milestone_id, deal.deal_id,
            {"reason": reason, "feedback": feedback, "round": milestone.revision_count}, now=now,
        )
        return milestone

    def record_final_rejection(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str,
                               reason: str, feedback: Optional[str] = None, now=None) -> None:
        """Stamp the deliverable before a final rejection escalates into a dispute"""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required", field="reason")
        self._guard_reviewable(deal, milestone, MilestoneStatus.DISPUTED)
        self._review(milestone, ReviewStatus.REJECTED, actor_id, now, feedback)
        milestone.rejection_reason = reason
        milestone.rejected_at = resolve_now(now)

    def _guard_reviewable(self, deal: Deal, milestone: Milestone, target: MilestoneStatus) -> None:
        if milestone.status == MilestoneStatus.RELEASED.value:
            raise AlreadyReleasedError(milestone.milestone_id)
        if milestone.status != MilestoneStatus.SUBMITTED.value:
            raise InvalidTransitionError("Milestone", milestone.status, target.value)
        if deal.status not in RELEASABLE_DEAL_STATES:
            raise InvalidStateError(f"Deal {deal.deal_id} is {deal.status.upper()}; milestones cannot be reviewed")

    @staticmethod
    def _guard_revision_cap(milestone: Milestone) -> None:
        if milestone.revision_count >= Config.MAX_REVISION_ROUNDS:
            raise InvalidStateError(
                f"Milestone {milestone.milestone_id} reached the limit of {Config.MAX_REVISION_ROUNDS} "
                f"review rounds; raise a dispute instead"
            )

    @staticmethod
    def _return_to_pending(milestone: Milestone) -> None:
        transition_milestone(milestone, MilestoneStatus.PENDING)
        milestone.revision_count = (milestone.revision_count or 0) + 1
        milestone.current_deliverable = None
        milestone.submitted_at = None

    # ------------------------------------------------------------------
    # Release paths
    # ------------------------------------------------------------------

    def force_release(self, session: Session, deal: Deal, milestone: Milestone, now=None) -> Payout:
        """
        Auto-release for an unresponsive brand: requires SUBMITTED and an elapsed deadline.

        The state is re-read under the caller's lock, so a human decision that
        landed first makes this fail instead of releasing twice.
        """
        moment = resolve_now(now)
        self._guard_reviewable(deal, milestone, MilestoneStatus.APPROVED)
        if not deal.auto_release_enabled:
            raise InvalidStateError(f"Auto-release is disabled for deal {deal.deal_id}")
        due_at = auto_release_due_at(deal, milestone)
        if due_at is None or moment < due_at:
            raise InvalidStateError(
                f"Milestone {milestone.milestone_id} is not due for auto-release until {due_at}"
            )

        transition_milestone(milestone, MilestoneStatus.APPROVED)
        milestone.approved_at = moment
        milestone.auto_released = True
        self._review(milestone, ReviewStatus.AUTO_APPROVED, "system", moment)
        audit_logger.record(
            session, "MILESTONE_AUTO_APPROVED", "system", "milestone", milestone.milestone_id, deal.deal_id,
            {"submitted_at": milestone.submitted_at.isoformat(), "window_days": deal.auto_release_days},
            now=moment,
        )
        logger.info(f"⏰ AUTO_RELEASE: {milestone.milestone_id} deal {deal.deal_id} (due {due_at})")
        return self.release(session, deal, milestone, "system", moment)

    def admin_force_release(self, session: Session, deal: Deal, milestone: Milestone, admin_id: str,
                            reason: str, now=None) -> Payout:
        """Admin override for SUBMITTED milestones, or APPROVED ones whose payout failed"""
        moment = resolve_now(now)
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for admin force release", field="reason")
        if milestone.status == MilestoneStatus.RELEASED.value:
            raise AlreadyReleasedError(milestone.milestone_id)
        if milestone.status not in (MilestoneStatus.SUBMITTED.value, MilestoneStatus.APPROVED.value):
            raise InvalidTransitionError("Milestone", milestone.status, MilestoneStatus.RELEASED.value,
                                         "admin release needs a SUBMITTED or APPROVED milestone")
        if deal.status not in RELEASABLE_DEAL_STATES:
            raise InvalidStateError(f"Deal {deal.deal_id} is {deal.status.upper()}; nothing to release")
        if open_dispute_for(session, milestone) is not None:
            raise InvalidStateError(f"Milestone {milestone.milestone_id} has an open dispute; resolve it instead")

        audit_logger.record(
            session, "ADMIN_FORCE_RELEASE", admin_id, "milestone", milestone.milestone_id, deal.deal_id,
            {"reason": reason, "from_status": milestone.status}, now=moment,
        )
        logger.warning(f"🛡️ ADMIN_FORCE_RELEASE: {milestone.milestone_id} by {admin_id}: {reason}")
        if milestone.status == MilestoneStatus.SUBMITTED.value:
            transition_milestone(milestone, MilestoneStatus.APPROVED)
            milestone.approved_at = moment
            milestone.approval_feedback = reason
            self._review(milestone, ReviewStatus.APPROVED, admin_id, moment, reason)
        return self.release(session, deal, milestone, admin_id, moment)

    def retry_release(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str = "system",
                      now=None) -> Payout:
        """Re-issue the payout of an APPROVED milestone under its original idempotency key"""
        if milestone.status == MilestoneStatus.RELEASED.value:
            raise AlreadyReleasedError(milestone.milestone_id)
        if milestone.status != MilestoneStatus.APPROVED.value:
            raise InvalidTransitionError("Milestone", milestone.status, MilestoneStatus.RELEASED.value,
                                         "only APPROVED milestones can be retried")
        if open_dispute_for(session, milestone) is not None:
            raise InvalidStateError(f"Milestone {milestone.milestone_id} has an open dispute; resolve it instead")
        if deal.status not in RELEASABLE_DEAL_STATES:
            raise InvalidStateError(f"Deal {deal.deal_id} is {deal.status.upper()}; nothing to release")
        return self.release(session, deal, milestone, actor_id, now)

    def release(self, session: Session, deal: Deal, milestone: Milestone, actor_id: str, now=None,
                gross_amount: Optional[int] = None, idempotency_key: Optional[str] = None,
                dispute: Optional[Dispute] = None) -> Payout:
        payout = self.payout_issuer.issue(
            session, deal, milestone,
            gross_amount if gross_amount is not None else milestone.amount,
            idempotency_key or milestone_release_key(milestone),
            actor_id, dispute=dispute, now=now,
        )
        self.finish_release(session, deal, milestone, payout, actor_id, now)
        return payout

    def finish_release(self, session: Session, deal: Deal, milestone: Milestone, payout: Payout,
                       actor_id: str = "system", now=None) -> Milestone:
        """Apply a COMPLETED payout: milestone -> RELEASED, then settle the deal"""
        if milestone.status == MilestoneStatus.RELEASED.value:
            return milestone
        moment = resolve_now(now)
        transition_milestone(milestone, MilestoneStatus.RELEASED)
        milestone.released_at = moment
        milestone.released_amount = payout.gross_amount
        audit_logger.record(
            session, "MILESTONE_RELEASED", actor_id, "milestone", milestone.milestone_id, deal.deal_id,
            {"payout": payout.payout_id, "gross_amount": payout.gross_amount,
             "fee_amount": payout.fee_amount, "net_amount": payout.amount},
            now=moment,
        )
        logger.info(f"✅ MILESTONE_RELEASED: {milestone.milestone_id} net {payout.amount} {payout.currency}")
        self.deal_service.settle_after_release(session, deal, moment)
        return milestone


def deliverable_to_dict(deliverable: Deliverable) -> Dict[str, Any]:
    return {
        "deliverable_id": deliverable.deliverable_id,
        "submitted_by": deliverable.submitted_by,
        "submission_type": deliverable.submission_type,
        "description": deliverable.description,
        "file_reference": deliverable.file_reference,
        "file_hash": deliverable.file_hash,
        "external_url": deliverable.external_url,
        "text_body": deliverable.text_body,
        "review_status": deliverable.review_status,
        "feedback": deliverable.feedback,
        "requirements": deliverable.requirements,
        "reviewed_by": deliverable.reviewed_by,
        "reviewed_at": deliverable.reviewed_at.isoformat() if deliverable.reviewed_at else None,
        "submitted_at": deliverable.submitted_at.isoformat(),
    }
