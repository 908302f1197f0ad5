"""
Deal lifecycle service
Creation, acceptance, funding, completion and cancellation of deals. Every
status change goes through ``transition_deal``.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import Config
from models import (
    Deal, DealStatus, Dispute, DisputeStatus, GatedAction, Milestone,
    MilestoneStatus, Refund,
)
from services.audit_logger import audit_logger
from services.payment_capability import PaymentCapability
from services.retry_service import RetryService, retry_service
from services.subscription_service import SubscriptionService
from utils.datetime_helpers import ensure_naive_datetime, resolve_now
from utils.escrow_state_machine import DealStateValidator, transition_deal
from utils.exceptions import InvalidStateError, InvalidTransitionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_MILESTONES_PER_DEAL = 50
MAX_LIST_LIMIT = 200


def _positive_amount(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer of minor units, got {value!r}", field=field)
    return value


def _validate_auto_release_days(days: Any) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or days < 1:
        raise ValidationError(f"auto_release_days must be a positive integer, got {days!r}", field="auto_release_days")
    return days


def refund_key(deal: Deal, reason: str, dispute: Optional[Dispute] = None) -> str:
    """Idempotency key for a refund; one refund per deal and reason, or per dispute and reason"""
    if dispute is not None:
        return f"refund-{dispute.dispute_id}-{reason}"
    return f"refund-{deal.deal_id}-{reason}"


class DealService:
    """Funding contract lifecycle"""

    def __init__(self, payment: PaymentCapability, retry: Optional[RetryService] = None):
        self.payment = payment
        self.retry = retry or retry_service

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, session: Session, brand_id: str, creator_id: str, title: str,
               milestones: List[Dict[str, Any]], currency: str = "USD",
               description: Optional[str] = None, auto_release_enabled: Optional[bool] = None,
               auto_release_days: Optional[int] = None, now=None) -> Deal:
        """Create a DRAFT deal from an ordered list of milestone dicts"""
        moment = resolve_now(now)

        if not brand_id or not creator_id:
            raise ValidationError("Both brand and creator are required", field="creator_id")
        if brand_id == creator_id:
            raise ValidationError("Brand and creator must be different accounts", field="creator_id")
        if not title or not title.strip():
            raise ValidationError("Deal title is required", field="title")
        currency = (currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Currency must be a 3-letter code, got {currency!r}", field="currency")
        if not milestones:
            raise ValidationError("A deal needs at least one milestone", field="milestones")
        if len(milestones) > MAX_MILESTONES_PER_DEAL:
            raise ValidationError(f"A deal can have at most {MAX_MILESTONES_PER_DEAL} milestones", field="milestones")

        days = Config.AUTO_RELEASE_DAYS if auto_release_days is None else _validate_auto_release_days(auto_release_days)
        enabled = Config.AUTO_RELEASE_ENABLED if auto_release_enabled is None else bool(auto_release_enabled)

        SubscriptionService.require(session, brand_id, GatedAction.CREATE_DEAL, moment)

        deal = Deal(
            brand_id=brand_id,
            creator_id=creator_id,
            title=title.strip(),
            description=description,
            currency=currency,
            status=DealStatus.DRAFT.value,
            auto_release_enabled=enabled,
            auto_release_days=days,
            created_at=moment,
        )
        total = 0
        for position, item in enumerate(milestones):
            milestone_title = (item.get("title") or "").strip()
            if not milestone_title:
                raise ValidationError(f"Milestone {position + 1} needs a title", field="milestones")
            amount = _positive_amount(item.get("amount"), "amount")
            total += amount
            deal.milestones.append(Milestone(
                position=position,
                title=milestone_title,
                description=item.get("description"),
                amount=amount,
                due_date=ensure_naive_datetime(item.get("due_date")),
                status=MilestoneStatus.PENDING.value,
                revision_count=0,
                created_at=moment,
            ))
        deal.total_amount = total

        session.add(deal)
        session.flush()
        SubscriptionService.record_deal_created(session, brand_id, moment)
        audit_logger.record(
            session, "DEAL_CREATED", brand_id, "deal", deal.deal_id, deal.deal_id,
            {"total_amount": total, "currency": currency, "milestones": len(milestones)}, now=moment,
        )
        logger.info(f"📝 DEAL_CREATED: {deal.deal_id} brand {brand_id} creator {creator_id} total {total} {currency}")
        return deal

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def accept(self, session: Session, deal: Deal, actor_id: str,
               destination_account: Optional[str] = None, now=None) -> Deal:
        """Creator consent; a precondition for funding"""
        if deal.status != DealStatus.DRAFT.value:
            raise InvalidStateError(f"Deal {deal.deal_id} is {deal.status.upper()}; only DRAFT deals can be accepted")
        if deal.accepted_at is not None:
            raise InvalidStateError(f"Deal {deal.deal_id} was already accepted")

        deal.accepted_at = resolve_now(now)
        if destination_account:
            deal.destination_account = destination_account
        audit_logger.record(session, "DEAL_ACCEPTED", actor_id, "deal", deal.deal_id, deal.deal_id, {}, now=now)
        logger.info(f"🤝 DEAL_ACCEPTED: {deal.deal_id} by {actor_id}")
        return deal

    def fund(self, session: Session, deal: Deal, actor_id: str, now=None) -> Deal:
        """
        Place the deal total on hold and move DRAFT -> FUNDED.

        Funding is user-initiated: a payment failure leaves the deal DRAFT and
        propagates without an automatic retry.
        """
        moment = resolve_now(now)
        if deal.status != DealStatus.DRAFT.value:
            raise InvalidTransitionError("Deal", deal.status, DealStatus.FUNDED.value, "only DRAFT deals can be funded")
        if deal.accepted_at is None:
            raise InvalidStateError(f"Deal {deal.deal_id} must be accepted by the creator before funding")

        SubscriptionService.require(session, deal.brand_id, GatedAction.PROCESS_PAYMENT, moment)

        funding_token = self.payment.hold(deal.total_amount, deal.currency)

        transition_deal(deal, DealStatus.FUNDED)
        deal.funding_token = funding_token
        deal.funded_at = moment
        SubscriptionService.record_volume(session, deal.brand_id, deal.total_amount, moment)
        audit_logger.record(
            session, "DEAL_FUNDED", actor_id, "deal", deal.deal_id, deal.deal_id,
            {"amount": deal.total_amount, "funding_token": funding_token}, now=moment,
        )
        return deal

    def complete(self, session: Session, deal: Deal, now=None) -> Deal:
        """FUNDED -> RELEASED once every milestone is RELEASED; no-op when already RELEASED"""
        if deal.status == DealStatus.RELEASED.value:
            return deal
        unreleased = [m.milestone_id for m in deal.milestones if m.status != MilestoneStatus.RELEASED.value]
        if unreleased:
            raise InvalidStateError(
                f"Deal {deal.deal_id} cannot complete; unreleased milestones: {', '.join(unreleased)}"
            )
        transition_deal(deal, DealStatus.RELEASED)
        deal.completed_at = resolve_now(now)
        audit_logger.record(session, "DEAL_COMPLETED", "system", "deal", deal.deal_id, deal.deal_id, {}, now=now)
        logger.info(f"🏁 DEAL_COMPLETED: {deal.deal_id}")
        return deal

    def settle_after_release(self, session: Session, deal: Deal, now=None) -> Deal:
        """Complete the deal when nothing is left to release, or reopen it once no dispute holds it"""
        if all(m.status == MilestoneStatus.RELEASED.value for m in deal.milestones):
            return self.complete(session, deal, now)
        return self.reopen_after_dispute(session, deal, now)

    def reopen_after_dispute(self, session: Session, deal: Deal, now=None) -> Deal:
        if deal.status == DealStatus.DISPUTED.value and not self.open_blocking_disputes(session, deal):
            transition_deal(deal, DealStatus.FUNDED)
            audit_logger.record(session, "DEAL_REOPENED", "system", "deal", deal.deal_id, deal.deal_id, {}, now=now)
        return deal

    @staticmethod
    def open_blocking_disputes(session: Session, deal: Deal) -> List[Dispute]:
        """Open disputes that hold the deal in DISPUTED (review disputes do not)"""
        session.flush()
        return (
            session.query(Dispute)
            .filter(Dispute.deal_id == deal.id,
                    Dispute.status == DisputeStatus.OPEN.value,
                    Dispute.is_review.is_(False))
            .all()
        )

    def cancel(self, session: Session, deal: Deal, actor_id: str, reason: Optional[str] = None, now=None) -> Deal:
        """
        Cancel a DRAFT or FUNDED deal while every milestone is still PENDING.

        Held funds are refunded in full; the deal ends REFUNDED.
        """
        moment = resolve_now(now)
        if deal.status not in DealStateValidator.CANCELLABLE:
            raise InvalidStateError(
                f"Deal {deal.deal_id} is {deal.status.upper()}; only DRAFT or FUNDED deals can be cancelled"
            )
        started = [m.milestone_id for m in deal.milestones if m.status != MilestoneStatus.PENDING.value]
        if started:
            raise InvalidStateError(
                f"Deal {deal.deal_id} cannot be cancelled; milestones already in progress: {', '.join(started)}"
            )

        if deal.status == DealStatus.FUNDED.value:
            self.refund(session, deal, deal.total_amount, "cancellation", actor_id, now=moment)

        transition_deal(deal, DealStatus.REFUNDED)
        deal.cancelled_at = moment
        deal.cancel_reason = reason
        if deal.funding_token:
            deal.refunded_at = moment
        audit_logger.record(session, "DEAL_CANCELLED", actor_id, "deal", deal.deal_id, deal.deal_id,
                            {"reason": reason}, now=moment)
        logger.info(f"🛑 DEAL_CANCELLED: {deal.deal_id} by {actor_id}: {reason}")
        return deal

    def mark_disputed(self, session: Session, deal: Deal, now=None) -> Deal:
        if deal.status != DealStatus.DISPUTED.value:
            transition_deal(deal, DealStatus.DISPUTED)
        return deal

    def mark_refunded(self, session: Session, deal: Deal, now=None) -> Deal:
        transition_deal(deal, DealStatus.REFUNDED)
        deal.refunded_at = resolve_now(now)
        return deal

    def refund(self, session: Session, deal: Deal, amount: int, reason: str, actor_id: str,
               milestone: Optional[Milestone] = None, dispute: Optional[Dispute] = None, now=None) -> Refund:
        """Return ``amount`` of held funds to the brand and record the ledger entry"""
        _positive_amount(amount, "amount")
        if not deal.funding_token:
            raise InvalidStateError(f"Deal {deal.deal_id} holds no funds to refund")

        idempotency_key = refund_key(deal, reason, dispute)
        refund_ref = self.retry.retry(
            lambda: self.payment.refund(deal.funding_token, amount, idempotency_key),
            **Config.payout_retry_policy()
        )
        refund = Refund(
            deal_id=deal.id,
            milestone_id=milestone.id if milestone is not None else None,
            dispute_id=dispute.id if dispute is not None else None,
            amount=amount,
            currency=deal.currency,
            reason=reason,
            idempotency_key=idempotency_key,
            external_ref=refund_ref,
            created_at=resolve_now(now),
        )
        session.add(refund)
        session.flush()
        audit_logger.record(
            session, "REFUND_ISSUED", actor_id, "refund", refund.refund_id, deal.deal_id,
            {"amount": amount, "reason": reason,
             "milestone": milestone.milestone_id if milestone is not None else None},
            now=now,
        )
        logger.info(f"↩️ REFUND_ISSUED: {refund.refund_id} deal {deal.deal_id} {amount} {deal.currency} ({reason})")
        return refund

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def update_auto_release(self, session: Session, deal: Deal, actor_id: str,
                            enabled: Optional[bool] = None, days: Optional[int] = None, now=None) -> Deal:
        if DealStateValidator.is_terminal_state(deal.status):
            raise InvalidStateError(f"Deal {deal.deal_id} is {deal.status.upper()}; settings are frozen")
        if days is not None:
            deal.auto_release_days = _validate_auto_release_days(days)
        if enabled is not None:
            deal.auto_release_enabled = bool(enabled)
        audit_logger.record(
            session, "AUTO_RELEASE_UPDATED", actor_id, "deal", deal.deal_id, deal.deal_id,
            {"enabled": deal.auto_release_enabled, "days": deal.auto_release_days}, now=now,
        )
        logger.info(
            f"⏱️ AUTO_RELEASE_UPDATED: {deal.deal_id} "
            f"{'ON' if deal.auto_release_enabled else 'OFF'} after {deal.auto_release_days}d"
        )
        return deal

    def update_milestone_amount(self, session: Session, deal: Deal, milestone: Milestone, amount: int,
                                actor_id: str, now=None) -> Milestone:
        """Amounts are editable only while the deal is DRAFT; the deal total follows"""
        if deal.status != DealStatus.DRAFT.value:
            raise InvalidStateError(
                f"Milestone amounts are immutable once deal {deal.deal_id} has been funded"
            )
        if milestone.deal_id != deal.id:
            raise NotFoundError("Milestone", milestone.milestone_id)
        previous = milestone.amount
        milestone.amount = _positive_amount(amount, "amount")
        deal.total_amount = sum(m.amount for m in deal.milestones)
        audit_logger.record(
            session, "MILESTONE_AMOUNT_UPDATED", actor_id, "milestone", milestone.milestone_id, deal.deal_id,
            {"from": previous, "to": amount, "deal_total": deal.total_amount}, now=now,
        )
        return milestone

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get(session: Session, deal_id: str) -> Deal:
        deal = session.query(Deal).filter(Deal.deal_id == deal_id).first()
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        return deal

    @staticmethod
    def list_for_account(session: Session, account_id: str, status: Optional[str] = None,
                         limit: int = 50, offset: int = 0, include_archived: bool = False) -> List[Deal]:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative", field="limit")
        query = session.query(Deal).filter(or_(Deal.brand_id == account_id, Deal.creator_id == account_id))
        if status is not None:
            valid = {s.value for s in DealStatus}
            if status not in valid:
                raise ValidationError(f"Unknown deal status '{status}'", field="status")
            query = query.filter(Deal.status == status)
        if not include_archived:
            query = query.filter(Deal.archived_at.is_(None))
        return query.order_by(Deal.id.desc()).offset(offset).limit(min(limit, MAX_LIST_LIMIT)).all()


def deal_to_dict(deal: Deal) -> Dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value is not None else None

    return {
        "deal_id": deal.deal_id,
        "brand_id": deal.brand_id,
        "creator_id": deal.creator_id,
        "title": deal.title,
        "description": deal.description,
        "currency": deal.currency,
        "total_amount": deal.total_amount,
        "status": deal.status,
        "auto_release_enabled": deal.auto_release_enabled,
        "auto_release_days": deal.auto_release_days,
        "accepted_at": _iso(deal.accepted_at),
        "funded_at": _iso(deal.funded_at),
        "completed_at": _iso(deal.completed_at),
        "cancelled_at": _iso(deal.cancelled_at),
        "refunded_at": _iso(deal.refunded_at),
        "milestones": [milestone_to_dict(m) for m in deal.milestones],
    }


def milestone_to_dict(milestone: Milestone) -> Dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value is not None else None

    deliverable = milestone.current_deliverable
    return {
        "milestone_id": milestone.milestone_id,
        "position": milestone.position,
        "title": milestone.title,
        "description": milestone.description,
        "amount": milestone.amount,
        "status": milestone.status,
        "due_date": _iso(milestone.due_date),
        "revision_count": milestone.revision_count,
        "approval_feedback": milestone.approval_feedback,
        "rejection_reason": milestone.rejection_reason,
        "auto_released": milestone.auto_released,
        "released_amount": milestone.released_amount,
        "deliverable_id": deliverable.deliverable_id if deliverable is not None else None,
        "submitted_at": _iso(milestone.submitted_at),
        "approved_at": _iso(milestone.approved_at),
        "released_at": _iso(milestone.released_at),
        "disputed_at": _iso(milestone.disputed_at),
        "refunded_at": _iso(milestone.refunded_at),
    }
