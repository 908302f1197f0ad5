"""
Payout Issuer
Turns a release decision into one idempotent instruction to the payment
capability and keeps the Payout ledger row in step with it.

Callers hold the per-deal lock. A payout row is committed as PROCESSING
before the external call, so a crash mid-call leaves a record that
reconciliation can settle by idempotency key instead of re-issuing.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import Config
from models import Deal, Dispute, Milestone, Payout, PayoutStatus
from services.audit_logger import audit_logger
from services.payment_capability import PaymentCapability, ReleaseStatus
from services.retry_service import RetryService, retry_service
from services.subscription_service import SubscriptionService
from utils.datetime_helpers import resolve_now
from utils.exceptions import InvalidStateError, PaymentCapabilityError, ValidationError
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)


def milestone_release_key(milestone: Milestone) -> str:
    """One idempotency key per milestone release, reused by every retry"""
    return f"release-{milestone.milestone_id}"


def dispute_release_key(dispute: Dispute) -> str:
    return f"dispute-{dispute.dispute_id}"


class PayoutIssuer:
    """Issues payouts through the payment capability with bounded retries"""

    def __init__(self, payment: PaymentCapability, retry: Optional[RetryService] = None):
        self.payment = payment
        self.retry = retry or retry_service

    def find_by_key(self, session: Session, idempotency_key: str) -> Optional[Payout]:
        session.flush()
        return session.query(Payout).filter(Payout.idempotency_key == idempotency_key).first()

    def _prepare(self, session: Session, deal: Deal, milestone: Milestone, gross_amount: int,
                 idempotency_key: str, dispute: Optional[Dispute], now) -> Payout:
        payout = self.find_by_key(session, idempotency_key)

        if payout is not None and payout.status == PayoutStatus.PROCESSING.value:
            raise InvalidStateError(
                f"Payout {payout.payout_id} is still processing; it will be settled by reconciliation"
            )

        tier = SubscriptionService.get_tier(session, deal.brand_id, now)
        split = FeeCalculator.compute_payout_split(tier, gross_amount)

        if payout is None:
            payout = Payout(
                deal_id=deal.id,
                milestone_id=milestone.id,
                dispute_id=dispute.id if dispute is not None else None,
                idempotency_key=idempotency_key,
                currency=deal.currency,
                attempt_count=0,
            )
            session.add(payout)
        else:
            logger.info(f"🔁 PAYOUT_REISSUE: {payout.payout_id} previously {payout.status} ({payout.failure_kind})")

        if dispute is not None:
            payout.dispute_id = dispute.id

        payout.gross_amount = split["gross_amount"]
        payout.fee_amount = split["fee_amount"]
        payout.amount = split["net_amount"]
        payout.plan_tier = tier.value
        payout.destination_account = deal.destination_account
        payout.status = PayoutStatus.PROCESSING.value
        payout.processing_started_at = resolve_now(now)
        payout.failure_kind = None
        payout.failure_message = None
        return payout

    def issue(self, session: Session, deal: Deal, milestone: Milestone, gross_amount: int,
              idempotency_key: str, actor_id: str, dispute: Optional[Dispute] = None, now=None) -> Payout:
        """
        Release ``gross_amount`` of ``milestone`` to the creator, net of the brand's tier fee.

        Returns the COMPLETED payout; an already COMPLETED payout for the same
        key is returned untouched. On failure the payout is committed as
        FAILED and the PaymentCapabilityError propagates.
        """
        if isinstance(gross_amount, bool) or not isinstance(gross_amount, int) or gross_amount <= 0:
            raise ValidationError(f"Release amount must be a positive integer, got {gross_amount!r}", field="amount")

        existing = self.find_by_key(session, idempotency_key)
        if existing is not None and existing.status == PayoutStatus.COMPLETED.value:
            logger.info(f"♻️ PAYOUT_ALREADY_COMPLETED: {existing.payout_id} for key {idempotency_key}")
            return existing

        payout = self._prepare(session, deal, milestone, gross_amount, idempotency_key, dispute, now)
        # Persist PROCESSING (and any pending milestone state) before calling out
        session.commit()
        logger.info(
            f"💸 PAYOUT_PROCESSING: {payout.payout_id} deal {deal.deal_id} milestone {milestone.milestone_id} "
            f"gross {payout.gross_amount} fee {payout.fee_amount} net {payout.amount} {payout.currency}"
        )

        def _count_attempt(_attempt: int) -> None:
            payout.attempt_count = (payout.attempt_count or 0) + 1

        def _release() -> str:
            return self.payment.release(
                deal.funding_token, payout.amount, payout.fee_amount,
                deal.destination_account, idempotency_key,
            )

        try:
            external_ref = self.retry.retry(
                _release, on_attempt=_count_attempt, **Config.payout_retry_policy()
            )
        except PaymentCapabilityError as e:
            payout.status = PayoutStatus.FAILED.value
            payout.failure_kind = e.kind
            payout.failure_message = e.message
            audit_logger.record(
                session, "PAYOUT_FAILED", actor_id, "payout", payout.payout_id, deal.deal_id,
                {"kind": e.kind, "attempts": payout.attempt_count, "message": e.message}, now=now,
            )
            session.commit()
            logger.error(
                f"❌ PAYOUT_FAILED: {payout.payout_id} after {payout.attempt_count} attempt(s) "
                f"({e.kind}): {e.message} - milestone {milestone.milestone_id} stays {milestone.status.upper()}"
            )
            raise

        self._mark_completed(session, payout, external_ref, actor_id, deal, now)
        return payout

    def _mark_completed(self, session: Session, payout: Payout, external_ref: Optional[str],
                        actor_id: str, deal: Deal, now) -> None:
        payout.status = PayoutStatus.COMPLETED.value
        payout.external_ref = external_ref
        payout.processed_at = resolve_now(now)
        audit_logger.record(
            session, "PAYOUT_COMPLETED", actor_id, "payout", payout.payout_id, deal.deal_id,
            {"amount": payout.amount, "fee_amount": payout.fee_amount,
             "external_ref": external_ref, "attempts": payout.attempt_count},
            now=now,
        )
        logger.info(f"✅ PAYOUT_COMPLETED: {payout.payout_id} net {payout.amount} ref {external_ref}")

    def cancel_failed(self, session: Session, idempotency_key: str, actor_id: str, now=None) -> Optional[Payout]:
        """Close a FAILED payout that will never be retried"""
        payout = self.find_by_key(session, idempotency_key)
        if payout is None or payout.status != PayoutStatus.FAILED.value:
            return None
        payout.status = PayoutStatus.CANCELED.value
        audit_logger.record(session, "PAYOUT_CANCELED", actor_id, "payout", payout.payout_id,
                            payout.deal.deal_id if payout.deal else None, {}, now=now)
        logger.info(f"🚫 PAYOUT_CANCELED: {payout.payout_id}")
        return payout

    def has_processing_payout(self, session: Session, milestone: Milestone) -> bool:
        session.flush()
        return (
            session.query(Payout.id)
            .filter(Payout.milestone_id == milestone.id,
                    Payout.status == PayoutStatus.PROCESSING.value)
            .first()
        ) is not None

    @staticmethod
    def stale_processing_payouts(session: Session, now=None) -> List[Payout]:
        """PROCESSING payouts older than the configured maximum age"""
        cutoff = resolve_now(now) - timedelta(minutes=Config.PAYOUT_PROCESSING_MAX_AGE_MINUTES)
        return (
            session.query(Payout)
            .filter(Payout.status == PayoutStatus.PROCESSING.value,
                    Payout.processing_started_at <= cutoff)
            .order_by(Payout.processing_started_at)
            .all()
        )

    def reconcile(self, session: Session, payout: Payout, now=None) -> str:
        """
        Settle a stuck PROCESSING payout from the capability's view of its idempotency key.

        Returns the payout's resulting status. An unknown or still-processing
        external state leaves the payout PROCESSING for the next pass; an
        unknown state means the release never reached the processor, so the
        payout is marked FAILED (transient) and becomes eligible for retry.
        """
        if payout.status != PayoutStatus.PROCESSING.value:
            return payout.status

        deal = payout.deal
        status = self.payment.get_release_status(payout.idempotency_key)
        logger.info(f"🔍 PAYOUT_RECONCILE: {payout.payout_id} external state {status.state}")

        if status.state == ReleaseStatus.COMPLETED:
            self._mark_completed(session, payout, status.external_ref, "system", deal, now)
        elif status.state in (ReleaseStatus.FAILED, ReleaseStatus.UNKNOWN):
            payout.status = PayoutStatus.FAILED.value
            payout.failure_kind = status.failure_kind or PaymentCapabilityError.TRANSIENT
            payout.failure_message = status.message or f"Reconciled as {status.state}"
            audit_logger.record(
                session, "PAYOUT_FAILED", "system", "payout", payout.payout_id, deal.deal_id,
                {"kind": payout.failure_kind, "reconciled": True}, now=now,
            )
            logger.warning(f"⚠️ PAYOUT_RECONCILED_FAILED: {payout.payout_id} ({payout.failure_kind})")
        return payout.status


def payout_to_dict(payout: Payout) -> Dict[str, Any]:
    return {
        "payout_id": payout.payout_id,
        "deal_id": payout.deal.deal_id if payout.deal else None,
        "milestone_id": payout.milestone.milestone_id if payout.milestone else None,
        "gross_amount": payout.gross_amount,
        "fee_amount": payout.fee_amount,
        "amount": payout.amount,
        "currency": payout.currency,
        "plan_tier": payout.plan_tier,
        "status": payout.status,
        "external_ref": payout.external_ref,
        "idempotency_key": payout.idempotency_key,
        "attempt_count": payout.attempt_count,
        "failure_kind": payout.failure_kind,
        "failure_message": payout.failure_message,
        "processed_at": payout.processed_at.isoformat() if payout.processed_at else None,
    }
