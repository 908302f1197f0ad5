"""
Auto-Release Service

Time-driven watchers run by the scheduler:
- force-release SUBMITTED milestones whose brand did not respond in time
- retry releases of APPROVED milestones whose payout failed transiently
- reconcile payouts stuck in PROCESSING against the payment capability

Each item is handled in its own per-deal critical section; state is re-read
under the lock, so repeated or overlapping ticks act at most once.
"""

import logging
from typing import Dict, List, Tuple

from sqlalchemy.orm import Session

from config import Config
from models import (
    Deal, DealStatus, Dispute, DisputeStatus, Milestone, MilestoneStatus, Payout, PayoutStatus,
)
from services.dispute_resolution import DisputeResolver
from services.milestone_service import MilestoneService, auto_release_due_at
from services.payout_issuer import PayoutIssuer
from utils.atomic_transactions import deal_transaction
from utils.datetime_helpers import resolve_now
from utils.exceptions import EscrowError, PaymentCapabilityError

logger = logging.getLogger(__name__)

# Lifetime cap on automatic attempts for one payout; beyond it an operator steps in
MAX_AUTOMATIC_RELEASE_ATTEMPTS = 15

_ACTIVE_DEAL_STATES = (DealStatus.FUNDED.value, DealStatus.DISPUTED.value)


class AutoReleaseService:
    """Scheduler-driven release, retry and reconciliation passes"""

    def __init__(self, session_factory, milestone_service: MilestoneService,
                 payout_issuer: PayoutIssuer, dispute_resolver: DisputeResolver):
        self.session_factory = session_factory
        self.milestone_service = milestone_service
        self.payout_issuer = payout_issuer
        self.dispute_resolver = dispute_resolver

    # ------------------------------------------------------------------
    # Auto-release
    # ------------------------------------------------------------------

    @staticmethod
    def find_due(session: Session, now=None) -> List[Tuple[str, str]]:
        """(deal_id, milestone_id) pairs whose response window has elapsed"""
        moment = resolve_now(now)
        rows = (
            session.query(Deal, Milestone)
            .join(Milestone, Milestone.deal_id == Deal.id)
            .filter(Milestone.status == MilestoneStatus.SUBMITTED.value,
                    Milestone.submitted_at.isnot(None),
                    Deal.auto_release_enabled.is_(True),
                    Deal.status.in_(_ACTIVE_DEAL_STATES))
            .order_by(Milestone.submitted_at)
            .all()
        )
        return [
            (deal.deal_id, milestone.milestone_id)
            for deal, milestone in rows
            if auto_release_due_at(deal, milestone) <= moment
        ]

    def process_auto_release(self, now=None) -> Dict[str, int]:
        """One scheduler tick: force-release every overdue SUBMITTED milestone"""
        moment = resolve_now(now)
        stats = {"due": 0, "released": 0, "skipped": 0, "failed": 0}
        if not Config.AUTO_RELEASE_ENABLED:
            logger.debug("Auto-release disabled by configuration")
            return stats

        session = self.session_factory()
        try:
            due = self.find_due(session, moment)
        finally:
            session.close()
        stats["due"] = len(due)

        for deal_id, milestone_id in due:
            try:
                with deal_transaction(deal_id, self.session_factory) as (session, deal):
                    milestone = self.milestone_service.get(session, milestone_id)
                    if milestone.status != MilestoneStatus.SUBMITTED.value:
                        # A human decision landed first
                        logger.info(f"⏭️ AUTO_RELEASE_SKIPPED: {milestone_id} is now {milestone.status.upper()}")
                        stats["skipped"] += 1
                        continue
                    self.milestone_service.force_release(session, deal, milestone, moment)
                stats["released"] += 1
            except PaymentCapabilityError as e:
                stats["failed"] += 1
                logger.error(f"❌ AUTO_RELEASE_PAYOUT_FAILED: {milestone_id} ({e.kind}) - will retry")
            except EscrowError as e:
                stats["skipped"] += 1
                logger.warning(f"⚠️ AUTO_RELEASE_SKIPPED: {milestone_id}: {e.message}")

        if stats["due"]:
            logger.info(f"✅ Auto-release tick: {stats}")
        return stats

    # ------------------------------------------------------------------
    # Release retry
    # ------------------------------------------------------------------

    @staticmethod
    def find_retry_candidates(session: Session) -> List[Tuple[str, str]]:
        """APPROVED milestones whose last payout failed transiently and that no dispute holds"""
        rows = (
            session.query(Deal, Milestone, Payout)
            .join(Milestone, Milestone.deal_id == Deal.id)
            .join(Payout, Payout.milestone_id == Milestone.id)
            .filter(Milestone.status == MilestoneStatus.APPROVED.value,
                    Deal.status.in_(_ACTIVE_DEAL_STATES),
                    Payout.status == PayoutStatus.FAILED.value,
                    Payout.failure_kind == PaymentCapabilityError.TRANSIENT,
                    Payout.attempt_count < MAX_AUTOMATIC_RELEASE_ATTEMPTS)
            .all()
        )
        disputed = {
            milestone_id for (milestone_id,) in
            session.query(Dispute.milestone_id).filter(Dispute.status == DisputeStatus.OPEN.value).all()
        }
        seen = set()
        candidates = []
        for deal, milestone, _payout in rows:
            if milestone.id in disputed or milestone.id in seen:
                continue
            seen.add(milestone.id)
            candidates.append((deal.deal_id, milestone.milestone_id))
        return candidates

    def retry_failed_releases(self, now=None) -> Dict[str, int]:
        stats = {"candidates": 0, "released": 0, "failed": 0, "skipped": 0}
        session = self.session_factory()
        try:
            candidates = self.find_retry_candidates(session)
        finally:
            session.close()
        stats["candidates"] = len(candidates)

        for deal_id, milestone_id in candidates:
            try:
                with deal_transaction(deal_id, self.session_factory) as (session, deal):
                    milestone = self.milestone_service.get(session, milestone_id)
                    self.milestone_service.retry_release(session, deal, milestone, "system", now)
                stats["released"] += 1
            except PaymentCapabilityError as e:
                stats["failed"] += 1
                logger.warning(f"⚠️ RELEASE_RETRY_FAILED: {milestone_id} ({e.kind})")
            except EscrowError as e:
                stats["skipped"] += 1
                logger.info(f"⏭️ RELEASE_RETRY_SKIPPED: {milestone_id}: {e.message}")

        if stats["candidates"]:
            logger.info(f"✅ Release retry pass: {stats}")
        return stats

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_payouts(self, now=None) -> Dict[str, int]:
        """Settle PROCESSING payouts older than the maximum age by querying the capability"""
        moment = resolve_now(now)
        stats = {"stale": 0, "completed": 0, "failed": 0, "pending": 0}

        session = self.session_factory()
        try:
            stale = [(p.payout_id, p.deal.deal_id) for p in PayoutIssuer.stale_processing_payouts(session, moment)]
        finally:
            session.close()
        stats["stale"] = len(stale)

        for payout_id, deal_id in stale:
            try:
                with deal_transaction(deal_id, self.session_factory) as (session, deal):
                    payout = session.query(Payout).filter(Payout.payout_id == payout_id).one()
                    status = self.payout_issuer.reconcile(session, payout, moment)
                    if status == PayoutStatus.COMPLETED.value:
                        self._apply_completed(session, deal, payout, moment)
                        stats["completed"] += 1
                    elif status == PayoutStatus.FAILED.value:
                        stats["failed"] += 1
                    else:
                        stats["pending"] += 1
            except EscrowError as e:
                stats["pending"] += 1
                logger.error(f"❌ PAYOUT_RECONCILE_ERROR: {payout_id}: {e.message}")

        if stats["stale"]:
            logger.info(f"✅ Payout reconciliation pass: {stats}")
        return stats

    def _apply_completed(self, session: Session, deal: Deal, payout: Payout, now) -> None:
        if payout.dispute_id is not None:
            dispute = session.get(Dispute, payout.dispute_id)
            self.dispute_resolver.finish_resolution(session, deal, dispute, payout, now)
        else:
            self.milestone_service.finish_release(session, deal, payout.milestone, payout, "system", now)

    def run_full_check(self, now=None) -> Dict[str, Dict[str, int]]:
        """All passes in order; for manual runs and tests"""
        return {
            "reconciliation": self.reconcile_payouts(now),
            "auto_release": self.process_auto_release(now),
            "release_retry": self.retry_failed_releases(now),
        }
