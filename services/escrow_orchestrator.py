"""
Escrow Orchestrator Service
Single entry point for the deal/milestone escrow surface. Resolves the
acting party, checks ownership, runs each mutation inside the per-deal
critical section and returns plain dictionaries built while the session is
still open.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import or_

from database import managed_session
from models import Deal, Dispute, Milestone, PartyRole, Payout, PayoutStatus
from services.account_archival_saga import AccountArchivalSaga
from services.auto_release_service import AutoReleaseService
from services.deal_service import DealService, deal_to_dict, milestone_to_dict
from services.dispute_resolution import DisputeResolver, dispute_to_dict
from services.milestone_service import MilestoneService, deliverable_to_dict
from services.payment_capability import PaymentCapability
from services.payout_issuer import PayoutIssuer, payout_to_dict
from services.retry_service import RetryService
from services.subscription_service import SubscriptionService
from utils.atomic_transactions import atomic_transaction, deal_transaction
from utils.deliverable_validation import DeliverableSubmission
from utils.exceptions import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the identity collaborator"""
    account_id: str
    is_admin: bool = False


SYSTEM_ACTOR = Actor(account_id="system", is_admin=True)


@dataclass
class DealCreationRequest:
    """Request model for deal creation"""
    creator_id: str
    title: str
    milestones: List[Dict[str, Any]] = field(default_factory=list)
    currency: str = "USD"
    description: Optional[str] = None
    auto_release_enabled: Optional[bool] = None
    auto_release_days: Optional[int] = None


class EscrowOrchestrator:
    """Facade over the deal, milestone, payout and dispute services"""

    def __init__(self, payment: PaymentCapability, session_factory=None, retry: Optional[RetryService] = None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.payment = payment

        self.payout_issuer = PayoutIssuer(payment, retry)
        self.deal_service = DealService(payment, retry)
        self.milestone_service = MilestoneService(self.deal_service, self.payout_issuer)
        self.dispute_resolver = DisputeResolver(self.deal_service, self.milestone_service, self.payout_issuer)
        self.auto_release = AutoReleaseService(
            session_factory, self.milestone_service, self.payout_issuer, self.dispute_resolver
        )
        self.archival_saga = AccountArchivalSaga(session_factory, self.deal_service)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _role(deal: Deal, actor: Actor, *allowed: PartyRole) -> PartyRole:
        """Role of ``actor`` on ``deal``; admins pass wherever ADMIN is allowed"""
        role = deal.party_role(actor.account_id)
        if role in allowed:
            return role
        if actor.is_admin and PartyRole.ADMIN in allowed:
            return PartyRole.ADMIN
        names = "/".join(r.value for r in allowed)
        logger.warning(f"🚫 UNAUTHORIZED: {actor.account_id} on deal {deal.deal_id} (needs {names})")
        raise AuthorizationError(f"Account {actor.account_id} is not allowed to do this on deal {deal.deal_id} "
                                 f"(requires {names})")

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise AuthorizationError(f"Account {actor.account_id} is not an administrator")

    def _deal_ref(self, model, public_column, public_id: str, entity: str) -> str:
        """Public deal id owning a milestone/dispute/payout, looked up before locking"""
        session = self.session_factory()
        try:
            row = (
                session.query(Deal.deal_id)
                .join(model, model.deal_id == Deal.id)
                .filter(public_column == public_id)
                .first()
            )
        finally:
            session.close()
        if row is None:
            raise NotFoundError(entity, public_id)
        return row[0]

    def _milestone_in(self, session, deal: Deal, milestone_id: str) -> Milestone:
        milestone = self.milestone_service.get(session, milestone_id)
        if milestone.deal_id != deal.id:
            raise NotFoundError("Milestone", milestone_id)
        return milestone

    def _milestone_op(self, milestone_id: str):
        return deal_transaction(
            self._deal_ref(Milestone, Milestone.milestone_id, milestone_id, "Milestone"), self.session_factory
        )

    def _dispute_op(self, dispute_id: str):
        return deal_transaction(
            self._deal_ref(Dispute, Dispute.dispute_id, dispute_id, "Dispute"), self.session_factory
        )

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    def create_deal(self, actor: Actor, request: DealCreationRequest, now=None) -> Dict[str, Any]:
        """The acting account becomes the brand"""
        with atomic_transaction(self.session_factory) as session:
            deal = self.deal_service.create(
                session,
                brand_id=actor.account_id,
                creator_id=request.creator_id,
                title=request.title,
                milestones=request.milestones,
                currency=request.currency,
                description=request.description,
                auto_release_enabled=request.auto_release_enabled,
                auto_release_days=request.auto_release_days,
                now=now,
            )
            return deal_to_dict(deal)

    def accept_deal(self, actor: Actor, deal_id: str, destination_account: Optional[str] = None,
                    now=None) -> Dict[str, Any]:
        with deal_transaction(deal_id, self.session_factory) as (session, deal):
            self._role(deal, actor, PartyRole.CREATOR)
            self.deal_service.accept(session, deal, actor.account_id, destination_account, now)
            return deal_to_dict(deal)

    def fund_deal(self, actor: Actor, deal_id: str, now=None) -> Dict[str, Any]:
        with deal_transaction(deal_id, self.session_factory) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND)
            self.deal_service.fund(session, deal, actor.account_id, now)
            return deal_to_dict(deal)

    def cancel_deal(self, actor: Actor, deal_id: str, reason: Optional[str] = None, now=None) -> Dict[str, Any]:
        with deal_transaction(deal_id, self.session_factory) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND, PartyRole.ADMIN)
            self.deal_service.cancel(session, deal, actor.account_id, reason, now)
            return deal_to_dict(deal)

    def update_auto_release(self, actor: Actor, deal_id: str, enabled: Optional[bool] = None,
                            days: Optional[int] = None, now=None) -> Dict[str, Any]:
        with deal_transaction(deal_id, self.session_factory) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND, PartyRole.ADMIN)
            self.deal_service.update_auto_release(session, deal, actor.account_id, enabled, days, now)
            return deal_to_dict(deal)

    def update_milestone_amount(self, actor: Actor, milestone_id: str, amount: int, now=None) -> Dict[str, Any]:
        with self._milestone_op(milestone_id) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND)
            milestone = self._milestone_in(session, deal, milestone_id)
            self.deal_service.update_milestone_amount(session, deal, milestone, amount, actor.account_id, now)
            return deal_to_dict(deal)

    def get_deal(self, actor: Actor, deal_id: str) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            deal = self.deal_service.get(session, deal_id)
            self._role(deal, actor, PartyRole.BRAND, PartyRole.CREATOR, PartyRole.ADMIN)
            return deal_to_dict(deal)

    def list_deals(self, actor: Actor, status: Optional[str] = None, limit: int = 50,
                   offset: int = 0) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            deals = self.deal_service.list_for_account(session, actor.account_id, status, limit, offset)
            return [deal_to_dict(d) for d in deals]

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def get_milestone(self, actor: Actor, milestone_id: str) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            milestone = self.milestone_service.get(session, milestone_id)
            self._role(milestone.deal, actor, PartyRole.BRAND, PartyRole.CREATOR, PartyRole.ADMIN)
            data = milestone_to_dict(milestone)
            data["deal_id"] = milestone.deal.deal_id
            data["deliverables"] = [deliverable_to_dict(d) for d in milestone.deliverables]
            return data

    def submit_milestone(self, actor: Actor, milestone_id: str,
                         deliverable: Union[DeliverableSubmission, Dict[str, Any], None], now=None) -> Dict[str, Any]:
        if not isinstance(deliverable, DeliverableSubmission):
            deliverable = DeliverableSubmission.from_dict(deliverable)
        with self._milestone_op(milestone_id) as (session, deal):
            self._role(deal, actor, PartyRole.CREATOR)
            milestone = self._milestone_in(session, deal, milestone_id)
            self.milestone_service.submit(session, deal, milestone, actor.account_id, deliverable, now)
            return milestone_to_dict(milestone)

    def approve_milestone(self, actor: Actor, milestone_id: str, feedback: Optional[str] = None,
                          now=None) -> Dict[str, Any]:
        with self._milestone_op(milestone_id) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND)
            milestone = self._milestone_in(session, deal, milestone_id)
            payout = self.milestone_service.approve(session, deal, milestone, actor.account_id, feedback, now)
            return {"milestone": milestone_to_dict(milestone), "payout": payout_to_dict(payout),
                    "deal_status": deal.status}

    def request_revision(self, actor: Actor, milestone_id: str, feedback: str,
                         requirements: Optional[Iterable[str]] = None, now=None) -> Dict[str, Any]:
        with self._milestone_op(milestone_id) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND)
            milestone = self._milestone_in(session, deal, milestone_id)
            self.milestone_service.request_revision(
                session, deal, milestone, actor.account_id, feedback, requirements, now
            )
            return milestone_to_dict(milestone)

    def reject_milestone(self, actor: Actor, milestone_id: str, reason: str, feedback: Optional[str] = None,
                         final: bool = False, evidence: Optional[List[str]] = None, now=None) -> Dict[str, Any]:
        """Non-final rejection returns the milestone to PENDING; a final one opens a brand dispute"""
        with self._milestone_op(milestone_id) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND)
            milestone = self._milestone_in(session, deal, milestone_id)
            if not final:
                self.milestone_service.reject(session, deal, milestone, actor.account_id, reason, feedback, now)
                return {"milestone": milestone_to_dict(milestone), "dispute": None}

            self.milestone_service.record_final_rejection(
                session, deal, milestone, actor.account_id, reason, feedback, now
            )
            dispute = self.dispute_resolver.raise_dispute(
                session, deal, milestone, actor.account_id, PartyRole.BRAND, reason, evidence, now
            )
            return {"milestone": milestone_to_dict(milestone), "dispute": dispute_to_dict(dispute)}

    def force_release(self, milestone_id: str, now=None) -> Dict[str, Any]:
        """Timer-driven release; the scheduler reaches the same code through AutoReleaseService"""
        with self._milestone_op(milestone_id) as (session, deal):
            milestone = self._milestone_in(session, deal, milestone_id)
            payout = self.milestone_service.force_release(session, deal, milestone, now)
            return {"milestone": milestone_to_dict(milestone), "payout": payout_to_dict(payout),
                    "deal_status": deal.status}

    def admin_force_release(self, actor: Actor, milestone_id: str, reason: str, now=None) -> Dict[str, Any]:
        self._require_admin(actor)
        with self._milestone_op(milestone_id) as (session, deal):
            milestone = self._milestone_in(session, deal, milestone_id)
            payout = self.milestone_service.admin_force_release(
                session, deal, milestone, actor.account_id, reason, now
            )
            return {"milestone": milestone_to_dict(milestone), "payout": payout_to_dict(payout),
                    "deal_status": deal.status}

    def retry_release(self, actor: Actor, milestone_id: str, now=None) -> Dict[str, Any]:
        with self._milestone_op(milestone_id) as (session, deal):
            self._role(deal, actor, PartyRole.BRAND, PartyRole.ADMIN)
            milestone = self._milestone_in(session, deal, milestone_id)
            payout = self.milestone_service.retry_release(session, deal, milestone, actor.account_id, now)
            return {"milestone": milestone_to_dict(milestone), "payout": payout_to_dict(payout),
                    "deal_status": deal.status}

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def raise_dispute(self, actor: Actor, milestone_id: str, reason: str,
                      evidence: Optional[List[str]] = None, now=None) -> Dict[str, Any]:
        with self._milestone_op(milestone_id) as (session, deal):
            role = self._role(deal, actor, PartyRole.BRAND, PartyRole.CREATOR)
            milestone = self._milestone_in(session, deal, milestone_id)
            dispute = self.dispute_resolver.raise_dispute(
                session, deal, milestone, actor.account_id, role, reason, evidence, now
            )
            return dispute_to_dict(dispute)

    def resolve_dispute(self, actor: Actor, dispute_id: str, outcome: str, amount: Optional[int] = None,
                        note: Optional[str] = None, refund_remainder: bool = True, now=None) -> Dict[str, Any]:
        self._require_admin(actor)
        with self._dispute_op(dispute_id) as (session, deal):
            dispute = self.dispute_resolver.get(session, dispute_id)
            result = self.dispute_resolver.resolve(
                session, deal, dispute, actor.account_id, outcome, amount, note, refund_remainder, now
            )
            data = dispute_to_dict(dispute)
            data.update({
                "released_amount": result.released_amount,
                "refunded_amount": result.refunded_amount,
                "payout_id": result.payout_id,
                "deal_status": deal.status,
                "milestone_status": dispute.milestone.status,
            })
            return data

    def withdraw_dispute(self, actor: Actor, dispute_id: str, now=None) -> Dict[str, Any]:
        with self._dispute_op(dispute_id) as (session, deal):
            dispute = self.dispute_resolver.get(session, dispute_id)
            self.dispute_resolver.withdraw(session, deal, dispute, actor.account_id, now)
            return dispute_to_dict(dispute)

    def list_disputes(self, actor: Actor, deal_id: Optional[str] = None,
                      status: Optional[str] = None) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            deal = None
            if deal_id is not None:
                deal = self.deal_service.get(session, deal_id)
                self._role(deal, actor, PartyRole.BRAND, PartyRole.CREATOR, PartyRole.ADMIN)
            else:
                self._require_admin(actor)
            return [dispute_to_dict(d) for d in self.dispute_resolver.list_disputes(session, deal, status)]

    def dispute_stats(self, actor: Actor) -> Dict[str, Any]:
        self._require_admin(actor)
        with managed_session(self.session_factory) as session:
            return self.dispute_resolver.stats(session)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def get_payout(self, actor: Actor, payout_id: str) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            payout = session.query(Payout).filter(Payout.payout_id == payout_id).first()
            if payout is None:
                raise NotFoundError("Payout", payout_id)
            self._role(payout.deal, actor, PartyRole.BRAND, PartyRole.CREATOR, PartyRole.ADMIN)
            return payout_to_dict(payout)

    def list_payouts(self, actor: Actor, status: Optional[str] = None, limit: int = 50,
                     offset: int = 0) -> List[Dict[str, Any]]:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative", field="limit")
        with managed_session(self.session_factory) as session:
            query = (
                session.query(Payout)
                .join(Deal, Payout.deal_id == Deal.id)
                .filter(or_(Deal.brand_id == actor.account_id, Deal.creator_id == actor.account_id))
            )
            if status is not None:
                if status not in {s.value for s in PayoutStatus}:
                    raise ValidationError(f"Unknown payout status '{status}'", field="status")
                query = query.filter(Payout.status == status)
            payouts = query.order_by(Payout.id.desc()).offset(offset).limit(min(limit, 200)).all()
            return [payout_to_dict(p) for p in payouts]

    # ------------------------------------------------------------------
    # Subscription and account
    # ------------------------------------------------------------------

    def get_usage(self, actor: Actor, now=None) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            return SubscriptionService.usage_summary(session, actor.account_id, now)

    def set_plan(self, actor: Actor, account_id: str, tier: str, now=None) -> Dict[str, Any]:
        """Plan tier is billing state; only the billing admin changes it"""
        self._require_admin(actor)
        with managed_session(self.session_factory) as session:
            SubscriptionService.set_plan(session, account_id, tier, now)
            return SubscriptionService.usage_summary(session, account_id, now)

    def archive_account(self, actor: Actor, account_id: str, now=None) -> Dict[str, Any]:
        if actor.account_id != account_id:
            self._require_admin(actor)
        return self.archival_saga.run(account_id, actor.account_id, now).to_dict()
