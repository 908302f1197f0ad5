"""
Subscription usage tracking
One SubscriptionUsage row per account and calendar month; counters feed the
SubscriptionGate before every gated action.
"""

import logging
from typing import Union

from sqlalchemy.orm import Session

from config import Config
from models import GatedAction, PlanTier, SubscriptionUsage
from utils.datetime_helpers import month_period, resolve_now
from utils.fee_calculator import resolve_tier
from utils.subscription_gate import SubscriptionGate

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Per-period usage counters and plan tier per account"""

    @staticmethod
    def get_current_usage(session: Session, account_id: str, now=None) -> SubscriptionUsage:
        """
        Usage row for the period containing ``now``, created on first use.

        A new period starts from zero counters and inherits the tier of the
        account's most recent period (or the configured default tier).
        """
        moment = resolve_now(now)
        period_start, period_end = month_period(moment)

        usage = (
            session.query(SubscriptionUsage)
            .filter(SubscriptionUsage.account_id == account_id,
                    SubscriptionUsage.period_start == period_start)
            .first()
        )
        if usage is not None:
            return usage

        previous = (
            session.query(SubscriptionUsage)
            .filter(SubscriptionUsage.account_id == account_id,
                    SubscriptionUsage.period_start < period_start)
            .order_by(SubscriptionUsage.period_start.desc())
            .first()
        )
        tier = previous.plan_tier if previous is not None else resolve_tier(Config.DEFAULT_PLAN_TIER).value

        usage = SubscriptionUsage(
            account_id=account_id,
            plan_tier=tier,
            period_start=period_start,
            period_end=period_end,
            deals_created=0,
            transaction_volume=0,
        )
        session.add(usage)
        session.flush()
        if previous is not None:
            logger.info(f"🔁 USAGE_ROLLOVER: {account_id} new period {period_start:%Y-%m} on {tier}")
        return usage

    @staticmethod
    def get_tier(session: Session, account_id: str, now=None) -> PlanTier:
        return PlanTier(SubscriptionService.get_current_usage(session, account_id, now).plan_tier)

    @staticmethod
    def set_plan(session: Session, account_id: str, tier: Union[str, PlanTier], now=None) -> SubscriptionUsage:
        """Change an account's plan; applies to the current period immediately"""
        new_tier = resolve_tier(tier)
        usage = SubscriptionService.get_current_usage(session, account_id, now)
        old_tier = usage.plan_tier
        usage.plan_tier = new_tier.value
        logger.info(f"💳 PLAN_CHANGED: {account_id} {old_tier} -> {new_tier.value}")
        return usage

    @staticmethod
    def require(session: Session, account_id: str, action: Union[str, GatedAction], now=None) -> SubscriptionUsage:
        """Raise LimitExceededError when the account may not perform ``action``"""
        usage = SubscriptionService.get_current_usage(session, account_id, now)
        SubscriptionGate.require(usage, usage.plan_tier, action)
        return usage

    @staticmethod
    def record_deal_created(session: Session, account_id: str, now=None) -> None:
        usage = SubscriptionService.get_current_usage(session, account_id, now)
        usage.deals_created = (usage.deals_created or 0) + 1

    @staticmethod
    def record_volume(session: Session, account_id: str, amount: int, now=None) -> None:
        usage = SubscriptionService.get_current_usage(session, account_id, now)
        usage.transaction_volume = (usage.transaction_volume or 0) + amount

    @staticmethod
    def usage_summary(session: Session, account_id: str, now=None) -> dict:
        usage = SubscriptionService.get_current_usage(session, account_id, now)
        return {
            "account_id": account_id,
            "plan_tier": usage.plan_tier,
            "period_start": usage.period_start.isoformat(),
            "period_end": usage.period_end.isoformat(),
            "deals_created": usage.deals_created,
            "transaction_volume": usage.transaction_volume,
        }
