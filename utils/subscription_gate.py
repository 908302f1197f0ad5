"""
Subscription gate for plan-limited actions

Decides whether an account's current usage permits a gated action under a
plan's limits. Read-only operations are never gated.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from models import GatedAction, PlanTier
from utils.exceptions import LimitExceededError, ValidationError
from utils.fee_calculator import PLAN_ORDER, PlanLimits, SUBSCRIPTION_PLANS, UNLIMITED, get_plan

logger = logging.getLogger(__name__)

READ_ONLY_ACTIONS = frozenset({
    "get_deal", "list_deals", "get_milestone", "get_payout", "list_payouts", "list_disputes",
})


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    upgrade_tier: Optional[PlanTier] = None


def _resolve_action(action: Union[str, GatedAction]) -> Optional[GatedAction]:
    if isinstance(action, GatedAction):
        return action
    if action in READ_ONLY_ACTIONS:
        return None
    try:
        return GatedAction(action)
    except ValueError:
        raise ValidationError(f"Unknown action '{action}'", field="action") from None


def _limit_allows(used: int, cap: int) -> bool:
    return cap == UNLIMITED or used < cap


def _check(deals_created: int, transaction_volume: int, limits: PlanLimits, action: GatedAction) -> Optional[str]:
    """Denial reason, or None when the limits allow the action"""
    if action is GatedAction.CREATE_DEAL:
        if not _limit_allows(deals_created, limits.deals_per_month):
            return f"Monthly deal limit reached ({limits.deals_per_month})"
    elif action is GatedAction.PROCESS_PAYMENT:
        if not _limit_allows(transaction_volume, limits.transaction_volume):
            return f"Monthly transaction volume limit reached ({limits.transaction_volume} minor units)"
    elif action is GatedAction.USE_API:
        if not limits.api_access:
            return "API access not included in current plan"
    elif action is GatedAction.BULK_PAYOUT:
        if not limits.bulk_payouts:
            return "Bulk payouts not included in current plan"
    return None


class SubscriptionGate:
    """Plan limit checks against SubscriptionUsage counters"""

    @staticmethod
    def can_perform(usage, limits: PlanLimits, action: Union[str, GatedAction]) -> GateDecision:
        """
        Check ``action`` against ``limits`` for the counters in ``usage``.

        ``usage`` is anything with ``deals_created`` and ``transaction_volume``
        (a SubscriptionUsage row in practice). When denied, the decision names
        the cheapest plan whose limits would allow the same usage.
        """
        gated = _resolve_action(action)
        if gated is None:
            return GateDecision(allowed=True)

        deals_created = usage.deals_created if usage is not None else 0
        transaction_volume = usage.transaction_volume if usage is not None else 0

        reason = _check(deals_created, transaction_volume, limits, gated)
        if reason is None:
            return GateDecision(allowed=True)

        upgrade = SubscriptionGate.minimal_permitting_tier(deals_created, transaction_volume, gated)
        logger.info(f"🚫 GATE_DENIED: {gated.value} - {reason} (upgrade: {upgrade.value if upgrade else 'none'})")
        return GateDecision(allowed=False, reason=reason, upgrade_tier=upgrade)

    @staticmethod
    def minimal_permitting_tier(deals_created: int, transaction_volume: int,
                                action: GatedAction) -> Optional[PlanTier]:
        for tier in PLAN_ORDER:
            if _check(deals_created, transaction_volume, SUBSCRIPTION_PLANS[tier].limits, action) is None:
                return tier
        return None

    @staticmethod
    def can_perform_for_tier(usage, tier: Union[str, PlanTier], action: Union[str, GatedAction]) -> GateDecision:
        return SubscriptionGate.can_perform(usage, get_plan(tier).limits, action)

    @staticmethod
    def require(usage, tier: Union[str, PlanTier], action: Union[str, GatedAction]) -> None:
        """Raise LimitExceededError when the action is denied"""
        decision = SubscriptionGate.can_perform_for_tier(usage, tier, action)
        if not decision.allowed:
            action_name = action.value if isinstance(action, GatedAction) else action
            raise LimitExceededError(
                action=action_name,
                reason=decision.reason,
                upgrade_tier=decision.upgrade_tier.value if decision.upgrade_tier else None,
            )
