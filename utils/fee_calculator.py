"""Platform fee calculation and the subscription plan table"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Union

from models import PlanTier
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass(frozen=True)
class PlanLimits:
    """Monthly limits and feature flags of one subscription plan"""
    deals_per_month: int
    transaction_volume: int  # Minor units per month
    api_access: bool
    bulk_payouts: bool


@dataclass(frozen=True)
class SubscriptionPlan:
    tier: PlanTier
    name: str
    fee_basis_points: int  # 250 == 2.5%
    limits: PlanLimits


# Web subscription plans; the mobile agency pricing is a separate model and not used here
SUBSCRIPTION_PLANS: Dict[PlanTier, SubscriptionPlan] = {
    PlanTier.FREE: SubscriptionPlan(
        tier=PlanTier.FREE,
        name="Free",
        fee_basis_points=350,
        limits=PlanLimits(deals_per_month=3, transaction_volume=100_000,
                          api_access=False, bulk_payouts=False),
    ),
    PlanTier.STARTER: SubscriptionPlan(
        tier=PlanTier.STARTER,
        name="Starter",
        fee_basis_points=250,
        limits=PlanLimits(deals_per_month=15, transaction_volume=1_000_000,
                          api_access=False, bulk_payouts=False),
    ),
    PlanTier.PROFESSIONAL: SubscriptionPlan(
        tier=PlanTier.PROFESSIONAL,
        name="Professional",
        fee_basis_points=200,
        limits=PlanLimits(deals_per_month=50, transaction_volume=5_000_000,
                          api_access=True, bulk_payouts=True),
    ),
    PlanTier.ENTERPRISE: SubscriptionPlan(
        tier=PlanTier.ENTERPRISE,
        name="Enterprise",
        fee_basis_points=150,
        limits=PlanLimits(deals_per_month=UNLIMITED, transaction_volume=UNLIMITED,
                          api_access=True, bulk_payouts=True),
    ),
}

# Cheapest first; SubscriptionGate relies on this ordering
PLAN_ORDER: List[PlanTier] = [PlanTier.FREE, PlanTier.STARTER, PlanTier.PROFESSIONAL, PlanTier.ENTERPRISE]


def resolve_tier(tier: Union[str, PlanTier]) -> PlanTier:
    """Accept a PlanTier or its string value"""
    if isinstance(tier, PlanTier):
        return tier
    try:
        return PlanTier(str(tier).lower().strip())
    except ValueError:
        raise ValidationError(f"Unknown subscription tier '{tier}'", field="tier") from None


def get_plan(tier: Union[str, PlanTier]) -> SubscriptionPlan:
    return SUBSCRIPTION_PLANS[resolve_tier(tier)]


class FeeCalculator:
    """Handles platform fee calculations on integer minor units"""

    @classmethod
    def get_fee_basis_points(cls, tier: Union[str, PlanTier]) -> int:
        return get_plan(tier).fee_basis_points

    @classmethod
    def compute_fee(cls, tier: Union[str, PlanTier], amount: int) -> int:
        """
        Platform fee for releasing ``amount`` minor units under ``tier``.

        Truncates toward zero so repeated releases never drift upward by a
        fractional cent. The result is always between 0 and ``amount``.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Amount must be an integer number of minor units, got {amount!r}", field="amount")
        if amount < 0:
            raise ValidationError(f"Amount cannot be negative: {amount}", field="amount")

        fee = amount * cls.get_fee_basis_points(tier) // 10_000
        return max(0, min(fee, amount))

    @classmethod
    def compute_payout_split(cls, tier: Union[str, PlanTier], gross_amount: int) -> Dict[str, int]:
        """Split a released amount into the platform fee and the creator's net payout"""
        fee = cls.compute_fee(tier, gross_amount)
        return {"gross_amount": gross_amount, "fee_amount": fee, "net_amount": gross_amount - fee}


def compute_fee(tier: Union[str, PlanTier], amount: int) -> int:
    """Module-level shortcut for FeeCalculator.compute_fee"""
    return FeeCalculator.compute_fee(tier, amount)
