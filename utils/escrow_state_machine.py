#!/usr/bin/env python3
"""
Deal and Milestone State Machines
Single authoritative transition tables; services only move state through them
"""

import logging
from typing import Dict, Set, Union

from models import Deal, DealStatus, Milestone, MilestoneStatus
from utils.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


def _status_value(status: Union[str, DealStatus, MilestoneStatus]) -> str:
    return status.value if hasattr(status, "value") else str(status)


class DealStateValidator:
    """Validates deal state transitions"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        DealStatus.DRAFT.value: {
            DealStatus.FUNDED.value,
            DealStatus.REFUNDED.value,  # Cancelled before funding
        },
        DealStatus.FUNDED.value: {
            DealStatus.RELEASED.value,
            DealStatus.DISPUTED.value,
            DealStatus.REFUNDED.value,  # Cancelled while every milestone is PENDING
        },
        DealStatus.DISPUTED.value: {
            DealStatus.FUNDED.value,  # Dispute closed, work continues
            DealStatus.RELEASED.value,
            DealStatus.REFUNDED.value,
        },
        # Terminal states
        DealStatus.RELEASED.value: set(),
        DealStatus.REFUNDED.value: set(),
    }

    CANCELLABLE = frozenset({DealStatus.DRAFT.value, DealStatus.FUNDED.value})

    @classmethod
    def is_valid_transition(cls, current_status: str, new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0


class MilestoneStateValidator:
    """Validates milestone state transitions"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        MilestoneStatus.PENDING.value: {MilestoneStatus.SUBMITTED.value},
        MilestoneStatus.SUBMITTED.value: {
            MilestoneStatus.APPROVED.value,
            MilestoneStatus.PENDING.value,  # Revision requested or rejected
            MilestoneStatus.DISPUTED.value,
        },
        MilestoneStatus.APPROVED.value: {MilestoneStatus.RELEASED.value},
        MilestoneStatus.DISPUTED.value: {
            MilestoneStatus.RELEASED.value,  # Full or partial release
            MilestoneStatus.PENDING.value,  # Work rejected or refunded
        },
        # RELEASED is terminal and entered exactly once
        MilestoneStatus.RELEASED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: str, new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0


def transition_deal(deal: Deal, new_status: Union[str, DealStatus]) -> str:
    """Move a deal to ``new_status`` or raise InvalidTransitionError. Returns the previous status."""
    target = _status_value(new_status)
    current = deal.status
    if not DealStateValidator.is_valid_transition(current, target):
        logger.warning(f"⛔ DEAL_TRANSITION_DENIED: {deal.deal_id} {current} -> {target}")
        raise InvalidTransitionError("Deal", current, target)

    deal.status = target
    logger.info(f"🔄 DEAL_TRANSITION: {deal.deal_id} {current} -> {target}")
    return current


def transition_milestone(milestone: Milestone, new_status: Union[str, MilestoneStatus]) -> str:
    """Move a milestone to ``new_status`` or raise InvalidTransitionError. Returns the previous status."""
    target = _status_value(new_status)
    current = milestone.status
    if not MilestoneStateValidator.is_valid_transition(current, target):
        logger.warning(f"⛔ MILESTONE_TRANSITION_DENIED: {milestone.milestone_id} {current} -> {target}")
        raise InvalidTransitionError("Milestone", current, target)

    milestone.status = target
    logger.info(f"🔄 MILESTONE_TRANSITION: {milestone.milestone_id} {current} -> {target}")
    return current


def restore_milestone_after_withdrawal(milestone: Milestone, previous_status: str) -> None:
    """
    Undo a dispute that was withdrawn: DISPUTED back to the status it had when raised.

    This is a rollback of the dispute, not a lifecycle edge, so it only
    accepts the one status a dispute can be raised from (SUBMITTED).
    """
    if milestone.status != MilestoneStatus.DISPUTED.value or previous_status != MilestoneStatus.SUBMITTED.value:
        raise InvalidTransitionError(
            "Milestone", milestone.status, previous_status, "only a DISPUTED milestone raised from SUBMITTED can be restored"
        )
    milestone.status = previous_status
    logger.info(f"↩️ MILESTONE_RESTORED: {milestone.milestone_id} {MilestoneStatus.DISPUTED.value} -> {previous_status}")
