"""
Deal and milestone transition table tests
"""

from types import SimpleNamespace

import pytest

from models import DealStatus, MilestoneStatus
from utils.escrow_state_machine import (
    DealStateValidator, MilestoneStateValidator, restore_milestone_after_withdrawal,
    transition_deal, transition_milestone,
)
from utils.exceptions import InvalidStateError, InvalidTransitionError


MILESTONE_EDGES = {
    ("pending", "submitted"),
    ("submitted", "approved"),
    ("submitted", "pending"),
    ("submitted", "disputed"),
    ("approved", "released"),
    ("disputed", "released"),
    ("disputed", "pending"),
}


class TestMilestoneStateMachine:

    def test_transition_table_is_exactly_the_lifecycle_edges(self):
        edges = {
            (current, target)
            for current, targets in MilestoneStateValidator.VALID_TRANSITIONS.items()
            for target in targets
        }
        assert edges == MILESTONE_EDGES

    def test_released_is_terminal(self):
        assert MilestoneStateValidator.is_terminal_state("released")
        for status in MilestoneStatus:
            assert not MilestoneStateValidator.is_valid_transition("released", status.value)

    @pytest.mark.parametrize("current,target", [
        (c.value, t.value) for c in MilestoneStatus for t in MilestoneStatus
        if (c.value, t.value) not in MILESTONE_EDGES
    ])
    def test_every_other_edge_is_rejected(self, current, target):
        milestone = SimpleNamespace(milestone_id="MS-TEST", status=current)
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition_milestone(milestone, target)
        assert milestone.status == current
        assert exc_info.value.current == current
        assert exc_info.value.requested == target

    def test_transition_returns_previous_status(self):
        milestone = SimpleNamespace(milestone_id="MS-TEST", status="pending")
        assert transition_milestone(milestone, MilestoneStatus.SUBMITTED) == "pending"
        assert milestone.status == "submitted"

    def test_transition_error_is_an_invalid_state_error(self):
        milestone = SimpleNamespace(milestone_id="MS-TEST", status="approved")
        with pytest.raises(InvalidStateError):
            transition_milestone(milestone, "pending")


class TestDealStateMachine:

    def test_terminal_states(self):
        assert DealStateValidator.is_terminal_state("released")
        assert DealStateValidator.is_terminal_state("refunded")
        assert not DealStateValidator.is_terminal_state("disputed")

    def test_cannot_leave_terminal_states(self):
        for terminal in ("released", "refunded"):
            deal = SimpleNamespace(deal_id="DL-TEST", status=terminal)
            for status in DealStatus:
                with pytest.raises(InvalidTransitionError):
                    transition_deal(deal, status)

    def test_draft_cannot_jump_to_released(self):
        deal = SimpleNamespace(deal_id="DL-TEST", status="draft")
        with pytest.raises(InvalidTransitionError):
            transition_deal(deal, DealStatus.RELEASED)

    def test_dispute_round_trip(self):
        deal = SimpleNamespace(deal_id="DL-TEST", status="funded")
        transition_deal(deal, DealStatus.DISPUTED)
        transition_deal(deal, DealStatus.FUNDED)
        assert deal.status == "funded"


class TestWithdrawalRestore:

    def test_restores_submitted(self):
        milestone = SimpleNamespace(milestone_id="MS-TEST", status="disputed")
        restore_milestone_after_withdrawal(milestone, "submitted")
        assert milestone.status == "submitted"

    @pytest.mark.parametrize("status,previous", [
        ("disputed", "approved"),
        ("disputed", "released"),
        ("pending", "submitted"),
    ])
    def test_rejects_anything_else(self, status, previous):
        milestone = SimpleNamespace(milestone_id="MS-TEST", status=status)
        with pytest.raises(InvalidTransitionError):
            restore_milestone_after_withdrawal(milestone, previous)
        assert milestone.status == status
