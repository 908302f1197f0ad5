"""
Deal Lifecycle Tests
Creation, acceptance, funding, cancellation and ownership checks
"""

import pytest

from models import AuditLog, Deal, Refund
from services.audit_logger import AuditLogger
from services.escrow_orchestrator import DealCreationRequest
from utils.exceptions import (
    AuthorizationError, InvalidStateError, InvalidTransitionError, LimitExceededError,
    NotFoundError, PaymentCapabilityError, ValidationError,
)

from conftest import ADMIN, BRAND, CREATOR, OUTSIDER, T0, later, transient_error


def _request(**overrides):
    data = {
        "creator_id": CREATOR.account_id,
        "title": "Launch video",
        "milestones": [{"title": "Script", "amount": 25_000}, {"title": "Video", "amount": 75_000}],
    }
    data.update(overrides)
    return DealCreationRequest(**data)


class TestDealCreation:

    def test_creates_draft_with_ordered_milestones(self, orchestrator):
        deal = orchestrator.create_deal(BRAND, _request(), now=T0)

        assert deal["status"] == "draft"
        assert deal["brand_id"] == BRAND.account_id
        assert deal["total_amount"] == 100_000
        assert [m["title"] for m in deal["milestones"]] == ["Script", "Video"]
        assert all(m["status"] == "pending" for m in deal["milestones"])
        assert deal["deal_id"].startswith("DL")
        assert deal["auto_release_enabled"] is True
        assert deal["auto_release_days"] == 5

    def test_records_usage_and_audit(self, orchestrator, db_session):
        deal = orchestrator.create_deal(BRAND, _request(), now=T0)

        assert orchestrator.get_usage(BRAND, now=T0)["deals_created"] == 1
        events = [e.event_type for e in AuditLogger.history(db_session, deal_ref=deal["deal_id"])]
        assert events == ["DEAL_CREATED"]

    @pytest.mark.parametrize("overrides", [
        {"milestones": []},
        {"milestones": [{"title": "Script", "amount": 0}]},
        {"milestones": [{"title": "Script", "amount": -100}]},
        {"milestones": [{"title": "Script", "amount": 10.5}]},
        {"milestones": [{"title": "", "amount": 100}]},
        {"title": "   "},
        {"currency": "DOLLARS"},
        {"creator_id": BRAND.account_id},
        {"auto_release_days": 0},
    ])
    def test_rejects_invalid_input(self, orchestrator, db_session, overrides):
        with pytest.raises(ValidationError):
            orchestrator.create_deal(BRAND, _request(**overrides), now=T0)
        assert db_session.query(Deal).count() == 0

    def test_free_plan_allows_three_deals_a_month(self, orchestrator):
        for _ in range(3):
            orchestrator.create_deal(BRAND, _request(), now=T0)

        with pytest.raises(LimitExceededError) as exc_info:
            orchestrator.create_deal(BRAND, _request(), now=T0)
        assert exc_info.value.upgrade_tier == "starter"

        # New month, fresh counters
        orchestrator.create_deal(BRAND, _request(), now=later(days=31))

    def test_milestone_amount_editable_only_while_draft(self, orchestrator, make_deal):
        deal = make_deal(funded=False)
        milestone_id = deal["milestones"][0]["milestone_id"]

        updated = orchestrator.update_milestone_amount(BRAND, milestone_id, 50_000, now=T0)
        assert updated["total_amount"] == 110_000

        orchestrator.accept_deal(CREATOR, deal["deal_id"], now=T0)
        orchestrator.fund_deal(BRAND, deal["deal_id"], now=T0)
        with pytest.raises(InvalidStateError):
            orchestrator.update_milestone_amount(BRAND, milestone_id, 60_000, now=T0)


class TestAcceptAndFund:

    def test_funding_requires_creator_acceptance(self, orchestrator, make_deal, payment):
        deal = make_deal(funded=False)

        with pytest.raises(InvalidStateError):
            orchestrator.fund_deal(BRAND, deal["deal_id"], now=T0)
        assert payment.holds == {}

    def test_fund_places_hold_and_records_volume(self, orchestrator, make_deal, payment):
        deal = make_deal()

        assert deal["status"] == "funded"
        assert deal["funded_at"] is not None
        assert list(payment.holds.values()) == [100_000]
        assert orchestrator.get_usage(BRAND, now=T0)["transaction_volume"] == 100_000

    def test_funding_twice_is_an_invalid_transition(self, orchestrator, make_deal):
        deal = make_deal()
        with pytest.raises(InvalidTransitionError):
            orchestrator.fund_deal(BRAND, deal["deal_id"], now=T0)

    def test_payment_failure_leaves_deal_draft(self, orchestrator, make_deal, payment):
        deal = make_deal(funded=False)
        orchestrator.accept_deal(CREATOR, deal["deal_id"], now=T0)
        payment.hold_failures.append(transient_error())

        with pytest.raises(PaymentCapabilityError):
            orchestrator.fund_deal(BRAND, deal["deal_id"], now=T0)
        assert orchestrator.get_deal(BRAND, deal["deal_id"])["status"] == "draft"

        # Funding is not retried automatically; the brand simply tries again
        assert orchestrator.fund_deal(BRAND, deal["deal_id"], now=T0)["status"] == "funded"

    def test_only_the_creator_accepts(self, orchestrator, make_deal):
        deal = make_deal(funded=False)
        with pytest.raises(AuthorizationError):
            orchestrator.accept_deal(BRAND, deal["deal_id"], now=T0)

    def test_only_the_brand_funds(self, orchestrator, make_deal):
        deal = make_deal(funded=False)
        orchestrator.accept_deal(CREATOR, deal["deal_id"], now=T0)
        with pytest.raises(AuthorizationError):
            orchestrator.fund_deal(CREATOR, deal["deal_id"], now=T0)


class TestCancellation:

    def test_cancel_draft_moves_no_money(self, orchestrator, make_deal, payment):
        deal = make_deal(funded=False)
        cancelled = orchestrator.cancel_deal(BRAND, deal["deal_id"], "budget cut", now=T0)

        assert cancelled["status"] == "refunded"
        assert cancelled["cancelled_at"] is not None
        assert payment.refunds == []

    def test_cancel_funded_deal_refunds_everything(self, orchestrator, make_deal, payment, db_session):
        deal = make_deal()
        cancelled = orchestrator.cancel_deal(BRAND, deal["deal_id"], "creator unavailable", now=later(hours=1))

        assert cancelled["status"] == "refunded"
        assert payment.refunds == [{"funding_token": "hold-1", "amount": 100_000}]
        refund = db_session.query(Refund).one()
        assert refund.reason == "cancellation"
        assert refund.amount == 100_000
        assert refund.idempotency_key == f"refund-{deal['deal_id']}-cancellation"

    def test_refund_retry_after_lost_response_refunds_once(self, orchestrator, make_deal, payment, db_session):
        deal = make_deal()
        payment.lost_refund_responses.append(transient_error("read timeout"))

        cancelled = orchestrator.cancel_deal(BRAND, deal["deal_id"], "creator unavailable", now=T0)

        assert cancelled["status"] == "refunded"
        assert payment.refunds == [{"funding_token": "hold-1", "amount": 100_000}]
        assert db_session.query(Refund).one().external_ref == "rf-1"

    def test_cannot_cancel_once_work_was_submitted(self, orchestrator, make_deal, submit, payment):
        deal = make_deal()
        submit(deal["milestones"][0]["milestone_id"])

        with pytest.raises(InvalidStateError):
            orchestrator.cancel_deal(BRAND, deal["deal_id"], now=T0)
        assert payment.refunds == []

    def test_creator_cannot_cancel_but_admin_can(self, orchestrator, make_deal):
        deal = make_deal(funded=False)
        with pytest.raises(AuthorizationError):
            orchestrator.cancel_deal(CREATOR, deal["deal_id"], now=T0)
        assert orchestrator.cancel_deal(ADMIN, deal["deal_id"], "fraud review", now=T0)["status"] == "refunded"


class TestPlanChanges:

    def test_account_cannot_upgrade_itself(self, orchestrator):
        with pytest.raises(AuthorizationError):
            orchestrator.set_plan(BRAND, BRAND.account_id, "enterprise", now=T0)
        assert orchestrator.get_usage(BRAND, now=T0)["plan_tier"] == "free"

    def test_admin_changes_plan(self, orchestrator):
        assert orchestrator.set_plan(ADMIN, BRAND.account_id, "starter", now=T0)["plan_tier"] == "starter"


class TestReads:

    def test_outsider_cannot_read_deal(self, orchestrator, make_deal):
        deal = make_deal(funded=False)
        with pytest.raises(AuthorizationError):
            orchestrator.get_deal(OUTSIDER, deal["deal_id"])

    def test_admin_can_read_any_deal(self, orchestrator, make_deal):
        deal = make_deal(funded=False)
        assert orchestrator.get_deal(ADMIN, deal["deal_id"])["deal_id"] == deal["deal_id"]

    def test_unknown_deal(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get_deal(BRAND, "DL-DOES-NOT-EXIST")

    def test_list_deals_by_party_and_status(self, orchestrator, make_deal):
        draft = make_deal(funded=False, plan="professional")
        funded = make_deal()

        assert {d["deal_id"] for d in orchestrator.list_deals(CREATOR)} == {draft["deal_id"], funded["deal_id"]}
        assert [d["deal_id"] for d in orchestrator.list_deals(BRAND, status="funded")] == [funded["deal_id"]]
        assert orchestrator.list_deals(OUTSIDER) == []
        with pytest.raises(ValidationError):
            orchestrator.list_deals(BRAND, status="bogus")

    def test_audit_log_entries_are_written(self, orchestrator, make_deal, db_session):
        make_deal()
        events = [row.event_type for row in db_session.query(AuditLog).order_by(AuditLog.id).all()]
        assert events[:3] == ["DEAL_CREATED", "DEAL_ACCEPTED", "DEAL_FUNDED"]
