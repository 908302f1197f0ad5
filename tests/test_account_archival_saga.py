"""
Account Archival Saga Tests
"""

import pytest

from models import Deal, SagaStep
from utils.exceptions import AuthorizationError, InvalidStateError, PaymentCapabilityError

from conftest import ADMIN, BRAND, CREATOR, T0, later, transient_error


class TestAccountArchivalSaga:

    def test_cancels_and_archives_every_deal(self, orchestrator, make_deal, submit, payment, db_session):
        draft = make_deal(funded=False, plan="professional")
        idle = make_deal()
        done = make_deal(amounts=(10_000,))
        milestone_id = done["milestones"][0]["milestone_id"]
        submit(milestone_id)
        orchestrator.approve_milestone(BRAND, milestone_id, now=T0)

        result = orchestrator.archive_account(BRAND, BRAND.account_id, now=later(days=1))

        assert result["saga_id"] == f"archive-{BRAND.account_id}"
        assert sorted(result["cancelled"]) == sorted([draft["deal_id"], idle["deal_id"]])
        assert sorted(result["archived"]) == sorted([draft["deal_id"], idle["deal_id"], done["deal_id"]])
        # Only the funded idle deal held money
        assert payment.refunds == [{"funding_token": "hold-1", "amount": 100_000}]

        assert orchestrator.list_deals(BRAND) == []
        assert all(deal.archived_at is not None for deal in db_session.query(Deal).all())
        assert {step.status for step in db_session.query(SagaStep).all()} == {"completed"}

    def test_rerun_is_a_no_op(self, orchestrator, make_deal):
        make_deal(funded=False)
        orchestrator.archive_account(BRAND, BRAND.account_id, now=T0)

        again = orchestrator.archive_account(BRAND, BRAND.account_id, now=later(hours=1))
        assert again["cancelled"] == [] and again["archived"] == []

    def test_work_in_progress_blocks_archival(self, orchestrator, make_deal, submit, db_session):
        deal = make_deal()
        submit(deal["milestones"][0]["milestone_id"])

        with pytest.raises(InvalidStateError) as exc_info:
            orchestrator.archive_account(CREATOR, CREATOR.account_id, now=T0)
        assert deal["deal_id"] in exc_info.value.message
        assert db_session.query(SagaStep).count() == 0
        assert orchestrator.get_deal(BRAND, deal["deal_id"])["status"] == "funded"

    def test_interrupted_saga_resumes(self, orchestrator, make_deal, payment, db_session):
        make_deal(funded=False, plan="professional")
        funded = make_deal()
        payment.refund_failures.extend([transient_error()] * 3)

        with pytest.raises(PaymentCapabilityError):
            orchestrator.archive_account(BRAND, BRAND.account_id, now=T0)
        failed = db_session.query(SagaStep).filter(SagaStep.status == "failed").one()
        assert failed.entity_id == funded["deal_id"]

        result = orchestrator.archive_account(BRAND, BRAND.account_id, now=later(hours=1))
        assert result["cancelled"] == [funded["deal_id"]]
        assert result["skipped_steps"] == 0
        db_session.expire_all()
        assert db_session.query(SagaStep).filter(SagaStep.status == "failed").count() == 0

    def test_only_owner_or_admin_archives(self, orchestrator, make_deal):
        make_deal(funded=False)
        with pytest.raises(AuthorizationError):
            orchestrator.archive_account(CREATOR, BRAND.account_id, now=T0)
        assert orchestrator.archive_account(ADMIN, BRAND.account_id, now=T0)["archived"]
