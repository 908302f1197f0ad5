"""
Milestone Release Tests
Submission, review, approval, auto-release and the single-release guarantee
"""

import threading

import pytest

from models import Milestone, Payout
from utils.exceptions import (
    AlreadyReleasedError, AuthorizationError, InvalidStateError, InvalidTransitionError, ValidationError,
)

from conftest import ADMIN, BRAND, CREATOR, T0, later


def _milestone_ids(deal):
    return [m["milestone_id"] for m in deal["milestones"]]


class TestSubmission:

    def test_submit_records_deliverable(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        milestone = submit(first)

        assert milestone["status"] == "submitted"
        assert milestone["deliverable_id"].startswith("DV")
        detail = orchestrator.get_milestone(CREATOR, first)
        assert detail["deliverables"][0]["submission_type"] == "url"
        assert detail["deliverables"][0]["review_status"] == "awaiting_review"

    def test_submit_requires_funded_deal(self, make_deal, submit):
        first, _ = _milestone_ids(make_deal(funded=False))
        with pytest.raises(ValidationError):
            submit(first)

    @pytest.mark.parametrize("deliverable", [
        {"description": "", "external_url": "https://example.com/a"},
        {"description": "no payload"},
        {"description": "two payloads", "external_url": "https://example.com/a", "text_body": "caption"},
        {"description": "bad url", "external_url": "ftp://example.com/a"},
        {"description": "hash without file", "text_body": "caption", "file_hash": "ab" * 16},
        None,
    ])
    def test_invalid_deliverables_are_rejected(self, orchestrator, make_deal, deliverable):
        first, _ = _milestone_ids(make_deal())
        with pytest.raises(ValidationError):
            orchestrator.submit_milestone(CREATOR, first, deliverable, now=T0)
        assert orchestrator.get_milestone(CREATOR, first)["status"] == "pending"

    def test_only_creator_submits(self, orchestrator, make_deal):
        first, _ = _milestone_ids(make_deal())
        with pytest.raises(AuthorizationError):
            orchestrator.submit_milestone(BRAND, first, {"description": "x", "text_body": "y"}, now=T0)

    def test_cannot_submit_twice(self, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        submit(first)
        with pytest.raises(InvalidTransitionError):
            submit(first)


class TestReview:

    def test_revision_returns_to_pending_and_clears_deliverable(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        submit(first)

        milestone = orchestrator.request_revision(BRAND, first, "Logo too small", ["Bigger logo"], now=later(hours=2))
        assert milestone["status"] == "pending"
        assert milestone["deliverable_id"] is None
        assert milestone["revision_count"] == 1

        detail = orchestrator.get_milestone(CREATOR, first)
        assert detail["deliverables"][0]["review_status"] == "revision_requested"
        assert detail["deliverables"][0]["requirements"] == ["Bigger logo"]

        # Resubmission starts a new round
        assert submit(first, now=later(hours=5))["status"] == "submitted"

    def test_revision_rounds_are_capped(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        for _ in range(3):
            submit(first)
            orchestrator.request_revision(BRAND, first, "Try again", now=T0)

        submit(first)
        with pytest.raises(InvalidStateError):
            orchestrator.request_revision(BRAND, first, "Once more", now=T0)
        with pytest.raises(InvalidStateError):
            orchestrator.reject_milestone(BRAND, first, "Still wrong", now=T0)
        assert orchestrator.get_milestone(CREATOR, first)["status"] == "submitted"

    def test_non_final_rejection(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        submit(first)

        result = orchestrator.reject_milestone(BRAND, first, "Off brief", feedback="See notes", now=T0)
        assert result["dispute"] is None
        assert result["milestone"]["status"] == "pending"
        assert result["milestone"]["rejection_reason"] == "Off brief"

    def test_only_brand_reviews(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        submit(first)
        with pytest.raises(AuthorizationError):
            orchestrator.approve_milestone(CREATOR, first, now=T0)

    def test_cannot_approve_pending_milestone(self, orchestrator, make_deal):
        first, _ = _milestone_ids(make_deal())
        with pytest.raises(InvalidTransitionError):
            orchestrator.approve_milestone(BRAND, first, now=T0)


class TestApproveAndRelease:

    def test_starter_plan_payout_is_net_of_fee(self, orchestrator, make_deal, submit, payment):
        first, _ = _milestone_ids(make_deal(amounts=(40_000, 60_000), plan="starter"))
        submit(first)

        result = orchestrator.approve_milestone(BRAND, first, "Great work", now=later(days=1))

        assert result["milestone"]["status"] == "released"
        assert result["milestone"]["released_amount"] == 40_000
        assert result["payout"]["amount"] == 39_000
        assert result["payout"]["fee_amount"] == 1_000
        assert result["payout"]["status"] == "completed"
        assert result["payout"]["idempotency_key"] == f"release-{first}"
        assert result["deal_status"] == "funded"
        assert payment.releases[0]["amount"] == 39_000
        assert payment.releases[0]["destination_account"] == "acct_creator_1"

    def test_fee_uses_brand_tier_at_release_time(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal(amounts=(10_000, 10_000)))
        orchestrator.set_plan(ADMIN, BRAND.account_id, "enterprise", now=T0)
        submit(first)

        payout = orchestrator.approve_milestone(BRAND, first, now=T0)["payout"]
        assert payout["fee_amount"] == 150
        assert payout["plan_tier"] == "enterprise"

    def test_second_approve_is_already_released(self, orchestrator, make_deal, submit, payment, db_session):
        first, _ = _milestone_ids(make_deal())
        submit(first)
        orchestrator.approve_milestone(BRAND, first, now=T0)

        with pytest.raises(AlreadyReleasedError):
            orchestrator.approve_milestone(BRAND, first, now=T0)
        assert db_session.query(Payout).count() == 1
        assert payment.release_calls == 1

    def test_deal_completes_when_last_milestone_releases(self, orchestrator, make_deal, submit):
        deal = make_deal()
        first, second = _milestone_ids(deal)
        submit(first)
        submit(second)

        assert orchestrator.approve_milestone(BRAND, first, now=T0)["deal_status"] == "funded"
        assert orchestrator.approve_milestone(BRAND, second, now=T0)["deal_status"] == "released"
        assert orchestrator.get_deal(CREATOR, deal["deal_id"])["completed_at"] is not None

    def test_admin_force_release(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        submit(first)

        with pytest.raises(AuthorizationError):
            orchestrator.admin_force_release(BRAND, first, "brand unresponsive", now=T0)
        with pytest.raises(ValidationError):
            orchestrator.admin_force_release(ADMIN, first, " ", now=T0)

        result = orchestrator.admin_force_release(ADMIN, first, "brand unresponsive", now=T0)
        assert result["milestone"]["status"] == "released"


class TestAutoRelease:

    def test_releases_exactly_at_deadline(self, orchestrator, make_deal, submit, db_session):
        first, _ = _milestone_ids(make_deal())
        submit(first, now=T0)

        early = orchestrator.auto_release.process_auto_release(now=later(days=5, seconds=-1))
        assert early["due"] == 0
        assert orchestrator.get_milestone(CREATOR, first)["status"] == "submitted"

        stats = orchestrator.auto_release.process_auto_release(now=later(days=5))
        assert stats == {"due": 1, "released": 1, "skipped": 0, "failed": 0}

        milestone = orchestrator.get_milestone(CREATOR, first)
        assert milestone["status"] == "released"
        assert milestone["auto_released"] is True
        assert milestone["deliverables"][0]["review_status"] == "auto_approved"

        # A repeated tick finds nothing
        assert orchestrator.auto_release.process_auto_release(now=later(days=6))["due"] == 0
        assert db_session.query(Payout).count() == 1

    def test_force_release_before_deadline_is_refused(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        submit(first, now=T0)
        with pytest.raises(InvalidStateError):
            orchestrator.force_release(first, now=later(days=4))

    def test_respects_per_deal_window_and_switch(self, orchestrator, make_deal, submit):
        deal = make_deal(auto_release_days=2)
        first, second = _milestone_ids(deal)
        submit(first, now=T0)
        submit(second, now=T0)

        orchestrator.update_auto_release(BRAND, deal["deal_id"], enabled=False, now=T0)
        assert orchestrator.auto_release.process_auto_release(now=later(days=3))["due"] == 0
        with pytest.raises(InvalidStateError):
            orchestrator.force_release(first, now=later(days=3))

        orchestrator.update_auto_release(BRAND, deal["deal_id"], enabled=True, now=T0)
        assert orchestrator.auto_release.process_auto_release(now=later(days=3))["released"] == 2

    def test_disputed_milestone_is_not_auto_released(self, orchestrator, make_deal, submit):
        first, _ = _milestone_ids(make_deal())
        submit(first, now=T0)
        orchestrator.raise_dispute(CREATOR, first, "Brand went silent", now=later(days=1))

        assert orchestrator.auto_release.process_auto_release(now=later(days=10))["due"] == 0
        assert orchestrator.get_milestone(CREATOR, first)["status"] == "disputed"


class TestConcurrentRelease:

    def test_approve_racing_force_release_releases_once(self, orchestrator, make_deal, submit, payment, db_session):
        first, _ = _milestone_ids(make_deal())
        submit(first, now=T0)
        deadline = later(days=5)

        barrier = threading.Barrier(2)
        outcomes = {}

        def _run(name, call):
            barrier.wait()
            try:
                outcomes[name] = call()
            except Exception as e:
                outcomes[name] = e

        threads = [
            threading.Thread(target=_run, args=("approve", lambda: orchestrator.approve_milestone(
                BRAND, first, now=deadline))),
            threading.Thread(target=_run, args=("force", lambda: orchestrator.force_release(first, now=deadline))),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        successes = [v for v in outcomes.values() if isinstance(v, dict)]
        failures = [v for v in outcomes.values() if isinstance(v, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (AlreadyReleasedError, InvalidStateError))

        assert db_session.query(Payout).count() == 1
        assert payment.release_calls == 1
        assert db_session.query(Milestone).filter(Milestone.milestone_id == first).one().status == "released"
