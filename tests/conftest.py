"""
Shared fixtures for the escrow engine test suites

Key Components:
1. Per-test SQLite database file with the full schema
2. Scriptable in-memory payment capability
3. Orchestrator wired with a retry service that never sleeps
4. Deal factories for the common lifecycle starting points
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base
from services.escrow_orchestrator import Actor, DealCreationRequest, EscrowOrchestrator
from services.payment_capability import PaymentCapability, ReleaseStatus
from services.retry_service import RetryService
from utils.exceptions import PaymentCapabilityError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BRAND = Actor("brand-1")
CREATOR = Actor("creator-1")
ADMIN = Actor("admin-1", is_admin=True)
OUTSIDER = Actor("someone-else")

T0 = datetime(2024, 3, 4, 12, 0, 0)


def transient_error(message: str = "gateway timeout") -> PaymentCapabilityError:
    return PaymentCapabilityError(message, PaymentCapabilityError.TRANSIENT)


class FakePaymentCapability(PaymentCapability):
    """
    In-memory payment processor.

    Append exceptions to ``hold_failures``, ``release_failures`` or
    ``refund_failures``; each call pops and raises the next one before
    succeeding again. ``lost_refund_responses`` are raised after the refund
    was applied, like a read timeout on a processed request. Refunds are
    deduplicated by idempotency key.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.holds: Dict[str, int] = {}
        self.releases: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.refund_keys: Dict[str, str] = {}
        self.statuses: Dict[str, ReleaseStatus] = {}
        self.hold_failures: List[Exception] = []
        self.release_failures: List[Exception] = []
        self.refund_failures: List[Exception] = []
        self.lost_refund_responses: List[Exception] = []
        self.release_calls = 0

    def hold(self, amount: int, currency: str) -> str:
        with self._lock:
            if self.hold_failures:
                raise self.hold_failures.pop(0)
            token = f"hold-{len(self.holds) + 1}"
            self.holds[token] = amount
            return token

    def release(self, funding_token: str, amount: int, fee_amount: int,
                destination_account: Optional[str], idempotency_key: str) -> str:
        with self._lock:
            self.release_calls += 1
            if self.release_failures:
                raise self.release_failures.pop(0)
            external_ref = f"ext-{len(self.releases) + 1}"
            self.releases.append({
                "funding_token": funding_token,
                "amount": amount,
                "fee_amount": fee_amount,
                "destination_account": destination_account,
                "idempotency_key": idempotency_key,
            })
            self.statuses[idempotency_key] = ReleaseStatus(ReleaseStatus.COMPLETED, external_ref)
            return external_ref

    def refund(self, funding_token: str, amount: int, idempotency_key: str) -> Optional[str]:
        with self._lock:
            if self.refund_failures:
                raise self.refund_failures.pop(0)
            if idempotency_key not in self.refund_keys:
                self.refunds.append({"funding_token": funding_token, "amount": amount})
                self.refund_keys[idempotency_key] = f"rf-{len(self.refunds)}"
            if self.lost_refund_responses:
                raise self.lost_refund_responses.pop(0)
            return self.refund_keys[idempotency_key]

    def get_release_status(self, idempotency_key: str) -> ReleaseStatus:
        return self.statuses.get(idempotency_key, ReleaseStatus(ReleaseStatus.UNKNOWN))


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite file per test; threads share it like worker processes share PostgreSQL"""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'escrow_test.db'}", echo=False)
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def payment():
    return FakePaymentCapability()


@pytest.fixture
def orchestrator(payment, session_factory):
    return EscrowOrchestrator(payment, session_factory, retry=RetryService(sleep=lambda seconds: None))


@pytest.fixture
def make_deal(orchestrator):
    """Factory: a deal in DRAFT, or accepted and FUNDED with ``funded=True``"""

    def _make(amounts=(40_000, 60_000), funded=True, plan=None, now=T0, **overrides) -> Dict[str, Any]:
        if plan is not None:
            orchestrator.set_plan(ADMIN, BRAND.account_id, plan, now=now)
        request = DealCreationRequest(
            creator_id=CREATOR.account_id,
            title=overrides.pop("title", "Spring campaign"),
            milestones=[{"title": f"Deliverable {i + 1}", "amount": amount} for i, amount in enumerate(amounts)],
            **overrides,
        )
        deal = orchestrator.create_deal(BRAND, request, now=now)
        if not funded:
            return deal
        orchestrator.accept_deal(CREATOR, deal["deal_id"], "acct_creator_1", now=now)
        return orchestrator.fund_deal(BRAND, deal["deal_id"], now=now)

    return _make


@pytest.fixture
def submit(orchestrator):
    """Submit a URL deliverable for a milestone as the creator"""

    def _submit(milestone_id: str, now=T0) -> Dict[str, Any]:
        return orchestrator.submit_milestone(
            CREATOR, milestone_id,
            {"description": "Final cut of the video", "external_url": "https://cdn.example.com/video.mp4"},
            now=now,
        )

    return _submit


def later(**kwargs) -> datetime:
    return T0 + timedelta(**kwargs)
