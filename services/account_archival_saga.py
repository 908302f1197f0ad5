"""
Account Archival Saga
Server-side replacement for cascading account deletion: every deal of the
account is cancelled (when nothing has started) and soft-deleted through the
deal state machine. Steps are recorded in ``saga_steps``; a re-run skips
completed steps, so an interrupted archival can simply be started again.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Deal, DealStatus, MilestoneStatus, SagaStep, SagaStepStatus
from services.audit_logger import audit_logger
from services.deal_service import DealService
from utils.atomic_transactions import deal_transaction
from utils.datetime_helpers import resolve_now
from utils.exceptions import EscrowError, InvalidStateError

logger = logging.getLogger(__name__)

STEP_CANCEL = "cancel_deal"
STEP_ARCHIVE = "archive_deal"


@dataclass
class ArchivalResult:
    saga_id: str
    account_id: str
    cancelled: List[str] = field(default_factory=list)
    archived: List[str] = field(default_factory=list)
    skipped_steps: int = 0

    def to_dict(self) -> Dict:
        return {
            "saga_id": self.saga_id,
            "account_id": self.account_id,
            "cancelled": self.cancelled,
            "archived": self.archived,
            "skipped_steps": self.skipped_steps,
        }


def _cancellable(deal: Deal) -> bool:
    return (deal.status in (DealStatus.DRAFT.value, DealStatus.FUNDED.value)
            and all(m.status == MilestoneStatus.PENDING.value for m in deal.milestones))


def _terminal(deal: Deal) -> bool:
    return deal.status in (DealStatus.RELEASED.value, DealStatus.REFUNDED.value)


class AccountArchivalSaga:
    """Idempotent, resumable archival of every deal an account takes part in"""

    def __init__(self, session_factory, deal_service: DealService):
        self.session_factory = session_factory
        self.deal_service = deal_service

    @staticmethod
    def saga_id_for(account_id: str) -> str:
        return f"archive-{account_id}"

    def plan(self, session: Session, account_id: str) -> List[Tuple[str, str]]:
        """
        Ordered (step_name, deal_id) pairs for the account.

        Raises InvalidStateError naming every deal with work in flight; nothing
        is touched in that case.
        """
        deals = (
            session.query(Deal)
            .filter(or_(Deal.brand_id == account_id, Deal.creator_id == account_id))
            .order_by(Deal.id)
            .all()
        )
        blocked = [d.deal_id for d in deals if not d.archived_at and not _terminal(d) and not _cancellable(d)]
        if blocked:
            raise InvalidStateError(
                f"Account {account_id} has deals with work in progress: {', '.join(blocked)}"
            )

        steps = []
        for deal in deals:
            if deal.archived_at is not None:
                continue
            if not _terminal(deal):
                steps.append((STEP_CANCEL, deal.deal_id))
            steps.append((STEP_ARCHIVE, deal.deal_id))
        return steps

    @staticmethod
    def _completed(session: Session, saga_id: str, step_name: str, entity_id: str) -> bool:
        return (
            session.query(SagaStep.id)
            .filter(SagaStep.saga_id == saga_id, SagaStep.step_name == step_name,
                    SagaStep.entity_id == entity_id,
                    SagaStep.status.in_((SagaStepStatus.COMPLETED.value, SagaStepStatus.SKIPPED.value)))
            .first()
        ) is not None

    @staticmethod
    def _record(session: Session, saga_id: str, step_name: str, entity_id: str,
                status: SagaStepStatus, now, error: str = None) -> None:
        step = (
            session.query(SagaStep)
            .filter(SagaStep.saga_id == saga_id, SagaStep.step_name == step_name, SagaStep.entity_id == entity_id)
            .first()
        )
        if step is None:
            step = SagaStep(saga_id=saga_id, step_name=step_name, entity_id=entity_id, created_at=now)
            session.add(step)
        step.status = status.value
        step.error_message = error
        step.completed_at = now if status is not SagaStepStatus.FAILED else None

    def run(self, account_id: str, actor_id: str, now=None) -> ArchivalResult:
        moment = resolve_now(now)
        saga_id = self.saga_id_for(account_id)
        result = ArchivalResult(saga_id=saga_id, account_id=account_id)

        session = self.session_factory()
        try:
            steps = self.plan(session, account_id)
        finally:
            session.close()

        logger.info(f"🗄️ ARCHIVAL_SAGA_START: {saga_id} with {len(steps)} step(s)")
        for step_name, deal_id in steps:
            try:
                with deal_transaction(deal_id, self.session_factory) as (session, deal):
                    if self._completed(session, saga_id, step_name, deal_id):
                        result.skipped_steps += 1
                        continue
                    if step_name == STEP_CANCEL:
                        if _terminal(deal):
                            self._record(session, saga_id, step_name, deal_id, SagaStepStatus.SKIPPED, moment)
                            result.skipped_steps += 1
                            continue
                        self.deal_service.cancel(session, deal, actor_id, "account archived", moment)
                        result.cancelled.append(deal_id)
                    else:
                        if not _terminal(deal):
                            raise InvalidStateError(f"Deal {deal_id} is {deal.status.upper()}; cannot archive")
                        deal.archived_at = moment
                        audit_logger.record(session, "DEAL_ARCHIVED", actor_id, "deal", deal_id, deal_id,
                                            {"saga": saga_id}, now=moment)
                        result.archived.append(deal_id)
                    self._record(session, saga_id, step_name, deal_id, SagaStepStatus.COMPLETED, moment)
            except (EscrowError, IntegrityError) as e:
                self._record_failure(saga_id, step_name, deal_id, moment, str(e))
                logger.error(f"❌ ARCHIVAL_SAGA_STEP_FAILED: {saga_id} {step_name} {deal_id}: {e}")
                raise

        logger.info(
            f"✅ ARCHIVAL_SAGA_DONE: {saga_id} cancelled {len(result.cancelled)} "
            f"archived {len(result.archived)} skipped {result.skipped_steps}"
        )
        return result

    def _record_failure(self, saga_id: str, step_name: str, deal_id: str, now, error: str) -> None:
        session = self.session_factory()
        try:
            self._record(session, saga_id, step_name, deal_id, SagaStepStatus.FAILED, now, error[:1000])
            session.commit()
        finally:
            session.close()

    def steps(self, session: Session, account_id: str) -> List[SagaStep]:
        return (
            session.query(SagaStep)
            .filter(SagaStep.saga_id == self.saga_id_for(account_id))
            .order_by(SagaStep.id)
            .all()
        )
