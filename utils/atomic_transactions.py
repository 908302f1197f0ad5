"""Atomic transaction utilities and the per-deal critical section"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, List, Optional

from sqlalchemy.orm import Session

from config import Config
from models import Deal
from utils.exceptions import ConcurrencyConflictError, NotFoundError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session_factory=None, session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With a provided session, nested uses defer the commit to the outermost block.
    Without one, a fresh session is created from ``session_factory`` and closed on exit.
    """
    if session is None:
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        new_session = session_factory()
        try:
            yield new_session
            new_session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            new_session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            new_session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
    try:
        yield session
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
        else:
            logger.debug(f"Nested sync transaction completed (depth: {transaction_depth + 1}), deferring commit")
    except Exception as e:
        session.rollback()
        logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))


class DealLockRegistry:
    """
    Process-local exclusive locks keyed by public deal id.

    Held for a whole state transition plus its payout side effect. Row locks
    taken by ``locked_deal_operation`` extend the exclusion across processes
    on PostgreSQL.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # deal_id -> [lock, waiters]

    def _checkout(self, deal_id: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.setdefault(deal_id, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, deal_id: str) -> None:
        with self._guard:
            entry = self._locks.get(deal_id)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[deal_id]

    @contextmanager
    def hold(self, deal_id: str, timeout_seconds: Optional[float] = None):
        timeout = Config.DEAL_LOCK_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        lock = self._checkout(deal_id)
        acquired = lock.acquire(timeout=timeout)
        if not acquired:
            self._checkin(deal_id)
            logger.warning(f"⏳ DEAL_LOCK_CONTENTION: {deal_id} not acquired within {timeout}s")
            raise ConcurrencyConflictError(deal_id, timeout)

        logger.debug(f"🔒 DEAL_LOCK_ACQUIRED: {deal_id}")
        try:
            yield
        finally:
            lock.release()
            self._checkin(deal_id)
            logger.debug(f"🔓 DEAL_LOCK_RELEASED: {deal_id}")


deal_locks = DealLockRegistry()


def locked_deal_operation(deal_id: str, session: Session) -> Deal:
    """
    Load a deal with a row-level lock (SELECT ... FOR UPDATE).

    Must run inside ``deal_locks.hold(deal_id)``; the row lock lasts until the
    session's transaction ends.
    """
    deal = (
        session.query(Deal)
        .filter(Deal.deal_id == deal_id)
        .with_for_update(nowait=False)
        .first()
    )
    if deal is None:
        raise NotFoundError("Deal", deal_id)
    return deal


@contextmanager
def deal_transaction(deal_id: str, session_factory=None, timeout_seconds: Optional[float] = None):
    """
    Per-deal critical section around one unit of work.

    Acquires the deal lock, opens a fresh session, loads the deal row-locked
    and yields ``(session, deal)``. Commits on success; rolls back and
    re-raises on error. State read inside is therefore always current, so a
    decision that landed first under the lock is seen by the next holder.
    """
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    with deal_locks.hold(deal_id, timeout_seconds):
        session = session_factory()
        try:
            deal = locked_deal_operation(deal_id, session)
            yield session, deal
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
