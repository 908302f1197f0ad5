"""
Append-only audit trail for escrow transitions and fund movements
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models import AuditLog
from utils.datetime_helpers import resolve_now

logger = logging.getLogger(__name__)
audit_log = logging.getLogger("audit")

FINANCIAL_EVENTS = frozenset({
    "PAYOUT_COMPLETED", "PAYOUT_FAILED", "REFUND_ISSUED", "DEAL_FUNDED", "ADMIN_FORCE_RELEASE",
})


class AuditLogger:
    """Records audit entries in the caller's transaction and mirrors them to the ``audit`` logger"""

    def record(
        self,
        session: Session,
        event_type: str,
        actor_id: str,
        entity_type: str,
        entity_id: str,
        deal_ref: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        now=None,
    ) -> AuditLog:
        entry = AuditLog(
            event_type=event_type,
            actor_id=str(actor_id),
            entity_type=entity_type,
            entity_id=entity_id,
            deal_ref=deal_ref,
            payload=payload or {},
            created_at=resolve_now(now),
        )
        session.add(entry)

        audit_log.info(json.dumps({
            "timestamp": entry.created_at.isoformat(),
            "event_type": event_type,
            "actor_id": entry.actor_id,
            "entity": f"{entity_type}:{entity_id}",
            "deal": deal_ref,
            "payload": entry.payload,
        }, default=str))

        if event_type in FINANCIAL_EVENTS:
            logger.info(f"💰 FINANCIAL EVENT: {event_type} on {entity_type} {entity_id} by {entry.actor_id}")
        return entry

    @staticmethod
    def history(session: Session, entity_id: Optional[str] = None, deal_ref: Optional[str] = None):
        """Audit entries for one entity or one deal, oldest first"""
        query = session.query(AuditLog)
        if entity_id is not None:
            query = query.filter(AuditLog.entity_id == entity_id)
        if deal_ref is not None:
            query = query.filter(AuditLog.deal_ref == deal_ref)
        return query.order_by(AuditLog.id).all()


# Global audit logger instance
audit_logger = AuditLogger()
