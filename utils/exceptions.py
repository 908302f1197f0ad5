"""
Escrow engine error taxonomy

Every error carries a stable ``error_code`` for API layers and tells callers
whether retrying the same call can succeed.
"""

from typing import Any, Dict, Optional


class EscrowError(Exception):
    """Base escrow error with context"""

    error_code = "escrow_error"

    def __init__(self, message: str, error_code: Optional[str] = None, is_retryable: bool = False):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.is_retryable = is_retryable

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ValidationError(EscrowError):
    """Malformed or missing input"""

    error_code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFoundError(EscrowError):
    error_code = "not_found"

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class AuthorizationError(EscrowError):
    """Actor lacks the role or ownership required for the action"""

    error_code = "authorization_error"


class InvalidStateError(EscrowError):
    """Entity is not in a state that allows the requested action"""

    error_code = "invalid_state"


class InvalidTransitionError(InvalidStateError):
    """State machine guard violation naming current and requested state"""

    error_code = "invalid_transition"

    def __init__(self, entity: str, current: str, requested: str, detail: Optional[str] = None):
        message = f"{entity} cannot move from {current.upper()} to {requested.upper()}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.entity = entity
        self.current = current
        self.requested = requested

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"entity": self.entity, "current": self.current, "requested": self.requested})
        return data


class AlreadyReleasedError(EscrowError):
    """Milestone funds were already released"""

    error_code = "already_released"

    def __init__(self, milestone_id: str):
        super().__init__(f"Milestone {milestone_id} has already been released")
        self.milestone_id = milestone_id


class LimitExceededError(EscrowError):
    """Subscription limit denial, carries the cheapest plan that would allow it"""

    error_code = "limit_exceeded"

    def __init__(self, action: str, reason: str, upgrade_tier: Optional[str] = None):
        super().__init__(reason)
        self.action = action
        self.upgrade_tier = upgrade_tier

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"action": self.action, "upgrade_tier": self.upgrade_tier})
        return data


class PaymentCapabilityError(EscrowError):
    """Failure reported by the external payment capability"""

    error_code = "payment_error"

    TRANSIENT = "transient"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DESTINATION_NOT_ONBOARDED = "destination_not_onboarded"
    PERMANENT = "permanent"

    def __init__(self, message: str, kind: str = PERMANENT, status_code: Optional[int] = None):
        super().__init__(message, is_retryable=(kind == self.TRANSIENT))
        self.kind = kind
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"kind": self.kind, "retryable": self.is_retryable})
        return data


class ConcurrencyConflictError(EscrowError):
    """Per-deal lock could not be acquired in time"""

    error_code = "concurrency_conflict"

    def __init__(self, deal_id: str, timeout_seconds: float):
        super().__init__(
            f"Deal {deal_id} is busy; lock not acquired within {timeout_seconds}s",
            is_retryable=True,
        )
        self.deal_id = deal_id
