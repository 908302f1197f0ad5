"""
Escrow API Routes
FastAPI routes exposing the deal/milestone escrow surface. The identity
collaborator in front of this service supplies the authenticated account in
``X-Account-Id`` (and ``X-Admin: true`` for operators); no authentication
happens here.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.escrow_orchestrator import Actor, DealCreationRequest, EscrowOrchestrator
from utils.exceptions import (
    AlreadyReleasedError, AuthorizationError, ConcurrencyConflictError, EscrowError,
    InvalidStateError, LimitExceededError, NotFoundError, PaymentCapabilityError, ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/escrow", tags=["escrow"])


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------

class MilestoneIn(BaseModel):
    title: str
    amount: int
    description: Optional[str] = None
    due_date: Optional[datetime] = None


class CreateDealIn(BaseModel):
    creator_id: str
    title: str
    milestones: List[MilestoneIn]
    currency: str = "USD"
    description: Optional[str] = None
    auto_release_enabled: Optional[bool] = None
    auto_release_days: Optional[int] = None


class AcceptDealIn(BaseModel):
    destination_account: Optional[str] = None


class CancelDealIn(BaseModel):
    reason: Optional[str] = None


class AutoReleaseIn(BaseModel):
    enabled: Optional[bool] = None
    days: Optional[int] = None


class MilestoneAmountIn(BaseModel):
    amount: int


class DeliverableIn(BaseModel):
    description: str = ""
    file_reference: Optional[str] = None
    file_hash: Optional[str] = None
    external_url: Optional[str] = None
    text_body: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class ApproveIn(BaseModel):
    feedback: Optional[str] = None


class RevisionIn(BaseModel):
    feedback: str
    requirements: Optional[List[str]] = None


class RejectIn(BaseModel):
    reason: str
    feedback: Optional[str] = None
    final: bool = False
    evidence: Optional[List[str]] = None


class AdminReleaseIn(BaseModel):
    reason: str


class RaiseDisputeIn(BaseModel):
    reason: str
    evidence: Optional[List[str]] = None


class ResolveDisputeIn(BaseModel):
    outcome: str
    amount: Optional[int] = None
    note: Optional[str] = None
    refund_remainder: bool = True


class SetPlanIn(BaseModel):
    tier: str


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------

def get_orchestrator(request: Request) -> EscrowOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Escrow engine not initialised")
    return orchestrator


def get_actor(x_account_id: Optional[str] = Header(None), x_admin: Optional[str] = Header(None)) -> Actor:
    if not x_account_id:
        raise HTTPException(status_code=401, detail="Missing X-Account-Id header")
    return Actor(account_id=x_account_id, is_admin=(x_admin or "").lower() == "true")


# ----------------------------------------------------------------------
# Error mapping
# ----------------------------------------------------------------------

def status_for(error: EscrowError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, LimitExceededError):
        return 402
    if isinstance(error, PaymentCapabilityError):
        return 503 if error.is_retryable else 502
    if isinstance(error, ConcurrencyConflictError):
        return 423
    if isinstance(error, (AlreadyReleasedError, InvalidStateError)):
        return 409
    return 500


async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"❌ API {request.method} {request.url.path} -> {status_code}: {exc.message}")
    else:
        logger.info(f"API {request.method} {request.url.path} -> {status_code} {exc.error_code}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EscrowError, escrow_error_handler)


def create_app(orchestrator: EscrowOrchestrator) -> FastAPI:
    app = FastAPI(title="Creator Escrow Engine")
    app.state.orchestrator = orchestrator
    register_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": "escrow-engine"}

    return app


# ----------------------------------------------------------------------
# Deals
# ----------------------------------------------------------------------

@router.post("/deals", status_code=201)
def create_deal(body: CreateDealIn, actor: Actor = Depends(get_actor),
                orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    request = DealCreationRequest(
        creator_id=body.creator_id,
        title=body.title,
        milestones=[m.model_dump() for m in body.milestones],
        currency=body.currency,
        description=body.description,
        auto_release_enabled=body.auto_release_enabled,
        auto_release_days=body.auto_release_days,
    )
    return orchestrator.create_deal(actor, request)


@router.get("/deals")
def list_deals(status: Optional[str] = None, limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
               actor: Actor = Depends(get_actor), orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return {"deals": orchestrator.list_deals(actor, status, limit, offset)}


@router.get("/deals/{deal_id}")
def get_deal(deal_id: str, actor: Actor = Depends(get_actor),
             orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_deal(actor, deal_id)


@router.post("/deals/{deal_id}/accept")
def accept_deal(deal_id: str, body: AcceptDealIn, actor: Actor = Depends(get_actor),
                orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.accept_deal(actor, deal_id, body.destination_account)


@router.post("/deals/{deal_id}/fund")
def fund_deal(deal_id: str, actor: Actor = Depends(get_actor),
              orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.fund_deal(actor, deal_id)


@router.post("/deals/{deal_id}/cancel")
def cancel_deal(deal_id: str, body: CancelDealIn, actor: Actor = Depends(get_actor),
                orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.cancel_deal(actor, deal_id, body.reason)


@router.patch("/deals/{deal_id}/auto-release")
def update_auto_release(deal_id: str, body: AutoReleaseIn, actor: Actor = Depends(get_actor),
                        orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.update_auto_release(actor, deal_id, body.enabled, body.days)


@router.get("/deals/{deal_id}/disputes")
def list_deal_disputes(deal_id: str, status: Optional[str] = None, actor: Actor = Depends(get_actor),
                       orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return {"disputes": orchestrator.list_disputes(actor, deal_id, status)}


# ----------------------------------------------------------------------
# Milestones
# ----------------------------------------------------------------------

@router.get("/milestones/{milestone_id}")
def get_milestone(milestone_id: str, actor: Actor = Depends(get_actor),
                  orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_milestone(actor, milestone_id)


@router.patch("/milestones/{milestone_id}/amount")
def update_milestone_amount(milestone_id: str, body: MilestoneAmountIn, actor: Actor = Depends(get_actor),
                            orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.update_milestone_amount(actor, milestone_id, body.amount)


@router.post("/milestones/{milestone_id}/submit")
def submit_milestone(milestone_id: str, body: DeliverableIn, actor: Actor = Depends(get_actor),
                     orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.submit_milestone(actor, milestone_id, body.model_dump())


@router.post("/milestones/{milestone_id}/approve")
def approve_milestone(milestone_id: str, body: ApproveIn, actor: Actor = Depends(get_actor),
                      orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.approve_milestone(actor, milestone_id, body.feedback)


@router.post("/milestones/{milestone_id}/revision")
def request_revision(milestone_id: str, body: RevisionIn, actor: Actor = Depends(get_actor),
                     orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.request_revision(actor, milestone_id, body.feedback, body.requirements)


@router.post("/milestones/{milestone_id}/reject")
def reject_milestone(milestone_id: str, body: RejectIn, actor: Actor = Depends(get_actor),
                     orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.reject_milestone(actor, milestone_id, body.reason, body.feedback, body.final, body.evidence)


@router.post("/milestones/{milestone_id}/retry-release")
def retry_release(milestone_id: str, actor: Actor = Depends(get_actor),
                  orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.retry_release(actor, milestone_id)


@router.post("/milestones/{milestone_id}/force-release")
def admin_force_release(milestone_id: str, body: AdminReleaseIn, actor: Actor = Depends(get_actor),
                        orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.admin_force_release(actor, milestone_id, body.reason)


@router.post("/milestones/{milestone_id}/disputes", status_code=201)
def raise_dispute(milestone_id: str, body: RaiseDisputeIn, actor: Actor = Depends(get_actor),
                  orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.raise_dispute(actor, milestone_id, body.reason, body.evidence)


# ----------------------------------------------------------------------
# Disputes
# ----------------------------------------------------------------------

@router.get("/disputes")
def list_disputes(status: Optional[str] = None, actor: Actor = Depends(get_actor),
                  orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return {"disputes": orchestrator.list_disputes(actor, None, status)}


@router.get("/disputes/stats")
def dispute_stats(actor: Actor = Depends(get_actor), orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.dispute_stats(actor)


@router.post("/disputes/{dispute_id}/resolve")
def resolve_dispute(dispute_id: str, body: ResolveDisputeIn, actor: Actor = Depends(get_actor),
                    orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.resolve_dispute(
        actor, dispute_id, body.outcome, body.amount, body.note, body.refund_remainder
    )


@router.post("/disputes/{dispute_id}/withdraw")
def withdraw_dispute(dispute_id: str, actor: Actor = Depends(get_actor),
                     orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.withdraw_dispute(actor, dispute_id)


# ----------------------------------------------------------------------
# Payouts, usage and account
# ----------------------------------------------------------------------

@router.get("/payouts")
def list_payouts(status: Optional[str] = None, limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                 actor: Actor = Depends(get_actor), orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return {"payouts": orchestrator.list_payouts(actor, status, limit, offset)}


@router.get("/payouts/{payout_id}")
def get_payout(payout_id: str, actor: Actor = Depends(get_actor),
               orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_payout(actor, payout_id)


@router.get("/usage")
def get_usage(actor: Actor = Depends(get_actor), orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_usage(actor)


@router.put("/accounts/{account_id}/plan")
def set_plan(account_id: str, body: SetPlanIn, actor: Actor = Depends(get_actor),
             orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.set_plan(actor, account_id, body.tier)


@router.post("/accounts/{account_id}/archive")
def archive_account(account_id: str, actor: Actor = Depends(get_actor),
                    orchestrator: EscrowOrchestrator = Depends(get_orchestrator)):
    return orchestrator.archive_account(actor, account_id)
