"""
Creator/Brand Escrow Engine - Database Schema
=============================================

Schema for the deal/milestone escrow lifecycle:
- Deals funded by a brand and fulfilled by a creator
- Milestones as the unit of delivery and payment
- Payouts and refunds as the ledger of external fund movements
- Disputes, subscription usage counters and an append-only audit trail

Money is always stored as integer minor units (cents). All timestamps are
naive UTC.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.id_generator import EntityType, generate_id


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DealStatus(Enum):
    """Deal (funding contract) lifecycle states"""
    DRAFT = "draft"
    FUNDED = "funded"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class MilestoneStatus(Enum):
    """Milestone (deliverable-and-payment unit) lifecycle states"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    RELEASED = "released"
    DISPUTED = "disputed"


class PayoutStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class DisputeStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    WITHDRAWN = "withdrawn"


class DisputeOutcome(Enum):
    """Arbitration outcomes for a disputed milestone"""
    FULL_RELEASE = "full_release"
    PARTIAL_RELEASE = "partial_release"
    RETURN_TO_PENDING = "return_to_pending"
    REFUND = "refund"


class PartyRole(Enum):
    """Role of the acting account relative to a deal"""
    BRAND = "brand"
    CREATOR = "creator"
    ADMIN = "admin"
    SYSTEM = "system"


class PlanTier(Enum):
    """Subscription plans, cheapest first"""
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class GatedAction(Enum):
    """Actions checked against subscription limits"""
    CREATE_DEAL = "create_deal"
    PROCESS_PAYMENT = "process_payment"
    USE_API = "use_api"
    BULK_PAYOUT = "bulk_payout"


class SubmissionType(Enum):
    FILE = "file"
    URL = "url"
    TEXT = "text"


class ReviewStatus(Enum):
    """Review outcome stamped on a submitted deliverable"""
    AWAITING_REVIEW = "awaiting_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"
    AUTO_APPROVED = "auto_approved"


class SagaStepStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# ============================================================================
# CORE MODELS
# ============================================================================

class Deal(Base):
    """Funding contract between one brand and one creator for one project"""
    __tablename__ = "deals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(String(32), unique=True, nullable=False, index=True,
                     default=lambda: generate_id(EntityType.DEAL))  # Public facing ID

    # Participants (identity collaborator account ids)
    brand_id = Column(String(64), nullable=False, index=True)
    creator_id = Column(String(64), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Financial details in minor units
    currency = Column(String(3), nullable=False, default="USD")
    total_amount = Column(BigInteger, nullable=False)
    funding_token = Column(String(128), nullable=True)  # Hold reference from payment capability
    destination_account = Column(String(128), nullable=True)  # Creator's payout account

    status = Column(String(20), default=DealStatus.DRAFT.value, nullable=False, index=True)

    # Auto-release settings (per deal override of Config defaults)
    auto_release_enabled = Column(Boolean, default=True, nullable=False)
    auto_release_days = Column(Integer, default=5, nullable=False)

    # Lifecycle timestamps
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    funded_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)  # Soft delete only

    milestones = relationship(
        "Milestone", back_populates="deal", order_by="Milestone.position",
        cascade="save-update, merge",
    )
    payouts = relationship("Payout", back_populates="deal")
    disputes = relationship("Dispute", back_populates="deal")
    refunds = relationship("Refund", back_populates="deal")

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="ck_deals_total_positive"),
        Index("ix_deals_brand_status", "brand_id", "status"),
        Index("ix_deals_creator_status", "creator_id", "status"),
    )

    def party_role(self, account_id: str):
        """Role of an account on this deal, or None when it is not a party"""
        if account_id == self.brand_id:
            return PartyRole.BRAND
        if account_id == self.creator_id:
            return PartyRole.CREATOR
        return None

    def __repr__(self):
        return f"<Deal(deal_id={self.deal_id}, status={self.status}, total={self.total_amount} {self.currency})>"


class Milestone(Base):
    """One deliverable-and-payment unit belonging to exactly one deal"""
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    milestone_id = Column(String(32), unique=True, nullable=False, index=True,
                          default=lambda: generate_id(EntityType.MILESTONE))
    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(BigInteger, nullable=False)
    due_date = Column(DateTime, nullable=True)

    status = Column(String(20), default=MilestoneStatus.PENDING.value, nullable=False, index=True)

    # Review bookkeeping
    current_deliverable_id = Column(Integer, ForeignKey("deliverables.id", use_alter=True), nullable=True)
    revision_count = Column(Integer, default=0, nullable=False)
    approval_feedback = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    auto_released = Column(Boolean, default=False, nullable=False)
    released_amount = Column(BigInteger, nullable=True)

    # Transition timestamps
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    disputed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    deal = relationship("Deal", back_populates="milestones")
    deliverables = relationship(
        "Deliverable", back_populates="milestone",
        foreign_keys="Deliverable.milestone_id", order_by="Deliverable.id",
    )
    current_deliverable = relationship("Deliverable", foreign_keys=[current_deliverable_id], post_update=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_milestones_amount_positive"),
        Index("ix_milestones_status_submitted", "status", "submitted_at"),
    )

    def __repr__(self):
        return f"<Milestone(milestone_id={self.milestone_id}, status={self.status}, amount={self.amount})>"


class Deliverable(Base):
    """Submission payload for one review round of a milestone"""
    __tablename__ = "deliverables"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deliverable_id = Column(String(32), unique=True, nullable=False,
                            default=lambda: generate_id(EntityType.DELIVERABLE))
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=False, index=True)
    submitted_by = Column(String(64), nullable=False)

    submission_type = Column(String(10), nullable=False)  # file|url|text
    description = Column(Text, nullable=False)
    file_reference = Column(String(512), nullable=True)
    file_hash = Column(String(128), nullable=True)
    external_url = Column(String(2048), nullable=True)
    text_body = Column(Text, nullable=True)
    submission_metadata = Column(JSON, nullable=True)

    review_status = Column(String(32), default=ReviewStatus.AWAITING_REVIEW.value, nullable=False)
    feedback = Column(Text, nullable=True)
    requirements = Column(JSON, nullable=True)  # Revision requirements from the brand
    reviewed_by = Column(String(64), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=False)

    milestone = relationship("Milestone", back_populates="deliverables", foreign_keys=[milestone_id])

    def __repr__(self):
        return f"<Deliverable(deliverable_id={self.deliverable_id}, type={self.submission_type}, review={self.review_status})>"


class Payout(Base):
    """Ledger record of one fund movement to the creator"""
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payout_id = Column(String(32), unique=True, nullable=False, index=True,
                       default=lambda: generate_id(EntityType.PAYOUT))
    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True, index=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=True)

    # amount is what the creator receives; gross = amount + fee_amount
    gross_amount = Column(BigInteger, nullable=False)
    fee_amount = Column(BigInteger, nullable=False, default=0)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    plan_tier = Column(String(20), nullable=False)
    destination_account = Column(String(128), nullable=True)

    # Exactly-once protection against the payment capability
    idempotency_key = Column(String(128), unique=True, nullable=False)
    external_ref = Column(String(128), nullable=True)

    status = Column(String(20), default=PayoutStatus.PENDING.value, nullable=False, index=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    failure_kind = Column(String(40), nullable=True)
    failure_message = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    deal = relationship("Deal", back_populates="payouts")
    milestone = relationship("Milestone")

    __table_args__ = (
        CheckConstraint("fee_amount >= 0", name="ck_payouts_fee_non_negative"),
        CheckConstraint("fee_amount <= gross_amount", name="ck_payouts_fee_within_gross"),
        Index("ix_payouts_status_processing", "status", "processing_started_at"),
    )

    def __repr__(self):
        return f"<Payout(payout_id={self.payout_id}, status={self.status}, amount={self.amount}, fee={self.fee_amount})>"


class Refund(Base):
    """Ledger record of held funds returned to the brand"""
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    refund_id = Column(String(32), unique=True, nullable=False,
                       default=lambda: generate_id(EntityType.REFUND))
    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=True)
    dispute_id = Column(Integer, ForeignKey("disputes.id"), nullable=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(String(64), nullable=False)  # cancellation|dispute_refund|partial_remainder
    idempotency_key = Column(String(128), unique=True, nullable=False)
    external_ref = Column(String(128), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    deal = relationship("Deal", back_populates="refunds")

    def __repr__(self):
        return f"<Refund(refund_id={self.refund_id}, amount={self.amount}, reason={self.reason})>"


class Dispute(Base):
    """Contested milestone outcome awaiting arbitration"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(32), unique=True, nullable=False, index=True,
                        default=lambda: generate_id(EntityType.DISPUTE))
    deal_id = Column(Integer, ForeignKey("deals.id"), nullable=False, index=True)
    milestone_id = Column(Integer, ForeignKey("milestones.id"), nullable=False, index=True)

    raised_by = Column(String(64), nullable=False)
    raised_by_role = Column(String(20), nullable=False)
    reason = Column(Text, nullable=False)
    evidence = Column(JSON, nullable=True)  # List of evidence references
    is_review = Column(Boolean, default=False, nullable=False)  # Raised after release

    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False, index=True)
    outcome = Column(String(32), nullable=True)
    resolved_amount = Column(BigInteger, nullable=True)
    refund_remainder = Column(Boolean, default=True, nullable=False)
    held_remainder = Column(BigInteger, nullable=True)
    resolution_note = Column(Text, nullable=True)
    resolved_by = Column(String(64), nullable=True)

    # State to restore on withdrawal
    previous_milestone_status = Column(String(20), nullable=False)
    previous_deal_status = Column(String(20), nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    deal = relationship("Deal", back_populates="disputes")
    milestone = relationship("Milestone")

    def __repr__(self):
        return f"<Dispute(dispute_id={self.dispute_id}, status={self.status}, outcome={self.outcome})>"


class SubscriptionUsage(Base):
    """Per-billing-period usage counters for one account"""
    __tablename__ = "subscription_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False, index=True)
    plan_tier = Column(String(20), nullable=False, default=PlanTier.FREE.value)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    deals_created = Column(Integer, default=0, nullable=False)
    transaction_volume = Column(BigInteger, default=0, nullable=False)  # Minor units
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)

    __table_args__ = (
        UniqueConstraint("account_id", "period_start", name="uq_subscription_usage_period"),
    )

    def __repr__(self):
        return f"<SubscriptionUsage(account_id={self.account_id}, tier={self.plan_tier}, deals={self.deals_created})>"


class AuditLog(Base):
    """Append-only audit trail for every transition and fund movement"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False, index=True)
    actor_id = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(32), nullable=False, index=True)
    deal_ref = Column(String(32), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<AuditLog(event_type={self.event_type}, entity={self.entity_type}:{self.entity_id})>"


class SagaStep(Base):
    """Idempotent, resumable step of a server-side saga"""
    __tablename__ = "saga_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    saga_id = Column(String(64), nullable=False, index=True)
    step_name = Column(String(64), nullable=False)
    entity_id = Column(String(32), nullable=False)
    status = Column(String(20), default=SagaStepStatus.PENDING.value, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("saga_id", "step_name", "entity_id", name="uq_saga_step"),
    )
