from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, JSON, CheckConstraint, Text, Boolean
from sqlalchemy.orm import declarative_base, relationship
import datetime
import enum
import uuid

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class CashCallStatus(str, enum.Enum):
    """Cash call lifecycle states"""
    DRAFT = "draft"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class CashCallPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AffiliateStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Affiliate(Base):
    __tablename__ = "affiliates"
    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(200), nullable=False)
    company_code = Column(String(50), unique=True, index=True, nullable=False)
    status = Column(String(20), default=AffiliateStatus.ACTIVE.value, nullable=False)
    risk_level = Column(String(20), default=RiskLevel.LOW.value)
    country = Column(String(100), nullable=True)
    contact_email = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class CashCall(Base):
    """
    A funding request raised by an affiliate.

    Audit fields (created_by/created_at, approved_by/approved_at, paid_at,
    updated_at) are written by audit_service only.
    """
    __tablename__ = "cash_calls"

    id = Column(String(64), primary_key=True, default=_new_id)
    call_number = Column(String(64), unique=True, index=True, nullable=False)
    affiliate_id = Column(String(64), ForeignKey("affiliates.id"), index=True, nullable=False)

    title = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)

    amount_requested = Column(Float, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    priority = Column(String(20), default=CashCallPriority.MEDIUM.value, nullable=False)
    due_date = Column(DateTime, nullable=True)

    # Workflow: draft -> under_review -> approved -> paid
    #                                 \-> rejected
    status = Column(String(20), default=CashCallStatus.DRAFT.value, nullable=False, index=True)
    rejection_reason = Column(String(500), nullable=True)

    # Audit
    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False)
    approved_by = Column(String(100), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)

    # Finance user working the call; unrelated to the approval stamps
    assignee_user_id = Column(String(100), nullable=True, index=True)
    assigned_by = Column(String(100), nullable=True)
    assigned_at = Column(DateTime, nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False)

    affiliate = relationship("Affiliate")
    comments = relationship(
        "CashCallComment", back_populates="cash_call", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'under_review', 'approved', 'rejected', 'paid')",
            name="ck_cash_call_status"
        ),
        CheckConstraint("amount_requested > 0", name="ck_cash_call_amount_positive"),
    )


class CashCallAuditLog(Base):
    __tablename__ = "cash_call_audit_logs"
    id = Column(Integer, primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    actor_id = Column(String(100))
    actor_role = Column(String(20))
    action = Column(String(50))  # cash_call_*, status_changed, admin_override, comment_*, affiliate_*
    resource_type = Column(String(20), default="cash_call", nullable=False, index=True)  # cash_call, affiliate
    resource_id = Column(String(64), index=True)
    # No FK: rows outlive deleted cash calls
    cash_call_id = Column(String(64), index=True, nullable=True)
    call_number = Column(String(64), nullable=True)
    changes = Column(JSON, nullable=True)  # {"field": {"old": ..., "new": ...}}
    notes = Column(String(500), nullable=True)


class CashCallComment(Base):
    """Discussion thread entry on a cash call. Replies are one level deep."""
    __tablename__ = "cash_call_comments"
    id = Column(Integer, primary_key=True, index=True)
    cash_call_id = Column(String(64), ForeignKey("cash_calls.id", ondelete="CASCADE"), index=True, nullable=False)
    parent_comment_id = Column(Integer, ForeignKey("cash_call_comments.id", ondelete="CASCADE"), nullable=True)
    author_id = Column(String(100), nullable=False)
    author_role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    # Internal comments are for parent-organization staff only
    is_internal = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    cash_call = relationship("CashCall", back_populates="comments")
