"""
Cash Call Audit Trail

Two halves:
- stamping: derives who/when fields on the record itself as a side effect of a
  create or an accepted transition. Nothing else writes these fields.
- activity log: one CashCallAuditLog row per accepted mutation of a cash call,
  its comments, or an affiliate.

Log rows are added to the session but not committed; they commit together with
the record write they describe.
"""

from sqlalchemy.orm import Session
from datetime import datetime, timezone
import models
from typing import Optional, Dict, Any, List

from rbac_service import Actor


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ═══════════════════════════════════════════════════════════════════════════════
# STAMPING
# ═══════════════════════════════════════════════════════════════════════════════

def stamp_created(cash_call: models.CashCall, actor: Actor, now: Optional[datetime] = None) -> models.CashCall:
    now = now or utcnow()
    cash_call.created_by = actor.id
    cash_call.created_at = now
    cash_call.updated_at = now
    cash_call.approved_by = None
    cash_call.approved_at = None
    cash_call.paid_at = None
    return cash_call


def stamp_updated(cash_call: models.CashCall, now: Optional[datetime] = None) -> models.CashCall:
    cash_call.updated_at = now or utcnow()
    return cash_call


def stamp_transition(
    cash_call: models.CashCall,
    actor: Actor,
    new_status: str,
    now: Optional[datetime] = None
) -> models.CashCall:
    """
    Stamp the record for entering `new_status`.

    Entering approved sets approved_by/approved_at; entering paid sets paid_at.
    Approval stamps are never cleared afterwards.
    """
    now = now or utcnow()
    if new_status == models.CashCallStatus.APPROVED.value:
        cash_call.approved_by = actor.id
        cash_call.approved_at = now
    elif new_status == models.CashCallStatus.PAID.value:
        cash_call.paid_at = now
    cash_call.updated_at = now
    return cash_call


def stamp_assignment(
    cash_call: models.CashCall,
    actor: Actor,
    assignee_user_id: Optional[str],
    now: Optional[datetime] = None
) -> models.CashCall:
    """Set or clear the assignee together with who assigned it and when."""
    now = now or utcnow()
    cash_call.assignee_user_id = assignee_user_id
    cash_call.assigned_by = actor.id if assignee_user_id else None
    cash_call.assigned_at = now if assignee_user_id else None
    cash_call.updated_at = now
    return cash_call


# ═══════════════════════════════════════════════════════════════════════════════
# ACTIVITY LOG
# ═══════════════════════════════════════════════════════════════════════════════

def log_cash_call_action(
    db: Session,
    actor: Actor,
    action: str,
    cash_call: models.CashCall,
    changes: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None
) -> models.CashCallAuditLog:
    """Record a cash call create/transition/override/update/assign/delete or comment change."""
    log = models.CashCallAuditLog(
        created_at=utcnow(),
        actor_id=actor.id,
        actor_role=actor.role,
        action=action,
        resource_type="cash_call",
        resource_id=cash_call.id,
        cash_call_id=cash_call.id,
        call_number=cash_call.call_number,
        changes=changes,
        notes=notes
    )
    db.add(log)
    return log


def log_affiliate_action(
    db: Session,
    actor: Actor,
    action: str,
    affiliate: models.Affiliate,
    changes: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None
) -> models.CashCallAuditLog:
    log = models.CashCallAuditLog(
        created_at=utcnow(),
        actor_id=actor.id,
        actor_role=actor.role,
        action=action,
        resource_type="affiliate",
        resource_id=affiliate.id,
        changes=changes,
        notes=notes
    )
    db.add(log)
    return log


def status_change(old_status: str, new_status: str) -> Dict[str, Any]:
    return {"status": {"old": old_status, "new": new_status}}


def get_audit_trail(
    db: Session,
    cash_call_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    limit: int = 100
) -> List[models.CashCallAuditLog]:
    """Retrieve audit trail with filters, newest first"""
    query = db.query(models.CashCallAuditLog)

    if cash_call_id:
        query = query.filter(models.CashCallAuditLog.cash_call_id == cash_call_id)
    if action:
        query = query.filter(models.CashCallAuditLog.action == action)
    if actor_id:
        query = query.filter(models.CashCallAuditLog.actor_id == actor_id)
    if resource_type:
        query = query.filter(models.CashCallAuditLog.resource_type == resource_type)
    if resource_id:
        query = query.filter(models.CashCallAuditLog.resource_id == resource_id)

    return query.order_by(
        models.CashCallAuditLog.created_at.desc(),
        models.CashCallAuditLog.id.desc()
    ).limit(limit).all()
