"""
Affiliate Directory Management

Create, edit, deactivate and remove affiliates. This is the only path that
moves an affiliate to inactive or suspended, which in turn stops it from
raising new cash calls.

Reads follow the cash call visibility scope: staff with read_all see the whole
directory, an affiliate user sees only its own affiliate. Every write requires
manage_affiliates and leaves an audit row (affiliate_created,
affiliate_updated, affiliate_deleted).
"""

from typing import Optional, List, Dict, Any, Union
import logging

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
from models import AffiliateStatus, RiskLevel
from rbac_service import Actor, can
from visibility import is_affiliate_visible, apply_affiliate_visibility
from audit_service import utcnow, log_affiliate_action
from cash_call_errors import ValidationError, Forbidden, NotFound
from cash_call_service import parse_input

logger = logging.getLogger(__name__)


class AffiliateInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    company_code: str = Field(..., min_length=1, max_length=50)
    status: AffiliateStatus = AffiliateStatus.ACTIVE
    risk_level: RiskLevel = RiskLevel.LOW
    country: Optional[str] = Field(None, max_length=100)
    contact_email: Optional[str] = Field(None, max_length=200)

    class Config:
        extra = "ignore"

    @field_validator("company_code")
    def normalize_company_code(cls, v):
        code = v.strip().upper()
        if not code:
            raise ValueError("company_code is required")
        return code


class AffiliateUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    status: Optional[AffiliateStatus] = None
    risk_level: Optional[RiskLevel] = None
    country: Optional[str] = Field(None, max_length=100)
    contact_email: Optional[str] = Field(None, max_length=200)

    class Config:
        extra = "forbid"


def _require_manage(actor: Actor, action: str):
    if not can(actor, "manage_affiliates"):
        logger.warning(f"Actor {getattr(actor, 'id', None)} denied {action}")
        raise Forbidden()


# ═══════════════════════════════════════════════════════════════════════════════
# READS
# ═══════════════════════════════════════════════════════════════════════════════

def list_affiliates(db: Session, actor: Actor, status: Optional[str] = None) -> List[models.Affiliate]:
    query = apply_affiliate_visibility(actor, db.query(models.Affiliate))
    if status:
        try:
            query = query.filter(models.Affiliate.status == AffiliateStatus(status).value)
        except ValueError:
            raise ValidationError(f"Unknown affiliate status: {status}")
    return query.order_by(models.Affiliate.name.asc(), models.Affiliate.id.asc()).all()


def get_affiliate(db: Session, actor: Actor, affiliate_id: str) -> models.Affiliate:
    affiliate = db.get(models.Affiliate, affiliate_id) if affiliate_id else None
    if affiliate is None or not is_affiliate_visible(actor, affiliate.id):
        raise NotFound("Affiliate not found")
    return affiliate


# ═══════════════════════════════════════════════════════════════════════════════
# WRITES
# ═══════════════════════════════════════════════════════════════════════════════

def create_affiliate(
    db: Session,
    actor: Actor,
    data: Union[AffiliateInput, Dict[str, Any]]
) -> models.Affiliate:
    """
    Register an affiliate.

    Raises:
        Forbidden, ValidationError (bad input or duplicate company_code)
    """
    _require_manage(actor, "affiliate create")
    data = parse_input(AffiliateInput, data)

    existing = db.query(models.Affiliate).filter(models.Affiliate.company_code == data.company_code).first()
    if existing is not None:
        raise ValidationError(f"Company code {data.company_code} already exists")

    now = utcnow()
    affiliate = models.Affiliate(
        name=data.name.strip(),
        company_code=data.company_code,
        status=data.status.value,
        risk_level=data.risk_level.value,
        country=data.country,
        contact_email=data.contact_email,
        created_at=now,
        updated_at=now,
    )
    db.add(affiliate)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"Company code {data.company_code} already exists")

    log_affiliate_action(
        db, actor, "affiliate_created", affiliate,
        changes={
            "name": {"old": None, "new": affiliate.name},
            "company_code": {"old": None, "new": affiliate.company_code},
            "status": {"old": None, "new": affiliate.status},
        }
    )
    db.commit()
    db.refresh(affiliate)

    logger.info(f"Affiliate {affiliate.company_code} ({affiliate.id}) created by {actor.id}")
    return affiliate


def update_affiliate(
    db: Session,
    actor: Actor,
    affiliate_id: str,
    changes: Union[AffiliateUpdate, Dict[str, Any]]
) -> models.Affiliate:
    """
    Edit an affiliate. Setting status to inactive or suspended blocks new cash
    calls for it; existing cash calls are untouched.
    """
    affiliate = get_affiliate(db, actor, affiliate_id)
    _require_manage(actor, f"update on affiliate {affiliate_id}")

    fields = parse_input(AffiliateUpdate, changes).model_dump(exclude_unset=True)
    cleared = [name for name in ("name", "status", "risk_level") if name in fields and fields[name] is None]
    if cleared:
        raise ValidationError(f"{', '.join(cleared)} cannot be cleared")

    diff = {}
    for name, value in fields.items():
        if isinstance(value, (AffiliateStatus, RiskLevel)):
            value = value.value
        old = getattr(affiliate, name)
        if old != value:
            diff[name] = {"old": old, "new": value}
            setattr(affiliate, name, value)

    if not diff:
        return affiliate

    affiliate.updated_at = utcnow()
    log_affiliate_action(db, actor, "affiliate_updated", affiliate, changes=diff)
    db.commit()
    db.refresh(affiliate)

    if "status" in diff:
        logger.warning(
            f"Affiliate {affiliate.company_code} status {diff['status']['old']} -> "
            f"{diff['status']['new']} by {actor.id}"
        )
    else:
        logger.info(f"Affiliate {affiliate.company_code} updated by {actor.id}")
    return affiliate


def delete_affiliate(db: Session, actor: Actor, affiliate_id: str) -> None:
    """
    Remove an affiliate that has never raised a cash call.

    Affiliates with cash calls on record must be deactivated instead.
    """
    affiliate = get_affiliate(db, actor, affiliate_id)
    _require_manage(actor, f"delete on affiliate {affiliate_id}")

    cash_calls = db.query(models.CashCall).filter(models.CashCall.affiliate_id == affiliate.id).count()
    if cash_calls:
        raise ValidationError(
            f"Affiliate {affiliate.company_code} has {cash_calls} cash calls; deactivate it instead"
        )

    log_affiliate_action(
        db, actor, "affiliate_deleted", affiliate,
        changes={
            "name": {"old": affiliate.name, "new": None},
            "company_code": {"old": affiliate.company_code, "new": None},
            "status": {"old": affiliate.status, "new": None},
        }
    )
    db.delete(affiliate)
    db.commit()

    logger.info(f"Affiliate {affiliate.company_code} ({affiliate_id}) deleted by {actor.id}")
