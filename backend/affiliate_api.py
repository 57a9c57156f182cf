"""
Affiliate API
REST endpoints for the affiliate directory.

- Affiliates (list/get/create/edit/delete)
- Affiliate audit trail

Reads are scoped like cash calls; writes require manage_affiliates.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel

from database import get_db
from affiliate_service import (
    AffiliateInput, AffiliateUpdate,
    list_affiliates, get_affiliate, create_affiliate, update_affiliate, delete_affiliate
)
from cash_call_api import get_current_actor, audit_entries
from rbac_service import Actor

router = APIRouter(prefix="/api/v1", tags=["affiliates"])


class AffiliateResponse(BaseModel):
    id: str
    name: str
    company_code: str
    status: str
    risk_level: Optional[str] = None
    country: Optional[str] = None
    contact_email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.get("/affiliates", response_model=List[AffiliateResponse])
def get_affiliates(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """GET /affiliates - Affiliates visible to the caller, by name."""
    return list_affiliates(db, actor, status=status)


@router.get("/affiliates/{affiliate_id}", response_model=AffiliateResponse)
def get_affiliate_by_id(
    affiliate_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return get_affiliate(db, actor, affiliate_id)


@router.post("/affiliates", response_model=AffiliateResponse, status_code=201)
def post_affiliate(
    request: AffiliateInput,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    POST /affiliates
    Required permission: manage_affiliates
    """
    return create_affiliate(db, actor, request)


@router.patch("/affiliates/{affiliate_id}", response_model=AffiliateResponse)
def patch_affiliate(
    affiliate_id: str,
    request: AffiliateUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    PATCH /affiliates/{id} - Includes deactivating or suspending the affiliate.
    Required permission: manage_affiliates
    """
    return update_affiliate(db, actor, affiliate_id, request)


@router.delete("/affiliates/{affiliate_id}", status_code=204)
def remove_affiliate(
    affiliate_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    DELETE /affiliates/{id} - Only affiliates without cash calls.
    Required permission: manage_affiliates
    """
    delete_affiliate(db, actor, affiliate_id)


@router.get("/affiliates/{affiliate_id}/audit")
def get_affiliate_audit(
    affiliate_id: str,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    GET /affiliates/{id}/audit - Directory changes for one affiliate, newest first.
    Required permission: read_audit
    """
    get_affiliate(db, actor, affiliate_id)
    return {
        "affiliate_id": affiliate_id,
        "entries": audit_entries(db, limit, actor=actor, resource_type="affiliate", resource_id=affiliate_id),
    }
