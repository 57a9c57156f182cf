"""
Cash Call API
REST endpoints for the cash call lifecycle.

- Cash calls (list/search/stats/get/create/edit draft)
- Transitions (single, bulk, admin override)
- Deletes (single, bulk)
- Assignment and comments
- Audit trail
- Roles

The caller identifies itself with X-User-Id / X-User-Role / X-Affiliate-Id.
Every endpoint hands the resolved Actor to the engine; no endpoint filters or
authorizes on its own.
"""

from fastapi import APIRouter, Depends, HTTPException, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
import logging

from database import get_db
from audit_service import get_audit_trail
from cash_call_errors import CashCallError
from cash_call_service import CashCallEngine, CashCallInput, CashCallUpdate, PerIdResult
from cash_call_comments import CommentInput, CommentUpdate, list_comments, create_comment, update_comment, delete_comment
from notification_service import NotificationSink, LoggingNotificationSink
from rbac_service import Actor, resolve_actor, require_permission, get_role_hierarchy, MANAGEMENT_ROLE_ALIASES, get_role_display

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["cash-calls"])


# ═══════════════════════════════════════════════════════════════════════════════
# DEPENDENCIES
# ═══════════════════════════════════════════════════════════════════════════════

def get_current_actor(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
    x_affiliate_id: Optional[str] = Header(default=None, alias="X-Affiliate-Id"),
    x_user_email: Optional[str] = Header(default=None, alias="X-User-Email")
) -> Actor:
    """Resolve the calling actor from headers."""
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="X-User-Id and X-User-Role headers are required")
    return resolve_actor(x_user_id, x_user_role, x_affiliate_id, x_user_email)


_notification_sink = LoggingNotificationSink()


def get_notification_sink() -> NotificationSink:
    return _notification_sink


def get_engine(
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notification_sink)
) -> CashCallEngine:
    return CashCallEngine(db, notifier=notifier)


async def cash_call_error_handler(request: Request, exc: CashCallError) -> JSONResponse:
    """Map engine errors onto their HTTP status with a stable body."""
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.kind, "detail": exc.message}
    )


# ═══════════════════════════════════════════════════════════════════════════════
# REQUEST/RESPONSE MODELS
# ═══════════════════════════════════════════════════════════════════════════════

class CashCallResponse(BaseModel):
    id: str
    call_number: str
    affiliate_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    amount_requested: float
    currency: str
    priority: str
    due_date: Optional[datetime] = None
    status: str
    rejection_reason: Optional[str] = None
    created_by: str
    created_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    updated_at: datetime
    assignee_user_id: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class TransitionRequest(BaseModel):
    target_status: str
    reason: Optional[str] = Field(None, max_length=500)


class OverrideRequest(BaseModel):
    target_status: str
    reason: str = Field(..., max_length=500)


class BulkTransitionRequest(BaseModel):
    ids: List[str]
    target_status: str
    reason: Optional[str] = Field(None, max_length=500)


class BulkDeleteRequest(BaseModel):
    ids: List[str]


class AssignRequest(BaseModel):
    assignee_user_id: Optional[str] = Field(None, max_length=100)


class CommentResponse(BaseModel):
    id: int
    cash_call_id: str
    parent_comment_id: Optional[int] = None
    author_id: str
    author_role: str
    content: str
    is_internal: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PerIdResultResponse(BaseModel):
    cash_call_id: str
    ok: bool
    error: Optional[str] = None
    message: Optional[str] = None
    cash_call: Optional[CashCallResponse] = None


class BulkResultResponse(BaseModel):
    results: List[PerIdResultResponse]
    succeeded: int
    failed: int


def _bulk_response(results: List[PerIdResult]) -> Dict[str, Any]:
    succeeded = sum(1 for r in results if r.ok)
    return {
        "results": [
            {
                "cash_call_id": r.cash_call_id,
                "ok": r.ok,
                "error": r.error,
                "message": r.message,
                "cash_call": CashCallResponse.model_validate(r.cash_call) if r.cash_call is not None else None,
            }
            for r in results
        ],
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# CASH CALL ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.get("/cash-calls", response_model=List[CashCallResponse])
def list_cash_calls(
    status: Optional[List[str]] = Query(None),
    priority: Optional[List[str]] = Query(None),
    affiliate_id: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """GET /cash-calls - Cash calls visible to the caller, newest first."""
    return engine.list_visible(actor, status=status, priority=priority, affiliate_id=affiliate_id, limit=limit)


@router.get("/cash-calls/search", response_model=List[CashCallResponse])
def search_cash_calls(
    q: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=100),
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """GET /cash-calls/search?q= - Prefix search on call number or title."""
    return engine.search(actor, q, limit=limit)


@router.get("/cash-calls/stats")
def cash_call_stats(
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    return engine.dashboard_stats(actor)


@router.get("/cash-calls/{cash_call_id}", response_model=CashCallResponse)
def get_cash_call(
    cash_call_id: str,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    return engine.get_visible(actor, cash_call_id)


@router.post("/cash-calls", response_model=CashCallResponse, status_code=201)
def create_cash_call(
    request: CashCallInput,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """
    POST /cash-calls - Raise a cash call.
    Required permission: create (or create_own_only for the caller's affiliate)
    """
    return engine.create(actor, request)


@router.patch("/cash-calls/{cash_call_id}", response_model=CashCallResponse)
def update_cash_call(
    cash_call_id: str,
    request: CashCallUpdate,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """PATCH /cash-calls/{id} - Edit a cash call while it is still a draft."""
    return engine.update_draft(actor, cash_call_id, request)


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSITION ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("/cash-calls/bulk-transition", response_model=BulkResultResponse)
def bulk_transition_cash_calls(
    request: BulkTransitionRequest,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """
    POST /cash-calls/bulk-transition - Per-id results, not atomic.
    Required permission: bulk_transition
    """
    results = engine.bulk_transition(actor, request.ids, request.target_status, request.reason)
    return _bulk_response(results)


@router.post("/cash-calls/{cash_call_id}/transition", response_model=CashCallResponse)
def transition_cash_call(
    cash_call_id: str,
    request: TransitionRequest,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """
    POST /cash-calls/{id}/transition
    Required permission: transition:<current>-><target>
    """
    return engine.transition(actor, cash_call_id, request.target_status, request.reason)


@router.post("/cash-calls/{cash_call_id}/override", response_model=CashCallResponse)
def override_cash_call(
    cash_call_id: str,
    request: OverrideRequest,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """
    POST /cash-calls/{id}/override - Forward-only status override with a reason.
    Required permission: override
    """
    return engine.override(actor, cash_call_id, request.target_status, request.reason)


# ═══════════════════════════════════════════════════════════════════════════════
# DELETE ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.delete("/cash-calls/{cash_call_id}", status_code=204)
def delete_cash_call(
    cash_call_id: str,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """
    DELETE /cash-calls/{id} - Permanent.
    Required permission: delete
    """
    engine.delete(actor, cash_call_id)


@router.post("/cash-calls/bulk-delete", response_model=BulkResultResponse)
def bulk_delete_cash_calls(
    request: BulkDeleteRequest,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    return _bulk_response(engine.bulk_delete(actor, request.ids))


# ═══════════════════════════════════════════════════════════════════════════════
# ASSIGNMENT & COMMENT ENDPOINTS
# ═══════════════════════════════════════════════════════════════════════════════

@router.patch("/cash-calls/{cash_call_id}/assign", response_model=CashCallResponse)
def assign_cash_call(
    cash_call_id: str,
    request: AssignRequest,
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """
    PATCH /cash-calls/{id}/assign - Assign to a finance user; empty assignee unassigns.
    Required permission: manage_users
    """
    return engine.assign(actor, cash_call_id, request.assignee_user_id)


@router.get("/cash-calls/{cash_call_id}/comments", response_model=List[CommentResponse])
def get_cash_call_comments(
    cash_call_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    return list_comments(db, actor, cash_call_id)


@router.post("/cash-calls/{cash_call_id}/comments", response_model=CommentResponse, status_code=201)
def post_cash_call_comment(
    cash_call_id: str,
    request: CommentInput,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """
    POST /cash-calls/{id}/comments
    Required permission: comment (read_internal_comments for internal comments)
    """
    return create_comment(db, actor, cash_call_id, request)


@router.patch("/cash-calls/{cash_call_id}/comments/{comment_id}", response_model=CommentResponse)
def edit_cash_call_comment(
    cash_call_id: str,
    comment_id: int,
    request: CommentUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """PATCH /cash-calls/{id}/comments/{comment_id} - Author only."""
    return update_comment(db, actor, cash_call_id, comment_id, request)


@router.delete("/cash-calls/{cash_call_id}/comments/{comment_id}", status_code=204)
def remove_cash_call_comment(
    cash_call_id: str,
    comment_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """DELETE /cash-calls/{id}/comments/{comment_id} - Author, or moderate_comments."""
    delete_comment(db, actor, cash_call_id, comment_id)


# ═══════════════════════════════════════════════════════════════════════════════
# AUDIT & ROLES
# ═══════════════════════════════════════════════════════════════════════════════

@require_permission("read_audit")
def audit_entries(db: Session, limit: int, *, actor: Actor, **filters) -> List[Dict[str, Any]]:
    """Serialized activity log rows matching `filters` (see get_audit_trail)."""
    return [
        {
            "id": log.id,
            "created_at": log.created_at.isoformat() if log.created_at else None,
            "actor_id": log.actor_id,
            "actor_role": log.actor_role,
            "action": log.action,
            "resource_type": log.resource_type,
            "resource_id": log.resource_id,
            "cash_call_id": log.cash_call_id,
            "call_number": log.call_number,
            "changes": log.changes,
            "notes": log.notes,
        }
        for log in get_audit_trail(db, limit=limit, **filters)
    ]


@router.get("/cash-calls/{cash_call_id}/audit")
def get_cash_call_audit(
    cash_call_id: str,
    limit: int = Query(100, ge=1, le=1000),
    engine: CashCallEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor)
):
    """
    GET /cash-calls/{id}/audit - Activity log for one cash call, newest first.
    Required permission: read_audit
    """
    # Not-visible ids read as missing before any permission check
    engine.get_visible(actor, cash_call_id)
    return {
        "cash_call_id": cash_call_id,
        "entries": audit_entries(engine.db, limit, actor=actor, cash_call_id=cash_call_id),
    }


@router.get("/roles")
def list_roles():
    """GET /roles - Operational roles and their management-screen aliases."""
    return {
        "roles": get_role_hierarchy(),
        "management_roles": {
            alias: get_role_display(alias) for alias in MANAGEMENT_ROLE_ALIASES
        },
    }
