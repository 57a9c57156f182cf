"""
Cash Call Engine

Entry point for every cash call read and write. Callers pass an explicit Actor;
the engine consults the permission table and the visibility scope before any
record is touched, re-reads the record right before each write and re-runs the
checks against that fresh copy.

Operations:
- list_visible / get_visible / search / dashboard_stats
- create / update_draft
- transition / bulk_transition / override
- delete / bulk_delete
- assign
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any, Union, Callable, Tuple
import logging
import math
import random
import time

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
import settings
from models import CashCallStatus, CashCallPriority, AffiliateStatus
from rbac_service import Actor, can
from visibility import is_visible, apply_visibility, visible
from cash_call_state_machine import (
    CashCallStateMachine, INITIAL_STATUSES, coerce_status, transition_permission
)
from cash_call_repository import (
    CashCallStore, AffiliateDirectory, SqlCashCallStore, SqlAffiliateDirectory, StaleWriteError
)
from notification_service import NotificationSink, LoggingNotificationSink, StatusChangeEvent
from audit_service import stamp_created, stamp_updated, stamp_assignment, log_cash_call_action, status_change
from cash_call_errors import (
    CashCallError, ValidationError, Forbidden, NotFound, ConcurrentModification
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# INPUT MODELS
# ═══════════════════════════════════════════════════════════════════════════════

def _check_amount(v):
    if v is None:
        return v
    if not math.isfinite(v) or v <= 0:
        raise ValueError("amount_requested must be greater than zero")
    return v


def _check_currency(v):
    if v is None:
        return v
    code = v.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError("currency must be a 3-letter ISO code")
    return code


class CashCallInput(BaseModel):
    """
    Fields a caller may supply when raising a cash call.

    Audit fields and anything else unknown are dropped.
    """
    amount_requested: float
    affiliate_id: Optional[str] = None
    currency: str = Field(default_factory=lambda: settings.CASH_CALL_DEFAULT_CURRENCY)
    priority: CashCallPriority = CashCallPriority.MEDIUM
    status: CashCallStatus = CashCallStatus.DRAFT
    call_number: Optional[str] = None
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    due_date: Optional[datetime] = None

    class Config:
        extra = "ignore"

    @field_validator("amount_requested")
    def validate_amount(cls, v):
        return _check_amount(v)

    @field_validator("currency")
    def validate_currency(cls, v):
        return _check_currency(v)

    @field_validator("status")
    def validate_initial_status(cls, v):
        if v not in INITIAL_STATUSES:
            raise ValueError("cash calls start as draft or under_review")
        return v


class CashCallUpdate(BaseModel):
    """Editable fields of a draft cash call."""
    amount_requested: Optional[float] = None
    currency: Optional[str] = None
    priority: Optional[CashCallPriority] = None
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    due_date: Optional[datetime] = None

    class Config:
        extra = "forbid"

    @field_validator("amount_requested")
    def validate_amount(cls, v):
        return _check_amount(v)

    @field_validator("currency")
    def validate_currency(cls, v):
        return _check_currency(v)


def _validation_message(error: PydanticValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return "; ".join(parts)


def parse_input(model, data):
    """Validate a request body against `model`, reporting failures as ValidationError."""
    if isinstance(data, model):
        return data
    if data is None:
        raise ValidationError("Request body is required")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_validation_message(e))


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class PerIdResult:
    """Outcome for one id of a bulk operation."""
    cash_call_id: str
    ok: bool
    cash_call: Optional[models.CashCall] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, cash_call_id: str, cash_call: Optional[models.CashCall] = None) -> "PerIdResult":
        return cls(cash_call_id=cash_call_id, ok=True, cash_call=cash_call)

    @classmethod
    def failure(cls, cash_call_id: str, error: CashCallError) -> "PerIdResult":
        return cls(cash_call_id=cash_call_id, ok=False, error=error.kind, message=error.message)


def generate_call_number() -> str:
    timestamp = int(time.time() * 1000)
    suffix = random.randint(0, 999)
    return f"{settings.CASH_CALL_NUMBER_PREFIX}-{timestamp}-{suffix:03d}"


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class CashCallEngine:
    """Authorization-aware cash call lifecycle engine."""

    def __init__(
        self,
        db: Session,
        store: Optional[CashCallStore] = None,
        affiliates: Optional[AffiliateDirectory] = None,
        notifier: Optional[NotificationSink] = None,
        state_machine: Optional[CashCallStateMachine] = None
    ):
        self.db = db
        self.store = store or SqlCashCallStore(db)
        self.affiliates = affiliates or SqlAffiliateDirectory(db)
        self.notifier = notifier or LoggingNotificationSink()
        self.state_machine = state_machine or CashCallStateMachine()

    # ───────────────────────────────────────────────────────────────────────────
    # Reads
    # ───────────────────────────────────────────────────────────────────────────

    def list_visible(
        self,
        actor: Actor,
        status: Optional[List[str]] = None,
        priority: Optional[List[str]] = None,
        affiliate_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[models.CashCall]:
        """Cash calls the actor may see, newest first, with optional filters."""
        query = apply_visibility(actor, self.store.query())

        if status:
            query = query.filter(models.CashCall.status.in_([coerce_status(s).value for s in status]))
        if priority:
            try:
                priorities = [CashCallPriority(p).value for p in priority]
            except ValueError:
                raise ValidationError(f"Unknown priority in {priority}")
            query = query.filter(models.CashCall.priority.in_(priorities))
        if affiliate_id:
            query = query.filter(models.CashCall.affiliate_id == affiliate_id)

        query = query.order_by(models.CashCall.created_at.desc(), models.CashCall.call_number.desc())
        if limit:
            query = query.limit(limit)

        # The SQL filter and the in-memory predicate come from the same scope
        return visible(actor, query.all())

    def get_visible(self, actor: Actor, cash_call_id: str) -> models.CashCall:
        cash_call = self.store.get(cash_call_id)
        if cash_call is None or not is_visible(actor, cash_call):
            raise NotFound()
        return cash_call

    def search(self, actor: Actor, term: str, limit: int = 10) -> List[models.CashCall]:
        """Case-insensitive prefix search on call number or title."""
        term = (term or "").strip()
        if not term:
            return []

        query = apply_visibility(actor, self.store.query()).filter(
            or_(
                models.CashCall.call_number.istartswith(term, autoescape=True),
                models.CashCall.title.istartswith(term, autoescape=True),
            )
        ).order_by(models.CashCall.created_at.desc()).limit(limit)

        return visible(actor, query.all())

    def dashboard_stats(self, actor: Actor) -> Dict[str, Any]:
        cash_calls = self.list_visible(actor)

        by_status = {status.value: 0 for status in CashCallStatus}
        total_approved_amount = 0.0
        for cash_call in cash_calls:
            by_status[cash_call.status] = by_status.get(cash_call.status, 0) + 1
            if cash_call.status in (CashCallStatus.APPROVED.value, CashCallStatus.PAID.value):
                total_approved_amount += cash_call.amount_requested or 0.0

        return {
            "total_cash_calls": len(cash_calls),
            "by_status": by_status,
            "pending_approvals": by_status[CashCallStatus.UNDER_REVIEW.value],
            "total_approved_amount": round(total_approved_amount, 2),
        }

    # ───────────────────────────────────────────────────────────────────────────
    # Create / edit
    # ───────────────────────────────────────────────────────────────────────────

    def create(self, actor: Actor, draft: Union[CashCallInput, Dict[str, Any]]) -> models.CashCall:
        """
        Raise a new cash call.

        Affiliate actors always create for their own affiliate, whatever
        affiliate_id the input carries.

        Raises:
            Forbidden, ValidationError
        """
        own_only = not can(actor, "create") and can(actor, "create_own_only")
        if not (can(actor, "create") or own_only):
            logger.warning(f"Actor {getattr(actor, 'id', None)} denied create")
            raise Forbidden()

        data = parse_input(CashCallInput, draft)

        if own_only:
            if not actor.owned_affiliate_id:
                logger.warning(f"Affiliate actor {actor.id} has no owning affiliate; create refused")
                raise Forbidden()
            if data.affiliate_id and data.affiliate_id != actor.owned_affiliate_id:
                logger.warning(
                    f"Affiliate actor {actor.id} supplied affiliate_id {data.affiliate_id}; "
                    f"forcing {actor.owned_affiliate_id}"
                )
            affiliate_id = actor.owned_affiliate_id
        else:
            if not data.affiliate_id:
                raise ValidationError("affiliate_id is required")
            affiliate_id = data.affiliate_id

        affiliate = self.affiliates.get_affiliate(affiliate_id)
        if affiliate is None:
            raise ValidationError(f"Affiliate {affiliate_id} does not exist")
        if affiliate.status != AffiliateStatus.ACTIVE.value:
            raise ValidationError(f"Affiliate {affiliate_id} is {affiliate.status} and cannot raise cash calls")

        if data.status != CashCallStatus.DRAFT and not can(
            actor, transition_permission(CashCallStatus.DRAFT, data.status)
        ):
            raise Forbidden()

        call_number = (data.call_number or "").strip() or generate_call_number()
        if self.store.get_by_call_number(call_number) is not None:
            raise ValidationError(f"Call number {call_number} already exists")

        cash_call = models.CashCall(
            call_number=call_number,
            affiliate_id=affiliate_id,
            amount_requested=data.amount_requested,
            currency=data.currency,
            priority=data.priority.value,
            status=data.status.value,
            title=data.title,
            description=data.description,
            category=data.category,
            due_date=data.due_date,
        )
        stamp_created(cash_call, actor)

        # Flush first so the id exists before the audit row references it
        self.db.add(cash_call)
        try:
            self.db.flush()
        except IntegrityError:
            self.store.rollback()
            raise ValidationError(f"Call number {call_number} already exists")

        log_cash_call_action(
            self.db, actor, "cash_call_created", cash_call,
            changes={
                "status": {"old": None, "new": cash_call.status},
                "amount_requested": {"old": None, "new": cash_call.amount_requested},
                "affiliate_id": {"old": None, "new": affiliate_id},
            }
        )
        try:
            self.store.put(cash_call)
        except IntegrityError:
            raise ValidationError(f"Call number {call_number} already exists")

        logger.info(f"Cash call {cash_call.call_number} created by {actor.id} for affiliate {affiliate_id}")
        return cash_call

    def update_draft(self, actor: Actor, cash_call_id: str, changes: Union[CashCallUpdate, Dict[str, Any]]) -> models.CashCall:
        """Edit a cash call that is still in draft. Amounts are frozen once submitted."""
        data = parse_input(CashCallUpdate, changes)
        fields = data.model_dump(exclude_unset=True)
        cleared = [name for name in ("amount_requested", "currency", "priority") if name in fields and fields[name] is None]
        if cleared:
            raise ValidationError(f"{', '.join(cleared)} cannot be cleared")

        def mutate(cash_call: models.CashCall):
            own_only = not can(actor, "create") and can(actor, "create_own_only")
            if not (can(actor, "create") or own_only):
                raise Forbidden()
            if own_only and cash_call.affiliate_id != actor.owned_affiliate_id:
                raise Forbidden()
            if cash_call.status != CashCallStatus.DRAFT.value:
                raise ValidationError("cash call is no longer editable")

            diff = {}
            for name, value in fields.items():
                if isinstance(value, CashCallPriority):
                    value = value.value
                old = getattr(cash_call, name)
                if old != value:
                    diff[name] = {"old": _jsonable(old), "new": _jsonable(value)}
                    setattr(cash_call, name, value)
            stamp_updated(cash_call)
            return "cash_call_updated", diff, None

        cash_call = self._write(actor, cash_call_id, mutate)
        logger.info(f"Draft cash call {cash_call.call_number} updated by {actor.id}")
        return cash_call

    # ───────────────────────────────────────────────────────────────────────────
    # Transitions
    # ───────────────────────────────────────────────────────────────────────────

    def transition(self, actor: Actor, cash_call_id: str, target_status, reason: Optional[str] = None) -> models.CashCall:
        """
        Move a cash call to `target_status`.

        Raises:
            NotFound, Forbidden, InvalidTransition, ConcurrentModification
        """
        changed = {}

        def mutate(cash_call: models.CashCall):
            old_status, new_status = self.state_machine.apply_transition(actor, cash_call, target_status, reason)
            changed["old"], changed["new"] = old_status, new_status
            return "status_changed", status_change(old_status, new_status), reason

        cash_call = self._write(actor, cash_call_id, mutate)
        logger.info(
            f"Cash call {cash_call.call_number}: {changed['old']} -> {changed['new']} by {actor.id} ({actor.role})"
        )
        self._notify(actor, cash_call, changed["old"], changed["new"])
        return cash_call

    def bulk_transition(
        self,
        actor: Actor,
        cash_call_ids: List[str],
        target_status,
        reason: Optional[str] = None
    ) -> List[PerIdResult]:
        """
        Transition each id independently. Not atomic: some ids may succeed
        while others fail, and one failure never stops the rest.
        """
        self._check_bulk_size(cash_call_ids)
        allowed = can(actor, "bulk_transition")

        results = []
        for cash_call_id in cash_call_ids:
            if not allowed:
                results.append(self._denied_result(actor, cash_call_id))
                continue
            results.append(self._run_per_id(
                cash_call_id, lambda: self.transition(actor, cash_call_id, target_status, reason)
            ))

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            f"Bulk transition to {target_status} by {getattr(actor, 'id', None)}: "
            f"{succeeded}/{len(results)} succeeded"
        )
        return results

    def override(self, actor: Actor, cash_call_id: str, target_status, reason: str) -> models.CashCall:
        """Admin-only forward override, audited separately from normal transitions."""
        changed = {}

        def mutate(cash_call: models.CashCall):
            old_status, new_status, skipped = self.state_machine.apply_override(
                actor, cash_call, target_status, reason
            )
            changed["old"], changed["new"] = old_status, new_status
            changes = status_change(old_status, new_status)
            changes["skipped_states"] = skipped
            return "admin_override", changes, reason

        cash_call = self._write(actor, cash_call_id, mutate)
        logger.warning(
            f"ADMIN OVERRIDE on cash call {cash_call.call_number}: "
            f"{changed['old']} -> {changed['new']} by {actor.id}: {reason}"
        )
        self._notify(actor, cash_call, changed["old"], changed["new"])
        return cash_call

    # ───────────────────────────────────────────────────────────────────────────
    # Assignment
    # ───────────────────────────────────────────────────────────────────────────

    def assign(self, actor: Actor, cash_call_id: str, assignee_user_id: Optional[str]) -> models.CashCall:
        """
        Hand a cash call to a finance user. An empty assignee unassigns it.

        Raises:
            NotFound, Forbidden, ConcurrentModification
        """
        assignee = (assignee_user_id or "").strip() or None

        def mutate(cash_call: models.CashCall):
            if not can(actor, "manage_users"):
                logger.warning(f"Actor {actor.id} ({actor.role}) denied assignment of cash call {cash_call_id}")
                raise Forbidden()
            old = cash_call.assignee_user_id
            stamp_assignment(cash_call, actor, assignee)
            action = "cash_call_assigned" if assignee else "cash_call_unassigned"
            return action, {"assignee_user_id": {"old": old, "new": assignee}}, None

        cash_call = self._write(actor, cash_call_id, mutate)
        logger.info(f"Cash call {cash_call.call_number} assigned to {assignee or 'nobody'} by {actor.id}")
        return cash_call

    # ───────────────────────────────────────────────────────────────────────────
    # Deletes
    # ───────────────────────────────────────────────────────────────────────────

    def delete(self, actor: Actor, cash_call_id: str) -> None:
        """
        Permanently remove a cash call. No undo.

        Raises:
            NotFound, Forbidden
        """
        cash_call = self.store.get(cash_call_id, for_update=True)
        if cash_call is None or not is_visible(actor, cash_call):
            self.store.rollback()
            raise NotFound()
        if not can(actor, "delete"):
            self.store.rollback()
            logger.warning(f"Actor {actor.id} ({actor.role}) denied delete on cash call {cash_call_id}")
            raise Forbidden()

        log_cash_call_action(
            self.db, actor, "cash_call_deleted", cash_call,
            changes={
                "status": {"old": cash_call.status, "new": None},
                "amount_requested": {"old": cash_call.amount_requested, "new": None},
                "affiliate_id": {"old": cash_call.affiliate_id, "new": None},
            }
        )
        try:
            self.store.delete(cash_call)
        except StaleWriteError:
            raise ConcurrentModification(f"Cash call {cash_call_id} changed during delete; retry")

        logger.info(f"Cash call {cash_call.call_number} deleted by {actor.id}")

    def bulk_delete(self, actor: Actor, cash_call_ids: List[str]) -> List[PerIdResult]:
        self._check_bulk_size(cash_call_ids)
        return [
            self._run_per_id(cash_call_id, lambda: self.delete(actor, cash_call_id))
            for cash_call_id in cash_call_ids
        ]

    # ───────────────────────────────────────────────────────────────────────────
    # Internals
    # ───────────────────────────────────────────────────────────────────────────

    def _write(
        self,
        actor: Actor,
        cash_call_id: str,
        mutate: Callable[[models.CashCall], Tuple[str, Dict[str, Any], Optional[str]]]
    ) -> models.CashCall:
        """
        Read-check-write loop.

        Each attempt re-reads the row, runs visibility and `mutate` (which does
        its own checks) against that fresh copy, then writes. A version
        conflict triggers another attempt.
        """
        for attempt in range(1, settings.CASH_CALL_MAX_WRITE_ATTEMPTS + 1):
            cash_call = self.store.get(cash_call_id, for_update=True)
            if cash_call is None or not is_visible(actor, cash_call):
                self.store.rollback()
                raise NotFound()

            try:
                action, changes, notes = mutate(cash_call)
            except CashCallError:
                self.store.rollback()
                raise

            log_cash_call_action(self.db, actor, action, cash_call, changes=changes, notes=notes)
            try:
                return self.store.put(cash_call)
            except StaleWriteError:
                logger.warning(
                    f"Cash call {cash_call_id} changed during write (attempt {attempt}/"
                    f"{settings.CASH_CALL_MAX_WRITE_ATTEMPTS}); re-checking"
                )

        raise ConcurrentModification(f"Cash call {cash_call_id} kept changing; retry later")

    def _notify(self, actor: Actor, cash_call: models.CashCall, old_status: str, new_status: str):
        """Emit a status change event. Runs after the commit, so it never raises."""
        affiliate_name = None
        try:
            affiliate = self.affiliates.get_affiliate(cash_call.affiliate_id)
            affiliate_name = affiliate.name if affiliate else None
        except Exception as e:
            logger.error(f"Affiliate lookup for cash call {cash_call.id} notification failed: {e}")

        event = StatusChangeEvent(
            cash_call_id=cash_call.id,
            old_status=old_status,
            new_status=new_status,
            affiliate_name=affiliate_name,
            call_number=cash_call.call_number,
            actor_id=actor.id,
        )
        try:
            self.notifier.emit(event)
        except Exception as e:
            logger.error(f"Notification for cash call {cash_call.id} failed: {e}")

    def _check_bulk_size(self, cash_call_ids: List[str]):
        if cash_call_ids is None:
            raise ValidationError("ids are required")
        if len(cash_call_ids) > settings.CASH_CALL_BULK_LIMIT:
            raise ValidationError(
                f"Bulk requests are limited to {settings.CASH_CALL_BULK_LIMIT} ids (got {len(cash_call_ids)})"
            )

    def _denied_result(self, actor: Actor, cash_call_id: str) -> PerIdResult:
        """Bulk permission missing: invisible ids still read as not found."""
        cash_call = self.store.get(cash_call_id)
        if cash_call is None or not is_visible(actor, cash_call):
            return PerIdResult.failure(cash_call_id, NotFound())
        return PerIdResult.failure(cash_call_id, Forbidden())

    def _run_per_id(self, cash_call_id: str, operation: Callable) -> PerIdResult:
        try:
            return PerIdResult.success(cash_call_id, operation())
        except CashCallError as e:
            return PerIdResult.failure(cash_call_id, e)
        except SQLAlchemyError as e:
            self.store.rollback()
            logger.exception(f"Store error on cash call {cash_call_id}")
            return PerIdResult(cash_call_id=cash_call_id, ok=False, error="store_error", message=str(e))
        except Exception as e:
            self.store.rollback()
            logger.exception(f"Unexpected error on cash call {cash_call_id}")
            return PerIdResult(cash_call_id=cash_call_id, ok=False, error="internal_error", message=str(e))


def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value
