"""
Cash Call State Machine

State transitions: DRAFT -> UNDER_REVIEW -> APPROVED -> PAID
                   UNDER_REVIEW -> REJECTED

REJECTED and PAID are terminal. No transition skips a state and self-loops are
never legal. Admins get a separate override path (forward only, reason
required) that is audited as an override rather than a normal transition.

Check order for a normal transition:
1. record not visible to the actor         -> NotFound
2. actor holds no transition rights at all -> Forbidden
3. target is not a legal successor         -> InvalidTransition
4. actor lacks transition:<from>-><to>     -> Forbidden
5. affiliate actor does not own the record -> Forbidden
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple
import logging

import models
from models import CashCallStatus
from rbac_service import Actor, can, can_transition_at_all
from visibility import is_visible
from audit_service import stamp_transition, utcnow
from cash_call_errors import Forbidden, InvalidTransition, NotFound, ValidationError

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[CashCallStatus, Tuple[CashCallStatus, ...]] = {
    CashCallStatus.DRAFT: (CashCallStatus.UNDER_REVIEW,),
    CashCallStatus.UNDER_REVIEW: (CashCallStatus.APPROVED, CashCallStatus.REJECTED),
    CashCallStatus.APPROVED: (CashCallStatus.PAID,),
    CashCallStatus.REJECTED: (),
    CashCallStatus.PAID: (),
}

INITIAL_STATUSES = (CashCallStatus.DRAFT, CashCallStatus.UNDER_REVIEW)


def parse_status(value) -> Optional[CashCallStatus]:
    """Return the CashCallStatus for `value`, or None if it names no status."""
    if isinstance(value, CashCallStatus):
        return value
    try:
        return CashCallStatus(str(value).strip().lower())
    except ValueError:
        return None


def coerce_status(value) -> CashCallStatus:
    status = parse_status(value)
    if status is None:
        raise ValidationError(f"Unknown cash call status: {value}")
    return status


def legal_successors(status) -> Tuple[CashCallStatus, ...]:
    parsed = parse_status(status)
    if parsed is None:
        return ()
    return TRANSITIONS[parsed]


def is_terminal(status) -> bool:
    return not legal_successors(status)


def is_legal_transition(from_status, to_status) -> bool:
    target = parse_status(to_status)
    return target is not None and target in legal_successors(from_status)


def transition_permission(from_status, to_status) -> str:
    return f"transition:{_value(from_status)}->{_value(to_status)}"


def path_between(from_status, to_status) -> List[CashCallStatus]:
    """
    States entered when walking forward from `from_status` to `to_status`,
    excluding the start. Empty if `to_status` is not forward-reachable.
    """
    start = parse_status(from_status)
    goal = parse_status(to_status)
    if start is None or goal is None or start == goal:
        return []

    # The graph is a tree, so the first path found is the only one
    stack = [(start, [])]
    while stack:
        status, path = stack.pop()
        for successor in TRANSITIONS[status]:
            step = path + [successor]
            if successor == goal:
                return step
            stack.append((successor, step))
    return []


def _value(status) -> str:
    return status.value if isinstance(status, CashCallStatus) else str(status)


class CashCallStateMachine:
    """Validates and applies cash call status transitions."""

    def __init__(self, clock=utcnow):
        self.clock = clock

    def check_transition(self, actor: Actor, cash_call: models.CashCall, target_status) -> CashCallStatus:
        """
        Run every check for moving `cash_call` to `target_status`.

        Returns:
            The parsed target status

        Raises:
            NotFound, Forbidden, InvalidTransition
        """
        if not is_visible(actor, cash_call):
            raise NotFound()

        if not can_transition_at_all(actor):
            logger.warning(f"Actor {actor.id} ({actor.role}) holds no transition rights; cash call {cash_call.id}")
            raise Forbidden()

        current = cash_call.status
        target = parse_status(target_status)
        if target is None or not is_legal_transition(current, target):
            raise InvalidTransition(_value(current), _value(target_status))

        if not can(actor, transition_permission(current, target)):
            logger.warning(
                f"Actor {actor.id} ({actor.role}) denied {transition_permission(current, target)} "
                f"on cash call {cash_call.id}"
            )
            raise Forbidden()

        # Ownership re-checked even though visibility already covers it
        if actor.role == "affiliate" and cash_call.affiliate_id != actor.owned_affiliate_id:
            logger.warning(f"Affiliate actor {actor.id} attempted transition on foreign cash call {cash_call.id}")
            raise Forbidden()

        return target

    def apply_transition(
        self,
        actor: Actor,
        cash_call: models.CashCall,
        target_status,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[str, str]:
        """
        Check and apply a transition in place.

        Returns:
            (old_status, new_status)
        """
        target = self.check_transition(actor, cash_call, target_status)

        old_status = cash_call.status
        cash_call.status = target.value
        if target == CashCallStatus.REJECTED and reason:
            cash_call.rejection_reason = reason.strip()[:500]

        stamp_transition(cash_call, actor, target.value, now or self.clock())
        return old_status, target.value

    def apply_override(
        self,
        actor: Actor,
        cash_call: models.CashCall,
        target_status,
        reason: Optional[str],
        now: Optional[datetime] = None
    ) -> Tuple[str, str, List[str]]:
        """
        Admin override: move forward along the lifecycle, skipping states if needed.

        Every state passed through is stamped, so overriding past approved
        still records who approved and when.

        Returns:
            (old_status, new_status, skipped_states)
        """
        if not is_visible(actor, cash_call):
            raise NotFound()

        if not can(actor, "override"):
            logger.warning(f"Actor {actor.id} ({actor.role}) attempted override on cash call {cash_call.id}")
            raise Forbidden()

        if not reason or not reason.strip():
            raise ValidationError("Override requires a reason")

        path = path_between(cash_call.status, target_status)
        if not path:
            raise InvalidTransition(_value(cash_call.status), _value(target_status))

        now = now or self.clock()
        old_status = cash_call.status
        for status in path:
            stamp_transition(cash_call, actor, status.value, now)
        cash_call.status = path[-1].value
        if path[-1] == CashCallStatus.REJECTED:
            cash_call.rejection_reason = reason.strip()[:500]

        skipped = [status.value for status in path[:-1]]
        return old_status, cash_call.status, skipped

