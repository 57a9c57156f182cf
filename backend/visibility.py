"""
Cash Call Visibility

Which cash calls an actor may observe. `visibility_scope` is the only place the
rule is decided; single reads, list reads, SQL list queries and every mutation
guard go through the scope it returns.

- read_all (admin, approver, viewer): every record
- read_own (affiliate): records whose affiliate_id equals the actor's owning
  affiliate; no owning affiliate means no records (fail closed)
- anything else: no records

The affiliate directory is scoped by the same rule: an affiliate actor sees only
its own affiliate.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional
import logging

from sqlalchemy import false
from sqlalchemy.orm import Query

import models
from rbac_service import Actor, can

logger = logging.getLogger(__name__)


class ScopeKind(str, Enum):
    ALL = "all"
    NONE = "none"
    AFFILIATE = "affiliate"


@dataclass(frozen=True)
class VisibilityScope:
    kind: ScopeKind
    affiliate_id: Optional[str] = None

    def admits(self, cash_call: models.CashCall) -> bool:
        """Check a single record against the scope."""
        if cash_call is None:
            return False
        if self.kind == ScopeKind.ALL:
            return True
        if self.kind == ScopeKind.AFFILIATE:
            return cash_call.affiliate_id == self.affiliate_id
        return False

    def filter_query(self, query: Query) -> Query:
        """Same rule as `admits`, expressed as a SQL filter on cash_calls."""
        if self.kind == ScopeKind.ALL:
            return query
        if self.kind == ScopeKind.AFFILIATE:
            return query.filter(models.CashCall.affiliate_id == self.affiliate_id)
        return query.filter(false())

    def admits_affiliate(self, affiliate_id: Optional[str]) -> bool:
        if not affiliate_id:
            return False
        if self.kind == ScopeKind.ALL:
            return True
        if self.kind == ScopeKind.AFFILIATE:
            return affiliate_id == self.affiliate_id
        return False

    def filter_affiliates(self, query: Query) -> Query:
        """Same rule applied to the affiliate directory."""
        if self.kind == ScopeKind.ALL:
            return query
        if self.kind == ScopeKind.AFFILIATE:
            return query.filter(models.Affiliate.id == self.affiliate_id)
        return query.filter(false())


ALL = VisibilityScope(ScopeKind.ALL)
NONE = VisibilityScope(ScopeKind.NONE)


def visibility_scope(actor: Optional[Actor]) -> VisibilityScope:
    """Decide what the actor may see."""
    if can(actor, "read_all"):
        return ALL

    if can(actor, "read_own"):
        affiliate_id = getattr(actor, "owned_affiliate_id", None)
        if not affiliate_id:
            logger.warning(f"Actor {getattr(actor, 'id', None)} has read_own but no owning affiliate; nothing visible")
            return NONE
        return VisibilityScope(ScopeKind.AFFILIATE, affiliate_id)

    return NONE


def is_visible(actor: Optional[Actor], cash_call: models.CashCall) -> bool:
    return visibility_scope(actor).admits(cash_call)


def visible(actor: Optional[Actor], cash_calls: Iterable[models.CashCall]) -> List[models.CashCall]:
    """Return the subset of `cash_calls` the actor may observe, preserving order."""
    scope = visibility_scope(actor)
    return [cash_call for cash_call in cash_calls if scope.admits(cash_call)]


def apply_visibility(actor: Optional[Actor], query: Query) -> Query:
    return visibility_scope(actor).filter_query(query)


def is_affiliate_visible(actor: Optional[Actor], affiliate_id: Optional[str]) -> bool:
    return visibility_scope(actor).admits_affiliate(affiliate_id)


def apply_affiliate_visibility(actor: Optional[Actor], query: Query) -> Query:
    return visibility_scope(actor).filter_affiliates(query)
