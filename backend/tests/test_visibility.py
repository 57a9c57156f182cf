"""
Visibility Filter Tests
The same scope must drive single reads, in-memory filtering and SQL list queries.
"""

import pytest

import models
from models import CashCallStatus
from rbac_service import Actor
from visibility import (
    visibility_scope, is_visible, visible, apply_visibility, is_affiliate_visible, apply_affiliate_visibility,
    ScopeKind, ALL, NONE
)


pytestmark = pytest.mark.unit


class TestVisibilityScope:

    def test_read_all_roles_see_everything(self, admin, approver, viewer):
        for actor in (admin, approver, viewer):
            assert visibility_scope(actor) == ALL

    def test_affiliate_scoped_to_owner(self, affiliate_user):
        scope = visibility_scope(affiliate_user)
        assert scope.kind == ScopeKind.AFFILIATE
        assert scope.affiliate_id == "aff-1"

    def test_affiliate_without_owner_fails_closed(self, orphan_affiliate_user):
        assert visibility_scope(orphan_affiliate_user) == NONE

    def test_unknown_or_missing_actor_sees_nothing(self):
        assert visibility_scope(None) == NONE
        assert visibility_scope(Actor(id="x", role="intruder")) == NONE


class TestVisibleRecords:

    @pytest.fixture
    def book(self, make_cash_call):
        return [
            make_cash_call(affiliate_id="aff-1"),
            make_cash_call(affiliate_id="aff-2"),
            make_cash_call(affiliate_id="aff-1", status=CashCallStatus.APPROVED),
            make_cash_call(affiliate_id="aff-9"),
        ]

    def test_identity_for_read_all(self, book, viewer):
        assert visible(viewer, book) == book

    def test_affiliate_sees_only_own_in_order(self, book, affiliate_user):
        assert visible(affiliate_user, book) == [book[0], book[2]]

    def test_orphan_affiliate_sees_nothing(self, book, orphan_affiliate_user):
        assert visible(orphan_affiliate_user, book) == []

    def test_is_visible_single_record(self, book, affiliate_user, other_affiliate_user):
        assert is_visible(affiliate_user, book[0])
        assert not is_visible(other_affiliate_user, book[0])
        assert not is_visible(affiliate_user, None)

    @pytest.mark.parametrize("actor_name", [
        "admin", "approver", "viewer", "affiliate_user", "other_affiliate_user", "orphan_affiliate_user"
    ])
    def test_sql_filter_matches_in_memory_filter(self, request, book, db_session, actor_name):
        actor = request.getfixturevalue(actor_name)
        query = apply_visibility(actor, db_session.query(models.CashCall))
        from_sql = {c.id for c in query.all()}
        in_memory = {c.id for c in visible(actor, book)}
        assert from_sql == in_memory


class TestAffiliateDirectoryScope:

    @pytest.mark.parametrize("actor_name", [
        "admin", "viewer", "affiliate_user", "orphan_affiliate_user"
    ])
    def test_sql_filter_matches_single_check(self, request, affiliates, db_session, actor_name):
        actor = request.getfixturevalue(actor_name)
        from_sql = {a.id for a in apply_affiliate_visibility(actor, db_session.query(models.Affiliate)).all()}
        single = {affiliate_id for affiliate_id in affiliates if is_affiliate_visible(actor, affiliate_id)}
        assert from_sql == single

    def test_affiliate_sees_only_own_affiliate(self, affiliate_user):
        assert is_affiliate_visible(affiliate_user, "aff-1")
        assert not is_affiliate_visible(affiliate_user, "aff-2")
        assert not is_affiliate_visible(affiliate_user, None)
