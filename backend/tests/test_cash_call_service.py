"""
Cash Call Engine Tests
Create, read, transition, assign, delete and draft edits through the engine facade.
"""

import pytest
from datetime import datetime
from sqlalchemy.exc import OperationalError

import models
import settings
from models import CashCallStatus
from cash_call_service import CashCallEngine, CashCallInput, generate_call_number
from cash_call_repository import SqlCashCallStore, SqlAffiliateDirectory, StaleWriteError
from cash_call_errors import (
    ValidationError, Forbidden, NotFound, InvalidTransition, ConcurrentModification
)


pytestmark = pytest.mark.unit


# ═══════════════════════════════════════════════════════════════════════════════
# CREATE
# ═══════════════════════════════════════════════════════════════════════════════

class TestCreate:

    def test_affiliate_affiliate_id_is_forced(self, engine, affiliate_user):
        """Scenario A: forged affiliate_id is replaced by the actor's own"""
        cash_call = engine.create(affiliate_user, {"affiliate_id": "aff-9", "amount_requested": 125000})

        assert cash_call.affiliate_id == "aff-1"
        assert cash_call.status == "draft"
        assert cash_call.created_by == affiliate_user.id

    def test_affiliate_may_omit_affiliate_id(self, engine, affiliate_user):
        cash_call = engine.create(affiliate_user, {"amount_requested": 10})
        assert cash_call.affiliate_id == "aff-1"

    def test_admin_requires_existing_affiliate(self, engine, admin):
        with pytest.raises(ValidationError):
            engine.create(admin, {"amount_requested": 10})
        with pytest.raises(ValidationError):
            engine.create(admin, {"affiliate_id": "aff-404", "amount_requested": 10})

        cash_call = engine.create(admin, {"affiliate_id": "aff-9", "amount_requested": 10})
        assert cash_call.affiliate_id == "aff-9"

    def test_inactive_affiliate_rejected(self, engine, admin):
        with pytest.raises(ValidationError):
            engine.create(admin, {"affiliate_id": "aff-dormant", "amount_requested": 10})

    @pytest.mark.parametrize("amount", [0, -5, float("nan"), float("inf"), None, "lots"])
    def test_amount_must_be_positive(self, engine, admin, amount):
        with pytest.raises(ValidationError):
            engine.create(admin, {"affiliate_id": "aff-1", "amount_requested": amount})

    def test_missing_body(self, engine, admin):
        with pytest.raises(ValidationError):
            engine.create(admin, None)

    def test_client_audit_fields_ignored(self, engine, admin):
        cash_call = engine.create(admin, {
            "affiliate_id": "aff-1",
            "amount_requested": 500,
            "created_by": "mallory",
            "approved_by": "mallory",
            "approved_at": "2020-01-01T00:00:00",
        })
        assert cash_call.created_by == admin.id
        assert cash_call.approved_by is None
        assert cash_call.approved_at is None

    def test_viewer_and_approver_cannot_create(self, engine, viewer, approver):
        for actor in (viewer, approver):
            with pytest.raises(Forbidden):
                engine.create(actor, {"affiliate_id": "aff-1", "amount_requested": 10})

    def test_orphan_affiliate_cannot_create(self, engine, orphan_affiliate_user):
        with pytest.raises(Forbidden):
            engine.create(orphan_affiliate_user, {"amount_requested": 10})

    def test_create_directly_under_review(self, engine, affiliate_user, notifier):
        cash_call = engine.create(affiliate_user, CashCallInput(amount_requested=42.5, status="under_review"))
        assert cash_call.status == "under_review"
        assert notifier.events == []

    def test_initial_status_restricted(self, engine, admin):
        with pytest.raises(ValidationError):
            engine.create(admin, {"affiliate_id": "aff-1", "amount_requested": 10, "status": "approved"})

    def test_call_number_generated_and_unique(self, engine, admin):
        first = engine.create(admin, {"affiliate_id": "aff-1", "amount_requested": 10})
        assert first.call_number.startswith(f"{settings.CASH_CALL_NUMBER_PREFIX}-")

        engine.create(admin, {"affiliate_id": "aff-1", "amount_requested": 10, "call_number": "CC-FIXED-1"})
        with pytest.raises(ValidationError):
            engine.create(admin, {"affiliate_id": "aff-2", "amount_requested": 10, "call_number": "CC-FIXED-1"})

    def test_generated_call_number_format(self):
        prefix, millis, suffix = generate_call_number().split("-")
        assert prefix == settings.CASH_CALL_NUMBER_PREFIX
        assert millis.isdigit()
        assert len(suffix) == 3 and suffix.isdigit()

    def test_currency_normalized(self, engine, admin):
        cash_call = engine.create(admin, {"affiliate_id": "aff-1", "amount_requested": 10, "currency": "eur"})
        assert cash_call.currency == "EUR"
        with pytest.raises(ValidationError):
            engine.create(admin, {"affiliate_id": "aff-1", "amount_requested": 10, "currency": "EURO"})


# ═══════════════════════════════════════════════════════════════════════════════
# READ
# ═══════════════════════════════════════════════════════════════════════════════

class TestRead:

    def test_list_visible_respects_scope(self, engine, make_cash_call, affiliate_user, viewer, orphan_affiliate_user):
        own = make_cash_call(affiliate_id="aff-1")
        make_cash_call(affiliate_id="aff-2")

        assert [c.id for c in engine.list_visible(affiliate_user)] == [own.id]
        assert len(engine.list_visible(viewer)) == 2
        assert engine.list_visible(orphan_affiliate_user) == []

    def test_list_newest_first_with_filters(self, engine, make_cash_call, admin):
        older = make_cash_call(created_at=datetime(2024, 1, 1))
        newer = make_cash_call(created_at=datetime(2024, 2, 1), status=CashCallStatus.UNDER_REVIEW)
        make_cash_call(affiliate_id="aff-2", created_at=datetime(2024, 3, 1))

        assert [c.id for c in engine.list_visible(admin, affiliate_id="aff-1")] == [newer.id, older.id]
        assert [c.id for c in engine.list_visible(admin, status=["under_review"])] == [newer.id]
        assert len(engine.list_visible(admin, limit=2)) == 2
        with pytest.raises(ValidationError):
            engine.list_visible(admin, status=["archived"])

    def test_get_visible_hides_foreign_records(self, engine, make_cash_call, other_affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1")
        with pytest.raises(NotFound):
            engine.get_visible(other_affiliate_user, cash_call.id)
        with pytest.raises(NotFound):
            engine.get_visible(other_affiliate_user, "does-not-exist")

    def test_search_prefix_is_scoped(self, engine, make_cash_call, affiliate_user, admin):
        mine = make_cash_call(affiliate_id="aff-1", title="Drilling campaign Q3")
        make_cash_call(affiliate_id="aff-2", title="Drilling rig lease")

        assert len(engine.search(admin, "drill")) == 2
        assert [c.id for c in engine.search(affiliate_user, "DRILL")] == [mine.id]
        assert engine.search(admin, "campaign") == []
        assert engine.search(admin, "  ") == []

    def test_search_by_call_number_escapes_wildcards(self, engine, make_cash_call, admin):
        cash_call = make_cash_call()
        assert [c.id for c in engine.search(admin, cash_call.call_number[:7])] == [cash_call.id]
        assert engine.search(admin, "%") == []

    def test_dashboard_stats(self, engine, make_cash_call, admin, other_affiliate_user):
        make_cash_call(status=CashCallStatus.UNDER_REVIEW, amount=100)
        make_cash_call(status=CashCallStatus.APPROVED, amount=200)
        make_cash_call(status=CashCallStatus.PAID, amount=300, affiliate_id="aff-2")
        make_cash_call(status=CashCallStatus.REJECTED, amount=400, affiliate_id="aff-2")

        stats = engine.dashboard_stats(admin)
        assert stats["total_cash_calls"] == 4
        assert stats["pending_approvals"] == 1
        assert stats["total_approved_amount"] == 500
        assert stats["by_status"]["draft"] == 0

        scoped = engine.dashboard_stats(other_affiliate_user)
        assert scoped["total_cash_calls"] == 2
        assert scoped["total_approved_amount"] == 300


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSITION
# ═══════════════════════════════════════════════════════════════════════════════

class TestTransition:

    def test_approver_approves(self, engine, make_cash_call, approver, notifier):
        """Scenario C"""
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        result = engine.transition(approver, cash_call.id, "approved")

        assert result.status == "approved"
        assert result.approved_by == approver.id
        assert result.approved_at is not None
        assert result.version == 2

        event = notifier.events[-1]
        assert (event.cash_call_id, event.old_status, event.new_status) == (cash_call.id, "under_review", "approved")
        assert event.affiliate_name == "North Sea Operations"

    @pytest.mark.parametrize("status", [s for s in CashCallStatus])
    def test_viewer_always_forbidden(self, engine, make_cash_call, viewer, status):
        """Scenario D"""
        cash_call = make_cash_call(status=status)
        for target in CashCallStatus:
            with pytest.raises(Forbidden):
                engine.transition(viewer, cash_call.id, target.value)

    def test_invisible_is_not_found_never_forbidden(self, engine, make_cash_call, other_affiliate_user, orphan_affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1")
        for actor in (other_affiliate_user, orphan_affiliate_user):
            for target in CashCallStatus:
                with pytest.raises(NotFound):
                    engine.transition(actor, cash_call.id, target.value)

    def test_missing_id_is_not_found(self, engine, admin):
        with pytest.raises(NotFound):
            engine.transition(admin, "nope", "approved")

    def test_self_loop_is_invalid(self, engine, make_cash_call, admin):
        for status in CashCallStatus:
            cash_call = make_cash_call(status=status)
            with pytest.raises(InvalidTransition):
                engine.transition(admin, cash_call.id, status.value)

    def test_affiliate_submits_own_draft(self, engine, make_cash_call, affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1")
        assert engine.transition(affiliate_user, cash_call.id, "under_review").status == "under_review"

    def test_affiliate_cannot_approve_own(self, engine, make_cash_call, affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1", status=CashCallStatus.UNDER_REVIEW)
        with pytest.raises(Forbidden):
            engine.transition(affiliate_user, cash_call.id, "approved")

    def test_failed_transition_leaves_record_untouched(self, engine, make_cash_call, approver, db_session):
        cash_call = make_cash_call(status=CashCallStatus.DRAFT)
        version = cash_call.version

        with pytest.raises(Forbidden):
            engine.transition(approver, cash_call.id, "under_review")

        fresh = db_session.get(models.CashCall, cash_call.id)
        assert fresh.status == "draft"
        assert fresh.version == version

    def test_full_lifecycle(self, engine, affiliate_user, approver):
        cash_call = engine.create(affiliate_user, {"amount_requested": 900000, "title": "Well 7 completion"})
        engine.transition(affiliate_user, cash_call.id, "under_review")
        engine.transition(approver, cash_call.id, "approved")
        paid = engine.transition(approver, cash_call.id, "paid")

        assert paid.status == "paid"
        assert paid.approved_by == approver.id
        assert paid.paid_at >= paid.approved_at
        with pytest.raises(InvalidTransition):
            engine.transition(approver, cash_call.id, "rejected")

    def test_notification_failure_does_not_undo(self, db_session, affiliates, make_cash_call, approver):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("smtp down")

        engine = CashCallEngine(db_session, notifier=BrokenSink())
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        assert engine.transition(approver, cash_call.id, "rejected").status == "rejected"
        assert db_session.get(models.CashCall, cash_call.id).status == "rejected"

    def test_affiliate_lookup_failure_does_not_undo(self, db_session, affiliates, make_cash_call, approver, notifier):
        class UnreachableDirectory(SqlAffiliateDirectory):
            def get_affiliate(self, affiliate_id):
                raise OperationalError("SELECT affiliates", {}, Exception("database is locked"))

        engine = CashCallEngine(db_session, affiliates=UnreachableDirectory(db_session), notifier=notifier)
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        assert engine.transition(approver, cash_call.id, "approved").status == "approved"
        assert db_session.get(models.CashCall, cash_call.id).status == "approved"
        assert notifier.events[-1].affiliate_name is None


class TestOverride:

    def test_admin_override_forward(self, engine, make_cash_call, admin, notifier):
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        result = engine.override(admin, cash_call.id, "paid", "Emergency funding approved by board")

        assert result.status == "paid"
        assert result.approved_by == admin.id
        assert notifier.events[-1].new_status == "paid"

    def test_override_hidden_and_forbidden(self, engine, make_cash_call, approver, other_affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1")
        with pytest.raises(Forbidden):
            engine.override(approver, cash_call.id, "approved", "please")
        with pytest.raises(NotFound):
            engine.override(other_affiliate_user, cash_call.id, "approved", "please")


# ═══════════════════════════════════════════════════════════════════════════════
# DRAFT EDITS
# ═══════════════════════════════════════════════════════════════════════════════

class TestUpdateDraft:

    def test_edit_draft(self, engine, make_cash_call, affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1", amount=100)
        updated = engine.update_draft(affiliate_user, cash_call.id, {"amount_requested": 250, "priority": "urgent"})

        assert updated.amount_requested == 250
        assert updated.priority == "urgent"

    def test_amount_frozen_after_submit(self, engine, make_cash_call, admin):
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW, amount=100)
        with pytest.raises(ValidationError) as exc:
            engine.update_draft(admin, cash_call.id, {"amount_requested": 1})
        assert exc.value.message == "cash call is no longer editable"

    def test_edit_checks(self, engine, make_cash_call, approver, other_affiliate_user, admin):
        cash_call = make_cash_call(affiliate_id="aff-1")
        with pytest.raises(Forbidden):
            engine.update_draft(approver, cash_call.id, {"title": "x"})
        with pytest.raises(NotFound):
            engine.update_draft(other_affiliate_user, cash_call.id, {"title": "x"})
        with pytest.raises(ValidationError):
            engine.update_draft(admin, cash_call.id, {"status": "approved"})
        with pytest.raises(ValidationError):
            engine.update_draft(admin, cash_call.id, {"amount_requested": -1})


# ═══════════════════════════════════════════════════════════════════════════════
# ASSIGNMENT
# ═══════════════════════════════════════════════════════════════════════════════

class TestAssign:

    def test_admin_assigns_and_unassigns(self, engine, make_cash_call, admin, db_session):
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        assigned = engine.assign(admin, cash_call.id, " finance-7 ")
        assert (assigned.assignee_user_id, assigned.assigned_by) == ("finance-7", admin.id)
        assert assigned.assigned_at is not None
        assert assigned.status == "under_review"

        unassigned = engine.assign(admin, cash_call.id, "")
        assert (unassigned.assignee_user_id, unassigned.assigned_by, unassigned.assigned_at) == (None, None, None)

        logs = db_session.query(models.CashCallAuditLog).order_by(models.CashCallAuditLog.id).all()
        actions = [(log.action, log.changes["assignee_user_id"]) for log in logs]
        assert actions == [
            ("cash_call_assigned", {"old": None, "new": "finance-7"}),
            ("cash_call_unassigned", {"old": "finance-7", "new": None}),
        ]

    def test_assign_requires_manage_users(self, engine, make_cash_call, approver, affiliate_user, other_affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1")

        for actor in (approver, affiliate_user):
            with pytest.raises(Forbidden):
                engine.assign(actor, cash_call.id, "finance-7")
        with pytest.raises(NotFound):
            engine.assign(other_affiliate_user, cash_call.id, "finance-7")
        with pytest.raises(NotFound):
            engine.assign(approver, "gone", "finance-7")

    def test_assignment_does_not_notify(self, engine, make_cash_call, admin, notifier):
        cash_call = make_cash_call()
        engine.assign(admin, cash_call.id, "finance-7")
        assert notifier.events == []


# ═══════════════════════════════════════════════════════════════════════════════
# DELETE
# ═══════════════════════════════════════════════════════════════════════════════

class TestDelete:

    def test_admin_deletes(self, engine, make_cash_call, admin, db_session):
        cash_call = make_cash_call()
        engine.delete(admin, cash_call.id)
        assert db_session.get(models.CashCall, cash_call.id) is None

    def test_delete_requires_permission(self, engine, make_cash_call, approver, affiliate_user):
        cash_call = make_cash_call(affiliate_id="aff-1")
        for actor in (approver, affiliate_user):
            with pytest.raises(Forbidden):
                engine.delete(actor, cash_call.id)

    def test_delete_hidden_is_not_found(self, engine, make_cash_call, other_affiliate_user, admin):
        cash_call = make_cash_call(affiliate_id="aff-1")
        with pytest.raises(NotFound):
            engine.delete(other_affiliate_user, cash_call.id)
        with pytest.raises(NotFound):
            engine.delete(admin, "gone")


# ═══════════════════════════════════════════════════════════════════════════════
# CONCURRENCY
# ═══════════════════════════════════════════════════════════════════════════════

class FlakyStore(SqlCashCallStore):
    """Fails the first `failures` writes as if another writer got there first."""

    def __init__(self, db, failures):
        super().__init__(db)
        self.failures = failures
        self.reads = 0

    def get(self, cash_call_id, for_update=False):
        if for_update:
            self.reads += 1
        return super().get(cash_call_id, for_update)

    def put(self, cash_call):
        if self.failures:
            self.failures -= 1
            self.db.rollback()
            raise StaleWriteError("simulated conflict")
        return super().put(cash_call)


class LockTrackingStore(SqlCashCallStore):
    """Remembers which rows were read FOR UPDATE and not yet committed or rolled back."""

    def __init__(self, db):
        super().__init__(db)
        self.held = set()
        self.rollbacks = 0

    def get(self, cash_call_id, for_update=False):
        if for_update:
            self.held.add(cash_call_id)
        return super().get(cash_call_id, for_update)

    def put(self, cash_call):
        result = super().put(cash_call)
        self.held.clear()
        return result

    def delete(self, cash_call):
        super().delete(cash_call)
        self.held.clear()

    def rollback(self):
        self.rollbacks += 1
        self.held.clear()
        super().rollback()


class TestConcurrency:

    def test_conflict_retried_against_fresh_read(self, db_session, affiliates, make_cash_call, approver):
        store = FlakyStore(db_session, failures=1)
        engine = CashCallEngine(db_session, store=store)
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        assert engine.transition(approver, cash_call.id, "approved").status == "approved"
        assert store.reads == 2
        logs = db_session.query(models.CashCallAuditLog).filter_by(action="status_changed").all()
        assert len(logs) == 1

    def test_retries_exhausted(self, db_session, affiliates, make_cash_call, approver):
        store = FlakyStore(db_session, failures=settings.CASH_CALL_MAX_WRITE_ATTEMPTS)
        engine = CashCallEngine(db_session, store=store)
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        with pytest.raises(ConcurrentModification):
            engine.transition(approver, cash_call.id, "approved")
        assert db_session.get(models.CashCall, cash_call.id).status == "under_review"

    def test_stale_version_detected_by_store(self, db_session, make_cash_call):
        from sqlalchemy import update

        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)
        # A concurrent writer bumps the version behind the session's back
        db_session.execute(
            update(models.CashCall.__table__)
            .where(models.CashCall.__table__.c.id == cash_call.id)
            .values(version=cash_call.version + 1, status="rejected")
        )
        cash_call.status = "approved"

        with pytest.raises(StaleWriteError):
            SqlCashCallStore(db_session).put(cash_call)

    def test_state_changed_between_reads_is_rechecked(self, session_factory, affiliates, make_cash_call, approver, admin):
        cash_call = make_cash_call(status=CashCallStatus.UNDER_REVIEW)

        first = session_factory()
        second = session_factory()
        try:
            # The first session has already seen the record as under_review
            assert first.get(models.CashCall, cash_call.id).status == "under_review"

            CashCallEngine(second).transition(admin, cash_call.id, "rejected")

            with pytest.raises(InvalidTransition):
                CashCallEngine(first).transition(approver, cash_call.id, "approved")
        finally:
            first.close()
            second.close()

    def test_row_lock_released_when_write_refused(self, db_session, affiliates, make_cash_call,
                                                  other_affiliate_user, affiliate_user):
        store = LockTrackingStore(db_session)
        engine = CashCallEngine(db_session, store=store)
        cash_call = make_cash_call(affiliate_id="aff-1")

        with pytest.raises(NotFound):
            engine.transition(other_affiliate_user, cash_call.id, "under_review")
        assert store.held == set()

        with pytest.raises(NotFound):
            engine.delete(other_affiliate_user, cash_call.id)
        assert store.held == set()

        with pytest.raises(Forbidden):
            engine.delete(affiliate_user, cash_call.id)
        assert store.held == set()
        assert store.rollbacks == 3
