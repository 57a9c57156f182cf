"""
Pytest configuration and fixtures for the cash call engine test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - integration: Tests that go through the HTTP API
"""

import pytest
import sys
import os
import itertools
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import models
from models import CashCallStatus, AffiliateStatus
from rbac_service import Actor
from cash_call_service import CashCallEngine
from notification_service import InMemoryNotificationSink


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "integration: Tests that go through the HTTP API")


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database per test, shared across sessions via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    models.Base.metadata.create_all(engine)
    yield engine
    models.Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a fresh database session for each test"""
    session = session_factory()
    yield session
    session.close()


# ═══════════════════════════════════════════════════════════════════════════════
# AFFILIATES & ACTORS
# ═══════════════════════════════════════════════════════════════════════════════

AFFILIATES = [
    ("aff-1", "North Sea Operations", "NSO", AffiliateStatus.ACTIVE),
    ("aff-2", "Gulf Refining", "GRF", AffiliateStatus.ACTIVE),
    ("aff-9", "Andes Mining", "ADM", AffiliateStatus.ACTIVE),
    ("aff-dormant", "Dormant Holdings", "DRM", AffiliateStatus.INACTIVE),
]


@pytest.fixture
def affiliates(db_session):
    """Seed the affiliate directory"""
    rows = {}
    for affiliate_id, name, code, status in AFFILIATES:
        affiliate = models.Affiliate(
            id=affiliate_id,
            name=name,
            company_code=code,
            status=status.value,
            country="NO",
        )
        db_session.add(affiliate)
        rows[affiliate_id] = affiliate
    db_session.commit()
    return rows


@pytest.fixture
def admin():
    return Actor(id="admin-1", role="admin")


@pytest.fixture
def approver():
    return Actor(id="approver-1", role="approver")


@pytest.fixture
def affiliate_user():
    return Actor(id="aff-user-1", role="affiliate", owned_affiliate_id="aff-1")


@pytest.fixture
def other_affiliate_user():
    return Actor(id="aff-user-2", role="affiliate", owned_affiliate_id="aff-2")


@pytest.fixture
def orphan_affiliate_user():
    """Affiliate actor with no owning affiliate (integrity fault)"""
    return Actor(id="aff-user-x", role="affiliate", owned_affiliate_id=None)


@pytest.fixture
def viewer():
    return Actor(id="viewer-1", role="viewer")


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def notifier():
    return InMemoryNotificationSink()


@pytest.fixture
def engine(db_session, affiliates, notifier):
    return CashCallEngine(db_session, notifier=notifier)


_call_numbers = itertools.count(1)


@pytest.fixture
def make_cash_call(db_session, affiliates):
    """
    Insert a cash call directly in a given status, bypassing the engine.

    Approved and paid records get approval stamps so the stored state is one
    the lifecycle could actually have produced.
    """
    def _make(status=CashCallStatus.DRAFT, affiliate_id="aff-1", amount=50000.0, title=None, created_at=None):
        status = CashCallStatus(status)
        now = created_at or datetime(2024, 3, 1, 9, 0, 0)
        cash_call = models.CashCall(
            call_number=f"CC-TEST-{next(_call_numbers):05d}",
            affiliate_id=affiliate_id,
            amount_requested=amount,
            currency="USD",
            priority="medium",
            status=status.value,
            title=title,
            created_by="seed",
            created_at=now,
            updated_at=now,
        )
        if status in (CashCallStatus.APPROVED, CashCallStatus.PAID):
            cash_call.approved_by = "approver-0"
            cash_call.approved_at = now + timedelta(days=1)
        if status == CashCallStatus.PAID:
            cash_call.paid_at = now + timedelta(days=2)
        db_session.add(cash_call)
        db_session.commit()
        db_session.refresh(cash_call)
        return cash_call

    return _make
