"""Pytest configuration for back-office tests

Provides an in-memory SQLite database per test, a pinned clock, a recording
audit sink and pre-configured integrations for the three providers.
"""

import os
from datetime import datetime
from typing import Generator, List, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment before the settings object is built
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite:///:memory:")
os.environ.setdefault("WEBHOOK_VERIFY_SIGNATURES", "true")
os.environ.setdefault("LABEL_STORAGE_PATH", "./.pytest-labels")

from backoffice.core.audit import AuditSink  # noqa: E402
from backoffice.core.clock import FixedClock  # noqa: E402
from backoffice.core.database import Base  # noqa: E402
from backoffice import models  # noqa: E402,F401
from backoffice.models import Currency, Integration, Provider  # noqa: E402
from backoffice.services import integration_service  # noqa: E402
from backoffice.services.order_reconciler import OrderReconciler  # noqa: E402
from backoffice.services.return_reconciler import ReturnReconciler  # noqa: E402
from backoffice.services.shipping_cost_service import ShippingCostService  # noqa: E402

NOW = datetime(2025, 3, 10, 12, 0, 0)


class RecordingAuditSink(AuditSink):
    """Keeps every entry in memory for assertions"""

    def __init__(self):
        self.entries: List[Tuple] = []

    def record(self, subject_type, subject_id, action, properties=None, actor=None):
        self.entries.append((subject_type, subject_id, action, properties or {}, actor))

    def actions(self) -> List[str]:
        return [entry[2] for entry in self.entries]

    def find(self, action: str):
        return [entry for entry in self.entries if entry[2] == action]


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def engine():
    """In-memory database shared across threads"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def shipping(db):
    return ShippingCostService(db)


@pytest.fixture
def try_currency(db):
    currency = Currency(code="TRY", name="Turkish Lira", symbol="₺", decimal_places=2, is_default=True)
    db.add(currency)
    db.commit()
    return currency


# ============================================================================
# Integration Fixtures
# ============================================================================

def _integration(db, provider: Provider, name: str, settings: dict) -> Integration:
    return integration_service.create_integration(db, provider.value, name, settings)


@pytest.fixture
def shopify_integration(db):
    return _integration(db, Provider.SHOPIFY, "Main store", {
        "shop_domain": "demo-store.myshopify.com",
        "access_token": "shpat_test",
        "webhook_secret": "shopify-secret",
    })


@pytest.fixture
def trendyol_integration(db):
    return _integration(db, Provider.TRENDYOL, "Trendyol", {
        "supplier_id": "107001",
        "api_key": "ty-key",
        "api_secret": "ty-secret",
    })


@pytest.fixture
def basit_kargo_integration(db):
    return _integration(db, Provider.BASIT_KARGO, "Basit Kargo", {
        "api_token": "bk-token",
        "vat_included": True,
    })


# ============================================================================
# Reconciler Fixtures
# ============================================================================

@pytest.fixture
def orders(db, clock, audit, shipping):
    return OrderReconciler(db, clock, audit, shipping)


@pytest.fixture
def returns(db, clock, audit, shipping):
    return ReturnReconciler(db, clock, audit, shipping)
