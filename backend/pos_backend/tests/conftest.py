"""
Root test configuration and fixtures.

Database fixtures use a file-backed SQLite database per test (or PostgreSQL
when DATABASE_URL is set) so that separate sessions, including the ones
opened by background reconciliation, see each other's commits.

Factory fixtures:
- make_tenant / make_user / make_outlet / make_product / make_addon
- grant_subscription: writes a base period + history entry the way a real grant does
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from pos_backend.config.plan_features import reset_plan_features_loader
from pos_backend.constants.permissions import UserRole
from pos_backend.constants.plans import SubscriptionPlan
from pos_backend.database.session import engine_options
from pos_backend.db_base import Base
from pos_backend.platform.clock import FixedClock

# Set test environment
os.environ.setdefault("ENV", "test")

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _get_test_database_url(tmp_path: Path) -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    return f"sqlite:///{tmp_path / 'entitlements.db'}"


@pytest.fixture
def db_engine(tmp_path):
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise a fresh SQLite file.
    """
    database_url = _get_test_database_url(tmp_path)

    if database_url.startswith("postgresql"):
        try:
            engine = create_engine(database_url, **engine_options(database_url))
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(f"PostgreSQL not available. Error: {e}")
    else:
        engine = create_engine(database_url, **engine_options(database_url))

    from pos_backend import models  # noqa: F401 - register all tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for one test. Tests commit for real; the database is per test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-01T00:00:00Z."""
    return FixedClock(T0)


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_plan_features_loader()
    yield
    reset_plan_features_loader()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_tenant(db_session):
    def _make(
        plan=SubscriptionPlan.BASIC,
        entitlement_end=None,
        entitlement_start=None,
        is_temporary_upgrade=False,
        prior_plan=None,
        is_active=True,
        name="Warung Test",
    ):
        from pos_backend.models.tenant import Tenant

        tenant = Tenant(
            name=name,
            current_plan=SubscriptionPlan(plan).value,
            entitlement_start=entitlement_start,
            entitlement_end=entitlement_end,
            is_temporary_upgrade=is_temporary_upgrade,
            prior_plan=SubscriptionPlan(prior_plan).value if prior_plan else None,
            is_active=is_active,
        )
        db_session.add(tenant)
        db_session.commit()
        return tenant
    return _make


@pytest.fixture
def make_user(db_session):
    counter = {"n": 0}

    def _make(tenant_id, role=UserRole.CASHIER, is_active=True, created_at=None):
        from pos_backend.models.user import User

        counter["n"] += 1
        user = User(
            tenant_id=tenant_id,
            email=f"user{counter['n']}@example.com",
            name=f"User {counter['n']}",
            role=UserRole(role).value,
            is_active=is_active,
            created_at=created_at or T0 + timedelta(minutes=counter["n"]),
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def make_outlet(db_session):
    counter = {"n": 0}

    def _make(tenant_id, is_active=True):
        from pos_backend.models.outlet import Outlet

        counter["n"] += 1
        outlet = Outlet(
            tenant_id=tenant_id,
            name=f"Outlet {counter['n']}",
            is_active=is_active,
            created_at=T0 + timedelta(minutes=counter["n"]),
        )
        db_session.add(outlet)
        db_session.commit()
        return outlet
    return _make


@pytest.fixture
def make_product(db_session):
    counter = {"n": 0}

    def _make(tenant_id, is_active=True):
        from pos_backend.models.outlet import Product

        counter["n"] += 1
        product = Product(
            tenant_id=tenant_id,
            name=f"Product {counter['n']}",
            is_active=is_active,
            created_at=T0 + timedelta(minutes=counter["n"]),
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture
def make_addon(db_session):
    def _make(tenant_id, addon_type, limit=None, end_date=None, status="active", subscribed_at=T0):
        from pos_backend.models.addon import AddonGrant

        grant = AddonGrant(
            tenant_id=tenant_id,
            addon_id=addon_type.lower(),
            addon_type=addon_type,
            addon_name=addon_type.title(),
            status=status,
            limit=limit,
            subscribed_at=subscribed_at,
            end_date=end_date,
        )
        db_session.add(grant)
        db_session.commit()
        return grant
    return _make


@pytest.fixture
def grant_subscription(db_session):
    """
    Record a base grant: ACTIVE period + non-temporary history entry, and
    point the tenant's entitlement at it.
    """
    def _grant(tenant, plan, start, end):
        from pos_backend.repositories.entitlement_ledger import EntitlementLedger

        ledger = EntitlementLedger(db_session)
        period = ledger.create_period(tenant.id, plan, start, end)
        ledger.create_history_entry(tenant.id, plan, start, end, subscription_period_id=period.id)
        tenant.current_plan = SubscriptionPlan(plan).value
        tenant.entitlement_start = start
        tenant.entitlement_end = end
        db_session.commit()
        return period
    return _grant


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def make_yaml_config(tmp_path):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("plan_features.yml", {"plans": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = tmp_path / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
