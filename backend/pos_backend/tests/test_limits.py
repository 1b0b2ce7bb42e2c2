"""
Tests for resource limits: LimitChecker and PlanFeaturesService.

Tests cover:
- Effective limit = plan base + active resource addons
- Expired and inactive addons ignored
- Unlimited plans
- Only active rows counted
- Limit enforcement after a plan change (retention order, admins kept)
"""

from datetime import datetime, timedelta, timezone

import pytest

from pos_backend.constants.permissions import UserRole
from pos_backend.entitlements.errors import TenantNotFoundError
from pos_backend.entitlements.limits import LimitChecker
from pos_backend.models.outlet import Outlet, Product
from pos_backend.services.plan_features_service import PlanFeaturesService


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def checker(db_session, clock):
    return LimitChecker(db_session, clock)


@pytest.fixture
def plan_features(db_session, clock):
    return PlanFeaturesService(db_session, clock)


# =============================================================================
# LimitChecker
# =============================================================================


class TestLimitChecker:
    """Capacity checks."""

    def test_under_plan_limit(self, checker, make_tenant, make_user):
        tenant = make_tenant(plan="BASIC")
        make_user(tenant.id)

        result = checker.check_limit(tenant.id, "users")

        assert result.allowed is True
        assert result.current == 1
        assert result.limit == 4
        assert result.remaining == 3

    def test_at_plan_limit(self, checker, make_tenant, make_outlet):
        tenant = make_tenant(plan="BASIC")
        make_outlet(tenant.id)

        result = checker.check_limit(tenant.id, "outlets")

        assert result.allowed is False
        assert result.current == result.limit == 1

    def test_addon_adds_capacity(self, checker, make_tenant, make_outlet, make_addon):
        tenant = make_tenant(plan="BASIC")
        make_outlet(tenant.id)
        make_addon(tenant.id, "ADD_OUTLETS", limit=1, end_date=T0 + timedelta(days=30))

        result = checker.check_limit(tenant.id, "outlets")

        assert result.allowed is True
        assert result.limit == 2
        assert result.plan_limit == 1
        assert result.addon_limit == 1

    def test_repeated_addons_stack(self, checker, make_tenant, make_addon):
        tenant = make_tenant(plan="PRO")
        make_addon(tenant.id, "ADD_USERS", limit=5)
        make_addon(tenant.id, "ADD_USERS", limit=5)

        assert checker.check_limit(tenant.id, "users").limit == 20

    def test_expired_and_inactive_addons_ignored(self, checker, make_tenant, make_addon):
        tenant = make_tenant(plan="BASIC")
        make_addon(tenant.id, "ADD_PRODUCTS", limit=100, end_date=T0 - timedelta(days=1))
        make_addon(tenant.id, "ADD_PRODUCTS", limit=100, end_date=T0)
        make_addon(tenant.id, "ADD_PRODUCTS", limit=100, status="inactive")

        result = checker.check_limit(tenant.id, "products")

        assert result.limit == 25
        assert result.addon_limit == 0

    def test_addon_for_other_resource_ignored(self, checker, make_tenant, make_addon):
        tenant = make_tenant(plan="BASIC")
        make_addon(tenant.id, "ADD_USERS", limit=5)

        assert checker.check_limit(tenant.id, "outlets").limit == 1

    def test_unlimited_plan(self, checker, make_tenant, make_product):
        tenant = make_tenant(plan="ENTERPRISE")
        for _ in range(30):
            make_product(tenant.id)

        result = checker.check_limit(tenant.id, "products")

        assert result.allowed is True
        assert result.limit is None
        assert result.current == 30

    def test_inactive_rows_not_counted(self, checker, make_tenant, make_outlet):
        tenant = make_tenant(plan="BASIC")
        make_outlet(tenant.id, is_active=False)

        assert checker.check_limit(tenant.id, "outlets").allowed is True

    def test_unknown_tenant(self, checker):
        with pytest.raises(TenantNotFoundError):
            checker.check_limit("no-such-tenant", "users")

    def test_unknown_resource_type(self, checker, make_tenant):
        tenant = make_tenant()
        with pytest.raises(ValueError):
            checker.check_limit(tenant.id, "tables")


# =============================================================================
# PlanFeaturesService
# =============================================================================


class TestEffectiveLimits:
    def test_all_resources(self, plan_features, make_tenant, make_addon):
        tenant = make_tenant(plan="PRO")
        make_addon(tenant.id, "ADD_OUTLETS", limit=1)

        limits = plan_features.get_effective_limits(tenant.id, "PRO")

        assert {k: v.total for k, v in limits.items()} == {"outlets": 3, "users": 10, "products": 100}

    def test_unlimited_plan_ignores_addons(self, plan_features, make_tenant, make_addon):
        tenant = make_tenant(plan="ENTERPRISE")
        make_addon(tenant.id, "ADD_USERS", limit=5)

        limit = plan_features.get_effective_limit(tenant.id, "ENTERPRISE", "users")

        assert limit.total is None
        assert limit.addon_limit == 5


class TestApplyPlanFeatures:
    """Enforcing a plan's limits on existing rows."""

    def test_user_retention_order(self, db_session, plan_features, make_tenant, make_user):
        tenant = make_tenant(plan="BASIC")
        admin = make_user(tenant.id, role=UserRole.ADMIN_TENANT)
        supervisor = make_user(tenant.id, role=UserRole.SUPERVISOR)
        kitchen = make_user(tenant.id, role=UserRole.KITCHEN)
        cashiers = [make_user(tenant.id, role=UserRole.CASHIER) for _ in range(3)]

        result = plan_features.apply_plan_features(tenant.id, "BASIC")
        db_session.commit()

        # 4 slots: admin + three cashiers
        assert admin.is_active is True
        assert all(c.is_active for c in cashiers)
        assert kitchen.is_active is False
        assert supervisor.is_active is False
        assert set(result.users_disabled) == {kitchen.id, supervisor.id}

    def test_kitchen_kept_before_supervisor(self, db_session, plan_features, make_tenant, make_user):
        tenant = make_tenant(plan="BASIC")
        make_user(tenant.id, role=UserRole.ADMIN_TENANT)
        make_user(tenant.id, role=UserRole.CASHIER)
        supervisor = make_user(tenant.id, role=UserRole.SUPERVISOR)
        kitchen = make_user(tenant.id, role=UserRole.KITCHEN)
        extra_kitchen = make_user(tenant.id, role=UserRole.KITCHEN)

        plan_features.apply_plan_features(tenant.id, "BASIC")
        db_session.commit()

        assert kitchen.is_active is True
        assert extra_kitchen.is_active is True
        assert supervisor.is_active is False

    def test_admins_never_disabled(self, db_session, plan_features, make_tenant, make_user):
        tenant = make_tenant(plan="BASIC")
        admins = [make_user(tenant.id, role=UserRole.ADMIN_TENANT) for _ in range(5)]
        cashier = make_user(tenant.id, role=UserRole.CASHIER)

        plan_features.apply_plan_features(tenant.id, "BASIC")
        db_session.commit()

        assert all(a.is_active for a in admins)
        assert cashier.is_active is False

    def test_outlets_and_products_keep_oldest(self, db_session, plan_features, make_tenant, make_outlet, make_product):
        tenant = make_tenant(plan="BASIC")
        outlets = [make_outlet(tenant.id) for _ in range(2)]
        for _ in range(27):
            make_product(tenant.id)

        result = plan_features.apply_plan_features(tenant.id, "BASIC")
        db_session.commit()

        assert outlets[0].is_active is True
        assert outlets[1].is_active is False
        assert result.outlets_disabled == [outlets[1].id]
        active_products = db_session.query(Product).filter(
            Product.tenant_id == tenant.id, Product.is_active.is_(True)
        ).count()
        assert active_products == 25
        assert len(result.products_disabled) == 2

    def test_addons_count_toward_enforced_limit(self, db_session, plan_features, make_tenant, make_outlet, make_addon):
        tenant = make_tenant(plan="BASIC")
        make_addon(tenant.id, "ADD_OUTLETS", limit=1)
        make_outlet(tenant.id)
        make_outlet(tenant.id)

        result = plan_features.apply_plan_features(tenant.id, "BASIC")
        db_session.commit()

        assert result.outlets_disabled == []
        assert db_session.query(Outlet).filter(Outlet.is_active.is_(True)).count() == 2

    def test_within_limits_changes_nothing(self, plan_features, make_tenant, make_user):
        tenant = make_tenant(plan="PRO")
        make_user(tenant.id)

        result = plan_features.apply_plan_features(tenant.id, "PRO")

        assert result.to_dict() == {
            "tenant_id": tenant.id,
            "plan": "PRO",
            "users_disabled": 0,
            "outlets_disabled": 0,
            "products_disabled": 0,
        }
