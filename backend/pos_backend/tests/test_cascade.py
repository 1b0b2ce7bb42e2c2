"""
Tests for the activation cascade.

Tests cover:
- Deactivation touches only CASHIER, KITCHEN and SUPERVISOR accounts
- Manual user-status edits by a tenant admin skip the cascade
- Reactivation respects the effective user limit, oldest accounts first
- Failures roll back and propagate
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from pos_backend.constants.permissions import UserRole
from pos_backend.entitlements.cascade import CascadeActivator
from pos_backend.platform.request_context import RequestActor


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

MANUAL_EDIT = RequestActor(role=UserRole.ADMIN_TENANT.value, user_id="owner", manual_user_status_edit=True)


@pytest.fixture
def cascade(db_session, clock):
    return CascadeActivator(db_session, clock)


@pytest.fixture
def tenant(make_tenant):
    return make_tenant(plan="BASIC", entitlement_end=T0 + timedelta(days=30))


@pytest.fixture
def staff(tenant, make_user):
    """One account of every role, all active."""
    return {role: make_user(tenant.id, role=role) for role in UserRole}


class TestDeactivation:
    """Entitlement lost."""

    def test_only_staff_roles_are_deactivated(self, cascade, tenant, staff):
        result = cascade.apply_activation_cascade(tenant.id, became_active=False)

        assert result.users_deactivated == 3
        assert staff[UserRole.ADMIN_TENANT].is_active is True
        assert staff[UserRole.SUPER_ADMIN].is_active is True
        assert staff[UserRole.CASHIER].is_active is False
        assert staff[UserRole.KITCHEN].is_active is False
        assert staff[UserRole.SUPERVISOR].is_active is False

    def test_repeated_deactivation_changes_nothing(self, cascade, tenant, staff):
        cascade.apply_activation_cascade(tenant.id, became_active=False)
        result = cascade.apply_activation_cascade(tenant.id, became_active=False)

        assert result.users_deactivated == 0

    @pytest.mark.parametrize("became_active", [True, False])
    def test_manual_edit_by_tenant_admin_is_skipped(self, cascade, tenant, make_user, became_active):
        cashier = make_user(tenant.id, role=UserRole.CASHIER, is_active=became_active is False)

        result = cascade.apply_activation_cascade(tenant.id, became_active, actor=MANUAL_EDIT)

        assert result.skipped is True
        assert cashier.is_active is (became_active is False)

    def test_super_admin_manual_edit_is_not_skipped(self, cascade, tenant, staff):
        actor = RequestActor(role=UserRole.SUPER_ADMIN.value, manual_user_status_edit=True)

        result = cascade.apply_activation_cascade(tenant.id, False, actor=actor)

        assert result.skipped is False
        assert result.users_deactivated == 3

    def test_other_tenants_untouched(self, cascade, tenant, make_tenant, make_user):
        other = make_tenant(name="Other")
        other_cashier = make_user(other.id, role=UserRole.CASHIER)

        cascade.apply_activation_cascade(tenant.id, became_active=False)

        assert other_cashier.is_active is True


class TestActivation:
    """Entitlement regained."""

    def test_fills_free_slots_oldest_first(self, cascade, tenant, make_user):
        # BASIC allows 4 users; the admin takes one slot
        make_user(tenant.id, role=UserRole.ADMIN_TENANT)
        inactive = [make_user(tenant.id, role=UserRole.CASHIER, is_active=False) for _ in range(5)]

        result = cascade.apply_activation_cascade(tenant.id, became_active=True)

        assert result.users_activated == 3
        assert [u.is_active for u in inactive] == [True, True, True, False, False]

    def test_user_addon_raises_activation_limit(self, cascade, tenant, make_user, make_addon):
        make_addon(tenant.id, "ADD_USERS", limit=5)
        inactive = [make_user(tenant.id, role=UserRole.KITCHEN, is_active=False) for _ in range(6)]

        result = cascade.apply_activation_cascade(tenant.id, became_active=True)

        assert result.users_activated == 6
        assert all(u.is_active for u in inactive)

    def test_unlimited_plan_activates_everyone(self, cascade, make_tenant, make_user):
        tenant = make_tenant(plan="ENTERPRISE")
        inactive = [make_user(tenant.id, role=UserRole.SUPERVISOR, is_active=False) for _ in range(12)]

        cascade.apply_activation_cascade(tenant.id, became_active=True)

        assert all(u.is_active for u in inactive)

    def test_no_free_slots(self, cascade, tenant, make_user):
        for _ in range(4):
            make_user(tenant.id, role=UserRole.CASHIER)
        waiting = make_user(tenant.id, role=UserRole.CASHIER, is_active=False)

        result = cascade.apply_activation_cascade(tenant.id, became_active=True)

        assert result.users_activated == 0
        assert waiting.is_active is False

    def test_inactive_admin_is_not_reactivated(self, cascade, tenant, make_user):
        admin = make_user(tenant.id, role=UserRole.ADMIN_TENANT, is_active=False)

        cascade.apply_activation_cascade(tenant.id, became_active=True)

        assert admin.is_active is False


class TestFailure:
    def test_error_rolls_back_and_propagates(self, cascade, tenant, staff):
        with patch.object(cascade.resources, "set_users_active", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                cascade.apply_activation_cascade(tenant.id, became_active=False)

        assert staff[UserRole.CASHIER].is_active is True
