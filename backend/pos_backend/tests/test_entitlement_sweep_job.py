"""
Tests for the entitlement sweep worker.

Tests cover:
- Candidate selection (lapsed upgrades and lapsed paid plans only)
- Paging through candidates past running upgrades and failing tenants
- Stats for reverts and downgrades
- Per-tenant failures counted without stopping the batch
- run_cycle error handling
- Signal handling
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from pos_backend.entitlements.reconciler import Reconciler
from pos_backend.repositories.entitlement_ledger import EntitlementLedger
from pos_backend.workers import entitlement_sweep_job
from pos_backend.workers.entitlement_sweep_job import SweepStats, run_cycle, sweep_tenants


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def tenants(db_session, make_tenant, grant_subscription):
    """One tenant in every reconciliation situation."""
    ledger = EntitlementLedger(db_session)

    upgraded = make_tenant(plan="PRO", name="Upgraded")
    grant_subscription(upgraded, "PRO", T0 - timedelta(days=20), T0 + timedelta(days=20))
    ledger.create_period(
        upgraded.id, "ENTERPRISE", T0 - timedelta(days=5), T0 - timedelta(days=1),
        is_temporary_upgrade=True, prior_plan="PRO",
    )
    upgraded.current_plan = "ENTERPRISE"
    upgraded.entitlement_end = T0 - timedelta(days=1)
    upgraded.is_temporary_upgrade = True
    upgraded.prior_plan = "PRO"
    db_session.commit()

    lapsed = make_tenant(plan="PRO", name="Lapsed")
    grant_subscription(lapsed, "PRO", T0 - timedelta(days=31), T0 - timedelta(days=1))

    running = make_tenant(plan="PRO", name="Running")
    grant_subscription(running, "PRO", T0, T0 + timedelta(days=30))

    lapsed_basic = make_tenant(plan="BASIC", name="Lapsed basic")
    grant_subscription(lapsed_basic, "BASIC", T0 - timedelta(days=31), T0 - timedelta(days=1))

    return {"upgraded": upgraded, "lapsed": lapsed, "running": running, "lapsed_basic": lapsed_basic}


class TestCandidateSelection:
    def test_only_upgrades_and_lapsed_paid_plans(self, db_session, clock, tenants):
        ids = EntitlementLedger(db_session).list_tenants_needing_reconcile(clock.now(), 100)
        assert set(ids) == {tenants["upgraded"].id, tenants["lapsed"].id}

    def test_batch_size(self, db_session, clock, tenants):
        assert len(EntitlementLedger(db_session).list_tenants_needing_reconcile(clock.now(), 1)) == 1

    def test_running_upgrade_is_not_a_candidate(self, db_session, clock, make_tenant):
        make_tenant(
            plan="ENTERPRISE", entitlement_end=T0 + timedelta(days=5),
            is_temporary_upgrade=True, prior_plan="PRO",
        )

        assert EntitlementLedger(db_session).list_tenants_needing_reconcile(clock.now(), 100) == []

    def test_upgrade_ending_now_is_a_candidate(self, db_session, clock, make_tenant):
        tenant = make_tenant(
            plan="ENTERPRISE", entitlement_end=T0, is_temporary_upgrade=True, prior_plan="PRO",
        )

        ids = EntitlementLedger(db_session).list_tenants_needing_reconcile(clock.now(), 100)

        assert ids == [tenant.id]

    def test_after_id_pages_in_id_order(self, db_session, clock, tenants):
        ledger = EntitlementLedger(db_session)
        first, second = sorted([tenants["upgraded"].id, tenants["lapsed"].id])

        assert ledger.list_tenants_needing_reconcile(clock.now(), 1) == [first]
        assert ledger.list_tenants_needing_reconcile(clock.now(), 1, after_id=first) == [second]
        assert ledger.list_tenants_needing_reconcile(clock.now(), 1, after_id=second) == []


class TestSweepTenants:
    def test_reconciles_candidates(self, db_session, clock, tenants):
        stats = sweep_tenants(db_session, clock)

        assert stats.tenants_checked == 2
        assert stats.reverted_with_carryover == 1
        assert stats.downgraded == 1
        assert stats.errors == 0
        assert tenants["upgraded"].current_plan == "PRO"
        assert tenants["upgraded"].entitlement_end == T0 + timedelta(days=20)
        assert tenants["lapsed"].current_plan == "BASIC"
        assert tenants["running"].current_plan == "PRO"

    def test_second_sweep_finds_nothing(self, db_session, clock, tenants):
        sweep_tenants(db_session, clock)
        stats = sweep_tenants(db_session, clock)

        assert stats.tenants_checked == 0

    def test_failure_on_one_tenant_is_counted(self, db_session, clock, tenants):
        real_reconcile = Reconciler.reconcile
        broken_id = tenants["lapsed"].id

        def reconcile(self, tenant_id, now=None, actor=None):
            if tenant_id == broken_id:
                raise RuntimeError("boom")
            return real_reconcile(self, tenant_id, now=now, actor=actor)

        with patch.object(Reconciler, "reconcile", reconcile):
            stats = sweep_tenants(db_session, clock)

        assert stats.errors == 1
        assert stats.reverted_with_carryover == 1
        assert tenants["lapsed"].current_plan == "PRO"

    def test_running_upgrades_do_not_starve_lapsed_tenants(self, db_session, clock, make_tenant):
        for _ in range(3):
            make_tenant(
                plan="ENTERPRISE", entitlement_end=T0 + timedelta(days=5),
                is_temporary_upgrade=True, prior_plan="PRO",
            )
        never_entitled = make_tenant(plan="PRO", name="Never entitled")

        stats = sweep_tenants(db_session, clock, batch_size=3)

        assert stats.tenants_checked == 1
        assert stats.downgraded == 1
        assert stats.next_after_id is None
        db_session.refresh(never_entitled)
        assert never_entitled.current_plan == "BASIC"

    def test_cursor_moves_past_a_failing_tenant(self, db_session, clock, tenants):
        first, second = sorted([tenants["upgraded"].id, tenants["lapsed"].id])
        real_reconcile = Reconciler.reconcile

        def reconcile(self, tenant_id, now=None, actor=None):
            if tenant_id == first:
                raise RuntimeError("boom")
            return real_reconcile(self, tenant_id, now=now, actor=actor)

        with patch.object(Reconciler, "reconcile", reconcile):
            stats = sweep_tenants(db_session, clock, batch_size=1)
            assert stats.errors == 1
            assert stats.next_after_id == first

            stats = sweep_tenants(db_session, clock, batch_size=1, after_id=stats.next_after_id)
            assert stats.errors == 0
            assert stats.tenants_checked == 1
            assert stats.next_after_id == second

            stats = sweep_tenants(db_session, clock, batch_size=1, after_id=stats.next_after_id)
            assert stats.tenants_checked == 0
            assert stats.next_after_id is None

    def test_stats_dict(self):
        data = SweepStats(tenants_checked=3, downgraded=1).to_dict()
        assert data["tenants_checked"] == 3
        assert data["downgraded"] == 1
        assert data["duration_seconds"] >= 0


class TestRunCycle:
    def test_cycle_error_returns_error_stats(self):
        with patch.object(entitlement_sweep_job, "session_scope"), \
                patch.object(entitlement_sweep_job, "sweep_tenants", side_effect=RuntimeError("db down")):
            stats = run_cycle()

        assert stats.errors == 1

    def test_cycle_uses_scoped_session(self, db_session):
        with patch.object(entitlement_sweep_job, "session_scope") as scope, \
                patch.object(entitlement_sweep_job, "sweep_tenants", return_value=SweepStats()) as sweep:
            scope.return_value.__enter__.return_value = db_session
            stats = run_cycle()

        sweep.assert_called_once_with(db_session, after_id=None)
        assert stats.errors == 0

    def test_cycle_resumes_after_cursor(self, db_session):
        with patch.object(entitlement_sweep_job, "session_scope") as scope, \
                patch.object(entitlement_sweep_job, "sweep_tenants",
                             return_value=SweepStats(next_after_id="tenant-b")) as sweep:
            scope.return_value.__enter__.return_value = db_session
            stats = run_cycle("tenant-a")

        sweep.assert_called_once_with(db_session, after_id="tenant-a")
        assert stats.next_after_id == "tenant-b"


class TestSignalHandling:
    def test_handle_signal_requests_shutdown(self, monkeypatch):
        monkeypatch.setattr(entitlement_sweep_job, "_shutdown", False)

        entitlement_sweep_job._handle_signal(15, None)

        assert entitlement_sweep_job._shutdown is True
