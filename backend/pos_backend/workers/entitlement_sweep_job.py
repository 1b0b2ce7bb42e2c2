"""
Entitlement sweep worker.

Optional companion to on-read reconciliation: periodically reconciles
tenants whose temporary upgrade may have lapsed and tenants still on a
paid plan after their entitlement ended, so staff accounts and plan limits
catch up even for tenants nobody is currently using.

Uses exactly the same Reconciler as the request guard; running it next to
live traffic is safe.

Run as: python -m pos_backend.workers.entitlement_sweep_job

Configuration:
- ENTITLEMENT_SWEEP_INTERVAL: Seconds between cycles (default: 300)
- ENTITLEMENT_SWEEP_BATCH_SIZE: Tenants per cycle (default: 200)
"""

import os
import signal
import logging
import time
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Optional

from pos_backend.database.session import session_scope
from pos_backend.entitlements.errors import TenantNotFoundError
from pos_backend.entitlements.models import TransitionKind
from pos_backend.entitlements.reconciler import Reconciler
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.platform.request_context import RequestActor
from pos_backend.repositories.entitlement_ledger import EntitlementLedger

logger = logging.getLogger(__name__)

POLL_INTERVAL = int(os.getenv("ENTITLEMENT_SWEEP_INTERVAL", "300"))
BATCH_SIZE = int(os.getenv("ENTITLEMENT_SWEEP_BATCH_SIZE", "200"))

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Shutdown signal received", extra={"signal": signum})
    _shutdown = True


@dataclass
class SweepStats:
    """Track sweep run statistics."""

    tenants_checked: int = 0
    reverted_with_carryover: int = 0
    downgraded: int = 0
    errors: int = 0
    next_after_id: Optional[str] = None
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "tenants_checked": self.tenants_checked,
            "reverted_with_carryover": self.reverted_with_carryover,
            "downgraded": self.downgraded,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


def sweep_tenants(
    db,
    clock: Optional[Clock] = None,
    batch_size: int = BATCH_SIZE,
    after_id: Optional[str] = None,
) -> SweepStats:
    """
    Reconcile one batch of candidate tenants with ids after `after_id`.

    A failure on one tenant is logged and counted; the batch continues.
    `next_after_id` on the result is the cursor for the next batch, or None
    once the candidate list is exhausted.
    """
    clock = clock or get_clock()
    stats = SweepStats()
    now = clock.now()

    tenant_ids = EntitlementLedger(db).list_tenants_needing_reconcile(
        now, batch_size, after_id=after_id
    )
    reconciler = Reconciler(db, clock)
    actor = RequestActor.system()

    for tenant_id in tenant_ids:
        stats.tenants_checked += 1
        try:
            outcome = reconciler.reconcile(tenant_id, now=now, actor=actor)
        except TenantNotFoundError:
            continue
        except Exception:
            logger.error("Failed to reconcile tenant", extra={"tenant_id": tenant_id}, exc_info=True)
            stats.errors += 1
            continue

        if outcome.transition == TransitionKind.REVERT_WITH_CARRYOVER:
            stats.reverted_with_carryover += 1
        elif outcome.transition == TransitionKind.DOWNGRADE_TO_DEFAULT:
            stats.downgraded += 1

    if len(tenant_ids) == batch_size:
        stats.next_after_id = tenant_ids[-1]
    return stats


def run_cycle(after_id: Optional[str] = None) -> SweepStats:
    """Run one sweep cycle, resuming after `after_id`."""
    try:
        with session_scope() as db:
            stats = sweep_tenants(db, after_id=after_id)
        result = stats.to_dict()
        if any(v > 0 for k, v in result.items() if k != "duration_seconds"):
            logger.info("Entitlement sweep cycle complete", extra=result)
        return stats
    except Exception:
        logger.error("Entitlement sweep cycle failed", exc_info=True)
        stats = SweepStats()
        stats.errors += 1
        return stats


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Entitlement sweep worker started",
        extra={"poll_interval": POLL_INTERVAL, "batch_size": BATCH_SIZE},
    )

    after_id = None
    while not _shutdown:
        after_id = run_cycle(after_id).next_after_id
        # Sleep in 1-second increments for responsive shutdown
        for _ in range(POLL_INTERVAL):
            if _shutdown:
                break
            time.sleep(1)

    logger.info("Entitlement sweep worker stopped")


if __name__ == "__main__":
    main()
