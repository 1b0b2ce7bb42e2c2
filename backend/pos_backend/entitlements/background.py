"""
Fire-and-forget background reconciliation.

Privileged actors are never made to wait for reconciliation; the guard
hands the tenant to this dispatcher instead. Each task opens its own
database session. Failures are logged and never reach the request that
triggered them.
"""

import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from threading import Lock
from typing import Callable, Optional, Set

from sqlalchemy.orm import Session

from pos_backend.database.session import session_scope
from pos_backend.entitlements.errors import TenantNotFoundError
from pos_backend.entitlements.reconciler import Reconciler
from pos_backend.platform.clock import Clock, get_clock
from pos_backend.platform.request_context import RequestActor

logger = logging.getLogger(__name__)

BACKGROUND_WORKERS = int(os.getenv("ENTITLEMENT_BACKGROUND_WORKERS", "4"))


class BackgroundReconcileDispatcher:
    """Runs Reconciler.reconcile on a small thread pool."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Optional[Clock] = None,
        max_workers: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or BACKGROUND_WORKERS,
            thread_name_prefix="entitlement-reconcile",
        )
        self._pending: Set[Future] = set()
        self._lock = Lock()

    def dispatch(
        self,
        tenant_id: str,
        actor: Optional[RequestActor] = None,
        now: Optional[datetime] = None,
    ) -> Future:
        """Schedule a reconciliation and return immediately."""
        future = self._executor.submit(self._run, tenant_id, actor, now)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Block until every dispatched reconciliation has finished."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(self, tenant_id: str, actor: Optional[RequestActor], now: Optional[datetime]) -> None:
        try:
            with session_scope(self._session_factory) as session:
                outcome = Reconciler(session, clock=self._clock or get_clock()).reconcile(
                    tenant_id, now=now, actor=actor
                )
            if outcome.changed:
                logger.info("Background reconciliation applied transition", extra=outcome.to_dict())
        except TenantNotFoundError:
            logger.info("Background reconciliation skipped, tenant not found", extra={"tenant_id": tenant_id})
        except Exception:
            logger.error(
                "Background reconciliation failed",
                extra={"tenant_id": tenant_id},
                exc_info=True,
            )


_dispatcher: Optional[BackgroundReconcileDispatcher] = None
_dispatcher_lock = Lock()


def get_background_dispatcher() -> BackgroundReconcileDispatcher:
    """Return the process-wide dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        with _dispatcher_lock:
            if _dispatcher is None:
                _dispatcher = BackgroundReconcileDispatcher()
    return _dispatcher


def reset_background_dispatcher() -> None:
    """Shut down and forget the process-wide dispatcher (for tests only)."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is not None:
            _dispatcher.shutdown()
        _dispatcher = None
