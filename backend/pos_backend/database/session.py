"""
Engine and session wiring for the entitlement engine.

Request handlers get one session per request through `get_db_session`.
Background reconciliation and the sweep worker run outside any request and
open their own session through `session_scope`. A session is never shared
between threads.
"""

import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def engine_options(url: str) -> Dict[str, Any]:
    """
    Engine keyword arguments for a database URL.

    Ledger writes are compare-and-set, so every retry must see rows committed
    by the competing writer: PostgreSQL runs at READ COMMITTED. SQLite
    connections are opened from dispatcher threads, so the same-thread check
    is disabled.
    """
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": int(os.getenv("DATABASE_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("DATABASE_MAX_OVERFLOW", "10")),
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "isolation_level": "READ COMMITTED",
    }


def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        try:
            url = _database_url()
        except ValueError as e:
            logger.error("Entitlement database not configured", extra={"error": str(e)})
            raise
        _engine = create_engine(url, **engine_options(url))
        logger.info(
            "Entitlement database engine created",
            extra={"dialect": _engine.dialect.name},
        )
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


async def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding the request's session.

    Responds 503 when no database is configured, so entitlement checks fail
    closed instead of letting the request through.
    """
    try:
        factory = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    session = factory()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    Session for work outside a request. Always closed on exit; committing
    stays with the caller.

        with session_scope() as session:
            Reconciler(session).reconcile(tenant_id)
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        session.close()
