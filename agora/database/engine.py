"""
agora.database.engine — Database Connection, Transactions & Retry
==================================================================

Every core operation is a synchronous function that opens one
:class:`Session`, does all of its work inside that single transaction and
commits (or rolls back) on exit.  Correctness depends on the store, not on
application-level locks:

    1. Counters move through single ``UPDATE … SET c = c + :d`` statements.
    2. Multi-entity changes share one transaction via :func:`get_session`.
    3. A failed attempt leaves no partial state and is safe to retry via
       :func:`run_with_retry`.

SQLite has no row-level locking.  :func:`configure_sqlite` makes every
transaction start with ``BEGIN IMMEDIATE`` so concurrent writers queue on
the database lock instead of deadlocking on lock upgrade.

Usage::

    from agora.database.engine import create_db_engine, init_db, get_session

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    # Inside an async caller:
    result = await run_db(toggle_like, engine, principal, post_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from dotenv import load_dotenv
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from agora.database.models import Base
from agora.errors import TransientStoreError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(
    url: str | None = None,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> Engine:
    """Build a SQLAlchemy :class:`Engine`.

    *url* defaults to the ``DATABASE_URL`` env var (``.env`` is loaded
    first).  PostgreSQL engines get a bounded pool with pre-ping; SQLite
    engines are passed through :func:`configure_sqlite`.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    if url is None:
        load_dotenv()
        url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})
        configure_sqlite(engine)
    else:
        engine = create_engine(
            url,
            echo=False,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,   # Reconnect stale connections automatically
            pool_timeout=10,      # Fail after 10s instead of hanging forever
            pool_recycle=3600,
        )
    logger.info("Database engine created → %s", engine.url.render_as_string())
    return engine


def configure_sqlite(engine: Engine) -> Engine:
    """Enable foreign keys and ``BEGIN IMMEDIATE`` transactions on *engine*.

    pysqlite's own transaction handling is disabled so SQLAlchemy controls
    ``BEGIN`` (required for SAVEPOINT to work as well).
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=10000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables and seed default tuning settings.

    Safe to call on every startup.  In production the schema is managed by
    Alembic (``alembic upgrade head``); ``create_all`` covers dev/test.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from agora.database.seed import seed_default_settings

    seed_default_settings(engine)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that commits on success and rolls back
    on exception.  Objects stay readable after commit.

    Usage::

        with get_session(engine) as session:
            session.add(Post(user_id=1, title="hi", content="..."))
            # commit happens automatically on block exit
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Retry — transient store failures only
# ---------------------------------------------------------------------------
def run_with_retry(
    func: Callable[P, T],
    *args: P.args,
    **kwargs: P.kwargs,
) -> T:
    """Call *func*, retrying on :class:`OperationalError` with backoff + jitter.

    Every mutating core operation is idempotent at its business key, so a
    repeated attempt after a timeout cannot double-apply.  Domain errors
    (:class:`~agora.errors.AgoraError`) are never retried.  After
    ``max_attempts`` the last failure is raised as
    :class:`~agora.errors.TransientStoreError`.
    """
    max_attempts = 4
    base_backoff = 0.05
    max_backoff = 2.0

    attempt = 0
    while True:
        attempt += 1
        try:
            return func(*args, **kwargs)
        except OperationalError as exc:
            if attempt >= max_attempts:
                logger.error(
                    "%s failed after %d attempts: %s",
                    getattr(func, "__name__", func), attempt, exc,
                )
                raise TransientStoreError(str(exc.orig or exc)) from exc
            backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
            wait = backoff + random.uniform(0, backoff * 0.5)
            logger.warning(
                "Store error in %s (attempt %d/%d). Retrying in %.2fs…",
                getattr(func, "__name__", func), attempt, max_attempts, wait,
            )
            time.sleep(wait)


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** core operation on a background thread.

    Async callers (web handlers, bots) go through this wrapper so their
    event loop is never blocked::

        result = await run_db(toggle_like, engine, principal, post_id)

    The call is wrapped in :func:`run_with_retry`.
    """
    return await asyncio.to_thread(run_with_retry, func, *args, **kwargs)
