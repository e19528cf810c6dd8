"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from agora.database.engine import configure_sqlite, init_db
from agora.database.models import Course, Lesson, Post, User
from agora.engine.cache import ConfigCache
from agora.engine.principal import Principal

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Agora tables.

    Uses StaticPool so every session (and any worker thread) shares the
    same in-memory database.  Foreign keys and ``BEGIN IMMEDIATE`` are
    enabled exactly as in production SQLite engines.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    init_db(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine with a real connection pool.

    Needed for concurrency tests: each thread gets its own connection and
    writers serialise on the database lock.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'agora.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    configure_sqlite(engine)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def cache(db_engine: Engine) -> ConfigCache:
    """A ConfigCache warmed from the seeded settings table."""
    cfg = ConfigCache(db_engine)
    cfg.load_all()
    return cfg


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_user(
    engine: Engine,
    name: str = "member",
    *,
    role: str = "member",
    approval_status: str = "approved",
    email: str | None = None,
) -> Principal:
    """Insert a user row directly and return its principal."""
    email = email or f"{name}@example.com"
    with Session(engine) as session:
        user = User(
            email=email,
            name=name,
            username=name,
            role=role,
            approval_status=approval_status,
        )
        session.add(user)
        session.commit()
        return Principal(user_id=user.id, email=email)


def make_post(engine: Engine, author: Principal, title: str = "Hello") -> int:
    with Session(engine) as session:
        post = Post(user_id=author.user_id, title=title, content="First post")
        session.add(post)
        session.commit()
        return post.id


def make_lessons(engine: Engine, *points: int | None) -> list[int]:
    """Create one course with a lesson per *points* entry, in order."""
    with Session(engine) as session:
        course = Course(title="Foundations")
        session.add(course)
        session.flush()
        lessons = [
            Lesson(course_id=course.id, title=f"Lesson {i}", order_num=i, points=p)
            for i, p in enumerate(points, start=1)
        ]
        session.add_all(lessons)
        session.commit()
        return [lesson.id for lesson in lessons]


def fetch(engine: Engine, model, ident):
    """Load a fresh copy of a row outside any service transaction."""
    with Session(engine, expire_on_commit=False) as session:
        return session.get(model, ident)


def count_rows(engine: Engine, model, *criteria) -> int:
    from sqlalchemy import func, select

    with Session(engine) as session:
        pk = list(model.__table__.primary_key.columns)[0]
        return session.scalar(select(func.count(pk)).where(*criteria)) or 0
