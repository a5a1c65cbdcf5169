"""
Database engine and session management.

Flow:
  1. create_db_engine() builds an Engine from a URL (pool settings are only
     applied to server databases; SQLite gets a busy timeout and immediate
     transactions instead so several worker threads can share one file).
  2. make_session_factory() binds a sessionmaker to that engine.
  3. Components receive the session factory by injection and open one
     transaction per unit of work through session_scope().

Every pipeline write (status transition, job lease, chunk replacement) runs
inside exactly one session_scope() block, so it commits or rolls back as a
whole.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from docindex.core.config import get_settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_db_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 20,
    echo: bool = False,
) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            # Let SQLAlchemy emit BEGIN itself (see _sqlite_begin)
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            # Take the write lock up front: a deferred transaction that reads
            # and then writes can fail with SQLITE_BUSY instead of waiting.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=echo,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False keeps ORM objects usable after commit
    return sessionmaker(
        bind=engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    settings = get_settings()
    return create_db_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=settings.db_echo_sql,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return make_session_factory(get_engine())


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """
    One transaction: commit on success, roll back and re-raise on any error.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """Create all tables (idempotent). Production deployments run migrations."""
    from docindex.models.documents import Base

    Base.metadata.create_all(engine)
    logger.info("Database schema ready | url=%s", engine.url.render_as_string(hide_password=True))


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

def check_db_health(engine: Engine) -> dict:
    """Ping the database; used by /health/ready."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": type(exc).__name__}
