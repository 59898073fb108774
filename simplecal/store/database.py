"""SQLAlchemy engine and session factory for the Rule Store.

PostgreSQL runs booking transactions at SERIALIZABLE isolation.  SQLite
(development and tests) has no row locks, so every transaction is opened
with ``BEGIN IMMEDIATE`` which takes the database write lock up front and
serializes writers the same way.
"""

from __future__ import annotations

import logging
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

log = logging.getLogger("simplecal.store.database")


class Base(DeclarativeBase):
    pass


def create_db_engine(url: str, pool_size: int = 10, max_overflow: int = 20) -> Engine:
    """Create an engine configured for ``url``.

    ``sqlite://`` (in-memory) uses a single shared connection so every
    session sees the same database.
    """
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        _enable_sqlite_immediate_transactions(engine)
    else:
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
        )
    log.info("Database engine created (%s)", engine.url.get_backend_name())
    return engine


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # Hand transaction control to SQLAlchemy instead of pysqlite.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    from . import tables  # noqa: F401  (registers mappers on Base)

    Base.metadata.create_all(engine)


def is_serialization_failure(exc: BaseException) -> bool:
    """True when the driver reports a serialization/deadlock abort (SQLSTATE 40001/40P01)."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code in ("40001", "40P01")


def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Yield a session and always close it.  Used as a FastAPI dependency."""
    db = factory()
    try:
        yield db
    finally:
        db.close()
