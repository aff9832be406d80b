from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from server.creditmeter.core.config import Settings


class Base(DeclarativeBase):
    pass


def sqlite_file(db_url: str) -> str | None:
    """Database path for a file-backed SQLite URL, else None."""
    try:
        url = make_url(db_url)
    except ArgumentError:
        return None
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    return url.database


def ensure_db_parent_dir(db_url: str) -> None:
    path = sqlite_file(db_url)
    parent = os.path.dirname(path) if path else ""
    if parent:
        os.makedirs(parent, exist_ok=True)


def _install_sqlite_hooks(engine: Engine, *, wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # Transactions are opened explicitly by _on_begin.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        # SQLite has no row locks; every ledger transaction holds the write lock from its first statement.
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@lru_cache(maxsize=8)
def _engine_for(db_url: str) -> Engine:
    if not db_url.startswith("sqlite:"):
        return create_engine(db_url, pool_pre_ping=True)
    ensure_db_parent_dir(db_url)
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_pre_ping=True,
    )
    _install_sqlite_hooks(engine, wal=sqlite_file(db_url) is not None)
    return engine


@lru_cache(maxsize=8)
def _sessionmaker_for(db_url: str) -> sessionmaker:
    return sessionmaker(bind=_engine_for(db_url), autoflush=False, autocommit=False, expire_on_commit=False)


def get_engine(settings: Settings) -> Engine:
    return _engine_for(settings.db_url)


def get_sessionmaker(settings: Settings) -> sessionmaker:
    return _sessionmaker_for(settings.db_url)


def init_db(settings: Settings) -> None:
    """Create missing tables directly from the models (tests and blank local DBs)."""
    from server.creditmeter.core import models  # noqa: F401

    Base.metadata.create_all(get_engine(settings))


def _unit_of_work(settings: Settings) -> Generator[Session, None, None]:
    db = get_sessionmaker(settings)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope(settings: Settings) -> Generator[Session, None, None]:
    yield from _unit_of_work(settings)


def db_session(request: Request) -> Generator[Session, None, None]:
    yield from _unit_of_work(request.app.state.settings)
