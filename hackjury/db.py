"""SQLite engine and session plumbing.

The API and MCP server bind one process-wide factory via ``init_db``. The
runner, reclaimer, jury and event sink take an injected factory instead, and
fall back to the process-wide one when given ``None``.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hackjury.models import Base

SessionFactory = Callable[[], Session]

_lock = threading.Lock()
_engine: Engine | None = None
_factory: SessionFactory | None = None


def sqlite_engine(db_path: str | Path | None) -> Engine:
    """Engine with the schema created; ``None`` gives a shared in-memory database."""
    if db_path is None:
        engine = create_engine(
            "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool,
        )
    else:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return engine


def session_factory_for(engine: Engine) -> SessionFactory:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(db_path: str | Path | None = None) -> None:
    """Bind the process-wide factory, defaulting to the configured database file."""
    global _engine, _factory
    if db_path is None:
        from hackjury.config import get_settings
        db_path = get_settings().database_path
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = sqlite_engine(db_path)
        _factory = session_factory_for(_engine)


def get_session() -> Session:
    with _lock:
        factory = _factory
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    """Session that rolls back on error and always closes. The caller commits::

        with session_scope(self._session_factory) as session:
            ...
            session.commit()
    """
    session = (factory or get_session)()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    with session_scope() as session:
        yield session
