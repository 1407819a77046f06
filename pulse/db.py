from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from pulse.config import get_settings
from pulse.models import Base, ProductArea

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def init_db(db_path: str | Path | None = None, *, seed: bool = True) -> None:
    global _engine, _SessionLocal
    settings = get_settings()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path) if db_path is not None else settings.resolved_database_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": settings.store_timeout_seconds},
        )
        event.listen(_engine, "connect", _sqlite_pragmas)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    log.info("Database ready at %s", db_path)
    if seed:
        seed_product_areas()


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    # close-loop workers write concurrently with API readers
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def get_session_factory() -> sessionmaker[Session]:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, CLI, monitor workers)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def seed_product_areas(session: Session | None = None) -> int:
    """Insert the configured product areas that are missing. Returns the number added."""
    settings = get_settings()
    own_session = session is None
    session = session or get_session()
    try:
        existing = set(session.execute(select(ProductArea.name)).scalars().all())
        added = 0
        for name, color in settings.product_area_colors.items():
            if name in existing:
                continue
            session.add(ProductArea(name=name, color=color))
            added += 1
        if added:
            session.commit()
            log.info("Seeded %d product areas", added)
        return added
    finally:
        if own_session:
            session.close()
