"""Lazily built engine and transactional session scopes."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Tuple

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, get_settings
from .monitoring import instrument_engine

logger = logging.getLogger(__name__)


class _EngineState:
    # Stuck-mark timers open sessions from worker threads, so first use may race.
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.engine: Optional[Engine] = None
        self.factory: Optional[sessionmaker[Session]] = None


_state = _EngineState()


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let pysqlite run SAVEPOINT and enforce foreign keys.

    The driver otherwise issues BEGIN lazily on its own schedule, which breaks
    ``Session.begin_nested``.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:  # type: ignore[no-untyped-def]
        connection.exec_driver_sql("BEGIN")


def _engine_options(settings: Settings, backend: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": settings.database_echo, "pool_pre_ping": True}
    if backend == "sqlite":
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    return options


def _build_engine(settings: Settings) -> Engine:
    if not settings.database_url:
        raise RuntimeError("STUDYFLOW_DATABASE_URL must be configured before using the database.")
    backend = make_url(settings.database_url).get_backend_name()
    engine = create_engine(settings.database_url, **_engine_options(settings, backend))
    if backend == "sqlite":
        _enable_sqlite_savepoints(engine)
    instrument_engine(engine)
    logger.info("Database engine ready (backend=%s)", backend)
    return engine


def _ensure_built() -> Tuple[Engine, sessionmaker[Session]]:
    with _state.lock:
        if _state.engine is None or _state.factory is None:
            engine = _build_engine(get_settings())
            _state.engine = engine
            _state.factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        return _state.engine, _state.factory


def get_engine() -> Engine:
    return _ensure_built()[0]


def get_session_factory() -> sessionmaker[Session]:
    return _ensure_built()[1]


@contextmanager
def session_scope(*, commit: bool = True) -> Iterator[Session]:
    """One unit of work: commit on clean exit (unless ``commit=False``), roll back on error.

    Engine operations do all their writes inside a single scope and dispatch
    side effects only after it has exited.
    """
    session = get_session_factory()()
    try:
        yield session
        if commit:
            session.commit()
    except Exception:  # noqa: BLE001
        session.rollback()
        raise
    finally:
        session.close()


def dispose_engine() -> None:
    with _state.lock:
        engine, _state.engine, _state.factory = _state.engine, None, None
    if engine is not None:
        engine.dispose()


__all__ = [
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
