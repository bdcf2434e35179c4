from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Several proxy processes may share one ledger file; writers wait rather than fail.
_SQLITE_BUSY_MS = 15_000


class Base(DeclarativeBase):
    pass


def _sqlite_file(url: URL) -> Path | None:
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database)


@lru_cache(maxsize=4)
def ledger_engine(db_url: str) -> Engine:
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    path = _sqlite_file(url)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": _SQLITE_BUSY_MS / 1000},
    )

    @event.listens_for(engine, "connect")
    def _pragmas(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_MS}")
            if path is not None:
                cursor.execute("PRAGMA journal_mode=WAL")
        finally:
            cursor.close()

    return engine


@lru_cache(maxsize=4)
def _session_factory(db_url: str) -> sessionmaker[Session]:
    return sessionmaker(bind=ledger_engine(db_url), autoflush=False, expire_on_commit=False)


def create_schema(db_url: str) -> None:
    from server.creditproxy.core import models  # noqa: F401

    Base.metadata.create_all(ledger_engine(db_url))


@contextmanager
def ledger_session(db_url: str) -> Generator[Session, None, None]:
    """One transaction against the ledger database; rolled back on any error."""
    db = _session_factory(db_url)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
