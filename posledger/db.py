from __future__ import annotations
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from .utils.config import DATABASE_URL, SQLITE_BUSY_TIMEOUT


def make_engine(url: str = DATABASE_URL) -> Engine:
    engine_kwargs = dict(pool_pre_ping=True, future=True)
    if not url.startswith("sqlite"):
        return create_engine(url, **engine_kwargs)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        **engine_kwargs,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _):
        # hand transaction control to SQLAlchemy so SAVEPOINT works
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA synchronous=NORMAL")
        except Exception:
            pass
        cur.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        # one writer at a time: occupancy, ledger close and idempotency
        # inserts all see a serialized view of the store
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = make_engine()
Base = declarative_base()
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def ensure_tables(_engine: Engine = engine) -> None:
    from . import models  # noqa: F401  (register tables on Base.metadata)
    Base.metadata.create_all(bind=_engine)


__all__ = ["DATABASE_URL", "engine", "Base", "SessionLocal", "get_db", "make_engine", "transaction", "ensure_tables"]
