from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import settings

DATABASE_URL = f"sqlite:///{settings.sqlite_path}"

SessionFactory = Callable[[], Session]


def build_engine(url: str) -> Engine:
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def build_session_factory(bind: Engine) -> sessionmaker:
    # Rows handed out by the ledger are read after their transaction closed.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


engine = build_engine(DATABASE_URL)

SessionLocal = build_session_factory(engine)


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session(factory: SessionFactory = SessionLocal) -> Generator[Session, None, None]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
