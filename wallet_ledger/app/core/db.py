from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from ..models import db as _ledger_tables  # noqa: F401 - registers ledger and rate snapshot tables
from .config import get_settings


settings = get_settings()


def create_engine_for_url(database_url: str, *, echo: Optional[bool] = None) -> Engine:
    """Engine for the ledger database.

    SQLite connections are shared across request threads, and ledger writes and
    rate snapshot writes go through separate connections to the same file, so
    each connection waits ``sqlite_busy_timeout_seconds`` for the file lock
    before reporting ``database is locked``.
    """
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.sqlite_busy_timeout_seconds,
        }
    return create_engine(
        database_url,
        echo=settings.database_echo if echo is None else echo,
        connect_args=connect_args,
    )


engine = create_engine_for_url(settings.database_url)


def init_db(bind: Optional[Engine] = None) -> None:
    SQLModel.metadata.create_all(bind or engine)


def get_engine() -> Engine:
    return engine


def set_engine(new_engine: Engine) -> None:
    global engine
    engine = new_engine


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@contextmanager
def session_scope(bind: Optional[Engine] = None) -> Iterator[Session]:
    """Session outside a request, for scripts such as the reconcile command."""
    with Session(bind or engine) as session:
        yield session
