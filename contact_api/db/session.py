"""SQLModel engine management for the SQL submission store."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine


def make_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Store calls run in worker threads
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=False, pool_pre_ping=True, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Get a database session as a context manager."""
    session = Session(engine)
    try:
        yield session
    finally:
        session.close()


__all__ = ["make_engine", "init_db", "get_session"]
