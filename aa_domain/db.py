from __future__ import annotations

import os
from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

# Import for side effect: register tables on SQLModel.metadata.
from . import consent_models, fi_models  # noqa: F401

DATABASE_URL = os.getenv("AA_DB_URL", "sqlite:///./aa_core.db")

SessionFactory = Callable[[], Session]


def create_db_engine(url: str = DATABASE_URL, *, echo: bool = False) -> Engine:
    """Engine usable from worker threads (ingestion writes run off the loop)."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


engine = create_db_engine()


def init_db(bind: Engine | None = None) -> None:
    """Initialise tables (idempotent)."""
    SQLModel.metadata.create_all(bind or engine)


def session_factory(bind: Engine | None = None) -> SessionFactory:
    target = bind or engine
    return lambda: Session(target)


def conflict_insert(session: Session):
    """Return the dialect ``insert`` construct that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"ON CONFLICT upsert is not available for {dialect}")
    return insert
