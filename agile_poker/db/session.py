"""Gestion du moteur SQLAlchemy et des sessions ORM."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agile_poker.db.schema import Base


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Build an engine usable from the Socket.IO worker threads.

    In-memory SQLite shares its single connection (StaticPool); a SQLite
    file keeps the default pool so each thread gets its own connection.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    connect_args = {"check_same_thread": False}
    if url.database in (None, "", ":memory:"):
        return create_engine(database_url, echo=echo, connect_args=connect_args,
                             poolclass=StaticPool)

    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create the tables. Call once at startup."""
    Base.metadata.create_all(engine)
