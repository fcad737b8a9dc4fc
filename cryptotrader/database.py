"""SQLModel database engine and session management."""

import logging

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from cryptotrader.config import settings

logger = logging.getLogger(__name__)


def make_engine(database_url: str):
    """Create an engine; SQLite needs check_same_thread=False, in-memory SQLite a single shared connection."""
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, echo=False, connect_args=connect_args, **kwargs)


engine = make_engine(settings.database_url)


def create_db_and_tables(db_engine=None):
    """Create all tables. Called on startup."""
    import cryptotrader.models  # noqa: F401  registers the tables

    SQLModel.metadata.create_all(db_engine or engine)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
