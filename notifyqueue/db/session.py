"""Database engine and session management for the queue store."""

from functools import lru_cache

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from notifyqueue.config import get_settings


def build_engine(database_url: str) -> Engine:
    """Create an engine for the given URL.

    Plain postgresql:// URLs are switched to the psycopg v3 driver and
    require SSL; SQLite URLs allow use from worker threads.
    """
    connect_args: dict = {}
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    if database_url.startswith("postgresql+psycopg://"):
        connect_args = {"sslmode": "require"}
    elif database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}

    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


@lru_cache
def get_engine() -> Engine:
    """Get the process-wide engine built from settings."""
    return build_engine(get_settings().DATABASE_URL)


def create_db_and_tables(engine: Engine | None = None) -> None:
    """Create the notification tables if they do not exist."""
    # Import models to register them with SQLModel
    from notifyqueue.models import NotificationRecord  # noqa: F401

    SQLModel.metadata.create_all(engine or get_engine())

