"""Database configuration for the notification engine."""
import logging

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLModel engine for ``database_url``.

    SQLite connections get foreign keys enabled; an in-memory SQLite URL
    shares a single connection so every session sees the same tables.
    """
    if database_url.startswith("postgresql"):
        logger.info("Using PostgreSQL database")
    else:
        logger.info(f"Using SQLite database: {database_url}")

    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    connect_args = {"check_same_thread": False}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(database_url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
    else:
        engine = create_engine(database_url, echo=echo, connect_args=connect_args)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine

