"""
Blue/Green Deployment Controller - Database Engine.

============================================================
PURPOSE
============================================================
Engine, session factory and transaction boundaries for the
deployment registry.

Requirements:
- SQLAlchemy ORM (PostgreSQL in production, SQLite locally)
- Explicit transaction management
- Hard failures on persistence errors (DatabasePersistenceError)

============================================================
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base
from .types import DatabasePersistenceError


logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///bluegreen.db"

REQUIRED_TABLES = [
    "bg_deployments",
    "bg_deployment_history",
    "bg_service_reservations",
]


# =============================================================
# ENGINE
# =============================================================

def get_database_url(url: Optional[str] = None) -> str:
    """Resolve the database URL: explicit, then environment, then local SQLite."""
    if url:
        return url

    url = os.getenv("BLUEGREEN_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # Registry uses a sync engine
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def _is_in_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or url.startswith("sqlite:///:memory:?")


def create_database_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    Args:
        url: Database URL (None = resolve from environment)
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    database_url = get_database_url(url)
    logger.info(f"Creating database engine for: {database_url.split('@')[-1]}")

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if _is_in_memory_sqlite(database_url):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, future=True, **kwargs)

        @event.listens_for(engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
        future=True,
    )


# =============================================================
# DATABASE
# =============================================================

class Database:
    """
    Owns an engine and its session factory.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False, engine: Optional[Engine] = None):
        self._engine = engine or create_database_engine(url, echo=echo)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def get_session(self) -> Session:
        """
        Get a new database session.

        IMPORTANT: Caller is responsible for committing/closing.
        Prefer transaction_scope().
        """
        return self._session_factory()

    @contextmanager
    def transaction_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for explicit transaction boundaries.

        Commits only if no exception occurs.
        Rolls back on ANY exception.
        Domain errors propagate unchanged; SQLAlchemy errors
        become DatabasePersistenceError.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database transaction failed, rolling back: {e}")
            raise DatabasePersistenceError(f"Transaction failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all_tables(self) -> None:
        """Create all registry tables if they do not exist."""
        try:
            Base.metadata.create_all(bind=self._engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise DatabasePersistenceError(f"Table creation failed: {e}") from e

        missing = [t for t in REQUIRED_TABLES if t not in inspect(self._engine).get_table_names()]
        if missing:
            raise DatabasePersistenceError(f"Tables missing after creation: {missing}")
        logger.info("Registry tables ready")

    def verify_connection(self) -> bool:
        """
        Verify the database answers.

        Raises:
            DatabasePersistenceError: If the connection fails
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabasePersistenceError(f"Cannot connect to database: {e}") from e

    def dispose(self) -> None:
        self._engine.dispose()


def initialize_database(url: Optional[str] = None, echo: bool = False) -> Database:
    """
    Full initialization sequence: connect, verify, create tables.

    This MUST be called at application startup.
    """
    logger.info("=" * 60)
    logger.info("INITIALIZING DEPLOYMENT REGISTRY")
    logger.info("=" * 60)

    database = Database(url, echo=echo)
    database.verify_connection()
    database.create_all_tables()

    return database
