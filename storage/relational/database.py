"""
Database setup and connection management for the relational store.

This module handles:
- SQLAlchemy engine creation
- Session management
- Connection pooling configuration
- Table creation
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, inspect, pool, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storage.relational.models import Base

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """Configuration for database connections"""

    def __init__(self, url: Optional[str] = None):
        self.url = url or os.getenv("RECORDS_DATABASE_URL", "sqlite:///:memory:")

        # Connection pooling
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "20"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1500"))

        # Echo SQL for debugging (set False in production)
        self.echo = os.getenv("DB_ECHO", "False").lower() == "true"

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class DatabaseManager:
    """
    Owns one engine and its session factory.

    Usage:
        db = DatabaseManager(DatabaseConfig("sqlite:///records.db"))
        db.create_tables()
        with db.session() as session:
            ...
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self.engine = self._create_engine(self.config)
        self._SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False
        )
        logger.info(f"Database engine created ({self.engine.dialect.name})")

    @staticmethod
    def _create_engine(config: DatabaseConfig):
        if config.is_sqlite:
            # A single shared connection keeps :memory: databases alive across sessions
            return create_engine(
                config.url,
                echo=config.echo,
                poolclass=pool.StaticPool,
                connect_args={"check_same_thread": False}
            )
        return create_engine(
            config.url,
            echo=config.echo,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
        )

    def create_tables(self) -> None:
        """Create all tables if they don't exist (idempotent)."""
        existing = set(inspect(self.engine).get_table_names())
        Base.metadata.create_all(bind=self.engine, checkfirst=True)
        created = set(Base.metadata.tables) - existing
        if created:
            logger.info(f"Created tables: {sorted(created)}")

    def drop_tables(self) -> None:
        """Drop all tables. For tests only."""
        logger.warning("Dropping all record store tables")
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Session scope. The caller commits; anything left uncommitted is
        rolled back when the block exits.
        """
        session = self._SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        try:
            with self.session() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()
