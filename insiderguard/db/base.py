"""
Database base configuration and utilities for the policy engine
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Create declarative base
Base = declarative_base()


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def _build_engine(url: str, echo: bool = False) -> Engine:
    if _is_memory_url(url):
        # One shared connection so every session sees the same database
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    elif url.startswith("sqlite"):
        db_path = url.replace("sqlite:///", "", 1)
        directory = os.path.dirname(os.path.expanduser(db_path))
        if directory:
            os.makedirs(directory, exist_ok=True)
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
        )
    else:
        engine = create_engine(
            url,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            echo=echo,
        )

    # Enable foreign keys for SQLite
    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class Database:
    """
    Engine, session factory and write lock for one policy engine database.

    All writers go through ``write_session()`` so that a mutation and its
    ledger entry commit atomically and the ledger hash chain stays linear.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.url = database_url
        self.engine = _build_engine(self.url, echo=echo)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )
        self._write_lock = threading.RLock()
        logger.info(
            "Database initialized: %s",
            self.url.split("@")[-1] if "@" in self.url else self.url,
        )

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get database session context manager

        Yields:
            Database session
        """
        session = self._session_factory()

        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def write_session(self) -> Generator[Session, None, None]:
        """Session holding the process-wide write lock until commit."""
        with self._write_lock:
            with self.session() as session:
                yield session

    def init_db(self, drop_all: bool = False) -> None:
        """
        Initialize database (create all tables)

        Args:
            drop_all: If True, drop all tables first
        """
        # Register the ORM models on Base.metadata
        from insiderguard.db import models  # noqa: F401

        if drop_all:
            Base.metadata.drop_all(bind=self.engine)

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
