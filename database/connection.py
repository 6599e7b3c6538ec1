"""
Database connection and session management.

Provides the SQLAlchemy engine and a transactional session scope. Services
hold a Database and open one scope per unit of work.
"""
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from database.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Engine plus session factory for one relational store."""

    def __init__(self, url: str, echo: bool = False):
        """
        Initialize engine and session factory.

        Args:
            url: SQLAlchemy database URL
            echo: Log emitted SQL
        """
        self.url = url

        if url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory SQLite must share one connection across threads
            self.engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        elif url.startswith("sqlite"):
            # One connection per thread; writers wait on the file lock
            self.engine = create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=echo,
            )
        else:
            self.engine = create_engine(
                url,
                poolclass=QueuePool,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,  # Verify connection before using
                echo=echo,
            )

        # Rows stay readable after commit; services hand them to callers
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

    def create_tables(self) -> None:
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created")

    def drop_tables(self) -> None:
        """
        Drop all tables in the database.

        WARNING: This will delete all data!
        """
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("Database tables dropped")

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Transactional scope: commit on success, roll back on error.

        Usage:
            with database.session_scope() as db:
                principal = PrincipalRepository(db).get_by_id(principal_id)

        Yields:
            Database session
        """
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def check_connection(self) -> bool:
        """
        Check if database connection is working.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()
