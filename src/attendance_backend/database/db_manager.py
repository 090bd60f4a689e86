"""
Database Manager for Face Attendance
====================================
Handles database connection, initialization, and session management.

Features:
- SQLite database with foreign keys enforced
- Automatic table creation
- Default configuration seeding
- Storage errors surfaced as PersistenceError
"""

import os
import logging
from pathlib import Path
from datetime import datetime
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base, SystemConfig, Student, AttendanceRecord, DEFAULT_CONFIG
from ..errors import PersistenceError

# Configure logging
logger = logging.getLogger(__name__)

# Database file path, overridable through the environment
DATABASE_PATH = Path(os.environ.get(
    "ATTENDANCE_DB_PATH",
    Path.cwd() / "data" / "attendance.db"
))


class DatabaseManager:
    """
    Manages database connections and provides session context.

    Usage:
        db = DatabaseManager()
        with db.get_session() as session:
            student = session.query(Student).filter_by(student_code="A1").first()
    """

    def __init__(self, db_path: Optional[Path] = None, echo: bool = False):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file. Defaults to ATTENDANCE_DB_PATH
            echo: If True, log all SQL statements (useful for debugging)
        """
        self.db_path = Path(db_path) if db_path else DATABASE_PATH
        self.echo = echo
        self.engine = None
        self.SessionLocal = None
        self._initialized = False

    def initialize(self) -> bool:
        """
        Initialize database connection and create tables.

        Returns:
            True if initialization successful, False otherwise
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            # check_same_thread=False needed for the FastAPI threadpool
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=self.echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool
            )

            # SQLite has foreign keys disabled by default; cascades rely on them
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

            self.SessionLocal = sessionmaker(
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
                bind=self.engine
            )

            Base.metadata.create_all(bind=self.engine)
            logger.info(f"Database initialized at: {self.db_path}")

            self._initialized = True
            self._seed_default_config()
            return True

        except (SQLAlchemyError, OSError, PersistenceError) as e:
            logger.error(f"Failed to initialize database: {e}")
            self._initialized = False
            return False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _seed_default_config(self):
        """Insert default configuration values if not present."""
        with self.get_session() as session:
            for key, (value, description) in DEFAULT_CONFIG.items():
                existing = session.query(SystemConfig).filter_by(key=key).first()
                if not existing:
                    session.add(SystemConfig(key=key, value=value, description=description))
                    logger.debug(f"Added default config: {key}={value}")
            session.commit()
            logger.info("Default configuration seeded")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic cleanup.

        SQLAlchemy errors escaping the block are rolled back and re-raised
        as PersistenceError.

        Yields:
            SQLAlchemy Session object
        """
        if not self._initialized and not self.initialize():
            raise PersistenceError(f"Database at {self.db_path} is not available")

        session = self.SessionLocal()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_config(self, key: str, default: str = None) -> Optional[str]:
        """
        Get a configuration value by key.

        Args:
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value as string
        """
        with self.get_session() as session:
            config = session.query(SystemConfig).filter_by(key=key).first()
            return config.value if config else default

    def get_config_int(self, key: str, default: int = 0) -> int:
        """Get config value as integer."""
        value = self.get_config(key)
        try:
            return int(value) if value else default
        except ValueError:
            return default

    def get_config_float(self, key: str, default: float = 0.0) -> float:
        """Get config value as float."""
        value = self.get_config(key)
        try:
            return float(value) if value else default
        except ValueError:
            return default

    def set_config(self, key: str, value: str, description: str = None):
        """
        Set a configuration value.

        Args:
            key: Configuration key name
            value: Configuration value
            description: Optional description
        """
        with self.get_session() as session:
            config = session.query(SystemConfig).filter_by(key=key).first()
            if config:
                config.value = value
                config.updated_at = datetime.utcnow()
                if description:
                    config.description = description
            else:
                session.add(SystemConfig(key=key, value=value, description=description))
            session.commit()
            logger.info(f"Config updated: {key}={value}")

    def get_stats(self) -> dict:
        """
        Get database statistics.

        Returns:
            Dictionary with counts and status info
        """
        with self.get_session() as session:
            today = datetime.now().date()
            return {
                "database_path": str(self.db_path),
                "total_students": session.query(Student).count(),
                "total_records": session.query(AttendanceRecord).count(),
                "records_today": session.query(AttendanceRecord).filter_by(attendance_date=today).count(),
                "initialized": self._initialized
            }

    def close(self):
        """Close database connection."""
        if self.engine:
            self.engine.dispose()
            self._initialized = False
            logger.info("Database connection closed")


# Global singleton instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """
    Get the global database manager instance.
    Creates and initializes if not already done.

    Returns:
        DatabaseManager singleton instance
    """
    global _db_manager

    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()

    return _db_manager


def reset_db_manager(db_path: Optional[Path] = None) -> Optional[DatabaseManager]:
    """
    Reset the global database manager.
    With a path, a fresh manager bound to it becomes the global one (for testing).
    """
    global _db_manager
    if _db_manager:
        _db_manager.close()
    _db_manager = None

    if db_path is not None:
        _db_manager = DatabaseManager(db_path)
        _db_manager.initialize()
    return _db_manager
