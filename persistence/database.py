"""
Database Initialization and Session Management

Handles the SQLite store for the combat ledger: file creation, schema,
crash recovery of encounters left active by a previous run, sessions,
and file-level maintenance (backup, size).
"""

import os
import shutil
import logging
import threading
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from .errors import StoreIOError

logger = logging.getLogger(__name__)

MEMORY_PATH = ':memory:'


def get_default_database_path() -> str:
    """Get the path to the SQLite database file (user override or data dir)"""
    # Import here to avoid circular imports
    from settings import UserSettings

    return UserSettings.load().resolved_database_path


class Store:
    """
    Owns the physical database: engine, session factory and writer lock.

    One Store is shared by every component of a process. Writes are
    serialized through ``write_scope()``; reads use ``session_scope()``
    and may run alongside the writer.

    Usage:
        store = Store.initialize('/path/to/ledger.db')
        with store.write_scope() as session:
            session.add(...)
    """

    def __init__(self, path: str, engine, session_factory: sessionmaker):
        self.path = path
        self._engine = engine
        self._session_factory = session_factory
        self._write_lock = threading.RLock()

    @classmethod
    def initialize(cls, path: Optional[str] = None, recover: bool = True) -> 'Store':
        """
        Open (or create) the database, apply the schema and recover from
        an abnormal shutdown.

        Safe to call on every process start: tables are only created when
        missing and nothing is dropped.

        Args:
            path: Database file path, or ':memory:'. None uses the default path.
            recover: Close encounters left active by a previous run. Pass
                False when opening a database another process is using.

        Raises:
            StoreIOError: The file or database could not be opened.
        """
        if path is None:
            path = get_default_database_path()

        logger.info(f"Initializing database at: {path}")

        try:
            if path != MEMORY_PATH:
                directory = os.path.dirname(os.path.abspath(path))
                os.makedirs(directory, exist_ok=True)
            store = cls._open(path)
            Base.metadata.create_all(store._engine)
        except (OSError, SQLAlchemyError) as e:
            raise StoreIOError(f"Could not open database: {e}", {'path': path}) from e

        if recover:
            # Import here to avoid circular imports
            from .encounter_repository import EncounterRepository
            recovered = EncounterRepository(store).deactivate_all_active()
            if recovered:
                logger.warning(f"Closed {recovered} encounter(s) left active by a previous run")

        logger.info("Database initialized successfully")
        return store

    @classmethod
    def _open(cls, path: str) -> 'Store':
        if path == MEMORY_PATH:
            engine = create_engine(
                'sqlite://',
                echo=False,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,  # One shared connection keeps the in-memory db alive
            )
        else:
            engine = create_engine(
                f'sqlite:///{path}',
                echo=False,  # Set to True for SQL debugging
                connect_args={'check_same_thread': False, 'timeout': 30},
            )

        # Enable foreign key support (cascades) and WAL so readers don't block the writer
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if path != MEMORY_PATH:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        return cls(path, engine, session_factory)

    def get_session(self) -> Session:
        """Get a new database session"""
        if self._engine is None:
            raise StoreIOError("Store is closed", {'path': self.path})
        return self._session_factory()

    @contextmanager
    def session_scope(self):
        """
        Context manager for database sessions.

        Automatically handles commit/rollback and cleanup.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error, rolling back: {e}")
            raise
        finally:
            session.close()

    @contextmanager
    def write_scope(self):
        """session_scope() held under the single-writer lock"""
        with self._write_lock:
            with self.session_scope() as session:
                yield session

    def backup_to(self, dest_path: str) -> str:
        """
        Copy this store's file to dest_path.

        The write-ahead log is checkpointed into the main file first, so the
        copy holds every committed transaction. Best effort while other
        processes are writing.
        """
        if self.path == MEMORY_PATH:
            raise StoreIOError("In-memory database cannot be backed up")
        if self._engine is None:
            raise StoreIOError("Store is closed", {'path': self.path})
        with self._write_lock:
            self._checkpoint_wal()
            return _copy_file(self.path, dest_path)

    def _checkpoint_wal(self) -> None:
        try:
            with self._engine.connect() as conn:
                busy = conn.exec_driver_sql("PRAGMA wal_checkpoint(FULL)").scalar()
        except SQLAlchemyError as e:
            logger.warning(f"WAL checkpoint before backup failed: {e}")
            return
        if busy:
            logger.warning("WAL checkpoint blocked by another connection, backup may miss recent writes")

    def size_in_bytes(self) -> int:
        if self.path == MEMORY_PATH:
            return 0
        return size_in_bytes(self.path)

    def close(self):
        """Close the database connection (for cleanup)"""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Database connection closed")


def backup(source_path: str, dest_path: str) -> str:
    """
    Copy a database file, folding its write-ahead log in first.

    Safe to call while a recorder process has the database open; commits
    that land during the copy itself may be missed.

    Raises:
        StoreIOError: The source file is missing or the copy failed.
    """
    if not os.path.isfile(source_path):
        raise StoreIOError("Database file not found", {'path': source_path})

    # Schema and recovery are left alone; this connection only checkpoints
    store = Store._open(source_path)
    try:
        return store.backup_to(dest_path)
    finally:
        store.close()


def _copy_file(source_path: str, dest_path: str) -> str:
    try:
        directory = os.path.dirname(os.path.abspath(dest_path))
        os.makedirs(directory, exist_ok=True)
        shutil.copy2(source_path, dest_path)
    except OSError as e:
        raise StoreIOError(f"Backup failed: {e}", {'source': source_path, 'dest': dest_path}) from e

    logger.info(f"Database backed up to {dest_path}")
    return dest_path


def size_in_bytes(path: str) -> int:
    """Size of the database file; 0 when it doesn't exist"""
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def size_in_mb(path: str) -> float:
    return size_in_bytes(path) / (1024.0 * 1024.0)
