"""
Database Configuration and Session Management
============================================

Provides the Database object that owns the engine, session factory and schema
bootstrap for the credit ledger. One instance is created per process (or per
test) and handed to request handlers; there is no module-level engine.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _configure_sqlite(engine: Engine) -> None:
    """Make SQLite transactions real: writers take the lock at BEGIN.

    pysqlite defers BEGIN until the first DML statement, so a read-then-write
    sequence can interleave with another connection. Disabling the driver's
    transaction handling and emitting BEGIN IMMEDIATE ourselves serializes
    writers for the full unit of work.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Context-scoped connection pool and unit-of-work factory"""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None, **engine_kwargs):
        self.url = url or Config.DATABASE_URL
        if not self.url:
            raise ValueError("DATABASE_URL environment variable is required")

        self.is_sqlite = self.url.startswith("sqlite")
        options: Dict[str, Any] = {
            "echo": Config.DB_ECHO if echo is None else echo,
            "pool_pre_ping": True,
        }
        if self.is_sqlite:
            options["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            options.update(
                pool_size=Config.DB_POOL_SIZE,
                max_overflow=Config.DB_MAX_OVERFLOW,
                pool_timeout=Config.DB_POOL_TIMEOUT,
                pool_recycle=Config.DB_POOL_RECYCLE,
                connect_args={
                    "connect_timeout": 10,
                    "application_name": "campus_credit_ledger",
                },
            )
        options.update(engine_kwargs)

        self.engine = create_engine(self.url, **options)
        if self.is_sqlite:
            _configure_sqlite(self.engine)

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

        self._schema_lock = threading.Lock()
        self._schema_ready = False

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def ensure_schema(self) -> bool:
        """Create missing tables once per process; later calls are no-ops"""
        if self._schema_ready:
            return True
        with self._schema_lock:
            if self._schema_ready:
                return True
            logger.info("🏗️ Ensuring ledger schema (creating missing tables)...")
            Base.metadata.create_all(bind=self.engine, checkfirst=True)
            existing_tables = inspect(self.engine).get_table_names()
            logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
            self._schema_ready = True
        return True

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One atomic unit of work: commit on success, rollback on any error"""
        self.ensure_schema()
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug(f"Database session rolled back: {type(e).__name__}: {e}")
            raise
        finally:
            session.close()

    # Alias matching the collaborator interface name
    transaction = session

    # ------------------------------------------------------------------
    # Raw SQL surface
    # ------------------------------------------------------------------

    def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a SELECT and return every row as a dict"""
        self.ensure_schema()
        with self.engine.connect() as connection:
            result = connection.execute(text(sql), params or {})
            return [dict(row._mapping) for row in result]

    def query_one(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Run a SELECT and return the first row, or None"""
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Run a single write statement in its own transaction; returns rowcount"""
        self.ensure_schema()
        with self.engine.begin() as connection:
            result = connection.execute(text(sql), params or {})
            return result.rowcount

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def test_connection(self) -> bool:
        """Test database connection"""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
        except Exception as e:
            logger.error(f"❌ Database connection test failed: {e}")
            return False

    def get_pool_stats(self) -> Dict[str, Any]:
        """Connection pool statistics for monitoring"""
        stats: Dict[str, Any] = {"pool_class": type(self.engine.pool).__name__}
        pool = self.engine.pool
        for name in ("size", "checkedout", "overflow", "checkedin"):
            method = getattr(pool, name, None)
            if callable(method):
                stats[name] = method()
        logger.debug(f"📊 POOL_STATS: {stats}")
        return stats

    def dispose(self) -> None:
        """Close every pooled connection"""
        self.engine.dispose()
