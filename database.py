"""
PostgreSQL access layer for the registration service
Threaded connection pool with event-loop friendly query helpers and schema bootstrap
"""

import os
import asyncio
import logging
import threading
import time
import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor
from typing import Optional, Dict, List, Any

from app_config import DatabaseConfig

logger = logging.getLogger(__name__)

# Global connection pool
_connection_pool = None
_pool_lock = threading.Lock()
_database_config: Optional[DatabaseConfig] = None

# Connection-level failures that justify a retry on reads
_RETRYABLE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def configure_database(config: DatabaseConfig):
    """Set the database configuration used when the pool is created"""
    global _database_config
    _database_config = config


def _get_config() -> DatabaseConfig:
    if _database_config is not None:
        return _database_config
    return DatabaseConfig(url=os.getenv('DATABASE_URL'))


def get_connection_pool():
    """Get or create the threaded connection pool"""
    global _connection_pool
    if _connection_pool is not None:
        return _connection_pool

    with _pool_lock:
        if _connection_pool is None:
            config = _get_config()
            if not config.url:
                raise ValueError("DATABASE_URL environment variable not found")

            _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=config.pool_min,
                maxconn=config.pool_max,
                dsn=config.url,
                cursor_factory=RealDictCursor,
                connect_timeout=5,
                keepalives_idle=600,
                keepalives_interval=30,
                keepalives_count=3
            )
            logger.info(f"✅ Connection pool created ({config.pool_min}-{config.pool_max} connections)")
    return _connection_pool


def close_connection_pool():
    """Close every pooled connection (used at shutdown)"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("✅ Connection pool closed")


def get_connection():
    """Borrow a connection from the pool in autocommit mode"""
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn


def return_connection(conn, is_broken: bool = False):
    """Return a connection to the pool, discarding it when broken"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except Exception as e:
        logger.warning(f"⚠️ Failed to return connection to pool: {e}")
        try:
            conn.close()
        except Exception as close_error:
            logger.debug(f"Connection close after failed return: {close_error}")


async def execute_query(query: str, params: Optional[Any] = None) -> List[Dict]:
    """Execute a SELECT query and return results, retrying dead connections"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    results = cursor.fetchall()
                    return [dict(row) for row in results] if results else []
            except _RETRYABLE_ERRORS as e:
                if conn:
                    return_connection(conn, is_broken=True)
                    conn = None
                if attempt < max_retries - 1:
                    logger.warning(f"🔄 Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + (attempt * 0.5))
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                raise
            finally:
                if conn:
                    return_connection(conn)
        return []

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[Any] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except _RETRYABLE_ERRORS as e:
            broken = True
            logger.error(f"💥 Database update connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def execute_returning(query: str, params: Optional[Any] = None) -> List[Dict]:
    """Execute a write with a RETURNING clause and hand back the affected rows"""

    def _execute() -> List[Dict]:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                results = cursor.fetchall() if cursor.description else []
                return [dict(row) for row in results]
        except _RETRYABLE_ERRORS as e:
            broken = True
            logger.error(f"💥 Database write connection failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


SCHEMA_STATEMENTS = [
    'CREATE EXTENSION IF NOT EXISTS "pgcrypto"',
    """
    CREATE TABLE IF NOT EXISTS registrations (
        id SERIAL PRIMARY KEY,
        correlation_id UUID NOT NULL UNIQUE DEFAULT gen_random_uuid(),
        name VARCHAR(255) NOT NULL,
        email VARCHAR(320) NOT NULL,
        phone VARCHAR(32),
        school_name VARCHAR(255),
        grade VARCHAR(32),
        section VARCHAR(32),
        dob VARCHAR(32),
        city VARCHAR(128),
        is_overseas BOOLEAN NOT NULL DEFAULT FALSE,
        selected_addon JSONB,
        registration_fee NUMERIC(12, 2) NOT NULL DEFAULT 0,
        order_amount INTEGER,
        order_currency VARCHAR(3),
        gateway_order_id VARCHAR(64),
        payment_id VARCHAR(64),
        payment_status VARCHAR(16) NOT NULL DEFAULT 'pending'
            CHECK (payment_status IN ('pending', 'completed', 'failed')),
        payment_method VARCHAR(32),
        payment_verified_at TIMESTAMPTZ,
        payment_captured_at TIMESTAMPTZ,
        rejection_reason TEXT,
        external_account_id VARCHAR(64),
        addon_credit_status VARCHAR(16),
        mail_sent BOOLEAN NOT NULL DEFAULT FALSE,
        wa_sent BOOLEAN NOT NULL DEFAULT FALSE,
        published_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT published_only_when_completed
            CHECK ((published_at IS NOT NULL) = (payment_status = 'completed'))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_registrations_email ON registrations (email)",
    "CREATE INDEX IF NOT EXISTS idx_registrations_gateway_order ON registrations (gateway_order_id)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_registrations_one_pending_per_email
        ON registrations (email) WHERE payment_status = 'pending'
    """
]


async def init_database():
    """Initialize database tables if they don't exist"""

    def _init():
        conn = get_connection()
        try:
            with conn.cursor() as cursor:
                for statement in SCHEMA_STATEMENTS:
                    cursor.execute(statement)
            logger.info("✅ Database schema ready")
        finally:
            return_connection(conn)

    await asyncio.to_thread(_init)
