"""Database module for managing connections to PostgreSQL/CockroachDB.

This module handles:
- Connection pool initialization with retry on startup
- Versioned schema application
- Connection lifecycle
"""

import logging
import ssl
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs

import asyncpg
import backoff

from .exceptions import DatabaseError, DatabaseSchemaError, DuplicateRecordError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None

# sslmode values that do not need a TLS context
PLAINTEXT_SSL_MODES = ('disable', 'allow', 'prefer')

RETRYABLE_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    ConnectionRefusedError,
)

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for verified TLS connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    params = parse_qs(urlparse(db_url).query)
    sslmode = params.get('sslmode', ['require'])[0]

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '60000',  # 1 minute
        }
    }
    if sslmode not in PLAINTEXT_SSL_MODES:
        kwargs['ssl'] = _get_ssl_context()

    return kwargs

def _strip_query(db_url: str) -> str:
    """Drop query parameters asyncpg would reject; they go through kwargs instead."""
    return urlparse(db_url)._replace(query='').geturl()

@backoff.on_exception(backoff.expo, RETRYABLE_ERRORS, max_tries=5)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the target database if it doesn't exist.

    Args:
        db_url: Database connection URL
    """
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/') or 'defaultdb'

    base_url = _strip_query(parsed._replace(path='/defaultdb').geturl())
    logger.info(f"Connecting to defaultdb to create {db_name} if needed")

    conn = await asyncpg.connect(base_url, **_get_connection_kwargs(db_url))
    try:
        await conn.execute(f'CREATE DATABASE IF NOT EXISTS "{db_name}"')
    finally:
        await conn.close()

@backoff.on_exception(backoff.expo, RETRYABLE_ERRORS, max_tries=5)
async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> None:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.
        force_recreate: If True, drop and recreate all tables

    Raises:
        ValueError: If database URL is not provided
        DatabaseSchemaError: If the schema cannot be applied
    """
    global _pool, _schema_manager

    # Import here to avoid circular imports
    from config import settings_conf

    url = db_url or settings_conf.get('db_url')
    if not url:
        raise ValueError("Database URL not provided")

    await create_database_if_not_exists(url)

    try:
        _pool = await asyncpg.create_pool(
            _strip_query(url),
            min_size=2,
            max_size=20,
            max_inactive_connection_lifetime=300.0,
            command_timeout=60.0,
            **_get_connection_kwargs(url)
        )

        if force_recreate:
            async with _pool.acquire() as conn:
                tables = await conn.fetch(
                    "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
                )
                for table in tables:
                    await conn.execute(
                        f'DROP TABLE IF EXISTS "{table["tablename"]}" CASCADE'
                    )
                logger.info(f"Dropped {len(tables)} tables for recreate")

        _schema_manager = SchemaManager(_pool)
        await _schema_manager.initialize()

    except DatabaseSchemaError:
        await close()
        raise
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        await close()
        raise

async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool

async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager

    if _pool:
        await _pool.close()
        _pool = None
        _schema_manager = None

__all__ = [
    'init_db', 'get_pool', 'close',
    'DatabaseError', 'DatabaseSchemaError', 'DuplicateRecordError'
]
