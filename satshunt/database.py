"""
Database connection and session management for SatsHunt.

PostgreSQL (or SQLite for development and tests) through SQLAlchemy, plus an
optional Redis connection backing the rate limiter.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

import redis
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from satshunt.config import get_config
from satshunt.models import Base

logger = logging.getLogger(__name__)

# Global database engine and session factory
_engine = None
_SessionFactory = None
_redis_client = None


def get_database_url() -> str:
    """
    Get database URL from configuration.

    Returns:
        Database connection URL
    """
    config = get_config()
    db_url = config.get("DATABASE_URL")

    if not db_url:
        # Build from components if DATABASE_URL not provided
        db_host = config.get("DB_HOST", "localhost")
        db_port = config.get("DB_PORT", 5432)
        db_user = config.get("DB_USER", "satshunt")
        db_password = config.get("DB_PASSWORD", "satshunt")
        db_name = config.get("DB_NAME", "satshunt")

        db_url = f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"

    return db_url


def init_database(database_url: Optional[str] = None, echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize database engine and session factory.

    Args:
        database_url: Explicit URL, defaults to the configured one
        echo: If True, log all SQL statements
        create_tables: If True, create all tables
    """
    global _engine, _SessionFactory

    if _engine is not None:
        logger.warning("Database already initialized")
        return

    db_url = database_url or get_database_url()

    engine_kwargs = {
        "echo": echo,
        "pool_pre_ping": True,
    }

    if db_url.startswith("sqlite"):
        # Worker threads and request threads share the engine
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 3600,
                "connect_args": {"connect_timeout": 10, "options": "-c timezone=utc"},
            }
        )

    _engine = create_engine(db_url, **engine_kwargs)

    if db_url.startswith("sqlite"):

        @event.listens_for(_engine, "connect")
        def receive_connect(dbapi_conn, connection_record):
            """Enforce foreign keys on every SQLite connection."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    # Create session factory with scoped sessions (thread-safe)
    session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    _SessionFactory = scoped_session(session_factory)

    if create_tables:
        logger.warning("Creating database tables - use migrations in production!")
        Base.metadata.create_all(_engine)

    logger.info(f"Database initialized: {db_url.split('@')[1] if '@' in db_url else db_url}")


def get_session() -> Session:
    """
    Get a database session.

    Returns:
        SQLAlchemy session instance

    Raises:
        RuntimeError: If database not initialized
    """
    if _SessionFactory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    return _SessionFactory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope for database operations.

    Usage:
        with session_scope() as session:
            card = session.query(NfcCard).filter_by(location_id=location_id).first()
            session.add(scan)
            # Automatically commits on success, rolls back on error

    Yields:
        Database session
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise
    finally:
        session.close()


def close_database() -> None:
    """
    Close database connections and clean up.
    """
    global _engine, _SessionFactory

    if _SessionFactory:
        _SessionFactory.remove()
        _SessionFactory = None

    if _engine:
        _engine.dispose()
        _engine = None

    logger.info("Database connections closed")


def check_database_health() -> dict:
    """
    Check database connection health.

    Returns:
        Dictionary with health status
    """
    dialect = _engine.dialect.name if _engine is not None else "unknown"
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))

        return {"status": "healthy", "database": dialect, "connected": True}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "database": dialect, "connected": False, "error": str(e)}


# ============================================================================
# Redis Connection Management
# ============================================================================


def get_redis_url() -> Optional[str]:
    """Return a Redis URL for the rate limiter, or None when Redis is disabled."""
    config = get_config()
    if not config.get("REDIS_ENABLED", True):
        return None
    if config.get("REDIS_URL"):
        return config["REDIS_URL"]

    password = config.get("REDIS_PASSWORD")
    auth = f":{password}@" if password else ""
    host = config.get("REDIS_HOST", "localhost")
    return f"redis://{auth}{host}:{config.get('REDIS_PORT', 6379)}/{config.get('REDIS_DB', 0)}"


def init_redis() -> None:
    """
    Initialize the Redis connection used for rate limiting.
    """
    global _redis_client

    if _redis_client is not None:
        logger.warning("Redis already initialized")
        return

    redis_url = get_redis_url()
    if redis_url is None:
        logger.info("Redis disabled by configuration")
        return

    try:
        _redis_client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )

        # Test connection
        _redis_client.ping()

        logger.info(f"Redis initialized: {redis_url.split('@')[-1]}")
    except redis.RedisError as e:
        logger.error(f"Failed to initialize Redis: {e}")
        logger.warning("Falling back to in-memory rate limit storage")
        _redis_client = None


def get_redis() -> Optional[redis.Redis]:
    """
    Get Redis client instance.

    Returns:
        Redis client or None if not available
    """
    return _redis_client


def close_redis() -> None:
    """
    Close Redis connection.
    """
    global _redis_client

    if _redis_client:
        _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


def check_redis_health() -> dict:
    """
    Check Redis connection health.

    Returns:
        Dictionary with health status
    """
    if _redis_client is None:
        return {"status": "unavailable", "cache": "redis", "connected": False, "error": "Redis not initialized"}

    try:
        _redis_client.ping()
        info = _redis_client.info()

        return {
            "status": "healthy",
            "cache": "redis",
            "connected": True,
            "version": info.get("redis_version"),
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "cache": "redis", "connected": False, "error": str(e)}


# ============================================================================
# Initialization Helper
# ============================================================================


def init_all(database_url: Optional[str] = None, echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize both database and Redis.

    Args:
        database_url: Explicit URL, defaults to the configured one
        echo: If True, log all SQL statements
        create_tables: If True, create database tables
    """
    url = database_url or get_database_url()
    if not create_tables and url.startswith("sqlite"):
        create_tables = True

    init_database(url, echo=echo, create_tables=create_tables)
    init_redis()

    logger.info("All database connections initialized")


def close_all() -> None:
    """
    Close all database connections.
    """
    close_database()
    close_redis()

    logger.info("All database connections closed")


def get_health_status() -> dict:
    """
    Get health status of all database connections.

    Returns:
        Dictionary with health status
    """
    return {"database": check_database_health(), "redis": check_redis_health()}
