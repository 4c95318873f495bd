"""
Database Configuration and Session Management
============================================

Main database engine, session factory and table creation for the escrow service.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

_is_sqlite = Config.DATABASE_URL.startswith("sqlite")

if _is_sqlite:
    engine = create_engine(
        Config.DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=False,
    )
else:
    engine = create_engine(
        Config.DATABASE_URL,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=False,
    )

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def create_tables(bind=None):
    """Create all database tables if they don't exist"""
    bind = bind or engine
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    Base.metadata.create_all(bind=bind, checkfirst=True)
    existing_tables = inspect(bind).get_table_names()
    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    return True


@contextmanager
def managed_session(session_factory=None):
    """Sync context manager for database sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def handle_database_error(error: Exception) -> bool:
    """
    Decide whether a storage error is transient and worth retrying.
    Returns True for dropped connections, lock contention and serialization conflicts.
    """
    if not isinstance(error, OperationalError):
        return False

    message = str(error).lower()
    transient_markers = (
        "ssl connection has been closed",
        "server closed the connection",
        "connection reset",
        "could not serialize access",
        "deadlock detected",
        "database is locked",
    )
    if any(marker in message for marker in transient_markers):
        logger.warning(f"🔌 DB_TRANSIENT_ERROR: {error}")
        return True
    return False
