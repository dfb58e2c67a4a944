"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Table definitions for the two persisted relations (purchases, feature_entitlements)
- Test database support
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Index, UniqueConstraint, CheckConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
import os

from unlocks.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # In-memory sqlite must share one connection; file sqlite is used by threaded tests
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            _engine = create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False,
            )
        else:
            _engine = create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=False,
            )
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Dispose the engine and forget the session factory (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_connection() -> bool:
    """Return True if a trivial query succeeds against the configured database."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


# Purchase ledger: one row per purchase attempt, mutated only by the reconciler
purchases = Table(
    'purchases',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('owner_id', String(255), nullable=False, index=True),
    Column('scope_id', String(255), nullable=True, index=True),  # NULL for user-level capabilities
    Column('capability', String(50), nullable=False),
    Column('amount', Integer, nullable=False),  # minor units (cents)
    Column('currency', String(3), nullable=False, server_default='USD'),
    Column('payment_method', String(50), nullable=True),  # stripe, simulated, free
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, completed, failed, refunded
    Column('provider_reference', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    CheckConstraint('amount >= 0', name='ck_purchases_amount_non_negative'),
    Index('idx_purchases_owner_capability', 'owner_id', 'capability'),
    Index('idx_purchases_scope_capability', 'scope_id', 'capability'),
    Index('idx_purchases_status', 'status'),
)

# Per-(scope, capability) unlock state, created lazily on the first purchase
feature_entitlements = Table(
    'feature_entitlements',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('scope_id', String(255), nullable=False),
    Column('capability', String(50), nullable=False),
    Column('status', String(20), nullable=False, server_default='locked'),  # locked, purchased
    Column('unlocked_at', DateTime(timezone=True), nullable=True),
    Column('price', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('scope_id', 'capability', name='uq_feature_entitlements_scope_capability'),
    Index('idx_feature_entitlements_scope_id', 'scope_id'),
)
