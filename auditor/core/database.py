"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Table definitions for entitlements, billing events, leases and admin audit
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from auditor.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

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

    return settings.DATABASE_URL


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

    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        if parsed.database in (None, "", ":memory:"):
            # One shared connection so every session sees the same in-memory db
            _engine = create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False,
            )
        else:
            _engine = create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
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
            pool_pre_ping=True,
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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# One authoritative row per user. audits_limit is derived from plan, never stored.
user_entitlements = Table(
    'user_entitlements',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, index=True),
    Column('plan', String(20), nullable=False, server_default='free'),
    Column('status', String(20), nullable=False, server_default='inactive'),
    Column('audits_used', Integer, nullable=False, server_default='0'),
    Column('period_key', String(7), nullable=False),  # YYYY-MM (UTC)
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('stripe_customer_id', String(255), nullable=True, unique=True),
    Column('stripe_subscription_id', String(255), nullable=True, index=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('manual_override_plan', String(20), nullable=True),
    Column('manual_override_reason', Text, nullable=True),
    Column('manual_override_expires_at', DateTime(timezone=True), nullable=True),
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_user_entitlements_status_period_end', 'status', 'current_period_end'),
)

# Read projection, written in the same transaction as authoritative writes
entitlement_snapshots = Table(
    'entitlement_snapshots',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan', String(20), nullable=False),
    Column('status', String(20), nullable=False),
    Column('is_pro', Boolean, nullable=False, server_default='0'),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('pro_until', DateTime(timezone=True), nullable=True),  # is_pro lapses here; NULL = open-ended
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_entitlement_snapshots_is_pro', 'is_pro'),
)

# Stripe webhook ledger (idempotency + replay/debug trail)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(255), unique=True, nullable=False, index=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('user_id', String(100), nullable=True, index=True),
    Column('payload_hash', String(64), nullable=False),
    Column('status', String(20), nullable=False, server_default='processed'),  # processing | processed | ignored | stale | unresolvable | failed
    Column('error', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('claimed_at', DateTime(timezone=True), nullable=True),  # last time a delivery took the row
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Index('idx_billing_events_status_created', 'status', 'created_at'),
)

# Per-user sync lock with TTL
sync_leases = Table(
    'sync_leases',
    metadata,
    Column('lease_key', String(200), primary_key=True),
    Column('owner', String(100), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
)

# Admin actions (overrides, usage resets)
entitlement_admin_audit = Table(
    'entitlement_admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(255), nullable=False),
    Column('actor_type', String(50), nullable=True),
    Column('action', String(100), nullable=False, index=True),
    Column('target_user_id', String(100), nullable=True, index=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
