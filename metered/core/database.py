"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- In-memory SQLite support for tests
- Table definitions for accounts, referral rewards, jobs and token usage
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Numeric, Text, Index, ForeignKey, UniqueConstraint, CheckConstraint, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, false

from metered.core.config import settings
from metered.core.errors import AppError, PersistenceError

logger = logging.getLogger("metered.database")

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

    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
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
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine (tests switch databases between runs)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


@contextmanager
def transaction():
    """
    Unit of work for ledger and queue operations.

    Commits on success, rolls back on any error. Driver and SQL failures are
    re-raised as PersistenceError; domain errors (AppError) pass through
    unchanged so callers can render them.
    """
    try:
        with get_db_session() as session:
            yield session
    except AppError:
        raise
    except SQLAlchemyError as exc:
        logger.error("db.transaction_failed", exc_info=True, extra={"error_code": "persistence_error"})
        raise PersistenceError(f"Database operation failed: {exc.__class__.__name__}") from exc


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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except (SQLAlchemyError, ValueError) as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Accounts: the balance store. Only the token ledger writes token_balance.
accounts = Table(
    'accounts',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('role', String(20), nullable=False, server_default='user'),
    Column('plan', String(50), nullable=False, server_default='free'),
    Column('subscription_status', String(20), nullable=False, server_default='free'),
    Column('subscription_expires_at', DateTime(timezone=True), nullable=True),
    Column('token_balance', Numeric(12, 2), nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("role IN ('user', 'admin')", name='ck_accounts_role'),
    CheckConstraint("plan IN ('free', 'starter', 'pro', 'business_plus')", name='ck_accounts_plan'),
    CheckConstraint("subscription_status IN ('free', 'active', 'expired')", name='ck_accounts_status'),
    CheckConstraint('token_balance >= 0', name='ck_accounts_balance_non_negative'),
)

# Referral rewards: FIFO sub-ledger consumed before the subscription balance
referral_rewards = Table(
    'referral_rewards',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('referrer_account_id', String(100), ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
    Column('referred_account_id', String(100), ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
    Column('plan', String(50), nullable=False),
    Column('tokens_awarded', Numeric(12, 2), nullable=False),
    Column('tokens_remaining', Numeric(12, 2), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # One reward per referred account
    UniqueConstraint('referred_account_id', name='uq_referral_rewards_referred'),
    CheckConstraint('tokens_awarded > 0', name='ck_referral_rewards_awarded_positive'),
    CheckConstraint('tokens_remaining >= 0 AND tokens_remaining <= tokens_awarded', name='ck_referral_rewards_remaining_range'),
    # Consumption order lookup: (referrer, created_at, id)
    Index('idx_referral_rewards_referrer_created', 'referrer_account_id', 'created_at', 'id'),
)

# Generation jobs (one row per output; siblings share batch_id)
jobs = Table(
    'jobs',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('batch_id', String(36), nullable=False),
    Column('batch_index', Integer, nullable=False),
    Column('account_id', String(100), ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
    Column('plan', String(50), nullable=False),
    Column('mode', String(16), nullable=False),
    Column('status', String(32), nullable=False),
    Column('priority', Integer, nullable=False, server_default='0'),
    Column('label', Text, nullable=True),
    Column('model', String(128), nullable=True),
    Column('prompt', Text, nullable=True),
    Column('payload', JSON, nullable=True),
    Column('result_url', Text, nullable=True),
    Column('error_text', Text, nullable=True),
    Column('tokens_reserved', Numeric(12, 2), nullable=False, server_default='0'),
    Column('tokens_refunded', Numeric(12, 2), nullable=False, server_default='0'),
    # Reservation composition persisted for derived refunds
    Column('reservation', JSON, nullable=True),
    Column('usage_recorded', Boolean, nullable=False, server_default=false()),
    Column('worker_id', String(128), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=True),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    CheckConstraint("plan IN ('free', 'starter', 'pro', 'business_plus')", name='ck_jobs_plan'),
    CheckConstraint("mode IN ('basic', 'pro', 'ultra')", name='ck_jobs_mode'),
    CheckConstraint("status IN ('queued', 'processing', 'succeeded', 'failed', 'canceled')", name='ck_jobs_status'),
    CheckConstraint('tokens_refunded >= 0 AND tokens_refunded <= tokens_reserved', name='ck_jobs_refund_range'),
    UniqueConstraint('batch_id', 'batch_index', name='uq_jobs_batch_index'),
    # Admission: (account_id, created_at)
    Index('idx_jobs_account_created', 'account_id', 'created_at'),
    # Batch status: (batch_id, batch_index)
    Index('idx_jobs_batch', 'batch_id', 'batch_index'),
    # Claim + queue position: (plan, status, priority, created_at)
    Index('idx_jobs_queue', 'plan', 'status', 'priority', 'created_at'),
)

# Token usage audit (append-only, reporting only)
token_usage = Table(
    'token_usage',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
    Column('tokens_used', Numeric(12, 2), nullable=False),
    Column('service_type', String(64), nullable=False),
    Column('model_used', String(128), nullable=True),
    Column('prompt', Text, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_token_usage_account_created', 'account_id', 'created_at'),
)
