"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- SQLite support for tests and local development
- Table definitions for shops, billing, tokens and generation jobs
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    event,
    MetaData,
    Table,
    Column,
    Integer,
    BigInteger,
    String,
    DateTime,
    Boolean,
    JSON,
    Numeric,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    PrimaryKeyConstraint,
    text,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from backend.core.config import settings

logger = logging.getLogger("aiseo")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Seconds a SQLite writer waits on a locked database
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


def _configure_sqlite(engine) -> None:
    """Serialize SQLite writers and enforce foreign keys.

    pysqlite's implicit BEGIN is disabled and every transaction starts with
    BEGIN IMMEDIATE, so a conditional UPDATE can never lose a race to a
    concurrent writer on the same file.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


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
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        _configure_sqlite(_engine)
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

    Commits on clean exit, rolls back on any exception.

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
def session_scope(session: Optional[Session] = None):
    """Join the caller's transaction when one is given, else open a new one."""
    if session is not None:
        yield session
        return
    with get_db_session() as own:
        yield own


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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"[db] connection check failed: {e}")
        return False


# Shops (one row per installed store)
shops = Table(
    'shops',
    metadata,
    Column('shop', String(255), primary_key=True),
    Column('access_token', Text, nullable=True),
    Column('installed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Subscriptions: plan, trial and activation state
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('shop', String(255), ForeignKey('shops.shop', ondelete='CASCADE'), primary_key=True),
    Column('plan', String(50), nullable=False),
    Column('pending_plan', String(50), nullable=True),
    Column('pending_end_trial', Boolean, nullable=False, default=False),
    Column('status', String(20), nullable=False, default='active'),  # pending, active
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('activated', Boolean, nullable=False, default=False),
    Column('activated_at', DateTime(timezone=True), nullable=True),
    Column('provider_subscription_id', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Token balances: the only contended shared resource
token_balances = Table(
    'token_balances',
    metadata,
    Column('shop', String(255), ForeignKey('shops.shop', ondelete='CASCADE'), primary_key=True),
    Column('balance', BigInteger, nullable=False, default=0),
    Column('total_purchased', BigInteger, nullable=False, default=0),
    Column('total_used', BigInteger, nullable=False, default=0),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('balance >= 0', name='ck_token_balances_non_negative'),
)

# Append-only token history
token_ledger = Table(
    'token_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('shop', String(255), ForeignKey('shops.shop', ondelete='CASCADE'), nullable=False),
    Column('event_type', String(20), nullable=False),  # credit, debit, refund
    Column('reason', String(50), nullable=False),
    Column('amount', BigInteger, nullable=False),
    Column('balance_after', BigInteger, nullable=False),
    Column('reference', String(255), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('shop', 'event_type', 'reference', name='uq_token_ledger_shop_event_reference'),
    Index('idx_token_ledger_shop_created', 'shop', 'created_at'),
)

# One-time token purchases awaiting or past merchant confirmation
token_purchases = Table(
    'token_purchases',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('shop', String(255), ForeignKey('shops.shop', ondelete='CASCADE'), nullable=False, index=True),
    Column('charge_id', String(255), nullable=False, unique=True),
    Column('usd_amount', Numeric(10, 2), nullable=False),
    Column('tokens', BigInteger, nullable=False),
    Column('status', String(20), nullable=False, default='pending'),  # pending, completed, failed
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('completed_at', DateTime(timezone=True), nullable=True),
)

# Generation job slots: one row per (shop, job_type)
generation_jobs = Table(
    'generation_jobs',
    metadata,
    Column('shop', String(255), ForeignKey('shops.shop', ondelete='CASCADE'), nullable=False),
    Column('job_type', String(50), nullable=False),
    Column('status', String(20), nullable=False),  # queued, processing, completed, failed
    Column('version', Integer, nullable=False, default=1),
    Column('enqueued_at', DateTime(timezone=True), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=True),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('failed_at', DateTime(timezone=True), nullable=True),
    Column('tokens_debited', BigInteger, nullable=False, default=0),
    Column('force_basic_seo', Boolean, nullable=False, default=False),
    Column('result_summary', JSON, nullable=True),
    Column('error_code', String(50), nullable=True),
    Column('error_message', Text, nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    PrimaryKeyConstraint('shop', 'job_type', name='pk_generation_jobs'),
    # Queue position lookups: queued jobs of a type in FIFO order
    Index('idx_generation_jobs_type_status_enqueued', 'job_type', 'status', 'enqueued_at'),
)

# Last successful generation per (shop, job_type), written by the content side
content_records = Table(
    'content_records',
    metadata,
    Column('shop', String(255), ForeignKey('shops.shop', ondelete='CASCADE'), nullable=False),
    Column('job_type', String(50), nullable=False),
    Column('generated_at', DateTime(timezone=True), nullable=False),
    Column('summary', JSON, nullable=True),
    PrimaryKeyConstraint('shop', 'job_type', name='pk_content_records'),
)

# Catalog counts synced from the storefront
shop_catalog_stats = Table(
    'shop_catalog_stats',
    metadata,
    Column('shop', String(255), ForeignKey('shops.shop', ondelete='CASCADE'), primary_key=True),
    Column('product_count', Integer, nullable=False, default=0),
    Column('collection_count', Integer, nullable=False, default=0),
    Column('ai_optimized_count', Integer, nullable=False, default=0),
    Column('basic_seo_count', Integer, nullable=False, default=0),
    Column('synced_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
