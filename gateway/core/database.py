"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine construction with connection pooling
- Session scope helper
- Table definitions for the billing, tier and quota stores

Engines are built explicitly at startup (see gateway.main.create_app) and
passed to the stores; nothing here holds a global connection.
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import and_, insert, update, create_engine, MetaData, Table, Column, Integer, BigInteger, String, DateTime, Boolean, JSON, Text, Index, PrimaryKeyConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, false
import logging


logger = logging.getLogger("gateway")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Seconds a SQLite writer waits on a locked database before failing
SQLITE_BUSY_TIMEOUT = 30

# Built once; each session is bound to the engine passed to session_scope
SessionLocal = sessionmaker(autoflush=False)


def resolve_database_url(database_url: Optional[str] = None) -> str:
    """
    Validate the database URL handed over by Settings.

    Raises:
        ValueError: If no URL is configured
    """
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )
    return database_url


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Build an SQLAlchemy engine.

    SQLite URLs use the dialect's default pool; everything else gets a
    QueuePool sized for the gateway's request concurrency.
    """
    url = resolve_database_url(database_url)
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"timeout": SQLITE_BUSY_TIMEOUT})
    return create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


def get_session_factory() -> sessionmaker:
    """Get the shared session factory."""
    return SessionLocal


@contextmanager
def session_scope(engine: Engine):
    """
    Context manager for database sessions.

    Commits on success, rolls back and re-raises on error.

    Usage:
        with session_scope(engine) as session:
            session.execute(...)
    """
    session = get_session_factory()(bind=engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def upsert(session, table: Table, key: dict, values: dict) -> None:
    """
    Overwrite the row identified by `key`, inserting it if absent.

    Portable across SQLite and PostgreSQL. A concurrent first insert
    surfaces as IntegrityError; callers retry in a fresh session.
    """
    condition = and_(*[table.c[name] == value for name, value in key.items()])
    result = session.execute(update(table).where(condition).values(**values))
    if result.rowcount == 0:
        session.execute(insert(table).values(**key, **values))


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Stripe customer -> internal user (last write wins)
customer_links = Table(
    'customer_links',
    metadata,
    Column('customer_id', String(100), primary_key=True),
    Column('user_id', String(128), nullable=False, index=True),
    Column('linked_at', BigInteger, nullable=True),  # Stripe event `created` (epoch seconds)
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# One snapshot per subscription, overwritten wholesale
subscription_snapshots = Table(
    'subscription_snapshots',
    metadata,
    Column('subscription_id', String(100), primary_key=True),
    Column('customer_id', String(100), nullable=False, index=True),
    Column('price_id', String(100), nullable=True),
    Column('status', String(50), nullable=False),
    Column('current_period_end', BigInteger, nullable=True),  # epoch seconds, as sent by Stripe
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Gating source of truth
user_tiers = Table(
    'user_tiers',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('tier', String(20), nullable=False),
    Column('source', String(20), nullable=False, server_default='stripe'),
    Column('customer_id', String(100), nullable=True),
    Column('subscription_id', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Per-user, per-kind, per-day consumption
quota_counters = Table(
    'quota_counters',
    metadata,
    Column('user_id', String(128), nullable=False),
    Column('kind', String(20), nullable=False),
    Column('day', String(10), nullable=False),  # YYYY-MM-DD
    Column('count', Integer, nullable=False, server_default='0'),
    PrimaryKeyConstraint('user_id', 'kind', 'day', name='pk_quota_counters'),
)

# Delivered Stripe events (audit + redelivery short-circuit)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_billing_events_received_at', 'received_at'),
)

# Subscription events waiting for a customer link
pending_subscription_events = Table(
    'pending_subscription_events',
    metadata,
    Column('customer_id', String(100), primary_key=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('created', BigInteger, nullable=True),  # Stripe event `created` (epoch seconds)
    Column('payload', JSON, nullable=False),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
