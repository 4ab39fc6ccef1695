"""
Engine and sessions for the back-office database.

PostgreSQL in production (psycopg2, pooled); an in-memory SQLite URL is
accepted so the test suite can run without a server. Services take an
explicit Session; HTTP handlers and jobs get theirs from here.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL must be set (postgresql://... or sqlite://)")

IN_MEMORY_SQLITE_URLS = ("sqlite://", "sqlite:///:memory:")


def build_engine(database_url: str) -> Engine:
    """Sync engine; pool sizing applies to PostgreSQL only"""
    if database_url.startswith("sqlite"):
        sqlite_options = {
            "connect_args": {"check_same_thread": False},
            "echo": Config.DATABASE_ECHO,
        }
        if database_url in IN_MEMORY_SQLITE_URLS:
            # One shared connection, otherwise every checkout sees an empty database
            sqlite_options["poolclass"] = StaticPool
        return create_engine(database_url, **sqlite_options)

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30,
        echo=Config.DATABASE_ECHO,
        connect_args={
            "connect_timeout": 10,
            "application_name": "checkout_backoffice",
        },
    )


engine = build_engine(Config.DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


def create_tables() -> bool:
    """Create missing tables at startup; False if the schema could not be set up"""
    logger.info(f"🏗️ DATABASE: Ensuring {len(Base.metadata.tables)} back-office tables on {Config.DATABASE_SOURCE}")
    try:
        try:
            Base.metadata.create_all(bind=engine, checkfirst=True)
        except ProgrammingError as e:
            # Concurrent workers racing on the same index
            if "already exists" not in str(e):
                raise
            logger.info(f"⚠️ DATABASE: Schema objects already present: {e}")

        table_count = len(inspect(engine).get_table_names())
        logger.info(f"✅ DATABASE: Schema ready ({table_count} tables)")
        return True
    except Exception as e:
        logger.error(f"❌ DATABASE: Schema setup failed: {e}", exc_info=True)
        return False


@contextmanager
def managed_session() -> Iterator[Session]:
    """Session that commits on success, rolls back and re-raises on error"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ DATABASE: Rolled back session after error: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Round-trip a SELECT 1 for the health endpoint"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ DATABASE: Health check query failed: {e}")
        return False
