"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the settlement ledger.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine with dialect-appropriate connection settings"""
    if database_url.startswith("sqlite"):
        # Services reach the store from worker threads (asyncio.to_thread)
        sqlite_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        @event.listens_for(sqlite_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "settlement_ledger",  # For monitoring in pg_stat_activity
        },
    )


if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

engine = build_engine(Config.DATABASE_URL)

def make_session_factory(bind: Engine) -> sessionmaker:
    """Session factory whose returned ledger entries stay readable after close"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind
    )


# Session factory
SessionLocal = make_session_factory(engine)


@contextmanager
def managed_session(session_factory=None):
    """
    Transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on any error, always closes.
    """
    factory = session_factory or SessionLocal
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ DB_SESSION: rolled back transaction: {e}")
        raise
    finally:
        session.close()


def create_tables(bind: Engine = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

    Base.metadata.create_all(bind=target, checkfirst=True)

    existing_tables = inspect(target).get_table_names()
    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
    return True
