"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the escrow engine.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError, ProgrammingError

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an engine for PostgreSQL in production or SQLite in development/tests"""
    url = database_url or Config.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("sqlite"):
        # Worker threads and the scheduler share one SQLite file
        return create_engine(
            url,
            echo=Config.DATABASE_ECHO if echo is None else echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    return create_engine(
        url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=Config.DATABASE_ECHO if echo is None else echo,
        connect_args={
            "connect_timeout": 10,
            "application_name": "escrow_engine",
        },
    )


engine = build_engine()

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info(f"🏗️ Creating database tables ({len(Base.metadata.tables)} models)...")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except ProgrammingError as e:
        if "already exists" in str(e):
            logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")
            return True
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


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


def test_connection(bind: Optional[Engine] = None) -> bool:
    """Test database connection"""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except OperationalError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
