"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the CADOK trade security core.
"""

import logging
from sqlalchemy import create_engine, event, text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend"""
    if database_url.startswith("sqlite"):
        # Sessions are handed across FastAPI worker threads
        sqlite_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
            echo=False,
        )
        _enable_sqlite_transactions(sqlite_engine)
        return sqlite_engine
    return create_engine(
        database_url,
        pool_size=7,           # Base pool
        max_overflow=15,       # Burst capacity
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "cadok_trade_security",
        },
    )


def _enable_sqlite_transactions(sqlite_engine: Engine) -> None:
    """
    pysqlite defers BEGIN until the first DML statement, which breaks SAVEPOINT and
    lets two writers read the same row before either locks it. Take over transaction
    control and start every transaction with BEGIN IMMEDIATE so writers serialize.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory used by every service; expire_on_commit off so records stay readable after commit"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
    )


engine = build_engine(Config.DATABASE_URL)

SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine = None):
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        Base.metadata.create_all(bind=target, checkfirst=True)

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


def check_connection(session_factory: sessionmaker = None) -> bool:
    """Round-trip a SELECT 1 through a session from the given factory"""
    session = (session_factory or SessionLocal)()
    try:
        session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection check failed: {e}")
        return False
    finally:
        session.close()
