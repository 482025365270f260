"""
Database connection and session management
Engines are created lazily and cached per URL
"""
import threading
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from .models import Base
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

_engines: Dict[str, Engine] = {}
_session_factories: Dict[str, sessionmaker] = {}
_lock = threading.Lock()


def get_engine(database_url: str) -> Engine:
    """
    Get or create database engine (lazy-loaded with optimized pooling)

    Connection pooling configuration:
    - SQLite: StaticPool (single shared connection)
    - PostgreSQL and others: QueuePool (5-15 connections)
    """
    with _lock:
        engine = _engines.get(database_url)
        if engine is not None:
            return engine

        if database_url.startswith('sqlite'):
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False
            )
            logger.info("Database engine created: SQLite (local)")
        else:
            engine = create_engine(
                database_url,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_recycle=3600,
                pool_pre_ping=True,
                poolclass=QueuePool,
                echo=False
            )

            @event.listens_for(engine, "connect")
            def receive_connect(dbapi_conn, connection_record):
                logger.debug("Database connection established")

            logger.info("Database engine created: pooled (pool_size=5, max_overflow=10)")

        _engines[database_url] = engine
        return engine


def get_session_factory(database_url: str) -> sessionmaker:
    """Get or create the session factory for ``database_url``"""
    with _lock:
        factory = _session_factories.get(database_url)
    if factory is None:
        engine = get_engine(database_url)
        factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=engine,
            expire_on_commit=False
        )
        with _lock:
            _session_factories[database_url] = factory
    return factory


def init_db(database_url: str) -> Engine:
    """Create all fabric bookkeeping tables"""
    engine = get_engine(database_url)
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("[OK] Database tables created successfully")
    except Exception as e:
        logger.error(f"[ERROR] Failed to create database tables: {e}", exc_info=True)
        raise
    return engine


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope: commit on success, roll back on error

    Usage:
        with session_scope(get_session_factory(url)) as session:
            session.add(row)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_db_connections(database_url: Optional[str] = None) -> None:
    """
    Dispose engines (one URL or all)
    Useful for cleanup in tests or shutdown
    """
    with _lock:
        urls = [database_url] if database_url else list(_engines.keys())
        for url in urls:
            engine = _engines.pop(url, None)
            _session_factories.pop(url, None)
            if engine is not None:
                engine.dispose()
    logger.info("Database connections closed")
