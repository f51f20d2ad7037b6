"""
Database configuration and session management for Agent Tracker
"""
import logging
import os
import time

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Create declarative base for all models
Base = declarative_base()


def _sanitize_url(database_url: str) -> str:
    """Hide the password portion of a database URL for logging."""
    if '@' in database_url:
        parts = database_url.split('@')
        return parts[0].split(':')[0] + ':***@' + parts[1]
    return database_url[:30] + "..."


def create_db_engine(database_url=None):
    """
    Create SQLAlchemy engine with connection pooling

    Args:
        database_url: Optional database URL override

    Returns:
        SQLAlchemy engine instance
    """
    if database_url is None:
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise ValueError("DATABASE_URL environment variable not set")

    logger.info(f"Connecting to: {_sanitize_url(database_url)}")
    engine_start = time.time()

    echo = os.getenv("FLASK_DEBUG", "False") == "True"

    if database_url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    else:
        engine = create_engine(
            database_url,
            pool_size=5,               # Base connection pool size
            max_overflow=10,           # Max additional connections
            pool_pre_ping=True,        # Verify connections before use
            pool_recycle=3600,         # Recycle connections after 1 hour
            connect_args={"connect_timeout": 30},
            echo=echo,
        )

    logger.info(f"Engine created in {time.time() - engine_start:.1f}s")
    return engine


# Create default engine and session factory
engine = create_db_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Create all tables that do not exist yet."""
    from agent_tracker import models  # noqa: F401  (registers mappers)
    Base.metadata.create_all(bind=engine)


def get_session():
    """
    Get a database session (context manager compatible)

    Usage:
        with contextmanager(get_session)() as session:
            session.query(Discovery).all()
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
