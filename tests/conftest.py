"""
Root pytest configuration for Agent Tracker tests

Points the app at an in-memory SQLite database before anything imports it,
creates the schema and provides common fixtures
"""
import sys
import os

import pytest

# Add project root to Python path so tests can import agent_tracker
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Must be set before agent_tracker.database builds its engine
os.environ['DATABASE_URL'] = 'sqlite://'

from agent_tracker.database import Base, SessionLocal, init_db  # noqa: E402

init_db()


@pytest.fixture(scope="function")
def db_session():
    """
    Provides a database session for tests.

    Session is automatically closed after each test.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function", autouse=True)
def cleanup_tables():
    """Empty every table after each test."""
    yield

    session = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()
