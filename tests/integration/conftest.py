"""
Pytest configuration for integration tests

Provides a seeded project and a pipeline config with no credentials
"""
import pytest

from agent_tracker.config import PipelineConfig
from tests.fixtures.sample_data import create_project


@pytest.fixture
def project(db_session):
    """A committed project with goals and interests."""
    project = create_project()
    db_session.add(project)
    db_session.commit()
    return project


@pytest.fixture
def pipeline_config():
    """Config with no credentials and short timeouts."""
    return PipelineConfig(
        anthropic_api_key=None,
        exa_api_key=None,
        relevance_threshold=5,
        queries_per_run=1,
        provider_timeout_seconds=1.0,
        classifier_timeout_seconds=1.0,
        run_timeout_seconds=5.0,
    )
