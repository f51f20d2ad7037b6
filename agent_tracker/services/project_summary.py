"""
Project summary and recommendations built from stored discoveries.
"""

import logging
from uuid import UUID

from sqlalchemy import desc, or_

from agent_tracker.models import Discovery, Project

logger = logging.getLogger(__name__)

SUMMARY_SIZE = 10


def generate_project_summary(session, project_id: UUID, limit: int = SUMMARY_SIZE) -> dict:
    """
    Top unpresented, visible discoveries by score; marks them presented.

    Returns:
        Dict with project name, progress and the discoveries included
    """
    project = session.get(Project, project_id)
    if project is None:
        raise LookupError(f"Project {project_id} not found")

    discoveries = session.query(Discovery).filter(
        Discovery.project_id == project_id,
        Discovery.presented == False,  # noqa: E712
        Discovery.hidden == False,  # noqa: E712
    ).order_by(desc(Discovery.relevance_score), desc(Discovery.discovered_at)).limit(limit).all()

    for discovery in discoveries:
        discovery.presented = True
    session.commit()

    logger.info(f"Summary for project {project_id}: {len(discoveries)} discoveries presented")
    return {
        'project': project.name,
        'progress': project.progress,
        'discoveries': [d.to_dict() for d in discoveries],
    }


def get_recommendations(session, project_id: UUID, limit: int = SUMMARY_SIZE) -> list[Discovery]:
    """Highest-scoring visible discoveries the user has not rejected."""
    return session.query(Discovery).filter(
        Discovery.project_id == project_id,
        Discovery.hidden == False,  # noqa: E712
        or_(Discovery.feedback_useful.is_(None), Discovery.feedback_useful == True),  # noqa: E712
    ).order_by(desc(Discovery.relevance_score), desc(Discovery.discovered_at)).limit(limit).all()
