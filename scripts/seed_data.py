#!/usr/bin/env python
"""
Seed Data Script

Seeds the database with projects from data/projects.json.

Usage:
    python scripts/seed_data.py

Idempotent: projects are matched by name and never duplicated.
"""

import json
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from agent_tracker.database import SessionLocal, init_db
from agent_tracker.models import Project

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger('seed_data')

DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'data')


def load_json(filename: str) -> list:
    """Load JSON file from data directory."""
    filepath = os.path.join(DATA_DIR, filename)
    with open(filepath, 'r') as f:
        return json.load(f)


def seed_projects():
    session = SessionLocal()
    created = 0
    skipped = 0

    try:
        projects = load_json('projects.json')
        logger.info(f"Loading {len(projects)} projects from projects.json")

        for project_data in projects:
            existing = session.query(Project).filter_by(name=project_data['name']).first()
            if existing:
                logger.debug(f"Project '{project_data['name']}' already exists, skipping")
                skipped += 1
                continue

            project = Project(
                name=project_data['name'],
                description=project_data.get('description', ''),
                domain=project_data.get('domain', ''),
                progress=project_data.get('progress', 'Not Started'),
            )
            project.set_goals(project_data.get('goals'))
            project.set_interests(project_data.get('interests'))
            session.add(project)
            created += 1
            logger.info(f"Created project: {project_data['name']}")

        session.commit()
        logger.info(f"Project seeding complete: {created} created, {skipped} skipped")

    except FileNotFoundError:
        logger.error("data/projects.json not found - please create it first")
        raise
    except Exception as e:
        logger.error(f"Error seeding projects: {e}")
        session.rollback()
        raise
    finally:
        session.close()

    return created, skipped


def main():
    try:
        init_db()
        seed_projects()
        return 0
    except Exception as e:
        logger.error(f"Seeding failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
