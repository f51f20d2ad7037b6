#!/usr/bin/env python
"""
Discovery Search Job

Runs one discovery search per project (cron or manual):
1. Necessity check
2. Generate queries and fan them out through the provider chain
3. Classify candidates with Claude
4. Merge into the discovery store

Usage:
    python scripts/run_search.py                  # every project
    python scripts/run_search.py --project <id>   # a single project

Exit codes:
    0 - Success
    1 - Failure (partial or complete)
"""

import argparse
import asyncio
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from agent_tracker.config import PipelineConfig
from agent_tracker.database import SessionLocal, init_db
from agent_tracker.models import Project
from agent_tracker.services.orchestrator import build_orchestrator
from agent_tracker.services.providers import NoProvidersConfigured

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger('run_search')


def _project_ids(project_id=None) -> list[str]:
    if project_id:
        return [project_id]
    session = SessionLocal()
    try:
        return [str(row[0]) for row in session.query(Project.id).order_by(Project.created_at).all()]
    finally:
        session.close()


async def _run_all(orchestrator, project_ids: list[str]) -> int:
    failures = 0
    for project_id in project_ids:
        logger.info("=" * 60)
        logger.info(f"SEARCHING PROJECT {project_id}")
        logger.info("=" * 60)
        try:
            result = await orchestrator.run_with_timeout(project_id)
        except Exception as e:
            logger.error(f"Search for {project_id} failed: {e}", exc_info=True)
            failures += 1
            continue

        stats = result.stats
        if result.skipped:
            logger.info(f"Skipped:           {stats.get('skip_reason')}")
            continue
        logger.info(f"Queries:           {stats.get('queries_succeeded', 0)}/{stats.get('queries_total', 0)}")
        logger.info(f"Candidates:        {stats.get('candidates_total', 0)}")
        logger.info(f"Duplicates:        {stats.get('duplicates_removed', 0)}")
        logger.info(f"Classified:        {stats.get('classified_total', 0)}")
        logger.info(f"Below threshold:   {stats.get('below_threshold', 0)}")
        logger.info(f"New:               {stats.get('inserted', 0)}")
        logger.info(f"Updated:           {stats.get('updated', 0)}")
        logger.info(f"Duration:          {stats.get('duration_seconds', 0):.1f}s")
        if stats.get('errors'):
            logger.warning(f"Errors: {stats['errors']}")
        if result.timed_out or (stats.get('queries_total') and not stats.get('queries_succeeded')):
            failures += 1
    return failures


def main():
    """Main entry point for the search job."""
    parser = argparse.ArgumentParser(description='Run discovery searches')
    parser.add_argument('--project', help='Only search this project id')
    args = parser.parse_args()

    try:
        init_db()
        config = PipelineConfig.from_env()
        orchestrator = build_orchestrator(config, SessionLocal)
        failures = asyncio.run(_run_all(orchestrator, _project_ids(args.project)))
    except NoProvidersConfigured as e:
        logger.error(f"JOB FAILED: {e}")
        return 1
    except Exception as e:
        logger.error(f"JOB FAILED: {e}", exc_info=True)
        return 1

    if failures:
        logger.error(f"{failures} project search(es) failed")
        return 1

    logger.info("=" * 60)
    logger.info("JOB COMPLETED SUCCESSFULLY")
    logger.info("=" * 60)
    return 0


if __name__ == '__main__':
    sys.exit(main())
