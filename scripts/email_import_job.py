#!/usr/bin/env python
"""
Newsletter Import Job

Reads unread newsletters from the configured mailbox and imports their
items as discoveries for a project.

Usage:
    python scripts/email_import_job.py --project <id>

Exit codes:
    0 - Success
    1 - Failure
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
from agent_tracker.services.newsletter_import import import_newsletters

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger('email_import_job')


def main():
    parser = argparse.ArgumentParser(description='Import newsletters as discoveries')
    parser.add_argument('--project', required=True, help='Project id to import into')
    args = parser.parse_args()

    logger.info("=" * 60)
    logger.info("NEWSLETTER IMPORT STARTING")
    logger.info("=" * 60)

    try:
        init_db()
        config = PipelineConfig.from_env()
        stats = asyncio.run(import_newsletters(args.project, config, SessionLocal))
    except Exception as e:
        logger.error(f"JOB FAILED: {e}", exc_info=True)
        return 1

    logger.info(f"Emails fetched:    {stats.get('emails_fetched', 0)}")
    logger.info(f"Emails processed:  {stats.get('emails_processed', 0)}")
    logger.info(f"Items extracted:   {stats.get('items_extracted', 0)}")
    logger.info(f"New:               {stats.get('inserted', 0)}")
    logger.info(f"Updated:           {stats.get('updated', 0)}")

    if stats.get('errors'):
        logger.warning(f"Errors: {stats['errors']}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
