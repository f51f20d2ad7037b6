"""
Newsletter Import Service

Pulls unread newsletters from the mailbox and feeds them through the same
extract → classify → merge path as web search. The mailbox is a blocking
boundary run on an executor thread under its own connection timeout.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from agent_tracker.config import PipelineConfig
from agent_tracker.models import Project
from agent_tracker.services.content_extractor import SourceFormat, extract
from agent_tracker.services.items import ProjectContext
from agent_tracker.services.lifecycle import parse_uuid
from agent_tracker.services.mailbox import Mailbox, RawMessage
from agent_tracker.services.merge import DiscoveryStore, touch_project
from agent_tracker.services.relevance_classifier import RelevanceClassifier

logger = logging.getLogger(__name__)

# Section text handed to the classifier as extra context
SECTION_CONTEXT_LIMIT = 2000


async def fetch_newsletters(mailbox: Mailbox, senders: list[str], timeout: float) -> list[RawMessage]:
    """Bounded asynchronous wrapper around the blocking mailbox fetch."""
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(
        loop.run_in_executor(None, mailbox.fetch_unread_from, senders),
        timeout=timeout,
    )


async def _mark_imported(mailbox: Mailbox, uids: list[str], timeout: float, stats: dict) -> None:
    if not uids:
        return
    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(loop.run_in_executor(None, mailbox.mark_seen, uids), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"Marking {len(uids)} newsletters read timed out after {timeout}s")
        stats['errors'].append('Mailbox timeout while marking read')
    except Exception as e:
        logger.error(f"Could not mark newsletters read: {e}")
        stats['errors'].append(f"Mailbox: {e}")


def _section_context(sections: dict[str, str]) -> str:
    parts = []
    budget = SECTION_CONTEXT_LIMIT
    for name, text in sections.items():
        snippet = text[:max(0, budget)]
        if not snippet:
            break
        parts.append(f"[{name}] {snippet}")
        budget -= len(snippet)
    return '\n'.join(parts)


async def import_newsletters(project_id, config: PipelineConfig, session_factory,
                             mailbox: Optional[Mailbox] = None,
                             classifier: Optional[RelevanceClassifier] = None,
                             store: Optional[DiscoveryStore] = None) -> dict:
    """
    Import unread newsletters as discoveries for a project.

    Returns:
        Stats dict with per-run counts and an errors list
    """
    start_time = datetime.now(timezone.utc)
    job_start = time.time()
    stats = {
        'start_time': start_time.isoformat(),
        'emails_fetched': 0,
        'emails_processed': 0,
        'items_extracted': 0,
        'inserted': 0,
        'updated': 0,
        'unchanged': 0,
        'below_threshold': 0,
        'errors': [],
    }

    project_uuid = parse_uuid(project_id)
    session = session_factory()
    try:
        project = session.get(Project, project_uuid) if project_uuid else None
        if project is None:
            raise LookupError(f"Project {project_id} not found")
        context = ProjectContext.from_project(project)
        snapshot = project.context_snapshot()
    finally:
        session.close()

    if mailbox is None:
        if not config.mailbox_configured:
            stats['errors'].append('Mailbox not configured')
            logger.warning("Newsletter import skipped: mailbox not configured")
            return stats
        mailbox = Mailbox(config.imap_host, config.imap_user, config.imap_password,
                          port=config.imap_port, timeout=config.mailbox_timeout_seconds)

    classifier = classifier or RelevanceClassifier(config)
    store = store or DiscoveryStore(session_factory, config.relevance_threshold)

    try:
        messages = await fetch_newsletters(mailbox, config.newsletter_sources, config.mailbox_timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(f"Mailbox fetch timed out after {config.mailbox_timeout_seconds}s")
        stats['errors'].append('Mailbox timeout')
        messages = []
    except Exception as e:
        logger.error(f"Mailbox fetch failed: {e}")
        stats['errors'].append(f"Mailbox: {e}")
        messages = []

    stats['emails_fetched'] = len(messages)
    imported_uids = []

    try:
        for message in messages:
            source_format = SourceFormat.from_sender(message.sender)
            extraction = extract(message.body, source_format)
            stats['items_extracted'] += len(extraction.items)

            if extraction.items:
                message_context = context.with_extra(_section_context(extraction.sections)) if extraction.sections else context
                classified = await classifier.classify_all(extraction.items, message_context)

                merge_stats = await store.store(project_uuid, classified, {
                    **snapshot,
                    'origin': 'newsletter',
                    'newsletter_name': message.sender,
                    'newsletter_subject': message.subject,
                })
                for key, value in merge_stats.as_dict().items():
                    stats[key] += value
            else:
                logger.info(f"No items in '{message.subject[:60]}' from {message.sender}")

            stats['emails_processed'] += 1
            if message.uid:
                imported_uids.append(message.uid)
    finally:
        # Only messages that made it through the pipeline are flagged read
        await _mark_imported(mailbox, imported_uids, config.mailbox_timeout_seconds, stats)
        touch_project(session_factory, project_uuid)

    stats['end_time'] = datetime.now(timezone.utc).isoformat()
    stats['duration_seconds'] = round(time.time() - job_start, 2)
    logger.info(json.dumps({"event": "newsletter_import_complete", "project_id": str(project_uuid), **stats}))
    return stats
