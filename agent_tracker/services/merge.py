"""
Deduplication & Merge Engine

Reconciles classified items against stored discoveries keyed by
(project_id, source). The policy lives in the pure merge() function; the
store applies it with a per-key lock and a compare-and-swap UPDATE so the
stored relevance score never goes down, even with concurrent writers.
"""

import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError

from agent_tracker.models import Discovery, Project, utcnow
from agent_tracker.services.items import ClassifiedItem

logger = logging.getLogger(__name__)

INSERT = 'insert'
UPDATE = 'update'
SKIP = 'skip'


class StoreUnavailable(Exception):
    """The discovery store could not be reached."""


@dataclass
class MergeDecision:
    action: str
    fields: dict = field(default_factory=dict)


@dataclass
class MergeStats:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    below_threshold: int = 0

    def as_dict(self) -> dict:
        return {
            'inserted': self.inserted,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'below_threshold': self.below_threshold,
        }


def merge(existing: Optional[Discovery], incoming: ClassifiedItem,
          context_snapshot: Optional[dict] = None, now: Optional[datetime] = None) -> MergeDecision:
    """
    Decide how an incoming classification changes a stored discovery.

    - No existing record: insert with discovered_at = now and a context snapshot
    - Strictly higher score: overwrite score, categories, type and (if present)
      publication date; review state is never touched
    - Strictly higher score on a hidden record: raise the score only
    - Otherwise: skip

    Args:
        existing: Stored discovery (or anything with relevance_score), or None
        incoming: Newly classified item
        context_snapshot: Project phase/progress captured on insert
        now: Clock override

    Returns:
        MergeDecision describing the write to perform
    """
    if existing is None:
        return MergeDecision(INSERT, {
            'source': incoming.source,
            'title': incoming.title[:500],
            'description': incoming.description or '',
            'relevance_score': incoming.relevance_score,
            'categories': list(incoming.categories),
            'content_type': incoming.content_type,
            'reasoning': incoming.reasoning,
            'publication_date': incoming.publication_date,
            'discovered_at': now or utcnow(),
            'search_query_used': incoming.search_query,
            'search_context': dict(context_snapshot or {}),
        })

    if incoming.relevance_score <= existing.relevance_score:
        return MergeDecision(SKIP)

    if getattr(existing, 'hidden', False):
        return MergeDecision(UPDATE, {'relevance_score': incoming.relevance_score})

    fields = {
        'relevance_score': incoming.relevance_score,
        'categories': list(incoming.categories),
        'content_type': incoming.content_type,
        'reasoning': incoming.reasoning,
    }
    if incoming.publication_date is not None:
        fields['publication_date'] = incoming.publication_date
    return MergeDecision(UPDATE, fields)


class _KeyLock:
    """asyncio.Lock plus a count of the writers holding or awaiting it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class DiscoveryStore:
    """
    Applies merge decisions to the database.

    Writes for the same (project_id, source) are serialized within the
    process by an asyncio.Lock; across processes the conditional UPDATE
    (WHERE relevance_score < new) is the compare-and-swap. Database work
    runs on a writer thread pool, off the event loop.
    """

    def __init__(self, session_factory, relevance_threshold: int = 5, max_writers: int = 1):
        self.session_factory = session_factory
        self.relevance_threshold = relevance_threshold
        self.max_writers = max(1, max_writers)
        self._locks: dict[tuple[str, str], _KeyLock] = {}

    @asynccontextmanager
    async def _locked(self, key: tuple[str, str]):
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def store(self, project_id: UUID, items: list[ClassifiedItem],
                    context_snapshot: Optional[dict] = None) -> MergeStats:
        """
        Persist items at or above the relevance threshold.

        Raises:
            StoreUnavailable: the database could not be reached
        """
        stats = MergeStats()
        keepers = []
        for item in items:
            if item.relevance_score < self.relevance_threshold:
                stats.below_threshold += 1
            else:
                keepers.append(item)

        loop = asyncio.get_running_loop()

        with ThreadPoolExecutor(max_workers=self.max_writers, thread_name_prefix='discovery-writer') as writers:

            async def _store_one(item: ClassifiedItem):
                async with self._locked((str(project_id), item.source)):
                    action = await loop.run_in_executor(writers, self.apply, project_id, item, context_snapshot)
                if action == INSERT:
                    stats.inserted += 1
                elif action == UPDATE:
                    stats.updated += 1
                else:
                    stats.unchanged += 1

            await asyncio.gather(*(_store_one(item) for item in keepers))

        logger.info(json.dumps({
            "event": "merge_complete",
            "project_id": str(project_id),
            **stats.as_dict(),
        }))
        return stats

    def apply(self, project_id: UUID, item: ClassifiedItem, context_snapshot: Optional[dict] = None) -> str:
        """Merge one item in its own transaction; returns the action taken."""
        session = self.session_factory()
        try:
            existing = self._find(session, project_id, item.source)
            decision = merge(existing, item, context_snapshot)

            if decision.action == INSERT:
                session.add(Discovery(project_id=project_id, **decision.fields))
                try:
                    session.commit()
                    return INSERT
                except IntegrityError:
                    # Another writer inserted the same key first
                    session.rollback()
                    logger.info(f"Insert race on {item.source[:80]}, retrying as update")
                    existing = self._find(session, project_id, item.source)
                    decision = merge(existing, item) if existing is not None else MergeDecision(SKIP)

            if decision.action == UPDATE:
                return self._compare_and_swap(session, project_id, item.source, decision)

            return SKIP

        except OperationalError as e:
            session.rollback()
            logger.error(f"Discovery store unavailable: {e}")
            raise StoreUnavailable(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _find(session, project_id: UUID, source: str) -> Optional[Discovery]:
        return session.query(Discovery).filter(
            Discovery.project_id == project_id,
            Discovery.source == source
        ).first()

    def _compare_and_swap(self, session, project_id: UUID, source: str, decision: MergeDecision) -> str:
        """
        Conditional UPDATE guarded on the stored score.

        Annotation fields are only written while the row is visible; if the
        row was hidden after it was read, only the score is raised.
        """
        new_score = decision.fields['relevance_score']
        guard = (
            Discovery.project_id == project_id,
            Discovery.source == source,
            Discovery.relevance_score < new_score,
        )

        rowcount = 0
        if len(decision.fields) > 1:
            rowcount = self._execute_update(session, guard + (Discovery.hidden.is_(False),), decision.fields)
        if not rowcount:
            rowcount = self._execute_update(session, guard, {'relevance_score': new_score})
        session.commit()

        if rowcount:
            logger.debug(f"Raised score to {new_score} for {source[:80]}")
            return UPDATE
        return SKIP

    @staticmethod
    def _execute_update(session, conditions: tuple, values: dict) -> int:
        result = session.execute(
            update(Discovery)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


def touch_project(session_factory, project_id: UUID, when: Optional[datetime] = None) -> None:
    """Stamp project.last_updated; used at the end of every pipeline run."""
    session = session_factory()
    try:
        project = session.get(Project, project_id)
        if project is not None:
            project.touch(when)
            session.commit()
    except OperationalError as e:
        session.rollback()
        raise StoreUnavailable(str(e)) from e
    finally:
        session.close()
