"""
Discovery Lifecycle Store

Review-state transitions for discoveries:
- new → viewed (one-way, timestamped)
- hidden / unhidden (toggle, independent of viewed)
- feedback useful / not useful / unset (any time, implies viewed)

Nothing is ever deleted; hiding is the only form of removal.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import desc, nullslast

from agent_tracker.models import (
    ContextEntry, ContextEntryType, Discovery, utcnow
)

logger = logging.getLogger(__name__)

FILTERS = ('all', 'new', 'viewed', 'hidden', 'useful', 'not_useful')
SORTS = ('relevance', 'date', 'feedback')
BULK_ACTIONS = ('mark_viewed', 'mark_unviewed', 'hide', 'unhide')

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 200


@dataclass
class BulkResult:
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


def parse_uuid(value) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


# =============================================================================
# Single-item transitions
# =============================================================================

def mark_viewed(discovery: Discovery, when: Optional[datetime] = None) -> Discovery:
    """Set viewed; the first viewed_at timestamp is kept."""
    if not discovery.viewed:
        discovery.viewed = True
        discovery.viewed_at = when or utcnow()
    return discovery


def mark_unviewed(discovery: Discovery) -> Discovery:
    """Explicit user reset back to new."""
    discovery.viewed = False
    discovery.viewed_at = None
    return discovery


def set_hidden(discovery: Discovery, hidden: bool) -> Discovery:
    discovery.hidden = bool(hidden)
    return discovery


def toggle_hidden(discovery: Discovery) -> Discovery:
    return set_hidden(discovery, not discovery.hidden)


def update_feedback(session, discovery: Discovery, useful: Optional[bool] = None,
                    notes: Optional[str] = None, clear: bool = False) -> Discovery:
    """
    Record user feedback on a discovery.

    Feedback implies viewed. Notes are also appended to the project's
    context so later query generation can learn from them.
    """
    if clear:
        discovery.feedback_useful = None
    elif useful is not None:
        discovery.feedback_useful = bool(useful)

    if notes is not None:
        discovery.feedback_notes = notes.strip() or None

    mark_viewed(discovery)

    if useful is not None or notes:
        verdict = {True: 'useful', False: 'not useful', None: 'no verdict'}[discovery.feedback_useful]
        content = f"Feedback on \"{discovery.title}\": {verdict}"
        if discovery.feedback_notes:
            content += f" - {discovery.feedback_notes}"
        session.add(ContextEntry(
            project_id=discovery.project_id,
            entry_type=ContextEntryType.FEEDBACK,
            content=content,
        ))

    return discovery


def get_discovery(session, discovery_id, mark_as_viewed: bool = False) -> Optional[Discovery]:
    discovery_uuid = parse_uuid(discovery_id)
    if discovery_uuid is None:
        return None
    discovery = session.get(Discovery, discovery_uuid)
    if discovery is not None and mark_as_viewed:
        mark_viewed(discovery)
    return discovery


# =============================================================================
# Queries
# =============================================================================

def _apply_filter(query, filter_name: str):
    if filter_name == 'new':
        return query.filter(Discovery.viewed == False, Discovery.hidden == False)  # noqa: E712
    if filter_name == 'viewed':
        return query.filter(Discovery.viewed == True, Discovery.hidden == False)  # noqa: E712
    if filter_name == 'hidden':
        return query.filter(Discovery.hidden == True)  # noqa: E712
    if filter_name == 'useful':
        return query.filter(Discovery.feedback_useful == True)  # noqa: E712
    if filter_name == 'not_useful':
        return query.filter(Discovery.feedback_useful == False)  # noqa: E712
    return query.filter(Discovery.hidden == False)  # noqa: E712


def _sort_order(sort: str):
    if sort == 'date':
        return [desc(Discovery.discovered_at)]
    if sort == 'feedback':
        return [nullslast(desc(Discovery.feedback_useful)), desc(Discovery.relevance_score)]
    return [desc(Discovery.relevance_score), desc(Discovery.discovered_at)]


def count_by_state(session, project_id: UUID) -> dict:
    base = session.query(Discovery).filter(Discovery.project_id == project_id)
    return {
        'total': base.count(),
        'new': _apply_filter(base, 'new').count(),
        'viewed': _apply_filter(base, 'viewed').count(),
        'hidden': _apply_filter(base, 'hidden').count(),
        'useful': _apply_filter(base, 'useful').count(),
        'not_useful': _apply_filter(base, 'not_useful').count(),
    }


def list_discoveries(session, project_id: UUID, filter_name: str = 'all', sort: str = 'relevance',
                     page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> tuple[list[Discovery], int, dict]:
    """
    Page through a project's discoveries.

    Returns:
        Tuple of (discoveries on the page, total matching, counts by state)
    """
    if filter_name not in FILTERS:
        filter_name = 'all'
    if sort not in SORTS:
        sort = 'relevance'
    page = max(1, page)
    per_page = max(1, min(per_page, MAX_PER_PAGE))

    query = _apply_filter(
        session.query(Discovery).filter(Discovery.project_id == project_id),
        filter_name
    )
    total = query.count()
    discoveries = query.order_by(*_sort_order(sort)).offset((page - 1) * per_page).limit(per_page).all()

    return discoveries, total, count_by_state(session, project_id)


def count_recent(session, project_id: UUID, since: datetime) -> int:
    """Discoveries first seen for a project at or after `since`."""
    return session.query(Discovery).filter(
        Discovery.project_id == project_id,
        Discovery.discovered_at >= since
    ).count()


# =============================================================================
# Bulk operations
# =============================================================================

_BULK_TRANSITIONS = {
    'mark_viewed': mark_viewed,
    'mark_unviewed': mark_unviewed,
    'hide': lambda d: set_hidden(d, True),
    'unhide': lambda d: set_hidden(d, False),
}


def bulk_update(session, project_id: UUID, action: str, ids: Optional[list] = None,
                filter_name: Optional[str] = None) -> BulkResult:
    """
    Apply one transition to many discoveries.

    Targets are either explicit ids or every discovery matching a filter.
    Each item is committed on its own, so a failure on one leaves the
    others applied; the result reports how many succeeded.

    Raises:
        ValueError: unknown action or filter
    """
    if action not in _BULK_TRANSITIONS:
        raise ValueError(f"Invalid action: {action}")
    if ids is None and (filter_name or 'all') not in FILTERS:
        raise ValueError(f"Invalid filter: {filter_name}")
    transition = _BULK_TRANSITIONS[action]
    result = BulkResult()

    if ids is not None:
        targets = []
        for raw_id in ids:
            discovery = get_discovery(session, raw_id)
            if discovery is None or discovery.project_id != project_id:
                result.failed += 1
                result.errors.append(f"{raw_id}: not found")
            else:
                targets.append(discovery)
    else:
        targets = _apply_filter(
            session.query(Discovery).filter(Discovery.project_id == project_id),
            filter_name or 'all'
        ).all()

    for discovery in targets:
        discovery_id = discovery.id
        try:
            transition(discovery)
            session.commit()
            result.succeeded += 1
        except Exception as e:
            session.rollback()
            result.failed += 1
            result.errors.append(f"{discovery_id}: {e}")
            logger.error(f"Bulk {action} failed for {discovery_id}: {e}")

    logger.info(f"Bulk {action} on project {project_id}: {result.succeeded} succeeded, {result.failed} failed")
    return result
