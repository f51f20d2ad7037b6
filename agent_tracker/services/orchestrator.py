"""
Search Orchestrator

Runs one discovery search for a project:

1. Necessity check (skip if a search just ran and the evaluator says so)
2. Generate queries
3. Fan queries out through the provider chain in parallel
4. Normalize and deduplicate candidates
5. Classify relevance
6. Merge into the discovery store
7. Stamp project.last_updated (always, even on skip, failure or timeout)

A run is bounded by an overall timeout and can be cancelled between stages.
"""

import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from agent_tracker.config import PipelineConfig
from agent_tracker.models import ContextEntry, Discovery, Project, as_utc
from agent_tracker.services.content_extractor import SourceFormat, extract
from agent_tracker.services.items import ClassifiedItem, ProjectContext
from agent_tracker.services.lifecycle import count_recent, parse_uuid
from agent_tracker.services.merge import DiscoveryStore, touch_project
from agent_tracker.services.necessity import NecessityEvaluator, SearchNecessityDecision
from agent_tracker.services.providers import ProviderChain, ProviderChainExhausted, build_provider_chain
from agent_tracker.services.query_generator import QueryGenerator
from agent_tracker.services.relevance_classifier import RelevanceClassifier
from agent_tracker.services.url_normalizer import deduplicate_candidates

logger = logging.getLogger(__name__)

FEEDBACK_SAMPLE_SIZE = 10


def _log_progress(msg: str, start_time: float = None):
    """Log with elapsed time, flush immediately."""
    elapsed = f"[{time.time() - start_time:.1f}s]" if start_time else ""
    full_msg = f"{elapsed} SEARCH: {msg}"
    logger.info(full_msg)
    print(full_msg, file=sys.stdout, flush=True)


class RunCancelled(Exception):
    """The caller's cancellation token was set mid-run."""


@dataclass
class SearchRunResult:
    project_id: str
    skipped: bool = False
    timed_out: bool = False
    cancelled: bool = False
    decision: Optional[SearchNecessityDecision] = None
    classified: list[ClassifiedItem] = field(default_factory=list)
    stats: dict = field(default_factory=dict)


@dataclass
class _ProjectSnapshot:
    context: ProjectContext
    context_snapshot: dict
    last_updated: Optional[datetime]
    recent_count: int
    recent_responses: list[str]
    useful_titles: list[str]
    not_useful_titles: list[str]


class SearchOrchestrator:
    """Coordinates necessity check, query fan-out, classification and merge."""

    def __init__(self, config: PipelineConfig, provider_chain: ProviderChain,
                 classifier: RelevanceClassifier, session_factory,
                 query_generator: Optional[QueryGenerator] = None,
                 necessity_evaluator: Optional[NecessityEvaluator] = None,
                 store: Optional[DiscoveryStore] = None):
        self.config = config
        self.provider_chain = provider_chain
        self.classifier = classifier
        self.session_factory = session_factory
        self.query_generator = query_generator or QueryGenerator(config)
        self.necessity_evaluator = necessity_evaluator
        self.store = store or DiscoveryStore(session_factory, config.relevance_threshold)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_with_timeout(self, project_id, cancel_event: Optional[asyncio.Event] = None,
                               timeout: Optional[float] = None) -> SearchRunResult:
        """Run with an overall deadline; a timed-out run returns instead of blocking."""
        timeout = timeout or self.config.run_timeout_seconds
        try:
            return await asyncio.wait_for(self.run(project_id, cancel_event), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(json.dumps({
                "event": "search_run_timeout",
                "project_id": str(project_id),
                "timeout_seconds": timeout,
            }))
            return SearchRunResult(project_id=str(project_id), timed_out=True,
                                   stats={'errors': [f"Run timed out after {timeout}s"]})

    async def run(self, project_id, cancel_event: Optional[asyncio.Event] = None) -> SearchRunResult:
        """
        Execute one search run for a project.

        Raises:
            LookupError: project does not exist
            StoreUnavailable: database unreachable
        """
        project_uuid = parse_uuid(project_id)
        if project_uuid is None:
            raise LookupError(f"Invalid project id: {project_id}")

        job_start = time.time()
        start_time = datetime.now(timezone.utc)
        result = SearchRunResult(project_id=str(project_uuid))
        stats = result.stats
        stats.update({
            'start_time': start_time.isoformat(),
            'queries_total': 0,
            'queries_succeeded': 0,
            'queries_failed': 0,
            'candidates_total': 0,
            'duplicates_removed': 0,
            'classified_total': 0,
            'inserted': 0,
            'updated': 0,
            'unchanged': 0,
            'below_threshold': 0,
            'providers_used': {},
            'errors': [],
        })

        snapshot = self._load_project(project_uuid)
        logger.info(json.dumps({"event": "search_start", "project_id": str(project_uuid),
                                "timestamp": start_time.isoformat()}))

        try:
            # Step 1: Necessity check
            decision = await self._check_necessity(snapshot)
            result.decision = decision
            if decision is not None and not decision.should_search:
                _log_progress(f"Step 1: Skipping search - {decision.rationale}", job_start)
                result.skipped = True
                stats['skip_reason'] = decision.rationale
                return result
            self._check_cancel(cancel_event)

            # Step 2: Generate queries
            loop = asyncio.get_running_loop()
            queries = await loop.run_in_executor(
                None, self.query_generator.generate,
                snapshot.context, snapshot.useful_titles, snapshot.not_useful_titles
            )
            stats['queries_total'] = len(queries)
            _log_progress(f"Step 2: {len(queries)} queries generated", job_start)
            self._check_cancel(cancel_event)

            # Step 3: Fan out
            candidates = await self._fan_out(queries, snapshot.context, stats)
            _log_progress(f"Step 3: {stats['queries_succeeded']}/{stats['queries_total']} queries succeeded, "
                          f"{len(candidates)} candidates", job_start)
            if queries and stats['queries_succeeded'] == 0:
                logger.error(json.dumps({
                    "event": "no_methods_succeeded",
                    "project_id": str(project_uuid),
                    "queries": queries,
                }))
                stats['errors'].append('No search methods succeeded')
            self._check_cancel(cancel_event)

            # Step 4: Normalize and deduplicate
            candidates = extract(candidates, SourceFormat.GENERIC).items
            candidates, duplicates = deduplicate_candidates(candidates)
            stats['candidates_total'] = len(candidates)
            stats['duplicates_removed'] = duplicates
            if not candidates:
                _log_progress("Step 4: No candidates - ending early", job_start)
                return result

            # Step 5: Classify
            classified = await self.classifier.classify_all(candidates, snapshot.context)
            stats['classified_total'] = len(classified)
            _log_progress(f"Step 5: Classified {len(classified)} candidates", job_start)
            self._check_cancel(cancel_event)

            # Step 6: Merge
            merge_stats = await self.store.store(project_uuid, classified, snapshot.context_snapshot)
            stats.update(merge_stats.as_dict())
            result.classified = [c for c in classified if c.relevance_score >= self.config.relevance_threshold]
            _log_progress(f"Step 6: {merge_stats.inserted} new, {merge_stats.updated} updated, "
                          f"{merge_stats.unchanged} unchanged", job_start)

        except RunCancelled:
            _log_progress("Run cancelled by caller", job_start)
            result.cancelled = True
            stats['errors'].append('Cancelled')

        finally:
            # Step 7: Always stamp the project
            touch_project(self.session_factory, project_uuid)
            end_time = datetime.now(timezone.utc)
            stats['end_time'] = end_time.isoformat()
            stats['duration_seconds'] = (end_time - start_time).total_seconds()
            logger.info(json.dumps({"event": "search_complete", "project_id": str(project_uuid),
                                    "skipped": result.skipped, **stats}, default=str))

        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _load_project(self, project_id: UUID) -> _ProjectSnapshot:
        session = self.session_factory()
        try:
            project = session.get(Project, project_id)
            if project is None:
                raise LookupError(f"Project {project_id} not found")

            cutoff = datetime.now(timezone.utc) - timedelta(hours=self.config.necessity_window_hours)
            responses = session.query(ContextEntry).filter(
                ContextEntry.project_id == project_id
            ).order_by(ContextEntry.created_at.desc()).limit(FEEDBACK_SAMPLE_SIZE).all()

            def _titles(useful: bool) -> list[str]:
                rows = session.query(Discovery.title).filter(
                    Discovery.project_id == project_id,
                    Discovery.feedback_useful == useful
                ).order_by(Discovery.relevance_score.desc()).limit(FEEDBACK_SAMPLE_SIZE).all()
                return [row[0] for row in rows]

            return _ProjectSnapshot(
                context=ProjectContext.from_project(project),
                context_snapshot={**project.context_snapshot(), 'origin': 'search'},
                last_updated=as_utc(project.last_updated),
                recent_count=count_recent(session, project_id, cutoff),
                recent_responses=[entry.content for entry in reversed(responses)],
                useful_titles=_titles(True),
                not_useful_titles=_titles(False),
            )
        finally:
            session.close()

    async def _check_necessity(self, snapshot: _ProjectSnapshot) -> Optional[SearchNecessityDecision]:
        """
        Only consult the evaluator when something was found recently and the
        project was touched inside the same window; otherwise search.
        """
        window = timedelta(hours=self.config.necessity_window_hours)
        recently_updated = (
            snapshot.last_updated is not None
            and datetime.now(timezone.utc) - snapshot.last_updated < window
        )
        if snapshot.recent_count == 0 or not recently_updated or self.necessity_evaluator is None:
            return None

        loop = asyncio.get_running_loop()
        try:
            decision = await loop.run_in_executor(
                None, self.necessity_evaluator.evaluate,
                snapshot.context, snapshot.recent_count, snapshot.recent_responses
            )
        except Exception as e:
            logger.warning(f"Necessity evaluator raised, searching anyway: {e}")
            decision = SearchNecessityDecision(True, f"Evaluator error: {e}")

        logger.info(json.dumps({
            "event": "necessity_decision",
            "should_search": decision.should_search,
            "rationale": decision.rationale,
            "recent_count": snapshot.recent_count,
        }))
        return decision

    async def _fan_out(self, queries: list[str], context: ProjectContext, stats: dict) -> list:
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_queries))

        async def _run_query(query: str) -> list:
            async with semaphore:
                try:
                    chain_result = await self.provider_chain.attempt(query, context)
                except ProviderChainExhausted as e:
                    stats['queries_failed'] += 1
                    stats['errors'].append(str(e))
                    return []
                except Exception as e:
                    stats['queries_failed'] += 1
                    stats['errors'].append(f"Query '{query[:50]}': {e}")
                    logger.error(f"Query '{query[:50]}' failed: {e}")
                    return []

            stats['queries_succeeded'] += 1
            provider = chain_result.succeeded_provider
            stats['providers_used'][provider] = stats['providers_used'].get(provider, 0) + 1
            for item in chain_result.items:
                if not item.search_query:
                    item.search_query = query
            return chain_result.items

        batches = await asyncio.gather(*(_run_query(q) for q in queries))
        return [item for batch in batches for item in batch]

    @staticmethod
    def _check_cancel(cancel_event: Optional[asyncio.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelled()


def build_orchestrator(config: PipelineConfig, session_factory) -> SearchOrchestrator:
    """Wire the production pipeline from configuration."""
    return SearchOrchestrator(
        config=config,
        provider_chain=build_provider_chain(config),
        classifier=RelevanceClassifier(config),
        session_factory=session_factory,
        query_generator=QueryGenerator(config),
        necessity_evaluator=NecessityEvaluator(config) if config.anthropic_api_key else None,
    )
