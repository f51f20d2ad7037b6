"""
In-process stand-ins for the pipeline's outbound collaborators

Each fake records how it was called so tests can assert on fan-out,
skips and context propagation without touching the network.
"""
import asyncio

from agent_tracker.models import ContentType
from agent_tracker.services.items import ClassifiedItem
from agent_tracker.services.necessity import SearchNecessityDecision
from agent_tracker.services.providers import ChainResult, ProviderChainExhausted
from tests.fixtures.sample_data import create_candidate


class FakeChain:
    """Returns fresh copies of the configured candidates for every query."""

    def __init__(self, candidates=(), fail=False, delay=0.0):
        self.candidates = [(c.source, c.title) for c in candidates]
        self.fail = fail
        self.delay = delay
        self.queries = []

    async def attempt(self, query, context=None):
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderChainExhausted(query, ['agent', 'exa'], {'agent': 'down', 'exa': 'down'})
        items = [create_candidate(source=source, title=title) for source, title in self.candidates]
        return ChainResult(query=query, items=items, attempted=['exa'], succeeded_provider='exa')


class FakeClassifier:
    """Scores by source; unknown sources get the neutral default."""

    def __init__(self, scores=None, default=5):
        self.scores = dict(scores or {})
        self.default = default
        self.contexts = []
        self.classified = []

    async def classify_all(self, candidates, context):
        self.contexts.append(context)
        results = [
            ClassifiedItem(
                candidate=c,
                relevance_score=self.scores.get(c.source, self.default),
                categories=["terrain"],
                content_type=ContentType.ARTICLE,
                reasoning="fake",
            )
            for c in candidates
        ]
        self.classified.extend(results)
        return results


class FakeQueryGenerator:

    def __init__(self, queries=("procedural terrain generation",)):
        self.queries = list(queries)

    def generate(self, context, useful=None, not_useful=None):
        return list(self.queries)


class FakeEvaluator:

    def __init__(self, should_search=True, rationale="fake"):
        self.decision = SearchNecessityDecision(should_search, rationale)
        self.calls = 0

    def evaluate(self, context, recent_count, recent_responses):
        self.calls += 1
        return self.decision


class FakeMailbox:

    def __init__(self, messages=(), error=None, mark_error=None):
        self.messages = list(messages)
        self.error = error
        self.mark_error = mark_error
        self.senders = None
        self.seen = []

    def fetch_unread_from(self, senders):
        self.senders = senders
        if self.error:
            raise self.error
        return list(self.messages)

    def mark_seen(self, uids):
        if self.mark_error:
            raise self.mark_error
        self.seen.extend(uids)
