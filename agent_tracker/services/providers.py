"""
Source Provider Chain

Acquires candidate content for a query from an ordered list of providers.
Providers are tried one after another; a provider that raises, times out
or returns something other than a list of CandidateItems counts as failed
and the next one is tried. Only when every provider fails does the chain
report the query as failed.

Providers:
- AgentSearchProvider: Claude with web search, steered by project context
- ExaSearchProvider: Exa semantic search, no context needed
- GoogleSearchProvider: Google Custom Search, last resort only
"""

import asyncio
import enum
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Optional

import httpx
from anthropic import Anthropic
from exa_py import Exa

from agent_tracker.config import PipelineConfig
from agent_tracker.services.content_extractor import SourceFormat, extract
from agent_tracker.services.items import CandidateItem, ProjectContext

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0  # seconds
EXA_MAX_CHARACTERS = 2000
EXA_DAYS_BACK = 90
GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
AGENT_MAX_TOKENS = 2048
AGENT_MAX_SEARCHES = 3


class Capability(enum.Enum):
    """What a provider needs and how much its results can be trusted"""
    PROJECT_CONTEXT = "project_context"
    NO_CONTEXT = "no_context"
    LAST_RESORT = "last_resort"


class ProviderFailure(Exception):
    """One provider could not produce results for a query."""


class NoProvidersConfigured(Exception):
    """No search provider is enabled and credentialed."""


class ProviderChainExhausted(Exception):
    """Every provider in the chain failed for a query."""

    def __init__(self, query: str, attempted: list[str], errors: dict[str, str]):
        self.query = query
        self.attempted = attempted
        self.errors = errors
        super().__init__(f"All providers failed for '{query[:50]}': {', '.join(attempted) or 'none eligible'}")


def _is_rate_limit(error: Exception) -> bool:
    error_str = str(error).lower()
    return '429' in error_str or 'rate limit' in error_str


# =============================================================================
# Providers
# =============================================================================

class SearchProvider:
    """Common contract: search(query, context=None) -> list[CandidateItem]."""

    name = 'provider'
    capability = Capability.NO_CONTEXT

    def search(self, query: str, context: Optional[ProjectContext] = None) -> list[CandidateItem]:
        raise NotImplementedError


class ExaSearchProvider(SearchProvider):
    """Semantic web search via Exa."""

    name = 'exa'
    capability = Capability.NO_CONTEXT

    def __init__(self, api_key: Optional[str] = None, num_results: int = 10,
                 days_back: int = EXA_DAYS_BACK, client: Optional[Exa] = None):
        if client is None and not api_key:
            raise ValueError("EXA_API_KEY environment variable not set")
        self._client = client
        self.api_key = api_key
        self.num_results = num_results
        self.days_back = days_back

    @property
    def client(self) -> Exa:
        if self._client is None:
            self._client = Exa(api_key=self.api_key)
        return self._client

    def search(self, query: str, context: Optional[ProjectContext] = None) -> list[CandidateItem]:
        start_date = (datetime.now(timezone.utc) - timedelta(days=self.days_back)).strftime('%Y-%m-%d')

        for attempt in range(MAX_RETRIES):
            try:
                result = self.client.search_and_contents(
                    query,
                    num_results=self.num_results,
                    type="auto",
                    start_published_date=start_date,
                    text={"max_characters": EXA_MAX_CHARACTERS},
                )
                hits = [hit for hit in (_parse_exa_result(item, query) for item in result.results) if hit]
                logger.info(f"Exa search '{query[:50]}...': {len(hits)} results")
                return extract(hits, SourceFormat.GENERIC, search_query=query).items
            except Exception as e:
                if _is_rate_limit(e) and attempt < MAX_RETRIES - 1:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(f"Exa rate limit hit, waiting {delay}s (attempt {attempt + 1}/{MAX_RETRIES})")
                    time.sleep(delay)
                    continue
                raise ProviderFailure(f"Exa search failed: {e}") from e
        return []


def _parse_exa_result(item, query: str) -> Optional[dict]:
    """Convert an Exa result object into a generic search hit."""
    title = (getattr(item, 'title', '') or '').strip()
    url = (getattr(item, 'url', '') or '').strip()
    if not title or not url:
        return None

    return {
        'title': title,
        'url': url,
        'description': getattr(item, 'summary', None) or getattr(item, 'text', '') or '',
        'published_date': getattr(item, 'published_date', None),
        'search_query': query,
    }


class GoogleSearchProvider(SearchProvider):
    """Google Custom Search JSON API; weakest relevance, so last resort."""

    name = 'google'
    capability = Capability.LAST_RESORT

    def __init__(self, api_key: str, cx: str, num_results: int = 10, timeout: float = 10.0):
        if not api_key or not cx:
            raise ValueError("GOOGLE_SEARCH_API_KEY and GOOGLE_SEARCH_CX must be set")
        self.api_key = api_key
        self.cx = cx
        self.num_results = min(num_results, 10)
        self.timeout = timeout

    def search(self, query: str, context: Optional[ProjectContext] = None) -> list[CandidateItem]:
        try:
            response = httpx.get(
                GOOGLE_SEARCH_URL,
                params={'key': self.api_key, 'cx': self.cx, 'q': query, 'num': self.num_results},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderFailure(f"Google search HTTP {e.response.status_code}") from e
        except (httpx.RequestError, ValueError) as e:
            raise ProviderFailure(f"Google search failed: {e}") from e

        items = payload.get('items')
        if items is None:
            return []
        if not isinstance(items, list):
            raise ProviderFailure("Google search returned malformed items")

        hits = [
            {
                'title': item.get('title', ''),
                'url': item.get('link', ''),
                'description': item.get('snippet', ''),
            }
            for item in items if isinstance(item, dict)
        ]
        return extract(hits, SourceFormat.GENERIC, search_query=query).items


AGENT_SYSTEM_PROMPT = """You are a research agent finding recent, high-signal content for a user's project.
Use web search to find content relevant to the query and the project context.

Reply with ONLY a JSON array (no prose) of up to {max_results} objects:
[{{"title": "...", "url": "https://...", "description": "two sentences on why it matters",
   "type": "Article|Discussion|News|Research|Tool|Other", "category": "short topic label"}}]

Only include items whose URL you actually found in search results."""


class AgentSearchProvider(SearchProvider):
    """
    Classification-aware search agent.

    Claude runs server-side web searches shaped by the project context and
    returns typed results. Needs context; skipped when none is available.
    """

    name = 'agent'
    capability = Capability.PROJECT_CONTEXT

    def __init__(self, api_key: Optional[str] = None, model: str = 'claude-sonnet-4-5',
                 max_results: int = 8, client: Optional[Anthropic] = None):
        if client is None and not api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable not set")
        self._client = client
        self.api_key = api_key
        self.model = model
        self.max_results = max_results

    @property
    def client(self) -> Anthropic:
        if self._client is None:
            self._client = Anthropic(api_key=self.api_key)
        return self._client

    def search(self, query: str, context: Optional[ProjectContext] = None) -> list[CandidateItem]:
        if context is None:
            raise ProviderFailure("Agent search needs project context")

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=AGENT_MAX_TOKENS,
                system=AGENT_SYSTEM_PROMPT.format(max_results=self.max_results),
                tools=[{"type": "web_search_20250305", "name": "web_search", "max_uses": AGENT_MAX_SEARCHES}],
                messages=[{
                    "role": "user",
                    "content": f"{context.to_prompt()}\n\nSEARCH QUERY: {query}",
                }],
            )
        except Exception as e:
            raise ProviderFailure(f"Agent search failed: {e}") from e

        text = ''.join(getattr(block, 'text', '') or '' for block in response.content
                       if getattr(block, 'type', '') == 'text')
        hits = parse_agent_results(text)
        if hits is None:
            raise ProviderFailure("Agent search returned malformed output")
        for hit in hits:
            hit.setdefault('search_query', query)
        return extract(hits, SourceFormat.GENERIC, search_query=query).items


def parse_agent_results(text: str) -> Optional[list[dict]]:
    """Find the JSON array in an agent reply; None when there is none."""
    fence = re.search(r'```(?:json)?\s*\n?(.*?)\n?```', text or '', re.DOTALL)
    candidate = fence.group(1) if fence else text or ''
    start = candidate.find('[')
    end = candidate.rfind(']')
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(re.sub(r',(\s*[}\]])', r'\1', candidate[start:end + 1]))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    return [item for item in parsed if isinstance(item, dict)]


# =============================================================================
# Chain
# =============================================================================

@dataclass
class ChainResult:
    query: str
    items: list[CandidateItem] = field(default_factory=list)
    attempted: list[str] = field(default_factory=list)
    succeeded_provider: Optional[str] = None
    errors: dict[str, str] = field(default_factory=dict)


class ProviderChain:
    """Ordered fallback over interchangeable search providers."""

    def __init__(self, providers: list[SearchProvider], timeout_seconds: float = 8.0):
        self.providers = list(providers)
        self.timeout_seconds = timeout_seconds

    def eligible(self, context: Optional[ProjectContext]) -> list[SearchProvider]:
        return [
            p for p in self.providers
            if not (p.capability == Capability.PROJECT_CONTEXT and context is None)
        ]

    async def attempt(self, query: str, context: Optional[ProjectContext] = None) -> ChainResult:
        """
        Run the query through providers in order until one succeeds.

        Raises:
            ProviderChainExhausted: no provider produced a result
        """
        loop = asyncio.get_running_loop()
        result = ChainResult(query=query)

        for provider in self.eligible(context):
            result.attempted.append(provider.name)
            try:
                items = await asyncio.wait_for(
                    loop.run_in_executor(None, provider.search, query, context),
                    timeout=self.timeout_seconds,
                )
                if not isinstance(items, list) or not all(isinstance(i, CandidateItem) for i in items):
                    raise ProviderFailure(f"{provider.name} returned malformed output")
            except asyncio.TimeoutError:
                result.errors[provider.name] = f"timed out after {self.timeout_seconds}s"
                logger.warning(f"Provider {provider.name} timed out for '{query[:50]}'")
                continue
            except Exception as e:
                result.errors[provider.name] = str(e)
                logger.warning(f"Provider {provider.name} failed for '{query[:50]}': {e}")
                continue

            result.items = items
            result.succeeded_provider = provider.name
            logger.info(f"Provider {provider.name} returned {len(items)} items for '{query[:50]}'")
            return result

        raise ProviderChainExhausted(query, result.attempted, result.errors)


def build_provider_chain(config: PipelineConfig) -> ProviderChain:
    """
    Assemble the chain from configuration.

    Order: context-aware agent, Exa, then Google only when the fallback is
    explicitly enabled.

    Raises:
        NoProvidersConfigured: nothing is enabled and credentialed
    """
    providers: list[SearchProvider] = []

    if config.agent_search_enabled and config.anthropic_api_key:
        providers.append(AgentSearchProvider(
            api_key=config.anthropic_api_key,
            model=config.claude_model,
            max_results=config.results_per_query,
        ))
    if config.exa_search_enabled and config.exa_api_key:
        providers.append(ExaSearchProvider(
            api_key=config.exa_api_key,
            num_results=config.results_per_query,
        ))
    if config.web_search_fallback_enabled and config.google_search_configured:
        providers.append(GoogleSearchProvider(
            api_key=config.google_api_key,
            cx=config.google_cx,
            num_results=config.results_per_query,
        ))

    if not providers:
        raise NoProvidersConfigured("No search provider is enabled; set ANTHROPIC_API_KEY or EXA_API_KEY")

    logger.info(f"Provider chain: {' → '.join(p.name for p in providers)}")
    return ProviderChain(providers, timeout_seconds=config.provider_timeout_seconds)
