"""
Search Query Generation

Claude proposes a small batch of search queries from a project's goals and
interests, nudged by what the user marked useful or not. Absolute dates are
scrubbed so queries do not over-narrow; a template fallback keeps the
pipeline running without Claude.
"""

import logging
import re
from typing import Optional

from anthropic import Anthropic

from agent_tracker.config import PipelineConfig
from agent_tracker.services.items import ProjectContext

logger = logging.getLogger(__name__)

MAX_TOKENS = 500
TEMPERATURE = 0.7

MONTH_YEAR = re.compile(
    r'\b(January|February|March|April|May|June|July|August|September|October|November|December)\s+\d{4}\b',
    re.IGNORECASE
)
YEAR = re.compile(r'\b(19|20)\d{2}\b')
TIME_REFERENCE = re.compile(r'recent|latest|new|current|today|this (week|month|year)|past|last', re.IGNORECASE)
LIST_PREFIX = re.compile(r'^\s*(?:\d+[.)]|[-*•])\s*')

SYSTEM_PROMPT = """You write web search queries that surface fresh, relevant content for a project.
Return exactly {count} queries, one per line, no numbering and no commentary.
Do NOT include specific dates, months or years; use words like "recent" or "latest" instead."""


def clean_query(query: str) -> str:
    """Replace absolute dates with 'recent' and make sure a time cue is present."""
    cleaned = MONTH_YEAR.sub('recent', query)
    cleaned = YEAR.sub('recent', cleaned)
    cleaned = re.sub(r'\brecent(\s+recent)+\b', 'recent', cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r'\s+', ' ', cleaned).strip().strip('"\'')
    if cleaned and not TIME_REFERENCE.search(cleaned):
        cleaned = f"{cleaned} recent"
    return cleaned


def template_queries(context: ProjectContext, count: int) -> list[str]:
    """Deterministic queries built from goals and interests."""
    subject = context.domain or context.name
    seeds = []
    for interest in context.interests:
        seeds.append(f"latest {interest} {subject}".strip())
    for goal in context.goals:
        seeds.append(f"recent developments {goal}")
    if not seeds:
        seeds.append(f"latest news {subject}".strip())

    queries = []
    for seed in seeds:
        query = clean_query(seed)
        if query and query not in queries:
            queries.append(query)
        if len(queries) >= count:
            break
    return queries


class QueryGenerator:
    """Builds the per-run batch of search queries."""

    def __init__(self, config: PipelineConfig, client: Optional[Anthropic] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> Anthropic:
        if self._client is None:
            if not self.config.anthropic_api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable not set")
            self._client = Anthropic(api_key=self.config.anthropic_api_key)
        return self._client

    def generate(self, context: ProjectContext, useful: Optional[list[str]] = None,
                 not_useful: Optional[list[str]] = None) -> list[str]:
        """
        Produce up to config.queries_per_run cleaned queries.

        Args:
            context: Project goals/interests
            useful: Titles the user found useful
            not_useful: Titles the user rejected
        """
        count = self.config.queries_per_run
        try:
            queries = self._generate_with_claude(context, count, useful or [], not_useful or [])
        except Exception as e:
            logger.warning(f"Query generation via Claude failed, using templates: {e}")
            queries = []

        if not queries:
            queries = template_queries(context, count)

        logger.info(f"Generated {len(queries)} queries: {queries}")
        return queries

    def _generate_with_claude(self, context: ProjectContext, count: int,
                              useful: list[str], not_useful: list[str]) -> list[str]:
        message = context.to_prompt()
        if useful:
            message += "\n\nThe user found these useful:\n" + '\n'.join(f"- {t}" for t in useful[:10])
        if not_useful:
            message += "\n\nThe user did NOT find these useful:\n" + '\n'.join(f"- {t}" for t in not_useful[:10])

        response = self.client.messages.create(
            model=self.config.claude_model,
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
            system=SYSTEM_PROMPT.format(count=count),
            messages=[{"role": "user", "content": message}],
        )
        text = ''.join(getattr(block, 'text', '') for block in response.content)

        queries = []
        for line in text.splitlines():
            query = clean_query(LIST_PREFIX.sub('', line))
            if query and query not in queries:
                queries.append(query)
        return queries[:count]
