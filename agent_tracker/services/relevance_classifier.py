"""
Relevance Classifier Gateway

Scores CandidateItems against a project's context with Claude.
One item per call; items are classified concurrently with a fixed-size
worker pool. Malformed replies are salvaged field by field, and anything
unrecoverable gets a neutral default that keeps the item in play.
"""

import asyncio
import json
import logging
import re
import time
from typing import Optional

from anthropic import Anthropic

from agent_tracker.config import PipelineConfig
from agent_tracker.models import ContentType
from agent_tracker.services.items import CandidateItem, ClassifiedItem, ProjectContext

logger = logging.getLogger(__name__)

MAX_TOKENS = 600
TEMPERATURE = 0  # Deterministic for consistency
MAX_RETRIES = 2
RETRY_BASE_DELAY = 2.0
CONTENT_LIMIT = 1500

DEFAULT_SCORE = 5

CONTENT_TYPES = [member.value for member in ContentType]

SYSTEM_PROMPT = """You evaluate how relevant a piece of content is to a user's project.

Reply with a single JSON object and nothing else:
{
  "relevanceScore": <integer 1-10>,
  "categories": [<short topic labels>],
  "type": "<one of: Article, Discussion, News, Research, Tool, Other>",
  "reasoning": "<one or two sentences>"
}

Scoring:
- 9-10: directly advances a stated goal
- 7-8: clearly useful for the project's interests
- 5-6: loosely related, worth a glance
- 1-4: off-topic or generic

Type: choose the type that actually fits. Do not default to Article unless it
truly is one. If you cannot tell, use Other."""


def get_anthropic_client(api_key: Optional[str] = None) -> Anthropic:
    """Get Anthropic client with API key from config or environment."""
    if not api_key:
        raise ValueError("ANTHROPIC_API_KEY environment variable not set")
    return Anthropic(api_key=api_key)


def default_classification(candidate: CandidateItem, reason: str = 'No usable classifier response') -> ClassifiedItem:
    """Mid-scale score, no categories, type Other."""
    return ClassifiedItem(
        candidate=candidate,
        relevance_score=DEFAULT_SCORE,
        categories=[],
        content_type=ContentType.OTHER,
        reasoning=reason,
    )


# =============================================================================
# Response parsing
# =============================================================================

CODE_FENCE = re.compile(r'```(?:json)?\s*\n?(.*?)\n?```', re.DOTALL)
SCORE_FIELD = re.compile(r'"?relevance_?score"?\s*[:=]\s*"?(\d+(?:\.\d+)?)', re.IGNORECASE)
CATEGORIES_FIELD = re.compile(r'"?categories"?\s*[:=]\s*\[([^\]]*)\]?', re.IGNORECASE)
TYPE_FIELD = re.compile(r'"?(?:type|contentType)"?\s*[:=]\s*"([A-Za-z]+)"', re.IGNORECASE)
REASONING_FIELD = re.compile(r'"?reasoning"?\s*[:=]\s*"((?:[^"\\]|\\.)*)', re.IGNORECASE)


def _fix_json(text: str) -> str:
    """Remove trailing commas before } or ]."""
    return re.sub(r',(\s*[}\]])', r'\1', text)


def _load_object(text: str) -> Optional[dict]:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _from_fenced_or_embedded(text: str) -> Optional[dict]:
    fence = CODE_FENCE.search(text)
    if fence:
        parsed = _load_object(_fix_json(fence.group(1).strip()))
        if parsed is not None:
            return parsed

    start = text.find('{')
    end = text.rfind('}')
    if start != -1 and end > start:
        return _load_object(_fix_json(text[start:end + 1]))
    return None


def _salvage_fields(text: str) -> dict:
    """Pull individual fields out of a reply that is not valid JSON."""
    fields = {}

    score = SCORE_FIELD.search(text)
    if score:
        fields['relevanceScore'] = score.group(1)

    categories = CATEGORIES_FIELD.search(text)
    if categories:
        fields['categories'] = re.findall(r'"([^"]+)"', categories.group(1))

    content_type = TYPE_FIELD.search(text)
    if content_type:
        fields['type'] = content_type.group(1)

    reasoning = REASONING_FIELD.search(text)
    if reasoning:
        fields['reasoning'] = reasoning.group(1)

    return fields


def parse_classification(text: str, candidate: CandidateItem) -> ClassifiedItem:
    """
    Turn a classifier reply into a ClassifiedItem.

    Tries strict JSON, then code-fence/embedded-object extraction, then
    per-field regex salvage. Identity fields always come from the candidate.
    """
    text = text or ''
    data = _load_object(text.strip()) or _from_fenced_or_embedded(text)
    salvaged = False

    if data is None:
        data = _salvage_fields(text)
        salvaged = True
        if not data:
            logger.warning(f"Unparseable classification for {candidate.source[:80]}, using defaults")
            return default_classification(candidate)

    score = data.get('relevanceScore', data.get('relevance_score', DEFAULT_SCORE))
    categories = data.get('categories') or []
    if not isinstance(categories, list):
        categories = [categories]

    if salvaged:
        logger.info(f"Salvaged classification fields {sorted(data)} for {candidate.source[:80]}")

    return ClassifiedItem(
        candidate=candidate,
        relevance_score=score,
        categories=categories,
        content_type=ContentType.parse(data.get('type') or data.get('contentType')),
        reasoning=str(data.get('reasoning') or ''),
    )


# =============================================================================
# Gateway
# =============================================================================

def build_user_message(candidate: CandidateItem, context: ProjectContext) -> str:
    lines = [
        "PROJECT CONTEXT:",
        context.to_prompt(),
        "",
        "CONTENT TO EVALUATE:",
        f"Title: {candidate.title}",
        f"Source: {candidate.source}",
        f"Description: {(candidate.description or '')[:CONTENT_LIMIT]}",
    ]
    if candidate.category_hint:
        lines.append(f"Category hint: {candidate.category_hint}")
    if candidate.popularity_hint:
        lines.append(f"Popularity: {candidate.popularity_hint} likes")
    if candidate.content_type_hint:
        lines.append(f"Type hint: {candidate.content_type_hint}")
    return '\n'.join(lines)


class RelevanceClassifier:
    """Claude-backed relevance scoring for candidate items."""

    def __init__(self, config: PipelineConfig, client: Optional[Anthropic] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> Anthropic:
        if self._client is None:
            self._client = get_anthropic_client(self.config.anthropic_api_key)
        return self._client

    def request(self, candidate: CandidateItem, context: ProjectContext) -> str:
        """Call Claude and return the raw reply text."""
        user_message = build_user_message(candidate, context)

        for attempt in range(MAX_RETRIES):
            try:
                response = self.client.messages.create(
                    model=self.config.claude_model,
                    max_tokens=MAX_TOKENS,
                    temperature=TEMPERATURE,
                    system=SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": user_message}],
                )
                return ''.join(
                    getattr(block, 'text', '') for block in response.content
                )
            except Exception as e:
                error_str = str(e).lower()
                if ('429' in error_str or 'rate limit' in error_str) and attempt < MAX_RETRIES - 1:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(f"Claude rate limit, waiting {delay}s (attempt {attempt + 1}/{MAX_RETRIES})")
                    time.sleep(delay)
                    continue
                raise
        return ''

    def classify(self, candidate: CandidateItem, context: ProjectContext) -> ClassifiedItem:
        """Classify one item; API or parse failures degrade to the default classification."""
        try:
            reply = self.request(candidate, context)
        except Exception as e:
            logger.error(f"Claude classification error for {candidate.source[:80]}: {e}")
            return default_classification(candidate, f"Classifier error: {e}")

        try:
            return parse_classification(reply, candidate)
        except Exception as e:
            logger.error(f"Could not parse classification for {candidate.source[:80]}: {e}")
            return default_classification(candidate, f"Unreadable classifier reply: {e}")

    async def classify_all(self, candidates: list[CandidateItem], context: ProjectContext) -> list[ClassifiedItem]:
        """
        Classify items concurrently with a fixed-size worker pool.

        Each call is bounded by the per-item timeout; a timed-out item gets
        the default classification. Output order is not significant.
        """
        if not candidates:
            return []

        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(max(1, self.config.classifier_workers))
        timeout = self.config.classifier_timeout_seconds

        async def _classify_one(candidate: CandidateItem) -> ClassifiedItem:
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        loop.run_in_executor(None, self.classify, candidate, context),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"Classification timed out after {timeout}s for {candidate.source[:80]}")
                    return default_classification(candidate, 'Classifier timed out')

        start = time.time()
        results = await asyncio.gather(*(_classify_one(c) for c in candidates))
        logger.info(f"Classified {len(results)} items in {time.time() - start:.1f}s")
        return list(results)
