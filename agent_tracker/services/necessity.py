"""
Search Necessity Evaluator

Asks Claude whether a project that was searched very recently needs
another search, given what the user has said since. Any failure answers
"search" so a broken evaluator never leaves a project stale.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from anthropic import Anthropic

from agent_tracker.config import PipelineConfig
from agent_tracker.services.items import ProjectContext

logger = logging.getLogger(__name__)

MAX_TOKENS = 300

SYSTEM_PROMPT = """You decide whether to run a fresh content search for a project.
A search already ran recently and found {recent_count} new items.
Search again only if the user's recent responses suggest new directions,
changed priorities, or dissatisfaction with what was found.

Reply with JSON only: {{"shouldSearch": true|false, "reason": "..."}}"""


@dataclass
class SearchNecessityDecision:
    should_search: bool
    rationale: str


class NecessityEvaluator:
    """Claude judgment call on whether a fresh search is worthwhile."""

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

    def evaluate(self, context: ProjectContext, recent_count: int,
                 recent_responses: list[str]) -> SearchNecessityDecision:
        try:
            responses = '\n'.join(f"- {r}" for r in recent_responses[-10:]) or '- (none)'
            response = self.client.messages.create(
                model=self.config.claude_model,
                max_tokens=MAX_TOKENS,
                temperature=0,
                system=SYSTEM_PROMPT.format(recent_count=recent_count),
                messages=[{
                    "role": "user",
                    "content": f"{context.to_prompt()}\n\nRecent user responses:\n{responses}",
                }],
            )
            text = ''.join(getattr(block, 'text', '') for block in response.content)
            return parse_decision(text)
        except Exception as e:
            logger.warning(f"Necessity evaluation failed, searching anyway: {e}")
            return SearchNecessityDecision(True, f"Evaluator unavailable: {e}")


def parse_decision(text: str) -> SearchNecessityDecision:
    """Read the evaluator reply; anything unreadable means search."""
    match = re.search(r'\{.*\}', text or '', re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
            should = data.get('shouldSearch')
            if isinstance(should, bool):
                return SearchNecessityDecision(should, str(data.get('reason') or ''))
        except json.JSONDecodeError:
            pass

    flag = re.search(r'"?shouldSearch"?\s*:\s*(true|false)', text or '', re.IGNORECASE)
    if flag:
        return SearchNecessityDecision(flag.group(1).lower() == 'true', 'Recovered from partial reply')

    return SearchNecessityDecision(True, 'Unreadable evaluator reply')
