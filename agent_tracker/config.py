"""
Pipeline configuration.

Built once from the environment and passed into the orchestrator, the
provider chain and the classifier, so feature flags are never read from
ambient state deep inside the pipeline.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

DEFAULT_MODEL = "claude-sonnet-4-5"

DEFAULT_NEWSLETTER_SOURCES = (
    'news@alphasignal.ai',
    'superhuman@mail.joinsuperhuman.ai',
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


@dataclass
class PipelineConfig:
    """Knobs for one discovery pipeline instance."""

    # Provider switches
    agent_search_enabled: bool = True
    exa_search_enabled: bool = True
    web_search_fallback_enabled: bool = False

    # Credentials
    anthropic_api_key: Optional[str] = None
    exa_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    google_cx: Optional[str] = None

    # Models
    claude_model: str = DEFAULT_MODEL

    # Pipeline tuning
    relevance_threshold: int = 5
    queries_per_run: int = 5
    results_per_query: int = 10
    max_parallel_queries: int = 5
    provider_timeout_seconds: float = 8.0
    classifier_timeout_seconds: float = 8.0
    classifier_workers: int = 4
    necessity_window_hours: int = 6
    run_timeout_seconds: float = 300.0

    # Mailbox
    imap_host: Optional[str] = None
    imap_port: int = 993
    imap_user: Optional[str] = None
    imap_password: Optional[str] = None
    mailbox_timeout_seconds: float = 30.0
    newsletter_sources: list[str] = field(default_factory=lambda: list(DEFAULT_NEWSLETTER_SOURCES))

    @property
    def google_search_configured(self) -> bool:
        return bool(self.google_api_key and self.google_cx)

    @property
    def mailbox_configured(self) -> bool:
        return bool(self.imap_host and self.imap_user and self.imap_password)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Read configuration from environment variables (.env honoured)."""
        load_dotenv()
        sources = os.environ.get('NEWSLETTER_SOURCES')
        newsletter_sources = (
            [s.strip() for s in sources.split(',') if s.strip()]
            if sources else list(DEFAULT_NEWSLETTER_SOURCES)
        )
        return cls(
            agent_search_enabled=_env_bool('AGENT_SEARCH_ENABLED', True),
            exa_search_enabled=_env_bool('EXA_SEARCH_ENABLED', True),
            web_search_fallback_enabled=_env_bool('WEB_SEARCH_FALLBACK_ENABLED', False),
            anthropic_api_key=os.environ.get('ANTHROPIC_API_KEY'),
            exa_api_key=os.environ.get('EXA_API_KEY'),
            google_api_key=os.environ.get('GOOGLE_SEARCH_API_KEY'),
            google_cx=os.environ.get('GOOGLE_SEARCH_CX'),
            claude_model=os.environ.get('CLAUDE_MODEL', DEFAULT_MODEL),
            relevance_threshold=_env_int('RELEVANCE_THRESHOLD', 5),
            queries_per_run=_env_int('QUERIES_PER_RUN', 5),
            results_per_query=_env_int('RESULTS_PER_QUERY', 10),
            max_parallel_queries=_env_int('MAX_PARALLEL_QUERIES', 5),
            provider_timeout_seconds=_env_float('PROVIDER_TIMEOUT_SECONDS', 8.0),
            classifier_timeout_seconds=_env_float('CLASSIFIER_TIMEOUT_SECONDS', 8.0),
            classifier_workers=_env_int('CLASSIFIER_WORKERS', 4),
            necessity_window_hours=_env_int('NECESSITY_WINDOW_HOURS', 6),
            run_timeout_seconds=_env_float('RUN_TIMEOUT_SECONDS', 300.0),
            imap_host=os.environ.get('IMAP_HOST'),
            imap_port=_env_int('IMAP_PORT', 993),
            imap_user=os.environ.get('IMAP_USER'),
            imap_password=os.environ.get('IMAP_PASSWORD'),
            mailbox_timeout_seconds=_env_float('MAILBOX_TIMEOUT_SECONDS', 30.0),
            newsletter_sources=newsletter_sources,
        )
