"""
Discovery Pipeline Services

This package contains the services behind project discovery searches:
- content_extractor: Parse newsletters and search hits into candidates
- providers: Ordered search provider chain with fallback
- relevance_classifier: Score candidates with Claude
- merge: Deduplicate and merge into stored discoveries
- lifecycle: Viewed/hidden/feedback transitions and listing
- orchestrator: Run a complete search for a project
- newsletter_import: Import newsletters from the mailbox
"""

from agent_tracker.services.content_extractor import extract, SourceFormat
from agent_tracker.services.providers import ProviderChain, build_provider_chain
from agent_tracker.services.relevance_classifier import RelevanceClassifier, parse_classification
from agent_tracker.services.merge import merge, DiscoveryStore
from agent_tracker.services.orchestrator import SearchOrchestrator, build_orchestrator
from agent_tracker.services.newsletter_import import import_newsletters

__all__ = [
    'extract',
    'SourceFormat',
    'ProviderChain',
    'build_provider_chain',
    'RelevanceClassifier',
    'parse_classification',
    'merge',
    'DiscoveryStore',
    'SearchOrchestrator',
    'build_orchestrator',
    'import_newsletters',
]
