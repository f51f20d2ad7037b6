"""
Unit tests for URL normalization.

Tests link cleanup (tracking params, short-link codes, case), the loose
comparison key and in-run candidate deduplication.
"""

from agent_tracker.services.url_normalizer import (
    alpha_signal_code, clean_link, comparison_key, deduplicate_candidates, strip_tracking_params
)
from tests.fixtures.sample_data import create_candidate


class TestCleanLink:
    """Tests for clean_link and strip_tracking_params."""

    def test_basic_url_unchanged(self):
        """Clean URLs pass through untouched."""
        url = "https://example.com/article/123"
        assert clean_link(url) == url

    def test_utm_params_removed(self):
        """UTM tracking parameters should be removed."""
        url = "https://example.com/article?utm_source=twitter&utm_medium=social"
        assert clean_link(url) == "https://example.com/article"

    def test_fbclid_removed(self):
        """Facebook click ID should be removed."""
        assert clean_link("https://example.com/article?fbclid=abc123") == "https://example.com/article"

    def test_article_id_preserved(self):
        """Non-tracking parameters should be preserved."""
        url = "https://example.com/story?id=12345"
        assert clean_link(url) == url

    def test_case_preserved(self):
        """Paths and query values keep their case."""
        url = "https://example.com/Story?ref=AbCdE"
        assert strip_tracking_params(url) == url

    def test_fragment_removed(self):
        """URL fragments should be removed."""
        assert strip_tracking_params("https://example.com/article#section1") == "https://example.com/article"

    def test_alpha_signal_link_collapsed_to_code(self):
        """Alpha Signal tracking links collapse to their short code."""
        url = "https://link.alphasignal.ai/AbC123?utm_source=newsletter&x=1"
        assert clean_link(url) == "https://link.alphasignal.ai/AbC123"
        assert alpha_signal_code(url) == "AbC123"

    def test_non_alpha_signal_has_no_code(self):
        assert alpha_signal_code("https://example.com/AbC123") is None

    def test_empty_url_returns_empty(self):
        """Empty URL should return empty string."""
        assert clean_link("") == ""
        assert clean_link(None) == ""

    def test_relative_url_untouched(self):
        """Strings that are not absolute URLs are returned as-is."""
        assert strip_tracking_params("not a url") == "not a url"


class TestComparisonKey:
    """Tests for comparison_key."""

    def test_combined_normalization(self):
        """Scheme, www, host case, trailing slash and tracking params are ignored."""
        url = "http://www.EXAMPLE.com/article/?utm_source=rss&id=123"
        assert comparison_key(url) == "https://example.com/article?id=123"

    def test_root_url(self):
        assert comparison_key("https://example.com/") == "https://example.com"

    def test_empty(self):
        assert comparison_key("") == ""


class TestDeduplicateCandidates:
    """Tests for deduplicate_candidates function."""

    def test_no_duplicates(self):
        """Candidates with unique URLs should all be kept."""
        items = [create_candidate(source=f"https://example.com/article/{i}") for i in range(3)]
        unique, count = deduplicate_candidates(items)
        assert len(unique) == 3
        assert count == 0

    def test_normalized_duplicate_removed(self):
        """First of two equivalent URLs is kept."""
        items = [
            create_candidate(source="https://example.com/article/1", title="First"),
            create_candidate(source="http://www.example.com/article/1/", title="Duplicate"),
        ]
        unique, count = deduplicate_candidates(items)
        assert [c.title for c in unique] == ["First"]
        assert count == 1

    def test_tracking_params_cause_dedup(self):
        """Same article with different tracking params should deduplicate."""
        items = [
            create_candidate(source="https://example.com/article?utm_source=rss"),
            create_candidate(source="https://example.com/article?utm_source=twitter"),
        ]
        unique, count = deduplicate_candidates(items)
        assert len(unique) == 1
        assert count == 1

    def test_different_ids_not_deduplicated(self):
        items = [
            create_candidate(source="https://example.com/story?id=123"),
            create_candidate(source="https://example.com/story?id=124"),
        ]
        unique, count = deduplicate_candidates(items)
        assert len(unique) == 2
        assert count == 0

    def test_stored_source_not_rewritten(self):
        """Deduplication never changes the kept item's source."""
        items = [create_candidate(source="http://www.example.com/a/")]
        unique, _ = deduplicate_candidates(items)
        assert unique[0].source == "http://www.example.com/a/"

    def test_empty_url_skipped(self):
        items = [
            create_candidate(source="", title="No URL"),
            create_candidate(source="https://example.com/article", title="Has URL"),
        ]
        unique, _ = deduplicate_candidates(items)
        assert [c.title for c in unique] == ["Has URL"]
