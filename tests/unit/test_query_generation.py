"""
Unit tests for query generation and the search necessity evaluator.
"""

from types import SimpleNamespace

import pytest

from agent_tracker.config import PipelineConfig
from agent_tracker.services.necessity import NecessityEvaluator, parse_decision
from agent_tracker.services.query_generator import QueryGenerator, clean_query, template_queries
from tests.fixtures.sample_data import create_context


def client_replying(text=None, error=None):
    def create(**kwargs):
        if error:
            raise error
        return SimpleNamespace(content=[SimpleNamespace(text=text)])
    return SimpleNamespace(messages=SimpleNamespace(create=create))


class TestCleanQuery:
    """Absolute dates are replaced so queries stay fresh."""

    @pytest.mark.parametrize("query, expected", [
        ("procedural terrain March 2024", "procedural terrain recent"),
        ("erosion simulation 2023 papers", "erosion simulation recent papers"),
        ("latest noise functions", "latest noise functions"),
        ("terrain generation", "terrain generation recent"),
    ])
    def test_clean(self, query, expected):
        assert clean_query(query) == expected

    def test_no_duplicate_recent(self):
        assert clean_query("recent terrain 2024") == "recent terrain recent"
        assert "recent recent" not in clean_query("terrain October 2024 2024")


class TestTemplateQueries:

    def test_built_from_interests_and_goals(self):
        queries = template_queries(create_context(), count=5)
        assert queries[0] == "latest procedural terrain generation game development"
        assert any("Ship a terrain generator" in q for q in queries)

    def test_respects_count(self):
        assert len(template_queries(create_context(), count=1)) == 1

    def test_empty_project_still_searches(self):
        queries = template_queries(create_context(goals=[], interests=[]), count=3)
        assert queries == ["latest news game development"]


class TestQueryGenerator:

    def test_claude_lines_cleaned(self):
        reply = "1. erosion simulation 2024\n- terrain LOD latest\n\n"
        generator = QueryGenerator(PipelineConfig(queries_per_run=3), client=client_replying(reply))

        assert generator.generate(create_context()) == ["erosion simulation recent", "terrain LOD latest"]

    def test_falls_back_to_templates(self):
        generator = QueryGenerator(PipelineConfig(queries_per_run=2), client=client_replying(error=RuntimeError("x")))
        queries = generator.generate(create_context())
        assert len(queries) == 2
        assert queries[0].startswith("latest")

    def test_no_api_key_uses_templates(self):
        queries = QueryGenerator(PipelineConfig(queries_per_run=2)).generate(create_context())
        assert queries


class TestNecessity:
    """Fail-open search necessity decisions."""

    def test_parse_skip(self):
        decision = parse_decision('{"shouldSearch": false, "reason": "Nothing new to explore"}')
        assert decision.should_search is False
        assert decision.rationale == "Nothing new to explore"

    def test_parse_partial(self):
        assert parse_decision('{"shouldSearch": false, "reason": "cut of').should_search is False

    @pytest.mark.parametrize("reply", ["", "maybe?", '{"shouldSearch": "no"}'])
    def test_unreadable_means_search(self, reply):
        assert parse_decision(reply).should_search is True

    def test_evaluator_error_means_search(self):
        evaluator = NecessityEvaluator(PipelineConfig(), client=client_replying(error=RuntimeError("down")))
        decision = evaluator.evaluate(create_context(), recent_count=3, recent_responses=["more on erosion"])
        assert decision.should_search is True

    def test_evaluator_reply(self):
        evaluator = NecessityEvaluator(
            PipelineConfig(), client=client_replying('{"shouldSearch": false, "reason": "fresh results"}')
        )
        assert evaluator.evaluate(create_context(), 3, []).should_search is False
