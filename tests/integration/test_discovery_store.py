"""
Integration tests for the discovery store

Uniqueness per (project, source), score-dominance updates, the
compare-and-swap guard and store unavailability.
"""

import asyncio
import importlib

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from agent_tracker.database import SessionLocal
from agent_tracker.models import ContentType, Discovery, Project
from agent_tracker.services.merge import (
    SKIP, UPDATE, DiscoveryStore, MergeDecision, StoreUnavailable, touch_project,
)
from tests.fixtures.sample_data import create_classified, create_discovery

# The package re-exports the merge() function under the same name, so fetch
# the submodule itself for monkeypatching.
merge_module = importlib.import_module("agent_tracker.services.merge")

SOURCE = "https://example.com/terrain"


def stored_rows(db_session, project_id):
    db_session.expire_all()
    return db_session.query(Discovery).filter(Discovery.project_id == project_id).all()


class TestStore:

    def test_threshold_filters_before_persisting(self, db_session, project):
        store = DiscoveryStore(SessionLocal, relevance_threshold=5)

        stats = asyncio.run(store.store(project.id, [
            create_classified(8, source="https://example.com/a"),
            create_classified(5, source="https://example.com/b"),
            create_classified(3, source="https://example.com/c"),
        ]))

        assert stats.inserted == 2
        assert stats.below_threshold == 1
        assert sorted(d.source for d in stored_rows(db_session, project.id)) == [
            "https://example.com/a", "https://example.com/b",
        ]

    def test_same_source_in_one_batch_is_one_row(self, db_session, project):
        store = DiscoveryStore(SessionLocal)

        asyncio.run(store.store(project.id, [create_classified(6), create_classified(9)]))

        rows = stored_rows(db_session, project.id)
        assert len(rows) == 1
        assert rows[0].relevance_score == 9

    def test_same_source_different_projects(self, db_session, project):
        other = Project(name="Other")
        db_session.add(other)
        db_session.commit()
        store = DiscoveryStore(SessionLocal)

        asyncio.run(store.store(project.id, [create_classified(7)]))
        asyncio.run(store.store(other.id, [create_classified(7)]))

        assert len(stored_rows(db_session, project.id)) == 1
        assert len(stored_rows(db_session, other.id)) == 1

    def test_database_rejects_duplicate_key(self, db_session, project):
        db_session.add(create_discovery(project.id, source=SOURCE))
        db_session.commit()
        db_session.add(create_discovery(project.id, source=SOURCE))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_context_snapshot_recorded(self, db_session, project):
        store = DiscoveryStore(SessionLocal)
        asyncio.run(store.store(project.id, [create_classified(8)], {'progress': 'Prototyping'}))

        assert stored_rows(db_session, project.id)[0].search_context == {'progress': 'Prototyping'}

    def test_hidden_discovery_keeps_annotations(self, db_session, project):
        db_session.add(create_discovery(
            project.id, source=SOURCE, relevance_score=6, hidden=True,
            categories=["terrain"], content_type=ContentType.ARTICLE, reasoning="kept",
        ))
        db_session.commit()
        store = DiscoveryStore(SessionLocal)

        stats = asyncio.run(store.store(project.id, [
            create_classified(9, content_type=ContentType.RESEARCH, categories=["noise"]),
        ]))

        row = stored_rows(db_session, project.id)[0]
        assert stats.updated == 1
        assert row.relevance_score == 9
        assert row.hidden is True
        assert row.categories == ["terrain"]
        assert row.content_type == ContentType.ARTICLE
        assert row.reasoning == "kept"

    def test_key_locks_released_after_store(self, project):
        store = DiscoveryStore(SessionLocal)

        asyncio.run(store.store(project.id, [
            create_classified(7, source="https://example.com/a"),
            create_classified(8, source="https://example.com/a"),
            create_classified(7, source="https://example.com/b"),
        ]))

        assert store._locks == {}


class TestCompareAndSwap:

    def test_stale_writer_cannot_lower_score(self, db_session, project):
        db_session.add(create_discovery(project.id, source=SOURCE, relevance_score=9))
        db_session.commit()
        store = DiscoveryStore(SessionLocal)

        session = SessionLocal()
        try:
            # Decided against a stale read of score 7
            action = store._compare_and_swap(session, project.id, SOURCE, MergeDecision(UPDATE, {'relevance_score': 8}))
        finally:
            session.close()

        assert action == SKIP
        assert stored_rows(db_session, project.id)[0].relevance_score == 9

    def test_row_hidden_after_read_only_gains_score(self, db_session, project):
        """A full update decided before the row was hidden still only raises the score."""
        db_session.add(create_discovery(project.id, source=SOURCE, relevance_score=4, hidden=True, reasoning="kept"))
        db_session.commit()
        decision = MergeDecision(UPDATE, {'relevance_score': 8, 'reasoning': "rewritten", 'categories': ["noise"]})

        session = SessionLocal()
        try:
            action = DiscoveryStore(SessionLocal)._compare_and_swap(session, project.id, SOURCE, decision)
        finally:
            session.close()

        row = stored_rows(db_session, project.id)[0]
        assert action == UPDATE
        assert row.relevance_score == 8
        assert row.reasoning == "kept"
        assert row.categories == ["terrain"]

    def test_insert_race_becomes_update(self, db_session, project, monkeypatch):
        """A lost insert race is retried as a guarded update."""
        db_session.add(create_discovery(project.id, source=SOURCE, relevance_score=4))
        db_session.commit()

        real_merge = merge_module.merge
        calls = []

        def merge_as_if_unseen(existing, incoming, context_snapshot=None, now=None):
            calls.append(existing)
            if len(calls) == 1:
                return real_merge(None, incoming, context_snapshot, now)
            return real_merge(existing, incoming, context_snapshot, now)

        monkeypatch.setattr(merge_module, 'merge', merge_as_if_unseen)

        action = DiscoveryStore(SessionLocal).apply(project.id, create_classified(9))

        assert action == UPDATE
        rows = stored_rows(db_session, project.id)
        assert len(rows) == 1
        assert rows[0].relevance_score == 9


class TestUnavailable:

    def test_operational_error_surfaces_as_store_unavailable(self):
        class DownSession:
            def query(self, *args):
                raise OperationalError("SELECT 1", {}, Exception("connection refused"))

            def rollback(self):
                pass

            def close(self):
                pass

        store = DiscoveryStore(DownSession)
        with pytest.raises(StoreUnavailable):
            store.apply(None, create_classified(8))


class TestTouchProject:

    def test_sets_last_updated(self, db_session, project):
        assert project.last_updated is None
        touch_project(SessionLocal, project.id)
        db_session.expire_all()
        assert db_session.get(Project, project.id).last_updated is not None
