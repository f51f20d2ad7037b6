"""
Integration tests for newsletter import with a fake mailbox
"""

import asyncio

import pytest

from agent_tracker.config import PipelineConfig
from agent_tracker.database import SessionLocal
from agent_tracker.models import Discovery, Project
from agent_tracker.services.mailbox import RawMessage
from agent_tracker.services.merge import MergeStats, StoreUnavailable
from agent_tracker.services.newsletter_import import import_newsletters
from tests.fixtures.fakes import FakeClassifier, FakeMailbox
from tests.fixtures.sample_data import ALPHA_SIGNAL_QP, UNMARKED_NEWSLETTER


def newsletter(body, sender='Alpha Signal <news@alphasignal.ai>', subject='Top AI news today', uid=None):
    return RawMessage(sender=sender, subject=subject, date=None, html=body, uid=uid)


def run_import(project, mailbox, classifier=None, config=None):
    config = config or PipelineConfig(mailbox_timeout_seconds=2.0)
    return asyncio.run(import_newsletters(
        project.id, config, SessionLocal, mailbox=mailbox, classifier=classifier or FakeClassifier(default=7),
    ))


class TestNewsletterImport:

    def test_items_become_discoveries(self, db_session, project):
        stats = run_import(project, FakeMailbox([newsletter(ALPHA_SIGNAL_QP)]))

        assert stats['emails_fetched'] == 1
        assert stats['items_extracted'] == 2
        assert stats['inserted'] == 2
        stored = db_session.query(Discovery).filter(Discovery.project_id == project.id).all()
        assert {d.source for d in stored} == {
            "https://link.alphasignal.ai/AbC123",
            "https://link.alphasignal.ai/XyZ789",
        }
        assert all(d.search_context['origin'] == 'newsletter' for d in stored)
        assert stored[0].search_context['newsletter_subject'] == 'Top AI news today'

    def test_sections_passed_to_classifier(self, project):
        classifier = FakeClassifier(default=7)
        run_import(project, FakeMailbox([newsletter(ALPHA_SIGNAL_QP)]), classifier=classifier)

        assert "[top_news]" in classifier.contexts[0].extra

    def test_fallback_items_use_stable_sources(self, db_session, project):
        mailbox = FakeMailbox([newsletter(UNMARKED_NEWSLETTER, sender='digest@example.com')])

        run_import(project, mailbox)
        stats = run_import(project, FakeMailbox([newsletter(UNMARKED_NEWSLETTER, sender='digest@example.com')]))

        assert stats['inserted'] == 0
        assert stats['unchanged'] == 2
        assert db_session.query(Discovery).filter(Discovery.project_id == project.id).count() == 2

    def test_below_threshold_dropped(self, db_session, project):
        stats = run_import(project, FakeMailbox([newsletter(ALPHA_SIGNAL_QP)]), classifier=FakeClassifier(default=2))

        assert stats['below_threshold'] == 2
        assert db_session.query(Discovery).count() == 0

    def test_configured_senders_searched(self, project):
        mailbox = FakeMailbox()
        config = PipelineConfig(newsletter_sources=['a@example.com'], mailbox_timeout_seconds=2.0)

        run_import(project, mailbox, config=config)

        assert mailbox.senders == ['a@example.com']

    def test_mailbox_error_recorded_and_project_stamped(self, db_session, project):
        stats = run_import(project, FakeMailbox(error=OSError("connection reset")))

        assert any('connection reset' in e for e in stats['errors'])
        db_session.expire_all()
        assert db_session.get(Project, project.id).last_updated is not None

    def test_unconfigured_mailbox(self, project):
        stats = asyncio.run(import_newsletters(project.id, PipelineConfig(), SessionLocal))
        assert stats['errors'] == ['Mailbox not configured']


class TestMarkingRead:
    """Messages are flagged read only after they have been imported."""

    def test_imported_messages_marked_read(self, project):
        mailbox = FakeMailbox([
            newsletter(ALPHA_SIGNAL_QP, uid='11'),
            newsletter(UNMARKED_NEWSLETTER, sender='digest@example.com', uid='12'),
        ])

        stats = run_import(project, mailbox)

        assert stats['emails_processed'] == 2
        assert mailbox.seen == ['11', '12']

    def test_store_failure_leaves_rest_unread(self, project):
        class FailingSecondStore:
            def __init__(self):
                self.calls = 0

            async def store(self, project_id, items, context_snapshot=None):
                self.calls += 1
                if self.calls == 2:
                    raise StoreUnavailable("database is locked")
                return MergeStats(inserted=len(items))

        mailbox = FakeMailbox([
            newsletter(ALPHA_SIGNAL_QP, uid='21'),
            newsletter(ALPHA_SIGNAL_QP, uid='22'),
        ])

        with pytest.raises(StoreUnavailable):
            asyncio.run(import_newsletters(
                project.id, PipelineConfig(mailbox_timeout_seconds=2.0), SessionLocal,
                mailbox=mailbox, classifier=FakeClassifier(default=7), store=FailingSecondStore(),
            ))

        assert mailbox.seen == ['21']

    def test_fetch_failure_marks_nothing(self, project):
        mailbox = FakeMailbox(error=OSError("connection reset"))
        run_import(project, mailbox)
        assert mailbox.seen == []

    def test_mark_failure_recorded(self, db_session, project):
        mailbox = FakeMailbox([newsletter(ALPHA_SIGNAL_QP, uid='31')], mark_error=OSError("broken pipe"))

        stats = run_import(project, mailbox)

        assert stats['inserted'] == 2
        assert any('broken pipe' in e for e in stats['errors'])
