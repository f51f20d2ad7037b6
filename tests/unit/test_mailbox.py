"""
Unit tests for the mailbox helpers (no IMAP connection).
"""

from email.message import EmailMessage

import pytest

from agent_tracker.services import mailbox as mailbox_module
from agent_tracker.services.mailbox import Mailbox, RawMessage, build_search_criteria, parse_message


class TestSearchCriteria:

    def test_no_senders(self):
        assert build_search_criteria([]) == 'UNSEEN'

    def test_single_sender(self):
        assert build_search_criteria(['news@alphasignal.ai']) == '(UNSEEN FROM "news@alphasignal.ai")'

    def test_nested_or(self):
        """IMAP OR takes exactly two operands, so three senders nest."""
        assert build_search_criteria(['a@x', 'b@x', 'c@x']) == '(UNSEEN OR FROM "a@x" OR FROM "b@x" FROM "c@x")'


class TestParseMessage:

    def build(self, html=None):
        message = EmailMessage()
        message['From'] = 'Alpha Signal <news@alphasignal.ai>'
        message['Subject'] = 'Top AI news'
        message['Date'] = 'Tue, 04 Mar 2025 08:00:00 +0000'
        message.set_content('Plain body')
        if html:
            message.add_alternative(html, subtype='html')
        return message.as_bytes()

    def test_prefers_html(self):
        parsed = parse_message(self.build(html='<p>HTML body</p>'))

        assert parsed.sender == 'Alpha Signal <news@alphasignal.ai>'
        assert parsed.subject == 'Top AI news'
        assert parsed.date.year == 2025
        assert 'HTML body' in parsed.body

    def test_plain_only(self):
        parsed = parse_message(self.build())
        assert parsed.html == ''
        assert parsed.body.strip() == 'Plain body'


class TestMailbox:

    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            Mailbox('imap.example.com', '', 'secret')

    def test_raw_message_body_fallback(self):
        assert RawMessage(sender='a', subject='b', date=None, text='only text').body == 'only text'


class FakeImap:
    """Records uid() commands; FETCH replies with the raw bytes for each uid."""

    def __init__(self, bodies):
        self.bodies = bodies
        self.commands = []

    def uid(self, command, *args):
        self.commands.append((command,) + args)
        if command == 'SEARCH':
            return 'OK', [b' '.join(self.bodies)]
        if command == 'FETCH':
            uid = args[0].encode()
            return 'OK', [(b'%s (UID %s BODY[] {10}' % (uid, uid), self.bodies[uid]), b')']
        return 'OK', [b'']

    def logout(self):
        self.commands.append(('LOGOUT',))


class TestMailboxFetch:

    def mailbox(self, monkeypatch, conn):
        mailbox = Mailbox('imap.example.com', 'user', 'secret')
        monkeypatch.setattr(mailbox, '_connect', lambda: conn)
        return mailbox

    def test_fetch_peeks_without_flagging(self, monkeypatch):
        conn = FakeImap({b'7': TestParseMessage().build(html='<p>One</p>')})

        messages = self.mailbox(monkeypatch, conn).fetch_unread_from(['news@alphasignal.ai'])

        assert [m.uid for m in messages] == ['7']
        assert ('FETCH', '7', '(BODY.PEEK[])') in conn.commands
        assert not [c for c in conn.commands if c[0] == 'STORE']

    def test_unparseable_message_skipped(self, monkeypatch):
        good = TestParseMessage().build(html='<p>Good</p>')
        conn = FakeImap({b'1': b'broken', b'2': good})
        real_parse = mailbox_module.parse_message

        def parse(raw_bytes):
            if raw_bytes == b'broken':
                raise LookupError("unknown encoding: x-unknown")
            return real_parse(raw_bytes)

        monkeypatch.setattr(mailbox_module, 'parse_message', parse)

        messages = self.mailbox(monkeypatch, conn).fetch_unread_from(['news@alphasignal.ai'])

        assert [m.uid for m in messages] == ['2']
        assert conn.commands[-1] == ('LOGOUT',)

    def test_mark_seen_flags_uids(self, monkeypatch):
        conn = FakeImap({})

        self.mailbox(monkeypatch, conn).mark_seen(['3', '5'])

        assert ('STORE', '3,5', '+FLAGS', '(\\Seen)') in conn.commands

    def test_mark_seen_nothing_to_do(self, monkeypatch):
        conn = FakeImap({})
        self.mailbox(monkeypatch, conn).mark_seen([])
        assert conn.commands == []
