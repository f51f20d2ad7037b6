"""
Mailbox Client

Thin IMAP wrapper that pulls unread newsletters from known senders.
"""

import email
import imaplib
import logging
from dataclasses import dataclass
from datetime import datetime
from email import policy
from email.utils import parsedate_to_datetime
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RawMessage:
    sender: str
    subject: str
    date: Optional[datetime]
    html: str = ''
    text: str = ''
    uid: Optional[str] = None

    @property
    def body(self) -> str:
        """HTML when present, plain text otherwise."""
        return self.html or self.text


def build_search_criteria(senders: list[str]) -> str:
    """UNSEEN plus a nested OR over FROM clauses (IMAP OR is binary)."""
    if not senders:
        return 'UNSEEN'
    clause = f'FROM "{senders[-1]}"'
    for sender in reversed(senders[:-1]):
        clause = f'OR FROM "{sender}" {clause}'
    return f'(UNSEEN {clause})'


def parse_message(raw_bytes: bytes) -> RawMessage:
    message = email.message_from_bytes(raw_bytes, policy=policy.default)

    date = None
    if message['date']:
        try:
            date = parsedate_to_datetime(str(message['date']))
        except (TypeError, ValueError):
            date = None

    html_part = message.get_body(preferencelist=('html',))
    text_part = message.get_body(preferencelist=('plain',))

    return RawMessage(
        sender=str(message['from'] or ''),
        subject=str(message['subject'] or ''),
        date=date,
        html=html_part.get_content() if html_part is not None else '',
        text=text_part.get_content() if text_part is not None else '',
    )


class Mailbox:
    """
    IMAP-over-SSL inbox reader.

    Messages are read with BODY.PEEK so fetching leaves them unread; callers
    flag them with mark_seen() once they have been imported.
    """

    def __init__(self, host: str, user: str, password: str, port: int = 993,
                 timeout: float = 30.0, folder: str = 'INBOX'):
        if not host or not user or not password:
            raise ValueError("IMAP_HOST, IMAP_USER and IMAP_PASSWORD must be set")
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.timeout = timeout
        self.folder = folder

    def _connect(self) -> imaplib.IMAP4:
        conn = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
        conn.login(self.user, self.password)
        conn.select(self.folder)
        return conn

    @staticmethod
    def _logout(conn: imaplib.IMAP4) -> None:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    def fetch_unread_from(self, senders: list[str]) -> list[RawMessage]:
        """
        Fetch unread messages from any of the senders without flagging them.

        A message that cannot be fetched or parsed is logged and skipped; it
        stays unread for the next run. Blocking; the connection and login
        share the socket timeout.
        """
        messages = []
        conn = self._connect()
        try:
            status, data = conn.uid('SEARCH', None, build_search_criteria(senders))
            if status != 'OK':
                raise imaplib.IMAP4.error(f"IMAP search failed: {status}")

            uids = data[0].split() if data and data[0] else []
            logger.info(f"Found {len(uids)} unread newsletters")

            for uid in uids:
                uid = uid.decode() if isinstance(uid, bytes) else str(uid)
                status, parts = conn.uid('FETCH', uid, '(BODY.PEEK[])')
                if status != 'OK':
                    logger.warning(f"Could not fetch message {uid}: {status}")
                    continue
                for part in parts or []:
                    if not isinstance(part, tuple):
                        continue
                    try:
                        message = parse_message(part[1])
                    except Exception as e:
                        logger.error(f"Could not parse message {uid}, leaving it unread: {e}")
                        continue
                    message.uid = uid
                    messages.append(message)
        finally:
            self._logout(conn)

        return messages

    def mark_seen(self, uids: list[str]) -> None:
        """Flag imported messages as read."""
        if not uids:
            return
        conn = self._connect()
        try:
            status, _ = conn.uid('STORE', ','.join(uids), '+FLAGS', '(\\Seen)')
            if status != 'OK':
                raise imaplib.IMAP4.error(f"IMAP store failed: {status}")
            logger.info(f"Marked {len(uids)} newsletters as read")
        finally:
            self._logout(conn)
