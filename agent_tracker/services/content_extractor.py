"""
Content Extractor

Turns one unit of raw content (a newsletter body or a batch of search hits)
into CandidateItems. Pure and offline: no network, no database.

Structured newsletters go through a layered pass:
1. Segment into named sections by format-specific boundary markers
2. Pull title/URL pairs with an ordered list of anchor strategies
3. Drop duplicates within the unit
4. Drop promotional links
5. If nothing survived, fall back to looser title/description heuristics

Extraction never raises; the worst case is an empty result.
"""

import enum
import hashlib
import html
import json
import logging
import quopri
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from bs4 import BeautifulSoup

from agent_tracker.services.items import CandidateItem
from agent_tracker.services.url_normalizer import alpha_signal_code, clean_link

logger = logging.getLogger(__name__)

# How far around an anchor to look for category and popularity hints
CONTEXT_WINDOW = 500
MAX_TITLE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 2000

STATUS_ABSENT = 'absent'
STATUS_EMPTY = 'empty'
STATUS_OK = 'ok'

PROMOTIONAL_PHRASES = (
    'signup', 'sign up', 'subscribe', 'follow', 'work with us',
    'join', 'contact', 'about us', 'feedback',
)


class SourceFormat(enum.Enum):
    """Known raw content layouts"""
    ALPHA_SIGNAL = "alpha_signal"
    SUPERHUMAN = "superhuman"
    GENERIC = "generic"

    @classmethod
    def from_sender(cls, sender: str) -> "SourceFormat":
        sender = (sender or '').lower()
        if 'alphasignal.ai' in sender:
            return cls.ALPHA_SIGNAL
        if 'joinsuperhuman.ai' in sender:
            return cls.SUPERHUMAN
        return cls.GENERIC


# (section name, start marker, end markers); end of input also closes a section
SECTION_LAYOUTS = {
    SourceFormat.ALPHA_SIGNAL: [
        ('top_news', 'TOP NEWS', ('TRENDING SIGNALS',)),
        ('trending_signals', 'TRENDING SIGNALS', ('TOP TUTORIALS',)),
        ('top_tutorials', 'TOP TUTORIALS', ('HOW TO',)),
        ('how_to', 'HOW TO', ("How was today's email?",)),
    ],
    SourceFormat.SUPERHUMAN: [
        ('today_in_ai', 'TODAY IN AI', ('FROM THE FRONTIER', 'PRESENTED BY')),
        ('from_the_frontier', 'FROM THE FRONTIER', ('THE AI ACADEMY', 'PRESENTED BY')),
        ('ai_tech_news', 'AI & TECH NEWS', ('PRODUCTIVITY', 'PRESENTED BY')),
        ('productivity', 'PRODUCTIVITY', ('PROMPT OF THE DAY', 'SOCIAL SIGNALS')),
        ('social_signals', 'SOCIAL SIGNALS', ('AI-GENERATED IMAGES',)),
    ],
}


@dataclass
class LinkTuple:
    """Title/URL pair lifted from markup, with optional hints."""
    title: str
    url: str
    category: Optional[str] = None
    popularity: Optional[str] = None
    description: str = ''


@dataclass
class ExtractionResult:
    items: list[CandidateItem] = field(default_factory=list)
    sections: dict[str, str] = field(default_factory=dict)
    status: str = STATUS_EMPTY


# =============================================================================
# Text helpers
# =============================================================================

SOFT_LINE_BREAK = re.compile(r'=\r?\n')
URL_PATTERN = re.compile(r'https?://[^\s"\'<>)\]]+')
QP_ESCAPE = re.compile(r'=[0-9A-F]{2}')

TITLE_REPLACEMENTS = (
    ('=E2=80=99', "'"),
    ('=E2=80=98', "'"),
    ('=E2=80=9C', '"'),
    ('=E2=80=9D', '"'),
    ('=E2=80=94', '-'),
)


def _looks_quoted_printable(text: str) -> bool:
    return '=3D' in text or bool(SOFT_LINE_BREAK.search(text))


def _decode_quoted_printable(text: str) -> str:
    """Decode =XX escapes and soft line breaks; unknown escapes pass through."""
    try:
        return quopri.decodestring(text.encode('utf-8', 'replace')).decode('utf-8', 'replace')
    except ValueError:
        return text


def _looks_like_html(text: str) -> bool:
    return bool(re.search(r'<(?:html|body|div|p|a|h\d|table|span|br)\b', text, re.IGNORECASE))


def _html_to_text(markup: str) -> str:
    soup = BeautifulSoup(markup, 'html.parser')
    for tag in soup(['script', 'style', 'head']):
        tag.decompose()
    return soup.get_text(separator='\n')


def _clean_text(text: str, limit: int) -> str:
    text = html.unescape(text)
    text = re.sub(r'\s+', ' ', text).strip()
    return text[:limit]


def _clean_title(raw: str) -> str:
    for encoded, plain in TITLE_REPLACEMENTS:
        raw = raw.replace(encoded, plain)
    if _looks_quoted_printable(raw) or QP_ESCAPE.search(raw):
        raw = _decode_quoted_printable(raw)
    return _clean_text(raw, MAX_TITLE_LENGTH)


def is_promotional(title: str) -> bool:
    """Case-insensitive stoplist match against generic newsletter chrome."""
    lowered = (title or '').lower()
    return any(phrase in lowered for phrase in PROMOTIONAL_PHRASES)


# =============================================================================
# Section segmentation
# =============================================================================

def segment_sections(text: str, source_format: SourceFormat) -> dict[str, str]:
    """
    Split content into named sections using the format's boundary markers.

    Sections whose start marker is absent are simply left out.
    """
    sections = {}
    for name, start, ends in SECTION_LAYOUTS.get(source_format, []):
        end_pattern = '|'.join(re.escape(end) for end in ends)
        pattern = re.compile(rf'{re.escape(start)}([\s\S]*?)(?:{end_pattern}|$)', re.IGNORECASE)
        match = pattern.search(text)
        if match and match.group(1).strip():
            sections[name] = match.group(1).strip()
    return sections


# =============================================================================
# Link strategies: text -> list[LinkTuple], tried in order
# =============================================================================

QP_ANCHOR = re.compile(
    r'<a\b[^>]*?\bhref=3D(["\']?)(https?://[^"\'\s>]+)\1[^>]*>([^<]+)</a>',
    re.IGNORECASE
)
PLAIN_ANCHOR = re.compile(
    r'<a\b[^>]*?\bhref=(["\']?)(https?://[^"\'\s>]+)\1[^>]*>([^<]+)</a>',
    re.IGNORECASE
)

CATEGORY_PATTERNS = (
    re.compile(r'<span style=3D[^>]*>([^<]+)</span>', re.IGNORECASE),
    re.compile(r'<span style=[^>]*>([^<]+)</span>', re.IGNORECASE),
    re.compile(r'<div[^>]*class=3D["\']?category["\']?[^>]*>([^<]+)</div>', re.IGNORECASE),
    re.compile(r'<div[^>]*class=["\']?category["\']?[^>]*>([^<]+)</div>', re.IGNORECASE),
)

POPULARITY_PATTERNS = (
    re.compile(r'=E2=87=A7\s*([\d,]+)\s*Likes'),
    re.compile(r'⇧\s*([\d,]+)\s*Likes'),
    re.compile(r'(\d[\d,]*)\s*Likes'),
)


def _nearest_category(before: str) -> Optional[str]:
    for pattern in CATEGORY_PATTERNS:
        matches = pattern.findall(before)
        if matches:
            category = _clean_title(matches[-1])
            if category:
                return category
    return None


def _popularity(after: str) -> Optional[str]:
    for pattern in POPULARITY_PATTERNS:
        match = pattern.search(after)
        if match:
            return match.group(1).strip()
    return None


def _trailing_description(after: str) -> str:
    """Text following an anchor up to the next link."""
    segment = re.split(r'<a\b', after, maxsplit=1, flags=re.IGNORECASE)[0]
    if _looks_quoted_printable(segment) or QP_ESCAPE.search(segment):
        segment = _decode_quoted_printable(segment)
    segment = re.sub(r'<[^>]+>', ' ', segment)
    segment = re.sub(r'⇧\s*[\d,]+\s*Likes', ' ', segment)
    return _clean_text(segment, MAX_DESCRIPTION_LENGTH)


def _anchor_links(text: str, pattern: re.Pattern, encoded: bool) -> list[LinkTuple]:
    links = []
    for match in pattern.finditer(text):
        url = match.group(2)
        if encoded:
            url = _decode_quoted_printable(url)
        url = clean_link(url)
        title = _clean_title(match.group(3))
        if not url or not title:
            continue
        before = text[max(0, match.start() - CONTEXT_WINDOW):match.start()]
        after = text[match.end():match.end() + CONTEXT_WINDOW]
        until_next_link = re.split(r"<a\b", after, maxsplit=1, flags=re.IGNORECASE)[0]
        links.append(LinkTuple(
            title=title,
            url=url,
            category=_nearest_category(before),
            popularity=_popularity(until_next_link),
            description=_trailing_description(after),
        ))
    return links


def quoted_printable_anchor_links(text: str) -> list[LinkTuple]:
    """Anchors whose attribute '=' is still quoted-printable encoded as =3D."""
    return _anchor_links(SOFT_LINE_BREAK.sub('', text), QP_ANCHOR, encoded=True)


def plain_anchor_links(text: str) -> list[LinkTuple]:
    """Ordinary decoded anchors with double, single or no quotes."""
    return _anchor_links(text, PLAIN_ANCHOR, encoded=False)


def decoded_anchor_links(text: str) -> list[LinkTuple]:
    """Decode the whole body first; catches anchors split by soft line breaks."""
    if not _looks_quoted_printable(text):
        return []
    return _anchor_links(_decode_quoted_printable(text), PLAIN_ANCHOR, encoded=False)


LINK_STRATEGIES: list[Callable[[str], list[LinkTuple]]] = [
    quoted_printable_anchor_links,
    plain_anchor_links,
    decoded_anchor_links,
]


def extract_links(text: str) -> list[LinkTuple]:
    """Run link strategies in order; the first non-empty result wins."""
    for strategy in LINK_STRATEGIES:
        links = strategy(text)
        if links:
            logger.debug(f"{strategy.__name__} matched {len(links)} links")
            return links
    return []


def dedupe_links(links: list[LinkTuple]) -> list[LinkTuple]:
    """Drop links whose URL, short-link code or title was already seen."""
    seen_urls = set()
    seen_codes = set()
    seen_titles = set()
    unique = []
    for link in links:
        code = alpha_signal_code(link.url)
        if link.url in seen_urls or link.title in seen_titles or (code and code in seen_codes):
            continue
        seen_urls.add(link.url)
        seen_titles.add(link.title)
        if code:
            seen_codes.add(code)
        unique.append(link)
    return unique


# =============================================================================
# Fallback heuristics: text -> list[(title, description)], tried in order
# =============================================================================

EMOJI_BULLETS = '✅🦎♟🤝📊🎮💰✍🛒🧑🔮⚙'


def heading_paragraph_blocks(text: str) -> list[tuple[str, str]]:
    """<h3>Title</h3> ... <p>Description</p>"""
    pattern = re.compile(r'<h3[^>]*>([^<]+)</h3>.*?<p[^>]*>([^<]+)</p>', re.IGNORECASE | re.DOTALL)
    return [(m.group(1), m.group(2)) for m in pattern.finditer(text)]


def numbered_blocks(text: str) -> list[tuple[str, str]]:
    """1. Title\\nbody ... 2. Title\\nbody"""
    pattern = re.compile(r'^\s*\d+\.\s+([^\n]+)\n?([\s\S]*?)(?=^\s*\d+\.\s+|\Z)', re.MULTILINE)
    return [(m.group(1), m.group(2)) for m in pattern.finditer(text)]


def emoji_bullet_blocks(text: str) -> list[tuple[str, str]]:
    """✅ Title: body"""
    pattern = re.compile(rf'[{EMOJI_BULLETS}]\ufe0f?\s+([^:\n]+):([^{EMOJI_BULLETS}]*)')
    return [(m.group(1), m.group(2)) for m in pattern.finditer(text)]


def arrow_terminated_blocks(text: str) -> list[tuple[str, str]]:
    """Title line, then a description block closed by the ⇧ likes marker."""
    pattern = re.compile(r'^([A-Z][^\n]+)\n([^⇧]+)⇧', re.MULTILINE)
    return [(m.group(1), m.group(2)) for m in pattern.finditer(text)]


def equals_terminated_blocks(text: str) -> list[tuple[str, str]]:
    """Title line, then a description block closed by an encoded '=' marker."""
    pattern = re.compile(r'^([A-Z][^\n=]+)\n([^=]+)=', re.MULTILINE)
    return [(m.group(1), m.group(2)) for m in pattern.finditer(text)]


def title_paragraph_blocks(text: str) -> list[tuple[str, str]]:
    """Blank-line separated blocks whose first short line reads like a title."""
    blocks = []
    for chunk in re.split(r'\n\s*\n', text):
        lines = [line.strip() for line in chunk.strip().splitlines() if line.strip()]
        if len(lines) < 2:
            continue
        title, body = lines[0], ' '.join(lines[1:])
        if len(title) > 150 or title.endswith(('.', ',', ';')):
            continue
        if len(body) < 20:
            continue
        blocks.append((title, body))
    return blocks


def _fallback_pairs(text: str) -> list[tuple[str, str]]:
    markup = _decode_quoted_printable(text) if _looks_quoted_printable(text) else text
    plain = _html_to_text(markup) if _looks_like_html(markup) else markup

    strategies = (
        (heading_paragraph_blocks, markup),
        (numbered_blocks, plain),
        (emoji_bullet_blocks, plain),
        (arrow_terminated_blocks, plain),
        (equals_terminated_blocks, text),
        (title_paragraph_blocks, plain),
    )
    for strategy, source_text in strategies:
        pairs = []
        for title, description in strategy(source_text):
            title = _clean_title(title)
            description = _clean_text(description, MAX_DESCRIPTION_LENGTH)
            if title and description:
                pairs.append((title, description))
        if pairs:
            logger.debug(f"Fallback {strategy.__name__} matched {len(pairs)} blocks")
            return pairs
    return []


def synthetic_source(source_format: SourceFormat, title: str) -> str:
    """Stable identity for items that carry no link of their own."""
    digest = hashlib.sha1(title.encode('utf-8')).hexdigest()[:16]
    return f"newsletter:{source_format.value}:{digest}"


def fallback_links(text: str, source_format: SourceFormat) -> list[LinkTuple]:
    links = []
    for title, description in _fallback_pairs(text):
        url_match = URL_PATTERN.search(description)
        url = clean_link(url_match.group(0)) if url_match else synthetic_source(source_format, title)
        links.append(LinkTuple(title=title, url=url, description=description))
    return links


# =============================================================================
# Entry points
# =============================================================================

def _to_candidates(links: list[LinkTuple], search_query: Optional[str]) -> list[CandidateItem]:
    return [
        CandidateItem(
            title=link.title,
            description=link.description,
            source=link.url,
            search_query=search_query,
            category_hint=link.category,
            popularity_hint=link.popularity,
        )
        for link in links
    ]


def _extract_text(text: str, source_format: SourceFormat, search_query: Optional[str]) -> ExtractionResult:
    sections = segment_sections(text, source_format)

    links = [link for link in dedupe_links(extract_links(text)) if not is_promotional(link.title)]

    if not links:
        targets = list(sections.values()) or [text]
        fallback = []
        for target in targets:
            fallback.extend(fallback_links(target, source_format))
        links = [link for link in dedupe_links(fallback) if not is_promotional(link.title)]

    items = _to_candidates(links, search_query)
    return ExtractionResult(items=items, sections=sections, status=STATUS_OK if items else STATUS_EMPTY)


def _parse_date(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
    return None


def _hit_text(value) -> str:
    """Scalar hit field as text; containers and missing values become ''."""
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return ''
    return str(value).strip()


def _hit_hint(value) -> Optional[str]:
    return _hit_text(value) or None


def _hit_to_candidate(hit, search_query: Optional[str]) -> Optional[CandidateItem]:
    if isinstance(hit, CandidateItem):
        return hit
    if not isinstance(hit, dict):
        return None

    title = _hit_text(hit.get('title'))
    source = _hit_text(hit.get('url') or hit.get('source') or hit.get('link'))
    if not title or not source:
        return None

    return CandidateItem(
        title=title[:MAX_TITLE_LENGTH],
        description=_hit_text(hit.get('description') or hit.get('snippet') or hit.get('text')),
        source=source,
        publication_date=_parse_date(hit.get('publication_date') or hit.get('published_date')),
        search_query=_hit_hint(hit.get('search_query')) or search_query,
        category_hint=_hit_hint(hit.get('category')),
        popularity_hint=_hit_hint(hit.get('popularity')),
        content_type_hint=_hit_hint(hit.get('type')),
    )


def _hits_to_candidates(hits, search_query: Optional[str]) -> list[CandidateItem]:
    """Convert hits one at a time; a malformed hit is dropped on its own."""
    items = []
    for index, hit in enumerate(hits):
        try:
            candidate = _hit_to_candidate(hit, search_query)
        except Exception as e:
            logger.warning(f"Skipping malformed search hit #{index}: {e}")
            continue
        if candidate:
            items.append(candidate)
    return items


def extract(raw, source_type: SourceFormat = SourceFormat.GENERIC, search_query: Optional[str] = None) -> ExtractionResult:
    """
    Extract CandidateItems from one unit of raw content.

    Args:
        raw: Newsletter body (str/bytes) or a list of search hits (dicts or CandidateItems)
        source_type: Layout of the content
        search_query: Query that produced the content, if any

    Returns:
        ExtractionResult; status distinguishes absent input from zero items
    """
    if raw is None or (isinstance(raw, (str, bytes, list, tuple)) and len(raw) == 0):
        logger.info(json.dumps({"event": "extraction_input_absent", "format": source_type.value}))
        return ExtractionResult(status=STATUS_ABSENT)

    try:
        if isinstance(raw, (list, tuple)):
            items = _hits_to_candidates(raw, search_query)
            result = ExtractionResult(items=items, status=STATUS_OK if items else STATUS_EMPTY)
        else:
            if isinstance(raw, bytes):
                raw = raw.decode('utf-8', errors='replace')
            result = _extract_text(str(raw), source_type, search_query)
    except Exception as e:
        logger.error(f"Extraction failed for {source_type.value} content: {e}")
        result = ExtractionResult(status=STATUS_EMPTY)

    if result.status == STATUS_EMPTY:
        logger.info(json.dumps({"event": "extraction_empty", "format": source_type.value}))
    else:
        logger.info(f"Extracted {len(result.items)} items from {source_type.value} content "
                    f"({len(result.sections)} sections)")
    return result
