"""
URL Normalization Service

Cleans links pulled out of newsletters and search hits. Tracking parameters
are stripped without touching case (short-link codes are case sensitive),
and candidates from one run are collapsed by a looser comparison key.
"""

import logging
import re
from typing import Optional
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

logger = logging.getLogger(__name__)

# Query parameters to always remove (tracking)
REMOVE_PARAMS = {
    'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
    'fbclid', 'gclid', 'mc_cid', 'mc_eid', '_ga', '_gl', 'ref_src',
}

ALPHA_SIGNAL_CODE = re.compile(r'link\.alphasignal\.ai/([A-Za-z0-9]+)')


def alpha_signal_code(url: str) -> Optional[str]:
    """Return the short code of an Alpha Signal tracking link, if any."""
    match = ALPHA_SIGNAL_CODE.search(url or '')
    return match.group(1) if match else None


def clean_link(url: str) -> str:
    """
    Canonicalize a link found in newsletter markup.

    Alpha Signal links collapse to https://link.alphasignal.ai/<code>;
    everything else loses tracking parameters and fragments.
    """
    if not url:
        return ''
    url = url.strip()
    code = alpha_signal_code(url)
    if code:
        return f"https://link.alphasignal.ai/{code}"
    return strip_tracking_params(url)


def strip_tracking_params(url: str) -> str:
    """Remove tracking query parameters and the fragment, preserving case."""
    try:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            return url
        params = [
            (key, value)
            for key, value in parse_qsl(parsed.query, keep_blank_values=True)
            if key.lower() not in REMOVE_PARAMS
        ]
        return urlunparse((
            parsed.scheme,
            parsed.netloc,
            parsed.path,
            parsed.params,
            urlencode(params, doseq=True),
            ''
        ))
    except ValueError as e:
        logger.warning(f"URL cleanup failed for '{url}': {e}")
        return url


def comparison_key(url: str) -> str:
    """
    Loose key for collapsing near-identical links within one run.

    https/http, www., trailing slashes and tracking parameters are ignored.
    Stored discoveries are still keyed on the exact source string.
    """
    if not url:
        return ''
    cleaned = strip_tracking_params(url.strip())
    try:
        parsed = urlparse(cleaned)
    except ValueError:
        return cleaned
    netloc = parsed.netloc.lower()
    if netloc.startswith('www.'):
        netloc = netloc[4:]
    path = parsed.path.rstrip('/')
    return urlunparse(('https', netloc, path, '', parsed.query, ''))


def deduplicate_candidates(items: list) -> tuple[list, int]:
    """
    Drop candidates whose source collapses to an already seen comparison key.

    Args:
        items: CandidateItems in priority order

    Returns:
        Tuple of (unique items, duplicate count)
    """
    seen = set()
    unique = []
    duplicates = 0

    for item in items:
        key = comparison_key(item.source)
        if not key:
            continue
        if key in seen:
            duplicates += 1
            logger.debug(f"Duplicate source skipped: {item.source}")
        else:
            seen.add(key)
            unique.append(item)

    if duplicates:
        logger.info(f"Deduplication: {len(items)} → {len(unique)} ({duplicates} duplicates removed)")
    return unique, duplicates
