#!/usr/bin/env python3
"""
Utility classes and functions shared across the harvester.

Per-domain request pacing, retry backoff, URL normalization helpers and the
HTML sanitizer used for feed entry bodies.
"""

from asyncio import Lock, sleep
from calendar import timegm
from collections import defaultdict
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from random import Random
from time import time, struct_time
from typing import Any, Callable, Dict, Optional
import re
from urllib.parse import urljoin, urlparse, urlsplit, urlunsplit

import feedparser
from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

logger = get_logger("utils")

TRACKING_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


class DomainRateLimiter:
    """Randomized minimum-interval pacing keyed by destination hostname.

    Each call to ``acquire(url)`` waits until a random interval between
    ``min_interval`` and ``max_interval`` seconds has elapsed since the last
    request to the same hostname. State lives on the instance, so one limiter
    shared by every transport paces a domain across unrelated sources.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        max_interval: float = 3.0,
        *,
        clock: Callable[[], float] = time,
        sleeper=sleep,
        rng: Optional[Random] = None,
    ):
        self.min_interval = max(0.0, min_interval)
        self.max_interval = max(self.min_interval, max_interval)
        self._clock = clock
        self._sleep = sleeper
        self._rng = rng or Random()
        self._last_request: Dict[str, float] = {}
        self._locks: Dict[str, Lock] = defaultdict(Lock)

    def _next_interval(self) -> float:
        return self.min_interval + self._rng.random() * (self.max_interval - self.min_interval)

    def last_request_time(self, url: str) -> Optional[float]:
        return self._last_request.get(hostname_of(url))

    async def acquire(self, url: str) -> float:
        """Wait for the hostname's pacing window; returns the seconds slept."""
        host = hostname_of(url)
        async with self._locks[host]:
            waited = 0.0
            last = self._last_request.get(host)
            if last is not None:
                elapsed = self._clock() - last
                interval = self._next_interval()
                if elapsed < interval:
                    waited = interval - elapsed
                    logger.debug(f"Pacing {host}: waiting {waited:.2f} seconds")
                    await self._sleep(waited)
            self._last_request[host] = self._clock()
            return waited


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds for a 0-based attempt number, capped at max_delay."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def hostname_of(url: str) -> str:
    """Lower-cased hostname of a URL, or empty string when it has none."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def validate_url(url: str) -> bool:
    """Return True if the string looks like an absolute http(s) URL."""
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    if not url:
        return False
    return url.startswith(('http://', 'https://')) and '.' in url


def strip_tracking_params(url: str) -> str:
    """Remove utm_* campaign parameters while keeping every other query pair in order."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    # Filter raw pairs so untouched parameters keep their original encoding
    pairs = [p for p in parts.query.split('&') if p]
    kept = [p for p in pairs if p.split('=', 1)[0] not in TRACKING_PARAMS]
    if len(kept) == len(pairs):
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, '&'.join(kept), parts.fragment))


def resolve_url(href: str, base_url: str) -> Optional[str]:
    """Resolve an href against a base URL; None if the result is not http(s)."""
    if not href:
        return None
    try:
        resolved = urljoin(base_url, href.strip())
    except ValueError:
        return None
    if not resolved.startswith(('http://', 'https://')):
        return None
    return resolved


def strip_query_and_fragment(url: str) -> str:
    return url.split('#', 1)[0].split('?', 1)[0]


def collapse_whitespace(text: Optional[str]) -> str:
    return re.sub(r'\s+', ' ', text or '').strip()


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    - Converts resulting HTML to Markdown with markdownify (no line wrapping)
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup([
        "script", "style", "iframe", "form", "object", "embed", "noscript",
        "frame", "frameset", "applet", "meta", "base", "link"
    ]):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in ('href', 'src') and str(tag[attr]).lower().startswith('javascript:'):
                del tag[attr]

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            value = str(tag.get(attr) or '')
            if not value:
                continue
            if attr == 'href' and value.startswith('mailto:'):
                continue
            rewritten = resolve_url(value, base_url) if base_url else (
                value if value.startswith(('http://', 'https://')) else None
            )
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    return md(str(soup), heading_style="ATX", wrap_width=0).strip()


ENTRY_DATE_FIELDS = (
    'published', 'updated', 'created', 'modified', 'date', 'pubDate', 'pubdate', 'issued',
)
ENTRY_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)
ID_DATE_PATTERNS = (re.compile(r'(\d{4})-(\d{2})-(\d{2})'), re.compile(r'(\d{4})/(\d{2})/(\d{2})'))


def _entry_value(entry, field: str) -> Any:
    """Fetch a feedparser entry field with attribute or dict access."""
    if entry is None:
        return None
    value = getattr(entry, field, None)
    if value is not None:
        return value
    getter = getattr(entry, 'get', None)
    return getter(field) if callable(getter) else None


def _parse_date_string(date_str: str) -> Optional[int]:
    try:
        parsed = feedparser._parse_date(date_str)
        if parsed:
            return int(timegm(parsed))
    except (ValueError, TypeError, AttributeError, OverflowError):
        pass
    try:
        dt = parsedate_to_datetime(date_str)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    except (TypeError, ValueError, OverflowError):
        pass
    for fmt in ENTRY_DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str.strip(), fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return None


def date_value_to_timestamp(value: Any) -> Optional[int]:
    """Convert the assorted date shapes feedparser hands back into a Unix timestamp."""
    if value in (None, ''):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if isinstance(value, (struct_time, tuple, list)):
        try:
            return int(timegm(tuple(value)))
        except (OverflowError, ValueError, TypeError):
            return None
    if isinstance(value, str):
        return _parse_date_string(value)
    return None


def parse_entry_timestamp(entry) -> Optional[int]:
    """Publication time of a feed entry, or None when nothing parses.

    Tries the common date fields and their ``*_parsed`` variants, then a date
    embedded in the entry id.
    """
    for field in ENTRY_DATE_FIELDS:
        for name in (field, f"{field}_parsed"):
            timestamp = date_value_to_timestamp(_entry_value(entry, name))
            if timestamp:
                return timestamp

    entry_id = _entry_value(entry, 'id')
    if isinstance(entry_id, str):
        for pattern in ID_DATE_PATTERNS:
            match = pattern.search(entry_id)
            if match:
                try:
                    dt = datetime(*map(int, match.groups()), tzinfo=timezone.utc)
                except ValueError:
                    continue
                return int(dt.timestamp())
    return None
