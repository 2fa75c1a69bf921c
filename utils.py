#!/usr/bin/env python3
"""
Utility classes and functions for the fetch pipeline.

This module contains shared utilities used by the source adapters, the
coordinator and the store, including rate limiting, retry backoff, natural
key validation and small text/time helpers.
"""

from asyncio import Lock, sleep
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import time
from typing import Any, Optional
from urllib.parse import urlparse
import re

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

MAX_KEY_LENGTH = 2048


class RateLimiter:
    """A minimum-interval rate limiter for controlling upstream request rates.

    Concurrent callers sharing one limiter are serialized so that successive
    acquisitions are at least ``60 / requests_per_minute`` seconds apart.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0.0
        self._lock = Lock()

    async def acquire(self):
        """Wait until the next request is allowed."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            time_since_last = time() - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)
            self.last_request_time = time()


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


def is_valid_key(key: Any) -> bool:
    """Check whether a natural key can be stored.

    Keys are either canonical URLs or source-native identifiers such as
    ``yt_dQw4w9WgXcQ`` or ``reddit_1abcd``. Anything that looks like a URL must
    be a well-formed http(s) URL; identifiers must be non-empty and free of
    whitespace.
    """
    if not isinstance(key, str) or not key or len(key) > MAX_KEY_LENGTH:
        return False
    if key != key.strip() or any(ch.isspace() for ch in key):
        return False
    if "://" in key or key.lower().startswith(("http:", "https:", "www.")):
        try:
            parsed = urlparse(key)
        except ValueError:
            return False
        return parsed.scheme in ('http', 'https') and bool(parsed.hostname)
    return True


def strip_html(text: Optional[str]) -> str:
    """Reduce an HTML fragment to whitespace-normalized plain text."""
    if not text:
        return ""
    if '<' not in text and '&' not in text:
        return " ".join(text.split())
    soup = BeautifulSoup(text, 'html.parser')
    for tag in soup(["script", "style", "iframe", "noscript"]):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)].rstrip() + suffix


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


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Convert assorted upstream date representations into an aware UTC datetime.

    Accepts epoch seconds (int/float/str of digits), ISO 8601 strings (with or
    without a trailing ``Z``), RFC 2822 strings and datetimes. Returns None
    when the value cannot be interpreted.
    """
    if value in (None, ''):
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        if value <= 0:
            return None
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        raw = value.strip()
        if re.fullmatch(r"\d+(\.\d+)?", raw):
            return parse_timestamp(float(raw))
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = parsedate_to_datetime(raw)
            except (TypeError, ValueError, IndexError):
                return None
            if dt is None:
                return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def viral_score(upvotes: int, comments: int, shares: int = 0) -> int:
    """Weighted engagement score normalized to 0-100."""
    score = (upvotes * 3) + (comments * 5) + (shares * 2)
    return max(0, min(score // 100, 100))
