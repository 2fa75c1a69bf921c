#!/usr/bin/env python3
"""
Source adapters for upstream content APIs.

Each adapter fetches one page for one configured scope and maps the upstream
response into ContentRecords. Items without a usable natural key are dropped
here, before they ever reach the store. Adapters are registered by strategy
name and bound to scopes once at startup by AdapterRegistry.
"""

from asyncio import TimeoutError, get_running_loop
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional, Tuple, Type
from urllib.parse import urlparse

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import Config, ScopeSettings, config, get_logger
from errors import UpstreamError
from records import ContentRecord
from telemetry import trace_span
from utils import (
    RateLimiter,
    RetryHelper,
    is_valid_key,
    parse_timestamp,
    strip_html,
    truncate_string,
    utc_now,
    viral_score,
)

logger = get_logger("sources")

DESCRIPTION_MAX_LENGTH = 300
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

REDDIT_BASE_URL = "https://www.reddit.com"
HACKERNEWS_BASE_URL = "https://hacker-news.firebaseio.com/v0"
IMGFLIP_URL = "https://api.imgflip.com/get_memes"

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")


@dataclass
class Page:
    """One upstream page: normalized items plus continuation state."""
    items: List[ContentRecord] = field(default_factory=list)
    next_token: Optional[str] = None
    has_more: bool = False


def format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def _description(text: Optional[str]) -> str:
    return truncate_string(strip_html(text), DESCRIPTION_MAX_LENGTH)


def _source_name(source: Any) -> str:
    if isinstance(source, dict):
        return str(source.get('name') or "")
    return source if isinstance(source, str) else ""


class SourceAdapter:
    """Base class: HTTP access with retries plus the page contract.

    Subclasses set ``name`` and implement ``fetch_page``; response parsing
    lives in ``parse_page`` so it can be exercised without the network.
    """

    name = ""
    # Pages after the first need the continuation token of the previous page
    token_paged = False

    def __init__(self, domain: str, scope: ScopeSettings, cfg: Config = config):
        self.domain = domain
        self.scope = scope
        self.config = cfg
        self.options = scope.options or {}
        self.retry_helper = RetryHelper(max_retries=cfg.MAX_RETRIES, base_delay=cfg.RETRY_DELAY_BASE)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.domain}/{self.scope.key}>"

    async def fetch_page(self, session: ClientSession, page: int, token: Optional[str], page_size: int) -> Page:
        raise NotImplementedError

    def parse_page(self, payload: Any, page: int, page_size: int) -> Page:
        raise NotImplementedError

    def _parse(self, payload: Any, page: int, page_size: int) -> Page:
        """parse_page, with malformed payload shapes reported as a failed page."""
        try:
            return self.parse_page(payload, page, page_size)
        except UpstreamError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed page {page}: {e!r}", source=self.name) from e

    def _headers(self) -> Dict[str, str]:
        return {'User-Agent': self.config.USER_AGENT, 'Accept': 'application/json'}

    async def _request(self, session: ClientSession, url: str, params: Optional[Dict[str, Any]] = None,
                       headers: Optional[Dict[str, str]] = None, as_json: bool = True) -> Any:
        """GET with bounded retries on network errors and retryable statuses.

        Raises:
            UpstreamError: non-retryable status, undecodable body, or retries exhausted.
        """
        params = {k: v for k, v in (params or {}).items() if v not in (None, "")}
        timeout = ClientTimeout(total=self.config.HTTP_TIMEOUT)
        max_retries = self.config.MAX_RETRIES
        for attempt in range(max_retries + 1):
            try:
                async with session.get(url, params=params, headers=headers or self._headers(), timeout=timeout) as response:
                    if response.status != 200:
                        if response.status in RETRYABLE_STATUS and attempt < max_retries:
                            logger.warning(
                                "Retry %d/%d for %s: HTTP %d", attempt + 1, max_retries, self, response.status
                            )
                            await self.retry_helper.sleep_for_attempt(attempt)
                            continue
                        raise UpstreamError(
                            f"HTTP {response.status} from {urlparse(url).netloc}",
                            source=self.name,
                            status=response.status,
                        )
                    if as_json:
                        return await response.json(content_type=None)
                    return await response.read()
            except TimeoutError as e:
                if attempt < max_retries:
                    logger.warning("Timeout fetching %s (attempt %d/%d)", self, attempt + 1, max_retries + 1)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise UpstreamError(f"Timed out after {max_retries + 1} attempts", source=self.name) from e
            except ClientError as e:
                detail = format_client_error(e)
                if attempt < max_retries:
                    logger.warning("Retry %d/%d for %s due to error: %s", attempt + 1, max_retries, self, detail)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise UpstreamError(f"Failed after {max_retries + 1} attempts ({detail})", source=self.name) from e
            except ValueError as e:
                raise UpstreamError(f"Undecodable response: {e}", source=self.name) from e
        raise UpstreamError("Retries exhausted", source=self.name)

    def _record(self, key: str, title: str, **fields) -> Optional[ContentRecord]:
        key = (key or "").strip()
        if not is_valid_key(key):
            logger.debug(f"{self}: dropping item without a valid key ({key!r})")
            return None
        return ContentRecord(
            domain=self.domain,
            key=key,
            title=(title or "").strip(),
            region=self.scope.region,
            category=self.scope.category,
            fetched_at=utc_now(),
            **fields,
        )


class NewsAPIAdapter(SourceAdapter):
    """NewsAPI top headlines by country, or by source list when configured."""

    name = "newsapi"

    async def fetch_page(self, session, page, token, page_size):
        params = {'pageSize': page_size, 'page': page}
        if self.options.get('sources'):
            params['sources'] = self.options['sources']
        else:
            params['country'] = self.scope.region
            params['category'] = self.scope.category
        headers = {**self._headers(), 'X-Api-Key': self.config.NEWS_API_KEY or ""}
        payload = await self._request(session, self.config.NEWS_API_BASE_URL, params=params, headers=headers)
        return self._parse(payload, page, page_size)

    def parse_page(self, payload, page, page_size):
        if not isinstance(payload, dict):
            raise UpstreamError("Unexpected response shape", source=self.name)
        if payload.get('status') == 'error':
            raise UpstreamError(payload.get('message') or payload.get('code') or "API error", source=self.name)

        articles = payload.get('articles') or []
        items = []
        for article in articles:
            if not isinstance(article, dict):
                continue
            title = article.get('title') or ""
            if not title or title == "[Removed]":
                continue
            record = self._record(
                article.get('url'),
                title,
                url=(article.get('url') or "").strip(),
                description=_description(article.get('description')),
                image=article.get('urlToImage') or "",
                author=article.get('author') or "",
                source=_source_name(article.get('source')),
                published_at=parse_timestamp(article.get('publishedAt')),
            )
            if record:
                items.append(record)

        total = int(payload.get('totalResults') or 0)
        return Page(items=items, has_more=bool(articles) and page * page_size < total)


class GNewsAdapter(SourceAdapter):
    name = "gnews"

    async def fetch_page(self, session, page, token, page_size):
        params = {
            'lang': self.options.get('lang', 'en'),
            'country': self.scope.region,
            'category': self.scope.category,
            'max': min(page_size, 10),
            'page': page,
            'apikey': self.config.GNEWS_API_KEY,
        }
        payload = await self._request(session, self.config.GNEWS_API_BASE_URL, params=params)
        return self._parse(payload, page, min(page_size, 10))

    def parse_page(self, payload, page, page_size):
        if not isinstance(payload, dict):
            raise UpstreamError("Unexpected response shape", source=self.name)
        if payload.get('errors'):
            raise UpstreamError(str(payload['errors']), source=self.name)

        articles = payload.get('articles') or []
        items = []
        for article in articles:
            if not isinstance(article, dict):
                continue
            record = self._record(
                article.get('url'),
                article.get('title'),
                url=(article.get('url') or "").strip(),
                description=_description(article.get('description')),
                image=article.get('image') or "",
                source=_source_name(article.get('source')),
                published_at=parse_timestamp(article.get('publishedAt')),
            )
            if record and record.title:
                items.append(record)

        total = int(payload.get('totalArticles') or 0)
        return Page(items=items, has_more=bool(articles) and page * page_size < total)


class RSSAdapter(SourceAdapter):
    """Each configured feed URL is one page."""

    name = "rss"

    @property
    def feeds(self) -> List[str]:
        feeds = self.options.get('feeds') or []
        return [feeds] if isinstance(feeds, str) else list(feeds)

    async def fetch_page(self, session, page, token, page_size):
        feeds = self.feeds
        if page > len(feeds):
            return Page()
        content = await self._request(
            session, feeds[page - 1], headers={'User-Agent': self.config.USER_AGENT}, as_json=False
        )
        # feedparser is not async, run in executor
        parsed = await get_running_loop().run_in_executor(
            None, partial(feedparser.parse, content, sanitize_html=True, resolve_relative_uris=True)
        )
        return self._parse(parsed, page, page_size)

    def parse_page(self, payload, page, page_size):
        entries = payload.get('entries') or []
        if payload.get('bozo') and not entries:
            raise UpstreamError(f"Unparseable feed: {payload.get('bozo_exception')}", source=self.name)

        feed_title = (payload.get('feed') or {}).get('title') or ""
        items = []
        for entry in entries[:page_size]:
            if not isinstance(entry, dict):
                continue
            link = (entry.get('link') or "").strip()
            summary = entry.get('summary') or entry.get('description') or ""
            record = self._record(
                link,
                strip_html(entry.get('title')),
                url=link,
                description=_description(summary),
                image=self._entry_image(entry, summary),
                author=entry.get('author') or "",
                source=feed_title or urlparse(link).netloc,
                published_at=parse_timestamp(entry.get('published') or entry.get('updated')),
            )
            if record and record.title:
                items.append(record)
        return Page(items=items, has_more=page < len(self.feeds))

    def _entry_image(self, entry, summary: str) -> str:
        for media_key in ('media_content', 'media_thumbnail'):
            for media in entry.get(media_key) or []:
                if media.get('url'):
                    return media['url']
        for enclosure in entry.get('enclosures') or []:
            if (enclosure.get('type') or "").startswith('image/') and enclosure.get('href'):
                return enclosure['href']
        if '<img' in summary:
            img = BeautifulSoup(summary, 'html.parser').find('img')
            src = img.get('src') if img else ""
            if src and src.startswith(('http://', 'https://')):
                return src
        return self.options.get('default_image', "")


class YouTubeAdapter(SourceAdapter):
    """YouTube mostPopular chart for a region and optional video category."""

    name = "youtube"
    token_paged = True

    async def fetch_page(self, session, page, token, page_size):
        params = {
            'part': 'snippet,statistics,contentDetails',
            'chart': 'mostPopular',
            'regionCode': self.scope.region,
            'videoCategoryId': self.scope.category,
            'maxResults': min(page_size, 50),
            'pageToken': token,
            'key': self.config.YOUTUBE_API_KEY,
        }
        payload = await self._request(session, self.config.YOUTUBE_API_BASE_URL, params=params)
        return self._parse(payload, page, page_size)

    def parse_page(self, payload, page, page_size):
        if not isinstance(payload, dict):
            raise UpstreamError("Unexpected response shape", source=self.name)
        if payload.get('error'):
            error = payload['error']
            message = error.get('message') if isinstance(error, dict) else str(error)
            raise UpstreamError(message or "API error", source=self.name, status=error.get('code') if isinstance(error, dict) else None)

        items = []
        for video in payload.get('items') or []:
            if not isinstance(video, dict):
                continue
            video_id = video.get('id')
            if not isinstance(video_id, str) or not video_id:
                continue
            snippet = video.get('snippet') or {}
            stats = video.get('statistics') or {}
            details = video.get('contentDetails') or {}
            record = self._record(
                f"yt_{video_id}",
                snippet.get('title'),
                url=f"https://www.youtube.com/watch?v={video_id}",
                description=_description(snippet.get('description')),
                image=best_thumbnail(snippet.get('thumbnails') or {}),
                author=snippet.get('channelTitle') or "",
                source="youtube",
                published_at=parse_timestamp(snippet.get('publishedAt')),
                extra={
                    'videoId': video_id,
                    'channelId': snippet.get('channelId') or "",
                    'viewCount': _as_int(stats.get('viewCount')),
                    'likeCount': _as_int(stats.get('likeCount')),
                    'commentCount': _as_int(stats.get('commentCount')),
                    'duration': details.get('duration') or "",
                },
            )
            if record:
                items.append(record)

        next_token = payload.get('nextPageToken') or None
        return Page(items=items, next_token=next_token, has_more=bool(next_token))


def best_thumbnail(thumbnails: Dict[str, Any]) -> str:
    """Prefer high, then medium, then default resolution."""
    for size in ('high', 'medium', 'default'):
        url = (thumbnails.get(size) or {}).get('url')
        if url:
            return url
    return ""


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class RedditAdapter(SourceAdapter):
    """Subreddit listings; the scope category names the subreddit."""

    name = "reddit"
    token_paged = True

    def __init__(self, domain: str, scope: ScopeSettings, cfg: Config = config):
        super().__init__(domain, scope, cfg)
        self.rate_limiter = RateLimiter(cfg.UPSTREAM_REQUESTS_PER_MINUTE)

    @property
    def subreddit(self) -> str:
        return self.options.get('subreddit') or self.scope.category

    async def fetch_page(self, session, page, token, page_size):
        listing = self.options.get('listing', 'hot')
        url = f"{REDDIT_BASE_URL}/r/{self.subreddit}/{listing}.json"
        params = {'limit': page_size, 'after': token, 'raw_json': 1}
        if listing == 'top':
            params['t'] = self.options.get('period', 'day')
        await self.rate_limiter.acquire()
        payload = await self._request(session, url, params=params)
        return self._parse(payload, page, page_size)

    def parse_page(self, payload, page, page_size):
        if not isinstance(payload, dict) or not isinstance(payload.get('data'), dict):
            raise UpstreamError("Unexpected listing shape", source=self.name)

        min_score = int(self.options.get('min_score', 0))
        images_only = bool(self.options.get('images_only', False))
        items = []
        for child in payload['data'].get('children') or []:
            if not isinstance(child, dict) or not isinstance(child.get('data'), dict):
                continue
            post = child.get('data') or {}
            if post.get('stickied') or post.get('over_18'):
                continue
            score = _as_int(post.get('score'))
            if score < min_score:
                continue
            link = post.get('url') or ""
            is_image = post.get('post_hint') == 'image' or link.lower().endswith(IMAGE_EXTENSIONS)
            if images_only and not is_image:
                continue
            thumbnail = post.get('thumbnail') or ""
            image = link if is_image else (thumbnail if thumbnail.startswith('http') else "")
            comments = _as_int(post.get('num_comments'))
            record = self._record(
                f"reddit_{post.get('id')}" if post.get('id') else "",
                post.get('title'),
                url=f"{REDDIT_BASE_URL}{post.get('permalink', '')}",
                description=_description(post.get('selftext')),
                image=image,
                author=post.get('author') or "",
                source=f"r/{post.get('subreddit') or self.subreddit}",
                published_at=parse_timestamp(post.get('created_utc')),
                extra={
                    'upvotes': score,
                    'comments': comments,
                    'viralScore': viral_score(score, comments),
                    'link': link,
                },
            )
            if record:
                items.append(record)

        after = payload['data'].get('after') or None
        return Page(items=items, next_token=after, has_more=bool(after))


class HackerNewsAdapter(SourceAdapter):
    """Top stories; each page is a slice of the topstories id list."""

    name = "hackernews"

    def __init__(self, domain: str, scope: ScopeSettings, cfg: Config = config):
        super().__init__(domain, scope, cfg)
        # Item lookups are one request per story
        self.rate_limiter = RateLimiter(int(self.options.get('requests_per_minute', 600)))

    async def fetch_page(self, session, page, token, page_size):
        story_ids = await self._request(session, f"{HACKERNEWS_BASE_URL}/topstories.json")
        if not isinstance(story_ids, list):
            raise UpstreamError("Unexpected topstories shape", source=self.name)
        limit = min(len(story_ids), int(self.options.get('max_stories', 100)))
        start, end = (page - 1) * page_size, min(page * page_size, limit)

        stories = []
        for story_id in story_ids[start:end]:
            await self.rate_limiter.acquire()
            try:
                stories.append(await self._request(session, f"{HACKERNEWS_BASE_URL}/item/{story_id}.json"))
            except UpstreamError as e:
                logger.warning(f"Skipping HN item {story_id}: {e}")
        page_result = self._parse(stories, page, page_size)
        page_result.has_more = end < limit
        return page_result

    def parse_page(self, payload, page, page_size):
        items = []
        for story in payload or []:
            if not isinstance(story, dict) or story.get('deleted') or story.get('dead'):
                continue
            if story.get('type', 'story') != 'story':
                continue
            story_id = story.get('id')
            hn_url = f"https://news.ycombinator.com/item?id={story_id}"
            score = _as_int(story.get('score'))
            comments = _as_int(story.get('descendants'))
            record = self._record(
                f"hn_{story_id}" if story_id else "",
                story.get('title'),
                url=story.get('url') or hn_url,
                description=_description(story.get('text')),
                author=story.get('by') or "",
                source="hackernews",
                published_at=parse_timestamp(story.get('time')),
                extra={
                    'upvotes': score,
                    'comments': comments,
                    'viralScore': viral_score(score, comments),
                    'discussion': hn_url,
                },
            )
            if record:
                items.append(record)
        return Page(items=items)


class ImgflipAdapter(SourceAdapter):
    name = "imgflip"

    async def fetch_page(self, session, page, token, page_size):
        payload = await self._request(session, self.options.get('url', IMGFLIP_URL))
        return self._parse(payload, page, page_size)

    def parse_page(self, payload, page, page_size):
        if not isinstance(payload, dict) or not payload.get('success'):
            message = payload.get('error_message') if isinstance(payload, dict) else None
            raise UpstreamError(message or "Imgflip request failed", source=self.name)

        items = []
        for meme in (payload.get('data') or {}).get('memes') or []:
            if not isinstance(meme, dict):
                continue
            record = self._record(
                f"imgflip_{meme.get('id')}" if meme.get('id') else "",
                meme.get('name'),
                url=meme.get('url') or "",
                image=meme.get('url') or "",
                source="imgflip",
                extra={
                    'width': _as_int(meme.get('width')),
                    'height': _as_int(meme.get('height')),
                    'boxCount': _as_int(meme.get('box_count')),
                },
            )
            if record:
                items.append(record)
        return Page(items=items)


ADAPTERS: Dict[str, Type[SourceAdapter]] = {
    cls.name: cls
    for cls in (
        NewsAPIAdapter,
        GNewsAdapter,
        RSSAdapter,
        YouTubeAdapter,
        RedditAdapter,
        HackerNewsAdapter,
        ImgflipAdapter,
    )
}


class AdapterRegistry:
    """Scope to adapter map, built once from configuration."""

    def __init__(self, adapters: Optional[Dict[Tuple[str, str], SourceAdapter]] = None):
        self._adapters: Dict[Tuple[str, str], SourceAdapter] = dict(adapters or {})

    @classmethod
    def build(cls, cfg: Config = config) -> "AdapterRegistry":
        registry = cls()
        for domain in cfg.DOMAINS.values():
            for scope in domain.scopes:
                adapter_cls = ADAPTERS.get(scope.strategy)
                if adapter_cls is None:
                    logger.warning(f"Unknown strategy '{scope.strategy}' for {domain.name}/{scope.key}; skipping")
                    continue
                registry.register(domain.name, scope.key, adapter_cls(domain.name, scope, cfg))
        logger.info(f"Registered {len(registry)} source adapters")
        return registry

    def register(self, domain: str, scope_key: str, adapter: SourceAdapter) -> None:
        self._adapters[(domain, scope_key)] = adapter

    def resolve(self, domain: str, scope_key: str) -> Optional[SourceAdapter]:
        return self._adapters.get((domain, scope_key))

    def __len__(self) -> int:
        return len(self._adapters)


@trace_span(
    "sources.fetch_page",
    tracer_name="sources",
    attr_from_args=lambda adapter, session, page, token, page_size: {
        "source.strategy": adapter.name,
        "source.scope": adapter.scope.key,
        "source.page": page,
    },
)
async def fetch_page(adapter: SourceAdapter, session: ClientSession, page: int,
                     token: Optional[str], page_size: int) -> Page:
    """Traced entry point used by the coordinator for every page."""
    return await adapter.fetch_page(session, page, token, page_size)
