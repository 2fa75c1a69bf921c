#!/usr/bin/env python3
"""
Normalized record and message types.

ContentRecord is the unit every source adapter produces and the store keeps.
FetchRequest and FetchResult are the JSON messages carried by the task queue
on the ``<domain>.fetch.request`` and ``<domain>.fetch.result`` subjects.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import sha1
from typing import Any, Dict, Optional
from uuid import uuid4
import json

from utils import parse_timestamp, utc_now

PRIORITIES = ("high", "normal", "low")
PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}


def normalize_priority(value: Optional[str]) -> str:
    """Map a caller-supplied priority onto high/normal/low (default normal)."""
    value = str(value or "normal").strip().lower()
    return value if value in PRIORITY_RANK else "normal"


@dataclass(frozen=True)
class Scope:
    """A fetch target and read filter: a region plus an optional category."""
    region: str
    category: str = ""

    @classmethod
    def parse(cls, raw: str) -> "Scope":
        """Parse ``"us"`` or ``"US:10"``."""
        raw = (raw or "").strip()
        if not raw:
            raise ValueError("scope must not be empty")
        region, _, category = raw.partition(":")
        if not region:
            raise ValueError(f"invalid scope '{raw}'")
        return cls(region=region, category=category)

    def __str__(self) -> str:
        return f"{self.region}:{self.category}" if self.category else self.region


@dataclass
class ContentRecord:
    domain: str
    key: str
    title: str
    url: str = ""
    description: str = ""
    image: str = ""
    author: str = ""
    source: str = ""
    region: str = ""
    category: str = ""
    published_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def scope(self) -> str:
        return str(Scope(self.region, self.category)) if self.region else self.category

    def content_hash(self) -> str:
        """Fingerprint of the display fields (fetched_at excluded)."""
        payload = json.dumps([
            self.title, self.url, self.description, self.image, self.author,
            self.source, self.region, self.category,
            self.published_at.isoformat() if self.published_at else None,
            self.extra,
        ], sort_keys=True, default=str)
        return sha1(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        """API representation (camelCase timestamps, ISO 8601)."""
        return {
            "domain": self.domain,
            "key": self.key,
            "title": self.title,
            "url": self.url,
            "description": self.description,
            "image": self.image,
            "author": self.author,
            "source": self.source,
            "region": self.region,
            "category": self.category,
            "scope": self.scope,
            "publishedAt": self.published_at.isoformat() if self.published_at else None,
            "fetchedAt": self.fetched_at.isoformat() if self.fetched_at else None,
            **({"extra": self.extra} if self.extra else {}),
        }


def generate_request_id(scope: Scope, when: Optional[datetime] = None) -> str:
    """Request IDs are ``<scope>-<YYYYMMDD-HHMMSS>-<6 hex>``, timestamp in UTC."""
    when = when or utc_now()
    return f"{scope}-{when.astimezone(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid4().hex[:6]}"


@dataclass
class FetchRequest:
    domain: str
    region: str
    category: str = ""
    max_pages: int = 0
    max_items: int = 0
    priority: str = "normal"
    request_id: str = ""
    requested_at: Optional[datetime] = None

    def __post_init__(self):
        self.priority = normalize_priority(self.priority)
        if self.requested_at is None:
            self.requested_at = utc_now()
        if not self.request_id:
            self.request_id = generate_request_id(self.scope, self.requested_at)

    @property
    def scope(self) -> Scope:
        return Scope(self.region, self.category)

    def to_json(self) -> str:
        return json.dumps({
            "domain": self.domain,
            "region": self.region,
            "category": self.category,
            "maxPages": self.max_pages,
            "maxItems": self.max_items,
            "priority": self.priority,
            "requestId": self.request_id,
            "requestedAt": self.requested_at.isoformat() if self.requested_at else None,
        })

    @classmethod
    def from_json(cls, data: str | bytes) -> "FetchRequest":
        """Decode a request payload.

        Raises:
            ValueError: the payload is not a JSON object with domain and region.
        """
        try:
            payload = json.loads(data)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"undecodable fetch request: {e}") from e
        if not isinstance(payload, dict) or not payload.get("domain") or not payload.get("region"):
            raise ValueError("fetch request requires domain and region")
        try:
            return cls(
                domain=str(payload["domain"]),
                region=str(payload["region"]),
                category=str(payload.get("category") or ""),
                max_pages=int(payload.get("maxPages") or 0),
                max_items=int(payload.get("maxItems") or payload.get("maxVideos") or 0),
                priority=str(payload.get("priority") or "normal"),
                request_id=str(payload.get("requestId") or ""),
                requested_at=parse_timestamp(payload.get("requestedAt")),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ValueError(f"invalid fetch request field: {e}") from e


@dataclass
class FetchResult:
    domain: str
    region: str
    request_id: str
    category: str = ""
    success: bool = False
    item_count: int = 0
    fetched_count: int = 0
    pages_failed: int = 0
    error: str = ""
    attempt: int = 1
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.processed_at is None:
            self.processed_at = utc_now()

    @classmethod
    def for_request(cls, request: FetchRequest, attempt: int = 1) -> "FetchResult":
        return cls(
            domain=request.domain,
            region=request.region,
            category=request.category,
            request_id=request.request_id,
            attempt=attempt,
        )

    @property
    def scope(self) -> Scope:
        return Scope(self.region, self.category)

    def to_json(self) -> str:
        data = {
            "domain": self.domain,
            "region": self.region,
            "category": self.category,
            "requestId": self.request_id,
            "success": self.success,
            "itemCount": self.item_count,
            "fetchedCount": self.fetched_count,
            "pagesFailed": self.pages_failed,
            "attempt": self.attempt,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }
        if self.error:
            data["error"] = self.error
        return json.dumps(data)

    @classmethod
    def from_json(cls, data: str | bytes) -> "FetchResult":
        payload = json.loads(data)
        return cls(
            domain=payload.get("domain", ""),
            region=payload.get("region", ""),
            category=payload.get("category", ""),
            request_id=payload.get("requestId", ""),
            success=bool(payload.get("success")),
            item_count=int(payload.get("itemCount") or 0),
            fetched_count=int(payload.get("fetchedCount") or 0),
            pages_failed=int(payload.get("pagesFailed") or 0),
            error=payload.get("error", ""),
            attempt=int(payload.get("attempt") or 1),
            processed_at=parse_timestamp(payload.get("processedAt")),
        )


__all__ = [
    "PRIORITIES",
    "PRIORITY_RANK",
    "Scope",
    "ContentRecord",
    "FetchRequest",
    "FetchResult",
    "generate_request_id",
    "normalize_priority",
]
