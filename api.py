#!/usr/bin/env python3
"""
Read API: paginated queries, keyword search, per-scope stats, manual fetch
triggers and health checks.

ReadAPI holds the behaviour; the aiohttp routes built by create_app() only
translate HTTP parameters and map exceptions onto status codes.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web

from config import Config, config, get_logger
from errors import QueueError, StoreError
from models import ContentStore
from records import Scope
from scheduler import FetchTrigger
from taskqueue import TaskQueue

logger = get_logger("api")

DEFAULT_PAGE_SIZE = 20
DEFAULT_SEARCH_LIMIT = 10
SEARCH_MAX_LIMIT = 50


def _as_int(value: Optional[str], default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"expected an integer, got '{value}'")


class ReadAPI:
    def __init__(self, store: ContentStore, queue: TaskQueue, trigger: FetchTrigger, cfg: Config = config):
        self.store = store
        self.queue = queue
        self.trigger = trigger
        self.config = cfg

    def _require_domain(self, domain: str) -> None:
        if self.config.get_domain(domain) is None:
            raise LookupError(f"Unknown domain '{domain}'")

    async def list_items(self, domain: str, scope: Optional[str] = None, region: Optional[str] = None,
                         category: Optional[str] = None, page: int = 1,
                         limit: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        """One page of a domain's records, newest first.

        ``scope`` ("us", "US:10") takes precedence over region/category.
        """
        self._require_domain(domain)
        if scope:
            parsed = Scope.parse(scope)
            region, category = parsed.region, parsed.category or None
        page = max(1, page)
        limit = max(1, min(limit, self.config.API_MAX_LIMIT))

        records, total = await self.store.find(domain, region=region, category=category, page=page, limit=limit)
        return {
            "items": [record.to_dict() for record in records],
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }

    async def stats(self, domain: str) -> Dict[str, Any]:
        """Stored record count and latest fetch time per scope."""
        self._require_domain(domain)
        rows = await self.store.scope_stats(domain)
        scopes = [
            {
                "scope": str(Scope(row["region"], row["category"])) if row["region"] else row["category"],
                "region": row["region"],
                "category": row["category"],
                "records": row["records"],
                "lastFetched": row["last_fetched"],
            }
            for row in rows
        ]
        return {
            "domain": domain,
            "total": sum(s["records"] for s in scopes),
            "scopes": scopes,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def search(self, domain: str, query: Optional[str], region: Optional[str] = None,
                     limit: int = DEFAULT_SEARCH_LIMIT) -> Dict[str, Any]:
        """Records whose title or description contains ``query``, newest first."""
        self._require_domain(domain)
        query = (query or "").strip()
        if not query:
            raise ValueError("query parameter 'q' is required")
        if limit < 1 or limit > SEARCH_MAX_LIMIT:
            limit = DEFAULT_SEARCH_LIMIT
        records = await self.store.search(domain, query, region=region, limit=limit)
        return {"query": query, "region": region, "items": [r.to_dict() for r in records]}

    async def trigger_fetch(self, domain: str, scope: str, priority: Optional[str] = None) -> Dict[str, Any]:
        request = await self.trigger.trigger(domain, scope, priority)
        return {"status": "queued", "requestId": request.request_id, "priority": request.priority}

    async def trigger_all(self, domain: str, priority: Optional[str] = None) -> Dict[str, Any]:
        requests = await self.trigger.trigger_all(domain, priority)
        return {
            "status": "queued",
            "requestIds": [r.request_id for r in requests],
            "priority": requests[0].priority if requests else "normal",
        }

    def scopes(self, domain: str) -> Dict[str, Any]:
        self._require_domain(domain)
        settings = self.config.get_domain(domain)
        return {
            "domain": domain,
            "scopes": [
                {"scope": s.key, "region": s.region, "category": s.category, "strategy": s.strategy}
                for s in settings.scopes
            ],
        }

    async def health(self) -> Dict[str, Any]:
        store_ok = await self._ping(self.store)
        queue_ok = await self._ping(self.queue)
        return {
            "status": "ok" if store_ok and queue_ok else "degraded",
            "store": "up" if store_ok else "down",
            "queue": "up" if queue_ok else "down",
            "domains": sorted(self.config.DOMAINS.keys()),
        }

    async def _ping(self, db) -> bool:
        try:
            return bool(await db.execute("ping"))
        except (StoreError, QueueError) as e:
            logger.warning(f"Health check failed for {db.db_path}: {e}")
            return False


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except LookupError as e:
        return _error(404, str(e).strip("'\""))
    except ValueError as e:
        return _error(400, str(e))
    except (StoreError, QueueError) as e:
        logger.error(f"{request.method} {request.path} failed: {e}")
        return _error(503, str(e))


def create_app(api: ReadAPI) -> web.Application:
    routes = web.RouteTableDef()

    @routes.get("/health")
    async def health(request: web.Request) -> web.Response:
        return web.json_response(await api.health())

    @routes.get("/ready")
    async def ready(request: web.Request) -> web.Response:
        status = await api.health()
        return web.json_response(status, status=200 if status["status"] == "ok" else 503)

    @routes.get("/{domain}/items")
    async def items(request: web.Request) -> web.Response:
        query = request.query
        payload = await api.list_items(
            request.match_info["domain"],
            scope=query.get("scope") or None,
            region=query.get("region") or None,
            category=query.get("category") or None,
            page=_as_int(query.get("page"), 1),
            limit=_as_int(query.get("limit"), DEFAULT_PAGE_SIZE),
        )
        return web.json_response(payload)

    @routes.get("/{domain}/scopes")
    async def scopes(request: web.Request) -> web.Response:
        return web.json_response(api.scopes(request.match_info["domain"]))

    @routes.get("/{domain}/stats")
    async def stats(request: web.Request) -> web.Response:
        return web.json_response(await api.stats(request.match_info["domain"]))

    @routes.get("/{domain}/search")
    async def search(request: web.Request) -> web.Response:
        query = request.query
        payload = await api.search(
            request.match_info["domain"],
            query.get("q"),
            region=query.get("region") or None,
            limit=_as_int(query.get("limit"), DEFAULT_SEARCH_LIMIT),
        )
        return web.json_response(payload)

    @routes.post("/{domain}/fetch-all")
    async def fetch_all(request: web.Request) -> web.Response:
        payload = await api.trigger_all(request.match_info["domain"], request.query.get("priority"))
        return web.json_response(payload, status=202)

    @routes.post("/{domain}/fetch/{scope}")
    async def fetch_scope(request: web.Request) -> web.Response:
        payload = await api.trigger_fetch(
            request.match_info["domain"], request.match_info["scope"], request.query.get("priority")
        )
        return web.json_response(payload, status=202)

    app = web.Application(middlewares=[error_middleware])
    app.add_routes(routes)
    return app
