#!/usr/bin/env python3
"""
Fetch scheduling.

FetchScheduler enqueues one FetchRequest per configured scope of every
enabled domain, once at startup and then every FETCH_INTERVAL_MINUTES.
Scheduled enqueues carry a dedupe window, so extra scheduler instances only
produce skipped enqueues instead of duplicate fetches.

FetchTrigger is the manual path used by the read API and the CLI: it
enqueues immediately with the caller's priority and no dedupe.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any

from config import Config, DomainSettings, ScopeSettings, config, get_logger
from errors import QueueError
from records import FetchRequest, normalize_priority
from taskqueue import TaskQueue
from telemetry import init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

init_telemetry("content-aggregator-scheduler")


def build_request(domain: DomainSettings, scope: ScopeSettings, priority: str = "normal",
                  when: Optional[datetime] = None) -> FetchRequest:
    return FetchRequest(
        domain=domain.name,
        region=scope.region,
        category=scope.category,
        max_pages=domain.max_pages,
        max_items=domain.max_items,
        priority=priority,
        requested_at=when,
    )


class FetchScheduler:
    """Periodic producer of fetch requests."""

    def __init__(self, queue: TaskQueue, cfg: Config = config, interval: Optional[float] = None,
                 dedupe_window: Optional[float] = None, spacing: Optional[float] = None):
        self.queue = queue
        self.config = cfg
        self.interval = interval if interval is not None else cfg.FETCH_INTERVAL_MINUTES * 60
        self.dedupe_window = dedupe_window if dedupe_window is not None else cfg.SCHEDULER_DEDUPE_MINUTES * 60
        self.spacing = spacing if spacing is not None else cfg.SCHEDULE_SPACING_SECONDS
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None

    @trace_span("scheduler.tick", tracer_name="scheduler")
    async def tick(self) -> List[str]:
        """Enqueue one request per configured scope; returns the enqueued request ids."""
        now = datetime.now(timezone.utc)
        enqueued: List[str] = []
        skipped = 0
        failed = 0
        for domain in self.config.DOMAINS.values():
            for scope in domain.scopes:
                request = build_request(domain, scope, "normal", now)
                try:
                    task_id = await self.queue.enqueue(request, dedupe_window=self.dedupe_window or None)
                except QueueError as e:
                    failed += 1
                    logger.error(f"Failed to enqueue {domain.name}/{scope.key}: {e}")
                    continue
                if task_id is None:
                    skipped += 1
                else:
                    enqueued.append(request.request_id)
                if self.spacing > 0:
                    await asyncio.sleep(self.spacing)

        self.last_run = now
        logger.info(f"⏰ Scheduled {len(enqueued)} fetches ({skipped} deduplicated, {failed} failed)")
        return enqueued

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick immediately, then every interval until stop_event is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"🚀 Scheduler started: every {format_duration(self.interval)}, "
                    f"dedupe window {format_duration(self.dedupe_window)}")
        while not stop_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Keep the timer alive; the next tick retries
                logger.error(f"💥 Scheduler tick failed: {e}")

            self.next_run = datetime.now(timezone.utc) + timedelta(seconds=self.interval)
            logger.info(f"😴 Next scheduled run at {self.next_run.isoformat()}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval,
            "dedupe_window_seconds": self.dedupe_window,
            "scopes": sum(len(d.scopes) for d in self.config.DOMAINS.values()),
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
        }


class FetchTrigger:
    """Manual, fire-and-forget enqueue of fetch requests."""

    def __init__(self, queue: TaskQueue, cfg: Config = config):
        self.queue = queue
        self.config = cfg

    def _domain(self, domain_name: str) -> DomainSettings:
        domain = self.config.get_domain(domain_name)
        if domain is None:
            raise LookupError(f"Unknown domain '{domain_name}'")
        return domain

    async def trigger(self, domain_name: str, scope_key: str, priority: Optional[str] = None) -> FetchRequest:
        """Enqueue a single scope.

        Raises:
            LookupError: the domain or scope is not configured.
            QueueError: the queue rejected the enqueue.
        """
        domain = self._domain(domain_name)
        scope = domain.find_scope(scope_key)
        if scope is None:
            raise LookupError(f"Unknown scope '{scope_key}' for domain '{domain_name}'")
        request = build_request(domain, scope, normalize_priority(priority))
        await self.queue.enqueue(request)
        logger.info(f"Manual fetch queued: {request.request_id} ({request.priority})")
        return request

    async def trigger_all(self, domain_name: str, priority: Optional[str] = None) -> List[FetchRequest]:
        """Enqueue every configured scope of a domain."""
        domain = self._domain(domain_name)
        priority = normalize_priority(priority)
        requests = []
        for scope in domain.scopes:
            request = build_request(domain, scope, priority)
            await self.queue.enqueue(request)
            requests.append(request)
        logger.info(f"Manual fetch queued for all {len(requests)} scopes of {domain_name} ({priority})")
        return requests
