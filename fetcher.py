#!/usr/bin/env python3
"""
Fetch coordinator and worker pool.

The coordinator turns one FetchRequest into a FetchResult: it pages through
the scope's source adapter with a fixed delay between pages, tolerates page
failures, caps the aggregate and upserts it into the content store. The
worker pool runs a fixed number of pull-and-process loops against the task
queue and settles every delivery with ack, nak or term.
"""

from asyncio import (
    CancelledError,
    Event,
    TimeoutError,
    create_task,
    gather,
    sleep,
    wait_for,
)
from typing import List, Optional, Tuple
import os
import socket

from aiohttp import ClientError, ClientSession

from config import Config, config, get_logger
from errors import QueueError, StoreError, UpstreamError
from models import ContentStore
from records import ContentRecord, FetchRequest, FetchResult
from sources import AdapterRegistry, SourceAdapter, fetch_page
from taskqueue import Delivery, TaskQueue, consumer_group
from telemetry import init_telemetry, trace_span
from utils import format_duration

logger = get_logger("fetcher")
init_telemetry("content-aggregator-fetcher")

NO_ITEMS_ERROR = "No items fetched"


class FetchCoordinator:
    def __init__(self, store: ContentStore, registry: AdapterRegistry, cfg: Config = config,
                 rate_limit: Optional[float] = None):
        self.store = store
        self.registry = registry
        self.config = cfg
        self.rate_limit = cfg.RATE_LIMIT_SECONDS if rate_limit is None else rate_limit

    @trace_span(
        "fetch.process_request",
        tracer_name="fetcher",
        attr_from_args=lambda self, request, *a, **k: {
            "fetch.domain": request.domain,
            "fetch.scope": str(request.scope),
            "fetch.request_id": request.request_id,
        },
    )
    async def process_request(self, request: FetchRequest, session: Optional[ClientSession] = None,
                              attempt: int = 1) -> FetchResult:
        """Fetch, cap and store one scope. Never raises; failures come back in the result."""
        result = FetchResult.for_request(request, attempt)
        try:
            await self._process(request, session, result)
        except Exception as e:
            logger.exception(f"Unexpected error processing {request.request_id}")
            result.success = False
            result.error = f"Unexpected error: {e}"
        return result

    async def _process(self, request: FetchRequest, session: Optional[ClientSession], result: FetchResult) -> None:
        scope_key = str(request.scope)
        domain = self.config.get_domain(request.domain)
        adapter = self.registry.resolve(request.domain, scope_key)
        if domain is None or adapter is None:
            result.error = f"No source configured for {request.domain}/{scope_key}"
            logger.error(result.error)
            return

        max_pages = request.max_pages if request.max_pages > 0 else domain.max_pages
        cap = min(request.max_items, domain.max_items) if request.max_items > 0 else domain.max_items
        logger.info(
            f"Processing {request.request_id}: {request.domain}/{scope_key} "
            f"via {adapter.name} (pages={max_pages}, cap={cap}, attempt={result.attempt})"
        )

        if session is None:
            async with ClientSession() as own_session:
                items, pages_failed = await self._fetch_pages(adapter, own_session, max_pages, domain.page_size)
        else:
            items, pages_failed = await self._fetch_pages(adapter, session, max_pages, domain.page_size)

        unique: List[ContentRecord] = []
        seen = set()
        for item in items:
            if item.key not in seen:
                seen.add(item.key)
                unique.append(item)
        batch = unique[:cap]

        result.pages_failed = pages_failed
        result.fetched_count = len(batch)
        if not batch:
            result.error = NO_ITEMS_ERROR
            logger.warning(f"{request.request_id}: no items fetched ({pages_failed} page(s) failed)")
            return

        try:
            upsert = await self.store.upsert_many(batch)
        except StoreError as e:
            result.error = f"Store upsert failed: {e}"
            logger.error(f"{request.request_id}: {result.error}")
            return

        result.success = True
        result.item_count = upsert.stored
        logger.info(
            f"{request.request_id}: fetched {len(batch)}, {upsert.upserted} new, {upsert.modified} changed"
            + (f", {pages_failed} page(s) failed" if pages_failed else "")
        )

    async def _fetch_pages(self, adapter: SourceAdapter, session: ClientSession, max_pages: int,
                           page_size: int) -> Tuple[List[ContentRecord], int]:
        """Pages 1..max_pages, strictly in order, skipping failed pages."""
        items: List[ContentRecord] = []
        pages_failed = 0
        token: Optional[str] = None

        for page in range(1, max_pages + 1):
            if page > 1:
                if adapter.token_paged and not token:
                    break
                if self.rate_limit > 0:
                    await sleep(self.rate_limit)
            try:
                page_result = await fetch_page(adapter, session, page, token, page_size)
            except (UpstreamError, ClientError, TimeoutError, AttributeError, KeyError, TypeError, ValueError) as e:
                pages_failed += 1
                token = None
                logger.warning(f"{adapter}: page {page} failed, skipping: {e}")
                continue

            items.extend(page_result.items)
            token = page_result.next_token
            logger.debug(f"{adapter}: page {page} returned {len(page_result.items)} items")
            if not page_result.has_more:
                break

        return items, pages_failed


class WorkerPool:
    """Fixed-size pool of queue consumers sharing one HTTP session."""

    def __init__(self, queue: TaskQueue, coordinator: FetchCoordinator, cfg: Config = config,
                 worker_count: Optional[int] = None, domains: Optional[List[str]] = None,
                 session: Optional[ClientSession] = None):
        self.queue = queue
        self.coordinator = coordinator
        self.config = cfg
        self.worker_count = worker_count or cfg.WORKER_COUNT
        self.domains = domains or list(cfg.DOMAINS.keys())
        self.session = session
        self.consumer_name = f"{socket.gethostname()}:{os.getpid()}"
        self._stop = Event()
        self._workers = []
        self._own_session = False

    async def start(self) -> None:
        if self._workers:
            return
        if self.session is None:
            self.session = ClientSession()
            self._own_session = True
        self._stop.clear()
        self._workers = [create_task(self._worker(n)) for n in range(1, self.worker_count + 1)]
        groups = ", ".join(consumer_group(d) for d in self.domains)
        logger.info(f"Started {self.worker_count} fetch workers ({groups})")

    async def stop(self) -> None:
        """Stop pulling, let in-flight requests finish, then close the session."""
        self._stop.set()
        if self._workers:
            try:
                await wait_for(
                    gather(*self._workers, return_exceptions=True),
                    timeout=self.config.REQUEST_TIMEOUT + self.config.QUEUE_POLL_SECONDS,
                )
            except TimeoutError:
                logger.warning("Workers did not finish in time; cancelling")
                for worker in self._workers:
                    worker.cancel()
                await gather(*self._workers, return_exceptions=True)
            self._workers = []
        if self._own_session and self.session:
            await self.session.close()
            self.session = None
            self._own_session = False
        logger.info("Fetch workers stopped")

    async def wait(self) -> None:
        await self._stop.wait()

    async def _worker(self, number: int) -> None:
        consumer = f"{self.consumer_name}/{number}"
        while not self._stop.is_set():
            try:
                deliveries = await self.queue.fetch(
                    consumer, batch=1, wait=self.config.QUEUE_POLL_SECONDS, domains=self.domains
                )
            except QueueError as e:
                logger.error(f"Worker {number}: queue fetch failed: {e}")
                await sleep(self.config.QUEUE_POLL_SECONDS)
                continue
            except CancelledError:
                break
            for delivery in deliveries:
                try:
                    await self.handle(delivery)
                except CancelledError:
                    raise
                except Exception as e:
                    # The lease lapses and the queue redelivers the task
                    logger.exception(f"Worker {number}: failed handling task {delivery.task_id}: {e}")

    async def handle(self, delivery: Delivery) -> Optional[FetchResult]:
        """Process one delivery and settle it.

        Undecodable payloads are terminated. A request that exceeds the
        request timeout is left unsettled so its lease lapses and the queue
        redelivers it.
        """
        try:
            request = FetchRequest.from_json(delivery.payload)
        except ValueError as e:
            logger.error(f"Terminating undecodable task {delivery.task_id} on {delivery.subject}: {e}")
            await delivery.term(str(e))
            return None

        heartbeat = create_task(self._heartbeat(delivery))
        try:
            result = await wait_for(
                self.coordinator.process_request(request, self.session, attempt=delivery.deliveries),
                timeout=self.config.REQUEST_TIMEOUT,
            )
        except TimeoutError:
            logger.error(
                f"{request.request_id} exceeded {format_duration(self.config.REQUEST_TIMEOUT)}; "
                f"leaving delivery {delivery.task_id} for redelivery"
            )
            return None
        finally:
            heartbeat.cancel()
            await gather(heartbeat, return_exceptions=True)

        await self.queue.publish_result(result)
        if result.success:
            if not await delivery.ack():
                logger.warning(f"Ack rejected for {request.request_id}: lease no longer held")
        else:
            await delivery.nak(delay=self.config.RETRY_DELAY, error=result.error)
            logger.info(
                f"Nak {request.request_id} (attempt {delivery.deliveries}/{self.queue.max_deliver}): {result.error}"
            )
        return result

    async def _heartbeat(self, delivery: Delivery) -> None:
        interval = max(self.queue.ack_wait / 2, 0.05)
        while True:
            await sleep(interval)
            if not await delivery.in_progress():
                logger.warning(f"Lost lease on task {delivery.task_id}; stopping heartbeat")
                return
