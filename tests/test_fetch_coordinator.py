import asyncio

import pytest

from config import DomainSettings, ScopeSettings, config
from errors import StoreError, UpstreamError
from fetcher import FetchCoordinator, WorkerPool, NO_ITEMS_ERROR
from models import ContentStore
from records import ContentRecord, FetchRequest
from sources import AdapterRegistry, NewsAPIAdapter, Page, SourceAdapter
from taskqueue import TaskQueue

# Adapters below never touch the session
SESSION = object()


def _items(prefix, count):
    return [
        ContentRecord(domain="news", key=f"https://example.com/{prefix}/{i}", title=f"{prefix} {i}", region="us")
        for i in range(count)
    ]


class FakeAdapter(SourceAdapter):
    """Serves canned pages; an Exception value makes that page fail."""

    name = "fake"

    def __init__(self, pages, token_paged=False):
        super().__init__("news", ScopeSettings("us", strategy="fake"), config)
        self.pages = pages
        self.token_paged = token_paged
        self.calls = []

    async def fetch_page(self, session, page, token, page_size):
        self.calls.append((page, token))
        outcome = self.pages.get(page, [])
        if isinstance(outcome, Exception):
            raise outcome
        last = max(self.pages)
        return Page(
            items=outcome,
            next_token=f"t{page + 1}" if self.token_paged and page < last else None,
            has_more=page < last,
        )


class BrokenStore:
    async def upsert_many(self, records):
        raise StoreError("upsert_records timed out after 10.0s")


@pytest.fixture
def news_domain(monkeypatch):
    domain = DomainSettings("news", [ScopeSettings("us", strategy="fake")], max_pages=4, max_items=33, page_size=20)
    monkeypatch.setattr(config, "DOMAINS", {"news": domain})
    return domain


def _coordinator(store, adapter):
    registry = AdapterRegistry()
    registry.register("news", "us", adapter)
    return FetchCoordinator(store, registry, config, rate_limit=0)


async def _open(tmp_path, **queue_options):
    store = ContentStore(db_path=str(tmp_path / "content.db"))
    queue = TaskQueue(db_path=str(tmp_path / "queue.db"), **queue_options)
    await store.start()
    await queue.start()
    return store, queue


@pytest.mark.asyncio
async def test_failed_page_is_skipped(tmp_path, news_domain):
    """Four pages with page 2 failing still stores pages 1, 3 and 4."""
    store, queue = await _open(tmp_path)
    try:
        adapter = FakeAdapter({
            1: _items("p1", 8),
            2: UpstreamError("HTTP 503", source="fake", status=503),
            3: _items("p3", 8),
            4: _items("p4", 8),
        })
        result = await _coordinator(store, adapter).process_request(FetchRequest(domain="news", region="us"), SESSION)

        assert result.success is True
        assert [page for page, _ in adapter.calls] == [1, 2, 3, 4]
        assert result.pages_failed == 1
        assert result.fetched_count == 24
        assert result.item_count == 24
        assert await store.count("news") == 24
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_item_cap(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        adapter = FakeAdapter({1: _items("a", 25), 2: _items("b", 25)})
        result = await _coordinator(store, adapter).process_request(FetchRequest(domain="news", region="us"), SESSION)

        assert result.success is True
        assert result.fetched_count == 33
        assert await store.count("news") == 33
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_request_bounds_cannot_exceed_domain_cap(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        adapter = FakeAdapter({1: _items("a", 25), 2: _items("b", 25), 3: _items("c", 25)})
        coordinator = _coordinator(store, adapter)

        small = await coordinator.process_request(
            FetchRequest(domain="news", region="us", max_pages=1, max_items=10), SESSION
        )
        assert small.fetched_count == 10
        assert len(adapter.calls) == 1

        big = await coordinator.process_request(FetchRequest(domain="news", region="us", max_items=500), SESSION)
        assert big.fetched_count == 33
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_duplicate_keys_across_pages_are_collapsed(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        adapter = FakeAdapter({1: _items("same", 5), 2: _items("same", 5)})
        result = await _coordinator(store, adapter).process_request(FetchRequest(domain="news", region="us"), SESSION)

        assert result.fetched_count == 5
        assert result.item_count == 5
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_zero_items_is_a_failure(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        adapter = FakeAdapter({1: UpstreamError("down"), 2: UpstreamError("down")})
        result = await _coordinator(store, adapter).process_request(FetchRequest(domain="news", region="us"), SESSION)

        assert result.success is False
        assert result.error == NO_ITEMS_ERROR
        assert result.pages_failed == 2
        assert await store.count("news") == 0
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_store_failure_is_a_failure(news_domain):
    adapter = FakeAdapter({1: _items("a", 3)})
    result = await _coordinator(BrokenStore(), adapter).process_request(
        FetchRequest(domain="news", region="us"), SESSION
    )

    assert result.success is False
    assert "timed out" in result.error
    assert result.fetched_count == 3
    assert result.item_count == 0


@pytest.mark.asyncio
async def test_unknown_scope_is_a_failure(news_domain):
    adapter = FakeAdapter({1: _items("a", 3)})
    result = await _coordinator(BrokenStore(), adapter).process_request(
        FetchRequest(domain="news", region="fr"), SESSION
    )

    assert result.success is False
    assert "news/fr" in result.error
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_token_paging_stops_when_token_is_lost(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        adapter = FakeAdapter(
            {1: _items("a", 3), 2: UpstreamError("HTTP 500"), 3: _items("c", 3)},
            token_paged=True,
        )
        result = await _coordinator(store, adapter).process_request(FetchRequest(domain="news", region="us"), SESSION)

        assert adapter.calls == [(1, None), (2, "t2")]
        assert result.success is True
        assert result.fetched_count == 3
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_worker_acks_success_and_publishes_result(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        coordinator = _coordinator(store, FakeAdapter({1: _items("a", 4)}))
        pool = WorkerPool(queue, coordinator, config, worker_count=1, session=SESSION)

        request = FetchRequest(domain="news", region="us")
        await queue.enqueue(request)
        (delivery,) = await queue.fetch("worker-1", wait=0)

        result = await pool.handle(delivery)

        assert result.success is True
        assert result.attempt == 1
        assert await queue.fetch("worker-1", wait=0) == []
        (published,) = await queue.read_results()
        assert published[1].request_id == request.request_id
        assert published[1].item_count == 4
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_worker_naks_empty_result(tmp_path, news_domain, monkeypatch):
    monkeypatch.setattr(config, "RETRY_DELAY", 0)
    store, queue = await _open(tmp_path)
    try:
        coordinator = _coordinator(store, FakeAdapter({1: []}))
        pool = WorkerPool(queue, coordinator, config, worker_count=1, session=SESSION)

        await queue.enqueue(FetchRequest(domain="news", region="us"))
        (delivery,) = await queue.fetch("worker-1", wait=0)
        result = await pool.handle(delivery)

        assert result.success is False
        (redelivered,) = await queue.fetch("worker-2", wait=0)
        assert redelivered.deliveries == 2
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_worker_terminates_undecodable_payload(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        pool = WorkerPool(queue, _coordinator(store, FakeAdapter({1: []})), config, worker_count=1, session=SESSION)
        await queue.execute(
            "enqueue_task",
            stream="NEWS_FETCH",
            subject="news.fetch.request",
            domain="news",
            scope="us",
            priority_rank=1,
            payload="{not json",
        )
        (delivery,) = await queue.fetch("worker-1", wait=0)

        assert await pool.handle(delivery) is None
        assert await queue.fetch("worker-1", wait=0) == []
        assert (await queue.stats())["NEWS_FETCH"]["dead_letters"] == 1
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_pool_processes_queue_until_stopped(tmp_path, news_domain, monkeypatch):
    monkeypatch.setattr(config, "QUEUE_POLL_SECONDS", 0.1)
    store, queue = await _open(tmp_path)
    try:
        coordinator = _coordinator(store, FakeAdapter({1: _items("a", 2)}))
        pool = WorkerPool(queue, coordinator, config, worker_count=2, domains=["news"], session=SESSION)
        await queue.enqueue(FetchRequest(domain="news", region="us"))

        await pool.start()
        for _ in range(50):
            if await store.count("news") == 2:
                break
            await asyncio.sleep(0.05)
        await pool.stop()

        assert await store.count("news") == 2
        assert (await queue.stats())["NEWS_FETCH"]["pending"] == 0
    finally:
        await store.stop()
        await queue.stop()


class SlowAdapter(FakeAdapter):
    async def fetch_page(self, session, page, token, page_size):
        self.calls.append((page, token))
        await asyncio.sleep(5)
        return Page(items=[])


class StepClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _article(n, **fields):
    return {"title": f"Story {n}", "url": f"https://example.com/story/{n}", **fields}


@pytest.mark.asyncio
async def test_malformed_page_shapes_only_fail_that_page(tmp_path, news_domain):
    """Non-dict articles are skipped; an unparseable page counts as one failed page."""
    pages = {
        1: {"status": "ok", "totalResults": 100, "articles": [_article(n) for n in range(5)]},
        2: {"status": "ok", "totalResults": "many", "articles": [None]},
        3: {"status": "ok", "totalResults": 100, "articles": [None, "junk", _article(9, source="Wire")]},
        4: {"status": "ok", "totalResults": 100, "articles": []},
    }

    async def canned(session, url, params=None, **kwargs):
        return pages[params["page"]]

    adapter = NewsAPIAdapter("news", ScopeSettings("us", strategy="newsapi"), config)
    adapter._request = canned
    store, queue = await _open(tmp_path)
    try:
        result = await _coordinator(store, adapter).process_request(FetchRequest(domain="news", region="us"), SESSION)

        assert result.success is True
        assert result.pages_failed == 1
        assert result.item_count == 6
        assert (await store.get("news", "https://example.com/story/9")).source == "Wire"
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_worker_accepts_non_string_priority(tmp_path, news_domain):
    store, queue = await _open(tmp_path)
    try:
        pool = WorkerPool(queue, _coordinator(store, FakeAdapter({1: _items("a", 2)})), config,
                          worker_count=1, session=SESSION)
        await queue.execute(
            "enqueue_task",
            stream="NEWS_FETCH",
            subject="news.fetch.request",
            domain="news",
            scope="us",
            priority_rank=1,
            payload='{"domain": "news", "region": "us", "priority": 5}',
        )
        (delivery,) = await queue.fetch("worker-1", wait=0)

        result = await pool.handle(delivery)

        assert result.success is True
        assert await queue.fetch("worker-1", wait=0) == []
        assert await queue.dead_letters() == []
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_worker_survives_a_failing_handler(tmp_path, news_domain, monkeypatch):
    monkeypatch.setattr(config, "QUEUE_POLL_SECONDS", 0.1)
    store, queue = await _open(tmp_path)
    try:
        pool = WorkerPool(queue, _coordinator(store, FakeAdapter({1: _items("a", 2)})), config,
                          worker_count=1, domains=["news"], session=SESSION)
        handle = pool.handle
        handled = []

        async def flaky(delivery):
            handled.append(delivery.task_id)
            if len(handled) == 1:
                raise AttributeError("'int' object has no attribute 'strip'")
            return await handle(delivery)

        pool.handle = flaky
        await queue.enqueue(FetchRequest(domain="news", region="us"))
        await queue.enqueue(FetchRequest(domain="news", region="us"))

        await pool.start()
        for _ in range(50):
            if len(handled) >= 2 and await store.count("news") == 2:
                break
            await asyncio.sleep(0.05)
        await pool.stop()

        assert len(handled) >= 2
        assert await store.count("news") == 2
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_request_timeout_leaves_delivery_for_redelivery(tmp_path, news_domain, monkeypatch):
    monkeypatch.setattr(config, "REQUEST_TIMEOUT", 0.1)
    clock = StepClock()
    store, queue = await _open(tmp_path, ack_wait=30, clock=clock)
    try:
        adapter = SlowAdapter({1: []})
        pool = WorkerPool(queue, _coordinator(store, adapter), config, worker_count=1, session=SESSION)
        await queue.enqueue(FetchRequest(domain="news", region="us"))
        (delivery,) = await queue.fetch("worker-1", wait=0)

        assert await pool.handle(delivery) is None
        assert len(adapter.calls) == 1
        assert await queue.read_results() == []
        assert await queue.fetch("worker-2", wait=0) == []

        clock.now += 31
        (redelivered,) = await queue.fetch("worker-2", wait=0)
        assert redelivered.deliveries == 2
        assert await delivery.ack() is False
    finally:
        await store.stop()
        await queue.stop()


@pytest.mark.asyncio
async def test_empty_scope_is_retried_until_dead_lettered(tmp_path, news_domain, monkeypatch):
    monkeypatch.setattr(config, "QUEUE_POLL_SECONDS", 0.1)
    monkeypatch.setattr(config, "RETRY_DELAY", 0)
    store, queue = await _open(tmp_path, max_deliver=3)
    try:
        adapter = FakeAdapter({1: []})
        pool = WorkerPool(queue, _coordinator(store, adapter), config, worker_count=1, domains=["news"],
                          session=SESSION)
        await queue.enqueue(FetchRequest(domain="news", region="us"))

        await pool.start()
        for _ in range(100):
            if (await queue.stats())["NEWS_FETCH"]["dead_letters"] == 1:
                break
            await asyncio.sleep(0.05)
        await pool.stop()

        assert len(adapter.calls) == 3
        stats = (await queue.stats())["NEWS_FETCH"]
        assert stats["dead_letters"] == 1
        assert stats["pending"] == 0
        results = [result for _, result in await queue.read_results()]
        assert [r.attempt for r in results] == [1, 2, 3]
        assert all(r.error == NO_ITEMS_ERROR for r in results)
    finally:
        await store.stop()
        await queue.stop()
