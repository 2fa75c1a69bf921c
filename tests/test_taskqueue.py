import asyncio

import pytest

from errors import QueueError
from records import FetchRequest, FetchResult
from taskqueue import TaskQueue, stream_name, request_subject


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


async def _open_queue(tmp_path, clock, **kwargs):
    queue = TaskQueue(db_path=str(tmp_path / "queue.db"), clock=clock, **kwargs)
    await queue.start()
    return queue


def _request(region="us", priority="normal", domain="news"):
    return FetchRequest(domain=domain, region=region, priority=priority)


@pytest.mark.asyncio
async def test_enqueue_fetch_ack(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        request = _request()
        task_id = await queue.enqueue(request)
        assert task_id is not None

        deliveries = await queue.fetch("worker-1", wait=0)
        assert len(deliveries) == 1
        delivery = deliveries[0]
        assert delivery.stream == stream_name("news") == "NEWS_FETCH"
        assert delivery.subject == request_subject("news") == "news.fetch.request"
        assert delivery.deliveries == 1
        assert FetchRequest.from_json(delivery.payload).request_id == request.request_id

        assert await delivery.ack() is True
        assert await queue.fetch("worker-1", wait=0) == []
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_leased_task_is_invisible_to_other_consumers(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        await queue.enqueue(_request())
        assert len(await queue.fetch("worker-1", wait=0)) == 1
        assert await queue.fetch("worker-2", wait=0) == []
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_expired_lease_redelivers_and_stale_handle_is_rejected(tmp_path):
    """After the ack wait lapses the task is redelivered; the first handle can no longer settle it."""
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock, ack_wait=30)
    try:
        await queue.enqueue(_request())
        (first,) = await queue.fetch("worker-1", wait=0)

        clock.advance(31)
        (second,) = await queue.fetch("worker-2", wait=0)
        assert second.task_id == first.task_id
        assert second.deliveries == 2

        assert await first.ack() is False
        assert await first.nak() is False
        assert await first.in_progress() is False
        assert await second.ack() is True
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_in_progress_extends_the_lease(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock, ack_wait=30)
    try:
        await queue.enqueue(_request())
        (delivery,) = await queue.fetch("worker-1", wait=0)

        clock.advance(20)
        assert await delivery.in_progress() is True
        clock.advance(20)

        assert await queue.fetch("worker-2", wait=0) == []
        assert await delivery.ack() is True
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_nak_redelivery_is_bounded_by_max_deliver(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock, max_deliver=3)
    try:
        await queue.enqueue(_request())

        for attempt in range(1, 4):
            (delivery,) = await queue.fetch("worker-1", wait=0)
            assert delivery.deliveries == attempt
            assert await delivery.nak(error="No items fetched") is True

        assert await queue.fetch("worker-1", wait=0) == []
        stats = await queue.stats()
        assert stats["NEWS_FETCH"]["dead_letters"] == 1
        assert stats["NEWS_FETCH"]["pending"] == 0

        (dead,) = await queue.dead_letters()
        assert dead["deliveries"] == 3
        assert "No items fetched" in dead["reason"]
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_nak_delay_defers_redelivery(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        await queue.enqueue(_request())
        (delivery,) = await queue.fetch("worker-1", wait=0)
        await delivery.nak(delay=30)

        clock.advance(10)
        assert await queue.fetch("worker-1", wait=0) == []
        clock.advance(25)
        assert len(await queue.fetch("worker-1", wait=0)) == 1
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_lapsed_final_delivery_is_dead_lettered(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock, max_deliver=1, ack_wait=30)
    try:
        await queue.enqueue(_request())
        assert len(await queue.fetch("worker-1", wait=0)) == 1

        clock.advance(31)
        assert await queue.fetch("worker-1", wait=0) == []
        assert (await queue.stats())["NEWS_FETCH"]["dead_letters"] == 1
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_term_dead_letters_immediately(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        await queue.enqueue(_request())
        (delivery,) = await queue.fetch("worker-1", wait=0)
        assert await delivery.term("undecodable") is True

        assert await queue.fetch("worker-1", wait=0) == []
        (dead,) = await queue.dead_letters()
        assert dead["reason"] == "undecodable"
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_priority_order(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        await queue.enqueue(_request("a", "low"))
        await queue.enqueue(_request("b", "normal"))
        await queue.enqueue(_request("c", "high"))
        await queue.enqueue(_request("d", "normal"))

        deliveries = await queue.fetch("worker-1", batch=4, wait=0)
        regions = [FetchRequest.from_json(d.payload).region for d in deliveries]
        assert regions == ["c", "b", "d", "a"]
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_domain_filter(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        await queue.enqueue(_request(domain="news"))
        await queue.enqueue(FetchRequest(domain="videos", region="US", category="10"))

        (delivery,) = await queue.fetch("worker-1", batch=5, wait=0, domains=["videos"])
        assert delivery.stream == "VIDEOS_FETCH"
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_dedupe_window(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        assert await queue.enqueue(_request(), dedupe_window=600) is not None
        assert await queue.enqueue(_request(), dedupe_window=600) is None
        # Manual enqueues bypass the window
        assert await queue.enqueue(_request()) is not None

        clock.advance(601)
        assert await queue.enqueue(_request(), dedupe_window=600) is not None
        assert (await queue.stats())["NEWS_FETCH"]["pending"] == 3
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_retention_drops_old_tasks_and_results(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock, max_age=24 * 3600)
    try:
        await queue.enqueue(_request())
        await queue.publish_result(FetchResult(domain="news", region="us", request_id="us-1", success=True))

        clock.advance(25 * 3600)
        assert await queue.fetch("worker-1", wait=0) == []
        assert await queue.read_results() == []
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_results_cursor(tmp_path):
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock)
    try:
        first = FetchResult(domain="news", region="us", request_id="us-1", success=True, item_count=4)
        second = FetchResult(domain="videos", region="US", category="10", request_id="US:10-1", error="boom")
        assert await queue.publish_result(first) is True
        assert await queue.publish_result(second) is True

        results = await queue.read_results()
        assert [r.request_id for _, r in results] == ["us-1", "US:10-1"]
        assert results[0][1].item_count == 4
        assert results[1][1].error == "boom"

        after_first = await queue.read_results(after_id=results[0][0])
        assert [r.request_id for _, r in after_first] == ["US:10-1"]

        only_news = await queue.read_results(domains=["news"])
        assert len(only_news) == 1
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_queue_survives_restart(tmp_path):
    """An unacknowledged task is still deliverable after the queue is reopened."""
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock, ack_wait=30)
    await queue.enqueue(_request())
    assert len(await queue.fetch("worker-1", wait=0)) == 1
    await queue.stop()

    clock.advance(31)
    reopened = await _open_queue(tmp_path, clock, ack_wait=30)
    try:
        (delivery,) = await reopened.fetch("worker-2", wait=0)
        assert delivery.deliveries == 2
    finally:
        await reopened.stop()


@pytest.mark.asyncio
async def test_publish_result_failure_is_not_raised(tmp_path):
    queue = TaskQueue(db_path=str(tmp_path / "queue.db"))
    # Never started: publishing must log and report failure
    ok = await queue.publish_result(FetchResult(domain="news", region="us", request_id="x"))
    assert ok is False


@pytest.mark.asyncio
async def test_timed_out_lease_is_not_committed(tmp_path):
    """A lease whose caller gave up never runs, so the task stays available."""
    clock = FakeClock()
    queue = await _open_queue(tmp_path, clock, op_timeout=0.2)
    try:
        await queue.enqueue(_request())

        # Stall the database worker so the next operation times out in the queue
        queue.worker_task.cancel()
        await queue.worker_task
        with pytest.raises(QueueError):
            await queue.fetch("worker-1", wait=0)

        queue.worker_task = asyncio.create_task(queue._worker())
        (delivery,) = await queue.fetch("worker-2", wait=0)

        assert delivery.deliveries == 1
        assert queue.results == {}
        assert queue.cancelled == set()
    finally:
        await queue.stop()
