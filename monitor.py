#!/usr/bin/env python3
"""Passive subscriber that logs FetchResults as workers publish them."""

import asyncio
from typing import Callable, Dict, List, Optional

from config import Config, config, get_logger
from errors import QueueError
from records import FetchResult
from taskqueue import TaskQueue

logger = get_logger("monitor")


class ResultMonitor:
    def __init__(self, queue: TaskQueue, cfg: Config = config, poll_interval: Optional[float] = None,
                 domains: Optional[List[str]] = None,
                 on_result: Optional[Callable[[FetchResult], None]] = None):
        self.queue = queue
        self.poll_interval = poll_interval if poll_interval is not None else cfg.QUEUE_POLL_SECONDS
        self.domains = domains
        self.on_result = on_result
        self.cursor = 0
        self.totals: Dict[str, int] = {"succeeded": 0, "failed": 0, "items": 0}

    async def seek_latest(self) -> int:
        """Skip results published before this monitor started."""
        self.cursor = max(self.cursor, await self.queue.latest_result_id())
        return self.cursor

    async def poll_once(self, limit: int = 100) -> List[FetchResult]:
        batch = await self.queue.read_results(after_id=self.cursor, limit=limit, domains=self.domains)
        results = []
        for row_id, result in batch:
            self.cursor = max(self.cursor, row_id)
            self._record(result)
            results.append(result)
        return results

    def _record(self, result: FetchResult) -> None:
        if result.success:
            self.totals["succeeded"] += 1
            self.totals["items"] += result.item_count
            logger.info(
                f"✅ {result.domain}/{result.scope} [{result.request_id}]: "
                f"{result.item_count} stored of {result.fetched_count} fetched"
            )
        else:
            self.totals["failed"] += 1
            logger.warning(
                f"❌ {result.domain}/{result.scope} [{result.request_id}] attempt {result.attempt}: {result.error}"
            )
        if self.on_result:
            self.on_result(result)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        try:
            await self.seek_latest()
        except QueueError as e:
            logger.error(f"Cannot read latest result id, replaying retained results: {e}")
        logger.info(f"Result monitor started after result {self.cursor}")
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except QueueError as e:
                logger.error(f"Result poll failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info(
            "Result monitor stopped: %d succeeded, %d failed, %d items stored",
            self.totals["succeeded"], self.totals["failed"], self.totals["items"],
        )
