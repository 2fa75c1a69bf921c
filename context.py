#!/usr/bin/env python3
"""Application context: the store, queue and adapters built once at startup."""

from typing import Optional

from config import Config, config, get_logger
from models import ContentStore
from sources import AdapterRegistry
from taskqueue import TaskQueue

logger = get_logger("context")


class AppContext:
    """Holds shared resources and passes them explicitly to each component."""

    def __init__(self, cfg: Config = config, store: Optional[ContentStore] = None,
                 queue: Optional[TaskQueue] = None, registry: Optional[AdapterRegistry] = None):
        self.config = cfg
        self.store = store or ContentStore(cfg.DATABASE_PATH)
        self.queue = queue or TaskQueue(cfg.QUEUE_PATH)
        self._registry = registry

    @property
    def registry(self) -> AdapterRegistry:
        if self._registry is None:
            self._registry = AdapterRegistry.build(self.config)
        return self._registry

    async def start(self, store: bool = True, queue: bool = True) -> None:
        """Open the requested databases.

        Raises:
            StoreError, QueueError: a database cannot be opened.
        """
        if queue:
            await self.queue.start()
        if store:
            await self.store.start()
        logger.debug("Application context started")

    async def stop(self) -> None:
        await self.store.stop()
        await self.queue.stop()

    async def __aenter__(self) -> "AppContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
