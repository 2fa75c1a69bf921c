#!/usr/bin/env python3
"""
Content Aggregator Orchestrator

Runs the pieces of the fetch pipeline as long-lived services or one-off
commands:

- worker:    fetch workers consuming the task queue
- scheduler: periodic enqueue of every configured scope
- api:       read API with manual fetch triggers
- all:       workers, scheduler, result monitor and API in one process
- enqueue:   queue one scope (or a whole domain) immediately
- status:    queue depth, dead letters and stored records per domain
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web

from api import ReadAPI, create_app
from config import config, get_logger
from context import AppContext
from errors import ConfigurationError, QueueError, StoreError
from fetcher import FetchCoordinator, WorkerPool
from monitor import ResultMonitor
from scheduler import FetchScheduler, FetchTrigger
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("content-aggregator-orchestrator")


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; KeyboardInterrupt still applies
            pass


class ContentOrchestrator:
    """Wires components from one AppContext into runnable modes."""

    def __init__(self, ctx: Optional[AppContext] = None) -> None:
        self.ctx = ctx or AppContext(config)
        self.stop_event = asyncio.Event()

    def build_pool(self) -> WorkerPool:
        coordinator = FetchCoordinator(self.ctx.store, self.ctx.registry, self.ctx.config)
        return WorkerPool(self.ctx.queue, coordinator, self.ctx.config)

    def build_api(self) -> ReadAPI:
        trigger = FetchTrigger(self.ctx.queue, self.ctx.config)
        return ReadAPI(self.ctx.store, self.ctx.queue, trigger, self.ctx.config)

    async def run_workers(self) -> None:
        logger.info("📡 Starting fetch workers")
        pool = self.build_pool()
        await pool.start()
        try:
            await self.stop_event.wait()
        finally:
            await pool.stop()

    async def run_scheduler(self) -> None:
        await FetchScheduler(self.ctx.queue, self.ctx.config).run(self.stop_event)

    async def run_monitor(self) -> None:
        await ResultMonitor(self.ctx.queue, self.ctx.config).run(self.stop_event)

    async def run_api(self) -> None:
        app = create_app(self.build_api())
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self.ctx.config.API_HOST, self.ctx.config.API_PORT)
        await site.start()
        logger.info(f"🌐 Read API listening on {self.ctx.config.API_HOST}:{self.ctx.config.API_PORT}")
        try:
            await self.stop_event.wait()
        finally:
            await runner.cleanup()

    async def _supervise(self, name: str, component) -> None:
        """Run one component; if it fails, stop the others too."""
        try:
            await component
        except Exception as e:
            logger.error(f"💥 {name} failed, shutting down: {e}")
            self.stop_event.set()
            raise

    async def run(self, mode: str) -> None:
        """Run a service mode until SIGINT/SIGTERM."""
        _install_signal_handlers(self.stop_event)
        needs_store = mode in ("worker", "api", "all")
        await self.ctx.start(store=needs_store, queue=True)
        try:
            if mode == "worker":
                await self.run_workers()
            elif mode == "scheduler":
                await self.run_scheduler()
            elif mode == "api":
                await self.run_api()
            elif mode == "all":
                outcomes = await asyncio.gather(
                    self._supervise("workers", self.run_workers()),
                    self._supervise("scheduler", self.run_scheduler()),
                    self._supervise("monitor", self.run_monitor()),
                    self._supervise("api", self.run_api()),
                    return_exceptions=True,
                )
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        raise outcome
        finally:
            await self.ctx.stop()
            logger.info("👋 Orchestrator shut down")

    @trace_span("enqueue_command", tracer_name="orchestrator")
    async def enqueue(self, domain: str, scope: Optional[str], priority: str) -> list:
        await self.ctx.start(store=False, queue=True)
        try:
            trigger = FetchTrigger(self.ctx.queue, self.ctx.config)
            if scope:
                return [(await trigger.trigger(domain, scope, priority)).request_id]
            return [r.request_id for r in await trigger.trigger_all(domain, priority)]
        finally:
            await self.ctx.stop()

    async def check_status(self) -> Dict[str, Any]:
        """Collect queue and store statistics."""
        logger.info("📊 Checking system status")
        await self.ctx.start()
        try:
            return {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "domains": {name: len(d.scopes) for name, d in self.ctx.config.DOMAINS.items()},
                "queue": await self.ctx.queue.stats(),
                "dead_letters": await self.ctx.queue.dead_letters(limit=10),
                "records": await self.ctx.store.execute("domain_stats"),
            }
        finally:
            await self.ctx.stop()

    def print_status(self, status: Dict[str, Any]) -> None:
        print("\n📊 Content Aggregator Status")
        print(f"⏰ {status['timestamp']}")

        print("\n🧭 Domains:")
        for name, scopes in status["domains"].items():
            records = status["records"].get(name, {})
            print(f"   {name}: {scopes} scopes, {records.get('records', 0)} records, "
                  f"last fetched {records.get('last_fetched') or 'never'}")

        print("\n📬 Queue:")
        if not status["queue"]:
            print("   empty")
        for stream, counts in sorted(status["queue"].items()):
            print(f"   {stream}: {counts['pending']} pending, {counts['in_flight']} in flight, "
                  f"{counts['dead_letters']} dead")

        if status["dead_letters"]:
            print("\n☠️  Recent dead letters:")
            for dead in status["dead_letters"]:
                print(f"   task {dead['task_id']} {dead['subject']} after {dead['deliveries']} deliveries: {dead['reason']}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Content Aggregator Orchestrator')
    parser.add_argument('mode', choices=['worker', 'scheduler', 'api', 'all', 'enqueue', 'status'],
                        help='Operation mode')
    parser.add_argument('--domain', type=str, help='Domain for enqueue (e.g. news, videos)')
    parser.add_argument('--scope', type=str, help='Scope for enqueue (e.g. us, US:10); omit to enqueue all scopes')
    parser.add_argument('--priority', choices=['high', 'normal', 'low'], default='normal',
                        help='Priority for enqueue')

    args = parser.parse_args()

    try:
        config.validate(require_keys=args.mode in ('worker', 'all'))
        orchestrator = ContentOrchestrator()

        if args.mode == 'enqueue':
            if not args.domain:
                parser.error("enqueue requires --domain")
            request_ids = asyncio.run(orchestrator.enqueue(args.domain, args.scope, args.priority))
            for request_id in request_ids:
                print(request_id)

        elif args.mode == 'status':
            status = asyncio.run(orchestrator.check_status())
            orchestrator.print_status(status)

        else:
            logger.info(f"🚀 Starting in {args.mode} mode: {config.get_config_summary()}")
            asyncio.run(orchestrator.run(args.mode))

    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)
    except (StoreError, QueueError) as e:
        logger.error(f"❌ Storage unavailable: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(f"❌ Cannot start service: {e}")
        sys.exit(1)
    except LookupError as e:
        logger.error(f"❌ {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")


if __name__ == "__main__":
    main()
