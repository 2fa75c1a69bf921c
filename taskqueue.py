#!/usr/bin/env python3
"""
Durable SQLite-backed work queue for fetch requests.

Each content domain gets a stream ``<DOMAIN>_FETCH`` carrying JSON
FetchRequests on ``<domain>.fetch.request`` and FetchResults on
``<domain>.fetch.result``. Workers lease tasks with a visibility timeout and
settle them through Delivery handles; a handle whose lease has been replaced
is stale and can no longer change the task.
"""

from asyncio import sleep, get_running_loop
from dataclasses import dataclass
from time import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import config, get_logger
from errors import QueueError
from models import DatabaseQueue
from records import FetchRequest, FetchResult, PRIORITY_RANK
from telemetry import trace_span

logger = get_logger("taskqueue")

# Retention cleanup runs at most this often
SWEEP_INTERVAL_SECONDS = 60.0
# Upper bound on a single empty-queue sleep inside fetch()
POLL_STEP_SECONDS = 0.5


def stream_name(domain: str) -> str:
    return f"{domain.upper()}_FETCH"


def request_subject(domain: str) -> str:
    return f"{domain}.fetch.request"


def result_subject(domain: str) -> str:
    return f"{domain}.fetch.result"


def consumer_group(domain: str) -> str:
    return f"{domain}-fetchers"


@dataclass
class Delivery:
    """One leased task. Settle it with exactly one of ack/nak/term."""
    queue: "TaskQueue"
    task_id: int
    stream: str
    subject: str
    payload: str
    deliveries: int
    lease_token: str

    async def _settle(self, operation: str, **params) -> bool:
        try:
            return await self.queue.execute(operation, task_id=self.task_id, token=self.lease_token, **params)
        except QueueError as e:
            logger.error(f"{operation} failed for task {self.task_id}: {e}")
            return False

    async def ack(self) -> bool:
        """Remove the task. False when this handle is stale."""
        return await self._settle("ack_task")

    async def nak(self, delay: float = 0.0, error: str = "") -> bool:
        """Return the task for redelivery after ``delay`` seconds.

        A task that already used its last delivery is dead-lettered instead.
        """
        return await self._settle("nak_task", delay=max(0.0, float(delay)), error=error)

    async def term(self, reason: str = "") -> bool:
        """Dead-letter the task without further deliveries."""
        return await self._settle("term_task", reason=reason)

    async def in_progress(self) -> bool:
        """Extend the lease by one ack wait."""
        return await self._settle("touch_task")


class TaskQueue(DatabaseQueue):
    """At-least-once work queue with leases, bounded redelivery and dead letters."""

    OPERATIONS = frozenset({
        "ping",
        "enqueue_task",
        "lease_tasks",
        "ack_task",
        "nak_task",
        "term_task",
        "touch_task",
        "publish",
        "results_after",
        "last_result_id",
        "queue_stats",
        "dead_letter_list",
    })
    error_class = QueueError

    def __init__(
        self,
        db_path: Optional[str] = None,
        max_deliver: Optional[int] = None,
        ack_wait: Optional[float] = None,
        max_age: Optional[float] = None,
        op_timeout: Optional[float] = None,
        clock: Callable[[], float] = time,
    ):
        super().__init__(
            db_path or config.QUEUE_PATH,
            config.QUEUE_SCHEMA_FILE_PATH,
            op_timeout if op_timeout is not None else config.STORE_TIMEOUT,
        )
        self.max_deliver = max_deliver or config.MAX_DELIVER
        self.ack_wait = ack_wait or config.ACK_WAIT_SECONDS
        self.max_age = max_age or config.QUEUE_MAX_AGE_HOURS * 3600
        self.clock = clock
        self._last_sweep = 0.0

    # Producer side
    @trace_span(
        "queue.enqueue",
        tracer_name="queue",
        attr_from_args=lambda self, request, *a, **k: {
            "queue.domain": request.domain,
            "queue.scope": str(request.scope),
            "queue.priority": request.priority,
        },
    )
    async def enqueue(self, request: FetchRequest, dedupe_window: Optional[float] = None) -> Optional[int]:
        """Add a request to its domain stream.

        With ``dedupe_window`` (seconds), a request for a scope that was already
        enqueued with a dedupe window less than that long ago is skipped and
        None is returned.
        """
        task_id = await self.execute(
            "enqueue_task",
            stream=stream_name(request.domain),
            subject=request_subject(request.domain),
            domain=request.domain,
            scope=str(request.scope),
            priority_rank=PRIORITY_RANK[request.priority],
            payload=request.to_json(),
            dedupe_window=dedupe_window,
        )
        if task_id is None:
            logger.info(f"Skipped duplicate enqueue for {request.domain}/{request.scope}")
        else:
            logger.debug(f"Enqueued {request.request_id} as task {task_id} ({request.priority})")
        return task_id

    async def publish_result(self, result: FetchResult) -> bool:
        """Publish a FetchResult. Failures are logged, never raised."""
        try:
            await self.execute(
                "publish",
                stream=stream_name(result.domain),
                subject=result_subject(result.domain),
                payload=result.to_json(),
            )
            return True
        except QueueError as e:
            logger.warning(f"Failed to publish result for {result.request_id}: {e}")
            return False

    # Consumer side
    @trace_span("queue.fetch", tracer_name="queue")
    async def fetch(self, consumer: str, batch: int = 1, wait: Optional[float] = None,
                    domains: Optional[List[str]] = None) -> List[Delivery]:
        """Lease up to ``batch`` tasks, waiting at most ``wait`` seconds for one to appear."""
        wait = config.QUEUE_POLL_SECONDS if wait is None else wait
        streams = [stream_name(d) for d in domains] if domains else None
        loop = get_running_loop()
        deadline = loop.time() + wait

        while True:
            rows = await self.execute("lease_tasks", consumer=consumer, batch=max(1, batch), streams=streams)
            if rows:
                return [Delivery(queue=self, **row) for row in rows]
            remaining = deadline - loop.time()
            if remaining <= 0 or not self.running:
                return []
            await sleep(min(POLL_STEP_SECONDS, remaining))

    async def read_results(self, after_id: int = 0, limit: int = 100,
                           domains: Optional[List[str]] = None) -> List[Tuple[int, FetchResult]]:
        """Results published after ``after_id``, oldest first."""
        streams = [stream_name(d) for d in domains] if domains else None
        rows = await self.execute("results_after", after_id=after_id, limit=limit, streams=streams)
        results = []
        for row_id, payload in rows:
            try:
                results.append((row_id, FetchResult.from_json(payload)))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping undecodable result {row_id}: {e}")
        return results

    async def latest_result_id(self) -> int:
        """Id of the newest published result (0 when there are none)."""
        return await self.execute("last_result_id")

    async def stats(self) -> Dict[str, Dict[str, int]]:
        return await self.execute("queue_stats")

    async def dead_letters(self, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.execute("dead_letter_list", limit=limit)

    # Worker-side operations
    def enqueue_task(self, stream: str, subject: str, domain: str, scope: str, priority_rank: int,
                     payload: str, dedupe_window: Optional[float] = None) -> Optional[int]:
        now = self.clock()
        cursor = self.conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            if dedupe_window:
                mark = cursor.execute(
                    "SELECT enqueued_at FROM enqueue_marks WHERE stream = ? AND dedupe_key = ?",
                    (stream, scope),
                ).fetchone()
                if mark is not None and now - mark["enqueued_at"] < dedupe_window:
                    self.conn.commit()
                    return None
            cursor.execute(
                """
                INSERT INTO tasks (stream, subject, domain, scope, priority_rank, payload, enqueued_at, available_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (stream, subject, domain, scope, priority_rank, payload, now, now),
            )
            task_id = cursor.lastrowid
            if dedupe_window:
                cursor.execute(
                    "INSERT OR REPLACE INTO enqueue_marks (stream, dedupe_key, enqueued_at) VALUES (?, ?, ?)",
                    (stream, scope, now),
                )
            self.conn.commit()
            return task_id
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def lease_tasks(self, consumer: str, batch: int, streams: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        now = self.clock()
        self._sweep(now)

        stream_filter = ""
        params: List[Any] = [now + self.ack_wait, consumer, now, self.max_deliver]
        if streams:
            stream_filter = f"AND stream IN ({', '.join('?' for _ in streams)})"
            params.extend(streams)
        params.append(batch)

        rows = self.conn.execute(
            f"""
            UPDATE tasks
            SET deliveries = deliveries + 1,
                available_at = ?,
                lease_token = lower(hex(randomblob(12))),
                leased_by = ?
            WHERE id IN (
                SELECT id FROM tasks
                WHERE available_at <= ? AND deliveries < ? {stream_filter}
                ORDER BY priority_rank, id
                LIMIT ?
            )
            RETURNING id, stream, subject, payload, deliveries, lease_token, priority_rank
            """,
            params,
        ).fetchall()
        self.conn.commit()

        rows = sorted(rows, key=lambda r: (r["priority_rank"], r["id"]))
        return [
            {
                "task_id": r["id"],
                "stream": r["stream"],
                "subject": r["subject"],
                "payload": r["payload"],
                "deliveries": r["deliveries"],
                "lease_token": r["lease_token"],
            }
            for r in rows
        ]

    def ack_task(self, task_id: int, token: str) -> bool:
        cursor = self.conn.execute("DELETE FROM tasks WHERE id = ? AND lease_token = ?", (task_id, token))
        self.conn.commit()
        return cursor.rowcount == 1

    def nak_task(self, task_id: int, token: str, delay: float = 0.0, error: str = "") -> bool:
        now = self.clock()
        row = self.conn.execute(
            "SELECT * FROM tasks WHERE id = ? AND lease_token = ?", (task_id, token)
        ).fetchone()
        if row is None:
            return False
        if row["deliveries"] >= self.max_deliver:
            self._dead_letter(row, f"max deliveries reached: {error}" if error else "max deliveries reached", now)
            self.conn.commit()
            return True
        self.conn.execute(
            """
            UPDATE tasks SET available_at = ?, lease_token = NULL, leased_by = NULL, last_error = ?
            WHERE id = ? AND lease_token = ?
            """,
            (now + delay, error or None, task_id, token),
        )
        self.conn.commit()
        return True

    def term_task(self, task_id: int, token: str, reason: str = "") -> bool:
        row = self.conn.execute(
            "SELECT * FROM tasks WHERE id = ? AND lease_token = ?", (task_id, token)
        ).fetchone()
        if row is None:
            return False
        self._dead_letter(row, reason or "terminated", self.clock())
        self.conn.commit()
        return True

    def touch_task(self, task_id: int, token: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE tasks SET available_at = ? WHERE id = ? AND lease_token = ?",
            (self.clock() + self.ack_wait, task_id, token),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def publish(self, stream: str, subject: str, payload: str) -> int:
        cursor = self.conn.execute(
            "INSERT INTO results (stream, subject, payload, published_at) VALUES (?, ?, ?, ?)",
            (stream, subject, payload, self.clock()),
        )
        self.conn.commit()
        return cursor.lastrowid

    def results_after(self, after_id: int, limit: int, streams: Optional[List[str]] = None) -> List[Tuple[int, str]]:
        query = "SELECT id, payload FROM results WHERE id > ?"
        params: List[Any] = [after_id]
        if streams:
            query += f" AND stream IN ({', '.join('?' for _ in streams)})"
            params.extend(streams)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        return [(row["id"], row["payload"]) for row in self.conn.execute(query, params).fetchall()]

    def last_result_id(self) -> int:
        row = self.conn.execute("SELECT MAX(id) FROM results").fetchone()
        return int(row[0] or 0)

    def queue_stats(self) -> Dict[str, Dict[str, int]]:
        now = self.clock()
        stats: Dict[str, Dict[str, int]] = {}

        def _entry(stream: str) -> Dict[str, int]:
            return stats.setdefault(stream, {"pending": 0, "in_flight": 0, "dead_letters": 0})

        for row in self.conn.execute(
            """
            SELECT stream,
                   SUM(CASE WHEN lease_token IS NOT NULL AND available_at > ? THEN 1 ELSE 0 END) AS in_flight,
                   SUM(CASE WHEN lease_token IS NOT NULL AND available_at > ? THEN 0 ELSE 1 END) AS pending
            FROM tasks GROUP BY stream
            """,
            (now, now),
        ).fetchall():
            entry = _entry(row["stream"])
            entry["pending"] = int(row["pending"] or 0)
            entry["in_flight"] = int(row["in_flight"] or 0)

        for row in self.conn.execute("SELECT stream, COUNT(*) AS total FROM dead_letters GROUP BY stream").fetchall():
            _entry(row["stream"])["dead_letters"] = int(row["total"])
        return stats

    def dead_letter_list(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT task_id, stream, subject, deliveries, reason, dead_at FROM dead_letters ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(row) for row in rows]

    def _dead_letter(self, row, reason: str, now: float) -> None:
        self.conn.execute(
            """
            INSERT INTO dead_letters (task_id, stream, subject, payload, deliveries, reason, enqueued_at, dead_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (row["id"], row["stream"], row["subject"], row["payload"], row["deliveries"], reason,
             row["enqueued_at"], now),
        )
        self.conn.execute("DELETE FROM tasks WHERE id = ?", (row["id"],))
        logger.warning(
            f"Dead-lettered task {row['id']} on {row['stream']} after {row['deliveries']} deliveries: {reason}"
        )

    def _sweep(self, now: float) -> None:
        """Dead-letter exhausted tasks whose lease lapsed; drop expired tasks and results."""
        exhausted = self.conn.execute(
            "SELECT * FROM tasks WHERE deliveries >= ? AND available_at <= ?",
            (self.max_deliver, now),
        ).fetchall()
        for row in exhausted:
            self._dead_letter(row, row["last_error"] or "lease expired on final delivery", now)

        if now - self._last_sweep >= SWEEP_INTERVAL_SECONDS:
            self._last_sweep = now
            cutoff = now - self.max_age
            expired = self.conn.execute("DELETE FROM tasks WHERE enqueued_at < ?", (cutoff,)).rowcount
            self.conn.execute("DELETE FROM results WHERE published_at < ?", (cutoff,))
            self.conn.execute("DELETE FROM enqueue_marks WHERE enqueued_at < ?", (cutoff,))
            if expired:
                logger.info(f"Dropped {expired} tasks older than {self.max_age / 3600:.1f}h")
        self.conn.commit()
