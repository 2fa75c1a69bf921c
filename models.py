#!/usr/bin/env python3
"""
Database access layer.

DatabaseQueue funnels every operation for one SQLite file through a single
connection owned by a worker coroutine, so callers never share a connection.
ContentStore builds the per-domain content collection on top of it: bulk
upsert by natural key and filtered, sorted, paginated reads.
"""

from dataclasses import dataclass, field
from os import path, access, R_OK
from time import time
from datetime import datetime, timezone
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Set, Tuple

from config import config, get_logger
from errors import StoreError
from records import ContentRecord
from telemetry import trace_span
from utils import is_valid_key

logger = get_logger("models")


def _read_schema_file(schema_path: str, size_limit_mb: int) -> str:
    """Read a schema file after existence, permission and size checks."""
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")

    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = size_limit_mb * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def initialize_database(conn, schema_path: str) -> None:
    """Apply a schema file; every statement in it must be idempotent."""
    schema_sql = _read_schema_file(schema_path, config.SCHEMA_FILE_SIZE_LIMIT_MB)
    conn.executescript(schema_sql)
    conn.commit()
    logger.debug(f"Schema {path.basename(schema_path)} applied")


class DatabaseQueue:
    """A queue for database operations to ensure single-connection access.

    Subclasses list the method names callable through execute() in
    OPERATIONS and pick the exception type raised to callers.
    """

    OPERATIONS: frozenset = frozenset({"ping"})
    error_class = StoreError

    def __init__(self, db_path: str, schema_path: str, op_timeout: float = 10.0):
        self.db_path = db_path
        self.schema_path = schema_path
        self.op_timeout = op_timeout
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        # Operations whose caller gave up before the worker reached them
        self.cancelled: Set[str] = set()
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database, apply the schema and start the worker.

        Raises:
            error_class: the database cannot be opened or initialized.
        """
        if self.running:
            return

        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            self.conn = connect(self.db_path, timeout=self.op_timeout)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            initialize_database(self.conn, self.schema_path)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise self.error_class(f"Cannot open database {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info(f"Database worker started for {self.db_path}")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        self.cancelled.clear()

        logger.info(f"Database worker stopped for {self.db_path}")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                if operation_id in self.cancelled:
                    self.cancelled.discard(operation_id)
                    logger.warning(f"Skipping {operation_name}: caller timed out before it ran")
                    self.queue.task_done()
                    continue

                try:
                    if operation_name in self.OPERATIONS:
                        method = getattr(self, operation_name)
                        self.results[operation_id] = {"result": method(**params)}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except (Error, ValueError, TypeError) as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    else:
                        self.results.pop(operation_id, None)
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation, bounded by the operation timeout.

        Raises:
            error_class: the worker is not running, the operation failed, or
                it did not complete within op_timeout seconds.
        """
        if not self.running:
            raise self.error_class(f"Database {self.db_path} is not started")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            try:
                await wait_for(event.wait(), timeout=self.op_timeout)
            except TimeoutError:
                self.cancelled.add(operation_id)
                raise self.error_class(f"{operation_name} timed out after {self.op_timeout:.1f}s")

            result = self.results.pop(operation_id, None)
            if result is None:
                raise self.error_class(f"{operation_name} aborted: database stopped")
            if "error" in result:
                raise self.error_class(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    def ping(self) -> bool:
        self.conn.execute("SELECT 1").fetchone()
        return True


def _to_epoch(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value else None


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


@dataclass
class UpsertResult:
    """Outcome of one bulk upsert batch."""
    upserted: int = 0
    modified: int = 0
    rejected: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def stored(self) -> int:
        """Rows created or changed by the batch."""
        return self.upserted + self.modified


class ContentStore(DatabaseQueue):
    """Per-domain content collections keyed by natural key."""

    OPERATIONS = frozenset({
        "ping",
        "upsert_records",
        "find_records",
        "get_record",
        "count_records",
        "domain_stats",
        "scope_stats_rows",
        "search_records",
    })
    error_class = StoreError

    def __init__(self, db_path: Optional[str] = None, op_timeout: Optional[float] = None):
        super().__init__(
            db_path or config.DATABASE_PATH,
            config.SCHEMA_FILE_PATH,
            op_timeout if op_timeout is not None else config.STORE_TIMEOUT,
        )

    # Async API
    @trace_span(
        "store.upsert_many",
        tracer_name="store",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, records: {"store.batch.size": len(records)},
    )
    async def upsert_many(self, records: List[ContentRecord]) -> UpsertResult:
        """Insert-or-update a batch of records by (domain, natural key).

        Records with an invalid natural key are dropped before the batch.
        Individual record failures are counted and do not abort the batch.

        Raises:
            StoreError: the batch as a whole could not be written.
        """
        if not records:
            return UpsertResult()
        stats = await self.execute("upsert_records", records=list(records))
        return UpsertResult(**stats)

    async def find(self, domain: str, region: Optional[str] = None, category: Optional[str] = None,
                   page: int = 1, limit: int = 20) -> Tuple[List[ContentRecord], int]:
        return await self.execute("find_records", domain=domain, region=region, category=category,
                                  page=page, limit=limit)

    async def get(self, domain: str, key: str) -> Optional[ContentRecord]:
        return await self.execute("get_record", domain=domain, key=key)

    async def count(self, domain: str, key: Optional[str] = None) -> int:
        return await self.execute("count_records", domain=domain, key=key)

    async def scope_stats(self, domain: str) -> List[Dict[str, Any]]:
        return await self.execute("scope_stats_rows", domain=domain)

    async def search(self, domain: str, query: str, region: Optional[str] = None,
                     limit: int = 10) -> List[ContentRecord]:
        return await self.execute("search_records", domain=domain, query=query, region=region, limit=limit)

    # Worker-side operations
    def upsert_records(self, records: List[ContentRecord]) -> Dict[str, Any]:
        """Apply one unordered upsert batch inside a single write transaction."""
        stats: Dict[str, Any] = {"upserted": 0, "modified": 0, "rejected": 0, "failed": 0, "errors": []}

        # Last occurrence of a key within the batch wins
        batch: Dict[Tuple[str, str], ContentRecord] = {}
        for record in records:
            if not record.domain or not is_valid_key(record.key):
                stats["rejected"] += 1
                logger.debug(f"Dropping record with invalid key: {record.key!r}")
                continue
            batch.pop((record.domain, record.key), None)
            batch[(record.domain, record.key)] = record

        if not batch:
            return stats

        now = int(time())
        cursor = self.conn.cursor()
        try:
            # Take the write lock up front so concurrent writers serialize per batch
            cursor.execute("BEGIN IMMEDIATE")
            for record in batch.values():
                try:
                    content_hash = record.content_hash()
                    values = (
                        record.title, record.url or "", record.description or "", record.image or "",
                        record.author or "", record.source or "", record.region or "", record.category or "",
                        _to_epoch(record.published_at), _to_epoch(record.fetched_at) or now,
                        json.dumps(record.extra) if record.extra else None, content_hash,
                    )
                    existing = cursor.execute(
                        "SELECT content_hash FROM records WHERE domain = ? AND natural_key = ?",
                        (record.domain, record.key),
                    ).fetchone()
                    if existing is None:
                        cursor.execute(
                            """
                            INSERT INTO records (title, url, description, image, author, source, region, category,
                                                 published_at, fetched_at, extra, content_hash,
                                                 domain, natural_key, first_seen_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            values + (record.domain, record.key, now),
                        )
                        stats["upserted"] += 1
                    else:
                        cursor.execute(
                            """
                            UPDATE records SET title = ?, url = ?, description = ?, image = ?, author = ?,
                                               source = ?, region = ?, category = ?, published_at = ?,
                                               fetched_at = ?, extra = ?, content_hash = ?
                            WHERE domain = ? AND natural_key = ?
                            """,
                            values + (record.domain, record.key),
                        )
                        if existing["content_hash"] != content_hash:
                            stats["modified"] += 1
                except (Error, TypeError, ValueError) as e:
                    stats["failed"] += 1
                    stats["errors"].append(f"{record.key}: {e}")
                    logger.warning(f"Upsert failed for {record.domain}/{record.key}: {e}")
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

        logger.debug(
            "Bulk upsert: %d upserted, %d modified, %d rejected, %d failed",
            stats["upserted"], stats["modified"], stats["rejected"], stats["failed"],
        )
        return stats

    def _row_to_record(self, row) -> ContentRecord:
        return ContentRecord(
            domain=row["domain"],
            key=row["natural_key"],
            title=row["title"],
            url=row["url"],
            description=row["description"],
            image=row["image"],
            author=row["author"],
            source=row["source"],
            region=row["region"],
            category=row["category"],
            published_at=_from_epoch(row["published_at"]),
            fetched_at=_from_epoch(row["fetched_at"]),
            extra=json.loads(row["extra"]) if row["extra"] else {},
        )

    def find_records(self, domain: str, region: Optional[str] = None, category: Optional[str] = None,
                     page: int = 1, limit: int = 20) -> Tuple[List[ContentRecord], int]:
        """Return one page of records for a domain, newest first, plus the total match count.

        Ordering is (published_at DESC, natural_key ASC) so consecutive pages
        are disjoint as long as nothing is written between reads.
        """
        page = max(1, int(page))
        limit = max(1, int(limit))
        where = ["domain = ?"]
        params: List[Any] = [domain]
        if region:
            where.append("region = ?")
            params.append(region)
        if category:
            where.append("category = ?")
            params.append(category)
        clause = " AND ".join(where)

        cursor = self.conn.cursor()
        try:
            total = cursor.execute(f"SELECT COUNT(*) FROM records WHERE {clause}", params).fetchone()[0]
            rows = cursor.execute(
                f"""
                SELECT * FROM records WHERE {clause}
                ORDER BY published_at IS NULL, published_at DESC, natural_key ASC
                LIMIT ? OFFSET ?
                """,
                params + [limit, (page - 1) * limit],
            ).fetchall()
            return [self._row_to_record(row) for row in rows], int(total)
        finally:
            cursor.close()

    def get_record(self, domain: str, key: str) -> Optional[ContentRecord]:
        row = self.conn.execute(
            "SELECT * FROM records WHERE domain = ? AND natural_key = ?", (domain, key)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def count_records(self, domain: str, key: Optional[str] = None) -> int:
        if key is None:
            row = self.conn.execute("SELECT COUNT(*) FROM records WHERE domain = ?", (domain,)).fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM records WHERE domain = ? AND natural_key = ?", (domain, key)
            ).fetchone()
        return int(row[0]) if row else 0

    def domain_stats(self) -> Dict[str, Dict[str, Any]]:
        """Record count and most recent fetch time per domain."""
        rows = self.conn.execute(
            "SELECT domain, COUNT(*) AS total, MAX(fetched_at) AS last_fetched FROM records GROUP BY domain"
        ).fetchall()
        return {
            row["domain"]: {
                "records": row["total"],
                "last_fetched": _from_epoch(row["last_fetched"]).isoformat() if row["last_fetched"] else None,
            }
            for row in rows
        }

    def scope_stats_rows(self, domain: str) -> List[Dict[str, Any]]:
        """Record count and most recent fetch per (region, category), largest first."""
        rows = self.conn.execute(
            """
            SELECT region, category, COUNT(*) AS total, MAX(fetched_at) AS last_fetched
            FROM records WHERE domain = ?
            GROUP BY region, category
            ORDER BY total DESC, region ASC, category ASC
            """,
            (domain,),
        ).fetchall()
        return [
            {
                "region": row["region"],
                "category": row["category"],
                "records": row["total"],
                "last_fetched": _from_epoch(row["last_fetched"]).isoformat() if row["last_fetched"] else None,
            }
            for row in rows
        ]

    def search_records(self, domain: str, query: str, region: Optional[str] = None,
                       limit: int = 10) -> List[ContentRecord]:
        """Case-insensitive substring match on title or description, newest first."""
        pattern = "%" + query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        where = ["domain = ?", "(title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')"]
        params: List[Any] = [domain, pattern, pattern]
        if region:
            where.append("region = ?")
            params.append(region)
        clause = " AND ".join(where)
        rows = self.conn.execute(
            f"""
            SELECT * FROM records WHERE {clause}
            ORDER BY published_at IS NULL, published_at DESC, natural_key ASC
            LIMIT ?
            """,
            params + [max(1, int(limit))],
        ).fetchall()
        return [self._row_to_record(row) for row in rows]
