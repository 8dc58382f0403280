#!/usr/bin/env python3
"""
Database models and operations for the harvester.

All sqlite access goes through DatabaseQueue: callers enqueue a named
operation with keyword parameters (``await db.execute('get_item_by_key', ...)``)
and a single worker task runs the synchronous method against one connection.
This keeps sqlite usage single-threaded without locks in the pipeline code.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import DatabaseError
from telemetry import trace_span

logger = get_logger("models")

ITEM_FIELDS = (
    "url", "canonical_url", "title", "raw_text", "published_at", "hash",
    "status", "skip_reason", "digest", "etag", "last_modified",
)

# Columns added after the first schema release: table -> {column: DDL type}
_LATE_COLUMNS = {
    "sources": {"last_run_stats": "TEXT", "etag": "TEXT", "last_modified": "TEXT"},
    "items": {"skip_reason": "TEXT", "etag": "TEXT", "last_modified": "TEXT"},
}

# Worker lifecycle methods are not store operations
_NOT_OPERATIONS = {"start", "stop", "execute"}


def initialize_database(conn) -> None:
    """Create the schema on a new database or migrate an existing one."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='sources'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            _run_migrations(conn)
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add columns introduced after a database was first created."""
    cursor = conn.cursor()
    try:
        for table, columns in _LATE_COLUMNS.items():
            cursor.execute(f"PRAGMA table_info({table})")
            existing = {row[1] for row in cursor.fetchall()}
            for column, ddl_type in columns.items():
                if column not in existing:
                    logger.info(f"Adding {column} column to {table} table")
                    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}")
        conn.commit()
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


def _row_to_dict(row: Optional[Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class DatabaseQueue:
    """A queue for database operations to keep sqlite access on one worker."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return
        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            self.running = False
            raise DatabaseError("start", f"could not open database at {self.db_path}")
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
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
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            conn = connect(self.db_path)
            conn.row_factory = Row
            initialize_database(conn)
            self.conn = conn
        except Exception as e:
            logger.error(f"Error initializing database at {self.db_path}: {e}")
            self._ready.set()
            return
        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or operation_name in _NOT_OPERATIONS or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()
            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation by name; raises DatabaseError on failure."""
        if not self.running:
            raise DatabaseError(operation_name, "database worker is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise DatabaseError(operation_name, "database worker stopped before completing the operation")
            if "error" in result:
                raise DatabaseError(operation_name, result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Source operations
    def register_source(
        self,
        name: str,
        kind: str,
        url: str,
        region_tag: Optional[str] = None,
        category_tag: Optional[str] = None,
        priority: int = 0,
        is_active: bool = True,
        fetch_interval_minutes: int = 60,
        crawl_config: Optional[str] = None,
    ) -> int:
        """Insert a source or refresh its definition; the activity flag is only set on insert."""
        now = int(time())
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO sources (name, kind, url, region_tag, category_tag, priority, is_active,
                                 fetch_interval_minutes, crawl_config, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                kind = excluded.kind,
                url = excluded.url,
                region_tag = excluded.region_tag,
                category_tag = excluded.category_tag,
                priority = excluded.priority,
                fetch_interval_minutes = excluded.fetch_interval_minutes,
                crawl_config = excluded.crawl_config,
                updated_at = excluded.updated_at
            """,
            (name, kind, url, region_tag, category_tag, int(priority), 1 if is_active else 0,
             int(fetch_interval_minutes), crawl_config, now, now),
        )
        self.conn.commit()
        cursor.execute("SELECT id FROM sources WHERE name = ?", (name,))
        return int(cursor.fetchone()["id"])

    def list_active_sources(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active sources, highest priority first, optionally restricted to one name."""
        query = "SELECT * FROM sources WHERE is_active = 1"
        params: List[Any] = []
        if name:
            query += " AND name = ?"
            params.append(name)
        query += " ORDER BY priority DESC, id ASC"
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def list_sources(self) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM sources ORDER BY priority DESC, id ASC")
        return [dict(row) for row in cursor.fetchall()]

    def get_source(self, source_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
        return _row_to_dict(cursor.fetchone())

    def set_source_active(self, name: str, is_active: bool) -> bool:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE sources SET is_active = ?, updated_at = ? WHERE name = ?",
            (1 if is_active else 0, int(time()), name),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def update_source_run(
        self,
        source_id: int,
        run_stats: str,
        outcome: str = "success",
        last_error: Optional[str] = None,
        now: Optional[int] = None,
    ) -> None:
        """Record the end of a poll.

        ``success`` touches last_fetched_at and replaces last_error (None clears it,
        a partial failure keeps its text), ``error`` stores
        the error text, ``stats_only`` (dry runs, cooldown skips) only refreshes
        last_run_stats.
        """
        ts = int(now if now is not None else time())
        if outcome == "success":
            self.conn.execute(
                "UPDATE sources SET last_fetched_at = ?, last_error = ?, last_run_stats = ?, updated_at = ? WHERE id = ?",
                (ts, last_error, run_stats, ts, source_id),
            )
        elif outcome == "error":
            self.conn.execute(
                "UPDATE sources SET last_error = ?, last_run_stats = ?, updated_at = ? WHERE id = ?",
                (last_error, run_stats, ts, source_id),
            )
        elif outcome == "stats_only":
            self.conn.execute(
                "UPDATE sources SET last_run_stats = ?, updated_at = ? WHERE id = ?",
                (run_stats, ts, source_id),
            )
        else:
            raise ValueError(f"Unknown source run outcome: {outcome}")
        self.conn.commit()

    def update_source_headers(self, source_id: int, etag: Optional[str] = None, last_modified: Optional[str] = None) -> None:
        """Store conditional-fetch tokens; None leaves the stored value untouched."""
        update_parts = []
        params: List[Any] = []
        if etag is not None:
            update_parts.append("etag = ?")
            params.append(etag)
        if last_modified is not None:
            update_parts.append("last_modified = ?")
            params.append(last_modified)
        if not update_parts:
            return
        params.append(source_id)
        self.conn.execute(f"UPDATE sources SET {', '.join(update_parts)} WHERE id = ?", tuple(params))
        self.conn.commit()

    # Item operations
    def get_item_by_key(self, source_id: int, canonical_url: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM items WHERE source_id = ? AND canonical_url = ?",
            (source_id, canonical_url),
        )
        return _row_to_dict(cursor.fetchone())

    def get_item(self, item_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM items WHERE id = ?", (item_id,))
        return _row_to_dict(cursor.fetchone())

    def create_item(self, source_id: int, **fields) -> Dict[str, Any]:
        """Insert an item; the (source_id, canonical_url) constraint rejects duplicates."""
        columns = ["source_id", "fetched_at"] + [f for f in ITEM_FIELDS if f in fields]
        values = [source_id, int(time())] + [fields[f] for f in ITEM_FIELDS if f in fields]
        placeholders = ", ".join("?" for _ in columns)
        cursor = self.conn.cursor()
        cursor.execute(f"INSERT INTO items ({', '.join(columns)}) VALUES ({placeholders})", values)
        self.conn.commit()
        return self.get_item(cursor.lastrowid)

    def update_item(self, item_id: int, **fields) -> Dict[str, Any]:
        """Update item fields in place; pushed_at is never touched here."""
        names = [f for f in ITEM_FIELDS if f in fields]
        assignments = ", ".join(f"{f} = ?" for f in names + ["fetched_at"])
        values = [fields[f] for f in names] + [int(time()), item_id]
        self.conn.execute(f"UPDATE items SET {assignments} WHERE id = ?", values)
        self.conn.commit()
        return self.get_item(item_id)

    def mark_item_skipped(self, item_id: int, skip_reason: str) -> None:
        self.conn.execute(
            "UPDATE items SET status = 'SKIPPED', skip_reason = ? WHERE id = ?",
            (skip_reason, item_id),
        )
        self.conn.commit()

    def mark_item_pushed(self, item_id: int, pushed_at: Optional[int] = None) -> bool:
        """Set pushed_at once; returns False if the item was already marked."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE items SET pushed_at = ? WHERE id = ? AND pushed_at IS NULL",
            (int(pushed_at if pushed_at is not None else time()), item_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def list_items(self, source_id: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        if source_id is None:
            cursor.execute("SELECT * FROM items ORDER BY id")
        else:
            cursor.execute("SELECT * FROM items WHERE source_id = ? ORDER BY id", (source_id,))
        return [dict(row) for row in cursor.fetchall()]

    def count_items(self) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM items")
        return int(cursor.fetchone()[0])

    # Audit operations
    def insert_audit_log(
        self,
        item_id: Optional[int],
        action: str,
        result: str,
        reason: Optional[str] = None,
        original_data: str = "",
        result_data: Optional[str] = None,
        reviewer: str = "system",
        is_important: bool = False,
        created_at: Optional[int] = None,
    ) -> int:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO audit_logs (item_id, action, result, reason, original_data, result_data,
                                    reviewer, is_important, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (item_id, action, result, reason, original_data, result_data, reviewer,
             1 if is_important else 0, int(created_at if created_at is not None else time())),
        )
        self.conn.commit()
        return int(cursor.lastrowid)

    def count_source_audits_since(self, source_id: int, action: str, since: int, result: Optional[str] = None) -> int:
        """Count audit rows for a source's items with created_at >= since."""
        query = (
            "SELECT COUNT(*) FROM audit_logs a JOIN items i ON a.item_id = i.id "
            "WHERE i.source_id = ? AND a.action = ? AND a.created_at >= ?"
        )
        params: List[Any] = [source_id, action, int(since)]
        if result is not None:
            query += " AND a.result = ?"
            params.append(result)
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        return int(cursor.fetchone()[0])

    def count_pushed_audits_for_item(self, item_id: int, action: str = "PUSH_WEBHOOK") -> int:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM audit_logs WHERE item_id = ? AND action = ? AND result = 'PUSHED'",
            (item_id, action),
        )
        return int(cursor.fetchone()[0])

    def get_last_audit(self, item_id: int, action: str = "PUSH_WEBHOOK") -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM audit_logs WHERE item_id = ? AND action = ? ORDER BY id DESC LIMIT 1",
            (item_id, action),
        )
        return _row_to_dict(cursor.fetchone())

    def list_audit_logs(self, item_id: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        if item_id is None:
            cursor.execute("SELECT * FROM audit_logs ORDER BY id")
        else:
            cursor.execute("SELECT * FROM audit_logs WHERE item_id = ? ORDER BY id", (item_id,))
        return [dict(row) for row in cursor.fetchall()]

    def get_status_counts(self) -> Dict[str, Any]:
        """Aggregate counters for the CLI status report."""
        cursor = self.conn.cursor()
        counts: Dict[str, Any] = {}
        cursor.execute("SELECT COUNT(*), SUM(is_active) FROM sources")
        total, active = cursor.fetchone()
        counts["sources"] = int(total or 0)
        counts["active_sources"] = int(active or 0)
        cursor.execute("SELECT status, COUNT(*) FROM items GROUP BY status")
        counts["items_by_status"] = {row[0]: int(row[1]) for row in cursor.fetchall()}
        cursor.execute("SELECT COUNT(*) FROM items WHERE pushed_at IS NOT NULL")
        counts["pushed_items"] = int(cursor.fetchone()[0])
        cursor.execute("SELECT result, COUNT(*) FROM audit_logs GROUP BY result")
        counts["audits_by_result"] = {row[0]: int(row[1]) for row in cursor.fetchall()}
        cursor.execute("SELECT name, last_error FROM sources WHERE last_error IS NOT NULL ORDER BY name")
        counts["sources_with_errors"] = [{"name": row[0], "last_error": row[1]} for row in cursor.fetchall()]
        return counts
