"""
Trace Store - pluggable persistence for completed traces

Design principles:
- One interface (StorageBackend), several backends
- One record per StoredTrace, keyed by trace id
- Time-range filters are inclusive of both bounds
- Results ordered newest first
- Retention is backend-internal (cleanup on initialize, 30 days default)

Backends:
- SQLiteTraceStorage: embedded database with tool/metric side tables
- JsonFileTraceStorage: JSON-lines flat file
- InMemoryTraceStorage: process memory only
"""

import json
import logging
import os
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from calltree.analytics.analytics_types import Analytics, StoredTrace, TraceFilters
from calltree.analytics.exceptions import StorageError
from calltree.analytics.execution_tracer import ExecutionFlow
from config import StorageConfig


logger = logging.getLogger(__name__)


DEFAULT_RETENTION_DAYS = 30
SECONDS_PER_DAY = 86400


@dataclass
class StorageStats:
    """Storage summary"""
    total_traces: int = 0
    storage_size_bytes: int = 0
    oldest_trace: Optional[float] = None
    newest_trace: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class StorageBackend(ABC):
    """
    Storage backend interface

    Callers treat writes as fire-and-forget (see AsyncTraceWriter);
    backends raise on failure and the caller logs.
    """

    retention_days: int = DEFAULT_RETENTION_DAYS

    @abstractmethod
    def initialize(self) -> None:
        """Prepare the backend and apply retention"""
        pass

    @abstractmethod
    def store_trace(
        self,
        flow: ExecutionFlow,
        analytics: Analytics,
        stored_at: Optional[float] = None,
    ) -> StoredTrace:
        """
        Persist a completed trace

        Args:
            flow: Completed execution flow
            analytics: Analytics computed from the flow
            stored_at: Storage timestamp (now if omitted)

        Returns:
            The stored trace
        """
        pass

    @abstractmethod
    def get_traces(self, filters: Optional[TraceFilters] = None) -> List[StoredTrace]:
        """Query stored traces, newest first"""
        pass

    @abstractmethod
    def get_storage_stats(self) -> StorageStats:
        pass

    @abstractmethod
    def cleanup(self, retention_days: int) -> int:
        """
        Delete traces older than retention_days

        Returns:
            Number of traces deleted
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def get_trace(self, trace_id: str) -> Optional[StoredTrace]:
        """Stored trace by id, None if unknown"""
        for trace in self.get_traces():
            if trace.id == trace_id:
                return trace
        return None

    def export_data(self, filters: Optional[TraceFilters] = None) -> str:
        """Export matching traces (all by default) as a JSON array"""
        return json.dumps([trace.to_dict() for trace in self.get_traces(filters)], default=str, indent=2)

    @staticmethod
    def _select(traces: Iterable[StoredTrace], filters: Optional[TraceFilters]) -> List[StoredTrace]:
        """Apply filters, order newest first, then limit"""
        filters = filters or TraceFilters()
        selected = [trace for trace in traces if filters.matches(trace)]
        selected.sort(key=lambda trace: trace.stored_at, reverse=True)
        if filters.limit is not None:
            selected = selected[:max(0, filters.limit)]
        return selected

    @staticmethod
    def _stats(traces: List[StoredTrace], size_bytes: int) -> StorageStats:
        stored_times = [trace.stored_at for trace in traces]
        return StorageStats(
            total_traces=len(traces),
            storage_size_bytes=size_bytes,
            oldest_trace=min(stored_times) if stored_times else None,
            newest_trace=max(stored_times) if stored_times else None,
        )


class SQLiteTraceStorage(StorageBackend):
    """
    SQLite trace storage

    Tables:
    - call_tree_traces: one row per trace (serialized flow and analytics)
    - tool_usage: one row per tool call, used by the tools filter
    - performance_metrics: one row per performance sample
    """

    def __init__(self, db_path: Path, retention_days: int = DEFAULT_RETENTION_DAYS):
        """
        Initialize SQLite storage

        Args:
            db_path: Path to SQLite database file
            retention_days: Days to keep traces
        """
        self.db_path = Path(db_path)
        self.retention_days = retention_days
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local connection"""
        if not hasattr(self._local, 'conn'):
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    def initialize(self) -> None:
        """Create schema and apply retention"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        self._initialized = True

        removed = self.cleanup(self.retention_days)
        if removed:
            logger.info(f"Removed {removed} traces older than {self.retention_days} days")
        logger.info(f"SQLite trace storage ready: {self.db_path}")

    def _init_db(self) -> None:
        """Initialize database schema"""
        conn = self._get_connection()
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS call_tree_traces (
                id TEXT PRIMARY KEY,
                command TEXT NOT NULL,
                options TEXT,
                context TEXT,
                execution_flow TEXT NOT NULL,
                analytics TEXT NOT NULL,
                created_at REAL NOT NULL,
                duration_ms REAL,
                success INTEGER NOT NULL,
                error_message TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS tool_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                trace_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                execution_time_ms REAL,
                success INTEGER,
                created_at REAL NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS performance_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                trace_id TEXT NOT NULL,
                metric_name TEXT NOT NULL,
                metric_value REAL,
                unit TEXT,
                tags TEXT,
                created_at REAL NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_traces_created_at
            ON call_tree_traces(created_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_traces_command
            ON call_tree_traces(command)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_traces_success
            ON call_tree_traces(success)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_tool_usage_tool
            ON tool_usage(tool_name, trace_id)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_metrics_name
            ON performance_metrics(metric_name, created_at)
        """)
        conn.commit()

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise StorageError("SQLite trace storage is not initialized")

    def store_trace(
        self,
        flow: ExecutionFlow,
        analytics: Analytics,
        stored_at: Optional[float] = None,
    ) -> StoredTrace:
        """Insert trace with its tool and metric rows in one transaction"""
        self._require_initialized()
        stored = StoredTrace.from_flow(flow, analytics, stored_at)

        conn = self._get_connection()
        with conn:
            conn.execute("""
                INSERT INTO call_tree_traces
                (id, command, options, context, execution_flow, analytics,
                 created_at, duration_ms, success, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                stored.id,
                stored.command,
                json.dumps(stored.options, default=str),
                json.dumps(stored.context, default=str),
                json.dumps(flow.to_dict(), default=str),
                json.dumps(analytics.to_dict(), default=str),
                stored.stored_at,
                stored.duration_ms,
                int(stored.success),
                stored.error_message,
            ))
            conn.executemany("""
                INSERT INTO tool_usage
                (trace_id, tool_name, execution_time_ms, success, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, [
                (stored.id, call.tool, call.execution_time_ms, int(call.success), stored.stored_at)
                for call in flow.tool_calls
            ])
            conn.executemany("""
                INSERT INTO performance_metrics
                (trace_id, metric_name, metric_value, unit, tags, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (stored.id, sample.name, sample.value, sample.unit, json.dumps(sample.tags), stored.stored_at)
                for sample in flow.performance_samples
            ])

        return stored

    def get_traces(self, filters: Optional[TraceFilters] = None) -> List[StoredTrace]:
        """Query traces by time range, command, status and tools"""
        self._require_initialized()
        filters = filters or TraceFilters()

        query = "SELECT * FROM call_tree_traces WHERE 1=1"
        params: List[Any] = []

        if filters.start_time is not None:
            query += " AND created_at >= ?"
            params.append(filters.start_time)
        if filters.end_time is not None:
            query += " AND created_at <= ?"
            params.append(filters.end_time)
        if filters.commands:
            query += f" AND command IN ({', '.join('?' * len(filters.commands))})"
            params.extend(filters.commands)
        if filters.success is not None:
            query += " AND success = ?"
            params.append(int(filters.success))
        if filters.tools:
            query += (
                " AND id IN (SELECT DISTINCT trace_id FROM tool_usage"
                f" WHERE tool_name IN ({', '.join('?' * len(filters.tools))}))"
            )
            params.extend(filters.tools)

        query += " ORDER BY created_at DESC"
        if filters.limit is not None:
            query += " LIMIT ?"
            params.append(max(0, filters.limit))

        conn = self._get_connection()
        cursor = conn.execute(query, params)

        traces = []
        for row in cursor.fetchall():
            trace = self._row_to_trace(row)
            if trace is not None:
                traces.append(trace)
        return traces

    def get_trace(self, trace_id: str) -> Optional[StoredTrace]:
        self._require_initialized()
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM call_tree_traces WHERE id = ?", (trace_id,)).fetchone()
        return self._row_to_trace(row) if row is not None else None

    @staticmethod
    def _row_to_trace(row: sqlite3.Row) -> Optional[StoredTrace]:
        try:
            return StoredTrace(
                id=row["id"],
                command=row["command"],
                options=json.loads(row["options"] or "{}"),
                context=json.loads(row["context"] or "{}"),
                execution_flow=ExecutionFlow.from_dict(json.loads(row["execution_flow"])),
                analytics=Analytics.from_dict(json.loads(row["analytics"])),
                stored_at=row["created_at"],
                duration_ms=row["duration_ms"] or 0.0,
                success=bool(row["success"]),
                error_message=row["error_message"],
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skipping unreadable trace row {row['id']}: {e}")
            return None

    def get_storage_stats(self) -> StorageStats:
        self._require_initialized()
        conn = self._get_connection()
        row = conn.execute("""
            SELECT COUNT(*) AS total, MIN(created_at) AS oldest, MAX(created_at) AS newest
            FROM call_tree_traces
        """).fetchone()
        page_count = conn.execute("PRAGMA page_count").fetchone()[0]
        page_size = conn.execute("PRAGMA page_size").fetchone()[0]

        return StorageStats(
            total_traces=row["total"],
            storage_size_bytes=page_count * page_size,
            oldest_trace=row["oldest"],
            newest_trace=row["newest"],
        )

    def cleanup(self, retention_days: int) -> int:
        """Remove traces older than retention_days"""
        self._require_initialized()
        cutoff = time.time() - retention_days * SECONDS_PER_DAY

        conn = self._get_connection()
        with conn:
            cursor = conn.execute("DELETE FROM call_tree_traces WHERE created_at < ?", (cutoff,))
            count = cursor.rowcount
            conn.execute("DELETE FROM tool_usage WHERE created_at < ?", (cutoff,))
            conn.execute("DELETE FROM performance_metrics WHERE created_at < ?", (cutoff,))
        return count

    def is_available(self) -> bool:
        if not self._initialized:
            return False
        try:
            self._get_connection().execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"SQLite trace storage unavailable: {e}")
            return False

    def close(self) -> None:
        """Close all connections opened by any thread"""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing SQLite connection: {e}")
        self._local = threading.local()
        self._initialized = False


class JsonFileTraceStorage(StorageBackend):
    """
    JSON-lines trace storage

    One StoredTrace per line, appended on write; cleanup rewrites the file.
    """

    def __init__(self, path: Path, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.path = Path(path)
        self.retention_days = retention_days
        self._lock = threading.RLock()
        self._ids: set = set()
        self._initialized = False

    def initialize(self) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
            self._initialized = True
            self._ids = {trace.id for trace in self._load()}

            removed = self.cleanup(self.retention_days)
            if removed:
                logger.info(f"Removed {removed} traces older than {self.retention_days} days")
        logger.info(f"JSON trace storage ready: {self.path}")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise StorageError("JSON trace storage is not initialized")

    def _load(self) -> List[StoredTrace]:
        traces = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    traces.append(StoredTrace.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping unreadable line {line_number} in {self.path}: {e}")
        return traces

    def store_trace(
        self,
        flow: ExecutionFlow,
        analytics: Analytics,
        stored_at: Optional[float] = None,
    ) -> StoredTrace:
        stored = StoredTrace.from_flow(flow, analytics, stored_at)
        line = json.dumps(stored.to_dict(), default=str)

        with self._lock:
            self._require_initialized()
            if stored.id in self._ids:
                raise StorageError(f"Trace already stored: {stored.id}")
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
            self._ids.add(stored.id)

        return stored

    def get_traces(self, filters: Optional[TraceFilters] = None) -> List[StoredTrace]:
        with self._lock:
            self._require_initialized()
            traces = self._load()
        return self._select(traces, filters)

    def get_storage_stats(self) -> StorageStats:
        with self._lock:
            self._require_initialized()
            traces = self._load()
            size = os.path.getsize(self.path)
        return self._stats(traces, size)

    def cleanup(self, retention_days: int) -> int:
        cutoff = time.time() - retention_days * SECONDS_PER_DAY

        with self._lock:
            self._require_initialized()
            traces = self._load()
            kept = [trace for trace in traces if trace.stored_at >= cutoff]
            removed = len(traces) - len(kept)
            if removed == 0:
                return 0

            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                for trace in kept:
                    f.write(json.dumps(trace.to_dict(), default=str) + "\n")
            os.replace(tmp_path, self.path)
            self._ids = {trace.id for trace in kept}

        return removed

    def is_available(self) -> bool:
        return self._initialized and self.path.exists()

    def close(self) -> None:
        with self._lock:
            self._initialized = False


class InMemoryTraceStorage(StorageBackend):
    """Process-memory trace storage (lost on exit)"""

    def __init__(self, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.retention_days = retention_days
        self._lock = threading.RLock()
        self._traces: Dict[str, StoredTrace] = {}
        self._initialized = False

    def initialize(self) -> None:
        with self._lock:
            self._initialized = True
            self.cleanup(self.retention_days)

    def store_trace(
        self,
        flow: ExecutionFlow,
        analytics: Analytics,
        stored_at: Optional[float] = None,
    ) -> StoredTrace:
        stored = StoredTrace.from_flow(flow, analytics, stored_at)
        with self._lock:
            if not self._initialized:
                raise StorageError("In-memory trace storage is not initialized")
            if stored.id in self._traces:
                raise StorageError(f"Trace already stored: {stored.id}")
            self._traces[stored.id] = stored
        return stored

    def get_traces(self, filters: Optional[TraceFilters] = None) -> List[StoredTrace]:
        with self._lock:
            traces = list(self._traces.values())
        return self._select(traces, filters)

    def get_storage_stats(self) -> StorageStats:
        with self._lock:
            traces = list(self._traces.values())
        return self._stats(traces, 0)

    def cleanup(self, retention_days: int) -> int:
        cutoff = time.time() - retention_days * SECONDS_PER_DAY
        with self._lock:
            expired = [trace_id for trace_id, trace in self._traces.items() if trace.stored_at < cutoff]
            for trace_id in expired:
                del self._traces[trace_id]
        return len(expired)

    def is_available(self) -> bool:
        return self._initialized

    def close(self) -> None:
        with self._lock:
            self._initialized = False


def create_storage_backend(config: Optional[StorageConfig] = None) -> StorageBackend:
    """
    Build the storage backend selected in configuration

    Raises:
        ValueError: Unsupported backend name
    """
    config = config or StorageConfig()
    backend = config.backend.lower()

    if backend == "sqlite":
        return SQLiteTraceStorage(Path(config.connection_string), retention_days=config.retention_days)
    if backend == "json":
        return JsonFileTraceStorage(Path(config.connection_string), retention_days=config.retention_days)
    if backend == "memory":
        return InMemoryTraceStorage(retention_days=config.retention_days)

    raise ValueError(f"Unsupported storage backend: {config.backend}")


__all__ = [
    "StorageStats",
    "StorageBackend",
    "SQLiteTraceStorage",
    "JsonFileTraceStorage",
    "InMemoryTraceStorage",
    "create_storage_backend",
]
