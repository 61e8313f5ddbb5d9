"""Flow persistence boundary.

The store treats persistence as atomic replace-all: ``save_flows`` writes
the complete flow list, ``load_flows`` returns it. Run-time fields
(status, logs) are never stored.

Implementations
---------------
InMemoryFlowRepository   dict records, for tests and ephemeral sessions
SqliteFlowRepository     stdlib sqlite3; blocking calls run in a worker thread
"""

from __future__ import annotations

import asyncio
import copy
import json
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from flowsync.core.logging import get_logger
from flowsync.flows.models import Flow, flow_from_record, flow_to_record

logger = get_logger(__name__)

__all__ = ["FlowRepository", "InMemoryFlowRepository", "SqliteFlowRepository"]


@runtime_checkable
class FlowRepository(Protocol):
    async def load_flows(self) -> list[Flow]:
        ...

    async def save_flows(self, flows: Sequence[Flow]) -> None:
        ...


class InMemoryFlowRepository:
    """Keeps serialized records, so loads never share objects with the store."""

    def __init__(self, flows: Sequence[Flow] = ()) -> None:
        self._records: list[dict[str, Any]] = [flow_to_record(flow) for flow in flows]
        self.save_count = 0
        self.load_count = 0

    async def load_flows(self) -> list[Flow]:
        self.load_count += 1
        return [flow_from_record(record) for record in copy.deepcopy(self._records)]

    async def save_flows(self, flows: Sequence[Flow]) -> None:
        self._records = [flow_to_record(flow) for flow in flows]
        self.save_count += 1

    @property
    def records(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._records)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS flows (
    id TEXT PRIMARY KEY,
    name TEXT,
    is_collapsed INTEGER NOT NULL DEFAULT 0,
    schedule_enabled INTEGER NOT NULL DEFAULT 0,
    cron_expr TEXT,
    sort_order INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS operations (
    id TEXT PRIMARY KEY,
    flow_id TEXT NOT NULL REFERENCES flows(id) ON DELETE CASCADE,
    source_remote TEXT NOT NULL DEFAULT '',
    source_path TEXT NOT NULL DEFAULT '/',
    target_remote TEXT NOT NULL DEFAULT '',
    target_path TEXT NOT NULL DEFAULT '/',
    action TEXT NOT NULL DEFAULT 'push',
    sync_config TEXT NOT NULL DEFAULT '{}',
    is_expanded INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_operations_flow ON operations(flow_id, sort_order);
"""


class SqliteFlowRepository:
    """SQLite-backed flow storage.

    ``flows`` and ``operations`` rows carry a ``sort_order`` column so the
    user's ordering survives a reload. The sync config is stored as JSON.
    """

    def __init__(self, path: str = ":memory:", *, timeout: float = 5.0) -> None:
        self._path = path
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        if self._conn is None:
            uri = self._path.startswith("file:")
            self._conn = sqlite3.connect(
                self._path,
                timeout=self._timeout,
                check_same_thread=False,
                uri=uri,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(_SCHEMA)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    async def load_flows(self) -> list[Flow]:
        return await asyncio.to_thread(self._load)

    async def save_flows(self, flows: Sequence[Flow]) -> None:
        await asyncio.to_thread(self._save, list(flows))

    def _load(self) -> list[Flow]:
        with self._lock:
            conn = self.connect()
            flow_rows = conn.execute(
                "SELECT id, name, is_collapsed, schedule_enabled, cron_expr "
                "FROM flows ORDER BY sort_order"
            ).fetchall()
            op_rows = conn.execute(
                "SELECT id, flow_id, source_remote, source_path, target_remote, target_path, "
                "action, sync_config, is_expanded FROM operations ORDER BY flow_id, sort_order"
            ).fetchall()

        ops_by_flow: dict[str, list[dict[str, Any]]] = {}
        for row in op_rows:
            config = json.loads(row["sync_config"] or "{}")
            config.setdefault("action", row["action"])
            ops_by_flow.setdefault(row["flow_id"], []).append({
                "id": row["id"],
                "source_remote": row["source_remote"],
                "source_path": row["source_path"],
                "target_remote": row["target_remote"],
                "target_path": row["target_path"],
                "sync_config": config,
                "is_expanded": bool(row["is_expanded"]),
            })

        flows = [
            flow_from_record({
                "id": row["id"],
                "name": row["name"],
                "is_collapsed": bool(row["is_collapsed"]),
                "schedule_enabled": bool(row["schedule_enabled"]),
                "cron_expr": row["cron_expr"],
                "operations": ops_by_flow.get(row["id"], []),
            })
            for row in flow_rows
        ]
        logger.debug("repository.loaded", flows=len(flows))
        return flows

    def _save(self, flows: list[Flow]) -> None:
        now = datetime.now(UTC).isoformat()
        with self._lock, self.transaction() as conn:
            created = {
                row["id"]: row["created_at"]
                for row in conn.execute("SELECT id, created_at FROM flows").fetchall()
            }
            conn.execute("DELETE FROM operations")
            conn.execute("DELETE FROM flows")
            for flow_order, flow in enumerate(flows):
                record = flow_to_record(flow)
                conn.execute(
                    "INSERT INTO flows (id, name, is_collapsed, schedule_enabled, cron_expr, "
                    "sort_order, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record["id"],
                        record["name"],
                        int(record["is_collapsed"]),
                        int(record["schedule_enabled"]),
                        record["cron_expr"],
                        flow_order,
                        created.get(record["id"], now),
                        now,
                    ),
                )
                for op_order, op in enumerate(record["operations"]):
                    conn.execute(
                        "INSERT INTO operations (id, flow_id, source_remote, source_path, "
                        "target_remote, target_path, action, sync_config, is_expanded, sort_order) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            op["id"],
                            record["id"],
                            op["source_remote"],
                            op["source_path"],
                            op["target_remote"],
                            op["target_path"],
                            op["sync_config"]["action"],
                            json.dumps(op["sync_config"]),
                            int(op["is_expanded"]),
                            op_order,
                        ),
                    )
        logger.debug("repository.saved", flows=len(flows))
