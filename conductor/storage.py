"""SQLite 기반 영속 스토리지 헬퍼."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import CatalogPersistError
from .models import CatalogEntry, JobKind, JobRecord, JobStatus, NodeMetadata

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    node_id TEXT NOT NULL,
    status TEXT NOT NULL,
    options TEXT,
    context TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS nodes (
    node_id TEXT PRIMARY KEY,
    display_name TEXT,
    status TEXT NOT NULL,
    last_seen TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS catalogs (
    catalog_id INTEGER PRIMARY KEY AUTOINCREMENT,
    node_id TEXT NOT NULL,
    source TEXT NOT NULL,
    data TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_catalogs_node_source ON catalogs (node_id, source);
"""

_TERMINAL_STATUSES = {JobStatus.SUCCEEDED, JobStatus.FAILED}


class Storage:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._bootstrap()

    def close(self) -> None:
        self._conn.close()

    def _bootstrap(self) -> None:
        with self._conn:
            self._conn.executescript(_DB_SCHEMA)

    # Job CRUD ------------------------------------------------------------

    def upsert_job(self, job: JobRecord) -> None:
        payload = {
            "job_id": job.job_id,
            "kind": job.kind.value,
            "node_id": job.node_id,
            "status": job.status.value,
            "options": json.dumps(job.options),
            "context": json.dumps(job.context),
            "error_message": job.error_message,
            "created_at": job.created_at.isoformat(),
            "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        }
        columns = ", ".join(payload.keys())
        placeholders = ", ".join([":" + key for key in payload.keys()])
        update_clause = ", ".join([f"{key}=excluded.{key}" for key in payload.keys() if key != "job_id"])
        sql = f"""
        INSERT INTO jobs ({columns})
        VALUES ({placeholders})
        ON CONFLICT(job_id) DO UPDATE SET {update_clause}
        """
        with self._conn:
            self._conn.execute(sql, payload)

    def get_job(self, job_id: str) -> JobRecord | None:
        row = self._conn.execute("SELECT * FROM jobs WHERE job_id=?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, limit: int = 50, status: JobStatus | None = None) -> list[JobRecord]:
        sql = "SELECT * FROM jobs"
        params: list[object] = []
        if status is not None:
            sql += " WHERE status=?"
            params.append(status.value)
        sql += " ORDER BY datetime(created_at) DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def update_job_status(self, job_id: str, status: JobStatus, *, error_message: str | None = None) -> None:
        updates = ["status = :status"]
        params: dict[str, object] = {"job_id": job_id, "status": status.value}
        if error_message is not None:
            updates.append("error_message = :error_message")
            params["error_message"] = error_message
        if status in _TERMINAL_STATUSES:
            updates.append("finished_at = :finished_at")
            params["finished_at"] = datetime.utcnow().isoformat()

        sql = f"UPDATE jobs SET {' , '.join(updates)} WHERE job_id=:job_id"
        with self._conn:
            self._conn.execute(sql, params)

    # Node metadata --------------------------------------------------------

    def upsert_node(self, node: NodeMetadata) -> None:
        payload = {
            "node_id": node.node_id,
            "display_name": node.display_name,
            "status": node.status,
            "last_seen": node.last_seen.isoformat(),
        }
        columns = ", ".join(payload.keys())
        placeholders = ", ".join([":" + key for key in payload.keys()])
        update_clause = ", ".join([f"{key}=excluded.{key}" for key in payload.keys() if key != "node_id"])
        sql = f"""
        INSERT INTO nodes ({columns})
        VALUES ({placeholders})
        ON CONFLICT(node_id) DO UPDATE SET {update_clause}
        """
        with self._conn:
            self._conn.execute(sql, payload)

    def list_nodes(self) -> list[NodeMetadata]:
        rows = self._conn.execute("SELECT * FROM nodes ORDER BY node_id").fetchall()
        return [self._row_to_node(row) for row in rows]

    # Catalogs -------------------------------------------------------------

    def insert_catalog(self, entry: CatalogEntry) -> int:
        sql = """
        INSERT INTO catalogs (node_id, source, data, created_at)
        VALUES (:node_id, :source, :data, :created_at)
        """
        payload = {
            "node_id": entry.node,
            "source": entry.source,
            "data": json.dumps(entry.data),
            "created_at": datetime.utcnow().isoformat(),
        }
        with self._conn:
            cursor = self._conn.execute(sql, payload)
        return int(cursor.lastrowid)

    def list_catalogs(
        self,
        node_id: str | None = None,
        *,
        source: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM catalogs"
        clauses: list[str] = []
        params: list[object] = []
        if node_id is not None:
            clauses.append("node_id=?")
            params.append(node_id)
        if source is not None:
            clauses.append("source=?")
            params.append(source)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY catalog_id ASC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_catalog(row) for row in rows]

    def _row_to_job(self, row: sqlite3.Row) -> JobRecord:
        return JobRecord(
            job_id=row["job_id"],
            kind=JobKind(row["kind"]),
            node_id=row["node_id"],
            status=JobStatus(row["status"]),
            options=json.loads(row["options"]) if row["options"] else {},
            context=json.loads(row["context"]) if row["context"] else {},
            error_message=row["error_message"],
            created_at=datetime.fromisoformat(row["created_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
        )

    def _row_to_node(self, row: sqlite3.Row) -> NodeMetadata:
        return NodeMetadata(
            node_id=row["node_id"],
            display_name=row["display_name"],
            status=row["status"],
            last_seen=datetime.fromisoformat(row["last_seen"]),
        )

    def _row_to_catalog(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "catalog_id": row["catalog_id"],
            "node_id": row["node_id"],
            "source": row["source"],
            "data": json.loads(row["data"]) if row["data"] is not None else None,
            "created_at": row["created_at"],
        }


class SqliteCatalogStore:
    """``Storage`` 를 작업이 사용하는 카탈로그 저장소 계약에 맞춘다."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def create(self, entry: CatalogEntry) -> int:
        try:
            return self._storage.insert_catalog(entry)
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise CatalogPersistError(
                f"failed to store catalog {entry.source} for node {entry.node}: {exc}",
                node_id=entry.node,
            ) from exc


def init_storage(db_path: str | Path) -> Storage:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return Storage(path)
