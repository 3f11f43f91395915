"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional

from ..contracts import ExecutionRecord, RunStatus, WorkflowRun
from ..errors import RunStateError
from .models import ExecutionQuery, apply_run_update, as_utc
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                definition_name TEXT NOT NULL,
                status TEXT NOT NULL,
                resource_type TEXT,
                resource_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL,
                skill_id TEXT NOT NULL,
                status TEXT NOT NULL,
                correlation_id TEXT,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_execution_log_record ON execution_log (record_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_workflow_runs_resource ON workflow_runs (resource_type, resource_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _update_run_sync(self, run_id: str, fields: dict[str, Any]) -> WorkflowRun:
        # read-modify-write under one lock so concurrent updates cannot interleave
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute("SELECT document FROM workflow_runs WHERE id = ?", (run_id,))
            row = cur.fetchone()
            if row is None:
                raise RunStateError(f"Run {run_id} not found")
            updated = apply_run_update(
                WorkflowRun.model_validate_json(row["document"]), fields
            )
            cur.execute(
                "UPDATE workflow_runs SET status = ?, updated_at = ?, document = ? WHERE id = ?",
                (
                    updated.status.value,
                    as_utc(updated.updated_at).isoformat(),
                    updated.model_dump_json(),
                    run_id,
                ),
            )
            self._conn.commit()
            return updated

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: WorkflowRun) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO workflow_runs (id, definition_name, status, resource_type, resource_id, created_at, updated_at, document) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                run.id,
                run.definition_name,
                run.status.value,
                run.resource_type,
                run.resource_id,
                as_utc(run.created_at).isoformat(),
                as_utc(run.updated_at).isoformat(),
                run.model_dump_json(),
            )
        except sqlite3.IntegrityError as e:
            raise RunStateError(f"Run {run.id} already exists") from e

    async def update_run(self, run_id: str, fields: dict[str, Any]) -> WorkflowRun:
        return await asyncio.to_thread(self._update_run_sync, run_id, fields)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM workflow_runs WHERE id = ?",
            run_id,
        )
        if not row:
            return None
        return WorkflowRun.model_validate_json(row["document"])

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> list[WorkflowRun]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        if definition_name is not None:
            clauses.append("definition_name = ?")
            params.append(definition_name)
        if resource_type is not None:
            clauses.append("resource_type = ?")
            params.append(resource_type)
        if resource_id is not None:
            clauses.append("resource_id = ?")
            params.append(resource_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT document FROM workflow_runs{where} ORDER BY created_at, rowid",
            *params,
        )
        return [WorkflowRun.model_validate_json(r["document"]) for r in rows]

    async def append_execution_record(self, record: ExecutionRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO execution_log (record_id, skill_id, status, correlation_id, created_at, document) VALUES (?, ?, ?, ?, ?, ?)",
            record.id,
            record.skill_id,
            record.status.value,
            record.correlation_id,
            as_utc(record.created_at).isoformat(),
            record.model_dump_json(),
        )

    async def query_execution_records(
        self, query: ExecutionQuery
    ) -> list[ExecutionRecord]:
        clauses = ["seq IN (SELECT MAX(seq) FROM execution_log GROUP BY record_id)"]
        params: list[Any] = []
        if query.record_id is not None:
            clauses.append("record_id = ?")
            params.append(query.record_id)
        if query.skill_id is not None:
            clauses.append("skill_id = ?")
            params.append(query.skill_id)
        if query.status is not None:
            clauses.append("status = ?")
            params.append(query.status.value)
        if query.correlation_id is not None:
            clauses.append("correlation_id = ?")
            params.append(query.correlation_id)
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document FROM execution_log WHERE "
            + " AND ".join(clauses)
            + " ORDER BY (SELECT MIN(seq) FROM execution_log AS origin WHERE origin.record_id = execution_log.record_id)",
            *params,
        )
        records = [ExecutionRecord.model_validate_json(r["document"]) for r in rows]
        # date range and limit are applied in Python to keep timestamp handling in one place
        return query.apply(records)
