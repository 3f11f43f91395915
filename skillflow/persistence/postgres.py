"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Optional

import asyncpg

from ..contracts import ExecutionRecord, RunStatus, WorkflowRun
from ..errors import RunStateError
from .models import ExecutionQuery, apply_run_update, as_utc
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                definition_name TEXT NOT NULL,
                status TEXT NOT NULL,
                resource_type TEXT,
                resource_id TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_log (
                seq BIGSERIAL PRIMARY KEY,
                record_id TEXT NOT NULL,
                skill_id TEXT NOT NULL,
                status TEXT NOT NULL,
                correlation_id TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_execution_log_record ON execution_log (record_id)"
        )
        # tables created before runs were linked to resources
        await conn.execute(
            "ALTER TABLE workflow_runs ADD COLUMN IF NOT EXISTS resource_type TEXT, "
            "ADD COLUMN IF NOT EXISTS resource_id TEXT"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_workflow_runs_resource ON workflow_runs (resource_type, resource_id)"
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO workflow_runs (id, definition_name, status, resource_type, resource_id, created_at, updated_at, document) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                run.id,
                run.definition_name,
                run.status.value,
                run.resource_type,
                run.resource_id,
                run.created_at,
                run.updated_at,
                run.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as e:
            raise RunStateError(f"Run {run.id} already exists") from e
        finally:
            await conn.close()

    async def update_run(self, run_id: str, fields: dict[str, Any]) -> WorkflowRun:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT document FROM workflow_runs WHERE id = $1 FOR UPDATE",
                    run_id,
                )
                if not row:
                    raise RunStateError(f"Run {run_id} not found")
                updated = apply_run_update(_load_run(row["document"]), fields)
                await conn.execute(
                    "UPDATE workflow_runs SET status = $1, updated_at = $2, document = $3 WHERE id = $4",
                    updated.status.value,
                    updated.updated_at,
                    updated.model_dump_json(),
                    run_id,
                )
        finally:
            await conn.close()
        return updated

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM workflow_runs WHERE id = $1", run_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return _load_run(row["document"])

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
            params.append(RunStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        if definition_name is not None:
            params.append(definition_name)
            clauses.append(f"definition_name = ${len(params)}")
        if resource_type is not None:
            params.append(resource_type)
            clauses.append(f"resource_type = ${len(params)}")
        if resource_id is not None:
            params.append(resource_id)
            clauses.append(f"resource_id = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT document FROM workflow_runs{where} ORDER BY created_at",
                *params,
            )
        finally:
            await conn.close()
        return [_load_run(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    async def append_execution_record(self, record: ExecutionRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO execution_log (record_id, skill_id, status, correlation_id, created_at, document) VALUES ($1, $2, $3, $4, $5, $6)",
                record.id,
                record.skill_id,
                record.status.value,
                record.correlation_id,
                record.created_at,
                record.model_dump_json(),
            )
        finally:
            await conn.close()

    async def query_execution_records(
        self, query: ExecutionQuery
    ) -> list[ExecutionRecord]:
        clauses = ["seq IN (SELECT MAX(seq) FROM execution_log GROUP BY record_id)"]
        params: list[Any] = []
        for column, value in (
            ("record_id", query.record_id),
            ("skill_id", query.skill_id),
            ("status", query.status.value if query.status else None),
            ("correlation_id", query.correlation_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        if query.since is not None:
            params.append(as_utc(query.since))
            clauses.append(f"created_at >= ${len(params)}")
        if query.until is not None:
            params.append(as_utc(query.until))
            clauses.append(f"created_at <= ${len(params)}")
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document FROM execution_log WHERE "
                + " AND ".join(clauses)
                + " ORDER BY created_at, record_id",
                *params,
            )
        finally:
            await conn.close()
        records = [_load_record(r["document"]) for r in rows]
        return query.apply(records)


def _load_run(document: Any) -> WorkflowRun:
    if isinstance(document, str):
        return WorkflowRun.model_validate_json(document)
    return WorkflowRun.model_validate(document)


def _load_record(document: Any) -> ExecutionRecord:
    if isinstance(document, str):
        return ExecutionRecord.model_validate_json(document)
    return ExecutionRecord.model_validate(document)
