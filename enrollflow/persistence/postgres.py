"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

import asyncpg

from ..contracts import (
    ExecutionData,
    WorkflowEnrollment,
    WorkflowExecution,
    WorkflowExecutionLog,
)
from ..workflow import Workflow
from .repository import (
    REPLY_STATUSES,
    WorkflowRepository,
    check_execution_fields,
    new_claim_token,
)

_ENROLLMENT_COLUMNS = (
    "id, workflow_id, contact_id, status, enrolled_at, completed_at, stopped_at, "
    "stop_reason, parent_enrollment_id, parent_execution_id, parent_node_id, "
    "call_depth, input_data"
)
_EXECUTION_COLUMNS = (
    "id, enrollment_id, current_node_id, status, next_run_at, last_run_at, "
    "attempts, max_attempts, error_message, claim_token, execution_data"
)


def _json(value: Any) -> Any:
    """asyncpg returns jsonb as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist engine state using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                definition JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                enrolled_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                stopped_at TIMESTAMPTZ,
                stop_reason TEXT,
                parent_enrollment_id TEXT,
                parent_execution_id TEXT,
                parent_node_id TEXT,
                call_depth INTEGER NOT NULL DEFAULT 0,
                input_data JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                enrollment_id TEXT NOT NULL UNIQUE,
                current_node_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_run_at TIMESTAMPTZ,
                last_run_at TIMESTAMPTZ,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                error_message TEXT,
                claim_token TEXT,
                execution_data JSONB NOT NULL DEFAULT '{}'::jsonb
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_execution_logs (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL,
                execution_id TEXT NOT NULL,
                enrollment_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                node_type TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                input_data JSONB,
                output_data JSONB,
                error_message TEXT,
                duration_ms INTEGER,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "ALTER TABLE workflow_executions ADD COLUMN IF NOT EXISTS claim_token TEXT"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_due ON workflow_executions (status, next_run_at)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_workflow_contact ON workflow_enrollments (workflow_id, contact_id, status)"
        )

    @staticmethod
    def _enrollment(row: asyncpg.Record) -> WorkflowEnrollment:
        data = dict(row)
        data["input_data"] = _json(data.get("input_data")) or {}
        return WorkflowEnrollment(**data)

    @staticmethod
    def _execution(row: asyncpg.Record) -> WorkflowExecution:
        data = dict(row)
        data["execution_data"] = ExecutionData.model_validate(
            _json(data.get("execution_data")) or {}
        )
        return WorkflowExecution(**data)

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (id, definition) VALUES ($1, $2::jsonb)
                ON CONFLICT (id) DO UPDATE SET definition = EXCLUDED.definition
                """,
                workflow.id,
                workflow.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT definition FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return Workflow.model_validate(_json(row["definition"])) if row else None

    async def list_workflows(self) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT definition FROM workflows ORDER BY id")
        finally:
            await conn.close()
        return [Workflow.model_validate(_json(r["definition"])) for r in rows]

    # ------------------------------------------------------------------
    async def create_enrollment(
        self,
        enrollment: WorkflowEnrollment,
        execution: WorkflowExecution,
        *,
        unique_active: bool = True,
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if unique_active:
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1 || ':' || $2))",
                        enrollment.workflow_id,
                        enrollment.contact_id,
                    )
                    existing = await conn.fetchval(
                        "SELECT 1 FROM workflow_enrollments WHERE workflow_id = $1 AND contact_id = $2 AND status = 'active'",
                        enrollment.workflow_id,
                        enrollment.contact_id,
                    )
                    if existing:
                        return False
                await conn.execute(
                    f"""
                    INSERT INTO workflow_enrollments ({_ENROLLMENT_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb)
                    """,
                    enrollment.id,
                    enrollment.workflow_id,
                    enrollment.contact_id,
                    enrollment.status,
                    enrollment.enrolled_at,
                    enrollment.completed_at,
                    enrollment.stopped_at,
                    enrollment.stop_reason,
                    enrollment.parent_enrollment_id,
                    enrollment.parent_execution_id,
                    enrollment.parent_node_id,
                    enrollment.call_depth,
                    json.dumps(enrollment.input_data, default=str),
                )
                await conn.execute(
                    f"""
                    INSERT INTO workflow_executions ({_EXECUTION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
                    """,
                    execution.id,
                    execution.enrollment_id,
                    execution.current_node_id,
                    execution.status,
                    execution.next_run_at,
                    execution.last_run_at,
                    execution.attempts,
                    execution.max_attempts,
                    execution.error_message,
                    execution.claim_token,
                    execution.execution_data.model_dump_json(),
                )
            return True
        finally:
            await conn.close()

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_ENROLLMENT_COLUMNS} FROM workflow_enrollments WHERE id = $1",
                enrollment_id,
            )
        finally:
            await conn.close()
        return self._enrollment(row) if row else None

    async def find_active_enrollment(
        self, workflow_id: str, contact_id: str
    ) -> WorkflowEnrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                SELECT {_ENROLLMENT_COLUMNS} FROM workflow_enrollments
                WHERE workflow_id = $1 AND contact_id = $2 AND status = 'active'
                """,
                workflow_id,
                contact_id,
            )
        finally:
            await conn.close()
        return self._enrollment(row) if row else None

    async def list_enrollments(
        self,
        *,
        workflow_id: str | None = None,
        contact_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[WorkflowEnrollment]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if contact_id is not None:
            params.append(contact_id)
            clauses.append(f"contact_id = ${len(params)}")
        if statuses is not None:
            params.append(list(statuses))
            clauses.append(f"status = ANY(${len(params)}::text[])")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_ENROLLMENT_COLUMNS} FROM workflow_enrollments{where} ORDER BY enrolled_at",
                *params,
            )
        finally:
            await conn.close()
        return [self._enrollment(r) for r in rows]

    async def count_enrollments(self, workflow_id: str) -> dict[str, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM workflow_enrollments WHERE workflow_id = $1 GROUP BY status",
                workflow_id,
            )
        finally:
            await conn.close()
        return {r["status"]: r["n"] for r in rows}

    async def update_enrollment_status(
        self,
        enrollment_id: str,
        status: str,
        *,
        from_statuses: Iterable[str],
        at: datetime,
        reason: str | None = None,
    ) -> bool:
        if status == "completed":
            assignments, values = "status = $3, completed_at = $4", [status, at]
        elif status in ("stopped", "failed"):
            assignments = "status = $3, stopped_at = $4, stop_reason = $5"
            values = [status, at, reason]
        else:
            assignments, values = "status = $3", [status]
        conn = await self._connect()
        try:
            result = await conn.execute(
                f"UPDATE workflow_enrollments SET {assignments} WHERE id = $1 AND status = ANY($2::text[])",
                enrollment_id,
                list(from_statuses),
                *values,
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    # ------------------------------------------------------------------
    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return self._execution(row) if row else None

    async def get_execution_for_enrollment(
        self, enrollment_id: str
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE enrollment_id = $1",
                enrollment_id,
            )
        finally:
            await conn.close()
        return self._execution(row) if row else None

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        columns = ", ".join(f"x.{c.strip()}" for c in _EXECUTION_COLUMNS.split(","))
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {columns} FROM workflow_executions x
                JOIN workflow_enrollments e ON e.id = x.enrollment_id
                WHERE x.status = 'waiting' AND e.status = 'active'
                  AND (x.next_run_at IS NULL OR x.next_run_at <= $1)
                ORDER BY x.next_run_at NULLS FIRST
                LIMIT $2
                """,
                now,
                limit,
            )
        finally:
            await conn.close()
        return [self._execution(r) for r in rows]

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE workflow_executions
                SET status = 'processing', attempts = attempts + 1, last_run_at = $2, claim_token = $3
                WHERE id = $1 AND status = 'waiting'
                RETURNING {_EXECUTION_COLUMNS}
                """,
                execution_id,
                now,
                new_claim_token(),
            )
        finally:
            await conn.close()
        return self._execution(row) if row else None

    async def update_execution(
        self,
        execution_id: str,
        *,
        expected_status: str | None = None,
        expected_node_id: str | None = None,
        expected_claim_token: str | None = None,
        execution_data_patch: dict[str, Any] | None = None,
        **fields: Any,
    ) -> bool:
        check_execution_fields(fields)
        params: list[Any] = [execution_id]
        assignments: list[str] = []
        for key, value in fields.items():
            params.append(value)
            assignments.append(f"{key} = ${len(params)}")
        if execution_data_patch:
            params.append(json.dumps(execution_data_patch, default=str))
            assignments.append(
                f"execution_data = COALESCE(execution_data, '{{}}'::jsonb) || ${len(params)}::jsonb"
            )
        if not assignments:
            # Nothing to write; still report whether the guard holds.
            assignments.append("id = id")
        where = "id = $1"
        if expected_status is not None:
            params.append(expected_status)
            where += f" AND status = ${len(params)}"
        if expected_node_id is not None:
            params.append(expected_node_id)
            where += f" AND current_node_id = ${len(params)}"
        if expected_claim_token is not None:
            params.append(expected_claim_token)
            where += f" AND claim_token = ${len(params)}"
        conn = await self._connect()
        try:
            result = await conn.execute(
                f"UPDATE workflow_executions SET {', '.join(assignments)} WHERE {where}",
                *params,
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    async def record_reply(
        self, execution_id: str, channel: str, received_at: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            # GREATEST skips NULL, so a first reply is stored as is.
            result = await conn.execute(
                """
                UPDATE workflow_executions
                SET execution_data = jsonb_set(
                    COALESCE(execution_data, '{}'::jsonb) || jsonb_build_object(
                        'replies', COALESCE(execution_data->'replies', '{}'::jsonb),
                        'stopped_by_reply', true,
                        'reply_channel', $2::text
                    ),
                    ARRAY['replies', $2::text],
                    to_jsonb(GREATEST((execution_data->'replies'->>$2::text)::timestamptz, $3::timestamptz))
                )
                WHERE id = $1 AND status = ANY($4::text[])
                """,
                execution_id,
                channel,
                received_at,
                list(REPLY_STATUSES),
            )
        finally:
            await conn.close()
        return result.endswith(" 1")

    async def release_stale_claims(self, older_than: datetime) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_executions SET status = 'waiting', claim_token = NULL WHERE status = 'processing' AND last_run_at < $1",
                older_than,
            )
        finally:
            await conn.close()
        return int(result.split()[-1])

    # ------------------------------------------------------------------
    async def append_log(self, log: WorkflowExecutionLog) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_execution_logs
                    (id, execution_id, enrollment_id, node_id, node_type, action, status,
                     input_data, output_data, error_message, duration_ms, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11, $12)
                """,
                log.id,
                log.execution_id,
                log.enrollment_id,
                log.node_id,
                log.node_type,
                log.action,
                log.status,
                json.dumps(log.input_data, default=str) if log.input_data is not None else None,
                json.dumps(log.output_data, default=str) if log.output_data is not None else None,
                log.error_message,
                log.duration_ms,
                log.created_at,
            )
        finally:
            await conn.close()

    async def list_logs(
        self, *, execution_id: str | None = None, enrollment_id: str | None = None
    ) -> list[WorkflowExecutionLog]:
        clauses: list[str] = []
        params: list[Any] = []
        if execution_id is not None:
            params.append(execution_id)
            clauses.append(f"execution_id = ${len(params)}")
        if enrollment_id is not None:
            params.append(enrollment_id)
            clauses.append(f"enrollment_id = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT id, execution_id, enrollment_id, node_id, node_type, action, status,
                       input_data, output_data, error_message, duration_ms, created_at
                FROM workflow_execution_logs{where} ORDER BY seq
                """,
                *params,
            )
        finally:
            await conn.close()
        logs = []
        for r in rows:
            data = dict(r)
            data["input_data"] = _json(data["input_data"])
            data["output_data"] = _json(data["output_data"])
            logs.append(WorkflowExecutionLog(**data))
        return logs
