"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

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


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist engine state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # One connection is shared by worker threads; serialise statements.
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                definition TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS workflow_enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                enrolled_at TEXT NOT NULL,
                completed_at TEXT,
                stopped_at TEXT,
                stop_reason TEXT,
                parent_enrollment_id TEXT,
                parent_execution_id TEXT,
                parent_node_id TEXT,
                call_depth INTEGER NOT NULL DEFAULT 0,
                input_data TEXT
            );
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                enrollment_id TEXT NOT NULL UNIQUE,
                current_node_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_run_at TEXT,
                last_run_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                error_message TEXT,
                claim_token TEXT,
                execution_data TEXT
            );
            CREATE TABLE IF NOT EXISTS workflow_execution_logs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                execution_id TEXT NOT NULL,
                enrollment_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                node_type TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                input_data TEXT,
                output_data TEXT,
                error_message TEXT,
                duration_ms INTEGER,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_enrollments_workflow_contact
                ON workflow_enrollments(workflow_id, contact_id, status);
            CREATE INDEX IF NOT EXISTS idx_executions_due
                ON workflow_executions(status, next_run_at);
            """
        )
        columns = {row["name"] for row in cur.execute("PRAGMA table_info(workflow_executions)")}
        if "claim_token" not in columns:
            cur.execute("ALTER TABLE workflow_executions ADD COLUMN claim_token TEXT")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _enrollment(row: sqlite3.Row) -> WorkflowEnrollment:
        return WorkflowEnrollment(
            id=row["id"],
            workflow_id=row["workflow_id"],
            contact_id=row["contact_id"],
            status=row["status"],
            enrolled_at=_dt(row["enrolled_at"]),
            completed_at=_dt(row["completed_at"]),
            stopped_at=_dt(row["stopped_at"]),
            stop_reason=row["stop_reason"],
            parent_enrollment_id=row["parent_enrollment_id"],
            parent_execution_id=row["parent_execution_id"],
            parent_node_id=row["parent_node_id"],
            call_depth=row["call_depth"],
            input_data=json.loads(row["input_data"]) if row["input_data"] else {},
        )

    @staticmethod
    def _execution(row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            enrollment_id=row["enrollment_id"],
            current_node_id=row["current_node_id"],
            status=row["status"],
            next_run_at=_dt(row["next_run_at"]),
            last_run_at=_dt(row["last_run_at"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error_message=row["error_message"],
            claim_token=row["claim_token"],
            execution_data=ExecutionData.model_validate(
                json.loads(row["execution_data"]) if row["execution_data"] else {}
            ),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, definition) VALUES (?, ?)",
            workflow.id,
            workflow.model_dump_json(),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT definition FROM workflows WHERE id = ?", workflow_id
        )
        return Workflow.model_validate_json(row["definition"]) if row else None

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT definition FROM workflows ORDER BY id"
        )
        return [Workflow.model_validate_json(r["definition"]) for r in rows]

    # ------------------------------------------------------------------
    # Enrollments
    def _create_enrollment_sync(
        self,
        enrollment: WorkflowEnrollment,
        execution: WorkflowExecution,
        unique_active: bool,
    ) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                if unique_active:
                    cur.execute(
                        "SELECT 1 FROM workflow_enrollments WHERE workflow_id = ? AND contact_id = ? AND status = 'active'",
                        (enrollment.workflow_id, enrollment.contact_id),
                    )
                    if cur.fetchone():
                        self._conn.rollback()
                        return False
                cur.execute(
                    f"INSERT INTO workflow_enrollments ({_ENROLLMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        enrollment.id,
                        enrollment.workflow_id,
                        enrollment.contact_id,
                        enrollment.status,
                        _ts(enrollment.enrolled_at),
                        _ts(enrollment.completed_at),
                        _ts(enrollment.stopped_at),
                        enrollment.stop_reason,
                        enrollment.parent_enrollment_id,
                        enrollment.parent_execution_id,
                        enrollment.parent_node_id,
                        enrollment.call_depth,
                        json.dumps(enrollment.input_data, default=str),
                    ),
                )
                cur.execute(
                    f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        execution.id,
                        execution.enrollment_id,
                        execution.current_node_id,
                        execution.status,
                        _ts(execution.next_run_at),
                        _ts(execution.last_run_at),
                        execution.attempts,
                        execution.max_attempts,
                        execution.error_message,
                        execution.claim_token,
                        execution.execution_data.model_dump_json(),
                    ),
                )
                self._conn.commit()
                return True
            except Exception:
                self._conn.rollback()
                raise

    async def create_enrollment(
        self,
        enrollment: WorkflowEnrollment,
        execution: WorkflowExecution,
        *,
        unique_active: bool = True,
    ) -> bool:
        return await asyncio.to_thread(
            self._create_enrollment_sync, enrollment, execution, unique_active
        )

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM workflow_enrollments WHERE id = ?",
            enrollment_id,
        )
        return self._enrollment(row) if row else None

    async def find_active_enrollment(
        self, workflow_id: str, contact_id: str
    ) -> WorkflowEnrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM workflow_enrollments WHERE workflow_id = ? AND contact_id = ? AND status = 'active'",
            workflow_id,
            contact_id,
        )
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
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if contact_id is not None:
            clauses.append("contact_id = ?")
            params.append(contact_id)
        if statuses is not None:
            wanted = list(statuses)
            if not wanted:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM workflow_enrollments{where} ORDER BY enrolled_at",
            *params,
        )
        return [self._enrollment(r) for r in rows]

    async def count_enrollments(self, workflow_id: str) -> dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT status, COUNT(*) AS n FROM workflow_enrollments WHERE workflow_id = ? GROUP BY status",
            workflow_id,
        )
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
        allowed = list(from_statuses)
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        if status == "completed":
            assignments, values = "status = ?, completed_at = ?", [status, _ts(at)]
        elif status in ("stopped", "failed"):
            assignments = "status = ?, stopped_at = ?, stop_reason = ?"
            values = [status, _ts(at), reason]
        else:
            assignments, values = "status = ?", [status]
        rowcount = await asyncio.to_thread(
            self._execute,
            f"UPDATE workflow_enrollments SET {assignments} WHERE id = ? AND status IN ({placeholders})",
            *values,
            enrollment_id,
            *allowed,
        )
        return rowcount == 1

    # ------------------------------------------------------------------
    # Executions
    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        return self._execution(row) if row else None

    async def get_execution_for_enrollment(
        self, enrollment_id: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE enrollment_id = ?",
            enrollment_id,
        )
        return self._execution(row) if row else None

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        columns = ", ".join(f"x.{c.strip()}" for c in _EXECUTION_COLUMNS.split(","))
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {columns} FROM workflow_executions x
            JOIN workflow_enrollments e ON e.id = x.enrollment_id
            WHERE x.status = 'waiting' AND e.status = 'active'
              AND (x.next_run_at IS NULL OR x.next_run_at <= ?)
            ORDER BY x.next_run_at
            LIMIT ?
            """,
            _ts(now),
            limit,
        )
        return [self._execution(r) for r in rows]

    def _claim_sync(self, execution_id: str, now: datetime) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE workflow_executions SET status = 'processing', attempts = attempts + 1, last_run_at = ?, claim_token = ? WHERE id = ? AND status = 'waiting'",
                (_ts(now), new_claim_token(), execution_id),
            )
            self._conn.commit()
            if cur.rowcount != 1:
                return None
            cur.execute(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = ?",
                (execution_id,),
            )
            return cur.fetchone()

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(self._claim_sync, execution_id, now)
        return self._execution(row) if row else None

    def _update_execution_sync(
        self,
        execution_id: str,
        expected_status: str | None,
        expected_node_id: str | None,
        expected_claim_token: str | None,
        patch: dict[str, Any] | None,
        fields: dict[str, Any],
    ) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                cur.execute(
                    "SELECT status, current_node_id, claim_token, execution_data FROM workflow_executions WHERE id = ?",
                    (execution_id,),
                )
                row = cur.fetchone()
                if (
                    row is None
                    or (expected_status is not None and row["status"] != expected_status)
                    or (
                        expected_node_id is not None
                        and row["current_node_id"] != expected_node_id
                    )
                    or (
                        expected_claim_token is not None
                        and row["claim_token"] != expected_claim_token
                    )
                ):
                    self._conn.rollback()
                    return False
                columns = {
                    key: _ts(value) if isinstance(value, datetime) else value
                    for key, value in fields.items()
                }
                if patch:
                    data = json.loads(row["execution_data"]) if row["execution_data"] else {}
                    data.update(patch)
                    columns["execution_data"] = json.dumps(data, default=str)
                if columns:
                    assignments = ", ".join(f"{key} = ?" for key in columns)
                    cur.execute(
                        f"UPDATE workflow_executions SET {assignments} WHERE id = ?",
                        (*columns.values(), execution_id),
                    )
                self._conn.commit()
                return True
            except Exception:
                self._conn.rollback()
                raise

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
        return await asyncio.to_thread(
            self._update_execution_sync,
            execution_id,
            expected_status,
            expected_node_id,
            expected_claim_token,
            execution_data_patch,
            fields,
        )

    def _record_reply_sync(
        self, execution_id: str, channel: str, received_at: datetime
    ) -> bool:
        placeholders = ", ".join("?" for _ in REPLY_STATUSES)
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                cur.execute(
                    f"SELECT execution_data FROM workflow_executions WHERE id = ? AND status IN ({placeholders})",
                    (execution_id, *REPLY_STATUSES),
                )
                row = cur.fetchone()
                if row is None:
                    self._conn.rollback()
                    return False
                data = json.loads(row["execution_data"]) if row["execution_data"] else {}
                replies = data.setdefault("replies", {})
                previous = _dt(replies.get(channel))
                if previous is None or received_at > previous:
                    replies[channel] = _ts(received_at)
                data["stopped_by_reply"] = True
                data["reply_channel"] = channel
                cur.execute(
                    "UPDATE workflow_executions SET execution_data = ? WHERE id = ?",
                    (json.dumps(data, default=str), execution_id),
                )
                self._conn.commit()
                return True
            except Exception:
                self._conn.rollback()
                raise

    async def record_reply(
        self, execution_id: str, channel: str, received_at: datetime
    ) -> bool:
        return await asyncio.to_thread(
            self._record_reply_sync, execution_id, channel, received_at
        )

    async def release_stale_claims(self, older_than: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_executions SET status = 'waiting', claim_token = NULL WHERE status = 'processing' AND last_run_at < ?",
            _ts(older_than),
        )

    # ------------------------------------------------------------------
    # Logs
    async def append_log(self, log: WorkflowExecutionLog) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_execution_logs
                (id, execution_id, enrollment_id, node_id, node_type, action, status,
                 input_data, output_data, error_message, duration_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
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
            _ts(log.created_at),
        )

    async def list_logs(
        self, *, execution_id: str | None = None, enrollment_id: str | None = None
    ) -> list[WorkflowExecutionLog]:
        clauses: list[str] = []
        params: list[Any] = []
        if execution_id is not None:
            clauses.append("execution_id = ?")
            params.append(execution_id)
        if enrollment_id is not None:
            clauses.append("enrollment_id = ?")
            params.append(enrollment_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM workflow_execution_logs{where} ORDER BY seq",
            *params,
        )
        return [
            WorkflowExecutionLog(
                id=r["id"],
                execution_id=r["execution_id"],
                enrollment_id=r["enrollment_id"],
                node_id=r["node_id"],
                node_type=r["node_type"],
                action=r["action"],
                status=r["status"],
                input_data=json.loads(r["input_data"]) if r["input_data"] else None,
                output_data=json.loads(r["output_data"]) if r["output_data"] else None,
                error_message=r["error_message"],
                duration_ms=r["duration_ms"],
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]
