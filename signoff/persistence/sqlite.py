"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import WorkflowFilters, WorkflowType
from .models import Step, StepTemplate, WorkflowInstance
from .repository import WorkflowRepository, apply_filters, is_escalation_candidate
from .rows import (
    INSTANCE_COLUMNS,
    STEP_COLUMNS,
    TEMPLATE_COLUMNS,
    TERMINAL_VALUES,
    TRANSITION_STEP_COLUMNS,
    instance_from_row,
    instance_values,
    step_from_row,
    step_values,
    template_from_row,
    template_values,
    transition_step_values,
)

_NOT_TERMINAL = f"status NOT IN ({', '.join('?' for _ in TERMINAL_VALUES)})"


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    One connection is shared between worker threads; every statement group
    runs under a lock so a conditional update and its step writes commit as
    one transaction.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                store_id TEXT,
                requester_id TEXT,
                source_id TEXT,
                title TEXT,
                severity TEXT,
                assigned_to TEXT,
                context TEXT,
                status TEXT NOT NULL,
                current_step_index INTEGER NOT NULL,
                effectiveness_verified INTEGER NOT NULL DEFAULT 0,
                side_effect_status TEXT,
                side_effect_error TEXT,
                created_at TEXT,
                updated_at TEXT,
                finalized_at TEXT,
                finalized_by TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                instance_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                assignee_id TEXT,
                assignee_name TEXT,
                assignee_role TEXT,
                stage TEXT,
                label TEXT,
                status TEXT NOT NULL,
                due_at TEXT,
                started_at TEXT,
                decided_at TEXT,
                decided_by TEXT,
                comment TEXT,
                attachments TEXT,
                data TEXT,
                escalated INTEGER NOT NULL DEFAULT 0,
                escalated_at TEXT,
                reminded INTEGER NOT NULL DEFAULT 0,
                reminded_at TEXT,
                PRIMARY KEY (instance_id, step_order)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_templates (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                name TEXT NOT NULL,
                steps TEXT NOT NULL,
                conditions TEXT,
                is_default INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_company ON workflows (company_id, created_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
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

    def _transaction(self, statements: list[tuple[str, tuple]]) -> int:
        """Run ``statements`` atomically; returns rowcount of the first one.

        If the first statement (the guard) touches no row, nothing is written.
        """
        with self._lock:
            cur = self._conn.cursor()
            try:
                guard_sql, guard_params = statements[0]
                cur.execute(guard_sql, guard_params)
                affected = cur.rowcount
                if affected == 0:
                    self._conn.rollback()
                    return 0
                for sql, params in statements[1:]:
                    cur.execute(sql, params)
                self._conn.commit()
                return affected
            except Exception:
                self._conn.rollback()
                raise

    def _load_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = self._fetchone("SELECT * FROM workflows WHERE id = ?", instance_id)
        if row is None:
            return None
        step_rows = self._fetchall(
            "SELECT * FROM workflow_steps WHERE instance_id = ? ORDER BY step_order",
            instance_id,
        )
        return instance_from_row(row, [step_from_row(r) for r in step_rows])

    @staticmethod
    def _step_update(instance_id: str, step: Step) -> tuple[str, tuple]:
        assignments = ", ".join(f"{c} = ?" for c in TRANSITION_STEP_COLUMNS)
        return (
            f"UPDATE workflow_steps SET {assignments} WHERE instance_id = ? AND step_order = ?",
            (*transition_step_values(step), instance_id, step.order),
        )

    def _advance_sync(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        values = instance.model_dump(mode="json")
        guard = (
            "UPDATE workflows SET status = ?, current_step_index = ?, updated_at = ?, "
            "finalized_at = ?, finalized_by = ? "
            f"WHERE id = ? AND current_step_index = ? AND {_NOT_TERMINAL}",
            (
                values["status"],
                values["current_step_index"],
                values["updated_at"],
                values["finalized_at"],
                values["finalized_by"],
                instance.id,
                expected_index,
                *TERMINAL_VALUES,
            ),
        )
        statements = [guard] + [self._step_update(instance.id, s) for s in steps]
        return self._transaction(statements) == 1

    # ------------------------------------------------------------------
    # Repository API
    async def create_instance(self, instance: WorkflowInstance) -> None:
        columns = ", ".join(INSTANCE_COLUMNS)
        marks = ", ".join("?" for _ in INSTANCE_COLUMNS)
        step_columns = ", ".join(("instance_id", "step_order") + STEP_COLUMNS)
        step_marks = ", ".join("?" for _ in range(len(STEP_COLUMNS) + 2))
        statements = [
            (f"INSERT INTO workflows ({columns}) VALUES ({marks})", tuple(instance_values(instance)))
        ] + [
            (
                f"INSERT INTO workflow_steps ({step_columns}) VALUES ({step_marks})",
                (instance.id, step.order, *step_values(step)),
            )
            for step in instance.steps
        ]
        await asyncio.to_thread(self._transaction, statements)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        return await asyncio.to_thread(self._load_instance, instance_id)

    async def list_instances(
        self, company_id: str, filters: Optional[WorkflowFilters] = None
    ) -> list[WorkflowInstance]:
        query = "SELECT id FROM workflows WHERE company_id = ?"
        params: list[Any] = [company_id]
        if filters and filters.status:
            query += " AND status = ?"
            params.append(filters.status.value)
        if filters and filters.severity:
            query += " AND severity = ?"
            params.append(filters.severity.value)
        if filters and filters.workflow_type:
            query += " AND workflow_type = ?"
            params.append(filters.workflow_type.value)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        instances = []
        for row in rows:
            wf = await asyncio.to_thread(self._load_instance, row["id"])
            if wf is not None:
                instances.append(wf)
        return apply_filters(instances, filters)

    async def list_escalation_candidates(
        self, now: datetime, reminders: bool = False
    ) -> list[WorkflowInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT w.id FROM workflows w JOIN workflow_steps s "
            "ON s.instance_id = w.id AND s.step_order = w.current_step_index + 1 "
            f"WHERE w.{_NOT_TERMINAL} AND (s.escalated = 0 OR s.reminded = 0) "
            "AND s.due_at IS NOT NULL",
            *TERMINAL_VALUES,
        )
        candidates = []
        for row in rows:
            wf = await asyncio.to_thread(self._load_instance, row["id"])
            if wf is not None and is_escalation_candidate(wf, now, reminders):
                candidates.append(wf)
        return candidates

    async def record_decision(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        return await asyncio.to_thread(self._advance_sync, instance, expected_index, steps)

    async def record_progress(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        return await asyncio.to_thread(self._advance_sync, instance, expected_index, steps)

    async def _mark_flag(
        self, flag: str, instance_id: str, order: int, at: datetime
    ) -> bool:
        affected = await asyncio.to_thread(
            self._transaction,
            [
                (
                    f"UPDATE workflow_steps SET {flag} = 1, {flag}_at = ? "
                    f"WHERE instance_id = ? AND step_order = ? AND {flag} = 0 "
                    "AND EXISTS (SELECT 1 FROM workflows w WHERE w.id = ? "
                    f"AND w.current_step_index = ? AND w.{_NOT_TERMINAL})",
                    (
                        at.isoformat(),
                        instance_id,
                        order,
                        instance_id,
                        order - 1,
                        *TERMINAL_VALUES,
                    ),
                )
            ],
        )
        return affected == 1

    async def mark_escalated(
        self, instance_id: str, order: int, escalated_at: datetime
    ) -> bool:
        return await self._mark_flag("escalated", instance_id, order, escalated_at)

    async def mark_reminded(
        self, instance_id: str, order: int, reminded_at: datetime
    ) -> bool:
        return await self._mark_flag("reminded", instance_id, order, reminded_at)

    async def record_verification(
        self,
        instance_id: str,
        verified: bool,
        order: int,
        data: dict,
        updated_at: datetime,
    ) -> bool:
        affected = await asyncio.to_thread(
            self._transaction,
            [
                (
                    "UPDATE workflows SET effectiveness_verified = ?, updated_at = ? "
                    f"WHERE id = ? AND {_NOT_TERMINAL}",
                    (int(verified), updated_at.isoformat(), instance_id, *TERMINAL_VALUES),
                ),
                (
                    "UPDATE workflow_steps SET data = ? WHERE instance_id = ? AND step_order = ?",
                    (json.dumps(data, default=str), instance_id, order),
                ),
            ],
        )
        return affected == 1

    async def record_side_effect(
        self, instance_id: str, status: str, error: Optional[str] = None
    ) -> None:
        await asyncio.to_thread(
            self._transaction,
            [
                (
                    "UPDATE workflows SET side_effect_status = ?, side_effect_error = ? WHERE id = ?",
                    (status, error, instance_id),
                )
            ],
        )

    async def get_default_template(
        self, company_id: str, workflow_type: WorkflowType
    ) -> StepTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM step_templates WHERE company_id = ? AND workflow_type = ? "
            "AND is_default = 1 AND is_active = 1 ORDER BY created_at DESC LIMIT 1",
            company_id,
            WorkflowType(workflow_type).value,
        )
        return template_from_row(row) if row else None

    async def save_template(self, template: StepTemplate) -> str:
        columns = ", ".join(TEMPLATE_COLUMNS)
        marks = ", ".join("?" for _ in TEMPLATE_COLUMNS)
        insert = (f"INSERT INTO step_templates ({columns}) VALUES ({marks})", tuple(template_values(template)))
        if template.is_default:
            statements = [
                # guard always matches: the template row itself is inserted first
                insert,
                (
                    "UPDATE step_templates SET is_default = 0 "
                    "WHERE company_id = ? AND workflow_type = ? AND id != ?",
                    (template.company_id, template.workflow_type.value, template.id),
                ),
            ]
        else:
            statements = [insert]
        await asyncio.to_thread(self._transaction, statements)
        return template.id
