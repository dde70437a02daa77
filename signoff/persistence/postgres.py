"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

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


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    return int(status.split()[-1])


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
                context JSONB,
                status TEXT NOT NULL,
                current_step_index INTEGER NOT NULL,
                effectiveness_verified BOOLEAN NOT NULL DEFAULT FALSE,
                side_effect_status TEXT,
                side_effect_error TEXT,
                created_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ,
                finalized_at TIMESTAMPTZ,
                finalized_by TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                instance_id TEXT NOT NULL REFERENCES workflows (id),
                step_order INTEGER NOT NULL,
                assignee_id TEXT,
                assignee_name TEXT,
                assignee_role TEXT,
                stage TEXT,
                label TEXT,
                status TEXT NOT NULL,
                due_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ,
                decided_at TIMESTAMPTZ,
                decided_by TEXT,
                comment TEXT,
                attachments JSONB,
                data JSONB,
                escalated BOOLEAN NOT NULL DEFAULT FALSE,
                escalated_at TIMESTAMPTZ,
                reminded BOOLEAN NOT NULL DEFAULT FALSE,
                reminded_at TIMESTAMPTZ,
                PRIMARY KEY (instance_id, step_order)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_templates (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                name TEXT NOT NULL,
                steps JSONB NOT NULL,
                conditions JSONB,
                is_default BOOLEAN NOT NULL DEFAULT FALSE,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ
            )
            """
        )

    async def _load_instance(
        self, conn: asyncpg.Connection, instance_id: str
    ) -> WorkflowInstance | None:
        row = await conn.fetchrow("SELECT * FROM workflows WHERE id = $1", instance_id)
        if not row:
            return None
        step_rows = await conn.fetch(
            "SELECT * FROM workflow_steps WHERE instance_id = $1 ORDER BY step_order",
            instance_id,
        )
        return instance_from_row(row, [step_from_row(r) for r in step_rows])

    async def _load_many(self, ids: list[str]) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            loaded = [await self._load_instance(conn, i) for i in ids]
        finally:
            await conn.close()
        return [wf for wf in loaded if wf is not None]

    async def _update_step(
        self, conn: asyncpg.Connection, instance_id: str, step: Step
    ) -> None:
        assignments = ", ".join(
            f"{c} = ${i}" for i, c in enumerate(TRANSITION_STEP_COLUMNS, 1)
        )
        n = len(TRANSITION_STEP_COLUMNS)
        await conn.execute(
            f"UPDATE workflow_steps SET {assignments} "
            f"WHERE instance_id = ${n + 1} AND step_order = ${n + 2}",
            *transition_step_values(step, native=True),
            instance_id,
            step.order,
        )

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        step_columns = ("instance_id", "step_order") + STEP_COLUMNS
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO workflows ({', '.join(INSTANCE_COLUMNS)}) "
                    f"VALUES ({_placeholders(len(INSTANCE_COLUMNS))})",
                    *instance_values(instance, native=True),
                )
                for step in instance.steps:
                    await conn.execute(
                        f"INSERT INTO workflow_steps ({', '.join(step_columns)}) "
                        f"VALUES ({_placeholders(len(step_columns))})",
                        instance.id,
                        step.order,
                        *step_values(step, native=True),
                    )
        finally:
            await conn.close()

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            return await self._load_instance(conn, instance_id)
        finally:
            await conn.close()

    async def list_instances(
        self, company_id: str, filters: Optional[WorkflowFilters] = None
    ) -> list[WorkflowInstance]:
        query = "SELECT id FROM workflows WHERE company_id = $1"
        params: list[Any] = [company_id]
        for column, value in (
            ("status", filters.status if filters else None),
            ("severity", filters.severity if filters else None),
            ("workflow_type", filters.workflow_type if filters else None),
        ):
            if value is not None:
                params.append(value.value)
                query += f" AND {column} = ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return apply_filters(await self._load_many([r["id"] for r in rows]), filters)

    async def list_escalation_candidates(
        self, now: datetime, reminders: bool = False
    ) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT w.id FROM workflows w JOIN workflow_steps s "
                "ON s.instance_id = w.id AND s.step_order = w.current_step_index + 1 "
                "WHERE w.status <> ALL($1::text[]) AND NOT (s.escalated AND s.reminded) "
                "AND s.due_at < $2",
                list(TERMINAL_VALUES),
                now,
            )
        finally:
            await conn.close()
        loaded = await self._load_many([r["id"] for r in rows])
        return [wf for wf in loaded if is_escalation_candidate(wf, now, reminders)]

    async def _advance(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    "UPDATE workflows SET status = $1, current_step_index = $2, "
                    "updated_at = $3, finalized_at = $4, finalized_by = $5 "
                    "WHERE id = $6 AND current_step_index = $7 AND status <> ALL($8::text[])",
                    instance.status.value,
                    instance.current_step_index,
                    instance.updated_at,
                    instance.finalized_at,
                    instance.finalized_by,
                    instance.id,
                    expected_index,
                    list(TERMINAL_VALUES),
                )
                if _affected(status) != 1:
                    return False
                for step in steps:
                    await self._update_step(conn, instance.id, step)
                return True
        finally:
            await conn.close()

    async def record_decision(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        return await self._advance(instance, expected_index, steps)

    async def record_progress(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        return await self._advance(instance, expected_index, steps)

    async def _mark_flag(
        self, flag: str, instance_id: str, order: int, at: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"UPDATE workflow_steps s SET {flag} = TRUE, {flag}_at = $1 "
                "FROM workflows w WHERE s.instance_id = w.id AND w.id = $2 "
                f"AND s.step_order = $3 AND NOT s.{flag} "
                "AND w.current_step_index = $4 AND w.status <> ALL($5::text[])",
                at,
                instance_id,
                order,
                order - 1,
                list(TERMINAL_VALUES),
            )
        finally:
            await conn.close()
        return _affected(status) == 1

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
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    "UPDATE workflows SET effectiveness_verified = $1, updated_at = $2 "
                    "WHERE id = $3 AND status <> ALL($4::text[])",
                    verified,
                    updated_at,
                    instance_id,
                    list(TERMINAL_VALUES),
                )
                if _affected(status) != 1:
                    return False
                await conn.execute(
                    "UPDATE workflow_steps SET data = $1 WHERE instance_id = $2 AND step_order = $3",
                    json.dumps(data, default=str),
                    instance_id,
                    order,
                )
                return True
        finally:
            await conn.close()

    async def record_side_effect(
        self, instance_id: str, status: str, error: Optional[str] = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflows SET side_effect_status = $1, side_effect_error = $2 WHERE id = $3",
                status,
                error,
                instance_id,
            )
        finally:
            await conn.close()

    async def get_default_template(
        self, company_id: str, workflow_type: WorkflowType
    ) -> StepTemplate | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM step_templates WHERE company_id = $1 AND workflow_type = $2 "
                "AND is_default AND is_active ORDER BY created_at DESC LIMIT 1",
                company_id,
                WorkflowType(workflow_type).value,
            )
        finally:
            await conn.close()
        return template_from_row(row) if row else None

    async def save_template(self, template: StepTemplate) -> str:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if template.is_default:
                    await conn.execute(
                        "UPDATE step_templates SET is_default = FALSE "
                        "WHERE company_id = $1 AND workflow_type = $2",
                        template.company_id,
                        template.workflow_type.value,
                    )
                await conn.execute(
                    f"INSERT INTO step_templates ({', '.join(TEMPLATE_COLUMNS)}) "
                    f"VALUES ({_placeholders(len(TEMPLATE_COLUMNS))})",
                    *template_values(template, native=True),
                )
        finally:
            await conn.close()
        return template.id
