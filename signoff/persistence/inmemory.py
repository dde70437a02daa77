"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

from ..contracts import WorkflowFilters, WorkflowType
from .models import Step, StepTemplate, WorkflowInstance
from .repository import WorkflowRepository, apply_filters, is_escalation_candidate
from .rows import SWEEPER_STEP_COLUMNS


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Reads return copies so callers cannot
    mutate stored state except through the conditional writes.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._templates: Dict[str, StepTemplate] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        async with self._lock:
            if instance.id in self._workflows:
                raise ValueError(f"Workflow {instance.id} already exists")
            self._workflows[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        wf = self._workflows.get(instance_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_instances(
        self, company_id: str, filters: Optional[WorkflowFilters] = None
    ) -> list[WorkflowInstance]:
        rows = [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if wf.company_id == company_id
        ]
        return apply_filters(rows, filters)

    async def list_escalation_candidates(
        self, now: datetime, reminders: bool = False
    ) -> list[WorkflowInstance]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if is_escalation_candidate(wf, now, reminders)
        ]

    async def _advance(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        async with self._lock:
            stored = self._workflows.get(instance.id)
            if (
                stored is None
                or stored.is_terminal
                or stored.current_step_index != expected_index
            ):
                return False
            for step in steps:
                previous = stored.steps[step.order - 1]
                stored.steps[step.order - 1] = step.model_copy(
                    deep=True,
                    update={c: getattr(previous, c) for c in SWEEPER_STEP_COLUMNS},
                )
            stored.status = instance.status
            stored.current_step_index = instance.current_step_index
            stored.updated_at = instance.updated_at
            stored.finalized_at = instance.finalized_at
            stored.finalized_by = instance.finalized_by
            return True

    async def record_decision(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        return await self._advance(instance, expected_index, steps)

    async def record_progress(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        return await self._advance(instance, expected_index, steps)

    async def mark_escalated(
        self, instance_id: str, order: int, escalated_at: datetime
    ) -> bool:
        async with self._lock:
            stored = self._workflows.get(instance_id)
            if stored is None or stored.is_terminal:
                return False
            current = stored.current_step
            if current is None or current.order != order or current.escalated:
                return False
            current.escalated = True
            current.escalated_at = escalated_at
            return True

    async def mark_reminded(
        self, instance_id: str, order: int, reminded_at: datetime
    ) -> bool:
        async with self._lock:
            stored = self._workflows.get(instance_id)
            if stored is None or stored.is_terminal:
                return False
            current = stored.current_step
            if current is None or current.order != order or current.reminded:
                return False
            current.reminded = True
            current.reminded_at = reminded_at
            return True

    async def record_verification(
        self,
        instance_id: str,
        verified: bool,
        order: int,
        data: dict,
        updated_at: datetime,
    ) -> bool:
        async with self._lock:
            stored = self._workflows.get(instance_id)
            if stored is None or stored.is_terminal:
                return False
            step = stored.step(order)
            if step is None:
                return False
            step.data = dict(data)
            stored.effectiveness_verified = verified
            stored.updated_at = updated_at
            return True

    async def record_side_effect(
        self, instance_id: str, status: str, error: Optional[str] = None
    ) -> None:
        async with self._lock:
            stored = self._workflows.get(instance_id)
            if stored:
                stored.side_effect_status = status
                stored.side_effect_error = error

    async def get_default_template(
        self, company_id: str, workflow_type: WorkflowType
    ) -> StepTemplate | None:
        for template in self._templates.values():
            if (
                template.company_id == company_id
                and template.workflow_type == workflow_type
                and template.is_default
                and template.is_active
            ):
                return template.model_copy(deep=True)
        return None

    async def save_template(self, template: StepTemplate) -> str:
        async with self._lock:
            if template.is_default:
                for existing in self._templates.values():
                    if (
                        existing.company_id == template.company_id
                        and existing.workflow_type == template.workflow_type
                    ):
                        existing.is_default = False
            self._templates[template.id] = template.model_copy(deep=True)
        return template.id
