"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import WorkflowFilters, WorkflowType
from .models import Step, StepTemplate, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every mutating method is a conditional write keyed on the expected
    pre-state and returns ``False`` when the condition no longer holds, i.e.
    someone else acted first.
    """

    async def create_instance(self, instance: WorkflowInstance) -> None:
        """Persist a freshly created instance with all of its steps."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve the instance by id."""

    async def list_instances(
        self, company_id: str, filters: Optional[WorkflowFilters] = None
    ) -> list[WorkflowInstance]:
        """Return a company's instances, newest first."""

    async def list_escalation_candidates(
        self, now: datetime, reminders: bool = False
    ) -> list[WorkflowInstance]:
        """Non-terminal instances whose overdue active step is not escalated,
        or with ``reminders`` not yet reminded either."""

    async def record_decision(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        """Write an approve/reject transition.

        Applies only if the stored instance is still non-terminal and still
        points at ``expected_index``. ``steps`` are the steps the transition
        touched; the instance-level fields come from ``instance``. The
        sweeper's ``escalated`` and ``reminded`` flags are left as stored.
        """

    async def record_progress(
        self, instance: WorkflowInstance, expected_index: int, steps: list[Step]
    ) -> bool:
        """Write a remediation stage completion, under the same condition."""

    async def mark_escalated(
        self, instance_id: str, order: int, escalated_at: datetime
    ) -> bool:
        """Flip ``escalated`` on the active step ``order`` if not yet set."""

    async def mark_reminded(
        self, instance_id: str, order: int, reminded_at: datetime
    ) -> bool:
        """Flip ``reminded`` on the active step ``order`` if not yet set."""

    async def record_verification(
        self,
        instance_id: str,
        verified: bool,
        order: int,
        data: dict,
        updated_at: datetime,
    ) -> bool:
        """Store an effectiveness verification on a non-terminal instance."""

    async def record_side_effect(
        self, instance_id: str, status: str, error: Optional[str] = None
    ) -> None:
        """Store the outcome of the terminal side effect."""

    async def get_default_template(
        self, company_id: str, workflow_type: WorkflowType
    ) -> StepTemplate | None:
        """Return the active default template for the company and type."""

    async def save_template(self, template: StepTemplate) -> str:
        """Persist a template; a new default replaces the previous default."""


def apply_filters(
    instances: list[WorkflowInstance], filters: Optional[WorkflowFilters]
) -> list[WorkflowInstance]:
    """Filter and paginate already loaded instances, newest first."""
    ordered = sorted(
        instances,
        key=lambda wf: wf.created_at or datetime.min,
        reverse=True,
    )
    if filters is None:
        return ordered
    selected = [
        wf
        for wf in ordered
        if (filters.status is None or wf.status == filters.status)
        and (filters.severity is None or wf.severity == filters.severity)
        and (filters.workflow_type is None or wf.workflow_type == filters.workflow_type)
        and (filters.assignee is None or wf.is_assigned_to(filters.assignee))
    ]
    end = filters.offset + filters.limit if filters.limit else None
    return selected[filters.offset:end]


def is_escalation_candidate(
    instance: WorkflowInstance, now: datetime, reminders: bool = False
) -> bool:
    step = instance.current_step
    return (
        not instance.is_terminal
        and step is not None
        and step.due_at is not None
        and step.due_at < now
        and (not step.escalated or (reminders and not step.reminded))
    )
