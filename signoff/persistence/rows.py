"""Column layout shared by the SQL repositories."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Iterable, Mapping

from ..contracts import TERMINAL_STATUSES
from .models import Step, StepDescriptor, StepTemplate, WorkflowInstance

INSTANCE_COLUMNS = (
    "id",
    "company_id",
    "workflow_type",
    "store_id",
    "requester_id",
    "source_id",
    "title",
    "severity",
    "assigned_to",
    "context",
    "status",
    "current_step_index",
    "effectiveness_verified",
    "side_effect_status",
    "side_effect_error",
    "created_at",
    "updated_at",
    "finalized_at",
    "finalized_by",
)

STEP_COLUMNS = (
    "assignee_id",
    "assignee_name",
    "assignee_role",
    "stage",
    "label",
    "status",
    "due_at",
    "started_at",
    "decided_at",
    "decided_by",
    "comment",
    "attachments",
    "data",
    "escalated",
    "escalated_at",
    "reminded",
    "reminded_at",
)

# Written only by the sweeper's own conditional updates.
SWEEPER_STEP_COLUMNS = frozenset(
    {"escalated", "escalated_at", "reminded", "reminded_at"}
)
TRANSITION_STEP_COLUMNS = tuple(
    c for c in STEP_COLUMNS if c not in SWEEPER_STEP_COLUMNS
)

TEMPLATE_COLUMNS = (
    "id",
    "company_id",
    "workflow_type",
    "name",
    "steps",
    "conditions",
    "is_default",
    "is_active",
    "created_at",
)

JSON_COLUMNS = frozenset({"context", "attachments", "data", "steps", "conditions"})

TERMINAL_VALUES = tuple(sorted(s.value for s in TERMINAL_STATUSES))


def _values(model: Any, columns: Iterable[str], native: bool) -> list[Any]:
    data = model.model_dump(mode="python" if native else "json")
    values = []
    for column in columns:
        value = data.get(column)
        if column in JSON_COLUMNS:
            value = json.dumps(value, default=str)
        elif isinstance(value, Enum):
            value = value.value
        values.append(value)
    return values


def instance_values(instance: WorkflowInstance, native: bool = False) -> list[Any]:
    return _values(instance, INSTANCE_COLUMNS, native)


def step_values(step: Step, native: bool = False) -> list[Any]:
    return _values(step, STEP_COLUMNS, native)


def transition_step_values(step: Step, native: bool = False) -> list[Any]:
    return _values(step, TRANSITION_STEP_COLUMNS, native)


def template_values(template: StepTemplate, native: bool = False) -> list[Any]:
    return _values(template, TEMPLATE_COLUMNS, native)


def _decode(row: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(row)
    for column in JSON_COLUMNS & data.keys():
        if isinstance(data[column], str):
            data[column] = json.loads(data[column])
    return {k: v for k, v in data.items() if v is not None}


def step_from_row(row: Mapping[str, Any]) -> Step:
    data = _decode(row)
    data["order"] = data.pop("step_order")
    data.pop("instance_id", None)
    return Step.model_validate(data)


def instance_from_row(row: Mapping[str, Any], steps: list[Step]) -> WorkflowInstance:
    data = _decode(row)
    data["steps"] = steps
    return WorkflowInstance.model_validate(data)


def template_from_row(row: Mapping[str, Any]) -> StepTemplate:
    data = _decode(row)
    data["steps"] = [StepDescriptor.model_validate(s) for s in data.get("steps", [])]
    return StepTemplate.model_validate(data)
