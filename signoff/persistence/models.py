"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ..contracts import (
    RemediationStage,
    Severity,
    StepStatus,
    WorkflowKind,
    WorkflowStatus,
    WorkflowType,
    kind_of,
)
from ..roles import Role


class StepDescriptor(BaseModel):
    """One required step of a line before it is turned into a ``Step``.

    ``assignee_id`` is empty for role-based steps; ``fallback_roles`` are tried
    in order when no holder of ``role`` can be resolved.
    """

    order: int
    role: Optional[Role] = None
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    fallback_roles: List[Role] = Field(default_factory=list)
    required: bool = False
    stage: Optional[RemediationStage] = None
    label: Optional[str] = None


class StepTemplate(BaseModel):
    """A company-defined approval line that overrides the built-in rules."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    company_id: str
    workflow_type: WorkflowType
    name: str
    steps: List[StepDescriptor] = Field(default_factory=list)
    conditions: dict[str, Any] = Field(default_factory=dict)
    is_default: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None


class Step(BaseModel):
    """One unit of sign-off or remediation work inside an instance."""

    order: int
    assignee_id: Optional[str] = None
    assignee_name: Optional[str] = None
    assignee_role: Optional[Role] = None
    stage: Optional[RemediationStage] = None
    label: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    due_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    comment: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    escalated: bool = False
    escalated_at: Optional[datetime] = None
    reminded: bool = False
    reminded_at: Optional[datetime] = None

    @property
    def is_role_based(self) -> bool:
        return self.assignee_id is None


class WorkflowInstance(BaseModel):
    """Persisted workflow instance data."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    company_id: str
    workflow_type: WorkflowType
    store_id: Optional[str] = None
    requester_id: Optional[str] = None
    source_id: Optional[str] = None
    title: Optional[str] = None
    severity: Optional[Severity] = None
    assigned_to: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    steps: List[Step] = Field(default_factory=list)
    current_step_index: int = -1
    status: WorkflowStatus = WorkflowStatus.PENDING
    effectiveness_verified: bool = False
    side_effect_status: Optional[str] = None
    side_effect_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    finalized_by: Optional[str] = None

    @property
    def kind(self) -> WorkflowKind:
        return kind_of(self.workflow_type)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def current_step(self) -> Optional[Step]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def step(self, order: int) -> Optional[Step]:
        return next((s for s in self.steps if s.order == order), None)

    def is_assigned_to(self, user_id: str) -> bool:
        """``True`` if ``user_id`` owns the instance or its active step."""
        if self.assigned_to == user_id:
            return True
        current = self.current_step
        return current is not None and current.assignee_id == user_id
