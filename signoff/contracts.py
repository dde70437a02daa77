"""Core enumerations and boundary records for signoff workflows."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class WorkflowKind(str, Enum):
    APPROVAL = "APPROVAL"
    REMEDIATION = "REMEDIATION"


class WorkflowType(str, Enum):
    """What triggered a workflow. The type selects its step template."""

    # approval requests
    LEAVE = "LEAVE"
    OVERTIME = "OVERTIME"
    SCHEDULE_CHANGE = "SCHEDULE_CHANGE"
    PURCHASE = "PURCHASE"
    EXPENSE = "EXPENSE"
    DISPOSAL = "DISPOSAL"
    RESIGNATION = "RESIGNATION"
    ABSENCE_EXCUSE = "ABSENCE_EXCUSE"
    DOCUMENT = "DOCUMENT"
    # corrective actions, keyed by the source of the non-conformance
    CCP_FAILURE = "CCP_FAILURE"
    AUDIT_FINDING = "AUDIT_FINDING"
    CUSTOMER_COMPLAINT = "CUSTOMER_COMPLAINT"
    INSPECTION = "INSPECTION"
    OTHER_NONCONFORMANCE = "OTHER_NONCONFORMANCE"

    @property
    def kind(self) -> WorkflowKind:
        return kind_of(self)


REMEDIATION_TYPES = frozenset(
    {
        WorkflowType.CCP_FAILURE,
        WorkflowType.AUDIT_FINDING,
        WorkflowType.CUSTOMER_COMPLAINT,
        WorkflowType.INSPECTION,
        WorkflowType.OTHER_NONCONFORMANCE,
    }
)


def kind_of(workflow_type: WorkflowType) -> WorkflowKind:
    if workflow_type in REMEDIATION_TYPES:
        return WorkflowKind.REMEDIATION
    return WorkflowKind.APPROVAL


class WorkflowStatus(str, Enum):
    """Instance status for both workflow flavors."""

    # approval flavor
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    # remediation flavor: the name of the active stage, then CLOSED
    IMMEDIATE_ACTION = "IMMEDIATE_ACTION"
    ROOT_CAUSE_ANALYSIS = "ROOT_CAUSE_ANALYSIS"
    CORRECTIVE_ACTION = "CORRECTIVE_ACTION"
    VERIFICATION = "VERIFICATION"
    CLOSURE = "CLOSURE"
    CLOSED = "CLOSED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CLOSED}
)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"
    COMPLETED = "COMPLETED"

    @property
    def is_done(self) -> bool:
        return self in (StepStatus.APPROVED, StepStatus.COMPLETED, StepStatus.SKIPPED)


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RemediationStage(str, Enum):
    IMMEDIATE_ACTION = "IMMEDIATE_ACTION"
    ROOT_CAUSE_ANALYSIS = "ROOT_CAUSE_ANALYSIS"
    CORRECTIVE_ACTION = "CORRECTIVE_ACTION"
    VERIFICATION = "VERIFICATION"
    CLOSURE = "CLOSURE"

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]


STAGE_LABELS = {
    RemediationStage.IMMEDIATE_ACTION: "Immediate action",
    RemediationStage.ROOT_CAUSE_ANALYSIS: "Root cause analysis",
    RemediationStage.CORRECTIVE_ACTION: "Corrective action",
    RemediationStage.VERIFICATION: "Verification",
    RemediationStage.CLOSURE: "Closure",
}

REMEDIATION_STAGES = list(RemediationStage)


class Outcome(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"

    @classmethod
    def _missing_(cls, value: object) -> Optional["Outcome"]:
        # decisions are submitted as APPROVED/REJECTED by older clients
        if isinstance(value, str):
            key = value.strip().upper()
            return {"APPROVED": cls.APPROVE, "REJECTED": cls.REJECT}.get(
                key, cls.__members__.get(key)
            )
        return None


class NotificationCategory(str, Enum):
    APPROVAL = "APPROVAL"
    ESCALATION = "ESCALATION"
    REMINDER = "REMINDER"
    HACCP = "HACCP"
    OPERATIONS = "OPERATIONS"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Notification(BaseModel):
    """A user-visible alert handed to the notification gateway."""

    user_id: str
    category: NotificationCategory
    priority: NotificationPriority = NotificationPriority.NORMAL
    title: str
    body: str
    deep_link: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json()


class WorkflowContext(BaseModel):
    """Caller-supplied context for creating a workflow."""

    store_id: Optional[str] = None
    requester_id: Optional[str] = None
    source_id: Optional[str] = None
    title: Optional[str] = None
    amount: Optional[float] = None
    severity: Optional[Severity] = None
    assigned_to: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("severity", mode="before")
    @classmethod
    def _upper_severity(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    def resolved_amount(self) -> Optional[float]:
        """Amount from the explicit field or from the request details."""
        if self.amount is not None:
            return self.amount
        for key in ("totalAmount", "total_amount", "amount"):
            raw = self.details.get(key)
            if raw is not None:
                try:
                    return float(raw)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring non-numeric {key}={raw!r} in details")
                    return None
        return None


class StepPayload(BaseModel):
    """Work recorded when completing a remediation stage."""

    notes: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowFilters(BaseModel):
    status: Optional[WorkflowStatus] = None
    assignee: Optional[str] = None
    severity: Optional[Severity] = None
    workflow_type: Optional[WorkflowType] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class NonConformance(BaseModel):
    """A failed critical-control-point measurement."""

    record_id: str
    company_id: str
    store_id: Optional[str] = None
    process: Optional[str] = None
    measured_value: Optional[float] = None
    unit: Optional[str] = None
    recorded_at: Optional[datetime] = None
    assigned_to: Optional[str] = None

    def describe(self) -> str:
        measurement = ""
        if self.measured_value is not None:
            measurement = f"{self.measured_value:g}{self.unit or ''}"
        return f"{self.process or 'CCP'} limit exceeded: {measurement}".rstrip(": ")
