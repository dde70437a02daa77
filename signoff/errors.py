"""Typed errors raised by the workflow engine."""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for all engine errors.

    ``code`` is stable and meant for callers that branch on the kind of
    failure (HTTP status mapping, CLI exit messages, ...).
    """

    code = "workflow_error"

    def __init__(self, message: str, instance_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.instance_id = instance_id

    def __str__(self) -> str:
        return self.message


class NotFound(WorkflowError):
    code = "not_found"

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Workflow {instance_id} not found", instance_id)


class ConflictError(WorkflowError):
    """Someone else changed the workflow first; refresh instead of retrying."""

    code = "conflict"


class AlreadyFinalized(ConflictError):
    code = "already_finalized"

    def __init__(self, instance_id: str, status: Optional[str] = None) -> None:
        suffix = f" ({status})" if status else ""
        super().__init__(
            f"Workflow {instance_id} was already decided{suffix}", instance_id
        )
        self.status = status


class StepAlreadyDecided(ConflictError):
    code = "step_already_decided"

    def __init__(self, instance_id: str, order: int) -> None:
        super().__init__(
            f"Step {order} of workflow {instance_id} was already decided by someone else",
            instance_id,
        )
        self.order = order


class AlreadyEscalated(ConflictError):
    code = "already_escalated"

    def __init__(self, instance_id: str, order: int) -> None:
        super().__init__(
            f"Step {order} of workflow {instance_id} was already escalated",
            instance_id,
        )
        self.order = order


class PermissionDenied(WorkflowError):
    code = "permission_denied"


class NoActiveStep(WorkflowError):
    code = "no_active_step"

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Workflow {instance_id} has no active step", instance_id)


class NoApprovers(WorkflowError):
    """No approver could be resolved for a mandatory step."""

    code = "no_approvers"


class InvalidContext(WorkflowError):
    code = "invalid_context"


class TierConfigurationError(WorkflowError):
    """An amount did not map to any configured tier."""

    code = "tier_configuration"


class InvalidTransition(WorkflowError):
    """The requested operation does not apply to this kind of workflow."""

    code = "invalid_transition"


class DeliveryError(WorkflowError):
    code = "delivery_failed"


class SideEffectError(WorkflowError):
    code = "side_effect_failed"


__all__ = [
    "WorkflowError",
    "NotFound",
    "ConflictError",
    "AlreadyFinalized",
    "StepAlreadyDecided",
    "AlreadyEscalated",
    "PermissionDenied",
    "NoActiveStep",
    "NoApprovers",
    "InvalidContext",
    "TierConfigurationError",
    "InvalidTransition",
    "DeliveryError",
    "SideEffectError",
]
