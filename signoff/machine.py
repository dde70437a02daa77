"""Sequential workflow state machine.

The machine never talks to storage. Each transition takes an instance,
returns a ``Transition`` describing the new state plus the steps it touched,
and leaves the caller to commit it with a conditional write keyed on
``expected_index``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .contracts import (
    StepPayload,
    StepStatus,
    WorkflowKind,
    WorkflowStatus,
)
from .errors import AlreadyFinalized, InvalidTransition, NoActiveStep, NoApprovers
from .persistence import Step, StepDescriptor, WorkflowInstance

logger = logging.getLogger(__name__)

DueAtFn = Callable[[Step, datetime], Optional[datetime]]


@dataclass(frozen=True)
class KindPolicy:
    """Status mapping for one workflow flavor."""

    kind: WorkflowKind
    initial_status: WorkflowStatus
    terminal_status: WorkflowStatus
    done_status: StepStatus
    rejectable: bool
    dispatches_side_effects: bool

    def active_status(self, instance: WorkflowInstance, step: Step) -> WorkflowStatus:
        if self.kind is WorkflowKind.REMEDIATION and step.stage is not None:
            return WorkflowStatus(step.stage.value)
        return WorkflowStatus.IN_PROGRESS


APPROVAL_POLICY = KindPolicy(
    kind=WorkflowKind.APPROVAL,
    initial_status=WorkflowStatus.PENDING,
    terminal_status=WorkflowStatus.APPROVED,
    done_status=StepStatus.APPROVED,
    rejectable=True,
    dispatches_side_effects=True,
)

REMEDIATION_POLICY = KindPolicy(
    kind=WorkflowKind.REMEDIATION,
    initial_status=WorkflowStatus.IMMEDIATE_ACTION,
    terminal_status=WorkflowStatus.CLOSED,
    done_status=StepStatus.COMPLETED,
    rejectable=False,
    dispatches_side_effects=False,
)


def policy_for(kind: WorkflowKind) -> KindPolicy:
    return APPROVAL_POLICY if kind is WorkflowKind.APPROVAL else REMEDIATION_POLICY


@dataclass
class Transition:
    instance: WorkflowInstance
    expected_index: int
    changed: List[Step] = field(default_factory=list)
    terminal: bool = False
    started: Optional[Step] = None


def steps_from_line(
    line: Sequence[StepDescriptor],
    skip_user: Optional[str] = None,
    due_dates: Optional[dict[int, datetime]] = None,
) -> List[Step]:
    """Turn resolved descriptors into pending steps.

    Steps bound to ``skip_user`` (the requester) are marked ``SKIPPED``.
    """
    steps = []
    for descriptor in line:
        status = StepStatus.PENDING
        if skip_user is not None and descriptor.assignee_id == skip_user:
            status = StepStatus.SKIPPED
        steps.append(
            Step(
                order=descriptor.order,
                assignee_id=descriptor.assignee_id,
                assignee_name=descriptor.assignee_name,
                assignee_role=descriptor.role,
                stage=descriptor.stage,
                label=descriptor.label,
                status=status,
                due_at=(due_dates or {}).get(descriptor.order),
            )
        )
    return steps


class WorkflowStateMachine:
    """Transitions for strictly sequential step lines."""

    def __init__(self, due_at: Optional[DueAtFn] = None) -> None:
        # computes a due date for steps that get one when they start
        self._due_at = due_at

    @staticmethod
    def _next_index(instance: WorkflowInstance, after: int) -> Optional[int]:
        for index in range(after + 1, len(instance.steps)):
            if instance.steps[index].status is not StepStatus.SKIPPED:
                return index
        return None

    def _start_step(self, instance: WorkflowInstance, index: int, now: datetime) -> Step:
        step = instance.steps[index]
        step.status = StepStatus.IN_PROGRESS
        step.started_at = now
        if step.due_at is None and self._due_at is not None:
            step.due_at = self._due_at(step, now)
        instance.current_step_index = index
        return step

    @staticmethod
    def _ensure_open(instance: WorkflowInstance) -> Step:
        if instance.is_terminal:
            raise AlreadyFinalized(instance.id, instance.status.value)
        step = instance.current_step
        if step is None or step.status is not StepStatus.IN_PROGRESS:
            raise NoActiveStep(instance.id)
        return step

    # ------------------------------------------------------------------
    def start(self, instance: WorkflowInstance, now: datetime) -> WorkflowInstance:
        """Activate the first non-skipped step of a new instance."""
        if instance.current_step_index != -1:
            raise InvalidTransition(
                f"Workflow {instance.id} has already started", instance.id
            )
        policy = policy_for(instance.kind)
        first = self._next_index(instance, -1)
        if first is None:
            raise NoApprovers(
                f"Workflow {instance.id} has no step left to act on", instance.id
            )
        instance.created_at = instance.created_at or now
        instance.updated_at = now
        step = self._start_step(instance, first, now)
        instance.status = (
            policy.initial_status
            if policy.kind is WorkflowKind.APPROVAL
            else policy.active_status(instance, step)
        )
        return instance

    def _advance(
        self,
        instance: WorkflowInstance,
        actor_id: str,
        now: datetime,
        update: Callable[[Step], None],
    ) -> Transition:
        policy = policy_for(instance.kind)
        step = self._ensure_open(instance)
        expected = instance.current_step_index
        step.status = policy.done_status
        step.decided_at = now
        step.decided_by = actor_id
        update(step)
        transition = Transition(instance=instance, expected_index=expected, changed=[step])

        next_index = self._next_index(instance, expected)
        if next_index is None:
            instance.status = policy.terminal_status
            instance.finalized_at = now
            instance.finalized_by = actor_id
            transition.terminal = True
        else:
            started = self._start_step(instance, next_index, now)
            instance.status = policy.active_status(instance, started)
            transition.changed.append(started)
            transition.started = started
        instance.updated_at = now
        return transition

    def approve(
        self,
        instance: WorkflowInstance,
        actor_id: str,
        now: datetime,
        comment: Optional[str] = None,
    ) -> Transition:
        if instance.kind is not WorkflowKind.APPROVAL:
            raise InvalidTransition(
                f"Workflow {instance.id} is a corrective action; use progress", instance.id
            )

        def _record(step: Step) -> None:
            step.comment = comment

        return self._advance(instance, actor_id, now, _record)

    def reject(
        self,
        instance: WorkflowInstance,
        actor_id: str,
        now: datetime,
        comment: Optional[str] = None,
    ) -> Transition:
        policy = policy_for(instance.kind)
        if not policy.rejectable:
            raise InvalidTransition(
                f"Workflow {instance.id} cannot be rejected mid-flow", instance.id
            )
        step = self._ensure_open(instance)
        step.status = StepStatus.REJECTED
        step.decided_at = now
        step.decided_by = actor_id
        step.comment = comment
        instance.status = WorkflowStatus.REJECTED
        instance.finalized_at = now
        instance.finalized_by = actor_id
        instance.updated_at = now
        return Transition(
            instance=instance,
            expected_index=instance.current_step_index,
            changed=[step],
            terminal=True,
        )

    def complete(
        self,
        instance: WorkflowInstance,
        actor_id: str,
        now: datetime,
        payload: Optional[StepPayload] = None,
    ) -> Transition:
        if instance.kind is not WorkflowKind.REMEDIATION:
            raise InvalidTransition(
                f"Workflow {instance.id} is an approval request; use decide", instance.id
            )
        payload = payload or StepPayload()

        def _record(step: Step) -> None:
            step.comment = payload.notes
            step.attachments = list(payload.attachments)
            step.data = {**step.data, **payload.data}

        return self._advance(instance, actor_id, now, _record)
