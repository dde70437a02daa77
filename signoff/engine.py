"""Workflow engine: the entry point for creating and advancing workflows."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from .config import SignoffConfig
from .contracts import (
    NonConformance,
    Notification,
    NotificationCategory,
    NotificationPriority,
    Outcome,
    RemediationStage,
    Severity,
    StepPayload,
    WorkflowContext,
    WorkflowFilters,
    WorkflowKind,
    WorkflowStatus,
    WorkflowType,
    kind_of,
)
from .deadlines import DeadlineCalculator, approval_due_at
from .dispatch import DispatchResult, SideEffectDispatcher
from .errors import (
    AlreadyFinalized,
    InvalidContext,
    InvalidTransition,
    NoActiveStep,
    NotFound,
    PermissionDenied,
    StepAlreadyDecided,
)
from .identity import IdentityResolver
from .machine import Transition, WorkflowStateMachine, policy_for, steps_from_line
from .notifications import BaseNotificationGateway, deliver
from .persistence import Step, StepDescriptor, WorkflowInstance, WorkflowRepository
from .roles import Actor, Capability, has_capability
from .templates import StepTemplateResolver
from .utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


def _workflow_type(value: WorkflowType | str) -> WorkflowType:
    try:
        return WorkflowType(value)
    except ValueError as exc:
        raise InvalidContext(f"Unknown workflow type: {value}") from exc


def deep_link(instance: WorkflowInstance) -> str:
    if instance.kind is WorkflowKind.REMEDIATION:
        return f"/haccp/corrective-actions/{instance.id}"
    return f"/approvals/{instance.id}"


class WorkflowEngine:
    """Creates workflows and applies decisions and stage completions.

    All collaborators are passed in; the engine keeps no state of its own
    between calls, so any number of engines may serve the same store.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        identity: IdentityResolver,
        notifications: BaseNotificationGateway,
        dispatcher: Optional[SideEffectDispatcher] = None,
        config: Optional[SignoffConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config or SignoffConfig()
        self._repository = repository
        self._identity = identity
        self._notifications = notifications
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self._clock = clock or utc_now
        self._deadlines = DeadlineCalculator(self._config.remediation.deadlines)
        self.templates = StepTemplateResolver(
            identity,
            repository,
            approval=self._config.approval,
            remediation=self._config.remediation,
        )
        self._overrides = self._config.approval.override_policy()
        self._machine = WorkflowStateMachine(due_at=self._step_due_at)

    def _step_due_at(self, step: Step, started_at: datetime) -> Optional[datetime]:
        if step.stage is not None:
            # remediation deadlines are fixed at creation
            return None
        return approval_due_at(started_at, self._config.approval.step_sla_hours)

    # ------------------------------------------------------------------
    # Creation
    async def create_workflow(
        self,
        workflow_type: WorkflowType | str,
        company_id: str,
        context: WorkflowContext | Dict[str, Any] | None = None,
    ) -> WorkflowInstance:
        """Build the step line for a new workflow and persist it.

        Raises:
            InvalidContext: Unknown type, missing company or malformed context.
            NoApprovers: A mandatory approver could not be resolved.
            TierConfigurationError: The amount maps to no configured tier.
        """
        workflow_type = _workflow_type(workflow_type)
        if not company_id:
            raise InvalidContext("A company is required to create a workflow")
        if not isinstance(context, WorkflowContext):
            try:
                context = WorkflowContext.model_validate(context or {})
            except ValidationError as exc:
                raise InvalidContext(f"Invalid workflow context: {exc}") from exc

        kind = kind_of(workflow_type)
        if kind is WorkflowKind.REMEDIATION and context.severity is None:
            raise InvalidContext("A severity is required for corrective actions")

        line = await self.templates.build_line(workflow_type, company_id, context)
        now = self._clock()

        due_dates = None
        if kind is WorkflowKind.REMEDIATION:
            deadlines = self._deadlines.due_dates(context.severity, now)
            due_dates = {
                d.order: deadlines.for_stage(d.stage) for d in line if d.stage is not None
            }
        skip_user = (
            context.requester_id
            if kind is WorkflowKind.APPROVAL and self._config.approval.skip_requester
            else None
        )

        instance = WorkflowInstance(
            company_id=company_id,
            workflow_type=workflow_type,
            store_id=context.store_id,
            requester_id=context.requester_id,
            source_id=context.source_id,
            title=context.title,
            severity=context.severity,
            assigned_to=context.assigned_to,
            context=context.model_dump(mode="json", exclude_none=True),
            steps=steps_from_line(line, skip_user=skip_user, due_dates=due_dates),
            created_at=now,
        )
        self._machine.start(instance, now)
        await self._repository.create_instance(instance)
        logger.info(
            f"Created {workflow_type.value} workflow {instance.id} for company {company_id} "
            f"with {len(instance.steps)} step(s)"
        )

        if kind is WorkflowKind.REMEDIATION and instance.assigned_to:
            await self._notify(
                Notification(
                    user_id=instance.assigned_to,
                    category=NotificationCategory.HACCP,
                    priority=(
                        NotificationPriority.CRITICAL
                        if instance.severity is Severity.CRITICAL
                        else NotificationPriority.HIGH
                    ),
                    title="Corrective action assigned",
                    body=f"A new corrective action was assigned to you: {instance.title or workflow_type.value}",
                    deep_link=deep_link(instance),
                )
            )
        else:
            await self._notify_step_started(instance, instance.current_step)
        return instance

    async def open_corrective_action(
        self, nc: NonConformance, severity: Severity = Severity.HIGH
    ) -> WorkflowInstance:
        """Open a corrective action for a failed critical control point."""
        context = WorkflowContext(
            store_id=nc.store_id,
            source_id=nc.record_id,
            title=nc.describe(),
            severity=severity,
            assigned_to=nc.assigned_to,
            details={
                "process": nc.process,
                "measured_value": nc.measured_value,
                "unit": nc.unit,
                "recorded_at": nc.recorded_at.isoformat() if nc.recorded_at else None,
            },
        )
        return await self.create_workflow(WorkflowType.CCP_FAILURE, nc.company_id, context)

    async def save_template(
        self,
        company_id: str,
        workflow_type: WorkflowType | str,
        name: str,
        steps: Sequence[StepDescriptor],
        conditions: Optional[dict] = None,
        is_default: bool = False,
        actor: Optional[Actor] = None,
    ) -> str:
        if actor is not None and not has_capability(actor, Capability.MANAGE_TEMPLATES):
            raise PermissionDenied(f"{actor.id} may not manage approval templates")
        return await self.templates.save_template(
            company_id, _workflow_type(workflow_type), name, steps, conditions, is_default
        )

    # ------------------------------------------------------------------
    # Queries
    async def get_workflow(self, instance_id: str) -> WorkflowInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFound(instance_id)
        return instance

    async def list_workflows(
        self, company_id: str, filters: WorkflowFilters | Dict[str, Any] | None = None
    ) -> list[WorkflowInstance]:
        if isinstance(filters, dict):
            filters = WorkflowFilters.model_validate(filters)
        return await self._repository.list_instances(company_id, filters)

    # ------------------------------------------------------------------
    # Transitions
    def _authorize(self, instance: WorkflowInstance, step: Step, actor: Actor) -> None:
        if step.assignee_id is not None and step.assignee_id == actor.id:
            return
        if self._overrides.allows(actor, instance.workflow_type):
            return
        if (
            step.assignee_id is None
            and step.assignee_role is not None
            and actor.holds(step.assignee_role)
            and has_capability(actor, Capability.DECIDE_STEP)
        ):
            return
        raise PermissionDenied(
            f"{actor.id} is not the approver of step {step.order} of workflow {instance.id}",
            instance.id,
        )

    async def _raise_conflict(self, instance_id: str, expected_index: int) -> None:
        latest = await self._repository.get_instance(instance_id)
        if latest is None:
            raise NotFound(instance_id)
        logger.warning(
            f"Conflicting update on workflow {instance_id} (expected step index "
            f"{expected_index}, found {latest.current_step_index}, status {latest.status.value})"
        )
        if latest.is_terminal:
            raise AlreadyFinalized(instance_id, latest.status.value)
        raise StepAlreadyDecided(instance_id, expected_index + 1)

    async def decide(
        self,
        instance_id: str,
        actor: Actor,
        outcome: Outcome | str,
        comment: Optional[str] = None,
    ) -> WorkflowInstance:
        """Approve or reject the active step of an approval workflow.

        Raises:
            NotFound: No such workflow.
            AlreadyFinalized: The workflow already reached a final status.
            StepAlreadyDecided: Someone else decided this step first.
            PermissionDenied: ``actor`` may not decide the active step.
        """
        try:
            outcome = Outcome(outcome)
        except ValueError as exc:
            raise InvalidContext(f"Unknown outcome: {outcome}") from exc
        instance = await self.get_workflow(instance_id)
        if instance.kind is not WorkflowKind.APPROVAL:
            raise InvalidTransition(
                f"Workflow {instance_id} is a corrective action; use progress", instance_id
            )
        if instance.is_terminal:
            raise AlreadyFinalized(instance_id, instance.status.value)
        step = instance.current_step
        if step is None:
            raise NoActiveStep(instance_id)
        self._authorize(instance, step, actor)

        now = self._clock()
        if outcome is Outcome.APPROVE:
            transition = self._machine.approve(instance, actor.id, now, comment)
        else:
            transition = self._machine.reject(instance, actor.id, now, comment)
        committed = await self._repository.record_decision(
            transition.instance, transition.expected_index, transition.changed
        )
        if not committed:
            await self._raise_conflict(instance_id, transition.expected_index)

        instance = transition.instance
        verb = "approved" if outcome is Outcome.APPROVE else "rejected"
        logger.info(
            f"{actor.id} {verb} step {step.order} of workflow "
            f"{instance_id}; status is now {instance.status.value}"
        )
        await self._after_transition(transition)
        return instance

    async def progress(
        self,
        instance_id: str,
        actor: Actor | str,
        payload: StepPayload | Dict[str, Any] | None = None,
    ) -> WorkflowInstance:
        """Complete the active stage of a corrective action.

        Raises:
            NotFound: No such workflow.
            AlreadyFinalized: The corrective action is already closed.
            NoActiveStep: No stage is in progress.
        """
        actor_id = actor.id if isinstance(actor, Actor) else actor
        if isinstance(payload, dict):
            payload = StepPayload.model_validate(payload)
        instance = await self.get_workflow(instance_id)
        if instance.kind is not WorkflowKind.REMEDIATION:
            raise InvalidTransition(
                f"Workflow {instance_id} is an approval request; use decide", instance_id
            )
        transition = self._machine.complete(instance, actor_id, self._clock(), payload)
        committed = await self._repository.record_progress(
            transition.instance, transition.expected_index, transition.changed
        )
        if not committed:
            await self._raise_conflict(instance_id, transition.expected_index)
        logger.info(
            f"{actor_id} completed stage {transition.expected_index + 1} of corrective "
            f"action {instance_id}; status is now {transition.instance.status.value}"
        )
        await self._after_transition(transition)
        return transition.instance

    async def verify_effectiveness(
        self, instance_id: str, actor: Actor | str, verified: bool, notes: str = ""
    ) -> WorkflowInstance:
        """Record whether the corrective action actually fixed the problem."""
        actor_id = actor.id if isinstance(actor, Actor) else actor
        instance = await self.get_workflow(instance_id)
        if instance.kind is not WorkflowKind.REMEDIATION:
            raise InvalidTransition(
                f"Workflow {instance_id} has no verification stage", instance_id
            )
        if instance.is_terminal:
            raise AlreadyFinalized(instance_id, instance.status.value)
        step = next(
            (s for s in instance.steps if s.stage is RemediationStage.VERIFICATION), None
        )
        if step is None:
            raise InvalidTransition(
                f"Workflow {instance_id} has no verification stage", instance_id
            )
        now = self._clock()
        data = {
            **step.data,
            "effectivenessVerified": verified,
            "verificationNotes": notes,
            "verifiedBy": actor_id,
            "verifiedAt": now.isoformat(),
        }
        if not await self._repository.record_verification(
            instance_id, verified, step.order, data, now
        ):
            await self._raise_conflict(instance_id, instance.current_step_index)
        logger.info(
            f"{actor_id} marked corrective action {instance_id} as "
            f"{'effective' if verified else 'not effective'}"
        )
        return await self.get_workflow(instance_id)

    # ------------------------------------------------------------------
    # Follow-up after a committed transition
    async def _after_transition(self, transition: Transition) -> None:
        instance = transition.instance
        if transition.terminal:
            if instance.kind is WorkflowKind.APPROVAL:
                await self._notify_requester(instance)
            if (
                policy_for(instance.kind).dispatches_side_effects
                and instance.status is policy_for(instance.kind).terminal_status
            ):
                await self._run_side_effect(instance)
        elif transition.started is not None:
            await self._notify_step_started(instance, transition.started)

    async def _run_side_effect(self, instance: WorkflowInstance) -> DispatchResult:
        result = await self.dispatcher.dispatch(instance)
        instance.side_effect_status = result.status
        instance.side_effect_error = result.error
        try:
            await self._repository.record_side_effect(instance.id, result.status, result.error)
        except Exception:  # noqa: BLE001
            logger.exception(
                f"Could not record side-effect outcome {result.status} for workflow {instance.id}"
            )
        operator = self._config.notifications.operator_user_id
        if not result.ok and operator:
            await self._notify(
                Notification(
                    user_id=operator,
                    category=NotificationCategory.OPERATIONS,
                    priority=NotificationPriority.CRITICAL,
                    title="Approval follow-up failed",
                    body=(
                        f"{instance.workflow_type.value} workflow {instance.id} was approved "
                        f"but its follow-up failed: {result.error}"
                    ),
                    deep_link=deep_link(instance),
                )
            )
        return result

    async def _notify(self, notification: Notification) -> bool:
        conf = self._config.notifications
        return await deliver(
            self._notifications, notification, conf.max_attempts, conf.backoff_base
        )

    async def _notify_requester(self, instance: WorkflowInstance) -> None:
        if not instance.requester_id:
            return
        approved = instance.status is WorkflowStatus.APPROVED
        await self._notify(
            Notification(
                user_id=instance.requester_id,
                category=NotificationCategory.APPROVAL,
                priority=NotificationPriority.HIGH,
                title="Request approved" if approved else "Request rejected",
                body=(
                    f"Your {instance.workflow_type.value} request was "
                    f"{'approved' if approved else 'rejected'}."
                ),
                deep_link=deep_link(instance),
            )
        )

    async def _notify_step_started(
        self, instance: WorkflowInstance, step: Optional[Step]
    ) -> None:
        if step is None:
            return
        user_id = step.assignee_id
        if user_id is None and step.assignee_role is not None:
            try:
                holder = await self._identity.resolve_role(
                    instance.company_id, instance.store_id, step.assignee_role
                )
            except Exception:  # noqa: BLE001
                logger.exception(
                    f"Could not resolve {step.assignee_role.value} for workflow {instance.id}"
                )
                holder = None
            user_id = holder.user_id if holder else None
        if user_id is None:
            logger.warning(
                f"No one to notify for step {step.order} of workflow {instance.id}"
            )
            return
        if instance.kind is WorkflowKind.REMEDIATION:
            notification = Notification(
                user_id=user_id,
                category=NotificationCategory.HACCP,
                priority=NotificationPriority.HIGH,
                title="Corrective action moved on",
                body=f"Corrective action is now at '{step.label or step.order}'.",
                deep_link=deep_link(instance),
            )
        else:
            notification = Notification(
                user_id=user_id,
                category=NotificationCategory.APPROVAL,
                priority=NotificationPriority.NORMAL,
                title="Approval requested",
                body=(
                    f"A {instance.workflow_type.value} request is waiting for your decision "
                    f"(step {step.order} of {len(instance.steps)})."
                ),
                deep_link=deep_link(instance),
            )
        await self._notify(notification)
