"""Periodic escalation of overdue workflow steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import SignoffConfig
from .contracts import (
    Notification,
    NotificationCategory,
    NotificationPriority,
    WorkflowKind,
)
from .engine import deep_link
from .errors import AlreadyEscalated, AlreadyFinalized, NoActiveStep, NoApprovers, NotFound
from .identity import Identity, IdentityResolver
from .notifications import BaseNotificationGateway, deliver
from .persistence import Step, WorkflowInstance, WorkflowRepository
from .roles import Role, escalation_role
from .utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    examined: int = 0
    reminded: int = 0
    escalated: int = 0
    unresolved: int = 0
    conflicts: int = 0
    delivery_failures: int = 0


class EscalationSweeper:
    """Escalates active steps that passed their due date.

    When a step falls due the next role up gets an escalation and, with
    ``sweeper.remind_holder`` set, the current holder gets a reminder. Each
    is sent at most once: the ``escalated`` and ``reminded`` flags are claimed
    with conditional writes before anyone is notified, so concurrent sweepers
    never double-notify. When nobody can be resolved the flag is left unset
    and retried on the next pass.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        identity: IdentityResolver,
        notifications: BaseNotificationGateway,
        config: Optional[SignoffConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._identity = identity
        self._notifications = notifications
        self._config = config or SignoffConfig()
        self._clock = clock or utc_now

    async def sweep(self) -> SweepReport:
        """Run one pass over every overdue step."""
        now = self._clock()
        report = SweepReport()
        reminders = self._config.sweeper.remind_holder
        for instance in await self._repository.list_escalation_candidates(now, reminders):
            report.examined += 1
            if reminders:
                await self.remind(instance, now, report)
            await self.escalate(instance, now, report)
        logger.info(
            f"Escalation sweep: examined={report.examined} reminded={report.reminded} "
            f"escalated={report.escalated} "
            f"unresolved={report.unresolved} conflicts={report.conflicts}"
        )
        return report

    async def _resolve(self, instance: WorkflowInstance, role: Role) -> Identity | None:
        target = await self._identity.resolve_role(instance.company_id, instance.store_id, role)
        if target is None and instance.store_id is not None:
            target = await self._identity.resolve_role(instance.company_id, None, role)
        return target

    async def _target(self, instance: WorkflowInstance, step: Step) -> Identity | None:
        return await self._resolve(instance, escalation_role(step.assignee_role))

    @staticmethod
    def _describe(instance: WorkflowInstance, step: Step) -> tuple[str, str]:
        holder = step.assignee_name or step.assignee_id or (
            step.assignee_role.value if step.assignee_role else "nobody"
        )
        what = (
            "corrective action stage"
            if instance.kind is WorkflowKind.REMEDIATION
            else f"{instance.workflow_type.value} approval"
        )
        return what, holder

    async def remind(
        self,
        instance: WorkflowInstance,
        now: datetime,
        report: Optional[SweepReport] = None,
    ) -> bool:
        """Remind the holder of the overdue active step; returns whether it did."""
        report = report or SweepReport()
        step = instance.current_step
        if step is None or step.reminded:
            return False

        user_id = step.assignee_id
        if user_id is None and step.assignee_role is not None:
            holder = await self._resolve(instance, step.assignee_role)
            user_id = holder.user_id if holder else None
        if user_id is None:
            report.unresolved += 1
            logger.warning(
                f"Nobody to remind about step {step.order} of workflow {instance.id}; "
                "retrying next sweep"
            )
            return False

        if not await self._repository.mark_reminded(instance.id, step.order, now):
            report.conflicts += 1
            return False
        report.reminded += 1
        logger.info(f"Reminded {user_id} about step {step.order} of workflow {instance.id}")

        what, _ = self._describe(instance, step)
        delivered = await deliver(
            self._notifications,
            Notification(
                user_id=user_id,
                category=NotificationCategory.REMINDER,
                priority=NotificationPriority.HIGH,
                title="Step overdue",
                body=f"A {what} (step {step.order}) waiting on you is past its due date.",
                deep_link=deep_link(instance),
            ),
            self._config.notifications.max_attempts,
            self._config.notifications.backoff_base,
        )
        if not delivered:
            report.delivery_failures += 1
        return True

    async def escalate(
        self,
        instance: WorkflowInstance,
        now: datetime,
        report: Optional[SweepReport] = None,
    ) -> bool:
        """Escalate the active step of ``instance``; returns whether it did."""
        report = report or SweepReport()
        step = instance.current_step
        if step is None or step.escalated:
            return False

        target = await self._target(instance, step)
        if target is None:
            report.unresolved += 1
            logger.warning(
                f"No {escalation_role(step.assignee_role).value} to escalate step "
                f"{step.order} of workflow {instance.id} to; retrying next sweep"
            )
            return False

        if not await self._repository.mark_escalated(instance.id, step.order, now):
            report.conflicts += 1
            logger.info(
                f"Step {step.order} of workflow {instance.id} was decided or escalated "
                "concurrently; skipping"
            )
            return False
        report.escalated += 1
        logger.info(
            f"Escalated step {step.order} of workflow {instance.id} to {target.user_id} "
            f"({target.role.value})"
        )

        overdue_hours = (now - step.due_at).total_seconds() / 3600 if step.due_at else 0.0
        what, holder = self._describe(instance, step)
        delivered = await deliver(
            self._notifications,
            Notification(
                user_id=target.user_id,
                category=NotificationCategory.ESCALATION,
                priority=NotificationPriority.HIGH,
                title="Overdue step escalated",
                body=(
                    f"A {what} (step {step.order}) assigned to {holder} "
                    f"is {overdue_hours:.0f}h overdue."
                ),
                deep_link=deep_link(instance),
            ),
            self._config.notifications.max_attempts,
            self._config.notifications.backoff_base,
        )
        if not delivered:
            report.delivery_failures += 1
        return True

    async def escalate_now(self, instance_id: str) -> SweepReport:
        """Escalate the active step of one workflow right away, overdue or not.

        Raises:
            NotFound: No such workflow.
            AlreadyFinalized: The workflow is finished.
            AlreadyEscalated: The active step was escalated before.
            NoApprovers: Nobody holds the escalation role.
        """
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFound(instance_id)
        if instance.is_terminal:
            raise AlreadyFinalized(instance_id, instance.status.value)
        step = instance.current_step
        if step is None:
            raise NoActiveStep(instance_id)
        if step.escalated:
            raise AlreadyEscalated(instance_id, step.order)

        report = SweepReport(examined=1)
        if not await self.escalate(instance, self._clock(), report):
            if report.unresolved:
                raise NoApprovers(
                    f"Nobody holds {escalation_role(step.assignee_role).value} "
                    f"to escalate workflow {instance_id} to",
                    instance_id,
                )
            raise AlreadyEscalated(instance_id, step.order)
        return report

    async def run(
        self, interval: Optional[float] = None, lifespan: Optional[float] = None
    ) -> None:
        """Sweep every ``interval`` seconds.

        Args:
            interval: Seconds between passes; defaults to the configured interval.
            lifespan: Stop after this many seconds. If None, runs indefinitely.
        """
        interval = interval or self._config.sweeper.interval_seconds
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("Escalation sweep failed; retrying next interval")

            if lifespan and start_time is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                await asyncio.sleep(min(interval, remaining))
            else:
                await asyncio.sleep(interval)
