"""Step template resolution: who has to sign off, in which order."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .config import AmountTier, ApprovalConfig, RemediationConfig
from .contracts import (
    REMEDIATION_STAGES,
    WorkflowContext,
    WorkflowKind,
    WorkflowType,
    kind_of,
)
from .errors import InvalidContext, NoApprovers, TierConfigurationError
from .identity import IdentityResolver
from .persistence import StepDescriptor, StepTemplate, WorkflowRepository
from .roles import Role

logger = logging.getLogger(__name__)

# Every role must resolve or creation fails.
STRICT_LINES: Dict[WorkflowType, List[Role]] = {
    WorkflowType.DISPOSAL: [Role.STORE_MANAGER, Role.MANAGER],
    WorkflowType.RESIGNATION: [Role.STORE_MANAGER, Role.MANAGER, Role.COMPANY_ADMIN],
}

# One store-level approver, falling back to head office.
FALLBACK_TYPES = frozenset(
    {WorkflowType.LEAVE, WorkflowType.OVERTIME, WorkflowType.ABSENCE_EXCUSE}
)


def renumber(descriptors: Sequence[StepDescriptor]) -> List[StepDescriptor]:
    """Copy ``descriptors`` with orders 1..N in their given sequence."""
    return [d.model_copy(update={"order": i}) for i, d in enumerate(descriptors, 1)]


def tier_for(amount: float, tiers: Sequence[AmountTier]) -> AmountTier:
    for tier in tiers:
        if tier.upper_bound is None or amount < tier.upper_bound:
            return tier
    raise TierConfigurationError(
        f"Amount {amount:g} is above every configured tier"
    )


class StepTemplateResolver:
    """Builds the ordered step line for a new workflow.

    ``template_for`` is the pure rule: it returns role descriptors. ``build_line``
    additionally reads the company override template and binds each role to a
    person through the identity resolver.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        repository: Optional[WorkflowRepository] = None,
        approval: Optional[ApprovalConfig] = None,
        remediation: Optional[RemediationConfig] = None,
    ) -> None:
        self._identity = identity
        self._repository = repository
        self._approval = approval or ApprovalConfig()
        self._remediation = remediation or RemediationConfig()

    # ------------------------------------------------------------------
    def template_for(
        self,
        workflow_type: WorkflowType,
        context: WorkflowContext,
        override: Optional[StepTemplate] = None,
    ) -> List[StepDescriptor]:
        workflow_type = WorkflowType(workflow_type)
        # corrective actions always run the fixed stages
        if kind_of(workflow_type) is WorkflowKind.REMEDIATION:
            return self._remediation_line(context)

        if _usable(override):
            return renumber(override.steps)

        if workflow_type in self._approval.amount_tiers:
            amount = context.resolved_amount()
            if amount is None:
                amount = 0.0
            if amount < 0:
                raise InvalidContext(f"Amount must not be negative, got {amount:g}")
            tier = tier_for(amount, self._approval.amount_tiers[workflow_type])
            return renumber([StepDescriptor(order=0, role=r) for r in tier.roles])

        if workflow_type in (WorkflowType.PURCHASE, WorkflowType.EXPENSE):
            raise TierConfigurationError(
                f"No amount tiers configured for {workflow_type.value}"
            )

        if workflow_type in STRICT_LINES:
            return renumber(
                [
                    StepDescriptor(order=0, role=r, required=True)
                    for r in STRICT_LINES[workflow_type]
                ]
            )

        if workflow_type in FALLBACK_TYPES:
            return [
                StepDescriptor(
                    order=1, role=Role.STORE_MANAGER, fallback_roles=[Role.MANAGER]
                )
            ]

        return [StepDescriptor(order=1, role=Role.STORE_MANAGER)]

    def _remediation_line(self, context: WorkflowContext) -> List[StepDescriptor]:
        return [
            StepDescriptor(
                order=i,
                role=self._remediation.stage_role,
                assignee_id=context.assigned_to,
                stage=stage,
                label=stage.label,
            )
            for i, stage in enumerate(REMEDIATION_STAGES, 1)
        ]

    # ------------------------------------------------------------------
    async def build_line(
        self,
        workflow_type: WorkflowType,
        company_id: str,
        context: WorkflowContext,
    ) -> List[StepDescriptor]:
        """Resolve the full, person-bound line for a new workflow.

        Raises:
            NoApprovers: A required step could not be resolved, or nothing
                resolved at all.
            TierConfigurationError: The amount did not map to a tier.
            InvalidContext: The context cannot drive the template.
        """
        workflow_type = WorkflowType(workflow_type)
        override = None
        if (
            self._repository is not None
            and kind_of(workflow_type) is WorkflowKind.APPROVAL
        ):
            override = await self._repository.get_default_template(
                company_id, workflow_type
            )
        descriptors = self.template_for(workflow_type, context, override)

        if _usable(override) or kind_of(workflow_type) is WorkflowKind.REMEDIATION:
            # role-only steps stay unbound and resolve at decision time
            return descriptors

        line: List[StepDescriptor] = []
        for descriptor in descriptors:
            bound = await self._bind(descriptor, company_id, context.store_id)
            if bound is not None:
                line.append(bound)
            elif descriptor.required:
                raise NoApprovers(
                    f"No {descriptor.role.value if descriptor.role else 'approver'} "
                    f"available for step {descriptor.order} of {workflow_type.value}; "
                    "assign one before submitting this request"
                )
            else:
                logger.info(
                    f"Dropping unresolved step {descriptor.order} ({descriptor.role.value}) "
                    f"for {workflow_type.value} in company {company_id}"
                )
        if not line:
            raise NoApprovers(
                f"No approver could be found for {workflow_type.value} in company {company_id}"
            )
        return renumber(line)

    async def _bind(
        self, descriptor: StepDescriptor, company_id: str, store_id: Optional[str]
    ) -> Optional[StepDescriptor]:
        if descriptor.assignee_id is not None:
            return descriptor
        if descriptor.role is None:
            return None
        for role in [descriptor.role, *descriptor.fallback_roles]:
            identity = await self._identity.resolve_role(company_id, store_id, role)
            if identity is not None:
                return descriptor.model_copy(
                    update={
                        "role": role,
                        "assignee_id": identity.user_id,
                        "assignee_name": identity.name,
                    }
                )
        return None

    # ------------------------------------------------------------------
    async def save_template(
        self,
        company_id: str,
        workflow_type: WorkflowType,
        name: str,
        steps: Sequence[StepDescriptor],
        conditions: Optional[dict] = None,
        is_default: bool = False,
    ) -> str:
        """Store a company approval line; returns the template id."""
        if self._repository is None:
            raise RuntimeError("A repository is required to save templates")
        workflow_type = WorkflowType(workflow_type)
        if kind_of(workflow_type) is WorkflowKind.REMEDIATION:
            raise InvalidContext(
                f"{workflow_type.value} is a corrective action; its stages are fixed"
            )
        if not steps:
            raise InvalidContext("A template needs at least one step")
        for step in steps:
            if step.role is None and step.assignee_id is None:
                raise InvalidContext(
                    f"Template step {step.order} needs a role or an assignee"
                )
        template = StepTemplate(
            company_id=company_id,
            workflow_type=workflow_type,
            name=name,
            steps=renumber(steps),
            conditions=conditions or {},
            is_default=is_default,
            created_at=datetime.now(timezone.utc),
        )
        template_id = await self._repository.save_template(template)
        logger.info(
            f"Saved {template.workflow_type.value} template {template_id} for company {company_id}"
            + (" as default" if is_default else "")
        )
        return template_id


def _usable(override: Optional[StepTemplate]) -> bool:
    return (
        override is not None
        and override.is_default
        and override.is_active
        and bool(override.steps)
    )
