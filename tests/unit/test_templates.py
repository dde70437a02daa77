import pytest

from signoff.config import ApprovalConfig
from signoff.contracts import RemediationStage, WorkflowContext, WorkflowType
from signoff.errors import InvalidContext, NoApprovers, TierConfigurationError
from signoff.identity import DirectoryEntry, StaticIdentityResolver
from signoff.persistence import InMemoryWorkflowRepository, StepDescriptor, StepTemplate
from signoff.roles import Role
from signoff.templates import StepTemplateResolver


def _roles(line):
    return [d.role for d in line]


@pytest.mark.parametrize(
    "amount, expected",
    [
        (None, [Role.STORE_MANAGER]),
        (40_000, [Role.STORE_MANAGER]),
        (99_999, [Role.STORE_MANAGER]),
        (100_000, [Role.STORE_MANAGER, Role.MANAGER]),
        (499_999, [Role.STORE_MANAGER, Role.MANAGER]),
        (500_000, [Role.STORE_MANAGER, Role.MANAGER, Role.COMPANY_ADMIN]),
        (600_000, [Role.STORE_MANAGER, Role.MANAGER, Role.COMPANY_ADMIN]),
    ],
)
def test_purchase_tiers(directory, amount, expected):
    resolver = StepTemplateResolver(directory)
    line = resolver.template_for(WorkflowType.PURCHASE, WorkflowContext(amount=amount))
    assert _roles(line) == expected
    assert [d.order for d in line] == list(range(1, len(expected) + 1))


def test_expense_uses_its_own_thresholds(directory):
    resolver = StepTemplateResolver(directory)
    line = resolver.template_for(
        WorkflowType.EXPENSE, WorkflowContext(details={"totalAmount": "60000"})
    )
    assert _roles(line) == [Role.STORE_MANAGER, Role.MANAGER]


def test_line_length_is_monotonic_in_amount(directory):
    resolver = StepTemplateResolver(directory)
    amounts = [0, 1, 50_000, 99_999, 100_000, 250_000, 500_000, 10_000_000]
    for workflow_type in (WorkflowType.PURCHASE, WorkflowType.EXPENSE):
        lengths = [
            len(resolver.template_for(workflow_type, WorkflowContext(amount=a)))
            for a in amounts
        ]
        assert lengths == sorted(lengths)


def test_negative_amount_is_rejected(directory):
    resolver = StepTemplateResolver(directory)
    with pytest.raises(InvalidContext):
        resolver.template_for(WorkflowType.PURCHASE, WorkflowContext(amount=-1))


def test_amount_type_without_tiers_is_a_configuration_error(directory):
    resolver = StepTemplateResolver(directory, approval=ApprovalConfig(amount_tiers={}))
    with pytest.raises(TierConfigurationError):
        resolver.template_for(WorkflowType.PURCHASE, WorkflowContext(amount=10))


def test_fixed_lines(directory):
    resolver = StepTemplateResolver(directory)
    resignation = resolver.template_for(WorkflowType.RESIGNATION, WorkflowContext())
    assert _roles(resignation) == [Role.STORE_MANAGER, Role.MANAGER, Role.COMPANY_ADMIN]
    assert all(d.required for d in resignation)

    leave = resolver.template_for(WorkflowType.LEAVE, WorkflowContext())
    assert _roles(leave) == [Role.STORE_MANAGER]
    assert leave[0].fallback_roles == [Role.MANAGER]

    document = resolver.template_for(WorkflowType.DOCUMENT, WorkflowContext())
    assert _roles(document) == [Role.STORE_MANAGER]


def test_remediation_line_has_five_stages(directory):
    resolver = StepTemplateResolver(directory)
    line = resolver.template_for(
        WorkflowType.CCP_FAILURE, WorkflowContext(assigned_to="sm-1")
    )
    assert [d.stage for d in line] == list(RemediationStage)
    assert {d.assignee_id for d in line} == {"sm-1"}
    assert line[0].label == "Immediate action"


@pytest.mark.asyncio
async def test_build_line_binds_people(directory):
    resolver = StepTemplateResolver(directory)
    line = await resolver.build_line(
        WorkflowType.PURCHASE, "acme", WorkflowContext(store_id="s1", amount=250_000)
    )
    assert [d.assignee_id for d in line] == ["sm-1", "mgr-1"]
    assert line[0].assignee_name == "Store One Manager"


@pytest.mark.asyncio
async def test_build_line_falls_back_to_head_office(directory):
    resolver = StepTemplateResolver(directory)
    line = await resolver.build_line(
        WorkflowType.LEAVE, "acme", WorkflowContext(store_id="s2")
    )
    assert len(line) == 1
    assert line[0].assignee_id == "mgr-1"
    assert line[0].role is Role.MANAGER


@pytest.mark.asyncio
async def test_build_line_drops_unresolved_optional_steps():
    directory = StaticIdentityResolver(
        [
            DirectoryEntry(
                user_id="sm-9", company_id="solo", store_id="s9", roles=["store_manager"]
            )
        ]
    )
    resolver = StepTemplateResolver(directory)
    line = await resolver.build_line(
        WorkflowType.PURCHASE, "solo", WorkflowContext(store_id="s9", amount=600_000)
    )
    assert [d.assignee_id for d in line] == ["sm-9"]
    assert line[0].order == 1


@pytest.mark.asyncio
async def test_build_line_fails_on_unfillable_required_step():
    directory = StaticIdentityResolver(
        [
            DirectoryEntry(
                user_id="sm-9", company_id="solo", store_id="s9", roles=["store_manager"]
            )
        ]
    )
    resolver = StepTemplateResolver(directory)
    with pytest.raises(NoApprovers):
        await resolver.build_line(
            WorkflowType.DISPOSAL, "solo", WorkflowContext(store_id="s9")
        )


@pytest.mark.asyncio
async def test_build_line_with_nobody_at_all():
    resolver = StepTemplateResolver(StaticIdentityResolver())
    with pytest.raises(NoApprovers):
        await resolver.build_line(WorkflowType.DOCUMENT, "acme", WorkflowContext())


@pytest.mark.asyncio
async def test_company_template_overrides_built_in_rules(directory):
    repository = InMemoryWorkflowRepository()
    resolver = StepTemplateResolver(directory, repository)
    await resolver.save_template(
        "acme",
        WorkflowType.PURCHASE,
        "two managers",
        [
            StepDescriptor(order=5, role=Role.MANAGER),
            StepDescriptor(order=9, assignee_id="admin-1"),
        ],
        is_default=True,
    )

    line = await resolver.build_line(
        WorkflowType.PURCHASE, "acme", WorkflowContext(store_id="s1", amount=10)
    )
    assert [d.order for d in line] == [1, 2]
    # role-only steps stay unbound
    assert line[0].assignee_id is None
    assert line[0].role is Role.MANAGER
    assert line[1].assignee_id == "admin-1"

    # other companies keep the built-in line
    with pytest.raises(NoApprovers):
        await resolver.build_line(
            WorkflowType.PURCHASE, "beta", WorkflowContext(store_id="s1", amount=10)
        )


@pytest.mark.asyncio
async def test_non_default_template_is_ignored(directory):
    repository = InMemoryWorkflowRepository()
    resolver = StepTemplateResolver(directory, repository)
    await resolver.save_template(
        "acme",
        WorkflowType.DOCUMENT,
        "draft",
        [StepDescriptor(order=1, role=Role.COMPANY_ADMIN)],
    )
    line = await resolver.build_line(
        WorkflowType.DOCUMENT, "acme", WorkflowContext(store_id="s1")
    )
    assert [d.assignee_id for d in line] == ["sm-1"]


@pytest.mark.asyncio
async def test_save_template_validates_steps(directory):
    resolver = StepTemplateResolver(directory, InMemoryWorkflowRepository())
    with pytest.raises(InvalidContext):
        await resolver.save_template("acme", WorkflowType.DOCUMENT, "empty", [])
    with pytest.raises(InvalidContext):
        await resolver.save_template(
            "acme", WorkflowType.DOCUMENT, "blank", [StepDescriptor(order=1)]
        )


@pytest.mark.asyncio
async def test_corrective_actions_do_not_take_company_templates(directory):
    repository = InMemoryWorkflowRepository()
    resolver = StepTemplateResolver(directory, repository)
    with pytest.raises(InvalidContext):
        await resolver.save_template(
            "acme",
            WorkflowType.CCP_FAILURE,
            "short",
            [StepDescriptor(order=1, role=Role.MANAGER)],
            is_default=True,
        )

    # a template stored by other means is still ignored
    await repository.save_template(
        StepTemplate(
            company_id="acme",
            workflow_type=WorkflowType.CCP_FAILURE,
            name="short",
            steps=[StepDescriptor(order=1, role=Role.MANAGER)],
            is_default=True,
        )
    )
    line = await resolver.build_line(
        WorkflowType.CCP_FAILURE,
        "acme",
        WorkflowContext(store_id="s1", severity="CRITICAL", assigned_to="sm-1"),
    )
    assert [d.stage for d in line] == list(RemediationStage)
