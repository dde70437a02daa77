"""Command line interface for operating signoff workflows."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, List, Optional, TypeVar

import typer
from pydantic import ValidationError

from signoff import (
    Actor,
    EscalationSweeper,
    StaticIdentityResolver,
    WorkflowEngine,
    WorkflowError,
    get_gateway,
    get_repository,
    load_config,
)
from signoff.config import SignoffConfig
from signoff.contracts import StepPayload, WorkflowFilters
from signoff.persistence import StepDescriptor, WorkflowInstance
from signoff.roles import parse_role

T = TypeVar("T")

app = typer.Typer(help="CLI for signoff approval and corrective-action workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
template_app = typer.Typer(help="Commands for managing approval templates")
sweep_app = typer.Typer(help="Commands for escalating overdue steps")

app.add_typer(workflow_app, name="workflow")
app.add_typer(template_app, name="template")
app.add_typer(sweep_app, name="sweep")


@app.callback()
def main() -> None:
    """Signoff CLI entry point."""
    logging.basicConfig(
        level=os.getenv("SIGNOFF_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _identity(config: SignoffConfig) -> StaticIdentityResolver:
    if config.directory_path:
        return StaticIdentityResolver.from_yaml(config.directory_path)
    return StaticIdentityResolver()


def build_engine(config: Optional[SignoffConfig] = None) -> WorkflowEngine:
    """Wire an engine from configuration."""
    config = config or load_config()
    return WorkflowEngine(
        repository=get_repository(config=config),
        identity=_identity(config),
        notifications=get_gateway(config=config),
        config=config,
    )


def build_sweeper(config: Optional[SignoffConfig] = None) -> EscalationSweeper:
    config = config or load_config()
    return EscalationSweeper(
        repository=get_repository(config=config),
        identity=_identity(config),
        notifications=get_gateway(config=config),
        config=config,
    )


def _run(coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)
    except WorkflowError as exc:
        typer.secho(f"{exc.code}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _roles(values: List[str]) -> list:
    try:
        return [parse_role(v) for v in values]
    except ValueError as exc:
        typer.secho(f"Unknown role: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _json_option(raw: Optional[str], name: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"--{name} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(value, dict):
        typer.secho(f"--{name} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return value


def _echo_instance(wf: WorkflowInstance) -> None:
    typer.echo(f"Workflow {wf.id}: {wf.workflow_type.value} {wf.status.value}")
    if wf.title:
        typer.echo(f"Title: {wf.title}")
    if wf.severity:
        typer.echo(f"Severity: {wf.severity.value}")
    if wf.side_effect_status:
        typer.echo(
            f"Side effect: {wf.side_effect_status}"
            + (f" ({wf.side_effect_error})" if wf.side_effect_error else "")
        )
    for step in wf.steps:
        who = step.assignee_name or step.assignee_id or (
            step.assignee_role.value if step.assignee_role else "-"
        )
        marker = "*" if step.order - 1 == wf.current_step_index and not wf.is_terminal else "-"
        typer.echo(
            f"{marker} {step.order}. {step.label or who}: {step.status.value}"
            + (f" by {step.decided_by}" if step.decided_by else "")
            + (f" (due {step.due_at.isoformat()})" if step.due_at else "")
            + (" [escalated]" if step.escalated else "")
        )


@workflow_app.command("create")
def workflow_create(
    workflow_type: str,
    company: str = typer.Option(..., help="Company the workflow belongs to"),
    context: Optional[str] = typer.Option(None, help="Workflow context as a JSON object"),
) -> None:
    """
    Create a workflow and print its id.

    Example:
        signoff workflow create PURCHASE --company acme \\
            --context '{"store_id": "s1", "requester_id": "u1", "amount": 250000}'
    """
    engine = build_engine()
    wf = _run(engine.create_workflow(workflow_type.upper(), company, _json_option(context, "context")))
    typer.echo(f"Created workflow {wf.id} ({wf.status.value}, {len(wf.steps)} step(s))")


@workflow_app.command("decide")
def workflow_decide(
    instance_id: str,
    outcome: str = typer.Argument(..., help="APPROVE or REJECT"),
    actor: str = typer.Option(..., help="User id of the decider"),
    role: List[str] = typer.Option([], "--role", help="Role held by the decider"),
    comment: Optional[str] = None,
) -> None:
    """Approve or reject the active step of an approval workflow."""
    engine = build_engine()
    decider = Actor(id=actor, roles=_roles(role))
    wf = _run(engine.decide(instance_id, decider, outcome, comment))
    typer.echo(f"Workflow {wf.id}: {wf.status.value}")


@workflow_app.command("progress")
def workflow_progress(
    instance_id: str,
    actor: str = typer.Option(..., help="User id completing the stage"),
    notes: Optional[str] = None,
    attachment: List[str] = typer.Option([], "--attachment", help="Attachment URL"),
    data: Optional[str] = typer.Option(None, help="Stage data as a JSON object"),
) -> None:
    """Complete the active stage of a corrective action."""
    engine = build_engine()
    payload = StepPayload(notes=notes, attachments=attachment, data=_json_option(data, "data"))
    wf = _run(engine.progress(instance_id, actor, payload))
    typer.echo(f"Workflow {wf.id}: {wf.status.value}")


@workflow_app.command("verify")
def workflow_verify(
    instance_id: str,
    actor: str = typer.Option(..., help="User id verifying the fix"),
    verified: bool = typer.Option(True, "--verified/--not-verified"),
    notes: str = "",
) -> None:
    """Record whether a corrective action was effective."""
    engine = build_engine()
    wf = _run(engine.verify_effectiveness(instance_id, actor, verified, notes))
    typer.echo(
        f"Workflow {wf.id}: effectiveness {'verified' if wf.effectiveness_verified else 'not verified'}"
    )


@workflow_app.command("list")
def workflow_list(
    company: str = typer.Option(..., help="Company to list workflows for"),
    status: Optional[str] = None,
    assignee: Optional[str] = None,
    severity: Optional[str] = None,
    workflow_type: Optional[str] = typer.Option(None, "--type"),
    limit: Optional[int] = None,
    offset: int = 0,
) -> None:
    """
    List a company's workflows, newest first.

    Example:
        signoff workflow list --company acme --status PENDING
        # Output: 3f2a...    PURCHASE    PENDING    Office chairs
    """
    engine = build_engine()
    try:
        filters = WorkflowFilters(
            status=status.upper() if status else None,
            assignee=assignee,
            severity=severity.upper() if severity else None,
            workflow_type=workflow_type.upper() if workflow_type else None,
            limit=limit,
            offset=offset,
        )
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()
        )
        typer.secho(f"Invalid filter: {problems}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    workflows = _run(engine.list_workflows(company, filters))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.workflow_type.value}\t{wf.status.value}\t{wf.title or ''}")


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """Show a workflow and its step line."""
    engine = build_engine()
    _echo_instance(_run(engine.get_workflow(instance_id)))


@template_app.command("save")
def template_save(
    workflow_type: str,
    company: str = typer.Option(..., help="Company the template belongs to"),
    name: str = typer.Option(..., help="Template name"),
    role: List[str] = typer.Option(..., "--role", help="Approver role, in order"),
    default: bool = typer.Option(False, "--default", help="Use as the company default"),
) -> None:
    """
    Save an approval line for a company.

    Example:
        signoff template save PURCHASE --company acme --name strict \\
            --role store_manager --role manager --role company_admin --default
    """
    engine = build_engine()
    steps = [StepDescriptor(order=i, role=r) for i, r in enumerate(_roles(role), 1)]
    template_id = _run(
        engine.save_template(company, workflow_type.upper(), name, steps, is_default=default)
    )
    typer.echo(f"Saved template {template_id}")


@sweep_app.command("run")
def sweep_run(
    once: bool = typer.Option(False, "--once", help="Run a single pass and exit"),
    interval: Optional[float] = typer.Option(None, help="Seconds between passes"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Escalate overdue steps, once or periodically."""
    sweeper = build_sweeper()
    if once:
        report = _run(sweeper.sweep())
        typer.echo(
            f"Examined {report.examined}, reminded {report.reminded}, "
            f"escalated {report.escalated}, "
            f"unresolved {report.unresolved}, conflicts {report.conflicts}"
        )
        return
    typer.echo("Starting escalation sweeper")
    _run(sweeper.run(interval=interval, lifespan=lifespan))


@sweep_app.command("escalate")
def sweep_escalate(instance_id: str) -> None:
    """Escalate the active step of one workflow now."""
    sweeper = build_sweeper()
    _run(sweeper.escalate_now(instance_id))
    typer.echo(f"Escalated workflow {instance_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
