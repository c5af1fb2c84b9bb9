"""
Command Line Interface for the remediation tool.

Provides CLI commands for running remediation plans against a fleet,
validating plans, inspecting targets and the run ledger, and diffing
compliance scans.
"""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .core.errors import (
    ConfigError, DuplicateTargetError, LedgerWriteError, PlanError, RemediationToolError,
    ScannerError, UnknownTargetError
)
from .core.models import ComplianceDelta, RunSummary, TargetState
from .core.orchestrator import RemediationTool
from .utils.log import configure_logging

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

console = Console()

STATE_COLORS = {
    TargetState.COMPLETED: "green",
    TargetState.PARTIALLY_FAILED: "yellow",
    TargetState.ABORTED: "red",
    TargetState.RUNNING: "blue",
    TargetState.PENDING: "dim",
}

OUTCOME_COLORS = {
    "success": "green",
    "failed": "red",
    "skipped": "dim",
}


def _fail(message: str, code: int) -> None:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(code)


def _create_tool(ctx, overrides: Optional[dict] = None) -> RemediationTool:
    """Build the tool from the group options; configuration errors exit with 2."""
    try:
        tool = RemediationTool(config_path=ctx.obj['config'], overrides=overrides)
    except ConfigError as e:
        _fail(str(e), EXIT_INVALID)
    except RemediationToolError as e:
        _fail(f"Failed to initialize remediation tool: {e}", EXIT_FAILED)

    configure_logging(tool.config["logging"].get("level", "INFO"), verbose=ctx.obj['verbose'])

    inventory = ctx.obj.get('inventory')
    if inventory:
        try:
            tool.load_inventory(inventory)
        except (ConfigError, DuplicateTargetError) as e:
            _fail(str(e), EXIT_INVALID)
    return tool


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', help="Path to configuration file")
@click.option('--inventory', '-i', envvar="REMEDIATION_TOOL_INVENTORY",
              help="Path to target inventory file")
@click.option('--verbose', '-v', is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], inventory: Optional[str], verbose: bool):
    """
    Compliance Remediation Tool

    Runs staged remediation plans (provision, audit, remediate, restore,
    re-audit) against a fleet of hosts and records before/after compliance
    evidence.
    """
    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['inventory'] = inventory
    ctx.obj['verbose'] = verbose


@cli.command()
@click.argument('plan', type=click.Path(dir_okay=False))
@click.option('--targets', '-t', 'selector', help="Comma-separated target ids or tags (default: all)")
@click.option('--resume', '-r', help="Resume a previous run, skipping its completed work")
@click.option('--inventory', help="Path to target inventory file")
@click.option('--max-workers', type=click.IntRange(min=1), help="Targets processed concurrently")
@click.option('--task-timeout', type=click.FloatRange(min=0, min_open=True),
              help="Seconds allowed per task call")
@click.option('--lockstep', is_flag=True, default=None,
              help="Finish each stage on every target before starting the next")
@click.pass_context
def run(ctx, plan: str, selector: Optional[str], resume: Optional[str], inventory: Optional[str],
        max_workers: Optional[int], task_timeout: Optional[float], lockstep: Optional[bool]):
    """
    Run a remediation plan against the selected targets.

    Exit code 0 means every target completed, 1 that at least one target
    was aborted or partially failed, 2 that the plan or configuration is
    invalid.
    """
    if inventory:
        ctx.obj['inventory'] = inventory

    executor_overrides = {}
    if max_workers is not None:
        executor_overrides['max_workers'] = max_workers
    if task_timeout is not None:
        executor_overrides['task_timeout'] = task_timeout
    if lockstep:
        executor_overrides['lockstep'] = True

    tool = _create_tool(ctx, {'executor': executor_overrides} if executor_overrides else None)
    if not ctx.obj.get('inventory') and not resume:
        _fail("No inventory given; use --inventory or REMEDIATION_TOOL_INVENTORY", EXIT_INVALID)

    console.print(Panel(
        f"[bold]Plan:[/bold] {plan}\n"
        f"[bold]Targets:[/bold] {selector or 'all'}\n"
        + (f"[bold]Resuming:[/bold] {resume}\n" if resume else "")
        + f"[bold]Evidence:[/bold] {tool.evidence_root}",
        title="Remediation Run"
    ))

    try:
        summary = tool.run(plan, selector=selector, resume=resume)
    except (PlanError, ConfigError, UnknownTargetError) as e:
        _fail(str(e), EXIT_INVALID)
    except LedgerWriteError as e:
        _fail(f"Run stopped, ledger write failed: {e}", EXIT_FAILED)

    _display_run_summary(summary)
    sys.exit(summary.exit_code)


@cli.group()
def plan():
    """Validate and inspect remediation plans."""
    pass


@plan.command('validate')
@click.argument('plan_file', type=click.Path(dir_okay=False))
@click.pass_context
def validate_plan(ctx, plan_file: str):
    """Check a plan file without running it."""
    tool = _create_tool(ctx)
    try:
        execution_plan = tool.validate_plan(plan_file)
    except PlanError as e:
        _fail(str(e), EXIT_INVALID)

    task_count = sum(len(stage.tasks) for stage in execution_plan.stages())
    console.print(f"[green]✓ Plan '{execution_plan.name}' is valid[/green] "
                  f"({len(execution_plan)} stages, {task_count} tasks)")


@plan.command('show')
@click.argument('plan_file', type=click.Path(dir_okay=False))
@click.pass_context
def show_plan(ctx, plan_file: str):
    """Show the stages and tasks of a plan."""
    tool = _create_tool(ctx)
    try:
        execution_plan = tool.validate_plan(plan_file)
    except PlanError as e:
        _fail(str(e), EXIT_INVALID)

    table = Table(title=f"Plan: {execution_plan.name}")
    table.add_column("Stage", style="bold")
    table.add_column("Policy")
    table.add_column("Task ID", style="dim")
    table.add_column("Task")

    for stage in execution_plan.stages():
        if not stage.tasks:
            table.add_row(stage.name, stage.policy.value, "", "[dim](no tasks)[/dim]")
        for index, task in enumerate(stage.tasks):
            table.add_row(
                stage.name if index == 0 else "",
                stage.policy.value if index == 0 else "",
                task.id,
                task.describe()
            )

    console.print(table)
    pair = execution_plan.evidence_pair()
    if pair:
        console.print(f"Evidence: [bold]{pair[0]}[/bold] → [bold]{pair[1]}[/bold]")
    else:
        console.print("[yellow]Plan has no baseline/verification scan pair; no compliance delta will be produced[/yellow]")


@cli.group()
def targets():
    """Inspect the target inventory."""
    pass


@targets.command('list')
@click.option('--tag', help="Only targets carrying this tag")
@click.pass_context
def list_targets(ctx, tag: Optional[str]):
    """List targets of the inventory."""
    tool = _create_tool(ctx)
    if not ctx.obj.get('inventory'):
        _fail("No inventory given; use --inventory or REMEDIATION_TOOL_INVENTORY", EXIT_INVALID)

    selected = tool.registry.list(tag=tag)
    if not selected:
        console.print("[yellow]No targets found[/yellow]")
        return

    table = Table(title="Targets")
    table.add_column("ID", style="bold")
    table.add_column("Address")
    table.add_column("Port", justify="right")
    table.add_column("Transport")
    table.add_column("User")
    table.add_column("Tags")
    for target in selected:
        table.add_row(target.id, target.address, str(target.port), target.transport.value,
                      target.credentials.username, ", ".join(target.tags))
    console.print(table)


@cli.group()
def ledger():
    """Inspect the run ledger."""
    pass


@ledger.command('runs')
@click.pass_context
def list_runs(ctx):
    """List recorded runs, most recent first."""
    tool = _create_tool(ctx)
    runs = tool.list_runs()
    if not runs:
        console.print("[yellow]No runs recorded[/yellow]")
        return

    table = Table(title="Runs")
    table.add_column("Run ID", style="dim")
    table.add_column("Plan")
    table.add_column("Started")
    table.add_column("Finished")
    table.add_column("Targets", justify="right")
    table.add_column("Result")
    table.add_column("Resumed from", style="dim")

    for summary in runs:
        if summary.finished_at is None:
            result = "[yellow]unfinished[/yellow]"
        elif summary.exit_code == EXIT_OK:
            result = "[green]completed[/green]"
        else:
            result = "[red]failures[/red]"
        table.add_row(
            summary.run_id,
            summary.plan_name,
            summary.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            summary.finished_at.strftime("%Y-%m-%d %H:%M:%S") if summary.finished_at else "",
            str(len(summary.targets)),
            result,
            summary.resumed_from or ""
        )
    console.print(table)


@ledger.command('show')
@click.argument('run_id')
@click.option('--target', help="Only records of this target")
@click.option('--stage', help="Only records of this stage")
@click.pass_context
def show_ledger(ctx, run_id: str, target: Optional[str], stage: Optional[str]):
    """Show the run records of a run."""
    tool = _create_tool(ctx)
    summary = tool.get_run(run_id)
    if summary is None:
        _fail(f"Unknown run: {run_id}", EXIT_INVALID)

    records = tool.query_records(run_id=run_id, target_id=target, stage=stage)
    table = Table(title=f"Run {run_id} ({summary.plan_name})")
    table.add_column("Target", style="bold")
    table.add_column("Stage")
    table.add_column("Task", style="dim")
    table.add_column("Outcome")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", max_width=60)

    for record in records:
        color = OUTCOME_COLORS.get(record.outcome.value, "white")
        duration = (record.finished_at - record.started_at).total_seconds()
        table.add_row(
            record.target_id,
            record.stage,
            record.task_id,
            f"[{color}]{record.outcome.value.upper()}[/{color}]",
            f"{duration:.1f}s",
            record.detail
        )
    console.print(table)

    if summary.targets:
        _display_target_states(summary)


@cli.command()
@click.argument('before', type=click.Path(exists=True, dir_okay=False))
@click.argument('after', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', help="Write the delta to a file (.json, .html or .pdf)")
@click.pass_context
def diff(ctx, before: str, after: str, output: Optional[str]):
    """
    Compare two compliance scans.

    Accepts ScanResult JSON files written by a run or XCCDF results XML.
    """
    tool = _create_tool(ctx)
    try:
        delta = tool.diff_files(before, after)
    except ScannerError as e:
        _fail(str(e), EXIT_INVALID)

    _display_delta(delta)

    if output:
        fmt = Path(output).suffix.lstrip('.').lower() or "json"
        try:
            path = tool.report_generator.generate_report(delta, fmt, output)
        except ValueError as e:
            _fail(str(e), EXIT_INVALID)
        console.print(f"[green]Delta written to {path}[/green]")


def _display_target_states(summary: RunSummary):
    """Display the terminal state of every target of a run."""
    table = Table(title="Targets")
    table.add_column("Target", style="bold")
    table.add_column("State")
    table.add_column("Failed stage")
    table.add_column("Reason", max_width=50)
    table.add_column("Evidence", style="dim")

    for state in summary.targets:
        color = STATE_COLORS.get(state.state, "white")
        table.add_row(
            state.target_id,
            f"[{color}]{state.state.value.upper()}[/{color}]",
            state.failed_stage or "",
            state.reason or "",
            state.evidence_dir or ""
        )
    console.print(table)


def _display_delta(delta: ComplianceDelta, title: Optional[str] = None):
    """Display a compliance delta, listing regressions separately."""
    summary = delta.summary
    table = Table(title=title or f"Compliance Delta: {delta.target_id}")
    table.add_column("Metric", style="bold")
    table.add_column("Rules", justify="right")
    table.add_row("Improved", f"[green]{summary.improved}[/green]")
    table.add_row("Regressed", f"[red]{summary.regressed}[/red]" if summary.regressed else "0")
    table.add_row("Still passing", str(summary.unchanged_pass))
    table.add_row("Still failing", f"[yellow]{summary.unchanged_fail}[/yellow]" if summary.unchanged_fail else "0")
    table.add_row("Other", str(summary.other))
    console.print(table)

    if delta.regressions:
        console.print("\n[red bold]Regressions:[/red bold]")
        for rule in delta.regressions:
            console.print(f"  • {rule.rule_id}" + (f" ({rule.title})" if rule.title else ""))
    if delta.lost_passes:
        console.print("\n[red]Passed before, now error or not applicable:[/red]")
        for rule in delta.lost_passes:
            console.print(f"  • {rule.rule_id}: {rule.after.value}")


def _display_run_summary(summary: RunSummary):
    """Display the outcome of a run."""
    _display_target_states(summary)

    for target_id, delta in summary.deltas.items():
        _display_delta(delta, title=f"Compliance Delta: {target_id}")

    if summary.cancelled:
        console.print("\n[yellow]⚠ Run was cancelled[/yellow]")
    if summary.all_completed:
        console.print("\n[green]✓ All targets completed[/green]")
    else:
        failed = [t.target_id for t in summary.targets if t.state != TargetState.COMPLETED]
        console.print(f"\n[yellow]⚠ {len(failed)} target(s) did not complete: {', '.join(failed)}[/yellow]")
    console.print(f"Run ID: {summary.run_id}")
    console.print(f"Evidence: {summary.evidence_dir}")


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
