"""settle command line interface.

Usage:
    settle ping [-H HOST] [-G GROUP]   # Check SSH connectivity
    settle plan [-o plan.json]         # Show what would change
    settle apply                       # Converge hosts to the declarations
    settle clean [--yes]               # Remove every declared resource
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError, LogFormat
from .executor import ExecutionResult
from .graph import DependencyError
from .main import run_with_signals, setup_logging
from .planner import Plan
from .reconciler import Reconciler
from .resources import ActionType
from .spec_loader import SpecLoadError
from .state import StateError

# Failures that abort a command before any remote change
PIPELINE_ERRORS = (SpecLoadError, DependencyError, StateError, ConfigurationError)

ACTION_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.DELETE: "-",
    ActionType.NO_OP: " ",
}


def make_reconciler(config: Config) -> Reconciler:
    """Build the reconciler for a command."""
    return Reconciler(config)


def _run(reconciler: Reconciler, operation: Any) -> Any:
    try:
        return asyncio.run(run_with_signals(reconciler, operation))
    except PIPELINE_ERRORS as e:
        raise click.ClickException(str(e)) from e


def echo_plan(plan: Plan) -> None:
    """Print one block per action: id, action, reason, type, layer and config."""
    for action in plan.actions:
        resource = plan.graph.get_resource(action.resource_id)
        click.echo(f"{ACTION_SYMBOLS[action.type]} {action.resource_id} ({action.type.value})")
        click.echo(f"    reason: {action.reason}")
        if resource is not None:
            click.echo(f"    type:   {resource.type}")
            click.echo(f"    layer:  {resource.layer.label}")
            click.echo(f"    config: {json.dumps(resource.config, sort_keys=True)}")

    summary = plan.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete, {summary['no_op']} unchanged."
    )


def echo_result(result: ExecutionResult, verb: str) -> None:
    click.echo(
        f"\n{verb} finished in {result.duration_seconds:.1f}s: "
        f"{result.success_count} succeeded, {result.failure_count} failed"
    )
    if not result.success:
        raise click.ClickException(f"{verb} failed: {result.error}")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="settle")
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="State document path (env: SETTLE_STATE_FILE)",
)
@click.option(
    "--hosts-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Host inventory file (env: SETTLE_HOSTS_FILE)",
)
@click.option(
    "--resources-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory of resource declarations (env: SETTLE_RESOURCES_DIR)",
)
@click.option(
    "--log-format",
    type=click.Choice([f.value for f in LogFormat]),
    default=None,
    help="Log output format (env: SETTLE_LOG_FORMAT)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log remote commands and their output")
@click.pass_context
def cli(
    ctx: click.Context,
    state_file: Path | None,
    hosts_file: Path | None,
    resources_dir: Path | None,
    log_format: str | None,
    verbose: bool,
) -> None:
    """settle: declarative host configuration over SSH.

    \b
    Quick Start:
        settle ping        # Check that every host is reachable
        settle plan        # Preview changes
        settle apply       # Apply them
    """
    try:
        config = Config.from_env().with_overrides(
            state_file=state_file,
            hosts_file=hosts_file,
            resources_dir=resources_dir,
            log_format=LogFormat(log_format) if log_format else None,
            log_level="DEBUG" if verbose else None,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_format, config.log_level)
    ctx.obj = config


# =============================================================================
# Commands
# =============================================================================


@cli.command()
@click.option("--host", "-H", "host_name", default=None, help="Only ping the host with this name")
@click.option("--group", "-G", default=None, help="Only ping hosts in this group")
@click.pass_obj
def ping(config: Config, host_name: str | None, group: str | None) -> None:
    """Check SSH connectivity to hosts."""
    reconciler = make_reconciler(config)
    report = _run(reconciler, lambda: reconciler.ping(name=host_name, group=group))

    if not report.results:
        click.echo("No hosts found")
        return

    for result in report.results:
        if result.success:
            click.secho(f"ok    {result.host}", fg="green")
        else:
            click.secho(f"FAIL  {result.host}: {result.error}", fg="red")

    click.echo(f"\nPing results: {report.success_count} succeeded, {report.failure_count} failed")
    if not report.all_reachable:
        raise click.ClickException(f"{report.failure_count} host(s) unreachable")


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the plan as JSON to this file",
)
@click.pass_obj
def plan(config: Config, output: Path | None) -> None:
    """Show the actions apply would take."""
    reconciler = make_reconciler(config)
    try:
        computed = reconciler.plan()
    except PIPELINE_ERRORS as e:
        raise click.ClickException(str(e)) from e

    echo_plan(computed)

    if output is not None:
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(json.dumps(computed.to_dict(), indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            raise click.ClickException(f"Failed to write plan to {output}: {e}") from e
        click.echo(f"Plan written to {output}")


@cli.command()
@click.pass_obj
def apply(config: Config) -> None:
    """Apply the declarations to the hosts."""
    reconciler = make_reconciler(config)
    result = _run(reconciler, reconciler.apply)
    echo_result(result, "Apply")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def clean(config: Config, yes: bool) -> None:
    """Remove every declared resource from the hosts."""
    reconciler = make_reconciler(config)
    try:
        workspace = reconciler.load()
    except PIPELINE_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if not yes:
        click.confirm(f"Destroy {len(workspace.graph)} resources?", abort=True)

    result = _run(reconciler, lambda: reconciler.clean(workspace))
    echo_result(result, "Clean")
