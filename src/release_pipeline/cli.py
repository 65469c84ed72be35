"""Command-line interface for the release pipeline.

Commands:
    release-pipeline submit <artifact-ref>
    release-pipeline status <run-id>
    release-pipeline approve <stage-id> --actor <id>
    release-pipeline reject <stage-id> --actor <id>
    release-pipeline abort <run-id>
    release-pipeline reconcile [--once]

Exit Codes:
    0  - Success
    1  - Rejected: invalid input, terminal run/stage, or not authorized
    2  - Run or stage not found
"""

import asyncio
import json
import sys
from enum import IntEnum
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

import click
import structlog

from release_pipeline import __version__
from release_pipeline.approval.models import ApprovalDecision, ApprovalOutcome
from release_pipeline.bootstrap import PipelineServices, open_services
from release_pipeline.config import get_settings
from release_pipeline.definition import ConfigurationError
from release_pipeline.logging_config import configure_logging
from release_pipeline.orchestrator import RunTerminalError, SubmissionRejectedError
from release_pipeline.sources.artifacts import ArtifactResolutionError
from release_pipeline.state.machine import (
    RunNotFoundError,
    StageNotFoundError,
    VersionConflictError,
)
from release_pipeline.state.models import PipelineRun

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ExitCode(IntEnum):
    """Exit codes for CLI commands."""

    SUCCESS = 0
    REJECTED = 1
    NOT_FOUND = 2


def error_exit(message: str, exit_code: ExitCode = ExitCode.REJECTED) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(exit_code)


def _with_services(action: Callable[[PipelineServices], Awaitable[T]]) -> T:
    """Run an async action against freshly opened services."""
    try:
        settings = get_settings()
    except Exception as e:
        error_exit(f"invalid configuration: {e}")
    configure_logging(settings.log_level, settings.log_format)

    async def _main() -> T:
        async with open_services(settings) as services:
            return await action(services)

    try:
        return asyncio.run(_main())
    except ConfigurationError as e:
        error_exit(f"invalid pipeline definition: {e}")


def _format_run(run: PipelineRun) -> str:
    lines = [
        f"Run:       {run.run_id}",
        f"Artifact:  {run.artifact_ref}",
        f"Status:    {run.status.value}",
    ]
    if run.reason:
        lines.append(f"Reason:    {run.reason}")
    if run.abort_requested and not run.is_terminal:
        lines.append("Abort:     requested")
    for stage in run.stages:
        line = f"  {stage.stage_name:<12} {stage.environment:<12} {stage.status.value}"
        if stage.reason:
            line += f"  ({stage.reason})"
        lines.append(line)
    return "\n".join(lines)


@click.group(
    name="release-pipeline",
    help="Gated, progressive promotion of build artifacts.",
    epilog="Use 'release-pipeline <command> --help' for command-specific help.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=__version__, prog_name="release-pipeline")
def cli() -> None:
    pass


@cli.command(name="submit", help="Submit an artifact for promotion.")
@click.argument("artifact_ref")
def submit_command(artifact_ref: str) -> None:
    """Create a run and print its ID.

    \b
    ARTIFACT_REF: Artifact reference (e.g., "registry/app:1.4.2").
    """

    async def action(services: PipelineServices) -> PipelineRun:
        return await services.orchestrator.submit(artifact_ref)

    try:
        run = _with_services(action)
    except SubmissionRejectedError as e:
        error_exit(f"submission rejected: {e.reason}")
    except ArtifactResolutionError as e:
        error_exit(f"artifact builder unavailable: {e}")

    click.echo(run.run_id)


@cli.command(name="status", help="Show the status of a run.")
@click.argument("run_id")
@click.option(
    "--output",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def status_command(run_id: str, output: str) -> None:
    async def action(services: PipelineServices) -> PipelineRun:
        return await services.orchestrator.status(run_id)

    try:
        run = _with_services(action)
    except RunNotFoundError:
        error_exit(f"run {run_id} not found", ExitCode.NOT_FOUND)

    if output == "json":
        click.echo(json.dumps(run.model_dump(mode="json"), indent=2))
    else:
        click.echo(_format_run(run))


def _decide(stage_id: str, actor: str, decision: ApprovalDecision) -> None:
    async def action(services: PipelineServices) -> ApprovalOutcome:
        return await services.orchestrator.decide(stage_id, actor, decision)

    try:
        outcome = _with_services(action)
    except (RunNotFoundError, StageNotFoundError):
        error_exit(f"no approval for stage {stage_id}", ExitCode.NOT_FOUND)
    except VersionConflictError:
        error_exit("run changed concurrently; retry")

    if not outcome.accepted:
        error_exit(outcome.error or f"decision on {stage_id} not accepted")

    click.echo(f"{stage_id}: {outcome.record.decision.value} by {outcome.record.actor}")


_actor_option = click.option(
    "--actor",
    required=True,
    help="Identity of the deciding approver.",
    metavar="IDENTITY",
)


@cli.command(name="approve", help="Approve promotion of a stage.")
@click.argument("stage_id")
@_actor_option
def approve_command(stage_id: str, actor: str) -> None:
    _decide(stage_id, actor, ApprovalDecision.APPROVED)


@cli.command(name="reject", help="Reject promotion of a stage.")
@click.argument("stage_id")
@_actor_option
def reject_command(stage_id: str, actor: str) -> None:
    _decide(stage_id, actor, ApprovalDecision.REJECTED)


@cli.command(name="abort", help="Request that a run be aborted.")
@click.argument("run_id")
def abort_command(run_id: str) -> None:
    async def action(services: PipelineServices) -> PipelineRun:
        return await services.orchestrator.abort(run_id)

    try:
        _with_services(action)
    except RunNotFoundError:
        error_exit(f"run {run_id} not found", ExitCode.NOT_FOUND)
    except RunTerminalError as e:
        error_exit(str(e))
    except VersionConflictError:
        error_exit("run changed concurrently; retry")

    click.echo(f"abort requested for {run_id}")


@cli.command(name="reconcile", help="Advance active runs until interrupted.")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run a single reconcile cycle and exit.",
)
def reconcile_command(once: bool) -> None:
    async def action(services: PipelineServices) -> Any:
        if once:
            return await services.reconcile_loop.run_once()
        await services.reconcile_loop.run_forever()
        return None

    try:
        report = _with_services(action)
    except KeyboardInterrupt:
        logger.info("Reconcile interrupted")
        return

    if report is not None:
        click.echo(
            f"advanced={len(report.advanced)} idle={len(report.idle)} "
            f"failed={len(report.failed)}"
        )
        if report.failed:
            sys.exit(ExitCode.REJECTED)


if __name__ == "__main__":
    cli()
