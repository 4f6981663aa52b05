"""CLI entrypoint for pentest-pipeline."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from pentest_pipeline import __version__
from pentest_pipeline.orchestrator.context import UnitContextFilter
from pentest_pipeline.orchestrator.controllers import (
    AgentCommand,
    PhaseCommand,
    PipelineCliController,
    PipelineCommandResult,
    RangeCommand,
    ReconcileCommand,
    RollbackCommand,
    RunCommand,
    SessionsCommand,
    StatusCommand,
    ValidateQueueCommand,
)
from pentest_pipeline.orchestrator.errors import PipelineError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(unit)s#%(attempt)s] %(name)s: %(message)s"

T = TypeVar("T")

store_option = click.option(
    "--store-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Session store file. Defaults to PENTEST_PIPELINE_STORE_PATH.",
)
session_option = click.option(
    "--session",
    "session_id",
    required=True,
    help="Session id or unambiguous id prefix.",
)


@click.group()
@click.version_option(version=__version__, prog_name="pentest-pipeline")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def pentest_pipeline(verbose: bool) -> None:
    """Checkpointed multi-agent security assessment pipeline."""

    _configure_logging(verbose)


@pentest_pipeline.command("run")
@click.option("--web-url", required=True, help="Target web application URL.")
@click.option(
    "--repo",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    required=True,
    help="Source repository of the target.",
)
@click.option(
    "--target-repo",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=None,
    help="Working copy the units operate on. Defaults to --repo.",
)
@store_option
def run(web_url: str, repo: Path, target_repo: Path | None, store_path: Path | None) -> None:
    """Create or resume a session for the target and run every phase."""

    _emit_result(
        _call(
            lambda: CONTROLLER.run(
                RunCommand(
                    web_url=web_url,
                    repo=repo,
                    target_repo=target_repo,
                    store_path=store_path,
                ),
            ),
        ),
        failure="Assessment run did not complete.",
    )


@pentest_pipeline.command("phase")
@click.argument("name")
@session_option
@store_option
def phase(name: str, session_id: str, store_path: Path | None) -> None:
    """Run one phase (parallel phases fan out with settle-all semantics)."""

    _emit_result(
        _call(
            lambda: CONTROLLER.run_phase(
                PhaseCommand(session=session_id, phase=name, store_path=store_path),
            ),
        ),
        failure=f"Phase {name} finished with failures.",
    )


@pentest_pipeline.command("agent")
@click.argument("name")
@session_option
@click.option("--rerun", is_flag=True, default=False, help="Rerun a completed unit.")
@click.option(
    "--cascade",
    is_flag=True,
    default=False,
    help="With --rerun, also forget every unit after the unit's prerequisite.",
)
@store_option
def agent(name: str, session_id: str, rerun: bool, cascade: bool, store_path: Path | None) -> None:
    """Run a single unit."""

    if cascade and not rerun:
        raise click.UsageError("--cascade requires --rerun.")
    _emit_result(
        _call(
            lambda: CONTROLLER.run_agent(
                AgentCommand(
                    session=session_id,
                    unit=name,
                    rerun=rerun,
                    cascade=cascade,
                    store_path=store_path,
                ),
            ),
        ),
        failure=f"Unit {name} failed.",
    )


@pentest_pipeline.command("range")
@click.argument("start")
@click.argument("end")
@session_option
@store_option
def unit_range(start: str, end: str, session_id: str, store_path: Path | None) -> None:
    """Run units from START to END inclusive, sequentially."""

    _emit_result(
        _call(
            lambda: CONTROLLER.run_range(
                RangeCommand(session=session_id, start=start, end=end, store_path=store_path),
            ),
        ),
        failure=f"Range {start}..{end} stopped on a failure.",
    )


@pentest_pipeline.command("rollback")
@click.argument("name")
@session_option
@store_option
def rollback(name: str, session_id: str, store_path: Path | None) -> None:
    """Reset the workspace to NAME's checkpoint and forget later units."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.rollback(
                RollbackCommand(session=session_id, unit=name, store_path=store_path),
            ),
        ),
    )


@pentest_pipeline.command("status")
@click.option("--session", "session_id", default=None, help="Session id or prefix.")
@store_option
def status(session_id: str | None, store_path: Path | None) -> None:
    """Show progress of a session (latest session by default)."""

    _emit_lines(
        _call(lambda: CONTROLLER.status(StatusCommand(session=session_id, store_path=store_path))),
    )


@pentest_pipeline.command("agents")
def agents() -> None:
    """List units grouped by phase."""

    _emit_lines(CONTROLLER.list_agents())


@pentest_pipeline.command("validate-queue")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
def validate_queue(path: Path) -> None:
    """Parse an exploitation queue file with the tolerant JSON pipeline."""

    _emit_result(
        CONTROLLER.validate_queue(ValidateQueueCommand(path=path)),
        failure="Queue validation failed.",
    )


@pentest_pipeline.command("reconcile")
@session_option
@click.option(
    "--skip-stale-running",
    is_flag=True,
    default=False,
    help="Do not fail units that look stuck in running state.",
)
@store_option
def reconcile(session_id: str, skip_stale_running: bool, store_path: Path | None) -> None:
    """Sync the session store with what the audit log recorded."""

    _emit_lines(
        _call(
            lambda: CONTROLLER.reconcile(
                ReconcileCommand(
                    session=session_id,
                    include_stale_running=not skip_stale_running,
                    store_path=store_path,
                ),
            ),
        ),
    )


@pentest_pipeline.command("sessions")
@store_option
def sessions(store_path: Path | None) -> None:
    """List known sessions, most recently active first."""

    _emit_lines(_call(lambda: CONTROLLER.sessions(SessionsCommand(store_path=store_path))))


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )
    context_filter = UnitContextFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(item, UnitContextFilter) for item in handler.filters):
            handler.addFilter(context_filter)


def _call(action: Callable[[], T]) -> T:
    try:
        return action()
    except PipelineError as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.ClickException(f"Configuration error: {error}") from error


def _emit_result(result: PipelineCommandResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def main() -> None:
    pentest_pipeline()


if __name__ == "__main__":  # pragma: no cover
    main()
