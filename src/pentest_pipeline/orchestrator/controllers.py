"""Controllers for pentest-pipeline CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from pentest_pipeline.audit.paths import format_duration
from pentest_pipeline.config import Settings
from pentest_pipeline.orchestrator.backend import CliTaskRuntime
from pentest_pipeline.orchestrator.checkpoint import CheckpointOrchestrator
from pentest_pipeline.orchestrator.errors import UnitFailedError
from pentest_pipeline.orchestrator.models import PhaseResult, Session
from pentest_pipeline.orchestrator.registry import (
    PHASE_ORDER,
    PHASES,
    UNITS,
    validate_phase,
    validate_unit,
)
from pentest_pipeline.orchestrator.scheduler import (
    PhaseScheduler,
    render_phase_summary,
    resume_hint,
)
from pentest_pipeline.orchestrator.session_store import SessionStore, session_progress
from pentest_pipeline.orchestrator.validator import validate_queue_json

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RunCommand:
    """CLI input for a full assessment run."""

    web_url: str
    repo: Path
    target_repo: Path | None = None
    store_path: Path | None = None


@dataclass(slots=True)
class PhaseCommand:
    session: str
    phase: str
    store_path: Path | None = None


@dataclass(slots=True)
class AgentCommand:
    """CLI input for running or rerunning one unit."""

    session: str
    unit: str
    rerun: bool = False
    cascade: bool = False
    store_path: Path | None = None


@dataclass(slots=True)
class RangeCommand:
    session: str
    start: str
    end: str
    store_path: Path | None = None


@dataclass(slots=True)
class RollbackCommand:
    session: str
    unit: str
    store_path: Path | None = None


@dataclass(slots=True)
class StatusCommand:
    session: str | None = None
    store_path: Path | None = None


@dataclass(slots=True)
class ValidateQueueCommand:
    path: Path


@dataclass(slots=True)
class ReconcileCommand:
    session: str
    include_stale_running: bool = True
    store_path: Path | None = None


@dataclass(slots=True)
class SessionsCommand:
    store_path: Path | None = None


@dataclass(slots=True)
class PipelineCommandResult:
    """Lines to render plus whether the command achieved its goal."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class _Services:
    settings: Settings
    store: SessionStore
    orchestrator: CheckpointOrchestrator
    scheduler: PhaseScheduler


class PipelineCliController:
    """Coordinates session, phase and unit operations for the CLI."""

    def run(self, command: RunCommand) -> PipelineCommandResult:
        services = _services(command.store_path)

        async def execute() -> PipelineCommandResult:
            session = await services.store.create_session(
                command.web_url,
                command.repo,
                command.target_repo,
            )
            lines = [f"Session: {session.id} target={session.workspace}"]

            def summarize(result: PhaseResult) -> None:
                lines.extend(
                    render_phase_summary(
                        result,
                        Path(session.workspace),
                        skip_exploitation=services.settings.orchestrator.skip_exploitation,
                    ),
                )

            try:
                results = await services.scheduler.run_all(session, on_phase=summarize)
            except UnitFailedError as error:
                lines.extend([f"Unit failed: {error}", resume_hint(error)])
                return PipelineCommandResult(lines=lines, success=False)
            session = await services.store.get_session(session.id)
            lines.append(_progress_line(session))
            return PipelineCommandResult(
                lines=lines,
                success=not any(result.failed for result in results),
            )

        return _run(execute())

    def run_phase(self, command: PhaseCommand) -> PipelineCommandResult:
        validate_phase(command.phase)
        services = _services(command.store_path)

        async def execute() -> PipelineCommandResult:
            session = await services.store.find_session(command.session)
            try:
                result = await services.scheduler.run_phase(command.phase, session)
            except UnitFailedError as error:
                return PipelineCommandResult(
                    lines=[f"Unit failed: {error}", resume_hint(error)],
                    success=False,
                )
            lines = render_phase_summary(
                result,
                Path(session.workspace),
                skip_exploitation=services.settings.orchestrator.skip_exploitation,
            )
            return PipelineCommandResult(lines=lines, success=not result.failed)

        return _run(execute())

    def run_agent(self, command: AgentCommand) -> PipelineCommandResult:
        validate_unit(command.unit)
        services = _services(command.store_path)

        async def execute() -> PipelineCommandResult:
            session = await services.store.find_session(command.session)
            try:
                if command.rerun:
                    outcome = await services.orchestrator.rerun_unit(
                        command.unit,
                        session,
                        cascade=command.cascade,
                    )
                else:
                    outcome = await services.orchestrator.run_unit(command.unit, session)
            except UnitFailedError as error:
                return PipelineCommandResult(
                    lines=[f"Unit failed: {error}", resume_hint(error)],
                    success=False,
                )
            if outcome.skipped:
                return PipelineCommandResult(lines=[f"{outcome.unit}: skipped"])
            return PipelineCommandResult(
                lines=[
                    f"{outcome.unit}: completed checkpoint={(outcome.checkpoint or '')[:8]} "
                    f"attempts={outcome.attempts} duration={format_duration(outcome.duration_ms)} "
                    f"cost=${outcome.cost_usd:.4f}",
                ],
            )

        return _run(execute())

    def run_range(self, command: RangeCommand) -> PipelineCommandResult:
        services = _services(command.store_path)

        async def execute() -> PipelineCommandResult:
            session = await services.store.find_session(command.session)
            lines: list[str] = []
            try:
                outcomes = await services.scheduler.run_unit_range(
                    command.start,
                    command.end,
                    session,
                )
            except UnitFailedError as error:
                return PipelineCommandResult(
                    lines=[f"Unit failed: {error}", resume_hint(error)],
                    success=False,
                )
            for outcome in outcomes:
                state = "skipped" if outcome.skipped else "completed"
                lines.append(f"{outcome.unit}: {state} attempts={outcome.attempts}")
            if not lines:
                lines.append(f"Nothing to run between {command.start} and {command.end}")
            return PipelineCommandResult(lines=lines)

        return _run(execute())

    def rollback(self, command: RollbackCommand) -> list[str]:
        services = _services(command.store_path)

        async def execute() -> list[str]:
            session = await services.store.find_session(command.session)
            updated, removed = await services.orchestrator.rollback_to(command.unit, session)
            lines = [f"Rolled back to {command.unit} ({updated.checkpoints[command.unit][:8]})"]
            if removed:
                lines.append(f"Forgotten units: {', '.join(removed)}")
            lines.append(_progress_line(updated))
            return lines

        return _run(execute())

    def status(self, command: StatusCommand) -> list[str]:
        services = _services(command.store_path)

        async def execute() -> list[str]:
            if command.session:
                session = await services.store.find_session(command.session)
            else:
                sessions = await services.store.list_sessions()
                if not sessions:
                    return ["No sessions found."]
                session = sessions[0]
            metrics = await services.store.audit_for(session).get_metrics()
            totals = metrics.get("metrics", {})
            lines = [
                f"Session: {session.id}",
                f"Target: {session.web_url} workspace={session.workspace}",
                _progress_line(session),
                f"Cost: ${float(totals.get('total_cost_usd', 0.0)):.4f} "
                f"duration={format_duration(int(totals.get('total_duration_ms', 0)))}",
            ]
            for phase in PHASE_ORDER:
                lines.append(f"{phase}:")
                for unit in PHASES[phase].units:
                    lines.append(f"  {_unit_marker(session, unit)} {unit}")
            return lines

        return _run(execute())

    def list_agents(self) -> list[str]:
        lines: list[str] = []
        for phase in PHASE_ORDER:
            spec = PHASES[phase]
            lines.append(f"{phase} ({'parallel' if spec.parallel else 'sequential'})")
            for name in spec.units:
                unit = UNITS[name]
                requires = ", ".join(unit.prerequisites) or "-"
                lines.append(f"  {unit.order:>2}. {name:<16} {unit.display_name} [requires: {requires}]")
        return lines

    def validate_queue(self, command: ValidateQueueCommand) -> PipelineCommandResult:
        try:
            raw = command.path.read_text("utf-8")
        except OSError as error:
            return PipelineCommandResult(lines=[f"Cannot read {command.path}: {error}"], success=False)
        validation = validate_queue_json(raw)
        if not validation.valid:
            return PipelineCommandResult(
                lines=[f"Invalid queue {command.path}: {validation.error}"],
                success=False,
            )
        return PipelineCommandResult(
            lines=[f"Valid queue {command.path}: vulnerabilities={validation.vulnerability_count}"],
        )

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        services = _services(command.store_path)

        async def execute() -> list[str]:
            session = await services.store.find_session(command.session)
            report = await services.store.reconcile_session(
                session.id,
                include_stale_running=command.include_stale_running,
            )
            if not report.changed:
                return [f"Session {session.id[:8]} is consistent with its audit log."]
            return [
                f"Reconciled session {session.id[:8]}:",
                f"  promoted: {', '.join(report.promotions) or '-'}",
                f"  demoted: {', '.join(report.demotions) or '-'}",
                f"  failed: {', '.join(report.failures) or '-'}",
            ]

        return _run(execute())

    def sessions(self, command: SessionsCommand) -> list[str]:
        services = _services(command.store_path)

        async def execute() -> list[str]:
            sessions = await services.store.list_sessions()
            if not sessions:
                return ["No sessions found."]
            return [
                f"{session.id[:8]} status={session.status.value} "
                f"progress={session_progress(session).percentage}% "
                f"url={session.web_url} last_activity={session.last_activity}"
                for session in sessions
            ]

        return _run(execute())


def _services(store_path: Path | None) -> _Services:
    settings = Settings.from_env(store_path=store_path)
    settings.validate()
    store = SessionStore(
        settings.store.store_path,
        locks=settings.locks,
        audit_root=settings.store.audit_root,
        stale_session_minutes=settings.store.stale_session_minutes,
        stale_unit_minutes=settings.store.stale_unit_minutes,
    )
    orchestrator = CheckpointOrchestrator(
        store=store,
        runtime=CliTaskRuntime(settings.orchestrator.runtime_command_template),
        settings=settings,
    )
    return _Services(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        scheduler=PhaseScheduler(orchestrator),
    )


def _run(coroutine: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coroutine)


def _progress_line(session: Session) -> str:
    progress = session_progress(session)
    return (
        f"Progress: {progress.completed_count}/{progress.total_units} "
        f"({progress.percentage}%) status={session.status.value} "
        f"failed={progress.failed_count}"
    )


def _unit_marker(session: Session, unit: str) -> str:
    if unit in session.completed_units:
        return "[x]"
    if unit in session.failed_units:
        return "[!]"
    if unit in session.running_units:
        return "[~]"
    if unit in session.skipped_units:
        return "[-]"
    return "[ ]"
