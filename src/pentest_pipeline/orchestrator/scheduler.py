"""Phase driver: sequential phases, parallel fan-out and whole-run walks."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pentest_pipeline.audit.paths import format_duration
from pentest_pipeline.orchestrator.checkpoint import CheckpointOrchestrator
from pentest_pipeline.orchestrator.deliverables import (
    summarize_evidence,
    validate_queue_and_deliverable,
)
from pentest_pipeline.orchestrator.errors import PipelineError, UnitFailedError
from pentest_pipeline.orchestrator.models import (
    PhaseFailure,
    PhaseResult,
    Session,
    UnitOutcome,
)
from pentest_pipeline.orchestrator.registry import (
    PHASE_ORDER,
    PHASES,
    PhaseSpec,
    counterpart_of,
    is_exploit_unit,
    validate_phase,
    validate_unit_range,
    vuln_type_of,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExploitEligibility:
    unit: str
    eligible: bool
    reason: str
    queue_data: dict[str, Any] | None = None
    nothing_to_exploit: bool = False


class PhaseScheduler:
    """Run phases through a `CheckpointOrchestrator`.

    Parallel phases use settle-all semantics: a failing unit is reported in
    the phase result and never cancels its siblings.
    """

    def __init__(
        self,
        orchestrator: CheckpointOrchestrator,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.settings = orchestrator.settings
        self._sleep = sleep

    async def run_phase(self, phase: str, session: Session) -> PhaseResult:
        spec = validate_phase(phase)
        started = time.monotonic()
        result = PhaseResult(phase=spec.name)
        logger.info("Starting phase %s (%s)", spec.name, "parallel" if spec.parallel else "sequential")
        try:
            if spec.parallel:
                await self._run_parallel(spec, session, result)
            else:
                await self._run_sequential(spec, session, result)
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _run_sequential(self, spec: PhaseSpec, session: Session, result: PhaseResult) -> None:
        for unit in spec.units:
            session = await self.store.get_session(session.id)
            if session.is_done(unit):
                logger.debug("Skipping %s, already done", unit)
                continue
            try:
                outcome = await self.orchestrator.run_unit(unit, session)
            except PipelineError as error:
                result.failed.append(PhaseFailure(unit=unit, error=str(error)))
                raise
            _record_outcome(result, outcome)

    async def _run_parallel(self, spec: PhaseSpec, session: Session, result: PhaseResult) -> None:
        session = await self.store.get_session(session.id)
        pending = [unit for unit in spec.units if unit not in session.completed_units]
        queues: dict[str, dict[str, Any] | None] = {}

        exploit_phase = any(is_exploit_unit(unit) for unit in spec.units)
        if exploit_phase and not self.settings.orchestrator.skip_exploitation:
            launchable: list[str] = []
            for unit in pending:
                eligibility = await asyncio.to_thread(self.check_exploit_eligibility, unit, session)
                if eligibility.eligible:
                    launchable.append(unit)
                    queues[unit] = eligibility.queue_data
                    continue
                logger.info("Not scheduling %s: %s", unit, eligibility.reason)
                if eligibility.nothing_to_exploit:
                    await self.store.mark_skipped(session.id, unit)
                    result.skipped.append(unit)
            pending = launchable

        if not pending:
            logger.info("Phase %s has nothing to run", spec.name)
            return

        semaphore = asyncio.Semaphore(self.settings.orchestrator.max_parallel)
        stagger = self.settings.orchestrator.stagger_seconds

        async def launch(index: int, unit: str) -> UnitOutcome:
            if index and stagger:
                await self._sleep(index * stagger)
            async with semaphore:
                return await self.orchestrator.run_unit(
                    unit,
                    session,
                    parallel=True,
                    queue_data=queues.get(unit),
                )

        settled = await asyncio.gather(
            *(launch(index, unit) for index, unit in enumerate(pending)),
            return_exceptions=True,
        )
        for unit, outcome in zip(pending, settled, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, PipelineError):
                    logger.error("%s raised unexpectedly", unit, exc_info=outcome)
                result.failed.append(PhaseFailure(unit=unit, error=str(outcome)))
            else:
                _record_outcome(result, outcome)

        await self._consolidate(spec, session)

    def check_exploit_eligibility(self, unit: str, session: Session) -> ExploitEligibility:
        """An exploit unit runs only after its analysis unit produced a non-empty queue."""

        counterpart = counterpart_of(unit)
        if counterpart not in session.completed_units:
            return ExploitEligibility(unit, False, f"{counterpart} has not completed")
        check = validate_queue_and_deliverable(vuln_type_of(unit), Path(session.workspace))
        if not check.ok:
            return ExploitEligibility(unit, False, check.error or "queue validation failed")
        if not check.should_exploit:
            return ExploitEligibility(
                unit,
                False,
                "no vulnerabilities queued",
                nothing_to_exploit=True,
            )
        return ExploitEligibility(
            unit,
            True,
            f"{check.vulnerability_count} vulnerabilities queued",
            queue_data=check.data,
        )

    async def _consolidate(self, spec: PhaseSpec, session: Session) -> None:
        workspace = self.orchestrator.workspace_for(session)
        try:
            commit = await workspace.commit_all(f"Phase {spec.name}: consolidated")
        except PipelineError:
            logger.exception("Consolidating commit for phase %s failed", spec.name)
            return
        logger.info("Phase %s consolidated at %s", spec.name, commit[:8])

    async def run_all(
        self,
        session: Session,
        *,
        on_phase: Callable[[PhaseResult], None] | None = None,
    ) -> list[PhaseResult]:
        """Walk every phase in order, stopping when a sequential phase fails.

        `on_phase` sees each result as soon as its phase ends, before later
        phases touch the workspace.
        """

        results: list[PhaseResult] = []
        for phase in PHASE_ORDER:
            session = await self.store.get_session(session.id)
            spec = PHASES[phase]
            if all(session.is_done(unit) for unit in spec.units):
                logger.debug("Phase %s already done", phase)
                continue
            result = await self.run_phase(phase, session)
            results.append(result)
            if on_phase is not None:
                on_phase(result)
            if result.failed:
                logger.warning(
                    "Phase %s finished with %d failed unit(s): %s",
                    phase,
                    len(result.failed),
                    ", ".join(result.failed_units),
                )
        return results

    async def run_unit_range(self, start: str, end: str, session: Session) -> list[UnitOutcome]:
        """Run units from `start` to `end` inclusive, one at a time in rank order."""

        outcomes: list[UnitOutcome] = []
        for spec in validate_unit_range(start, end):
            session = await self.store.get_session(session.id)
            if session.is_done(spec.name):
                continue
            if is_exploit_unit(spec.name) and not self.settings.orchestrator.skip_exploitation:
                eligibility = await asyncio.to_thread(self.check_exploit_eligibility, spec.name, session)
                if not eligibility.eligible:
                    logger.info("Not running %s: %s", spec.name, eligibility.reason)
                    if eligibility.nothing_to_exploit:
                        await self.store.mark_skipped(session.id, spec.name)
                    continue
            outcomes.append(await self.orchestrator.run_unit(spec.name, session))
        return outcomes


def _record_outcome(result: PhaseResult, outcome: UnitOutcome) -> None:
    result.outcomes[outcome.unit] = outcome
    if outcome.skipped:
        result.skipped.append(outcome.unit)
    else:
        result.completed.append(outcome.unit)


def render_phase_summary(
    result: PhaseResult,
    workspace: Path,
    *,
    skip_exploitation: bool = False,
) -> list[str]:
    """Render a per-unit table for one phase result."""

    spec = PHASES[result.phase]
    failures = {failure.unit: failure.error for failure in result.failed}
    lines = [
        f"Phase {result.phase}: completed={len(result.completed)} "
        f"failed={len(result.failed)} skipped={len(result.skipped)} "
        f"duration={format_duration(result.duration_ms)}",
    ]
    for unit in spec.units:
        if unit in result.completed:
            status = "completed"
        elif unit in failures:
            status = "FAILED"
        elif unit in result.skipped:
            status = "skipped"
        else:
            status = "not run"
        detail = ""
        outcome = result.outcomes.get(unit)
        if is_exploit_unit(unit):
            summary = summarize_evidence(
                vuln_type_of(unit),
                workspace,
                skip_exploitation=skip_exploitation,
            )
            detail = f"{summary.result} ({summary.reason})"
        elif outcome is not None and outcome.vulnerability_count is not None:
            detail = f"{outcome.vulnerability_count} queued"
        if unit in failures:
            detail = failures[unit]
        line = f"  {unit:<16} {status:<10}"
        if outcome is not None and not outcome.skipped:
            line += f" attempts={outcome.attempts} cost=${outcome.cost_usd:.4f}"
        if detail:
            line += f" {detail}"
        lines.append(line)
    return lines


def resume_hint(error: UnitFailedError) -> str:
    if error.checkpoint:
        return f"Resume from unit '{error.unit}' (checkpoint {error.checkpoint[:8]})"
    return f"Resume from unit '{error.unit}'"
