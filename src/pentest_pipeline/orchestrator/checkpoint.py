"""Checkpoint orchestrator: run one unit to a terminal outcome.

Every attempt starts from a checkpoint commit and ends either with a success
commit or with a rollback to that checkpoint. Deliverables directories are
preserved across rollbacks by the workspace adapter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import string
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from pentest_pipeline.audit.metrics import UnitResult
from pentest_pipeline.audit.session import AuditSession
from pentest_pipeline.config import Settings
from pentest_pipeline.orchestrator.backend.base import (
    ASSISTANT,
    RESULT,
    TOOL_END,
    TOOL_START,
    RuntimeRequest,
    TaskRuntime,
)
from pentest_pipeline.orchestrator.context import UnitContext, set_attempt, unit_context
from pentest_pipeline.orchestrator.contracts import atomic_write_json
from pentest_pipeline.orchestrator.deliverables import (
    DeliverableCheck,
    load_queue,
    queue_path,
    validate_unit_output,
)
from pentest_pipeline.orchestrator.errors import (
    CheckpointNotFoundError,
    PipelineError,
    TaskRuntimeError,
    UnitFailedError,
    ValidationError,
    wrap_error,
)
from pentest_pipeline.orchestrator.failure_classifier import (
    classify_runtime_failure,
    retry_delay_seconds,
)
from pentest_pipeline.orchestrator.models import FailureClass, Session, SessionStatus, UnitOutcome
from pentest_pipeline.orchestrator.registry import (
    UNITS,
    UnitSpec,
    check_prerequisites,
    is_exploit_unit,
    is_vuln_unit,
    validate_unit,
    vuln_type_of,
)
from pentest_pipeline.orchestrator.session_store import SessionStore, archive_deliverables
from pentest_pipeline.orchestrator.validator import merge_queues
from pentest_pipeline.orchestrator.workspace import GitWorkspace

logger = logging.getLogger(__name__)

SESSION_LIMIT_MARKER = "session limit reached"

SleepFn = Callable[[float], Awaitable[None]]


class PromptLoader(Protocol):
    """Produces the prompt text handed to the task runtime for one unit."""

    def load(self, unit: str, variables: dict[str, str]) -> str:
        """Render the prompt for `unit`."""


class TemplatePromptLoader:
    """Render ``{prompts_dir}/{unit}.txt`` with `string.Template` placeholders.

    Unknown placeholders are left untouched. Units without a template get a
    one-line instruction built from the same variables.
    """

    def __init__(self, prompts_dir: Path | None = None) -> None:
        self.prompts_dir = Path(prompts_dir) if prompts_dir else None

    def load(self, unit: str, variables: dict[str, str]) -> str:
        if self.prompts_dir is not None:
            template_path = self.prompts_dir / f"{unit}.txt"
            if template_path.is_file():
                template = string.Template(template_path.read_text("utf-8"))
                return template.safe_substitute(variables)
        return (
            f"You are the {variables.get('display_name', unit)} of a security assessment "
            f"of {variables.get('web_url', '')}. The source code is in "
            f"{variables.get('workspace', '.')}; save your deliverables under deliverables/."
        )


@dataclass(slots=True)
class AttemptReport:
    """What one runtime invocation reported, before validation."""

    result: dict[str, Any]
    error: TaskRuntimeError | None = None

    @property
    def cost_usd(self) -> float:
        return float(self.result.get("cost_usd") or 0.0)


class CheckpointOrchestrator:
    """Run units with checkpoint, validate, commit or roll back semantics."""

    def __init__(
        self,
        *,
        store: SessionStore,
        runtime: TaskRuntime,
        settings: Settings,
        prompt_loader: PromptLoader | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.runtime = runtime
        self.settings = settings
        self.prompt_loader = prompt_loader or TemplatePromptLoader(settings.orchestrator.prompts_dir)
        self._sleep = sleep
        self._rng = rng

    def workspace_for(self, session: Session) -> GitWorkspace:
        git = self.settings.git
        return GitWorkspace(
            Path(session.workspace),
            max_retries=git.max_retries,
            retry_base_seconds=git.retry_base_seconds,
            preserved_dirs=git.preserved_dirs,
        )

    def audit_for(self, session: Session) -> AuditSession:
        return self.store.audit_for(
            session,
            debug_transcript=self.settings.orchestrator.debug_transcript,
        )

    async def run_unit(
        self,
        name: str,
        session: Session,
        *,
        max_attempts: int | None = None,
        allow_rerun: bool = False,
        parallel: bool = False,
        queue_data: dict[str, Any] | None = None,
    ) -> UnitOutcome:
        """Execute unit `name` until it succeeds or runs out of attempts.

        Raises `UnitFailedError` when the unit fails terminally; the unit is
        recorded as failed in the session store and in the audit metrics
        before the error propagates. Runs refused before any attempt are
        written to the audit log's refusals.
        """

        spec = validate_unit(name)
        attempts_allowed = max_attempts or self.settings.orchestrator.max_attempts

        if self.settings.orchestrator.skip_exploitation and is_exploit_unit(name):
            logger.info("Skipping %s (exploitation disabled)", name)
            await self.store.mark_skipped(session.id, name)
            return UnitOutcome(unit=name, success=True, skipped=True)

        session = await self.store.get_session(session.id)
        try:
            if name in session.completed_units and not allow_rerun:
                raise PipelineError(
                    f"Unit '{name}' has already been completed. Use --rerun {name} for explicit rerun.",
                    kind="validation",
                    context={"unit": name, "session_id": session.id},
                )
            check_prerequisites(session, name)
        except PipelineError as error:
            await self.audit_for(session).record_refusal(name, error, error.kind)
            raise

        workspace = self.workspace_for(session)
        await workspace.ensure_repository()
        session = await self.store.mark_running(session.id, name)

        context = UnitContext(
            session_id=session.id,
            unit=name,
            workspace=workspace.path,
            web_url=session.web_url,
        )
        with unit_context(context):
            try:
                if not parallel and not allow_rerun and await workspace.has_changes():
                    await workspace.clean("uncommitted changes before run")
                if is_exploit_unit(name) and queue_data is None:
                    queue_data = await asyncio.to_thread(load_queue, vuln_type_of(name), workspace.path)
                prompt = self.prompt_loader.load(name, self._prompt_variables(spec, session, queue_data))
            except PipelineError as error:
                await self.store.mark_failed(session.id, name)
                await self.audit_for(session).record_refusal(name, error, error.kind)
                raise UnitFailedError(
                    f"Unit '{name}' could not start: {error}",
                    unit=name,
                    attempts=0,
                    cause=error,
                ) from error
            return await self._attempt_loop(spec, session, workspace, prompt, attempts_allowed)

    async def _attempt_loop(
        self,
        spec: UnitSpec,
        session: Session,
        workspace: GitWorkspace,
        prompt: str,
        max_attempts: int,
    ) -> UnitOutcome:
        name = spec.name
        audit = self.audit_for(session)
        total_cost = 0.0
        started = time.monotonic()
        checkpoint: str | None = None

        for attempt in range(1, max_attempts + 1):
            set_attempt(attempt)
            attempt_started = time.monotonic()
            prior_queue: dict[str, Any] | None = None
            report: AttemptReport | None = None
            try:
                checkpoint = await workspace.create_checkpoint(spec.display_name, attempt)
                await self.store.record_checkpoint(session.id, name, checkpoint)
                await audit.start_unit(name, prompt, attempt)
                if is_vuln_unit(name):
                    prior_queue = await asyncio.to_thread(load_queue, vuln_type_of(name), workspace.path)

                report = await self._invoke_runtime(spec, session, workspace, prompt, attempt, audit)
                total_cost += report.cost_usd
                if report.error is not None and report.error.fatal:
                    raise report.error

                check = await asyncio.to_thread(
                    validate_unit_output,
                    name,
                    workspace.path,
                    audit.session_dir,
                )
                if not check.ok:
                    if report.error is not None:
                        raise report.error
                    raise ValidationError(
                        check.error or f"Output validation failed for {name}",
                        context={"unit": name, "attempt": attempt},
                    )
                if report.error is not None:
                    logger.warning(
                        "%s reported %s but produced valid output; accepting",
                        name,
                        report.error.failure_class.value,
                    )
                if prior_queue:
                    check = await asyncio.to_thread(
                        self._merge_prior_queue,
                        name,
                        workspace.path,
                        prior_queue,
                        check,
                    )

                commit = await workspace.commit_success(spec.display_name)
                duration_ms = int((time.monotonic() - attempt_started) * 1000)
                await audit.end_unit(
                    name,
                    UnitResult(
                        attempt=attempt,
                        success=True,
                        duration_ms=duration_ms,
                        cost_usd=report.cost_usd,
                        checkpoint=commit,
                        is_final_attempt=True,
                    ),
                )
                updated = await self.store.mark_completed(session.id, name, commit)
                await self._finish_session_if_complete(updated, audit)
                logger.info("%s completed on attempt %d (%s)", name, attempt, commit[:8])
                return UnitOutcome(
                    unit=name,
                    success=True,
                    checkpoint=commit,
                    attempts=attempt,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    cost_usd=total_cost,
                    vulnerability_count=check.vulnerability_count if is_vuln_unit(name) else None,
                    validation={
                        "ok": check.ok,
                        "should_exploit": check.should_exploit,
                        "vulnerability_count": check.vulnerability_count,
                    },
                )
            except Exception as exc:  # noqa: BLE001
                error = wrap_error(exc, context={"unit": name, "attempt": attempt})
                final = not error.retryable or attempt == max_attempts
                await self._record_failed_attempt(
                    audit,
                    name,
                    attempt,
                    error,
                    duration_ms=int((time.monotonic() - attempt_started) * 1000),
                    cost_usd=report.cost_usd if report is not None else 0.0,
                    final=final,
                )
                await self._rollback_after_failure(workspace, name, attempt)
                if final:
                    await self.store.mark_failed(session.id, name)
                    raise UnitFailedError(
                        f"Unit '{name}' failed after {attempt} attempt(s): {error}",
                        unit=name,
                        attempts=attempt,
                        checkpoint=checkpoint,
                        cause=error,
                    ) from exc
                failure_class = (
                    error.failure_class
                    if isinstance(error, TaskRuntimeError)
                    else FailureClass.OUTPUT_INVALID
                )
                delay = retry_delay_seconds(failure_class, attempt, rng=self._rng)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    name,
                    attempt,
                    max_attempts,
                    error,
                    delay,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _invoke_runtime(
        self,
        spec: UnitSpec,
        session: Session,
        workspace: GitWorkspace,
        prompt: str,
        attempt: int,
        audit: AuditSession,
    ) -> AttemptReport:
        request = RuntimeRequest(
            prompt=prompt,
            workspace=workspace.path,
            unit=spec.name,
            session_id=session.id,
            allowed_tools=self.settings.orchestrator.allowed_tools,
            max_turns=self.settings.orchestrator.max_turns,
            attempt=attempt,
        )
        result: dict[str, Any] = {}
        exit_info: dict[str, Any] = {}
        session_limit_hit = False
        turn = 0
        try:
            async for event in self.runtime.execute(request):
                if event.type == ASSISTANT:
                    turn += 1
                    content = str(event.data.get("content", ""))
                    session_limit_hit = session_limit_hit or SESSION_LIMIT_MARKER in content.lower()
                    await audit.log_event("llm_response", {"turn": turn, "content": content})
                elif event.type in (TOOL_START, TOOL_END):
                    await audit.log_event(event.type, dict(event.data))
                elif event.type == RESULT:
                    result = dict(event.data)
                elif event.type == "process_exit":
                    exit_info = dict(event.data)
                else:
                    logger.debug("Ignoring runtime event %s", event.type)
        except TaskRuntimeError as error:
            return AttemptReport(result={"success": False, "error": str(error)}, error=error)

        if session_limit_hit:
            return AttemptReport(
                result=result,
                error=TaskRuntimeError(
                    "Session limit reached",
                    failure_class=FailureClass.SESSION_LIMIT,
                    fatal=True,
                    context={"unit": spec.name},
                ),
            )
        if not result:
            result = {"success": False, "error": "Task runtime produced no result event"}
        if result.get("success") and not exit_info:
            return AttemptReport(result=result)
        return AttemptReport(result=result, error=self._classify(spec.name, result, exit_info))

    def _classify(
        self,
        unit: str,
        result: dict[str, Any],
        exit_info: dict[str, Any],
    ) -> TaskRuntimeError:
        message = "\n".join(
            str(part)
            for part in (result.get("error"), result.get("stderr"), exit_info.get("stderr"))
            if part
        ) or "Task runtime reported failure"
        exit_code = exit_info.get("exit_code", result.get("exit_code"))
        if result.get("max_turns_reached"):
            failure_class = FailureClass.MAX_TURNS
            details: dict[str, Any] = {"unit": unit, "failure_class": failure_class.value}
            return TaskRuntimeError(message, failure_class=failure_class, context=details)
        classification = classify_runtime_failure(
            unit=unit,
            message=message,
            exit_code=exit_code,
            transient_exit_codes=self.settings.orchestrator.transient_exit_codes,
        )
        return TaskRuntimeError(
            message,
            failure_class=classification.failure_class,
            fatal=classification.fatal,
            retryable=classification.retryable,
            context=classification.to_event_details(unit=unit),
        )

    async def _record_failed_attempt(
        self,
        audit: AuditSession,
        name: str,
        attempt: int,
        error: PipelineError,
        *,
        duration_ms: int,
        cost_usd: float,
        final: bool,
    ) -> None:
        if audit.current_logger is not None:
            await audit.log_event("error", {"attempt": attempt, **error.to_dict()})
        await audit.end_unit(
            name,
            UnitResult(
                attempt=attempt,
                success=False,
                duration_ms=duration_ms,
                cost_usd=cost_usd,
                error=str(error),
                is_final_attempt=final,
            ),
        )

    async def _rollback_after_failure(self, workspace: GitWorkspace, name: str, attempt: int) -> None:
        try:
            await workspace.rollback(f"{name} attempt {attempt} failed")
        except PipelineError as error:
            logger.error("Rollback after %s attempt %d failed: %s", name, attempt, error)

    @staticmethod
    def _merge_prior_queue(
        name: str,
        workspace: Path,
        prior: dict[str, Any],
        check: DeliverableCheck,
    ) -> DeliverableCheck:
        """Fold findings from an earlier attempt into the freshly written queue."""

        merged = merge_queues(prior, check.data)
        if not merged.existing_count or merged.data == check.data:
            return check
        atomic_write_json(queue_path(vuln_type_of(name), workspace), merged.data)
        logger.info(
            "%s queue merged with earlier findings: %d total (%d duplicates dropped)",
            name,
            merged.final_count,
            merged.deduplicated_count,
        )
        return DeliverableCheck(
            ok=True,
            should_exploit=merged.final_count > 0,
            vulnerability_count=merged.final_count,
            data=merged.data,
        )

    async def _finish_session_if_complete(self, session: Session, audit: AuditSession) -> None:
        if session.status is not SessionStatus.COMPLETED:
            return
        await audit.update_session_status(SessionStatus.COMPLETED.value)
        await asyncio.to_thread(archive_deliverables, session)

    def _prompt_variables(
        self,
        spec: UnitSpec,
        session: Session,
        queue_data: dict[str, Any] | None,
    ) -> dict[str, str]:
        variables = {
            "unit": spec.name,
            "display_name": spec.display_name,
            "web_url": session.web_url,
            "repo_path": session.repo_path,
            "workspace": session.workspace,
            "session_id": session.id,
        }
        if is_exploit_unit(spec.name):
            entries = (queue_data or {}).get("vulnerabilities") or []
            variables["vulnerabilities"] = json.dumps(entries, indent=2, ensure_ascii=False)
            variables["vulnerability_count"] = str(len(entries))
        return variables

    # Rollback and rerun

    async def rollback_to(self, target: str, session: Session) -> tuple[Session, list[str]]:
        """Reset the workspace to `target`'s checkpoint and forget later units."""

        validate_unit(target)
        session = await self.store.get_session(session.id)
        checkpoint = session.checkpoints.get(target)
        if not checkpoint:
            raise CheckpointNotFoundError(
                f"No checkpoint found for unit '{target}' in session history",
                context={"unit": target, "available": sorted(session.checkpoints)},
            )
        workspace = self.workspace_for(session)
        await workspace.rollback_to_commit(checkpoint)
        updated, removed = await self.store.rollback_to_unit(session.id, target)
        await self.audit_for(session).mark_rolled_back(removed)
        logger.info("Rolled back to %s; %d later unit(s) forgotten", target, len(removed))
        return updated, removed

    async def rerun_unit(self, name: str, session: Session, *, cascade: bool = False) -> UnitOutcome:
        """Rerun `name` from its latest completed prerequisite's checkpoint.

        Isolated reruns forget only `name`. Cascading reruns forget every unit
        ranked after that prerequisite.
        """

        spec = validate_unit(name)
        session = await self.store.get_session(session.id)
        anchor = _latest_completed_prerequisite(spec, session)
        workspace = self.workspace_for(session)
        audit = self.audit_for(session)

        if cascade and anchor is not None:
            session, _ = await self.rollback_to(anchor, session)
        elif cascade:
            await workspace.rollback_to_commit(await workspace.first_commit())
            removed = [unit for unit in UNITS if unit in session.checkpoints or session.is_done(unit)]

            def forget_all(candidate: Session) -> None:
                candidate.completed_units = []
                candidate.failed_units = []
                candidate.skipped_units = []
                candidate.checkpoints = {}

            session = await self.store.update_session(session.id, forget_all)
            await audit.mark_rolled_back(removed)
        else:
            ref = session.checkpoints[anchor] if anchor is not None else await workspace.first_commit()
            await workspace.rollback_to_commit(ref)
            session = await self.store.remove_unit(session.id, name)
            await audit.mark_rolled_back([name])

        return await self.run_unit(name, session, allow_rerun=True)


def _latest_completed_prerequisite(spec: UnitSpec, session: Session) -> str | None:
    candidates = [
        name
        for name in spec.prerequisites
        if name in session.completed_units and name in session.checkpoints
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda name: UNITS[name].order)
