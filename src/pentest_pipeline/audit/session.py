"""Audit facade coordinating the per-attempt logger and the metrics tracker."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from pentest_pipeline.audit.logger import AgentLogger, save_prompt_snapshot
from pentest_pipeline.audit.metrics import MetricsTracker, UnitResult
from pentest_pipeline.audit.paths import AuditPaths, format_timestamp
from pentest_pipeline.orchestrator.concurrency import SessionMutex

logger = logging.getLogger(__name__)

_metrics_mutex = SessionMutex()


class AuditSession:
    """Audit trail of one unit execution inside a session.

    Parallel units each get their own instance; updates to the shared
    ``session.json`` are serialized through a module-level mutex keyed by
    session id.
    """

    def __init__(
        self,
        *,
        session_id: str,
        web_url: str,
        audit_root: Path,
        debug_transcript: bool = True,
    ) -> None:
        if not session_id:
            raise ValueError("session_id is required")
        if not web_url:
            raise ValueError("web_url is required")
        self.paths = AuditPaths(root=Path(audit_root), session_id=session_id, web_url=web_url)
        self.debug_transcript = debug_transcript
        self.tracker = MetricsTracker(self.paths)
        self.current_logger: AgentLogger | None = None
        self._initialized = False

    @property
    def session_id(self) -> str:
        return self.paths.session_id

    @property
    def session_dir(self) -> Path:
        return self.paths.session_dir

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with _metrics_mutex.hold(self.session_id):
            await asyncio.to_thread(self.paths.ensure)
            await asyncio.to_thread(self.tracker.initialize)
        self._initialized = True

    async def start_unit(self, unit: str, prompt: str, attempt: int = 1) -> AgentLogger:
        """Open the attempt log; the prompt snapshot is saved on the first attempt only."""

        await self.initialize()
        if attempt == 1:
            await asyncio.to_thread(save_prompt_snapshot, self.paths, unit, prompt)

        if self.current_logger is not None:
            await self.current_logger.close()
        self.current_logger = AgentLogger(
            self.paths,
            unit,
            attempt,
            debug_transcript=self.debug_transcript,
        )
        await self.current_logger.open()

        async with _metrics_mutex.hold(self.session_id):
            await asyncio.to_thread(self.tracker.reload)
            await asyncio.to_thread(self.tracker.start_unit, unit, attempt)

        await self.current_logger.log_event(
            "agent_start",
            {"unit": unit, "attempt": attempt, "timestamp": format_timestamp()},
        )
        return self.current_logger

    @property
    def debug_log_path(self) -> Path | None:
        return self.current_logger.debug_log_path if self.current_logger else None

    async def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        if self.current_logger is None:
            raise RuntimeError("No active attempt logger; call start_unit() first.")
        await self.current_logger.log_event(event_type, data)

    async def end_unit(self, unit: str, result: UnitResult) -> None:
        """Close the attempt log and fold the result into ``session.json``."""

        if self.current_logger is not None:
            await self.current_logger.log_event(
                "agent_end",
                {
                    "unit": unit,
                    "attempt": result.attempt,
                    "success": result.success,
                    "duration_ms": result.duration_ms,
                    "cost_usd": result.cost_usd,
                    "checkpoint": result.checkpoint,
                    "timestamp": format_timestamp(),
                },
            )
            await self.current_logger.close()
            self.current_logger = None

        await self.initialize()
        async with _metrics_mutex.hold(self.session_id):
            await asyncio.to_thread(self.tracker.reload)
            await asyncio.to_thread(self.tracker.end_unit, unit, result)

    async def mark_rolled_back(self, units: list[str]) -> None:
        if not units:
            return
        await self.initialize()
        async with _metrics_mutex.hold(self.session_id):
            await asyncio.to_thread(self.tracker.reload)
            await asyncio.to_thread(self.tracker.mark_rolled_back, units)
        logger.info("Marked %d unit(s) as rolled back in audit logs", len(units))

    async def record_refusal(self, unit: str, error: Exception, kind: str) -> None:
        await self.initialize()
        async with _metrics_mutex.hold(self.session_id):
            await asyncio.to_thread(self.tracker.reload)
            await asyncio.to_thread(self.tracker.record_refusal, unit, str(error), kind)
        logger.info("Recorded refused run of %s (%s)", unit, kind)

    async def update_session_status(self, status: str) -> None:
        await self.initialize()
        async with _metrics_mutex.hold(self.session_id):
            await asyncio.to_thread(self.tracker.reload)
            await asyncio.to_thread(self.tracker.update_session_status, status)

    async def get_metrics(self) -> dict[str, Any]:
        await self.initialize()
        async with _metrics_mutex.hold(self.session_id):
            await asyncio.to_thread(self.tracker.reload)
            return self.tracker.snapshot()
