"""Append-only per-attempt event log with a human-readable debug transcript."""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

from pentest_pipeline.audit.paths import AuditPaths, format_timestamp, utc_now
from pentest_pipeline.orchestrator.contracts import atomic_write_text

HEADER_RULE = "=" * 40

EVENT_TYPES = frozenset(
    {"agent_start", "tool_start", "tool_end", "llm_response", "agent_end", "error"},
)


class AuditLoggerClosedError(RuntimeError):
    """Raised when an event is written to a closed logger."""


class AgentLogger:
    """Crash-safe NDJSON log for one (session, unit, attempt).

    Each record is written, flushed and fsynced before `log_event` returns, so a
    crash right after a logged call never loses that record.
    """

    def __init__(
        self,
        paths: AuditPaths,
        unit: str,
        attempt: int,
        *,
        debug_transcript: bool = True,
        started_at: datetime | None = None,
    ) -> None:
        self.paths = paths
        self.unit = unit
        self.attempt = attempt
        self.started_at = started_at or utc_now()
        self.log_path = paths.log_path(unit, attempt, self.started_at)
        self.debug_log_path: Path | None = (
            paths.debug_log_path(unit, attempt, self.started_at) if debug_transcript else None
        )
        self._stream: TextIO | None = None
        self._debug_stream: TextIO | None = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    async def open(self) -> None:
        if self.is_open:
            return
        self.paths.agents_dir.mkdir(parents=True, exist_ok=True)
        self._stream = self.log_path.open("a", encoding="utf-8")
        if self.debug_log_path is not None:
            self._debug_stream = self.debug_log_path.open("a", encoding="utf-8")
        header = self._header()
        await self._write(self._stream, header)
        if self._debug_stream is not None:
            await self._write(self._debug_stream, header)

    async def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        if self._stream is None:
            raise AuditLoggerClosedError(f"Logger for {self.unit} attempt {self.attempt} is closed")
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown audit event type: {event_type}")
        timestamp = format_timestamp()
        record = {"type": event_type, "timestamp": timestamp, "data": data}
        await self._write(self._stream, json.dumps(record, ensure_ascii=False, default=str) + "\n")
        if self._debug_stream is not None:
            line = _debug_line(event_type, timestamp, data)
            if line:
                await self._write(self._debug_stream, line)

    async def close(self) -> None:
        for stream in (self._stream, self._debug_stream):
            if stream is not None:
                await asyncio.to_thread(stream.close)
        self._stream = None
        self._debug_stream = None

    async def __aenter__(self) -> AgentLogger:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _header(self) -> str:
        return "\n".join(
            [
                HEADER_RULE,
                f"Agent: {self.unit}",
                f"Attempt: {self.attempt}",
                f"Started: {format_timestamp(self.started_at)}",
                f"Session: {self.paths.session_id}",
                f"Web URL: {self.paths.web_url}",
                HEADER_RULE,
                "",
            ],
        )

    @staticmethod
    async def _write(stream: TextIO, text: str) -> None:
        await asyncio.to_thread(_write_durable, stream, text)


def save_prompt_snapshot(paths: AuditPaths, unit: str, prompt: str) -> Path:
    """Persist the first-attempt prompt of a unit under ``prompts/{unit}.md``."""

    header = "\n".join(
        [
            f"# Prompt Snapshot: {unit}",
            "",
            f"**Session:** {paths.session_id}",
            f"**Web URL:** {paths.web_url}",
            f"**Saved:** {format_timestamp()}",
            "",
            "---",
            "",
        ],
    )
    path = paths.prompt_path(unit)
    atomic_write_text(path, header + prompt)
    return path


def _write_durable(stream: TextIO, text: str) -> None:
    stream.write(text)
    stream.flush()
    os.fsync(stream.fileno())


def _debug_line(event_type: str, timestamp: str, data: dict[str, Any]) -> str:
    if event_type == "llm_response":
        return f"[{timestamp}] ASSISTANT:\n{data.get('content', '')}\n\n"
    if event_type == "tool_start":
        parameters = json.dumps(data.get("parameters"), ensure_ascii=False, indent=2, default=str)
        return f"[{timestamp}] TOOL CALL: {data.get('tool_name', '')}\nInput: {parameters}\n\n"
    if event_type == "tool_end":
        result = data.get("result")
        text = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, indent=2, default=str)
        return f"[{timestamp}] TOOL RESULT:\n{text}\n\n"
    if event_type == "agent_start":
        return f"[{timestamp}] AGENT STARTED: {data.get('unit')} (Attempt {data.get('attempt')})\n\n"
    if event_type == "agent_end":
        return (
            f"[{timestamp}] AGENT ENDED: {data.get('unit')}\n"
            f"Success: {data.get('success')}, Cost: ${data.get('cost_usd', 0)}\n\n"
        )
    if event_type == "error":
        return f"[{timestamp}] ERROR: {data.get('message', '')}\n\n"
    return ""
