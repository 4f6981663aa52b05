"""Subprocess-based task runtime for CLI agents that stream NDJSON events."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import tempfile
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from pentest_pipeline.orchestrator.backend.base import (
    ASSISTANT,
    RESULT,
    TOOL_END,
    TOOL_START,
    RuntimeEvent,
    RuntimeRequest,
)
from pentest_pipeline.orchestrator.errors import TaskRuntimeError
from pentest_pipeline.orchestrator.models import FailureClass

logger = logging.getLogger(__name__)

STREAM_LIMIT_BYTES = 16 * 1024 * 1024
STDERR_TAIL_CHARS = 4000


class CliTaskRuntime:
    """Execute the configured command template once per unit attempt.

    Supported placeholders: ``{prompt}``, ``{prompt_file}``, ``{workspace}``,
    ``{max_turns}``, ``{allowed_tools}`` and ``{unit}``.
    """

    def __init__(self, command_template: str, *, env: dict[str, str] | None = None) -> None:
        self.command_template = command_template
        self.env = env

    async def execute(self, request: RuntimeRequest) -> AsyncIterator[RuntimeEvent]:
        with tempfile.TemporaryDirectory(prefix="pentest-prompt-") as prompt_dir:
            prompt_file = Path(prompt_dir) / f"{request.unit}.txt"
            prompt_file.write_text(request.prompt, "utf-8")
            argv = build_run_args(self.command_template, request, prompt_file)
            async for event in self._stream(argv, request):
                yield event

    async def _stream(self, argv: list[str], request: RuntimeRequest) -> AsyncIterator[RuntimeEvent]:
        env = dict(self.env) if self.env is not None else os.environ.copy()
        env["PENTEST_PIPELINE_UNIT"] = request.unit
        env["PENTEST_PIPELINE_SESSION_ID"] = request.session_id
        env["PENTEST_PIPELINE_ATTEMPT"] = str(request.attempt)

        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=request.workspace,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as error:
            raise TaskRuntimeError(
                f"Task runtime command not found: {argv[0]}",
                failure_class=FailureClass.BACKEND_NON_RETRYABLE,
                retryable=False,
                context={"command": argv[0]},
            ) from error
        except OSError as error:
            raise TaskRuntimeError(
                f"Task runtime failed to start: {error}",
                failure_class=FailureClass.BACKEND_TRANSIENT,
                context={"command": argv[0]},
            ) from error

        if process.stdout is None or process.stderr is None:
            process.kill()
            await process.wait()
            raise TaskRuntimeError(
                "Task runtime started without captured output streams.",
                failure_class=FailureClass.BACKEND_TRANSIENT,
                context={"command": argv[0]},
            )
        stderr_task = asyncio.create_task(process.stderr.read())
        saw_result = False
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                for event in parse_stream_line(line):
                    saw_result = saw_result or event.is_result
                    yield event
            exit_code = await process.wait()
            stderr_text = (await stderr_task).decode("utf-8", errors="replace")
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if stderr_text.strip():
            logger.debug("Runtime stderr for %s: %s", request.unit, stderr_text[-STDERR_TAIL_CHARS:])
        if not saw_result:
            yield synthesize_result(
                exit_code=exit_code,
                stderr=stderr_text,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        elif exit_code != 0:
            # Result already reported; surface the exit status for classification.
            yield RuntimeEvent(
                type="process_exit",
                data={"exit_code": exit_code, "stderr": stderr_text[-STDERR_TAIL_CHARS:]},
            )


def build_run_args(command_template: str, request: RuntimeRequest, prompt_file: Path) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise TaskRuntimeError(
            "Task runtime command template is empty.",
            failure_class=FailureClass.BACKEND_NON_RETRYABLE,
            retryable=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(request.prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            workspace=shlex.quote(str(request.workspace)),
            max_turns=shlex.quote(str(request.max_turns)),
            allowed_tools=shlex.quote(request.allowed_tools),
            unit=shlex.quote(request.unit),
        )
    except (KeyError, IndexError) as error:
        raise TaskRuntimeError(
            f"Unsupported command template placeholder: {error}",
            failure_class=FailureClass.BACKEND_NON_RETRYABLE,
            retryable=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise TaskRuntimeError(
            "Task runtime command template rendered empty command.",
            failure_class=FailureClass.BACKEND_NON_RETRYABLE,
            retryable=False,
        )
    return argv


def parse_stream_line(line: str) -> list[RuntimeEvent]:
    """Turn one stdout line into zero or more normalized events.

    Accepts both the flat event shape (``{"type": "tool_start", ...}``) and the
    stream-json shape where assistant/user turns wrap content blocks.
    Non-JSON lines become assistant text.
    """

    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return [RuntimeEvent(type=ASSISTANT, data={"content": line})]
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        return [RuntimeEvent(type=ASSISTANT, data={"content": line})]

    event_type = payload["type"]
    if event_type == RESULT:
        return [RuntimeEvent(type=RESULT, data=_normalize_result(payload))]
    if event_type == "system":
        return []
    if isinstance(payload.get("message"), dict):
        return _expand_message(event_type, payload["message"])
    data = {key: value for key, value in payload.items() if key != "type"}
    return [RuntimeEvent(type=event_type, data=data)]


def _expand_message(event_type: str, message: dict[str, Any]) -> list[RuntimeEvent]:
    content = message.get("content")
    if isinstance(content, str):
        return [RuntimeEvent(type=ASSISTANT, data={"content": content})] if event_type == ASSISTANT else []
    events: list[RuntimeEvent] = []
    for block in content or []:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text" and event_type == ASSISTANT:
            events.append(RuntimeEvent(type=ASSISTANT, data={"content": block.get("text", "")}))
        elif kind == "tool_use":
            events.append(
                RuntimeEvent(
                    type=TOOL_START,
                    data={
                        "tool_name": block.get("name", ""),
                        "parameters": block.get("input", {}),
                        "tool_use_id": block.get("id"),
                    },
                ),
            )
        elif kind == "tool_result":
            events.append(
                RuntimeEvent(
                    type=TOOL_END,
                    data={
                        "tool_use_id": block.get("tool_use_id"),
                        "result": block.get("content"),
                        "is_error": bool(block.get("is_error", False)),
                    },
                ),
            )
    return events


def _normalize_result(payload: dict[str, Any]) -> dict[str, Any]:
    subtype = payload.get("subtype")
    if "success" in payload:
        success = bool(payload["success"])
    else:
        success = not payload.get("is_error", False) and subtype in (None, "success")
    error = payload.get("error")
    if not success and not error:
        error = subtype or payload.get("result") or "Task runtime reported failure"
    message = f"{error or ''} {payload.get('result') or ''}".lower()
    return {
        "success": success,
        "error": error,
        "subtype": subtype,
        "cost_usd": float(payload.get("cost_usd", payload.get("total_cost_usd", 0.0)) or 0.0),
        "duration_ms": int(payload.get("duration_ms", 0) or 0),
        "turns": int(payload.get("turns", payload.get("num_turns", 0)) or 0),
        "api_error": bool(payload.get("api_error", "api error" in message)),
        "max_turns_reached": subtype == "error_max_turns",
        "result": payload.get("result"),
    }


def synthesize_result(*, exit_code: int, stderr: str, duration_ms: int) -> RuntimeEvent:
    """Build the terminal event for a process that exited without reporting one."""

    tail = stderr.strip()[-STDERR_TAIL_CHARS:]
    success = exit_code == 0
    return RuntimeEvent(
        type=RESULT,
        data={
            "success": success,
            "error": None if success else (tail or f"Task runtime exited with code {exit_code}"),
            "subtype": "synthesized",
            "cost_usd": 0.0,
            "duration_ms": duration_ms,
            "turns": 0,
            "api_error": "api error" in tail.lower(),
            "max_turns_reached": False,
            "exit_code": exit_code,
            "stderr": tail,
        },
    )
