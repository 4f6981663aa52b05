from __future__ import annotations

import asyncio
import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from pentest_pipeline.orchestrator.backend import CliTaskRuntime, RuntimeRequest
from pentest_pipeline.orchestrator.backend.base import ASSISTANT, RESULT, TOOL_END, TOOL_START
from pentest_pipeline.orchestrator.backend.cli_backend import (
    build_run_args,
    parse_stream_line,
    synthesize_result,
)
from pentest_pipeline.orchestrator.errors import TaskRuntimeError
from pentest_pipeline.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Agent Command Rendering"),
]


def _request(tmp_path: Path, prompt: str = "map the target") -> RuntimeRequest:
    return RuntimeRequest(
        prompt=prompt,
        workspace=tmp_path,
        unit="recon",
        session_id="session-1",
        allowed_tools="Bash Read",
        max_turns=40,
    )


def test_build_run_args_quotes_each_placeholder(tmp_path: Path) -> None:
    request = _request(tmp_path, prompt="it's a \"quoted\" prompt")

    argv = build_run_args(
        "agent --unit {unit} --turns {max_turns} --tools {allowed_tools} -- {prompt}",
        request,
        tmp_path / "prompt.txt",
    )

    assert argv == [
        "agent",
        "--unit",
        "recon",
        "--turns",
        "40",
        "--tools",
        "Bash Read",
        "--",
        "it's a \"quoted\" prompt",
    ]


def test_build_run_args_renders_prompt_file_and_workspace(tmp_path: Path) -> None:
    prompt_file = tmp_path / "my prompt.txt"

    argv = build_run_args("agent -C {workspace} -f {prompt_file}", _request(tmp_path), prompt_file)

    assert argv == ["agent", "-C", str(tmp_path), "-f", str(prompt_file)]


def test_build_run_args_rejects_unknown_placeholder(tmp_path: Path) -> None:
    with pytest.raises(TaskRuntimeError, match="Unsupported command template placeholder") as raised:
        build_run_args("agent --model {model} {prompt}", _request(tmp_path), tmp_path / "p.txt")

    assert raised.value.retryable is False
    assert raised.value.failure_class is FailureClass.BACKEND_NON_RETRYABLE


def test_build_run_args_rejects_empty_template(tmp_path: Path) -> None:
    with pytest.raises(TaskRuntimeError, match="template is empty"):
        build_run_args("   ", _request(tmp_path), tmp_path / "p.txt")


def test_parse_stream_line_treats_plain_text_as_assistant_output() -> None:
    events = parse_stream_line("thinking about the login form")

    assert [(event.type, event.data) for event in events] == [
        (ASSISTANT, {"content": "thinking about the login form"}),
    ]


def test_parse_stream_line_accepts_flat_events() -> None:
    line = json.dumps({"type": TOOL_START, "tool_name": "Bash", "parameters": {"command": "ls"}})

    (event,) = parse_stream_line(line)

    assert event.type == TOOL_START
    assert event.data == {"tool_name": "Bash", "parameters": {"command": "ls"}}


def test_parse_stream_line_expands_message_blocks() -> None:
    assistant = json.dumps(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Running nmap"},
                    {"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {"command": "nmap"}},
                ],
            },
        },
    )
    user = json.dumps(
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "tu_1", "content": "80/tcp open"},
                    {"type": "text", "text": "ignored for user turns"},
                ],
            },
        },
    )

    assistant_events = parse_stream_line(assistant)
    user_events = parse_stream_line(user)

    assert [event.type for event in assistant_events] == [ASSISTANT, TOOL_START]
    assert assistant_events[0].data == {"content": "Running nmap"}
    assert assistant_events[1].data == {
        "tool_name": "Bash",
        "parameters": {"command": "nmap"},
        "tool_use_id": "tu_1",
    }
    assert [event.type for event in user_events] == [TOOL_END]
    assert user_events[0].data == {"tool_use_id": "tu_1", "result": "80/tcp open", "is_error": False}


def test_parse_stream_line_drops_system_lines() -> None:
    assert parse_stream_line(json.dumps({"type": "system", "subtype": "init"})) == []


def test_parse_stream_line_normalizes_result_events() -> None:
    line = json.dumps(
        {
            "type": "result",
            "subtype": "error_max_turns",
            "is_error": True,
            "total_cost_usd": 0.125,
            "duration_ms": 5400,
            "num_turns": 40,
        },
    )

    (event,) = parse_stream_line(line)

    assert event.is_result
    assert event.data["success"] is False
    assert event.data["error"] == "error_max_turns"
    assert event.data["max_turns_reached"] is True
    assert event.data["cost_usd"] == pytest.approx(0.125)
    assert event.data["turns"] == 40
    assert event.data["api_error"] is False


def test_parse_stream_line_flags_api_errors() -> None:
    line = json.dumps({"type": "result", "success": False, "error": "API Error: overloaded"})

    (event,) = parse_stream_line(line)

    assert event.data["api_error"] is True


def test_synthesize_result_uses_stderr_tail_for_failures() -> None:
    failed = synthesize_result(exit_code=137, stderr="  killed by signal\n", duration_ms=12)
    silent = synthesize_result(exit_code=2, stderr="", duration_ms=3)
    ok = synthesize_result(exit_code=0, stderr="", duration_ms=1)

    assert failed.type == RESULT
    assert failed.data["success"] is False
    assert failed.data["error"] == "killed by signal"
    assert failed.data["exit_code"] == 137
    assert silent.data["error"] == "Task runtime exited with code 2"
    assert ok.data["success"] is True
    assert ok.data["error"] is None


@pytest.mark.asyncio
async def test_runtime_synthesizes_result_when_process_reports_none(tmp_path: Path) -> None:
    script = "import sys; print('plain text'); sys.exit(3)"
    runtime = CliTaskRuntime(f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}")

    events = [event async for event in runtime.execute(_request(tmp_path))]

    assert [event.type for event in events] == [ASSISTANT, RESULT]
    assert events[0].data == {"content": "plain text"}
    assert events[1].data["success"] is False
    assert events[1].data["exit_code"] == 3
    assert events[1].data["error"] == "Task runtime exited with code 3"


@pytest.mark.asyncio
async def test_runtime_reports_missing_command(tmp_path: Path) -> None:
    runtime = CliTaskRuntime("pentest-pipeline-no-such-agent {prompt}")

    with pytest.raises(TaskRuntimeError, match="command not found") as raised:
        [event async for event in runtime.execute(_request(tmp_path))]

    assert raised.value.retryable is False


class _StreamlessProcess:
    stdout = None
    stderr = None
    returncode: int | None = None

    def __init__(self) -> None:
        self.killed = False

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode or 0


@pytest.mark.asyncio
async def test_runtime_without_output_streams_is_a_transient_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = _StreamlessProcess()

    async def fake_exec(*_args: object, **_kwargs: object) -> _StreamlessProcess:
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    runtime = CliTaskRuntime("agent {prompt}")

    with pytest.raises(TaskRuntimeError, match="without captured output streams") as raised:
        [event async for event in runtime.execute(_request(tmp_path))]

    assert raised.value.failure_class is FailureClass.BACKEND_TRANSIENT
    assert raised.value.retryable is True
    assert process.killed
