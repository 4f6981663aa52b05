"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from pentest_pipeline.config import (
    GitSettings,
    LockSettings,
    OrchestratorSettings,
    Settings,
    StoreSettings,
)
from pentest_pipeline.orchestrator.backend import CliTaskRuntime
from pentest_pipeline.orchestrator.backend.echo_agent import SCENARIO_ENV
from pentest_pipeline.orchestrator.checkpoint import CheckpointOrchestrator
from pentest_pipeline.orchestrator.session_store import SessionStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m pentest_pipeline.orchestrator.backend.echo_agent "
    "--unit {unit} --workspace {workspace} --prompt-file {prompt_file}"
)

WEB_URL = "https://target.example.com"


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Git repository with one initial commit holding README.md."""

    repo = tmp_path / "workspace"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "config", "user.email", "tests@example.com")
    git(repo, "config", "user.name", "Pipeline Tests")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# target app\n", "utf-8")
    (repo / "app.py").write_text("print('hello')\n", "utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    state = tmp_path / "state"
    return Settings(
        orchestrator=OrchestratorSettings(
            max_attempts=3,
            stagger_seconds=0.0,
            max_parallel=8,
            runtime_command_template=ECHO_AGENT_COMMAND_TEMPLATE,
        ),
        locks=LockSettings(stale_seconds=30.0, timeout_seconds=10.0, retry_interval_seconds=0.01),
        git=GitSettings(max_retries=5, retry_base_seconds=0.01),
        store=StoreSettings(
            store_path=state / "store.json",
            audit_root=state / "audit-logs",
        ),
    )


@pytest.fixture()
def store(settings: Settings) -> SessionStore:
    return SessionStore(
        settings.store.store_path,
        locks=settings.locks,
        audit_root=settings.store.audit_root,
    )


@pytest.fixture()
def orchestrator(store: SessionStore, settings: Settings) -> CheckpointOrchestrator:
    return CheckpointOrchestrator(
        store=store,
        runtime=CliTaskRuntime(settings.orchestrator.runtime_command_template),
        settings=settings,
        sleep=no_sleep,
    )


@pytest.fixture()
def scenario(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[dict[str, Any]], Path]:
    """Write an echo-agent scenario outside the workspace and point the agent at it."""

    path = tmp_path / "scenario.json"

    def _write(payload: dict[str, Any]) -> Path:
        path.write_text(json.dumps(payload), "utf-8")
        monkeypatch.setenv(SCENARIO_ENV, str(path))
        return path

    return _write
