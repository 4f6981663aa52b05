from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from pentest_pipeline.config import Settings
from pentest_pipeline.main import pentest_pipeline

pytestmark = [
    allure.epic("Pipeline CLI"),
    allure.feature("Commands"),
]

WEB_URL = "https://target.example.com"


@pytest.fixture()
def cli_env(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at the echo agent and a temporary store; returns the store path."""

    monkeypatch.setenv(
        "PENTEST_PIPELINE_RUNTIME_COMMAND",
        settings.orchestrator.runtime_command_template,
    )
    monkeypatch.setenv("PENTEST_PIPELINE_STAGGER_SECONDS", "0")
    monkeypatch.setenv("PENTEST_PIPELINE_GIT_RETRY_BASE_SECONDS", "0.01")
    monkeypatch.setenv("PENTEST_PIPELINE_AUDIT_ROOT", str(settings.store.audit_root))
    monkeypatch.delenv("PENTEST_PIPELINE_PROMPTS_DIR", raising=False)
    monkeypatch.setenv("COLUMNS", "240")
    return settings.store.store_path


def test_agents_lists_units_by_phase() -> None:
    result = CliRunner().invoke(pentest_pipeline, ["agents"])

    assert result.exit_code == 0, result.output
    assert "vulnerability-analysis (parallel)" in result.output
    assert "reconnaissance (sequential)" in result.output
    assert "[requires: recon-verify]" in result.output


def test_validate_queue_accepts_repairable_json(tmp_path: Path) -> None:
    good = tmp_path / "good.json"
    good.write_text('{"vulnerabilities": [{"ID": "1", "severity": "high",}]}', "utf-8")
    bad = tmp_path / "bad.json"
    bad.write_text('{"items": []}', "utf-8")
    runner = CliRunner()

    accepted = runner.invoke(pentest_pipeline, ["validate-queue", str(good)])
    rejected = runner.invoke(pentest_pipeline, ["validate-queue", str(bad)])

    assert accepted.exit_code == 0, accepted.output
    assert "vulnerabilities=1" in accepted.output
    assert rejected.exit_code == 1
    assert "Queue validation failed." in rejected.output


def test_status_and_sessions_with_empty_store(cli_env: Path) -> None:
    runner = CliRunner()

    status = runner.invoke(pentest_pipeline, ["status", "--store-path", str(cli_env)])
    sessions = runner.invoke(pentest_pipeline, ["sessions", "--store-path", str(cli_env)])

    assert status.exit_code == 0, status.output
    assert "No sessions found." in status.output
    assert "No sessions found." in sessions.output


def test_cascade_requires_rerun(cli_env: Path) -> None:
    result = CliRunner().invoke(
        pentest_pipeline,
        ["agent", "recon", "--session", "abc", "--cascade", "--store-path", str(cli_env)],
    )

    assert result.exit_code == 2
    assert "--cascade requires --rerun" in result.output


def test_unknown_session_is_reported(cli_env: Path) -> None:
    result = CliRunner().invoke(
        pentest_pipeline,
        ["phase", "reconnaissance", "--session", "nope", "--store-path", str(cli_env)],
    )

    assert result.exit_code == 1
    assert "No session matches 'nope'" in result.output


def test_invalid_configuration_is_reported(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PENTEST_PIPELINE_MAX_PARALLEL", "0")

    result = CliRunner().invoke(pentest_pipeline, ["sessions", "--store-path", str(cli_env)])

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_run_status_and_rerun_refusal_end_to_end(cli_env: Path, git_repo: Path) -> None:
    runner = CliRunner()

    run = runner.invoke(
        pentest_pipeline,
        ["run", "--web-url", WEB_URL, "--repo", str(git_repo), "--store-path", str(cli_env)],
    )

    assert run.exit_code == 0, run.output
    first_line = run.output.splitlines()[0]
    assert first_line.startswith("Session: ")
    session_id = first_line.split()[1]
    assert "Phase exploitation: completed=8 failed=0 skipped=0" in run.output
    assert "status=completed" in run.output

    status = runner.invoke(
        pentest_pipeline,
        ["status", "--session", session_id[:8], "--store-path", str(cli_env)],
    )
    assert status.exit_code == 0, status.output
    assert "[x] report" in status.output
    assert "Progress: 22/22 (100%)" in status.output

    again = runner.invoke(
        pentest_pipeline,
        ["agent", "recon", "--session", session_id, "--store-path", str(cli_env)],
    )
    assert again.exit_code == 1
    assert "already been completed" in again.output

    listed = runner.invoke(pentest_pipeline, ["sessions", "--store-path", str(cli_env)])
    assert f"{session_id[:8]} status=completed progress=100%" in listed.output

    reconcile = runner.invoke(
        pentest_pipeline,
        ["reconcile", "--session", session_id, "--store-path", str(cli_env)],
    )
    assert reconcile.exit_code == 0, reconcile.output
    assert "is consistent with its audit log" in reconcile.output
