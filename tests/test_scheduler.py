from __future__ import annotations

import subprocess
from pathlib import Path

import allure
import pytest

from pentest_pipeline.orchestrator.checkpoint import CheckpointOrchestrator
from pentest_pipeline.orchestrator.errors import UnitFailedError
from pentest_pipeline.orchestrator.models import Session, SessionStatus
from pentest_pipeline.orchestrator.registry import PHASES, UNITS, VULN_TYPES
from pentest_pipeline.orchestrator.scheduler import (
    PhaseScheduler,
    render_phase_summary,
    resume_hint,
)
from pentest_pipeline.orchestrator.session_store import SessionStore

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Phase Scheduler"),
]

WEB_URL = "https://target.example.com"
RECON_CHAIN = ("pre-recon", "login-check", "recon", "recon-verify", "api-fuzzer")


async def _no_sleep(_seconds: float) -> None:
    return None


def _git(repo: Path, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return completed.stdout.strip()


async def _complete(store: SessionStore, session: Session, *units: str) -> Session:
    head = _git(Path(session.workspace), "rev-parse", "HEAD")
    for unit in units:
        session = await store.mark_completed(session.id, unit, head)
    return session


@pytest.fixture()
def scheduler(orchestrator: CheckpointOrchestrator) -> PhaseScheduler:
    return PhaseScheduler(orchestrator, sleep=_no_sleep)


@pytest.mark.asyncio
@pytest.mark.parametrize("repeat", range(3))
async def test_analysis_phase_runs_every_unit_and_consolidates(
    scheduler: PhaseScheduler,
    store: SessionStore,
    git_repo: Path,
    repeat: int,  # noqa: ARG001
) -> None:
    session = await _complete(store, await store.create_session(WEB_URL, git_repo), *RECON_CHAIN)

    result = await scheduler.run_phase("vulnerability-analysis", session)

    assert sorted(result.completed) == sorted(f"{kind}-vuln" for kind in VULN_TYPES)
    assert result.failed == []
    assert all(outcome.vulnerability_count == 1 for outcome in result.outcomes.values())
    assert _git(git_repo, "log", "-1", "--format=%s") == "Phase vulnerability-analysis: consolidated"
    stored = await store.get_session(session.id)
    assert stored.running_units == []
    assert stored.status is SessionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_failing_sibling_does_not_cancel_the_others(
    scheduler: PhaseScheduler,
    store: SessionStore,
    git_repo: Path,
    scenario,
) -> None:
    scenario({"xss-vuln": {"mode": "fail"}})
    session = await _complete(store, await store.create_session(WEB_URL, git_repo), *RECON_CHAIN)

    result = await scheduler.run_phase("vulnerability-analysis", session)

    assert result.failed_units == ["xss-vuln"]
    assert len(result.completed) == len(VULN_TYPES) - 1
    stored = await store.get_session(session.id)
    assert stored.failed_units == ["xss-vuln"]
    assert stored.status is SessionStatus.FAILED


@pytest.mark.asyncio
async def test_exploitation_skips_empty_queues_and_summarizes_verdicts(
    scheduler: PhaseScheduler,
    store: SessionStore,
    git_repo: Path,
    scenario,
) -> None:
    scenario(
        {
            "sqli-vuln": {"vulnerabilities": 0},
            "xss-exploit": {"verdict": "POTENTIAL"},
        },
    )
    session = await _complete(store, await store.create_session(WEB_URL, git_repo), *RECON_CHAIN)
    await scheduler.run_phase("vulnerability-analysis", session)

    result = await scheduler.run_phase("exploitation", session)

    assert result.skipped == ["sqli-exploit"]
    assert "sqli-exploit" not in result.completed
    assert len(result.completed) == len(VULN_TYPES) - 1
    stored = await store.get_session(session.id)
    assert "sqli-exploit" in stored.skipped_units
    assert "sqli-exploit" not in stored.completed_units
    assert "sqli-exploit" not in stored.failed_units

    lines = render_phase_summary(result, git_repo)
    by_unit = {line.split()[0]: line for line in lines[1:]}
    assert lines[0].startswith("Phase exploitation: completed=7 failed=0 skipped=1")
    assert "Potential" in by_unit["xss-exploit"]
    assert "1 Exploited" in by_unit["auth-exploit"]
    assert "skipped" in by_unit["sqli-exploit"]


@pytest.mark.asyncio
async def test_exploit_waits_for_its_analysis_unit(
    scheduler: PhaseScheduler,
    store: SessionStore,
    git_repo: Path,
) -> None:
    session = await store.create_session(WEB_URL, git_repo)

    eligibility = scheduler.check_exploit_eligibility("ssrf-exploit", session)

    assert not eligibility.eligible
    assert not eligibility.nothing_to_exploit
    assert "ssrf-vuln" in eligibility.reason


@pytest.mark.asyncio
async def test_sequential_phase_stops_at_first_failure(
    scheduler: PhaseScheduler,
    store: SessionStore,
    git_repo: Path,
    scenario,
) -> None:
    scenario({"recon": {"mode": "fail"}})
    session = await _complete(store, await store.create_session(WEB_URL, git_repo), "pre-recon")

    with pytest.raises(UnitFailedError) as raised:
        await scheduler.run_phase("reconnaissance", session)

    stored = await store.get_session(session.id)
    assert stored.completed_units == ["pre-recon", "login-check"]
    assert stored.failed_units == ["recon"]
    assert "recon-verify" not in stored.completed_units
    assert resume_hint(raised.value).startswith("Resume from unit 'recon' (checkpoint ")


@pytest.mark.asyncio
async def test_unit_range_runs_in_rank_order(
    scheduler: PhaseScheduler,
    store: SessionStore,
    git_repo: Path,
) -> None:
    session = await store.create_session(WEB_URL, git_repo)

    outcomes = await scheduler.run_unit_range("pre-recon", "recon", session)

    assert [outcome.unit for outcome in outcomes] == ["pre-recon", "login-check", "recon"]
    again = await scheduler.run_unit_range("pre-recon", "recon", session)
    assert again == []


@pytest.mark.asyncio
async def test_full_run_completes_session_and_archives_deliverables(
    scheduler: PhaseScheduler,
    orchestrator: CheckpointOrchestrator,
    store: SessionStore,
    git_repo: Path,
    scenario,
) -> None:
    scenario({"pathi-vuln": {"vulnerabilities": 0}})
    session = await store.create_session(WEB_URL, git_repo)

    seen: list[str] = []
    results = await scheduler.run_all(session, on_phase=lambda result: seen.append(result.phase))

    assert [result.phase for result in results] == list(PHASES)
    assert seen == list(PHASES)
    stored = await store.get_session(session.id)
    assert stored.status is SessionStatus.COMPLETED
    assert stored.skipped_units == ["pathi-exploit"]
    assert len(stored.completed_units) == len(UNITS) - 1
    assert not (git_repo / "deliverables").exists()
    archived = list(git_repo.glob("deliverables__*"))
    assert len(archived) == 1
    assert (archived[0] / "comprehensive_security_assessment_report.md").is_file()

    metrics = await orchestrator.audit_for(stored).get_metrics()
    assert metrics["session"]["status"] == "completed"
    assert await scheduler.run_all(stored) == []
