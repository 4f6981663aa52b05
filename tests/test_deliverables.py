from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from pentest_pipeline.orchestrator.deliverables import (
    LOGIN_SUCCESS_MARKER,
    analysis_path,
    evidence_path,
    load_queue,
    queue_path,
    save_queue,
    summarize_evidence,
    validate_queue_and_deliverable,
    validate_unit_output,
)

pytestmark = [
    allure.epic("Deliverables"),
    allure.feature("Unit Output Validators"),
]


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, "utf-8")


def _queue(count: int) -> str:
    return json.dumps(
        {
            "vulnerabilities": [
                {"ID": f"V{index}", "vulnerability_type": "sqli", "source": f"/p/{index}", "severity": "high"}
                for index in range(count)
            ],
        },
    )


def _evidence(*verdicts: str) -> str:
    return json.dumps(
        {
            "vulnerabilities": [
                {
                    "vulnerability_id": f"V{index}",
                    "verdict": verdict,
                    "evidence": [],
                    "reproduction_steps": ["step"],
                }
                for index, verdict in enumerate(verdicts)
            ],
        },
    )


def test_queue_pair_existence_rules(tmp_path: Path) -> None:
    neither = validate_queue_and_deliverable("sqli", tmp_path)
    assert not neither.ok
    assert "Neither deliverable nor queue" in (neither.error or "")

    _write(analysis_path("sqli", tmp_path), "# analysis")
    deliverable_only = validate_queue_and_deliverable("sqli", tmp_path)
    assert "queue file missing" in (deliverable_only.error or "")

    analysis_path("sqli", tmp_path).unlink()
    _write(queue_path("sqli", tmp_path), _queue(1))
    queue_only = validate_queue_and_deliverable("sqli", tmp_path)
    assert "deliverable file missing" in (queue_only.error or "")


def test_queue_pair_with_entries_should_be_exploited(tmp_path: Path) -> None:
    _write(analysis_path("xss", tmp_path), "# analysis")
    _write(queue_path("xss", tmp_path), _queue(2))

    check = validate_queue_and_deliverable("xss", tmp_path)

    assert check.ok
    assert check.should_exploit
    assert check.vulnerability_count == 2


def test_empty_queue_is_valid_but_not_exploitable(tmp_path: Path) -> None:
    _write(analysis_path("sqli", tmp_path), "# analysis")
    _write(queue_path("sqli", tmp_path), '{"vulnerabilities": []}')

    check = validate_queue_and_deliverable("sqli", tmp_path)

    assert check.ok
    assert not check.should_exploit


def test_static_units_need_their_files(tmp_path: Path) -> None:
    assert not validate_unit_output("recon", tmp_path).ok

    _write(tmp_path / "deliverables" / "code_analysis_deliverable.md", "# code")
    assert validate_unit_output("pre-recon", tmp_path).ok

    _write(tmp_path / "deliverables" / "recon_deliverable.md", "# recon")
    _write(tmp_path / "deliverables" / "recon_verify_deliverable.md", "unrelated notes")
    assert not validate_unit_output("recon-verify", tmp_path).ok
    _write(tmp_path / "deliverables" / "recon_verify_deliverable.md", "Recon verification done")
    assert validate_unit_output("recon-verify", tmp_path).ok


def test_exploit_evidence_screenshots_must_exist(tmp_path: Path) -> None:
    evidence = {
        "vulnerabilities": [
            {
                "vulnerability_id": "AUTHZ-1",
                "verdict": "EXPLOITED",
                "evidence": [
                    {"type": "screenshot", "description": "admin", "path": "outputs/admin.png"},
                ],
                "reproduction_steps": ["login as user", "open /admin"],
            },
        ],
    }
    _write(evidence_path("authz", tmp_path), json.dumps(evidence))

    missing = validate_unit_output("authz-exploit", tmp_path)
    assert not missing.ok
    assert "outputs/admin.png" in (missing.error or "")

    _write(tmp_path / "outputs" / "admin.png", "png")
    assert validate_unit_output("authz-exploit", tmp_path).ok


@pytest.mark.parametrize("shot", ["../outside.png", "outputs/../../outside.png", "/etc/passwd"])
def test_exploit_evidence_paths_outside_workspace_are_rejected(tmp_path: Path, shot: str) -> None:
    workspace = tmp_path / "workspace"
    _write(tmp_path / "outside.png", "png")
    evidence = {
        "vulnerabilities": [
            {
                "vulnerability_id": "AUTHZ-1",
                "verdict": "EXPLOITED",
                "evidence": [{"type": "screenshot", "description": "admin", "path": shot}],
                "reproduction_steps": ["open /admin"],
            },
        ],
    }
    _write(evidence_path("authz", workspace), json.dumps(evidence))

    check = validate_unit_output("authz-exploit", workspace)

    assert not check.ok
    assert "escapes the workspace" in (check.error or "")


def test_login_check_reads_latest_transcript(tmp_path: Path) -> None:
    audit_dir = tmp_path / "audit"
    agents = audit_dir / "agents"
    assert validate_unit_output("login-check", tmp_path, audit_dir).ok

    _write(agents / "20260101-000000-000000_login-check_attempt-1.debug.log", "login failed")
    assert not validate_unit_output("login-check", tmp_path, audit_dir).ok

    _write(
        agents / "20260101-000100-000000_login-check_attempt-2.debug.log",
        f"ASSISTANT:\n{LOGIN_SUCCESS_MARKER}\n",
    )
    assert validate_unit_output("login-check", tmp_path, audit_dir).ok


def test_evidence_summary_distinguishes_exploited_and_potential(tmp_path: Path) -> None:
    _write(evidence_path("sqli", tmp_path), _evidence("EXPLOITED", "EXPLOITED", "POTENTIAL"))
    _write(evidence_path("xss", tmp_path), _evidence("POTENTIAL"))
    _write(evidence_path("ssrf", tmp_path), _evidence("BLOCKED_BY_SECURITY"))
    _write(evidence_path("ssti", tmp_path), "{broken")

    assert summarize_evidence("sqli", tmp_path).result == "2 Exploited"
    assert summarize_evidence("xss", tmp_path).result == "Potential"
    assert summarize_evidence("ssrf", tmp_path).result == "No Vulns"
    assert summarize_evidence("ssti", tmp_path).result == "Invalid"
    assert summarize_evidence("pathi", tmp_path).result == "No Evidence"
    assert summarize_evidence("pathi", tmp_path, skip_exploitation=True).result == "Skipped"


def test_save_queue_merges_with_file_on_disk(tmp_path: Path) -> None:
    path = queue_path("sqli", tmp_path)
    _write(path, _queue(2))

    result = save_queue(
        path,
        {
            "vulnerabilities": [
                {"ID": "dup", "vulnerability_type": "sqli", "source": "/p/0", "severity": "Low"},
                {"ID": "new", "vulnerability_type": "sqli", "source": "/p/9", "severity": "Low"},
            ],
        },
    )

    assert result.final_count == 3
    stored = load_queue("sqli", tmp_path)
    assert stored is not None
    assert [entry["ID"] for entry in stored["vulnerabilities"]] == ["V0", "V1", "new"]
