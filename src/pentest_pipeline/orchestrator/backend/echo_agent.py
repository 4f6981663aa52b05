"""Deterministic local agent used by integration tests and dry runs.

Writes the deliverables a unit is expected to produce and prints NDJSON
events. Behaviour per unit can be scripted through a JSON scenario file named
by ``PENTEST_ECHO_SCENARIO``::

    {"sqli-vuln": {"vulnerabilities": 0},
     "xss-exploit": {"verdict": "POTENTIAL"},
     "recon": {"mode": "invalid_once"},
     "auth-vuln": {"mode": "fail", "error": "billing: credit balance too low"}}
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

SCENARIO_ENV = "PENTEST_ECHO_SCENARIO"

_STATIC_FILES = {
    "pre-recon": "pre_recon_deliverable.md",
    "recon": "recon_deliverable.md",
    "recon-verify": "recon_verify_deliverable.md",
    "api-fuzzer": "api_fuzzer_deliverable.md",
    "report": "comprehensive_security_assessment_report.md",
}


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic unit behaviour."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--unit", required=True)
    parser.add_argument("--workspace", required=True)
    parser.add_argument("--prompt-file", required=False)
    args = parser.parse_args(argv)

    workspace = Path(args.workspace)
    scenario = _load_scenario().get(args.unit, {})
    attempt = _next_attempt(args.unit)
    mode = str(scenario.get("mode", "success"))

    _emit({"type": "assistant", "content": f"Starting {args.unit} (attempt {attempt})"})

    if mode == "fail":
        error = str(scenario.get("error", "permission denied"))
        print(error, file=sys.stderr)
        _emit({"type": "result", "success": False, "error": error, "cost_usd": 0.01, "turns": 1})
        return 1

    if mode == "transient_once" and attempt == 1:
        print("connection reset by peer", file=sys.stderr)
        return 1

    if mode == "invalid_once" and attempt == 1:
        # Dirty the tree without producing the deliverable.
        (workspace / "scratch.txt").write_text("partial work\n", "utf-8")
        tracked = workspace / "README.md"
        if tracked.exists():
            tracked.write_text(tracked.read_text("utf-8") + "garbage\n", "utf-8")
        _emit({"type": "result", "success": True, "cost_usd": 0.01, "turns": 1})
        return 0

    if mode == "max_turns":
        _write_deliverables(args.unit, workspace, scenario)
        _emit(
            {
                "type": "result",
                "subtype": "error_max_turns",
                "is_error": True,
                "total_cost_usd": 0.02,
                "num_turns": 200,
            },
        )
        return 0

    if args.unit == "login-check":
        _emit({"type": "assistant", "content": "LOGIN_SUCCESS"})

    _emit(
        {
            "type": "tool_start",
            "tool_name": "save_deliverable",
            "parameters": {"unit": args.unit},
        },
    )
    written = _write_deliverables(args.unit, workspace, scenario)
    _emit({"type": "tool_end", "tool_name": "save_deliverable", "result": written})
    _emit({"type": "result", "success": True, "cost_usd": 0.01, "duration_ms": 5, "turns": 2})
    return 0


def _write_deliverables(unit: str, workspace: Path, scenario: dict[str, Any]) -> list[str]:
    deliverables = workspace / "deliverables"
    deliverables.mkdir(parents=True, exist_ok=True)
    written: list[str] = []

    if unit in _STATIC_FILES:
        path = deliverables / _STATIC_FILES[unit]
        body = f"# {unit}\n\nGenerated by echo agent.\n"
        if unit == "recon-verify":
            body += "Recon verification complete.\n"
        path.write_text(body, "utf-8")
        written.append(path.name)
    elif unit.endswith("-vuln"):
        vuln_type = unit.removesuffix("-vuln")
        count = int(scenario.get("vulnerabilities", 1))
        (deliverables / f"{vuln_type}_analysis_deliverable.md").write_text(
            f"# {vuln_type} analysis\n",
            "utf-8",
        )
        queue = {
            "vulnerabilities": [
                {
                    "ID": f"{vuln_type.upper()}-{index + 1:03d}",
                    "vulnerability_type": vuln_type,
                    "source": f"/api/{vuln_type}/{index + 1}",
                    "severity": "high",
                }
                for index in range(count)
            ],
        }
        (deliverables / f"{vuln_type}_exploitation_queue.json").write_text(
            json.dumps(queue, indent=2),
            "utf-8",
        )
        written.extend(
            [f"{vuln_type}_analysis_deliverable.md", f"{vuln_type}_exploitation_queue.json"],
        )
    elif unit.endswith("-exploit"):
        vuln_type = unit.removesuffix("-exploit")
        evidence = {
            "vulnerabilities": [
                {
                    "vulnerability_id": f"{vuln_type.upper()}-001",
                    "verdict": str(scenario.get("verdict", "EXPLOITED")),
                    "evidence": [
                        {
                            "type": "bash_output",
                            "description": f"{vuln_type} probe output",
                            "output": "ok",
                        },
                    ],
                    "reproduction_steps": ["send crafted request", "observe response"],
                },
            ],
        }
        path = deliverables / f"{vuln_type}_exploitation_evidence.json"
        path.write_text(json.dumps(evidence, indent=2), "utf-8")
        written.append(path.name)
    return written


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False), flush=True)


def _load_scenario() -> dict[str, Any]:
    path = os.getenv(SCENARIO_ENV)
    if not path or not Path(path).exists():
        return {}
    payload = json.loads(Path(path).read_text("utf-8"))
    return payload if isinstance(payload, dict) else {}


def _next_attempt(unit: str) -> int:
    """Count invocations per unit in a state file beside the scenario."""

    scenario_path = os.getenv(SCENARIO_ENV)
    if not scenario_path:
        return int(os.getenv("PENTEST_PIPELINE_ATTEMPT", "1"))
    state_path = Path(f"{scenario_path}.state.json")
    state: dict[str, int] = {}
    if state_path.exists():
        try:
            state = json.loads(state_path.read_text("utf-8"))
        except json.JSONDecodeError:
            state = {}
    state[unit] = int(state.get(unit, 0)) + 1
    state_path.write_text(json.dumps(state, sort_keys=True), "utf-8")
    return state[unit]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
