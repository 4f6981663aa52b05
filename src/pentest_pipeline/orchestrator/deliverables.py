"""Per-unit deliverable files and the output validators applied to them."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pentest_pipeline.audit.paths import AGENTS_DIRNAME
from pentest_pipeline.orchestrator.contracts import atomic_write_json
from pentest_pipeline.orchestrator.errors import SecurityError
from pentest_pipeline.orchestrator.registry import (
    VULN_TYPES,
    is_exploit_unit,
    is_vuln_unit,
    validate_unit,
    vuln_type_of,
)
from pentest_pipeline.orchestrator.validator import (
    MergeResult,
    merge_queues,
    parse_tolerant,
    validate_evidence_json,
    validate_queue_json,
)

logger = logging.getLogger(__name__)

DELIVERABLES_DIRNAME = "deliverables"
LOGIN_SUCCESS_MARKER = "LOGIN_SUCCESS"

STATIC_DELIVERABLES: dict[str, tuple[str, ...]] = {
    "pre-recon": ("pre_recon_deliverable.md", "code_analysis_deliverable.md"),
    "recon": ("recon_deliverable.md",),
    "recon-verify": ("recon_verify_deliverable.md",),
    "api-fuzzer": ("api_fuzzer_deliverable.md",),
    "report": ("comprehensive_security_assessment_report.md",),
}


@dataclass(slots=True)
class DeliverableCheck:
    """Outcome of checking one unit's produced files."""

    ok: bool
    error: str | None = None
    should_exploit: bool = False
    vulnerability_count: int = 0
    data: dict[str, Any] | None = None


@dataclass(slots=True)
class EvidenceSummary:
    ok: bool
    result: str
    reason: str


def deliverables_dir(workspace: Path) -> Path:
    return Path(workspace) / DELIVERABLES_DIRNAME


def analysis_path(vuln_type: str, workspace: Path) -> Path:
    return deliverables_dir(workspace) / f"{vuln_type}_analysis_deliverable.md"


def queue_path(vuln_type: str, workspace: Path) -> Path:
    return deliverables_dir(workspace) / f"{vuln_type}_exploitation_queue.json"


def evidence_path(vuln_type: str, workspace: Path) -> Path:
    return deliverables_dir(workspace) / f"{vuln_type}_exploitation_evidence.json"


def expected_files(unit: str, workspace: Path) -> list[Path]:
    """Files a unit is expected to leave behind (any of them for `pre-recon`)."""

    validate_unit(unit)
    if unit in STATIC_DELIVERABLES:
        return [deliverables_dir(workspace) / name for name in STATIC_DELIVERABLES[unit]]
    if is_vuln_unit(unit):
        vuln_type = vuln_type_of(unit)
        return [analysis_path(vuln_type, workspace), queue_path(vuln_type, workspace)]
    if is_exploit_unit(unit):
        return [evidence_path(vuln_type_of(unit), workspace)]
    return []


def validate_queue_and_deliverable(vuln_type: str, workspace: Path) -> DeliverableCheck:
    """Check the analysis deliverable and queue pair of one category.

    Both files must exist and the queue must validate. Exploitation is only
    worth running when the queue holds at least one entry.
    """

    if vuln_type not in VULN_TYPES:
        return DeliverableCheck(ok=False, error=f"Unknown vulnerability type: {vuln_type}")

    deliverable_exists = analysis_path(vuln_type, workspace).is_file()
    queue_file = queue_path(vuln_type, workspace)
    queue_exists = queue_file.is_file()

    if not deliverable_exists and not queue_exists:
        return DeliverableCheck(
            ok=False,
            error="Analysis failed: Neither deliverable nor queue file exists. "
            f"Analysis agent must create both files. ({vuln_type})",
        )
    if deliverable_exists and not queue_exists:
        return DeliverableCheck(
            ok=False,
            error="Analysis incomplete: Deliverable exists but queue file missing. "
            f"Analysis agent must create both files. ({vuln_type})",
        )
    if queue_exists and not deliverable_exists:
        return DeliverableCheck(
            ok=False,
            error="Analysis incomplete: Queue exists but deliverable file missing. "
            f"Analysis agent must create both files. ({vuln_type})",
        )

    try:
        raw = queue_file.read_text("utf-8")
    except OSError as error:
        return DeliverableCheck(
            ok=False,
            error=f"Failed to read queue file for {vuln_type}: {error}",
        )
    validation = validate_queue_json(raw)
    if not validation.valid:
        return DeliverableCheck(
            ok=False,
            error=f"Queue validation failed for {vuln_type}: {validation.error}",
        )
    return DeliverableCheck(
        ok=True,
        should_exploit=validation.vulnerability_count > 0,
        vulnerability_count=validation.vulnerability_count,
        data=validation.data,
    )


def validate_unit_output(
    name: str,
    workspace: Path,
    audit_dir: Path | None = None,
) -> DeliverableCheck:
    """Apply the output validator registered for unit `name`."""

    validate_unit(name)
    validator = _UNIT_VALIDATORS.get(name)
    if validator is not None:
        return validator(Path(workspace), audit_dir)
    if is_vuln_unit(name):
        return validate_queue_and_deliverable(vuln_type_of(name), Path(workspace))
    if is_exploit_unit(name):
        return _validate_exploit(vuln_type_of(name), Path(workspace))
    return DeliverableCheck(ok=True)


def summarize_evidence(
    vuln_type: str,
    workspace: Path,
    *,
    skip_exploitation: bool = False,
) -> EvidenceSummary:
    """Classify one category's evidence file for the phase summary table."""

    if skip_exploitation:
        return EvidenceSummary(True, "Skipped", "Exploitation phase skipped per configuration")

    path = evidence_path(vuln_type, workspace)
    if not path.is_file():
        return EvidenceSummary(False, "No Evidence", "Evidence file not created")
    try:
        raw = path.read_text("utf-8")
    except OSError as error:
        return EvidenceSummary(False, "Error", f"Failed to read evidence: {error}")

    validation = validate_evidence_json(raw)
    if not validation.valid or validation.data is None:
        return EvidenceSummary(False, "Invalid", validation.error or "Invalid evidence structure")

    records = validation.data.get("vulnerabilities") or []
    exploited = sum(1 for record in records if record.get("verdict") == "EXPLOITED")
    potential = sum(1 for record in records if record.get("verdict") == "POTENTIAL")
    if exploited:
        return EvidenceSummary(True, f"{exploited} Exploited", "Successfully exploited vulnerabilities")
    if potential:
        return EvidenceSummary(True, "Potential", "Potential vulnerabilities identified")
    return EvidenceSummary(True, "No Vulns", "No exploitable vulnerabilities found")


def load_queue(vuln_type: str, workspace: Path) -> dict[str, Any] | None:
    path = queue_path(vuln_type, workspace)
    if not path.is_file():
        return None
    parsed = parse_tolerant(path.read_text("utf-8"))
    return parsed.value if parsed.ok else None


def save_queue(path: Path, incoming: dict[str, Any]) -> MergeResult:
    """Merge `incoming` into the queue at `path` and persist it atomically."""

    existing: dict[str, Any] | None = None
    if path.is_file():
        parsed = parse_tolerant(path.read_text("utf-8"))
        if parsed.ok:
            existing = parsed.value
        else:
            logger.warning("Existing queue %s is unreadable, replacing it: %s", path, parsed.error)
    result = merge_queues(existing, incoming)
    atomic_write_json(path, result.data)
    logger.info(
        "Queue %s: %d existing, %d new, %d duplicates dropped, %d total",
        path.name,
        result.existing_count,
        result.new_count,
        result.deduplicated_count,
        result.final_count,
    )
    return result


def _validate_exploit(vuln_type: str, workspace: Path) -> DeliverableCheck:
    path = evidence_path(vuln_type, workspace)
    if not path.is_file():
        return DeliverableCheck(ok=False, error=f"Missing required deliverable: {path.name}")
    validation = validate_evidence_json(path.read_text("utf-8"))
    if not validation.valid:
        return DeliverableCheck(ok=False, error=f"Evidence validation failed: {validation.error}")
    try:
        screenshots = [
            (shot, _resolve_in_workspace(shot, workspace)) for shot in validation.screenshot_paths
        ]
    except SecurityError as error:
        return DeliverableCheck(ok=False, error=f"Evidence validation failed: {error}")
    missing = [shot for shot, resolved in screenshots if not resolved.is_file()]
    if missing:
        return DeliverableCheck(
            ok=False,
            error=f"Screenshot evidence not found on disk: {', '.join(missing)}",
        )
    return DeliverableCheck(ok=True, data=validation.data)


def _resolve_in_workspace(candidate: str, workspace: Path) -> Path:
    """Resolve an evidence path, refusing anything outside the workspace."""

    root = workspace.resolve()
    path = Path(candidate)
    resolved = (path if path.is_absolute() else root / path).resolve()
    if not resolved.is_relative_to(root):
        raise SecurityError(
            f"Evidence path escapes the workspace: {candidate}",
            context={"path": candidate, "workspace": str(root)},
        )
    return resolved


def _require_any(unit: str) -> Callable[[Path, Path | None], DeliverableCheck]:
    def check(workspace: Path, audit_dir: Path | None) -> DeliverableCheck:  # noqa: ARG001
        candidates = expected_files(unit, workspace)
        if any(path.is_file() for path in candidates):
            return DeliverableCheck(ok=True)
        names = " or ".join(path.name for path in candidates)
        return DeliverableCheck(ok=False, error=f"Missing required deliverable: {names}")

    return check


def _validate_recon_verify(workspace: Path, audit_dir: Path | None) -> DeliverableCheck:
    recon = _require_any("recon")(workspace, audit_dir)
    if not recon.ok:
        return recon
    path = deliverables_dir(workspace) / "recon_verify_deliverable.md"
    if not path.is_file():
        return DeliverableCheck(ok=False, error=f"Missing required deliverable: {path.name}")
    text = path.read_text("utf-8").lower()
    if "recon verify" not in text and "recon verification" not in text:
        return DeliverableCheck(
            ok=False,
            error=f"{path.name} does not look like a recon verification report",
        )
    return DeliverableCheck(ok=True)


def _validate_api_fuzzer(workspace: Path, audit_dir: Path | None) -> DeliverableCheck:
    recon = _require_any("recon")(workspace, audit_dir)
    if not recon.ok:
        return recon
    return _require_any("api-fuzzer")(workspace, audit_dir)


def _validate_login_check(workspace: Path, audit_dir: Path | None) -> DeliverableCheck:  # noqa: ARG001
    if audit_dir is None:
        return DeliverableCheck(ok=True)
    agents_dir = Path(audit_dir) / AGENTS_DIRNAME
    if not agents_dir.is_dir():
        return DeliverableCheck(ok=True)
    transcripts = sorted(agents_dir.glob("*login-check*.debug.log"))
    if not transcripts:
        return DeliverableCheck(ok=True)
    if LOGIN_SUCCESS_MARKER in transcripts[-1].read_text("utf-8", errors="replace"):
        return DeliverableCheck(ok=True)
    return DeliverableCheck(ok=False, error=f"Login check failed: {LOGIN_SUCCESS_MARKER} not reported")


_UNIT_VALIDATORS: dict[str, Callable[[Path, Path | None], DeliverableCheck]] = {
    "pre-recon": _require_any("pre-recon"),
    "login-check": _validate_login_check,
    "recon": _require_any("recon"),
    "recon-verify": _validate_recon_verify,
    "api-fuzzer": _validate_api_fuzzer,
    "report": _require_any("report"),
}
