"""Session metrics document (``session.json``) with reload-apply-persist updates."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any

from pentest_pipeline.audit.paths import AuditPaths, format_timestamp
from pentest_pipeline.orchestrator.contracts import atomic_write_json, load_json_or_none
from pentest_pipeline.orchestrator.models import UnitAuditStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AttemptRecord:
    """One finished attempt of a unit, as stored in the metrics document."""

    attempt_number: int
    duration_ms: int
    cost_usd: float
    success: bool
    checkpoint: str | None = None
    error: str | None = None
    timestamp: str = ""
    is_final_attempt: bool = False


@dataclass(slots=True)
class UnitResult:
    """Result reported by the orchestrator when an attempt ends."""

    attempt: int
    success: bool
    duration_ms: int = 0
    cost_usd: float = 0.0
    checkpoint: str | None = None
    error: str | None = None
    is_final_attempt: bool = False


class MetricsTracker:
    """In-memory view of ``session.json``.

    Callers serialize mutations per session and call `reload` first, so parallel
    units that share the document never lose each other's updates. Every
    mutation is persisted with an atomic temp-file rename.
    """

    def __init__(self, paths: AuditPaths) -> None:
        self.paths = paths
        self._document: dict[str, Any] = {}

    def initialize(self) -> None:
        existing = self._read()
        if existing is None:
            self._document = self._empty_document()
            self._persist()
        else:
            self._document = existing

    def reload(self) -> None:
        existing = self._read()
        if existing is not None:
            self._document = existing
        elif not self._document:
            self._document = self._empty_document()

    def start_unit(self, unit: str, attempt: int) -> None:
        entry = self._unit_entry(unit)
        entry["status"] = UnitAuditStatus.IN_PROGRESS.value
        entry["current_attempt"] = attempt
        entry["last_attempt_started_at"] = format_timestamp()
        self._persist()

    def end_unit(self, unit: str, result: UnitResult) -> None:
        entry = self._unit_entry(unit)
        record = AttemptRecord(
            attempt_number=result.attempt,
            duration_ms=int(result.duration_ms),
            cost_usd=float(result.cost_usd),
            success=result.success,
            checkpoint=result.checkpoint,
            error=result.error,
            timestamp=format_timestamp(),
            is_final_attempt=result.is_final_attempt or result.success,
        )
        entry["attempts"].append(asdict(record))
        entry["total_cost_usd"] = round(
            sum(float(item.get("cost_usd") or 0.0) for item in entry["attempts"]),
            6,
        )
        if result.success:
            entry["status"] = UnitAuditStatus.SUCCESS.value
            entry["final_duration_ms"] = record.duration_ms
            entry["checkpoint"] = result.checkpoint
        elif record.is_final_attempt:
            entry["status"] = UnitAuditStatus.FAILED.value
        entry.pop("current_attempt", None)
        self._recompute_totals()
        self._persist()

    def mark_rolled_back(self, units: list[str]) -> None:
        agents = self._document["metrics"]["agents"]
        changed = False
        for unit in units:
            if unit in agents:
                agents[unit]["status"] = UnitAuditStatus.ROLLED_BACK.value
                changed = True
        if changed:
            self._persist()

    def record_refusal(self, unit: str, error: str, kind: str) -> None:
        """Note a run that was refused before any attempt started."""

        self._document.setdefault("refusals", []).append(
            {"unit": unit, "kind": kind, "error": error, "timestamp": format_timestamp()},
        )
        self._persist()

    def update_session_status(self, status: str) -> None:
        session = self._document["session"]
        session["status"] = status
        if status == "completed":
            session["completed_at"] = format_timestamp()
        self._persist()

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._document)

    def _unit_entry(self, unit: str) -> dict[str, Any]:
        agents = self._document["metrics"]["agents"]
        if unit not in agents:
            agents[unit] = {
                "status": UnitAuditStatus.IN_PROGRESS.value,
                "attempts": [],
                "final_duration_ms": 0,
                "total_cost_usd": 0.0,
                "checkpoint": None,
            }
        return agents[unit]

    def _recompute_totals(self) -> None:
        metrics = self._document["metrics"]
        agents = metrics["agents"].values()
        metrics["total_duration_ms"] = sum(
            int(item.get("duration_ms") or 0) for entry in agents for item in entry["attempts"]
        )
        metrics["total_cost_usd"] = round(
            sum(float(entry.get("total_cost_usd") or 0.0) for entry in agents),
            6,
        )

    def _empty_document(self) -> dict[str, Any]:
        return {
            "session": {
                "id": self.paths.session_id,
                "web_url": self.paths.web_url,
                "status": "in-progress",
                "created_at": format_timestamp(),
                "completed_at": None,
            },
            "metrics": {"total_duration_ms": 0, "total_cost_usd": 0.0, "agents": {}},
        }

    def _read(self) -> dict[str, Any] | None:
        try:
            return load_json_or_none(self.paths.session_json)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring unreadable metrics document %s", self.paths.session_json)
            return None

    def _persist(self) -> None:
        atomic_write_json(self.paths.session_json, self._document)
