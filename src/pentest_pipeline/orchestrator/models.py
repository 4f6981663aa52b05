"""Domain models for sessions, unit outcomes and phase results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Derived lifecycle state of one end-to-end run."""

    IN_PROGRESS = "in-progress"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class UnitAuditStatus(str, Enum):
    """Per-unit status recorded in the audit metrics document."""

    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry policy."""

    SESSION_LIMIT = "session_limit"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMIT = "rate_limit"
    MAX_TURNS = "max_turns"
    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    OUTPUT_INVALID = "output_invalid"


class Verdict(str, Enum):
    EXPLOITED = "EXPLOITED"
    BLOCKED_BY_SECURITY = "BLOCKED_BY_SECURITY"
    POTENTIAL = "POTENTIAL"


class EvidenceType(str, Enum):
    HTTP_REQUEST_RESPONSE = "http_request_response"
    SCREENSHOT = "screenshot"
    SESSION_STATE = "session_state"
    BASH_OUTPUT = "bash_output"
    CODE_SNIPPET = "code_snippet"
    OTHER = "other"


@dataclass(slots=True)
class Session:
    """Persisted progress record of one run.

    A unit name appears in at most one of the completed/failed/skipped/running
    lists; the session store is the only writer that moves names between them.
    """

    id: str
    web_url: str
    repo_path: str = ""
    target_repo: str = ""
    status: SessionStatus = SessionStatus.IN_PROGRESS
    completed_units: list[str] = field(default_factory=list)
    failed_units: list[str] = field(default_factory=list)
    skipped_units: list[str] = field(default_factory=list)
    running_units: list[str] = field(default_factory=list)
    checkpoints: dict[str, str] = field(default_factory=dict)
    created_at: str = ""
    last_activity: str = ""
    version: int = 0

    @property
    def workspace(self) -> str:
        return self.target_repo or self.repo_path

    def is_done(self, unit: str) -> bool:
        return unit in self.completed_units or unit in self.skipped_units

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "web_url": self.web_url,
            "repo_path": self.repo_path,
            "target_repo": self.target_repo,
            "status": self.status.value,
            "completed_units": list(self.completed_units),
            "failed_units": list(self.failed_units),
            "skipped_units": list(self.skipped_units),
            "running_units": list(self.running_units),
            "checkpoints": dict(self.checkpoints),
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        return cls(
            id=str(payload["id"]),
            web_url=str(payload.get("web_url", "")),
            repo_path=str(payload.get("repo_path", "")),
            target_repo=str(payload.get("target_repo", "")),
            status=SessionStatus(payload.get("status", SessionStatus.IN_PROGRESS.value)),
            completed_units=list(payload.get("completed_units") or []),
            failed_units=list(payload.get("failed_units") or []),
            skipped_units=list(payload.get("skipped_units") or []),
            running_units=list(payload.get("running_units") or []),
            checkpoints=dict(payload.get("checkpoints") or {}),
            created_at=str(payload.get("created_at", "")),
            last_activity=str(payload.get("last_activity", "")),
            version=int(payload.get("version", 0)),
        )


@dataclass(slots=True)
class UnitOutcome:
    """Terminal outcome of one unit execution."""

    unit: str
    success: bool
    checkpoint: str | None = None
    attempts: int = 0
    duration_ms: int = 0
    cost_usd: float = 0.0
    skipped: bool = False
    vulnerability_count: int | None = None
    validation: dict[str, Any] | None = None
    error: str | None = None


@dataclass(slots=True)
class PhaseFailure:
    unit: str
    error: str


@dataclass(slots=True)
class PhaseResult:
    """Aggregated settle-all result of one phase."""

    phase: str
    completed: list[str] = field(default_factory=list)
    failed: list[PhaseFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    outcomes: dict[str, UnitOutcome] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def failed_units(self) -> list[str]:
        return [failure.unit for failure in self.failed]
