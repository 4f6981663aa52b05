"""Runtime configuration for the assessment orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_RUNTIME_COMMAND_TEMPLATE = (
    "claude -p --output-format stream-json --verbose "
    "--max-turns {max_turns} --allowedTools {allowed_tools} -- {prompt}"
)


@dataclass(slots=True)
class OrchestratorSettings:
    """Unit execution and phase fan-out settings."""

    max_attempts: int = 3
    stagger_seconds: float = 2.0
    max_parallel: int = 8
    skip_exploitation: bool = False
    max_turns: int = 200
    allowed_tools: str = "*"
    runtime_command_template: str = DEFAULT_RUNTIME_COMMAND_TEMPLATE
    transient_exit_codes: tuple[int, ...] = (137, 143)
    prompts_dir: Path | None = None
    debug_transcript: bool = True


@dataclass(slots=True)
class LockSettings:
    """Cross-process file lock settings."""

    stale_seconds: float = 30.0
    timeout_seconds: float = 10.0
    retry_interval_seconds: float = 0.05


@dataclass(slots=True)
class GitSettings:
    """Workspace version-control adapter settings."""

    max_retries: int = 5
    retry_base_seconds: float = 1.0
    preserved_dirs: tuple[str, ...] = ("deliverables", "outputs")


@dataclass(slots=True)
class StoreSettings:
    """Session store and audit log locations."""

    store_path: Path = Path(".pentest-pipeline-store.json")
    audit_root: Path = Path("audit-logs")
    stale_session_minutes: int = 60
    stale_unit_minutes: int = 30


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    git: GitSettings = field(default_factory=GitSettings)
    store: StoreSettings = field(default_factory=StoreSettings)

    @classmethod
    def from_env(cls, store_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a local run."""

        prompts_dir = os.getenv("PENTEST_PIPELINE_PROMPTS_DIR", "").strip()
        return cls(
            orchestrator=OrchestratorSettings(
                max_attempts=int(os.getenv("PENTEST_PIPELINE_MAX_ATTEMPTS", "3")),
                stagger_seconds=float(os.getenv("PENTEST_PIPELINE_STAGGER_SECONDS", "2.0")),
                max_parallel=int(os.getenv("PENTEST_PIPELINE_MAX_PARALLEL", "8")),
                skip_exploitation=_env_bool("PENTEST_PIPELINE_SKIP_EXPLOITATION", default=False),
                max_turns=int(os.getenv("PENTEST_PIPELINE_MAX_TURNS", "200")),
                allowed_tools=os.getenv("PENTEST_PIPELINE_ALLOWED_TOOLS", "*"),
                runtime_command_template=os.getenv(
                    "PENTEST_PIPELINE_RUNTIME_COMMAND",
                    DEFAULT_RUNTIME_COMMAND_TEMPLATE,
                ),
                transient_exit_codes=_env_int_tuple(
                    "PENTEST_PIPELINE_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
                prompts_dir=Path(prompts_dir) if prompts_dir else None,
                debug_transcript=_env_bool("PENTEST_PIPELINE_DEBUG_TRANSCRIPT", default=True),
            ),
            locks=LockSettings(
                stale_seconds=float(os.getenv("PENTEST_PIPELINE_LOCK_STALE_SECONDS", "30")),
                timeout_seconds=float(os.getenv("PENTEST_PIPELINE_LOCK_TIMEOUT_SECONDS", "10")),
                retry_interval_seconds=float(
                    os.getenv("PENTEST_PIPELINE_LOCK_RETRY_INTERVAL_SECONDS", "0.05"),
                ),
            ),
            git=GitSettings(
                max_retries=int(os.getenv("PENTEST_PIPELINE_GIT_MAX_RETRIES", "5")),
                retry_base_seconds=float(
                    os.getenv("PENTEST_PIPELINE_GIT_RETRY_BASE_SECONDS", "1.0"),
                ),
            ),
            store=StoreSettings(
                store_path=store_path
                or Path(os.getenv("PENTEST_PIPELINE_STORE_PATH", ".pentest-pipeline-store.json")),
                audit_root=Path(os.getenv("PENTEST_PIPELINE_AUDIT_ROOT", "audit-logs")),
                stale_session_minutes=int(
                    os.getenv("PENTEST_PIPELINE_STALE_SESSION_MINUTES", "60"),
                ),
                stale_unit_minutes=int(os.getenv("PENTEST_PIPELINE_STALE_UNIT_MINUTES", "30")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot work with."""

        if self.orchestrator.max_attempts <= 0:
            raise ValueError("PENTEST_PIPELINE_MAX_ATTEMPTS must be > 0.")
        if self.orchestrator.max_parallel <= 0:
            raise ValueError("PENTEST_PIPELINE_MAX_PARALLEL must be > 0.")
        if self.orchestrator.stagger_seconds < 0:
            raise ValueError("PENTEST_PIPELINE_STAGGER_SECONDS must be >= 0.")
        if self.orchestrator.max_turns <= 0:
            raise ValueError("PENTEST_PIPELINE_MAX_TURNS must be > 0.")
        if "{prompt" not in self.orchestrator.runtime_command_template:
            raise ValueError(
                "PENTEST_PIPELINE_RUNTIME_COMMAND must include {prompt} or {prompt_file}.",
            )
        if self.locks.timeout_seconds <= 0 or self.locks.stale_seconds <= 0:
            raise ValueError("Lock timeout and staleness thresholds must be > 0.")
        if self.git.max_retries <= 0:
            raise ValueError("PENTEST_PIPELINE_GIT_MAX_RETRIES must be > 0.")


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
