"""Audit directory layout for one assessment session."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import urlsplit

AGENTS_DIRNAME = "agents"
PROMPTS_DIRNAME = "prompts"
SESSION_FILENAME = "session.json"

_UNSAFE_HOST_CHARS = re.compile(r"[^A-Za-z0-9-]")


def session_identifier(session_id: str, web_url: str) -> str:
    """Return ``{host}_{session_id}`` with the host reduced to safe characters."""

    hostname = urlsplit(web_url).hostname or web_url or "unknown"
    return f"{_UNSAFE_HOST_CHARS.sub('-', hostname)}_{session_id}"


@dataclass(slots=True, frozen=True)
class AuditPaths:
    root: Path
    session_id: str
    web_url: str

    @property
    def session_dir(self) -> Path:
        return self.root / session_identifier(self.session_id, self.web_url)

    @property
    def agents_dir(self) -> Path:
        return self.session_dir / AGENTS_DIRNAME

    @property
    def prompts_dir(self) -> Path:
        return self.session_dir / PROMPTS_DIRNAME

    @property
    def session_json(self) -> Path:
        return self.session_dir / SESSION_FILENAME

    def prompt_path(self, unit: str) -> Path:
        return self.prompts_dir / f"{unit}.md"

    def log_path(self, unit: str, attempt: int, started_at: datetime) -> Path:
        return self.agents_dir / f"{_log_stem(unit, attempt, started_at)}.log"

    def debug_log_path(self, unit: str, attempt: int, started_at: datetime) -> Path:
        return self.agents_dir / f"{_log_stem(unit, attempt, started_at)}.debug.log"

    def ensure(self) -> None:
        for directory in (self.session_dir, self.agents_dir, self.prompts_dir):
            directory.mkdir(parents=True, exist_ok=True)


def _log_stem(unit: str, attempt: int, started_at: datetime) -> str:
    return f"{started_at.strftime('%Y%m%d-%H%M%S-%f')}_{unit}_attempt-{attempt}"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(moment: datetime | None = None) -> str:
    return (moment or utc_now()).isoformat()


def format_duration(duration_ms: float) -> str:
    if duration_ms < 1000:
        return f"{int(duration_ms)}ms"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remainder = divmod(int(seconds), 60)
    return f"{minutes}m {remainder}s"
