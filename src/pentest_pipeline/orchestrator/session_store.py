"""JSON-backed session store shared by every orchestrator process on the host."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import random
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pentest_pipeline.audit.paths import format_timestamp, utc_now
from pentest_pipeline.audit.session import AuditSession
from pentest_pipeline.config import LockSettings
from pentest_pipeline.orchestrator.concurrency import FileLock, SessionMutex
from pentest_pipeline.orchestrator.contracts import atomic_write_json
from pentest_pipeline.orchestrator.errors import (
    CheckpointNotFoundError,
    FileSystemError,
    SessionNotFoundError,
    StaleSessionWriteError,
)
from pentest_pipeline.orchestrator.models import Session, SessionStatus, UnitAuditStatus
from pentest_pipeline.orchestrator.registry import UNITS, validate_unit

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 10
_UNIT_LISTS = ("completed_units", "failed_units", "skipped_units", "running_units")

_store_mutex = SessionMutex()


@dataclass(slots=True)
class SessionProgress:
    completed_count: int
    total_units: int
    failed_count: int
    is_complete: bool

    @property
    def percentage(self) -> int:
        return round(self.completed_count * 100 / self.total_units) if self.total_units else 0


@dataclass(slots=True)
class ReconcileReport:
    """Differences applied while syncing the store with the audit metrics."""

    promotions: list[str] = field(default_factory=list)
    demotions: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.promotions or self.demotions or self.failures)


def session_progress(session: Session) -> SessionProgress:
    done = {name for name in (*session.completed_units, *session.skipped_units) if name in UNITS}
    failed = [name for name in session.failed_units if name in UNITS]
    return SessionProgress(
        completed_count=len(done),
        total_units=len(UNITS),
        failed_count=len(failed),
        is_complete=len(done) == len(UNITS),
    )


def derive_status(session: Session) -> SessionStatus:
    if session.running_units:
        return SessionStatus.RUNNING
    progress = session_progress(session)
    if progress.failed_count:
        return SessionStatus.FAILED
    if progress.is_complete:
        return SessionStatus.COMPLETED
    return SessionStatus.IN_PROGRESS


def move_unit(session: Session, unit: str, target: str | None) -> None:
    """Remove `unit` from every status list, then add it to `target` if given."""

    for name in _UNIT_LISTS:
        values = getattr(session, name)
        if unit in values:
            values.remove(unit)
    if target is not None:
        getattr(session, target).append(unit)


class SessionStore:
    """Read-modify-write access to ``{"sessions": {id: Session}}``.

    Writes are serialized by an in-process mutex keyed by session id and by a
    cross-process lock file next to the store. Each write bumps the session
    `version`; a write whose base version is no longer current is rejected
    with `StaleSessionWriteError` and retried by `update_session`.
    """

    def __init__(
        self,
        store_path: Path,
        *,
        locks: LockSettings | None = None,
        audit_root: Path = Path("audit-logs"),
        stale_session_minutes: int = 60,
        stale_unit_minutes: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store_path = Path(store_path)
        self.locks = locks or LockSettings()
        self.audit_root = Path(audit_root)
        self.stale_session_minutes = stale_session_minutes
        self.stale_unit_minutes = stale_unit_minutes
        self._clock = clock
        self._random = random.Random()  # noqa: S311

    @property
    def lock_path(self) -> Path:
        return self.store_path.with_name(f"{self.store_path.name}.lock")

    def _file_lock(self) -> FileLock:
        return FileLock(
            self.lock_path,
            stale_seconds=self.locks.stale_seconds,
            timeout_seconds=self.locks.timeout_seconds,
            retry_interval_seconds=self.locks.retry_interval_seconds,
        )

    # Reading

    def _load_store(self) -> dict[str, Any]:
        if not self.store_path.exists():
            return {"sessions": {}}
        try:
            store = json.loads(self.store_path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Failed to load session store %s: %s", self.store_path, error)
            return {"sessions": {}}
        if not isinstance(store, dict) or not isinstance(store.get("sessions"), dict):
            logger.warning("Invalid session store format in %s, starting empty", self.store_path)
            return {"sessions": {}}
        return store

    def _save_store(self, store: dict[str, Any]) -> None:
        try:
            atomic_write_json(self.store_path, store)
        except OSError as error:
            raise FileSystemError(
                f"Failed to save session store: {error}",
                context={"store_path": str(self.store_path)},
            ) from error

    async def list_sessions(self) -> list[Session]:
        store = await asyncio.to_thread(self._load_store)
        sessions = [Session.from_dict(payload) for payload in store["sessions"].values()]
        return sorted(sessions, key=lambda item: item.last_activity, reverse=True)

    async def get_session(self, session_id: str) -> Session:
        store = await asyncio.to_thread(self._load_store)
        payload = store["sessions"].get(session_id)
        if payload is None:
            raise SessionNotFoundError(
                f"Session {session_id} not found",
                context={"session_id": session_id},
            )
        return Session.from_dict(payload)

    async def find_session(self, id_prefix: str) -> Session:
        """Resolve a full session id or an unambiguous id prefix."""

        sessions = await self.list_sessions()
        exact = [session for session in sessions if session.id == id_prefix]
        if exact:
            return exact[0]
        matches = [session for session in sessions if session.id.startswith(id_prefix)]
        if len(matches) == 1:
            return matches[0]
        if not matches:
            raise SessionNotFoundError(
                f"No session matches '{id_prefix}'",
                context={"session_id": id_prefix},
            )
        raise SessionNotFoundError(
            f"Session prefix '{id_prefix}' is ambiguous: "
            + ", ".join(session.id[:8] for session in matches),
            context={"session_id": id_prefix, "matches": [session.id for session in matches]},
        )

    # Writing


    async def _insert(self, session: Session) -> Session:
        async with _store_mutex.hold(session.id), self._file_lock():
            store = await asyncio.to_thread(self._load_store)
            session.version = 1
            store["sessions"][session.id] = session.to_dict()
            await asyncio.to_thread(self._save_store, store)
        return session

    async def _apply(
        self,
        session_id: str,
        mutate: Callable[[Session], None],
        derive: bool | None,
    ) -> Session:
        async with _store_mutex.hold(session_id), self._file_lock():
            store = await asyncio.to_thread(self._load_store)
            payload = store["sessions"].get(session_id)
            if payload is None:
                raise SessionNotFoundError(
                    f"Session {session_id} not found",
                    context={"session_id": session_id},
                )
            base = Session.from_dict(payload)
            candidate = copy.deepcopy(base)
            mutate(candidate)
            if derive is None:
                derive = any(getattr(candidate, name) != getattr(base, name) for name in _UNIT_LISTS)
            if derive:
                candidate.status = derive_status(candidate)
            candidate.version = base.version + 1
            candidate.last_activity = format_timestamp(self._clock())

            # A lock taken over as stale may still have a live writer behind it.
            latest = await asyncio.to_thread(self._load_store)
            stored_version = int(latest["sessions"].get(session_id, {}).get("version", 0))
            if stored_version != base.version:
                raise StaleSessionWriteError(
                    f"Session {session_id} changed concurrently "
                    f"(base version {base.version}, stored {stored_version})",
                    context={"session_id": session_id},
                )
            latest["sessions"][session_id] = candidate.to_dict()
            await asyncio.to_thread(self._save_store, latest)
        return candidate

    async def update_session(
        self,
        session_id: str,
        mutate: Callable[[Session], None],
        *,
        derive: bool | None = None,
    ) -> Session:
        """Apply `mutate` to the stored session and persist it.

        Load, mutate and save happen under both locks. The status is
        re-derived when a unit list changed, unless `derive` says otherwise.
        """

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                return await self._apply(session_id, mutate, derive)
            except StaleSessionWriteError:
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                logger.warning("Stale write for session %s, retrying (%d)", session_id, attempt)
                await asyncio.sleep(self._random.uniform(0, self.locks.retry_interval_seconds))
        raise AssertionError("unreachable")  # pragma: no cover

    async def create_session(
        self,
        web_url: str,
        repo_path: str | Path,
        target_repo: str | Path | None = None,
    ) -> Session:
        """Reuse the unfinished session for the same target, or create a new one."""

        workspace = str(Path(target_repo or repo_path).resolve())
        existing = await self._find_unfinished(web_url, workspace)
        if existing is not None:
            logger.info("Reusing existing session %s", existing.id[:8])

            def resume(session: Session) -> None:
                session.status = SessionStatus.IN_PROGRESS

            return await self.update_session(existing.id, resume)

        now = format_timestamp(self._clock())
        session = Session(
            id=str(uuid.uuid4()),
            web_url=web_url,
            repo_path=str(repo_path),
            target_repo=workspace,
            created_at=now,
            last_activity=now,
        )
        created = await self._insert(session)
        await self.cleanup_stale_sessions(current_id=created.id)
        return created

    async def _find_unfinished(self, web_url: str, workspace: str) -> Session | None:
        for session in await self.list_sessions():
            if session.web_url != web_url:
                continue
            if str(Path(session.workspace).resolve()) != workspace:
                continue
            if session.status is SessionStatus.COMPLETED or session_progress(session).is_complete:
                continue
            return session
        return None

    async def delete_session(self, session_id: str) -> Session:
        async with _store_mutex.hold(session_id), self._file_lock():
            store = await asyncio.to_thread(self._load_store)
            payload = store["sessions"].pop(session_id, None)
            if payload is None:
                raise SessionNotFoundError(
                    f"Session {session_id} not found",
                    context={"session_id": session_id},
                )
            await asyncio.to_thread(self._save_store, store)
        return Session.from_dict(payload)

    async def mark_running(self, session_id: str, unit: str) -> Session:
        validate_unit(unit)
        return await self.update_session(
            session_id,
            lambda session: move_unit(session, unit, "running_units"),
        )

    async def mark_completed(self, session_id: str, unit: str, checkpoint: str | None) -> Session:
        validate_unit(unit)

        def complete(session: Session) -> None:
            move_unit(session, unit, "completed_units")
            if checkpoint:
                session.checkpoints[unit] = checkpoint

        return await self.update_session(session_id, complete)

    async def mark_failed(self, session_id: str, unit: str) -> Session:
        validate_unit(unit)
        return await self.update_session(
            session_id,
            lambda session: move_unit(session, unit, "failed_units"),
        )

    async def mark_skipped(self, session_id: str, unit: str) -> Session:
        validate_unit(unit)
        return await self.update_session(
            session_id,
            lambda session: move_unit(session, unit, "skipped_units"),
        )

    async def record_checkpoint(self, session_id: str, unit: str, checkpoint: str) -> Session:
        def record(session: Session) -> None:
            session.checkpoints[unit] = checkpoint

        return await self.update_session(session_id, record)

    async def rollback_to_unit(self, session_id: str, target: str) -> tuple[Session, list[str]]:
        """Forget every unit ranked after `target`; returns the session and removed units."""

        target_spec = validate_unit(target)
        session = await self.get_session(session_id)
        if target not in session.checkpoints:
            raise CheckpointNotFoundError(
                f"No checkpoint found for unit '{target}' in session history",
                context={"unit": target, "available": sorted(session.checkpoints)},
            )
        later = {name for name, spec in UNITS.items() if spec.order > target_spec.order}
        removed = sorted(
            (
                name
                for name in later
                if name in session.completed_units
                or name in session.skipped_units
                or name in session.checkpoints
            ),
            key=lambda name: UNITS[name].order,
        )

        def forget(candidate: Session) -> None:
            for list_name in _UNIT_LISTS:
                kept = [unit for unit in getattr(candidate, list_name) if unit not in later]
                setattr(candidate, list_name, kept)
            candidate.checkpoints = {
                unit: ref for unit, ref in candidate.checkpoints.items() if unit not in later
            }

        updated = await self.update_session(session_id, forget)
        return updated, removed

    async def remove_unit(self, session_id: str, unit: str) -> Session:
        """Forget one unit only, leaving its dependents untouched."""

        validate_unit(unit)

        def forget(session: Session) -> None:
            move_unit(session, unit, None)
            session.checkpoints.pop(unit, None)

        return await self.update_session(session_id, forget)

    async def cleanup_stale_sessions(self, current_id: str | None = None) -> list[str]:
        """Mark idle in-progress sessions as interrupted and fail their running units."""

        threshold = timedelta(minutes=self.stale_session_minutes)
        now = self._clock()
        interrupted: list[str] = []
        for session in await self.list_sessions():
            if session.id == current_id or session.status is not SessionStatus.IN_PROGRESS:
                continue
            last_seen = _parse_timestamp(session.last_activity or session.created_at)
            if last_seen is not None and now - last_seen <= threshold:
                continue

            def interrupt(candidate: Session) -> None:
                for unit in list(candidate.running_units):
                    move_unit(candidate, unit, "failed_units")
                candidate.status = SessionStatus.INTERRUPTED

            await self.update_session(session.id, interrupt, derive=False)
            interrupted.append(session.id)
            logger.warning("Auto-cleaned stale session %s (marked as interrupted)", session.id[:8])
        return interrupted

    def audit_for(self, session: Session, *, debug_transcript: bool = True) -> AuditSession:
        return AuditSession(
            session_id=session.id,
            web_url=session.web_url,
            audit_root=self.audit_root,
            debug_transcript=debug_transcript,
        )

    async def reconcile_session(
        self,
        session_id: str,
        *,
        include_stale_running: bool = True,
    ) -> ReconcileReport:
        """Bring the store in line with what the audit metrics recorded."""

        session = await self.get_session(session_id)
        metrics = await self.audit_for(session).get_metrics()
        agents: dict[str, Any] = metrics.get("metrics", {}).get("agents", {})
        report = ReconcileReport()

        for unit, data in agents.items():
            if unit not in UNITS:
                continue
            status = data.get("status")
            if status == UnitAuditStatus.SUCCESS.value and unit not in session.completed_units:
                await self.mark_completed(session_id, unit, data.get("checkpoint"))
                report.promotions.append(unit)
            elif status == UnitAuditStatus.ROLLED_BACK.value and unit in session.completed_units:
                await self.remove_unit(session_id, unit)
                report.demotions.append(unit)
            elif status == UnitAuditStatus.FAILED.value and unit not in session.failed_units:
                await self.mark_failed(session_id, unit)
                report.failures.append(unit)

        if include_stale_running:
            threshold = timedelta(minutes=self.stale_unit_minutes)
            now = self._clock()
            for unit in session.running_units:
                if unit in report.failures:
                    continue
                last_seen = _last_unit_activity(agents.get(unit))
                if last_seen is None or now - last_seen > threshold:
                    await self.mark_failed(session_id, unit)
                    report.failures.append(unit)
        return report


def archive_deliverables(
    session: Session,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> Path | None:
    """Rename the workspace deliverables directory so a later run starts clean."""

    source = Path(session.workspace) / "deliverables"
    if not source.is_dir():
        return None
    stamp = clock().strftime("%Y-%m-%d_%H-%M-%S")
    base_name = f"deliverables__{stamp}_{session.id[:8]}"
    target = source.with_name(base_name)
    suffix = 1
    while target.exists():
        target = source.with_name(f"{base_name}_{suffix}")
        suffix += 1
    source.rename(target)
    logger.info("Archived deliverables to %s", target)
    return target


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        return None
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def _last_unit_activity(data: dict[str, Any] | None) -> datetime | None:
    if not data:
        return None
    candidates = [_parse_timestamp(data.get("last_attempt_started_at"))]
    attempts = data.get("attempts") or []
    if attempts:
        candidates.append(_parse_timestamp(attempts[-1].get("timestamp")))
    present = [moment for moment in candidates if moment is not None]
    return max(present) if present else None
