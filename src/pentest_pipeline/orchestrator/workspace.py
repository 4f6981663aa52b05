"""Version-control adapter for the shared assessment workspace.

Mutating git commands are serialized through a process-wide FIFO semaphore,
retried with exponential backoff on lock-file contention, and destructive
reset/clean operations run inside a preserve/restore wrapper so generated
deliverables survive a rollback.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from pentest_pipeline.orchestrator.concurrency import FifoSemaphore, git_semaphore
from pentest_pipeline.orchestrator.errors import FileSystemError, LockContentionError

logger = logging.getLogger(__name__)

LOCK_ERROR_SIGNATURES: tuple[str, ...] = (
    "index.lock",
    "unable to lock",
    "another git process",
    "fatal: unable to create",
    "fatal: index file",
)


@dataclass(slots=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


def is_lock_error(text: str) -> bool:
    lowered = text.lower()
    return any(signature in lowered for signature in LOCK_ERROR_SIGNATURES)


class GitWorkspace:
    """Checkpoint, commit and rollback operations for one workspace directory."""

    def __init__(
        self,
        path: Path,
        *,
        max_retries: int = 5,
        retry_base_seconds: float = 1.0,
        preserved_dirs: tuple[str, ...] = ("deliverables", "outputs"),
        semaphore: FifoSemaphore | None = None,
    ) -> None:
        self.path = Path(path)
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.preserved_dirs = preserved_dirs
        self._semaphore = semaphore or git_semaphore

    async def run(self, *args: str, description: str, mutating: bool = True) -> GitResult:
        """Run one git command, retrying lock-contention failures."""

        for attempt in range(1, self.max_retries + 1):
            if mutating:
                async with self._semaphore.slot():
                    result = await self._exec(args)
            else:
                result = await self._exec(args)
            if result.returncode == 0:
                return result

            output = f"{result.stderr}\n{result.stdout}"
            if not is_lock_error(output):
                raise FileSystemError(
                    f"git {' '.join(args)} failed while {description}: "
                    f"{result.stderr.strip() or result.stdout.strip()}",
                    context={
                        "workspace": str(self.path),
                        "returncode": result.returncode,
                        "description": description,
                    },
                )
            if attempt == self.max_retries:
                raise LockContentionError(
                    f"git lock contention persisted after {self.max_retries} attempts "
                    f"while {description}",
                    context={"workspace": str(self.path), "stderr": result.stderr.strip()},
                )
            delay = self.retry_base_seconds * 2 ** (attempt - 1)
            logger.warning(
                "Git lock contention while %s (attempt %d/%d), retrying in %.1fs",
                description,
                attempt,
                self.max_retries,
                delay,
            )
            await asyncio.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    async def ensure_repository(self) -> None:
        if not self.path.is_dir():
            raise FileSystemError(
                f"Workspace directory does not exist: {self.path}",
                context={"workspace": str(self.path)},
            )
        try:
            await self.run("rev-parse", "--git-dir", description="checking repository", mutating=False)
        except FileSystemError as error:
            raise FileSystemError(
                f"Workspace is not a git repository: {self.path}",
                context={"workspace": str(self.path)},
            ) from error

    async def has_changes(self) -> bool:
        result = await self.run(
            "status",
            "--porcelain",
            description="checking workspace status",
            mutating=False,
        )
        return bool(result.stdout.strip())

    async def head_hash(self) -> str:
        result = await self.run("rev-parse", "HEAD", description="reading HEAD", mutating=False)
        return result.stdout.strip()

    async def first_commit(self) -> str:
        result = await self.run(
            "log",
            "--reverse",
            "--format=%H",
            description="finding initial commit",
            mutating=False,
        )
        lines = result.stdout.strip().splitlines()
        if not lines:
            raise FileSystemError(
                f"Workspace has no commits: {self.path}",
                context={"workspace": str(self.path)},
            )
        return lines[0].strip()

    @asynccontextmanager
    async def preserved_outputs(self) -> AsyncIterator[None]:
        """Copy preserved directories aside and merge them back afterwards."""

        with tempfile.TemporaryDirectory(prefix="pentest-preserve-") as backup_root:
            backup = Path(backup_root)
            saved = await asyncio.to_thread(self._backup_outputs, backup)
            try:
                yield
            finally:
                await asyncio.to_thread(self._restore_outputs, backup, saved)

    async def clean(self, reason: str) -> None:
        """Discard uncommitted changes while keeping preserved directories."""

        logger.info("Cleaning workspace %s (%s)", self.path, reason)
        async with self.preserved_outputs():
            await self.run("reset", "--hard", "HEAD", description=f"resetting for {reason}")
            await self.run(*self._clean_args(), description=f"removing untracked files for {reason}")

    async def create_checkpoint(self, description: str, attempt: int) -> str:
        """Commit the current tree as the pre-attempt checkpoint and return its hash."""

        if attempt > 1:
            await self.clean("retry preparation")
        await self.run("status", "--porcelain", description="inspecting changes", mutating=False)
        await self.run("add", "-A", description="staging checkpoint")
        await self.run(
            "commit",
            "--allow-empty",
            "-m",
            f"Checkpoint: {description} (attempt {attempt})",
            description="creating checkpoint",
        )
        return await self.head_hash()

    async def commit_success(self, description: str) -> str:
        await self.run("add", "-A", description="staging results")
        await self.run(
            "commit",
            "--allow-empty",
            "-m",
            f"{description}: completed successfully",
            description="committing results",
        )
        return await self.head_hash()

    async def commit_all(self, message: str) -> str:
        await self.run("add", "-A", description="staging changes")
        await self.run("commit", "--allow-empty", "-m", message, description="committing changes")
        return await self.head_hash()

    async def rollback(self, reason: str) -> None:
        """Return the tree to the latest checkpoint commit."""

        logger.warning("Rolling back workspace %s (%s)", self.path, reason)
        await self.clean(reason)

    async def rollback_to_commit(self, ref: str) -> None:
        logger.warning("Resetting workspace %s to %s", self.path, ref[:12])
        async with self.preserved_outputs():
            await self.run("reset", "--hard", ref, description=f"resetting to {ref[:12]}")
            await self.run(*self._clean_args(), description="removing untracked files")

    def _clean_args(self) -> tuple[str, ...]:
        args: list[str] = ["clean", "-fd"]
        for name in self.preserved_dirs:
            args.extend(["-e", f"{name}/"])
        return tuple(args)

    def _backup_outputs(self, backup: Path) -> list[str]:
        saved: list[str] = []
        for name in self.preserved_dirs:
            source = self.path / name
            if source.is_dir():
                shutil.copytree(source, backup / name)
                saved.append(name)
        return saved

    def _restore_outputs(self, backup: Path, saved: list[str]) -> None:
        for name in saved:
            shutil.copytree(backup / name, self.path / name, dirs_exist_ok=True)

    async def _exec(self, args: tuple[str, ...]) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=self.path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise FileSystemError(
                f"Cannot run git in {self.path}: {error}",
                context={"workspace": str(self.path)},
            ) from error
        stdout, stderr = await process.communicate()
        return GitResult(
            args=args,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
