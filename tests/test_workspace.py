from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path

import allure
import pytest

from pentest_pipeline.orchestrator.errors import FileSystemError, LockContentionError
from pentest_pipeline.orchestrator.workspace import GitWorkspace, is_lock_error

pytestmark = [
    allure.epic("Crash Safety"),
    allure.feature("Git Workspace"),
]


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return completed.stdout.strip()


def _workspace(repo: Path, **overrides: object) -> GitWorkspace:
    options: dict[str, object] = {"max_retries": 5, "retry_base_seconds": 0.01}
    options.update(overrides)
    return GitWorkspace(repo, **options)  # type: ignore[arg-type]


def _tree(repo: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(repo)): path.read_bytes()
        for path in sorted(repo.rglob("*"))
        if path.is_file() and ".git" not in path.relative_to(repo).parts
    }


def test_lock_error_signatures() -> None:
    assert is_lock_error("fatal: Unable to create '/w/.git/index.lock': File exists.")
    assert is_lock_error("Another git process seems to be running in this repository")
    assert not is_lock_error("error: pathspec 'nope' did not match any file(s) known to git")


@pytest.mark.asyncio
async def test_rollback_after_failed_attempt_restores_tree_but_keeps_deliverables(
    git_repo: Path,
) -> None:
    workspace = _workspace(git_repo)
    checkpoint = await workspace.create_checkpoint("recon", attempt=1)
    before = _tree(git_repo)

    (git_repo / "README.md").write_text("tampered\n", "utf-8")
    (git_repo / "app.py").unlink()
    (git_repo / "scratch").mkdir()
    (git_repo / "scratch" / "notes.txt").write_text("junk", "utf-8")
    (git_repo / "deliverables").mkdir()
    (git_repo / "deliverables" / "recon_deliverable.md").write_text("# partial", "utf-8")
    (git_repo / "outputs").mkdir()
    (git_repo / "outputs" / "shot.png").write_bytes(b"\x89PNG")

    await workspace.rollback("recon failed")

    after = _tree(git_repo)
    assert after.pop("deliverables/recon_deliverable.md") == b"# partial"
    assert after.pop("outputs/shot.png") == b"\x89PNG"
    assert after == before
    assert await workspace.head_hash() == checkpoint


@pytest.mark.asyncio
async def test_retry_checkpoint_cleans_previous_attempt_leftovers(git_repo: Path) -> None:
    workspace = _workspace(git_repo)
    first = await workspace.create_checkpoint("xss-vuln", attempt=1)
    (git_repo / "leftover.txt").write_text("from attempt one", "utf-8")

    second = await workspace.create_checkpoint("xss-vuln", attempt=2)

    assert second != first
    assert not (git_repo / "leftover.txt").exists()
    assert "Checkpoint: xss-vuln (attempt 2)" in git(git_repo, "log", "-1", "--format=%s")


@pytest.mark.asyncio
async def test_commit_success_records_generated_files(git_repo: Path) -> None:
    workspace = _workspace(git_repo)
    await workspace.create_checkpoint("pre-recon", attempt=1)
    (git_repo / "deliverables").mkdir()
    (git_repo / "deliverables" / "pre_recon_deliverable.md").write_text("# done", "utf-8")

    commit = await workspace.commit_success("pre-recon")

    assert commit == git(git_repo, "rev-parse", "HEAD")
    assert not await workspace.has_changes()
    assert "pre-recon: completed successfully" in git(git_repo, "log", "-1", "--format=%s")


@pytest.mark.asyncio
async def test_rollback_to_commit_removes_later_work(git_repo: Path) -> None:
    workspace = _workspace(git_repo)
    initial = await workspace.first_commit()
    (git_repo / "later.py").write_text("x = 1\n", "utf-8")
    await workspace.commit_all("later work")

    await workspace.rollback_to_commit(initial)

    assert not (git_repo / "later.py").exists()
    assert await workspace.head_hash() == initial


@pytest.mark.asyncio
async def test_lock_contention_is_retried_until_the_lock_disappears(git_repo: Path) -> None:
    workspace = _workspace(git_repo)
    lock = git_repo / ".git" / "index.lock"
    lock.write_text("", "utf-8")
    (git_repo / "new.txt").write_text("new", "utf-8")

    async def release_later() -> None:
        await asyncio.sleep(0.03)
        lock.unlink()

    await asyncio.gather(workspace.run("add", "-A", description="staging"), release_later())

    assert "new.txt" in git(git_repo, "diff", "--cached", "--name-only")


@pytest.mark.asyncio
async def test_persistent_lock_contention_raises(git_repo: Path) -> None:
    workspace = _workspace(git_repo, max_retries=2)
    (git_repo / ".git" / "index.lock").write_text("", "utf-8")
    (git_repo / "new.txt").write_text("new", "utf-8")

    with pytest.raises(LockContentionError):
        await workspace.run("add", "-A", description="staging")


@pytest.mark.asyncio
async def test_non_lock_failures_raise_immediately(git_repo: Path, tmp_path: Path) -> None:
    with pytest.raises(FileSystemError):
        await _workspace(git_repo).run("checkout", "no-such-branch", description="switching")

    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(FileSystemError, match="not a git repository"):
        await _workspace(plain).ensure_repository()
