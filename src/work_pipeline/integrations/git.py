"""Git subprocess wrappers for worktree, branch and commit operations."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False

    @classmethod
    def from_porcelain(cls, block: str) -> "WorktreeInfo":
        """Build from one ``git worktree list --porcelain`` record."""
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            fields[key] = value
        return cls(
            path=fields.get("worktree", ""),
            branch=fields.get("branch", "").removeprefix("refs/heads/"),
            head=fields.get("HEAD", ""),
            is_bare="bare" in fields,
        )


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitError(f"git not available: {e}") from e
    return result.stdout.strip()


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    start_point: str | None = None,
) -> str:
    """Add a worktree on branch.

    With a start point the branch is created from it; without one an
    existing branch is checked out.
    """
    if start_point:
        args = ["worktree", "add", "-b", branch, str(worktree_path), start_point]
    else:
        args = ["worktree", "add", str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """Registered worktrees, the main one first."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    return [WorktreeInfo.from_porcelain(block) for block in output.split("\n\n") if block.strip()]


def find_worktree_for_branch(repo_path: str | Path, branch: str) -> WorktreeInfo | None:
    return next(
        (wt for wt in worktree_list(repo_path) if wt.branch == branch and not wt.is_bare),
        None,
    )


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    args = ["worktree", "remove", *(["--force"] if force else []), str(worktree_path)]
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    try:
        run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
    except GitError:
        return False
    return True


def get_status(cwd: str | Path) -> list[str]:
    """Porcelain status lines of a working directory (empty when clean)."""
    output = run_git(["status", "--porcelain", "--untracked-files=all"], cwd=cwd)
    return [line for line in output.split("\n") if line.strip()]


def get_current_branch(cwd: str | Path) -> str | None:
    """Get the current branch name, None when detached or not a repo."""
    try:
        return run_git(["branch", "--show-current"], cwd=cwd) or None
    except GitError:
        return None


# ── Commit / push ─────────────────────────────────────────────────────────────


def add_all(cwd: str | Path) -> None:
    run_git(["add", "-A"], cwd=cwd)


def unstage(cwd: str | Path, paths: list[str] | None = None) -> None:
    """Unstage paths (everything when None). Paths that don't exist are ignored."""
    if paths is None:
        run_git(["reset", "-q", "HEAD"], cwd=cwd)
        return
    for path in paths:
        try:
            run_git(["reset", "-q", "HEAD", "--", path], cwd=cwd)
        except GitError as e:
            logger.debug("Nothing to unstage at %s: %s", path, e)


def staged_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--cached", "--name-only"], cwd=cwd)
    return [line for line in output.split("\n") if line.strip()]


def commit(cwd: str | Path, message: str) -> str:
    return run_git(["commit", "-m", message], cwd=cwd)


def push(cwd: str | Path, branch: str, remote: str = "origin") -> str:
    return run_git(["push", "-u", remote, branch], cwd=cwd)


def unpushed_count(cwd: str | Path, branch: str, remote: str = "origin") -> int | None:
    """Commits ahead of the remote branch, None when the remote branch is unknown."""
    try:
        output = run_git(["log", f"{remote}/{branch}..HEAD", "--oneline"], cwd=cwd)
    except GitError:
        return None
    return len([line for line in output.split("\n") if line.strip()])
