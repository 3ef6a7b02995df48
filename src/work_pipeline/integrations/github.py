"""GitHub CLI (gh) subprocess wrappers for pull requests."""

import subprocess
from pathlib import Path


class GitHubError(Exception):
    """Raised when a gh command fails."""


def run_gh(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a gh command and return stdout. Raises GitHubError on failure."""
    cmd = ["gh"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitHubError(f"gh {args[0]} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitHubError("gh CLI not found; install it from https://cli.github.com") from e


def find_open_pr(cwd: str | Path, branch: str) -> str | None:
    """URL of an open PR whose head is branch, if any."""
    output = run_gh(
        ["pr", "list", "--head", branch, "--state", "open", "--json", "url", "--jq", ".[0].url"],
        cwd=cwd,
    )
    return output or None


def create_pr(
    cwd: str | Path,
    base: str,
    head: str,
    title: str,
    body: str,
    draft: bool = True,
) -> str:
    """Open a pull request and return its URL."""
    args = ["pr", "create", "--base", base, "--head", head, "--title", title, "--body", body]
    if draft:
        args.append("--draft")
    output = run_gh(args, cwd=cwd)
    # gh prints progress lines before the URL
    return output.splitlines()[-1].strip() if output else ""
