"""Git worktree operations shared by the doctor, the watchdog, and the CLI.

Functions raise ToolUnavailable on failure (not ClickException), so they can
be used from both cli.py and the watchdog loop.
"""

from __future__ import annotations

import contextlib
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from warden.errors import ToolUnavailable

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class Worktree:
    path: str
    branch: str | None
    head: str | None = None


def _git(
    args: list[str], cwd: str | Path, *, timeout: float = DEFAULT_TIMEOUT
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ToolUnavailable("git", f"cannot run git in {cwd}: {exc}") from None
    except subprocess.TimeoutExpired:
        raise ToolUnavailable("git", f"'git {args[0]}' timed out after {timeout}s") from None
    except OSError as exc:
        raise ToolUnavailable("git", str(exc)) from exc


def parse_worktree_list(output: str) -> list[Worktree]:
    """Parse ``git worktree list --porcelain`` output."""
    worktrees: list[Worktree] = []
    path: str | None = None
    branch: str | None = None
    head: str | None = None
    for line in [*output.splitlines(), ""]:
        if not line.strip():
            if path is not None:
                worktrees.append(Worktree(path=path, branch=branch, head=head))
            path = branch = head = None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            path = value
        elif key == "HEAD":
            head = value
        elif key == "branch":
            branch = value.removeprefix("refs/heads/")
    return worktrees


def list_worktrees(repo_root: str | Path, *, timeout: float = DEFAULT_TIMEOUT) -> list[Worktree]:
    """Enumerate every worktree of the repository at ``repo_root``."""
    root = Path(repo_root)
    if not root.is_dir():
        raise ToolUnavailable("git", f"Repository root does not exist: {root}")
    result = _git(["worktree", "list", "--porcelain"], root, timeout=timeout)
    if result.returncode != 0:
        raise ToolUnavailable("git", f"Failed to list worktrees: {result.stderr.strip()}")
    return parse_worktree_list(result.stdout)


def remove_worktree(project_dir: str | Path, worktree_path: str, branch: str | None = None) -> None:
    """Remove a git worktree and optionally its branch. Best-effort, logs warnings on failure."""
    result = _git(["worktree", "remove", "--force", worktree_path], project_dir)
    if result.returncode != 0:
        log.warning("Failed to remove worktree %s: %s", worktree_path, result.stderr.strip())

    if branch:
        result = _git(["branch", "-D", branch], project_dir)
        if result.returncode != 0:
            log.warning("Failed to delete branch %s: %s", branch, result.stderr.strip())

    # Prune stale worktree records left by manually deleted directories
    with contextlib.suppress(ToolUnavailable):
        _git(["worktree", "prune"], project_dir)


def detect_project_name(root: str | Path) -> str:
    """Repo name from the origin remote URL, falling back to the directory name."""
    with contextlib.suppress(ToolUnavailable):
        result = _git(["remote", "get-url", "origin"], root)
        if result.returncode == 0:
            match = re.search(r"[/:]([^/:]+?)(?:\.git)?/?$", result.stdout.strip())
            if match:
                return match.group(1)
    return Path(root).resolve().name
