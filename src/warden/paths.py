"""Canonical filesystem paths for warden configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

WARDEN_DIRNAME = ".warden"
SESSION_PREFIX = "warden"


def resolve_root(root: str | Path | None = None) -> Path:
    """Project root: explicit argument, then ``WARDEN_ROOT``, then the cwd."""
    if root is not None:
        return Path(root).expanduser().resolve()
    env_root = os.environ.get("WARDEN_ROOT")
    if env_root:
        return Path(env_root).expanduser().resolve()
    return Path.cwd().resolve()


def warden_dir(root: Path) -> Path:
    return root / WARDEN_DIRNAME


def config_path(root: Path) -> Path:
    return warden_dir(root) / "config.toml"


def sessions_db_path(root: Path) -> Path:
    env_db = os.environ.get("WARDEN_DB_PATH")
    if env_db:
        return Path(env_db).expanduser()
    return warden_dir(root) / "sessions.db"


def metrics_db_path(root: Path) -> Path:
    return warden_dir(root) / "metrics.db"


def merge_queue_path(root: Path) -> Path:
    return warden_dir(root) / "merge-queue.json"


def worktrees_dir(root: Path) -> Path:
    return warden_dir(root) / "worktrees"


def lock_path(root: Path) -> Path:
    return warden_dir(root) / "watchdog.lock"


def pid_path(root: Path) -> Path:
    return warden_dir(root) / "watchdog.pid"


def log_dir(root: Path) -> Path:
    return warden_dir(root) / "logs"


def tmux_session_prefix(project_name: str) -> str:
    """Prefix shared by every tmux session this installation owns."""
    return f"{SESSION_PREFIX}-{project_name}-"


def tmux_session_name(project_name: str, agent_name: str) -> str:
    return f"{tmux_session_prefix(project_name)}{agent_name}"
