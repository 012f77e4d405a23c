"""Shared test fixtures: per-test ledgers, session rows and a scratch git project."""

from __future__ import annotations

import shutil
import sqlite3
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from warden.config import WardenConfig
from warden.paths import sessions_db_path, tmux_session_name, warden_dir, worktrees_dir
from warden.sessions import SessionRow, get_connection, new_session

PROJECT = "testproject"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep WARDEN_* settings from the developer's shell out of tests."""
    for name in (
        "WARDEN_ROOT",
        "WARDEN_DB_PATH",
        "WARDEN_PROJECT",
        "WARDEN_TICK_INTERVAL",
        "WARDEN_RECONCILE_EVERY",
        "WARDEN_ESCALATION_THRESHOLD",
        "WARDEN_STALE_THRESHOLD",
        "WARDEN_TOOL_TIMEOUT",
        "WARDEN_REAP_GRACE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def ledger_path(tmp_path: Path) -> Path:
    return tmp_path / ".warden" / "sessions.db"


@pytest.fixture()
def ledger(ledger_path: Path) -> sqlite3.Connection:
    """Per-test session ledger connection."""
    conn = get_connection(ledger_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def make_session(tmp_path: Path) -> Callable[..., SessionRow]:
    """Factory for ledger rows with sensible defaults (state ``working``, pid 4242)."""

    def _make(agent_name: str = "agent-a", **overrides) -> SessionRow:
        fields = {
            "agent_name": agent_name,
            "capability": "builder",
            "worktree_path": str(tmp_path / ".warden" / "worktrees" / agent_name),
            "branch_name": f"warden/{agent_name}/task-1",
            "bead_id": f"task-{agent_name}",
            "tmux_session": tmux_session_name(PROJECT, agent_name),
            "pid": 4242,
            "state": "working",
        }
        now = overrides.pop("now", None)
        escalation_level = overrides.pop("escalation_level", 0)
        last_activity = overrides.pop("last_activity", None)
        session_id = overrides.pop("id", None)
        fields.update(overrides)
        session = new_session(now=now, **fields)
        session["escalation_level"] = escalation_level
        if last_activity is not None:
            session["last_activity"] = last_activity
        if session_id is not None:
            session["id"] = session_id
        return session

    return _make


def _git(args: list[str], cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True)


@pytest.fixture()
def git_project(tmp_path: Path, monkeypatch) -> WardenConfig:
    """A git repo with one commit and an initialized ``.warden/`` directory."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "warden-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "warden-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "warden-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "warden-tests@example.com")

    root = tmp_path / "repo"
    root.mkdir()
    _git(["init"], root)
    _git(["commit", "--allow-empty", "-m", "init"], root)
    worktrees_dir(root).mkdir(parents=True)
    get_connection(sessions_db_path(root)).close()
    assert warden_dir(root).is_dir()
    return WardenConfig(root=root.resolve(), project_name=PROJECT)


def add_worktree(config: WardenConfig, agent_name: str) -> Path:
    """Create a real worktree under the managed directory."""
    path = worktrees_dir(config.root) / agent_name
    _git(["worktree", "add", "-b", f"warden/{agent_name}/task-1", str(path)], config.root)
    return path
