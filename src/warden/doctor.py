"""Consistency checks and optional remediation for a warden installation.

``check_consistency`` cross-references the session ledger, the tmux session
list and the git worktree list and classifies every divergence. It only
observes; ``run_doctor(fix=True)`` is the one place that acts on findings.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypedDict

from warden import git_ops, merge_queue, processes, tmux
from warden.config import WardenConfig, load_config
from warden.db import inspect_integrity
from warden.errors import StoreUnavailable, TmuxError, ToolUnavailable, WardenError
from warden.findings import Finding, Status, finding, summarize, worst_status
from warden.git_ops import Worktree
from warden.locking import async_writer_lock
from warden.paths import (
    lock_path,
    merge_queue_path,
    sessions_db_path,
    tmux_session_prefix,
    worktrees_dir,
)
from warden.sessions import SessionRow, connect, list_active_sessions, update_session_state

log = logging.getLogger(__name__)

CATEGORY = "consistency"
FIX_LOCK_TIMEOUT = 30.0


class FixAction(TypedDict):
    attempted: int
    fixed: int
    failed: int
    failures: list[dict[str, str]]


class _DoctorReportRequired(TypedDict):
    status: Status
    summary: str
    findings: list[Finding]


class DoctorReport(_DoctorReportRequired, total=False):
    fix_actions: dict[str, FixAction]


@dataclass
class ConsistencySnapshot:
    """The divergences behind the consistency findings, kept for ``--fix``."""

    orphaned_worktrees: list[Worktree] = field(default_factory=list)
    orphaned_tmux: list[str] = field(default_factory=list)
    dead_pids: list[SessionRow] = field(default_factory=list)
    missing_worktrees: list[SessionRow] = field(default_factory=list)
    missing_tmux: list[SessionRow] = field(default_factory=list)


def _normalize_path(path: str | Path) -> str:
    return os.path.realpath(os.fspath(path))


def _is_within(path: str, parent: str) -> bool:
    return path == parent or path.startswith(parent.rstrip(os.sep) + os.sep)


def _check_worktree_listing(worktrees: list[Worktree]) -> Finding:
    return finding("worktree-listing", CATEGORY, "pass", f"Found {len(worktrees)} worktree(s)")


def _check_orphaned_worktrees(
    config: WardenConfig, worktrees: list[Worktree], active: list[SessionRow]
) -> tuple[Finding, list[Worktree]]:
    managed_dir = _normalize_path(worktrees_dir(config.root))
    claimed = {_normalize_path(s["worktree_path"]) for s in active}
    orphans = [
        wt
        for wt in worktrees
        if _is_within(_normalize_path(wt.path), managed_dir)
        and _normalize_path(wt.path) != managed_dir
        and _normalize_path(wt.path) not in claimed
    ]
    if orphans:
        return (
            finding(
                "orphaned-worktrees",
                CATEGORY,
                "warn",
                f"Found {len(orphans)} orphaned worktree(s) with no active session",
                details=[wt.path for wt in orphans],
                fixable=True,
            ),
            orphans,
        )
    return finding("orphaned-worktrees", CATEGORY, "pass", "No orphaned worktrees"), []


def _check_orphaned_tmux(
    config: WardenConfig, live: list[tmux.TmuxSession], active: list[SessionRow]
) -> tuple[Finding, list[str]]:
    prefix = tmux_session_prefix(config.project_name)
    claimed = {s["tmux_session"] for s in active}
    orphans = [s.name for s in live if s.name.startswith(prefix) and s.name not in claimed]
    if orphans:
        return (
            finding(
                "orphaned-tmux",
                CATEGORY,
                "warn",
                f"Found {len(orphans)} orphaned tmux session(s) with no active session",
                details=orphans,
                fixable=True,
            ),
            orphans,
        )
    return finding("orphaned-tmux", CATEGORY, "pass", "No orphaned tmux sessions"), []


def _check_dead_pids(active: list[SessionRow]) -> tuple[Finding, list[SessionRow]]:
    dead = [s for s in active if s["pid"] is not None and not processes.pid_is_alive(s["pid"])]
    if dead:
        return (
            finding(
                "dead-pids",
                CATEGORY,
                "warn",
                f"Found {len(dead)} session(s) with dead PIDs",
                details=[f"{s['agent_name']} (pid {s['pid']})" for s in dead],
                fixable=True,
            ),
            dead,
        )
    return finding("dead-pids", CATEGORY, "pass", "All active session PIDs are alive"), []


def _check_missing_worktrees(active: list[SessionRow]) -> tuple[Finding, list[SessionRow]]:
    missing = [s for s in active if not Path(s["worktree_path"]).exists()]
    if missing:
        return (
            finding(
                "missing-worktrees",
                CATEGORY,
                "warn",
                f"Found {len(missing)} session(s) with missing worktrees",
                details=[f"{s['agent_name']}: {s['worktree_path']}" for s in missing],
                fixable=True,
            ),
            missing,
        )
    return finding("missing-worktrees", CATEGORY, "pass", "All active session worktrees exist"), []


def _check_missing_tmux(
    live: list[tmux.TmuxSession], active: list[SessionRow]
) -> tuple[Finding, list[SessionRow]]:
    names = {s.name for s in live}
    missing = [s for s in active if s["tmux_session"] not in names]
    if missing:
        return (
            finding(
                "missing-tmux",
                CATEGORY,
                "warn",
                f"Found {len(missing)} session(s) with missing tmux sessions",
                details=[f"{s['agent_name']}: {s['tmux_session']}" for s in missing],
                fixable=True,
            ),
            missing,
        )
    return finding("missing-tmux", CATEGORY, "pass", "All active sessions have tmux sessions"), []


async def inspect_consistency(
    config: WardenConfig, *, db_path: Path | None = None
) -> tuple[list[Finding], ConsistencySnapshot]:
    """Run the ordered consistency battery and keep the raw divergences."""
    snapshot = ConsistencySnapshot()
    findings: list[Finding] = []
    timeout = config.watchdog.tool_timeout

    try:
        worktrees = await asyncio.to_thread(git_ops.list_worktrees, config.root, timeout=timeout)
    except ToolUnavailable as exc:
        return [
            finding(
                "worktree-listing",
                CATEGORY,
                "fail",
                "Failed to list git worktrees",
                details=[str(exc)],
            )
        ], snapshot
    findings.append(_check_worktree_listing(worktrees))

    ledger = db_path or sessions_db_path(config.root)
    try:
        with connect(ledger, create_parent=False) as conn:
            active = list_active_sessions(conn)
    except (StoreUnavailable, sqlite3.Error) as exc:
        findings.append(
            finding(
                "sessionstore-open",
                CATEGORY,
                "fail",
                "Failed to open session ledger",
                details=[str(exc)],
            )
        )
        return findings, snapshot
    findings.append(
        finding(
            "sessionstore-open",
            CATEGORY,
            "pass",
            f"Session ledger opened ({len(active)} active session(s))",
        )
    )

    result, snapshot.orphaned_worktrees = _check_orphaned_worktrees(config, worktrees, active)
    findings.append(result)

    live: list[tmux.TmuxSession] | None
    try:
        live = await tmux.list_sessions(timeout=timeout)
    except (ToolUnavailable, TmuxError) as exc:
        live = None
        findings.append(
            finding(
                "tmux-listing",
                CATEGORY,
                "warn",
                "Failed to list tmux sessions",
                details=[str(exc)],
            )
        )
    else:
        findings.append(
            finding("tmux-listing", CATEGORY, "pass", f"Found {len(live)} tmux session(s)")
        )

    if live is not None:
        result, snapshot.orphaned_tmux = _check_orphaned_tmux(config, live, active)
        findings.append(result)

    result, snapshot.dead_pids = _check_dead_pids(active)
    findings.append(result)

    result, snapshot.missing_worktrees = _check_missing_worktrees(active)
    findings.append(result)

    if live is not None:
        result, snapshot.missing_tmux = _check_missing_tmux(live, active)
        findings.append(result)

    return findings, snapshot


async def check_consistency(config: WardenConfig, *, db_path: Path | None = None) -> list[Finding]:
    findings, _ = await inspect_consistency(config, db_path=db_path)
    return findings


def _check_sessions_integrity(db_path: Path) -> Finding:
    try:
        with connect(db_path, create_parent=False) as conn:
            messages = inspect_integrity(conn)
    except (StoreUnavailable, sqlite3.Error) as exc:
        return finding(
            "sessions-integrity",
            "database",
            "fail",
            "Session ledger integrity check could not run",
            details=[str(exc)],
        )
    if messages == ["ok"]:
        return finding("sessions-integrity", "database", "pass", "Session ledger integrity is OK")
    return finding(
        "sessions-integrity",
        "database",
        "fail",
        f"Session ledger integrity check failed with {len(messages)} issue(s)",
        details=messages,
    )


async def _collect(config: WardenConfig) -> tuple[list[Finding], ConsistencySnapshot]:
    db_path = sessions_db_path(config.root)
    findings, snapshot = await inspect_consistency(config, db_path=db_path)
    findings.append(_check_sessions_integrity(db_path))
    findings.extend(merge_queue.check_merge_queue(merge_queue_path(config.root)))
    return findings, snapshot


def _new_fix_action() -> FixAction:
    return {"attempted": 0, "fixed": 0, "failed": 0, "failures": []}


async def _fix_orphaned_worktrees(config: WardenConfig, orphans: list[Worktree]) -> FixAction:
    action = _new_fix_action()
    for wt in orphans:
        action["attempted"] += 1
        try:
            await asyncio.to_thread(git_ops.remove_worktree, config.root, wt.path)
        except ToolUnavailable as exc:
            action["failed"] += 1
            action["failures"].append({"target": wt.path, "reason": str(exc)})
            continue
        if Path(wt.path).exists():
            action["failed"] += 1
            action["failures"].append({"target": wt.path, "reason": "worktree still present"})
        else:
            action["fixed"] += 1
    return action


async def _fix_orphaned_tmux(config: WardenConfig, names: list[str]) -> FixAction:
    action = _new_fix_action()
    for name in names:
        action["attempted"] += 1
        try:
            await tmux.kill_session(name, timeout=config.watchdog.tool_timeout)
            action["fixed"] += 1
        except (TmuxError, ToolUnavailable) as exc:
            action["failed"] += 1
            action["failures"].append({"target": name, "reason": str(exc)})
    return action


def _fix_mark_zombie(db_path: Path, stale: list[SessionRow]) -> FixAction:
    """Mark sessions whose placement is gone as ``zombie``."""
    action = _new_fix_action()
    if not stale:
        return action
    try:
        with connect(db_path, create_parent=False) as conn:
            for session in stale:
                action["attempted"] += 1
                try:
                    update_session_state(conn, session["id"], "zombie")
                    action["fixed"] += 1
                except WardenError as exc:
                    action["failed"] += 1
                    action["failures"].append({"target": session["id"], "reason": str(exc)})
    except (StoreUnavailable, sqlite3.Error) as exc:
        action["attempted"] = len(stale)
        action["failed"] = len(stale)
        action["failures"].append({"target": "db", "reason": str(exc)})
    return action


def _fix_merge_queue(path: Path) -> FixAction:
    action = _new_fix_action()
    action["attempted"] = 1
    try:
        kept, dropped = merge_queue.repair_queue(path)
    except OSError as exc:
        action["failed"] = 1
        action["failures"].append({"target": str(path), "reason": str(exc)})
        return action
    log.info("Rewrote %s: kept %d entr(ies), dropped %d", path, kept, dropped)
    action["fixed"] = 1
    return action


def _needs_attention(findings: list[Finding], name: str) -> bool:
    return any(f["name"] == name and f["status"] != "pass" for f in findings)


async def _apply_fixes(
    config: WardenConfig, findings: list[Finding], snapshot: ConsistencySnapshot
) -> dict[str, FixAction]:
    """Apply best-effort remediation for fixable findings."""
    actions: dict[str, FixAction] = {}
    db_path = sessions_db_path(config.root)

    if snapshot.orphaned_worktrees:
        actions["orphaned-worktrees"] = await _fix_orphaned_worktrees(
            config, snapshot.orphaned_worktrees
        )
    if snapshot.orphaned_tmux:
        actions["orphaned-tmux"] = await _fix_orphaned_tmux(config, snapshot.orphaned_tmux)
    for name, stale in (
        ("dead-pids", snapshot.dead_pids),
        ("missing-worktrees", snapshot.missing_worktrees),
        ("missing-tmux", snapshot.missing_tmux),
    ):
        if stale:
            actions[name] = _fix_mark_zombie(db_path, stale)

    queue_broken = any(
        f["category"] == merge_queue.CATEGORY and f["status"] == "fail" for f in findings
    )
    if queue_broken or _needs_attention(findings, "merge-queue.json duplicates"):
        actions["merge-queue"] = _fix_merge_queue(merge_queue_path(config.root))

    return actions


async def diagnose(config: WardenConfig, *, fix: bool = False) -> DoctorReport:
    findings, snapshot = await _collect(config)

    if fix:
        async with async_writer_lock(lock_path(config.root), timeout=FIX_LOCK_TIMEOUT):
            fix_actions = await _apply_fixes(config, findings, snapshot)
        findings, _ = await _collect(config)

    report: DoctorReport = {
        "status": worst_status([f["status"] for f in findings]),
        "summary": summarize(findings),
        "findings": findings,
    }
    if fix:
        report["fix_actions"] = fix_actions
    return report


def run_doctor(root: str | Path | None = None, *, fix: bool = False) -> DoctorReport:
    """Run all health checks and optionally apply remediation."""
    return asyncio.run(diagnose(load_config(root), fix=fix))
