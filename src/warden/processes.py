"""OS process-table queries and the process-tree reaper."""

from __future__ import annotations

import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field

import psutil

from warden.errors import ToolUnavailable

log = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5.0
_POLL_INTERVAL = 0.1


@dataclass
class ReapOutcome:
    """What a reap did. Needing SIGKILL is reported here, never raised."""

    root_pid: int
    signalled: list[int] = field(default_factory=list)
    force_killed: list[int] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.force_killed)

    def as_dict(self) -> dict[str, object]:
        return {
            "root_pid": self.root_pid,
            "signalled": list(self.signalled),
            "force_killed": list(self.force_killed),
            "partial": self.partial,
        }


def pid_is_alive(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except ProcessLookupError:
        return False
    except OSError:
        return False
    return True


def _still_running(pid: int) -> bool:
    """Like pid_is_alive, but an exited-but-unreaped (zombie) process counts as gone."""
    if not pid_is_alive(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        return True


def children_of(pid: int) -> list[int]:
    """Direct children of ``pid``; empty when the process is already gone."""
    try:
        return sorted(child.pid for child in psutil.Process(pid).children(recursive=False))
    except psutil.NoSuchProcess:
        return []
    except psutil.AccessDenied as exc:
        raise ToolUnavailable("ps", f"permission denied reading children of {pid}") from exc
    except psutil.Error as exc:
        raise ToolUnavailable("ps", f"failed to read children of {pid}: {exc}") from exc


def get_descendant_pids(root_pid: int) -> list[int]:
    """Breadth-first transitive closure of ``root_pid``'s children (root excluded)."""
    seen: set[int] = {root_pid}
    ordered: list[int] = []
    pending: deque[int] = deque([root_pid])
    while pending:
        current = pending.popleft()
        for child in children_of(current):
            if child in seen:
                continue
            seen.add(child)
            ordered.append(child)
            pending.append(child)
    return ordered


def send_signal(pid: int, sig: int) -> bool:
    """Signal a pid. Returns False when the pid has already disappeared."""
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError:
        log.warning("Permission denied sending signal %d to pid %d", sig, pid)
        return False
    return True


def reap_process_tree(
    root_pid: int, *, grace_seconds: float = DEFAULT_GRACE_SECONDS
) -> ReapOutcome:
    """SIGTERM a process tree leaves-first, then SIGKILL whatever outlives the grace period."""
    outcome = ReapOutcome(root_pid=root_pid)
    if not _still_running(root_pid):
        return outcome

    try:
        descendants = get_descendant_pids(root_pid)
    except ToolUnavailable as exc:
        log.warning(
            "Could not enumerate descendants of %d (%s); signalling root only", root_pid, exc
        )
        descendants = []

    # BFS order reversed puts the deepest descendants first.
    targets = [*reversed(descendants), root_pid]
    for pid in targets:
        if send_signal(pid, signal.SIGTERM):
            outcome.signalled.append(pid)

    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not any(_still_running(pid) for pid in outcome.signalled):
            break
        time.sleep(_POLL_INTERVAL)

    for pid in outcome.signalled:
        if _still_running(pid) and send_signal(pid, signal.SIGKILL):
            outcome.force_killed.append(pid)

    if outcome.partial:
        log.info(
            "Reaped pid %d: %d process(es) needed SIGKILL: %s",
            root_pid,
            len(outcome.force_killed),
            outcome.force_killed,
        )
    else:
        log.info("Reaped pid %d (%d process(es) terminated)", root_pid, len(outcome.signalled))
    return outcome


def kill_process_tree(root_pid: int, *, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> list[int]:
    """Terminate ``root_pid`` and its descendants; return pids that needed SIGKILL."""
    return reap_process_tree(root_pid, grace_seconds=grace_seconds).force_killed
