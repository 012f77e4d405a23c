"""tmux adapter for agent sessions.

Every call shells out to the tmux CLI through an asyncio subprocess with a
bounded timeout. A missing binary or a timeout raises ToolUnavailable; a tmux
command that ran and failed for a named session raises TmuxError.

Session naming convention: ``warden-{project}-{agent}`` (see ``paths``).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from warden.errors import TmuxError, ToolUnavailable

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

_NO_SERVER_MARKERS = ("no server running", "no sessions")
_NO_SESSION_MARKERS = ("can't find session", "session not found")


@dataclass(frozen=True)
class TmuxSession:
    name: str
    pid: int


async def _run(args: list[str], *, timeout: float, cwd: str | None = None) -> tuple[int, str, str]:
    """Run ``tmux *args`` and return (exit code, stdout, stderr)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "tmux",
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise ToolUnavailable("tmux", "tmux is not installed or not on PATH") from None
    except OSError as exc:
        raise ToolUnavailable("tmux", str(exc)) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(Exception):
            await proc.wait()
        raise ToolUnavailable("tmux", f"'tmux {args[0]}' timed out after {timeout}s") from None
    return proc.returncode or 0, stdout.decode(errors="replace"), stderr.decode(errors="replace")


def _no_server(stderr: str) -> bool:
    """True when tmux failed only because no server is listening.

    A socket that cannot be opened for any other reason (permissions, a
    broken socket file) is a tool failure, not an empty server.
    """
    if any(marker in stderr for marker in _NO_SERVER_MARKERS):
        return True
    return "error connecting to" in stderr and "No such file or directory" in stderr


def _session_target(name: str) -> str:
    # "=" disables tmux's prefix matching of session names
    return f"={name}"


def _pane_target(name: str) -> str:
    return f"={name}:"


def parse_session_list(output: str) -> list[TmuxSession]:
    """Parse ``list-sessions -F '#{session_name}:#{pid}'`` output, skipping bad lines."""
    sessions: list[TmuxSession] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or ":" not in line:
            continue
        name, _, pid_str = line.rpartition(":")
        if not name:
            continue
        try:
            pid = int(pid_str)
        except ValueError:
            continue
        sessions.append(TmuxSession(name=name, pid=pid))
    return sessions


async def list_sessions(*, timeout: float = DEFAULT_TIMEOUT) -> list[TmuxSession]:
    """List all tmux sessions. No running server means no sessions, not an error."""
    code, stdout, stderr = await _run(
        ["list-sessions", "-F", "#{session_name}:#{pid}"], timeout=timeout
    )
    if code != 0:
        if _no_server(stderr):
            return []
        raise ToolUnavailable("tmux", f"Failed to list tmux sessions: {stderr.strip()}")
    return parse_session_list(stdout)


async def is_session_alive(name: str, *, timeout: float = DEFAULT_TIMEOUT) -> bool:
    """Check one session by exact name.

    Returns False only when tmux reports the session (or the whole server)
    as absent. Any other failure raises ToolUnavailable.
    """
    code, _, stderr = await _run(["has-session", "-t", _session_target(name)], timeout=timeout)
    if code == 0:
        return True
    if _no_server(stderr) or any(marker in stderr for marker in _NO_SESSION_MARKERS):
        return False
    raise ToolUnavailable("tmux", f'Failed to check tmux session "{name}": {stderr.strip()}')


async def list_pane_pids(name: str, *, timeout: float = DEFAULT_TIMEOUT) -> list[int]:
    """Return the pid of the process running in each pane of a session."""
    code, stdout, stderr = await _run(
        ["list-panes", "-t", _pane_target(name), "-F", "#{pane_pid}"], timeout=timeout
    )
    if code != 0:
        raise TmuxError(
            f'Failed to list panes for tmux session "{name}": {stderr.strip()}',
            session_name=name,
        )
    pids: list[int] = []
    for line in stdout.splitlines():
        with contextlib.suppress(ValueError):
            pids.append(int(line.strip()))
    return pids


async def kill_session(name: str, *, timeout: float = DEFAULT_TIMEOUT) -> None:
    code, _, stderr = await _run(["kill-session", "-t", _session_target(name)], timeout=timeout)
    if code != 0:
        raise TmuxError(
            f'Failed to kill tmux session "{name}": {stderr.strip()}', session_name=name
        )


async def send_keys(name: str, keys: str, *, timeout: float = DEFAULT_TIMEOUT) -> None:
    code, _, stderr = await _run(
        ["send-keys", "-t", _pane_target(name), keys, "Enter"], timeout=timeout
    )
    if code != 0:
        raise TmuxError(
            f'Failed to send keys to tmux session "{name}": {stderr.strip()}',
            session_name=name,
        )


async def create_session(
    name: str, cwd: str, command: str, *, timeout: float = DEFAULT_TIMEOUT
) -> int:
    """Start a detached session running ``command`` and return its pane pid."""
    code, _, stderr = await _run(
        ["new-session", "-d", "-s", name, "-c", cwd, command], timeout=timeout, cwd=cwd
    )
    if code != 0:
        raise TmuxError(
            f'Failed to create tmux session "{name}": {stderr.strip()}', session_name=name
        )
    pids = await list_pane_pids(name, timeout=timeout)
    if not pids:
        raise TmuxError(
            f'Created tmux session "{name}" but could not find its pane PID', session_name=name
        )
    log.info("Created tmux session %s (pane pid=%d)", name, pids[0])
    return pids[0]
