"""Exception types shared by the ledger, adapters, and watchdog.

Library code raises these; ``cli.py`` turns them into ClickException so the
same functions work from both the CLI and the watchdog loop.
"""

from __future__ import annotations


class WardenError(Exception):
    """Base class for every warden failure."""


class ToolUnavailable(WardenError):
    """An external tool (tmux, git, the process table) is missing, erroring, or timed out."""

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(f"{tool}: {message}")
        self.tool = tool


class TmuxError(WardenError):
    """A tmux command ran but reported failure for a specific session."""

    def __init__(self, message: str, *, session_name: str | None = None) -> None:
        super().__init__(message)
        self.session_name = session_name


class StoreUnavailable(WardenError):
    """A ledger file could not be opened (permissions, missing directory, corruption)."""


class SessionNotFound(WardenError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found.")
        self.session_id = session_id


class InvalidTransition(WardenError):
    def __init__(self, session_id: str, from_state: str, to_state: str) -> None:
        super().__init__(
            f"Invalid state transition for session '{session_id}': {from_state} -> {to_state}"
        )
        self.session_id = session_id
        self.from_state = from_state
        self.to_state = to_state


class MergeQueueError(WardenError):
    """The merge queue file is unreadable or structurally invalid."""

    def __init__(self, message: str, *, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class LockBusy(WardenError):
    """Another writer (the watchdog or ``doctor --fix``) holds the writer lock."""
