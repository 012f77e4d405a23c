"""SQLite session ledger: one row per agent session and its lifecycle state."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict, cast

from warden.db import open_database
from warden.errors import InvalidTransition, SessionNotFound

SESSION_STATES = ("booting", "working", "done", "stalled", "zombie")
TERMINAL_STATES = frozenset({"done", "zombie"})
ACTIVE_STATES = frozenset(SESSION_STATES) - TERMINAL_STATES

# Self-transitions are always allowed (no-op); everything else must be listed.
_TRANSITIONS: dict[str, frozenset[str]] = {
    "booting": frozenset({"working", "stalled", "zombie", "done"}),
    "working": frozenset({"stalled", "zombie", "done"}),
    "stalled": frozenset({"working", "zombie", "done"}),
    "done": frozenset(),
    "zombie": frozenset(),
}


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    """Parse a ledger timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


SCHEMA = """\
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    agent_name TEXT NOT NULL,
    capability TEXT NOT NULL,
    worktree_path TEXT NOT NULL,
    branch_name TEXT NOT NULL,
    bead_id TEXT NOT NULL,
    tmux_session TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'booting',
    pid INTEGER,
    parent_agent TEXT,
    depth INTEGER NOT NULL DEFAULT 0,
    run_id TEXT,
    started_at TEXT NOT NULL,
    last_activity TEXT NOT NULL,
    escalation_level INTEGER NOT NULL DEFAULT 0,
    stalled_since TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_active_agent
    ON sessions(agent_name) WHERE state NOT IN ('done', 'zombie');
CREATE INDEX IF NOT EXISTS idx_sessions_state ON sessions(state);
"""

_COLUMNS = (
    "id",
    "agent_name",
    "capability",
    "worktree_path",
    "branch_name",
    "bead_id",
    "tmux_session",
    "state",
    "pid",
    "parent_agent",
    "depth",
    "run_id",
    "started_at",
    "last_activity",
    "escalation_level",
    "stalled_since",
)


class SessionRow(TypedDict):
    id: str
    agent_name: str
    capability: str
    worktree_path: str
    branch_name: str
    bead_id: str
    tmux_session: str
    state: str
    pid: int | None
    parent_agent: str | None
    depth: int
    run_id: str | None
    started_at: str
    last_activity: str
    escalation_level: int
    stalled_since: str | None


def get_connection(db_path: Path, *, create_parent: bool = True) -> sqlite3.Connection:
    """Open the session ledger, creating the schema on first use."""
    return open_database(db_path, schema=SCHEMA, create_parent=create_parent)


@contextlib.contextmanager
def connect(db_path: Path, *, create_parent: bool = True) -> Iterator[sqlite3.Connection]:
    """Context manager wrapper for get_connection().

    Usage:
        with connect(path) as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path, create_parent=create_parent)
    try:
        yield conn
    finally:
        conn.close()


def _row_to_session(row: sqlite3.Row) -> SessionRow:
    return cast(SessionRow, {key: row[key] for key in _COLUMNS})


def _validate_state(state: str) -> str:
    if state not in SESSION_STATES:
        raise ValueError(f"Invalid session state '{state}'. Must be one of: {list(SESSION_STATES)}")
    return state


def _validate_session(session: SessionRow) -> None:
    missing = [key for key in _COLUMNS if key not in session]
    if missing:
        raise ValueError(f"Session is missing field(s): {', '.join(missing)}")
    for key in ("id", "agent_name", "capability", "tmux_session"):
        value = session[key]  # type: ignore[literal-required]
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{key} must be a non-empty string.")
    state = _validate_state(session["state"])
    if session["pid"] is None and state in ACTIVE_STATES and state != "booting":
        raise ValueError(f"pid may only be null while booting (state={state}).")
    if session["escalation_level"] < 0:
        raise ValueError("escalation_level must not be negative.")
    if session["depth"] < 0:
        raise ValueError("depth must not be negative.")


def can_transition(from_state: str, to_state: str) -> bool:
    _validate_state(from_state)
    _validate_state(to_state)
    return from_state == to_state or to_state in _TRANSITIONS[from_state]


def new_session(
    *,
    agent_name: str,
    capability: str,
    worktree_path: str,
    branch_name: str,
    bead_id: str,
    tmux_session: str,
    pid: int | None = None,
    parent_agent: str | None = None,
    depth: int = 0,
    run_id: str | None = None,
    state: str = "booting",
    now: str | None = None,
) -> SessionRow:
    """Build a fresh ledger row for a just-spawned agent."""
    timestamp = now or _utcnow()
    return {
        "id": f"session-{uuid.uuid4().hex[:12]}",
        "agent_name": agent_name,
        "capability": capability,
        "worktree_path": worktree_path,
        "branch_name": branch_name,
        "bead_id": bead_id,
        "tmux_session": tmux_session,
        "state": state,
        "pid": pid,
        "parent_agent": parent_agent,
        "depth": depth,
        "run_id": run_id,
        "started_at": timestamp,
        "last_activity": timestamp,
        "escalation_level": 0,
        "stalled_since": None,
    }


def upsert_session(conn: sqlite3.Connection, session: SessionRow) -> SessionRow:
    """Insert or fully replace the row keyed by ``session['id']``.

    Raises ValueError when the row is malformed or when another non-terminal
    session already holds the same agent name.
    """
    _validate_session(session)
    placeholders = ", ".join("?" for _ in _COLUMNS)
    updates = ", ".join(f"{col} = excluded.{col}" for col in _COLUMNS if col != "id")
    try:
        conn.execute(
            f"INSERT INTO sessions ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            tuple(session[col] for col in _COLUMNS),  # type: ignore[literal-required]
        )
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise ValueError(
            f"Agent '{session['agent_name']}' already has an active session: {exc}"
        ) from None
    conn.commit()
    return session


def get_session_by_id(conn: sqlite3.Connection, session_id: str) -> SessionRow | None:
    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return _row_to_session(row) if row else None


def get_session(conn: sqlite3.Connection, agent_name: str) -> SessionRow | None:
    """Return the active session for an agent, else its most recent historical one."""
    row = conn.execute(
        "SELECT * FROM sessions WHERE agent_name = ? "
        "ORDER BY CASE WHEN state IN ('done', 'zombie') THEN 1 ELSE 0 END, "
        "started_at DESC LIMIT 1",
        (agent_name,),
    ).fetchone()
    return _row_to_session(row) if row else None


def list_active_sessions(conn: sqlite3.Connection) -> list[SessionRow]:
    rows = conn.execute(
        "SELECT * FROM sessions WHERE state NOT IN ('done', 'zombie') "
        "ORDER BY started_at, agent_name"
    ).fetchall()
    return [_row_to_session(row) for row in rows]


def list_sessions(conn: sqlite3.Connection) -> list[SessionRow]:
    rows = conn.execute("SELECT * FROM sessions ORDER BY started_at, agent_name").fetchall()
    return [_row_to_session(row) for row in rows]


def _require_session(conn: sqlite3.Connection, session_id: str) -> SessionRow:
    session = get_session_by_id(conn, session_id)
    if session is None:
        raise SessionNotFound(session_id)
    return session


def update_session_state(
    conn: sqlite3.Connection, session_id: str, new_state: str, *, now: str | None = None
) -> SessionRow:
    """Apply a lifecycle transition, enforcing the transition table.

    Entering ``stalled`` records ``stalled_since`` (preserving any existing
    value). Recovering ``stalled -> working`` clears ``stalled_since`` and
    resets the escalation level.
    """
    _validate_state(new_state)
    session = _require_session(conn, session_id)
    old_state = session["state"]
    if old_state == new_state:
        return session
    if not can_transition(old_state, new_state):
        raise InvalidTransition(session_id, old_state, new_state)
    if session["pid"] is None and new_state in ("working", "stalled"):
        raise InvalidTransition(session_id, old_state, new_state)

    timestamp = now or _utcnow()
    if new_state == "stalled":
        conn.execute(
            "UPDATE sessions SET state = ?, stalled_since = COALESCE(stalled_since, ?) "
            "WHERE id = ?",
            (new_state, timestamp, session_id),
        )
    elif new_state == "working":
        conn.execute(
            "UPDATE sessions SET state = ?, stalled_since = NULL, escalation_level = 0, "
            "last_activity = ? WHERE id = ?",
            (new_state, timestamp, session_id),
        )
    else:
        conn.execute("UPDATE sessions SET state = ? WHERE id = ?", (new_state, session_id))
    conn.commit()
    return _require_session(conn, session_id)


def record_escalation(
    conn: sqlite3.Connection, session_id: str, level: int, *, now: str | None = None
) -> SessionRow:
    """Raise a session's escalation level and stamp ``stalled_since`` if unset."""
    session = _require_session(conn, session_id)
    if session["state"] in TERMINAL_STATES:
        raise InvalidTransition(session_id, session["state"], session["state"])
    if level < session["escalation_level"]:
        raise ValueError(
            f"escalation_level cannot decrease ({session['escalation_level']} -> {level})."
        )
    conn.execute(
        "UPDATE sessions SET escalation_level = ?, stalled_since = COALESCE(stalled_since, ?) "
        "WHERE id = ?",
        (level, now or _utcnow(), session_id),
    )
    conn.commit()
    return _require_session(conn, session_id)


def recover_session(
    conn: sqlite3.Connection, session_id: str, *, now: str | None = None
) -> SessionRow:
    """Mark a session healthy: ``working``, escalation 0, activity touched."""
    session = update_session_state(conn, session_id, "working", now=now)
    if session["escalation_level"] or session["stalled_since"]:
        # Already working but carrying stale escalation from a degraded tick.
        conn.execute(
            "UPDATE sessions SET escalation_level = 0, stalled_since = NULL WHERE id = ?",
            (session_id,),
        )
        conn.commit()
    return touch_session(conn, session_id, now=now)


def touch_session(
    conn: sqlite3.Connection, session_id: str, *, now: str | None = None
) -> SessionRow:
    _require_session(conn, session_id)
    conn.execute(
        "UPDATE sessions SET last_activity = ? WHERE id = ?", (now or _utcnow(), session_id)
    )
    conn.commit()
    return _require_session(conn, session_id)


def set_session_pid(conn: sqlite3.Connection, session_id: str, pid: int) -> SessionRow:
    if pid <= 0:
        raise ValueError("pid must be positive.")
    _require_session(conn, session_id)
    conn.execute("UPDATE sessions SET pid = ? WHERE id = ?", (pid, session_id))
    conn.commit()
    return _require_session(conn, session_id)
