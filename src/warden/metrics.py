"""Session metrics: per-run duration and outcome records in ``.warden/metrics.db``."""

from __future__ import annotations

import contextlib
import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import TypedDict, cast

from warden.db import open_database

SCHEMA = """\
CREATE TABLE IF NOT EXISTS session_metrics (
    agent_name TEXT NOT NULL,
    bead_id TEXT NOT NULL,
    capability TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    exit_code INTEGER,
    merge_result TEXT,
    parent_agent TEXT,
    PRIMARY KEY (agent_name, bead_id)
);

CREATE INDEX IF NOT EXISTS idx_metrics_agent ON session_metrics(agent_name);
"""

_COLUMNS = (
    "agent_name",
    "bead_id",
    "capability",
    "started_at",
    "completed_at",
    "duration_ms",
    "exit_code",
    "merge_result",
    "parent_agent",
)


class SessionMetrics(TypedDict):
    agent_name: str
    bead_id: str
    capability: str
    started_at: str
    completed_at: str | None
    duration_ms: int
    exit_code: int | None
    merge_result: str | None
    parent_agent: str | None


class CapabilityStats(TypedDict):
    count: int
    avg_duration_ms: float


class MetricsSummary(TypedDict):
    total_sessions: int
    completed_sessions: int
    average_duration_ms: float
    by_capability: dict[str, CapabilityStats]
    recent_sessions: list[SessionMetrics]


def get_connection(db_path: Path) -> sqlite3.Connection:
    return open_database(db_path, schema=SCHEMA)


@contextlib.contextmanager
def connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _row_to_metrics(row: sqlite3.Row) -> SessionMetrics:
    return cast(SessionMetrics, {key: row[key] for key in _COLUMNS})


def record_session(conn: sqlite3.Connection, metrics: SessionMetrics) -> None:
    """Insert a metrics row; re-recording the same (agent, bead) replaces it."""
    if metrics["duration_ms"] < 0:
        raise ValueError("duration_ms must not be negative.")
    conn.execute(
        f"INSERT OR REPLACE INTO session_metrics ({', '.join(_COLUMNS)}) "
        f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
        tuple(metrics[col] for col in _COLUMNS),  # type: ignore[literal-required]
    )
    conn.commit()


def get_recent_sessions(conn: sqlite3.Connection, limit: int = 20) -> list[SessionMetrics]:
    rows = conn.execute(
        "SELECT * FROM session_metrics ORDER BY started_at DESC LIMIT ?", (limit,)
    ).fetchall()
    return [_row_to_metrics(row) for row in rows]


def get_sessions_by_agent(conn: sqlite3.Connection, agent_name: str) -> list[SessionMetrics]:
    rows = conn.execute(
        "SELECT * FROM session_metrics WHERE agent_name = ? ORDER BY started_at DESC",
        (agent_name,),
    ).fetchall()
    return [_row_to_metrics(row) for row in rows]


def get_average_duration(conn: sqlite3.Connection, capability: str | None = None) -> float:
    """Mean duration of completed sessions, optionally for one capability; 0 when none."""
    if capability is None:
        row = conn.execute(
            "SELECT AVG(duration_ms) FROM session_metrics WHERE completed_at IS NOT NULL"
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT AVG(duration_ms) FROM session_metrics "
            "WHERE completed_at IS NOT NULL AND capability = ?",
            (capability,),
        ).fetchone()
    return float(row[0]) if row and row[0] is not None else 0.0


def generate_summary(conn: sqlite3.Connection, limit: int = 20) -> MetricsSummary:
    total = conn.execute("SELECT COUNT(*) FROM session_metrics").fetchone()[0]
    completed = conn.execute(
        "SELECT COUNT(*) FROM session_metrics WHERE completed_at IS NOT NULL"
    ).fetchone()[0]

    by_capability: dict[str, CapabilityStats] = {}
    rows = conn.execute(
        "SELECT capability, COUNT(*) AS count, "
        "AVG(CASE WHEN completed_at IS NOT NULL THEN duration_ms END) AS avg_ms "
        "FROM session_metrics GROUP BY capability ORDER BY capability"
    ).fetchall()
    for row in rows:
        by_capability[row["capability"]] = {
            "count": int(row["count"]),
            "avg_duration_ms": float(row["avg_ms"]) if row["avg_ms"] is not None else 0.0,
        }

    return {
        "total_sessions": int(total),
        "completed_sessions": int(completed),
        "average_duration_ms": get_average_duration(conn),
        "by_capability": by_capability,
        "recent_sessions": get_recent_sessions(conn, limit),
    }


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    minutes = int(ms // 60_000)
    seconds = int((ms % 60_000) // 1000)
    return f"{minutes}m {seconds}s"


def format_summary(summary: MetricsSummary) -> str:
    lines = [
        "=== Session Metrics ===",
        "",
        f"Total sessions:     {summary['total_sessions']}",
        f"Completed:          {summary['completed_sessions']}",
        f"Average duration:   {format_duration(summary['average_duration_ms'])}",
    ]

    if summary["by_capability"]:
        lines += ["", "By capability:"]
        for capability, stats in summary["by_capability"].items():
            lines.append(
                f"  {capability + ':':<14}{stats['count']} sessions, "
                f"avg {format_duration(stats['avg_duration_ms'])}"
            )

    if summary["recent_sessions"]:
        lines += ["", "Recent sessions:"]
        for session in summary["recent_sessions"]:
            if session["completed_at"] is not None:
                status, duration = "done", format_duration(session["duration_ms"])
            else:
                status, duration = "running", "in progress"
            lines.append(
                f"  {session['agent_name']:<20} {session['capability']:<10} "
                f"{status:<8} {duration}"
            )

    return "\n".join(lines) + "\n"
