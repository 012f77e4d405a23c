"""SQLite plumbing shared by the session ledger and the metrics store.

Both files are opened in WAL mode with a busy timeout so the watchdog can
write while CLI invocations read.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from warden.errors import StoreUnavailable


def open_database(db_path: Path, *, schema: str, create_parent: bool = True) -> sqlite3.Connection:
    """Open a ledger file and apply ``schema``.

    Raises StoreUnavailable when the file cannot be opened. With
    ``create_parent=False`` a missing parent directory is an error rather than
    something to create, which is what read-only observers want.
    """
    try:
        if create_parent:
            db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        elif not db_path.parent.is_dir():
            raise StoreUnavailable(f"Ledger directory does not exist: {db_path.parent}")
        conn = sqlite3.connect(str(db_path), timeout=10.0)
    except (OSError, sqlite3.Error) as exc:
        raise StoreUnavailable(f"Failed to open {db_path}: {exc}") from exc

    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=10000")
        conn.executescript(schema)
    except sqlite3.Error as exc:
        conn.close()
        raise StoreUnavailable(f"Failed to open {db_path}: {exc}") from exc
    return conn


def inspect_integrity(conn: sqlite3.Connection) -> list[str]:
    """Return ``PRAGMA integrity_check`` messages (``["ok"]`` when healthy)."""
    rows = conn.execute("PRAGMA integrity_check").fetchall()
    return [str(row[0]) for row in rows if row]
