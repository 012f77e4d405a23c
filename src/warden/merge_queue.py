"""Merge-queue ledger: a FIFO of branch-integration records in ``merge-queue.json``.

The file is a JSON array of camelCase objects ordered by ``enqueuedAt``. Every
mutation rewrites it atomically (temp file in the same directory, then
``os.replace``) and holds an exclusive lock on ``merge-queue.json.lock``
across the whole read-modify-write. Anything read from disk goes through
``parse_entries`` before the rest of the code sees it.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypedDict

from warden.errors import MergeQueueError
from warden.locking import writer_lock
from warden.findings import Finding, finding

log = logging.getLogger(__name__)

MERGE_STATUSES = ("pending", "merging", "merged", "conflict", "failed")
OPEN_STATUSES = frozenset({"pending", "merging"})
RESOLVED_TIERS = ("clean-merge", "auto-resolve", "ai-resolve", "reimagine")
STALE_AFTER = timedelta(hours=24)
LOCK_TIMEOUT = 10.0

CATEGORY = "merge"
_IDENTITY_KEYS = ("branchName", "beadId", "agentName")
_MISSING = object()


class MergeEntry(TypedDict):
    branchName: str
    beadId: str
    agentName: str
    filesModified: list[str]
    enqueuedAt: str
    status: str
    resolvedTier: str | None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _json_type(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def entry_issues(entry: object) -> list[str]:
    """Every structural problem with one raw queue entry (empty when valid)."""
    if not isinstance(entry, dict):
        return [f"entry must be an object, found {_json_type(entry)}"]
    issues: list[str] = []
    for key in _IDENTITY_KEYS:
        value = entry.get(key)
        if not isinstance(value, str) or not value:
            issues.append(f"missing or invalid {key}")
    if not isinstance(entry.get("filesModified"), list):
        issues.append("missing or invalid filesModified array")
    enqueued_at = entry.get("enqueuedAt")
    if not isinstance(enqueued_at, str) or not enqueued_at:
        issues.append("missing or invalid enqueuedAt")
    status = entry.get("status", _MISSING)
    if status not in MERGE_STATUSES:
        issues.append(f"invalid status: {'missing' if status is _MISSING else status}")
    tier = entry.get("resolvedTier", _MISSING)
    if tier is not None and tier not in RESOLVED_TIERS:
        issues.append(f"invalid resolvedTier: {'missing' if tier is _MISSING else tier}")
    return issues


def _describe_entry(index: int, entry: object, issues: list[str]) -> str:
    branch = entry.get("branchName") if isinstance(entry, dict) else None
    label = branch if isinstance(branch, str) and branch else "unknown"
    return f"Entry {index} ({label}): {', '.join(issues)}"


def _to_entry(raw: dict[str, Any]) -> MergeEntry:
    return {
        "branchName": raw["branchName"],
        "beadId": raw["beadId"],
        "agentName": raw["agentName"],
        "filesModified": [str(item) for item in raw["filesModified"]],
        "enqueuedAt": raw["enqueuedAt"],
        "status": raw["status"],
        "resolvedTier": raw["resolvedTier"],
    }


def _decode(text: str) -> list[Any]:
    trimmed = text.strip()
    if not trimmed:
        return []
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as exc:
        raise MergeQueueError(
            "Failed to parse merge-queue.json",
            details=[str(exc), "File may be corrupted or contain invalid JSON"],
        ) from exc
    if not isinstance(parsed, list):
        raise MergeQueueError(
            "Merge queue must be a JSON array",
            details=[f"Found: {_json_type(parsed)}", "Expected: array of merge entries"],
        )
    return parsed


def parse_entries(text: str) -> list[MergeEntry]:
    """Decode queue file contents into strict records.

    Raises MergeQueueError for invalid JSON, a non-array document, or any
    entry with structural problems (one detail line per offending entry).
    """
    raw_entries = _decode(text)
    invalid = [
        _describe_entry(index, raw, issues)
        for index, raw in enumerate(raw_entries)
        if (issues := entry_issues(raw))
    ]
    if invalid:
        raise MergeQueueError(f"Found {len(invalid)} invalid queue entries", details=invalid)
    return [_to_entry(raw) for raw in raw_entries]


def load_entries(path: Path) -> list[MergeEntry]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise MergeQueueError(f"Failed to read {path}: {exc}") from exc
    return parse_entries(text)


def _sort_key(entry: MergeEntry) -> datetime:
    try:
        return _parse_time(entry["enqueuedAt"])
    except ValueError:
        return datetime.max.replace(tzinfo=UTC)


def _queue_lock(path: Path):
    return writer_lock(path.with_name(f"{path.name}.lock"), timeout=LOCK_TIMEOUT)


def _write_entries(path: Path, entries: list[MergeEntry]) -> None:
    ordered = sorted(entries, key=_sort_key)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(ordered, handle, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _check_tier(status: str, resolved_tier: str | None) -> None:
    if status not in MERGE_STATUSES:
        raise ValueError(f"Invalid merge status '{status}'. Must be one of: {list(MERGE_STATUSES)}")
    if resolved_tier is not None and resolved_tier not in RESOLVED_TIERS:
        raise ValueError(
            f"Invalid resolved tier '{resolved_tier}'. Must be one of: {list(RESOLVED_TIERS)}"
        )
    if status in OPEN_STATUSES and resolved_tier is not None:
        raise ValueError(f"resolvedTier must be null while status is '{status}'.")
    if status not in OPEN_STATUSES and resolved_tier is None:
        raise ValueError(f"resolvedTier is required once status is '{status}'.")


def enqueue(
    path: Path,
    *,
    branch_name: str,
    bead_id: str,
    agent_name: str,
    files_modified: list[str],
    enqueued_at: str | None = None,
) -> MergeEntry:
    """Append a ``pending`` entry to the back of the queue."""
    candidate = {
        "branchName": branch_name,
        "beadId": bead_id,
        "agentName": agent_name,
        "filesModified": list(files_modified),
        "enqueuedAt": enqueued_at or _now_iso(),
        "status": "pending",
        "resolvedTier": None,
    }
    issues = entry_issues(candidate)
    if issues:
        raise ValueError(f"Invalid merge entry for '{branch_name}': {', '.join(issues)}")
    entry = _to_entry(candidate)
    with _queue_lock(path):
        entries = load_entries(path)
        entries.append(entry)
        _write_entries(path, entries)
    log.info("Enqueued %s for merge (agent=%s)", branch_name, agent_name)
    return entry


def list_entries(path: Path, *, status: str | None = None) -> list[MergeEntry]:
    entries = load_entries(path)
    if status is not None:
        entries = [entry for entry in entries if entry["status"] == status]
    return entries


def peek(path: Path) -> MergeEntry | None:
    """Oldest ``pending`` entry, or None."""
    pending = list_entries(path, status="pending")
    return pending[0] if pending else None


def update_status(
    path: Path, branch_name: str, status: str, *, resolved_tier: str | None = None
) -> MergeEntry:
    """Move the oldest open entry for ``branch_name`` to ``status``.

    Terminal statuses require a resolved tier; open statuses forbid one.
    """
    _check_tier(status, resolved_tier)
    with _queue_lock(path):
        entries = load_entries(path)
        for entry in entries:
            if entry["branchName"] == branch_name and entry["status"] in OPEN_STATUSES:
                entry["status"] = status
                entry["resolvedTier"] = resolved_tier
                _write_entries(path, entries)
                return entry
    raise MergeQueueError(f"No open merge entry for branch '{branch_name}'.")


def remove(path: Path, branch_name: str) -> MergeEntry | None:
    """Drop the oldest entry for ``branch_name``; returns it, or None if absent."""
    with _queue_lock(path):
        entries = load_entries(path)
        for index, entry in enumerate(entries):
            if entry["branchName"] == branch_name:
                removed = entries.pop(index)
                _write_entries(path, entries)
                return removed
    return None


def check_merge_queue(path: Path, *, now: datetime | None = None) -> list[Finding]:
    """Validate the queue file: format, per-entry structure, staleness, duplicates."""
    if not path.exists():
        return [
            finding(
                "merge-queue.json exists",
                CATEGORY,
                "pass",
                "No merge queue file (normal for new installations or no merges yet)",
            )
        ]

    try:
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            return [finding("merge-queue.json format", CATEGORY, "pass", "Merge queue is empty")]
        raw_entries = _decode(text)
    except MergeQueueError as exc:
        return [
            finding(
                "merge-queue.json format",
                CATEGORY,
                "fail",
                str(exc),
                details=exc.details,
                fixable=True,
            )
        ]
    except (OSError, UnicodeDecodeError) as exc:
        return [
            finding(
                "merge-queue.json format",
                CATEGORY,
                "fail",
                "Failed to parse merge-queue.json",
                details=[str(exc), "File may be corrupted or contain invalid JSON"],
                fixable=True,
            )
        ]

    findings: list[Finding] = []
    invalid = [
        _describe_entry(index, raw, issues)
        for index, raw in enumerate(raw_entries)
        if (issues := entry_issues(raw))
    ]
    if invalid:
        findings.append(
            finding(
                "merge-queue.json entries",
                CATEGORY,
                "fail",
                f"Found {len(invalid)} invalid queue entries",
                details=invalid,
                fixable=True,
            )
        )
    else:
        findings.append(
            finding("merge-queue.json format", CATEGORY, "pass", "All queue entries are valid")
        )

    moment = now or datetime.now(UTC)
    stale: list[str] = []
    for raw in raw_entries:
        if not isinstance(raw, dict) or raw.get("status") not in OPEN_STATUSES:
            continue
        try:
            age = moment - _parse_time(raw["enqueuedAt"])
        except (KeyError, TypeError, ValueError, AttributeError):
            continue
        if age > STALE_AFTER:
            hours = int(age.total_seconds() // 3600)
            stale.append(f"{raw.get('branchName')} ({raw['status']}, {hours}h old) - may be stuck")
    if stale:
        findings.append(
            finding(
                "merge-queue.json staleness",
                CATEGORY,
                "warn",
                f"Found {len(stale)} potentially stale queue entries",
                details=stale,
            )
        )

    counts: dict[str, int] = {}
    for raw in raw_entries:
        branch = raw.get("branchName") if isinstance(raw, dict) else None
        if isinstance(branch, str) and branch:
            counts[branch] = counts.get(branch, 0) + 1
    duplicates = [f"{branch} (appears {count} times)" for branch, count in counts.items() if count > 1]
    if duplicates:
        findings.append(
            finding(
                "merge-queue.json duplicates",
                CATEGORY,
                "warn",
                "Found duplicate branch entries in queue",
                details=duplicates,
                fixable=True,
            )
        )
    return findings


def repair_queue(path: Path) -> tuple[int, int]:
    """Back up the queue to ``merge-queue.json.bak`` and rewrite it with valid entries only.

    Duplicate branches collapse to their most recently enqueued entry. Returns
    (kept, dropped).
    """
    with _queue_lock(path):
        text = path.read_text(encoding="utf-8") if path.exists() else ""
        try:
            raw_entries = _decode(text)
        except MergeQueueError:
            raw_entries = []

        valid = [_to_entry(raw) for raw in raw_entries if not entry_issues(raw)]
        latest: dict[str, MergeEntry] = {}
        for entry in sorted(valid, key=_sort_key):
            latest[entry["branchName"]] = entry
        kept = list(latest.values())

        if path.exists():
            backup = path.with_name(f"{path.name}.bak")
            shutil.copy2(path, backup)
            log.info("Backed up %s to %s", path, backup)
        _write_entries(path, kept)
    dropped = len(raw_entries) - len(kept) if raw_entries else 0
    return len(kept), dropped
