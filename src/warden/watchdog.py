"""Watchdog loop: periodically assess every active session and act on the verdicts.

Each tick takes one snapshot of the ledger, runs the liveness oracle for all
active sessions concurrently, then applies the verdicts sequentially:

* ``stalled``  -- record the new escalation level (and the state change)
* ``zombie``   -- mark the row terminal, reap the process tree, kill tmux
* ``working``  -- promote ``booting`` sessions; recover and touch the row
  when the verdict asks for it (both live-tmux and live-pid evidence)

Degraded verdicts (tool failure) are logged and left alone. Every
``reconcile_every`` ticks the consistency battery runs as well.

Run with ``python -m warden.watchdog`` (``warden watch`` does this).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from warden import metrics, processes, tmux
from warden.config import WardenConfig, load_config
from warden.doctor import check_consistency
from warden.errors import (
    LockBusy,
    StoreUnavailable,
    TmuxError,
    ToolUnavailable,
    WardenError,
)
from warden.findings import Finding
from warden.liveness import Verdict, assess_fleet
from warden.locking import writer_lock
from warden.paths import lock_path, metrics_db_path, pid_path, sessions_db_path
from warden.processes import ReapOutcome
from warden.sessions import (
    SessionRow,
    format_timestamp,
    get_connection,
    list_active_sessions,
    parse_timestamp,
    record_escalation,
    recover_session,
    set_session_pid,
    update_session_state,
)

log = logging.getLogger(__name__)

WatchdogState = Literal["idle", "ticking", "stopped"]


@dataclass
class Remediation:
    session_id: str
    agent_name: str
    reap: ReapOutcome | None = None
    tmux_killed: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "reap": self.reap.as_dict() if self.reap else None,
            "tmux_killed": self.tmux_killed,
        }


@dataclass
class TickReport:
    tick: int
    started_at: str
    skipped: bool = False
    reason: str | None = None
    verdicts: list[Verdict] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)
    remediations: list[Remediation] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)

    @property
    def degraded(self) -> int:
        return sum(1 for v in self.verdicts if v.degraded)

    def as_dict(self) -> dict[str, object]:
        return {
            "tick": self.tick,
            "started_at": self.started_at,
            "skipped": self.skipped,
            "reason": self.reason,
            "verdicts": [v.as_dict() for v in self.verdicts],
            "escalated": list(self.escalated),
            "recovered": list(self.recovered),
            "promoted": list(self.promoted),
            "remediations": [r.as_dict() for r in self.remediations],
            "findings": list(self.findings),
        }


def read_pid_file(path: Path) -> int | None:
    """PID of a running watchdog, or None if the file is missing or stale."""
    try:
        pid = int(path.read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if processes.pid_is_alive(pid) else None


class Watchdog:
    def __init__(
        self,
        config: WardenConfig,
        *,
        db_path: Path | None = None,
        metrics_path: Path | None = None,
    ) -> None:
        self.config = config
        self.db_path = db_path or sessions_db_path(config.root)
        self.metrics_path = metrics_path or metrics_db_path(config.root)
        self.state: WatchdogState = "idle"
        self.tick_count = 0
        self._stop_event = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            log.info("Stop requested; finishing in-flight tick")
        self._stop_event.set()

    # -- Tick ---------------------------------------------------------------

    async def tick(self, *, now: datetime | None = None) -> TickReport:
        """Run one assessment pass. Never raises for store or tool failures."""
        moment = now or datetime.now(UTC)
        self.tick_count += 1
        report = TickReport(tick=self.tick_count, started_at=format_timestamp(moment))
        self.state = "ticking"
        try:
            with writer_lock(lock_path(self.config.root), timeout=0):
                await self._run_tick(report, moment)
        except LockBusy as exc:
            log.info("Skipping tick %d: %s", report.tick, exc)
            report.skipped = True
            report.reason = str(exc)
        finally:
            self.state = "stopped" if self.stop_requested else "idle"
        return report

    async def _run_tick(self, report: TickReport, moment: datetime) -> None:
        try:
            conn = get_connection(self.db_path, create_parent=False)
        except StoreUnavailable as exc:
            log.warning("Session ledger unavailable, skipping tick %d: %s", report.tick, exc)
            report.skipped = True
            report.reason = str(exc)
            return

        with contextlib.closing(conn):
            try:
                active = list_active_sessions(conn)
            except sqlite3.Error as exc:
                log.warning("Failed to read session ledger, skipping tick %d: %s", report.tick, exc)
                report.skipped = True
                report.reason = str(exc)
                return

            if active:
                await self._assess_and_apply(conn, active, report, moment)

        if self.tick_count % self.config.watchdog.reconcile_every == 0:
            await self._reconcile(report)

    async def _live_session_names(self) -> set[str] | None:
        try:
            sessions = await tmux.list_sessions(timeout=self.config.watchdog.tool_timeout)
        except ToolUnavailable as exc:
            log.warning("tmux unavailable this tick: %s", exc)
            return None
        return {s.name for s in sessions}

    async def _assess_and_apply(
        self,
        conn: sqlite3.Connection,
        active: list[SessionRow],
        report: TickReport,
        moment: datetime,
    ) -> None:
        wd = self.config.watchdog
        verdicts = await assess_fleet(
            active,
            escalation_threshold=wd.escalation_threshold,
            stale_threshold=wd.stale_threshold,
            timeout=wd.tool_timeout,
            live_sessions=await self._live_session_names(),
            now=moment,
        )
        report.verdicts = verdicts
        if report.degraded:
            log.warning(
                "%d of %d session(s) assessed with degraded confidence; not acting on them",
                report.degraded,
                len(verdicts),
            )

        by_id = {s["id"]: s for s in active}
        for verdict in verdicts:
            session = by_id[verdict.session_id]
            try:
                await self._apply_verdict(conn, session, verdict, report, moment)
            except (WardenError, ValueError, sqlite3.Error) as exc:
                log.warning(
                    "Failed to apply %s verdict for %s: %s", verdict.state, session["agent_name"], exc
                )

    async def _apply_verdict(
        self,
        conn: sqlite3.Connection,
        session: SessionRow,
        verdict: Verdict,
        report: TickReport,
        moment: datetime,
    ) -> None:
        if verdict.degraded:
            return
        stamp = format_timestamp(moment)
        session_id = session["id"]
        if session["pid"] is None and verdict.pane_pid is not None:
            session = set_session_pid(conn, session_id, verdict.pane_pid)

        if verdict.state == "zombie":
            await self._remediate(conn, session, verdict, report, moment)
        elif verdict.state == "stalled":
            record_escalation(conn, session_id, verdict.escalation_level, now=stamp)
            if session["state"] != "stalled":
                update_session_state(conn, session_id, "stalled", now=stamp)
            report.escalated.append(session_id)
            log.info(
                "Session %s stalled (escalation level %d/%d)",
                session["agent_name"],
                verdict.escalation_level,
                self.config.watchdog.escalation_threshold,
            )
        elif verdict.state == "working":
            if session["state"] == "booting":
                update_session_state(conn, session_id, "working", now=stamp)
                report.promoted.append(session_id)
                log.info("Session %s is up (booting -> working)", session["agent_name"])
            elif verdict.touch:
                recover_session(conn, session_id, now=stamp)
                if session["state"] == "stalled":
                    report.recovered.append(session_id)
                    log.info("Session %s recovered", session["agent_name"])

    async def _remediate(
        self,
        conn: sqlite3.Connection,
        session: SessionRow,
        verdict: Verdict,
        report: TickReport,
        moment: datetime,
    ) -> None:
        stamp = format_timestamp(moment)
        if verdict.escalation_level > session["escalation_level"]:
            record_escalation(conn, session["id"], verdict.escalation_level, now=stamp)
        update_session_state(conn, session["id"], "zombie", now=stamp)
        remediation = Remediation(session_id=session["id"], agent_name=session["agent_name"])

        if session["pid"] is not None:
            remediation.reap = await asyncio.to_thread(
                processes.reap_process_tree,
                session["pid"],
                grace_seconds=self.config.watchdog.reap_grace,
            )

        tmux_present = verdict.evidence and verdict.evidence[0].outcome != "dead"
        if tmux_present:
            try:
                await tmux.kill_session(
                    session["tmux_session"], timeout=self.config.watchdog.tool_timeout
                )
                remediation.tmux_killed = True
            except (TmuxError, ToolUnavailable) as exc:
                log.debug("Could not kill tmux session %s: %s", session["tmux_session"], exc)

        report.remediations.append(remediation)
        log.warning(
            "Session %s marked zombie (%s)",
            session["agent_name"],
            "; ".join(signal_.detail for signal_ in verdict.evidence),
        )
        self._record_metrics(session, moment)

    def _record_metrics(self, session: SessionRow, moment: datetime) -> None:
        try:
            started = parse_timestamp(session["started_at"])
            duration_ms = max(0, int((moment - started).total_seconds() * 1000))
        except ValueError:
            duration_ms = 0
        try:
            with metrics.connect(self.metrics_path) as conn:
                metrics.record_session(
                    conn,
                    {
                        "agent_name": session["agent_name"],
                        "bead_id": session["bead_id"],
                        "capability": session["capability"],
                        "started_at": session["started_at"],
                        "completed_at": format_timestamp(moment),
                        "duration_ms": duration_ms,
                        "exit_code": None,
                        "merge_result": None,
                        "parent_agent": session["parent_agent"],
                    },
                )
        except (StoreUnavailable, sqlite3.Error) as exc:
            log.warning("Failed to record metrics for %s: %s", session["agent_name"], exc)

    async def _reconcile(self, report: TickReport) -> None:
        findings = await check_consistency(self.config, db_path=self.db_path)
        report.findings = [f for f in findings if f["status"] != "pass"]
        for item in report.findings:
            log.warning("Consistency %s: %s: %s", item["status"], item["name"], item["message"])

    # -- Loop ---------------------------------------------------------------

    async def run(self, *, max_ticks: int | None = None, handle_signals: bool = True) -> None:
        """Tick every ``tick_interval`` seconds until a stop is requested."""
        pid_file = pid_path(self.config.root)
        existing = read_pid_file(pid_file)
        if existing is not None and existing != os.getpid():
            raise WardenError(f"Watchdog already running (pid {existing})")
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))

        loop = asyncio.get_running_loop()
        if handle_signals:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_stop)

        log.info(
            "Watchdog started for %s (interval=%ss)",
            self.config.project_name,
            self.config.watchdog.tick_interval,
        )
        try:
            while not self.stop_requested:
                try:
                    await self.tick()
                except Exception:
                    log.exception("Watchdog tick %d failed", self.tick_count)
                if max_ticks is not None and self.tick_count >= max_ticks:
                    break
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.config.watchdog.tick_interval
                    )
        finally:
            if handle_signals:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)
            pid_file.unlink(missing_ok=True)
            self.state = "stopped"
            log.info("Watchdog stopped after %d tick(s)", self.tick_count)


# -- Entry point ----------------------------------------------------------


async def _main() -> None:
    await Watchdog(load_config()).run()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(_main())


if __name__ == "__main__":
    main()
