"""Tests for the watchdog tick: verdict application, remediation and the run loop."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from conftest import PROJECT
from warden import metrics, processes, tmux, watchdog
from warden.config import WardenConfig, WatchdogConfig
from warden.errors import ToolUnavailable, WardenError
from warden.liveness import Signal, Verdict
from warden.locking import writer_lock
from warden.paths import lock_path, metrics_db_path, pid_path
from warden.processes import ReapOutcome
from warden.sessions import (
    format_timestamp,
    get_session_by_id,
    update_session_state,
    upsert_session,
)
from warden.watchdog import TickReport, Watchdog, read_pid_file

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _config(tmp_path, **overrides) -> WardenConfig:
    settings = {"tick_interval": 0.01, "tool_timeout": 1.0, "reap_grace": 0.1, **overrides}
    return WardenConfig(root=tmp_path, project_name=PROJECT, watchdog=WatchdogConfig(**settings))


@pytest.fixture()
def fake_host(monkeypatch):
    """Stand-in tmux server and process table the tests can populate."""

    host = SimpleNamespace(live_tmux=set(), dead_pids=set(), pane_pids={}, killed=[], reaped=[])

    async def _list_sessions(*, timeout):
        return [tmux.TmuxSession(name=name, pid=1) for name in sorted(host.live_tmux)]

    async def _list_pane_pids(name, *, timeout):
        return host.pane_pids.get(name, [])

    async def _kill_session(name, *, timeout):
        host.killed.append(name)
        host.live_tmux.discard(name)

    def _reap(pid, *, grace_seconds):
        host.reaped.append(pid)
        return ReapOutcome(root_pid=pid, signalled=[pid])

    monkeypatch.setattr(tmux, "list_sessions", _list_sessions)
    monkeypatch.setattr(tmux, "list_pane_pids", _list_pane_pids)
    monkeypatch.setattr(tmux, "kill_session", _kill_session)
    monkeypatch.setattr(processes, "pid_is_alive", lambda pid: pid not in host.dead_pids)
    monkeypatch.setattr(processes, "reap_process_tree", _reap)
    return host


def _stored(ledger, make_session, agent_name: str, **overrides):
    session = make_session(agent_name, last_activity=format_timestamp(NOW), **overrides)
    upsert_session(ledger, session)
    return session


# -- tick ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dead_pid_escalates_then_reaps(tmp_path, ledger, make_session, fake_host):
    session = _stored(ledger, make_session, "agent-x", pid=99999, now="2026-03-01T11:59:00Z")
    fake_host.live_tmux.add(session["tmux_session"])
    fake_host.dead_pids.add(99999)
    wd = Watchdog(_config(tmp_path, escalation_threshold=3))

    states = []
    for _ in range(3):
        report = await wd.tick(now=NOW)
        row = get_session_by_id(ledger, session["id"])
        states.append((row["state"], row["escalation_level"]))

    assert states == [("stalled", 1), ("stalled", 2), ("zombie", 3)]
    assert fake_host.reaped == [99999]
    assert fake_host.killed == [session["tmux_session"]]
    [remediation] = report.remediations
    assert remediation.tmux_killed is True
    assert remediation.as_dict()["reap"]["root_pid"] == 99999


@pytest.mark.asyncio
async def test_missing_tmux_session_reaps_without_killing_tmux(
    tmp_path, ledger, make_session, fake_host
):
    session = _stored(ledger, make_session, "agent-a", now="2026-03-01T11:59:00Z")
    wd = Watchdog(_config(tmp_path))

    report = await wd.tick(now=NOW)

    assert get_session_by_id(ledger, session["id"])["state"] == "zombie"
    assert fake_host.reaped == [4242]
    assert fake_host.killed == []
    assert report.remediations[0].tmux_killed is False


@pytest.mark.asyncio
async def test_zombie_records_metrics(tmp_path, ledger, make_session, fake_host):
    _stored(ledger, make_session, "agent-a", now="2026-03-01T11:59:00Z")
    await Watchdog(_config(tmp_path)).tick(now=NOW)

    with metrics.connect(metrics_db_path(tmp_path)) as conn:
        [row] = metrics.get_sessions_by_agent(conn, "agent-a")
    assert row["duration_ms"] == 60_000
    assert row["completed_at"] == format_timestamp(NOW)


@pytest.mark.asyncio
async def test_booting_session_promoted_with_pane_pid(tmp_path, ledger, make_session, fake_host):
    session = _stored(ledger, make_session, "agent-a", pid=None, state="booting")
    fake_host.live_tmux.add(session["tmux_session"])
    fake_host.pane_pids[session["tmux_session"]] = [5151]

    report = await Watchdog(_config(tmp_path)).tick(now=NOW)

    row = get_session_by_id(ledger, session["id"])
    assert row["state"] == "working"
    assert row["pid"] == 5151
    assert report.promoted == [session["id"]]


@pytest.mark.asyncio
async def test_stalled_session_recovers(tmp_path, ledger, make_session, fake_host):
    session = _stored(ledger, make_session, "agent-a")
    update_session_state(ledger, session["id"], "stalled")
    fake_host.live_tmux.add(session["tmux_session"])

    report = await Watchdog(_config(tmp_path)).tick(now=NOW)

    row = get_session_by_id(ledger, session["id"])
    assert row["state"] == "working"
    assert row["escalation_level"] == 0
    assert row["stalled_since"] is None
    assert report.recovered == [session["id"]]


@pytest.mark.asyncio
async def test_degraded_verdict_changes_nothing(
    tmp_path, ledger, make_session, fake_host, monkeypatch
):
    session = _stored(ledger, make_session, "agent-a", escalation_level=1)

    async def _unavailable(*args, **kwargs):
        raise ToolUnavailable("tmux", "tmux is not installed or not on PATH")

    monkeypatch.setattr(tmux, "list_sessions", _unavailable)
    monkeypatch.setattr(tmux, "is_session_alive", _unavailable)

    report = await Watchdog(_config(tmp_path)).tick(now=NOW)

    assert report.degraded == 1
    assert get_session_by_id(ledger, session["id"]) == session
    assert fake_host.reaped == []


@pytest.mark.asyncio
async def test_unreadable_tmux_socket_never_reaps_live_agent(
    tmp_path, ledger, make_session, monkeypatch
):
    session = _stored(ledger, make_session, "agent-a", pid=os.getpid())
    reaped = []

    async def _denied(args, *, timeout, cwd=None):
        return 1, "", "error connecting to /tmp/tmux-0/default (Permission denied)"

    def _reap(pid, *, grace_seconds):
        reaped.append(pid)
        return ReapOutcome(root_pid=pid)

    monkeypatch.setattr(tmux, "_run", _denied)
    monkeypatch.setattr(processes, "reap_process_tree", _reap)

    report = await Watchdog(_config(tmp_path)).tick(now=NOW)

    assert report.degraded == 1
    assert report.remediations == []
    assert get_session_by_id(ledger, session["id"]) == session
    assert reaped == []


@pytest.mark.asyncio
async def test_working_verdict_without_touch_leaves_row_alone(tmp_path, ledger, make_session):
    session = _stored(ledger, make_session, "agent-a")
    stalled = update_session_state(ledger, session["id"], "stalled")
    verdict = Verdict(
        session_id=session["id"],
        agent_name="agent-a",
        state="working",
        escalation_level=0,
        confidence="high",
        evidence=(Signal("primary", "alive", "tmux session"),),
    )
    report = TickReport(tick=1, started_at=format_timestamp(NOW))

    await Watchdog(_config(tmp_path))._apply_verdict(ledger, stalled, verdict, report, NOW)

    assert get_session_by_id(ledger, session["id"]) == stalled
    assert report.recovered == []


@pytest.mark.asyncio
async def test_missing_ledger_skips_tick(tmp_path, fake_host):
    wd = Watchdog(_config(tmp_path), db_path=tmp_path / "nowhere" / "sessions.db")

    report = await wd.tick(now=NOW)

    assert report.skipped
    assert "does not exist" in report.reason
    assert wd.state == "idle"


@pytest.mark.asyncio
async def test_tick_skipped_while_writer_lock_held(tmp_path, ledger, make_session, fake_host):
    session = _stored(ledger, make_session, "agent-a")
    wd = Watchdog(_config(tmp_path))

    with writer_lock(lock_path(tmp_path)):
        report = await wd.tick(now=NOW)

    assert report.skipped
    assert get_session_by_id(ledger, session["id"])["state"] == "working"
    assert fake_host.reaped == []


@pytest.mark.asyncio
async def test_reconcile_runs_every_n_ticks(tmp_path, ledger, fake_host, monkeypatch):
    calls = []

    async def _check(config, *, db_path=None):
        calls.append(db_path)
        return [
            {"name": "dead-pids", "category": "consistency", "status": "warn", "message": "x"},
            {"name": "orphaned-tmux", "category": "consistency", "status": "pass", "message": "y"},
        ]

    monkeypatch.setattr(watchdog, "check_consistency", _check)
    wd = Watchdog(_config(tmp_path, reconcile_every=2))

    first = await wd.tick(now=NOW)
    second = await wd.tick(now=NOW)

    assert first.findings == []
    assert [f["name"] for f in second.findings] == ["dead-pids"]
    assert len(calls) == 1


# -- run loop -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_writes_and_removes_pid_file(tmp_path, ledger, fake_host, monkeypatch):
    seen = []
    original_tick = Watchdog.tick

    async def _tick(self, **kwargs):
        seen.append(read_pid_file(pid_path(tmp_path)))
        return await original_tick(self, **kwargs)

    monkeypatch.setattr(Watchdog, "tick", _tick)
    wd = Watchdog(_config(tmp_path))

    await wd.run(max_ticks=2, handle_signals=False)

    assert seen == [os.getpid(), os.getpid()]
    assert not pid_path(tmp_path).exists()
    assert wd.state == "stopped"
    assert wd.tick_count == 2


@pytest.mark.asyncio
async def test_run_refuses_second_instance(tmp_path, fake_host):
    pid_file = pid_path(tmp_path)
    pid_file.parent.mkdir(parents=True)
    pid_file.write_text(str(os.getppid()))

    with pytest.raises(WardenError, match="already running"):
        await Watchdog(_config(tmp_path)).run(max_ticks=1, handle_signals=False)
    assert pid_file.exists()


@pytest.mark.asyncio
async def test_request_stop_ends_loop(tmp_path, ledger, fake_host):
    wd = Watchdog(_config(tmp_path, tick_interval=60.0))
    wd.request_stop()

    await wd.run(handle_signals=False)

    assert wd.tick_count == 0
    assert wd.state == "stopped"


def test_stale_pid_file_is_ignored(tmp_path, monkeypatch):
    pid_file = tmp_path / "watchdog.pid"
    pid_file.write_text("123456")
    monkeypatch.setattr(processes, "pid_is_alive", lambda pid: False)
    assert read_pid_file(pid_file) is None
    pid_file.write_text("garbage")
    assert read_pid_file(pid_file) is None
