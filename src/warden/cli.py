from __future__ import annotations

import asyncio
import contextlib
import difflib
import json
import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Iterator
from pathlib import Path

import click

from warden import __version__, metrics, sessions
from warden import merge_queue as mq
from warden.config import WardenConfig, load_config, render_config, with_watchdog
from warden.errors import WardenError
from warden.git_ops import detect_project_name
from warden.paths import (
    config_path,
    log_dir,
    merge_queue_path,
    metrics_db_path,
    pid_path,
    resolve_root,
    sessions_db_path,
    warden_dir,
    worktrees_dir,
)
from warden.watchdog import Watchdog, read_pid_file

_GITIGNORE_ENTRIES = (
    "*.db",
    "*.db-wal",
    "*.db-shm",
    "*.bak",
    "merge-queue.json.lock",
    "watchdog.lock",
    "watchdog.pid",
    "logs/",
    "worktrees/",
)


def _unknown_command_message(name: str, known: list[str]) -> str:
    close = difflib.get_close_matches(name, known, n=2, cutoff=0.5)
    if not close:
        return f"No such command '{name}'."
    return f"No such command '{name}'. Did you mean: {', '.join(close)}?"


class _JsonAwareGroup(click.Group):
    """Report usage errors as ``{"ok": false, "error": ...}`` on stdout.

    Scripts driving warden parse stdout, so a mistyped command or option has
    to come back in the same shape as any other failure.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if not args:
                raise
            message = _unknown_command_message(args[0], self.list_commands(ctx))
            raise click.UsageError(message) from None

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            result = super().main(args=args, standalone_mode=False, **kwargs)
        except click.ClickException as exc:
            click.echo(json.dumps({"ok": False, "error": exc.format_message()}))
            if not standalone_mode:
                return exc.exit_code
            raise SystemExit(exc.exit_code) from None
        except click.Abort:
            if not standalone_mode:
                raise
            click.echo("Aborted!", err=True)
            raise SystemExit(1) from None
        if standalone_mode:
            raise SystemExit(result or 0)
        return result


@contextlib.contextmanager
def _warden_errors() -> Iterator[None]:
    """Surface library failures as ClickException."""
    try:
        yield
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc


def _load_config() -> WardenConfig:
    try:
        return load_config()
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Keep a fleet of coding agents honest: liveness, reaping, reconciliation.

    \b
    Quick start:
      warden init                 Scaffold .warden/ in the current project
      warden doctor               Cross-check ledger, tmux and worktrees
      warden doctor --fix         ...and repair what can be repaired
      warden watch --background   Start the watchdog loop
      warden status               Show active sessions and the watchdog pid

    The project root is the current directory unless WARDEN_ROOT is set.
    """


# -- init --


def _ensure_gitignore(directory: Path) -> None:
    gitignore = directory / ".gitignore"
    existing = gitignore.read_text().splitlines() if gitignore.exists() else []
    missing = [entry for entry in _GITIGNORE_ENTRIES if entry not in existing]
    if not missing:
        return
    with open(gitignore, "a") as f:
        if existing and existing[-1] != "":
            f.write("\n")
        f.write("\n".join(missing) + "\n")


@main.command()
@click.option("--name", "-n", default=None, help="Project name (default: git origin or directory).")
@click.option("--force", is_flag=True, help="Overwrite an existing config.toml.")
def init(name: str | None, force: bool):
    """Scaffold .warden/ with config, ledgers and worktree directory."""
    root = resolve_root()
    cfg_file = config_path(root)
    if cfg_file.exists() and not force:
        raise click.ClickException(
            f"Already initialized: {cfg_file}. Use --force to overwrite."
        )

    project_name = name or detect_project_name(root)
    for directory in (warden_dir(root), worktrees_dir(root), log_dir(root)):
        directory.mkdir(parents=True, exist_ok=True)
    cfg_file.write_text(render_config(project_name))

    with _warden_errors():
        with sessions.connect(sessions_db_path(root)):
            pass
        with metrics.connect(metrics_db_path(root)):
            pass
    _ensure_gitignore(warden_dir(root))

    click.echo(
        json.dumps(
            {
                "ok": True,
                "project": project_name,
                "root": str(root),
                "config": str(cfg_file),
            }
        )
    )


# -- doctor --


@main.command()
@click.option("--fix", is_flag=True, help="Apply best-effort remediation for fixable findings.")
def doctor(fix: bool):
    """Check ledger, tmux, worktree and merge-queue consistency."""
    from warden.doctor import run_doctor

    config = _load_config()
    with _warden_errors():
        report = run_doctor(config.root, fix=fix)
    click.echo(json.dumps(report))
    if report["status"] == "fail":
        raise click.ClickException("Doctor checks failed.")


# -- watchdog --


@main.command()
@click.option(
    "--interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between ticks (default: config.toml).",
)
@click.option("--background", is_flag=True, help="Detach and log to .warden/logs/watchdog.log.")
def watch(interval: float | None, background: bool):
    """Run the watchdog loop."""
    config = _load_config()
    if interval is not None:
        config = with_watchdog(config, tick_interval=interval)

    existing = read_pid_file(pid_path(config.root))
    if existing:
        click.echo(json.dumps({"ok": True, "status": "already_running", "pid": existing}))
        return

    if background:
        _start_background(config, interval)
        return

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    with _warden_errors():
        asyncio.run(Watchdog(config).run())


def _start_background(config: WardenConfig, interval: float | None) -> None:
    log_path = log_dir(config.root) / "watchdog.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    env = {**os.environ, "WARDEN_ROOT": str(config.root)}
    if interval is not None:
        env["WARDEN_TICK_INTERVAL"] = str(interval)

    with open(log_path, "a") as log_file:
        subprocess.Popen(
            [sys.executable, "-m", "warden.watchdog"],
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            env=env,
        )

    # Wait for the pid file to appear (watchdog is running)
    pid = None
    for _ in range(50):  # 5 seconds max
        time.sleep(0.1)
        pid = read_pid_file(pid_path(config.root))
        if pid:
            break

    if pid:
        click.echo(json.dumps({"ok": True, "pid": pid, "log": str(log_path)}))
    else:
        raise click.ClickException(f"Watchdog failed to start. Check logs: {log_path}")


@main.command("watch-stop")
@click.option("--timeout", type=click.FloatRange(min=0), default=30.0, show_default=True)
def watch_stop(timeout: float):
    """Stop the background watchdog after its in-flight tick."""
    root = resolve_root()
    pid = read_pid_file(pid_path(root))
    if not pid:
        click.echo(json.dumps({"ok": True, "status": "not_running"}))
        return

    os.kill(pid, signal.SIGTERM)

    deadline = time.monotonic() + timeout
    stopped = False
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            stopped = True
            break
        time.sleep(0.1)

    click.echo(json.dumps({"ok": True, "pid": pid, "stopped": stopped}))


# -- status --


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include done and zombie sessions.")
def status(show_all: bool):
    """Show sessions from the ledger and whether the watchdog is running."""
    root = resolve_root()
    with _warden_errors(), sessions.connect(sessions_db_path(root), create_parent=False) as conn:
        rows = sessions.list_sessions(conn) if show_all else sessions.list_active_sessions(conn)
    pid = read_pid_file(pid_path(root))
    click.echo(
        json.dumps(
            {
                "watchdog": {"running": pid is not None, "pid": pid},
                "sessions": rows,
            }
        )
    )


# -- metrics --


@main.command("metrics")
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
@click.option("--text", "as_text", is_flag=True, help="Human-readable summary instead of JSON.")
def metrics_cmd(limit: int, as_text: bool):
    """Summarize recorded session durations and outcomes."""
    root = resolve_root()
    with _warden_errors(), metrics.connect(metrics_db_path(root)) as conn:
        summary = metrics.generate_summary(conn, limit)
    if as_text:
        click.echo(metrics.format_summary(summary), nl=False)
    else:
        click.echo(json.dumps(summary))


# -- merge queue --


@main.command("merge-queue")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(mq.MERGE_STATUSES),
    default=None,
    help="Only show entries with this status.",
)
def merge_queue_cmd(status_filter: str | None):
    """List merge-queue entries in FIFO order."""
    root = resolve_root()
    with _warden_errors():
        entries = mq.list_entries(merge_queue_path(root), status=status_filter)
    click.echo(json.dumps(entries))


if __name__ == "__main__":
    main()
