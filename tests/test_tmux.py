"""Tests for the tmux adapter (subprocess calls are mocked)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from warden.errors import TmuxError, ToolUnavailable
from warden.tmux import (
    TmuxSession,
    create_session,
    is_session_alive,
    kill_session,
    list_pane_pids,
    list_sessions,
    parse_session_list,
    send_keys,
)


def _proc(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


def _exec(*procs: MagicMock) -> AsyncMock:
    return AsyncMock(side_effect=list(procs))


def test_parse_session_list_skips_malformed_lines():
    output = "warden-proj-a:123\nno-pid-here\n:456\nweird:name:789\nbad:pid\n\n"
    assert parse_session_list(output) == [
        TmuxSession(name="warden-proj-a", pid=123),
        TmuxSession(name="weird:name", pid=789),
    ]


@pytest.mark.asyncio
async def test_list_sessions_parses_output():
    mock_exec = _exec(_proc(stdout="warden-proj-a:100\nother:200\n"))
    with patch("warden.tmux.asyncio.create_subprocess_exec", mock_exec):
        sessions = await list_sessions()

    assert [s.name for s in sessions] == ["warden-proj-a", "other"]
    args = mock_exec.call_args.args
    assert args[:4] == ("tmux", "list-sessions", "-F", "#{session_name}:#{pid}")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stderr",
    [
        "no server running on /tmp/tmux-1000/default",
        "no sessions",
        "error connecting to /tmp/tmux-1000/default (No such file or directory)",
    ],
)
async def test_list_sessions_without_server_is_empty(stderr):
    with patch("warden.tmux.asyncio.create_subprocess_exec", _exec(_proc(1, stderr=stderr))):
        assert await list_sessions() == []


@pytest.mark.asyncio
async def test_list_sessions_other_failure_raises():
    with patch(
        "warden.tmux.asyncio.create_subprocess_exec", _exec(_proc(1, stderr="protocol mismatch"))
    ):
        with pytest.raises(ToolUnavailable, match="Failed to list tmux sessions"):
            await list_sessions()


@pytest.mark.asyncio
async def test_list_sessions_unreadable_socket_raises():
    stderr = "error connecting to /tmp/tmux-0/default (Permission denied)"
    with patch("warden.tmux.asyncio.create_subprocess_exec", _exec(_proc(1, stderr=stderr))):
        with pytest.raises(ToolUnavailable, match="Permission denied"):
            await list_sessions()


@pytest.mark.asyncio
async def test_missing_binary_is_tool_unavailable():
    with patch(
        "warden.tmux.asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError)
    ):
        with pytest.raises(ToolUnavailable) as exc_info:
            await list_sessions()
    assert exc_info.value.tool == "tmux"


@pytest.mark.asyncio
async def test_timeout_kills_subprocess_and_raises():
    proc = _proc()

    async def _hang():
        await asyncio.sleep(60)

    proc.communicate = AsyncMock(side_effect=_hang)
    with patch("warden.tmux.asyncio.create_subprocess_exec", _exec(proc)):
        with pytest.raises(ToolUnavailable, match="timed out"):
            await is_session_alive("warden-proj-a", timeout=0.05)
    proc.kill.assert_called_once()


@pytest.mark.asyncio
async def test_is_session_alive_reflects_exit_code():
    mock_exec = _exec(
        _proc(0),
        _proc(1, stderr="can't find session: warden-proj-b"),
        _proc(1, stderr="no server running on /tmp/tmux-1000/default"),
    )
    with patch("warden.tmux.asyncio.create_subprocess_exec", mock_exec):
        assert await is_session_alive("warden-proj-a") is True
        assert await is_session_alive("warden-proj-b") is False
        assert await is_session_alive("warden-proj-c") is False


@pytest.mark.asyncio
async def test_is_session_alive_uses_exact_target():
    mock_exec = _exec(_proc(0))
    with patch("warden.tmux.asyncio.create_subprocess_exec", mock_exec):
        await is_session_alive("warden-proj-agent-1")
    assert mock_exec.call_args.args[1:] == ("has-session", "-t", "=warden-proj-agent-1")


@pytest.mark.asyncio
async def test_is_session_alive_unexplained_failure_raises():
    stderr = "error connecting to /tmp/tmux-0/default (Permission denied)"
    with patch("warden.tmux.asyncio.create_subprocess_exec", _exec(_proc(1, stderr=stderr))):
        with pytest.raises(ToolUnavailable, match="Failed to check tmux session"):
            await is_session_alive("warden-proj-a")


@pytest.mark.asyncio
async def test_list_pane_pids_ignores_garbage():
    with patch(
        "warden.tmux.asyncio.create_subprocess_exec", _exec(_proc(stdout="101\n\nabc\n202\n"))
    ):
        assert await list_pane_pids("warden-proj-a") == [101, 202]


@pytest.mark.asyncio
async def test_kill_session_failure_carries_session_name():
    mock_exec = _exec(_proc(1, stderr="can't find session"))
    with patch("warden.tmux.asyncio.create_subprocess_exec", mock_exec):
        with pytest.raises(TmuxError) as exc_info:
            await kill_session("warden-proj-a")
    assert exc_info.value.session_name == "warden-proj-a"
    assert mock_exec.call_args.args[1:] == ("kill-session", "-t", "=warden-proj-a")


@pytest.mark.asyncio
async def test_send_keys_appends_enter():
    mock_exec = _exec(_proc())
    with patch("warden.tmux.asyncio.create_subprocess_exec", mock_exec):
        await send_keys("warden-proj-a", "echo hi")
    assert mock_exec.call_args.args == (
        "tmux",
        "send-keys",
        "-t",
        "=warden-proj-a:",
        "echo hi",
        "Enter",
    )


@pytest.mark.asyncio
async def test_create_session_returns_pane_pid(tmp_path):
    mock_exec = _exec(_proc(), _proc(stdout="31337\n"))
    with patch("warden.tmux.asyncio.create_subprocess_exec", mock_exec):
        pid = await create_session("warden-proj-a", str(tmp_path), "claude")
    assert pid == 31337
    first_call = mock_exec.call_args_list[0].args
    assert first_call[1:5] == ("new-session", "-d", "-s", "warden-proj-a")


@pytest.mark.asyncio
async def test_create_session_without_pane_pid_raises(tmp_path):
    with patch("warden.tmux.asyncio.create_subprocess_exec", _exec(_proc(), _proc(stdout=""))):
        with pytest.raises(TmuxError, match="could not find its pane PID"):
            await create_session("warden-proj-a", str(tmp_path), "claude")
