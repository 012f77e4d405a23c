"""Liveness oracle: resolve whether an agent session is alive from ranked signals.

Three tiers, evaluated in trust order:

1. primary   -- the session's tmux session exists. tmux owns the pty, so an
                absent session means nothing can be listening.
2. secondary -- the recorded pid (or the tmux pane pid when none is recorded)
                is in the OS process table. Catches a crashed worker whose
                tmux session survives with only a shell inside.
3. tertiary  -- the ledger's ``last_activity`` is within the stale threshold.
                Only consulted when tier 1 or 2 could not be evaluated.

Signal gathering is async and bounded by timeouts; a timeout or tool failure
is an ``unknown`` outcome, never a verdict. ``resolve_verdict`` is pure and
synchronous so the decision logic is deterministic and testable; it never
writes the ledger. The watchdog applies the resulting transitions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from warden import processes, tmux
from warden.errors import TmuxError, ToolUnavailable
from warden.sessions import SessionRow, parse_timestamp

log = logging.getLogger(__name__)

Tier = Literal["primary", "secondary", "tertiary"]
Outcome = Literal["alive", "dead", "unknown"]
Confidence = Literal["high", "degraded"]


@dataclass(frozen=True)
class Signal:
    tier: Tier
    outcome: Outcome
    detail: str = ""

    def as_dict(self) -> dict[str, str]:
        return {"tier": self.tier, "outcome": self.outcome, "detail": self.detail}


@dataclass(frozen=True)
class Signals:
    primary: Signal
    secondary: Signal
    tertiary: Signal
    pane_pid: int | None = None


@dataclass(frozen=True)
class Verdict:
    session_id: str
    agent_name: str
    state: str
    escalation_level: int
    confidence: Confidence
    evidence: tuple[Signal, ...] = field(default_factory=tuple)
    touch: bool = False
    pane_pid: int | None = None

    @property
    def degraded(self) -> bool:
        return self.confidence == "degraded"

    def as_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "state": self.state,
            "escalation_level": self.escalation_level,
            "confidence": self.confidence,
            "evidence": [signal.as_dict() for signal in self.evidence],
        }


def tertiary_signal(session: SessionRow, *, now: datetime, stale_threshold: float) -> Signal:
    """Ledger freshness: is ``last_activity`` within ``stale_threshold`` seconds?"""
    try:
        last_activity = parse_timestamp(session["last_activity"])
    except (TypeError, ValueError):
        return Signal("tertiary", "unknown", f"unparseable last_activity {session['last_activity']!r}")
    age = (now - last_activity).total_seconds()
    if age <= stale_threshold:
        return Signal("tertiary", "alive", f"last activity {int(age)}s ago")
    return Signal("tertiary", "dead", f"last activity {int(age)}s ago (> {int(stale_threshold)}s)")


def resolve_verdict(
    session: SessionRow, signals: Signals, *, escalation_threshold: int
) -> Verdict:
    """Combine tiered signals into a verdict. Pure: no I/O, no ledger writes."""
    base = {
        "session_id": session["id"],
        "agent_name": session["agent_name"],
        "pane_pid": signals.pane_pid,
    }
    current_level = session["escalation_level"]
    primary = signals.primary
    secondary = signals.secondary

    match primary.outcome:
        case "dead":
            return Verdict(
                state="zombie",
                escalation_level=current_level,
                confidence="high",
                evidence=(primary,),
                **base,
            )
        case "alive" if secondary.outcome == "alive":
            return Verdict(
                state="working",
                escalation_level=0,
                confidence="high",
                evidence=(primary, secondary),
                touch=True,
                **base,
            )
        case "alive" if secondary.outcome == "dead":
            level = current_level + 1
            return Verdict(
                state="zombie" if level >= escalation_threshold else "stalled",
                escalation_level=level,
                confidence="high",
                evidence=(primary, secondary),
                **base,
            )

    # Tier 1 or 2 could not be evaluated: fall back to ledger freshness and
    # never escalate on that evidence alone.
    tertiary = signals.tertiary
    return Verdict(
        state="working" if tertiary.outcome == "alive" else "stalled",
        escalation_level=current_level,
        confidence="degraded",
        evidence=(primary, secondary, tertiary),
        **base,
    )


async def _secondary_signal(session: SessionRow, *, timeout: float) -> tuple[Signal, int | None]:
    pane_pid: int | None = None
    pid = session["pid"]
    source = "recorded pid"
    if pid is None:
        try:
            pane_pids = await tmux.list_pane_pids(session["tmux_session"], timeout=timeout)
        except (ToolUnavailable, TmuxError) as exc:
            return Signal("secondary", "unknown", f"no recorded pid; pane lookup failed: {exc}"), None
        if not pane_pids:
            return Signal("secondary", "unknown", "no recorded pid and no pane pid"), None
        pid = pane_pid = pane_pids[0]
        source = "pane pid"
    if processes.pid_is_alive(pid):
        return Signal("secondary", "alive", f"{source} {pid} is running"), pane_pid
    return Signal("secondary", "dead", f"{source} {pid} is not running"), pane_pid


async def gather_signals(
    session: SessionRow,
    *,
    now: datetime,
    stale_threshold: float,
    timeout: float,
    live_sessions: set[str] | None = None,
) -> Signals:
    """Collect all three tiers for one session.

    When ``live_sessions`` is given (one ``list-sessions`` call per tick) it is
    used for tier 1 instead of a ``has-session`` call per agent.
    """
    name = session["tmux_session"]
    if live_sessions is not None:
        alive = name in live_sessions
        primary = Signal("primary", "alive" if alive else "dead", f"tmux session {name}")
    else:
        try:
            alive = await tmux.is_session_alive(name, timeout=timeout)
        except ToolUnavailable as exc:
            primary = Signal("primary", "unknown", str(exc))
        else:
            primary = Signal("primary", "alive" if alive else "dead", f"tmux session {name}")

    if primary.outcome == "dead":
        secondary, pane_pid = Signal("secondary", "unknown", "not evaluated"), None
    else:
        secondary, pane_pid = await _secondary_signal(session, timeout=timeout)

    return Signals(
        primary=primary,
        secondary=secondary,
        tertiary=tertiary_signal(session, now=now, stale_threshold=stale_threshold),
        pane_pid=pane_pid,
    )


def _unavailable_signals(session: SessionRow, reason: str, *, now: datetime, stale: float) -> Signals:
    return Signals(
        primary=Signal("primary", "unknown", reason),
        secondary=Signal("secondary", "unknown", reason),
        tertiary=tertiary_signal(session, now=now, stale_threshold=stale),
    )


async def assess_fleet(
    sessions: Iterable[SessionRow],
    *,
    escalation_threshold: int,
    stale_threshold: float,
    timeout: float,
    live_sessions: set[str] | None = None,
    now: datetime | None = None,
) -> list[Verdict]:
    """Run the oracle for every session concurrently.

    Returns only after every per-session gather has finished or timed out, so
    callers act on one consistent snapshot.
    """
    session_list = list(sessions)
    moment = now or datetime.now(UTC)
    # Worst case a session needs has-session plus list-panes.
    budget = timeout * 2 + 1.0

    async def _one(session: SessionRow) -> Signals:
        return await asyncio.wait_for(
            gather_signals(
                session,
                now=moment,
                stale_threshold=stale_threshold,
                timeout=timeout,
                live_sessions=live_sessions,
            ),
            timeout=budget,
        )

    results = await asyncio.gather(*(_one(s) for s in session_list), return_exceptions=True)

    verdicts: list[Verdict] = []
    for session, result in zip(session_list, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            reason = "timed out" if isinstance(result, TimeoutError) else str(result)
            log.debug("Signal gathering failed for %s: %s", session["agent_name"], reason)
            result = _unavailable_signals(session, reason, now=moment, stale=stale_threshold)
        verdicts.append(
            resolve_verdict(session, result, escalation_threshold=escalation_threshold)
        )
    return verdicts
