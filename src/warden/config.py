"""Per-project warden configuration.

Projects keep tunables in ``.warden/config.toml``::

    [project]
    name = "myapp"

    [watchdog]
    tick_interval = 30.0
    reconcile_every = 10
    escalation_threshold = 3
    stale_threshold = 300.0
    tool_timeout = 5.0
    reap_grace = 5.0

Every key is optional. ``WARDEN_*`` environment variables override the file.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from warden.paths import config_path, resolve_root

log = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 30.0
DEFAULT_RECONCILE_EVERY = 10
DEFAULT_ESCALATION_THRESHOLD = 3
DEFAULT_STALE_THRESHOLD = 300.0
DEFAULT_TOOL_TIMEOUT = 5.0
DEFAULT_REAP_GRACE = 5.0

_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "WARDEN_TICK_INTERVAL": ("tick_interval", float),
    "WARDEN_RECONCILE_EVERY": ("reconcile_every", int),
    "WARDEN_ESCALATION_THRESHOLD": ("escalation_threshold", int),
    "WARDEN_STALE_THRESHOLD": ("stale_threshold", float),
    "WARDEN_TOOL_TIMEOUT": ("tool_timeout", float),
    "WARDEN_REAP_GRACE": ("reap_grace", float),
}


@dataclass(frozen=True)
class WatchdogConfig:
    tick_interval: float = DEFAULT_TICK_INTERVAL
    reconcile_every: int = DEFAULT_RECONCILE_EVERY
    escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD
    stale_threshold: float = DEFAULT_STALE_THRESHOLD
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    reap_grace: float = DEFAULT_REAP_GRACE

    def __post_init__(self) -> None:
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be positive.")
        if self.reconcile_every < 1:
            raise ValueError("reconcile_every must be at least 1.")
        if self.escalation_threshold < 1:
            raise ValueError("escalation_threshold must be at least 1.")
        if self.stale_threshold <= 0 or self.tool_timeout <= 0:
            raise ValueError("stale_threshold and tool_timeout must be positive.")
        if self.reap_grace < 0:
            raise ValueError("reap_grace must not be negative.")


@dataclass(frozen=True)
class WardenConfig:
    root: Path
    project_name: str
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict when missing or malformed."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s, using defaults", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _watchdog_values(section: object) -> dict[str, Any]:
    if not isinstance(section, dict):
        return {}
    values: dict[str, Any] = {}
    for key, cast in _ENV_OVERRIDES.values():
        if key not in section:
            continue
        try:
            values[key] = cast(section[key])
        except (TypeError, ValueError):
            log.warning("config.toml: ignoring invalid watchdog.%s=%r", key, section[key])
    return values


def _env_values() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for env_name, (key, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[key] = cast(raw)
        except ValueError:
            log.warning("Ignoring invalid %s=%r", env_name, raw)
    return values


def load_config(root: str | Path | None = None) -> WardenConfig:
    """Load ``.warden/config.toml`` for a project, applying env overrides."""
    resolved_root = resolve_root(root)
    document = _read_toml_file(config_path(resolved_root))

    project_section = document.get("project")
    project_name = resolved_root.name
    if isinstance(project_section, dict):
        name = project_section.get("name")
        if isinstance(name, str) and name.strip():
            project_name = name.strip()
    project_name = os.environ.get("WARDEN_PROJECT") or project_name

    watchdog = WatchdogConfig(
        **{**_watchdog_values(document.get("watchdog")), **_env_values()}
    )
    return WardenConfig(root=resolved_root, project_name=project_name, watchdog=watchdog)


def with_watchdog(config: WardenConfig, **overrides: Any) -> WardenConfig:
    """Return a copy of ``config`` with some watchdog settings replaced."""
    return replace(config, watchdog=replace(config.watchdog, **overrides))


def render_config(project_name: str, watchdog: WatchdogConfig | None = None) -> str:
    """Serialize a config file for ``warden init``."""
    wd = watchdog or WatchdogConfig()
    escaped = project_name.replace("\\", "\\\\").replace('"', '\\"')
    return (
        "# warden configuration\n"
        "\n"
        "[project]\n"
        f'name = "{escaped}"\n'
        "\n"
        "[watchdog]\n"
        f"tick_interval = {wd.tick_interval}\n"
        f"reconcile_every = {wd.reconcile_every}\n"
        f"escalation_threshold = {wd.escalation_threshold}\n"
        f"stale_threshold = {wd.stale_threshold}\n"
        f"tool_timeout = {wd.tool_timeout}\n"
        f"reap_grace = {wd.reap_grace}\n"
    )
