# agent-bus - Event triggers for a file-queue agent bus
# Copyright (C) 2025 xnoto
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Configuration and on-disk layout for the agent bus.

Values are resolved once into an immutable ``BusConfig`` that every component
receives at construction. Precedence for each value:

1. Environment variable
2. JSON config file (~/.config/agent-bus/config.json or $AGENT_BUS_CONFIG)
3. Built-in default

Tests build their own config with ``BusConfig(...)`` or
``config.with_overrides(...)`` instead of patching globals.
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

log = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "agent-bus"
CONFIG_FILE = Path(os.environ.get("AGENT_BUS_CONFIG", CONFIG_DIR / "config.json"))

DEFAULT_ROLES = (
    "edit",
    "build",
    "test",
    "review",
    "deploy",
    "run",
    "commit",
    "analyze",
    "docs",
    "research",
    "watch",
    "pr-read",
    "webhook",
)
DEFAULT_PASSIVE_ROLES = ("edit",)
DEFAULT_SUBSCRIPTION_EVENTS = ("build", "test", "deploy")
SPAWN_ROLE_PREFIX = "spawn-"

_TRUE_STRINGS = ("1", "true", "yes")


def _load_config_file() -> dict:
    """Load the JSON config file. Missing or invalid files yield an empty dict."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        data = json.loads(CONFIG_FILE.read_text())
    except (json.JSONDecodeError, OSError) as e:
        log.warning(f"Failed to load config file {CONFIG_FILE}: {e}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring config file {CONFIG_FILE}: top level is not an object")
        return {}
    return data


def _coerce(value: Any, type_: Callable) -> Any:
    if type_ is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_STRINGS
    return type_(value)


def _get_config_value(
    env_var: str | None,
    config_path: list[str],
    default: Any,
    config: dict,
    type_: Callable = str,
) -> Any:
    """Resolve one value: env var, then nested config file key, then default."""
    if env_var:
        env_value = os.environ.get(env_var)
        if env_value is not None:
            try:
                return _coerce(env_value, type_)
            except (TypeError, ValueError):
                log.warning(f"Invalid value for {env_var}: {env_value!r}, using default")
                return default

    node: Any = config
    for key in config_path:
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]

    try:
        return _coerce(node, type_)
    except (TypeError, ValueError):
        log.warning(f"Invalid value for {'.'.join(config_path)}: {node!r}, using default")
        return default


def _split_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).split(",")
    return tuple(i.strip() for i in items if i.strip())


@dataclass(frozen=True)
class BusConfig:
    """Immutable bus settings plus the file layout derived from them."""

    session: str = "default"
    bus_root: Path = Path("/tmp")
    memory_dir: Path = Path(".agent-bus") / "memory"
    roles: tuple[str, ...] = DEFAULT_ROLES
    passive_roles: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_PASSIVE_ROLES))
    agent_pane: str = "1"
    notify_cooldown: float = 2.0
    compact_size_bytes: int = 512 * 1024
    compact_min_age_hours: float = 2.0
    compact_alert_cooldown: int = 600
    subscription_events: tuple[str, ...] = DEFAULT_SUBSCRIPTION_EVENTS
    poll_interval: float = 2.0
    log_level: str = "INFO"

    def with_overrides(self, **changes: Any) -> "BusConfig":
        """Return a copy with some fields replaced."""
        return dataclasses.replace(self, **changes)

    # -------------------------------------------------------------------------
    # Roles
    # -------------------------------------------------------------------------

    def is_known_role(self, role: str) -> bool:
        if role.startswith(SPAWN_ROLE_PREFIX):
            return True
        return role in self.roles

    def is_passive_role(self, role: str) -> bool:
        return role in self.passive_roles

    # -------------------------------------------------------------------------
    # Bus directory layout
    # -------------------------------------------------------------------------

    def bus_dir(self, session: str) -> Path:
        return self.bus_root / f"agent-bus-{session}"

    def inbox_dir(self, session: str) -> Path:
        return self.bus_dir(session) / "inbox"

    def inbox_path(self, session: str, role: str) -> Path:
        return self.inbox_dir(session) / f"{role}.jsonl"

    def log_path(self, session: str) -> Path:
        return self.bus_dir(session) / "log.jsonl"

    def history_path(self, session: str, role: str) -> Path:
        return self.bus_dir(session) / f"{role}-history.jsonl"

    def cron_path(self, session: str) -> Path:
        return self.bus_dir(session) / "cron.jsonl"

    def cron_history_path(self, session: str) -> Path:
        return self.bus_dir(session) / "cron-history.jsonl"

    def subscription_path(self, session: str) -> Path:
        return self.bus_dir(session) / "subscriptions.jsonl"

    def notified_size_path(self, session: str, role: str) -> Path:
        return self.bus_dir(session) / f"notified-{role}.size"

    def harness_marker_path(self, session: str, role: str) -> Path:
        return self.bus_dir(session) / f"harness-{role}.pid"

    def notify_lock_path(self, session: str, role: str) -> Path:
        return self.bus_dir(session) / "lock" / f"notify-{role}.lock"

    def session_meta_path(self, session: str, role: str) -> Path:
        return self.bus_dir(session) / "session" / f"{role}.json"

    def metrics_path(self, session: str) -> Path:
        return self.bus_dir(session) / "metrics.prom"

    # -------------------------------------------------------------------------
    # Memory layout
    # -------------------------------------------------------------------------

    def memory_path(self, role: str) -> Path:
        return self.memory_dir / f"{role}.md"

    def memory_archive_dir(self, role: str) -> Path:
        return self.memory_dir / role

    def memory_archive_path(self, role: str, date: str) -> Path:
        return self.memory_archive_dir(role) / f"{date}.md"

    # -------------------------------------------------------------------------
    # Terminal addressing
    # -------------------------------------------------------------------------

    def pane_target(self, session: str, role: str) -> str:
        """tmux target for the agent pane of a role's window."""
        return f"{session}:{role}.{self.agent_pane}"


def load_config(config: dict | None = None) -> BusConfig:
    """Build a BusConfig from the environment and the JSON config file."""
    if config is None:
        config = _load_config_file()

    roles = list(_split_list(_get_config_value(None, ["roles"], DEFAULT_ROLES, config)))
    # AGENT_BUS_ROLES extends the role list rather than replacing it
    for extra in _split_list(os.environ.get("AGENT_BUS_ROLES", "")):
        if extra not in roles:
            roles.append(extra)

    passive = _split_list(
        _get_config_value(
            "AGENT_BUS_PASSIVE_ROLES",
            ["notify", "passive_roles"],
            DEFAULT_PASSIVE_ROLES,
            config,
            lambda v: v,
        )
    )

    return BusConfig(
        session=_get_config_value("AGENT_BUS_SESSION", ["session"], "default", config),
        bus_root=Path(_get_config_value("AGENT_BUS_ROOT", ["bus_root"], "/tmp", config)),
        memory_dir=Path(
            _get_config_value(
                "AGENT_BUS_MEMORY_DIR", ["memory_dir"], str(BusConfig.memory_dir), config
            )
        ),
        roles=tuple(roles),
        passive_roles=frozenset(passive),
        agent_pane=_get_config_value("AGENT_BUS_AGENT_PANE", ["notify", "agent_pane"], "1", config),
        notify_cooldown=_get_config_value(
            "AGENT_BUS_NOTIFY_COOLDOWN", ["notify", "cooldown_seconds"], 2.0, config, float
        ),
        compact_size_bytes=_get_config_value(
            "AGENT_BUS_COMPACT_SIZE", ["compact", "size_bytes"], 512 * 1024, config, int
        ),
        compact_min_age_hours=_get_config_value(
            "AGENT_BUS_COMPACT_MIN_AGE_HOURS", ["compact", "min_age_hours"], 2.0, config, float
        ),
        compact_alert_cooldown=_get_config_value(
            "AGENT_BUS_COMPACT_COOLDOWN", ["compact", "alert_cooldown_seconds"], 600, config, int
        ),
        subscription_events=_split_list(
            _get_config_value(
                None, ["subscribe", "events"], DEFAULT_SUBSCRIPTION_EVENTS, config, lambda v: v
            )
        ),
        poll_interval=_get_config_value(
            "AGENT_BUS_POLL_SECONDS", ["watcher", "poll_seconds"], 2.0, config, float
        ),
        log_level=_get_config_value("AGENT_BUS_LOG_LEVEL", ["log_level"], "INFO", config).upper(),
    )
