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

"""Recommend memory compaction once a role's context grows large and stale.

The monitor holds no state. Alert dedup uses a ``{key: ts}`` map owned by the
caller (the watcher keeps one for its lifetime).
"""

import logging
import time
from dataclasses import dataclass

from agent_bus.config import BusConfig
from agent_bus.errors import BusError
from agent_bus.session import SessionStore
from agent_bus.transport import file_size

log = logging.getLogger(__name__)

# Reported age for roles with no usable session metadata; above any sane threshold
NEVER_COMPACTED_HOURS = 999.0


@dataclass
class CompactThresholds:
    size_bytes: int
    min_age_hours: float

    @classmethod
    def from_config(cls, config: BusConfig) -> "CompactThresholds":
        return cls(size_bytes=config.compact_size_bytes, min_age_hours=config.compact_min_age_hours)


@dataclass
class CompactAlert:
    role: str
    total_bytes: int
    memory_bytes: int
    history_bytes: int
    log_bytes: int
    hours_since_compact: float
    message: str


def format_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    kb = n / 1024
    if kb < 1024:
        return f"{kb:.0f} KB"
    return f"{kb / 1024:.1f} MB"


def format_hours(hours: float) -> str:
    total_minutes = int(hours * 60)
    h, m = divmod(total_minutes, 60)
    if h == 0:
        return f"{m}m"
    if m == 0:
        return f"{h}h"
    return f"{h}h {m}m"


def compact_alert_key(alert: CompactAlert) -> str:
    return f"compact:{alert.role}"


def format_compact_message(
    role: str, total: int, memory: int, history: int, log_bytes: int, hours: float
) -> str:
    return (
        f"Context approaching limits for {role} (total: {format_bytes(total)}, "
        f"memory: {format_bytes(memory)}, history: {format_bytes(history)}, "
        f"log: {format_bytes(log_bytes)}). Last compact: {format_hours(hours)} ago. "
        f'Run: agent-bus session compact "<summary>"'
    )


def format_compact_alert(alert: CompactAlert) -> str:
    """Multi-line rendering for terminal output."""
    return (
        f"⚠ COMPACT RECOMMENDED: {alert.role}\n"
        f"  Total: {format_bytes(alert.total_bytes)}  "
        f"(memory: {format_bytes(alert.memory_bytes)}, "
        f"history: {format_bytes(alert.history_bytes)}, "
        f"log: {format_bytes(alert.log_bytes)})\n"
        f"  Last compact: {format_hours(alert.hours_since_compact)} ago\n"
        f'  Run: agent-bus session compact "<summary>"\n'
    )


def filter_new_alerts(
    alerts: list[CompactAlert],
    last_seen: dict[str, int],
    cooldown_secs: int,
    now: int | None = None,
) -> list[CompactAlert]:
    """Drop alerts seen within the cooldown and stamp the rest into ``last_seen``."""
    now = int(time.time()) if now is None else now
    fresh = []
    for alert in alerts:
        key = compact_alert_key(alert)
        seen = last_seen.get(key)
        if seen is not None and now - seen < cooldown_secs:
            continue
        last_seen[key] = now
        fresh.append(alert)
    return fresh


class CompactionMonitor:
    def __init__(self, config: BusConfig, sessions: SessionStore | None = None):
        self.config = config
        self.sessions = sessions or SessionStore(config)

    def hours_since_compact(self, session: str, role: str, now: float | None = None) -> float:
        now = time.time() if now is None else now
        try:
            meta = self.sessions.read_meta(session, role)
        except (BusError, OSError) as e:
            log.debug(f"Unreadable session metadata for {role}: {e}")
            return NEVER_COMPACTED_HOURS
        if meta is None:
            return NEVER_COMPACTED_HOURS
        since = meta.last_compact_ts or meta.start_ts
        if not since:
            return NEVER_COMPACTED_HOURS
        return (now - since) / 3600

    def check_role(
        self,
        session: str,
        role: str,
        thresholds: CompactThresholds | None = None,
        now: float | None = None,
    ) -> CompactAlert | None:
        th = thresholds or CompactThresholds.from_config(self.config)

        memory = self.sessions.memory_bytes(role)
        history = file_size(self.config.history_path(session, role))
        log_bytes = file_size(self.config.log_path(session))
        total = memory + history + log_bytes
        if total < th.size_bytes:
            return None

        hours = self.hours_since_compact(session, role, now=now)
        if hours < th.min_age_hours:
            return None

        return CompactAlert(
            role=role,
            total_bytes=total,
            memory_bytes=memory,
            history_bytes=history,
            log_bytes=log_bytes,
            hours_since_compact=hours,
            message=format_compact_message(role, total, memory, history, log_bytes, hours),
        )

    def check_all(
        self, session: str, thresholds: CompactThresholds | None = None, now: float | None = None
    ) -> list[CompactAlert]:
        alerts = []
        for role in self.config.roles:
            alert = self.check_role(session, role, thresholds, now=now)
            if alert is not None:
                alerts.append(alert)
        return alerts
