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

"""Prometheus text-format counters for the watcher.

One counter exists per ``NotifyResult``, named
``agent_bus_notifications_<result>_total``. The rest are fixed bus counters
and gauges declared in ``COUNTERS`` and ``GAUGES``.
"""

import threading
import time

from agent_bus.notify import NotifyResult

PREFIX = "agent_bus_"

_NOTIFY_HELP = {
    NotifyResult.DELIVERED: "terminal alerts delivered",
    NotifyResult.SUPPRESSED: "alerts suppressed as duplicates",
    NotifyResult.HARNESS: "alerts skipped for roles with a harness attached",
    NotifyResult.FAILED: "terminal alerts that failed",
}

# name (without prefix) -> help text
COUNTERS = {
    "cron_fired_total": "Total cron entries fired",
    "compact_alerts_total": "Total compaction recommendations sent",
    "inbox_events_total": "Total inbox change events from the filesystem",
    "loop_errors_total": "Total errors caught in the watcher loop",
}

GAUGES = {
    "cron_entries": "Current number of loaded cron entries",
    "inbox_queue_size": "Current inbox event queue depth",
}


def notify_counter(result: NotifyResult) -> str:
    return f"{PREFIX}notifications_{result.value}_total"


def _metric_table() -> dict[str, tuple[str, str]]:
    table = {notify_counter(r): ("counter", f"Total {_NOTIFY_HELP[r]}") for r in NotifyResult}
    table.update({PREFIX + n: ("counter", h) for n, h in COUNTERS.items()})
    table.update({PREFIX + n: ("gauge", h) for n, h in GAUGES.items()})
    return table


class PrometheusMetrics:
    """Thread-safe collector for the watcher's bus counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._start_time = time.time()
        self._table = _metric_table()
        self._values: dict[str, float] = dict.fromkeys(self._table, 0)

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter. Unknown names and gauges are ignored."""
        with self._lock:
            if self._table.get(name, ("",))[0] == "counter":
                self._values[name] += value

    def record_notify(self, result: NotifyResult) -> None:
        self.inc(notify_counter(result))

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            if self._table.get(name, ("",))[0] == "gauge":
                self._values[name] = value

    def get(self, name: str) -> float:
        with self._lock:
            return self._values.get(name, 0)

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = [
            f"# HELP {PREFIX}start_time_seconds Unix timestamp when the watcher started",
            f"# TYPE {PREFIX}start_time_seconds gauge",
            f"{PREFIX}start_time_seconds {self._start_time}",
        ]
        with self._lock:
            for name, (kind, help_text) in self._table.items():
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {kind}")
                lines.append(f"{name} {self._values[name]}")
        return "\n".join(lines) + "\n"

    def log_summary(self) -> str:
        """One line for the log, e.g. ``uptime=3m2s delivered=4 ... cron_fired=2``."""
        uptime = int(time.time() - self._start_time)
        hours, rest = divmod(uptime, 3600)
        minutes, seconds = divmod(rest, 60)
        uptime_str = f"{hours}h{minutes}m{seconds}s" if hours else f"{minutes}m{seconds}s"

        with self._lock:
            parts = [f"uptime={uptime_str}"]
            parts += [f"{r.value}={self._values[notify_counter(r)]}" for r in NotifyResult]
            parts += [
                f"{name.removesuffix('_total')}={self._values[PREFIX + name]}"
                for name in COUNTERS
            ]
        return " ".join(parts)
