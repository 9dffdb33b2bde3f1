#!/usr/bin/env python3
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
"""Agent Bus Watcher - Poll a bus session and drive its event triggers.

Each loop iteration:
- Inboxes: alert roles whose inbox grew (filesystem events, plus a size poll
  as fallback). Passive roles are skipped; they are alerted by the sender.
- Cron: fire due entries (entries reloaded from disk at most every 10s).
- Compaction: every 2 minutes, send a ``compact-recommended`` event to roles
  whose memory is large and stale (each role at most once per cooldown).
- Metrics: every 30 seconds, write metrics.prom into the bus directory.

All component calls happen on the main thread. The watchdog observer thread
only queues the names of inboxes that changed.
"""

import logging
import queue
import signal
import threading
import time
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from agent_bus.compact import CompactionMonitor, CompactThresholds, filter_new_alerts
from agent_bus.config import BusConfig, load_config
from agent_bus.cron import CronEntry, CronScheduler
from agent_bus.errors import BusError
from agent_bus.jsonl import atomic_write_text
from agent_bus.metrics import PrometheusMetrics
from agent_bus.notify import NotificationDispatcher, NotifyResult
from agent_bus.session import SessionStore
from agent_bus.terminal import Tmux
from agent_bus.transport import BusTransport, file_size, new_message

log = logging.getLogger(__name__)

WATCHER_SENDER = "watcher"
CRON_RELOAD_SECONDS = 10
COMPACT_CHECK_SECONDS = 120
METRICS_INTERVAL = 30


# =============================================================================
# Event Handler
# =============================================================================


class InboxHandler(FileSystemEventHandler):
    """Queue the role name of any inbox file that is created or grows."""

    def __init__(self, events: queue.Queue):
        self.events = events

    def on_created(self, event: FileSystemEvent) -> None:
        self._queue(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._queue(event)

    def _queue(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = Path(event.src_path)
        if path.suffix != ".jsonl" or path.name.startswith("."):
            return
        log.debug(f"Inbox changed: {path.name}")
        self.events.put(path.stem)


# =============================================================================
# Watcher
# =============================================================================


class Watcher:
    def __init__(
        self,
        config: BusConfig,
        session: str | None = None,
        terminal: Tmux | None = None,
        metrics: PrometheusMetrics | None = None,
    ):
        self.config = config
        self.session = session or config.session
        self.transport = BusTransport(config)
        self.dispatcher = NotificationDispatcher(config, self.transport, terminal)
        self.cron = CronScheduler(config, self.transport, self.dispatcher)
        self.monitor = CompactionMonitor(config, SessionStore(config))
        self.metrics = metrics or PrometheusMetrics()
        self.events: queue.Queue[str] = queue.Queue()

        now = int(time.time())
        self.inbox_sizes: dict[str, int] = {}
        self.cron_entries: list[CronEntry] = []
        self.last_cron_load = 0
        # Skip the first compaction interval so a restart does not replay old alerts
        self.last_compact_check = now
        self.last_metrics_write = 0
        self.last_alert_keys: dict[str, int] = {}

    def notify(self, role: str) -> NotifyResult:
        result = self.dispatcher.notify(self.session, role)
        self.metrics.record_notify(result)
        return result

    # -------------------------------------------------------------------------
    # Inboxes
    # -------------------------------------------------------------------------

    def _watched_roles(self) -> list[str]:
        roles = list(self.config.roles)
        while True:
            try:
                role = self.events.get_nowait()
            except queue.Empty:
                break
            self.metrics.inc("agent_bus_inbox_events_total")
            if role not in roles and self.config.is_known_role(role):
                roles.append(role)
        return roles

    def refresh_inbox_sizes(self) -> None:
        """Record current sizes without alerting, after the watcher itself sent messages."""
        for role in {*self.config.roles, *self.inbox_sizes}:
            self.inbox_sizes[role] = self.transport.inbox_size(self.session, role)

    def check_inboxes(self) -> list[str]:
        """Alert every non-passive role whose inbox grew. Returns the roles alerted."""
        alerted = []
        for role in self._watched_roles():
            size = self.transport.inbox_size(self.session, role)
            prev = self.inbox_sizes.get(role, 0)
            self.inbox_sizes[role] = size
            if size <= prev or self.config.is_passive_role(role):
                continue
            log.info(f"New message(s) for {role}, notifying")
            self.notify(role)
            alerted.append(role)
        self.metrics.set_gauge("agent_bus_inbox_queue_size", self.events.qsize())
        return alerted

    # -------------------------------------------------------------------------
    # Cron
    # -------------------------------------------------------------------------

    def load_cron(self, now: int) -> None:
        if now - self.last_cron_load < CRON_RELOAD_SECONDS:
            return
        path = self.config.cron_path(self.session)
        if file_size(path) == 0:
            self.cron_entries = []
        else:
            try:
                self.cron_entries = self.cron.read_entries(self.session)
            except OSError as e:
                log.error(f"Failed to read cron entries: {e}")
                return
        self.last_cron_load = now
        self.metrics.set_gauge("agent_bus_cron_entries", len(self.cron_entries))

    def check_cron(self, now: int) -> int:
        self.load_cron(now)
        fired = self.cron.run_due(self.session, self.cron_entries, now=now)
        if fired:
            self.metrics.inc("agent_bus_cron_fired_total", len(fired))
            self.refresh_inbox_sizes()
            # Pick up the new last_run_ts values on the next tick
            self.last_cron_load = 0
        return len(fired)

    # -------------------------------------------------------------------------
    # Compaction
    # -------------------------------------------------------------------------

    def check_compaction(self, now: int) -> int:
        if now - self.last_compact_check < COMPACT_CHECK_SECONDS:
            return 0
        self.last_compact_check = now

        alerts = self.monitor.check_all(
            self.session, CompactThresholds.from_config(self.config), now=now
        )
        fresh = filter_new_alerts(
            alerts, self.last_alert_keys, self.config.compact_alert_cooldown, now=now
        )
        sent = 0
        for alert in fresh:
            log.info(f"Compact recommended: {alert.role} (total: {alert.total_bytes} bytes)")
            msg = new_message(
                WATCHER_SENDER, alert.role, "event", "compact-recommended", alert.message
            )
            try:
                self.transport.send(self.session, msg)
            except BusError as e:
                log.error(f"Failed to send compact alert to {alert.role}: {e}")
                continue
            sent += 1
            self.metrics.inc("agent_bus_compact_alerts_total")
            if not self.config.is_passive_role(alert.role):
                self.notify(alert.role)

        if fresh:
            self.refresh_inbox_sizes()
        return sent

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def write_metrics(self, now: int) -> None:
        if now - self.last_metrics_write < METRICS_INTERVAL:
            return
        self.last_metrics_write = now
        atomic_write_text(self.config.metrics_path(self.session), self.metrics.to_prometheus())
        log.info(f"Metrics: {self.metrics.log_summary()}")

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def tick(self, now: int | None = None) -> None:
        """Run one iteration. A failing check is logged and does not stop the others."""
        now = int(time.time()) if now is None else now
        checks = (
            ("inbox", self.check_inboxes),
            ("cron", lambda: self.check_cron(now)),
            ("compaction", lambda: self.check_compaction(now)),
            ("metrics", lambda: self.write_metrics(now)),
        )
        for name, check in checks:
            try:
                check()
            except Exception as e:
                self.metrics.inc("agent_bus_loop_errors_total")
                log.error(f"{name} check error: {e}")

    def run(self, shutdown_event: threading.Event) -> None:
        inbox_dir = self.config.inbox_dir(self.session)
        inbox_dir.mkdir(parents=True, exist_ok=True)

        log.info(f"Session: {self.session}")
        log.info(f"Bus: {self.config.bus_dir(self.session)}")
        log.info(f"Poll: {self.config.poll_interval}s")

        # Existing inbox content was announced before we started
        self.refresh_inbox_sizes()

        observer = Observer()
        observer.schedule(InboxHandler(self.events), str(inbox_dir), recursive=False)
        observer.start()
        try:
            while not shutdown_event.is_set():
                self.tick()
                shutdown_event.wait(self.config.poll_interval)
        finally:
            observer.stop()
            observer.join()
        log.info("Watcher stopped")


# =============================================================================
# Main
# =============================================================================


def main():
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    shutdown_event = threading.Event()

    def shutdown_handler(signum, frame):
        log.info(f"Received signal {signum}, shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    Watcher(config).run(shutdown_event)


if __name__ == "__main__":
    main()
