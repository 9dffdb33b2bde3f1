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

"""Notification dispatcher: tell a role's terminal that its inbox grew.

Many processes (cron ticks, subscription fan-out, the watcher, agents sending
directly) may try to notify the same role at once. The check-then-mark step is
serialized per role with an advisory ``flock`` so at most one of them types
into the pane for a given inbox size. The marker is written before delivery:
a failed delivery is not retried, a successful one is never duplicated.
"""

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

from agent_bus.config import BusConfig
from agent_bus.errors import BusError, TerminalError
from agent_bus.terminal import Tmux

log = logging.getLogger(__name__)

PAYLOAD_PREVIEW_CHARS = 100
KEYSTROKE_DELAY = 0.1  # seconds between typed text and Enter
FALLBACK_TEXT = "You have new messages. Run: agent-bus inbox"
MAILBOX_PREFIX = "📬 "


class NotifyResult(Enum):
    DELIVERED = "delivered"
    SUPPRESSED = "suppressed"
    HARNESS = "harness"
    FAILED = "failed"


@contextmanager
def role_lock(path: Path):
    """Hold an exclusive flock on ``path``. Yields False if locking failed."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        f = path.open("a+")
    except OSError as e:
        log.debug(f"Notify lock unavailable ({path}): {e}; continuing unsynchronized")
        yield False
        return
    locked = False
    try:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            locked = True
        except OSError as e:
            log.debug(f"flock failed on {path}: {e}; continuing unsynchronized")
        yield locked
    finally:
        if locked:
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass
        f.close()


def pid_alive(pid: int) -> bool:
    """Signal-0 probe. EPERM means the process exists under another user."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def preview(text: str, limit: int = PAYLOAD_PREVIEW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


class NotificationDispatcher:
    """Deduplicated terminal alerts, one per inbox growth per role."""

    def __init__(self, config: BusConfig, transport, terminal: Tmux | None = None):
        self.config = config
        self.transport = transport
        self.terminal = terminal or Tmux()

    # -------------------------------------------------------------------------
    # Harness detection
    # -------------------------------------------------------------------------

    def harness_active(self, session: str, role: str) -> bool:
        """True if an autonomous process has claimed this role's inbox.

        Markers that do not hold a live PID are deleted.
        """
        path = self.config.harness_marker_path(session, role)
        try:
            raw = path.read_text().strip()
        except FileNotFoundError:
            return False
        except OSError as e:
            log.warning(f"Cannot read harness marker {path}: {e}")
            return False

        try:
            pid = int(raw)
        except ValueError:
            log.warning(f"Removing invalid harness marker for {role}: {raw!r}")
            path.unlink(missing_ok=True)
            return False

        if not pid_alive(pid):
            log.warning(f"Removing stale harness marker for {role} (pid {pid} not running)")
            path.unlink(missing_ok=True)
            return False
        return True

    # -------------------------------------------------------------------------
    # Dedup marker
    # -------------------------------------------------------------------------

    def already_notified(self, session: str, role: str, current: int | None = None) -> bool:
        """Whether an alert for an inbox of ``current`` bytes was already sent."""
        if current is None:
            current = self.transport.inbox_size(session, role)
        if current == 0:
            return True

        marker = self.config.notified_size_path(session, role)
        try:
            stat = marker.stat()
            notified = int(marker.read_text().strip())
        except (OSError, ValueError):
            return False

        if notified == current:
            return True
        # Inbox grew since the last alert; hold off while the marker is fresh
        return time.time() - stat.st_mtime < self.config.notify_cooldown

    def mark_notified(self, session: str, role: str, size: int | None = None) -> None:
        if size is None:
            size = self.transport.inbox_size(session, role)
        marker = self.config.notified_size_path(session, role)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(str(size))

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def notify_text(self, session: str, role: str) -> str:
        """One-line summary of the newest message in the inbox."""
        try:
            messages = self.transport.peek(session, role)
        except (OSError, BusError) as e:
            log.debug(f"Cannot peek inbox for {role}: {e}")
            return FALLBACK_TEXT
        if not messages:
            return FALLBACK_TEXT
        last = messages[-1]
        return f"[{last.from_} → {last.action}] {preview(last.payload)} → Run: agent-bus inbox"

    def notify(self, session: str, role: str) -> NotifyResult:
        if self.harness_active(session, role):
            log.debug(f"Harness attached to {role}, skipping terminal alert")
            return NotifyResult.HARNESS

        with role_lock(self.config.notify_lock_path(session, role)):
            # Mark the size that was compared so later appends still alert
            size = self.transport.inbox_size(session, role)
            if self.already_notified(session, role, size):
                return NotifyResult.SUPPRESSED
            try:
                self.mark_notified(session, role, size)
            except OSError as e:
                log.warning(f"Could not write notify marker for {role}: {e}")
            text = self.notify_text(session, role)

            try:
                if self.config.is_passive_role(role):
                    self.terminal.display_message(session, MAILBOX_PREFIX + text)
                else:
                    self._type_into_pane(session, role, text)
            except TerminalError as e:
                log.warning(f"Notify {role} failed: {e}")
                return NotifyResult.FAILED

        log.info(f"Notified {role}: {text}")
        return NotifyResult.DELIVERED

    def _type_into_pane(self, session: str, role: str, text: str) -> None:
        if not self.terminal.has_session(session):
            raise TerminalError(f"tmux session {session!r} not found")
        target = self.config.pane_target(session, role)
        self.terminal.send_literal(target, text)
        time.sleep(KEYSTROKE_DELAY)
        self.terminal.send_key(target, "Enter")
