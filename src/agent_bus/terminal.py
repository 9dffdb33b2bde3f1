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

"""One-shot tmux commands used to alert agent panes."""

import logging
import shlex
import subprocess

from agent_bus.errors import TerminalError

log = logging.getLogger(__name__)

STATUS_DISPLAY_MS = 5000


class Tmux:
    """Thin wrapper over the tmux CLI. Every call blocks until tmux exits."""

    def __init__(self, binary: str = "tmux"):
        self.binary = binary

    def run(self, args: list[str]) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        try:
            return subprocess.run(cmd, check=True, text=True, capture_output=True)
        except FileNotFoundError as e:
            raise TerminalError(f"missing executable: {self.binary}") from e
        except subprocess.CalledProcessError as e:
            details = (e.stderr or "").strip()
            raise TerminalError(
                f"command failed: {shlex.join(cmd)}" + (f": {details}" if details else "")
            ) from e

    def has_session(self, session: str) -> bool:
        try:
            self.run(["has-session", "-t", session])
            return True
        except TerminalError as e:
            log.debug(f"tmux session {session!r} not available: {e}")
            return False

    def send_literal(self, target: str, text: str) -> None:
        """Type ``text`` into a pane verbatim. Key names in it are not interpreted."""
        self.run(["send-keys", "-t", target, "-l", text])

    def send_key(self, target: str, key: str) -> None:
        """Press a named key (``Enter``, ``C-u``...) in a pane."""
        self.run(["send-keys", "-t", target, key])

    def display_message(self, session: str, text: str, duration_ms: int = STATUS_DISPLAY_MS) -> None:
        """Show ``text`` in the session status line without touching pane input."""
        self.run(["display-message", "-t", session, "-d", str(duration_ms), text])
