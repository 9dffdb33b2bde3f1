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

"""Per-role session metadata and memory file sizes."""

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from agent_bus.config import BusConfig
from agent_bus.errors import BusError
from agent_bus.jsonl import atomic_write_text, record_fields
from agent_bus.transport import file_size

log = logging.getLogger(__name__)

SUMMARY_SECTION = "Session Summary"


@dataclass
class SessionMeta:
    start_ts: int = 0
    compact_count: int = 0
    last_compact_ts: int = 0


class SessionStore:
    """Reads and updates ``session/<role>.json`` plus the role's memory files."""

    def __init__(self, config: BusConfig):
        self.config = config

    def read_meta(self, session: str, role: str) -> SessionMeta | None:
        """Return the role's metadata, or None if it was never initialized."""
        path = self.config.session_meta_path(session, role)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise BusError(f"corrupt session metadata {path}: {e}") from e
        if not isinstance(data, dict):
            raise BusError(f"corrupt session metadata {path}: not an object")
        try:
            return SessionMeta(**record_fields(SessionMeta, data))
        except TypeError as e:
            raise BusError(f"corrupt session metadata {path}: {e}") from e

    def write_meta(self, session: str, role: str, meta: SessionMeta) -> None:
        atomic_write_text(self.config.session_meta_path(session, role), json.dumps(asdict(meta)))

    def init_meta(self, session: str, role: str, now: int | None = None) -> SessionMeta:
        """Create metadata with start_ts=now unless it already exists."""
        existing = self.read_meta(session, role)
        if existing is not None:
            return existing
        meta = SessionMeta(start_ts=int(time.time()) if now is None else now)
        self.write_meta(session, role, meta)
        return meta

    def record_compaction(self, session: str, role: str, summary: str, now: int | None = None) -> SessionMeta:
        """Save a summary to the role's memory and reset its staleness clock."""
        now = int(time.time()) if now is None else now
        meta = self.init_meta(session, role, now=now)
        self.append_memory(SUMMARY_SECTION, summary, role, now=now)
        meta.compact_count += 1
        meta.last_compact_ts = now
        self.write_meta(session, role, meta)
        log.info(f"Compacted {role} (count={meta.compact_count})")
        return meta

    # -------------------------------------------------------------------------
    # Memory files
    # -------------------------------------------------------------------------

    def append_memory(self, section: str, content: str, role: str, now: int | None = None) -> None:
        path = self.config.memory_path(role)
        path.parent.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(now))
        with path.open("a", encoding="utf-8") as f:
            f.write(f"\n## {section}\n_{stamp}_\n\n{content}\n")

    def archive_bytes(self, role: str) -> int:
        """Total size of the role's dated archive files."""
        archive_dir = self.config.memory_archive_dir(role)
        try:
            entries = list(archive_dir.iterdir())
        except OSError:
            return 0
        return sum(file_size(p) for p in entries if p.is_file())

    def memory_bytes(self, role: str) -> int:
        """Active memory file plus all archives."""
        return file_size(self.config.memory_path(role)) + self.archive_bytes(role)

    @staticmethod
    def file_size(path: Path) -> int:
        return file_size(path)
