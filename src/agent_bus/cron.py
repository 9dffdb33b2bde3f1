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

"""Interval schedules that inject request messages into role inboxes.

Firing is two-phase: send the message, then record ``last_run_ts`` and a
history line. A crash between the phases re-fires the entry on the next tick,
so delivery is at-least-once.
"""

import logging
import re
import time
from dataclasses import asdict, dataclass
from datetime import timedelta

from agent_bus.config import BusConfig
from agent_bus.errors import BusError, NotFoundError, ScheduleError, ValidationError
from agent_bus.jsonl import append_jsonl, read_jsonl, record_fields, write_jsonl
from agent_bus.transport import new_message, new_msg_id

log = logging.getLogger(__name__)

MIN_INTERVAL = timedelta(seconds=30)
CRON_SENDER = "cron"

PRESETS = {
    "@hourly": timedelta(hours=1),
    "@daily": timedelta(days=1),
    "@half-hourly": timedelta(minutes=30),
}

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
}

_DURATION_RE = re.compile(r"(?:\d+(?:\.\d+)?\s*[a-z]+(?:\s*,\s*|\s+and\s+|\s*))+")
_TERM_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")
_EVERY_RE = re.compile(r"@?every(?:\s+(.*))?")


@dataclass
class CronSchedule:
    interval: timedelta

    @property
    def seconds(self) -> int:
        return int(self.interval.total_seconds())


@dataclass
class CronEntry:
    id: str = ""
    schedule: str = ""
    target: str = ""
    action: str = ""
    message: str = ""
    enabled: bool = True
    created_at: int = 0
    last_run_ts: int = 0
    run_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "CronEntry":
        return cls(**record_fields(cls, data))


@dataclass
class CronHistoryEntry:
    cron_id: str
    ts: int
    message_id: str
    target: str
    action: str

    @classmethod
    def from_dict(cls, data: dict) -> "CronHistoryEntry":
        return cls(**record_fields(cls, data))


# =============================================================================
# Schedule parsing
# =============================================================================


def format_interval(interval: timedelta) -> str:
    """Render an interval compactly, e.g. ``2h30m`` or ``10s``."""
    total = interval.total_seconds()
    if 0 < total < 1:
        return f"{round(total * 1000)}ms"
    seconds = int(total)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


def parse_duration(text: str) -> timedelta:
    """Parse ``90s``, ``2h30m``, ``1.5h`` or ``2 hours 30 minutes``."""
    if not _DURATION_RE.fullmatch(text):
        raise ScheduleError(f'invalid duration "{text}"')
    total = 0.0
    for amount, unit in _TERM_RE.findall(text):
        if unit not in _UNIT_SECONDS:
            raise ScheduleError(f'invalid duration "{text}": unknown unit "{unit}"')
        total += float(amount) * _UNIT_SECONDS[unit]
    try:
        return timedelta(seconds=total)
    except OverflowError:
        raise ScheduleError(f'invalid duration "{text}": too large') from None


def parse_schedule(schedule: str) -> CronSchedule:
    """Parse a schedule string. Raises ScheduleError for anything unusable."""
    lower = schedule.strip().lower()

    if lower in PRESETS:
        return CronSchedule(PRESETS[lower])

    match = _EVERY_RE.fullmatch(lower)
    if match:
        duration = (match.group(1) or "").strip()
        if not duration:
            raise ScheduleError("empty duration in @every")
        interval = parse_duration(duration)
        if interval < MIN_INTERVAL:
            raise ScheduleError(
                f"interval {format_interval(interval)} is below minimum "
                f"{format_interval(MIN_INTERVAL)}"
            )
        return CronSchedule(interval)

    raise ScheduleError(f'unsupported schedule format: "{schedule}"')


def cron_due(entry: CronEntry, now: int) -> bool:
    """Whether ``entry`` should fire at ``now``. Never raises."""
    if not entry.enabled:
        return False
    try:
        interval_secs = parse_schedule(entry.schedule).seconds
    except ScheduleError:
        return False
    if interval_secs <= 0:
        return False
    if not entry.last_run_ts:
        return True
    return now - entry.last_run_ts >= interval_secs


# =============================================================================
# Scheduler
# =============================================================================


class CronScheduler:
    def __init__(self, config: BusConfig, transport, dispatcher=None):
        self.config = config
        self.transport = transport
        self.dispatcher = dispatcher

    # Store

    def read_entries(self, session: str) -> list[CronEntry]:
        return read_jsonl(self.config.cron_path(session), CronEntry.from_dict)

    def write_entries(self, session: str, entries: list[CronEntry]) -> None:
        write_jsonl(self.config.cron_path(session), (asdict(e) for e in entries))

    def add(
        self, session: str, schedule: str, target: str, action: str = "", message: str = ""
    ) -> CronEntry:
        """Validate and store a new entry; returns it with id and created_at set."""
        try:
            parse_schedule(schedule)
        except ScheduleError as e:
            raise ScheduleError(f"invalid schedule: {e}") from e
        if not self.config.is_known_role(target):
            raise ValidationError(f"unknown target role: {target}")

        entry = CronEntry(
            id=new_msg_id(CRON_SENDER),
            schedule=schedule,
            target=target,
            action=action,
            message=message,
            enabled=True,
            created_at=int(time.time()),
        )
        entries = self.read_entries(session)
        entries.append(entry)
        self.write_entries(session, entries)
        log.info(f"Added cron {entry.id}: {schedule} -> {target}:{action}")
        return entry

    def remove(self, session: str, entry_id: str) -> None:
        entries = self.read_entries(session)
        kept = [e for e in entries if e.id != entry_id]
        if len(kept) == len(entries):
            raise NotFoundError(f"cron entry not found: {entry_id}")
        self.write_entries(session, kept)

    def set_enabled(self, session: str, entry_id: str, enabled: bool) -> None:
        entries = self.read_entries(session)
        _find(entries, entry_id).enabled = enabled
        self.write_entries(session, entries)

    def update_last_run(self, session: str, entry_id: str, ts: int) -> None:
        entries = self.read_entries(session)
        entry = _find(entries, entry_id)
        entry.last_run_ts = ts
        entry.run_count += 1
        self.write_entries(session, entries)

    # History

    def append_history(self, session: str, entry: CronHistoryEntry) -> None:
        append_jsonl(self.config.cron_history_path(session), asdict(entry))

    def read_history(self, session: str, cron_id: str | None = None) -> list[CronHistoryEntry]:
        entries = read_jsonl(self.config.cron_history_path(session), CronHistoryEntry.from_dict)
        if cron_id:
            entries = [e for e in entries if e.cron_id == cron_id]
        return entries

    # Firing

    def fire(self, session: str, entry: CronEntry) -> str:
        """Send the entry's request message and return its id."""
        msg = new_message(CRON_SENDER, entry.target, "request", entry.action, entry.message)
        try:
            self.transport.send(session, msg)
        except (BusError, OSError) as e:
            raise BusError(f"sending cron message: {e}") from e
        return msg.id

    def run_due(
        self, session: str, entries: list[CronEntry] | None = None, now: int | None = None
    ) -> list[CronHistoryEntry]:
        """Fire every due entry once and record the runs that were sent."""
        now = int(time.time()) if now is None else now
        if entries is None:
            entries = self.read_entries(session)

        fired = []
        for entry in entries:
            if not cron_due(entry, now):
                continue
            log.info(f"Cron firing: {entry.id} -> {entry.target}:{entry.action}")
            try:
                msg_id = self.fire(session, entry)
            except BusError as e:
                log.error(f"Failed to execute cron {entry.id}: {e}")
                continue

            try:
                self.update_last_run(session, entry.id, now)
            except (BusError, OSError) as e:
                log.error(f"Failed to update last_run for {entry.id}: {e}")

            record = CronHistoryEntry(
                cron_id=entry.id, ts=now, message_id=msg_id, target=entry.target, action=entry.action
            )
            try:
                self.append_history(session, record)
            except OSError as e:
                log.error(f"Failed to append cron history for {entry.id}: {e}")

            if self.dispatcher is not None:
                self.dispatcher.notify(session, entry.target)
            fired.append(record)
        return fired


def _find(entries: list[CronEntry], entry_id: str) -> CronEntry:
    for entry in entries:
        if entry.id == entry_id:
            return entry
    raise NotFoundError(f"cron entry not found: {entry_id}")


# =============================================================================
# Formatting
# =============================================================================


def format_cron_list(entries: list[CronEntry], show_all: bool = False) -> str:
    shown = [e for e in entries if show_all or e.enabled]
    if not shown:
        if show_all:
            return "No cron entries.\n"
        return "No enabled cron entries. Use --all to see disabled entries.\n"

    lines = [
        f"{'ID':<40} {'Schedule':<14} {'Target':<10} {'Action':<10} {'Status':<8} Runs",
        "-" * 100,
    ]
    for e in shown:
        status = "enabled" if e.enabled else "disabled"
        lines.append(
            f"{e.id:<40} {e.schedule:<14} {e.target:<10} {e.action:<10} {status:<8} {e.run_count}"
        )
    return "\n".join(lines) + "\n"


def format_cron_history(entries: list[CronHistoryEntry]) -> str:
    if not entries:
        return "No cron history.\n"

    lines = [f"{'Time':<20} {'Target':<10} {'Action':<10} Message ID", "-" * 80]
    for e in entries:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e.ts))
        lines.append(f"{stamp:<20} {e.target:<10} {e.action:<10} {e.message_id}")
    return "\n".join(lines) + "\n"
