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

"""Exceptions raised by the agent bus."""


class BusError(Exception):
    """Base error for bus operations (I/O, transport, terminal)."""


class ValidationError(BusError):
    """Rejected input. Raised before any store is touched."""


class ScheduleError(ValidationError):
    """Unparseable or too-short cron schedule."""


class NotFoundError(BusError):
    """No store entry with the requested id."""


class TerminalError(BusError):
    """A tmux command failed or tmux is not installed."""
