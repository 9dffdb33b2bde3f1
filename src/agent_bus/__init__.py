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

"""Agent Bus - notifications, cron, subscriptions and compaction alerts for agent inboxes."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agent-bus")
except PackageNotFoundError:  # pragma: no cover - fallback for dev
    __version__ = "0.1.0"
