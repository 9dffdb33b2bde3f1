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

"""Publish/subscribe fan-out for build, test and deploy outcomes."""

import logging
import time
from dataclasses import asdict, dataclass

from agent_bus.config import BusConfig
from agent_bus.errors import BusError, NotFoundError, ValidationError
from agent_bus.jsonl import read_jsonl, record_fields, write_jsonl
from agent_bus.transport import new_message, new_msg_id

log = logging.getLogger(__name__)

WILDCARD = "*"
OUTCOMES = ("success", "failure")
DEFAULT_ACTION = "notify"
DEFAULT_TEMPLATE = "${event} ${outcome}: ${command}"


@dataclass
class Subscription:
    id: str = ""
    event: str = ""
    outcome: str = ""
    notify: str = ""
    action: str = DEFAULT_ACTION
    message: str = DEFAULT_TEMPLATE
    enabled: bool = True
    created_at: int = 0
    fire_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "Subscription":
        return cls(**record_fields(cls, data))

    def matches(self, event: str, outcome: str) -> bool:
        return (
            self.enabled
            and self.event in (WILDCARD, event)
            and self.outcome in (WILDCARD, outcome)
        )


def match_subscriptions(subs: list[Subscription], event: str, outcome: str) -> list[Subscription]:
    """Enabled subscriptions matching (event, outcome), in store order."""
    return [s for s in subs if s.matches(event, outcome)]


def expand_subscription_message(
    template: str, event: str, outcome: str, exit_code: str = "", command: str = ""
) -> str:
    """Substitute ``${event}``, ``${outcome}``, ``${exit_code}`` and ``${command}``.

    Any other ``${...}`` is left as written.
    """
    return (
        template.replace("${event}", event)
        .replace("${outcome}", outcome)
        .replace("${exit_code}", exit_code)
        .replace("${command}", command)
    )


class SubscriptionFanout:
    def __init__(self, config: BusConfig, transport, dispatcher=None):
        self.config = config
        self.transport = transport
        self.dispatcher = dispatcher

    def read(self, session: str) -> list[Subscription]:
        return read_jsonl(self.config.subscription_path(session), Subscription.from_dict)

    def write(self, session: str, subs: list[Subscription]) -> None:
        write_jsonl(self.config.subscription_path(session), (asdict(s) for s in subs))

    def add(
        self,
        session: str,
        event: str,
        outcome: str,
        notify: str,
        action: str = "",
        message: str = "",
    ) -> Subscription:
        if not self.config.is_known_role(notify):
            raise ValidationError(f"unknown notify role: {notify}")
        events = self.config.subscription_events
        if event != WILDCARD and event not in events:
            raise ValidationError(
                f"invalid event: {event} (must be {', '.join(events)}, or {WILDCARD})"
            )
        if outcome != WILDCARD and outcome not in OUTCOMES:
            raise ValidationError(
                f"invalid outcome: {outcome} (must be {', '.join(OUTCOMES)}, or {WILDCARD})"
            )

        sub = Subscription(
            id=new_msg_id("sub"),
            event=event,
            outcome=outcome,
            notify=notify,
            action=action or DEFAULT_ACTION,
            message=message or DEFAULT_TEMPLATE,
            enabled=True,
            created_at=int(time.time()),
        )
        subs = self.read(session)
        subs.append(sub)
        self.write(session, subs)
        log.info(f"Added subscription {sub.id}: {event}/{outcome} -> {notify}")
        return sub

    def remove(self, session: str, sub_id: str) -> None:
        subs = self.read(session)
        kept = [s for s in subs if s.id != sub_id]
        if len(kept) == len(subs):
            raise NotFoundError(f"subscription not found: {sub_id}")
        self.write(session, kept)

    def set_enabled(self, session: str, sub_id: str, enabled: bool) -> None:
        subs = self.read(session)
        for s in subs:
            if s.id == sub_id:
                s.enabled = enabled
                break
        else:
            raise NotFoundError(f"subscription not found: {sub_id}")
        self.write(session, subs)

    def fire(
        self,
        session: str,
        publisher: str,
        event: str,
        outcome: str,
        exit_code: str = "",
        command: str = "",
    ) -> int:
        """Send an event message for every matching subscription.

        Returns the number of messages sent. Each notify role gets at most one
        terminal alert per call.
        """
        matched = match_subscriptions(self.read(session), event, outcome)
        if not matched:
            return 0

        fired = 0
        notified: set[str] = set()
        for sub in matched:
            payload = expand_subscription_message(sub.message, event, outcome, exit_code, command)
            msg = new_message(publisher, sub.notify, "event", sub.action, payload)
            try:
                self.transport.send(session, msg)
            except BusError as e:
                log.warning(f"Subscription {sub.id} send failed: {e}")
                continue
            fired += 1
            if sub.notify not in notified:
                notified.add(sub.notify)
                if self.dispatcher is not None:
                    self.dispatcher.notify(session, sub.notify)

        if fired:
            self._bump_fire_counts(session, {s.id for s in matched})
        return fired

    def _bump_fire_counts(self, session: str, ids: set[str]) -> None:
        try:
            subs = self.read(session)
            for s in subs:
                if s.id in ids:
                    s.fire_count += 1
            self.write(session, subs)
        except OSError as e:
            log.warning(f"Could not update subscription fire counts: {e}")


def format_subscription_list(entries: list[Subscription], show_all: bool = False) -> str:
    shown = [e for e in entries if show_all or e.enabled]
    if not shown:
        if show_all:
            return "No subscriptions.\n"
        return "No enabled subscriptions. Use --all to see disabled entries.\n"

    lines = [
        f"{'ID':<40} {'Event':<8} {'Outcome':<10} {'Notify':<10} {'Action':<8} {'Status':<8} Fires",
        "-" * 100,
    ]
    for e in shown:
        status = "enabled" if e.enabled else "disabled"
        lines.append(
            f"{e.id:<40} {e.event:<8} {e.outcome:<10} {e.notify:<10} {e.action:<8} "
            f"{status:<8} {e.fire_count}"
        )
    return "\n".join(lines) + "\n"
