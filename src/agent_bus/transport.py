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

"""Bus transport: per-role append-only inbox files plus a session log.

Only the slice the trigger layer needs lives here: message construction,
encode/decode, send and peek. Consuming inboxes is the agents' business.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from agent_bus.config import BusConfig
from agent_bus.errors import BusError
from agent_bus.jsonl import append_jsonl, read_jsonl

log = logging.getLogger(__name__)


def new_msg_id(prefix: str) -> str:
    """Return a sortable, collision-resistant id such as ``cron-1700000000-1a2b3c4d``."""
    return f"{prefix}-{int(time.time())}-{uuid.uuid4().hex[:8]}"


@dataclass
class Message:
    from_: str
    to: str
    type: str
    action: str
    payload: str = ""
    reply_to: str = ""
    id: str = ""
    ts: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ts": self.ts,
            "from": self.from_,
            "to": self.to,
            "type": self.type,
            "action": self.action,
            "payload": self.payload,
            "reply_to": self.reply_to,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=str(data.get("id", "")),
            ts=int(data.get("ts", 0)),
            from_=str(data["from"]),
            to=str(data["to"]),
            type=str(data.get("type", "")),
            action=str(data.get("action", "")),
            payload=str(data.get("payload", "")),
            reply_to=str(data.get("reply_to", "")),
        )


def new_message(
    from_: str, to: str, type_: str, action: str, payload: str = "", reply_to: str = ""
) -> Message:
    """Construct a message with a fresh id and the current timestamp."""
    return Message(
        id=new_msg_id(from_),
        from_=from_,
        to=to,
        type=type_,
        action=action,
        payload=payload,
        reply_to=reply_to,
    )


def encode_message(msg: Message) -> str:
    return json.dumps(msg.to_dict(), ensure_ascii=False, separators=(",", ":"))


def decode_message(line: str) -> Message:
    """Decode one JSON line. Raises ValueError on malformed input."""
    try:
        data = json.loads(line)
        if not isinstance(data, dict):
            raise ValueError("message is not an object")
        return Message.from_dict(data)
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise ValueError(f"invalid message: {e}") from e


class BusTransport:
    """File-backed message delivery for one bus root."""

    def __init__(self, config: BusConfig):
        self.config = config

    def send(self, session: str, msg: Message) -> None:
        """Append ``msg`` to the recipient's inbox and to the session log."""
        record = msg.to_dict()
        try:
            append_jsonl(self.config.inbox_path(session, msg.to), record)
            append_jsonl(self.config.log_path(session), record)
        except OSError as e:
            raise BusError(f"send {msg.id} to {msg.to}: {e}") from e
        log.debug(f"Sent {msg.type}:{msg.action} {msg.from_} -> {msg.to} ({msg.id})")

    def peek(self, session: str, role: str) -> list[Message]:
        """Read a role's inbox without consuming it."""
        return read_jsonl(self.config.inbox_path(session, role), Message.from_dict)

    def inbox_size(self, session: str, role: str) -> int:
        """Byte size of a role's inbox, 0 when it does not exist."""
        return file_size(self.config.inbox_path(session, role))

    def has_messages(self, session: str, role: str) -> bool:
        return self.inbox_size(session, role) > 0


def file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
