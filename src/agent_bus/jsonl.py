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

"""Newline-delimited JSON stores.

Stores are rewritten whole: records are serialized in memory, written to a
sibling temp file, then moved into place with ``os.replace``. A concurrent
writer can lose an update but can never leave a half-written file behind.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


def read_jsonl(path: Path, parse: Callable[[dict], T]) -> list[T]:
    """Read every well-formed record in ``path``.

    A missing file reads as empty. Blank and malformed lines are skipped.
    Any other OSError propagates.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []

    records: list[T] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                raise ValueError("record is not an object")
            records.append(parse(data))
        except (json.JSONDecodeError, TypeError, ValueError, KeyError) as e:
            log.debug(f"Skipping malformed line {lineno} in {path.name}: {e}")
    return records


def encode_lines(records: Iterable[dict]) -> str:
    return "".join(json.dumps(r, ensure_ascii=False, separators=(",", ":")) + "\n" for r in records)


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def write_jsonl(path: Path, records: Iterable[dict]) -> None:
    """Replace ``path`` with ``records``, one JSON object per line."""
    atomic_write_text(path, encode_lines(records))


def append_jsonl(path: Path, record: dict) -> None:
    """Append one record, creating the file and its directory if needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(encode_lines([record]))


def record_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys a dataclass accepts, so unknown fields do not break reads.

    Values must match the field's annotated type (str, int or bool). A
    mismatch raises TypeError, which ``read_jsonl`` treats as a malformed line.
    """
    fields = cls.__dataclass_fields__
    kept = {}
    for key, value in data.items():
        if key not in fields:
            continue
        expected = fields[key].type
        # bool is a subclass of int, but a flag is never a count
        if expected in (str, int, bool) and (
            not isinstance(value, expected) or (expected is int and isinstance(value, bool))
        ):
            raise TypeError(f"{key} must be {expected.__name__}, got {type(value).__name__}")
        kept[key] = value
    return kept
