"""Framing and decoding for the worker's newline-delimited JSON stream."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any, Iterable, Iterator, Mapping, Union

from jsonschema import Draft7Validator

LOGGER = logging.getLogger(__name__)

_ASSISTANT_SCHEMA: Mapping[str, Any] = {
    "type": "object",
    "required": ["type", "message"],
    "properties": {
        "type": {"const": "assistant"},
        "message": {
            "type": "object",
            "properties": {"content": {"type": "array"}},
        },
    },
}
_RESULT_SCHEMA: Mapping[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"const": "result"},
        "subtype": {"type": "string"},
        "is_error": {"type": "boolean"},
        "result": {"type": ["string", "null"]},
        "total_cost_usd": {"type": ["number", "null"]},
        "duration_ms": {"type": ["number", "null"]},
    },
}
_ASSISTANT_VALIDATOR = Draft7Validator(_ASSISTANT_SCHEMA)
_RESULT_VALIDATOR = Draft7Validator(_RESULT_SCHEMA)


class LineFramer:
    """Split a byte stream into complete lines, carrying partial fragments over.

    Lines are split on ``\\n``; a trailing ``\\r`` is dropped. Bytes after the
    last terminator stay buffered until more data (or :meth:`flush`) arrives.
    """

    __slots__ = ("_buffer", "_encoding")

    def __init__(self, encoding: str = "utf-8") -> None:
        self._buffer = bytearray()
        self._encoding = encoding

    def feed(self, chunk: bytes) -> list[str]:
        if not chunk:
            return []
        self._buffer.extend(chunk)
        cut = self._buffer.rfind(b"\n")
        if cut < 0:
            return []
        complete = bytes(self._buffer[:cut])
        del self._buffer[: cut + 1]
        return [self._decode(raw) for raw in complete.split(b"\n")]

    def flush(self) -> str | None:
        """Return any buffered fragment (without a terminator) and reset."""

        if not self._buffer:
            return None
        raw = bytes(self._buffer)
        self._buffer.clear()
        return self._decode(raw)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _decode(self, raw: bytes) -> str:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        return raw.decode(self._encoding, errors="replace")


@dataclass(slots=True, frozen=True)
class AssistantText:
    """Text fragments emitted by an ``assistant`` record."""

    fragments: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class ResultSuccess:
    """Terminal success record."""

    text: str | None
    duration_ms: int | None = None
    cost_usd: float | None = None


@dataclass(slots=True, frozen=True)
class ResultError:
    """Terminal error record."""

    message: str


WorkerEvent = Union[AssistantText, ResultSuccess, ResultError]


def decode_line(line: str) -> WorkerEvent | None:
    """Decode one protocol line, returning ``None`` for anything unrecognized.

    Non-JSON lines and JSON records that do not match a known shape are
    dropped; workers interleave diagnostic output with protocol records.
    """

    stripped = (line or "").strip()
    if not stripped:
        return None
    try:
        record = json.loads(stripped)
    except (JSONDecodeError, ValueError):
        LOGGER.debug("Skipping non-JSON worker line: %s", stripped[:200])
        return None
    if not isinstance(record, dict):
        return None
    record_type = record.get("type")
    if record_type == "assistant":
        return _decode_assistant(record)
    if record_type == "result":
        return _decode_result(record)
    return None


def decode_lines(lines: Iterable[str]) -> Iterator[WorkerEvent]:
    """Decode ``lines`` in order, yielding only recognized events."""

    for line in lines:
        event = decode_line(line)
        if event is not None:
            yield event


def _decode_assistant(record: Mapping[str, Any]) -> AssistantText | None:
    if not _ASSISTANT_VALIDATOR.is_valid(record):
        return None
    blocks = record["message"].get("content") or []
    fragments = tuple(
        block["text"]
        for block in blocks
        if isinstance(block, Mapping)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
        and block["text"]
    )
    return AssistantText(fragments=fragments)


def _decode_result(record: Mapping[str, Any]) -> ResultSuccess | ResultError | None:
    if not _RESULT_VALIDATOR.is_valid(record):
        return None
    result = record.get("result")
    if record.get("subtype") == "success":
        duration = record.get("duration_ms")
        cost = record.get("total_cost_usd")
        return ResultSuccess(
            text=result or None,
            duration_ms=int(duration) if duration is not None else None,
            cost_usd=float(cost) if cost is not None else None,
        )
    if record.get("is_error"):
        return ResultError(message=result or "Worker reported an error")
    return None


__all__ = [
    "AssistantText",
    "LineFramer",
    "ResultError",
    "ResultSuccess",
    "WorkerEvent",
    "decode_line",
    "decode_lines",
]
