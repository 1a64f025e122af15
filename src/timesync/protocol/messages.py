"""Time sync message kinds and their JSON-lines wire encoding.

Each message travels as one JSON object terminated by a newline:

    {"kind": 1, "sampleIndex": 0, "sequenceId": 7}
    {"kind": 2, "sampleIndex": 0, "sequenceId": 7, "clientTimestamp": 1700000000000}
    {"kind": 3}
    {"kind": 4, "timeOffset": -500.0}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Tuple, Union


class MessageKind(IntEnum):
    REQUEST = 1
    RESPONSE = 2
    SYNC_NOW = 3
    OFFSET = 4


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into a time sync message."""


@dataclass(frozen=True)
class SyncRequest:
    sample_index: int
    sequence_id: int

    kind = MessageKind.REQUEST


@dataclass(frozen=True)
class SyncResponse:
    sample_index: int
    sequence_id: int
    client_timestamp: int

    kind = MessageKind.RESPONSE


@dataclass(frozen=True)
class SyncNow:
    kind = MessageKind.SYNC_NOW


@dataclass(frozen=True)
class TimeOffset:
    time_offset: float

    kind = MessageKind.OFFSET


Message = Union[SyncRequest, SyncResponse, SyncNow, TimeOffset]

# kind -> (message class, ordered (attribute, wire key, accepted types))
_FIELDS: Dict[MessageKind, Tuple[type, List[Tuple[str, str, tuple]]]] = {
    MessageKind.REQUEST: (SyncRequest, [
        ("sample_index", "sampleIndex", (int,)),
        ("sequence_id", "sequenceId", (int,)),
    ]),
    MessageKind.RESPONSE: (SyncResponse, [
        ("sample_index", "sampleIndex", (int,)),
        ("sequence_id", "sequenceId", (int,)),
        ("client_timestamp", "clientTimestamp", (int,)),
    ]),
    MessageKind.SYNC_NOW: (SyncNow, []),
    MessageKind.OFFSET: (TimeOffset, [
        ("time_offset", "timeOffset", (int, float)),
    ]),
}


class JsonlCodec:
    """Encode/decode time sync messages as newline-delimited JSON."""

    @staticmethod
    def to_dict(message: Message) -> Dict[str, Any]:
        _, fields = _FIELDS[message.kind]
        data: Dict[str, Any] = {"kind": int(message.kind)}
        for attr, key, _ in fields:
            data[key] = getattr(message, attr)
        return data

    @staticmethod
    def from_dict(data: Any) -> Message:
        if not isinstance(data, dict):
            raise ProtocolError(f"expected a JSON object, got {type(data).__name__}")
        try:
            kind = MessageKind(data.get("kind"))
        except ValueError:
            raise ProtocolError(f"unknown message kind: {data.get('kind')!r}") from None

        cls, fields = _FIELDS[kind]
        values: Dict[str, Any] = {}
        for attr, key, types in fields:
            if key not in data:
                raise ProtocolError(f"{kind.name} is missing field {key!r}")
            value = data[key]
            # bool is an int subclass but never a valid field value
            if isinstance(value, bool) or not isinstance(value, types):
                raise ProtocolError(f"{kind.name}.{key} has invalid value {value!r}")
            values[attr] = value
        return cls(**values)

    @classmethod
    def encode(cls, message: Message) -> bytes:
        return (json.dumps(cls.to_dict(message), separators=(",", ":")) + "\n").encode("utf-8")

    @classmethod
    def decode_line(cls, line: Union[bytes, str]) -> Message:
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolError(f"frame is not valid UTF-8: {e}") from e
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"frame is not valid JSON: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def decode_lines(cls, data: bytes) -> List[Message]:
        """Decode every non-empty line of ``data``."""
        return [cls.decode_line(line) for line in data.splitlines() if line.strip()]
