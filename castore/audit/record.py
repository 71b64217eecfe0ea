from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Union

from castore.digest import sha256_prefixed


@dataclass(frozen=True)
class Success:
    output_name: Optional[str] = None


@dataclass(frozen=True)
class Failure:
    message: str


Outcome = Union[Success, Failure]


@dataclass(frozen=True)
class AuditRecord:
    id: int
    timestamp: str
    command: str
    arguments: tuple[str, ...]
    success: bool
    error_message: Optional[str]
    output_name: Optional[str]
    prev_hash: Optional[str]
    record_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "command": self.command,
            "arguments": list(self.arguments),
            "success": self.success,
            "error_message": self.error_message,
            "output_name": self.output_name,
            "prev_hash": self.prev_hash,
            "record_hash": self.record_hash,
        }


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def storable_text(value: str) -> str:
    """Return ``value`` as text that encodes to UTF-8.

    Command-line arguments that were not valid UTF-8 reach Python as lone
    surrogates; their original bytes are kept as ``\\xNN`` escapes.
    """

    value = str(value)
    try:
        raw = value.encode("utf-8", "surrogateescape")
    except UnicodeEncodeError:
        raw = value.encode("utf-8", "backslashreplace")
    return raw.decode("utf-8", "backslashreplace")


def serialize_arguments(args: Sequence[str]) -> str:
    return json.dumps([storable_text(a) for a in args], ensure_ascii=False)


def _canonical_json_bytes(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_record_body(
    *,
    timestamp: str,
    command: str,
    args: Sequence[str],
    outcome: Outcome,
    prev_hash: Optional[str],
) -> dict[str, Any]:
    """Return the hashed fields of a record (everything except ``id`` and ``record_hash``)."""

    if isinstance(outcome, Success):
        success = True
        error_message = None
        output_name = outcome.output_name
    elif isinstance(outcome, Failure):
        if not outcome.message:
            raise ValueError("failure outcome requires a message")
        success = False
        error_message = storable_text(outcome.message)
        output_name = None
    else:
        raise TypeError(f"unsupported outcome: {outcome!r}")

    return {
        "timestamp": timestamp,
        "command": storable_text(command),
        "arguments": [storable_text(a) for a in args],
        "success": success,
        "error_message": error_message,
        "output_name": output_name,
        "prev_hash": prev_hash,
    }


def compute_record_hash(body: dict[str, Any]) -> str:
    return sha256_prefixed(_canonical_json_bytes(body))


def record_from_row(row: Sequence[Any]) -> AuditRecord:
    """Build a record from ``(id, timestamp, command, arguments, success, error_message,
    output_name, prev_hash, record_hash)``."""

    rec_id, timestamp, command, arguments, success, error_message, output_name, prev_hash, rec_hash = row
    args = json.loads(arguments)
    if not isinstance(args, list):
        raise ValueError(f"audit record {rec_id}: arguments must be a JSON array")
    return AuditRecord(
        id=int(rec_id),
        timestamp=str(timestamp),
        command=str(command),
        arguments=tuple(str(a) for a in args),
        success=bool(success),
        error_message=error_message,
        output_name=output_name,
        prev_hash=prev_hash,
        record_hash=str(rec_hash),
    )


def record_body_of(record: AuditRecord) -> dict[str, Any]:
    return {
        "timestamp": record.timestamp,
        "command": record.command,
        "arguments": list(record.arguments),
        "success": record.success,
        "error_message": record.error_message,
        "output_name": record.output_name,
        "prev_hash": record.prev_hash,
    }
