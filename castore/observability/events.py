from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from castore.observability.tracing import current_trace_ids


def _format_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CommandEvent:
    event_type: str
    command: str
    occurred_at: str
    duration_ms: Optional[int]
    status: str
    exit_code: int
    trace_id: Optional[str]
    span_id: Optional[str]
    config_ref: Optional[dict[str, str]]
    fields: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "command": self.command,
            "occurred_at": self.occurred_at,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "exit_code": self.exit_code,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "config_ref": dict(self.config_ref) if self.config_ref is not None else None,
            "fields": dict(self.fields),
        }


def build_command_event(
    *,
    command: str,
    occurred_at: datetime,
    duration_ms: Optional[int],
    status: str,
    exit_code: int,
    event_type: str = "COMMAND_COMPLETED",
    config_path: Optional[str] = None,
    config_sha256: Optional[str] = None,
    fields: Optional[dict[str, Any]] = None,
) -> CommandEvent:
    ids = current_trace_ids()
    config_ref = None
    if config_path is not None and config_sha256 is not None:
        config_ref = {"config_path": config_path, "config_sha256": config_sha256}
    return CommandEvent(
        event_type=event_type,
        command=command,
        occurred_at=_format_datetime(occurred_at),
        duration_ms=duration_ms,
        status=status,
        exit_code=exit_code,
        trace_id=ids.trace_id_hex if ids is not None else None,
        span_id=ids.span_id_hex if ids is not None else None,
        config_ref=config_ref,
        fields=fields or {},
    )


class FileEventLogger:
    """Append-only JSONL command events."""

    def __init__(self, *, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def append(self, event: CommandEvent) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")
