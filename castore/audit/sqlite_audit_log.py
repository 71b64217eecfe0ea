from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

from castore.audit.migrate import apply_sqlite_migrations
from castore.audit.record import (
    AuditRecord,
    Outcome,
    build_record_body,
    compute_record_hash,
    format_timestamp,
    record_from_row,
    serialize_arguments,
)
from castore.errors import IOFailureError

RECORD_COLUMNS = "id, timestamp, command, arguments, success, error_message, output_name, prev_hash, record_hash"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqliteAuditLog:
    """Append-only, hash-chained audit table in a SQLite file.

    Appends take the database write lock (``BEGIN IMMEDIATE``) so concurrent
    processes serialize, and every append is committed with ``synchronous=FULL``
    before :meth:`record` returns.
    """

    def __init__(
        self,
        *,
        path: Path,
        busy_timeout_ms: int = 5000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._path = path
        self._clock = clock or _utcnow
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(path), timeout=busy_timeout_ms / 1000.0, isolation_level=None)
        except (OSError, sqlite3.Error) as e:
            raise IOFailureError(f"failed to open audit log {path}: {e}") from e

        try:
            self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            apply_sqlite_migrations(self._conn)
        except sqlite3.Error as e:
            self._conn.close()
            raise IOFailureError(f"failed to initialize audit log {path}: {e}") from e

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self) -> "SqliteAuditLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    def record(self, command: str, args: Sequence[str], outcome: Outcome) -> AuditRecord:
        timestamp = format_timestamp(self._clock())
        conn = self._conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT record_hash FROM audit_log ORDER BY id DESC LIMIT 1").fetchone()
                prev_hash = row[0] if row is not None else None
                body = build_record_body(
                    timestamp=timestamp, command=command, args=args, outcome=outcome, prev_hash=prev_hash
                )
                rec_hash = compute_record_hash(body)
                cur = conn.execute(
                    "INSERT INTO audit_log (timestamp, command, arguments, success, error_message, output_name, prev_hash, record_hash) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        body["timestamp"],
                        body["command"],
                        serialize_arguments(body["arguments"]),
                        1 if body["success"] else 0,
                        body["error_message"],
                        body["output_name"],
                        prev_hash,
                        rec_hash,
                    ),
                )
                rec_id = int(cur.lastrowid)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise IOFailureError(f"audit log write failed: {e}") from e

        return AuditRecord(
            id=rec_id,
            timestamp=body["timestamp"],
            command=body["command"],
            arguments=tuple(body["arguments"]),
            success=body["success"],
            error_message=body["error_message"],
            output_name=body["output_name"],
            prev_hash=prev_hash,
            record_hash=rec_hash,
        )

    def records(self, *, limit: Optional[int] = None, after_id: Optional[int] = None) -> list[AuditRecord]:
        """Return records in id order.

        ``after_id`` skips records up to and including that id; ``limit`` keeps
        only the most recent ``limit`` of what remains.
        """

        where = "WHERE id > ?" if after_id is not None else ""
        params: list[int] = [int(after_id)] if after_id is not None else []
        try:
            if limit is None:
                rows = self._conn.execute(f"SELECT {RECORD_COLUMNS} FROM audit_log {where} ORDER BY id", params).fetchall()
            else:
                rows = self._conn.execute(
                    f"SELECT {RECORD_COLUMNS} FROM (SELECT {RECORD_COLUMNS} FROM audit_log {where} ORDER BY id DESC LIMIT ?) ORDER BY id",
                    [*params, int(limit)],
                ).fetchall()
        except sqlite3.Error as e:
            raise IOFailureError(f"audit log read failed: {e}") from e
        return [record_from_row(r) for r in rows]

    def last(self) -> Optional[AuditRecord]:
        try:
            row = self._conn.execute(f"SELECT {RECORD_COLUMNS} FROM audit_log ORDER BY id DESC LIMIT 1").fetchone()
        except sqlite3.Error as e:
            raise IOFailureError(f"audit log read failed: {e}") from e
        return record_from_row(row) if row is not None else None
