from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from castore.audit.migrate import apply_postgres_migrations
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


def _require_psycopg():
    try:
        import psycopg  # type: ignore
    except Exception as e:  # pragma: no cover
        raise IOFailureError(f"psycopg is required for the postgres audit backend: {e}") from e
    return psycopg


class PostgresAuditLog:
    """Append-only, hash-chained ``audit_log`` table in Postgres.

    Appends lock the table in EXCLUSIVE mode for the duration of the insert
    transaction, which serializes concurrent writers while leaving reads open.
    """

    def __init__(self, *, dsn: str, clock: Optional[Callable[[], datetime]] = None) -> None:
        psycopg = _require_psycopg()
        self._psycopg = psycopg
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        try:
            self._conn: Any = psycopg.connect(dsn, autocommit=True)
        except Exception as e:
            raise IOFailureError(f"failed to connect to audit database: {e}") from e
        try:
            apply_postgres_migrations(self._conn)
        except Exception as e:
            self._conn.close()
            raise IOFailureError(f"failed to initialize audit database: {e}") from e

    def __enter__(self) -> "PostgresAuditLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    def record(self, command: str, args: Sequence[str], outcome: Outcome) -> AuditRecord:
        timestamp = format_timestamp(self._clock())
        try:
            with self._conn.transaction():
                with self._conn.cursor() as cur:
                    cur.execute("LOCK TABLE audit_log IN EXCLUSIVE MODE")
                    cur.execute("SELECT record_hash FROM audit_log ORDER BY id DESC LIMIT 1")
                    row = cur.fetchone()
                    prev_hash = row[0] if row is not None else None
                    body = build_record_body(
                        timestamp=timestamp, command=command, args=args, outcome=outcome, prev_hash=prev_hash
                    )
                    rec_hash = compute_record_hash(body)
                    cur.execute(
                        "INSERT INTO audit_log (timestamp, command, arguments, success, error_message, output_name, prev_hash, record_hash) "
                        "VALUES (%s, %s, %s, %s, %s, %s, %s, %s) RETURNING id",
                        (
                            body["timestamp"],
                            body["command"],
                            serialize_arguments(body["arguments"]),
                            body["success"],
                            body["error_message"],
                            body["output_name"],
                            prev_hash,
                            rec_hash,
                        ),
                    )
                    inserted = cur.fetchone()
        except self._psycopg.Error as e:
            raise IOFailureError(f"audit log write failed: {e}") from e

        return AuditRecord(
            id=int(inserted[0]),
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
        where = "WHERE id > %s" if after_id is not None else ""
        params: list[int] = [int(after_id)] if after_id is not None else []
        try:
            with self._conn.cursor() as cur:
                if limit is None:
                    cur.execute(f"SELECT {RECORD_COLUMNS} FROM audit_log {where} ORDER BY id", params)
                else:
                    cur.execute(
                        f"SELECT {RECORD_COLUMNS} FROM (SELECT {RECORD_COLUMNS} FROM audit_log {where} ORDER BY id DESC LIMIT %s) t ORDER BY id",
                        [*params, int(limit)],
                    )
                rows = cur.fetchall()
        except self._psycopg.Error as e:
            raise IOFailureError(f"audit log read failed: {e}") from e
        return [record_from_row(r) for r in rows]

    def last(self) -> Optional[AuditRecord]:
        try:
            with self._conn.cursor() as cur:
                cur.execute(f"SELECT {RECORD_COLUMNS} FROM audit_log ORDER BY id DESC LIMIT 1")
                row = cur.fetchone()
        except self._psycopg.Error as e:
            raise IOFailureError(f"audit log read failed: {e}") from e
        return record_from_row(row) if row is not None else None
