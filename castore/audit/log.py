from __future__ import annotations

from typing import Optional, Protocol, Sequence

from castore.audit.record import AuditRecord, Outcome
from castore.config import CastoreConfig
from castore.errors import InvalidArgumentError


class AuditLog(Protocol):
    def record(self, command: str, args: Sequence[str], outcome: Outcome) -> AuditRecord:
        raise NotImplementedError

    def records(self, *, limit: Optional[int] = None, after_id: Optional[int] = None) -> list[AuditRecord]:
        raise NotImplementedError

    def last(self) -> Optional[AuditRecord]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "AuditLog":
        raise NotImplementedError

    def __exit__(self, exc_type, exc, tb) -> None:
        raise NotImplementedError


def open_audit_log(config: CastoreConfig) -> AuditLog:
    backend = config.audit.backend
    if backend == "sqlite":
        from castore.audit.sqlite_audit_log import SqliteAuditLog

        return SqliteAuditLog(path=config.resolve_audit_path(), busy_timeout_ms=config.audit.busy_timeout_ms)
    if backend == "postgres":
        from castore.audit.postgres_audit_log import PostgresAuditLog

        if not config.audit.pg_dsn:
            raise InvalidArgumentError("audit.pg_dsn (or CASTORE_PG_DSN) is required for the postgres audit backend")
        return PostgresAuditLog(dsn=config.audit.pg_dsn)
    raise InvalidArgumentError(f"unsupported audit backend: {backend}")
