from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

MIGRATIONS_TABLE = "castore_schema_migrations"

_PG_TOKEN_RE = re.compile(r"(\$\$|;)")


@dataclass(frozen=True)
class Migration:
    version: str
    sql: str


def _split_sql(sql: str) -> list[str]:
    # Semicolons inside $$-quoted function bodies do not end a statement.
    out: list[str] = []
    buf: list[str] = []
    in_body = False
    for part in _PG_TOKEN_RE.split(sql):
        if part == ";" and not in_body:
            stmt = "".join(buf).strip()
            if stmt:
                out.append(stmt)
            buf = []
            continue
        if part == "$$":
            in_body = not in_body
        buf.append(part)
    stmt = "".join(buf).strip()
    if stmt:
        out.append(stmt)
    return out


def _split_sqlite_sql(sql: str) -> list[str]:
    out: list[str] = []
    buf = ""
    for line in sql.splitlines(keepends=True):
        buf += line
        if sqlite3.complete_statement(buf):
            stmt = buf.strip()
            if stmt:
                out.append(stmt)
            buf = ""
    if buf.strip():
        out.append(buf.strip())
    return out


def load_migrations(*, dialect: str) -> list[Migration]:
    mig_dir = MIGRATIONS_DIR / dialect
    if not mig_dir.is_dir():
        raise ValueError(f"no migrations for dialect: {dialect}")
    out: list[Migration] = []
    for path in sorted(mig_dir.glob("*.sql")):
        out.append(Migration(version=path.name, sql=path.read_text(encoding="utf-8")))
    return out


def apply_sqlite_migrations(conn: sqlite3.Connection) -> list[str]:
    """Apply pending migrations; ``conn`` must be in autocommit mode (isolation_level=None)."""

    applied: list[str] = []
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (version TEXT PRIMARY KEY, applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP)"
        )
        for mig in load_migrations(dialect="sqlite"):
            row = conn.execute(f"SELECT 1 FROM {MIGRATIONS_TABLE} WHERE version = ?", (mig.version,)).fetchone()
            if row is not None:
                continue
            for stmt in _split_sqlite_sql(mig.sql):
                conn.execute(stmt)
            conn.execute(f"INSERT INTO {MIGRATIONS_TABLE}(version) VALUES (?)", (mig.version,))
            applied.append(mig.version)
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    return applied


def apply_postgres_migrations(conn: Any) -> list[str]:
    applied: list[str] = []
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (version TEXT PRIMARY KEY, applied_at TIMESTAMPTZ NOT NULL DEFAULT now())"
            )
            cur.execute(f"LOCK TABLE {MIGRATIONS_TABLE} IN EXCLUSIVE MODE")
            for mig in load_migrations(dialect="postgres"):
                cur.execute(f"SELECT 1 FROM {MIGRATIONS_TABLE} WHERE version = %s", (mig.version,))
                if cur.fetchone() is not None:
                    continue
                for stmt in _split_sql(mig.sql):
                    cur.execute(stmt)
                cur.execute(f"INSERT INTO {MIGRATIONS_TABLE}(version) VALUES (%s)", (mig.version,))
                applied.append(mig.version)
    return applied
