import sqlite3
import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path

from castore.audit.record import (
    Failure,
    Success,
    build_record_body,
    compute_record_hash,
    record_body_of,
    storable_text,
)
from castore.audit.sqlite_audit_log import SqliteAuditLog
from castore.audit.verify import verify_audit_records
from castore.errors import IOFailureError


def _fixed_clock() -> datetime:
    return datetime(2026, 1, 17, 8, 0, 0, 123456, tzinfo=timezone.utc)


class TestSqliteAuditLog(unittest.TestCase):
    def test_records_are_hash_chained(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with SqliteAuditLog(path=Path(td) / "_audit.db", clock=_fixed_clock) as log:
                r1 = log.record("write", ["-"], Success(output_name="a" * 64))
                r2 = log.record("read", ["b" * 64], Failure(message="not found"))
                r3 = log.record("version", [], Success())

                self.assertIsNone(r1.prev_hash)
                self.assertEqual(r2.prev_hash, r1.record_hash)
                self.assertEqual(r3.prev_hash, r2.record_hash)
                self.assertLess(r1.id, r2.id)
                self.assertLess(r2.id, r3.id)
                self.assertEqual(r1.timestamp, "2026-01-17T08:00:00.123Z")
                self.assertTrue(r1.record_hash.startswith("sha256:"))

                stored = log.records()
                self.assertEqual(stored, [r1, r2, r3])
                for rec in stored:
                    self.assertEqual(rec.record_hash, compute_record_hash(record_body_of(rec)))

    def test_failure_rows_have_message_and_no_output(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with SqliteAuditLog(path=Path(td) / "_audit.db") as log:
                rec = log.record("read", ["x"], Failure(message="invalid digest"))
                self.assertFalse(rec.success)
                self.assertEqual(rec.error_message, "invalid digest")
                self.assertIsNone(rec.output_name)

                with self.assertRaises(ValueError):
                    log.record("read", ["x"], Failure(message=""))
                self.assertEqual(len(log.records()), 1)

    def test_arguments_round_trip_verbatim(self) -> None:
        args = ["-", "--flag", "line\nbreak", "ünïcödé", ""]
        with tempfile.TemporaryDirectory() as td:
            with SqliteAuditLog(path=Path(td) / "_audit.db") as log:
                log.record("replace", args, Success(output_name="c" * 64))
                (rec,) = log.records()
                self.assertEqual(rec.arguments, tuple(args))

    def test_records_limit_returns_most_recent_in_order(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with SqliteAuditLog(path=Path(td) / "_audit.db") as log:
                for i in range(5):
                    log.record("version", [str(i)], Success())
                tail = log.records(limit=2)
                self.assertEqual([r.arguments for r in tail], [("3",), ("4",)])

                ids = [r.id for r in log.records()]
                after = log.records(after_id=ids[2])
                self.assertEqual([r.arguments for r in after], [("3",), ("4",)])
                self.assertEqual([r.arguments for r in log.records(after_id=ids[0], limit=1)], [("4",)])
                self.assertEqual(log.last(), log.records()[-1])

    def test_last_on_empty_log(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with SqliteAuditLog(path=Path(td) / "_audit.db") as log:
                self.assertIsNone(log.last())
                self.assertEqual(log.records(), [])

    def test_rows_cannot_be_updated_or_deleted(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = Path(td) / "_audit.db"
            with SqliteAuditLog(path=db) as log:
                log.record("version", [], Success())

            conn = sqlite3.connect(str(db))
            try:
                with self.assertRaises(sqlite3.DatabaseError):
                    conn.execute("UPDATE audit_log SET command = 'x'")
                with self.assertRaises(sqlite3.DatabaseError):
                    conn.execute("DELETE FROM audit_log")
                with self.assertRaises(sqlite3.IntegrityError):
                    conn.execute(
                        "INSERT INTO audit_log (timestamp, command, arguments, success, error_message, output_name, prev_hash, record_hash) "
                        "VALUES ('t', 'read', '[]', 0, 'boom', 'abc', NULL, 'h')"
                    )
            finally:
                conn.close()

    def test_reopen_continues_the_chain(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = Path(td) / "nested" / "_audit.db"
            with SqliteAuditLog(path=db) as log:
                first = log.record("version", [], Success())
            with SqliteAuditLog(path=db) as log:
                second = log.record("version", [], Success())
                self.assertEqual(second.prev_hash, first.record_hash)
                self.assertTrue(verify_audit_records(log.records()).ok)

    def test_concurrent_writers_keep_one_chain(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = Path(td) / "_audit.db"
            SqliteAuditLog(path=db).close()

            errors: list[BaseException] = []

            def worker(n: int) -> None:
                try:
                    with SqliteAuditLog(path=db, busy_timeout_ms=10000) as log:
                        for i in range(10):
                            log.record("write", [f"{n}-{i}"], Success(output_name=f"{n:064x}"))
                except BaseException as e:  # surfaced below
                    errors.append(e)

            threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            self.assertEqual(errors, [])
            with SqliteAuditLog(path=db) as log:
                recs = log.records()
            self.assertEqual(len(recs), 40)
            result = verify_audit_records(recs)
            self.assertTrue(result.ok, result.errors)

    def test_unwritable_location_is_io_failure(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            blocker = Path(td) / "file"
            blocker.write_bytes(b"")
            with self.assertRaises(IOFailureError):
                SqliteAuditLog(path=blocker / "_audit.db")


class TestRecordBody(unittest.TestCase):
    def test_body_excludes_id_and_hash(self) -> None:
        body = build_record_body(
            timestamp="2026-01-17T08:00:00.000Z",
            command="append",
            args=["d", "x"],
            outcome=Success(output_name="e" * 64),
            prev_hash=None,
        )
        self.assertEqual(
            set(body),
            {"timestamp", "command", "arguments", "success", "error_message", "output_name", "prev_hash"},
        )
        self.assertEqual(compute_record_hash(body), compute_record_hash(dict(body)))

    def test_undecodable_text_is_stored_escaped(self) -> None:
        body = build_record_body(
            timestamp="2026-01-17T08:00:00.000Z",
            command="write",
            args=["caf\udce9.txt", "\ud800", "ünï"],
            outcome=Failure(message="failed to read caf\udce9.txt"),
            prev_hash=None,
        )
        self.assertEqual(body["arguments"], ["caf\\xe9.txt", "\\ud800", "ünï"])
        self.assertEqual(body["error_message"], "failed to read caf\\xe9.txt")
        self.assertEqual(storable_text("plain"), "plain")

    def test_undecodable_arguments_are_appended(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with SqliteAuditLog(path=Path(td) / "_audit.db") as log:
                rec = log.record("write", ["\udcff"], Success(output_name="a" * 64))
                self.assertEqual(log.records(), [rec])
                self.assertEqual(rec.arguments, ("\\xff",))

    def test_unknown_outcome_is_rejected(self) -> None:
        with self.assertRaises(TypeError):
            build_record_body(timestamp="t", command="c", args=[], outcome="ok", prev_hash=None)  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
