import io
import sqlite3
import tempfile
import unittest
from pathlib import Path

import casctl

from castore.audit.record import Success
from castore.audit.sqlite_audit_log import SqliteAuditLog
from castore.audit.verify import verify_audit_records
from castore.errors import EXIT_IO_FAILURE


def _tamper(db: Path, sql: str) -> None:
    conn = sqlite3.connect(str(db))
    try:
        conn.execute("DROP TRIGGER audit_log_no_update")
        conn.execute(sql)
        conn.commit()
    finally:
        conn.close()


class TestAuditVerify(unittest.TestCase):
    def _seed(self, db: Path) -> None:
        with SqliteAuditLog(path=db) as log:
            log.record("write", ["-"], Success(output_name="a" * 64))
            log.record("append", ["a" * 64, "x"], Success(output_name="b" * 64))
            log.record("version", [], Success())

    def test_untouched_log_verifies(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = Path(td) / "_audit.db"
            self._seed(db)
            with SqliteAuditLog(path=db) as log:
                result = verify_audit_records(log.records())
            self.assertTrue(result.ok, result.errors)
            self.assertEqual(result.records_checked, 3)

    def test_edited_row_breaks_record_hash(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = Path(td) / "_audit.db"
            self._seed(db)
            _tamper(db, "UPDATE audit_log SET command = 'prepend' WHERE id = 2")

            with SqliteAuditLog(path=db) as log:
                result = verify_audit_records(log.records())
            self.assertFalse(result.ok)
            self.assertTrue(any("record 2: record_hash mismatch" in e for e in result.errors))

    def test_broken_link_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = Path(td) / "_audit.db"
            self._seed(db)
            _tamper(db, "UPDATE audit_log SET prev_hash = NULL WHERE id = 3")

            with SqliteAuditLog(path=db) as log:
                result = verify_audit_records(log.records())
            self.assertTrue(any("record 3: prev_hash mismatch" in e for e in result.errors))

    def test_schema_violation_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = Path(td) / "_audit.db"
            self._seed(db)
            _tamper(db, "UPDATE audit_log SET output_name = 'not-a-digest' WHERE id = 1")

            with SqliteAuditLog(path=db) as log:
                result = verify_audit_records(log.records())
            self.assertTrue(any("schema validation failed at output_name" in e for e in result.errors))

    def test_cli_audit_verify_reports_tampering(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td) / "cas"
            self._seed(root / "_audit.db")

            out = io.BytesIO()
            rc = casctl.main(["--root", str(root), "audit-verify"], stdout=out, stderr=io.StringIO(), environ={})
            self.assertEqual(rc, 0)
            self.assertIn(b"AUDIT_VERIFY_OK: records=3", out.getvalue())

            _tamper(root / "_audit.db", "UPDATE audit_log SET arguments = '[]' WHERE id = 2")

            out = io.BytesIO()
            err = io.StringIO()
            rc = casctl.main(["--root", str(root), "audit-verify"], stdout=out, stderr=err, environ={})
            self.assertEqual(rc, EXIT_IO_FAILURE)
            self.assertIn(b"AUDIT_VERIFY_FAILED", out.getvalue())
            self.assertIn("audit verification failed", err.getvalue())


if __name__ == "__main__":
    unittest.main()
