from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

import jsonschema

from castore.audit.record import AuditRecord, compute_record_hash, record_body_of

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "audit_record.schema.json"


@dataclass(frozen=True)
class AuditVerification:
    records_checked: int
    errors: list[str]

    @property
    def ok(self) -> bool:
        return not self.errors


@lru_cache(maxsize=1)
def _load_audit_schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def verify_audit_records(records: Iterable[AuditRecord]) -> AuditVerification:
    """Check schema conformance, id ordering, and the hash chain of a full audit log."""

    validator = jsonschema.Draft202012Validator(_load_audit_schema())

    errors: list[str] = []
    checked = 0
    prev_id: Optional[int] = None
    prev_hash: Optional[str] = None

    for rec in records:
        checked += 1
        where = f"record {rec.id}"

        for err in sorted(validator.iter_errors(rec.to_dict()), key=lambda e: list(e.path)):
            loc = ".".join(str(p) for p in err.path) or "<root>"
            errors.append(f"{where}: schema validation failed at {loc}: {err.message}")

        if prev_id is not None and rec.id <= prev_id:
            errors.append(f"{where}: id does not increase (previous {prev_id})")
        prev_id = rec.id

        if rec.prev_hash != prev_hash:
            errors.append(f"{where}: prev_hash mismatch: {rec.prev_hash} != {prev_hash}")

        expected = compute_record_hash(record_body_of(rec))
        if rec.record_hash != expected:
            errors.append(f"{where}: record_hash mismatch: {rec.record_hash} != {expected}")
        prev_hash = rec.record_hash

    return AuditVerification(records_checked=checked, errors=errors)
