from __future__ import annotations

import hashlib
import re

from castore.errors import InvalidArgumentError

DIGEST_HEX_LEN = 64

_DIGEST_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_prefixed(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def is_digest(value: str) -> bool:
    return isinstance(value, str) and _DIGEST_RE.match(value) is not None


def normalize_digest(value: str) -> str:
    """Validate a caller-supplied digest and return it in canonical lowercase form."""

    if not is_digest(value):
        raise InvalidArgumentError(f"invalid digest: {value!r} (expected {DIGEST_HEX_LEN} hex characters)")
    return value.lower()
