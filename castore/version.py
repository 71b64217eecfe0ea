from __future__ import annotations

CASTORE_VERSION = "0.1.0"
