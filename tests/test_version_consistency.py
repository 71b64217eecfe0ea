from __future__ import annotations

import re
import unittest
from pathlib import Path

from castore.version import CASTORE_VERSION


class TestVersionConsistency(unittest.TestCase):
    def test_version_matches_pyproject(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        semver_re = re.compile(
            r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
        )
        self.assertRegex(CASTORE_VERSION, semver_re)

        pyproject = (repo_root / "pyproject.toml").read_text(encoding="utf-8")
        m = re.search(r'^version\s*=\s*"([^"]+)"', pyproject, flags=re.MULTILINE)
        self.assertIsNotNone(m, "version not found in pyproject.toml")
        assert m is not None
        self.assertEqual(CASTORE_VERSION, m.group(1))


if __name__ == "__main__":
    unittest.main()
