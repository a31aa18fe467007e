"""Safety tests to ensure the test suite doesn't touch production data.

These tests verify that running the test suite does NOT touch:
- ./data directory (app config)
- ./db directory (the tutoring database)

All tests MUST use temporary directories via pytest fixtures.
"""

import hashlib
import os
from pathlib import Path

import pytest


def _hash_directory(path: Path) -> str | None:
    """Hash directory structure, sizes and mtimes.

    Returns None if directory doesn't exist.
    """
    if not path.exists():
        return None

    hasher = hashlib.sha256()

    for root, dirs, files in os.walk(path):
        dirs.sort()
        files.sort()

        for filename in files:
            filepath = Path(root) / filename
            hasher.update(str(filepath.relative_to(path)).encode())
            stat = filepath.stat()
            hasher.update(str(stat.st_size).encode())
            hasher.update(str(int(stat.st_mtime)).encode())

    return hasher.hexdigest()


@pytest.mark.parametrize("directory", ["data", "db"])
class TestProductionDirectorySafety:
    """./data and ./db are never created or modified by the suite."""

    @pytest.fixture(scope="class")
    def state_before(self):
        return {name: _hash_directory(Path(name)) for name in ("data", "db")}

    def test_directory_untouched(self, directory, state_before):
        before = state_before[directory]
        after = _hash_directory(Path(directory))

        if before is None and after is not None:
            pytest.fail(
                f"./{directory} was created during the test run. "
                "All tests MUST use temporary directories."
            )
        if before != after:
            pytest.fail(
                f"./{directory} was modified during the test run. "
                "All tests MUST use temporary directories."
            )


class TestTestIsolation:
    """Meta-tests ensuring test modules use temp directories."""

    def test_no_default_database_path(self):
        """No test calls init_db() without an explicit temp path."""
        violations = []

        for test_file in sorted(Path("tests").rglob("test_*.py")):
            if test_file.name == "test_safety.py":
                continue
            content = test_file.read_text(encoding="utf-8")

            if "init_db()" in content:
                violations.append(f"{test_file}: Calls init_db() without explicit temp path")

            for literal in ('Path("db")', 'Path("data")'):
                if literal in content and "tmp_path" not in content:
                    violations.append(f"{test_file}: Uses {literal} without tmp_path")

        if violations:
            pytest.fail(
                "Test files may not be properly isolated:\n"
                + "\n".join(f"  - {v}" for v in violations)
            )
