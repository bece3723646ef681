"""Shared test fixtures for cmdcache-cli tests.

Provides a CliRunner and a cache root with one target's outputs.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

OUT_DIR = "out/lib"


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click test runner.

    Returns:
        CliRunner instance for testing CLI commands.
    """
    return CliRunner()


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    """Return a cache root holding ``out/lib/lib.so`` and ``out/lib/include/lib.h``."""
    root = tmp_path / "root"
    (root / OUT_DIR / "include").mkdir(parents=True)
    (root / OUT_DIR / "lib.so").write_bytes(b"\x7fELF" + bytes(2048))
    (root / OUT_DIR / "include" / "lib.h").write_text("int lib(void);\n")
    return root


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a cache.yaml whose commands keep archives in tmp_path/artifacts."""
    artifacts = tmp_path / "artifacts"
    artifacts.mkdir()
    path = tmp_path / "cache.yaml"
    path.write_text(
        "cache:\n"
        f"  store_command: cat > '{artifacts}'/$CACHE_KEY.tar\n"
        f"  retrieve_command: cat '{artifacts}'/$CACHE_KEY.tar\n"
        "  timeout_seconds: 30\n"
    )
    return path
