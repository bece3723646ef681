"""Shared pytest fixtures for cmdcache tests.

Provides a small output tree below a temporary cache root and helpers
for producing archive bytes in memory.
"""

from __future__ import annotations

import io
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from cmdcache.archive import ArchiveWriter
from cmdcache.models import ArchiveSummary, BuildTarget

OUT_DIR = Path("out/gen/pkg")


class KeepOpenBuffer(io.BytesIO):
    """BytesIO that survives close() so tests can inspect what was written."""

    def close(self) -> None:
        pass


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    """Return a cache root holding one target's outputs.

    Layout below ``out/gen/pkg``::

        a.txt
        c.txt
        sub/b.bin
        sub/deeper/d.txt
    """
    root = tmp_path / "root"
    out = root / OUT_DIR
    (out / "sub" / "deeper").mkdir(parents=True)
    (out / "a.txt").write_text("alpha\n")
    (out / "c.txt").write_text("gamma\n")
    (out / "sub" / "b.bin").write_bytes(bytes(range(256)) * 40)
    (out / "sub" / "deeper" / "d.txt").write_text("delta\n")
    (out / "a.txt").chmod(0o640)
    return root


@pytest.fixture
def target() -> BuildTarget:
    """Return the target whose outputs live in the cache_root tree."""
    return BuildTarget(label="//pkg:pkg", out_dir=OUT_DIR)


@pytest.fixture
def make_archive(cache_root: Path) -> Callable[..., tuple[bytes, ArchiveSummary]]:
    """Factory fixture writing an archive of cache_root outputs to memory.

    Returns:
        Function taking the relative paths (and optionally another root
        and out_dir) and returning (archive bytes, summary).
    """

    def _make(
        paths: Iterable[str],
        *,
        root: Path | None = None,
        out_dir: Path = OUT_DIR,
    ) -> tuple[bytes, ArchiveSummary]:
        buffer = KeepOpenBuffer()
        summary = ArchiveWriter(root or cache_root).write(buffer, out_dir, paths)
        return buffer.getvalue(), summary

    return _make


@pytest.fixture
def tree_contents() -> Callable[[Path], dict[str, bytes | None]]:
    """Return a function mapping every path below a root to its bytes.

    Directories map to None.
    """

    def _contents(root: Path) -> dict[str, bytes | None]:
        contents: dict[str, bytes | None] = {}
        for path in sorted(root.rglob("*")):
            name = path.relative_to(root).as_posix()
            contents[name] = None if path.is_dir() else path.read_bytes()
        return contents

    return _contents
