"""Deterministic file-system walk used to enumerate build outputs.

Yields the starting path first, then every descendant, parents before
children and siblings in name order. Symbolic links are reported as
non-directories and never followed.
"""

from __future__ import annotations

import os
import stat
from collections.abc import Callable, Iterator
from pathlib import Path

WalkErrorHandler = Callable[[Path, OSError], None]


def walk(top: Path | str, on_error: WalkErrorHandler | None = None) -> Iterator[tuple[Path, bool]]:
    """Walk a file or directory tree.

    Args:
        top: File or directory to start from.
        on_error: Called with the path and the error when a path cannot be
            inspected or a directory cannot be listed; that subtree is
            skipped and the walk continues. Without a handler the error
            is raised.

    Yields:
        (path, is_dir) tuples.

    Example:
        >>> for path, is_dir in walk(Path("out/gen/pkg")):
        ...     print(path, is_dir)
    """
    top = Path(top)
    try:
        mode = os.lstat(top).st_mode
    except OSError as exc:
        _report(on_error, top, exc)
        return

    if not stat.S_ISDIR(mode):
        yield top, False
        return

    yield top, True

    try:
        with os.scandir(top) as it:
            children = sorted(entry.name for entry in it)
    except OSError as exc:
        _report(on_error, top, exc)
        return

    for name in children:
        yield from walk(top / name, on_error)


def _report(on_error: WalkErrorHandler | None, path: Path, exc: OSError) -> None:
    if on_error is None:
        raise exc
    on_error(path, exc)
