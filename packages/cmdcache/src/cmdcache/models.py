"""Data models shared by the cache layers.

This module provides:
- CacheTarget: Protocol for the build unit identity handed to the cache
- BuildTarget: Concrete, immutable CacheTarget
- ArchiveEntry: One file, directory or link queued for archiving
- ArchiveSummary: Outcome of one archive write
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


@runtime_checkable
class CacheTarget(Protocol):
    """Protocol for the build unit a store or retrieve belongs to.

    The build system owns these objects; the cache only reads the label
    (for logging) and the output directory (to locate files).
    """

    @property
    def label(self) -> str:
        """Human-readable identity of the build unit."""
        ...

    @property
    def out_dir(self) -> Path:
        """Output directory, relative to the cache root or absolute within it."""
        ...


class BuildTarget(BaseModel):
    """Identity and output location of one build unit.

    Attributes:
        label: Build label, e.g. "//src/core:core".
        out_dir: Output directory of the unit.

    Example:
        >>> target = BuildTarget(label="//src/core:core", out_dir="out/gen/src/core")
        >>> target.out_dir
        PosixPath('out/gen/src/core')
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    label: str = Field(
        ...,
        min_length=1,
        description="Build label of the unit",
    )
    out_dir: Path = Field(
        ...,
        description="Directory holding the unit's outputs",
    )


@dataclass(frozen=True)
class ArchiveEntry:
    """One unit of the archive stream.

    Attributes:
        name: POSIX path stored in the archive, relative to the cache root.
        path: Absolute source path on disk.
        is_dir: True for directories.
    """

    name: str
    path: Path
    is_dir: bool


@dataclass
class ArchiveSummary:
    """Accumulated result of writing one archive.

    Per-entry failures are collected here instead of aborting the walk.
    """

    entries: int = 0
    errors: list[str] = field(default_factory=list)
    completed: bool = False

    @property
    def ok(self) -> bool:
        """True when every entry was archived and the stream was finished."""
        return self.completed and not self.errors

    def record_error(self, name: str, exc: BaseException) -> None:
        self.errors.append(f"{name}: {exc}")
