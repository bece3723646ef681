"""Command-driven artifact cache backend.

This module provides:
- ArtifactCache: Protocol every cache backend of the build system implements
- CommandCache: Backend delegating storage to external shell commands

All persistent state lives in whatever the commands talk to, so cleaning
and shutdown are no-ops here.
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Protocol, runtime_checkable

from cmdcache.archive import ArchiveReader, ArchiveWriter
from cmdcache.bridge import ProcessBridge
from cmdcache.config import CommandCacheConfig
from cmdcache.keys import encode_key
from cmdcache.models import ArchiveSummary, CacheTarget
from cmdcache.observability import cache_operation, get_logger


@runtime_checkable
class ArtifactCache(Protocol):
    """Protocol defining the cache backend interface.

    The build system calls store() after a unit built successfully and
    retrieve() before building it. Neither may fail the build: problems
    surface as a skipped store or a miss.
    """

    def store(self, target: CacheTarget, key: bytes, files: Sequence[str]) -> None:
        """Store the given outputs of target under key (best effort)."""
        ...

    def retrieve(self, target: CacheTarget, key: bytes, files: Sequence[str] | None = None) -> bool:
        """Restore outputs stored under key; True on a hit."""
        ...

    def clean(self, target: CacheTarget) -> None:
        """Remove cached artifacts of target."""
        ...

    def clean_all(self) -> None:
        """Remove every cached artifact."""
        ...

    def shutdown(self) -> None:
        """Release backend resources."""
        ...


class CommandCache:
    """Cache backend that pipes tar archives through external commands.

    Attributes:
        config: Command templates and execution policy.
        root: Directory archive entry names are relative to; outputs are
            restored below it.

    Example:
        >>> cache = CommandCache(
        ...     CommandCacheConfig(
        ...         store_command="cat > /tmp/cache/$CACHE_KEY.tar",
        ...         retrieve_command="cat /tmp/cache/$CACHE_KEY.tar",
        ...     ),
        ...     root=Path("/repo"),
        ... )
        >>> cache.store(target, key, ["lib.so"])
        >>> cache.retrieve(target, key)
        True
    """

    def __init__(
        self,
        config: CommandCacheConfig,
        *,
        root: Path | str | None = None,
        bridge: ProcessBridge | None = None,
    ) -> None:
        self.config = config
        self.root = Path(os.path.abspath(root if root is not None else os.getcwd()))
        self._log = get_logger()
        self._bridge = bridge or ProcessBridge.from_config(config, logger=self._log)

    def store(self, target: CacheTarget, key: bytes, files: Sequence[str]) -> None:
        """Archive files below target.out_dir and hand them to the store command.

        No-op without a store command. Never raises; failures are logged.
        """
        if not self.config.store_enabled:
            return

        log = self._log.bind(label=target.label, key=encode_key(key))
        log.debug("store_started", files=len(files))
        writer = ArchiveWriter(self.root, logger=log)
        summaries: list[ArchiveSummary] = []

        def feed(sink: IO[bytes]) -> None:
            summaries.append(writer.write(sink, target.out_dir, files))

        try:
            with cache_operation("store", label=target.label, key=key) as span:
                outcome = self._bridge.run_store(
                    self.config.store_command,
                    key,
                    feed,
                    label=target.label,
                )
                span.set_attribute("cache.store.ok", outcome.ok)
        except Exception as exc:
            log.error("store_failed", error=str(exc), exc_info=True)
            return

        summary = summaries[0] if summaries else ArchiveSummary()
        log.debug(
            "store_finished",
            command_ok=outcome.ok,
            entries=summary.entries,
            errors=len(summary.errors),
        )

    def retrieve(
        self,
        target: CacheTarget,
        key: bytes,
        files: Sequence[str] | None = None,
    ) -> bool:
        """Restore artifacts for key below the cache root.

        The file list is not consulted; the archive decides what is
        restored. Returns True only when the archive decoded cleanly and
        the retrieve command exited successfully.
        """
        log = self._log.bind(label=target.label, key=encode_key(key))
        log.debug("retrieve_started")
        reader = ArchiveReader(self.root, logger=log)

        try:
            with cache_operation("retrieve", label=target.label, key=key) as span:
                hit = self._bridge.run_retrieve(
                    self.config.retrieve_command,
                    key,
                    reader.read,
                    label=target.label,
                )
                span.set_attribute("cache.hit", hit)
        except Exception as exc:
            log.error("retrieve_failed", error=str(exc), exc_info=True)
            return False

        log.debug("retrieve_hit" if hit else "retrieve_miss")
        return hit

    def clean(self, target: CacheTarget) -> None:
        """Nothing to clean locally; the external store owns all state."""

    def clean_all(self) -> None:
        """Nothing to clean locally; the external store owns all state."""

    def shutdown(self) -> None:
        """No resources are held between calls."""
