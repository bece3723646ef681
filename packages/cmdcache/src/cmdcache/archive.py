"""Streaming tar archive writer and reader.

This module provides:
- ArchiveWriter: Serializes build outputs into a tar stream on a sink
- ArchiveReader: Materializes a tar stream from a source under a directory
- ReadResult: (ok, error) outcome of one read

Both sides work strictly sequentially ("w|" / "r|" tarfile modes), so the
sink and source only need write()/read(); neither is ever seeked.
"""

from __future__ import annotations

import os
import shutil
import stat
import tarfile
from collections.abc import Iterable, Iterator
from pathlib import Path, PurePosixPath
from typing import IO, TYPE_CHECKING, Any, NamedTuple

import structlog

from cmdcache.errors import ArchiveError, CmdCacheError
from cmdcache.models import ArchiveEntry, ArchiveSummary
from cmdcache.walk import walk

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

logger = structlog.get_logger(__name__)

# Bytes of recent input kept to validate the end-of-archive marker
_TRAILER_WINDOW = 4 * tarfile.RECORDSIZE
_END_MARKER_SIZE = 2 * tarfile.BLOCKSIZE
_DRAIN_CHUNK = tarfile.RECORDSIZE


class ReadResult(NamedTuple):
    """Outcome of ArchiveReader.read()."""

    ok: bool
    error: BaseException | None


class ArchiveWriter:
    """Writes a set of outputs as a tar stream.

    Entry names are relative to ``base`` (the cache root), so a reader
    rooted at the same directory restores files to where they came from.
    Headers are normalised: zero mtime, zero uid/gid and empty owner
    names, mode bits preserved.

    Example:
        >>> writer = ArchiveWriter(base=Path("/repo"))
        >>> with open("out.tar", "wb") as sink:
        ...     summary = writer.write(sink, Path("plz-out/gen/pkg"), ["lib.so"])
    """

    def __init__(self, base: Path | str, *, logger: BoundLogger | None = None) -> None:
        self._base = Path(os.path.abspath(base))
        self._log = logger or structlog.get_logger(__name__)

    @property
    def base(self) -> Path:
        return self._base

    def write(
        self,
        sink: IO[bytes] | Any,
        root_dir: Path | str,
        relative_paths: Iterable[str | Path],
    ) -> ArchiveSummary:
        """Archive every path (recursively) below root_dir into sink.

        Unreadable or missing outputs are logged, recorded in the summary
        and skipped. A failing sink aborts the archive without writing the
        end-of-archive marker. The sink is closed on every path.

        Args:
            sink: Binary writable; closed when this returns.
            root_dir: Output directory, relative to base or absolute.
            relative_paths: Outputs below root_dir.

        Returns:
            ArchiveSummary with entry count and collected errors.
        """
        summary = ArchiveSummary()
        guarded = _GuardedSink(sink)
        try:
            tar = tarfile.open(fileobj=guarded, mode="w|", format=tarfile.PAX_FORMAT)
            for entry in self.iter_entries(root_dir, relative_paths, summary):
                self._add(tar, entry, summary)
            tar.close()
            guarded.flush()
            summary.completed = True
        except (OSError, tarfile.TarError, CmdCacheError) as exc:
            # Stop touching the sink; a half-written entry must not be
            # followed by an end marker.
            guarded.abandon()
            summary.record_error("<archive>", exc)
            self._log.warning(
                "archive_write_aborted",
                error=str(exc),
                entries=summary.entries,
            )
        finally:
            _close_sink(sink, self._log)

        self._log.debug(
            "archive_written",
            entries=summary.entries,
            errors=len(summary.errors),
            completed=summary.completed,
        )
        return summary

    def iter_entries(
        self,
        root_dir: Path | str,
        relative_paths: Iterable[str | Path],
        summary: ArchiveSummary,
    ) -> Iterator[ArchiveEntry]:
        """Enumerate archive entries, recording enumeration failures.

        Yields:
            ArchiveEntry for every walked path that maps below base.
        """
        root = self._base / root_dir

        def on_error(path: Path, exc: OSError) -> None:
            self._log.warning("archive_entry_unreadable", path=str(path), error=str(exc))
            summary.record_error(str(path), exc)

        for rel in relative_paths:
            top = Path(os.path.normpath(root / rel))
            for path, is_dir in walk(top, on_error):
                try:
                    name = path.relative_to(self._base).as_posix()
                except ValueError:
                    exc = ArchiveError("output is outside the cache root", entry=str(path))
                    self._log.warning("archive_entry_outside_root", path=str(path))
                    summary.record_error(str(path), exc)
                    continue
                yield ArchiveEntry(name=name, path=path, is_dir=is_dir)

    def _add(self, tar: tarfile.TarFile, entry: ArchiveEntry, summary: ArchiveSummary) -> None:
        try:
            info, source = self._prepare(entry)
        except (OSError, ArchiveError) as exc:
            self._log.warning("archive_entry_skipped", entry=entry.name, error=str(exc))
            summary.record_error(entry.name, exc)
            return

        if source is None:
            tar.addfile(info)
        else:
            with source:
                tar.addfile(info, source)
        summary.entries += 1

    def _prepare(self, entry: ArchiveEntry) -> tuple[tarfile.TarInfo, IO[bytes] | None]:
        """Build the header, opening regular files before anything is written."""
        st = os.lstat(entry.path)
        info = tarfile.TarInfo(entry.name)
        info.mode = stat.S_IMODE(st.st_mode)
        info.mtime = 0
        info.uid = info.gid = 0
        info.uname = info.gname = ""

        if stat.S_ISDIR(st.st_mode):
            info.type = tarfile.DIRTYPE
            return info, None
        if stat.S_ISLNK(st.st_mode):
            info.type = tarfile.SYMTYPE
            info.linkname = os.readlink(entry.path)
            return info, None
        if not stat.S_ISREG(st.st_mode):
            raise ArchiveError("unsupported file type", entry=entry.name)

        source = open(entry.path, "rb")  # noqa: SIM115 - closed by _add
        try:
            info.size = os.fstat(source.fileno()).st_size
        except OSError:
            source.close()
            raise
        return info, source


class ArchiveReader:
    """Materializes a tar stream below a destination directory.

    Example:
        >>> reader = ArchiveReader(Path("/repo"))
        >>> with open("out.tar", "rb") as source:
        ...     ok, error = reader.read(source)
    """

    def __init__(self, destination: Path | str, *, logger: BoundLogger | None = None) -> None:
        self._destination = Path(os.path.abspath(destination))
        self._log = logger or structlog.get_logger(__name__)

    @property
    def destination(self) -> Path:
        return self._destination

    def read(self, source: IO[bytes] | Any) -> ReadResult:
        """Consume source until the end-of-archive marker.

        Returns ok=True only when every entry was materialized and the
        stream ended with a proper end-of-archive marker. On failure the
        source is closed so a producer blocked on it gives up.

        Args:
            source: Binary readable (file, pipe, or PipeReader).

        Returns:
            ReadResult(ok, error).
        """
        tracked = _TrackedSource(source)
        entries = 0
        try:
            with tarfile.open(fileobj=tracked, mode="r|") as tar:
                for member in tar:
                    self._extract(tar, member)
                    entries += 1
                end = tar.offset
            if not tracked.has_end_marker(end):
                raise ArchiveError("archive ended without an end-of-archive marker")
        except (tarfile.TarError, OSError, CmdCacheError) as exc:
            self._log.debug("archive_read_failed", error=str(exc), entries=entries)
            _close_source(source)
            return ReadResult(False, exc)

        tracked.drain(self._log)
        self._log.debug("archive_read", entries=entries)
        return ReadResult(True, None)

    def _extract(self, tar: tarfile.TarFile, member: tarfile.TarInfo) -> None:
        target = self._destination / _check_name(member.name)

        if member.isdir():
            self._ensure_inside(target)
            target.mkdir(parents=True, exist_ok=True)
            return

        if not (member.isreg() or member.issym()):
            self._log.debug("archive_entry_ignored", entry=member.name, type=member.type)
            return

        # Checked before mkdir; realpath follows links in the existing prefix.
        self._ensure_inside(target.parent)
        target.parent.mkdir(parents=True, exist_ok=True)
        _remove_existing(target)

        if member.issym():
            os.symlink(member.linkname, target)
            return

        data = tar.extractfile(member)
        if data is None:
            raise ArchiveError("no data for regular file", entry=member.name)
        with target.open("wb") as out:
            shutil.copyfileobj(data, out)
        os.chmod(target, member.mode & 0o7777)

    def _ensure_inside(self, path: Path) -> None:
        real = os.path.realpath(path)
        root = os.path.realpath(self._destination)
        if real != root and not real.startswith(root + os.sep):
            raise ArchiveError("entry resolves outside the destination", entry=str(path))


def _check_name(name: str) -> Path:
    """Validate an entry name and make it relative."""
    pure = PurePosixPath(name)
    if pure.is_absolute():
        raise ArchiveError("absolute entry name", entry=name)
    parts = [p for p in pure.parts if p not in ("", ".")]
    if ".." in parts:
        raise ArchiveError("entry name escapes the destination", entry=name)
    return Path(*parts) if parts else Path()


def _remove_existing(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _close_sink(sink: Any, log: BoundLogger) -> None:
    try:
        sink.close()
    except OSError as exc:
        log.debug("archive_sink_close_failed", error=str(exc))


def _close_source(source: Any) -> None:
    close = getattr(source, "close", None)
    if close is None:
        return
    try:
        close()
    except OSError as exc:
        logger.debug("archive_source_close_failed", error=str(exc))


class _GuardedSink:
    """Write-through wrapper that can be cut off after a failure.

    tarfile flushes its internal buffer when collected; once abandoned,
    those late writes are dropped instead of reaching the real sink.
    """

    def __init__(self, sink: Any) -> None:
        self._sink = sink
        self._abandoned = False

    def abandon(self) -> None:
        self._abandoned = True

    def write(self, data: bytes) -> int:
        if self._abandoned:
            return len(data)
        result = self._sink.write(data)
        return len(data) if result is None else result

    def flush(self) -> None:
        if not self._abandoned and hasattr(self._sink, "flush"):
            self._sink.flush()


class _TrackedSource:
    """Read-through wrapper remembering the most recent bytes.

    tarfile stops at the first zero block without checking what follows,
    and treats a stream cut at a header boundary as a normal end. The
    window lets the reader confirm both zero blocks actually arrived.
    """

    def __init__(self, source: Any) -> None:
        self._source = source
        self._window = bytearray()
        self._window_start = 0
        self._consumed = 0
        self._eof = False

    def read(self, size: int = -1) -> bytes:
        data = self._source.read(size)
        if not data:
            self._eof = True
            return b""
        self._window += data
        self._consumed += len(data)
        excess = len(self._window) - _TRAILER_WINDOW
        if excess > 0:
            del self._window[:excess]
            self._window_start += excess
        return data

    def has_end_marker(self, offset: int) -> bool:
        need = offset + _END_MARKER_SIZE
        while self._consumed < need and not self._eof:
            self.read(need - self._consumed)
        if offset < self._window_start or self._consumed < need:
            return False
        marker = self._window[offset - self._window_start : need - self._window_start]
        return not any(marker)

    def drain(self, log: BoundLogger) -> None:
        """Consume trailing record padding so the producer can finish."""
        try:
            while not self._eof:
                self.read(_DRAIN_CHUNK)
        except (OSError, CmdCacheError) as exc:
            log.debug("archive_drain_interrupted", error=str(exc))
