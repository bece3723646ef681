"""Integration tests for ProcessBridge and RetrieveCall.

These tests spawn real commands through ``sh -c``. Run them with:

    pytest -m integration packages/cmdcache/tests/integration/
"""

from __future__ import annotations

import io
import os
import shlex
import shutil
import tarfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any

import pytest

from cmdcache.archive import ArchiveReader
from cmdcache.bridge import ProcessBridge, RetrieveCall, RetrieveState
from cmdcache.keys import encode_key
from cmdcache.pipe import PipeReader

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("sh") is None, reason="requires a POSIX shell"),
]

KEY = b"\x12\x34\xab"
# Upper bound for anything that must not hang
DEADLINE = 20.0
# Outlive DEADLINE unless the whole process group is killed
SLOW_COMMANDS = ["exec sleep 30", "sleep 30; true", "sleep 30 | cat"]
FD_DIR = "/proc/self/fd"


def run_with_deadline(func: Callable[[], Any]) -> Any:
    """Run func on a thread and fail the test if it does not finish in time."""
    result: list[Any] = []
    thread = threading.Thread(target=lambda: result.append(func()), daemon=True)
    thread.start()
    thread.join(DEADLINE)
    assert not thread.is_alive(), "operation did not finish in time"
    return result[0]


def write_bytes(payload: bytes) -> Callable[[IO[bytes]], None]:
    def feed(sink: IO[bytes]) -> None:
        sink.write(payload)

    return feed


def empty_archive() -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w"):
        pass
    return buffer.getvalue()


def open_fd_count() -> int:
    return len(os.listdir(FD_DIR))


# =============================================================================
# Store
# =============================================================================


class TestRunStore:
    """Tests for ProcessBridge.run_store()."""

    def test_stdin_receives_feed_and_key(self, tmp_path: Path) -> None:
        """The command reads the fed bytes and sees CACHE_KEY."""
        command = f"cat > {shlex.quote(str(tmp_path))}/$CACHE_KEY.bin"

        outcome = ProcessBridge().run_store(command, KEY, write_bytes(b"payload"))

        assert outcome.ok
        assert outcome.returncode == 0
        assert (tmp_path / f"{encode_key(KEY)}.bin").read_bytes() == b"payload"

    def test_combined_output_captured(self) -> None:
        """stdout and stderr of the store command are collected together."""
        outcome = ProcessBridge().run_store(
            "echo to-stdout; echo to-stderr >&2; cat > /dev/null",
            KEY,
            write_bytes(b"x"),
        )
        assert b"to-stdout" in outcome.output
        assert b"to-stderr" in outcome.output

    def test_nonzero_exit_reported(self) -> None:
        """A failing command yields a failed outcome, not an exception."""
        outcome = ProcessBridge().run_store("cat > /dev/null; exit 3", KEY, write_bytes(b"x"))
        assert outcome.returncode == 3
        assert not outcome.ok
        assert outcome.as_error().returncode == 3

    def test_command_ignoring_stdin(self) -> None:
        """A command that exits without reading does not wedge the feed."""
        outcome = run_with_deadline(
            lambda: ProcessBridge().run_store("exit 0", KEY, write_bytes(b"x" * (4 << 20)))
        )
        assert outcome.ok

    def test_feed_exception_contained(self, tmp_path: Path) -> None:
        """An exception in the feed closes stdin and is not propagated."""

        def feed(sink: IO[bytes]) -> None:
            sink.write(b"partial")
            raise RuntimeError("feed exploded")

        command = f"cat > {shlex.quote(str(tmp_path / 'out.bin'))}"
        outcome = run_with_deadline(lambda: ProcessBridge().run_store(command, KEY, feed))

        assert outcome.ok
        assert (tmp_path / "out.bin").read_bytes() == b"partial"

    def test_spawn_failure(self, tmp_path: Path) -> None:
        """A missing shell is reported in the outcome and the feed never runs."""
        calls: list[IO[bytes]] = []
        bridge = ProcessBridge(shell=str(tmp_path / "no-such-shell"))

        outcome = bridge.run_store("cat", KEY, calls.append)

        assert outcome.returncode is None
        assert outcome.error
        assert not outcome.ok
        assert calls == []

    @pytest.mark.skipif(not os.path.isdir(FD_DIR), reason="needs /proc/self/fd")
    def test_invalid_command_closes_pipe(self) -> None:
        """A command Popen refuses is an outcome and leaves no descriptor open."""
        calls: list[IO[bytes]] = []
        before = open_fd_count()

        outcome = ProcessBridge().run_store("true\x00", KEY, calls.append)

        assert outcome.returncode is None
        assert outcome.error
        assert calls == []
        assert open_fd_count() == before

    def test_environment_inherited(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """By default the parent environment reaches the command."""
        monkeypatch.setenv("CMDCACHE_MARKER", "inherited")
        outcome = ProcessBridge().run_store(
            'printf "%s %s" "$CACHE_KEY" "${CMDCACHE_MARKER:-unset}"',
            KEY,
            write_bytes(b""),
        )
        assert outcome.output == f"{encode_key(KEY)} inherited".encode()

    def test_environment_isolated(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """With inheritance off only CACHE_KEY is passed."""
        monkeypatch.setenv("CMDCACHE_MARKER", "inherited")
        outcome = ProcessBridge(inherit_environment=False).run_store(
            'printf "%s %s" "$CACHE_KEY" "${CMDCACHE_MARKER:-unset}"',
            KEY,
            write_bytes(b""),
        )
        assert outcome.output == f"{encode_key(KEY)} unset".encode()

    @pytest.mark.parametrize("command", SLOW_COMMANDS)
    def test_timeout_kills_command(self, command: str) -> None:
        """A command exceeding its budget is killed along with its children."""
        bridge = ProcessBridge(timeout_seconds=0.5)
        outcome = run_with_deadline(lambda: bridge.run_store(command, KEY, write_bytes(b"")))
        assert outcome.timed_out
        assert not outcome.ok


# =============================================================================
# Retrieve
# =============================================================================


class TestRunRetrieve:
    """Tests for ProcessBridge.run_retrieve() and RetrieveCall."""

    @pytest.fixture
    def archive_file(self, tmp_path: Path, make_archive: Callable[..., Any]) -> Path:
        """Write an archive of the cache_root outputs named after KEY."""
        data, summary = make_archive(["a.txt", "c.txt", "sub"])
        assert summary.ok
        path = tmp_path / f"{encode_key(KEY)}.tar"
        path.write_bytes(data)
        return path

    def test_hit(
        self,
        tmp_path: Path,
        cache_root: Path,
        archive_file: Path,
        tree_contents: Callable[[Path], dict[str, bytes | None]],
    ) -> None:
        """A complete archive and a zero exit is a hit."""
        destination = tmp_path / "restored"
        command = f"cat {shlex.quote(str(archive_file.parent))}/$CACHE_KEY.tar"

        hit = ProcessBridge().run_retrieve(command, KEY, ArchiveReader(destination).read)

        assert hit is True
        assert tree_contents(destination) == tree_contents(cache_root)

    def test_state_and_outcome(self, tmp_path: Path, archive_file: Path) -> None:
        """A finished call is JOINED with stderr captured."""
        call = RetrieveCall(
            ProcessBridge(),
            f"echo note >&2; cat {shlex.quote(str(archive_file))}",
            KEY,
            ArchiveReader(tmp_path / "restored").read,
        )
        assert call.state is RetrieveState.NOT_STARTED

        assert call.run() is True
        assert call.state is RetrieveState.JOINED
        assert call.archive_ok
        assert call.outcome is not None
        assert call.outcome.output == b"note\n"

        with pytest.raises(RuntimeError):
            call.run()

    def test_nonzero_exit_after_valid_archive(self, tmp_path: Path) -> None:
        """A well-formed archive does not make up for a failing command."""
        path = tmp_path / "empty.tar"
        path.write_bytes(empty_archive())
        call = RetrieveCall(
            ProcessBridge(),
            f"cat {shlex.quote(str(path))}; exit 1",
            KEY,
            ArchiveReader(tmp_path / "restored").read,
        )

        assert call.run() is False
        assert call.archive_ok is True
        assert call.outcome is not None
        assert call.outcome.returncode == 1

    def test_truncated_stream_with_zero_exit(self, tmp_path: Path, archive_file: Path) -> None:
        """A stream cut mid-entry is a miss even when the command succeeds."""
        command = f"head -c 1500 {shlex.quote(str(archive_file))}"
        hit = ProcessBridge().run_retrieve(
            command, KEY, ArchiveReader(tmp_path / "restored").read
        )
        assert hit is False

    def test_no_output(self, tmp_path: Path) -> None:
        """A command exiting without output releases the reader promptly."""
        reader = ArchiveReader(tmp_path / "restored")
        hit = run_with_deadline(lambda: ProcessBridge().run_retrieve("exit 0", KEY, reader.read))
        assert hit is False

    def test_missing_archive(self, tmp_path: Path) -> None:
        """A retrieve command failing to find anything is a miss."""
        command = f"cat {shlex.quote(str(tmp_path))}/$CACHE_KEY.tar"
        hit = ProcessBridge().run_retrieve(
            command, KEY, ArchiveReader(tmp_path / "restored").read
        )
        assert hit is False

    def test_spawn_failure(self, tmp_path: Path) -> None:
        """A missing shell is a miss and the drain never runs."""
        calls: list[PipeReader] = []

        def drain(reader: PipeReader) -> tuple[bool, BaseException | None]:
            calls.append(reader)
            return True, None

        call = RetrieveCall(ProcessBridge(shell=str(tmp_path / "no-such-shell")), "cat", KEY, drain)

        assert call.run() is False
        assert call.state is RetrieveState.JOINED
        assert calls == []

    @pytest.mark.skipif(not os.path.isdir(FD_DIR), reason="needs /proc/self/fd")
    def test_invalid_command_closes_pipe(self) -> None:
        """A command Popen refuses is a miss and leaves no descriptor open."""
        calls: list[PipeReader] = []

        def drain(reader: PipeReader) -> tuple[bool, BaseException | None]:
            calls.append(reader)
            return True, None

        before = open_fd_count()
        call = RetrieveCall(ProcessBridge(), "true\x00", KEY, drain)

        assert run_with_deadline(call.run) is False
        assert call.state is RetrieveState.JOINED
        assert calls == []
        assert open_fd_count() == before

    def test_failing_drain_stops_producer(self, tmp_path: Path) -> None:
        """When decoding fails early, a command with lots of output still ends."""
        big = tmp_path / "big.bin"
        big.write_bytes(os.urandom(4 << 20))

        def drain(reader: PipeReader) -> tuple[bool, BaseException | None]:
            reader.read(10)
            raise ValueError("not interested")

        bridge = ProcessBridge(pipe_capacity=4096)
        hit = run_with_deadline(
            lambda: bridge.run_retrieve(f"cat {shlex.quote(str(big))}", KEY, drain)
        )
        assert hit is False

    @pytest.mark.parametrize("command", SLOW_COMMANDS)
    def test_timeout_kills_command(self, tmp_path: Path, command: str) -> None:
        """A command exceeding its budget is killed with its children; a miss."""
        bridge = ProcessBridge(timeout_seconds=0.5)
        reader = ArchiveReader(tmp_path / "restored")
        hit = run_with_deadline(lambda: bridge.run_retrieve(command, KEY, reader.read))
        assert hit is False
