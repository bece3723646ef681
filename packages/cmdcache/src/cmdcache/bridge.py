"""Bridge between external cache commands and in-process archive streams.

This module provides:
- ProcessBridge: Spawns store/retrieve commands and wires their standard
  streams to an archive producer or consumer
- RetrieveCall: One retrieve invocation and its lifecycle state
- CommandOutcome: Termination outcome of one command

Threads per call:
    store:    caller (collects output, waits) + feed (writes the archive)
    retrieve: caller (decodes the archive) + relay (copies the command's
              stdout into a StreamPipe) + wait (collects stderr, waits for
              exit, then closes the StreamPipe)
"""

from __future__ import annotations

import enum
import os
import signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Any

from cmdcache.errors import CommandError, PipeClosedError
from cmdcache.keys import encode_key, key_environment
from cmdcache.observability import get_logger
from cmdcache.pipe import DEFAULT_CAPACITY, PipeReader, StreamPipe

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from cmdcache.config import CommandCacheConfig

# Writes an archive into the sink; must close the sink when done.
Feed = Callable[[IO[bytes]], Any]
# Decodes an archive from the reader; returns (ok, error).
Drain = Callable[[PipeReader], tuple[bool, BaseException | None]]

_RELAY_CHUNK = 64 * 1024
# How long a killed command's stdout relay may linger before the
# StreamPipe is closed underneath it.
_RELAY_GRACE_SECONDS = 5.0


class RetrieveState(enum.Enum):
    """Lifecycle of a RetrieveCall.

    Attributes:
        NOT_STARTED: Nothing spawned yet
        SPAWNED: Command running, threads not yet started
        STREAMING: Caller decoding while the wait thread runs
        WAITING: Decode finished, joining the wait thread
        JOINED: Both decode and exit wait finished; result is final
    """

    NOT_STARTED = "not_started"
    SPAWNED = "spawned"
    STREAMING = "streaming"
    WAITING = "waiting"
    JOINED = "joined"


@dataclass(frozen=True)
class CommandOutcome:
    """How one external command invocation ended.

    Attributes:
        command: Shell command string.
        returncode: Exit status; None when the command never started.
        output: Captured output (combined for store, stderr for retrieve).
        error: Spawn or wait failure description.
        timed_out: True when the command was killed for exceeding its budget.
    """

    command: str
    returncode: int | None
    output: bytes = b""
    error: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and self.error is None and not self.timed_out

    def as_error(self) -> CommandError:
        """Describe a failed outcome as a CommandError."""
        if self.timed_out:
            message = "command timed out"
        elif self.error:
            message = self.error
        else:
            message = "command exited with non-zero status"
        return CommandError(message, command=self.command, returncode=self.returncode)


class ProcessBridge:
    """Runs cache commands through a shell with CACHE_KEY in the environment.

    Attributes:
        shell: Shell executable (commands run as ``shell -c command``).
        timeout_seconds: Per-invocation time budget, None for unlimited.
        inherit_environment: Whether the parent environment is passed on.

    Example:
        >>> bridge = ProcessBridge()
        >>> outcome = bridge.run_store("cat > /tmp/a.tar", b"\\x01", feed)
        >>> hit = bridge.run_retrieve("cat /tmp/a.tar", b"\\x01", reader.read)
    """

    def __init__(
        self,
        *,
        shell: str = "sh",
        timeout_seconds: float | None = None,
        inherit_environment: bool = True,
        pipe_capacity: int = DEFAULT_CAPACITY,
        logger: BoundLogger | None = None,
    ) -> None:
        self.shell = shell
        self.timeout_seconds = timeout_seconds
        self.inherit_environment = inherit_environment
        self.pipe_capacity = pipe_capacity
        self._log = logger or get_logger()

    @classmethod
    def from_config(cls, config: CommandCacheConfig, **kwargs: Any) -> ProcessBridge:
        """Create a bridge using the execution settings of a cache config."""
        return cls(
            shell=config.shell,
            timeout_seconds=config.timeout_seconds,
            inherit_environment=config.inherit_environment,
            **kwargs,
        )

    def environment(self, key: bytes) -> dict[str, str]:
        """Environment for one invocation: optional parent env plus CACHE_KEY."""
        base = dict(os.environ) if self.inherit_environment else {}
        return key_environment(key, base)

    def spawn(self, command: str, key: bytes, **streams: Any) -> subprocess.Popen[bytes]:
        """Start ``shell -c command`` without waiting for it.

        The command leads its own process group so a timeout can kill the
        whole pipeline, not just the shell.

        Raises:
            OSError: If the shell cannot be executed.
            ValueError: If the command or environment contains a NUL byte.
        """
        return subprocess.Popen(  # noqa: S603 - commands come from trusted configuration
            [self.shell, "-c", command],
            env=self.environment(key),
            start_new_session=True,
            **streams,
        )

    def communicate(self, proc: subprocess.Popen[bytes]) -> tuple[bytes, bytes, bool]:
        """Collect captured streams and wait for exit, honouring the time budget.

        Returns:
            (stdout, stderr, timed_out); uncaptured streams come back empty.
        """
        try:
            stdout, stderr = proc.communicate(timeout=self.timeout_seconds)
            timed_out = False
        except subprocess.TimeoutExpired:
            _kill_group(proc)
            stdout, stderr = proc.communicate()
            timed_out = True
        return stdout or b"", stderr or b"", timed_out

    def run_store(
        self,
        command: str,
        key: bytes,
        feed: Feed,
        *,
        label: str | None = None,
    ) -> CommandOutcome:
        """Run the store command, streaming an archive into its stdin.

        The feed runs on its own thread and writes into the write end of
        an OS pipe whose read end is the command's stdin. Combined
        stdout+stderr is captured. Failures are logged, never raised.

        Args:
            command: Shell command reading an archive from stdin.
            key: Raw cache key.
            feed: Called with the pipe's write end; owns closing it.
            label: Build label, for log context.

        Returns:
            CommandOutcome of the command.
        """
        log = self._log.bind(key=encode_key(key))
        if label:
            log = log.bind(label=label)

        read_fd, write_fd = os.pipe()
        try:
            proc = self.spawn(
                command,
                key,
                stdin=read_fd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except (OSError, ValueError) as exc:
            os.close(write_fd)
            log.debug("store_command_spawn_failed", command=command, error=str(exc))
            return CommandOutcome(command=command, returncode=None, error=str(exc))
        finally:
            # On success the child holds its own copy as stdin.
            os.close(read_fd)

        sink = os.fdopen(write_fd, "wb")
        feeder = threading.Thread(
            target=self._run_feed,
            args=(feed, sink, log),
            name="cmdcache-store-feed",
            daemon=True,
        )
        feeder.start()
        try:
            output, _, timed_out = self.communicate(proc)
        finally:
            feeder.join()

        outcome = CommandOutcome(
            command=command,
            returncode=proc.returncode,
            output=output,
            timed_out=timed_out,
        )
        if not outcome.ok:
            log.debug(
                "store_command_failed",
                returncode=outcome.returncode,
                timed_out=outcome.timed_out,
                error=str(outcome.as_error()),
            )
        if output:
            log.info("store_command_output", output=_text(output))
        return outcome

    def run_retrieve(
        self,
        command: str,
        key: bytes,
        drain: Drain,
        *,
        label: str | None = None,
    ) -> bool:
        """Run the retrieve command, decoding its stdout as an archive.

        Returns:
            True only if the archive decoded cleanly AND the command exited 0.
        """
        return RetrieveCall(self, command, key, drain, label=label).run()

    def _run_feed(self, feed: Feed, sink: IO[bytes], log: BoundLogger) -> None:
        try:
            feed(sink)
        except Exception as exc:
            log.warning("store_feed_failed", error=str(exc))
        finally:
            _close_quietly(sink, log)


class RetrieveCall:
    """One retrieve invocation.

    NOT_STARTED -> SPAWNED -> STREAMING/WAITING -> JOINED. Decoding (caller
    thread) and the exit wait (wait thread) run concurrently; the result is
    only computed once both are done.

    Attributes:
        state: Current RetrieveState.
        outcome: CommandOutcome once the wait thread finished.
        archive_ok: Whether the archive decoded cleanly.
        archive_error: Decode failure, if any.
    """

    def __init__(
        self,
        bridge: ProcessBridge,
        command: str,
        key: bytes,
        drain: Drain,
        *,
        label: str | None = None,
    ) -> None:
        self._bridge = bridge
        self.command = command
        self.key = key
        self._drain = drain
        self._pipe = StreamPipe(bridge.pipe_capacity)
        self.state = RetrieveState.NOT_STARTED
        self.outcome: CommandOutcome | None = None
        self.archive_ok = False
        self.archive_error: BaseException | None = None
        self._log = bridge._log.bind(key=encode_key(key))
        if label:
            self._log = self._log.bind(label=label)

    @property
    def ok(self) -> bool:
        return (
            self.state is RetrieveState.JOINED
            and self.archive_ok
            and self.outcome is not None
            and self.outcome.ok
        )

    def run(self) -> bool:
        """Spawn the command, decode its output and wait for it to exit."""
        if self.state is not RetrieveState.NOT_STARTED:
            msg = f"retrieve call already run (state={self.state.value})"
            raise RuntimeError(msg)

        read_fd, write_fd = os.pipe()
        try:
            proc = self._bridge.spawn(
                self.command,
                self.key,
                stdin=subprocess.DEVNULL,
                stdout=write_fd,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            os.close(read_fd)
            self._log.debug("retrieve_command_spawn_failed", command=self.command, error=str(exc))
            self.outcome = CommandOutcome(command=self.command, returncode=None, error=str(exc))
            self._pipe.close()
            self.state = RetrieveState.JOINED
            return False
        finally:
            # The child holds its own copy as stdout; ours would keep EOF away.
            os.close(write_fd)

        self.state = RetrieveState.SPAWNED
        stdout = os.fdopen(read_fd, "rb", buffering=0)
        relay = threading.Thread(
            target=self._relay,
            args=(stdout,),
            name="cmdcache-retrieve-relay",
            daemon=True,
        )
        waiter = threading.Thread(
            target=self._wait,
            args=(proc, relay),
            name="cmdcache-retrieve-wait",
            daemon=True,
        )
        relay.start()
        waiter.start()

        self.state = RetrieveState.STREAMING
        try:
            self._decode()
        finally:
            self.state = RetrieveState.WAITING
            waiter.join()
        self.state = RetrieveState.JOINED

        if not self.archive_ok:
            self._log.debug("retrieve_archive_invalid", error=str(self.archive_error))
        return self.ok

    def _decode(self) -> None:
        try:
            ok, error = self._drain(self._pipe.reader)
        except Exception as exc:
            ok, error = False, exc
        self.archive_ok = bool(ok)
        self.archive_error = error
        if not ok:
            # Make a relay blocked on a full pipe give up.
            self._pipe.reader.close()

    def _relay(self, stdout: IO[bytes]) -> None:
        try:
            while chunk := stdout.read(_RELAY_CHUNK):
                self._pipe.writer.write(chunk)
        except PipeClosedError:
            self._log.debug("retrieve_relay_stopped")
        except OSError as exc:
            self._log.debug("retrieve_relay_failed", error=str(exc))
        finally:
            _close_quietly(stdout, self._log)

    def _wait(self, proc: subprocess.Popen[bytes], relay: threading.Thread) -> None:
        try:
            _, stderr, timed_out = self._bridge.communicate(proc)
            relay.join(_RELAY_GRACE_SECONDS if timed_out else None)
            self.outcome = CommandOutcome(
                command=self.command,
                returncode=proc.returncode,
                output=stderr,
                timed_out=timed_out,
            )
        except Exception as exc:
            self._log.warning("retrieve_wait_failed", error=str(exc))
            self.outcome = CommandOutcome(
                command=self.command,
                returncode=proc.returncode,
                error=str(exc),
            )
        finally:
            # Unblocks a reader still waiting for bytes that will never come.
            self._pipe.close()

        if not self.outcome.ok:
            self._log.debug(
                "retrieve_command_failed",
                returncode=self.outcome.returncode,
                timed_out=self.outcome.timed_out,
                error=str(self.outcome.as_error()),
            )
        if self.outcome.output:
            self._log.debug("retrieve_command_output", output=_text(self.outcome.output))


def _close_quietly(stream: IO[bytes], log: BoundLogger) -> None:
    try:
        stream.close()
    except OSError as exc:
        log.debug("stream_close_failed", error=str(exc))


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _kill_group(proc: subprocess.Popen[bytes]) -> None:
    """SIGKILL the command's process group; children may hold its pipes."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError:
        proc.kill()
