"""Custom exceptions for cmdcache.

This module defines the exception hierarchy:
- CmdCacheError (base)
- ConfigurationError
- ArchiveError
- CommandError
- PipeClosedError

None of these escape CommandCache.store() or CommandCache.retrieve(); they
travel between the archive, pipe and bridge layers and end up in logs.
"""

from __future__ import annotations


class CmdCacheError(Exception):
    """Base exception for all cmdcache operations.

    Attributes:
        message: Human-readable error description.
        details: Optional additional context about the error.

    Example:
        >>> try:
        ...     reader.read(source)
        ... except CmdCacheError as e:
        ...     print(f"Cache error: {e}")
    """

    def __init__(self, message: str, *, details: dict[str, str] | None = None) -> None:
        """Initialize CmdCacheError.

        Args:
            message: Human-readable error description.
            details: Optional additional context about the error.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation with details if present."""
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class ConfigurationError(CmdCacheError):
    """Cache configuration could not be loaded.

    Raised when:
    - The configuration file is not valid YAML
    - The document is not a mapping
    - A field fails validation
    """

    def __init__(self, message: str, *, path: str | None = None) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Human-readable error description.
            path: The configuration file involved, if any.
        """
        super().__init__(message, details={"path": path} if path else None)
        self.path = path


class ArchiveError(CmdCacheError):
    """An archive stream could not be written or decoded.

    Raised when:
    - A header is malformed or the stream ends mid-entry
    - The end-of-archive marker is missing
    - An entry name is absolute or escapes the destination
    - The sink went away while an entry was being written

    Example:
        >>> try:
        ...     _check_name("../../etc/passwd")
        ... except ArchiveError as e:
        ...     print(e.entry)
    """

    def __init__(self, message: str, *, entry: str | None = None) -> None:
        """Initialize ArchiveError.

        Args:
            message: Human-readable error description.
            entry: Archive entry name the error relates to.
        """
        super().__init__(message, details={"entry": entry} if entry else None)
        self.entry = entry


class CommandError(CmdCacheError):
    """An external cache command failed.

    Raised (or recorded) when the command cannot be spawned, exits with a
    non-zero status, or exceeds its time budget.
    """

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
    ) -> None:
        """Initialize CommandError.

        Args:
            message: Human-readable error description.
            command: The shell command string.
            returncode: Exit status, when the command ran at all.
        """
        details: dict[str, str] = {}
        if command:
            details["command"] = command
        if returncode is not None:
            details["returncode"] = str(returncode)
        super().__init__(message, details=details)
        self.command = command
        self.returncode = returncode


class PipeClosedError(CmdCacheError):
    """Read or write on a closed StreamPipe."""

    def __init__(self, message: str = "read/write on closed pipe") -> None:
        """Initialize PipeClosedError.

        Args:
            message: Human-readable error description.
        """
        super().__init__(message)
