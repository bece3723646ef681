"""CLI error handling for cmdcache-cli.

Wraps configuration and key parsing failures into user-friendly messages
with exit codes.
"""

from __future__ import annotations

import click
from rich.markup import escape

from cmdcache_cli.output import error

# Exit codes
EXIT_SUCCESS = 0
EXIT_MISS = 1  # Retrieve found nothing usable
EXIT_USAGE_ERROR = 2  # Bad key, bad or missing configuration


class CLIError(click.ClickException):
    """CLI-specific exception with exit code support.

    Attributes:
        message: User-facing error message.
        exit_code: Exit code for the CLI (default: 2).
    """

    def __init__(self, message: str, exit_code: int = EXIT_USAGE_ERROR) -> None:
        super().__init__(message)
        self.exit_code = exit_code

    def show(self, file: object = None) -> None:
        """Display the error message using Rich formatting.

        Args:
            file: Output file (unused, for Click compatibility).
        """
        error(escape(self.format_message()))
