"""Rich console output utilities for cmdcache-cli.

Colored success and error messages; respects the NO_COLOR environment
variable and the --no-color flag.
"""

from __future__ import annotations

import os
from typing import Any

from rich.console import Console

_force_no_color = os.environ.get("NO_COLOR") is not None


def create_console(no_color: bool = False) -> Console:
    """Create a Rich Console instance with appropriate color settings.

    Args:
        no_color: If True, disable colored output. Also respects NO_COLOR env var.

    Returns:
        Configured Console instance.
    """
    force_terminal = None
    if no_color or _force_no_color:
        force_terminal = False
    return Console(force_terminal=force_terminal, no_color=no_color or _force_no_color)


console = create_console()


def success(message: str, **kwargs: Any) -> None:
    """Print a success message with green checkmark.

    Example:
        >>> success("Cache hit for //src:lib")
        ✓ Cache hit for //src:lib
    """
    console.print(f"[green]✓[/green] {message}", **kwargs)


def error(message: str, **kwargs: Any) -> None:
    """Print an error message with red X.

    Example:
        >>> error("Cache miss for //src:lib")
        ✗ Cache miss for //src:lib
    """
    console.print(f"[red]✗[/red] {message}", **kwargs)


def set_no_color(no_color: bool) -> None:
    """Replace the module-level console, enabling or disabling colors."""
    global console
    console = create_console(no_color=no_color)


def info(message: str, **kwargs: Any) -> None:
    """Print an informational message.

    Example:
        >>> info("Store attempted for //src:lib")
        Store attempted for //src:lib
    """
    console.print(message, **kwargs)
