"""CLI entry point for cmdcache.

This module defines the main CLI group using the LazyGroup pattern so
that --help does not import the cache backend.
"""

from __future__ import annotations

import importlib
from typing import Any

import click
import rich_click as rclick

from cmdcache_cli import __version__
from cmdcache_cli.output import set_no_color

# Configure rich-click for better help formatting
rclick.rich_click.TEXT_MARKUP = "markdown"
rclick.rich_click.SHOW_ARGUMENTS = True
rclick.rich_click.GROUP_ARGUMENTS_OPTIONS = True

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class LazyGroup(rclick.RichGroup):
    """Click group that loads commands lazily.

    Attributes:
        lazy_subcommands: Mapping of command names to module paths.
    """

    def __init__(
        self,
        *args: Any,
        lazy_subcommands: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.lazy_subcommands: dict[str, str] = lazy_subcommands or {}

    def list_commands(self, ctx: click.Context) -> list[str]:
        """Return the sorted names of registered and lazy commands."""
        commands = set(super().list_commands(ctx))
        commands.update(self.lazy_subcommands.keys())
        return sorted(commands)

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        """Get a command by name, importing its module on first use."""
        cmd = super().get_command(ctx, cmd_name)  # type: ignore[arg-type]
        if cmd is not None:
            return cmd

        if cmd_name not in self.lazy_subcommands:
            return None

        module_name, attr_name = self.lazy_subcommands[cmd_name].rsplit(".", 1)
        mod = importlib.import_module(module_name)
        return getattr(mod, attr_name)  # type: ignore[no-any-return]


LAZY_COMMANDS = {
    "store": "cmdcache_cli.commands.store.store",
    "retrieve": "cmdcache_cli.commands.retrieve.retrieve",
}


@click.command(cls=LazyGroup, lazy_subcommands=LAZY_COMMANDS)
@click.version_option(version=__version__, prog_name="cmdcache")
@click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable colored output.",
    is_eager=True,
    expose_value=False,
    callback=lambda ctx, param, value: set_no_color(value) if value else None,
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Minimum level of log events to emit.",
)
@click.option(
    "--json-logs/--console-logs",
    default=False,
    help="Emit log events as JSON lines instead of console text.",
)
def cli(log_level: str, json_logs: bool) -> None:
    """cmdcache - Artifact cache driven by shell commands.

    Archives build outputs into a store command's stdin and restores them
    from a retrieve command's stdout. Both commands see the hex encoded key
    in `$CACHE_KEY`.

    **Commands:**

    - `cmdcache store` - Store outputs under a key
    - `cmdcache retrieve` - Restore outputs for a key (exit 1 on a miss)
    """
    from cmdcache.observability import configure_logging

    configure_logging(log_level=log_level.upper(), json_format=json_logs)


if __name__ == "__main__":
    cli()
