"""cmdcache retrieve command - Restore outputs from the retrieve command."""

from __future__ import annotations

from pathlib import Path

import click
from rich.markup import escape

from cmdcache_cli.commands.common import build_target, load_config, parse_key, target_options
from cmdcache_cli.errors import EXIT_MISS, CLIError
from cmdcache_cli.output import error, success


@click.command()
@target_options
@click.option(
    "--retrieve-command",
    default=None,
    help="Shell command writing the archive to stdout (overrides the config file).",
)
def retrieve(
    key_hex: str,
    out_dir: Path,
    root: Path | None,
    config_path: Path | None,
    label: str | None,
    retrieve_command: str | None,
) -> None:
    """Restore the outputs stored under a cache key.

    Exits with 0 on a cache hit and 1 on a miss. A hit requires a complete
    archive and a successful retrieve command.

    Examples:

        cmdcache retrieve --key 1234 --out-dir out/lib --retrieve-command 'cat /tmp/$CACHE_KEY.tar'
    """
    key = parse_key(key_hex)
    config = load_config(config_path, retrieve_command=retrieve_command)
    if not config.retrieve_enabled:
        raise CLIError("No retrieve command configured; use --retrieve-command or --config.")

    from cmdcache.factory import create_cache

    target = build_target(out_dir, label)
    cache = create_cache(config, root=root)
    try:
        hit = cache.retrieve(target, key)
    finally:
        cache.shutdown()

    if not hit:
        error(f"Cache miss for {escape(target.label)}")
        raise SystemExit(EXIT_MISS)
    success(f"Cache hit for {escape(target.label)}")
