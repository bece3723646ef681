"""cmdcache store command - Archive outputs and pipe them into the store command."""

from __future__ import annotations

from pathlib import Path

import click
from rich.markup import escape

from cmdcache_cli.commands.common import build_target, load_config, parse_key, target_options
from cmdcache_cli.errors import CLIError
from cmdcache_cli.output import info


@click.command()
@target_options
@click.option(
    "--store-command",
    default=None,
    help="Shell command reading the archive on stdin (overrides the config file).",
)
@click.argument("paths", nargs=-1, required=True)
def store(
    key_hex: str,
    out_dir: Path,
    root: Path | None,
    config_path: Path | None,
    label: str | None,
    store_command: str | None,
    paths: tuple[str, ...],
) -> None:
    """Store output files of a target under a cache key.

    PATHS are relative to the output directory. Directories are archived
    recursively. Storing is best effort: problems are logged, never fatal,
    so the command exits 0 even when the store command failed.

    Examples:

        cmdcache store --key 1234 --out-dir out/lib --store-command 'cat > /tmp/$CACHE_KEY.tar' lib.so

        cmdcache store -c cache.yaml --key 1234 --out-dir out/lib include
    """
    key = parse_key(key_hex)
    config = load_config(config_path, store_command=store_command)
    if not config.store_enabled:
        raise CLIError("No store command configured; use --store-command or --config.")

    from cmdcache.factory import create_cache

    target = build_target(out_dir, label)
    cache = create_cache(config, root=root)
    try:
        cache.store(target, key, list(paths))
    finally:
        cache.shutdown()

    info(f"Store attempted for {len(paths)} path(s) of {escape(target.label)}")
