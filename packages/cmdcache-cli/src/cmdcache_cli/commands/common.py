"""Options and helpers shared by store and retrieve."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from cmdcache_cli.errors import CLIError

F = TypeVar("F", bound=Callable[..., Any])


def target_options(func: F) -> F:
    """Attach the options identifying the key and target of an operation."""
    options = [
        click.option(
            "--key",
            "key_hex",
            required=True,
            help="Cache key as hexadecimal text.",
        ),
        click.option(
            "--out-dir",
            required=True,
            type=click.Path(file_okay=False, path_type=Path),
            help="Output directory of the target, relative to --root.",
        ),
        click.option(
            "--root",
            type=click.Path(file_okay=False, path_type=Path),
            default=None,
            help="Cache root directory [default: current directory].",
        ),
        click.option(
            "-c",
            "--config",
            "config_path",
            type=click.Path(dir_okay=False, path_type=Path),
            default=None,
            help="YAML file with cache settings.",
        ),
        click.option(
            "--label",
            default=None,
            help="Target label used in logs [default: the output directory].",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def parse_key(key_hex: str) -> bytes:
    """Decode a hex key, turning malformed input into a usage error."""
    from cmdcache.keys import decode_key

    try:
        return decode_key(key_hex)
    except ValueError as e:
        raise CLIError(f"Invalid cache key {key_hex!r}: {e}") from None


def load_config(config_path: Path | None, **overrides: str | None) -> Any:
    """Load cache settings from a YAML file and apply command line overrides.

    Overrides that are None are ignored.

    Returns:
        CommandCacheConfig with the overrides applied.

    Raises:
        CLIError: If the file is missing or the settings are invalid.
    """
    from cmdcache.config import CommandCacheConfig
    from cmdcache.errors import ConfigurationError

    try:
        config = (
            CommandCacheConfig.from_yaml(config_path)
            if config_path is not None
            else CommandCacheConfig()
        )
        updates = {name: value for name, value in overrides.items() if value is not None}
        if updates:
            config = CommandCacheConfig.from_mapping({**config.model_dump(), **updates})
    except FileNotFoundError:
        raise CLIError(f"File not found: {config_path}") from None
    except ConfigurationError as e:
        raise CLIError(str(e)) from None
    return config


def build_target(out_dir: Path, label: str | None) -> Any:
    """Create the target identity for an output directory."""
    from cmdcache.models import BuildTarget

    return BuildTarget(label=label or out_dir.as_posix(), out_dir=out_dir)
