"""Cache factory.

This module provides the create_cache() factory function for creating
CommandCache instances from configuration objects.

Supports:
- CommandCacheConfig: Native configuration model
- Mapping: Raw settings, optionally nested under a ``cache`` key
- str/Path: YAML configuration file
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from cmdcache.cache import CommandCache
from cmdcache.config import CommandCacheConfig
from cmdcache.observability import get_logger


def create_cache(
    config: CommandCacheConfig | Mapping[str, Any] | str | Path | None = None,
    *,
    root: Path | str | None = None,
) -> CommandCache:
    """Create a command-driven cache from configuration.

    Args:
        config: CommandCacheConfig, a mapping, a YAML path, or None for an
            unconfigured (store disabled) cache.
        root: Cache root directory; defaults to the working directory.

    Returns:
        CommandCache ready for store/retrieve.

    Raises:
        FileNotFoundError: If a YAML path does not exist.
        ConfigurationError: If the configuration is invalid.
        TypeError: If config type is not supported.

    Example:
        >>> cache = create_cache({"cache": {"store_command": "cat > x.tar"}})
        >>> cache.config.store_enabled
        True
    """
    logger = get_logger()

    if isinstance(config, CommandCacheConfig):
        cache_config = config
    elif config is None or isinstance(config, Mapping):
        cache_config = CommandCacheConfig.from_mapping(config)
    elif isinstance(config, (str, Path)):
        cache_config = CommandCacheConfig.from_yaml(config)
    else:
        msg = (
            f"Unsupported config type: {type(config).__name__}. "
            "Expected CommandCacheConfig, a mapping, or a YAML path."
        )
        raise TypeError(msg)

    cache = CommandCache(cache_config, root=root)
    logger.info(
        "cache_created",
        root=str(cache.root),
        store_enabled=cache_config.store_enabled,
        retrieve_enabled=cache_config.retrieve_enabled,
        timeout_seconds=cache_config.timeout_seconds,
    )
    return cache
