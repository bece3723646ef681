"""cmdcache: artifact cache backend driven by external shell commands.

Build outputs are streamed as a tar archive into a configurable store
command's stdin, and restored from a retrieve command's stdout. Where the
archives actually live (a bucket, a shared drive, an HTTP service) is up
to the commands.

- CACHE_KEY carries the hex-encoded cache key to both commands
- A retrieve is a hit only if the archive decodes cleanly AND the command
  exits successfully
- Stores are best effort; nothing here ever fails a build

Example:
    >>> from cmdcache import create_cache, BuildTarget
    >>> cache = create_cache({
    ...     "store_command": "cat > /tmp/cache/$CACHE_KEY.tar",
    ...     "retrieve_command": "cat /tmp/cache/$CACHE_KEY.tar",
    ... })
    >>> target = BuildTarget(label="//src:lib", out_dir="out/gen/src")
    >>> cache.store(target, b"\\x12\\x34", ["lib.so"])
    >>> cache.retrieve(target, b"\\x12\\x34")
    True
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    # Factory function
    "create_cache",
    # Cache backend
    "ArtifactCache",
    "CommandCache",
    # Building blocks
    "ArchiveReader",
    "ArchiveWriter",
    "ProcessBridge",
    "StreamPipe",
    # Configuration and data models
    "CommandCacheConfig",
    "BuildTarget",
    "CacheTarget",
    # Keys
    "encode_key",
    "decode_key",
    # Exceptions
    "CmdCacheError",
    "ConfigurationError",
    "ArchiveError",
    "CommandError",
    "PipeClosedError",
]

_LAZY_IMPORTS = {
    "create_cache": "cmdcache.factory",
    "ArtifactCache": "cmdcache.cache",
    "CommandCache": "cmdcache.cache",
    "ArchiveReader": "cmdcache.archive",
    "ArchiveWriter": "cmdcache.archive",
    "ProcessBridge": "cmdcache.bridge",
    "StreamPipe": "cmdcache.pipe",
    "CommandCacheConfig": "cmdcache.config",
    "BuildTarget": "cmdcache.models",
    "CacheTarget": "cmdcache.models",
    "encode_key": "cmdcache.keys",
    "decode_key": "cmdcache.keys",
    "CmdCacheError": "cmdcache.errors",
    "ConfigurationError": "cmdcache.errors",
    "ArchiveError": "cmdcache.errors",
    "CommandError": "cmdcache.errors",
    "PipeClosedError": "cmdcache.errors",
}


def __getattr__(name: str) -> object:
    """Lazy import of public API members."""
    module_name = _LAZY_IMPORTS.get(name)
    if module_name is None:
        msg = f"module {__name__!r} has no attribute {name!r}"
        raise AttributeError(msg)
    import importlib

    return getattr(importlib.import_module(module_name), name)
