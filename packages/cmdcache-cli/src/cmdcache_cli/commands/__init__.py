"""CLI command modules.

This package contains the implementation of all CLI subcommands.
"""

from __future__ import annotations

from cmdcache_cli.commands.retrieve import retrieve
from cmdcache_cli.commands.store import store

__all__ = ["retrieve", "store"]
