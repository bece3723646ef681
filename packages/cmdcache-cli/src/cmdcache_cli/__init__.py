"""cmdcache-cli: command line for exercising command-driven cache setups."""

from __future__ import annotations

__version__ = "0.1.0"
