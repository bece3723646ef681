"""Pydantic configuration model for cmdcache.

This module provides:
- CommandCacheConfig: Store/retrieve command templates and execution policy

The build system normally owns configuration loading and hands the two
command strings over; from_yaml() exists for the CLI and for tests.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cmdcache.errors import ConfigurationError

# Section name looked up in YAML documents
CONFIG_SECTION = "cache"


class CommandCacheConfig(BaseModel):
    """Command-driven cache configuration.

    Both commands run through ``<shell> -c`` with CACHE_KEY set to the hex
    encoded key, so they may use pipelines and redirection.

    Attributes:
        store_command: Reads a tar stream on stdin and persists it. Empty
            disables storing.
        retrieve_command: Writes a previously stored tar stream to stdout.
        shell: Shell used to run the commands (default "sh").
        timeout_seconds: Kill a command still running after this many
            seconds (default None, wait forever).
        inherit_environment: Pass the parent environment through to the
            commands in addition to CACHE_KEY (default True).

    Example:
        >>> config = CommandCacheConfig(
        ...     store_command="cat > /tmp/cache/$CACHE_KEY.tar",
        ...     retrieve_command="cat /tmp/cache/$CACHE_KEY.tar",
        ... )
        >>> config.store_enabled
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    store_command: str = Field(
        default="",
        description="Shell command reading an archive from stdin",
    )
    retrieve_command: str = Field(
        default="",
        description="Shell command writing an archive to stdout",
    )
    shell: str = Field(
        default="sh",
        min_length=1,
        description="Shell executable used to run the commands",
    )
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Time budget per command invocation (None = unlimited)",
    )
    inherit_environment: bool = Field(
        default=True,
        description="Pass the parent environment through to the commands",
    )

    @field_validator("store_command", "retrieve_command")
    @classmethod
    def strip_command(cls, v: str) -> str:
        """Normalise surrounding whitespace so blank commands count as unset."""
        return v.strip()

    @property
    def store_enabled(self) -> bool:
        """True when a store command is configured."""
        return bool(self.store_command)

    @property
    def retrieve_enabled(self) -> bool:
        """True when a retrieve command is configured."""
        return bool(self.retrieve_command)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> CommandCacheConfig:
        """Build a config from a plain mapping.

        A mapping with a top-level ``cache`` section uses that section.

        Raises:
            ConfigurationError: If the data is not a mapping or fails validation.
        """
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            msg = f"cache configuration must be a mapping, got {type(data).__name__}"
            raise ConfigurationError(msg)
        section = data.get(CONFIG_SECTION, data)
        if section is None:
            return cls()
        if not isinstance(section, Mapping):
            msg = f"'{CONFIG_SECTION}' section must be a mapping"
            raise ConfigurationError(msg)
        try:
            return cls.model_validate(dict(section))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid cache configuration: {exc}") from exc

    @classmethod
    def from_yaml(cls, path: str | Path) -> CommandCacheConfig:
        """Load and validate configuration from a YAML file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ConfigurationError: If the YAML is invalid or fails validation.

        Example:
            >>> config = CommandCacheConfig.from_yaml("cache.yaml")
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        with path.open("r") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML: {exc}", path=str(path)) from exc

        try:
            return cls.from_mapping(data)
        except ConfigurationError as exc:
            raise ConfigurationError(exc.message, path=str(path)) from exc
