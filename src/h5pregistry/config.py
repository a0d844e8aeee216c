"""Configuration settings for the H5P registry.

Resolution order (later wins):
1. Dataclass defaults (everything under ~/.h5pregistry)
2. YAML file (--config, or H5PREGISTRY_CONFIG env var)
3. H5PREGISTRY_* environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

DEFAULT_HOME = Path.home() / ".h5pregistry"
DEFAULT_HUB_URL = "https://hub-api.h5p.org"
ENV_PREFIX = "H5PREGISTRY_"


class ConfigError(Exception):
    """Raised when a configuration file cannot be used."""


@dataclass
class Settings:
    """Application settings."""

    # Storage
    db_path: Path = field(default_factory=lambda: DEFAULT_HOME / "registry.db")
    blob_root: Path = field(default_factory=lambda: DEFAULT_HOME / "blobs")

    # Upstream hub
    hub_url: str = DEFAULT_HUB_URL
    hub_timeout: float = 30.0
    download_timeout: float = 300.0
    site_uuid: str = "h5pregistry-platform"
    platform_name: str = "h5pregistry"
    sync_interval_seconds: int = 0  # 0 disables the in-process scheduler

    # Resolution
    max_resolve_depth: int = 20
    host_runtime_version: str = "1.26"

    # Serving
    asset_base_url: str = "/api/v1/libraries"

    # tenant_id -> user ids allowed to act on restricted catalog entries
    privileged_users: dict[str, list[str]] = field(default_factory=dict)

    log_level: str = "INFO"

    @property
    def host_runtime(self) -> tuple[int, int]:
        """Host runtime version as (major, minor)."""
        return parse_runtime_version(self.host_runtime_version)

    def ensure_dirs(self) -> None:
        """Create the database and blob directories."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.blob_root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Settings":
        """Load settings from YAML and environment.

        Args:
            path: YAML file. Falls back to H5PREGISTRY_CONFIG when None.

        Raises:
            ConfigError: If the file is missing or not a mapping
        """
        if path is None:
            path = os.environ.get(f"{ENV_PREFIX}CONFIG")

        data: dict = {}
        if path:
            path = Path(path)
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise ConfigError(f"Config file must be a YAML mapping: {path}")
            data.update(raw)

        for f_ in fields(cls):
            env_value = os.environ.get(f"{ENV_PREFIX}{f_.name.upper()}")
            if env_value is not None:
                data[f_.name] = env_value

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Build settings from a plain mapping, coercing types."""
        known = {f_.name for f_ in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {unknown}")

        settings = cls()
        for key, value in data.items():
            if key in ("db_path", "blob_root"):
                value = Path(value).expanduser()
            elif key in ("hub_timeout", "download_timeout"):
                value = float(value)
            elif key in ("max_resolve_depth", "sync_interval_seconds"):
                value = int(value)
            elif key == "privileged_users":
                if isinstance(value, str):
                    value = yaml.safe_load(value) or {}
                if not isinstance(value, dict):
                    raise ConfigError("privileged_users must be a mapping")
                value = {str(k): [str(u) for u in v] for k, v in value.items()}
            else:
                value = str(value)
            setattr(settings, key, value)

        parse_runtime_version(settings.host_runtime_version)
        if settings.max_resolve_depth < 1:
            raise ConfigError("max_resolve_depth must be at least 1")
        return settings


def parse_runtime_version(value: str) -> tuple[int, int]:
    """Parse a "major.minor" host runtime version."""
    parts = str(value).strip().split(".")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ConfigError(f"Invalid host runtime version: {value!r}")
    return int(parts[0]), int(parts[1])
