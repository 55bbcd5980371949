"""Configuration management for qb-port-sync.

Loads a TOML file from the first existing search location, applies
``QB_PORT_SYNC_*`` environment overrides and validates the result with the
pydantic models in :mod:`qbportsync.models`.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError

from qbportsync.models import Config
from qbportsync.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

APP_NAME = "qb-port-sync"
CONFIG_FILENAME = "config.toml"
PASSWORD_ENV = "QB_PORT_SYNC_QB_PASSWORD"

# Platform detection
IS_LINUX = sys.platform.startswith("linux")
IS_MACOS = sys.platform == "darwin"

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    "QB_PORT_SYNC_QB_BASE_URL": "qbittorrent.base_url",
    "QB_PORT_SYNC_QB_USERNAME": "qbittorrent.username",
    "QB_PORT_SYNC_QB_BIND_INTERFACE": "qbittorrent.bind_interface",
    "QB_PORT_SYNC_QB_REQUEST_TIMEOUT": "qbittorrent.request_timeout",
    "QB_PORT_SYNC_FORWARDED_PORT_PATH": "protonvpn.forwarded_port_path",
    "QB_PORT_SYNC_INTERNAL_PORT": "portmap.internal_port",
    "QB_PORT_SYNC_PROTOCOL": "portmap.protocol",
    "QB_PORT_SYNC_REFRESH_SECS": "portmap.refresh_secs",
    "QB_PORT_SYNC_AUTODISCOVER_GATEWAY": "portmap.autodiscover_gateway",
    "QB_PORT_SYNC_GATEWAY": "portmap.gateway",
    "QB_PORT_SYNC_ENABLE_PCP": "portmap.enable_pcp",
    "QB_PORT_SYNC_ENABLE_NATPMP": "portmap.enable_natpmp",
    "QB_PORT_SYNC_HEALTH_ENABLED": "health.enabled",
    "QB_PORT_SYNC_HEALTH_HOST": "health.host",
    "QB_PORT_SYNC_HEALTH_PORT": "health.port",
    "QB_PORT_SYNC_LOG_LEVEL": "logging.level",
    "QB_PORT_SYNC_LOG_FILE": "logging.log_file",
}

# Values kept verbatim even when they look numeric
STRING_PATHS = {
    "qbittorrent.base_url",
    "qbittorrent.username",
    "qbittorrent.bind_interface",
    "protonvpn.forwarded_port_path",
    "portmap.protocol",
    "portmap.gateway",
    "health.host",
    "logging.level",
    "logging.log_file",
}


def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
    if path in STRING_PATHS:
        return raw
    low = raw.strip().lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


def default_search_paths() -> list[Path]:
    """Configuration file locations, in search order."""
    paths: list[Path] = []
    if IS_LINUX:
        xdg = os.environ.get("XDG_CONFIG_HOME")
        base = Path(xdg) if xdg else Path.home() / ".config"
        paths.append(base / APP_NAME / CONFIG_FILENAME)
        paths.append(Path("/etc") / APP_NAME / CONFIG_FILENAME)
    if IS_MACOS:
        paths.append(
            Path("/Library/Application Support") / APP_NAME / CONFIG_FILENAME
        )
    return paths


def default_forwarded_port_path() -> Path | None:
    """ProtonVPN's forwarded port file for the current user (Linux only)."""
    if not IS_LINUX:
        return None
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / "Proton" / "VPN" / "forwarded_port"
    return Path(f"/run/user/{os.getuid()}/Proton/VPN/forwarded_port")


class ConfigManager:
    """Locates, loads and validates configuration."""

    def __init__(
        self,
        config_file: str | Path | None = None,
        search_paths: list[Path] | None = None,
    ):
        """Initialize configuration manager.

        Args:
            config_file: Explicit TOML config path (``--config``)
            search_paths: Locations searched when no path is given

        Raises:
            ConfigurationError: If no file is found or it fails validation

        """
        self.search_paths = (
            search_paths if search_paths is not None else default_search_paths()
        )
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file).expanduser()

        for path in self.search_paths:
            if path.exists():
                logger.debug("Using configuration file at %s", path)
                return path

        searched = ", ".join(str(p) for p in self.search_paths) or "none"
        msg = f"configuration file not found (searched: {searched})"
        raise ConfigurationError(msg)

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        try:
            with open(self.config_file, encoding="utf-8") as f:
                config_data: dict[str, Any] = toml.load(f)
        except OSError as e:
            msg = f"cannot read configuration file {self.config_file}: {e}"
            raise ConfigurationError(msg) from e
        except toml.TomlDecodeError as e:
            msg = f"invalid TOML in {self.config_file}: {e}"
            raise ConfigurationError(msg) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            config = Config(**config_data)
        except ValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

        self._post_process(config)
        return config

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _post_process(self, config: Config) -> None:
        """Resolve the forwarded port path against the config file's directory."""
        path = config.protonvpn.forwarded_port_path
        if path is None:
            config.protonvpn.forwarded_port_path = default_forwarded_port_path()
            return
        path = path.expanduser()
        if not path.is_absolute():
            path = self.config_file.parent / path
        config.protonvpn.forwarded_port_path = path

    def qbittorrent_password(self) -> str:
        """Return the Web UI password from the config file or environment.

        Raises:
            ConfigurationError: If neither provides a non-empty password

        """
        password = self.config.qbittorrent.password
        if password and password.strip():
            return password
        env_password = os.environ.get(PASSWORD_ENV, "")
        if env_password.strip():
            return env_password
        msg = (
            "qBittorrent password missing: set qbittorrent.password "
            f"or {PASSWORD_ENV}"
        )
        raise ConfigurationError(msg)
