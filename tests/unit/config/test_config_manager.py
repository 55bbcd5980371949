"""Unit tests for configuration loading.

Covers file discovery, TOML parsing, environment overrides, path resolution
and the password fallback.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from qbportsync.config.config import (
    PASSWORD_ENV,
    ConfigManager,
    _parse_env_value,
    default_forwarded_port_path,
)
from qbportsync.models import LogLevel, Transport
from qbportsync.utils.exceptions import ConfigurationError

pytestmark = [pytest.mark.unit, pytest.mark.config]

FULL_CONFIG = """
[qbittorrent]
base_url = "http://127.0.0.1:8080"
username = "admin"
password = "secret"
bind_interface = "wg0"

[protonvpn]
forwarded_port_path = "run/forwarded_port"

[portmap]
internal_port = 51820
protocol = "both"
refresh_secs = 120
autodiscover_gateway = false
gateway = "10.2.0.1"
enable_pcp = false

[health]
enabled = true
port = 9200

[logging]
level = "debug"
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoading:
    """Test locating and parsing the config file."""

    def test_full_config(self, tmp_path):
        """Test every section is parsed and validated."""
        config = ConfigManager(_write(tmp_path, FULL_CONFIG)).config

        assert config.qbittorrent.bind_interface == "wg0"
        assert config.portmap.internal_port == 51820
        assert config.portmap.protocol == Transport.BOTH
        assert config.portmap.refresh_secs == 120
        assert config.portmap.autodiscover_gateway is False
        assert config.portmap.gateway == "10.2.0.1"
        assert config.portmap.enable_pcp is False
        assert config.portmap.enable_natpmp is True
        assert config.health.enabled is True
        assert config.health.port == 9200
        assert config.logging.level == LogLevel.DEBUG

    def test_relative_port_path_resolves_against_config_dir(self, tmp_path):
        """Test relative forwarded port paths."""
        config = ConfigManager(_write(tmp_path, FULL_CONFIG)).config

        assert config.protonvpn.forwarded_port_path == tmp_path / "run" / "forwarded_port"

    def test_defaults_for_empty_file(self, tmp_path):
        """Test an empty file yields defaults."""
        config = ConfigManager(_write(tmp_path, "")).config

        assert config.qbittorrent.base_url == "http://127.0.0.1:8080"
        assert config.portmap.internal_port == 0
        assert config.portmap.protocol == Transport.TCP
        assert config.portmap.refresh_secs == 300
        assert config.health.enabled is False
        assert config.protonvpn.forwarded_port_path == default_forwarded_port_path()

    def test_blank_strings_are_unset(self, tmp_path):
        """Test empty strings behave like missing keys."""
        config = ConfigManager(
            _write(tmp_path, '[qbittorrent]\nbind_interface = ""\npassword = " "\n')
        ).config

        assert config.qbittorrent.bind_interface is None
        assert config.qbittorrent.password is None

    def test_search_paths(self, tmp_path):
        """Test the first existing search location wins."""
        second = tmp_path / "b" / "config.toml"
        second.parent.mkdir()
        second.write_text("[portmap]\nrefresh_secs = 60\n")

        manager = ConfigManager(search_paths=[tmp_path / "a" / "config.toml", second])

        assert manager.config_file == second
        assert manager.config.portmap.refresh_secs == 60

    def test_not_found(self, tmp_path):
        """Test no config file anywhere."""
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigManager(search_paths=[tmp_path / "missing.toml"])

    def test_explicit_missing_file(self, tmp_path):
        """Test --config pointing nowhere."""
        with pytest.raises(ConfigurationError, match="cannot read"):
            ConfigManager(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path):
        """Test syntax errors."""
        with pytest.raises(ConfigurationError, match="invalid TOML"):
            ConfigManager(_write(tmp_path, "[portmap\n"))

    @pytest.mark.parametrize(
        "snippet",
        [
            '[qbittorrent]\nbase_url = "ftp://host"\n',
            "[portmap]\ninternal_port = 70000\n",
            '[portmap]\nprotocol = "sctp"\n',
            "[portmap]\nrefresh_secs = 0\n",
            '[logging]\nlevel = "loud"\n',
        ],
    )
    def test_validation_errors(self, tmp_path, snippet):
        """Test out-of-range or malformed values."""
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConfigManager(_write(tmp_path, snippet))


class TestEnvironment:
    """Test QB_PORT_SYNC_* overrides."""

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        """Test environment wins over the file."""
        monkeypatch.setenv("QB_PORT_SYNC_INTERNAL_PORT", "40000")
        monkeypatch.setenv("QB_PORT_SYNC_PROTOCOL", "udp")
        monkeypatch.setenv("QB_PORT_SYNC_QB_BASE_URL", "http://10.0.0.2:8080")

        config = ConfigManager(_write(tmp_path, FULL_CONFIG)).config

        assert config.portmap.internal_port == 40000
        assert config.portmap.protocol == Transport.UDP
        assert config.qbittorrent.base_url == "http://10.0.0.2:8080"
        assert config.qbittorrent.username == "admin"

    def test_env_forwarded_port_path(self, tmp_path, monkeypatch):
        """Test path overrides stay strings and resolve like file values."""
        monkeypatch.setenv("QB_PORT_SYNC_FORWARDED_PORT_PATH", str(tmp_path / "fp"))

        config = ConfigManager(_write(tmp_path, "")).config

        assert config.protonvpn.forwarded_port_path == tmp_path / "fp"

    def test_parse_env_value(self):
        """Test env value coercion."""
        assert _parse_env_value("true", "portmap.enable_pcp") is True
        assert _parse_env_value("off", "portmap.enable_pcp") is False
        assert _parse_env_value("300", "portmap.refresh_secs") == 300
        assert _parse_env_value("2.5", "qbittorrent.request_timeout") == 2.5
        assert _parse_env_value("1234", "portmap.gateway") == "1234"
        assert _parse_env_value("true", "logging.log_file") == "true"


class TestPassword:
    """Test the password lookup order."""

    def test_password_from_file(self, tmp_path, monkeypatch):
        """Test the file password wins."""
        monkeypatch.setenv(PASSWORD_ENV, "from-env")

        assert ConfigManager(_write(tmp_path, FULL_CONFIG)).qbittorrent_password() == "secret"

    def test_password_from_env(self, tmp_path, monkeypatch):
        """Test environment fallback, kept verbatim."""
        monkeypatch.setenv(PASSWORD_ENV, "0123")

        assert ConfigManager(_write(tmp_path, "")).qbittorrent_password() == "0123"

    def test_password_missing(self, tmp_path):
        """Test neither source."""
        manager = ConfigManager(_write(tmp_path, ""))

        with pytest.raises(ConfigurationError, match=PASSWORD_ENV):
            manager.qbittorrent_password()


def test_default_forwarded_port_path(monkeypatch):
    """Test the ProtonVPN runtime location."""
    monkeypatch.setattr("qbportsync.config.config.IS_LINUX", True)
    monkeypatch.setenv("XDG_RUNTIME_DIR", "/run/user/1000")

    assert default_forwarded_port_path() == Path("/run/user/1000/Proton/VPN/forwarded_port")

    monkeypatch.setattr("qbportsync.config.config.IS_LINUX", False)
    assert default_forwarded_port_path() is None


def test_example_config_loads():
    """Test the shipped example configuration is valid."""
    example = Path(__file__).parents[3] / "docs" / "examples" / "config.toml"

    config = ConfigManager(example).config

    assert config.portmap.protocol == Transport.TCP
    assert config.qbittorrent.password is None
