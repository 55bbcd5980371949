"""Configuration management.

This module handles configuration file discovery, loading and validation.
"""

from __future__ import annotations

from qbportsync.config.config import ConfigManager, default_forwarded_port_path

__all__ = ["ConfigManager", "default_forwarded_port_path"]
