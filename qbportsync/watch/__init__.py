"""Forwarded port file watching."""

from __future__ import annotations

from qbportsync.watch.forwarded_port import ForwardedPortFileWatcher, parse_port

__all__ = ["ForwardedPortFileWatcher", "parse_port"]
