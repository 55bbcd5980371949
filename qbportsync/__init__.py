"""qb-port-sync - keep qBittorrent's listening port in sync with a forwarded port."""

from __future__ import annotations

__version__ = "0.1.0"
