"""qBittorrent Web API client."""

from __future__ import annotations

from qbportsync.client.qbittorrent import (
    ClientSession,
    Credentials,
    QbittorrentClient,
    VerifyStatus,
)

__all__ = ["ClientSession", "Credentials", "QbittorrentClient", "VerifyStatus"]
