"""Sync cycle result record."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SyncResult(BaseModel):
    """Outcome of one sync cycle, rendered as a JSON line by ``--json``."""

    strategy: str = Field(description="Source that produced the mapping")
    detected_port: int | None = Field(
        default=None,
        description="Listening port qBittorrent reported after the update",
    )
    applied: bool = Field(default=False, description="Preferences were written")
    verified: bool = Field(default=False, description="Read-back matched")
    note: str = Field(default="", description="Semicolon-separated notes")
    error: str | None = Field(default=None, description="Failure message")

    def line(self) -> str:
        """Serialize as one JSON line, omitting unset optional fields."""
        return self.model_dump_json(exclude_none=True)

    @staticmethod
    def join_notes(notes: list[str]) -> str:
        """Join notes the way the ``note`` field carries them."""
        return "; ".join(n for n in notes if n)
