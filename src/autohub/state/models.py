"""Table entry model."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

SessionValue = str | int | float | bool | None


class Entry(BaseModel):
    """One value of the session or settings table.

    Entries are immutable; a write replaces the entry wholesale, so
    snapshots can share them safely.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str
    value: SessionValue = None
    last_update: datetime | None = None
    write_count: int = 0
    quiet: bool = False
