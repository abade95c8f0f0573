"""Change events handed to hooks and mirrors."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TableName(StrEnum):
    SESSION = "session"
    SETTINGS = "settings"


class ChangeEvent(BaseModel):
    """A single write to one of the tables.

    ``key`` is what hooks are matched against: the session key, or the
    component for settings. ``name`` is the full entry name within the key
    (equal to ``key`` for session writes).
    """

    model_config = ConfigDict(frozen=True)

    table: TableName
    key: str
    name: str
    value: Any = None
    previous: Any = None
    is_new: bool = False
    changed: bool = False
    quiet: bool = False
    publish_remote: bool = True
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def topic(self) -> str:
        """Relative MQTT topic the change is mirrored on."""
        if self.table == TableName.SETTINGS:
            return f"settings/{self.key.lower()}/{self.name.lower()}"
        return "session/" + self.key.lower().replace(".", "/")
