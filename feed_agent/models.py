"""
Data models for the feed agent.

Defines Event, WindowState and CalendarEntry.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Memory keys owned by the window maintainer.
WINDOW_MEMORY_KEYS = ("event_ids", "last_event_id", "events_order", "events_to_show")


class Event(BaseModel):
    """A received event as stored in the event log. Never mutated by the agent."""

    id: int
    agent_id: str
    source_id: str
    created_at: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class WindowState(BaseModel):
    """Cached window bookkeeping persisted in the agent memory blob."""

    event_ids: Optional[List[int]] = None
    last_event_id: Optional[int] = None
    events_order: Optional[List[List[Any]]] = None
    events_to_show: Optional[int] = None

    @classmethod
    def from_memory(cls, memory: Mapping[str, Any]) -> "WindowState":
        return cls(**{key: memory.get(key) for key in WINDOW_MEMORY_KEYS})

    def to_memory(self) -> Dict[str, Any]:
        return self.model_dump()


class CalendarEntry(BaseModel):
    """Payload fields a calendar VEVENT is built from."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    guid: str
    event_time: datetime = Field(alias="eventTime")
    category: Optional[str] = None
    agenda: Optional[str] = None
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")

    @field_validator("event_time", mode="before")
    @classmethod
    def _parse_event_time(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        from .sorting import parse_time

        parsed = parse_time(value)
        if parsed is None:
            raise ValueError(f"unparsable time {value!r}")
        return parsed

    @field_validator("event_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive timestamps are interpreted as UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
