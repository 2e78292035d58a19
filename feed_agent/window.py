"""
Bounded event window maintenance.

The window is the `events_to_show` highest-ranked events under the configured
ordering. It is rebuilt incrementally from the event log: events above the
stored watermark are merged into the cached window, and a cold start fetches
the latest events of every source when the cache cannot be trusted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Protocol

from .models import Event, WindowState
from .sorting import OrderRule, order_fingerprint, sort_events

logger = logging.getLogger("calendar-feed")

DEFAULT_EVENTS_TO_SHOW = 40
DEFAULT_COLD_START_FANOUT = 2


class EventLog(Protocol):
    def source_ids(self) -> List[str]: ...

    def events_by_source(self, source_id: str, limit: int) -> List[Event]: ...

    def events_above(self, event_id: int) -> List[Event]: ...

    def events_by_ids(self, ids: List[int]) -> List[Event]: ...


class WindowStateStore(Protocol):
    def load(self) -> WindowState: ...

    def store(self, state: WindowState) -> None: ...


@dataclass(frozen=True)
class WindowConfig:
    events_to_show: int = DEFAULT_EVENTS_TO_SHOW
    events_order: List[OrderRule] = field(default_factory=list)
    cold_start_fanout: int = DEFAULT_COLD_START_FANOUT

    def __post_init__(self) -> None:
        if self.events_to_show < 1:
            raise ValueError("events_to_show must be positive")
        if self.cold_start_fanout < 1:
            raise ValueError("cold_start_fanout must be positive")


class EventWindow:
    """Maintains one agent's window over its event log."""

    def __init__(self, log: EventLog, state_store: WindowStateStore, config: WindowConfig):
        self.log = log
        self.state_store = state_store
        self.config = config

    def _cache_usable(self, state: WindowState) -> bool:
        return (
            state.event_ids is not None
            and state.events_order == order_fingerprint(self.config.events_order)
            and state.events_to_show is not None
            and state.events_to_show >= self.config.events_to_show
        )

    def _cold_start_events(self) -> List[Event]:
        # Each source may interleave unevenly with the others, so dig deeper
        # than the window size before ranking.
        limit = self.config.cold_start_fanout * self.config.events_to_show
        fetched: List[Event] = []
        for source_id in self.log.source_ids():
            fetched.extend(self.log.events_by_source(source_id, limit))
        return sorted(fetched, key=lambda event: event.id)

    def compute(self, force_reload: bool = False) -> List[Event]:
        """
        Return the current window, fetching new events when a reload is due.

        State is persisted once, after every fetch succeeded, and only when a
        reload happened.
        """
        state = self.state_store.load()
        reload = force_reload

        if self._cache_usable(state):
            cached_ids = list(state.event_ids or [])
            events = sorted(self.log.events_by_ids(cached_ids), key=lambda event: event.id)
            watermark = state.last_event_id
        else:
            if state.event_ids is not None:
                logger.warning(
                    "window configuration changed (events_to_show %s -> %s); rebuilding from scratch",
                    state.events_to_show,
                    self.config.events_to_show,
                )
            events = []
            watermark = None
            reload = True

        if reload:
            if watermark is not None:
                new_events = self.log.events_above(watermark)
            else:
                new_events = self._cold_start_events()
            if new_events:
                watermark = max(event.id for event in new_events)
                events.extend(new_events)

        window = sort_events(events, self.config.events_order)[-self.config.events_to_show :]

        if reload:
            self.state_store.store(
                WindowState(
                    event_ids=[event.id for event in window],
                    last_event_id=watermark,
                    events_order=order_fingerprint(self.config.events_order),
                    events_to_show=self.config.events_to_show,
                )
            )
            logger.info(
                "window rebuilt size=%s fetched=%s last_event_id=%s",
                len(window),
                len(new_events),
                watermark,
            )
        return window
