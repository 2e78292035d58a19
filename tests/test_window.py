"""
Window maintenance tests against in-memory fakes of the event log and state store.

Covers incremental vs. cold-start reloads, cache invalidation on configuration
changes, and the bookkeeping persisted between calls.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from feed_agent.models import Event, WindowState
from feed_agent.sorting import OrderRule, order_fingerprint
from feed_agent.window import EventWindow, WindowConfig


class InMemoryEventLog:
    """Append-only log; records every query so tests can assert on fetches."""

    def __init__(self) -> None:
        self.events: List[Event] = []
        self.calls: List[tuple] = []

    def add(self, source_id: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(
            id=len(self.events) + 1,
            agent_id="feed",
            source_id=source_id,
            created_at="2025-01-01T00:00:00Z",
            payload=payload or {},
        )
        self.events.append(event)
        return event

    def source_ids(self) -> List[str]:
        self.calls.append(("source_ids",))
        return sorted({e.source_id for e in self.events})

    def events_by_source(self, source_id: str, limit: int) -> List[Event]:
        self.calls.append(("events_by_source", source_id, limit))
        return [e for e in self.events if e.source_id == source_id][-limit:]

    def events_above(self, event_id: int) -> List[Event]:
        self.calls.append(("events_above", event_id))
        return [e for e in self.events if e.id > event_id]

    def events_by_ids(self, ids: List[int]) -> List[Event]:
        self.calls.append(("events_by_ids", list(ids)))
        wanted = set(ids)
        # Order is unspecified by contract; hand them back reversed.
        return [e for e in reversed(self.events) if e.id in wanted]


class DictStateStore:
    def __init__(self) -> None:
        self.memory: Dict[str, Any] = {}
        self.stores = 0

    def load(self) -> WindowState:
        return WindowState.from_memory(self.memory)

    def store(self, state: WindowState) -> None:
        self.stores += 1
        self.memory.update(state.to_memory())


def _ids(events: List[Event]) -> List[int]:
    return [e.id for e in events]


@pytest.fixture
def log() -> InMemoryEventLog:
    log = InMemoryEventLog()
    for source_id, count in (("a", 3), ("b", 2), ("c", 1)):
        for _ in range(count):
            log.add(source_id)
    return log


@pytest.fixture
def store() -> DictStateStore:
    return DictStateStore()


def test_cold_start_merges_sources_and_keeps_last_n(log, store):
    """Sources [1,2,3], [4,5], [6] with a window of 3 yield [4,5,6] and watermark 6."""
    window = EventWindow(log, store, WindowConfig(events_to_show=3)).compute()

    assert _ids(window) == [4, 5, 6]
    assert store.memory["event_ids"] == [4, 5, 6]
    assert store.memory["last_event_id"] == 6
    assert store.memory["events_to_show"] == 3
    assert store.memory["events_order"] == []
    assert ("events_by_source", "a", 6) in log.calls


def test_incremental_reload_fetches_only_above_watermark(log, store):
    EventWindow(log, store, WindowConfig(events_to_show=3)).compute()
    log.add("a")
    log.calls.clear()

    window = EventWindow(log, store, WindowConfig(events_to_show=3)).compute(force_reload=True)

    assert _ids(window) == [5, 6, 7]
    assert store.memory["last_event_id"] == 7
    assert ("events_above", 6) in log.calls
    assert ("source_ids",) not in log.calls


def test_shrinking_window_reuses_cache_without_fetch(log, store):
    EventWindow(log, store, WindowConfig(events_to_show=3)).compute()
    log.add("a")
    EventWindow(log, store, WindowConfig(events_to_show=3)).compute(force_reload=True)
    stores_before = store.stores
    log.calls.clear()

    window = EventWindow(log, store, WindowConfig(events_to_show=2)).compute()

    assert _ids(window) == [6, 7]
    assert log.calls == [("events_by_ids", [5, 6, 7])]
    assert store.stores == stores_before
    assert store.memory["event_ids"] == [5, 6, 7]


def test_order_change_invalidates_cache_and_cold_starts(log, store):
    EventWindow(log, store, WindowConfig(events_to_show=3)).compute()
    log.add("a")
    EventWindow(log, store, WindowConfig(events_to_show=3)).compute(force_reload=True)
    log.calls.clear()

    rules = [OrderRule("{{_id_}}", "number", True)]
    window = EventWindow(log, store, WindowConfig(events_to_show=3, events_order=rules)).compute()

    assert ("source_ids",) in log.calls
    assert not any(call[0] == "events_above" for call in log.calls)
    # Descending by id, then the last three are kept.
    assert _ids(window) == [3, 2, 1]
    assert store.memory["last_event_id"] == 7
    assert store.memory["events_order"] == order_fingerprint(rules)


def test_growing_window_reseeds_without_new_events(log, store):
    EventWindow(log, store, WindowConfig(events_to_show=3)).compute()

    window = EventWindow(log, store, WindowConfig(events_to_show=5)).compute()

    assert _ids(window) == [2, 3, 4, 5, 6]
    assert store.memory["events_to_show"] == 5


def test_unchanged_render_is_idempotent(log, store):
    config = WindowConfig(events_to_show=3)
    EventWindow(log, store, config).compute(force_reload=True)
    stores_before = store.stores

    first = EventWindow(log, store, config).compute()
    second = EventWindow(log, store, config).compute()

    assert first == second
    assert store.stores == stores_before


def test_window_size_and_watermark_invariants(store):
    log = InMemoryEventLog()
    config = WindowConfig(events_to_show=4)
    watermarks: List[int] = []
    for step in range(12):
        log.add("abc"[step % 3])
        if step % 4 == 0:
            log.add("a")
        window = EventWindow(log, store, config).compute(force_reload=True)
        assert len(window) <= config.events_to_show
        watermarks.append(store.memory["last_event_id"])

    assert watermarks == sorted(watermarks)
    assert watermarks[-1] == len(log.events)


def test_custom_order_is_stable_for_ties(store):
    log = InMemoryEventLog()
    for rank in (2, 1, 2, 1, 2):
        log.add("a", {"rank": rank})
    rules = [OrderRule("{{rank}}", "number", False)]

    window = EventWindow(log, store, WindowConfig(events_to_show=5, events_order=rules)).compute()

    # rank 1 events first, each group in fetch order.
    assert _ids(window) == [2, 4, 1, 3, 5]


def test_empty_log_records_empty_window(store):
    log = InMemoryEventLog()

    window = EventWindow(log, store, WindowConfig(events_to_show=3)).compute()

    assert window == []
    assert store.memory["event_ids"] == []
    assert store.memory["last_event_id"] is None


def test_failed_fetch_leaves_state_untouched(log, store):
    EventWindow(log, store, WindowConfig(events_to_show=3)).compute()
    snapshot = dict(store.memory)

    def broken_events_above(event_id: int) -> List[Event]:
        raise RuntimeError("event log unavailable")

    log.events_above = broken_events_above  # type: ignore[assignment]
    log.add("b")

    with pytest.raises(RuntimeError):
        EventWindow(log, store, WindowConfig(events_to_show=3)).compute(force_reload=True)

    assert store.memory == snapshot


def test_window_config_rejects_non_positive_sizes():
    with pytest.raises(ValueError):
        WindowConfig(events_to_show=0)
    with pytest.raises(ValueError):
        WindowConfig(events_to_show=3, cold_start_fanout=0)
