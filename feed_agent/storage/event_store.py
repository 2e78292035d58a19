"""
Event store: SQLite- or Postgres-backed append-only event log.

Events table: (id, agent_id, source_id, created_at, payload)
Ids grow monotonically on insert; rows are never updated or deleted.
One connection per call; DB_PATH from env (default ./data/feed.db).
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Iterable, List

from feed_agent.models import Event
from feed_agent.storage.db import apply_sqlite_pragmas, connect, ensure_sqlite_dir, is_postgres, placeholders, sql

logger = logging.getLogger("calendar-feed")

_COLUMNS = "id, agent_id, source_id, created_at, payload"
# Stay well below SQLite's bound-parameter limit.
_MAX_IDS_PER_QUERY = 500


def init_db() -> None:
    """
    Create the events table and indexes.
    Call at app startup (lifespan or startup event).
    """
    ensure_sqlite_dir()
    with connect() as conn:
        if not is_postgres():
            apply_sqlite_pragmas(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_id TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
        else:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id BIGSERIAL PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_agent_source ON events (agent_id, source_id, id)")
        conn.commit()


def _row_to_event(row: Any) -> Event:
    try:
        payload = json.loads(row["payload"]) if row["payload"] else {}
    except (json.JSONDecodeError, TypeError):
        logger.warning("event id=%s has an undecodable payload; using {}", row["id"])
        payload = {}
    if not isinstance(payload, dict):
        payload = {"value": payload}
    return Event(
        id=int(row["id"]),
        agent_id=row["agent_id"],
        source_id=row["source_id"],
        created_at=row["created_at"],
        payload=payload,
    )


def _select(query: str, params: Iterable[Any]) -> List[Event]:
    init_db()  # Idempotent; ensures tables exist when TestClient doesn't run lifespan before first request
    with connect() as conn:
        rows = conn.execute(sql(query), tuple(params)).fetchall()
    return [_row_to_event(row) for row in rows]


def append_events(agent_id: str, events: List[Dict[str, Any]]) -> List[int]:
    """
    Append events for an agent. Each event: { source_id, payload, created_at? }.
    Returns the ids assigned, in insertion order.
    """
    if not events:
        return []
    init_db()
    ids: List[int] = []
    with connect() as conn:
        for ev in events:
            created_at = ev.get("created_at") or time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            payload = json.dumps(ev.get("payload") or {})
            params = (agent_id, str(ev["source_id"]), created_at, payload)
            if is_postgres():
                cur = conn.execute(
                    sql("INSERT INTO events (agent_id, source_id, created_at, payload) VALUES (?, ?, ?, ?) RETURNING id"),
                    params,
                )
                ids.append(int(cur.fetchone()["id"]))
            else:
                cur = conn.execute(
                    "INSERT INTO events (agent_id, source_id, created_at, payload) VALUES (?, ?, ?, ?)",
                    params,
                )
                ids.append(int(cur.lastrowid))
        conn.commit()
    return ids


def source_ids(agent_id: str) -> List[str]:
    """Distinct sources that delivered events to this agent, sorted."""
    init_db()
    with connect() as conn:
        rows = conn.execute(
            sql("SELECT DISTINCT source_id FROM events WHERE agent_id = ? ORDER BY source_id"),
            (agent_id,),
        ).fetchall()
    return [row["source_id"] for row in rows]


def events_by_source(agent_id: str, source_id: str, limit: int) -> List[Event]:
    """Most recent `limit` events of one source, ascending by id."""
    if limit <= 0:
        return []
    newest_first = _select(
        f"SELECT {_COLUMNS} FROM events WHERE agent_id = ? AND source_id = ? ORDER BY id DESC LIMIT ?",
        (agent_id, source_id, limit),
    )
    return list(reversed(newest_first))


def events_above(agent_id: str, event_id: int) -> List[Event]:
    """All events with id strictly greater than `event_id`, ascending by id."""
    return _select(
        f"SELECT {_COLUMNS} FROM events WHERE agent_id = ? AND id > ? ORDER BY id",
        (agent_id, event_id),
    )


def events_by_ids(agent_id: str, ids: List[int]) -> List[Event]:
    """Events whose id is in `ids`; unknown ids are skipped. Order unspecified."""
    out: List[Event] = []
    for start in range(0, len(ids), _MAX_IDS_PER_QUERY):
        chunk = ids[start : start + _MAX_IDS_PER_QUERY]
        out.extend(
            _select(
                f"SELECT {_COLUMNS} FROM events WHERE agent_id = ? AND id IN ({placeholders(len(chunk))})",
                (agent_id, *chunk),
            )
        )
    return out


class AgentEventLog:
    """The event log as seen by a single feed agent."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id

    def source_ids(self) -> List[str]:
        return source_ids(self.agent_id)

    def events_by_source(self, source_id: str, limit: int) -> List[Event]:
        return events_by_source(self.agent_id, source_id, limit)

    def events_above(self, event_id: int) -> List[Event]:
        return events_above(self.agent_id, event_id)

    def events_by_ids(self, ids: List[int]) -> List[Event]:
        return events_by_ids(self.agent_id, ids)
