"""
Memory store: one JSON blob per agent, durable across requests.

Memory table: (agent_id, memory, updated_at)
Writes replace the whole blob; callers merge before saving.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict

from feed_agent.models import WindowState
from feed_agent.storage.db import apply_sqlite_pragmas, connect, ensure_sqlite_dir, is_postgres, sql

logger = logging.getLogger("calendar-feed")


def init_memory_db() -> None:
    """Create the agent_memory table. Call at app startup."""
    ensure_sqlite_dir()
    with connect() as conn:
        if not is_postgres():
            apply_sqlite_pragmas(conn)
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_memory (
                agent_id TEXT PRIMARY KEY,
                memory TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.commit()


def load_memory(agent_id: str) -> Dict[str, Any]:
    """Return the agent's memory blob, {} when nothing was stored yet."""
    init_memory_db()  # Idempotent; ensures tables exist when TestClient doesn't run lifespan before first request
    with connect() as conn:
        row = conn.execute(
            sql("SELECT memory FROM agent_memory WHERE agent_id = ?"),
            (agent_id,),
        ).fetchone()
    if row is None:
        return {}
    memory = json.loads(row["memory"])
    if not isinstance(memory, dict):
        raise ValueError(f"memory for agent {agent_id!r} is not a JSON object")
    return memory


def save_memory(agent_id: str, memory: Dict[str, Any]) -> None:
    init_memory_db()
    updated_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    with connect() as conn:
        conn.execute(
            sql(
                "INSERT INTO agent_memory (agent_id, memory, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT (agent_id) DO UPDATE SET memory = excluded.memory, updated_at = excluded.updated_at"
            ),
            (agent_id, json.dumps(memory, sort_keys=True), updated_at),
        )
        conn.commit()


def update_memory(agent_id: str, **values: Any) -> Dict[str, Any]:
    """Merge `values` into the stored blob and return the result."""
    memory = load_memory(agent_id)
    memory.update(values)
    save_memory(agent_id, memory)
    return memory


class MemoryStateStore:
    """Window-state load/store on top of the agent memory blob."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id

    def load(self) -> WindowState:
        return WindowState.from_memory(load_memory(self.agent_id))

    def store(self, state: WindowState) -> None:
        update_memory(self.agent_id, **state.to_memory())
        logger.debug(
            "stored window agent=%s size=%s last_event_id=%s",
            self.agent_id,
            len(state.event_ids or []),
            state.last_event_id,
        )
