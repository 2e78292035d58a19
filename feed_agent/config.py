import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so AGENT_ID and AUTH_TOKEN are set automatically.
load_dotenv()

# Packaged agent options (feed_agent/options/*.yaml).
DEFAULT_OPTIONS_DIR = str(Path(__file__).parent / "options")


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    agent_id: str
    options_dir: str
    auth_token: Optional[str]
    db_path: str = "./data/feed.db"
    cors_origins: str = "*"

    service_name: str = "calendar-feed"
    http_port: int = 4280
    http_host: str = "0.0.0.0"


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only defaults live here; `get_settings` re-reads the environment on
    every call so tests can switch agents and databases at runtime.
    """

    return Settings(
        agent_id="calendar",
        options_dir=DEFAULT_OPTIONS_DIR,
        auth_token=None,
        db_path="./data/feed.db",
        cors_origins="*",
    )


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """

    base = _base_settings()
    agent_id = os.getenv("AGENT_ID") or base.agent_id
    options_dir = os.getenv("AGENT_OPTIONS_DIR") or base.options_dir
    auth_token = os.getenv("AUTH_TOKEN") or None
    db_path = os.getenv("DB_PATH") or base.db_path
    cors_origins = os.getenv("CORS_ORIGINS") or base.cors_origins
    http_port = int(os.getenv("PORT") or base.http_port)
    http_host = os.getenv("HOST") or base.http_host

    return Settings(
        agent_id=agent_id,
        options_dir=options_dir,
        auth_token=auth_token,
        db_path=db_path,
        cors_origins=cors_origins,
        service_name=base.service_name,
        http_port=http_port,
        http_host=http_host,
    )
