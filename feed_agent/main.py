from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .engine import agent_status, build_error_envelope, new_request_id
from .options_loader import OptionsLoadError, get_active_options
from .routers import events as events_router
from .routers import feeds as feeds_router
from .storage import event_store, memory_store


logger = logging.getLogger("calendar-feed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize DB and teardown on shutdown."""
    event_store.init_db()
    memory_store.init_memory_db()
    yield


app = FastAPI(title="Calendar Feed Agent", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(events_router.router)
app.include_router(feeds_router.router)


def _options_error(exc: OptionsLoadError) -> JSONResponse:
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        agent_id=get_settings().agent_id,
        status_code=500,
        code="INTERNAL_ERROR",
        message=str(exc),
        details=exc.errors or None,
    )
    return JSONResponse(status_code=status_code, content=body)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    settings = get_settings()
    return {
        "service": settings.service_name,
        "agent": settings.agent_id,
        "docs": "/docs",
        "feeds": "/feeds/{secret}.{ics|rss|json}",
        "events": "/events",
        "status": "/status",
        "health": "/health",
    }


@app.get("/health")
async def health() -> JSONResponse:
    """
    Simple health check. Returns 200 when the agent options load successfully.
    """
    try:
        options = get_active_options()
    except OptionsLoadError as exc:
        return _options_error(exc)

    return JSONResponse(status_code=200, content={"status": "ok", "agent": options.agent_id})


@app.get("/status")
async def status() -> JSONResponse:
    """
    Whether the agent received events within its expected period, plus window bookkeeping.
    """
    try:
        options = get_active_options()
    except OptionsLoadError as exc:
        return _options_error(exc)

    return JSONResponse(status_code=200, content=agent_status(options))


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
