from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Request
from jsonschema import Draft7Validator

from .dependencies import AuthError
from .models import Event
from .options_loader import AgentOptions, OptionsLoadError, get_active_options
from .rendering import FeedRenderError, render_ical, render_json, render_rss
from .sorting import parse_time, sort_events
from .storage import event_store, memory_store
from .window import EventWindow

logger = logging.getLogger("calendar-feed")

RECEIVE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["events"],
    "properties": {
        "events": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["source_id", "payload"],
                "properties": {
                    "source_id": {"type": ["string", "integer"], "minLength": 1},
                    "payload": {"type": "object"},
                    "created_at": {"type": "string", "minLength": 1},
                },
            },
        }
    },
}

# URL suffix -> (renderer, fixed content type or None for the configured RSS type)
_FORMATS: Dict[str, Tuple[Callable[..., str], Optional[str]]] = {
    "ics": (render_ical, "text/calendar"),
    "ical": (render_ical, "text/calendar"),
    "rss": (render_rss, None),
    "xml": (render_rss, None),
    "json": (render_json, "application/json"),
}


class ErrorEnvelope(Exception):
    """
    Custom exception used internally to simplify control flow.

    The process_* pipelines convert this into the standardized error envelope.
    """

    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


@dataclass
class FeedResponse:
    body: str
    status_code: int
    content_type: str
    headers: Dict[str, str] = field(default_factory=dict)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    agent_id: str | None,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": {
            "request_id": request_id,
            "agent": agent_id or "unknown",
        },
    }
    return status_code, body


def _validate_with_schema(instance: Any, schema: Dict[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


def _created_at_errors(batch: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    errors: List[Dict[str, Any]] = []
    for position, item in enumerate(batch):
        created_at = item.get("created_at")
        if created_at is not None and parse_time(created_at) is None:
            errors.append(
                {
                    "path": ["events", position, "created_at"],
                    "message": f"{created_at!r} is not an ISO-8601 or RFC 2822 timestamp",
                }
            )
    return errors


def build_window(options: AgentOptions) -> EventWindow:
    return EventWindow(
        event_store.AgentEventLog(options.agent_id),
        memory_store.MemoryStateStore(options.agent_id),
        options.window_config(),
    )


def receive_events(options: AgentOptions, batch: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Store an incoming batch and fold it into the window."""
    ids = event_store.append_events(options.agent_id, batch)
    memory_store.update_memory(
        options.agent_id,
        last_receive_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    )
    window = build_window(options).compute(force_reload=True)
    return {"appended": len(ids), "event_ids": ids, "window_size": len(window)}


def latest_events(options: AgentOptions) -> List[Event]:
    """The window in list order (events_list_order), as feeds show it."""
    window = build_window(options).compute()
    return sort_events(window, options.events_list_order)


def render_feed(options: AgentOptions, secret: str, fmt: str) -> FeedResponse:
    """
    Serialize the current window for a feed request.

    An unknown secret yields a 401 response and leaves all state untouched.
    """
    fmt = (fmt or "").lower()
    if secret not in options.secrets:
        logger.warning("feed request rejected agent=%s format=%s", options.agent_id, fmt)
        if "json" in fmt:
            return FeedResponse(json.dumps({"error": "Not Authorized"}), 401, "application/json")
        return FeedResponse("Not Authorized", 401, "text/plain")

    if fmt not in _FORMATS:
        raise ErrorEnvelope(
            status_code=400,
            code="UNSUPPORTED_FORMAT",
            message=f"Unsupported feed format: {fmt}",
            details={"supported": sorted(_FORMATS)},
        )
    renderer, content_type = _FORMATS[fmt]

    events = latest_events(options)
    try:
        body = renderer(events, options)
    except FeedRenderError as exc:
        raise ErrorEnvelope(status_code=500, code="RENDER_ERROR", message=str(exc)) from exc

    return FeedResponse(body, 200, content_type or options.rss_content_type, dict(options.response_headers))


def agent_status(options: AgentOptions, now: datetime | None = None) -> Dict[str, Any]:
    """`working` is true when a batch arrived within expected_receive_period_in_days."""
    now = now or datetime.now(timezone.utc)
    memory = memory_store.load_memory(options.agent_id)
    last_receive_at = memory.get("last_receive_at")
    received = parse_time(last_receive_at) if isinstance(last_receive_at, str) else None
    working = received is not None and received > now - timedelta(days=options.expected_receive_period_in_days)
    return {
        "agent": options.agent_id,
        "working": working,
        "last_receive_at": last_receive_at,
        "last_event_id": memory.get("last_event_id"),
        "window_size": len(memory.get("event_ids") or []),
    }


async def process_receive_request(*, request: Request) -> Dict[str, Any]:
    """
    Core POST /events pipeline.

    Free of FastAPI Response types so it is straightforward to test.
    """
    request_id = new_request_id()
    start = time.monotonic()
    try:
        options = get_active_options()
    except OptionsLoadError as exc:
        status_code, body = build_error_envelope(
            request_id=request_id,
            agent_id=None,
            status_code=500,
            code="INTERNAL_ERROR",
            message=str(exc),
            details=exc.errors or None,
        )
        return {"status_code": status_code, "body": body}

    try:
        # 1) Enforce auth (if enabled).
        try:
            from .dependencies import enforce_auth

            enforce_auth(request)
        except AuthError as exc:
            raise ErrorEnvelope(status_code=401, code="UNAUTHORIZED", message=str(exc)) from exc

        # 2) Parse JSON body, handling malformed JSON explicitly.
        body_bytes = await request.body()
        try:
            payload = json.loads(body_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ErrorEnvelope(
                status_code=400,
                code="MALFORMED_REQUEST",
                message="Request body must be valid JSON",
                details={"message": str(exc)},
            ) from exc

        # 3) Validate the batch shape.
        errors = _validate_with_schema(payload, RECEIVE_SCHEMA)
        if not errors:
            errors = _created_at_errors(payload["events"])
        if errors:
            raise ErrorEnvelope(
                status_code=422,
                code="INPUT_VALIDATION_ERROR",
                message="Request body must be {'events': [{'source_id', 'payload'}, ...]}",
                details=errors,
            )

        # 4) Store and recompute the window.
        result = receive_events(options, payload["events"])
        status_code = 200
        body = {"ok": True, **result}
    except ErrorEnvelope as exc:
        status_code, body = build_error_envelope(
            request_id=request_id,
            agent_id=options.agent_id,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )

    _log_request(
        request_id=request_id,
        operation="receive",
        agent_id=options.agent_id,
        status_code=status_code,
        latency_ms=(time.monotonic() - start) * 1000.0,
    )
    return {"status_code": status_code, "body": body}


def process_feed_request(*, secret: str, fmt: str) -> FeedResponse:
    """Core GET /feeds pipeline; errors come back as JSON envelopes."""
    request_id = new_request_id()
    start = time.monotonic()
    agent_id: str | None = None
    try:
        options = get_active_options()
        agent_id = options.agent_id
        response = render_feed(options, secret, fmt)
    except OptionsLoadError as exc:
        response = _envelope_response(request_id, None, ErrorEnvelope(500, "INTERNAL_ERROR", str(exc), exc.errors or None))
    except ErrorEnvelope as exc:
        response = _envelope_response(request_id, agent_id, exc)

    _log_request(
        request_id=request_id,
        operation=f"render.{fmt}",
        agent_id=agent_id or "unknown",
        status_code=response.status_code,
        latency_ms=(time.monotonic() - start) * 1000.0,
    )
    return response


def _envelope_response(request_id: str, agent_id: str | None, exc: ErrorEnvelope) -> FeedResponse:
    status_code, body = build_error_envelope(
        request_id=request_id,
        agent_id=agent_id,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )
    return FeedResponse(json.dumps(body), status_code, "application/json")


def _log_request(
    *,
    request_id: str,
    operation: str,
    agent_id: str,
    status_code: int,
    latency_ms: float,
) -> None:
    logger.info(
        "%s request_id=%s agent=%s status=%s latency_ms=%.2f",
        operation,
        request_id,
        agent_id,
        status_code,
        latency_ms,
    )
